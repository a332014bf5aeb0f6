"""
Failed Job Model

Append-only audit log of work units that exhausted their retry budget (or were
escalated immediately). Rows are written once by the dead letter sink and are
never updated except for ``retried_at`` when an operator retries the job by hand.

There is deliberately no uniqueness on ``job_id``: a job that is retried by hand
and fails permanently again produces a second record.
"""

import json
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Column, Index, Text
from sqlmodel import Field, SQLModel

from course_sync.core.typing import utc_now


class FailedJob(SQLModel, table=True):
    """Persisted record of a permanently failed job."""

    id: Optional[int] = Field(default=None, primary_key=True)
    job_class: str = Field(index=True)
    job_id: str = Field(index=True)
    arguments: str = Field(default="[]", sa_column=Column(Text, nullable=False, default="[]"))
    error_kind: str = Field(index=True)
    error_message: str = Field(sa_column=Column(Text, nullable=False))
    backtrace: Optional[str] = Field(default=None, sa_column=Column(Text))  # newline-joined, <= 10 frames
    failed_at: datetime = Field(index=True)
    executions: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    retried_at: Optional[datetime] = None

    __table_args__ = (Index("ix_failedjob_failed_at_kind", "failed_at", "error_kind"),)

    def parsed_arguments(self) -> list[Any]:
        """Decode stored arguments, tolerating malformed JSON."""
        if not self.arguments:
            return []
        try:
            parsed = json.loads(self.arguments)
        except json.JSONDecodeError:
            return []
        return parsed if isinstance(parsed, list) else [parsed]


__all__ = ["FailedJob"]
