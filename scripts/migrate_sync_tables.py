#!/usr/bin/env python3
"""
Migration: Create the job queue, failed job and circuit breaker state tables.

Safe to run repeatedly; every statement is IF NOT EXISTS.

Usage:
    python scripts/migrate_sync_tables.py
"""

import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlmodel import text, Session  # noqa: E402
from course_sync.db import engine  # noqa: E402

TABLES = {
    "syncjob": """
        CREATE TABLE IF NOT EXISTS syncjob (
            id SERIAL PRIMARY KEY,
            job_id VARCHAR NOT NULL,
            job_class VARCHAR NOT NULL,
            arguments VARCHAR NOT NULL DEFAULT '[]',
            queue_name VARCHAR NOT NULL DEFAULT 'default',
            status VARCHAR NOT NULL DEFAULT 'PENDING',
            executions INTEGER NOT NULL DEFAULT 0,
            run_at TIMESTAMP NOT NULL DEFAULT NOW(),
            last_error VARCHAR,
            created_at TIMESTAMP NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMP NOT NULL DEFAULT NOW(),
            started_at TIMESTAMP,
            completed_at TIMESTAMP
        )
    """,
    "failedjob": """
        CREATE TABLE IF NOT EXISTS failedjob (
            id SERIAL PRIMARY KEY,
            job_class VARCHAR NOT NULL,
            job_id VARCHAR NOT NULL,
            arguments TEXT NOT NULL DEFAULT '[]',
            error_kind VARCHAR NOT NULL,
            error_message TEXT NOT NULL,
            backtrace TEXT,
            failed_at TIMESTAMP NOT NULL,
            executions INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMP NOT NULL DEFAULT NOW(),
            retried_at TIMESTAMP
        )
    """,
    "circuitbreakerstate": """
        CREATE TABLE IF NOT EXISTS circuitbreakerstate (
            id SERIAL PRIMARY KEY,
            name VARCHAR NOT NULL UNIQUE,
            state VARCHAR NOT NULL DEFAULT 'closed',
            failure_count INTEGER NOT NULL DEFAULT 0,
            last_failure_at TIMESTAMP,
            updated_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
    """,
}

INDEXES = [
    "CREATE INDEX IF NOT EXISTS ix_syncjob_job_id ON syncjob (job_id)",
    "CREATE INDEX IF NOT EXISTS ix_syncjob_job_class ON syncjob (job_class)",
    "CREATE INDEX IF NOT EXISTS ix_syncjob_status ON syncjob (status)",
    "CREATE INDEX IF NOT EXISTS ix_syncjob_queue ON syncjob (status, run_at, created_at)",
    "CREATE INDEX IF NOT EXISTS ix_syncjob_queue_name_status ON syncjob (queue_name, status)",
    "CREATE INDEX IF NOT EXISTS ix_syncjob_stale ON syncjob (status, started_at)",
    "CREATE INDEX IF NOT EXISTS ix_failedjob_job_id ON failedjob (job_id)",
    "CREATE INDEX IF NOT EXISTS ix_failedjob_job_class ON failedjob (job_class)",
    "CREATE INDEX IF NOT EXISTS ix_failedjob_error_kind ON failedjob (error_kind)",
    "CREATE INDEX IF NOT EXISTS ix_failedjob_failed_at ON failedjob (failed_at)",
    "CREATE INDEX IF NOT EXISTS ix_failedjob_failed_at_kind ON failedjob (failed_at, error_kind)",
    "CREATE INDEX IF NOT EXISTS ix_circuitbreakerstate_name ON circuitbreakerstate (name)",
]


def migrate():
    """Create sync tables and their indexes (Postgres)."""
    with Session(engine) as session:
        for name, ddl in TABLES.items():
            print(f"Creating {name} table...")
            session.exec(text(ddl))
            print(f"  Created table: {name}")

        print("Creating indexes...")
        for statement in INDEXES:
            session.exec(text(statement))
        session.commit()

        print("\nMigration complete!")


if __name__ == "__main__":
    migrate()
