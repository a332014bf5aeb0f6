#!/usr/bin/env python3
"""
Sync Worker - Processes queued jobs (course syncs, dead letter writes).

Run with: python scripts/run_sync_worker.py --store myapp.courses:CourseStore

This provides crash recovery - if the worker dies, jobs remain in the queue
and will be picked up on restart.

The worker claims jobs atomically using SELECT FOR UPDATE SKIP LOCKED,
so multiple workers can run concurrently without conflicts.

Usage:
    python scripts/run_sync_worker.py --store pkg.module:Store                # All queues
    python scripts/run_sync_worker.py --store pkg.module:Store --queue critical
    python scripts/run_sync_worker.py --store pkg.module:Store --with-scheduler
"""

import asyncio
import importlib
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# Add project root to path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from sqlmodel import Session  # noqa: E402

from course_sync.core import circuit_breaker  # noqa: E402
from course_sync.core.config import settings  # noqa: E402
from course_sync.core.errors import init_sentry  # noqa: E402
from course_sync.db import create_db_and_tables, engine  # noqa: E402
from course_sync.models.sync_job import JobStatus  # noqa: E402
from course_sync.services.alerts import DiscordAlertNotifier  # noqa: E402
from course_sync.services.job_queue import (  # noqa: E402
    claim_next_job,
    get_queue_stats,
    reset_stale_jobs,
)
from course_sync.services.jobs import JobRunner, set_orchestrator_factory  # noqa: E402
from course_sync.sync.orchestrator import SyncOrchestrator  # noqa: E402
from course_sync.sync.provider import HttpCourseProvider  # noqa: E402

# Global shutdown flag
shutdown_requested = False


def handle_shutdown(signum, frame):
    """Handle SIGINT/SIGTERM for graceful shutdown."""
    global shutdown_requested
    print("\n[Worker] Shutdown requested, finishing current job...")
    shutdown_requested = True


def load_store(path: str):
    """Instantiate the course store from a "module:attribute" path."""
    module_name, _, attr = path.partition(":")
    if not attr:
        raise ValueError(f"Store path must look like 'package.module:Class', got {path!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory()


def configure(store_path: str) -> None:
    """Wire collaborators that live outside the package."""
    init_sentry(settings.SENTRY_DSN, environment=settings.ENVIRONMENT)

    notifier = DiscordAlertNotifier()
    circuit_breaker.set_notification_callback(notifier.notify_circuit_state_change)

    store = load_store(store_path)
    set_orchestrator_factory(lambda: SyncOrchestrator(HttpCourseProvider(), store))


def process_next(runner: JobRunner, queue_name: Optional[str]) -> Optional[JobStatus]:
    """Claim and run one job. Returns None when nothing is due."""
    with Session(engine) as session:
        job = claim_next_job(session, queue_name=queue_name)
        if not job:
            return None
        print(f"[Worker] Processing: {job.job_class} (job {job.job_id}, execution {job.executions})")
        return runner.run(session, job)


async def worker_loop(queue_name: Optional[str] = None):
    """
    Main worker loop.

    Continuously claims and runs jobs from the queue until shutdown.

    Args:
        queue_name: Only process this queue (default: all queues by priority)
    """
    global shutdown_requested

    print(f"[Worker] Starting worker (queue={queue_name or 'all'})...")

    # Reset stale jobs from previous crashes
    with Session(engine) as session:
        stats = reset_stale_jobs(session, timeout_minutes=30)
        if stats["reset"] > 0:
            print(f"[Worker] Reset {stats['reset']} stale jobs from previous run")

        queue_stats = get_queue_stats(session, queue_name=queue_name)
        print(f"[Worker] Queue stats: {queue_stats}")

    runner = JobRunner()
    idle_count = 0
    outcomes = {status: 0 for status in JobStatus}

    while not shutdown_requested:
        outcome = await asyncio.to_thread(process_next, runner, queue_name)

        if outcome is not None:
            idle_count = 0
            outcomes[outcome] += 1
            print(f"[Worker] Finished with status: {outcome.value}")
        else:
            idle_count += 1
            # Log every minute when idle (12 * 5s = 60s)
            if idle_count % 12 == 1:
                with Session(engine) as session:
                    queue_stats = get_queue_stats(session, queue_name=queue_name)
                print(f"[Worker] Queue empty, waiting... (stats: {queue_stats})")
            await asyncio.sleep(5)

    # Shutdown summary
    summary = ", ".join(f"{status.value}: {count}" for status, count in outcomes.items() if count)
    print(f"[Worker] Shutting down... {summary or 'no jobs processed'}")


async def main(store_path: str, queue_name: Optional[str] = None, with_scheduler: bool = False):
    """Main entry point."""
    # Set up signal handlers
    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)

    print(f"[Worker] Starting at {datetime.now(timezone.utc).isoformat()}")
    print("[Worker] Press Ctrl+C to gracefully shutdown")

    create_db_and_tables()
    configure(store_path)

    if with_scheduler:
        from course_sync.core.scheduler import start_scheduler, stop_scheduler

        start_scheduler()

    try:
        await worker_loop(queue_name)
    finally:
        if with_scheduler:
            stop_scheduler()
        print("[Worker] Cleanup complete")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Sync Worker - Process queued sync jobs")
    parser.add_argument(
        "--store",
        type=str,
        required=True,
        help="Course store factory as 'package.module:Class'",
    )
    parser.add_argument(
        "--queue",
        type=str,
        default=None,
        choices=["critical", "default", "low_priority"],
        help="Only process one queue (default: all, by priority)",
    )
    parser.add_argument(
        "--with-scheduler",
        action="store_true",
        help="Also run the periodic scheduler in this process",
    )
    args = parser.parse_args()

    asyncio.run(main(args.store, args.queue, args.with_scheduler))
