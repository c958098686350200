"""Run an attendance sync for a date window.

Runs in-process by default; ``--queue`` hands the operation to a Celery worker
instead. ``--resume`` continues an earlier operation from its unfinished schools.

Usage:
    docker compose exec backend python -m scripts.run_sync --start 2024-08-15 --end 2024-08-30
    docker compose exec backend python -m scripts.run_sync --start 2024-08-15 --school 1 --school 7
    docker compose exec backend python -m scripts.run_sync --queue
    docker compose exec backend python -m scripts.run_sync --resume 3f2c...
"""

import argparse
import logging
import sys
from datetime import date, timedelta

from attendance_sync.models.base import SyncSessionLocal
from attendance_sync.models.school import School
from attendance_sync.services.orchestrator import SyncOrchestrator
from attendance_sync.sources.client import SISClient

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


def run(start: date, end: date, school_codes: list[str], queue: bool = False, resume: str | None = None, force: bool = False):
    db = SyncSessionLocal()
    try:
        with SISClient() as client:
            orchestrator = SyncOrchestrator(db, client)

            if resume:
                operation = orchestrator.resume(resume, force=force)
            else:
                school_ids = None
                if school_codes:
                    schools = db.query(School).filter(School.code.in_(school_codes)).all()
                    missing = set(school_codes) - {s.code for s in schools}
                    if missing:
                        logger.error(f"Unknown school codes: {sorted(missing)}")
                        sys.exit(1)
                    school_ids = [s.id for s in schools]

                operation = orchestrator.create_operation(start, end, school_ids=school_ids, requested_by="cli")

                if queue:
                    from attendance_sync.tasks.sync_tasks import run_sync_operation

                    task = run_sync_operation.delay(str(operation.id))
                    print(f"Queued operation {operation.id} (task {task.id})")
                    return

                operation = orchestrator.run(operation.id)

        print(f"\n=== Operation {operation.id}: {operation.status} ===")
        for entry in operation.schools:
            school = db.get(School, entry.school_id)
            line = (
                f"  {school.code:>6} {entry.status:<10} shape={entry.source_shape or '-':<15} "
                f"fetched={entry.records_fetched or 0} inserted={entry.events_inserted or 0} "
                f"updated={entry.events_updated or 0} gaps={entry.reconciliation_gaps or 0}"
            )
            if entry.error_message:
                line += f"  error: {entry.error_message[:120]}"
            print(line)
        print(f"Summaries written: {operation.summaries_written or 0}")
    finally:
        db.close()


if __name__ == "__main__":
    yesterday = date.today() - timedelta(days=1)
    parser = argparse.ArgumentParser(description="Sync attendance from the SIS")
    parser.add_argument("--start", type=date.fromisoformat, default=yesterday, help="First date (YYYY-MM-DD)")
    parser.add_argument("--end", type=date.fromisoformat, default=None, help="Last date (default: --start)")
    parser.add_argument("--school", action="append", default=[], help="Canonical school code (repeatable)")
    parser.add_argument("--queue", action="store_true", help="Dispatch to a Celery worker")
    parser.add_argument("--resume", metavar="OPERATION_ID", help="Resume an earlier operation")
    parser.add_argument("--force", action="store_true", help="With --resume, take over an operation still marked RUNNING")
    args = parser.parse_args()
    run(args.start, args.end or args.start, args.school, queue=args.queue, resume=args.resume, force=args.force)
