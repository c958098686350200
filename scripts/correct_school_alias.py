"""Correct a school's SIS code mapping and replay attendance that was parked under it.

After the alias changes, parked attendance is re-resolved and loaded, and
summaries for the affected dates are recomputed.

Usage:
    docker compose exec backend python -m scripts.correct_school_alias --school 3 --old 03 --new 003
    docker compose exec backend python -m scripts.correct_school_alias --school 3 --add 0003
    docker compose exec backend python -m scripts.correct_school_alias --school 3 --deactivate
"""

import argparse
import logging
import sys

from attendance_sync.errors import AliasConflictError
from attendance_sync.models.base import SyncSessionLocal
from attendance_sync.models.school import School
from attendance_sync.services.aggregator import TimelineAggregator
from attendance_sync.services.loader import BulkLoader
from attendance_sync.services.reconciliation import (
    add_alias,
    correct_alias,
    deactivate_school,
    replay_parked_events,
)

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


def main(args):
    db = SyncSessionLocal()
    try:
        school = db.query(School).filter(School.code == args.school).first()
        if not school:
            logger.error(f"Unknown school code: {args.school}")
            sys.exit(1)

        try:
            if args.deactivate:
                deactivate_school(db, school.id)
                logger.info(f"Deactivated school {school.code}")
                return
            if args.add:
                add_alias(db, school.id, args.add, primary=args.primary, reason=args.reason)
                logger.info(f"Added alias {args.add!r} to school {school.code}")
            else:
                correct_alias(db, school.id, args.old, args.new, reason=args.reason)
        except AliasConflictError as e:
            logger.error(f"Refused: {e.message} {e.details}")
            sys.exit(2)

        if args.no_replay:
            return

        result = replay_parked_events(db, BulkLoader(db))
        if result.load is not None and result.load.touched:
            rows = TimelineAggregator(db).recompute_incremental(result.load.touched)
            logger.info(f"Recomputed {len(rows)} summary rows")
        print(
            f"Replayed {result.events_replayed} events, resolved {result.gaps_resolved} gaps, "
            f"{result.events_still_parked} still parked"
        )
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Correct a school's SIS code mapping")
    parser.add_argument("--school", required=True, help="Canonical school code")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--old", help="Active alias to replace (with --new)")
    group.add_argument("--add", help="Add an additional alias")
    group.add_argument("--deactivate", action="store_true", help="Soft-deactivate the school")
    parser.add_argument("--new", help="Corrected SIS code")
    parser.add_argument("--primary", action="store_true", help="Mark an added alias as the request code")
    parser.add_argument("--reason", help="Audit note stored on the alias row")
    parser.add_argument("--no-replay", action="store_true", help="Skip replaying parked attendance")
    args = parser.parse_args()
    if args.old and not args.new:
        parser.error("--old requires --new")
    main(args)
