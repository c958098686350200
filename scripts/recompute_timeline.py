"""Force a full rebuild of daily grade summaries.

Usage:
    docker compose exec backend python -m scripts.recompute_timeline
    docker compose exec backend python -m scripts.recompute_timeline --school 1 --start 2024-08-01 --end 2025-06-30
"""

import argparse
import logging
import sys

from datetime import date

from attendance_sync.models.base import SyncSessionLocal
from attendance_sync.models.school import School
from attendance_sync.services.aggregator import TimelineAggregator

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


def recompute(school_code: str | None, start: date | None, end: date | None):
    db = SyncSessionLocal()
    try:
        school_id = None
        if school_code:
            school = db.query(School).filter(School.code == school_code).first()
            if not school:
                logger.error(f"Unknown school code: {school_code}")
                sys.exit(1)
            school_id = school.id

        rows = TimelineAggregator(db).recompute(school_id=school_id, start=start, end=end)
        logger.info(f"Recomputed {len(rows)} summary rows")
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Rebuild daily grade summaries")
    parser.add_argument("--school", help="Canonical school code (default: all)")
    parser.add_argument("--start", type=date.fromisoformat, help="First date (YYYY-MM-DD)")
    parser.add_argument("--end", type=date.fromisoformat, help="Last date (YYYY-MM-DD)")
    args = parser.parse_args()
    recompute(args.school, args.start, args.end)
