"""Seed the school registry from the SIS school list.

Each SIS school becomes a canonical school whose code is the normalized form
of its SIS code (``"001"`` -> ``"1"``), with the SIS code kept as the primary
alias. Schools that already exist are left alone.

Usage:
    docker compose exec backend python -m scripts.seed_schools
    docker compose exec backend python -m scripts.seed_schools --dry-run
    docker compose exec backend python -m scripts.seed_schools --period-count 6
"""

import argparse
import logging

from attendance_sync.models.base import SyncSessionLocal
from attendance_sync.models.school import School
from attendance_sync.services.reconciliation import create_school, normalize_code
from attendance_sync.sources.client import SISClient

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


def seed(period_count: int, dry_run: bool = False):
    with SISClient() as client:
        sis_schools = client.fetch_schools()
    logger.info(f"SIS returned {len(sis_schools)} schools")

    db = SyncSessionLocal()
    created = skipped = 0
    try:
        for record in sis_schools:
            raw_code = str(record.get("SchoolCode") or "").strip()
            name = record.get("Name") or record.get("SchoolName") or f"School {raw_code}"
            if not raw_code:
                logger.warning(f"Skipping school without SchoolCode: {record}")
                continue

            code = normalize_code(raw_code)
            if db.query(School).filter(School.code == code).first():
                skipped += 1
                continue

            if dry_run:
                logger.info(f"[dry-run] Would create {code} ({name}) with alias {raw_code!r}")
                created += 1
                continue

            aliases = [raw_code] if raw_code != code else []
            create_school(db, code, name, period_count=period_count, aliases=aliases)
            created += 1

        logger.info(f"Created {created} schools, skipped {skipped} existing")
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed schools from the SIS")
    parser.add_argument("--period-count", type=int, default=7, help="Periods per day for new schools")
    parser.add_argument("--dry-run", action="store_true", help="Don't write to database")
    args = parser.parse_args()
    seed(args.period_count, dry_run=args.dry_run)
