"""Report unresolved SIS codes and code-format drift.

Usage:
    docker compose exec backend python -m scripts.report_reconciliation_gaps
    docker compose exec backend python -m scripts.report_reconciliation_gaps --output /app/data/gaps.csv
"""

import argparse
import csv
import io
import logging

from attendance_sync.models.base import SyncSessionLocal
from attendance_sync.models.reconciliation_gap import ReconciliationGapRecord
from attendance_sync.services.reconciliation import detect_code_drift

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


def report(output_path: str | None = None):
    db = SyncSessionLocal()
    try:
        gaps = db.query(ReconciliationGapRecord).filter(
            ReconciliationGapRecord.status == "pending",
        ).order_by(ReconciliationGapRecord.occurrences.desc()).all()

        print(f"\n=== Pending Reconciliation Gaps ({len(gaps)}) ===")
        for gap in gaps[:50]:
            print(
                f"  {gap.kind:<8} {gap.raw_code!r:<14} seen {gap.occurrences}x, "
                f"{len(gap.parked_events)} parked, last {gap.last_seen_at:%Y-%m-%d}"
            )

        findings = detect_code_drift(db)
        print(f"\n=== Code Drift Findings ({len(findings)}) ===")
        for finding in findings:
            print(f"  [{finding.kind}] {finding.message}")

        if output_path:
            f = open(output_path, "w", newline="")
        else:
            f = io.StringIO()

        writer = csv.writer(f)
        writer.writerow(["kind", "code", "message", "school_ids", "occurrences"])
        for finding in findings:
            writer.writerow([
                finding.kind,
                finding.code,
                finding.message,
                ";".join(finding.school_ids),
                finding.occurrences,
            ])

        if output_path:
            f.close()
            print(f"\nCSV written to {output_path}")
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Report reconciliation gaps and code drift")
    parser.add_argument("--output", "-o", help="Output CSV path (default: print only)")
    args = parser.parse_args()
    report(args.output)
