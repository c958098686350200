"""Student enrollment sync.

Keeps StudentIdentity rows in step with the SIS roster of one school. A
student's canonical id is stable across transfers: moving schools closes
the current identity row and opens a new one carrying the same canonical id.
Grade changes within a school are applied in place.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date

from sqlalchemy import select

from attendance_sync.errors import ValidationError
from attendance_sync.models.school import School
from attendance_sync.models.student import StudentIdentity
from attendance_sync.normalizers.base import student_id_of

logger = logging.getLogger(__name__)

GRADE_ALIASES = {
    "K": 0,
    "KN": 0,
    "TK": -1,
}


def parse_grade(value) -> int | None:
    """Grade level as an int: ``"K"`` is 0, ``"TK"`` is -1."""
    if value is None:
        return None
    text = str(value).strip().upper()
    if not text:
        return None
    if text in GRADE_ALIASES:
        return GRADE_ALIASES[text]
    try:
        return int(float(text))
    except ValueError:
        return None


@dataclass
class EnrollmentResult:
    created: int = 0
    transferred: int = 0
    regraded: int = 0
    unchanged: int = 0
    errors: list[ValidationError] = field(default_factory=list)

    @property
    def synced(self) -> int:
        return self.created + self.transferred + self.regraded + self.unchanged


def sync_enrollment(db, school: School, records: list[dict], as_of: date) -> EnrollmentResult:
    """Apply one school's roster to StudentIdentity. Commits."""
    result = EnrollmentResult()

    roster: dict[str, int] = {}
    for record in records:
        if not isinstance(record, dict):
            result.errors.append(ValidationError("Enrollment record is not a JSON object"))
            continue
        sid = student_id_of(record)
        grade = parse_grade(record.get("Grade"))
        if sid is None or grade is None:
            result.errors.append(ValidationError(
                "Enrollment record missing StudentID or Grade",
                details={"student_id": sid, "grade": record.get("Grade")},
            ))
            continue
        roster[sid] = grade

    current_rows = {}
    history: dict[str, uuid.UUID] = {}
    ids = sorted(roster)
    for i in range(0, len(ids), 500):
        chunk = ids[i:i + 500]
        for row in db.execute(
            select(StudentIdentity).where(StudentIdentity.source_student_id.in_(chunk))
        ).scalars():
            history.setdefault(row.source_student_id, row.canonical_student_id)
            if row.is_current:
                current_rows[row.source_student_id] = row

    for sid, grade in roster.items():
        current = current_rows.get(sid)

        if current is None:
            db.add(StudentIdentity(
                id=uuid.uuid4(),
                canonical_student_id=history.get(sid, uuid.uuid4()),
                source_student_id=sid,
                school_id=school.id,
                grade_level=grade,
                effective_from=as_of,
                is_current=True,
            ))
            result.created += 1
            continue

        if current.school_id != school.id:
            current.effective_to = as_of
            current.is_current = False
            db.add(StudentIdentity(
                id=uuid.uuid4(),
                canonical_student_id=current.canonical_student_id,
                source_student_id=sid,
                school_id=school.id,
                grade_level=grade,
                effective_from=as_of,
                is_current=True,
            ))
            result.transferred += 1
            continue

        if current.grade_level != grade:
            current.grade_level = grade
            result.regraded += 1
        else:
            result.unchanged += 1

    db.commit()

    if result.errors:
        logger.warning(f"[{school.code}] {len(result.errors)} enrollment records rejected")
    logger.info(
        f"[{school.code}] Enrollment: {result.created} new, {result.transferred} transferred, "
        f"{result.regraded} regraded, {result.unchanged} unchanged"
    )
    return result
