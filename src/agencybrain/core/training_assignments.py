"""Training assignments.

Assign modules to staff users in bulk, edit due dates, remove assignments
and list them with their current status.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any

import structlog

from agencybrain.core.training_progress import get_status
from agencybrain.db.database import generate_id, get_db, now_iso

logger = structlog.get_logger(__name__)


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class Assignment:
    """A module assigned to a staff user."""

    id: str
    agency_id: str
    staff_user_id: str
    module_id: str
    assigned_by: str | None
    assigned_at: str
    due_date: str | None
    staff_name: str | None = None
    module_name: str | None = None
    completed_lessons: int = 0
    total_lessons: int = 0
    status: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agency_id": self.agency_id,
            "staff_user_id": self.staff_user_id,
            "module_id": self.module_id,
            "assigned_by": self.assigned_by,
            "assigned_at": self.assigned_at,
            "due_date": self.due_date,
            "staff_name": self.staff_name,
            "module_name": self.module_name,
            "completed_lessons": self.completed_lessons,
            "total_lessons": self.total_lessons,
            "status": self.status,
        }


@dataclass
class BulkAssignResult:
    """Result of a bulk assignment."""

    success: bool
    created: list[Assignment]
    skipped: list[tuple[str, str]]
    message: str
    warnings: list[str] = field(default_factory=list)


class TrainingAssignmentError(Exception):
    """Base error for assignment operations."""

    pass


class AssignmentValidationError(TrainingAssignmentError):
    """Form input rejected."""

    pass


class AssignmentNotFoundError(TrainingAssignmentError):
    """Assignment does not exist."""

    pass


def _normalize_due_date(due_date: str | date | None) -> str | None:
    if due_date is None or due_date == "":
        return None
    if isinstance(due_date, date):
        return due_date.isoformat()
    try:
        return date.fromisoformat(str(due_date)[:10]).isoformat()
    except ValueError as e:
        raise AssignmentValidationError(f"Invalid due date: {due_date}") from e


# =============================================================================
# MUTATIONS
# =============================================================================


def bulk_assign(
    agency_id: str,
    staff_user_ids: list[str],
    module_ids: list[str],
    due_date: str | date | None = None,
    assigned_by: str | None = None,
) -> BulkAssignResult:
    """Assign every selected module to every selected staff user.

    Pairs that are already assigned are skipped and reported in the result.

    Raises:
        AssignmentValidationError: Empty selection, unknown staff or module
    """
    if not staff_user_ids:
        raise AssignmentValidationError("Please select at least one staff member")
    if not module_ids:
        raise AssignmentValidationError("Please select at least one module")

    due = _normalize_due_date(due_date)
    staff_ids = list(dict.fromkeys(staff_user_ids))
    mod_ids = list(dict.fromkeys(module_ids))
    assigned_at = now_iso()

    created: list[Assignment] = []
    skipped: list[tuple[str, str]] = []

    with get_db() as conn:
        for staff_id in staff_ids:
            row = conn.execute(
                "SELECT 1 FROM staff_users WHERE id = ? AND agency_id = ?",
                (staff_id, agency_id),
            ).fetchone()
            if row is None:
                raise AssignmentValidationError(f"Staff user not found: {staff_id}")
        for module_id in mod_ids:
            row = conn.execute(
                "SELECT 1 FROM training_modules WHERE id = ? AND agency_id = ?",
                (module_id, agency_id),
            ).fetchone()
            if row is None:
                raise AssignmentValidationError(f"Module not found: {module_id}")

        for staff_id in staff_ids:
            for module_id in mod_ids:
                exists = conn.execute(
                    "SELECT 1 FROM training_assignments WHERE staff_user_id = ? AND module_id = ?",
                    (staff_id, module_id),
                ).fetchone()
                if exists is not None:
                    skipped.append((staff_id, module_id))
                    continue

                assignment = Assignment(
                    id=generate_id(),
                    agency_id=agency_id,
                    staff_user_id=staff_id,
                    module_id=module_id,
                    assigned_by=assigned_by,
                    assigned_at=assigned_at,
                    due_date=due,
                )
                conn.execute(
                    """
                    INSERT INTO training_assignments (
                        id, agency_id, staff_user_id, module_id, assigned_by, assigned_at, due_date
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        assignment.id,
                        agency_id,
                        staff_id,
                        module_id,
                        assigned_by,
                        assigned_at,
                        due,
                    ),
                )
                created.append(assignment)

    warnings = []
    if skipped:
        warnings.append(f"{len(skipped)} assignment(s) already existed and were skipped")

    logger.info(
        "training.assignments_created",
        agency_id=agency_id,
        created=len(created),
        skipped=len(skipped),
    )

    return BulkAssignResult(
        success=True,
        created=created,
        skipped=skipped,
        message=f"Created {len(created)} assignment(s)",
        warnings=warnings,
    )


def update_assignment_due_date(
    agency_id: str,
    assignment_id: str,
    due_date: str | date | None,
) -> Assignment:
    """Set or clear an assignment's due date."""
    due = _normalize_due_date(due_date)
    with get_db() as conn:
        cursor = conn.execute(
            "UPDATE training_assignments SET due_date = ? WHERE id = ? AND agency_id = ?",
            (due, assignment_id, agency_id),
        )
        if cursor.rowcount == 0:
            raise AssignmentNotFoundError(f"Assignment not found: {assignment_id}")

    logger.info("training.assignment_updated", assignment_id=assignment_id, due_date=due)
    return get_assignment(agency_id, assignment_id)


def delete_assignment(agency_id: str, assignment_id: str) -> None:
    with get_db() as conn:
        cursor = conn.execute(
            "DELETE FROM training_assignments WHERE id = ? AND agency_id = ?",
            (assignment_id, agency_id),
        )
        if cursor.rowcount == 0:
            raise AssignmentNotFoundError(f"Assignment not found: {assignment_id}")
    logger.info("training.assignment_deleted", assignment_id=assignment_id)


# =============================================================================
# QUERIES
# =============================================================================


_LIST_QUERY = """
    SELECT
        a.*,
        COALESCE(su.display_name, su.email) AS staff_name,
        m.name AS module_name,
        (SELECT COUNT(*) FROM training_lessons l WHERE l.module_id = a.module_id) AS total_lessons,
        (SELECT COUNT(*) FROM staff_lesson_progress p
         JOIN training_lessons l ON l.id = p.lesson_id
         WHERE l.module_id = a.module_id
           AND p.staff_user_id = a.staff_user_id
           AND p.completed = 1) AS completed_lessons
    FROM training_assignments a
    JOIN staff_users su ON su.id = a.staff_user_id
    JOIN training_modules m ON m.id = a.module_id
    WHERE a.agency_id = ?
"""


def _row_to_assignment(row: Any, today: date) -> Assignment:
    return Assignment(
        id=row["id"],
        agency_id=row["agency_id"],
        staff_user_id=row["staff_user_id"],
        module_id=row["module_id"],
        assigned_by=row["assigned_by"],
        assigned_at=row["assigned_at"],
        due_date=row["due_date"],
        staff_name=row["staff_name"],
        module_name=row["module_name"],
        completed_lessons=row["completed_lessons"],
        total_lessons=row["total_lessons"],
        status=get_status(row["completed_lessons"], row["total_lessons"], row["due_date"], today),
    )


def get_assignment(agency_id: str, assignment_id: str, today: date | None = None) -> Assignment:
    if today is None:
        today = date.today()
    with get_db() as conn:
        row = conn.execute(_LIST_QUERY + " AND a.id = ?", (agency_id, assignment_id)).fetchone()
    if row is None:
        raise AssignmentNotFoundError(f"Assignment not found: {assignment_id}")
    return _row_to_assignment(row, today)


def list_assignments(
    agency_id: str,
    staff_user_id: str | None = None,
    module_id: str | None = None,
    status: str | None = None,
    today: date | None = None,
) -> list[Assignment]:
    """List assignments with staff/module names and current status.

    Args:
        agency_id: Agency to list
        staff_user_id: Only this staff user
        module_id: Only this module
        status: Only assignments with this status ("all" or None keeps all)
        today: Reference date for the overdue check
    """
    if today is None:
        today = date.today()

    query = _LIST_QUERY
    params: list[Any] = [agency_id]
    if staff_user_id:
        query += " AND a.staff_user_id = ?"
        params.append(staff_user_id)
    if module_id:
        query += " AND a.module_id = ?"
        params.append(module_id)
    query += " ORDER BY a.assigned_at DESC"

    with get_db() as conn:
        rows = conn.execute(query, params).fetchall()

    assignments = [_row_to_assignment(r, today) for r in rows]
    if status and status != "all":
        assignments = [a for a in assignments if a.status == status]
    return assignments
