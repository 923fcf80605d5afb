"""Training progress and analytics.

Responsibilities:
- Record lesson completion and quiz attempts for staff users
- Classify assignment status (Completed / Overdue / In Progress / Not Started)
- Build the agency progress report: per-staff rows, summary totals and
  quiz score rows, with filtering and sorting for the admin table
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Literal

import structlog

from agencybrain.db.database import generate_id, get_db, now_iso

logger = structlog.get_logger(__name__)

AssignmentStatus = Literal["Completed", "Overdue", "In Progress", "Not Started"]
StaffStatus = Literal["On Track", "Behind", "Overdue"]
SortField = Literal["name", "modules", "completed", "percentage", "last_activity", "status"]

STATUS_COMPLETED = "Completed"
STATUS_OVERDUE = "Overdue"
STATUS_IN_PROGRESS = "In Progress"
STATUS_NOT_STARTED = "Not Started"

STAFF_ON_TRACK = "On Track"
STAFF_BEHIND = "Behind"
STAFF_OVERDUE = "Overdue"

STAFF_STATUS_ORDER = {STAFF_OVERDUE: 0, STAFF_BEHIND: 1, STAFF_ON_TRACK: 2}

BEHIND_THRESHOLD_PERCENT = 50


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class QuizAttemptResult:
    """Outcome of a graded quiz submission."""

    attempt_id: str
    quiz_id: str
    staff_user_id: str
    score_percent: int
    correct_count: int
    graded_count: int
    completed_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "quiz_id": self.quiz_id,
            "staff_user_id": self.staff_user_id,
            "score_percent": self.score_percent,
            "correct_count": self.correct_count,
            "graded_count": self.graded_count,
            "completed_at": self.completed_at,
        }


@dataclass
class StaffProgressRow:
    """One row of the staff progress table."""

    staff_user_id: str
    name: str
    email: str | None
    assigned_modules: int
    completed_lessons: int
    total_lessons: int
    completion_percentage: int
    last_activity: str | None
    status: str
    module_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "staff_user_id": self.staff_user_id,
            "name": self.name,
            "email": self.email,
            "assigned_modules": self.assigned_modules,
            "completed_lessons": self.completed_lessons,
            "total_lessons": self.total_lessons,
            "completion_percentage": self.completion_percentage,
            "last_activity": self.last_activity,
            "status": self.status,
            "module_ids": list(self.module_ids),
        }


@dataclass
class QuizScoreRow:
    """Latest and best score of one staff user on one quiz."""

    staff_user_id: str
    staff_name: str
    quiz_id: str
    quiz_name: str
    latest_score: int
    best_score: int
    attempts: int
    date: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "staff_user_id": self.staff_user_id,
            "staff_name": self.staff_name,
            "quiz_id": self.quiz_id,
            "quiz_name": self.quiz_name,
            "latest_score": self.latest_score,
            "best_score": self.best_score,
            "attempts": self.attempts,
            "date": self.date,
        }


@dataclass
class ProgressSummary:
    """Headline numbers above the progress table."""

    total_staff: int = 0
    total_completed: int = 0
    avg_completion: int = 0
    overdue_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_staff": self.total_staff,
            "total_completed": self.total_completed,
            "avg_completion": self.avg_completion,
            "overdue_count": self.overdue_count,
        }


@dataclass
class ProgressReport:
    """Full progress report for an agency."""

    agency_id: str
    summary: ProgressSummary
    staff: list[StaffProgressRow]
    quiz_scores: list[QuizScoreRow]

    def to_dict(self) -> dict[str, Any]:
        return {
            "agency_id": self.agency_id,
            "summary": self.summary.to_dict(),
            "staff": [s.to_dict() for s in self.staff],
            "quiz_scores": [q.to_dict() for q in self.quiz_scores],
        }


class TrainingProgressError(Exception):
    """Base error for progress operations."""

    pass


class ProgressNotFoundError(TrainingProgressError):
    """Staff user, lesson or quiz does not exist."""

    pass


# =============================================================================
# STATUS CLASSIFICATION
# =============================================================================


def _to_date(value: str | date | datetime | None) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def get_status(
    completed_lessons: int,
    total_lessons: int,
    due_date: str | date | None,
    today: date | None = None,
) -> str:
    """Classify an assignment.

    Precedence: Completed, Overdue, In Progress, Not Started. A due date
    is past when it is strictly before today.

    Args:
        completed_lessons: Lessons of the module the staff user completed
        total_lessons: Lessons in the module
        due_date: Optional due date (date or ISO string)
        today: Reference date (defaults to date.today())

    Returns:
        One of "Completed", "Overdue", "In Progress", "Not Started"
    """
    if today is None:
        today = date.today()

    if total_lessons > 0 and completed_lessons >= total_lessons:
        return STATUS_COMPLETED

    due = _to_date(due_date)
    if due is not None and due < today:
        return STATUS_OVERDUE

    if 0 < completed_lessons < total_lessons:
        return STATUS_IN_PROGRESS

    return STATUS_NOT_STARTED


def get_staff_status(
    assignment_statuses: list[str],
    completion_percentage: int,
    has_due_date: bool,
) -> str:
    """Roll assignment statuses up into the staff row status."""
    if STATUS_OVERDUE in assignment_statuses:
        return STAFF_OVERDUE
    if completion_percentage < BEHIND_THRESHOLD_PERCENT and has_due_date:
        return STAFF_BEHIND
    return STAFF_ON_TRACK


def _percent(part: int, whole: int) -> int:
    return round(part / whole * 100) if whole > 0 else 0


# =============================================================================
# RECORDING PROGRESS
# =============================================================================


def _require_staff(conn: sqlite3.Connection, agency_id: str, staff_user_id: str) -> None:
    row = conn.execute(
        "SELECT 1 FROM staff_users WHERE id = ? AND agency_id = ?",
        (staff_user_id, agency_id),
    ).fetchone()
    if row is None:
        raise ProgressNotFoundError(f"Staff user not found: {staff_user_id}")


def mark_lesson_complete(agency_id: str, staff_user_id: str, lesson_id: str) -> str:
    """Mark a lesson complete for a staff user.

    Completing an already completed lesson keeps the first completion time.
    The staff user and the lesson must both belong to the agency.

    Returns:
        The completion timestamp
    """
    with get_db() as conn:
        _require_staff(conn, agency_id, staff_user_id)
        lesson = conn.execute(
            "SELECT 1 FROM training_lessons WHERE id = ? AND agency_id = ?",
            (lesson_id, agency_id),
        ).fetchone()
        if lesson is None:
            raise ProgressNotFoundError(f"Lesson not found: {lesson_id}")

        existing = conn.execute(
            "SELECT completed, completed_at FROM staff_lesson_progress WHERE staff_user_id = ? AND lesson_id = ?",
            (staff_user_id, lesson_id),
        ).fetchone()
        if existing is not None and existing["completed"]:
            return existing["completed_at"]

        completed_at = now_iso()
        conn.execute(
            """
            INSERT INTO staff_lesson_progress (id, staff_user_id, lesson_id, completed, completed_at)
            VALUES (?, ?, ?, 1, ?)
            ON CONFLICT(staff_user_id, lesson_id)
            DO UPDATE SET completed = 1, completed_at = excluded.completed_at
            """,
            (generate_id(), staff_user_id, lesson_id, completed_at),
        )

    logger.info(
        "lesson_completed", agency_id=agency_id, staff_user_id=staff_user_id, lesson_id=lesson_id
    )
    return completed_at


def submit_quiz_attempt(
    agency_id: str,
    staff_user_id: str,
    quiz_id: str,
    answers: list[dict[str, Any]],
) -> QuizAttemptResult:
    """Grade and store a quiz attempt.

    Choice questions are correct when the selected option is marked correct.
    Text responses are stored but not graded. A quiz with no graded
    questions scores 100.

    Args:
        agency_id: Agency owning both the staff user and the quiz
        staff_user_id: Staff user taking the quiz
        quiz_id: Quiz identifier
        answers: Dicts with question_id and either option_id or text_response

    Returns:
        QuizAttemptResult with the rounded score

    Raises:
        ProgressNotFoundError: Staff user or quiz not found in the agency
    """
    with get_db() as conn:
        _require_staff(conn, agency_id, staff_user_id)

        quiz = conn.execute(
            "SELECT 1 FROM training_quizzes WHERE id = ? AND agency_id = ?",
            (quiz_id, agency_id),
        ).fetchone()
        if quiz is None:
            raise ProgressNotFoundError(f"Quiz not found: {quiz_id}")

        questions = conn.execute(
            "SELECT id, question_type FROM training_quiz_questions WHERE quiz_id = ?",
            (quiz_id,),
        ).fetchall()
        correct_options = {
            row["id"]: (row["question_id"], bool(row["is_correct"]))
            for row in conn.execute(
                """
                SELECT o.id, o.question_id, o.is_correct FROM training_quiz_options o
                JOIN training_quiz_questions q ON q.id = o.question_id
                WHERE q.quiz_id = ?
                """,
                (quiz_id,),
            ).fetchall()
        }

        answer_by_question = {a.get("question_id"): a for a in answers if a.get("question_id")}

        graded = 0
        correct = 0
        for question in questions:
            if question["question_type"] == "text_response":
                continue
            graded += 1
            answer = answer_by_question.get(question["id"]) or {}
            option = correct_options.get(answer.get("option_id"))
            if option is not None and option[0] == question["id"] and option[1]:
                correct += 1

        score = _percent(correct, graded) if graded else 100
        attempt_id = generate_id()
        completed_at = now_iso()

        conn.execute(
            """
            INSERT INTO training_quiz_attempts (
                id, agency_id, staff_user_id, quiz_id, score_percent, answers, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                attempt_id,
                agency_id,
                staff_user_id,
                quiz_id,
                score,
                json.dumps(answers, ensure_ascii=False),
                completed_at,
            ),
        )

    logger.info(
        "quiz_attempt_graded",
        agency_id=agency_id,
        staff_user_id=staff_user_id,
        quiz_id=quiz_id,
        score=score,
    )

    return QuizAttemptResult(
        attempt_id=attempt_id,
        quiz_id=quiz_id,
        staff_user_id=staff_user_id,
        score_percent=score,
        correct_count=correct,
        graded_count=graded,
        completed_at=completed_at,
    )


# =============================================================================
# REPORTING
# =============================================================================


def build_progress_report(agency_id: str, today: date | None = None) -> ProgressReport:
    """Build the agency progress report.

    Covers active staff only. Completed lessons are counted within the
    staff user's assigned modules.

    Args:
        agency_id: Agency to report on
        today: Reference date for due-date checks

    Returns:
        ProgressReport with summary, staff rows and quiz score rows
    """
    if today is None:
        today = date.today()

    with get_db() as conn:
        staff_users = conn.execute(
            "SELECT id, display_name, email FROM staff_users WHERE agency_id = ? AND is_active = 1",
            (agency_id,),
        ).fetchall()
        assignments = conn.execute(
            "SELECT staff_user_id, module_id, due_date FROM training_assignments WHERE agency_id = ?",
            (agency_id,),
        ).fetchall()
        lessons = conn.execute(
            "SELECT id, module_id FROM training_lessons WHERE agency_id = ?",
            (agency_id,),
        ).fetchall()
        progress = conn.execute(
            """
            SELECT p.staff_user_id, p.lesson_id, p.completed, p.completed_at
            FROM staff_lesson_progress p
            JOIN staff_users su ON su.id = p.staff_user_id
            WHERE su.agency_id = ?
            """,
            (agency_id,),
        ).fetchall()
        attempts = conn.execute(
            "SELECT staff_user_id, quiz_id, score_percent, completed_at FROM training_quiz_attempts WHERE agency_id = ?",
            (agency_id,),
        ).fetchall()
        quizzes = conn.execute(
            "SELECT id, name FROM training_quizzes WHERE agency_id = ?",
            (agency_id,),
        ).fetchall()

    # Lookup maps
    lessons_by_module: dict[str, set[str]] = {}
    for lesson in lessons:
        lessons_by_module.setdefault(lesson["module_id"], set()).add(lesson["id"])

    completed_by_staff: dict[str, set[str]] = {}
    activity_by_staff: dict[str, list[str]] = {}
    for p in progress:
        if p["completed"]:
            completed_by_staff.setdefault(p["staff_user_id"], set()).add(p["lesson_id"])
        if p["completed_at"]:
            activity_by_staff.setdefault(p["staff_user_id"], []).append(p["completed_at"])
    for a in attempts:
        if a["completed_at"]:
            activity_by_staff.setdefault(a["staff_user_id"], []).append(a["completed_at"])

    assignments_by_staff: dict[str, list[Any]] = {}
    for a in assignments:
        assignments_by_staff.setdefault(a["staff_user_id"], []).append(a)

    rows: list[StaffProgressRow] = []
    summary = ProgressSummary(total_staff=len(staff_users))
    total_assigned_lessons = 0

    for staff in staff_users:
        staff_id = staff["id"]
        staff_assignments = assignments_by_staff.get(staff_id, [])
        done = completed_by_staff.get(staff_id, set())

        completed_lessons = 0
        total_lessons = 0
        statuses = []
        for assignment in staff_assignments:
            module_lessons = lessons_by_module.get(assignment["module_id"], set())
            module_done = len(module_lessons & done)
            completed_lessons += module_done
            total_lessons += len(module_lessons)
            statuses.append(get_status(module_done, len(module_lessons), assignment["due_date"], today))

        percentage = _percent(completed_lessons, total_lessons)
        status = get_staff_status(
            statuses,
            percentage,
            any(a["due_date"] for a in staff_assignments),
        )

        activity = activity_by_staff.get(staff_id)
        rows.append(
            StaffProgressRow(
                staff_user_id=staff_id,
                name=staff["display_name"] or staff["email"] or "",
                email=staff["email"],
                assigned_modules=len(staff_assignments),
                completed_lessons=completed_lessons,
                total_lessons=total_lessons,
                completion_percentage=percentage,
                last_activity=max(activity) if activity else None,
                status=status,
                module_ids=[a["module_id"] for a in staff_assignments],
            )
        )

        summary.total_completed += completed_lessons
        summary.overdue_count += statuses.count(STATUS_OVERDUE)
        total_assigned_lessons += total_lessons

    summary.avg_completion = _percent(summary.total_completed, total_assigned_lessons)

    report = ProgressReport(
        agency_id=agency_id,
        summary=summary,
        staff=rows,
        quiz_scores=_build_quiz_scores(attempts, staff_users, quizzes),
    )

    logger.debug(
        "progress_report_built",
        agency_id=agency_id,
        staff=len(rows),
        overdue=summary.overdue_count,
    )
    return report


def _build_quiz_scores(attempts: list[Any], staff_users: list[Any], quizzes: list[Any]) -> list[QuizScoreRow]:
    """Group attempts by (staff, quiz) into latest/best score rows."""
    staff_names = {s["id"]: s["display_name"] or s["email"] or "Unknown" for s in staff_users}
    quiz_names = {q["id"]: q["name"] for q in quizzes}

    grouped: dict[tuple[str, str], list[Any]] = {}
    for attempt in attempts:
        grouped.setdefault((attempt["staff_user_id"], attempt["quiz_id"]), []).append(attempt)

    rows = []
    for (staff_id, quiz_id), group in grouped.items():
        latest = max(group, key=lambda a: a["completed_at"] or "")
        rows.append(
            QuizScoreRow(
                staff_user_id=staff_id,
                staff_name=staff_names.get(staff_id, "Unknown"),
                quiz_id=quiz_id,
                quiz_name=quiz_names.get(quiz_id, "Unknown Quiz"),
                latest_score=latest["score_percent"] or 0,
                best_score=max(a["score_percent"] or 0 for a in group),
                attempts=len(group),
                date=latest["completed_at"],
            )
        )

    rows.sort(key=lambda r: r.date or "", reverse=True)
    return rows


def _sort_key(row: StaffProgressRow, sort_field: str) -> Any:
    if sort_field == "name":
        return row.name.lower()
    if sort_field == "modules":
        return row.assigned_modules
    if sort_field == "completed":
        return row.completed_lessons
    if sort_field == "percentage":
        return row.completion_percentage
    if sort_field == "last_activity":
        return row.last_activity or ""
    if sort_field == "status":
        return STAFF_STATUS_ORDER.get(row.status, len(STAFF_STATUS_ORDER))
    raise ValueError(f"Unknown sort field: {sort_field}")


def filter_and_sort(
    rows: list[StaffProgressRow],
    search: str | None = None,
    status: str | None = None,
    module_id: str | None = None,
    sort_field: str = "name",
    direction: Literal["asc", "desc"] = "asc",
) -> list[StaffProgressRow]:
    """Filter and sort staff progress rows for the admin table.

    Args:
        rows: Rows from build_progress_report
        search: Case-insensitive match on name or email
        status: Keep only rows with this staff status ("all" or None keeps all)
        module_id: Keep only staff assigned to this module
        sort_field: name, modules, completed, percentage, last_activity or status
        direction: "asc" or "desc"

    Returns:
        New list of rows
    """
    result = list(rows)

    if search:
        needle = search.lower()
        result = [
            r for r in result
            if needle in r.name.lower() or (r.email and needle in r.email.lower())
        ]

    if status and status != "all":
        result = [r for r in result if r.status == status]

    if module_id and module_id != "all":
        result = [r for r in result if module_id in r.module_ids]

    result.sort(key=lambda r: _sort_key(r, sort_field), reverse=direction == "desc")
    return result
