"""Training content tree.

Agency-scoped CRUD for categories, modules, lessons and quizzes:

    category -> module -> lesson -> quiz -> question -> option

Deleting a node cascades to its children through the schema. The admin UI
shows a single confirmation dialog fed by get_delete_impact().
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from typing import Any, Literal

import structlog

from agencybrain.db.database import generate_id, get_db, now_iso

logger = structlog.get_logger(__name__)

QuestionType = Literal["multiple_choice", "true_false", "text_response"]
NodeKind = Literal["category", "module", "lesson", "quiz"]

QUESTION_TYPES = ("multiple_choice", "true_false", "text_response")
CHOICE_TYPES = ("multiple_choice", "true_false")


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class Category:
    """Top level of the content tree."""

    id: str
    agency_id: str
    name: str
    description: str | None
    sort_order: int
    is_active: bool
    created_at: str
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agency_id": self.agency_id,
            "name": self.name,
            "description": self.description,
            "sort_order": self.sort_order,
            "is_active": self.is_active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class Module:
    """A module inside a category."""

    id: str
    agency_id: str
    category_id: str
    name: str
    description: str | None
    sort_order: int
    is_active: bool
    created_at: str
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agency_id": self.agency_id,
            "category_id": self.category_id,
            "name": self.name,
            "description": self.description,
            "sort_order": self.sort_order,
            "is_active": self.is_active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class Lesson:
    """A lesson inside a module."""

    id: str
    agency_id: str
    module_id: str
    name: str
    description: str | None
    video_url: str | None
    video_platform: str | None
    content_html: str | None
    thumbnail_url: str | None
    sort_order: int
    is_active: bool
    created_at: str
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agency_id": self.agency_id,
            "module_id": self.module_id,
            "name": self.name,
            "description": self.description,
            "video_url": self.video_url,
            "video_platform": self.video_platform,
            "content_html": self.content_html,
            "thumbnail_url": self.thumbnail_url,
            "sort_order": self.sort_order,
            "is_active": self.is_active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class QuizOption:
    """Answer option for a choice question."""

    id: str
    option_text: str
    is_correct: bool
    sort_order: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "option_text": self.option_text,
            "is_correct": self.is_correct,
            "sort_order": self.sort_order,
        }


@dataclass
class QuizQuestion:
    """A quiz question with its options."""

    id: str
    question_text: str
    question_type: str
    sort_order: int
    options: list[QuizOption] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "question_text": self.question_text,
            "question_type": self.question_type,
            "sort_order": self.sort_order,
            "options": [o.to_dict() for o in self.options],
        }


@dataclass
class Quiz:
    """A quiz attached to a lesson."""

    id: str
    agency_id: str
    lesson_id: str
    name: str
    description: str | None
    is_active: bool
    created_at: str
    questions: list[QuizQuestion] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agency_id": self.agency_id,
            "lesson_id": self.lesson_id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "created_at": self.created_at,
            "questions": [q.to_dict() for q in self.questions],
        }


@dataclass
class DeleteImpact:
    """What a delete will take with it."""

    kind: str
    id: str
    name: str
    dependent_count: int
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "id": self.id,
            "name": self.name,
            "dependent_count": self.dependent_count,
            "message": self.message,
        }


class TrainingContentError(Exception):
    """Base error for content tree operations."""

    pass


class ContentValidationError(TrainingContentError):
    """Form input rejected."""

    pass


class ContentNotFoundError(TrainingContentError):
    """Node does not exist in the agency."""

    pass


# =============================================================================
# HELPERS
# =============================================================================


def _require_name(name: str | None, label: str = "Name") -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ContentValidationError(f"{label} is required")
    return cleaned


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _next_sort_order(conn: sqlite3.Connection, table: str, parent_column: str, parent_id: str) -> int:
    row = conn.execute(
        f"SELECT COALESCE(MAX(sort_order), -1) + 1 AS next FROM {table} WHERE {parent_column} = ?",
        (parent_id,),
    ).fetchone()
    return int(row["next"])


def _row_to_category(row: sqlite3.Row) -> Category:
    return Category(
        id=row["id"],
        agency_id=row["agency_id"],
        name=row["name"],
        description=row["description"],
        sort_order=row["sort_order"],
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_module(row: sqlite3.Row) -> Module:
    return Module(
        id=row["id"],
        agency_id=row["agency_id"],
        category_id=row["category_id"],
        name=row["name"],
        description=row["description"],
        sort_order=row["sort_order"],
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_lesson(row: sqlite3.Row) -> Lesson:
    return Lesson(
        id=row["id"],
        agency_id=row["agency_id"],
        module_id=row["module_id"],
        name=row["name"],
        description=row["description"],
        video_url=row["video_url"],
        video_platform=row["video_platform"],
        content_html=row["content_html"],
        thumbnail_url=row["thumbnail_url"],
        sort_order=row["sort_order"],
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _fetch(conn: sqlite3.Connection, table: str, agency_id: str, node_id: str, label: str) -> sqlite3.Row:
    row = conn.execute(
        f"SELECT * FROM {table} WHERE id = ? AND agency_id = ?", (node_id, agency_id)
    ).fetchone()
    if row is None:
        raise ContentNotFoundError(f"{label} not found: {node_id}")
    return row


def _apply_update(
    conn: sqlite3.Connection,
    table: str,
    node_id: str,
    changes: dict[str, Any],
) -> None:
    if not changes:
        return
    changes["updated_at"] = now_iso()
    assignments = ", ".join(f"{column} = ?" for column in changes)
    conn.execute(
        f"UPDATE {table} SET {assignments} WHERE id = ?",
        (*changes.values(), node_id),
    )


def _common_changes(
    name: str | None,
    description: str | None,
    sort_order: int | None,
    is_active: bool | None,
) -> dict[str, Any]:
    changes: dict[str, Any] = {}
    if name is not None:
        changes["name"] = _require_name(name)
    if description is not None:
        changes["description"] = _clean(description)
    if sort_order is not None:
        changes["sort_order"] = sort_order
    if is_active is not None:
        changes["is_active"] = 1 if is_active else 0
    return changes


# =============================================================================
# CATEGORIES
# =============================================================================


def create_category(
    agency_id: str,
    name: str,
    description: str | None = None,
    sort_order: int | None = None,
) -> Category:
    """Create a category at the end of the agency's list unless sort_order is given."""
    name = _require_name(name)
    timestamp = now_iso()
    category_id = generate_id()

    with get_db() as conn:
        if sort_order is None:
            sort_order = _next_sort_order(conn, "training_categories", "agency_id", agency_id)
        conn.execute(
            """
            INSERT INTO training_categories (
                id, agency_id, name, description, sort_order, is_active, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, 1, ?, ?)
            """,
            (category_id, agency_id, name, _clean(description), sort_order, timestamp, timestamp),
        )
        row = _fetch(conn, "training_categories", agency_id, category_id, "Category")

    logger.info("training.category_created", agency_id=agency_id, category_id=category_id)
    return _row_to_category(row)


def update_category(
    agency_id: str,
    category_id: str,
    name: str | None = None,
    description: str | None = None,
    sort_order: int | None = None,
    is_active: bool | None = None,
) -> Category:
    with get_db() as conn:
        _fetch(conn, "training_categories", agency_id, category_id, "Category")
        _apply_update(
            conn,
            "training_categories",
            category_id,
            _common_changes(name, description, sort_order, is_active),
        )
        row = _fetch(conn, "training_categories", agency_id, category_id, "Category")
    return _row_to_category(row)


def list_categories(agency_id: str, active_only: bool = False) -> list[Category]:
    query = "SELECT * FROM training_categories WHERE agency_id = ?"
    if active_only:
        query += " AND is_active = 1"
    query += " ORDER BY sort_order, name"
    with get_db() as conn:
        rows = conn.execute(query, (agency_id,)).fetchall()
    return [_row_to_category(r) for r in rows]


def delete_category(agency_id: str, category_id: str) -> None:
    """Delete a category with its modules, lessons and quizzes."""
    with get_db() as conn:
        _fetch(conn, "training_categories", agency_id, category_id, "Category")
        conn.execute("DELETE FROM training_categories WHERE id = ?", (category_id,))
    logger.info("training.category_deleted", agency_id=agency_id, category_id=category_id)


# =============================================================================
# MODULES
# =============================================================================


def create_module(
    agency_id: str,
    category_id: str,
    name: str,
    description: str | None = None,
    sort_order: int | None = None,
) -> Module:
    """Create a module in a category of the same agency."""
    name = _require_name(name)
    timestamp = now_iso()
    module_id = generate_id()

    with get_db() as conn:
        _fetch(conn, "training_categories", agency_id, category_id, "Category")
        if sort_order is None:
            sort_order = _next_sort_order(conn, "training_modules", "category_id", category_id)
        conn.execute(
            """
            INSERT INTO training_modules (
                id, agency_id, category_id, name, description, sort_order,
                is_active, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
            """,
            (
                module_id,
                agency_id,
                category_id,
                name,
                _clean(description),
                sort_order,
                timestamp,
                timestamp,
            ),
        )
        row = _fetch(conn, "training_modules", agency_id, module_id, "Module")

    logger.info("training.module_created", agency_id=agency_id, module_id=module_id)
    return _row_to_module(row)


def update_module(
    agency_id: str,
    module_id: str,
    name: str | None = None,
    description: str | None = None,
    sort_order: int | None = None,
    is_active: bool | None = None,
    category_id: str | None = None,
) -> Module:
    with get_db() as conn:
        _fetch(conn, "training_modules", agency_id, module_id, "Module")
        changes = _common_changes(name, description, sort_order, is_active)
        if category_id is not None:
            _fetch(conn, "training_categories", agency_id, category_id, "Category")
            changes["category_id"] = category_id
        _apply_update(conn, "training_modules", module_id, changes)
        row = _fetch(conn, "training_modules", agency_id, module_id, "Module")
    return _row_to_module(row)


def list_modules(agency_id: str, category_id: str | None = None) -> list[Module]:
    query = "SELECT * FROM training_modules WHERE agency_id = ?"
    params: list[Any] = [agency_id]
    if category_id is not None:
        query += " AND category_id = ?"
        params.append(category_id)
    query += " ORDER BY sort_order, name"
    with get_db() as conn:
        rows = conn.execute(query, params).fetchall()
    return [_row_to_module(r) for r in rows]


def delete_module(agency_id: str, module_id: str) -> None:
    with get_db() as conn:
        _fetch(conn, "training_modules", agency_id, module_id, "Module")
        conn.execute("DELETE FROM training_modules WHERE id = ?", (module_id,))
    logger.info("training.module_deleted", agency_id=agency_id, module_id=module_id)


# =============================================================================
# LESSONS
# =============================================================================


def create_lesson(
    agency_id: str,
    module_id: str,
    name: str,
    description: str | None = None,
    video_url: str | None = None,
    video_platform: str | None = None,
    content_html: str | None = None,
    thumbnail_url: str | None = None,
    sort_order: int | None = None,
) -> Lesson:
    """Create a lesson in a module of the same agency."""
    name = _require_name(name)
    timestamp = now_iso()
    lesson_id = generate_id()

    with get_db() as conn:
        _fetch(conn, "training_modules", agency_id, module_id, "Module")
        if sort_order is None:
            sort_order = _next_sort_order(conn, "training_lessons", "module_id", module_id)
        conn.execute(
            """
            INSERT INTO training_lessons (
                id, agency_id, module_id, name, description, video_url,
                video_platform, content_html, thumbnail_url, sort_order,
                is_active, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
            """,
            (
                lesson_id,
                agency_id,
                module_id,
                name,
                _clean(description),
                _clean(video_url),
                _clean(video_platform),
                content_html,
                _clean(thumbnail_url),
                sort_order,
                timestamp,
                timestamp,
            ),
        )
        row = _fetch(conn, "training_lessons", agency_id, lesson_id, "Lesson")

    logger.info("training.lesson_created", agency_id=agency_id, lesson_id=lesson_id)
    return _row_to_lesson(row)


def update_lesson(
    agency_id: str,
    lesson_id: str,
    name: str | None = None,
    description: str | None = None,
    video_url: str | None = None,
    video_platform: str | None = None,
    content_html: str | None = None,
    thumbnail_url: str | None = None,
    sort_order: int | None = None,
    is_active: bool | None = None,
) -> Lesson:
    with get_db() as conn:
        _fetch(conn, "training_lessons", agency_id, lesson_id, "Lesson")
        changes = _common_changes(name, description, sort_order, is_active)
        if video_url is not None:
            changes["video_url"] = _clean(video_url)
        if video_platform is not None:
            changes["video_platform"] = _clean(video_platform)
        if content_html is not None:
            changes["content_html"] = content_html
        if thumbnail_url is not None:
            changes["thumbnail_url"] = _clean(thumbnail_url)
        _apply_update(conn, "training_lessons", lesson_id, changes)
        row = _fetch(conn, "training_lessons", agency_id, lesson_id, "Lesson")
    return _row_to_lesson(row)


def list_lessons(agency_id: str, module_id: str | None = None) -> list[Lesson]:
    query = "SELECT * FROM training_lessons WHERE agency_id = ?"
    params: list[Any] = [agency_id]
    if module_id is not None:
        query += " AND module_id = ?"
        params.append(module_id)
    query += " ORDER BY sort_order, name"
    with get_db() as conn:
        rows = conn.execute(query, params).fetchall()
    return [_row_to_lesson(r) for r in rows]


def delete_lesson(agency_id: str, lesson_id: str) -> None:
    with get_db() as conn:
        _fetch(conn, "training_lessons", agency_id, lesson_id, "Lesson")
        conn.execute("DELETE FROM training_lessons WHERE id = ?", (lesson_id,))
    logger.info("training.lesson_deleted", agency_id=agency_id, lesson_id=lesson_id)


# =============================================================================
# QUIZZES
# =============================================================================


def _validate_questions(questions: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Check question payloads and return cleaned copies.

    Each question needs text and a known type. Choice questions need at
    least one option, and at least one option marked correct.
    """
    if not questions:
        raise ContentValidationError("A quiz needs at least one question")

    cleaned = []
    for index, question in enumerate(questions, start=1):
        text = (question.get("question_text") or "").strip()
        if not text:
            raise ContentValidationError(f"Question {index}: text is required")

        qtype = question.get("question_type", "multiple_choice")
        if qtype not in QUESTION_TYPES:
            raise ContentValidationError(f"Question {index}: unknown type '{qtype}'")

        options = []
        if qtype in CHOICE_TYPES:
            for option in question.get("options") or []:
                option_text = (option.get("option_text") or "").strip()
                if option_text:
                    options.append(
                        {"option_text": option_text, "is_correct": bool(option.get("is_correct"))}
                    )
            if not options:
                raise ContentValidationError(f"Question {index}: at least one option is required")
            if not any(o["is_correct"] for o in options):
                raise ContentValidationError(f"Question {index}: mark at least one correct option")

        cleaned.append({"question_text": text, "question_type": qtype, "options": options})

    return cleaned


def create_quiz_with_questions(
    agency_id: str,
    lesson_id: str,
    name: str,
    questions: list[dict[str, Any]],
    description: str | None = None,
) -> Quiz:
    """Create a quiz with its questions and options in one transaction.

    Args:
        agency_id: Owning agency
        lesson_id: Lesson the quiz belongs to
        name: Quiz name
        questions: Dicts with question_text, question_type and options
            (each option a dict with option_text and is_correct)
        description: Optional description

    Returns:
        The created Quiz with questions

    Raises:
        ContentValidationError: Invalid name or questions
        ContentNotFoundError: Lesson not found in the agency
    """
    name = _require_name(name, "Quiz name")
    cleaned = _validate_questions(questions)
    quiz_id = generate_id()
    timestamp = now_iso()

    with get_db() as conn:
        _fetch(conn, "training_lessons", agency_id, lesson_id, "Lesson")
        conn.execute(
            """
            INSERT INTO training_quizzes (
                id, agency_id, lesson_id, name, description, is_active, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, 1, ?, ?)
            """,
            (quiz_id, agency_id, lesson_id, name, _clean(description), timestamp, timestamp),
        )

        for q_order, question in enumerate(cleaned):
            question_id = generate_id()
            conn.execute(
                """
                INSERT INTO training_quiz_questions (
                    id, quiz_id, question_text, question_type, sort_order
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (question_id, quiz_id, question["question_text"], question["question_type"], q_order),
            )
            for o_order, option in enumerate(question["options"]):
                conn.execute(
                    """
                    INSERT INTO training_quiz_options (
                        id, question_id, option_text, is_correct, sort_order
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        generate_id(),
                        question_id,
                        option["option_text"],
                        1 if option["is_correct"] else 0,
                        o_order,
                    ),
                )

    logger.info(
        "training.quiz_created",
        agency_id=agency_id,
        quiz_id=quiz_id,
        questions=len(cleaned),
    )
    quiz = get_quiz(agency_id, quiz_id)
    if quiz is None:
        raise ContentNotFoundError(f"Quiz not found: {quiz_id}")
    return quiz


def get_quiz(agency_id: str, quiz_id: str) -> Quiz | None:
    """Load a quiz with questions and options in display order."""
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM training_quizzes WHERE id = ? AND agency_id = ?",
            (quiz_id, agency_id),
        ).fetchone()
        if row is None:
            return None

        question_rows = conn.execute(
            "SELECT * FROM training_quiz_questions WHERE quiz_id = ? ORDER BY sort_order",
            (quiz_id,),
        ).fetchall()
        option_rows = conn.execute(
            """
            SELECT o.* FROM training_quiz_options o
            JOIN training_quiz_questions q ON q.id = o.question_id
            WHERE q.quiz_id = ?
            ORDER BY o.sort_order
            """,
            (quiz_id,),
        ).fetchall()

    options_by_question: dict[str, list[QuizOption]] = {}
    for o in option_rows:
        options_by_question.setdefault(o["question_id"], []).append(
            QuizOption(
                id=o["id"],
                option_text=o["option_text"],
                is_correct=bool(o["is_correct"]),
                sort_order=o["sort_order"],
            )
        )

    return Quiz(
        id=row["id"],
        agency_id=row["agency_id"],
        lesson_id=row["lesson_id"],
        name=row["name"],
        description=row["description"],
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
        questions=[
            QuizQuestion(
                id=q["id"],
                question_text=q["question_text"],
                question_type=q["question_type"],
                sort_order=q["sort_order"],
                options=options_by_question.get(q["id"], []),
            )
            for q in question_rows
        ],
    )


def list_quizzes(agency_id: str, lesson_id: str | None = None) -> list[Quiz]:
    """List quizzes without loading their questions."""
    query = "SELECT * FROM training_quizzes WHERE agency_id = ?"
    params: list[Any] = [agency_id]
    if lesson_id is not None:
        query += " AND lesson_id = ?"
        params.append(lesson_id)
    query += " ORDER BY created_at"
    with get_db() as conn:
        rows = conn.execute(query, params).fetchall()
    return [
        Quiz(
            id=r["id"],
            agency_id=r["agency_id"],
            lesson_id=r["lesson_id"],
            name=r["name"],
            description=r["description"],
            is_active=bool(r["is_active"]),
            created_at=r["created_at"],
        )
        for r in rows
    ]


def delete_quiz(agency_id: str, quiz_id: str) -> None:
    with get_db() as conn:
        _fetch(conn, "training_quizzes", agency_id, quiz_id, "Quiz")
        conn.execute("DELETE FROM training_quizzes WHERE id = ?", (quiz_id,))
    logger.info("training.quiz_deleted", agency_id=agency_id, quiz_id=quiz_id)


# =============================================================================
# DELETE CONFIRMATION
# =============================================================================


_IMPACT_QUERIES: dict[str, tuple[str, str, str]] = {
    # kind -> (table, label, count query)
    "category": (
        "training_categories",
        "Category",
        """
        SELECT
            (SELECT COUNT(*) FROM training_modules WHERE category_id = :id)
          + (SELECT COUNT(*) FROM training_lessons l
             JOIN training_modules m ON m.id = l.module_id
             WHERE m.category_id = :id) AS n
        """,
    ),
    "module": (
        "training_modules",
        "Module",
        "SELECT COUNT(*) AS n FROM training_lessons WHERE module_id = :id",
    ),
    "lesson": (
        "training_lessons",
        "Lesson",
        "SELECT COUNT(*) AS n FROM training_quizzes WHERE lesson_id = :id",
    ),
    "quiz": (
        "training_quizzes",
        "Quiz",
        "SELECT COUNT(*) AS n FROM training_quiz_questions WHERE quiz_id = :id",
    ),
}

_DEPENDENT_NOUNS = {
    "category": "modules and lessons",
    "module": "lessons",
    "lesson": "quizzes",
    "quiz": "questions",
}


def get_delete_impact(agency_id: str, kind: NodeKind, node_id: str) -> DeleteImpact:
    """Count the rows a delete would remove along with the node.

    category -> modules + lessons, module -> lessons, lesson -> quizzes,
    quiz -> questions.
    """
    if kind not in _IMPACT_QUERIES:
        raise ContentValidationError(f"Unknown content type: {kind}")

    table, label, count_query = _IMPACT_QUERIES[kind]
    with get_db() as conn:
        row = _fetch(conn, table, agency_id, node_id, label)
        count = int(conn.execute(count_query, {"id": node_id}).fetchone()["n"])

    message = f'Delete {label.lower()} "{row["name"]}"?'
    if count:
        message += f" This will also delete {count} {_DEPENDENT_NOUNS[kind]}."

    return DeleteImpact(
        kind=kind,
        id=node_id,
        name=row["name"],
        dependent_count=count,
        message=message,
    )
