"""SQLite database connection and schema management.

Provides connection management and schema initialization for the admin backend.
Every table is scoped by agency_id; referential rules live in the schema.
"""

from __future__ import annotations

import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator

import structlog

logger = structlog.get_logger(__name__)

# Default database location
DEFAULT_DB_PATH = Path("db/agencybrain.db")

# Active database path, set by init_db
_db_path: Path | None = None


def init_db(db_path: Path | None = None) -> None:
    """Initialize database with schema.

    Creates the database file and all required tables if they don't exist.

    Args:
        db_path: Path to database file. Defaults to db/agencybrain.db
    """
    global _db_path
    _db_path = db_path or DEFAULT_DB_PATH

    _db_path.parent.mkdir(parents=True, exist_ok=True)

    with get_db() as conn:
        _create_schema(conn)

    logger.info("database.initialized", path=str(_db_path))


def get_db_path() -> Path:
    """Return the database path currently in use."""
    return _db_path or DEFAULT_DB_PATH


@contextmanager
def get_db() -> Generator[sqlite3.Connection, None, None]:
    """Get database connection as context manager.

    Commits when the block exits normally, rolls back on any exception.

    Yields:
        SQLite connection with row factory set to sqlite3.Row

    Example:
        with get_db() as conn:
            rows = conn.execute("SELECT * FROM staff_users").fetchall()
    """
    db_path = get_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")

    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def generate_id() -> str:
    """New primary key value."""
    return str(uuid.uuid4())


def now_iso() -> str:
    """Current UTC timestamp in ISO 8601."""
    return datetime.now(timezone.utc).isoformat()


def _create_schema(conn: sqlite3.Connection) -> None:
    """Create database schema.

    Uses IF NOT EXISTS for idempotency.
    """
    conn.executescript(
        """
        -- Staff access
        CREATE TABLE IF NOT EXISTS team_members (
            id TEXT PRIMARY KEY,
            agency_id TEXT NOT NULL,
            name TEXT NOT NULL,
            role TEXT NOT NULL DEFAULT 'Sales',
            email TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS staff_users (
            id TEXT PRIMARY KEY,
            agency_id TEXT NOT NULL,
            username TEXT NOT NULL UNIQUE COLLATE NOCASE,
            display_name TEXT NOT NULL,
            email TEXT,
            password_hash TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            team_member_id TEXT UNIQUE REFERENCES team_members(id) ON DELETE SET NULL,
            last_login_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS staff_password_resets (
            token TEXT PRIMARY KEY,
            staff_user_id TEXT NOT NULL REFERENCES staff_users(id) ON DELETE CASCADE,
            email TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            used_at TEXT,
            created_at TEXT NOT NULL
        );

        -- Training content tree
        CREATE TABLE IF NOT EXISTS training_categories (
            id TEXT PRIMARY KEY,
            agency_id TEXT NOT NULL,
            name TEXT NOT NULL,
            description TEXT,
            sort_order INTEGER NOT NULL DEFAULT 0,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS training_modules (
            id TEXT PRIMARY KEY,
            agency_id TEXT NOT NULL,
            category_id TEXT NOT NULL REFERENCES training_categories(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            description TEXT,
            sort_order INTEGER NOT NULL DEFAULT 0,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS training_lessons (
            id TEXT PRIMARY KEY,
            agency_id TEXT NOT NULL,
            module_id TEXT NOT NULL REFERENCES training_modules(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            description TEXT,
            video_url TEXT,
            video_platform TEXT,
            content_html TEXT,
            thumbnail_url TEXT,
            sort_order INTEGER NOT NULL DEFAULT 0,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS training_quizzes (
            id TEXT PRIMARY KEY,
            agency_id TEXT NOT NULL,
            lesson_id TEXT NOT NULL REFERENCES training_lessons(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            description TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS training_quiz_questions (
            id TEXT PRIMARY KEY,
            quiz_id TEXT NOT NULL REFERENCES training_quizzes(id) ON DELETE CASCADE,
            question_text TEXT NOT NULL,
            question_type TEXT NOT NULL CHECK(question_type IN ('multiple_choice', 'true_false', 'text_response')),
            sort_order INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS training_quiz_options (
            id TEXT PRIMARY KEY,
            question_id TEXT NOT NULL REFERENCES training_quiz_questions(id) ON DELETE CASCADE,
            option_text TEXT NOT NULL,
            is_correct INTEGER NOT NULL DEFAULT 0,
            sort_order INTEGER NOT NULL DEFAULT 0
        );

        -- Assignments and progress
        CREATE TABLE IF NOT EXISTS training_assignments (
            id TEXT PRIMARY KEY,
            agency_id TEXT NOT NULL,
            staff_user_id TEXT NOT NULL REFERENCES staff_users(id) ON DELETE CASCADE,
            module_id TEXT NOT NULL REFERENCES training_modules(id) ON DELETE CASCADE,
            assigned_by TEXT,
            assigned_at TEXT NOT NULL,
            due_date TEXT,
            UNIQUE(staff_user_id, module_id)
        );

        CREATE TABLE IF NOT EXISTS staff_lesson_progress (
            id TEXT PRIMARY KEY,
            staff_user_id TEXT NOT NULL REFERENCES staff_users(id) ON DELETE CASCADE,
            lesson_id TEXT NOT NULL REFERENCES training_lessons(id) ON DELETE CASCADE,
            completed INTEGER NOT NULL DEFAULT 0,
            completed_at TEXT,
            UNIQUE(staff_user_id, lesson_id)
        );

        CREATE TABLE IF NOT EXISTS training_quiz_attempts (
            id TEXT PRIMARY KEY,
            agency_id TEXT NOT NULL,
            staff_user_id TEXT NOT NULL REFERENCES staff_users(id) ON DELETE CASCADE,
            quiz_id TEXT NOT NULL REFERENCES training_quizzes(id) ON DELETE CASCADE,
            score_percent INTEGER NOT NULL DEFAULT 0,
            answers TEXT NOT NULL DEFAULT '[]',
            completed_at TEXT
        );

        -- The Challenge
        CREATE TABLE IF NOT EXISTS challenge_products (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            slug TEXT NOT NULL UNIQUE,
            description TEXT,
            price_one_on_one_cents INTEGER NOT NULL DEFAULT 5000,
            price_boardroom_cents INTEGER NOT NULL DEFAULT 9900,
            price_standalone_cents INTEGER NOT NULL DEFAULT 29900,
            total_lessons INTEGER NOT NULL DEFAULT 30,
            duration_weeks INTEGER NOT NULL DEFAULT 6,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS challenge_modules (
            id TEXT PRIMARY KEY,
            challenge_product_id TEXT NOT NULL REFERENCES challenge_products(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            week_number INTEGER NOT NULL CHECK(week_number BETWEEN 1 AND 6),
            description TEXT,
            sort_order INTEGER NOT NULL DEFAULT 0,
            UNIQUE(challenge_product_id, week_number)
        );

        CREATE TABLE IF NOT EXISTS challenge_lessons (
            id TEXT PRIMARY KEY,
            module_id TEXT NOT NULL REFERENCES challenge_modules(id) ON DELETE CASCADE,
            challenge_product_id TEXT NOT NULL REFERENCES challenge_products(id) ON DELETE CASCADE,
            title TEXT NOT NULL,
            day_number INTEGER NOT NULL CHECK(day_number BETWEEN 1 AND 30),
            week_number INTEGER NOT NULL,
            day_of_week INTEGER NOT NULL,
            preview_text TEXT,
            content_html TEXT,
            questions TEXT NOT NULL DEFAULT '[]',
            is_discovery_stack INTEGER NOT NULL DEFAULT 0,
            UNIQUE(challenge_product_id, day_number)
        );

        CREATE TABLE IF NOT EXISTS challenge_purchases (
            id TEXT PRIMARY KEY,
            agency_id TEXT NOT NULL,
            challenge_product_id TEXT NOT NULL REFERENCES challenge_products(id) ON DELETE RESTRICT,
            purchaser_id TEXT NOT NULL,
            quantity INTEGER NOT NULL CHECK(quantity >= 1),
            seats_used INTEGER NOT NULL DEFAULT 0 CHECK(seats_used >= 0),
            price_per_seat_cents INTEGER NOT NULL,
            total_price_cents INTEGER NOT NULL,
            membership_tier TEXT,
            status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN ('pending', 'completed', 'failed', 'refunded')),
            purchased_at TEXT,
            created_at TEXT NOT NULL,
            CHECK(seats_used <= quantity)
        );

        CREATE TABLE IF NOT EXISTS challenge_assignments (
            id TEXT PRIMARY KEY,
            purchase_id TEXT NOT NULL REFERENCES challenge_purchases(id) ON DELETE CASCADE,
            challenge_product_id TEXT NOT NULL REFERENCES challenge_products(id) ON DELETE RESTRICT,
            agency_id TEXT NOT NULL,
            staff_user_id TEXT NOT NULL REFERENCES staff_users(id) ON DELETE CASCADE,
            start_date TEXT NOT NULL,
            end_date TEXT NOT NULL,
            timezone TEXT NOT NULL DEFAULT 'America/New_York',
            status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN ('pending', 'active', 'paused', 'completed', 'cancelled')),
            created_at TEXT NOT NULL,
            UNIQUE(purchase_id, staff_user_id)
        );

        CREATE TABLE IF NOT EXISTS challenge_progress (
            id TEXT PRIMARY KEY,
            assignment_id TEXT NOT NULL REFERENCES challenge_assignments(id) ON DELETE CASCADE,
            lesson_id TEXT NOT NULL REFERENCES challenge_lessons(id) ON DELETE CASCADE,
            staff_user_id TEXT REFERENCES staff_users(id) ON DELETE CASCADE,
            status TEXT NOT NULL DEFAULT 'locked' CHECK(status IN ('locked', 'available', 'in_progress', 'completed')),
            completed_at TEXT,
            reflection_response TEXT NOT NULL DEFAULT '{}',
            UNIQUE(assignment_id, lesson_id)
        );

        CREATE TABLE IF NOT EXISTS challenge_core4_logs (
            id TEXT PRIMARY KEY,
            assignment_id TEXT NOT NULL REFERENCES challenge_assignments(id) ON DELETE CASCADE,
            staff_user_id TEXT REFERENCES staff_users(id) ON DELETE CASCADE,
            log_date TEXT NOT NULL,
            body INTEGER NOT NULL DEFAULT 0,
            being INTEGER NOT NULL DEFAULT 0,
            balance INTEGER NOT NULL DEFAULT 0,
            business INTEGER NOT NULL DEFAULT 0,
            notes TEXT,
            updated_at TEXT NOT NULL,
            UNIQUE(assignment_id, log_date)
        );

        -- Call scoring
        CREATE TABLE IF NOT EXISTS call_scoring_templates (
            id TEXT PRIMARY KEY,
            agency_id TEXT,
            name TEXT NOT NULL,
            system_prompt TEXT NOT NULL DEFAULT '',
            skill_categories TEXT NOT NULL DEFAULT '[]',
            call_type TEXT NOT NULL DEFAULT 'sales' CHECK(call_type IN ('sales', 'service')),
            is_active INTEGER NOT NULL DEFAULT 1,
            is_global INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS agency_calls (
            id TEXT PRIMARY KEY,
            agency_id TEXT NOT NULL,
            team_member_id TEXT REFERENCES team_members(id) ON DELETE SET NULL,
            template_id TEXT REFERENCES call_scoring_templates(id) ON DELETE SET NULL,
            call_type TEXT NOT NULL DEFAULT 'sales' CHECK(call_type IN ('sales', 'service')),
            original_filename TEXT,
            transcript TEXT,
            call_duration_seconds INTEGER,
            status TEXT NOT NULL DEFAULT 'transcribed',
            overall_score INTEGER,
            potential_rank TEXT,
            skill_scores TEXT,
            section_scores TEXT,
            client_profile TEXT,
            discovery_wins TEXT,
            critical_gaps TEXT,
            closing_attempts TEXT,
            coaching_recommendations TEXT,
            notable_quotes TEXT,
            summary TEXT,
            missed_signals TEXT,
            analyzed_at TEXT,
            created_at TEXT NOT NULL
        );

        -- Indexes
        CREATE INDEX IF NOT EXISTS idx_staff_users_agency ON staff_users(agency_id);
        CREATE INDEX IF NOT EXISTS idx_training_modules_category ON training_modules(category_id);
        CREATE INDEX IF NOT EXISTS idx_training_lessons_module ON training_lessons(module_id);
        CREATE INDEX IF NOT EXISTS idx_training_assignments_agency ON training_assignments(agency_id);
        CREATE INDEX IF NOT EXISTS idx_challenge_assignments_agency ON challenge_assignments(agency_id);
        CREATE INDEX IF NOT EXISTS idx_challenge_progress_assignment ON challenge_progress(assignment_id);
        CREATE INDEX IF NOT EXISTS idx_agency_calls_agency ON agency_calls(agency_id);
        """
    )
