"""The Challenge: a six-week staff training product sold per seat.

Responsibilities:
- Seed the product with its 6 weekly modules and 30 daily lessons
- Sell seats (pending purchase, completed on payment confirmation)
- Assign staff to seats with a Monday start date and a timezone
- Unlock lessons by business day, record lesson reflections
- Record daily Core 4 logs (Body / Being / Balance / Business)
- Report progress per assignment

Schedule:
    day_number 1..30, week = (day - 1) // 5 + 1, day_of_week = (day - 1) % 5 + 1
    Lesson N unlocks on the Nth business day counted from the start date.
    An assignment ends 41 days after its start date.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

import structlog

from agencybrain.config.app_config import load_app_config
from agencybrain.db.database import generate_id, get_db, now_iso

logger = structlog.get_logger(__name__)

# =============================================================================
# CONSTANTS
# =============================================================================

CHALLENGE_SLUG = "six-week-challenge"
CHALLENGE_NAME = "The Standard Six-Week Challenge"
CHALLENGE_DESCRIPTION = (
    "A 6-week staff development program that builds daily habits, "
    "personal growth and professional performance. Each day delivers a focused "
    "lesson, reflection questions and an action item."
)

DURATION_WEEKS = 6
LESSONS_PER_WEEK = 5
TOTAL_LESSONS = DURATION_WEEKS * LESSONS_PER_WEEK
CHALLENGE_LENGTH_DAYS = 41

PRICE_ONE_ON_ONE_CENTS = 5000
PRICE_BOARDROOM_CENTS = 9900
PRICE_STANDALONE_CENTS = 29900

TIER_ONE_ON_ONE = "1:1 Coaching"
TIER_BOARDROOM = "Boardroom"

TIMEZONES: dict[str, str] = {
    "America/New_York": "Eastern Time (ET)",
    "America/Chicago": "Central Time (CT)",
    "America/Denver": "Mountain Time (MT)",
    "America/Los_Angeles": "Pacific Time (PT)",
    "America/Phoenix": "Arizona Time (AZ)",
}

WEEK_MODULES = [
    ("Foundation", "Build your foundation with core habits and mindset shifts"),
    ("Consistency", "Develop the discipline of daily consistent action"),
    ("Discipline", "Master self-discipline and overcome resistance"),
    ("Relationships", "Strengthen professional and personal relationships"),
    ("Closing", "Sharpen your ability to close and deliver results"),
    ("Identity", "Cement your new identity and sustain your transformation"),
]

DAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday"]

DEFAULT_REFLECTION_QUESTIONS = [
    "What was your biggest takeaway from today's lesson?",
    "What is one action you will take before tomorrow?",
]

ASSIGNMENT_STATUSES = ("pending", "active", "paused", "completed", "cancelled")
PROGRESS_STATUSES = ("locked", "available", "in_progress", "completed")
OPEN_ASSIGNMENT_STATUSES = ("pending", "active")

CORE4_DOMAINS = ("body", "being", "balance", "business")


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class ChallengeProduct:
    """The sellable product with its tier prices."""

    id: str
    name: str
    slug: str
    description: str | None
    price_one_on_one_cents: int
    price_boardroom_cents: int
    price_standalone_cents: int
    total_lessons: int
    duration_weeks: int
    is_active: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "description": self.description,
            "price_one_on_one_cents": self.price_one_on_one_cents,
            "price_boardroom_cents": self.price_boardroom_cents,
            "price_standalone_cents": self.price_standalone_cents,
            "total_lessons": self.total_lessons,
            "duration_weeks": self.duration_weeks,
            "is_active": self.is_active,
        }


@dataclass
class ChallengePurchase:
    """A block of seats bought by an agency."""

    id: str
    agency_id: str
    challenge_product_id: str
    purchaser_id: str
    quantity: int
    seats_used: int
    price_per_seat_cents: int
    total_price_cents: int
    membership_tier: str | None
    status: str
    purchased_at: str | None
    created_at: str

    @property
    def available_seats(self) -> int:
        return self.quantity - self.seats_used

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agency_id": self.agency_id,
            "challenge_product_id": self.challenge_product_id,
            "purchaser_id": self.purchaser_id,
            "quantity": self.quantity,
            "seats_used": self.seats_used,
            "available_seats": self.available_seats,
            "price_per_seat_cents": self.price_per_seat_cents,
            "total_price_cents": self.total_price_cents,
            "membership_tier": self.membership_tier,
            "status": self.status,
            "purchased_at": self.purchased_at,
            "created_at": self.created_at,
        }


@dataclass
class ChallengeAssignment:
    """A staff user's seat in the Challenge."""

    id: str
    purchase_id: str
    challenge_product_id: str
    agency_id: str
    staff_user_id: str
    start_date: str
    end_date: str
    timezone: str
    status: str
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "purchase_id": self.purchase_id,
            "challenge_product_id": self.challenge_product_id,
            "agency_id": self.agency_id,
            "staff_user_id": self.staff_user_id,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "timezone": self.timezone,
            "status": self.status,
            "created_at": self.created_at,
        }


@dataclass
class LessonProgress:
    """A lesson as seen by one assignment."""

    lesson_id: str
    day_number: int
    week_number: int
    day_of_week: int
    title: str
    is_discovery_stack: bool
    status: str
    is_unlocked: bool
    completed_at: str | None = None
    reflection_response: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "lesson_id": self.lesson_id,
            "day_number": self.day_number,
            "week_number": self.week_number,
            "day_of_week": self.day_of_week,
            "title": self.title,
            "is_discovery_stack": self.is_discovery_stack,
            "status": self.status,
            "is_unlocked": self.is_unlocked,
            "completed_at": self.completed_at,
            "reflection_response": self.reflection_response,
        }


@dataclass
class Core4Log:
    """One day of Core 4 self-report."""

    log_date: str
    body: bool
    being: bool
    balance: bool
    business: bool
    notes: str | None = None
    updated_at: str | None = None

    @property
    def is_perfect(self) -> bool:
        return self.body and self.being and self.balance and self.business

    @property
    def score(self) -> int:
        return sum([self.body, self.being, self.balance, self.business])

    def to_dict(self) -> dict[str, Any]:
        return {
            "log_date": self.log_date,
            "body": self.body,
            "being": self.being,
            "balance": self.balance,
            "business": self.business,
            "notes": self.notes,
            "score": self.score,
            "is_perfect": self.is_perfect,
            "updated_at": self.updated_at,
        }


@dataclass
class ProgressStats:
    completed: int
    total: int
    percent: int

    def to_dict(self) -> dict[str, Any]:
        return {"completed": self.completed, "total": self.total, "percent": self.percent}


@dataclass
class Core4Stats:
    total_days: int
    perfect_days: int
    current_streak: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_days": self.total_days,
            "perfect_days": self.perfect_days,
            "current_streak": self.current_streak,
        }


@dataclass
class AssignmentProgressRow:
    """One row of the admin Challenge progress table."""

    assignment: ChallengeAssignment
    staff_name: str
    current_business_day: int
    progress: ProgressStats
    core4: Core4Stats
    last_activity: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.assignment.to_dict(),
            "staff_name": self.staff_name,
            "current_business_day": self.current_business_day,
            "progress": self.progress.to_dict(),
            "core4": self.core4.to_dict(),
            "last_activity": self.last_activity,
        }


@dataclass
class AssignmentDetail:
    """Drill-down for one assignment."""

    assignment: ChallengeAssignment
    staff_name: str
    current_business_day: int
    lessons: list[LessonProgress]
    core4_logs: list[Core4Log]
    progress: ProgressStats
    core4: Core4Stats

    def to_dict(self) -> dict[str, Any]:
        return {
            "assignment": self.assignment.to_dict(),
            "staff_name": self.staff_name,
            "current_business_day": self.current_business_day,
            "lessons": [lesson.to_dict() for lesson in self.lessons],
            "core4_logs": [log.to_dict() for log in self.core4_logs],
            "progress": self.progress.to_dict(),
            "core4": self.core4.to_dict(),
        }


@dataclass
class AssignStaffResult:
    """Result of assigning staff to seats."""

    success: bool
    assignments: list[ChallengeAssignment]
    message: str
    seats_remaining: int
    warnings: list[str] = field(default_factory=list)


class ChallengeError(Exception):
    """Base error for Challenge operations."""

    pass


class ChallengeValidationError(ChallengeError):
    """Input rejected."""

    pass


class ChallengeNotFoundError(ChallengeError):
    """Product, purchase, assignment or lesson not found."""

    pass


class InsufficientSeatsError(ChallengeValidationError):
    """Selection exceeds the purchase's remaining seats."""

    pass


class LessonLockedError(ChallengeValidationError):
    """Lesson has not unlocked for this assignment yet."""

    pass


# =============================================================================
# SCHEDULE HELPERS
# =============================================================================


def _to_date(value: str | date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError as e:
        raise ChallengeValidationError(f"Invalid date: {value}") from e


def lesson_week(day_number: int) -> int:
    return (day_number - 1) // LESSONS_PER_WEEK + 1


def lesson_day_of_week(day_number: int) -> int:
    """1 = Monday ... 5 = Friday."""
    return (day_number - 1) % LESSONS_PER_WEEK + 1


def get_end_date(start_date: str | date) -> date:
    return _to_date(start_date) + timedelta(days=CHALLENGE_LENGTH_DAYS)


def get_next_monday(now: datetime | None = None, cutoff_hour: int | None = None) -> date:
    """First Monday a new assignment can start on.

    Today counts when it is Monday before the cutoff hour (17:00 by default);
    otherwise the following Monday.

    Args:
        now: Reference time (defaults to now in the default Challenge timezone)
        cutoff_hour: Hour after which Monday rolls to the next week
    """
    challenge_config = load_app_config().challenge
    if cutoff_hour is None:
        cutoff_hour = challenge_config.start_cutoff_hour
    if now is None:
        now = datetime.now(ZoneInfo(challenge_config.default_timezone))

    today = now.date()
    if today.weekday() == 0 and now.hour < cutoff_hour:
        return today
    return today + timedelta(days=7 - today.weekday())


def generate_monday_options(now: datetime | None = None, count: int | None = None) -> list[date]:
    """Consecutive start-date choices, 7 days apart, beginning at get_next_monday()."""
    if count is None:
        count = load_app_config().challenge.monday_options
    first = get_next_monday(now)
    return [first + timedelta(weeks=i) for i in range(count)]


def get_business_day(start_date: str | date, check_date: str | date) -> int:
    """Count Mon-Fri days in [start_date, check_date]; 0 if check is before start."""
    start = _to_date(start_date)
    check = _to_date(check_date)
    if check < start:
        return 0

    days = (check - start).days + 1
    full_weeks, remainder = divmod(days, 7)
    extra = sum(1 for i in range(remainder) if (start.weekday() + i) % 7 < 5)
    return full_weeks * 5 + extra


def assignment_today(assignment: ChallengeAssignment, now: datetime | None = None) -> date:
    """Current date in the assignment's timezone."""
    tz = ZoneInfo(assignment.timezone)
    if now is None:
        return datetime.now(tz).date()
    if now.tzinfo is None:
        return now.date()
    return now.astimezone(tz).date()


def is_lesson_unlocked(assignment: ChallengeAssignment, day_number: int, today: date) -> bool:
    """A lesson is open when the assignment is active and its business day has come."""
    if assignment.status != "active":
        return False
    return get_business_day(assignment.start_date, today) >= day_number


def get_price_per_seat(product: ChallengeProduct, membership_tier: str | None) -> int:
    if membership_tier == TIER_ONE_ON_ONE:
        return product.price_one_on_one_cents
    if membership_tier == TIER_BOARDROOM:
        return product.price_boardroom_cents
    return product.price_standalone_cents


# =============================================================================
# ROW MAPPING
# =============================================================================


def _row_to_product(row: sqlite3.Row) -> ChallengeProduct:
    return ChallengeProduct(
        id=row["id"],
        name=row["name"],
        slug=row["slug"],
        description=row["description"],
        price_one_on_one_cents=row["price_one_on_one_cents"],
        price_boardroom_cents=row["price_boardroom_cents"],
        price_standalone_cents=row["price_standalone_cents"],
        total_lessons=row["total_lessons"],
        duration_weeks=row["duration_weeks"],
        is_active=bool(row["is_active"]),
    )


def _row_to_purchase(row: sqlite3.Row) -> ChallengePurchase:
    return ChallengePurchase(
        id=row["id"],
        agency_id=row["agency_id"],
        challenge_product_id=row["challenge_product_id"],
        purchaser_id=row["purchaser_id"],
        quantity=row["quantity"],
        seats_used=row["seats_used"],
        price_per_seat_cents=row["price_per_seat_cents"],
        total_price_cents=row["total_price_cents"],
        membership_tier=row["membership_tier"],
        status=row["status"],
        purchased_at=row["purchased_at"],
        created_at=row["created_at"],
    )


def _row_to_assignment(row: sqlite3.Row) -> ChallengeAssignment:
    return ChallengeAssignment(
        id=row["id"],
        purchase_id=row["purchase_id"],
        challenge_product_id=row["challenge_product_id"],
        agency_id=row["agency_id"],
        staff_user_id=row["staff_user_id"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        timezone=row["timezone"],
        status=row["status"],
        created_at=row["created_at"],
    )


def _row_to_core4(row: sqlite3.Row) -> Core4Log:
    return Core4Log(
        log_date=row["log_date"],
        body=bool(row["body"]),
        being=bool(row["being"]),
        balance=bool(row["balance"]),
        business=bool(row["business"]),
        notes=row["notes"],
        updated_at=row["updated_at"],
    )


def _fetch_assignment(conn: sqlite3.Connection, assignment_id: str) -> ChallengeAssignment:
    row = conn.execute(
        "SELECT * FROM challenge_assignments WHERE id = ?", (assignment_id,)
    ).fetchone()
    if row is None:
        raise ChallengeNotFoundError(f"Assignment not found: {assignment_id}")
    return _row_to_assignment(row)


def _fetch_purchase(conn: sqlite3.Connection, purchase_id: str) -> ChallengePurchase:
    row = conn.execute(
        "SELECT * FROM challenge_purchases WHERE id = ?", (purchase_id,)
    ).fetchone()
    if row is None:
        raise ChallengeNotFoundError(f"Purchase not found: {purchase_id}")
    return _row_to_purchase(row)


# =============================================================================
# PRODUCT
# =============================================================================


def get_challenge_product() -> ChallengeProduct | None:
    """The active Challenge product, if seeded."""
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM challenge_products WHERE slug = ? AND is_active = 1",
            (CHALLENGE_SLUG,),
        ).fetchone()
    return _row_to_product(row) if row else None


def seed_challenge_product() -> ChallengeProduct:
    """Create the product with its modules and lessons if missing.

    Safe to run repeatedly; an existing product is returned unchanged.
    """
    existing = get_challenge_product()
    if existing is not None:
        return existing

    product_id = generate_id()
    created_at = now_iso()
    questions = json.dumps(DEFAULT_REFLECTION_QUESTIONS)

    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO challenge_products (
                id, name, slug, description, price_one_on_one_cents,
                price_boardroom_cents, price_standalone_cents, total_lessons,
                duration_weeks, is_active, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?)
            """,
            (
                product_id,
                CHALLENGE_NAME,
                CHALLENGE_SLUG,
                CHALLENGE_DESCRIPTION,
                PRICE_ONE_ON_ONE_CENTS,
                PRICE_BOARDROOM_CENTS,
                PRICE_STANDALONE_CENTS,
                TOTAL_LESSONS,
                DURATION_WEEKS,
                created_at,
            ),
        )

        for week, (week_name, week_description) in enumerate(WEEK_MODULES, start=1):
            module_id = generate_id()
            conn.execute(
                """
                INSERT INTO challenge_modules (
                    id, challenge_product_id, name, week_number, description, sort_order
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (module_id, product_id, week_name, week, week_description, week),
            )

            for dow, day_name in enumerate(DAY_NAMES, start=1):
                day_number = (week - 1) * LESSONS_PER_WEEK + dow
                conn.execute(
                    """
                    INSERT INTO challenge_lessons (
                        id, module_id, challenge_product_id, title, day_number,
                        week_number, day_of_week, preview_text, questions,
                        is_discovery_stack
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        generate_id(),
                        module_id,
                        product_id,
                        f"Week {week} {day_name}: {week_name}",
                        day_number,
                        lesson_week(day_number),
                        lesson_day_of_week(day_number),
                        f"Today's focus: {week_name}",
                        questions,
                        1 if dow == LESSONS_PER_WEEK else 0,
                    ),
                )

    logger.info("challenge.product_seeded", product_id=product_id, lessons=TOTAL_LESSONS)
    product = get_challenge_product()
    if product is None:
        raise ChallengeNotFoundError("Challenge product not found after seeding")
    return product


def list_challenge_lessons(product_id: str) -> list[dict[str, Any]]:
    """Lessons in day order with their week module name."""
    with get_db() as conn:
        rows = conn.execute(
            """
            SELECT l.*, m.name AS module_name
            FROM challenge_lessons l
            JOIN challenge_modules m ON m.id = l.module_id
            WHERE l.challenge_product_id = ?
            ORDER BY l.day_number
            """,
            (product_id,),
        ).fetchall()
    return [
        {
            "id": r["id"],
            "title": r["title"],
            "day_number": r["day_number"],
            "week_number": r["week_number"],
            "day_of_week": r["day_of_week"],
            "module_name": r["module_name"],
            "preview_text": r["preview_text"],
            "questions": json.loads(r["questions"] or "[]"),
            "is_discovery_stack": bool(r["is_discovery_stack"]),
        }
        for r in rows
    ]


# =============================================================================
# PURCHASES
# =============================================================================


def purchase_seats(
    agency_id: str,
    purchaser_id: str,
    quantity: int,
    membership_tier: str | None = None,
) -> ChallengePurchase:
    """Create a pending seat purchase with the tier price snapshot.

    Raises:
        ChallengeValidationError: quantity below 1
        ChallengeNotFoundError: product not seeded
    """
    if quantity < 1:
        raise ChallengeValidationError("Quantity must be at least 1")

    product = get_challenge_product()
    if product is None:
        raise ChallengeNotFoundError("The Challenge is not available")

    price = get_price_per_seat(product, membership_tier)
    purchase_id = generate_id()

    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO challenge_purchases (
                id, agency_id, challenge_product_id, purchaser_id, quantity,
                seats_used, price_per_seat_cents, total_price_cents,
                membership_tier, status, created_at
            ) VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, 'pending', ?)
            """,
            (
                purchase_id,
                agency_id,
                product.id,
                purchaser_id,
                quantity,
                price,
                price * quantity,
                membership_tier,
                now_iso(),
            ),
        )
        purchase = _fetch_purchase(conn, purchase_id)

    logger.info(
        "challenge.purchase_created",
        agency_id=agency_id,
        purchase_id=purchase_id,
        quantity=quantity,
        price_per_seat_cents=price,
    )
    return purchase


def complete_purchase(purchase_id: str) -> ChallengePurchase:
    """Mark a pending purchase as paid. Completed purchases are returned as is."""
    with get_db() as conn:
        purchase = _fetch_purchase(conn, purchase_id)
        if purchase.status == "completed":
            return purchase
        if purchase.status != "pending":
            raise ChallengeValidationError(f"Purchase is {purchase.status}")

        conn.execute(
            "UPDATE challenge_purchases SET status = 'completed', purchased_at = ? WHERE id = ?",
            (now_iso(), purchase_id),
        )
        purchase = _fetch_purchase(conn, purchase_id)

    logger.info("challenge.purchase_completed", purchase_id=purchase_id)
    return purchase


def list_purchases(agency_id: str) -> list[ChallengePurchase]:
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM challenge_purchases WHERE agency_id = ? ORDER BY created_at DESC",
            (agency_id,),
        ).fetchall()
    return [_row_to_purchase(r) for r in rows]


def list_available_purchases(agency_id: str) -> list[ChallengePurchase]:
    """Completed purchases that still have free seats."""
    with get_db() as conn:
        rows = conn.execute(
            """
            SELECT * FROM challenge_purchases
            WHERE agency_id = ? AND status = 'completed' AND quantity - seats_used > 0
            ORDER BY purchased_at
            """,
            (agency_id,),
        ).fetchall()
    return [_row_to_purchase(r) for r in rows]


def total_available_seats(agency_id: str) -> int:
    return sum(p.available_seats for p in list_available_purchases(agency_id))


# =============================================================================
# ASSIGNMENTS
# =============================================================================


def assign_staff(
    purchase_id: str,
    staff_user_ids: list[str],
    start_date: str | date,
    timezone: str | None = None,
    today: date | None = None,
) -> AssignStaffResult:
    """Assign staff users to seats of a purchase.

    Everything happens in one transaction: assignments are created, progress
    rows are seeded for every lesson (day 1 available, the rest locked) and
    the purchase's seats_used is incremented.

    Args:
        purchase_id: Completed purchase to draw seats from
        staff_user_ids: Selected staff users (at least one)
        start_date: A Monday
        timezone: One of TIMEZONES (defaults to the configured timezone)
        today: Reference date; assignments starting on or before it are active

    Raises:
        ChallengeValidationError: Empty selection, bad start date or timezone,
            inactive staff or staff already enrolled
        InsufficientSeatsError: Selection exceeds available seats
        ChallengeNotFoundError: Unknown purchase
    """
    selected = list(dict.fromkeys(staff_user_ids or []))
    if not selected or not start_date:
        raise ChallengeValidationError("Please select staff members and a start date")

    start = _to_date(start_date)
    if start.weekday() != 0:
        raise ChallengeValidationError("The Challenge starts on a Monday")

    if timezone is None:
        timezone = load_app_config().challenge.default_timezone
    if timezone not in TIMEZONES:
        raise ChallengeValidationError(f"Unsupported timezone: {timezone}")

    if today is None:
        today = datetime.now(ZoneInfo(timezone)).date()

    status = "active" if start <= today else "pending"
    end = get_end_date(start)
    created_at = now_iso()
    created: list[ChallengeAssignment] = []

    with get_db() as conn:
        purchase = _fetch_purchase(conn, purchase_id)
        if purchase.status != "completed":
            raise ChallengeValidationError("Purchase has not been completed")

        available = purchase.available_seats
        if len(selected) > available:
            raise InsufficientSeatsError(f"Only {available} seat(s) available")

        lessons = conn.execute(
            "SELECT id, day_number FROM challenge_lessons WHERE challenge_product_id = ? ORDER BY day_number",
            (purchase.challenge_product_id,),
        ).fetchall()

        for staff_user_id in selected:
            staff = conn.execute(
                "SELECT display_name FROM staff_users WHERE id = ? AND agency_id = ? AND is_active = 1",
                (staff_user_id, purchase.agency_id),
            ).fetchone()
            if staff is None:
                raise ChallengeValidationError(f"Staff user not found or inactive: {staff_user_id}")

            placeholders = ", ".join("?" for _ in OPEN_ASSIGNMENT_STATUSES)
            enrolled = conn.execute(
                f"""
                SELECT 1 FROM challenge_assignments
                WHERE staff_user_id = ? AND challenge_product_id = ?
                  AND status IN ({placeholders})
                """,
                (staff_user_id, purchase.challenge_product_id, *OPEN_ASSIGNMENT_STATUSES),
            ).fetchone()
            if enrolled is not None:
                raise ChallengeValidationError(
                    f"{staff['display_name']} is already enrolled in The Challenge"
                )

            assignment = ChallengeAssignment(
                id=generate_id(),
                purchase_id=purchase_id,
                challenge_product_id=purchase.challenge_product_id,
                agency_id=purchase.agency_id,
                staff_user_id=staff_user_id,
                start_date=start.isoformat(),
                end_date=end.isoformat(),
                timezone=timezone,
                status=status,
                created_at=created_at,
            )
            conn.execute(
                """
                INSERT INTO challenge_assignments (
                    id, purchase_id, challenge_product_id, agency_id, staff_user_id,
                    start_date, end_date, timezone, status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    assignment.id,
                    assignment.purchase_id,
                    assignment.challenge_product_id,
                    assignment.agency_id,
                    assignment.staff_user_id,
                    assignment.start_date,
                    assignment.end_date,
                    assignment.timezone,
                    assignment.status,
                    assignment.created_at,
                ),
            )
            conn.executemany(
                """
                INSERT INTO challenge_progress (id, assignment_id, lesson_id, staff_user_id, status)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (
                        generate_id(),
                        assignment.id,
                        lesson["id"],
                        staff_user_id,
                        "available" if lesson["day_number"] == 1 else "locked",
                    )
                    for lesson in lessons
                ],
            )
            created.append(assignment)

        conn.execute(
            "UPDATE challenge_purchases SET seats_used = seats_used + ? WHERE id = ?",
            (len(created), purchase_id),
        )

    logger.info(
        "challenge.staff_assigned",
        purchase_id=purchase_id,
        count=len(created),
        start_date=start.isoformat(),
        status=status,
    )

    return AssignStaffResult(
        success=True,
        assignments=created,
        message=f"Successfully assigned {len(created)} staff member(s) to The Challenge",
        seats_remaining=available - len(created),
    )


def activate_due_assignments(now: datetime | None = None) -> dict[str, int]:
    """Move pending assignments to active on their start date and active ones
    to completed after their end date.

    Each assignment's current date is read in its own timezone.

    Args:
        now: Reference time (defaults to the current time)

    Returns:
        Counts of activated and completed assignments
    """
    to_activate: list[tuple[str]] = []
    to_complete: list[tuple[str]] = []

    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM challenge_assignments WHERE status IN ('pending', 'active')"
        ).fetchall()
        for row in rows:
            assignment = _row_to_assignment(row)
            today = assignment_today(assignment, now).isoformat()
            if assignment.end_date < today:
                to_complete.append((assignment.id,))
            elif assignment.status == "pending" and assignment.start_date <= today:
                to_activate.append((assignment.id,))

        conn.executemany(
            "UPDATE challenge_assignments SET status = 'active' WHERE id = ?", to_activate
        )
        conn.executemany(
            "UPDATE challenge_assignments SET status = 'completed' WHERE id = ?", to_complete
        )

    activated, completed = len(to_activate), len(to_complete)
    if activated or completed:
        logger.info("challenge.assignments_advanced", activated=activated, completed=completed)
    return {"activated": activated, "completed": completed}


def set_assignment_status(assignment_id: str, status: str) -> ChallengeAssignment:
    """Pause, resume or cancel an assignment."""
    if status not in ASSIGNMENT_STATUSES:
        raise ChallengeValidationError(f"Unknown assignment status: {status}")
    with get_db() as conn:
        _fetch_assignment(conn, assignment_id)
        conn.execute(
            "UPDATE challenge_assignments SET status = ? WHERE id = ?",
            (status, assignment_id),
        )
        assignment = _fetch_assignment(conn, assignment_id)
    logger.info("challenge.assignment_status_changed", assignment_id=assignment_id, status=status)
    return assignment


# =============================================================================
# LESSONS AND CORE 4
# =============================================================================


def complete_challenge_lesson(
    assignment_id: str,
    lesson_id: str,
    reflection_response: dict[str, Any] | None = None,
    today: date | None = None,
) -> LessonProgress:
    """Record a lesson as completed with the staff user's reflection.

    Raises:
        ChallengeNotFoundError: Unknown assignment or lesson
        LessonLockedError: Lesson not unlocked for the assignment yet
    """
    with get_db() as conn:
        assignment = _fetch_assignment(conn, assignment_id)
        lesson = conn.execute(
            "SELECT * FROM challenge_lessons WHERE id = ? AND challenge_product_id = ?",
            (lesson_id, assignment.challenge_product_id),
        ).fetchone()
        if lesson is None:
            raise ChallengeNotFoundError(f"Lesson not found: {lesson_id}")

        if today is None:
            today = assignment_today(assignment)
        if not is_lesson_unlocked(assignment, lesson["day_number"], today):
            raise LessonLockedError(f"Day {lesson['day_number']} is not unlocked yet")

        completed_at = now_iso()
        response = reflection_response or {}
        conn.execute(
            """
            INSERT INTO challenge_progress (
                id, assignment_id, lesson_id, staff_user_id, status, completed_at, reflection_response
            ) VALUES (?, ?, ?, ?, 'completed', ?, ?)
            ON CONFLICT(assignment_id, lesson_id) DO UPDATE SET
                status = 'completed',
                completed_at = excluded.completed_at,
                reflection_response = excluded.reflection_response
            """,
            (
                generate_id(),
                assignment_id,
                lesson_id,
                assignment.staff_user_id,
                completed_at,
                json.dumps(response, ensure_ascii=False),
            ),
        )

    logger.info(
        "challenge.lesson_completed",
        assignment_id=assignment_id,
        day_number=lesson["day_number"],
    )

    return LessonProgress(
        lesson_id=lesson_id,
        day_number=lesson["day_number"],
        week_number=lesson["week_number"],
        day_of_week=lesson["day_of_week"],
        title=lesson["title"],
        is_discovery_stack=bool(lesson["is_discovery_stack"]),
        status="completed",
        is_unlocked=True,
        completed_at=completed_at,
        reflection_response=response,
    )


def log_core4(
    assignment_id: str,
    log_date: str | date,
    body: bool = False,
    being: bool = False,
    balance: bool = False,
    business: bool = False,
    notes: str | None = None,
) -> Core4Log:
    """Create or replace the Core 4 log for one day."""
    day = _to_date(log_date).isoformat()
    updated_at = now_iso()

    with get_db() as conn:
        assignment = _fetch_assignment(conn, assignment_id)
        conn.execute(
            """
            INSERT INTO challenge_core4_logs (
                id, assignment_id, staff_user_id, log_date, body, being,
                balance, business, notes, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(assignment_id, log_date) DO UPDATE SET
                body = excluded.body,
                being = excluded.being,
                balance = excluded.balance,
                business = excluded.business,
                notes = excluded.notes,
                updated_at = excluded.updated_at
            """,
            (
                generate_id(),
                assignment_id,
                assignment.staff_user_id,
                day,
                int(body),
                int(being),
                int(balance),
                int(business),
                notes,
                updated_at,
            ),
        )

    log = Core4Log(
        log_date=day,
        body=body,
        being=being,
        balance=balance,
        business=business,
        notes=notes,
        updated_at=updated_at,
    )
    logger.info("challenge.core4_logged", assignment_id=assignment_id, log_date=day, score=log.score)
    return log


# =============================================================================
# STATS
# =============================================================================


def _progress_stats(conn: sqlite3.Connection, assignment_id: str) -> ProgressStats:
    row = conn.execute(
        """
        SELECT COUNT(*) AS total,
               COALESCE(SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END), 0) AS completed
        FROM challenge_progress WHERE assignment_id = ?
        """,
        (assignment_id,),
    ).fetchone()
    total = row["total"] or TOTAL_LESSONS
    completed = row["completed"]
    return ProgressStats(completed=completed, total=total, percent=round(completed / total * 100))


def _core4_logs(conn: sqlite3.Connection, assignment_id: str) -> list[Core4Log]:
    rows = conn.execute(
        "SELECT * FROM challenge_core4_logs WHERE assignment_id = ? ORDER BY log_date DESC",
        (assignment_id,),
    ).fetchall()
    return [_row_to_core4(r) for r in rows]


def compute_core4_stats(logs: list[Core4Log]) -> Core4Stats:
    """Stats over logs ordered newest first.

    The streak counts perfect logs from the newest backwards until the
    first imperfect one. Days without a log do not break it.
    """
    streak = 0
    for log in logs:
        if not log.is_perfect:
            break
        streak += 1
    return Core4Stats(
        total_days=len(logs),
        perfect_days=sum(1 for log in logs if log.is_perfect),
        current_streak=streak,
    )


def get_progress_stats(assignment_id: str) -> ProgressStats:
    with get_db() as conn:
        _fetch_assignment(conn, assignment_id)
        return _progress_stats(conn, assignment_id)


def get_core4_stats(assignment_id: str) -> Core4Stats:
    with get_db() as conn:
        _fetch_assignment(conn, assignment_id)
        logs = _core4_logs(conn, assignment_id)
    return compute_core4_stats(logs)


def _last_activity(conn: sqlite3.Connection, assignment_id: str) -> str | None:
    row = conn.execute(
        """
        SELECT MAX(ts) AS last FROM (
            SELECT completed_at AS ts FROM challenge_progress WHERE assignment_id = ?
            UNION ALL
            SELECT updated_at AS ts FROM challenge_core4_logs WHERE assignment_id = ?
        )
        """,
        (assignment_id, assignment_id),
    ).fetchone()
    return row["last"]


def list_assignment_progress(agency_id: str, today: date | None = None) -> list[AssignmentProgressRow]:
    """Enriched assignment rows for the admin progress page."""
    with get_db() as conn:
        rows = conn.execute(
            """
            SELECT a.*, COALESCE(su.display_name, su.username) AS staff_name
            FROM challenge_assignments a
            JOIN staff_users su ON su.id = a.staff_user_id
            WHERE a.agency_id = ?
            ORDER BY a.start_date DESC, staff_name
            """,
            (agency_id,),
        ).fetchall()

        result = []
        for row in rows:
            assignment = _row_to_assignment(row)
            ref_day = today or assignment_today(assignment)
            result.append(
                AssignmentProgressRow(
                    assignment=assignment,
                    staff_name=row["staff_name"],
                    current_business_day=min(
                        get_business_day(assignment.start_date, ref_day), TOTAL_LESSONS
                    ),
                    progress=_progress_stats(conn, assignment.id),
                    core4=compute_core4_stats(_core4_logs(conn, assignment.id)),
                    last_activity=_last_activity(conn, assignment.id),
                )
            )

    return result


def get_assignment_detail(assignment_id: str, today: date | None = None) -> AssignmentDetail:
    """Lessons with status and reflections plus Core 4 logs newest first."""
    with get_db() as conn:
        assignment = _fetch_assignment(conn, assignment_id)
        staff = conn.execute(
            "SELECT COALESCE(display_name, username) AS name FROM staff_users WHERE id = ?",
            (assignment.staff_user_id,),
        ).fetchone()
        lesson_rows = conn.execute(
            """
            SELECT l.*, p.status AS progress_status, p.completed_at, p.reflection_response
            FROM challenge_lessons l
            LEFT JOIN challenge_progress p
              ON p.lesson_id = l.id AND p.assignment_id = ?
            WHERE l.challenge_product_id = ?
            ORDER BY l.day_number
            """,
            (assignment_id, assignment.challenge_product_id),
        ).fetchall()
        logs = _core4_logs(conn, assignment_id)
        progress = _progress_stats(conn, assignment_id)

    if today is None:
        today = assignment_today(assignment)

    lessons = []
    for row in lesson_rows:
        unlocked = is_lesson_unlocked(assignment, row["day_number"], today)
        status = row["progress_status"] or "locked"
        if status == "locked" and unlocked:
            status = "available"
        lessons.append(
            LessonProgress(
                lesson_id=row["id"],
                day_number=row["day_number"],
                week_number=row["week_number"],
                day_of_week=row["day_of_week"],
                title=row["title"],
                is_discovery_stack=bool(row["is_discovery_stack"]),
                status=status,
                is_unlocked=unlocked,
                completed_at=row["completed_at"],
                reflection_response=json.loads(row["reflection_response"] or "{}"),
            )
        )

    return AssignmentDetail(
        assignment=assignment,
        staff_name=staff["name"] if staff else "Unknown",
        current_business_day=min(get_business_day(assignment.start_date, today), TOTAL_LESSONS),
        lessons=lessons,
        core4_logs=logs,
        progress=progress,
        core4=compute_core4_stats(logs),
    )
