"""Staff access management.

Responsibilities:
- Create, edit, deactivate and reactivate staff logins
- Grant access either by setting a password or by issuing an email
  password-setup request
- Link logins to team members
- Authenticate staff users

Delivery of password-setup emails happens outside this module; a request
only stores a one-time token that expires after 24 hours.
"""

from __future__ import annotations

import secrets
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

import structlog

from agencybrain.db.database import generate_id, get_db, now_iso
from agencybrain.utils.passwords import hash_password, validate_password, verify_password

logger = structlog.get_logger(__name__)

GrantMode = Literal["password", "email"]

RESET_TOKEN_TTL = timedelta(hours=24)


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class TeamMember:
    """A person on the agency roster."""

    id: str
    agency_id: str
    name: str
    role: str
    email: str | None
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "agency_id": self.agency_id,
            "name": self.name,
            "role": self.role,
            "email": self.email,
            "created_at": self.created_at,
        }


@dataclass
class StaffUser:
    """A staff login credential."""

    id: str
    agency_id: str
    username: str
    display_name: str
    email: str | None
    is_active: bool
    team_member_id: str | None
    last_login_at: str | None
    created_at: str
    updated_at: str
    has_password: bool = False
    team_member_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "agency_id": self.agency_id,
            "username": self.username,
            "display_name": self.display_name,
            "email": self.email,
            "is_active": self.is_active,
            "team_member_id": self.team_member_id,
            "team_member_name": self.team_member_name,
            "has_password": self.has_password,
            "last_login_at": self.last_login_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class PasswordResetRequest:
    """A pending password-setup request."""

    token: str
    staff_user_id: str
    email: str
    expires_at: str
    used_at: str | None
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "token": self.token,
            "staff_user_id": self.staff_user_id,
            "email": self.email,
            "expires_at": self.expires_at,
            "used_at": self.used_at,
            "created_at": self.created_at,
        }


@dataclass
class GrantAccessResult:
    """Result of creating a staff login."""

    success: bool
    staff_user: StaffUser | None
    message: str
    reset_request: PasswordResetRequest | None = None
    warnings: list[str] = field(default_factory=list)


class StaffAccessError(Exception):
    """Base error for staff access operations."""

    pass


class StaffValidationError(StaffAccessError):
    """Form input rejected."""

    pass


class StaffUserNotFoundError(StaffAccessError):
    """Staff user does not exist."""

    pass


class TeamMemberNotFoundError(StaffAccessError):
    """Team member does not exist in the agency."""

    pass


class DuplicateUsernameError(StaffAccessError):
    """Username already taken."""

    pass


class TeamMemberAlreadyLinkedError(StaffAccessError):
    """Team member is linked to another staff login."""

    pass


class InvalidResetTokenError(StaffAccessError):
    """Password reset token is unknown, used or expired."""

    pass


# =============================================================================
# ROW MAPPING
# =============================================================================


def _row_to_staff_user(row: sqlite3.Row) -> StaffUser:
    keys = row.keys()
    return StaffUser(
        id=row["id"],
        agency_id=row["agency_id"],
        username=row["username"],
        display_name=row["display_name"],
        email=row["email"],
        is_active=bool(row["is_active"]),
        team_member_id=row["team_member_id"],
        last_login_at=row["last_login_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        has_password=bool(row["password_hash"]),
        team_member_name=row["team_member_name"] if "team_member_name" in keys else None,
    )


def _row_to_team_member(row: sqlite3.Row) -> TeamMember:
    return TeamMember(
        id=row["id"],
        agency_id=row["agency_id"],
        name=row["name"],
        role=row["role"],
        email=row["email"],
        created_at=row["created_at"],
    )


def _row_to_reset(row: sqlite3.Row) -> PasswordResetRequest:
    return PasswordResetRequest(
        token=row["token"],
        staff_user_id=row["staff_user_id"],
        email=row["email"],
        expires_at=row["expires_at"],
        used_at=row["used_at"],
        created_at=row["created_at"],
    )


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _fetch_staff_user(conn: sqlite3.Connection, staff_user_id: str) -> sqlite3.Row:
    row = conn.execute(
        "SELECT * FROM staff_users WHERE id = ?", (staff_user_id,)
    ).fetchone()
    if row is None:
        raise StaffUserNotFoundError(f"Staff user not found: {staff_user_id}")
    return row


def _check_team_member_link(
    conn: sqlite3.Connection,
    agency_id: str,
    team_member_id: str,
    staff_user_id: str | None = None,
) -> None:
    member = conn.execute(
        "SELECT id FROM team_members WHERE id = ? AND agency_id = ?",
        (team_member_id, agency_id),
    ).fetchone()
    if member is None:
        raise TeamMemberNotFoundError(f"Team member not found: {team_member_id}")

    linked = conn.execute(
        "SELECT id FROM staff_users WHERE team_member_id = ?", (team_member_id,)
    ).fetchone()
    if linked is not None and linked["id"] != staff_user_id:
        raise TeamMemberAlreadyLinkedError(
            "Team member is already linked to another staff login"
        )


def _insert_reset_request(
    conn: sqlite3.Connection, staff_user_id: str, email: str
) -> PasswordResetRequest:
    created = datetime.now(timezone.utc)
    request = PasswordResetRequest(
        token=secrets.token_urlsafe(32),
        staff_user_id=staff_user_id,
        email=email,
        expires_at=(created + RESET_TOKEN_TTL).isoformat(),
        used_at=None,
        created_at=created.isoformat(),
    )
    conn.execute(
        """
        INSERT INTO staff_password_resets (
            token, staff_user_id, email, expires_at, used_at, created_at
        ) VALUES (?, ?, ?, ?, NULL, ?)
        """,
        (
            request.token,
            request.staff_user_id,
            request.email,
            request.expires_at,
            request.created_at,
        ),
    )
    return request


# =============================================================================
# TEAM MEMBERS
# =============================================================================


def create_team_member(
    agency_id: str,
    name: str,
    role: str = "Sales",
    email: str | None = None,
) -> TeamMember:
    """Add a team member to the agency roster."""
    name = (name or "").strip()
    if not name:
        raise StaffValidationError("Name is required")

    member = TeamMember(
        id=generate_id(),
        agency_id=agency_id,
        name=name,
        role=role or "Sales",
        email=_clean(email),
        created_at=now_iso(),
    )
    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO team_members (id, agency_id, name, role, email, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (member.id, agency_id, member.name, member.role, member.email, member.created_at),
        )

    logger.info("team_member_created", agency_id=agency_id, team_member_id=member.id)
    return member


def list_unlinked_team_members(agency_id: str) -> list[TeamMember]:
    """Team members without a staff login, ordered by name."""
    with get_db() as conn:
        rows = conn.execute(
            """
            SELECT tm.* FROM team_members tm
            WHERE tm.agency_id = ?
              AND NOT EXISTS (
                  SELECT 1 FROM staff_users su WHERE su.team_member_id = tm.id
              )
            ORDER BY tm.name
            """,
            (agency_id,),
        ).fetchall()
    return [_row_to_team_member(r) for r in rows]


# =============================================================================
# STAFF USERS
# =============================================================================


def create_staff_user(
    agency_id: str,
    username: str,
    display_name: str | None = None,
    email: str | None = None,
    mode: GrantMode = "password",
    password: str | None = None,
    team_member_id: str | None = None,
) -> GrantAccessResult:
    """Create a staff login and grant access.

    Args:
        agency_id: Owning agency
        username: Login name, unique across all agencies (case-insensitive)
        display_name: Name shown in the admin UI (defaults to username)
        email: Contact email, required for email mode
        mode: "password" to set the password now, "email" to issue a
            password-setup request
        password: Initial password for password mode
        team_member_id: Optional roster entry to link

    Returns:
        GrantAccessResult with the new login and, in email mode, the
        password-setup request

    Raises:
        StaffValidationError: Missing or invalid form input
        DuplicateUsernameError: Username already exists
        TeamMemberNotFoundError: Team member not in the agency
        TeamMemberAlreadyLinkedError: Team member already has a login
    """
    username = (username or "").strip()
    email = _clean(email)
    display_name = _clean(display_name) or username

    if not username:
        raise StaffValidationError("Username is required")

    if mode == "password":
        try:
            validate_password(password)
        except ValueError as e:
            raise StaffValidationError(str(e)) from e
        password_hash = hash_password(password)
    elif mode == "email":
        if not email:
            raise StaffValidationError("Email is required to send an invite")
        password_hash = None
    else:
        raise StaffValidationError(f"Unknown access mode: {mode}")

    timestamp = now_iso()
    staff_user_id = generate_id()
    reset_request = None

    with get_db() as conn:
        existing = conn.execute(
            "SELECT id FROM staff_users WHERE username = ?", (username,)
        ).fetchone()
        if existing is not None:
            raise DuplicateUsernameError(f"Username already exists: {username}")

        if team_member_id:
            _check_team_member_link(conn, agency_id, team_member_id)

        conn.execute(
            """
            INSERT INTO staff_users (
                id, agency_id, username, display_name, email, password_hash,
                is_active, team_member_id, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?, ?)
            """,
            (
                staff_user_id,
                agency_id,
                username,
                display_name,
                email,
                password_hash,
                team_member_id,
                timestamp,
                timestamp,
            ),
        )

        if mode == "email":
            reset_request = _insert_reset_request(conn, staff_user_id, email)

        staff_user = _row_to_staff_user(_fetch_staff_user(conn, staff_user_id))

    logger.info(
        "staff_user_created",
        agency_id=agency_id,
        staff_user_id=staff_user_id,
        mode=mode,
    )

    if mode == "email":
        message = f"Invite created for {email}"
    else:
        message = f"Staff login created for {username}"

    return GrantAccessResult(
        success=True,
        staff_user=staff_user,
        message=message,
        reset_request=reset_request,
    )


def get_staff_user(staff_user_id: str) -> StaffUser | None:
    """Get a staff user by id."""
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM staff_users WHERE id = ?", (staff_user_id,)
        ).fetchone()
    return _row_to_staff_user(row) if row else None


def list_staff_users(agency_id: str, include_inactive: bool = True) -> list[StaffUser]:
    """List an agency's staff logins with linked team member names."""
    query = """
        SELECT su.*, tm.name AS team_member_name
        FROM staff_users su
        LEFT JOIN team_members tm ON tm.id = su.team_member_id
        WHERE su.agency_id = ?
    """
    if not include_inactive:
        query += " AND su.is_active = 1"
    query += " ORDER BY su.display_name COLLATE NOCASE"

    with get_db() as conn:
        rows = conn.execute(query, (agency_id,)).fetchall()
    return [_row_to_staff_user(r) for r in rows]


def update_staff_user(
    staff_user_id: str,
    display_name: str | None = None,
    email: str | None = None,
) -> StaffUser:
    """Edit the display name and/or email of a login.

    Fields left as None are unchanged. An empty email clears it.
    """
    with get_db() as conn:
        row = _fetch_staff_user(conn, staff_user_id)

        new_display = row["display_name"]
        if display_name is not None:
            new_display = display_name.strip()
            if not new_display:
                raise StaffValidationError("Display name cannot be empty")

        new_email = row["email"] if email is None else _clean(email)

        conn.execute(
            """
            UPDATE staff_users SET display_name = ?, email = ?, updated_at = ?
            WHERE id = ?
            """,
            (new_display, new_email, now_iso(), staff_user_id),
        )
        updated = _row_to_staff_user(_fetch_staff_user(conn, staff_user_id))

    logger.info("staff_user_updated", staff_user_id=staff_user_id)
    return updated


def set_staff_user_active(staff_user_id: str, is_active: bool) -> StaffUser:
    """Deactivate or reactivate a login."""
    with get_db() as conn:
        _fetch_staff_user(conn, staff_user_id)
        conn.execute(
            "UPDATE staff_users SET is_active = ?, updated_at = ? WHERE id = ?",
            (1 if is_active else 0, now_iso(), staff_user_id),
        )
        updated = _row_to_staff_user(_fetch_staff_user(conn, staff_user_id))

    logger.info("staff_user_active_changed", staff_user_id=staff_user_id, is_active=is_active)
    return updated


def reset_staff_password(staff_user_id: str, new_password: str) -> StaffUser:
    """Set a new password directly."""
    try:
        validate_password(new_password)
    except ValueError as e:
        raise StaffValidationError(str(e)) from e

    with get_db() as conn:
        _fetch_staff_user(conn, staff_user_id)
        conn.execute(
            "UPDATE staff_users SET password_hash = ?, updated_at = ? WHERE id = ?",
            (hash_password(new_password), now_iso(), staff_user_id),
        )
        updated = _row_to_staff_user(_fetch_staff_user(conn, staff_user_id))

    logger.info("staff_password_reset", staff_user_id=staff_user_id)
    return updated


def request_password_reset(staff_user_id: str) -> PasswordResetRequest:
    """Issue a password-setup request for a login with an email.

    Raises:
        StaffUserNotFoundError: Unknown staff user
        StaffValidationError: Login has no email
    """
    with get_db() as conn:
        row = _fetch_staff_user(conn, staff_user_id)
        if not row["email"]:
            raise StaffValidationError("Staff user has no email address")
        request = _insert_reset_request(conn, staff_user_id, row["email"])

    logger.info("password_reset_requested", staff_user_id=staff_user_id)
    return request


def complete_password_reset(
    token: str,
    new_password: str,
    now: datetime | None = None,
) -> StaffUser:
    """Consume a password-setup token and set the password.

    Raises:
        InvalidResetTokenError: Token unknown, already used or expired
        StaffValidationError: Password too short
    """
    try:
        validate_password(new_password)
    except ValueError as e:
        raise StaffValidationError(str(e)) from e

    if now is None:
        now = datetime.now(timezone.utc)

    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM staff_password_resets WHERE token = ?", (token,)
        ).fetchone()
        if row is None:
            raise InvalidResetTokenError("Reset link is invalid")

        request = _row_to_reset(row)
        if request.used_at is not None:
            raise InvalidResetTokenError("Reset link has already been used")
        if datetime.fromisoformat(request.expires_at) <= now:
            raise InvalidResetTokenError("Reset link has expired")

        timestamp = now.isoformat()
        conn.execute(
            "UPDATE staff_password_resets SET used_at = ? WHERE token = ?",
            (timestamp, token),
        )
        conn.execute(
            "UPDATE staff_users SET password_hash = ?, updated_at = ? WHERE id = ?",
            (hash_password(new_password), timestamp, request.staff_user_id),
        )
        updated = _row_to_staff_user(_fetch_staff_user(conn, request.staff_user_id))

    logger.info("password_reset_completed", staff_user_id=request.staff_user_id)
    return updated


def link_team_member(staff_user_id: str, team_member_id: str | None) -> StaffUser:
    """Link a login to a team member, or unlink with None."""
    with get_db() as conn:
        row = _fetch_staff_user(conn, staff_user_id)
        if team_member_id:
            _check_team_member_link(conn, row["agency_id"], team_member_id, staff_user_id)

        conn.execute(
            "UPDATE staff_users SET team_member_id = ?, updated_at = ? WHERE id = ?",
            (team_member_id, now_iso(), staff_user_id),
        )
        updated = _row_to_staff_user(_fetch_staff_user(conn, staff_user_id))

    logger.info(
        "staff_user_linked",
        staff_user_id=staff_user_id,
        team_member_id=team_member_id,
    )
    return updated


def authenticate_staff(username: str, password: str) -> StaffUser | None:
    """Check credentials for an active login.

    Returns:
        The staff user on success, None otherwise
    """
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM staff_users WHERE username = ?", ((username or "").strip(),)
        ).fetchone()
        if row is None or not row["is_active"]:
            return None
        if not verify_password(password, row["password_hash"]):
            logger.info("staff_login_failed", staff_user_id=row["id"])
            return None

        conn.execute(
            "UPDATE staff_users SET last_login_at = ? WHERE id = ?",
            (now_iso(), row["id"]),
        )
        user = _row_to_staff_user(_fetch_staff_user(conn, row["id"]))

    logger.info("staff_login", staff_user_id=user.id)
    return user
