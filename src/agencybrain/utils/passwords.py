"""Password helpers for staff logins.

Hashes are stored as ``pbkdf2_sha256$<iterations>$<salt>$<hash>``.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import string

MIN_PASSWORD_LENGTH = 8
PASSWORD_ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits

_ALGORITHM = "pbkdf2_sha256"
_ITERATIONS = 260_000


def generate_random_password(length: int = 12) -> str:
    """Generate a random password from A-Z, a-z and 0-9."""
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def validate_password(password: str | None) -> None:
    """Check a new password against the login form rules.

    Raises:
        ValueError: If the password is missing or too short
    """
    if not password:
        raise ValueError("Password is required")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


def hash_password(password: str, iterations: int = _ITERATIONS) -> str:
    """Hash a password with a fresh salt."""
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), salt.encode("utf-8"), iterations
    )
    return f"{_ALGORITHM}${iterations}${salt}${digest.hex()}"


def verify_password(password: str, hashed: str | None) -> bool:
    """Check a password against a stored hash.

    Malformed or empty hashes never verify.
    """
    if not hashed:
        return False

    parts = hashed.split("$")
    if len(parts) != 4 or parts[0] != _ALGORITHM:
        return False

    _, iterations, salt, expected = parts
    try:
        rounds = int(iterations)
    except ValueError:
        return False

    digest = hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), salt.encode("utf-8"), rounds
    )
    return hmac.compare_digest(digest.hex(), expected)
