"""Fixtures for F4 tests - The Challenge."""

import pytest

from agencybrain.core.challenge import (
    complete_purchase,
    purchase_seats,
    seed_challenge_product,
)
from agencybrain.core.staff_access import create_staff_user


def _make_staff(agency_id: str, username: str, display_name: str | None = None) -> str:
    result = create_staff_user(
        agency_id,
        username,
        display_name=display_name,
        email=f"{username}@example.com",
        mode="email",
    )
    return result.staff_user.id


@pytest.fixture
def product(db):
    return seed_challenge_product()


@pytest.fixture
def make_staff(db):
    return _make_staff


@pytest.fixture
def staff_ids(db, agency_id) -> list[str]:
    return [
        _make_staff(agency_id, "jdoe", "Jane Doe"),
        _make_staff(agency_id, "bsmith", "Bob Smith"),
    ]


@pytest.fixture
def purchase(product, agency_id):
    """A paid purchase with 3 seats."""
    pending = purchase_seats(agency_id, "owner-1", 3)
    return complete_purchase(pending.id)
