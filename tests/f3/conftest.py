"""Fixtures for F3 tests - Training."""

from dataclasses import dataclass

import pytest

from agencybrain.core.staff_access import create_staff_user
from agencybrain.core.training_content import (
    Category,
    Lesson,
    Module,
    create_category,
    create_lesson,
    create_module,
)


@dataclass
class TrainingTree:
    category: Category
    module: Module
    lessons: list[Lesson]
    other_module: Module
    other_lessons: list[Lesson]


def _make_staff(agency_id: str, username: str, display_name: str | None = None) -> str:
    """Create an invited staff login (no password hashing) and return its id."""
    result = create_staff_user(
        agency_id,
        username,
        display_name=display_name,
        email=f"{username}@example.com",
        mode="email",
    )
    return result.staff_user.id


@pytest.fixture
def tree(db, agency_id) -> TrainingTree:
    """One category with a 4-lesson module and a 2-lesson module."""
    category = create_category(agency_id, "Sales Basics")
    module = create_module(agency_id, category.id, "Discovery")
    lessons = [create_lesson(agency_id, module.id, f"Lesson {i}") for i in range(1, 5)]
    other_module = create_module(agency_id, category.id, "Closing")
    other_lessons = [create_lesson(agency_id, other_module.id, f"Close {i}") for i in range(1, 3)]
    return TrainingTree(category, module, lessons, other_module, other_lessons)


@pytest.fixture
def make_staff(db):
    return _make_staff


@pytest.fixture
def staff_id(db, agency_id) -> str:
    return _make_staff(agency_id, "jdoe", "Jane Doe")
