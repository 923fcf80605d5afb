"""Pydantic schemas for the Web API.

Request bodies and response models for staff, training, Challenge and
call analysis endpoints.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, Field


# =============================================================================
# HEALTH
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    timestamp: str


# =============================================================================
# STAFF SCHEMAS
# =============================================================================


class StaffUserCreate(BaseModel):
    """Request body for creating a staff login."""

    username: str = Field(..., min_length=1, max_length=100)
    display_name: str | None = Field(default=None, max_length=200)
    email: str | None = Field(default=None, max_length=200)
    mode: Literal["password", "email"] = "password"
    password: str | None = None
    team_member_id: str | None = None


class StaffUserUpdate(BaseModel):
    """Request body for editing a staff login."""

    display_name: str | None = None
    email: str | None = None


class StaffActiveUpdate(BaseModel):
    is_active: bool


class PasswordReset(BaseModel):
    new_password: str


class PasswordResetComplete(BaseModel):
    token: str
    new_password: str


class TeamMemberLink(BaseModel):
    team_member_id: str | None = None


class TeamMemberCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    role: str = "Sales"
    email: str | None = None


class StaffLogin(BaseModel):
    username: str
    password: str


class StaffUserResponse(BaseModel):
    """Response for a staff login."""

    id: str
    agency_id: str
    username: str
    display_name: str
    email: str | None
    is_active: bool
    team_member_id: str | None
    team_member_name: str | None = None
    has_password: bool
    last_login_at: str | None
    created_at: str
    updated_at: str


class StaffUserListResponse(BaseModel):
    staff_users: list[StaffUserResponse]
    count: int


class PasswordResetResponse(BaseModel):
    token: str
    staff_user_id: str
    email: str
    expires_at: str


class GrantAccessResponse(BaseModel):
    """Response for a created login."""

    message: str
    staff_user: StaffUserResponse
    reset_request: PasswordResetResponse | None = None


class TeamMemberResponse(BaseModel):
    id: str
    agency_id: str
    name: str
    role: str
    email: str | None
    created_at: str


class TeamMemberListResponse(BaseModel):
    team_members: list[TeamMemberResponse]
    count: int


# =============================================================================
# TRAINING SCHEMAS
# =============================================================================


class CategoryCreate(BaseModel):
    name: str
    description: str | None = None
    sort_order: int | None = None


class CategoryUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    sort_order: int | None = None
    is_active: bool | None = None


class ModuleCreate(BaseModel):
    category_id: str
    name: str
    description: str | None = None
    sort_order: int | None = None


class ModuleUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    sort_order: int | None = None
    is_active: bool | None = None
    category_id: str | None = None


class LessonCreate(BaseModel):
    module_id: str
    name: str
    description: str | None = None
    video_url: str | None = None
    video_platform: str | None = None
    content_html: str | None = None
    thumbnail_url: str | None = None
    sort_order: int | None = None


class LessonUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    video_url: str | None = None
    video_platform: str | None = None
    content_html: str | None = None
    thumbnail_url: str | None = None
    sort_order: int | None = None
    is_active: bool | None = None


class QuizOptionIn(BaseModel):
    option_text: str
    is_correct: bool = False


class QuizQuestionIn(BaseModel):
    question_text: str
    question_type: Literal["multiple_choice", "true_false", "text_response"] = "multiple_choice"
    options: list[QuizOptionIn] = Field(default_factory=list)


class QuizCreate(BaseModel):
    lesson_id: str
    name: str
    description: str | None = None
    questions: list[QuizQuestionIn]


class QuizAnswer(BaseModel):
    question_id: str
    option_id: str | None = None
    text_response: str | None = None


class QuizAttemptCreate(BaseModel):
    staff_user_id: str
    answers: list[QuizAnswer]


class LessonCompletion(BaseModel):
    staff_user_id: str


class BulkAssignRequest(BaseModel):
    staff_user_ids: list[str]
    module_ids: list[str]
    due_date: date | None = None
    assigned_by: str | None = None


class DueDateUpdate(BaseModel):
    due_date: date | None = None


class BulkAssignResponse(BaseModel):
    message: str
    created: list[dict[str, Any]]
    skipped: list[dict[str, str]]
    warnings: list[str]


class DeleteImpactResponse(BaseModel):
    kind: str
    id: str
    name: str
    dependent_count: int
    message: str


# =============================================================================
# CHALLENGE SCHEMAS
# =============================================================================


class PurchaseCreate(BaseModel):
    purchaser_id: str
    quantity: int = Field(..., ge=1)
    membership_tier: str | None = None


class ChallengeAssignRequest(BaseModel):
    purchase_id: str
    staff_user_ids: list[str]
    start_date: date
    timezone: str = "America/New_York"


class ChallengeAssignResponse(BaseModel):
    message: str
    assignments: list[dict[str, Any]]
    seats_remaining: int


class ChallengeLessonComplete(BaseModel):
    reflection_response: dict[str, Any] = Field(default_factory=dict)


class Core4LogCreate(BaseModel):
    log_date: date
    body: bool = False
    being: bool = False
    balance: bool = False
    business: bool = False
    notes: str | None = None


class MondayOptionsResponse(BaseModel):
    next_monday: date
    options: list[date]
    timezones: dict[str, str]


class AvailableSeatsResponse(BaseModel):
    purchases: list[dict[str, Any]]
    total_available_seats: int


# =============================================================================
# CALL ANALYSIS SCHEMAS
# =============================================================================


class CallAnalysisResponse(BaseModel):
    """Response for an analyzed call."""

    success: bool
    call_id: str
    call: dict[str, Any]
    analysis: dict[str, Any]
