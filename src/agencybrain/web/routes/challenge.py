"""Six-week Challenge endpoints."""

from typing import Any, Literal

from fastapi import APIRouter, HTTPException, status

from agencybrain.core.challenge import (
    TIMEZONES,
    ChallengeError,
    ChallengeNotFoundError,
    InsufficientSeatsError,
    LessonLockedError,
    activate_due_assignments,
    assign_staff,
    complete_challenge_lesson,
    complete_purchase,
    generate_monday_options,
    get_assignment_detail,
    get_challenge_product,
    get_next_monday,
    list_assignment_progress,
    list_available_purchases,
    list_challenge_lessons,
    list_purchases,
    log_core4,
    purchase_seats,
    set_assignment_status,
    total_available_seats,
)
from agencybrain.web.schemas import (
    AvailableSeatsResponse,
    ChallengeAssignRequest,
    ChallengeAssignResponse,
    ChallengeLessonComplete,
    Core4LogCreate,
    MondayOptionsResponse,
    PurchaseCreate,
)

router = APIRouter(prefix="/api/challenge", tags=["challenge"])


def _raise_http(error: Exception) -> None:
    if isinstance(error, ChallengeNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error)) from error
    if isinstance(error, InsufficientSeatsError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error)) from error
    if isinstance(error, LessonLockedError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(error)) from error
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error)) from error


# =============================================================================
# PRODUCT AND PURCHASES
# =============================================================================


@router.get("/product")
async def get_product() -> dict[str, Any]:
    """The Challenge product with its lesson outline."""
    product = get_challenge_product()
    if product is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="The Challenge is not available",
        )
    return {**product.to_dict(), "lessons": list_challenge_lessons(product.id)}


@router.get("/mondays", response_model=MondayOptionsResponse)
async def monday_options() -> MondayOptionsResponse:
    """Start date choices for a new assignment."""
    return MondayOptionsResponse(
        next_monday=get_next_monday(),
        options=generate_monday_options(),
        timezones=TIMEZONES,
    )


@router.get("/agencies/{agency_id}/purchases")
async def get_purchases(agency_id: str) -> dict[str, Any]:
    purchases = list_purchases(agency_id)
    return {"purchases": [p.to_dict() for p in purchases], "count": len(purchases)}


@router.post("/agencies/{agency_id}/purchases", status_code=status.HTTP_201_CREATED)
async def buy_seats(agency_id: str, body: PurchaseCreate) -> dict[str, Any]:
    """Open a pending purchase priced by membership tier."""
    try:
        purchase = purchase_seats(
            agency_id, body.purchaser_id, body.quantity, membership_tier=body.membership_tier
        )
    except ChallengeError as e:
        _raise_http(e)
    return purchase.to_dict()


@router.post("/purchases/{purchase_id}/complete")
async def confirm_purchase(purchase_id: str) -> dict[str, Any]:
    try:
        purchase = complete_purchase(purchase_id)
    except ChallengeError as e:
        _raise_http(e)
    return purchase.to_dict()


@router.get("/agencies/{agency_id}/available-seats", response_model=AvailableSeatsResponse)
async def available_seats(agency_id: str) -> AvailableSeatsResponse:
    purchases = list_available_purchases(agency_id)
    return AvailableSeatsResponse(
        purchases=[p.to_dict() for p in purchases],
        total_available_seats=total_available_seats(agency_id),
    )


# =============================================================================
# ASSIGNMENTS
# =============================================================================


@router.post("/assignments", response_model=ChallengeAssignResponse, status_code=status.HTTP_201_CREATED)
async def assign(body: ChallengeAssignRequest) -> ChallengeAssignResponse:
    """Assign staff users to seats of a completed purchase."""
    try:
        result = assign_staff(
            body.purchase_id,
            body.staff_user_ids,
            body.start_date,
            timezone=body.timezone,
        )
    except ChallengeError as e:
        _raise_http(e)
    return ChallengeAssignResponse(
        message=result.message,
        assignments=[a.to_dict() for a in result.assignments],
        seats_remaining=result.seats_remaining,
    )


@router.post("/assignments/activate")
async def activate_assignments() -> dict[str, int]:
    """Advance assignment statuses for today."""
    return activate_due_assignments()


@router.put("/assignments/{assignment_id}/status")
async def change_status(
    assignment_id: str,
    new_status: Literal["pending", "active", "paused", "completed", "cancelled"],
) -> dict[str, Any]:
    try:
        assignment = set_assignment_status(assignment_id, new_status)
    except ChallengeError as e:
        _raise_http(e)
    return assignment.to_dict()


@router.get("/agencies/{agency_id}/progress")
async def agency_progress(agency_id: str) -> dict[str, Any]:
    """Progress of every assignment in an agency."""
    rows = list_assignment_progress(agency_id)
    return {"assignments": [row.to_dict() for row in rows], "count": len(rows)}


@router.get("/assignments/{assignment_id}")
async def assignment_detail(assignment_id: str) -> dict[str, Any]:
    try:
        detail = get_assignment_detail(assignment_id)
    except ChallengeError as e:
        _raise_http(e)
    return detail.to_dict()


@router.post("/assignments/{assignment_id}/lessons/{lesson_id}/complete")
async def complete_lesson(
    assignment_id: str, lesson_id: str, body: ChallengeLessonComplete
) -> dict[str, Any]:
    try:
        progress = complete_challenge_lesson(
            assignment_id, lesson_id, reflection_response=body.reflection_response
        )
    except ChallengeError as e:
        _raise_http(e)
    return progress.to_dict()


@router.put("/assignments/{assignment_id}/core4")
async def save_core4(assignment_id: str, body: Core4LogCreate) -> dict[str, Any]:
    """Create or replace the Core 4 log for a day."""
    try:
        log = log_core4(assignment_id, **body.model_dump())
    except ChallengeError as e:
        _raise_http(e)
    return log.to_dict()
