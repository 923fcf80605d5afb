"""Staff access endpoints."""

from fastapi import APIRouter, HTTPException, status

from agencybrain.core.staff_access import (
    DuplicateUsernameError,
    InvalidResetTokenError,
    StaffUser,
    StaffUserNotFoundError,
    StaffValidationError,
    TeamMemberAlreadyLinkedError,
    TeamMemberNotFoundError,
    authenticate_staff,
    complete_password_reset,
    create_staff_user,
    create_team_member,
    get_staff_user,
    link_team_member,
    list_staff_users,
    list_unlinked_team_members,
    request_password_reset,
    reset_staff_password,
    set_staff_user_active,
    update_staff_user,
)
from agencybrain.web.schemas import (
    GrantAccessResponse,
    PasswordReset,
    PasswordResetComplete,
    PasswordResetResponse,
    StaffActiveUpdate,
    StaffLogin,
    StaffUserCreate,
    StaffUserListResponse,
    StaffUserResponse,
    StaffUserUpdate,
    TeamMemberCreate,
    TeamMemberLink,
    TeamMemberListResponse,
    TeamMemberResponse,
)

router = APIRouter(prefix="/api/agencies/{agency_id}", tags=["staff"])
auth_router = APIRouter(prefix="/api/staff-auth", tags=["staff"])


def _to_response(user: StaffUser) -> StaffUserResponse:
    return StaffUserResponse(**user.to_dict())


def _require_user(agency_id: str, staff_user_id: str) -> None:
    user = get_staff_user(staff_user_id)
    if user is None or user.agency_id != agency_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Staff user '{staff_user_id}' not found",
        )


def _raise_http(error: Exception) -> None:
    if isinstance(error, (StaffUserNotFoundError, TeamMemberNotFoundError)):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error)) from error
    if isinstance(error, (DuplicateUsernameError, TeamMemberAlreadyLinkedError)):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error)) from error
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error)) from error


# =============================================================================
# STAFF USERS
# =============================================================================


@router.get("/staff-users", response_model=StaffUserListResponse)
async def list_staff(agency_id: str, include_inactive: bool = True) -> StaffUserListResponse:
    """List staff logins for an agency."""
    users = list_staff_users(agency_id, include_inactive=include_inactive)
    return StaffUserListResponse(
        staff_users=[_to_response(u) for u in users],
        count=len(users),
    )


@router.post(
    "/staff-users",
    response_model=GrantAccessResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_staff(agency_id: str, body: StaffUserCreate) -> GrantAccessResponse:
    """Create a login by password or by email invite."""
    try:
        result = create_staff_user(
            agency_id=agency_id,
            username=body.username,
            display_name=body.display_name,
            email=body.email,
            mode=body.mode,
            password=body.password,
            team_member_id=body.team_member_id,
        )
    except (StaffValidationError, DuplicateUsernameError, TeamMemberNotFoundError, TeamMemberAlreadyLinkedError) as e:
        _raise_http(e)

    reset = None
    if result.reset_request is not None:
        reset = PasswordResetResponse(
            token=result.reset_request.token,
            staff_user_id=result.reset_request.staff_user_id,
            email=result.reset_request.email,
            expires_at=result.reset_request.expires_at,
        )
    return GrantAccessResponse(
        message=result.message,
        staff_user=_to_response(result.staff_user),
        reset_request=reset,
    )


@router.patch("/staff-users/{staff_user_id}", response_model=StaffUserResponse)
async def edit_staff(agency_id: str, staff_user_id: str, body: StaffUserUpdate) -> StaffUserResponse:
    """Edit display name and email."""
    _require_user(agency_id, staff_user_id)
    try:
        user = update_staff_user(staff_user_id, display_name=body.display_name, email=body.email)
    except StaffValidationError as e:
        _raise_http(e)
    return _to_response(user)


@router.put("/staff-users/{staff_user_id}/active", response_model=StaffUserResponse)
async def set_active(agency_id: str, staff_user_id: str, body: StaffActiveUpdate) -> StaffUserResponse:
    """Deactivate or reactivate a login."""
    _require_user(agency_id, staff_user_id)
    return _to_response(set_staff_user_active(staff_user_id, body.is_active))


@router.post("/staff-users/{staff_user_id}/password", response_model=StaffUserResponse)
async def set_password(agency_id: str, staff_user_id: str, body: PasswordReset) -> StaffUserResponse:
    """Set a new password directly."""
    _require_user(agency_id, staff_user_id)
    try:
        user = reset_staff_password(staff_user_id, body.new_password)
    except StaffValidationError as e:
        _raise_http(e)
    return _to_response(user)


@router.post(
    "/staff-users/{staff_user_id}/password-reset",
    response_model=PasswordResetResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_password_reset(agency_id: str, staff_user_id: str) -> PasswordResetResponse:
    """Issue a password-setup request for the login's email."""
    _require_user(agency_id, staff_user_id)
    try:
        request = request_password_reset(staff_user_id)
    except StaffValidationError as e:
        _raise_http(e)
    return PasswordResetResponse(
        token=request.token,
        staff_user_id=request.staff_user_id,
        email=request.email,
        expires_at=request.expires_at,
    )


@router.put("/staff-users/{staff_user_id}/team-member", response_model=StaffUserResponse)
async def link_member(agency_id: str, staff_user_id: str, body: TeamMemberLink) -> StaffUserResponse:
    """Link or unlink a team member."""
    _require_user(agency_id, staff_user_id)
    try:
        user = link_team_member(staff_user_id, body.team_member_id)
    except (TeamMemberNotFoundError, TeamMemberAlreadyLinkedError) as e:
        _raise_http(e)
    return _to_response(user)


# =============================================================================
# TEAM MEMBERS
# =============================================================================


@router.get("/team-members/unlinked", response_model=TeamMemberListResponse)
async def unlinked_members(agency_id: str) -> TeamMemberListResponse:
    """Team members without a login."""
    members = list_unlinked_team_members(agency_id)
    return TeamMemberListResponse(
        team_members=[TeamMemberResponse(**m.to_dict()) for m in members],
        count=len(members),
    )


@router.post(
    "/team-members",
    response_model=TeamMemberResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_member(agency_id: str, body: TeamMemberCreate) -> TeamMemberResponse:
    try:
        member = create_team_member(agency_id, body.name, role=body.role, email=body.email)
    except StaffValidationError as e:
        _raise_http(e)
    return TeamMemberResponse(**member.to_dict())


# =============================================================================
# STAFF AUTH
# =============================================================================


@auth_router.post("/login", response_model=StaffUserResponse)
async def login(body: StaffLogin) -> StaffUserResponse:
    """Check staff credentials."""
    user = authenticate_staff(body.username, body.password)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password",
        )
    return _to_response(user)


@auth_router.post("/password-reset", response_model=StaffUserResponse)
async def finish_password_reset(body: PasswordResetComplete) -> StaffUserResponse:
    """Set a password from a password-setup token."""
    try:
        user = complete_password_reset(body.token, body.new_password)
    except (InvalidResetTokenError, StaffValidationError) as e:
        _raise_http(e)
    return _to_response(user)
