"""Training content, assignment and progress endpoints."""

from typing import Any, Literal

from fastapi import APIRouter, HTTPException, status

from agencybrain.core.training_assignments import (
    AssignmentNotFoundError,
    AssignmentValidationError,
    bulk_assign,
    delete_assignment,
    list_assignments,
    update_assignment_due_date,
)
from agencybrain.core.training_content import (
    ContentNotFoundError,
    ContentValidationError,
    create_category,
    create_lesson,
    create_module,
    create_quiz_with_questions,
    delete_category,
    delete_lesson,
    delete_module,
    delete_quiz,
    get_delete_impact,
    get_quiz,
    list_categories,
    list_lessons,
    list_modules,
    list_quizzes,
    update_category,
    update_lesson,
    update_module,
)
from agencybrain.core.training_progress import (
    ProgressNotFoundError,
    build_progress_report,
    filter_and_sort,
    mark_lesson_complete,
    submit_quiz_attempt,
)
from agencybrain.web.schemas import (
    BulkAssignRequest,
    BulkAssignResponse,
    CategoryCreate,
    CategoryUpdate,
    DeleteImpactResponse,
    DueDateUpdate,
    LessonCompletion,
    LessonCreate,
    LessonUpdate,
    ModuleCreate,
    ModuleUpdate,
    QuizAttemptCreate,
    QuizCreate,
)

router = APIRouter(prefix="/api/agencies/{agency_id}/training", tags=["training"])


def _raise_http(error: Exception) -> None:
    if isinstance(error, (ContentNotFoundError, AssignmentNotFoundError, ProgressNotFoundError)):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error)) from error
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error)) from error


# =============================================================================
# CATEGORIES
# =============================================================================


@router.get("/categories")
async def get_categories(agency_id: str, active_only: bool = False) -> dict[str, Any]:
    categories = list_categories(agency_id, active_only=active_only)
    return {"categories": [c.to_dict() for c in categories], "count": len(categories)}


@router.post("/categories", status_code=status.HTTP_201_CREATED)
async def add_category(agency_id: str, body: CategoryCreate) -> dict[str, Any]:
    try:
        category = create_category(agency_id, body.name, body.description, body.sort_order)
    except ContentValidationError as e:
        _raise_http(e)
    return category.to_dict()


@router.patch("/categories/{category_id}")
async def edit_category(agency_id: str, category_id: str, body: CategoryUpdate) -> dict[str, Any]:
    try:
        category = update_category(agency_id, category_id, **body.model_dump(exclude_unset=True))
    except (ContentNotFoundError, ContentValidationError) as e:
        _raise_http(e)
    return category.to_dict()


@router.delete("/categories/{category_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_category(agency_id: str, category_id: str) -> None:
    """Delete a category with its modules and lessons."""
    try:
        delete_category(agency_id, category_id)
    except ContentNotFoundError as e:
        _raise_http(e)


# =============================================================================
# MODULES
# =============================================================================


@router.get("/modules")
async def get_modules(agency_id: str, category_id: str | None = None) -> dict[str, Any]:
    modules = list_modules(agency_id, category_id=category_id)
    return {"modules": [m.to_dict() for m in modules], "count": len(modules)}


@router.post("/modules", status_code=status.HTTP_201_CREATED)
async def add_module(agency_id: str, body: ModuleCreate) -> dict[str, Any]:
    try:
        module = create_module(agency_id, body.category_id, body.name, body.description, body.sort_order)
    except (ContentNotFoundError, ContentValidationError) as e:
        _raise_http(e)
    return module.to_dict()


@router.patch("/modules/{module_id}")
async def edit_module(agency_id: str, module_id: str, body: ModuleUpdate) -> dict[str, Any]:
    """Edit a module, optionally moving it to another category."""
    try:
        module = update_module(agency_id, module_id, **body.model_dump(exclude_unset=True))
    except (ContentNotFoundError, ContentValidationError) as e:
        _raise_http(e)
    return module.to_dict()


@router.delete("/modules/{module_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_module(agency_id: str, module_id: str) -> None:
    try:
        delete_module(agency_id, module_id)
    except ContentNotFoundError as e:
        _raise_http(e)


# =============================================================================
# LESSONS
# =============================================================================


@router.get("/lessons")
async def get_lessons(agency_id: str, module_id: str | None = None) -> dict[str, Any]:
    lessons = list_lessons(agency_id, module_id=module_id)
    return {"lessons": [lesson.to_dict() for lesson in lessons], "count": len(lessons)}


@router.post("/lessons", status_code=status.HTTP_201_CREATED)
async def add_lesson(agency_id: str, body: LessonCreate) -> dict[str, Any]:
    fields = body.model_dump()
    module_id = fields.pop("module_id")
    name = fields.pop("name")
    try:
        lesson = create_lesson(agency_id, module_id, name, **fields)
    except (ContentNotFoundError, ContentValidationError) as e:
        _raise_http(e)
    return lesson.to_dict()


@router.patch("/lessons/{lesson_id}")
async def edit_lesson(agency_id: str, lesson_id: str, body: LessonUpdate) -> dict[str, Any]:
    try:
        lesson = update_lesson(agency_id, lesson_id, **body.model_dump(exclude_unset=True))
    except (ContentNotFoundError, ContentValidationError) as e:
        _raise_http(e)
    return lesson.to_dict()


@router.delete("/lessons/{lesson_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_lesson(agency_id: str, lesson_id: str) -> None:
    try:
        delete_lesson(agency_id, lesson_id)
    except ContentNotFoundError as e:
        _raise_http(e)


@router.post("/lessons/{lesson_id}/complete")
async def complete_lesson(agency_id: str, lesson_id: str, body: LessonCompletion) -> dict[str, Any]:
    """Record a lesson as completed by a staff user."""
    try:
        completed_at = mark_lesson_complete(agency_id, body.staff_user_id, lesson_id)
    except ProgressNotFoundError as e:
        _raise_http(e)
    return {"lesson_id": lesson_id, "staff_user_id": body.staff_user_id, "completed_at": completed_at}


# =============================================================================
# QUIZZES
# =============================================================================


@router.get("/quizzes")
async def get_quizzes(agency_id: str, lesson_id: str | None = None) -> dict[str, Any]:
    quizzes = list_quizzes(agency_id, lesson_id=lesson_id)
    return {"quizzes": [q.to_dict() for q in quizzes], "count": len(quizzes)}


@router.get("/quizzes/{quiz_id}")
async def get_quiz_detail(agency_id: str, quiz_id: str) -> dict[str, Any]:
    quiz = get_quiz(agency_id, quiz_id)
    if quiz is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Quiz '{quiz_id}' not found",
        )
    return quiz.to_dict()


@router.post("/quizzes", status_code=status.HTTP_201_CREATED)
async def add_quiz(agency_id: str, body: QuizCreate) -> dict[str, Any]:
    """Create a quiz with its questions and options."""
    questions = [q.model_dump() for q in body.questions]
    try:
        quiz = create_quiz_with_questions(
            agency_id, body.lesson_id, body.name, questions, description=body.description
        )
    except (ContentNotFoundError, ContentValidationError) as e:
        _raise_http(e)
    return quiz.to_dict()


@router.delete("/quizzes/{quiz_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_quiz(agency_id: str, quiz_id: str) -> None:
    try:
        delete_quiz(agency_id, quiz_id)
    except ContentNotFoundError as e:
        _raise_http(e)


@router.post("/quizzes/{quiz_id}/attempts", status_code=status.HTTP_201_CREATED)
async def attempt_quiz(agency_id: str, quiz_id: str, body: QuizAttemptCreate) -> dict[str, Any]:
    """Grade and store a quiz attempt."""
    answers = [a.model_dump() for a in body.answers]
    try:
        result = submit_quiz_attempt(agency_id, body.staff_user_id, quiz_id, answers)
    except ProgressNotFoundError as e:
        _raise_http(e)
    return result.to_dict()


@router.get("/delete-impact/{kind}/{node_id}", response_model=DeleteImpactResponse)
async def delete_impact(
    agency_id: str,
    kind: Literal["category", "module", "lesson", "quiz"],
    node_id: str,
) -> DeleteImpactResponse:
    """Describe what deleting a node will cascade to."""
    try:
        impact = get_delete_impact(agency_id, kind, node_id)
    except ContentNotFoundError as e:
        _raise_http(e)
    return DeleteImpactResponse(**impact.to_dict())


# =============================================================================
# ASSIGNMENTS
# =============================================================================


@router.get("/assignments")
async def get_assignments(
    agency_id: str,
    staff_user_id: str | None = None,
    module_id: str | None = None,
    status_filter: str | None = None,
) -> dict[str, Any]:
    assignments = list_assignments(
        agency_id, staff_user_id=staff_user_id, module_id=module_id, status=status_filter
    )
    return {"assignments": [a.to_dict() for a in assignments], "count": len(assignments)}


@router.post("/assignments", response_model=BulkAssignResponse, status_code=status.HTTP_201_CREATED)
async def assign_modules(agency_id: str, body: BulkAssignRequest) -> BulkAssignResponse:
    """Assign every selected module to every selected staff user."""
    try:
        result = bulk_assign(
            agency_id,
            body.staff_user_ids,
            body.module_ids,
            due_date=body.due_date,
            assigned_by=body.assigned_by,
        )
    except AssignmentValidationError as e:
        _raise_http(e)
    return BulkAssignResponse(
        message=result.message,
        created=[a.to_dict() for a in result.created],
        skipped=[{"staff_user_id": s, "module_id": m} for s, m in result.skipped],
        warnings=result.warnings,
    )


@router.put("/assignments/{assignment_id}/due-date")
async def set_due_date(agency_id: str, assignment_id: str, body: DueDateUpdate) -> dict[str, Any]:
    try:
        assignment = update_assignment_due_date(agency_id, assignment_id, body.due_date)
    except (AssignmentNotFoundError, AssignmentValidationError) as e:
        _raise_http(e)
    return assignment.to_dict()


@router.delete("/assignments/{assignment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_assignment(agency_id: str, assignment_id: str) -> None:
    try:
        delete_assignment(agency_id, assignment_id)
    except AssignmentNotFoundError as e:
        _raise_http(e)


# =============================================================================
# PROGRESS
# =============================================================================


@router.get("/progress")
async def get_progress(
    agency_id: str,
    search: str | None = None,
    status_filter: str | None = None,
    module_id: str | None = None,
    sort: str = "name",
    direction: Literal["asc", "desc"] = "asc",
) -> dict[str, Any]:
    """Agency progress report with filtered and sorted staff rows."""
    report = build_progress_report(agency_id)
    try:
        report.staff = filter_and_sort(
            report.staff,
            search=search,
            status=status_filter,
            module_id=module_id,
            sort_field=sort,
            direction=direction,
        )
    except ValueError as e:
        _raise_http(e)
    return report.to_dict()
