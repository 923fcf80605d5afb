"""Tests for training assignments, lesson completion, quiz grading and reports."""

from datetime import date

import pytest

from agencybrain.core.staff_access import set_staff_user_active
from agencybrain.core.training_assignments import (
    AssignmentNotFoundError,
    AssignmentValidationError,
    bulk_assign,
    delete_assignment,
    get_assignment,
    list_assignments,
    update_assignment_due_date,
)
from agencybrain.core.training_content import (
    create_category,
    create_lesson,
    create_module,
    create_quiz_with_questions,
)
from agencybrain.core.training_progress import (
    ProgressNotFoundError,
    StaffProgressRow,
    build_progress_report,
    filter_and_sort,
    get_staff_status,
    get_status,
    mark_lesson_complete,
    submit_quiz_attempt,
)

TODAY = date(2025, 3, 12)
OTHER_AGENCY = "agency-2"


def _foreign_lesson():
    category = create_category(OTHER_AGENCY, "Theirs")
    module = create_module(OTHER_AGENCY, category.id, "Their module")
    return create_lesson(OTHER_AGENCY, module.id, "Their lesson")


class TestGetStatus:
    """Assignment status precedence."""

    @pytest.mark.parametrize(
        "completed,total,due,expected",
        [
            (4, 4, None, "Completed"),
            (4, 4, "2025-01-01", "Completed"),
            (0, 4, "2025-03-11", "Overdue"),
            (2, 4, "2025-03-11", "Overdue"),
            (2, 4, "2025-03-12", "In Progress"),
            (2, 4, None, "In Progress"),
            (0, 4, "2025-04-01", "Not Started"),
            (0, 0, None, "Not Started"),
        ],
    )
    def test_status(self, completed, total, due, expected):
        assert get_status(completed, total, due, today=TODAY) == expected

    def test_due_date_as_date(self):
        assert get_status(1, 4, date(2025, 3, 1), today=TODAY) == "Overdue"


class TestGetStaffStatus:

    def test_overdue_wins(self):
        assert get_staff_status(["Completed", "Overdue"], 90, True) == "Overdue"

    def test_behind_needs_due_date(self):
        assert get_staff_status(["In Progress"], 20, True) == "Behind"
        assert get_staff_status(["In Progress"], 20, False) == "On Track"

    def test_on_track(self):
        assert get_staff_status(["In Progress"], 50, True) == "On Track"


class TestBulkAssign:

    def test_cross_product(self, tree, agency_id, staff_id, make_staff):
        second = make_staff(agency_id, "bob", "Bob")

        result = bulk_assign(
            agency_id, [staff_id, second], [tree.module.id, tree.other_module.id], due_date="2025-04-01"
        )

        assert len(result.created) == 4
        assert result.skipped == []
        assert result.message == "Created 4 assignment(s)"
        assert {a.due_date for a in result.created} == {"2025-04-01"}

    def test_existing_pairs_skipped(self, tree, agency_id, staff_id):
        bulk_assign(agency_id, [staff_id], [tree.module.id])

        result = bulk_assign(agency_id, [staff_id], [tree.module.id, tree.other_module.id])

        assert len(result.created) == 1
        assert result.skipped == [(staff_id, tree.module.id)]
        assert result.warnings

    def test_empty_selection(self, tree, agency_id, staff_id):
        with pytest.raises(AssignmentValidationError, match="at least one staff member"):
            bulk_assign(agency_id, [], [tree.module.id])
        with pytest.raises(AssignmentValidationError, match="at least one module"):
            bulk_assign(agency_id, [staff_id], [])

    def test_staff_from_other_agency(self, tree, agency_id, make_staff):
        foreign = make_staff("other-agency", "eve")
        with pytest.raises(AssignmentValidationError):
            bulk_assign(agency_id, [foreign], [tree.module.id])

    def test_invalid_due_date(self, tree, agency_id, staff_id):
        with pytest.raises(AssignmentValidationError):
            bulk_assign(agency_id, [staff_id], [tree.module.id], due_date="next week")


class TestAssignmentQueries:

    def test_list_with_status(self, tree, agency_id, staff_id):
        result = bulk_assign(agency_id, [staff_id], [tree.module.id], due_date="2025-03-01")
        mark_lesson_complete(agency_id, staff_id, tree.lessons[0].id)

        assignments = list_assignments(agency_id, today=TODAY)

        assert len(assignments) == 1
        a = assignments[0]
        assert a.id == result.created[0].id
        assert a.staff_name == "Jane Doe"
        assert a.module_name == "Discovery"
        assert (a.completed_lessons, a.total_lessons) == (1, 4)
        assert a.status == "Overdue"
        assert list_assignments(agency_id, status="Completed", today=TODAY) == []

    def test_update_and_clear_due_date(self, tree, agency_id, staff_id):
        assignment = bulk_assign(agency_id, [staff_id], [tree.module.id]).created[0]

        updated = update_assignment_due_date(agency_id, assignment.id, date(2025, 5, 1))
        assert updated.due_date == "2025-05-01"
        assert update_assignment_due_date(agency_id, assignment.id, None).due_date is None

    def test_delete(self, tree, agency_id, staff_id):
        assignment = bulk_assign(agency_id, [staff_id], [tree.module.id]).created[0]
        delete_assignment(agency_id, assignment.id)

        with pytest.raises(AssignmentNotFoundError):
            get_assignment(agency_id, assignment.id)
        with pytest.raises(AssignmentNotFoundError):
            delete_assignment(agency_id, assignment.id)


class TestLessonCompletion:

    def test_idempotent(self, tree, agency_id, staff_id):
        first = mark_lesson_complete(agency_id, staff_id, tree.lessons[0].id)
        second = mark_lesson_complete(agency_id, staff_id, tree.lessons[0].id)
        assert first == second

    def test_unknown_lesson(self, tree, agency_id, staff_id):
        with pytest.raises(ProgressNotFoundError):
            mark_lesson_complete(agency_id, staff_id, "missing")

    def test_lesson_from_other_agency(self, tree, agency_id, staff_id):
        foreign = _foreign_lesson()

        with pytest.raises(ProgressNotFoundError, match="Lesson not found"):
            mark_lesson_complete(agency_id, staff_id, foreign.id)
        with pytest.raises(ProgressNotFoundError, match="Staff user not found"):
            mark_lesson_complete(OTHER_AGENCY, staff_id, foreign.id)


class TestQuizAttempts:

    @pytest.fixture
    def quiz(self, tree, agency_id):
        return create_quiz_with_questions(
            agency_id,
            tree.lessons[0].id,
            "Check",
            [
                {"question_text": "Q1", "options": [
                    {"option_text": "right", "is_correct": True}, {"option_text": "wrong"}]},
                {"question_text": "Q2", "options": [
                    {"option_text": "wrong"}, {"option_text": "right", "is_correct": True}]},
                {"question_text": "Q3", "question_type": "true_false", "options": [
                    {"option_text": "True", "is_correct": True}, {"option_text": "False"}]},
                {"question_text": "Explain", "question_type": "text_response"},
            ],
        )

    @staticmethod
    def _answer(question, pick_correct: bool) -> dict:
        option = next(o for o in question.options if o.is_correct == pick_correct)
        return {"question_id": question.id, "option_id": option.id}

    def test_score_rounds(self, quiz, agency_id, staff_id):
        q1, q2, q3, text = quiz.questions
        answers = [
            self._answer(q1, True),
            self._answer(q2, True),
            self._answer(q3, False),
            {"question_id": text.id, "text_response": "Because"},
        ]

        result = submit_quiz_attempt(agency_id, staff_id, quiz.id, answers)

        assert result.graded_count == 3
        assert result.correct_count == 2
        assert result.score_percent == 67

    def test_unanswered_counts_wrong(self, quiz, agency_id, staff_id):
        result = submit_quiz_attempt(agency_id, staff_id, quiz.id, [])
        assert result.score_percent == 0

    def test_option_from_other_question_is_wrong(self, quiz, agency_id, staff_id):
        q1, q2, _, _ = quiz.questions
        correct_of_q2 = next(o for o in q2.options if o.is_correct)
        result = submit_quiz_attempt(
            agency_id, staff_id, quiz.id, [{"question_id": q1.id, "option_id": correct_of_q2.id}]
        )
        assert result.correct_count == 0

    def test_text_only_quiz_scores_100(self, tree, agency_id, staff_id):
        quiz = create_quiz_with_questions(
            agency_id, tree.lessons[1].id, "Reflect",
            [{"question_text": "Thoughts?", "question_type": "text_response"}],
        )
        answers = [{"question_id": quiz.questions[0].id, "text_response": "ok"}]
        result = submit_quiz_attempt(agency_id, staff_id, quiz.id, answers)
        assert result.score_percent == 100

    def test_unknown_quiz(self, tree, agency_id, staff_id):
        with pytest.raises(ProgressNotFoundError):
            submit_quiz_attempt(agency_id, staff_id, "missing", [])

    def test_quiz_from_other_agency(self, tree, agency_id, staff_id):
        lesson = _foreign_lesson()
        quiz = create_quiz_with_questions(
            OTHER_AGENCY,
            lesson.id,
            "Their quiz",
            [{"question_text": "Why?", "question_type": "text_response"}],
        )

        with pytest.raises(ProgressNotFoundError, match="Quiz not found"):
            submit_quiz_attempt(agency_id, staff_id, quiz.id, [])
        with pytest.raises(ProgressNotFoundError, match="Staff user not found"):
            submit_quiz_attempt(OTHER_AGENCY, staff_id, quiz.id, [])

        assert build_progress_report(OTHER_AGENCY, today=TODAY).quiz_scores == []


class TestProgressReport:

    def test_summary_and_rows(self, tree, agency_id, staff_id, make_staff):
        bob = make_staff(agency_id, "bob", "Bob")
        bulk_assign(agency_id, [staff_id], [tree.module.id], due_date="2025-03-01")
        bulk_assign(agency_id, [bob], [tree.other_module.id])
        mark_lesson_complete(agency_id, staff_id, tree.lessons[0].id)
        mark_lesson_complete(agency_id, bob, tree.other_lessons[0].id)
        mark_lesson_complete(agency_id, bob, tree.other_lessons[1].id)
        # Lesson outside Bob's assigned modules does not count
        mark_lesson_complete(agency_id, bob, tree.lessons[0].id)

        report = build_progress_report(agency_id, today=TODAY)

        assert report.summary.total_staff == 2
        assert report.summary.total_completed == 3
        assert report.summary.avg_completion == 50
        assert report.summary.overdue_count == 1

        rows = {r.name: r for r in report.staff}
        assert rows["Jane Doe"].status == "Overdue"
        assert rows["Jane Doe"].completion_percentage == 25
        assert rows["Bob"].completed_lessons == 2
        assert rows["Bob"].total_lessons == 2
        assert rows["Bob"].status == "On Track"
        assert rows["Bob"].last_activity is not None

    def test_inactive_staff_excluded(self, tree, agency_id, staff_id):
        bulk_assign(agency_id, [staff_id], [tree.module.id])
        set_staff_user_active(staff_id, False)

        report = build_progress_report(agency_id, today=TODAY)

        assert report.summary.total_staff == 0
        assert report.staff == []

    def test_staff_without_assignments(self, db, agency_id, staff_id):
        report = build_progress_report(agency_id, today=TODAY)
        row = report.staff[0]
        assert row.assigned_modules == 0
        assert row.completion_percentage == 0
        assert row.status == "On Track"
        assert report.summary.avg_completion == 0

    def test_quiz_scores(self, tree, agency_id, staff_id):
        quiz = create_quiz_with_questions(
            agency_id, tree.lessons[0].id, "Check",
            [{"question_text": "Q1", "options": [
                {"option_text": "right", "is_correct": True}, {"option_text": "wrong"}]}],
        )
        question = quiz.questions[0]
        right = next(o for o in question.options if o.is_correct)
        wrong = next(o for o in question.options if not o.is_correct)

        for option in (right, wrong):
            submit_quiz_attempt(
                agency_id, staff_id, quiz.id, [{"question_id": question.id, "option_id": option.id}]
            )

        scores = build_progress_report(agency_id, today=TODAY).quiz_scores
        assert len(scores) == 1
        row = scores[0]
        assert row.quiz_name == "Check"
        assert row.staff_name == "Jane Doe"
        assert row.attempts == 2
        assert row.best_score == 100
        assert row.latest_score == 0


class TestFilterAndSort:

    @pytest.fixture
    def rows(self):
        def row(name, pct, status, modules, last=None, email=None):
            return StaffProgressRow(
                staff_user_id=name.lower(),
                name=name,
                email=email,
                assigned_modules=len(modules),
                completed_lessons=pct // 10,
                total_lessons=10,
                completion_percentage=pct,
                last_activity=last,
                status=status,
                module_ids=modules,
            )

        return [
            row("carol", 80, "On Track", ["m1"], "2025-03-10"),
            row("Alice", 20, "Behind", ["m1", "m2"], "2025-03-11", email="ali@corp.com"),
            row("bob", 0, "Overdue", ["m2"]),
        ]

    def test_sort_by_name_case_insensitive(self, rows):
        assert [r.name for r in filter_and_sort(rows)] == ["Alice", "bob", "carol"]

    def test_sort_by_status(self, rows):
        result = filter_and_sort(rows, sort_field="status")
        assert [r.status for r in result] == ["Overdue", "Behind", "On Track"]

    def test_sort_desc(self, rows):
        result = filter_and_sort(rows, sort_field="percentage", direction="desc")
        assert [r.completion_percentage for r in result] == [80, 20, 0]

    def test_search_matches_email(self, rows):
        assert [r.name for r in filter_and_sort(rows, search="CORP")] == ["Alice"]

    def test_filters(self, rows):
        assert [r.name for r in filter_and_sort(rows, status="Overdue")] == ["bob"]
        assert [r.name for r in filter_and_sort(rows, module_id="m2")] == ["Alice", "bob"]
        assert len(filter_and_sort(rows, status="all", module_id="all")) == 3

    def test_unknown_sort_field(self, rows):
        with pytest.raises(ValueError):
            filter_and_sort(rows, sort_field="shoe_size")
