"""Tests for the Web API."""

import inspect
import json
from datetime import date
from unittest.mock import MagicMock

import pytest

from agencybrain.core import call_analysis
from agencybrain.core.call_repository import create_call
from agencybrain.core.challenge import list_challenge_lessons, seed_challenge_product
from agencybrain.llm.client import LLMClient, LLMConfig, LLMError, LLMResponse
from agencybrain.web.routes import calls


def _llm(answer: dict) -> LLMClient:
    llm = LLMClient(LLMConfig(api_key="sk-test"))
    llm.chat = MagicMock(
        return_value=LLMResponse(content=json.dumps(answer), model="gpt-4o", provider="openai")
    )
    return llm


class TestHealth:

    def test_health_check(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["version"] == "0.1.0"
        assert "timestamp" in data


class TestStaffEndpoints:
    """Staff logins and team members."""

    def test_grant_access_by_password_and_login(self, client, agency_id):
        response = client.post(
            f"/api/agencies/{agency_id}/staff-users",
            json={"username": "jdoe", "display_name": "Jane Doe", "password": "secret123"},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["message"] == "Staff login created for jdoe"
        assert data["reset_request"] is None
        assert data["staff_user"]["has_password"] is True

        login = client.post("/api/staff-auth/login", json={"username": "jdoe", "password": "secret123"})
        assert login.status_code == 200
        assert login.json()["last_login_at"] is not None

        bad = client.post("/api/staff-auth/login", json={"username": "jdoe", "password": "wrong-pass"})
        assert bad.status_code == 401
        assert bad.json()["detail"] == "Invalid username or password"

    def test_invite_returns_token(self, client, agency_id):
        response = client.post(
            f"/api/agencies/{agency_id}/staff-users",
            json={"username": "ann", "email": "ann@example.com", "mode": "email"},
        )

        assert response.status_code == 201
        reset = response.json()["reset_request"]
        assert reset["email"] == "ann@example.com"

        done = client.post(
            "/api/staff-auth/password-reset",
            json={"token": reset["token"], "new_password": "mypassword"},
        )
        assert done.status_code == 200
        assert done.json()["has_password"] is True

        again = client.post(
            "/api/staff-auth/password-reset",
            json={"token": reset["token"], "new_password": "mypassword"},
        )
        assert again.status_code == 400

    def test_validation_and_duplicates(self, client, agency_id, invite_staff):
        short = client.post(
            f"/api/agencies/{agency_id}/staff-users",
            json={"username": "jdoe", "password": "short"},
        )
        assert short.status_code == 400

        invite_staff("jdoe")
        duplicate = client.post(
            f"/api/agencies/{agency_id}/staff-users",
            json={"username": "JDOE", "email": "x@example.com", "mode": "email"},
        )
        assert duplicate.status_code == 409

    def test_list_edit_and_deactivate(self, client, agency_id, invite_staff):
        staff_id = invite_staff("jdoe", "Jane Doe")

        edited = client.patch(
            f"/api/agencies/{agency_id}/staff-users/{staff_id}",
            json={"display_name": "Jane D."},
        )
        assert edited.json()["display_name"] == "Jane D."

        client.put(f"/api/agencies/{agency_id}/staff-users/{staff_id}/active", json={"is_active": False})

        active = client.get(f"/api/agencies/{agency_id}/staff-users", params={"include_inactive": False})
        assert active.json()["count"] == 0
        everyone = client.get(f"/api/agencies/{agency_id}/staff-users")
        assert everyone.json()["staff_users"][0]["is_active"] is False

    def test_user_from_other_agency_not_found(self, client, invite_staff):
        staff_id = invite_staff("jdoe")
        response = client.patch(
            f"/api/agencies/other-agency/staff-users/{staff_id}",
            json={"display_name": "Nope"},
        )
        assert response.status_code == 404

    def test_team_member_linking(self, client, agency_id, invite_staff):
        first = invite_staff("jdoe")
        second = invite_staff("bsmith")
        member = client.post(f"/api/agencies/{agency_id}/team-members", json={"name": "Jane Doe"})
        assert member.status_code == 201
        member_id = member.json()["id"]

        linked = client.put(
            f"/api/agencies/{agency_id}/staff-users/{first}/team-member",
            json={"team_member_id": member_id},
        )
        assert linked.json()["team_member_id"] == member_id
        assert client.get(f"/api/agencies/{agency_id}/team-members/unlinked").json()["count"] == 0

        conflict = client.put(
            f"/api/agencies/{agency_id}/staff-users/{second}/team-member",
            json={"team_member_id": member_id},
        )
        assert conflict.status_code == 409

    def test_password_reset_request(self, client, agency_id, invite_staff):
        staff_id = invite_staff("jdoe")
        response = client.post(f"/api/agencies/{agency_id}/staff-users/{staff_id}/password-reset")
        assert response.status_code == 201
        assert response.json()["email"] == "jdoe@example.com"


class TestTrainingEndpoints:
    """Content tree, assignments and the progress report."""

    @pytest.fixture
    def base(self, agency_id):
        return f"/api/agencies/{agency_id}/training"

    @pytest.fixture
    def module(self, client, base):
        category = client.post(f"{base}/categories", json={"name": "Sales"}).json()
        module = client.post(
            f"{base}/modules", json={"category_id": category["id"], "name": "Discovery"}
        ).json()
        for name in ("One", "Two"):
            client.post(f"{base}/lessons", json={"module_id": module["id"], "name": name})
        return module

    def test_content_tree(self, client, base, module):
        lessons = client.get(f"{base}/lessons", params={"module_id": module["id"]}).json()
        assert [lesson["name"] for lesson in lessons["lessons"]] == ["One", "Two"]

        renamed = client.patch(f"{base}/modules/{module['id']}", json={"name": "Discovery 101"})
        assert renamed.json()["name"] == "Discovery 101"

        impact = client.get(f"{base}/delete-impact/module/{module['id']}")
        assert impact.json()["dependent_count"] == 2

        assert client.delete(f"{base}/modules/{module['id']}").status_code == 204
        assert client.get(f"{base}/lessons").json()["count"] == 0

    def test_missing_nodes(self, client, base):
        assert client.delete(f"{base}/categories/missing").status_code == 404
        assert client.get(f"{base}/quizzes/missing").status_code == 404
        bad = client.post(f"{base}/categories", json={"name": " "})
        assert bad.status_code == 400

    def test_quiz_flow(self, client, base, module, invite_staff):
        staff_id = invite_staff("jdoe")
        lesson_id = client.get(f"{base}/lessons").json()["lessons"][0]["id"]

        created = client.post(
            f"{base}/quizzes",
            json={
                "lesson_id": lesson_id,
                "name": "Check",
                "questions": [
                    {
                        "question_text": "Pick B",
                        "options": [
                            {"option_text": "A"},
                            {"option_text": "B", "is_correct": True},
                        ],
                    }
                ],
            },
        )
        assert created.status_code == 201
        quiz = client.get(f"{base}/quizzes/{created.json()['id']}").json()
        question = quiz["questions"][0]
        correct = next(o["id"] for o in question["options"] if o["is_correct"])

        attempt = client.post(
            f"{base}/quizzes/{quiz['id']}/attempts",
            json={"staff_user_id": staff_id, "answers": [{"question_id": question["id"], "option_id": correct}]},
        )
        assert attempt.status_code == 201
        assert attempt.json()["score_percent"] == 100

    def test_progress_under_other_agency_not_found(self, client, base, module, invite_staff):
        staff_id = invite_staff("jdoe")
        lesson_id = client.get(f"{base}/lessons").json()["lessons"][0]["id"]
        quiz = client.post(
            f"{base}/quizzes",
            json={
                "lesson_id": lesson_id,
                "name": "Reflect",
                "questions": [{"question_text": "Why?", "question_type": "text_response"}],
            },
        ).json()
        other = "/api/agencies/agency-2/training"

        done = client.post(f"{other}/lessons/{lesson_id}/complete", json={"staff_user_id": staff_id})
        attempt = client.post(
            f"{other}/quizzes/{quiz['id']}/attempts", json={"staff_user_id": staff_id, "answers": []}
        )

        assert done.status_code == 404
        assert attempt.status_code == 404

    def test_assign_and_progress(self, client, base, module, invite_staff):
        jane = invite_staff("jdoe", "Jane Doe")
        bob = invite_staff("bsmith", "Bob Smith")

        first = client.post(
            f"{base}/assignments",
            json={"staff_user_ids": [jane], "module_ids": [module["id"]]},
        )
        assert first.status_code == 201
        assert first.json()["message"] == "Created 1 assignment(s)"

        second = client.post(
            f"{base}/assignments",
            json={"staff_user_ids": [jane, bob], "module_ids": [module["id"]], "due_date": "2099-01-01"},
        )
        body = second.json()
        assert len(body["created"]) == 1
        assert body["skipped"] == [{"staff_user_id": jane, "module_id": module["id"]}]
        assert body["warnings"] == ["1 assignment(s) already existed and were skipped"]

        lesson_id = client.get(f"{base}/lessons").json()["lessons"][0]["id"]
        done = client.post(f"{base}/lessons/{lesson_id}/complete", json={"staff_user_id": jane})
        assert done.status_code == 200

        report = client.get(f"{base}/progress", params={"sort": "percentage", "direction": "desc"}).json()
        assert report["summary"]["total_staff"] == 2
        assert report["summary"]["total_completed"] == 1
        assert [row["name"] for row in report["staff"]] == ["Jane Doe", "Bob Smith"]
        assert report["staff"][0]["completion_percentage"] == 50

        searched = client.get(f"{base}/progress", params={"search": "bob"}).json()
        assert [row["name"] for row in searched["staff"]] == ["Bob Smith"]

    def test_bad_sort_field(self, client, base):
        assert client.get(f"{base}/progress", params={"sort": "shoe_size"}).status_code == 400

    def test_assign_requires_selection(self, client, base, module):
        response = client.post(
            f"{base}/assignments", json={"staff_user_ids": [], "module_ids": [module["id"]]}
        )
        assert response.status_code == 400

    def test_due_date_and_delete(self, client, base, module, invite_staff):
        staff_id = invite_staff("jdoe")
        created = client.post(
            f"{base}/assignments",
            json={"staff_user_ids": [staff_id], "module_ids": [module["id"]]},
        ).json()["created"][0]

        updated = client.put(f"{base}/assignments/{created['id']}/due-date", json={"due_date": "2030-06-01"})
        assert updated.json()["due_date"] == "2030-06-01"

        assert client.delete(f"{base}/assignments/{created['id']}").status_code == 204
        assert client.delete(f"{base}/assignments/{created['id']}").status_code == 404


class TestChallengeEndpoints:
    """Purchases, seat assignment and lesson unlocking."""

    @pytest.fixture
    def product(self, db):
        return seed_challenge_product()

    def test_product_missing(self, client):
        assert client.get("/api/challenge/product").status_code == 404

    def test_product_outline(self, client, product):
        data = client.get("/api/challenge/product").json()
        assert data["name"] == "The Standard Six-Week Challenge"
        assert len(data["lessons"]) == 30

    def test_mondays(self, client):
        data = client.get("/api/challenge/mondays").json()

        options = [date.fromisoformat(d) for d in data["options"]]
        assert len(options) == 8
        assert all(d.weekday() == 0 for d in options)
        assert data["next_monday"] == data["options"][0]
        assert "America/Chicago" in data["timezones"]

    def test_purchase_assign_and_lock(self, client, agency_id, product, invite_staff):
        staff_id = invite_staff("jdoe", "Jane Doe")

        bought = client.post(
            f"/api/challenge/agencies/{agency_id}/purchases",
            json={"purchaser_id": "owner-1", "quantity": 1, "membership_tier": "1:1 Coaching"},
        )
        assert bought.status_code == 201
        purchase = bought.json()
        assert purchase["status"] == "pending"
        assert purchase["total_price_cents"] == 5000

        early = client.post(
            "/api/challenge/assignments",
            json={"purchase_id": purchase["id"], "staff_user_ids": [staff_id], "start_date": "2099-01-05"},
        )
        assert early.status_code == 400

        client.post(f"/api/challenge/purchases/{purchase['id']}/complete")
        seats = client.get(f"/api/challenge/agencies/{agency_id}/available-seats").json()
        assert seats["total_available_seats"] == 1

        start = client.get("/api/challenge/mondays").json()["next_monday"]
        assigned = client.post(
            "/api/challenge/assignments",
            json={
                "purchase_id": purchase["id"],
                "staff_user_ids": [staff_id],
                "start_date": start,
                "timezone": "America/Denver",
            },
        )
        assert assigned.status_code == 201
        assert assigned.json()["seats_remaining"] == 0
        assignment_id = assigned.json()["assignments"][0]["id"]

        last_day = list_challenge_lessons(product.id)[-1]["id"]
        locked = client.post(
            f"/api/challenge/assignments/{assignment_id}/lessons/{last_day}/complete",
            json={"reflection_response": {"takeaway": "x"}},
        )
        assert locked.status_code == 403

        core4 = client.put(
            f"/api/challenge/assignments/{assignment_id}/core4",
            json={"log_date": start, "body": True, "being": True, "balance": True, "business": True},
        )
        assert core4.json()["is_perfect"] is True

        detail = client.get(f"/api/challenge/assignments/{assignment_id}").json()
        assert detail["staff_name"] == "Jane Doe"
        assert detail["core4"]["current_streak"] == 1

        progress = client.get(f"/api/challenge/agencies/{agency_id}/progress").json()
        assert progress["count"] == 1

    def test_not_enough_seats(self, client, agency_id, product, invite_staff):
        staff = [invite_staff("jdoe"), invite_staff("bsmith")]
        purchase = client.post(
            f"/api/challenge/agencies/{agency_id}/purchases",
            json={"purchaser_id": "owner-1", "quantity": 1},
        ).json()
        client.post(f"/api/challenge/purchases/{purchase['id']}/complete")
        start = client.get("/api/challenge/mondays").json()["next_monday"]

        response = client.post(
            "/api/challenge/assignments",
            json={"purchase_id": purchase["id"], "staff_user_ids": staff, "start_date": start},
        )
        assert response.status_code == 409

    def test_invalid_quantity(self, client, agency_id, product):
        response = client.post(
            f"/api/challenge/agencies/{agency_id}/purchases",
            json={"purchaser_id": "owner-1", "quantity": 0},
        )
        assert response.status_code == 422

    def test_unknown_assignment(self, client):
        assert client.get("/api/challenge/assignments/missing").status_code == 404
        response = client.put("/api/challenge/assignments/missing/status", params={"new_status": "paused"})
        assert response.status_code == 404


class TestCallEndpoints:

    def test_analyze(self, client, agency_id, monkeypatch):
        call = create_call(agency_id, "Agent: Hello\nCustomer: Hi")
        llm = _llm({"rapport_score": 90, "coverage_score": 60, "closing_score": 30, "summary": "Short call."})
        monkeypatch.setattr(
            "agencybrain.web.routes.calls.analyze_call",
            lambda call_id: call_analysis.analyze_call(call_id, client=llm),
        )

        response = client.post(f"/api/calls/{call.id}/analyze")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["call"]["overall_score"] == 60
        assert data["call"]["status"] == "analyzed"
        assert data["analysis"]["summary"] == "Short call."

    def test_unknown_call(self, client):
        assert client.post("/api/calls/missing/analyze").status_code == 404

    def test_analyze_route_runs_in_threadpool(self):
        assert not inspect.iscoroutinefunction(calls.analyze)

    def test_missing_transcript(self, client, agency_id):
        call = create_call(agency_id, None)
        assert client.post(f"/api/calls/{call.id}/analyze").status_code == 400

    def test_missing_api_key(self, client, agency_id, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        call = create_call(agency_id, "Agent: Hello")
        response = client.post(f"/api/calls/{call.id}/analyze")
        assert response.status_code == 500

    def test_provider_failure(self, client, agency_id, monkeypatch):
        call = create_call(agency_id, "Agent: Hello")
        llm = _llm({})
        llm.chat.side_effect = LLMError("timeout")
        monkeypatch.setattr(
            "agencybrain.web.routes.calls.analyze_call",
            lambda call_id: call_analysis.analyze_call(call_id, client=llm),
        )

        response = client.post(f"/api/calls/{call.id}/analyze")

        assert response.status_code == 502
        assert "timeout" in response.json()["detail"]
