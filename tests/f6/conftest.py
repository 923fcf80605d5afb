"""Fixtures for F6 tests - Web API and CLI."""

import pytest
from fastapi.testclient import TestClient

from agencybrain.web.api import create_app


@pytest.fixture
def client(db) -> TestClient:
    """API client on the per-test database (startup hooks do not run)."""
    return TestClient(create_app())


@pytest.fixture
def invite_staff(client, agency_id):
    """Create invited staff logins through the API and return their ids."""

    def _invite(username: str, display_name: str | None = None) -> str:
        response = client.post(
            f"/api/agencies/{agency_id}/staff-users",
            json={
                "username": username,
                "display_name": display_name,
                "email": f"{username}@example.com",
                "mode": "email",
            },
        )
        assert response.status_code == 201
        return response.json()["staff_user"]["id"]

    return _invite
