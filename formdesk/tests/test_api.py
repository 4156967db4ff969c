"""
Integration tests for the FastAPI API layer.

Tests cover:
- Template CRUD with caller headers and camelCase payloads
- Status codes: 400 authoring, 422 validation, 404, 403, 409
- Public listing
- Direct submissions and response access
- Fill-out sessions: start, set values, next/back, submit, ownership
- POST /api/paginate and POST /api/validate-template
- Assignments, survey tokens and invitation mail (200 / 502)
- GET /api/schemas and GET /api/health
"""

import json
from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from formdesk.api.routes import configure_routes, router
from formdesk.core.assignments import AssignmentService
from formdesk.core.mail import RecordingMailTransport
from formdesk.core.service import FormService
from formdesk.core.session import SessionStore
from formdesk.core.store import InMemoryFormStore

SCHEMAS_DIR = Path(__file__).parent.parent / "schemas"

OWNER = {"X-User-Id": "owner-1"}
STRANGER = {"X-User-Id": "user-2"}
ADMIN = {"X-User-Id": "admin-1", "X-User-Role": "admin"}


# --- Fixtures ---


def _load_registration() -> dict:
    with open(SCHEMAS_DIR / "registration_wizard.json") as f:
        return json.load(f)


def _two_page_template(**overrides) -> dict:
    data = {
        "title": "Two pages",
        "isPublic": True,
        "fields": [
            {"fieldKey": "name", "label": "Name", "required": True},
            {"isPageBreak": True},
            {
                "fieldKey": "age",
                "label": "Age",
                "dataType": "number",
                "inputWidget": "number",
                "validationRule": {"min": 18},
            },
        ],
    }
    data.update(overrides)
    return data


def _create_test_app(mail_failure: str | None = None):
    """Create a FastAPI test client over fresh in-memory stores."""
    app = FastAPI()
    store = InMemoryFormStore()
    session_store = SessionStore(timeout_seconds=3600)
    mailer = RecordingMailTransport(fail_with=mail_failure)
    configure_routes(
        FormService(store),
        session_store,
        AssignmentService(store, mailer=mailer),
    )
    app.include_router(router, prefix="/api")
    return TestClient(app), mailer


@pytest.fixture
def client():
    test_client, _ = _create_test_app()
    return test_client


def _create(client, payload=None, headers=OWNER) -> dict:
    response = client.post("/api/templates", json=payload or _two_page_template(), headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


# =============================================================
# Test: Templates
# =============================================================


class TestTemplates:

    def test_create_returns_camel_case(self, client):
        data = _create(client)
        assert data["id"]
        assert data["ownerId"] == "owner-1"
        assert data["fields"][1]["isPageBreak"] is True
        assert data["responseCount"] == 0

    def test_create_requires_login(self, client):
        response = client.post("/api/templates", json=_two_page_template())
        assert response.status_code == 403

    def test_create_invalid_template(self, client):
        payload = _two_page_template(fields=[{"fieldKey": "c", "label": "C", "inputWidget": "select"}])
        response = client.post("/api/templates", json=payload, headers=OWNER)
        assert response.status_code == 400
        assert any("options" in e for e in response.json()["detail"]["errors"])

    def test_create_missing_title(self, client):
        response = client.post("/api/templates", json=_two_page_template(title=""), headers=OWNER)
        assert response.status_code == 400
        assert "Title is required" in response.json()["detail"]["errors"]

    def test_get_private_forbidden(self, client):
        created = _create(client, _two_page_template(isPublic=False))
        response = client.get(f"/api/templates/{created['id']}", headers=STRANGER)
        assert response.status_code == 403

    def test_get_missing(self, client):
        response = client.get("/api/templates/missing", headers=OWNER)
        assert response.status_code == 404

    def test_patch_camel_case(self, client):
        created = _create(client)
        response = client.patch(
            f"/api/templates/{created['id']}",
            json={"title": "Renamed", "maxResponses": 10},
            headers=OWNER,
        )
        assert response.status_code == 200
        assert response.json()["title"] == "Renamed"
        assert response.json()["maxResponses"] == 10

    def test_status_toggle(self, client):
        created = _create(client)
        response = client.put(
            f"/api/templates/{created['id']}/status", json={"isActive": False}, headers=OWNER
        )
        assert response.json()["isActive"] is False

    def test_list_mine(self, client):
        _create(client)
        _create(client, headers=STRANGER)
        response = client.get("/api/templates", headers=OWNER)
        assert len(response.json()["templates"]) == 1

    def test_public_listing(self, client):
        _create(client, _two_page_template(title="Public one"))
        _create(client, _two_page_template(title="Hidden", isPublic=False))
        response = client.get("/api/templates/public", params={"search": "public"})
        data = response.json()
        assert data["total"] == 1
        assert data["totalPages"] == 1
        assert data["templates"][0]["title"] == "Public one"

    def test_delete(self, client):
        created = _create(client)
        assert client.delete(f"/api/templates/{created['id']}", headers=STRANGER).status_code == 403
        assert client.delete(f"/api/templates/{created['id']}", headers=ADMIN).status_code == 200
        assert client.get(f"/api/templates/{created['id']}", headers=OWNER).status_code == 404


# =============================================================
# Test: Direct submissions
# =============================================================


class TestResponses:

    def test_submit_and_list(self, client):
        created = _create(client)
        response = client.post(
            f"/api/templates/{created['id']}/responses",
            json={"values": {"name": "Ann", "age": 30}},
        )
        assert response.status_code == 201
        response_id = response.json()["responseId"]

        listed = client.get(f"/api/templates/{created['id']}/responses", headers=OWNER).json()
        assert [r["id"] for r in listed["responses"]] == [response_id]

        record = client.get(f"/api/responses/{response_id}", headers=OWNER).json()
        assert record["answers"][0] == {"fieldKey": "name", "label": "Name", "value": "Ann"}
        assert record["userAgent"] == "testclient"

    def test_validation_errors(self, client):
        created = _create(client)
        response = client.post(
            f"/api/templates/{created['id']}/responses",
            json={"values": {"name": "", "age": 10}},
        )
        assert response.status_code == 422
        assert response.json()["detail"]["errors"] == {
            "name": "Name is required",
            "age": "Age must be ≥ 18",
        }

    def test_cap_reached_conflict(self, client):
        created = _create(client, _two_page_template(maxResponses=1))
        url = f"/api/templates/{created['id']}/responses"
        assert client.post(url, json={"values": {"name": "Ann"}}).status_code == 201
        assert client.post(url, json={"values": {"name": "Bob"}}).status_code == 409

    def test_responses_forbidden_to_strangers(self, client):
        created = _create(client)
        response = client.get(f"/api/templates/{created['id']}/responses", headers=STRANGER)
        assert response.status_code == 403


# =============================================================
# Test: Fill-out sessions
# =============================================================


class TestSessions:

    def test_wizard_flow(self, client):
        created = _create(client)
        started = client.post(f"/api/templates/{created['id']}/sessions", headers=OWNER)
        assert started.status_code == 201
        session = started.json()
        sid = session["sessionId"]
        assert session["pageCount"] == 2
        assert [f["fieldKey"] for f in session["fields"]] == ["name"]

        blocked = client.post(f"/api/sessions/{sid}/next", headers=OWNER).json()
        assert blocked["ok"] is False
        assert blocked["errors"] == {"name": "Name is required"}

        client.post(f"/api/sessions/{sid}/values", json={"values": {"name": "Alice"}}, headers=OWNER)
        moved = client.post(f"/api/sessions/{sid}/next", headers=OWNER).json()
        assert moved["ok"] is True
        assert moved["pageIndex"] == 1

        client.post(f"/api/sessions/{sid}/values", json={"values": {"age": "15"}}, headers=OWNER)
        rejected = client.post(f"/api/sessions/{sid}/submit", headers=OWNER).json()
        assert rejected["ok"] is False
        assert rejected["errors"] == {"age": "Age must be ≥ 18"}

        back = client.post(f"/api/sessions/{sid}/back", headers=OWNER).json()
        assert back["pageIndex"] == 0
        assert back["values"]["age"] == "15"

        client.post(f"/api/sessions/{sid}/values", json={"values": {"age": 21}}, headers=OWNER)
        done = client.post(f"/api/sessions/{sid}/submit", headers=OWNER).json()
        assert done["ok"] is True
        assert done["status"] == "submitted"
        assert done["responseId"]

        again = client.post(f"/api/sessions/{sid}/values", json={"values": {"age": 22}}, headers=OWNER)
        assert again.status_code == 409

    def test_checkbox_toggle(self, client):
        created = _create(client, _load_registration())
        sid = client.post(f"/api/templates/{created['id']}/sessions").json()["sessionId"]
        for value in ("lightning", "keynote"):
            client.post(
                f"/api/sessions/{sid}/toggle",
                json={"fieldKey": "sessions", "optionValue": value, "checked": True},
            )
        state = client.get(f"/api/sessions/{sid}").json()
        assert state["values"]["sessions"] == ["keynote", "lightning"]

    def test_unknown_field(self, client):
        created = _create(client)
        sid = client.post(f"/api/templates/{created['id']}/sessions").json()["sessionId"]
        response = client.post(f"/api/sessions/{sid}/values", json={"values": {"bogus": 1}})
        assert response.status_code == 422
        assert response.json()["detail"]["errors"] == {"bogus": "Unknown field"}

    def test_session_owned_by_starter(self, client):
        created = _create(client)
        sid = client.post(f"/api/templates/{created['id']}/sessions", headers=OWNER).json()["sessionId"]
        assert client.get(f"/api/sessions/{sid}", headers=STRANGER).status_code == 403
        assert client.get(f"/api/sessions/{sid}", headers=ADMIN).status_code == 200

    def test_delete_session(self, client):
        created = _create(client)
        sid = client.post(f"/api/templates/{created['id']}/sessions").json()["sessionId"]
        assert client.delete(f"/api/sessions/{sid}").json()["success"] is True
        assert client.get(f"/api/sessions/{sid}").status_code == 404

    def test_inactive_template_cannot_start(self, client):
        created = _create(client, _two_page_template(isActive=False))
        response = client.post(f"/api/templates/{created['id']}/sessions", headers=OWNER)
        assert response.status_code == 409


# =============================================================
# Test: Authoring helpers
# =============================================================


class TestAuthoringHelpers:

    def test_paginate(self, client):
        fields = [{"isPageBreak": True}, {"fieldKey": "a", "label": "A"}, {"isPageBreak": True},
                  {"isPageBreak": True}, {"fieldKey": "b", "label": "B"}, {"isPageBreak": True}]
        data = client.post("/api/paginate", json={"fields": fields}).json()
        assert data["pageCount"] == 2
        assert [[f["fieldKey"] for f in page] for page in data["pages"]] == [["a"], ["b"]]

    def test_paginate_invalid_field(self, client):
        response = client.post("/api/paginate", json={"fields": [{"fieldKey": "a"}]})
        assert response.status_code == 400

    def test_validate_template_valid(self, client):
        response = client.post("/api/validate-template", json={"template": _load_registration()})
        assert response.json() == {"valid": True, "errors": []}

    def test_validate_template_invalid(self, client):
        payload = _two_page_template(
            title="",
            fields=[{"fieldKey": "a", "label": "A"}, {"fieldKey": "a", "label": "Again"}],
        )
        data = client.post("/api/validate-template", json={"template": payload}).json()
        assert data["valid"] is False
        assert any("Duplicate field key" in e for e in data["errors"])


# =============================================================
# Test: Assignments and mail
# =============================================================


class TestAssignments:

    def test_assign_and_resolve_token(self, client):
        created = _create(client)
        response = client.post(
            "/api/assignments",
            json={"templateId": created["id"], "userId": "user-2", "email": "u2@example.com"},
            headers=ADMIN,
        )
        assert response.status_code == 201
        assignment = response.json()["assignment"]
        assert response.json()["created"] is True

        token = assignment["surveyToken"]
        resolved = client.get(f"/api/assignments/token/{token}", headers=STRANGER)
        assert resolved.json()["id"] == assignment["id"]
        assert client.get(f"/api/assignments/token/{token}", headers=OWNER).status_code == 403

        updated = client.put(f"/api/assignments/token/{token}/status", json={"status": "completed"})
        assert updated.json()["status"] == "completed"
        assert updated.json()["completedAt"] is not None

        listed = client.get("/api/users/user-2/assignments", headers=STRANGER).json()
        assert len(listed["assignments"]) == 1

    def test_assign_requires_admin(self, client):
        created = _create(client)
        response = client.post(
            "/api/assignments",
            json={"templateId": created["id"], "userId": "user-2"},
            headers=OWNER,
        )
        assert response.status_code == 403

    def test_bulk_assign(self, client):
        created = _create(client)
        response = client.post(
            "/api/assignments/bulk",
            json={
                "templateId": created["id"],
                "recipients": [{"userId": "a"}, {"userId": "a"}, {"userId": "b", "email": "b@example.com"}],
            },
            headers=ADMIN,
        )
        data = response.json()
        assert data["successCount"] == 2
        assert [r["status"] for r in data["results"]] == ["success", "skipped", "success"]

    def test_send_invitation(self):
        client, mailer = _create_test_app()
        created = _create(client)
        assignment = client.post(
            "/api/assignments",
            json={"templateId": created["id"], "userId": "user-2", "email": "u2@example.com"},
            headers=ADMIN,
        ).json()["assignment"]

        response = client.post(
            "/api/mail/assignments", json={"assignmentId": assignment["id"]}, headers=ADMIN
        )
        assert response.status_code == 200
        assert mailer.sent[0]["to"] == "u2@example.com"

    def test_send_invitation_failure(self):
        client, _ = _create_test_app(mail_failure="smtp down")
        created = _create(client)
        assignment = client.post(
            "/api/assignments",
            json={"templateId": created["id"], "userId": "user-2", "email": "u2@example.com"},
            headers=ADMIN,
        ).json()["assignment"]

        response = client.post(
            "/api/mail/assignments", json={"assignmentId": assignment["id"]}, headers=ADMIN
        )
        assert response.status_code == 502
        assert "smtp down" in response.json()["detail"]


# =============================================================
# Test: Example schemas and health
# =============================================================


class TestMisc:

    def test_list_schemas(self, client):
        data = client.get("/api/schemas").json()
        filenames = [s["filename"] for s in data["schemas"]]
        assert "registration_wizard.json" in filenames
        assert "feedback_survey.json" in filenames

    def test_get_schema(self, client):
        data = client.get("/api/schemas/registration_wizard.json").json()
        assert data["title"] == "Event Registration"

    def test_get_missing_schema(self, client):
        assert client.get("/api/schemas/nope.json").status_code == 404

    def test_health(self, client):
        created = _create(client)
        client.post(f"/api/templates/{created['id']}/sessions")
        data = client.get("/api/health").json()
        assert data["status"] == "healthy"
        assert data["active_sessions"] == 1
