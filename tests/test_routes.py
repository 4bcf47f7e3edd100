from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from conftest import auth_headers
from crm.core.exceptions import InvalidTransition, NotFoundError
from crm.db.session import get_session
from crm.main import app
from crm.routes.deps import get_activity_tracker, get_assignment_engine, get_pipeline_service
from crm.services.assignment import BulkAssignmentResult, PlannedAssignment
from crm.services.pipeline import StageChange

client = TestClient(app)


@pytest.fixture(autouse=True)
def clear_overrides():
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def db():
    session = AsyncMock()
    session.add = MagicMock()

    async def fake_session():
        yield session

    app.dependency_overrides[get_session] = fake_session
    return session


def test_management_api_requires_token():
    response = client.get("/api/leads/1")
    assert response.status_code == 401
    assert response.json()["code"] == "AuthenticationError"


def test_expired_token():
    response = client.get("/api/leads/1", headers=auth_headers(expires_in=-60))
    assert response.status_code == 401


def test_token_without_tenant_claim():
    from conftest import make_token

    token = make_token(entity_id=None)
    response = client.get("/api/leads/1", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_lead_of_another_tenant_is_not_found(db):
    get_lead = AsyncMock(side_effect=NotFoundError("Lead 1 not found", details={"lead_id": 1}))
    with patch("crm.services.lead_store.get_lead", get_lead):
        response = client.get("/api/leads/1", headers=auth_headers(entity_id=2))

    assert response.status_code == 404
    assert get_lead.await_args.args[1:] == (2, 1)


def test_lead_counts(db):
    with patch("crm.services.lead_store.count_by_status", AsyncMock(return_value={"new": 3, "won": 1})):
        response = client.get("/api/leads/counts", headers=auth_headers())
    assert response.json() == {"success": True, "data": {"new": 3, "won": 1}}


def test_update_lead_validates_email(db):
    response = client.patch("/api/leads/1", json={"email": "not-an-email"}, headers=auth_headers())
    assert response.status_code == 422


def test_change_status_reports_allowed_statuses():
    pipeline = MagicMock()
    pipeline.change_status = AsyncMock(side_effect=InvalidTransition("new", "negotiation", {"qualified", "lost"}))
    app.dependency_overrides[get_pipeline_service] = lambda: pipeline

    response = client.post("/api/lead-stages/change-status", json={"lead_id": 1, "status_id": 6}, headers=auth_headers())

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "InvalidTransition"
    assert body["details"]["allowed_statuses"] == ["lost", "qualified"]


def test_change_status_uses_caller_identity():
    pipeline = MagicMock()
    pipeline.change_status = AsyncMock(
        return_value=StageChange(lead_id=1, previous_status="new", new_status="qualified", stage_id=9, sequence=2)
    )
    app.dependency_overrides[get_pipeline_service] = lambda: pipeline

    response = client.post(
        "/api/lead-stages/change-status",
        json={"lead_id": 1, "status_id": 2, "notes": "Budget confirmed"},
        headers=auth_headers(user_id=7, entity_id=3),
    )

    assert response.status_code == 200
    assert response.json()["data"]["new_status"] == "qualified"
    args, kwargs = pipeline.change_status.await_args
    assert args == (3, 1, 2, 7)
    assert kwargs["notes"] == "Budget confirmed"


def test_bulk_assign_requires_manager():
    engine = MagicMock()
    engine.bulk_assign_unassigned = AsyncMock()
    app.dependency_overrides[get_assignment_engine] = lambda: engine

    response = client.post("/api/lead-assignments/bulk-assign", json={}, headers=auth_headers(role="sales_rep"))

    assert response.status_code == 403
    engine.bulk_assign_unassigned.assert_not_awaited()


def test_bulk_assign_as_manager():
    engine = MagicMock()
    engine.bulk_assign_unassigned = AsyncMock(
        return_value=BulkAssignmentResult(
            total_assigned=2,
            assignments=[PlannedAssignment(1, 10), PlannedAssignment(2, 11)],
            left_unassigned=0,
        )
    )
    app.dependency_overrides[get_assignment_engine] = lambda: engine

    response = client.post(
        "/api/lead-assignments/bulk-assign",
        json={"max_per_user": 5},
        headers=auth_headers(user_id=12, role="manager"),
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["total_assigned"] == 2
    assert data["assignments"][0] == {"lead_id": 1, "user_id": 10}
    assert engine.bulk_assign_unassigned.await_args.kwargs["max_per_user"] == 5


def test_bulk_assign_rejects_zero_cap():
    app.dependency_overrides[get_assignment_engine] = lambda: MagicMock()
    response = client.post(
        "/api/lead-assignments/bulk-assign", json={"max_per_user": 0}, headers=auth_headers(role="admin")
    )
    assert response.status_code == 422


def test_bulk_follow_up_update():
    tracker = MagicMock()
    tracker.bulk_update_follow_up_dates = AsyncMock(return_value=1)
    app.dependency_overrides[get_activity_tracker] = lambda: tracker

    response = client.put(
        "/api/lead-activities/bulk-update-follow-ups",
        json={"activity_ids": [4, 5, 5], "next_follow_up_date": "2024-07-01T09:00:00Z"},
        headers=auth_headers(),
    )

    assert response.status_code == 200
    assert response.json()["data"] == {"requested": 2, "updated": 1}


def test_follow_up_summary_defaults_to_whole_tenant():
    tracker = MagicMock()
    tracker.get_follow_up_summary = AsyncMock(return_value={"total_pending": 0})
    app.dependency_overrides[get_activity_tracker] = lambda: tracker

    response = client.get("/api/lead-activities/follow-ups/summary", headers=auth_headers(entity_id=4))

    assert response.status_code == 200
    tracker.get_follow_up_summary.assert_awaited_once_with(4, None)


def test_health(db):
    response = client.get("/api/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["status"] == "healthy"


def test_request_id_is_echoed():
    response = client.get("/api/health/live", headers={"X-Request-ID": "req-abc"})
    assert response.headers["X-Request-ID"] == "req-abc"


def test_sensitive_headers_are_redacted():
    from crm.middleware.logging import filter_headers

    filtered = filter_headers(
        {"Authorization": "Bearer x", "X-Hub-Signature-256": "sha256=abc", "X-Website-Key": "k", "Accept": "*/*"}
    )
    assert filtered == {
        "Authorization": "[REDACTED]",
        "X-Hub-Signature-256": "[REDACTED]",
        "X-Website-Key": "[REDACTED]",
        "Accept": "*/*",
    }
