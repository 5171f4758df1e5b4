from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from ticketflow.core.config import Settings
from ticketflow.main import create_app
from ticketflow.tickets import TicketService

from .conftest import T0, FrozenClock

TOKENS = {
    "admin-token": "admin",
    "agent-token": "agent",
    "manager-token": "manager",
    "requester-token": "requester",
}


def _auth(caller: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {caller}-token"}


@pytest.fixture
def client(service: TicketService):
    app = create_app(Settings(api_tokens=TOKENS, otel_enabled=False), ticket_service=service)
    with TestClient(app) as test_client:
        yield test_client


def _create(client: TestClient) -> dict:
    response = client.post(
        "/tickets",
        json={
            "title": "Printer jam",
            "category": "incident",
            "priority": "high",
            "requester_id": "requester",
            "requester_department": "Finance",
        },
        headers=_auth("requester"),
    )
    assert response.status_code == 201
    return response.json()


def test_ping_is_public(client: TestClient):
    assert client.get("/ping").json() == {"status": "ok"}


def test_anonymous_caller_is_rejected(client: TestClient):
    assert client.get("/tickets").status_code == 401
    assert client.get("/tickets", headers={"Authorization": "Bearer nope"}).status_code == 401
    assert client.get("/tickets", headers={"Authorization": "Basic abc"}).status_code == 401


def test_lifecycle_over_http(client: TestClient, clock: FrozenClock):
    created = _create(client)
    ticket_id = created["id"]
    assert created["status"] == "open"
    assert created["version"] == 1

    assigned = client.post(
        f"/tickets/{ticket_id}/assign",
        json={"user_ids": ["agent"], "lead_id": "agent"},
        headers=_auth("manager"),
    )
    assert assigned.status_code == 200
    assert assigned.json()["assignees"] == [{"user_id": "agent", "is_lead": True}]

    estimated = client.put(
        f"/tickets/{ticket_id}/estimate", json={"value": 1.5, "unit": "hours"}, headers=_auth("agent")
    )
    assert estimated.json()["status"] == "in_progress"
    assert estimated.json()["estimated_minutes"] == 90
    assert estimated.json()["estimated_display"] == "1 h 30 min"

    assert client.post(f"/tickets/{ticket_id}/submit", headers=_auth("agent")).json()["status"] == "pending"
    validated = client.post(f"/tickets/{ticket_id}/validate", headers=_auth("requester"))
    assert validated.status_code == 200
    assert validated.json()["status"] == "resolved"

    again = client.post(f"/tickets/{ticket_id}/validate", headers=_auth("requester"))
    assert again.status_code == 400

    history = client.get(f"/tickets/{ticket_id}/history", headers=_auth("agent")).json()
    assert [event["sequence"] for event in history] == [1, 2, 3, 4, 5]
    assert history[-1]["metadata"] == {"trigger": "validate"}


def test_permission_denied_hides_reason(client: TestClient):
    ticket_id = _create(client)["id"]
    response = client.post(f"/tickets/{ticket_id}/close", headers=_auth("requester"))
    assert response.status_code == 403
    assert response.json() == {"detail": "Action not allowed"}


def test_stale_if_match_returns_conflict(client: TestClient):
    ticket_id = _create(client)["id"]
    ok = client.post(f"/tickets/{ticket_id}/close", headers={**_auth("agent"), "If-Match": '"1"'})
    assert ok.status_code == 200

    stale = client.post(f"/tickets/{ticket_id}/reopen", headers={**_auth("agent"), "If-Match": "1"})
    assert stale.status_code == 409
    assert stale.json()["detail"] == "Ticket changed, please retry"

    bad = client.post(f"/tickets/{ticket_id}/reopen", headers={**_auth("agent"), "If-Match": "latest"})
    assert bad.status_code == 400


def test_validation_errors_carry_field(client: TestClient):
    response = client.post(
        "/tickets",
        json={"category": "incident", "requester_department": "Finance"},
        headers=_auth("requester"),
    )
    assert response.status_code == 422
    assert response.json()["detail"] == {"field": "requester", "reason": "requester_id or requester_name is required"}

    ticket_id = _create(client)["id"]
    empty = client.post(f"/tickets/{ticket_id}/assign", json={"user_ids": []}, headers=_auth("manager"))
    assert empty.status_code == 422
    assert empty.json()["detail"]["reason"] == "EmptySelection"


def test_unknown_ticket_is_not_found(client: TestClient):
    assert client.get("/tickets/missing", headers=_auth("agent")).status_code == 404
    assert client.post("/tickets/missing/close", headers=_auth("agent")).status_code == 404


def test_patch_and_delete(client: TestClient):
    ticket_id = _create(client)["id"]
    patched = client.patch(f"/tickets/{ticket_id}", json={"priority": "critical"}, headers=_auth("agent"))
    assert patched.status_code == 200
    assert patched.json()["priority"] == "critical"

    assert client.delete(f"/tickets/{ticket_id}", headers=_auth("admin")).status_code == 204
    assert client.get(f"/tickets/{ticket_id}", headers=_auth("admin")).status_code == 404
    history = client.get(f"/tickets/{ticket_id}/history", headers=_auth("admin")).json()
    assert history[-1]["action"] == "deleted"


def test_sla_endpoints(client: TestClient, clock: FrozenClock):
    rule = client.post(
        "/sla/rules",
        json={"name": "Incidents", "category": "incident", "target_time": 240},
        headers=_auth("admin"),
    )
    assert rule.status_code == 201
    rule_id = rule.json()["id"]
    assert client.post(
        "/sla/rules", json={"name": "x", "category": "incident", "target_time": 1}, headers=_auth("agent")
    ).status_code == 403

    ticket_id = _create(client)["id"]
    clock.advance(minutes=300)
    client.post(f"/tickets/{ticket_id}/close", headers=_auth("agent"))

    params = {
        "period_start": (T0 - timedelta(days=1)).isoformat(),
        "period_end": (T0 + timedelta(days=1)).isoformat(),
    }
    report = client.get("/sla/compliance", params=params, headers=_auth("manager"))
    assert report.status_code == 200
    body = report.json()
    assert body["total_tickets"] == 1
    assert body["overall_compliance"] == 0.0
    assert body["by_rule"][0]["sla_rule_id"] == rule_id

    violations = client.get("/sla/violations", params=params, headers=_auth("manager")).json()
    assert violations[0]["violation_minutes"] == 60

    status = client.get(f"/tickets/{ticket_id}/sla", headers=_auth("agent")).json()
    assert status["state"] == "violated"

    updated = client.put(f"/sla/rules/{rule_id}", json={"target_time": 6, "unit": "hours"}, headers=_auth("admin"))
    assert updated.json()["target_minutes"] == 360
    assert client.delete(f"/sla/rules/{rule_id}", headers=_auth("admin")).status_code == 204
    assert client.get(f"/sla/rules/{rule_id}", headers=_auth("admin")).status_code == 404


def test_metrics_endpoint_exposes_ticket_counters(client: TestClient):
    _create(client)
    response = client.get("/metrics")
    assert response.status_code == 200
    assert 'ticket_operations_total{operation="create"}' in response.text
    assert "# TYPE sla_compliance_duration_seconds summary" in response.text


def test_service_not_configured_returns_503():
    app = create_app(Settings(api_tokens=TOKENS, storage_backend="memory"))
    app.state.ticket_service = None
    client = TestClient(app)
    assert client.get("/tickets", headers=_auth("agent")).status_code == 503


def test_comments_over_http(client: TestClient):
    ticket_id = _create(client)["id"]

    posted = client.post(
        f"/tickets/{ticket_id}/comments", json={"body": "Paper tray is empty"}, headers=_auth("requester")
    )
    assert posted.status_code == 201
    assert posted.json()["is_internal"] is False

    internal = client.post(
        f"/tickets/{ticket_id}/comments",
        json={"body": "Toner order pending", "is_internal": True},
        headers=_auth("agent"),
    )
    assert internal.status_code == 201
    denied = client.post(
        f"/tickets/{ticket_id}/comments", json={"body": "Peek", "is_internal": True}, headers=_auth("requester")
    )
    assert denied.status_code == 403

    seen_by_requester = client.get(f"/tickets/{ticket_id}/comments", headers=_auth("requester")).json()
    seen_by_agent = client.get(f"/tickets/{ticket_id}/comments", headers=_auth("agent")).json()
    assert [comment["body"] for comment in seen_by_requester] == ["Paper tray is empty"]
    assert [comment["body"] for comment in seen_by_agent] == ["Paper tray is empty", "Toner order pending"]


def test_mine_basket_and_delays(client: TestClient):
    ticket_id = _create(client)["id"]
    client.post(f"/tickets/{ticket_id}/assign", json={"user_ids": ["agent"]}, headers=_auth("manager"))
    client.put(f"/tickets/{ticket_id}/estimate", json={"value": 1, "unit": "hours"}, headers=_auth("agent"))

    assert [ticket["id"] for ticket in client.get("/tickets/mine", headers=_auth("requester")).json()] == [ticket_id]
    assert [ticket["id"] for ticket in client.get("/tickets/basket", headers=_auth("agent")).json()] == [ticket_id]
    assert client.get("/tickets/basket", headers=_auth("requester")).json() == []
    assert client.get(f"/tickets/{ticket_id}/delay", headers=_auth("agent")).json() is None

    recorded = client.post(f"/tickets/{ticket_id}/time-entries", json={"minutes": 90}, headers=_auth("agent"))
    assert recorded.status_code == 201

    delay = client.get(f"/tickets/{ticket_id}/delay", headers=_auth("agent")).json()
    assert delay["delay_minutes"] == 30
    assert delay["delay_display"] == "30 min"
    delays = client.get("/tickets/delays", params={"assignee_id": "agent"}, headers=_auth("manager")).json()
    assert [item["ticket_id"] for item in delays] == [ticket_id]
    filtered = client.get("/tickets", params={"assignee_id": "agent"}, headers=_auth("manager")).json()
    assert [ticket["id"] for ticket in filtered] == [ticket_id]
