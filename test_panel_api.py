"""
Tests for the panel host API.

Tests cover:
- Health probes and metrics exposition
- Opening, reading and closing panels
- Send / propose / accept through HTTP, including error mapping
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from conftest import PARTNER_ID, T0, VIEWER_ID, FakePartnershipService, FrozenClock
from partnership_sync.main import create_app


PID = "p-42"


@pytest.fixture
def remote():
    service = FakePartnershipService(clock=FrozenClock(T0 + timedelta(hours=1)))
    service.add_message(PID, "m1", "Welcome aboard", created_at=T0)
    service.add_message(PID, "m2", "Thanks!", sender_id=VIEWER_ID, created_at=T0 + timedelta(minutes=1))
    return service


@pytest.fixture
def client(remote):
    """Test client with a fresh registry per test."""
    with TestClient(create_app(service=remote)) as test_client:
        yield test_client


@pytest.fixture
def opened(client):
    response = client.post(f"/panels/{PID}", json={"viewer_user_id": VIEWER_ID})
    assert response.status_code == 200
    return response.json()


def future_iso(**kwargs) -> str:
    return (datetime.now(timezone.utc) + timedelta(**kwargs)).isoformat()


class TestHealth:
    """Test health check endpoints."""

    def test_live(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"


class TestOpenPanel:
    """Test POST/GET/DELETE /panels/{partnership_id}."""

    def test_open_returns_loaded_snapshot(self, opened):
        assert opened["partnership_id"] == PID
        assert [m["id"] for m in opened["messages"]] == ["m1", "m2"]
        assert [m["is_own"] for m in opened["messages"]] == [False, True]
        assert opened["message_state"]["loaded"] is True
        assert opened["meeting_state"]["loaded"] is True
        assert opened["is_empty"] is False

    def test_open_empty_partnership(self, client):
        response = client.post("/panels/empty", json={"viewer_user_id": VIEWER_ID})

        body = response.json()
        assert body["messages"] == []
        assert body["meetings"] == []
        assert body["is_empty"] is True

    def test_open_requires_viewer(self, client):
        response = client.post(f"/panels/{PID}", json={})

        assert response.status_code == 422

    def test_open_twice_reuses_panel(self, client, remote, opened):
        client.post(f"/panels/{PID}", json={"viewer_user_id": VIEWER_ID})

        assert remote.call_count("list_messages") == 1

    def test_open_as_other_viewer_replaces_panel(self, client, opened):
        response = client.post(f"/panels/{PID}", json={"viewer_user_id": PARTNER_ID})

        body = response.json()
        assert body["viewer_user_id"] == PARTNER_ID
        assert [m["is_own"] for m in body["messages"]] == [True, False]

    def test_snapshot(self, client, opened):
        response = client.get(f"/panels/{PID}")

        assert response.status_code == 200
        assert response.headers["X-Request-ID"]
        assert len(response.json()["messages"]) == 2

    def test_snapshot_not_open(self, client):
        response = client.get("/panels/nope")

        assert response.status_code == 404
        assert response.json()["detail"] == "No open panel for partnership nope"

    def test_close(self, client, opened):
        response = client.delete(f"/panels/{PID}")

        assert response.status_code == 204
        assert client.get(f"/panels/{PID}").status_code == 404
        assert client.delete(f"/panels/{PID}").status_code == 404


class TestSendMessage:
    """Test POST /panels/{partnership_id}/messages."""

    def test_send(self, client, opened):
        response = client.post(f"/panels/{PID}/messages", json={"text": "Field visit on Friday"})

        assert response.status_code == 201
        texts = [m["text"] for m in response.json()["messages"]]
        assert texts[-1] == "Field visit on Friday"
        assert len(texts) == 3

    def test_empty_text(self, client, remote, opened):
        response = client.post(f"/panels/{PID}/messages", json={"text": "   "})

        assert response.status_code == 422
        assert response.json()["detail"] == "Message text cannot be empty"
        assert remote.call_count("send_message") == 0

    def test_send_failure_returns_attempted_text(self, client, remote, opened):
        remote.fail("send_message")

        response = client.post(f"/panels/{PID}/messages", json={"text": "Invoice #12"})

        assert response.status_code == 502
        body = response.json()
        assert body["action"] == "send"
        assert body["detail"] == "Internal Server Error"
        assert body["attempted"] == {"text": "Invoice #12"}

        snapshot = client.get(f"/panels/{PID}").json()
        assert len(snapshot["messages"]) == 2
        assert snapshot["last_failed_text"] == "Invoice #12"
        assert snapshot["message_state"]["error"] == "Internal Server Error"

    def test_send_to_closed_panel(self, client):
        response = client.post("/panels/nope/messages", json={"text": "hello"})

        assert response.status_code == 404


class TestMeetings:
    """Test propose and accept."""

    def test_propose(self, client, opened):
        response = client.post(f"/panels/{PID}/meetings", json={"scheduled_time": future_iso(hours=1)})

        assert response.status_code == 201
        meetings = response.json()["meetings"]
        assert len(meetings) == 1
        assert meetings[0]["status"] == "pending"
        assert meetings[0]["display_status"] == "pending"
        assert meetings[0]["is_organizer"] is True
        assert meetings[0]["can_accept"] is False
        assert meetings[0]["countdown"].startswith("59m")

    def test_propose_in_past(self, client, remote, opened):
        response = client.post(f"/panels/{PID}/meetings", json={"scheduled_time": future_iso(hours=-1)})

        assert response.status_code == 422
        assert response.json()["detail"] == "Meeting time must be in the future"
        assert remote.call_count("create_meeting") == 0

    def test_accept(self, client, remote):
        remote.add_meeting(PID, "mt-7", datetime.now(timezone.utc) + timedelta(days=1))
        client.post(f"/panels/{PID}", json={"viewer_user_id": VIEWER_ID})

        response = client.post(f"/panels/{PID}/meetings/mt-7/accept")

        assert response.status_code == 200
        meeting = response.json()["meetings"][0]
        assert meeting["status"] == "accepted"
        assert meeting["meeting_link"] == "https://meet.example.com/mt-7"

        # Accepting again is not an error
        assert client.post(f"/panels/{PID}/meetings/mt-7/accept").status_code == 200
        assert remote.call_count("accept_meeting") == 1

    def test_organizer_cannot_accept(self, client, remote):
        remote.add_meeting(PID, "mt-8", datetime.now(timezone.utc) + timedelta(days=1), organizer_user_id=VIEWER_ID)
        client.post(f"/panels/{PID}", json={"viewer_user_id": VIEWER_ID})

        response = client.post(f"/panels/{PID}/meetings/mt-8/accept")

        assert response.status_code == 422
        assert remote.call_count("accept_meeting") == 0

    def test_accept_failure(self, client, remote):
        remote.add_meeting(PID, "mt-9", datetime.now(timezone.utc) + timedelta(days=1))
        client.post(f"/panels/{PID}", json={"viewer_user_id": VIEWER_ID})
        remote.fail("accept_meeting")

        response = client.post(f"/panels/{PID}/meetings/mt-9/accept")

        assert response.status_code == 502
        assert response.json()["attempted"] == {"meeting_id": "mt-9"}


class TestMetrics:
    """Test GET /metrics."""

    def test_metrics_exposed(self, client, opened):
        client.post(f"/panels/{PID}/messages", json={"text": "ping"})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "panel_refresh_total" in response.text
        assert "panel_write_total" in response.text
        assert "panel_open_panels" in response.text
