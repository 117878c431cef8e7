"""
Tests for the dashboard message endpoints.

Tests cover:
- Listing with and without a status filter
- Ordering and projection (no raw payload)
- Deleting messages and the resulting realtime event
- Admin token gating
"""

import pytest
from fastapi.testclient import TestClient

from conftest import make_settings
from inbox.main import create_app
from payloads import make_payload, post_webhook, text_message


def seed(client):
    """Three messages received at increasing times; returns their ids newest first."""
    payload = make_payload(
        text_message("2010000001", "first", "1700000000", "wamid.1"),
        text_message("2010000002", "second", "1700000100", "wamid.2"),
        text_message("2010000003", "third", "1700000200", "wamid.3"),
    )
    assert post_webhook(client, payload).json()["saved_count"] == 3
    return [m["id"] for m in client.get("/api/messages").json()["messages"]]


class TestListMessages:

    def test_empty_store(self, client):
        response = client.get("/api/messages")

        assert response.status_code == 200
        assert response.json() == {"ok": True, "messages": []}

    def test_newest_received_first(self, client):
        seed(client)

        messages = client.get("/api/messages").json()["messages"]

        assert [m["text"] for m in messages] == ["third", "second", "first"]

    def test_projection_fields(self, client):
        seed(client)

        message = client.get("/api/messages").json()["messages"][-1]

        assert message["from"] == "2010000001"
        assert message["provider_message_id"] == "wamid.1"
        assert message["status"] == "new"
        assert message["received_at"].startswith("2023-11-14T22:13:20")
        assert message["reply_text"] is None
        assert "raw" not in message
        assert "dedup_key" not in message

    def test_status_filter(self, client):
        ids = seed(client)
        client.post("/api/reply", json={"message_ids": [ids[0]], "text": "ack"})

        replied = client.get("/api/messages", params={"status": "replied"}).json()["messages"]
        new = client.get("/api/messages", params={"status": "new"}).json()["messages"]
        everything = client.get("/api/messages").json()["messages"]

        assert [m["id"] for m in replied] == [ids[0]]
        assert all(m["status"] == "replied" for m in replied)
        assert [m["id"] for m in new] == ids[1:]
        assert len(everything) == 3

    def test_unknown_status_lists_everything(self, client):
        seed(client)

        messages = client.get("/api/messages", params={"status": "archived"}).json()["messages"]

        assert len(messages) == 3

    def test_list_capped_at_300(self, client):
        batch = [text_message(f"20100{i:05d}", f"m{i}", str(1700000000 + i)) for i in range(310)]
        assert post_webhook(client, make_payload(*batch)).json()["saved_count"] == 310

        messages = client.get("/api/messages").json()["messages"]

        assert len(messages) == 300
        assert messages[0]["text"] == "m309"


class TestDeleteMessage:

    def test_delete_existing(self, client, events):
        ids = seed(client)

        response = client.delete(f"/api/messages/{ids[1]}")

        assert response.status_code == 200
        assert response.json() == {"ok": True}
        remaining = [m["id"] for m in client.get("/api/messages").json()["messages"]]
        assert remaining == [ids[0], ids[2]]
        assert events.named("message:deleted") == [{"event": "message:deleted", "data": {"id": ids[1]}}]

    def test_delete_nonexistent(self, client, events):
        response = client.delete("/api/messages/does-not-exist")

        assert response.status_code == 404
        assert response.json() == {"ok": False, "error": "Not found", "code": "not_found"}
        assert events.named("message:deleted") == []

    def test_delete_twice(self, client, events):
        ids = seed(client)

        assert client.delete(f"/api/messages/{ids[0]}").status_code == 200
        assert client.delete(f"/api/messages/{ids[0]}").status_code == 404
        assert len(events.named("message:deleted")) == 1

    def test_deleted_message_can_be_ingested_again(self, client):
        ids = seed(client)
        client.delete(f"/api/messages/{ids[2]}")

        payload = make_payload(text_message("2010000001", "first", "1700000000", "wamid.1"))

        assert post_webhook(client, payload).json()["saved_count"] == 1


class TestAdminToken:

    @pytest.fixture
    def secured_client(self, fake_sender):
        app = create_app(make_settings(ADMIN_TOKEN="s3cret"), sender=fake_sender)
        with TestClient(app) as test_client:
            yield test_client

    def test_missing_token(self, secured_client):
        response = secured_client.get("/api/messages")

        assert response.status_code == 401
        assert response.json()["code"] == "unauthorized"

    def test_wrong_token(self, secured_client):
        response = secured_client.delete("/api/messages/x", headers={"X-Admin-Token": "guess"})

        assert response.status_code == 401

    def test_correct_token(self, secured_client):
        response = secured_client.get("/api/messages", headers={"X-Admin-Token": "s3cret"})

        assert response.status_code == 200

    def test_reply_requires_token(self, secured_client, fake_sender):
        response = secured_client.post("/api/reply", json={"message_ids": ["x"], "text": "hi"})

        assert response.status_code == 401
        assert fake_sender.calls == []

    def test_webhook_is_not_admin_gated(self, secured_client):
        response = post_webhook(secured_client, make_payload(text_message("2010000001", "hi")))

        assert response.status_code == 200

    def test_websocket_requires_token(self, secured_client):
        from starlette.websockets import WebSocketDisconnect

        with secured_client.websocket_connect("/ws") as ws:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
        assert exc_info.value.code == 4401

        with secured_client.websocket_connect("/ws?token=s3cret") as ws:
            assert ws.receive_json()["event"] == "connected"


class TestHealth:

    def test_health_reports_volatile_mode(self, client):
        body = client.get("/api/health").json()

        assert body["ok"] is True
        assert body["mode"] == "volatile"
        assert body["want_durable"] is False
        assert body["last_error"] is None

    def test_liveness(self, client):
        assert client.get("/health/live").json() == {"status": "ok"}

    def test_request_id_echoed(self, client):
        assert client.get("/api/health", headers={"X-Request-ID": "req-42"}).headers["X-Request-ID"] == "req-42"
        assert client.get("/api/health").headers["X-Request-ID"]

    def test_metrics_exposed(self, client):
        post_webhook(client, make_payload(text_message("2010000001", "hi")))

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "webhook_messages_total" in response.text
        assert 'storage_mode{mode="volatile"} 1.0' in response.text
