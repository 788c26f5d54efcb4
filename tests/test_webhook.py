"""
Tests for the webhook endpoints (POST /api/webhook/messages and POST /webhook).

Tests cover:
- messages.upsert ingestion and idempotency
- Missing body/timestamp defaults
- Connection resolution (instance name, naming convention, query param)
- Unknown connections and events acknowledged with 200
- Malformed JSON acknowledged with 200
- messages.update status transitions
- HMAC signature check when WEBHOOK_SECRET is set
"""

import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from chatsync.main import app, settings
from chatsync.storage import Base, engine

WEBHOOK_URL = "/api/webhook/messages"


def compute_signature(body: str, secret: str) -> str:
    """Compute HMAC-SHA256 signature for request body."""
    return hmac.new(
        secret.encode("utf-8"),
        body.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def connection(client):
    response = client.post("/api/connections", json={"name": "main"})
    assert response.status_code == 201
    return response.json()


def upsert(instance, data, event="messages.upsert"):
    return {"event": event, "instance": instance, "data": data}


class TestWebhookUpsert:
    """messages.upsert / send.message events."""

    def test_inserts_new_message(self, client, connection, message_factory):
        payload = upsert(connection["instance_name"], message_factory("5511999990000", "hello", message_id="A"))

        response = client.post(WEBHOOK_URL, json=payload)

        assert response.status_code == 200
        assert response.json() == {
            "status": "ok", "processed": 1, "inserted": 1, "replaced": 0, "updated": 0, "ignored": 0
        }
        messages = client.get(f"/api/connections/{connection['id']}/messages").json()["data"]
        assert len(messages) == 1
        assert messages[0]["message_id"] == "A"
        assert messages[0]["direction"] == "received"
        assert messages[0]["status"] == "delivered"

    def test_duplicate_delivery_is_idempotent(self, client, connection, message_factory):
        payload = upsert(connection["instance_name"], message_factory("5511999990000", "hello", message_id="A"))

        client.post(WEBHOOK_URL, json=payload)
        response = client.post(WEBHOOK_URL, json=payload)

        assert response.status_code == 200
        assert response.json()["ignored"] == 1
        assert client.get(f"/api/connections/{connection['id']}/messages").json()["total"] == 1

    def test_batch_in_messages_wrapper(self, client, connection, message_factory):
        data = {
            "messages": [
                message_factory("5511999990000", "one", message_id="A", timestamp=1705320000),
                message_factory("5511999990000", "two", message_id="B", timestamp=1705320060),
                message_factory("5511999990000", "one", message_id="A", timestamp=1705320000),
            ]
        }
        body = client.post(WEBHOOK_URL, json=upsert(connection["instance_name"], data)).json()

        assert body["processed"] == 3
        assert body["inserted"] == 2
        assert body["ignored"] == 1

    def test_missing_body_and_timestamp(self, client, connection, message_factory):
        payload = upsert(
            connection["instance_name"],
            message_factory("5511999990000", None, message_id="X", timestamp=None),
        )

        response = client.post(WEBHOOK_URL, json=payload)

        assert response.status_code == 200
        messages = client.get(f"/api/connections/{connection['id']}/messages").json()["data"]
        assert messages[0]["body"] == "no content"
        assert messages[0]["timestamp"]

    def test_send_message_event_uses_same_path(self, client, connection, message_factory):
        payload = upsert(
            connection["instance_name"],
            message_factory("5511999990000", "from phone", message_id="S1", from_me=True),
            event="SEND_MESSAGE",
        )

        assert client.post(WEBHOOK_URL, json=payload).json()["inserted"] == 1
        message = client.get(f"/api/connections/{connection['id']}/messages").json()["data"][0]
        assert message["direction"] == "sent"
        assert message["status"] == "sent"

    def test_group_messages_are_ignored(self, client, connection):
        payload = upsert(
            connection["instance_name"],
            {"key": {"remoteJid": "120363000000@g.us", "id": "G1"}, "message": {"conversation": "hi all"}},
        )

        assert client.post(WEBHOOK_URL, json=payload).json()["ignored"] == 1

    def test_legacy_path(self, client, connection, message_factory):
        payload = upsert(connection["instance_name"], message_factory("5511999990000", "hello", message_id="A"))
        assert client.post("/webhook", json=payload).json()["inserted"] == 1


class TestConnectionResolution:

    def test_naming_convention(self, client, message_factory):
        created = client.post(
            "/api/connections", json={"name": "custom", "instance_name": "custom-instance"}
        ).json()
        payload = upsert(f"whatsapp_{created['id']}_renamed", message_factory("5511999990000", "hi", message_id="A"))

        assert client.post(WEBHOOK_URL, json=payload).json()["inserted"] == 1

    def test_query_parameter(self, client, connection, message_factory):
        payload = upsert(None, message_factory("5511999990000", "hi", message_id="A"))

        response = client.post(f"{WEBHOOK_URL}?connection_id={connection['id']}", json=payload)

        assert response.json()["inserted"] == 1

    def test_unknown_connection_acknowledged(self, client, message_factory):
        payload = upsert("nobody", message_factory("5511999990000", "hi", message_id="A"))

        response = client.post(WEBHOOK_URL, json=payload)

        assert response.status_code == 200
        assert response.json()["processed"] == 0


class TestWebhookRobustness:

    def test_malformed_json_acknowledged(self, client):
        response = client.post(
            WEBHOOK_URL, content="{not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_unknown_event_acknowledged(self, client, connection):
        response = client.post(WEBHOOK_URL, json={"event": "connection.update", "instance": "x", "data": {}})
        assert response.status_code == 200
        assert response.json()["processed"] == 0

    def test_non_object_payload_acknowledged(self, client):
        response = client.post(WEBHOOK_URL, json=[1, 2, 3])
        assert response.status_code == 200


class TestStatusUpdates:
    """messages.update events."""

    def _insert_sent(self, client, connection, message_factory):
        payload = upsert(
            connection["instance_name"],
            message_factory("5511999990000", "hello", message_id="GW-1", from_me=True),
        )
        client.post(WEBHOOK_URL, json=payload)

    def test_delivery_ack(self, client, connection, message_factory):
        self._insert_sent(client, connection, message_factory)
        update = upsert(
            connection["instance_name"],
            {"keyId": "GW-1", "remoteJid": "5511999990000@s.whatsapp.net", "status": "DELIVERY_ACK"},
            event="messages.update",
        )

        body = client.post(WEBHOOK_URL, json=update).json()

        assert body["updated"] == 1
        message = client.get(f"/api/connections/{connection['id']}/messages").json()["data"][0]
        assert message["status"] == "delivered"

    def test_backward_status_ignored(self, client, connection, message_factory):
        self._insert_sent(client, connection, message_factory)
        for status in ("READ", "SERVER_ACK"):
            client.post(
                WEBHOOK_URL,
                json=upsert(connection["instance_name"], [{"key": {"id": "GW-1"}, "update": {"status": status}}],
                            event="MESSAGES_UPDATE"),
            )

        message = client.get(f"/api/connections/{connection['id']}/messages").json()["data"][0]
        assert message["status"] == "delivered"

    def test_unknown_message_ignored(self, client, connection):
        update = upsert(connection["instance_name"], {"keyId": "nope", "status": "READ"}, event="messages.update")
        assert client.post(WEBHOOK_URL, json=update).json()["ignored"] == 1


class TestWebhookSignature:
    """HMAC check, only active when WEBHOOK_SECRET is configured."""

    SECRET = "test-secret"

    @pytest.fixture(autouse=True)
    def secret(self, monkeypatch):
        monkeypatch.setattr(settings, "WEBHOOK_SECRET", self.SECRET)

    def test_missing_signature(self, client):
        response = client.post(WEBHOOK_URL, content="{}", headers={"Content-Type": "application/json"})
        assert response.status_code == 401
        assert response.json() == {"detail": "invalid signature"}

    def test_invalid_signature(self, client):
        response = client.post(
            WEBHOOK_URL,
            content="{}",
            headers={"Content-Type": "application/json", "X-Signature": "0" * 64},
        )
        assert response.status_code == 401

    def test_valid_signature(self, client, connection, message_factory):
        body = json.dumps(upsert(connection["instance_name"], message_factory("5511999990000", "hi", message_id="A")))

        response = client.post(
            WEBHOOK_URL,
            content=body,
            headers={"Content-Type": "application/json", "X-Signature": compute_signature(body, self.SECRET)},
        )

        assert response.status_code == 200
        assert response.json()["inserted"] == 1
