"""Tests for the webhook endpoint."""

from __future__ import annotations

import hashlib
import hmac
import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from gantry.webhook import configure, router, verify_signature

SECRET = "hook-secret"


class RecordingDispatcher:
    def __init__(self) -> None:
        self.calls: list = []

    async def __call__(self, trigger, inputs):
        self.calls.append((trigger, inputs))
        return [f"run-{len(self.calls)}"]


def _sign(body: bytes, secret: str = SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _post(client, event: str, payload, *, secret: str | None = SECRET, signature: str | None = None):
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    headers = {"X-GitHub-Event": event, "X-GitHub-Delivery": "delivery-1"}
    if signature is not None:
        headers["X-Hub-Signature-256"] = signature
    elif secret:
        headers["X-Hub-Signature-256"] = _sign(body, secret)
    return client.post("/webhook", content=body, headers=headers)


@pytest.fixture
def app():
    test_app = FastAPI()
    test_app.include_router(router)
    return test_app


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def client(app, dispatcher):
    configure(dispatcher, webhook_secret=SECRET)
    return TestClient(app)


PUSH_PAYLOAD = {"ref": "refs/heads/main", "after": "abc123", "sender": {"login": "alice"}}


class TestWebhookEndpoint:
    def test_push_dispatches(self, client, dispatcher):
        response = _post(client, "push", PUSH_PAYLOAD)
        assert response.status_code == 200
        assert response.json() == {"runs": ["run-1"]}

        trigger, inputs = dispatcher.calls[0]
        assert trigger.event == "push"
        assert trigger.branch == "main"
        assert trigger.actor == "alice"
        assert trigger.payload["after"] == "abc123"
        assert inputs == {}

    def test_pull_request_opened(self, client, dispatcher):
        payload = {
            "action": "opened",
            "number": 12,
            "pull_request": {"number": 12, "head": {"ref": "feature/login"}},
            "sender": {"login": "bob"},
        }
        assert _post(client, "pull_request", payload).status_code == 200
        trigger, _ = dispatcher.calls[0]
        assert trigger.ref == "refs/pull/12/merge"
        assert trigger.branch == "feature/login"

    def test_pull_request_other_action_ignored(self, client, dispatcher):
        payload = {"action": "labeled", "pull_request": {"number": 1}}
        assert _post(client, "pull_request", payload).status_code == 202
        assert dispatcher.calls == []

    def test_workflow_dispatch_inputs(self, client, dispatcher):
        payload = {"ref": "refs/heads/main", "inputs": {"image_name": "api"}}
        assert _post(client, "workflow_dispatch", payload).status_code == 200
        assert dispatcher.calls[0][1] == {"image_name": "api"}

    def test_push_inputs_not_forwarded(self, client, dispatcher):
        _post(client, "push", {**PUSH_PAYLOAD, "inputs": {"push": True}})
        assert dispatcher.calls[0][1] == {}

    def test_ping(self, client, dispatcher):
        response = _post(client, "ping", {"zen": "Keep it simple."})
        assert response.status_code == 200
        assert response.text == "pong"
        assert dispatcher.calls == []

    def test_unsupported_event_ignored(self, client, dispatcher):
        assert _post(client, "issues", {"action": "opened"}).status_code == 202
        assert dispatcher.calls == []

    def test_invalid_signature(self, client, dispatcher):
        response = _post(client, "push", PUSH_PAYLOAD, signature="sha256=deadbeef")
        assert response.status_code == 401
        assert dispatcher.calls == []

    def test_signed_with_wrong_secret(self, client):
        assert _post(client, "push", PUSH_PAYLOAD, secret="other").status_code == 401

    def test_invalid_json(self, client):
        assert _post(client, "push", b"{not json").status_code == 400

    @pytest.mark.parametrize("body", [b"[]", b'"push"', b"42"])
    def test_non_object_payload(self, client, dispatcher, body):
        response = _post(client, "push", body)
        assert response.status_code == 400
        assert response.text == "Payload must be a JSON object"
        assert dispatcher.calls == []

    def test_missing_event_header(self, client):
        response = client.post("/webhook", json=PUSH_PAYLOAD)
        assert response.status_code == 422

    def test_no_secret_skips_verification(self, app, dispatcher):
        configure(dispatcher)
        client = TestClient(app)
        assert _post(client, "push", PUSH_PAYLOAD, secret=None).status_code == 200

    def test_rate_limit(self, app, dispatcher):
        configure(dispatcher, webhook_secret=SECRET, rate_limit_max=2)
        client = TestClient(app)
        assert _post(client, "push", PUSH_PAYLOAD).status_code == 200
        assert _post(client, "push", PUSH_PAYLOAD).status_code == 200
        assert _post(client, "push", PUSH_PAYLOAD).status_code == 429
        assert len(dispatcher.calls) == 2


class TestVerifySignature:
    def test_valid(self):
        body = b'{"a": 1}'
        assert verify_signature(body, _sign(body), SECRET)

    def test_tampered_body(self):
        assert not verify_signature(b'{"a": 2}', _sign(b'{"a": 1}'), SECRET)

    def test_missing_header(self):
        assert not verify_signature(b"{}", "", SECRET)
