import types

import pytest
from fastapi.testclient import TestClient

from bulk_mail_scheduler import api
from bulk_mail_scheduler.api import API_TOKEN_HEADER_NAME, create_app


API_TOKEN = "secret-token"

EMAIL = {
    "job_id": "email-1",
    "user_id": "user-1",
    "recipient": "a@x.com",
    "subject": "Hi",
    "body": "Body",
    "sender": "s@example.com",
    "due_time": 1700000000.0,
    "status": "scheduled",
    "attempts": 0,
}


class DummyService:
    def __init__(self):
        self.calls = []
        self.metrics = types.SimpleNamespace(generate_latest=lambda: b"metrics-data")
        self.schedule_result = {
            "ok": True,
            "count": 1,
            "jobs": [{"job_id": "email-1", "recipient": "a@x.com", "due_time": 1700000000.0}],
        }

    async def handle_command(self, cmd, payload):
        self.calls.append((cmd, payload))
        if cmd == "status":
            return {"ok": True, "running": True, "queued": 3, "scheduled": 4}
        if cmd == "schedule":
            return self.schedule_result
        if cmd in ("listScheduled", "listSent"):
            return {"ok": True, "emails": [EMAIL]}
        return {"ok": True}


@pytest.fixture(autouse=True)
def reset_service():
    original = api.service
    original_token = getattr(api.app.state, "api_token", None)
    api.service = None
    api.app.state.api_token = None
    try:
        yield
    finally:
        api.service = original
        api.app.state.api_token = original_token


@pytest.fixture
def client_and_service():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
    return client, svc


def test_returns_500_when_service_missing():
    create_app(DummyService(), api_token=API_TOKEN)
    api.service = None
    client = TestClient(api.app)
    response = client.post("/commands/run-now", headers={API_TOKEN_HEADER_NAME: API_TOKEN})
    assert response.status_code == 500
    assert response.json()["detail"] == "Service not initialized"


def test_rejects_missing_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    response = client.get("/status")
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing API token"
    response = client.get("/status", headers={API_TOKEN_HEADER_NAME: "wrong"})
    assert response.status_code == 401


def test_status_and_run_now(client_and_service):
    client, svc = client_and_service
    assert client.get("/status").json() == {"ok": True, "running": True, "queued": 3, "scheduled": 4}
    assert client.post("/commands/run-now").json() == {"ok": True}
    assert svc.calls == [("status", {}), ("run now", {})]


def test_schedule_forwards_payload(client_and_service):
    client, svc = client_and_service
    payload = {
        "user_id": "user-1",
        "sender_email": "s@example.com",
        "subject": "Hi",
        "body": "Body",
        "recipients": ["a@x.com"],
        "start_time": "2023-11-14T22:13:20Z",
        "delay_between_emails": 1000,
    }
    response = client.post("/commands/schedule", json=payload)
    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 1
    assert body["jobs"][0]["job_id"] == "email-1"

    cmd, forwarded = svc.calls[-1]
    assert cmd == "schedule"
    assert forwarded["recipients"] == ["a@x.com"]
    assert forwarded["delay_between_emails"] == 1000
    assert forwarded["hourly_limit"] is None


def test_schedule_rejection_maps_to_400(client_and_service):
    client, svc = client_and_service
    svc.schedule_result = {"ok": False, "error": "No valid email addresses found", "code": "no_valid_recipients"}
    payload = {
        "user_id": "user-1",
        "sender_email": "s@example.com",
        "subject": "Hi",
        "body": "Body",
        "recipients": "nobody",
    }
    response = client.post("/commands/schedule", json=payload)
    assert response.status_code == 400
    assert response.json()["detail"] == {
        "error": "No valid email addresses found",
        "code": "no_valid_recipients",
    }


def test_schedule_validates_payload(client_and_service):
    client, svc = client_and_service
    response = client.post(
        "/commands/schedule",
        json={"user_id": "u", "sender_email": "s@x.com", "subject": "s", "body": "b", "recipients": [],
              "delay_between_emails": -5},
    )
    assert response.status_code == 422
    assert svc.calls == []


def test_email_listings(client_and_service):
    client, svc = client_and_service
    scheduled = client.get("/emails/scheduled", params={"user_id": "user-1"}).json()
    assert scheduled["ok"] is True
    assert scheduled["emails"][0]["recipient"] == "a@x.com"
    assert scheduled["emails"][0]["status"] == "scheduled"
    sent = client.get("/emails/sent", params={"user_id": "user-1"}).json()
    assert sent["emails"][0]["job_id"] == "email-1"
    assert svc.calls == [("listScheduled", {"user_id": "user-1"}), ("listSent", {"user_id": "user-1"})]
    assert client.get("/emails/sent").status_code == 422


def test_metrics_endpoint(client_and_service):
    client, _ = client_and_service
    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.content == b"metrics-data"
