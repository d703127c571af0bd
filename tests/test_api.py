"""
Tests for the HTTP API - push ingestion, metrics, message detail and health.
"""
import json
from email.message import EmailMessage
from unittest.mock import AsyncMock

import httpx
import pytest

from mailtrail.config import Settings
from mailtrail.main import build_services, create_app
from factories import make_notification, sns_record, sqs_record

ARCHIVE = "https://archive.example.com"


def _archive_handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path.startswith("/archives/denied/"):
        return httpx.Response(403)
    if path.startswith("/archives/broken/"):
        return httpx.Response(500)
    if path == "/archives/a-1/messages/msg-1/raw":
        msg = EmailMessage()
        msg["From"] = "sender@example.com"
        msg["To"] = "a@example.com"
        msg["Subject"] = "Hello"
        msg.set_content("Hi there")
        return httpx.Response(200, content=msg.as_bytes())
    return httpx.Response(404)


@pytest.fixture
async def app(session_factory, mock_redis):
    settings = Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        archive_base_url=ARCHIVE,
        store_backoff_base_seconds=0,
    )
    application = create_app(settings)
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(_archive_handler))
    build_services(application, settings, session_factory, http_client, mock_redis)
    yield application
    await http_client.aclose()


@pytest.fixture
async def api(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# POST /api/v1/notifications
# ---------------------------------------------------------------------------

class TestNotifications:
    async def test_ingests_records(self, api):
        envelope = {"Records": [
            sns_record(make_notification("Bounce", message_id="m-1"), "sns-1"),
            sqs_record(make_notification("Open", message_id="m-2"), "q-2"),
        ]}
        response = await api.post("/api/v1/notifications", json=envelope)

        assert response.status_code == 200
        body = response.json()
        assert body["batchItemFailures"] == []
        assert [r["state"] for r in body["results"]] == ["acknowledged", "acknowledged"]

        events = await api.get("/api/v1/emails/m-1/events")
        assert [e["eventType"] for e in events.json()["events"]] == ["Bounce"]

    async def test_undecodable_record_is_dropped_not_failed(self, api):
        envelope = {"Records": [{"messageId": "q-1", "body": "{garbage"}]}
        response = await api.post("/api/v1/notifications", json=envelope)

        assert response.status_code == 200
        assert response.json()["results"][0]["state"] == "dropped_permanent"

    async def test_invalid_body(self, api):
        response = await api.post("/api/v1/notifications", content=b"not json")
        assert response.status_code == 400

        response = await api.post("/api/v1/notifications", json={"no": "records"})
        assert response.status_code == 400

    async def test_correlation_id_is_echoed(self, api):
        response = await api.post(
            "/api/v1/notifications", json={"Records": []},
            headers={"X-Correlation-ID": "abc123"},
        )
        assert response.headers["X-Correlation-ID"] == "abc123"


# ---------------------------------------------------------------------------
# GET /api/v1/metrics/events
# ---------------------------------------------------------------------------

class TestMetrics:
    async def test_bucketed_series(self, api):
        await api.post("/api/v1/notifications", json={"Records": [
            sqs_record(make_notification(
                "Open", message_id="m-1", section_timestamp="61000", mail_timestamp="60000",
            ), "q-1"),
        ]})

        response = await api.get(
            "/api/v1/metrics/events",
            params={"start": 0, "end": 600_000, "event_types": "Open,Click"},
        )

        assert response.status_code == 200
        assert response.json() == {"Open": [{"timestamp": 0, "value": 1}], "Click": []}

    async def test_unknown_event_type(self, api):
        response = await api.get("/api/v1/metrics/events", params={"event_types": "Teleport"})
        assert response.status_code == 400

    async def test_inverted_range(self, api):
        response = await api.get("/api/v1/metrics/events", params={"start": 10, "end": 5})
        assert response.status_code == 400


# ---------------------------------------------------------------------------
# GET /api/v1/emails/{id}/archive
# ---------------------------------------------------------------------------

class TestArchive:
    async def test_found(self, api):
        response = await api.get("/api/v1/emails/msg-1/archive", params={"location": "a-1"})
        assert response.status_code == 200
        assert response.json()["subject"] == "Hello"

    async def test_not_found(self, api):
        response = await api.get("/api/v1/emails/msg-2/archive", params={"location": "a-1"})
        assert response.status_code == 404

    async def test_permission_denied(self, api):
        response = await api.get(
            "/api/v1/emails/msg-1/archive",
            params={"location": "arn:aws:ses:us-east-1:1:mailmanager-archive/denied"},
        )
        assert response.status_code == 403

    async def test_archive_failure(self, api):
        response = await api.get("/api/v1/emails/msg-1/archive", params={"location": "broken"})
        assert response.status_code == 502


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

class TestHealth:
    async def test_liveness(self, api):
        response = await api.get("/health")
        assert response.json()["status"] == "healthy"

    async def test_ready(self, api):
        response = await api.get("/health/ready")
        assert response.json()["checks"] == {"database": True, "redis": True}

    async def test_queue_depth(self, api, mock_redis):
        mock_redis.xlen = AsyncMock(return_value=2)
        mock_redis.get = AsyncMock(return_value="2026-03-01T12:00:00+00:00")

        body = (await api.get("/health/queue")).json()

        assert body["dead_letter_depth"] == 2
        assert body["status"] == "attention"
        assert body["heartbeats"]["queue_consumer"] == "2026-03-01T12:00:00+00:00"
        assert set(body["heartbeats"]) == {"queue_consumer", "event_expiry"}
