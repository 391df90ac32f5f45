from __future__ import annotations

import os
from collections.abc import Iterator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from autopilot_web import api as api_module
from autopilot_web.config import get_settings
from autopilot_web.generator import StubReplyGenerator
from autopilot_web.main import create_app
from autopilot_web.provider import StubMessagingProvider

PREFIX = "/api/v1/autopilot"
SECRET = "test-autopilot-secret"
AUTH = {"Authorization": f"Bearer {SECRET}"}

_ENV = {
    "AUTOPILOT_API_SECRET": SECRET,
    "AUTOPILOT_STORE_BACKEND": "inmemory",
    "AUTOPILOT_ENABLED": "true",
    "PROVIDER_CLIENT_TYPE": "stub",
    "GENERATOR_TYPE": "stub",
    "RUNTIME_SECRET_GUARD_MODE": "off",
}


@pytest.fixture
def provider() -> Iterator[StubMessagingProvider]:
    previous = {name: os.environ.get(name) for name in _ENV}
    os.environ.update(_ENV)
    api_module.configure_runtime(get_settings())
    stub = StubMessagingProvider()
    api_module.messaging_provider = stub
    api_module.reply_generator = StubReplyGenerator(reply_text="Thanks, we will call you today.")
    api_module.reset_runtime_state_for_tests()
    try:
        yield stub
    finally:
        for name, value in previous.items():
            if value is None:
                os.environ.pop(name, None)
            else:
                os.environ[name] = value


@pytest.fixture
def client(provider: StubMessagingProvider) -> TestClient:
    return TestClient(create_app())


def _enable(client: TestClient, conversation_id: str = "conv-1", **overrides: object) -> dict:
    body: dict[str, object] = {
        "conversation_id": conversation_id,
        "location_id": "loc-1",
        "user_id": "user-1",
        "is_enabled": True,
        "reply_delay_minutes": 0,
    }
    body.update(overrides)
    response = client.post(f"{PREFIX}/config", json=body, headers=AUTH)
    assert response.status_code == 200, response.text
    return response.json()["policy"]


def _inbound(provider: StubMessagingProvider, conversation_id: str = "conv-1", message_id: str = "msg-1") -> None:
    provider.add_message(
        conversation_id,
        message_id=message_id,
        body="Can someone call me back?",
        created_at=datetime.now(timezone.utc) - timedelta(minutes=10),
    )


def test_routes_require_api_secret(client: TestClient) -> None:
    assert client.get(f"{PREFIX}/status").status_code == 401
    wrong = client.get(f"{PREFIX}/status", headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 401
    assert client.get(f"{PREFIX}/status", headers=AUTH).status_code == 200


def test_healthz(client: TestClient) -> None:
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_config_upsert_and_read(client: TestClient) -> None:
    policy = _enable(
        client,
        exclude_keywords=["STOP", "stop", ""],
        operating_hours={"enabled": True, "start": "9:00", "end": "17:00", "timezone": "America/Chicago"},
    )

    assert policy["exclude_keywords"] == ["STOP"]
    assert policy["operating_hours"]["start"] == "09:00"
    assert policy["operating_hours"]["days_of_week"] == [1, 2, 3, 4, 5]

    response = client.get(f"{PREFIX}/config", params={"conversation_id": "conv-1"}, headers=AUTH)
    assert response.status_code == 200
    assert response.json()["policy"]["conversation_id"] == "conv-1"

    tracking = client.get(f"{PREFIX}/tracking", params={"conversation_id": "conv-1"}, headers=AUTH)
    assert tracking.json()["count"] == 1


def test_config_rejects_invalid_payloads(client: TestClient) -> None:
    base = {"conversation_id": "conv-1", "location_id": "loc-1", "user_id": "user-1"}
    negative = client.post(f"{PREFIX}/config", json={**base, "max_replies_per_day": -1}, headers=AUTH)
    assert negative.status_code == 422
    bad_zone = client.post(
        f"{PREFIX}/config",
        json={**base, "operating_hours": {"enabled": True, "timezone": "Mars/Olympus"}},
        headers=AUTH,
    )
    assert bad_zone.status_code == 422
    bad_clock = client.post(
        f"{PREFIX}/config",
        json={**base, "operating_hours": {"enabled": True, "start": "25:00"}},
        headers=AUTH,
    )
    assert bad_clock.status_code == 422


def test_unknown_policy_returns_404(client: TestClient) -> None:
    missing = client.get(f"{PREFIX}/config", params={"conversation_id": "nope"}, headers=AUTH)
    assert missing.status_code == 404
    disable = client.post(f"{PREFIX}/config/nope/disable", headers=AUTH)
    assert disable.status_code == 404


def test_poll_sends_reply_and_updates_tracking(client: TestClient, provider: StubMessagingProvider) -> None:
    _enable(client)
    _inbound(provider)

    response = client.post(f"{PREFIX}/poll", headers=AUTH)

    assert response.status_code == 200
    report = response.json()
    assert report["processed"] == 1
    assert report["sent"] == 1
    assert report["eligible"] == 1
    assert report["results"][0]["status"] == "sent"
    assert provider.sent == [("conv-1", "Thanks, we will call you today.", "SMS")]

    tracking = client.get(f"{PREFIX}/tracking", headers=AUTH).json()
    assert tracking["items"][0]["replies_total"] == 1
    assert tracking["items"][0]["last_seen_message_id"] == "msg-1"

    again = client.post(f"{PREFIX}/poll", headers=AUTH).json()
    assert again["sent"] == 0
    assert again["results"][0]["reason"] == "no-new-message"
    assert len(provider.sent) == 1


def test_poll_dry_run_body_sends_nothing(client: TestClient, provider: StubMessagingProvider) -> None:
    _enable(client)
    _inbound(provider)

    report = client.post(f"{PREFIX}/poll", json={"dry_run": True}, headers=AUTH).json()

    assert report["dry_run"] is True
    assert report["results"][0]["status"] == "dry_run"
    assert provider.sent == []


def test_cron_accepts_get_and_post(client: TestClient, provider: StubMessagingProvider) -> None:
    _enable(client)
    _inbound(provider)

    dry = client.get(f"{PREFIX}/cron", params={"dry_run": "true"}, headers=AUTH)
    assert dry.status_code == 200
    assert dry.json()["dry_run"] is True
    assert provider.sent == []

    live = client.post(f"{PREFIX}/cron", headers=AUTH)
    assert live.status_code == 200
    assert live.json()["sent"] == 1


def test_disable_stops_replies(client: TestClient, provider: StubMessagingProvider) -> None:
    _enable(client)
    _inbound(provider)

    disabled = client.post(f"{PREFIX}/config/conv-1/disable", headers=AUTH)
    assert disabled.status_code == 200
    assert disabled.json()["policy"]["is_enabled"] is False

    report = client.post(f"{PREFIX}/poll", headers=AUTH).json()
    assert report["processed"] == 0
    assert provider.sent == []


def test_pause_holds_replies_until_cleared(client: TestClient, provider: StubMessagingProvider) -> None:
    _enable(client)
    _inbound(provider)
    paused_until = datetime.now(timezone.utc) + timedelta(hours=2)

    paused = client.post(
        f"{PREFIX}/config/conv-1/pause",
        json={"paused_until": paused_until.isoformat()},
        headers=AUTH,
    )
    assert paused.status_code == 200, paused.text
    assert paused.json()["conversation_id"] == "conv-1"
    assert paused.json()["paused_until"] is not None

    report = client.post(f"{PREFIX}/poll", headers=AUTH).json()
    assert report["results"][0]["status"] == "skipped"
    assert report["results"][0]["reason"] == "paused"
    assert provider.sent == []

    resumed = client.post(f"{PREFIX}/config/conv-1/pause", json={"paused_until": None}, headers=AUTH)
    assert resumed.status_code == 200
    assert resumed.json()["paused_until"] is None

    report = client.post(f"{PREFIX}/poll", headers=AUTH).json()
    assert report["sent"] == 1


def test_pause_requires_existing_policy(client: TestClient) -> None:
    response = client.post(f"{PREFIX}/config/conv-missing/pause", json={"paused_until": None}, headers=AUTH)
    assert response.status_code == 404
    unauthorized = client.post(f"{PREFIX}/config/conv-1/pause", json={"paused_until": None})
    assert unauthorized.status_code == 401


def test_auto_enable_route_masks_contacts(client: TestClient) -> None:
    response = client.post(
        f"{PREFIX}/auto-enable",
        json={
            "location_id": "loc-1",
            "user_id": "user-1",
            "conversations": [
                {
                    "conversation_id": "conv-7",
                    "contact_name": "Riley",
                    "email": "riley@example.com",
                    "phone": "+15550104477",
                    "tags": ["Vox-AI"],
                },
                {"conversation_id": "conv-8", "tags": []},
            ],
        },
        headers=AUTH,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["tag"] == "vox-ai"
    assert body["enabled"] == ["conv-7"]
    assert body["ignored"] == ["conv-8"]

    item = client.get(f"{PREFIX}/tracking", params={"conversation_id": "conv-7"}, headers=AUTH).json()["items"][0]
    assert item["contact_email_masked"] == "r***@example.com"
    assert item["contact_phone_masked"] == "***4477"
    assert "contact_email" not in item

    status = client.get(f"{PREFIX}/status", headers=AUTH).json()
    assert status["enabled_policy_count"] == 1


def test_auto_enable_rejects_duplicate_conversations(client: TestClient) -> None:
    response = client.post(
        f"{PREFIX}/auto-enable",
        json={
            "location_id": "loc-1",
            "user_id": "user-1",
            "conversations": [
                {"conversation_id": "conv-1", "tags": ["vox-ai"]},
                {"conversation_id": "conv-1", "tags": ["vox-ai"]},
            ],
        },
        headers=AUTH,
    )
    assert response.status_code == 422


def test_status_reports_runtime_configuration(client: TestClient) -> None:
    status = client.get(f"{PREFIX}/status", headers=AUTH).json()

    assert status["autopilot_enabled"] is True
    assert status["store_backend"] == "inmemory"
    assert status["provider_client_type"] == "stub"
    assert status["runtime_secret_guard_mode"] == "off"
    assert status["runtime_secret_issues"] == []
