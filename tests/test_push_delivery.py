import asyncio
import json
import sys
from datetime import datetime, timezone
from pathlib import Path

import requests
from pywebpush import WebPushException

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from push_delivery import (
    DEV_VAPID_PUBLIC_KEY,
    DeliveryOutcome,
    PushSender,
    RetryPolicy,
    VapidConfig,
    is_retryable_status,
)
from push_subscriptions import PushSubscription


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code
        self.text = ""


class FakeTransport:
    """Plays back a scripted list of outcomes: None succeeds, an exception is raised."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def __call__(self, **kwargs):
        self.calls.append(kwargs)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if outcome is not None:
            raise outcome
        return FakeResponse(201)


def _push_error(status):
    return WebPushException(f"Push failed: {status}", response=FakeResponse(status))


def _subscription():
    now = datetime(2024, 5, 1, tzinfo=timezone.utc)
    return PushSubscription(
        endpoint="https://push.example.com/send/1",
        p256dh="BPk3",
        auth="secret",
        stop_id="S",
        notify_minutes=5,
        watched_routes={"5"},
        created_at=now,
        last_active=now,
    )


def _sender(transport, sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    vapid = VapidConfig("pub", "priv", "mailto:ops@example.com")
    return PushSender(vapid, RetryPolicy(max_attempts=3, backoff_s=2, sleep=fake_sleep), transport=transport)


def test_successful_push_uses_vapid_claims():
    transport = FakeTransport(None)
    sender = _sender(transport, [])
    outcome = asyncio.run(sender.send(_subscription(), {"title": "Трамвай"}))

    assert outcome is DeliveryOutcome.SENT
    call = transport.calls[0]
    assert call["subscription_info"] == {
        "endpoint": "https://push.example.com/send/1",
        "keys": {"p256dh": "BPk3", "auth": "secret"},
    }
    assert call["vapid_private_key"] == "priv"
    assert call["vapid_claims"] == {"sub": "mailto:ops@example.com"}
    assert json.loads(call["data"]) == {"title": "Трамвай"}


def test_server_errors_are_retried_until_success():
    transport = FakeTransport(_push_error(503), _push_error(500), None)
    sleeps = []
    outcome = asyncio.run(_sender(transport, sleeps).send(_subscription(), {}))
    assert outcome is DeliveryOutcome.SENT
    assert len(transport.calls) == 3
    assert sleeps == [2, 2]


def test_gives_up_after_max_attempts():
    transport = FakeTransport(_push_error(502), _push_error(502), _push_error(502), None)
    sleeps = []
    outcome = asyncio.run(_sender(transport, sleeps).send(_subscription(), {}))
    assert outcome is DeliveryOutcome.FAILED
    assert len(transport.calls) == 3
    assert len(sleeps) == 2


def test_gone_endpoint_is_not_retried():
    transport = FakeTransport(_push_error(410))
    outcome = asyncio.run(_sender(transport, []).send(_subscription(), {}))
    assert outcome is DeliveryOutcome.GONE
    assert len(transport.calls) == 1


def test_not_found_endpoint_is_gone():
    transport = FakeTransport(_push_error(404))
    assert asyncio.run(_sender(transport, []).send(_subscription(), {})) is DeliveryOutcome.GONE


def test_client_error_fails_without_retry():
    transport = FakeTransport(_push_error(400))
    outcome = asyncio.run(_sender(transport, []).send(_subscription(), {}))
    assert outcome is DeliveryOutcome.FAILED
    assert len(transport.calls) == 1


def test_network_errors_are_retried():
    transport = FakeTransport(requests.ConnectionError("reset"), None)
    sleeps = []
    outcome = asyncio.run(_sender(transport, sleeps).send(_subscription(), {}))
    assert outcome is DeliveryOutcome.SENT
    assert len(transport.calls) == 2


def test_retryable_statuses():
    assert is_retryable_status(None)
    assert is_retryable_status(429)
    assert is_retryable_status(500)
    assert not is_retryable_status(400)
    assert not is_retryable_status(410)


def test_missing_vapid_keys_fall_back_to_development_pair(capsys):
    vapid = VapidConfig.from_values("", None, "")
    assert vapid.using_development_keys
    assert vapid.public_key == DEV_VAPID_PUBLIC_KEY
    assert "WARNING" in capsys.readouterr().out


def test_configured_vapid_keys_are_used():
    vapid = VapidConfig.from_values("pub", "priv", "mailto:me@example.com")
    assert not vapid.using_development_keys
    assert vapid.subject == "mailto:me@example.com"
