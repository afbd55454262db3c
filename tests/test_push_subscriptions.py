import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from errors import CapacityError, ValidationError
from push_subscriptions import (
    NOTIFIED_KEYS_LIMIT,
    SubscriptionRegistry,
    validate_notify_minutes,
    validate_watched_routes,
)


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


def _sub(n=1):
    return {
        "endpoint": f"https://push.example.com/send/{n}",
        "keys": {"p256dh": "BPk3", "auth": "auth-secret"},
    }


def test_subscribe_then_update_keeps_created_at():
    clock = FakeClock()
    registry = SubscriptionRegistry(clock=clock)
    assert registry.subscribe("S", _sub(), 5, ["5", "7"]) is True
    created = registry.get("S", _sub()["endpoint"]).created_at

    clock.now += timedelta(minutes=10)
    assert registry.subscribe("S", _sub(), 3, ["12"]) is False

    sub = registry.get("S", _sub()["endpoint"])
    assert sub.created_at == created
    assert sub.last_active == clock.now
    assert sub.notify_minutes == 3
    assert sub.watched_routes == {"12"}
    assert registry.count() == 1


@pytest.mark.parametrize(
    "subscription",
    [
        None,
        {},
        {"endpoint": "", "keys": {"p256dh": "a", "auth": "b"}},
        {"endpoint": "not a url", "keys": {"p256dh": "a", "auth": "b"}},
        {"endpoint": "https://push.example.com/x"},
        {"endpoint": "https://push.example.com/x", "keys": {"p256dh": "a"}},
        {"endpoint": "https://push.example.com/x", "keys": {"p256dh": "", "auth": "b"}},
    ],
)
def test_malformed_subscription_is_rejected(subscription):
    registry = SubscriptionRegistry()
    with pytest.raises(ValidationError):
        registry.subscribe("S", subscription, 5, ["5"])
    assert registry.count() == 0


@pytest.mark.parametrize("value", [0, 61, -1, "abc", None, True, 2.5])
def test_notify_minutes_out_of_range(value):
    with pytest.raises(ValidationError):
        validate_notify_minutes(value)


def test_notify_minutes_accepts_numeric_forms():
    assert validate_notify_minutes(1) == 1
    assert validate_notify_minutes(60.0) == 60
    assert validate_notify_minutes(" 15 ") == 15


def test_watched_routes_must_be_non_empty():
    with pytest.raises(ValidationError):
        validate_watched_routes([])
    with pytest.raises(ValidationError):
        validate_watched_routes("5")
    assert validate_watched_routes([5, " 7 ", ""]) == {"5", "7"}


def test_unsubscribe_is_idempotent():
    registry = SubscriptionRegistry()
    assert registry.unsubscribe("S", "https://push.example.com/none") is False
    registry.subscribe("S", _sub(), 5, ["5"])
    assert registry.unsubscribe("S", _sub()["endpoint"]) is True
    assert registry.unsubscribe("S", _sub()["endpoint"]) is False
    assert registry.stop_ids() == []


def test_same_endpoint_on_two_stops_is_two_subscriptions():
    registry = SubscriptionRegistry()
    registry.subscribe("A", _sub(), 5, ["5"])
    registry.subscribe("B", _sub(), 5, ["5"])
    assert registry.count() == 2
    assert sorted(registry.stop_ids()) == ["A", "B"]


def test_full_stop_evicts_inactive_subscriptions():
    clock = FakeClock()
    registry = SubscriptionRegistry(max_per_stop=2, clock=clock)
    registry.subscribe("S", _sub(1), 5, ["5"])
    clock.now += timedelta(hours=25)
    registry.subscribe("S", _sub(2), 5, ["5"])

    assert registry.subscribe("S", _sub(3), 5, ["5"]) is True
    assert registry.get("S", _sub(1)["endpoint"]) is None
    assert registry.count("S") == 2


def test_full_stop_without_stale_entries_rejects():
    registry = SubscriptionRegistry(max_per_stop=2)
    registry.subscribe("S", _sub(1), 5, ["5"])
    registry.subscribe("S", _sub(2), 5, ["5"])
    with pytest.raises(CapacityError):
        registry.subscribe("S", _sub(3), 5, ["5"])
    # Updating an existing subscription is still allowed
    assert registry.subscribe("S", _sub(1), 10, ["5"]) is False


def test_notified_keys_drop_oldest_batch():
    registry = SubscriptionRegistry()
    registry.subscribe("S", _sub(), 60, ["5"])
    sub = registry.get("S", _sub()["endpoint"])
    for minute in range(NOTIFIED_KEYS_LIMIT + 1):
        sub.remember_notified(f"5_{minute}")

    assert len(sub.notified_arrival_keys) == NOTIFIED_KEYS_LIMIT + 1 - 10
    assert not sub.was_notified("5_0")
    assert sub.was_notified(f"5_{NOTIFIED_KEYS_LIMIT}")
