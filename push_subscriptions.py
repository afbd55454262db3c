"""Per-stop registry of Web Push subscriptions for tram approach alerts."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set
from urllib.parse import urlparse

from errors import CapacityError, ValidationError


MIN_NOTIFY_MINUTES = 1
MAX_NOTIFY_MINUTES = 60
MAX_SUBSCRIPTIONS_PER_STOP = 100
INACTIVE_EVICTION_AGE = timedelta(hours=24)

# When the notified-key memory grows past the limit, the oldest batch is dropped
NOTIFIED_KEYS_LIMIT = 20
NOTIFIED_KEYS_DROP = 10


@dataclass
class PushSubscription:
    """A browser push endpoint watching some routes at one stop."""
    endpoint: str
    p256dh: str
    auth: str
    stop_id: str
    notify_minutes: int
    watched_routes: Set[str]
    created_at: datetime
    last_active: datetime
    # Insertion-ordered so the oldest keys can be dropped first
    notified_arrival_keys: List[str] = field(default_factory=list)

    def to_subscription_info(self) -> dict:
        """Return dict in the format expected by pywebpush."""
        return {
            "endpoint": self.endpoint,
            "keys": {
                "p256dh": self.p256dh,
                "auth": self.auth,
            },
        }

    def was_notified(self, key: str) -> bool:
        return key in self.notified_arrival_keys

    def remember_notified(self, key: str) -> None:
        if key in self.notified_arrival_keys:
            return
        self.notified_arrival_keys.append(key)
        if len(self.notified_arrival_keys) > NOTIFIED_KEYS_LIMIT:
            del self.notified_arrival_keys[:NOTIFIED_KEYS_DROP]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_subscription(subscription: Any) -> Dict[str, str]:
    """Check the browser PushSubscription JSON and return its essentials."""
    if not isinstance(subscription, dict):
        raise ValidationError("Invalid subscription data")
    endpoint = subscription.get("endpoint")
    if not isinstance(endpoint, str) or not endpoint.strip():
        raise ValidationError("Subscription endpoint is required")
    endpoint = endpoint.strip()
    parsed = urlparse(endpoint)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError("Subscription endpoint must be a valid URL")
    keys = subscription.get("keys")
    if not isinstance(keys, dict):
        raise ValidationError("Subscription keys are required")
    p256dh = keys.get("p256dh")
    auth = keys.get("auth")
    if not isinstance(p256dh, str) or not p256dh.strip():
        raise ValidationError("Subscription key p256dh is required")
    if not isinstance(auth, str) or not auth.strip():
        raise ValidationError("Subscription key auth is required")
    return {"endpoint": endpoint, "p256dh": p256dh.strip(), "auth": auth.strip()}


def validate_notify_minutes(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError("notify_minutes must be an integer")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        value = int(value.strip())
    if not isinstance(value, int):
        raise ValidationError("notify_minutes must be an integer")
    if not MIN_NOTIFY_MINUTES <= value <= MAX_NOTIFY_MINUTES:
        raise ValidationError(
            f"notify_minutes must be between {MIN_NOTIFY_MINUTES} and {MAX_NOTIFY_MINUTES}"
        )
    return value


def validate_watched_routes(value: Any) -> Set[str]:
    if not isinstance(value, (list, tuple, set)):
        raise ValidationError("tram_numbers must be a non-empty list")
    routes: Set[str] = set()
    for item in value:
        if item is None or isinstance(item, (bool, dict, list)):
            continue
        text = str(item).strip()
        if text:
            routes.add(text)
    if not routes:
        raise ValidationError("tram_numbers must be a non-empty list")
    return routes


class SubscriptionRegistry:
    """In-memory subscriptions keyed by (stop_id, endpoint).

    Nothing is persisted; the registry starts empty with every process.
    """

    def __init__(
        self,
        *,
        max_per_stop: int = MAX_SUBSCRIPTIONS_PER_STOP,
        inactive_after: timedelta = INACTIVE_EVICTION_AGE,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.max_per_stop = max_per_stop
        self.inactive_after = inactive_after
        self._clock = clock or _utcnow
        self._subscriptions: Dict[str, Dict[str, PushSubscription]] = {}

    def subscribe(
        self,
        stop_id: str,
        subscription: Any,
        notify_minutes: Any,
        watched_routes: Any,
    ) -> bool:
        """Add or update a subscription. Returns True if new."""
        if not isinstance(stop_id, str) or not stop_id.strip():
            raise ValidationError("stopId is required")
        info = validate_subscription(subscription)
        minutes = validate_notify_minutes(notify_minutes)
        routes = validate_watched_routes(watched_routes)
        now = self._clock()

        stop_subs = self._subscriptions.setdefault(stop_id, {})
        existing = stop_subs.get(info["endpoint"])
        if existing is not None:
            existing.p256dh = info["p256dh"]
            existing.auth = info["auth"]
            existing.notify_minutes = minutes
            existing.watched_routes = routes
            existing.last_active = now
            return False

        if len(stop_subs) >= self.max_per_stop:
            evicted = self._evict_inactive(stop_id, now)
            if evicted:
                print(f"[push] stop={stop_id} evicted {evicted} inactive subscriptions")
            if len(stop_subs) >= self.max_per_stop:
                raise CapacityError("Too many subscriptions for this stop, try again later")

        stop_subs[info["endpoint"]] = PushSubscription(
            endpoint=info["endpoint"],
            p256dh=info["p256dh"],
            auth=info["auth"],
            stop_id=stop_id,
            notify_minutes=minutes,
            watched_routes=routes,
            created_at=now,
            last_active=now,
        )
        return True

    def unsubscribe(self, stop_id: str, endpoint: str) -> bool:
        """Remove a subscription. Returns True if found; absent is not an error."""
        stop_subs = self._subscriptions.get(stop_id)
        if not stop_subs or endpoint not in stop_subs:
            return False
        del stop_subs[endpoint]
        if not stop_subs:
            del self._subscriptions[stop_id]
        return True

    def get(self, stop_id: str, endpoint: str) -> Optional[PushSubscription]:
        return self._subscriptions.get(stop_id, {}).get(endpoint)

    def for_stop(self, stop_id: str) -> List[PushSubscription]:
        return list(self._subscriptions.get(stop_id, {}).values())

    def stop_ids(self) -> List[str]:
        """Stops with at least one active subscription."""
        return [stop_id for stop_id, subs in self._subscriptions.items() if subs]

    def touch(self, subscription: PushSubscription) -> None:
        subscription.last_active = self._clock()

    def count(self, stop_id: Optional[str] = None) -> int:
        if stop_id is not None:
            return len(self._subscriptions.get(stop_id, {}))
        return sum(len(subs) for subs in self._subscriptions.values())

    def _evict_inactive(self, stop_id: str, now: datetime) -> int:
        stop_subs = self._subscriptions.get(stop_id, {})
        cutoff = now - self.inactive_after
        stale = [endpoint for endpoint, sub in stop_subs.items() if sub.last_active < cutoff]
        for endpoint in stale:
            del stop_subs[endpoint]
        return len(stale)


__all__ = [
    "PushSubscription",
    "SubscriptionRegistry",
    "validate_subscription",
    "validate_notify_minutes",
    "validate_watched_routes",
    "MAX_SUBSCRIPTIONS_PER_STOP",
    "NOTIFIED_KEYS_LIMIT",
]
