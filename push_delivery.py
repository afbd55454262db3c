"""Web Push delivery with bounded retries.

``webpush()`` from pywebpush is blocking (it uses requests under the hood), so
each attempt runs in a worker thread. Subscription state is never touched
from that thread; callers act on the returned outcome on the event loop.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import requests
from pywebpush import WebPushException, webpush

from errors import PushDeliveryError
from push_subscriptions import PushSubscription


# Development-only VAPID pair. Never ship these; set the env vars instead.
DEV_VAPID_PUBLIC_KEY = "BNqjZcSrxDzfY2S36e1sNne9Mzw6hWnxYHyJysWN9ZpvBxVDThtvMCiKmxufVRUyoBL8ZE4RqVDlU5s636Ayhls"
DEV_VAPID_PRIVATE_KEY = "-8qg68XULGxzg8CPtcQNxhgaywt7XIaF1_NTLhcD7Y4"
DEV_VAPID_SUBJECT = "mailto:admin@transport-radar.ru"

PUSH_TTL_S = 300

T = TypeVar("T")


@dataclass(frozen=True)
class VapidConfig:
    public_key: str
    private_key: str
    subject: str
    using_development_keys: bool = False

    @classmethod
    def from_values(
        cls,
        public_key: Optional[str],
        private_key: Optional[str],
        subject: Optional[str],
    ) -> "VapidConfig":
        public_key = (public_key or "").strip()
        private_key = (private_key or "").strip()
        subject = (subject or "").strip() or DEV_VAPID_SUBJECT
        if public_key and private_key:
            return cls(public_key, private_key, subject)
        print("[push] " + "!" * 68)
        print("[push] WARNING: VAPID_PUBLIC_KEY / VAPID_PRIVATE_KEY are not set.")
        print("[push] WARNING: falling back to INSECURE development keys.")
        print("[push] WARNING: anyone can sign pushes with them. Do NOT run this in production.")
        print("[push] " + "!" * 68)
        return cls(DEV_VAPID_PUBLIC_KEY, DEV_VAPID_PRIVATE_KEY, subject, using_development_keys=True)


class DeliveryOutcome(str, Enum):
    SENT = "sent"
    GONE = "gone"  # endpoint is dead; drop the subscription
    FAILED = "failed"


def is_retryable_status(status: Optional[int]) -> bool:
    """5xx, 429 and network failures (no status) are worth another attempt."""
    if status is None:
        return True
    return status >= 500 or status == 429


class RetryPolicy:
    """Run an async operation up to ``max_attempts`` times with fixed backoff."""

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_s: float = 2.0,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.backoff_s = backoff_s
        self._sleep = sleep

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        is_retryable: Callable[[Exception], bool],
    ) -> T:
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as exc:
                if attempt >= self.max_attempts or not is_retryable(exc):
                    raise
                print(f"[push] attempt {attempt}/{self.max_attempts} failed: {exc}; retrying in {self.backoff_s}s")
            await self._sleep(self.backoff_s)
            attempt += 1


class PushSender:
    def __init__(
        self,
        vapid: VapidConfig,
        policy: Optional[RetryPolicy] = None,
        *,
        transport: Callable[..., Any] = webpush,
    ):
        self.vapid = vapid
        self.policy = policy or RetryPolicy()
        self._transport = transport

    async def send(self, subscription: PushSubscription, payload: Dict[str, Any]) -> DeliveryOutcome:
        data = json.dumps(payload, ensure_ascii=False)
        try:
            await self.policy.run(
                lambda: self._attempt(subscription, data),
                lambda exc: isinstance(exc, PushDeliveryError) and exc.retryable,
            )
        except PushDeliveryError as exc:
            if exc.terminal:
                print(f"[push] endpoint gone ({exc.status}) stop={subscription.stop_id}")
                return DeliveryOutcome.GONE
            print(f"[push] delivery failed stop={subscription.stop_id}: {exc}")
            return DeliveryOutcome.FAILED
        return DeliveryOutcome.SENT

    async def _attempt(self, subscription: PushSubscription, data: str) -> None:
        try:
            await asyncio.to_thread(
                self._transport,
                subscription_info=subscription.to_subscription_info(),
                data=data,
                vapid_private_key=self.vapid.private_key,
                vapid_claims={"sub": self.vapid.subject},
                ttl=PUSH_TTL_S,
            )
        except WebPushException as exc:
            # requests.Response is falsy for 4xx/5xx, so compare against None
            status = exc.response.status_code if exc.response is not None else None
            raise PushDeliveryError(str(exc), status=status, retryable=is_retryable_status(status)) from exc
        except requests.RequestException as exc:
            raise PushDeliveryError(f"network error: {exc}", retryable=True) from exc


__all__ = [
    "VapidConfig",
    "DeliveryOutcome",
    "RetryPolicy",
    "PushSender",
    "is_retryable_status",
    "DEV_VAPID_PUBLIC_KEY",
]
