"""Background loop pushing tram-approach alerts to subscribed browsers.

Every cycle, each stop with at least one subscription is re-polled upstream
(independently of any client ``/track`` calls) and each subscription is
checked against the earliest GPS-confirmed forecast of its watched routes.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from errors import UpstreamUnavailableError
from eta_calculator import round_half_up
from forecast_models import RouteSnapshot
from push_delivery import DeliveryOutcome, PushSender
from push_subscriptions import PushSubscription, SubscriptionRegistry


DEFAULT_INTERVAL_S = 20.0
DEFAULT_FETCH_TIMEOUT_S = 15.0

FetchRoutes = Callable[[str], Awaitable[List[RouteSnapshot]]]


@dataclass
class CycleReport:
    stops_polled: int = 0
    stops_failed: int = 0
    notifications_sent: int = 0
    subscriptions_removed: int = 0
    failed_stop_ids: List[str] = field(default_factory=list)


@dataclass
class _StopResult:
    failed: bool = False
    sent: int = 0
    removed: int = 0


def arrival_key(route_number: str, arrival_minutes: int) -> str:
    return f"{route_number}_{arrival_minutes}"


def earliest_telemetry_by_route(routes: List[RouteSnapshot]) -> Dict[str, float]:
    """Soonest GPS-confirmed forecast per route number.

    Routes with only schedule forecasts are left out: those never trigger a
    push.
    """
    earliest: Dict[str, float] = {}
    for route in routes:
        seconds = route.earliest_telemetry_time()
        if seconds is None:
            continue
        current = earliest.get(route.number)
        if current is None or seconds < current:
            earliest[route.number] = seconds
    return earliest


def build_payload(
    stop_id: str,
    route_number: str,
    arrival_minutes: int,
    stop_name: Optional[str] = None,
) -> Dict[str, Any]:
    where = f" на остановку «{stop_name}»" if stop_name else ""
    return {
        "title": "🚊 Трамвай приближается",
        "body": f"Трамвай {route_number} прибывает через {arrival_minutes} мин{where}",
        "icon": "/icon-192.png",
        "badge": "/badge-72.png",
        "tag": f"tram-{route_number}-{stop_id}",
        "data": {
            "stopId": stop_id,
            "tramNumber": route_number,
            "arrivalMinutes": arrival_minutes,
            "url": "/",
        },
    }


class NotificationDispatcher:
    """
    Polls subscribed stops on a fixed period and sends approach alerts.

    Per subscription and watched route:
    - take the earliest telemetry forecast; skip the route if there is none
    - arrival_minutes = round(seconds / 60)
    - notify when 0 < arrival_minutes <= notify_minutes and the
      (route, arrival_minutes) key has not been notified before

    Keys are recorded before the push is awaited, so a concurrent cycle can
    never send the same alert twice. A failed upstream fetch skips that stop
    for this cycle only. A 404/410 from the push service removes the
    subscription.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        fetch_routes: FetchRoutes,
        sender: PushSender,
        *,
        interval_s: float = DEFAULT_INTERVAL_S,
        fetch_timeout_s: float = DEFAULT_FETCH_TIMEOUT_S,
        stop_name_lookup: Optional[Callable[[str], Optional[str]]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.registry = registry
        self.fetch_routes = fetch_routes
        self.sender = sender
        self.interval_s = interval_s
        self.fetch_timeout_s = fetch_timeout_s
        self.stop_name_lookup = stop_name_lookup
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.cycles_run = 0
        self.last_report: Optional[CycleReport] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the polling loop on the running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="notification-dispatcher")
        print(f"[dispatcher] started, interval={self.interval_s}s")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        print(f"[dispatcher] stopped after {self.cycles_run} cycles")

    async def _run(self) -> None:
        while True:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                print(f"[dispatcher] cycle error: {exc!r}")
            await self._sleep(self.interval_s)

    async def run_cycle(self) -> CycleReport:
        """Run one polling pass over every subscribed stop."""
        report = CycleReport()
        stop_ids = self.registry.stop_ids()
        self.cycles_run += 1
        if not stop_ids:
            self.last_report = report
            return report

        # Stops are independent, so their fetches run concurrently
        results = await asyncio.gather(
            *(self._process_stop(stop_id) for stop_id in stop_ids),
            return_exceptions=True,
        )
        for stop_id, result in zip(stop_ids, results):
            report.stops_polled += 1
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                print(f"[dispatcher] stop={stop_id} processing error: {result!r}")
                report.stops_failed += 1
                report.failed_stop_ids.append(stop_id)
                continue
            if result.failed:
                report.stops_failed += 1
                report.failed_stop_ids.append(stop_id)
            report.notifications_sent += result.sent
            report.subscriptions_removed += result.removed

        if report.notifications_sent or report.subscriptions_removed or report.stops_failed:
            print(
                f"[dispatcher] cycle #{self.cycles_run}: stops={report.stops_polled} "
                f"failed={report.stops_failed} sent={report.notifications_sent} "
                f"removed={report.subscriptions_removed}"
            )
        self.last_report = report
        return report

    async def _process_stop(self, stop_id: str) -> _StopResult:
        result = _StopResult()
        try:
            routes = await asyncio.wait_for(self.fetch_routes(stop_id), timeout=self.fetch_timeout_s)
        except asyncio.TimeoutError:
            print(f"[dispatcher] stop={stop_id} fetch timed out, skipping this cycle")
            result.failed = True
            return result
        except UpstreamUnavailableError as exc:
            print(f"[dispatcher] stop={stop_id} fetch failed, skipping this cycle: {exc}")
            result.failed = True
            return result

        earliest = earliest_telemetry_by_route(routes)
        stop_name = self.stop_name_lookup(stop_id) if self.stop_name_lookup else None

        for sub in self.registry.for_stop(stop_id):
            due = self._collect_due(sub, earliest)
            for route_number, minutes in due:
                if self.registry.get(stop_id, sub.endpoint) is not sub:
                    # Unsubscribed while an earlier push was in flight
                    break
                payload = build_payload(stop_id, route_number, minutes, stop_name)
                try:
                    outcome = await self.sender.send(sub, payload)
                except Exception as exc:
                    print(f"[dispatcher] stop={stop_id} route={route_number} push error: {exc!r}")
                    continue
                if outcome is DeliveryOutcome.GONE:
                    if self.registry.unsubscribe(stop_id, sub.endpoint):
                        result.removed += 1
                    break
                if outcome is DeliveryOutcome.SENT:
                    self.registry.touch(sub)
                    result.sent += 1
        return result

    @staticmethod
    def _collect_due(sub: PushSubscription, earliest: Dict[str, float]) -> List[Tuple[str, int]]:
        """Pick the alerts owed to ``sub`` and mark them notified, without awaiting."""
        due: List[Tuple[str, int]] = []
        for route_number in sorted(sub.watched_routes):
            seconds = earliest.get(route_number)
            if seconds is None:
                continue
            minutes = round_half_up(seconds / 60)
            if not 0 < minutes <= sub.notify_minutes:
                continue
            key = arrival_key(route_number, minutes)
            if sub.was_notified(key):
                continue
            sub.remember_notified(key)
            due.append((route_number, minutes))
        return due


__all__ = [
    "NotificationDispatcher",
    "CycleReport",
    "arrival_key",
    "build_payload",
    "earliest_telemetry_by_route",
]
