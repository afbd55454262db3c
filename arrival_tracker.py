from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set
from zoneinfo import ZoneInfo

from eta_calculator import isoformat_ms
from forecast_models import ForecastEntry, RouteSnapshot


# Arrivals kept per (stop, route), newest first
MAX_HISTORY_ITEMS = 3

DEFAULT_DISPLAY_TZ = ZoneInfo("Europe/Moscow")


@dataclass(frozen=True)
class VehicleKey:
    """Identity of a telemetry forecast slot.

    This is a heuristic, not a vehicle identifier: ``approx_time`` is the
    seconds-until-arrival reported by upstream and changes on every poll, so
    the key really answers "is this exact forecast row still present". A row
    disappearing is read as an arrival. Upstream never says whether a row
    vanished because the tram arrived or because it was re-routed or
    cancelled; both look identical here.
    """
    vehicle_id: Optional[str]
    approx_time: float

    @property
    def key(self) -> str:
        return f"{_format_seconds(self.approx_time)}_{self.vehicle_id or ''}"


# Maps one forecast to its identity, or None when it must not be tracked.
IdentityStrategy = Callable[[ForecastEntry], Optional[VehicleKey]]


def forecast_slot_identity(forecast: ForecastEntry) -> Optional[VehicleKey]:
    """Default identity: telemetry forecasts keyed by ``time_vehicleId``.

    Schedule-only forecasts have no stable identity and do not disappear
    predictably, so they never take part in arrival detection.
    """
    if not forecast.by_telemetry:
        return None
    return VehicleKey(vehicle_id=forecast.vehicle_id, approx_time=forecast.time)


def vehicle_id_identity(forecast: ForecastEntry) -> Optional[VehicleKey]:
    """Identity for feeds with stable vehicle ids; ignores the moving ETA."""
    if not forecast.by_telemetry or not forecast.vehicle_id:
        return None
    return VehicleKey(vehicle_id=forecast.vehicle_id, approx_time=0)


@dataclass(frozen=True)
class ArrivalRecord:
    timestamp_iso: str
    display_time: str

    def to_dict(self) -> dict:
        return {"time": self.timestamp_iso, "displayTime": self.display_time}


@dataclass
class TrackedRoute:
    """Live vehicle keys and bounded arrival history for one (stop, route)."""
    current_vehicle_keys: Set[str] = field(default_factory=set)
    history: List[ArrivalRecord] = field(default_factory=list)


@dataclass(frozen=True)
class ArrivalEvent:
    stop_id: str
    route_number: str
    vehicle_key: str
    record: ArrivalRecord


class TrackingStore(ABC):
    """Storage for tracked routes, keyed by (stop_id, route_number)."""

    @abstractmethod
    def get(self, stop_id: str, route_number: str) -> Optional[TrackedRoute]:
        ...

    @abstractmethod
    def upsert(self, stop_id: str, route_number: str, tracked: TrackedRoute) -> None:
        ...

    @abstractmethod
    def routes_for_stop(self, stop_id: str) -> Dict[str, TrackedRoute]:
        ...

    @abstractmethod
    def stop_ids(self) -> List[str]:
        ...


class InMemoryTrackingStore(TrackingStore):
    """Process-lifetime store; everything is lost on restart."""

    def __init__(self) -> None:
        self._stops: Dict[str, Dict[str, TrackedRoute]] = {}

    def get(self, stop_id: str, route_number: str) -> Optional[TrackedRoute]:
        return self._stops.get(stop_id, {}).get(route_number)

    def upsert(self, stop_id: str, route_number: str, tracked: TrackedRoute) -> None:
        self._stops.setdefault(stop_id, {})[route_number] = tracked

    def routes_for_stop(self, stop_id: str) -> Dict[str, TrackedRoute]:
        return dict(self._stops.get(stop_id, {}))

    def stop_ids(self) -> List[str]:
        return list(self._stops.keys())


class ArrivalTracker:
    """
    Detects tram arrivals by diffing telemetry forecast keys between polls.

    Per (stop, route):
    1. Build the set of identity keys from the new snapshot (telemetry only).
    2. Every key present last time and missing now is an arrival; it is
       prepended to the history, which is truncated to MAX_HISTORY_ITEMS.
    3. The new key set replaces the old one.

    A route seen for the first time only establishes a baseline. A route
    missing from a snapshot is left untouched, so its vehicles are not assumed
    to have arrived.
    """

    def __init__(
        self,
        store: Optional[TrackingStore] = None,
        *,
        identity: IdentityStrategy = forecast_slot_identity,
        max_history: int = MAX_HISTORY_ITEMS,
        display_tz: ZoneInfo = DEFAULT_DISPLAY_TZ,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store if store is not None else InMemoryTrackingStore()
        self.identity = identity
        self.max_history = max_history
        self.display_tz = display_tz
        self._clock = clock or _utcnow

    def ingest(self, stop_id: str, routes: Iterable[RouteSnapshot]) -> List[ArrivalEvent]:
        """Apply one snapshot for ``stop_id`` and return the arrivals it reveals."""
        now = self._clock()
        events: List[ArrivalEvent] = []
        for route in routes:
            tracked = self.store.get(stop_id, route.number)
            if tracked is None:
                tracked = TrackedRoute()
            new_keys = self._keys_for(route)
            for vehicle_key in sorted(tracked.current_vehicle_keys - new_keys):
                record = self._make_record(now)
                tracked.history.insert(0, record)
                events.append(ArrivalEvent(stop_id, route.number, vehicle_key, record))
            del tracked.history[self.max_history:]
            tracked.current_vehicle_keys = new_keys
            self.store.upsert(stop_id, route.number, tracked)
        if events:
            print(
                f"[tracker] stop={stop_id} arrivals="
                f"{[(e.route_number, e.vehicle_key) for e in events]}"
            )
        return events

    def history(self, stop_id: str) -> Dict[str, List[dict]]:
        """Recorded arrivals per route; routes without any arrival are omitted."""
        result: Dict[str, List[dict]] = {}
        for route_number, tracked in self.store.routes_for_stop(stop_id).items():
            if tracked.history:
                result[route_number] = [record.to_dict() for record in tracked.history]
        return result

    def live_keys(self, stop_id: str, route_number: str) -> Set[str]:
        tracked = self.store.get(stop_id, route_number)
        return set(tracked.current_vehicle_keys) if tracked else set()

    def tracked_stop_ids(self) -> List[str]:
        return self.store.stop_ids()

    def _keys_for(self, route: RouteSnapshot) -> Set[str]:
        keys: Set[str] = set()
        for forecast in route.forecasts:
            vehicle_key = self.identity(forecast)
            if vehicle_key is not None:
                keys.add(vehicle_key.key)
        return keys

    def _make_record(self, now: datetime) -> ArrivalRecord:
        utc = now.astimezone(timezone.utc)
        return ArrivalRecord(
            timestamp_iso=isoformat_ms(utc),
            display_time=utc.astimezone(self.display_tz).strftime("%H:%M"),
        )


def _format_seconds(value: float) -> str:
    # Mirrors how browsers stringify numbers, so keys match client-side ids.
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


__all__ = [
    "MAX_HISTORY_ITEMS",
    "VehicleKey",
    "IdentityStrategy",
    "forecast_slot_identity",
    "vehicle_id_identity",
    "ArrivalRecord",
    "TrackedRoute",
    "ArrivalEvent",
    "TrackingStore",
    "InMemoryTrackingStore",
    "ArrivalTracker",
]
