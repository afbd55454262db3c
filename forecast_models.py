from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

from errors import ValidationError


@dataclass(frozen=True)
class ForecastEntry:
    """One predicted arrival of one vehicle at a stop, as reported upstream."""
    time: float  # seconds from now
    by_telemetry: bool  # True when the forecast comes from live GPS
    vehicle_id: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["ForecastEntry"]:
        """Parse an upstream ``externalForecast`` item, or None if unusable."""
        if not isinstance(raw, dict):
            return None
        value = raw.get("time")
        if isinstance(value, bool):
            return None
        try:
            seconds = float(value)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(seconds) or seconds < 0:
            return None
        vehicle_id = raw.get("vehicleId")
        if vehicle_id is not None:
            vehicle_id = str(vehicle_id) or None
        return cls(
            time=seconds,
            by_telemetry=_flag(raw.get("byTelemetry")),
            vehicle_id=vehicle_id,
            lat=_coord(raw.get("lat")),
            lon=_coord(raw.get("lon")),
        )


@dataclass
class RouteSnapshot:
    """Forecasts for a single route within one stop poll."""
    number: str
    forecasts: List[ForecastEntry] = field(default_factory=list)
    route_type: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["RouteSnapshot"]:
        if not isinstance(raw, dict):
            return None
        number = raw.get("number")
        if number is None or str(number).strip() == "":
            return None
        # Upstream calls the list externalForecast; accept the short name too.
        items = raw.get("externalForecast")
        if items is None:
            items = raw.get("forecasts")
        forecasts: List[ForecastEntry] = []
        if isinstance(items, list):
            for item in items:
                entry = ForecastEntry.from_dict(item)
                if entry is not None:
                    forecasts.append(entry)
        return cls(number=str(number).strip(), forecasts=forecasts, route_type=raw.get("type"))

    def telemetry_forecasts(self) -> List[ForecastEntry]:
        return [f for f in self.forecasts if f.by_telemetry]

    def earliest_telemetry_time(self) -> Optional[float]:
        times = [f.time for f in self.forecasts if f.by_telemetry]
        return min(times) if times else None


def parse_route_path(raw: Any) -> List[RouteSnapshot]:
    """Parse a ``routePath`` array, dropping malformed routes.

    Raises ValidationError when the value is not a list at all.
    """
    if not isinstance(raw, list):
        raise ValidationError("routePath must be a list")
    routes: List[RouteSnapshot] = []
    for item in raw:
        route = RouteSnapshot.from_dict(item)
        if route is not None:
            routes.append(route)
    return routes


def tram_routes(routes: Iterable[RouteSnapshot]) -> List[RouteSnapshot]:
    return [r for r in routes if r.route_type in (None, "tram")]


def _flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    try:
        return int(value) == 1
    except (TypeError, ValueError):
        return False


def _coord(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


__all__ = ["ForecastEntry", "RouteSnapshot", "parse_route_path", "tram_routes"]
