"""ETA and confidence for a single forecast entry.

GPS-derived forecasts are trusted more than schedule-only ones, and trust
drops as the forecast horizon grows.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from forecast_models import ForecastEntry


# (upper bound in seconds, confidence), checked in order
TELEMETRY_CONFIDENCE = ((300, 0.95), (600, 0.90), (900, 0.85))
TELEMETRY_FALLBACK_CONFIDENCE = 0.75
SCHEDULE_CONFIDENCE = ((300, 0.60),)
SCHEDULE_FALLBACK_CONFIDENCE = 0.50


@dataclass(frozen=True)
class EtaEstimate:
    eta: datetime
    eta_seconds: int
    confidence: float
    generated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eta": isoformat_ms(self.eta),
            "eta_seconds": self.eta_seconds,
            "confidence": self.confidence,
            "generated_at": isoformat_ms(self.generated_at),
        }


def round_half_up(value: float) -> int:
    """Round like a JavaScript client would (x.5 goes up)."""
    return int(math.floor(value + 0.5))


def isoformat_ms(dt: datetime) -> str:
    utc = dt.astimezone(timezone.utc)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def confidence_for(eta_seconds: int, by_telemetry: bool) -> float:
    table = TELEMETRY_CONFIDENCE if by_telemetry else SCHEDULE_CONFIDENCE
    fallback = TELEMETRY_FALLBACK_CONFIDENCE if by_telemetry else SCHEDULE_FALLBACK_CONFIDENCE
    for limit, confidence in table:
        if eta_seconds < limit:
            return round(confidence, 2)
    return round(fallback, 2)


def calculate_eta(forecast: ForecastEntry, now: Optional[datetime] = None) -> EtaEstimate:
    if now is None:
        now = datetime.now(timezone.utc)
    eta_seconds = round_half_up(forecast.time)
    return EtaEstimate(
        eta=now + timedelta(seconds=eta_seconds),
        eta_seconds=eta_seconds,
        confidence=confidence_for(eta_seconds, forecast.by_telemetry),
        generated_at=now,
    )


__all__ = ["EtaEstimate", "calculate_eta", "confidence_for", "round_half_up", "isoformat_ms"]
