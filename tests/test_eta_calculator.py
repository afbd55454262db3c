import sys
from datetime import datetime, timezone
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from eta_calculator import calculate_eta, confidence_for, isoformat_ms, round_half_up
from forecast_models import ForecastEntry


NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_telemetry_confidence_by_horizon():
    assert confidence_for(240, True) == 0.95
    assert confidence_for(420, True) == 0.90
    assert confidence_for(700, True) == 0.85
    assert confidence_for(900, True) == 0.75


def test_schedule_confidence_by_horizon():
    assert confidence_for(240, False) == 0.60
    assert confidence_for(300, False) == 0.50


def test_boundaries_fall_into_the_next_band():
    assert confidence_for(299, True) == 0.95
    assert confidence_for(300, True) == 0.90
    assert confidence_for(599, True) == 0.90
    assert confidence_for(600, True) == 0.85


def test_round_half_up_matches_browser_rounding():
    assert round_half_up(2.5) == 3
    assert round_half_up(3.5) == 4
    assert round_half_up(179.4) == 179
    assert round_half_up(0.49) == 0


def test_calculate_eta_from_telemetry_forecast():
    estimate = calculate_eta(ForecastEntry(time=240.4, by_telemetry=True, vehicle_id="V1"), now=NOW)
    assert estimate.eta_seconds == 240
    assert estimate.confidence == 0.95
    body = estimate.to_dict()
    assert body["eta"] == "2024-05-01T12:04:00.000Z"
    assert body["generated_at"] == "2024-05-01T12:00:00.000Z"
    assert body["eta_seconds"] == 240


def test_calculate_eta_schedule_only():
    estimate = calculate_eta(ForecastEntry(time=240, by_telemetry=False), now=NOW)
    assert estimate.confidence == 0.60


def test_isoformat_ms_converts_to_utc():
    from zoneinfo import ZoneInfo

    local = datetime(2024, 5, 1, 15, 0, 0, tzinfo=ZoneInfo("Europe/Moscow"))
    assert isoformat_ms(local) == "2024-05-01T12:00:00.000Z"
