import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from errors import ValidationError
from forecast_models import ForecastEntry, RouteSnapshot, parse_route_path, tram_routes


@pytest.mark.parametrize("value", [float("inf"), float("-inf"), float("nan"), -5, "soon", None, True])
def test_unusable_forecast_times_are_dropped(value):
    assert ForecastEntry.from_dict({"time": value, "byTelemetry": 1}) is None


def test_forecast_fields_are_parsed():
    entry = ForecastEntry.from_dict({"time": "95.5", "vehicleId": 4012, "byTelemetry": 1, "lat": "55.7"})
    assert entry == ForecastEntry(time=95.5, by_telemetry=True, vehicle_id="4012", lat=55.7, lon=None)


def test_route_drops_bad_rows_and_accepts_short_list_name():
    route = RouteSnapshot.from_dict(
        {"number": " 3 ", "forecasts": [{"time": 60, "byTelemetry": 0}, {"time": float("inf")}]}
    )
    assert route.number == "3"
    assert len(route.forecasts) == 1
    assert route.earliest_telemetry_time() is None


def test_parse_route_path_requires_list():
    with pytest.raises(ValidationError):
        parse_route_path({"number": "3"})


def test_tram_routes_keeps_untyped_and_tram():
    routes = parse_route_path([
        {"number": "3", "type": "tram"},
        {"number": "А", "type": "bus"},
        {"number": "7"},
    ])
    assert [r.number for r in tram_routes(routes)] == ["3", "7"]
