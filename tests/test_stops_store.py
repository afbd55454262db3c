import json
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from errors import ConflictError, ValidationError
from stops_store import StopDirectory, direction_from_upstream, parse_import_url, validate_paging


def _write_stops(path, stops):
    path.write_text(json.dumps({"stops": stops}, ensure_ascii=False), encoding="utf-8")


def _directory(tmp_path):
    path = tmp_path / "stops.json"
    _write_stops(path, [
        {"name": "Чистые пруды", "uuid": "aaa-111", "direction": "→ Покровка"},
        {"name": "Чистопрудный бульвар", "uuid": "bbb-222", "direction": "→ Курский"},
        {"name": "Лефортово", "uuid": "ccc-333"},
    ])
    return StopDirectory(path), path


def test_loads_stops_and_fills_missing_direction(tmp_path):
    stops, _ = _directory(tmp_path)
    assert len(stops.all()) == 3
    assert stops.get("ccc-333").direction == "не указано"
    assert stops.name_of("aaa-111") == "Чистые пруды"
    assert stops.name_of("missing") is None


def test_missing_file_gives_empty_directory(tmp_path):
    assert StopDirectory(tmp_path / "nope.json").all() == []


def test_corrupt_file_gives_empty_directory(tmp_path):
    path = tmp_path / "stops.json"
    path.write_text("{not json", encoding="utf-8")
    assert StopDirectory(path).all() == []


def test_search_matches_name_substring_case_insensitive(tmp_path):
    stops, _ = _directory(tmp_path)
    found, meta = stops.search("  ЧИСТ ", 1, 20)
    assert [s.uuid for s in found] == ["aaa-111", "bbb-222"]
    assert meta["total"] == 2
    assert meta["has_next"] is False


def test_search_matches_uuid_prefix(tmp_path):
    stops, _ = _directory(tmp_path)
    found, _ = stops.search("CCC", 1, 20)
    assert [s.name for s in found] == ["Лефортово"]


def test_search_paginates(tmp_path):
    stops, _ = _directory(tmp_path)
    found, meta = stops.search(None, 2, 2)
    assert [s.uuid for s in found] == ["ccc-333"]
    assert meta == {
        "total": 3,
        "page": 2,
        "page_size": 2,
        "total_pages": 2,
        "has_next": False,
        "has_prev": True,
    }


@pytest.mark.parametrize("page,page_size", [("0", None), (None, "0"), (None, "101"), ("x", None)])
def test_invalid_paging(page, page_size):
    with pytest.raises(ValidationError):
        validate_paging(page, page_size)


def test_default_paging():
    assert validate_paging(None, None) == (1, 20)


def test_add_persists_and_rejects_duplicates(tmp_path):
    stops, path = _directory(tmp_path)
    stops.add("ddd-444", "Бауманская", None)

    saved = json.loads(path.read_text(encoding="utf-8"))
    assert saved["stops"][-1] == {"name": "Бауманская", "uuid": "ddd-444", "direction": "не указано"}
    assert StopDirectory(path).exists("ddd-444")
    with pytest.raises(ConflictError):
        stops.add("ddd-444", "Бауманская")


def test_add_validates_input(tmp_path):
    stops, _ = _directory(tmp_path)
    with pytest.raises(ValidationError):
        stops.add("bad uuid!", "Name")
    with pytest.raises(ValidationError):
        stops.add("eee-555", "  ")


def test_parse_import_url():
    url = "https://moscowapp.mos.ru/stop?id=760d1406-363e-4b1a-a604-a6c75db93493"
    assert parse_import_url(url) == "760d1406-363e-4b1a-a604-a6c75db93493"
    with pytest.raises(ValidationError):
        parse_import_url("https://example.com/stop?id=1")
    with pytest.raises(ValidationError):
        parse_import_url(None)


def test_direction_from_upstream():
    assert direction_from_upstream({"direction": "в центр"}) == "в центр"
    assert direction_from_upstream({"routePath": [{"lastStopName": "Курский вокзал"}]}) == "→ Курский вокзал"
    assert direction_from_upstream({}) == "не указано"
