"""Stop directory backed by a JSON file (``{"stops": [...]}``)."""

import json
import math
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from errors import ConflictError, ValidationError


DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
UNKNOWN_DIRECTION = "не указано"

IMPORT_URL_RE = re.compile(r"https://moscowapp\.mos\.ru/stop\?id=([a-f0-9-]+)", re.IGNORECASE)
STOP_UUID_RE = re.compile(r"^[A-Za-z0-9-]{1,100}$")


@dataclass
class Stop:
    uuid: str
    name: str
    direction: str

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "uuid": self.uuid, "direction": self.direction}


def parse_import_url(url: Any) -> str:
    """Extract the stop uuid from a moscowapp.mos.ru share link."""
    if not isinstance(url, str) or not url.strip():
        raise ValidationError("url is required")
    match = IMPORT_URL_RE.search(url.strip())
    if not match:
        raise ValidationError(
            "Invalid link format, expected https://moscowapp.mos.ru/stop?id=..."
        )
    return match.group(1)


def direction_from_upstream(data: Dict[str, Any]) -> str:
    """Direction label for an imported stop, inferred from upstream data."""
    direction = data.get("direction")
    if isinstance(direction, str) and direction.strip():
        return direction.strip()
    route_path = data.get("routePath")
    if isinstance(route_path, list) and route_path and isinstance(route_path[0], dict):
        last_stop = route_path[0].get("lastStopName")
        if last_stop:
            return f"→ {last_stop}"
    return UNKNOWN_DIRECTION


def validate_paging(page: Any, page_size: Any) -> Tuple[int, int]:
    page_num = _to_int(page, 1)
    size = _to_int(page_size, DEFAULT_PAGE_SIZE)
    if page_num is None or page_num < 1:
        raise ValidationError("Invalid page number. Must be >= 1")
    if size is None or not 1 <= size <= MAX_PAGE_SIZE:
        raise ValidationError(f"Invalid page_size. Must be between 1 and {MAX_PAGE_SIZE}")
    return page_num, size


def paginate(items: List[Any], page: int, page_size: int) -> Tuple[List[Any], Dict[str, Any]]:
    total = len(items)
    total_pages = math.ceil(total / page_size) if total else 0
    start = (page - 1) * page_size
    meta = {
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": total_pages,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }
    return items[start:start + page_size], meta


def _to_int(value: Any, default: int) -> Optional[int]:
    if value is None:
        return default
    try:
        return int(str(value).strip())
    except ValueError:
        return None


class StopDirectory:
    """Static stop reference data; only the add/import endpoints change it."""

    def __init__(self, path: Path):
        self._path = path
        self._stops: List[Stop] = []
        self._load_sync()

    def _load_sync(self) -> None:
        self._stops.clear()
        if not self._path.exists():
            print(f"[stops] {self._path} not found, starting with an empty directory")
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            print(f"[stops] failed to read {self._path}: {exc}")
            return
        entries = raw.get("stops", []) if isinstance(raw, dict) else []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            uuid = entry.get("uuid")
            name = entry.get("name")
            if not uuid or not name:
                continue
            self._stops.append(
                Stop(uuid=str(uuid), name=str(name), direction=str(entry.get("direction") or UNKNOWN_DIRECTION))
            )
        print(f"[stops] loaded {len(self._stops)} stops from {self._path}")

    def _persist(self) -> None:
        payload = json.dumps(
            {"stops": [stop.to_dict() for stop in self._stops]},
            ensure_ascii=False,
            indent=2,
        )
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(payload, encoding="utf-8")
        tmp_path.replace(self._path)

    def all(self) -> List[Stop]:
        return list(self._stops)

    def get(self, uuid: str) -> Optional[Stop]:
        for stop in self._stops:
            if stop.uuid == uuid:
                return stop
        return None

    def exists(self, uuid: str) -> bool:
        return self.get(uuid) is not None

    def name_of(self, uuid: str) -> Optional[str]:
        stop = self.get(uuid)
        return stop.name if stop else None

    def search(self, prefix: Optional[str], page: int, page_size: int) -> Tuple[List[Stop], Dict[str, Any]]:
        """Name substring or uuid prefix match, case-insensitive, paginated."""
        matches = self._stops
        needle = (prefix or "").strip().lower()
        if needle:
            matches = [
                stop for stop in self._stops
                if needle in stop.name.lower() or stop.uuid.lower().startswith(needle)
            ]
        return paginate(list(matches), page, page_size)

    def add(self, uuid: Any, name: Any, direction: Any = None) -> Stop:
        if not isinstance(uuid, str) or not STOP_UUID_RE.match(uuid.strip()):
            raise ValidationError("uuid is required and may contain only letters, digits and '-'")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("name is required")
        uuid = uuid.strip()
        if self.exists(uuid):
            raise ConflictError("This stop has already been added")
        if not isinstance(direction, str) or not direction.strip():
            direction = UNKNOWN_DIRECTION
        stop = Stop(uuid=uuid, name=name.strip(), direction=direction.strip())
        self._stops.append(stop)
        self._persist()
        print(f"[stops] added {stop.name} ({stop.direction})")
        return stop


__all__ = [
    "Stop",
    "StopDirectory",
    "parse_import_url",
    "direction_from_upstream",
    "validate_paging",
    "paginate",
]
