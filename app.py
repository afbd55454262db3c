"""
Tram Radar: arrival tracking & push alert API (FastAPI)

Purpose
=======
Proxy the moscowtransport.app stop forecast API, keep a short arrival history
per stop and route, and push browser notifications when a watched tram is
about to reach a stop.

Key features
------------
- Arrival detection by diffing GPS forecast snapshots posted by clients.
- Per-stop Web Push subscriptions with a notify threshold and watched routes.
- Background dispatcher re-polling subscribed stops every 20 seconds.
- ETA lookups per run with a short server-side cache.
- Fixed-window rate limiting on the externally triggered endpoints.

All tracking, subscription and rate-limit state lives in memory for the
lifetime of the process.

Run
---
$ uvicorn app:app --reload --port 3000

Environment
-----------
- PYTHON >= 3.10
- pip install -e .
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional
from dataclasses import dataclass
import math, os, re, traceback
from datetime import datetime, timezone
from email.utils import formatdate
from pathlib import Path
from zoneinfo import ZoneInfo

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

from arrival_tracker import ArrivalTracker
from errors import (
    NotFoundError,
    RateLimitError,
    TransitRadarError,
    UpstreamUnavailableError,
    ValidationError,
)
from eta_calculator import calculate_eta, isoformat_ms, round_half_up
from forecast_models import ForecastEntry, RouteSnapshot, parse_route_path, tram_routes
from notification_dispatcher import NotificationDispatcher
from push_delivery import PushSender, RetryPolicy, VapidConfig
from push_subscriptions import SubscriptionRegistry
from rate_limiter import FixedWindowRateLimiter
from stops_store import (
    StopDirectory,
    direction_from_upstream,
    paginate,
    parse_import_url,
    validate_paging,
)
from transit_client import STATUS_GEO_BLOCKED, TransitClient
from ttl_cache import KeyedTTLCache

# ---------------------------
# Config
# ---------------------------
BASE_DIR = Path(__file__).resolve().parent
STOPS_PATH = Path(os.getenv("STOPS_PATH", str(BASE_DIR / "stops.json")))
DISPLAY_TZ = ZoneInfo(os.getenv("DISPLAY_TZ", "Europe/Moscow"))

# Push notifications (Web Push)
VAPID_PUBLIC_KEY = os.getenv("VAPID_PUBLIC_KEY", "")
VAPID_PRIVATE_KEY = os.getenv("VAPID_PRIVATE_KEY", "")
VAPID_SUBJECT = os.getenv("VAPID_SUBJECT", "")
PUSH_POLL_INTERVAL_S = float(os.getenv("PUSH_POLL_INTERVAL_S", "20"))
PUSH_MAX_ATTEMPTS = int(os.getenv("PUSH_MAX_ATTEMPTS", "3"))
PUSH_RETRY_BACKOFF_S = float(os.getenv("PUSH_RETRY_BACKOFF_S", "2"))
PUSH_DISPATCHER_ENABLED = os.getenv("PUSH_DISPATCHER_ENABLED", "true").lower() == "true"

UPSTREAM_TIMEOUT_S = float(os.getenv("UPSTREAM_TIMEOUT_S", "15"))
ETA_CACHE_TTL_S = float(os.getenv("ETA_CACHE_TTL_S", "15"))

# Rate limits: requests per window, per client IP
IMPORT_RATE_LIMIT     = int(os.getenv("IMPORT_RATE_LIMIT", "10"))
IMPORT_RATE_WINDOW_S  = float(os.getenv("IMPORT_RATE_WINDOW_S", "60"))
SUBSCRIBE_RATE_LIMIT  = int(os.getenv("SUBSCRIBE_RATE_LIMIT", "5"))
SUBSCRIBE_RATE_WINDOW_S = float(os.getenv("SUBSCRIBE_RATE_WINDOW_S", "60"))
ETA_RATE_LIMIT        = int(os.getenv("ETA_RATE_LIMIT", "60"))
ETA_RATE_WINDOW_S     = float(os.getenv("ETA_RATE_WINDOW_S", "60"))
VEHICLES_RATE_LIMIT   = int(os.getenv("VEHICLES_RATE_LIMIT", "30"))
VEHICLES_RATE_WINDOW_S = float(os.getenv("VEHICLES_RATE_WINDOW_S", "60"))

RUN_ID_MAX_LENGTH = 200
RUN_ID_DISALLOWED_RE = re.compile(r"[^A-Za-z0-9_-]")
# A forecast matches a run when its rounded time is this close to the run's
RUN_TIME_TOLERANCE_S = 30


# ---------------------------
# App context
# ---------------------------
@dataclass
class AppContext:
    """Process-lifetime state, built once and shared by every handler."""
    stops: StopDirectory
    tracker: ArrivalTracker
    registry: SubscriptionRegistry
    transit: TransitClient
    vapid: VapidConfig
    sender: PushSender
    dispatcher: NotificationDispatcher
    eta_cache: KeyedTTLCache
    stop_cache: KeyedTTLCache
    import_limiter: FixedWindowRateLimiter
    subscribe_limiter: FixedWindowRateLimiter
    eta_limiter: FixedWindowRateLimiter
    vehicles_limiter: FixedWindowRateLimiter

    @classmethod
    def build(
        cls,
        *,
        stops: StopDirectory,
        transit: TransitClient,
        vapid: VapidConfig,
        tracker: Optional[ArrivalTracker] = None,
        registry: Optional[SubscriptionRegistry] = None,
        sender: Optional[PushSender] = None,
    ) -> "AppContext":
        registry = registry or SubscriptionRegistry()
        sender = sender or PushSender(
            vapid, RetryPolicy(max_attempts=PUSH_MAX_ATTEMPTS, backoff_s=PUSH_RETRY_BACKOFF_S)
        )
        dispatcher = NotificationDispatcher(
            registry,
            transit.fetch_route_snapshots,
            sender,
            interval_s=PUSH_POLL_INTERVAL_S,
            fetch_timeout_s=UPSTREAM_TIMEOUT_S,
            stop_name_lookup=stops.name_of,
        )
        return cls(
            stops=stops,
            tracker=tracker or ArrivalTracker(display_tz=DISPLAY_TZ),
            registry=registry,
            transit=transit,
            vapid=vapid,
            sender=sender,
            dispatcher=dispatcher,
            eta_cache=KeyedTTLCache(ETA_CACHE_TTL_S),
            stop_cache=KeyedTTLCache(ETA_CACHE_TTL_S),
            import_limiter=FixedWindowRateLimiter("import", IMPORT_RATE_LIMIT, IMPORT_RATE_WINDOW_S),
            subscribe_limiter=FixedWindowRateLimiter("subscribe", SUBSCRIBE_RATE_LIMIT, SUBSCRIBE_RATE_WINDOW_S),
            eta_limiter=FixedWindowRateLimiter("eta", ETA_RATE_LIMIT, ETA_RATE_WINDOW_S),
            vehicles_limiter=FixedWindowRateLimiter("vehicles", VEHICLES_RATE_LIMIT, VEHICLES_RATE_WINDOW_S),
        )

    @classmethod
    def from_env(cls) -> "AppContext":
        return cls.build(
            stops=StopDirectory(STOPS_PATH),
            transit=TransitClient.from_env(),
            vapid=VapidConfig.from_values(VAPID_PUBLIC_KEY, VAPID_PRIVATE_KEY, VAPID_SUBJECT),
        )

    async def fetch_tram_stop(self, stop_id: str) -> Dict[str, Any]:
        """Upstream stop payload, shared between ETA and vehicle lookups for a few seconds."""
        entry = self.stop_cache.get(stop_id)
        if entry is not None:
            return entry.value
        data = await self.transit.fetch_tram_stop(stop_id)
        self.stop_cache.set(stop_id, data)
        return data


# ---------------------------
# App & state
# ---------------------------
app = FastAPI(title="Tram Radar")
app.state.ctx = AppContext.from_env()


def _ctx(request: Request) -> AppContext:
    return request.app.state.ctx


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _read_json(request: Request) -> Dict[str, Any]:
    try:
        data = await request.json()
    except ValueError as exc:
        raise ValidationError("Invalid JSON body") from exc
    if not isinstance(data, dict):
        raise ValidationError("JSON object expected")
    return data


@app.exception_handler(TransitRadarError)
async def transit_error_handler(request: Request, exc: TransitRadarError):
    headers = None
    if isinstance(exc, RateLimitError):
        headers = {"Retry-After": str(exc.retry_after)}
        print(f"[api] rate limited {request.method} {request.url.path} ip={_client_ip(request)}")
    return JSONResponse(
        {"success": False, "error": exc.message},
        status_code=exc.status_code,
        headers=headers,
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    print(f"[api] unhandled error on {request.method} {request.url.path}:")
    print("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    return JSONResponse({"success": False, "error": "Internal server error"}, status_code=500)


@app.on_event("startup")
async def start_dispatcher() -> None:
    ctx: AppContext = app.state.ctx
    if PUSH_DISPATCHER_ENABLED:
        ctx.dispatcher.start()
    else:
        print("[dispatcher] disabled by PUSH_DISPATCHER_ENABLED")


@app.on_event("shutdown")
async def stop_dispatcher() -> None:
    ctx: AppContext = app.state.ctx
    await ctx.dispatcher.stop()
    await ctx.transit.aclose()


# ---------------------------
# REST: Stops
# ---------------------------
@app.get("/api/stops")
async def list_stops(
    request: Request,
    prefix: Optional[str] = Query(None),
    page: Optional[str] = Query(None),
    page_size: Optional[str] = Query(None),
):
    ctx = _ctx(request)
    if prefix is None and page is None and page_size is None:
        return {"stops": [stop.to_dict() for stop in ctx.stops.all()]}
    page_num, size = validate_paging(page, page_size)
    stops, meta = ctx.stops.search(prefix, page_num, size)
    return {"stops": [stop.to_dict() for stop in stops], "meta": meta}


@app.post("/api/stops")
async def add_stop(request: Request):
    ctx = _ctx(request)
    ctx.import_limiter.enforce(_client_ip(request))
    data = await _read_json(request)
    stop = ctx.stops.add(data.get("uuid"), data.get("name"), data.get("direction"))
    return {"success": True, "stop": stop.to_dict()}


@app.post("/api/stops/import")
async def import_stop(request: Request):
    ctx = _ctx(request)
    ctx.import_limiter.enforce(_client_ip(request))
    data = await _read_json(request)
    uuid = parse_import_url(data.get("url"))
    existing = ctx.stops.get(uuid)
    if existing is not None:
        return JSONResponse(
            {"success": False, "error": "This stop has already been added", "uuid": uuid},
            status_code=409,
        )
    upstream = await ctx.transit.fetch_stop(uuid)
    name = upstream.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Could not get the stop name from upstream")
    stop = ctx.stops.add(uuid, name, direction_from_upstream(upstream))
    return {"success": True, "stop": stop.to_dict()}


@app.get("/api/stop/{stop_id}")
async def proxy_stop(stop_id: str, request: Request):
    """Upstream stop payload, trams only."""
    ctx = _ctx(request)
    try:
        return await ctx.transit.fetch_tram_stop(stop_id)
    except UpstreamUnavailableError as exc:
        if exc.upstream_status == STATUS_GEO_BLOCKED:
            return JSONResponse(
                {"success": False, "error": exc.message, "status": STATUS_GEO_BLOCKED},
                status_code=STATUS_GEO_BLOCKED,
            )
        raise


@app.get("/api/stops/{stop_id}/vehicles")
async def list_vehicles(
    stop_id: str,
    request: Request,
    page: Optional[str] = Query(None),
    page_size: Optional[str] = Query(None),
    include_positions: Optional[str] = Query(None),
):
    ctx = _ctx(request)
    ctx.vehicles_limiter.enforce(_client_ip(request))
    page_num, size = validate_paging(page, page_size)
    if not ctx.stops.exists(stop_id):
        raise NotFoundError("Stop not found")
    with_positions = (include_positions or "true").strip().lower() not in ("false", "0", "no")

    data = await ctx.fetch_tram_stop(stop_id)
    routes = _routes_from_payload(data)
    now = datetime.now(timezone.utc)
    vehicles: List[Dict[str, Any]] = []
    for route in routes:
        for forecast in route.forecasts:
            vehicles.append(_vehicle_item(stop_id, route.number, forecast, now, with_positions))
    vehicles.sort(key=lambda v: v["eta_seconds"])

    items, meta = paginate(vehicles, page_num, size)
    meta["total_items"] = meta.pop("total")
    return {"data": items, "meta": meta}


def _routes_from_payload(data: Dict[str, Any]) -> List[RouteSnapshot]:
    route_path = data.get("routePath")
    if route_path is None:
        return []
    try:
        return tram_routes(parse_route_path(route_path))
    except ValidationError as exc:
        raise UpstreamUnavailableError("Upstream transit API returned an unexpected payload") from exc


def _vehicle_item(
    stop_id: str,
    route_number: str,
    forecast: ForecastEntry,
    now: datetime,
    with_positions: bool,
) -> Dict[str, Any]:
    eta_seconds = round_half_up(forecast.time)
    if eta_seconds < 60:
        status = "arriving"
        eta_human = "<1 мин"
    else:
        status = "en_route" if forecast.by_telemetry else "scheduled"
        eta_human = f"{round_half_up(eta_seconds / 60)} мин"
    item: Dict[str, Any] = {
        "vehicle_id": forecast.vehicle_id,
        "run_id": f"{stop_id}_{route_number}_{forecast.vehicle_id or ''}_{eta_seconds}",
        "route_number": route_number,
        "eta_seconds": eta_seconds,
        "eta_human": eta_human,
        "status": status,
        "by_telemetry": forecast.by_telemetry,
        "last_update": isoformat_ms(now),
    }
    if with_positions:
        item["lat"] = forecast.lat
        item["lon"] = forecast.lon
    return item


# ---------------------------
# REST: Tracking & history
# ---------------------------
@app.post("/api/track/{stop_id}")
async def track_stop(stop_id: str, request: Request):
    ctx = _ctx(request)
    data = await _read_json(request)
    route_path = data.get("routePath")
    if not stop_id.strip() or route_path is None:
        raise ValidationError("stopId and routePath are required")
    routes = parse_route_path(route_path)
    ctx.tracker.ingest(stop_id, routes)
    return {"success": True}


@app.get("/api/history/{stop_id}")
async def stop_history(stop_id: str, request: Request):
    return _ctx(request).tracker.history(stop_id)


# ---------------------------
# REST: ETA per run
# ---------------------------
def sanitize_run_id(raw: Any) -> Optional[str]:
    """Strip characters outside [A-Za-z0-9_-]; None if empty or too long."""
    if not isinstance(raw, str):
        return None
    cleaned = RUN_ID_DISALLOWED_RE.sub("", raw)
    if not cleaned or len(cleaned) > RUN_ID_MAX_LENGTH:
        return None
    return cleaned


def find_run_forecast(
    routes: List[RouteSnapshot],
    route_number: str,
    vehicle_id: str,
    time_str: str,
) -> Optional[ForecastEntry]:
    """Forecast addressed by a run id, falling back to the soonest one on the route."""
    try:
        wanted_time: Optional[int] = int(time_str)
    except ValueError:
        wanted_time = None
    candidates = [r for r in routes if r.number == route_number and r.forecasts]
    if wanted_time is not None:
        for route in candidates:
            for forecast in route.forecasts:
                same_vehicle = vehicle_id == "" or (forecast.vehicle_id or "") == vehicle_id
                if same_vehicle and abs(round_half_up(forecast.time) - wanted_time) < RUN_TIME_TOLERANCE_S:
                    return forecast
    for route in candidates:
        return min(route.forecasts, key=lambda f: f.time)
    return None


def _cache_headers(expires_at: float, now: float) -> Dict[str, str]:
    return {
        "Cache-Control": f"public, max-age={max(math.ceil(expires_at - now), 0)}",
        "Expires": formatdate(expires_at, usegmt=True),
    }


@app.get("/api/runs/{run_id}/eta")
async def run_eta(run_id: str, request: Request):
    ctx = _ctx(request)
    ctx.eta_limiter.enforce(_client_ip(request))
    clean_id = sanitize_run_id(run_id)
    if clean_id is None:
        raise ValidationError("Invalid runId")

    cached = ctx.eta_cache.get(clean_id)
    if cached is not None:
        return JSONResponse(
            {"run_id": clean_id, **cached.value},
            headers=_cache_headers(cached.expires_at, ctx.eta_cache.now()),
        )

    parts = clean_id.split("_")
    if len(parts) < 3:
        raise NotFoundError("Run not found")
    stop_id, route_number, rest = parts[0], parts[1], parts[2:]
    vehicle_id = "_".join(rest[:-1])
    time_str = rest[-1]

    if not ctx.stops.exists(stop_id):
        raise NotFoundError("Stop not found")
    try:
        data = await ctx.fetch_tram_stop(stop_id)
    except UpstreamUnavailableError as exc:
        raise UpstreamUnavailableError("Could not fetch tram data") from exc

    forecast = find_run_forecast(_routes_from_payload(data), route_number, vehicle_id, time_str)
    if forecast is None:
        raise NotFoundError("Run not found or data is stale")

    estimate = calculate_eta(forecast).to_dict()
    entry = ctx.eta_cache.set(clean_id, estimate)
    return JSONResponse(
        {"run_id": clean_id, **estimate},
        headers=_cache_headers(entry.expires_at, ctx.eta_cache.now()),
    )


# ---------------------------
# Push Notifications API
# ---------------------------
@app.get("/api/push/vapid-public-key")
async def get_vapid_public_key(request: Request):
    """Return the VAPID public key for push subscription."""
    return {"publicKey": _ctx(request).vapid.public_key}


@app.post("/api/stops/{stop_id}/subscribe")
async def subscribe_stop(stop_id: str, request: Request):
    ctx = _ctx(request)
    ctx.subscribe_limiter.enforce(_client_ip(request))
    data = await _read_json(request)
    is_new = ctx.registry.subscribe(
        stop_id,
        data.get("subscription"),
        data.get("notify_minutes"),
        data.get("tram_numbers"),
    )
    message = "Subscribed to tram notifications" if is_new else "Subscription updated"
    print(f"[push] stop={stop_id} {'new' if is_new else 'updated'} subscription, total={ctx.registry.count(stop_id)}")
    return {"success": True, "message": message}


@app.post("/api/stops/{stop_id}/unsubscribe")
async def unsubscribe_stop(stop_id: str, request: Request):
    ctx = _ctx(request)
    data = await _read_json(request)
    endpoint = data.get("endpoint")
    if not isinstance(endpoint, str) or not endpoint.strip():
        raise ValidationError("Missing endpoint")
    removed = ctx.registry.unsubscribe(stop_id, endpoint.strip())
    message = "Unsubscribed" if removed else "No subscription found, nothing to remove"
    return {"success": True, "message": message}


@app.get("/api/push/status")
async def push_status(request: Request):
    """Return push notification status (for diagnostics)."""
    ctx = _ctx(request)
    return {
        "configured": True,
        "using_development_keys": ctx.vapid.using_development_keys,
        "subscription_count": ctx.registry.count(),
        "subscribed_stops": len(ctx.registry.stop_ids()),
        "tracked_stops": len(ctx.tracker.tracked_stop_ids()),
        "dispatcher_running": ctx.dispatcher.running,
    }
