"""Async client for the moscowtransport.app stop forecast API."""
from __future__ import annotations

import asyncio
import os
from typing import Any, Dict, List, Optional

import httpx

from errors import UpstreamUnavailableError, ValidationError
from forecast_models import RouteSnapshot, parse_route_path, tram_routes


DEFAULT_BASE_URL = "https://moscowtransport.app/api"
DEFAULT_TIMEOUT_S = 15.0
USER_AGENT = "Mozilla/5.0 (X11; Fedora; Linux x86_64; rv:79.0) Gecko/20100101 Firefox/79.0"

# Upstream answers 477 to requests from outside Russia
STATUS_GEO_BLOCKED = 477


class TransitClient:
    """Minimal client fetching live stop forecasts.

    One ``httpx.AsyncClient`` is created lazily and reused for the process
    lifetime. Every failure (network, timeout, non-2xx, bad JSON) is raised
    as ``UpstreamUnavailableError``.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_env(cls) -> "TransitClient":
        base_url = (os.getenv("MOSCOW_TRANSPORT_BASE") or DEFAULT_BASE_URL).strip()
        timeout_s = float(os.getenv("UPSTREAM_TIMEOUT_S", str(DEFAULT_TIMEOUT_S)))
        return cls(base_url=base_url, timeout_s=timeout_s)

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout_s,
                headers={"User-Agent": USER_AGENT},
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def stop_url(self, stop_id: str) -> str:
        return f"{self._base_url}/stop_v2/{stop_id}"

    async def fetch_stop(self, stop_id: str) -> Dict[str, Any]:
        """Raw stop payload (name, direction, routePath, ...)."""
        client = await self._ensure_client()
        url = self.stop_url(stop_id)
        try:
            # The overall deadline also covers slow bodies, which httpx timeouts do not
            resp = await asyncio.wait_for(client.get(url), timeout=self._timeout_s)
        except asyncio.TimeoutError as exc:
            print(f"[upstream] stop={stop_id} timed out after {self._timeout_s}s")
            raise UpstreamUnavailableError("Upstream transit API timed out") from exc
        except httpx.HTTPError as exc:
            print(f"[upstream] stop={stop_id} request failed: {exc}")
            raise UpstreamUnavailableError("Upstream transit API request failed") from exc

        if resp.status_code == STATUS_GEO_BLOCKED:
            raise UpstreamUnavailableError(
                "Upstream API unavailable: a Russian IP address is required, disable any VPN",
                upstream_status=STATUS_GEO_BLOCKED,
            )
        if resp.status_code >= 400:
            print(f"[upstream] stop={stop_id} returned {resp.status_code}")
            raise UpstreamUnavailableError(
                f"Upstream transit API error ({resp.status_code})",
                upstream_status=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise UpstreamUnavailableError("Upstream transit API returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise UpstreamUnavailableError("Upstream transit API returned an unexpected payload")
        return data

    async def fetch_tram_stop(self, stop_id: str) -> Dict[str, Any]:
        """Stop payload with ``routePath`` narrowed to tram routes."""
        data = await self.fetch_stop(stop_id)
        route_path = data.get("routePath")
        if isinstance(route_path, list):
            data["routePath"] = [
                route for route in route_path
                if isinstance(route, dict) and route.get("type") == "tram"
            ]
        return data

    async def fetch_route_snapshots(self, stop_id: str) -> List[RouteSnapshot]:
        """Parsed tram forecasts for ``stop_id``."""
        data = await self.fetch_tram_stop(stop_id)
        route_path = data.get("routePath")
        if route_path is None:
            return []
        try:
            return tram_routes(parse_route_path(route_path))
        except ValidationError as exc:
            raise UpstreamUnavailableError("Upstream transit API returned an unexpected payload") from exc


__all__ = ["TransitClient", "STATUS_GEO_BLOCKED", "USER_AGENT"]
