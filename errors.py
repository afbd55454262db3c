"""Error taxonomy shared by the tracking, subscription and push components.

Each error carries the HTTP status the API layer renders it with, so handlers
can simply raise and let the exception handlers in ``app.py`` do the rest.
"""

from __future__ import annotations

from typing import Optional


class TransitRadarError(Exception):
    """Base class for all errors raised by the service."""

    status_code = 500

    def __init__(self, message: str = "Internal server error") -> None:
        self.message = message
        super().__init__(message)


class ValidationError(TransitRadarError):
    """Malformed client input. Never retried."""

    status_code = 400


class NotFoundError(TransitRadarError):
    """Unknown stop or run."""

    status_code = 404


class ConflictError(TransitRadarError):
    """Attempt to add a stop that is already in the directory."""

    status_code = 409


class RateLimitError(TransitRadarError):
    status_code = 429

    def __init__(self, message: str = "Too many requests, try again later", retry_after: int = 60) -> None:
        self.retry_after = max(int(retry_after), 1)
        super().__init__(message)


class CapacityError(TransitRadarError):
    """A stop already holds the maximum number of subscriptions."""

    status_code = 503


class UpstreamUnavailableError(TransitRadarError):
    """The transit API could not be reached, timed out or answered with an error."""

    status_code = 503

    def __init__(self, message: str = "Upstream transit API unavailable", upstream_status: Optional[int] = None) -> None:
        self.upstream_status = upstream_status
        super().__init__(message)


class PushDeliveryError(TransitRadarError):
    """A single push attempt failed.

    ``retryable`` marks transient failures (5xx, 429, network). ``terminal``
    marks a dead endpoint (404/410) whose subscription must be dropped.
    """

    def __init__(self, message: str, status: Optional[int] = None, retryable: bool = False) -> None:
        self.status = status
        self.retryable = retryable
        super().__init__(message)

    @property
    def terminal(self) -> bool:
        return self.status in (404, 410)


__all__ = [
    "TransitRadarError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitError",
    "CapacityError",
    "UpstreamUnavailableError",
    "PushDeliveryError",
]
