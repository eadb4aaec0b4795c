"""Error types raised by the gateway.

Every error carries a human-readable message and the HTTP status the routing
layer answers with.
"""
from __future__ import annotations

from typing import Optional


class GatewayError(Exception):
    """Base class for all gateway failures."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TransportError(GatewayError):
    """The inference backend could not be reached (connect, DNS, timeout)."""

    status_code = 502


class BackendStatusError(GatewayError):
    """The inference backend answered with a non-success status code."""

    status_code = 502

    def __init__(self, backend_status: int, detail: Optional[str] = None) -> None:
        message = f"Backend returned HTTP {backend_status}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.backend_status = backend_status
        self.detail = detail


class DecodeError(GatewayError):
    """A non-streaming backend response was not valid JSON."""

    status_code = 502


class NotFoundError(GatewayError):
    status_code = 404


class ValidationError(GatewayError):
    status_code = 400
