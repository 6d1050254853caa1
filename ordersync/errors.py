"""Exception hierarchy used across the synchronisation engine."""
from __future__ import annotations

from typing import Optional

VERSION_CONFLICT_CODE = "ERR_VERSION_CONFLICT"


class SyncError(RuntimeError):
    """Base error for every failure raised by OrderSync."""


class ValidationError(SyncError):
    """Raised before any network call when a mutation is incomplete."""

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class GatewayError(SyncError):
    """Base error for failures reported while talking to the remote store."""

    def __init__(self, message: str, *, error_code: Optional[str] = None) -> None:
        super().__init__(message)
        self.error_code = error_code


class NetworkError(GatewayError):
    """Raised when the request did not produce a usable response."""


class ServerError(GatewayError):
    """Raised when the remote store answered ``success: false``."""


class ConflictError(GatewayError):
    """Raised when the remote store rejected a write with a version conflict."""

    def __init__(self, message: str = "Version conflict") -> None:
        super().__init__(message, error_code=VERSION_CONFLICT_CODE)


__all__ = [
    "ConflictError",
    "GatewayError",
    "NetworkError",
    "ServerError",
    "SyncError",
    "ValidationError",
    "VERSION_CONFLICT_CODE",
]
