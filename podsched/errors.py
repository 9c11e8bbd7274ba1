"""Error taxonomy for cluster API failures."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError as TransportError


class ErrorKind(Enum):
    """What went wrong, independent of the transport."""
    CONFLICT = "conflict"      # 409: already bound / already exists
    NOT_FOUND = "not_found"    # 404: pod gone
    GONE = "gone"              # 410: watch cursor compacted away
    TRANSPORT = "transport"    # connection reset, timeout, DNS
    SERVER = "server"          # 5xx, 429
    CLIENT = "client"          # other 4xx: malformed, forbidden


class ClusterAPIError(Exception):
    """A cluster API failure surfaced as a (kind, retriable) pair."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        status: Optional[int] = None,
        retriable: bool = False,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.retriable = retriable

    def __str__(self) -> str:
        base = super().__str__()
        if self.status:
            return f"{base} (kind={self.kind.value}, status={self.status})"
        return f"{base} (kind={self.kind.value})"


class CursorExpired(ClusterAPIError):
    """The watch resource version is too old to resume from."""

    def __init__(self, message: str = "watch cursor expired") -> None:
        super().__init__(message, ErrorKind.GONE, status=410, retriable=False)


class ConfigError(ValueError):
    """Invalid scheduler configuration."""


def kind_for_status(status: Optional[int]) -> ErrorKind:
    if not status:
        # ApiException without an HTTP status wraps a transport failure
        return ErrorKind.TRANSPORT
    if status == 409:
        return ErrorKind.CONFLICT
    if status == 404:
        return ErrorKind.NOT_FOUND
    if status == 410:
        return ErrorKind.GONE
    if status == 429 or status >= 500:
        return ErrorKind.SERVER
    return ErrorKind.CLIENT


def classify_exception(exc: BaseException, context: str = "") -> ClusterAPIError:
    """
    Translate a kubernetes client / transport exception into a ClusterAPIError.

    Args:
        exc: Exception raised by the kubernetes client
        context: Short description of the call, used in the message

    Returns:
        ClusterAPIError with kind and retriable flag set
    """
    if isinstance(exc, ClusterAPIError):
        return exc

    prefix = f"{context}: " if context else ""

    if isinstance(exc, ApiException):
        status = exc.status or None
        kind = kind_for_status(status)
        if kind == ErrorKind.GONE:
            return CursorExpired(f"{prefix}{exc.reason}")
        retriable = kind in (ErrorKind.TRANSPORT, ErrorKind.SERVER)
        return ClusterAPIError(f"{prefix}{exc.reason}", kind, status=status, retriable=retriable)

    if isinstance(exc, (TransportError, OSError)):
        return ClusterAPIError(
            f"{prefix}{type(exc).__name__}: {exc}",
            ErrorKind.TRANSPORT,
            retriable=True,
        )

    return ClusterAPIError(f"{prefix}{type(exc).__name__}: {exc}", ErrorKind.CLIENT, retriable=False)
