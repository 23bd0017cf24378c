"""Error taxonomy shared by the upload queue, permit cache and sync engine."""

from __future__ import annotations

import asyncio
from enum import Enum

import aiohttp


class ErrorKind(str, Enum):
    """Closed set of failure classes the retry scheduler switches on."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    SERVER = "server"
    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    QUOTA = "quota"
    INTEGRITY = "integrity"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in RETRYABLE_KINDS


RETRYABLE_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.SERVER})


class ReceiptSyncError(RuntimeError):
    """Base class for errors raised by the sync client."""


class TransportError(ReceiptSyncError):
    """Raised when a remote call fails after the request was attempted."""

    def __init__(self, message: str, *, kind: ErrorKind, status: int | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status


class PermitError(ReceiptSyncError):
    """Raised when a permit cannot be issued."""


class PermitRequestError(PermitError):
    """Raised when a permit request is rejected before signing."""

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


class SigningKeyError(PermitError):
    """Raised when no signing key material is available."""


class IntegrityError(ReceiptSyncError):
    """Raised for tampered or malformed data. Never retried."""


class PermitIntegrityError(IntegrityError):
    """Raised when a permit is malformed or its signature does not verify."""


class RecordIntegrityError(IntegrityError):
    """Raised when a domain record is missing required fields."""


class ConfigError(ReceiptSyncError):
    """Raised when client options fail validation."""


def classify_status(status: int) -> ErrorKind:
    """Map an HTTP status code to an :class:`ErrorKind`."""

    if status == 408:
        return ErrorKind.TIMEOUT
    if status in (402, 429):
        return ErrorKind.QUOTA
    if status in (401, 403):
        return ErrorKind.AUTHORIZATION
    if 400 <= status < 500:
        return ErrorKind.VALIDATION
    if status >= 500:
        return ErrorKind.SERVER
    return ErrorKind.UNKNOWN


def classify_error(err: BaseException) -> ErrorKind:
    """Return the :class:`ErrorKind` for a raw failure."""

    if isinstance(err, TransportError):
        return err.kind
    if isinstance(err, IntegrityError):
        return ErrorKind.INTEGRITY
    if isinstance(err, aiohttp.ClientResponseError):
        return classify_status(err.status)
    if isinstance(err, asyncio.TimeoutError | aiohttp.ServerTimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(err, aiohttp.ClientError | ConnectionError):
        return ErrorKind.NETWORK
    if isinstance(err, FileNotFoundError | IsADirectoryError | PermissionError):
        return ErrorKind.VALIDATION
    return ErrorKind.UNKNOWN


__all__ = [
    "ConfigError",
    "ErrorKind",
    "IntegrityError",
    "PermitError",
    "PermitIntegrityError",
    "PermitRequestError",
    "RETRYABLE_KINDS",
    "ReceiptSyncError",
    "RecordIntegrityError",
    "SigningKeyError",
    "TransportError",
    "classify_error",
    "classify_status",
]
