"""Sync error hierarchy and failure classification.

Every failure caught at a flush/drain boundary is mapped onto one of these
types. Only TransientNetworkError loops back into a retry path.
"""

import asyncio
from typing import Any, Dict, List, Optional


class SyncError(Exception):
    """Base exception for all sync engine errors."""

    retryable = False
    error_type = "sync_error"


class TransientNetworkError(SyncError):
    """Network or availability failure; always retried within a budget."""

    retryable = True
    error_type = "transient_network"


class ValidationError(SyncError):
    """Remote store rejected the payload. Never retried."""

    error_type = "validation"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.details = details or {}
        super().__init__(message)


class ConflictError(SyncError):
    """Write collided with existing remote state. Never retried as-is."""

    error_type = "conflict"


class ConfigurationError(SyncError):
    """Unknown batch/queue/mutation kind or malformed input."""

    error_type = "configuration"


class PartialBatchError(SyncError):
    """Some payloads of a grouped write failed; the rest were accepted."""

    def __init__(self, failed: List[Any], cause: Exception):
        self.failed = failed
        self.cause = cause
        super().__init__(f"{len(failed)} payload(s) failed: {cause}")

    @property
    def retryable(self) -> bool:
        return classify_error(self.cause).retryable

    @property
    def error_type(self) -> str:
        return classify_error(self.cause).error_type


# Substrings that mark an untyped exception as a network problem
_NETWORK_MARKERS = ("fetch", "network", "timeout", "timed out", "connection", "connect")

# PostgREST codes for temporary unavailability and rate limiting
TEMPORARY_ERROR_CODES = frozenset(["PGRST301", "PGRST302", "429", "503", "504"])


def is_network_error(error: BaseException) -> bool:
    """Check if an arbitrary exception looks like a transport failure."""
    if isinstance(error, TransientNetworkError):
        return True
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    if getattr(error, "code", None) == "NETWORK_ERROR":
        return True
    message = str(error).lower()
    return any(marker in message for marker in _NETWORK_MARKERS)


def is_temporary_error(error: BaseException) -> bool:
    """Check if an exception carries a temporary remote error code."""
    code = str(getattr(error, "code", "") or "")
    return any(temporary in code for temporary in TEMPORARY_ERROR_CODES)


def classify_error(error: BaseException) -> SyncError:
    """Map any exception onto the sync error taxonomy.

    Already-classified errors are returned unchanged. Unknown exceptions are
    treated as transient so they stay inside the bounded retry budget.
    """
    if isinstance(error, PartialBatchError):
        return classify_error(error.cause)
    if isinstance(error, SyncError):
        return error
    if is_network_error(error) or is_temporary_error(error):
        classified = TransientNetworkError(str(error) or type(error).__name__)
    else:
        classified = TransientNetworkError(f"{type(error).__name__}: {error}")
    classified.__cause__ = error
    return classified
