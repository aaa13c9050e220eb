"""Error taxonomy shared by the subscription and mutation paths.

Store failures arrive as ``StoreError`` with a store-specific code.  They are
classified into a small closed set of kinds so callers decide on recovery
(clear data, keep data, retry, notify) without parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, TypeAlias

from bugsync.types.api import ErrorDict

ErrorKind: TypeAlias = Literal[
    "access_denied",
    "transient",
    "validation",
    "busy",
    "not_configured",
    "not_found",
    "unknown",
]

_ACCESS_DENIED_CODES = frozenset({"permission-denied", "unauthenticated", "forbidden", "unauthorized"})
_TRANSIENT_CODES = frozenset(
    {
        "unavailable",
        "deadline-exceeded",
        "network-request-failed",
        "resource-exhausted",
        "aborted",
        "cancelled",
        "internal",
        "timeout",
    }
)
_VALIDATION_CODES = frozenset({"invalid-argument", "failed-precondition", "out-of-range", "already-exists"})
_NOT_FOUND_CODES = frozenset({"not-found"})

_MESSAGES: dict[str, str] = {
    "access_denied": "You don't have permission to perform this action.",
    "transient": "Service temporarily unavailable. Please try again.",
    "validation": "Invalid data provided. Please check your input.",
    "busy": "An update is already in progress for this item.",
    "not_configured": "Workspace is not configured. Select a workspace to continue.",
    "not_found": "The requested item was not found.",
    "unknown": "Something went wrong. Please try again.",
}

_CODE_MESSAGES: dict[str, str] = {
    "resource-exhausted": "Account limit reached. Please try again later.",
    "deadline-exceeded": "Request timed out. Please try again.",
    "network-request-failed": "Network error. Please check your connection and try again.",
    "timeout": "Request timed out. Please try again.",
    "already-exists": "This item already exists.",
}


class StoreError(Exception):
    """Failure reported by a DocumentStore operation or live feed."""

    def __init__(self, code: str, message: str = "") -> None:
        self.code = code
        self.message = message or code
        super().__init__(f"{code}: {self.message}")


def classify_store_code(code: str) -> ErrorKind:
    """Map a store error code to an ErrorKind.

    Codes are compared case-insensitively and may carry a service prefix
    (``firestore/permission-denied``).
    """
    normalized = code.strip().lower().rsplit("/", 1)[-1].replace("_", "-")
    if normalized in _ACCESS_DENIED_CODES:
        return "access_denied"
    if normalized in _TRANSIENT_CODES:
        return "transient"
    if normalized in _VALIDATION_CODES:
        return "validation"
    if normalized in _NOT_FOUND_CODES:
        return "not_found"
    return "unknown"


def classify_exception(exc: BaseException) -> ErrorKind:
    if isinstance(exc, StoreError):
        return classify_store_code(exc.code)
    if isinstance(exc, TimeoutError | ConnectionError):
        return "transient"
    if isinstance(exc, PermissionError):
        return "access_denied"
    return "unknown"


def describe_error(kind: ErrorKind, code: str | None = None) -> str:
    """User-facing text for an error kind, refined by store code when known."""
    if code is not None:
        normalized = code.strip().lower().rsplit("/", 1)[-1]
        if normalized in _CODE_MESSAGES:
            return _CODE_MESSAGES[normalized]
    return _MESSAGES[kind]


@dataclass(frozen=True)
class TrackerError:
    """A recorded, non-raised error surfaced as UI state."""

    kind: ErrorKind
    message: str
    collection: str | None = None

    @property
    def retryable(self) -> bool:
        return self.kind == "transient"

    def to_dict(self) -> ErrorDict:
        return {
            "kind": self.kind,
            "message": self.message,
            "collection": self.collection,
            "retryable": self.retryable,
        }
