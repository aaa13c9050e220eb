"""Shared helpers and constants for dashboard route modules."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Mapping

    from fastapi.responses import JSONResponse
    from starlette.requests import Request

from bugsync.errors import ErrorKind
from bugsync.mutations import MutationOutcome

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_KIND_STATUS: dict[str, tuple[int, str]] = {
    "validation": (400, "VALIDATION_ERROR"),
    "access_denied": (403, "ACCESS_DENIED"),
    "not_found": (404, "NOT_FOUND"),
    "busy": (409, "BUSY"),
    "not_configured": (412, "NOT_CONFIGURED"),
    "transient": (503, "UNAVAILABLE"),
    "unknown": (500, "INTERNAL_ERROR"),
}
_BOOL_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_BOOL_FALSE_VALUES = frozenset({"0", "false", "no", "off"})

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _error_response(
    message: str,
    code: str,
    status_code: int,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """Return a structured error response and log the error."""
    from fastapi.responses import JSONResponse

    logger.warning("API error [%s] %s: %s", status_code, code, message)
    return JSONResponse(
        {"error": {"message": message, "code": code, "details": details or {}}},
        status_code=status_code,
    )


def _kind_response(kind: ErrorKind | str, message: str, details: dict[str, Any] | None = None) -> JSONResponse:
    """Error response whose status code follows the error kind."""
    status_code, code = _KIND_STATUS.get(kind, _KIND_STATUS["unknown"])
    return _error_response(message, code, status_code, details)


def _outcome_response(outcome: MutationOutcome, *, success_status: int = 200) -> JSONResponse:
    from fastapi.responses import JSONResponse

    if outcome.ok:
        return JSONResponse(outcome.to_dict(), status_code=success_status)
    return _kind_response(outcome.kind or "unknown", outcome.message, {"entity_id": outcome.entity_id})


async def _parse_json_body(request: Request) -> dict[str, Any] | JSONResponse:
    """Parse and validate a JSON object body, returning 400 on failure."""
    import json

    try:
        body = await request.json()
    except (json.JSONDecodeError, ValueError, UnicodeDecodeError):
        return _error_response("Invalid JSON body", "VALIDATION_ERROR", 400)
    if not isinstance(body, dict):
        return _error_response("Request body must be a JSON object", "VALIDATION_ERROR", 400)
    return body


def _parse_bool_value(raw: str, name: str) -> bool | JSONResponse:
    value = raw.strip().lower()
    if value in _BOOL_TRUE_VALUES:
        return True
    if value in _BOOL_FALSE_VALUES:
        return False
    return _error_response(
        f'Invalid value for {name}: "{raw}". Must be one of true/false, 1/0, yes/no, on/off.',
        "VALIDATION_ERROR",
        400,
        {"param": name, "value": raw},
    )


def _get_bool_param(params: Mapping[str, str], name: str, default: bool) -> bool | JSONResponse:
    """Extract a boolean query param, returning *default* when absent."""
    raw = params.get(name)
    if raw is None:
        return default
    return _parse_bool_value(raw, name)


def _parse_id_list(body: Mapping[str, Any], key: str = "bug_ids") -> list[str] | JSONResponse:
    ids = body.get(key)
    if not isinstance(ids, list):
        return _error_response(f"{key} must be a JSON array", "VALIDATION_ERROR", 400)
    if not all(isinstance(i, str) for i in ids):
        return _error_response(f"All {key} must be strings", "VALIDATION_ERROR", 400)
    return ids
