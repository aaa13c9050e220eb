"""Bug state, filter, mutation and batch route handlers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi.responses import JSONResponse
from starlette.requests import Request

if TYPE_CHECKING:
    from fastapi import APIRouter

from bugsync.dashboard_routes.common import (
    _error_response,
    _kind_response,
    _outcome_response,
    _parse_id_list,
    _parse_json_body,
)
from bugsync.filters import normalize_filter_spec
from bugsync.mutations import VALID_BULK_ACTIONS
from bugsync.tracker import BugTracker

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Router factory
# ---------------------------------------------------------------------------


def create_router() -> APIRouter:
    """Build the APIRouter for bug state, filter, and mutation endpoints."""
    from fastapi import APIRouter, Depends

    from bugsync.dashboard import _get_tracker

    router = APIRouter()

    @router.get("/state")
    async def api_state(tracker: BugTracker = Depends(_get_tracker)) -> JSONResponse:
        return JSONResponse(tracker.state().to_dict())

    @router.get("/bugs")
    async def api_bugs(request: Request, tracker: BugTracker = Depends(_get_tracker)) -> JSONResponse:
        """Filtered bugs.  Query params narrow the current filter spec for this request only."""
        params = dict(request.query_params)
        if not params:
            return JSONResponse([b.to_dict() for b in tracker.filtered()])
        try:
            spec = normalize_filter_spec({**tracker.filter_spec, **params})
        except ValueError as e:
            return _error_response(str(e), "VALIDATION_ERROR", 400)
        return JSONResponse([b.to_dict() for b in tracker.filtered(spec)])

    @router.put("/filters")
    async def api_set_filters(request: Request, tracker: BugTracker = Depends(_get_tracker)) -> JSONResponse:
        """Replace the filter spec."""
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        try:
            spec = tracker.set_filter_spec(body)
        except ValueError as e:
            return _error_response(str(e), "VALIDATION_ERROR", 400)
        return JSONResponse({"filter_spec": tracker.state().to_dict()["filter_spec"], "active": len(spec)})

    @router.patch("/filters")
    async def api_update_filters(request: Request, tracker: BugTracker = Depends(_get_tracker)) -> JSONResponse:
        """Merge changes into the filter spec; "all" clears a dimension."""
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        try:
            spec = tracker.update_filters(body)
        except ValueError as e:
            return _error_response(str(e), "VALIDATION_ERROR", 400)
        return JSONResponse({"filter_spec": tracker.state().to_dict()["filter_spec"], "active": len(spec)})

    @router.patch("/bug/{bug_id}")
    async def api_update_bug(
        bug_id: str, request: Request, tracker: BugTracker = Depends(_get_tracker)
    ) -> JSONResponse:
        """Update bug fields (status, severity, assignee, etc.)."""
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        outcome = await tracker.mutate_arbitrary(bug_id, body)
        return _outcome_response(outcome)

    @router.delete("/bug/{bug_id}")
    async def api_delete_bug(bug_id: str, tracker: BugTracker = Depends(_get_tracker)) -> JSONResponse:
        outcome = await tracker.delete_entity(bug_id)
        return _outcome_response(outcome)

    @router.post("/bugs", status_code=201)
    async def api_create_bug(request: Request, tracker: BugTracker = Depends(_get_tracker)) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        outcome = await tracker.create_entity(body)
        return _outcome_response(outcome, success_status=201)

    @router.post("/sprints", status_code=201)
    async def api_create_sprint(request: Request, tracker: BugTracker = Depends(_get_tracker)) -> JSONResponse:
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        outcome = await tracker.create_sprint(body)
        return _outcome_response(outcome, success_status=201)

    @router.post("/batch/{action}")
    async def api_batch(action: str, request: Request, tracker: BugTracker = Depends(_get_tracker)) -> JSONResponse:
        """Apply reopen/close/resolve/delete to a list of bugs."""
        if action not in VALID_BULK_ACTIONS:
            return _error_response(
                f'Unknown batch action "{action}". Must be one of: {", ".join(VALID_BULK_ACTIONS)}',
                "VALIDATION_ERROR",
                400,
            )
        body = await _parse_json_body(request)
        if isinstance(body, JSONResponse):
            return body
        ids = _parse_id_list(body)
        if isinstance(ids, JSONResponse):
            return ids
        result = await tracker.bulk_action(ids, action)
        return JSONResponse(result.to_dict())

    @router.post("/refetch")
    async def api_refetch(tracker: BugTracker = Depends(_get_tracker)) -> JSONResponse:
        """Re-read every collection once, outside the live feeds."""
        refreshed = await tracker.manual_refetch()
        if not refreshed:
            error = tracker.state().last_error
            if error is not None:
                return _kind_response(error.kind, error.message, {"collection": error.collection})
        return JSONResponse({"refreshed": refreshed, "snapshot_version": tracker.state().snapshot_version})

    @router.post("/retry")
    async def api_retry(tracker: BugTracker = Depends(_get_tracker)) -> JSONResponse:
        """Re-open the live feeds after a transient failure."""
        return JSONResponse({"restarted": tracker.retry(), "sync_state": tracker.state().sync_state})

    @router.get("/notifications")
    async def api_notifications(tracker: BugTracker = Depends(_get_tracker)) -> JSONResponse:
        return JSONResponse(tracker.notifications())

    @router.delete("/notifications")
    async def api_clear_notifications(tracker: BugTracker = Depends(_get_tracker)) -> JSONResponse:
        tracker.clear_notifications()
        return JSONResponse({"cleared": True})

    return router
