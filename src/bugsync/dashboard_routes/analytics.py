"""Metrics, grouping, and export route handlers."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi.responses import JSONResponse
from starlette.requests import Request

if TYPE_CHECKING:
    from fastapi import APIRouter

from bugsync.dashboard_routes.common import _error_response, _get_bool_param
from bugsync.filters import VALID_GROUP_BY
from bugsync.tracker import BugTracker
from bugsync.types.api import GroupDict


def create_router() -> APIRouter:
    """Build the APIRouter for derived-view endpoints."""
    from fastapi import APIRouter, Depends

    from bugsync.dashboard import _get_tracker

    router = APIRouter()

    @router.get("/metrics")
    async def api_metrics(request: Request, tracker: BugTracker = Depends(_get_tracker)) -> JSONResponse:
        """Snapshot metrics; ``?filtered=true`` restricts them to the filtered view."""
        filtered = _get_bool_param(request.query_params, "filtered", False)
        if isinstance(filtered, JSONResponse):
            return filtered
        return JSONResponse(tracker.metrics(filtered=filtered))

    @router.get("/groups")
    async def api_groups(by: str = "none", tracker: BugTracker = Depends(_get_tracker)) -> JSONResponse:
        if by not in VALID_GROUP_BY:
            return _error_response(
                f'Invalid group_by "{by}". Must be one of: {", ".join(sorted(VALID_GROUP_BY))}',
                "VALIDATION_ERROR",
                400,
            )
        groups = [
            GroupDict(key=g.key, label=g.label, count=g.count, bugs=[b.to_dict() for b in g.bugs])
            for g in tracker.groups(by)
        ]
        return JSONResponse(groups)

    @router.get("/export")
    async def api_export(tracker: BugTracker = Depends(_get_tracker)) -> JSONResponse:
        entities = tracker.export_entities()
        return JSONResponse(
            entities,
            headers={"Content-Disposition": 'attachment; filename="bugs.json"'},
        )

    return router
