"""Web dashboard API for bugsync.

Serves the live tracker state over HTTP: filtered bugs, metrics, groups,
export, notifications, and the gated mutation endpoints.  A module-level
``_tracker`` is set at startup and injected via ``Depends(_get_tracker)``.

The ``dashboard`` command hosts an in-process ``MemoryStore`` seeded from a
JSON export, which makes the API usable without a remote backend.

Usage:
    bugsync dashboard                         # localhost:8377
    bugsync dashboard --port 9000             # Custom port
    bugsync dashboard --data bugs.json        # Seed from an export
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from fastapi.responses import JSONResponse

from bugsync.config import TrackerConfig, find_bugsync_root, read_config
from bugsync.context import COLLECTIONS, ActiveContext, Identity
from bugsync.logging import setup_logging
from bugsync.store import MemoryStore, read_seed_file
from bugsync.tracker import BugTracker

DEFAULT_PORT = 8377

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Module-level state, set by main() or test fixtures
# ---------------------------------------------------------------------------

_tracker: BugTracker | None = None


def _get_tracker() -> BugTracker:
    """Return the active tracker."""
    from fastapi import HTTPException

    if _tracker is None:
        raise HTTPException(status_code=500, detail="Tracker not initialized")
    return _tracker


def seed_store(store: MemoryStore, context: ActiveContext, data_file: Path) -> int:
    """Load a JSON export into *store* under *context*'s collection paths.

    Returns the number of bugs loaded.
    """
    seed = read_seed_file(data_file)
    for name in COLLECTIONS:
        store.seed(context.collection_path(name), seed[name])
    return len(seed["bugs"])


def create_app() -> Any:
    """Create the FastAPI application with all dashboard endpoints."""
    from fastapi import FastAPI
    from fastapi.responses import JSONResponse

    from bugsync import __version__
    from bugsync.dashboard_routes import analytics, bugs

    app = FastAPI(title="Bugsync Dashboard", docs_url=None, redoc_url=None)
    app.include_router(bugs.create_router(), prefix="/api")
    app.include_router(analytics.create_router(), prefix="/api")

    @app.get("/api/health")
    async def api_health() -> JSONResponse:
        sync_state = _tracker.subscriptions.state if _tracker is not None else "idle"
        return JSONResponse({"status": "ok", "version": __version__, "sync_state": sync_state})

    return app


def main(
    port: int = DEFAULT_PORT,
    *,
    data_file: Path | None = None,
    user: str = "local",
    role: str = "admin",
) -> None:
    """Start the dashboard server for the project in the current directory."""
    import uvicorn

    global _tracker

    bugsync_dir = find_bugsync_root()
    setup_logging(bugsync_dir)
    config = TrackerConfig.from_mapping(read_config(bugsync_dir))

    store = MemoryStore()
    identity = Identity(uid=user)
    context = config.context_for(identity)
    if data_file is not None and context.is_configured:
        count = seed_store(store, context, data_file)
        logger.info("Loaded %d bug(s) from %s", count, data_file)

    _tracker = BugTracker(store, config=config)
    decision = _tracker.set_session(identity, {"role": role}, context)
    if not decision:
        logger.warning("Dashboard started without live data: %s", decision.reason)

    app = create_app()
    print(f"Bugsync Dashboard: http://localhost:{port}")
    uvicorn.run(app, host="127.0.0.1", port=port, log_level="warning")
