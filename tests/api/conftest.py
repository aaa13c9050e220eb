"""Fixtures for HTTP dashboard API tests (FastAPI)."""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
from httpx import ASGITransport, AsyncClient

import bugsync.dashboard as dash_module
from bugsync.dashboard import create_app
from bugsync.tracker import BugTracker


@pytest.fixture
async def client(tracker: BugTracker) -> AsyncIterator[AsyncClient]:
    """Test client backed by the seeded, admin-session tracker."""
    dash_module._tracker = tracker
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    dash_module._tracker = None


@pytest.fixture
async def bare_client() -> AsyncIterator[AsyncClient]:
    """Test client with no tracker installed."""
    dash_module._tracker = None
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
