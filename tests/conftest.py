"""Shared pytest fixtures for bugsync tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from bugsync.config import BUGSYNC_DIR_NAME, TrackerConfig, write_config
from bugsync.context import ActiveContext, Identity
from bugsync.tracker import BugTracker
from tests._fakes import FakeStore

# Tuesday; the current week runs Mon 2026-03-09 to Sun 2026-03-15.
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)

ADMIN = {"role": "admin"}
VIEWER = {"role": "viewer"}

BUG_DOCS: dict[str, dict[str, Any]] = {
    "b1": {
        "bug_id": "BUG-1001",
        "title": "Login button unresponsive",
        "description": "Clicking login does nothing on Safari",
        "status": "Open",
        "severity": "High",
        "priority": "High",
        "assignee": "alice@example.com",
        "reporter": "carol@example.com",
        "sprint_id": "s1",
        "environment": "Production",
        "tags": ["ui", "auth"],
        "category": "UI",
        "source": "manual",
        "frequency": "Always",
        "steps_to_reproduce": "Open login page and click the button",
        "expected_behavior": "User is logged in",
        "actual_behavior": "Nothing happens",
        "has_console_logs": True,
        "due_date": "2026-03-08T00:00:00Z",
        "created_at": "2026-03-09T10:00:00Z",
        "updated_at": "2026-03-09T10:00:00Z",
    },
    "b2": {
        "bug_id": "BUG-1002",
        "title": "Crash on export",
        "description": "CSV export throws",
        "status": "New",
        "severity": "Critical",
        "environment": "Staging",
        "tags": ["export"],
        "source": "screen_recording",
        "attachments": [{"name": "capture.webm", "type": "video/webm"}],
        "due_date": "2026-03-10T18:00:00Z",
        "created_at": "2026-03-08T09:00:00Z",
        "updated_at": "2026-03-08T09:00:00Z",
    },
    "b3": {
        "bug_id": "BUG-1003",
        "title": "Typo in footer",
        "status": "Resolved",
        "severity": "Low",
        "assignee": "bob@example.com",
        "sprint_id": "s1",
        "created_at": "2026-02-20T12:00:00Z",
        "updated_at": "2026-02-21T08:00:00Z",
        "resolved_at": "2026-02-21T08:00:00Z",
    },
    "b4": {
        "bugId": "BUG-1004",
        "title": "Slow dashboard load",
        "status": "In Progress",
        "severity": "Medium",
        "assignedTo": "alice@example.com",
        "reportedBy": "carol@example.com",
        "environment": "Production",
        "tags": ["perf"],
        "dueDate": {"seconds": int(datetime(2026, 3, 12, tzinfo=UTC).timestamp()), "nanoseconds": 0},
        "createdAt": int(datetime(2026, 3, 1, 8, 0, tzinfo=UTC).timestamp() * 1000),
        "updatedAt": int(datetime(2026, 3, 1, 8, 0, tzinfo=UTC).timestamp() * 1000),
    },
}

MEMBER_DOCS: dict[str, dict[str, Any]] = {
    "m1": {"name": "Alice Smith", "email": "alice@example.com", "role": "admin"},
    "m2": {"email": "bob@example.com", "role": "member"},
}

SPRINT_DOCS: dict[str, dict[str, Any]] = {
    "s1": {"name": "Sprint 1", "status": "active", "start_date": "2026-03-02", "end_date": "2026-03-16"},
    "s2": {"name": "Sprint 2", "status": "planning"},
}


async def settle() -> None:
    """Let scheduled feed callbacks run."""
    for _ in range(5):
        await asyncio.sleep(0)


class FixedClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def seed(store: FakeStore, context: ActiveContext) -> None:
    store.seed(context.collection_path("bugs"), BUG_DOCS)
    store.seed(context.collection_path("members"), MEMBER_DOCS)
    store.seed(context.collection_path("sprints"), SPRINT_DOCS)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def identity() -> Identity:
    return Identity(uid="u1", email="alice@example.com", display_name="Alice Smith")


@pytest.fixture
def context() -> ActiveContext:
    return ActiveContext(workspace_id="ws1", kind="organization", org_id="org1")


@pytest.fixture
def other_context() -> ActiveContext:
    return ActiveContext(workspace_id="ws2", kind="organization", org_id="org1")


@pytest.fixture
def store(context: ActiveContext) -> FakeStore:
    s = FakeStore()
    seed(s, context)
    return s


@pytest.fixture
async def tracker(
    store: FakeStore, clock: FixedClock, identity: Identity, context: ActiveContext
) -> AsyncIterator[BugTracker]:
    """Tracker with an admin session on the seeded workspace, fully loaded."""
    t = BugTracker(store, config=TrackerConfig(workspace="ws1", organization="org1"), clock=clock)
    t.set_session(identity, ADMIN, context)
    await settle()
    yield t
    t.close()


@pytest.fixture
def bugsync_project(tmp_path: Path) -> Path:
    """A tmp directory set up as a bugsync project (.bugsync/ with config).

    Returns the project root (parent of .bugsync/).
    """
    bugsync_dir = tmp_path / BUGSYNC_DIR_NAME
    bugsync_dir.mkdir()
    write_config(bugsync_dir, {"workspace": "ws1", "organization": "org1", "account_kind": "organization"})
    return tmp_path


@pytest.fixture
def cli_runner() -> CliRunner:
    """Click CLI test runner."""
    return CliRunner()
