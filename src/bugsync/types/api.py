"""TypedDicts for metrics results and dashboard route API responses."""

from __future__ import annotations

from typing import Any, TypedDict

from bugsync.types.core import BugDict, SprintDict, TeamMemberDict

# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class EvidenceCounts(TypedDict):
    video: int
    network_logs: int
    console_logs: int
    any: int
    coverage_pct: int


class RecentCounts(TypedDict):
    last_day: int
    last_week: int
    last_month: int


class TrendPoint(TypedDict):
    reported: int
    resolved: int


class BugMetrics(TypedDict):
    """Aggregate statistics over one bug snapshot.

    Every numeric field is zero (and every mapping empty) for an empty
    snapshot.
    """

    total: int
    resolved: int
    active: int
    resolution_rate: int
    by_status: dict[str, int]
    by_severity: dict[str, int]
    by_priority: dict[str, int]
    by_source: dict[str, int]
    evidence: EvidenceCounts
    with_attachments: int
    avg_resolution_hours: float
    avg_completeness: int
    reproduction_rate: int
    recent: RecentCounts
    trend: dict[str, TrendPoint]


class MetricsWithTrends(BugMetrics):
    """BugMetrics plus percentage change against a previous period."""

    trends: dict[str, int]


# ---------------------------------------------------------------------------
# Errors and outcomes
# ---------------------------------------------------------------------------


class ErrorDict(TypedDict):
    kind: str
    message: str
    collection: str | None
    retryable: bool


class OutcomeDict(TypedDict):
    entity_id: str
    ok: bool
    kind: str | None
    message: str
    patch: dict[str, Any]


class BulkResultDict(TypedDict):
    action: str
    succeeded: int
    failed: int
    outcomes: list[OutcomeDict]


class CapabilitiesDict(TypedDict):
    read: bool
    create: bool
    update: bool
    delete: bool
    manage: bool
    provisional: bool


# ---------------------------------------------------------------------------
# Dashboard envelopes
# ---------------------------------------------------------------------------


class StateResponse(TypedDict):
    """Full presentation state returned by GET /api/state."""

    raw_count: int
    filtered: list[BugDict]
    team_members: list[TeamMemberDict]
    sprints: list[SprintDict]
    filter_spec: dict[str, Any]
    in_flight: list[str]
    last_error: ErrorDict | None
    loading: bool
    sync_state: str
    snapshot_version: int
    capabilities: CapabilitiesDict


class GroupDict(TypedDict):
    key: str
    label: str
    count: int
    bugs: list[BugDict]


class NotificationDict(TypedDict):
    level: str
    title: str
    message: str
    persistent: bool
    created_at: str
