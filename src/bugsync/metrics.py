"""Bug tracking metrics — resolution, evidence coverage, report completeness.

Derives every statistic from a bug snapshot alone; holds no state and
performs no I/O.  An empty snapshot yields an all-zero result.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta

from bugsync.models import Bug
from bugsync.types.api import BugMetrics, EvidenceCounts, MetricsWithTrends, RecentCounts, TrendPoint

REPRODUCIBLE_THRESHOLD = 70
COMPLETENESS_CHECKS = 10

_RECORDING_SOURCES = frozenset({"screen_recording", "screen-recording", "recording"})
_MANUAL_SOURCES = frozenset({"", "manual", "manual_testing", "manual-testing"})


def _pct(part: int, whole: int) -> int:
    return round(part / whole * 100) if whole else 0


def source_of_origin(bug: Bug) -> str:
    """Bucket a bug's source into ``recording``, ``manual`` or its raw value."""
    source = bug.source.strip().lower()
    recorded = any(att.get("is_recording") or att.get("isRecording") for att in bug.attachments)
    if source in _RECORDING_SOURCES or recorded:
        return "recording"
    if source in _MANUAL_SOURCES:
        return "manual"
    return source


def _attachment_text(att: dict[str, object], key: str) -> str:
    value = att.get(key)
    return value.lower() if isinstance(value, str) else ""


def has_video(bug: Bug) -> bool:
    return bug.has_video_evidence or any(
        _attachment_text(att, "type").startswith("video/") or att.get("is_recording") or att.get("isRecording")
        for att in bug.attachments
    )


def has_network_log(bug: Bug) -> bool:
    return bug.has_network_logs or any(
        "network" in _attachment_text(att, "name")
        or _attachment_text(att, "name").endswith(".har")
        or "json" in _attachment_text(att, "type")
        for att in bug.attachments
    )


def has_console_log(bug: Bug) -> bool:
    return bug.has_console_logs or any(
        "console" in _attachment_text(att, "name") or _attachment_text(att, "name").endswith(".log")
        for att in bug.attachments
    )


def has_any_attachment(bug: Bug) -> bool:
    return bug.has_attachments or bool(bug.attachments)


def completeness_score(bug: Bug) -> int:
    """Score a report 0-100 over ten equally weighted presence checks."""
    checks = (
        len(bug.title.strip()) > 5,
        len(bug.steps_to_reproduce.strip()) > 10,
        len(bug.expected_behavior.strip()) > 5,
        len(bug.actual_behavior.strip()) > 5,
        has_any_attachment(bug),
        bug.has_video_evidence or bug.has_console_logs or bug.has_network_logs,
        bug.environment != "Unknown",
        bool(bug.severity),
        bool(bug.category.strip()),
        bug.frequency != "Unknown",
    )
    return round(sum(checks) / COMPLETENESS_CHECKS * 100)


def resolution_hours(bug: Bug) -> float | None:
    """Hours from creation to resolution; None when either timestamp is missing."""
    if bug.created_at is None or bug.resolved_at is None:
        return None
    return max(0.0, (bug.resolved_at - bug.created_at).total_seconds() / 3600)


def _empty_metrics() -> BugMetrics:
    return {
        "total": 0,
        "resolved": 0,
        "active": 0,
        "resolution_rate": 0,
        "by_status": {},
        "by_severity": {},
        "by_priority": {},
        "by_source": {},
        "evidence": EvidenceCounts(video=0, network_logs=0, console_logs=0, any=0, coverage_pct=0),
        "with_attachments": 0,
        "avg_resolution_hours": 0.0,
        "avg_completeness": 0,
        "reproduction_rate": 0,
        "recent": RecentCounts(last_day=0, last_week=0, last_month=0),
        "trend": {},
    }


def compute_metrics(bugs: Sequence[Bug], *, now: datetime | None = None) -> BugMetrics:
    """Aggregate counters and rates for one snapshot."""
    total = len(bugs)
    if total == 0:
        return _empty_metrics()
    now = now or datetime.now(UTC)

    resolved = sum(1 for b in bugs if b.is_resolved)
    video = sum(1 for b in bugs if has_video(b))
    network = sum(1 for b in bugs if has_network_log(b))
    console = sum(1 for b in bugs if has_console_log(b))
    any_evidence = sum(1 for b in bugs if has_video(b) or has_network_log(b) or has_console_log(b))

    durations = [h for h in (resolution_hours(b) for b in bugs) if h is not None]
    scores = [completeness_score(b) for b in bugs]

    created = [b.created_at for b in bugs if b.created_at is not None]
    recent = RecentCounts(
        last_day=sum(1 for c in created if c >= now - timedelta(days=1)),
        last_week=sum(1 for c in created if c >= now - timedelta(days=7)),
        last_month=sum(1 for c in created if c >= now - timedelta(days=30)),
    )

    trend: dict[str, TrendPoint] = {}
    for bug in bugs:
        if bug.created_at is not None:
            day = bug.created_at.date().isoformat()
            trend.setdefault(day, TrendPoint(reported=0, resolved=0))["reported"] += 1
        if bug.resolved_at is not None:
            day = bug.resolved_at.date().isoformat()
            trend.setdefault(day, TrendPoint(reported=0, resolved=0))["resolved"] += 1

    return {
        "total": total,
        "resolved": resolved,
        "active": total - resolved,
        "resolution_rate": _pct(resolved, total),
        "by_status": dict(Counter(b.status for b in bugs)),
        "by_severity": dict(Counter(b.severity for b in bugs)),
        "by_priority": dict(Counter(b.priority for b in bugs)),
        "by_source": dict(Counter(source_of_origin(b) for b in bugs)),
        "evidence": EvidenceCounts(
            video=video,
            network_logs=network,
            console_logs=console,
            any=any_evidence,
            coverage_pct=_pct(any_evidence, total),
        ),
        "with_attachments": sum(1 for b in bugs if has_any_attachment(b)),
        "avg_resolution_hours": round(sum(durations) / len(durations), 1) if durations else 0.0,
        "avg_completeness": round(sum(scores) / total),
        "reproduction_rate": _pct(sum(1 for s in scores if s >= REPRODUCIBLE_THRESHOLD), total),
        "recent": recent,
        "trend": dict(sorted(trend.items())),
    }


_TREND_KEYS = ("total", "resolved", "resolution_rate", "avg_completeness", "avg_resolution_hours")


def _change(current: float, previous: float) -> int:
    if previous == 0:
        return 100 if current > 0 else 0
    return round((current - previous) / previous * 100)


def compute_metrics_with_trends(
    current: Sequence[Bug],
    previous: Sequence[Bug],
    *,
    now: datetime | None = None,
) -> MetricsWithTrends:
    """Metrics for *current* plus percentage change against *previous*.

    Resolution time is inverted so a positive trend always means improvement.
    """
    cur = compute_metrics(current, now=now)
    prev = compute_metrics(previous, now=now)
    trends: dict[str, int] = {}
    for key in _TREND_KEYS:
        if key == "avg_resolution_hours":
            trends[key] = _change(prev[key], cur[key])  # type: ignore[literal-required]
        else:
            trends[key] = _change(cur[key], prev[key])  # type: ignore[literal-required]
    return MetricsWithTrends(**cur, trends=trends)
