"""Filtered and grouped views over a bug snapshot.

Pure functions with no state of their own: every call derives a fresh,
disposable view from the snapshot it is handed.  Output order is the
snapshot order; nothing here re-sorts bugs.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from bugsync.models import Bug, Sprint
from bugsync.types.filters import FilterSpec, GroupBy

ALL = "all"
DEFAULT_SHORT_ID_LENGTH = 6

# Filter dimension -> Bug attribute, for the exact-match dimensions.
EXACT_DIMENSIONS: dict[str, str] = {
    "status": "status",
    "severity": "severity",
    "assignee": "assignee",
    "reporter": "reporter",
    "environment": "environment",
    "sprint": "sprint_id",
    "category": "category",
    "frequency": "frequency",
}
VALID_DIMENSIONS: frozenset[str] = frozenset(EXACT_DIMENSIONS) | {"tags", "search", "due"}
VALID_DUE_BUCKETS: frozenset[str] = frozenset({ALL, "overdue", "today", "this_week", "no_due_date"})
VALID_GROUP_BY: frozenset[str] = frozenset({"none", "daily", "weekly", "monthly", "sprint"})


def normalize_filter_spec(raw: Mapping[str, Any]) -> FilterSpec:
    """Validate a loosely-typed filter mapping and drop inactive dimensions.

    ``"all"``, None and empty strings are removed so the result only holds
    active constraints.  Tags may be given as a comma-separated string.
    Raises ValueError on unknown dimensions or date buckets.
    """
    unknown = sorted(set(raw) - VALID_DIMENSIONS)
    if unknown:
        msg = f"Unknown filter dimension(s): {', '.join(unknown)}. Valid: {', '.join(sorted(VALID_DIMENSIONS))}"
        raise ValueError(msg)
    spec: dict[str, Any] = {}
    for key, value in raw.items():
        if value is None:
            continue
        if key == "tags":
            if isinstance(value, str):
                tags = [t.strip() for t in value.split(",") if t.strip()]
            elif isinstance(value, Iterable):
                tags = [t for t in value if isinstance(t, str) and t]
            else:
                msg = "tags must be a string or a list of strings"
                raise ValueError(msg)
            tags = [t for t in tags if t != ALL]
            if tags:
                spec["tags"] = tuple(dict.fromkeys(tags))
            continue
        if not isinstance(value, str):
            msg = f"Filter value for {key} must be a string"
            raise ValueError(msg)
        if key == "search":
            if value.strip() not in ("", ALL):
                spec["search"] = value.strip()
            continue
        if key == "due" and value not in VALID_DUE_BUCKETS:
            msg = f'Invalid due bucket "{value}". Must be one of: {", ".join(sorted(VALID_DUE_BUCKETS))}'
            raise ValueError(msg)
        if value and value != ALL:
            spec[key] = value
    return FilterSpec(**spec)  # type: ignore[typeddict-item]


def _start_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def matches_due_bucket(due: datetime | None, bucket: str, now: datetime) -> bool:
    """Whether a due date falls in *bucket* relative to *now*.

    ``overdue`` is any due instant already in the past; ``today`` and
    ``this_week`` are calendar ranges (UTC, weeks starting Monday).
    """
    if bucket == ALL:
        return True
    if bucket == "no_due_date":
        return due is None
    if due is None:
        return False
    if bucket == "overdue":
        return due < now
    today = _start_of_day(now)
    if bucket == "today":
        return today <= due < today + timedelta(days=1)
    if bucket == "this_week":
        week_start = today - timedelta(days=today.weekday())
        return week_start <= due < week_start + timedelta(days=7)
    msg = f"Unknown due bucket: {bucket}"
    raise ValueError(msg)


def _matches_search(bug: Bug, term: str, short_id_length: int) -> bool:
    needle = term.lower()
    return (
        needle in bug.title.lower()
        or needle in bug.description.lower()
        or needle in bug.short_id(short_id_length).lower()
    )


def _build_predicates(
    spec: FilterSpec,
    now: datetime,
    short_id_length: int,
) -> list[Callable[[Bug], bool]]:
    predicates: list[Callable[[Bug], bool]] = []
    for dimension, attr in EXACT_DIMENSIONS.items():
        wanted = spec.get(dimension, ALL)
        if wanted in (ALL, None, ""):
            continue
        # Missing (None/"") fields never equal a concrete selection.
        predicates.append(lambda bug, a=attr, w=wanted: getattr(bug, a) == w)

    raw_tags = spec.get("tags") or ()
    if isinstance(raw_tags, str):
        raw_tags = (raw_tags,)
    selected_tags = frozenset(raw_tags) - {ALL}
    if selected_tags:
        predicates.append(lambda bug: not selected_tags.isdisjoint(bug.tags))

    term = (spec.get("search") or "").strip()
    if term and term != ALL:
        predicates.append(lambda bug: _matches_search(bug, term, short_id_length))

    bucket = spec.get("due", ALL)
    if bucket not in (ALL, None, ""):
        if bucket not in VALID_DUE_BUCKETS:
            msg = f"Unknown due bucket: {bucket}"
            raise ValueError(msg)
        predicates.append(lambda bug: matches_due_bucket(bug.due_date, bucket, now))
    return predicates


def apply_filters(
    bugs: Sequence[Bug],
    spec: FilterSpec | Mapping[str, Any] | None,
    *,
    now: datetime | None = None,
    short_id_length: int = DEFAULT_SHORT_ID_LENGTH,
) -> list[Bug]:
    """Return the bugs matching every active dimension of *spec*, in input order.

    *now* anchors the date buckets and defaults to the current instant on
    every call; it is never cached.
    """
    if not spec:
        return list(bugs)
    predicates = _build_predicates(spec, now or datetime.now(UTC), short_id_length)  # type: ignore[arg-type]
    if not predicates:
        return list(bugs)
    return [bug for bug in bugs if all(p(bug) for p in predicates)]


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------


@dataclass
class BugGroup:
    key: str
    label: str
    bugs: list[Bug] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.bugs)


def _date_key(bug: Bug, by: str) -> tuple[str, str]:
    created = bug.created_at
    if created is None:
        return "unknown", "No date"
    if by == "daily":
        return created.date().isoformat(), created.strftime("%b %d, %Y")
    if by == "weekly":
        year, week, _ = created.isocalendar()
        return f"{year}-W{week:02d}", f"Week {week}, {year}"
    return created.strftime("%Y-%m"), created.strftime("%B %Y")


def group_bugs(
    bugs: Sequence[Bug],
    by: GroupBy | str = "none",
    *,
    sprints: Sequence[Sprint] = (),
) -> list[BugGroup]:
    """Partition bugs into labelled groups.

    Date groupings use ``created_at`` and appear in first-seen order, which is
    newest first for a snapshot ordered by creation time.  Sprint grouping
    follows the sprint roster order, omits empty sprints, and collects bugs
    with no (or an unknown) sprint under ``unassigned`` at the end.
    """
    if by not in VALID_GROUP_BY:
        msg = f'Invalid group_by "{by}". Must be one of: {", ".join(sorted(VALID_GROUP_BY))}'
        raise ValueError(msg)
    if by == "none":
        return [BugGroup(key="all", label="All Bugs", bugs=list(bugs))]

    if by == "sprint":
        groups = {s.id: BugGroup(key=s.id, label=s.name) for s in sprints}
        unassigned = BugGroup(key="unassigned", label="Unassigned")
        for bug in bugs:
            target = groups.get(bug.sprint_id) if bug.sprint_id else None
            (target or unassigned).bugs.append(bug)
        result = [g for g in groups.values() if g.bugs]
        if unassigned.bugs:
            result.append(unassigned)
        return result

    by_key: dict[str, BugGroup] = {}
    for bug in bugs:
        key, label = _date_key(bug, by)
        by_key.setdefault(key, BugGroup(key=key, label=label)).bugs.append(bug)
    return list(by_key.values())
