"""Entity models for the bug collection and its reference rosters.

Documents arrive from the store in whatever shape the remote side wrote
them: snake_case or camelCase keys, several timestamp encodings, loosely
cased enumeration values.  Everything is normalized here, at ingestion,
so filters, metrics and the mutation path only ever see one shape.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from datetime import UTC, datetime
from typing import Any

from bugsync.types.core import BugDict, ISOTimestamp, SprintDict, TeamMemberDict

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Closed enumerations
# ---------------------------------------------------------------------------

VALID_STATUSES: tuple[str, ...] = ("New", "Open", "In Progress", "Blocked", "Resolved", "Closed")
VALID_SEVERITIES: tuple[str, ...] = ("Critical", "High", "Medium", "Low")
VALID_ENVIRONMENTS: tuple[str, ...] = ("Development", "Staging", "Production", "Testing", "Unknown")
VALID_FREQUENCIES: tuple[str, ...] = ("Always", "Often", "Sometimes", "Rarely", "Once", "Unknown")
VALID_SPRINT_STATUSES: tuple[str, ...] = ("planning", "active", "completed")

RESOLVED_STATUSES: frozenset[str] = frozenset({"Resolved", "Closed"})

DEFAULT_STATUS = "New"
DEFAULT_SEVERITY = "Medium"
DEFAULT_ENVIRONMENT = "Unknown"
DEFAULT_FREQUENCY = "Unknown"

_PRIORITY_BY_SEVERITY: dict[str, str] = {
    "Critical": "Critical",
    "High": "High",
    "Medium": "Medium",
    "Low": "Low",
}

# Older documents use a different severity vocabulary.
_LEGACY_SEVERITIES: dict[str, str] = {
    "blocker": "Critical",
    "major": "High",
    "normal": "Medium",
    "minor": "Low",
    "trivial": "Low",
}


def priority_for_severity(severity: str) -> str:
    """Derive the priority label for a severity.

    Priority is never stored as an independent source of truth; callers
    recompute it from severity on every severity change.
    """
    try:
        return _PRIORITY_BY_SEVERITY[severity]
    except KeyError:
        msg = f'Invalid severity "{severity}". Must be one of: {", ".join(VALID_SEVERITIES)}'
        raise ValueError(msg) from None


def _coerce_choice(value: Any, choices: tuple[str, ...], default: str) -> str:
    """Match *value* case-insensitively against *choices*; fall back to *default*."""
    if not isinstance(value, str):
        return default
    cleaned = value.strip()
    if cleaned in choices:
        return cleaned
    lowered = cleaned.lower().replace("_", " ").replace("-", " ")
    for choice in choices:
        if choice.lower() == lowered:
            return choice
    return default


def coerce_severity(value: Any) -> str:
    if isinstance(value, str) and value.strip().lower() in _LEGACY_SEVERITIES:
        return _LEGACY_SEVERITIES[value.strip().lower()]
    return _coerce_choice(value, VALID_SEVERITIES, DEFAULT_SEVERITY)


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

# Epoch values above this are treated as milliseconds.
_EPOCH_MS_THRESHOLD = 10**11


def normalize_timestamp(value: Any) -> datetime | None:
    """Convert any store-native timestamp shape into an aware UTC datetime.

    Accepts ``datetime`` (naive values are taken as UTC), ISO-8601 strings,
    epoch seconds or milliseconds, ``{"seconds": ..., "nanoseconds": ...}``
    mappings, and objects exposing ``to_datetime()`` or a ``seconds``
    attribute.  Returns None for missing or unparseable input rather than
    a substitute "now", which would silently corrupt durations.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)
    if isinstance(value, int | float):
        seconds = value / 1000 if abs(value) >= _EPOCH_MS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
        return dt.replace(tzinfo=UTC) if dt.tzinfo is None else dt.astimezone(UTC)
    if isinstance(value, Mapping):
        seconds = value.get("seconds", value.get("_seconds"))
        if isinstance(seconds, int | float) and not isinstance(seconds, bool):
            nanos = value.get("nanoseconds", value.get("_nanoseconds", 0)) or 0
            return normalize_timestamp(float(seconds) + float(nanos) / 1e9)
        return None
    to_datetime = getattr(value, "to_datetime", None)
    if callable(to_datetime):
        return normalize_timestamp(to_datetime())
    seconds = getattr(value, "seconds", None)
    if isinstance(seconds, int | float):
        return normalize_timestamp(seconds)
    return None


def utc_now() -> datetime:
    return datetime.now(UTC)


def _iso(dt: datetime | None) -> ISOTimestamp | None:
    return ISOTimestamp(dt.isoformat()) if dt is not None else None


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

# Store key -> Bug attribute.  First match wins, so canonical keys go first.
_BUG_KEY_ALIASES: dict[str, tuple[str, ...]] = {
    "bug_id": ("bug_id", "bugId"),
    "title": ("title",),
    "description": ("description",),
    "status": ("status",),
    "severity": ("severity",),
    "assignee": ("assignee", "assigned_to", "assignedTo"),
    "reporter": ("reporter", "reported_by", "reportedBy", "created_by", "createdBy"),
    "sprint_id": ("sprint_id", "sprintId"),
    "environment": ("environment",),
    "tags": ("tags", "labels"),
    "category": ("category",),
    "source": ("source",),
    "frequency": ("frequency",),
    "steps_to_reproduce": ("steps_to_reproduce", "stepsToReproduce"),
    "expected_behavior": ("expected_behavior", "expectedBehavior"),
    "actual_behavior": ("actual_behavior", "actualBehavior"),
    "has_video_evidence": ("has_video_evidence", "hasVideoEvidence"),
    "has_network_logs": ("has_network_logs", "hasNetworkLogs"),
    "has_console_logs": ("has_console_logs", "hasConsoleLogs"),
    "has_attachments": ("has_attachments", "hasAttachments"),
    "due_date": ("due_date", "dueDate"),
    "created_at": ("created_at", "createdAt"),
    "updated_at": ("updated_at", "updatedAt"),
    "resolved_at": ("resolved_at", "resolvedAt"),
    "comments": ("comments",),
    "activity_log": ("activity_log", "activityLog"),
    "attachments": ("attachments",),
}
_KNOWN_STORE_KEYS: frozenset[str] = frozenset({"id", "priority"}).union(*_BUG_KEY_ALIASES.values())
_TIMESTAMP_FIELDS: frozenset[str] = frozenset({"due_date", "created_at", "updated_at", "resolved_at"})


_CANONICAL_KEYS: dict[str, str] = {alias: attr for attr, aliases in _BUG_KEY_ALIASES.items() for alias in aliases}


def canonical_bug_key(key: str) -> str:
    """Map a store or API key (any casing variant) to the Bug attribute name.

    Keys with no known alias are returned unchanged.
    """
    return _CANONICAL_KEYS.get(key, key)


def _pick(data: Mapping[str, Any], attr: str) -> Any:
    for key in _BUG_KEY_ALIASES[attr]:
        if key in data:
            return data[key]
    return None


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _optional_ref(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _dict_list(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [dict(item) for item in value if isinstance(item, Mapping)]


def _tag_list(value: Any) -> list[str]:
    if not isinstance(value, list | tuple | set | frozenset):
        return []
    return [t for t in value if isinstance(t, str) and t]


@dataclass(frozen=True)
class Bug:
    id: str
    bug_id: str = ""
    title: str = ""
    description: str = ""
    status: str = DEFAULT_STATUS
    severity: str = DEFAULT_SEVERITY
    priority: str = "Medium"
    assignee: str | None = None
    reporter: str | None = None
    sprint_id: str | None = None
    environment: str = DEFAULT_ENVIRONMENT
    tags: list[str] = field(default_factory=list)
    category: str = ""
    source: str = ""
    frequency: str = DEFAULT_FREQUENCY
    steps_to_reproduce: str = ""
    expected_behavior: str = ""
    actual_behavior: str = ""
    has_video_evidence: bool = False
    has_network_logs: bool = False
    has_console_logs: bool = False
    has_attachments: bool = False
    due_date: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    resolved_at: datetime | None = None
    comments: list[dict[str, Any]] = field(default_factory=list)
    activity_log: list[dict[str, Any]] = field(default_factory=list)
    attachments: list[dict[str, Any]] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def display_id(self) -> str:
        return self.bug_id or self.id

    def short_id(self, length: int = 6) -> str:
        return self.display_id[-length:] if length > 0 else self.display_id

    @property
    def is_resolved(self) -> bool:
        return self.status in RESOLVED_STATUSES

    @classmethod
    def from_document(cls, doc_id: str, data: Mapping[str, Any]) -> Bug:
        """Build a Bug from a raw store document, normalizing every field."""
        severity = coerce_severity(_pick(data, "severity"))
        raw_status = _pick(data, "status")
        status = _coerce_choice(raw_status, VALID_STATUSES, DEFAULT_STATUS)
        if raw_status is not None and status != raw_status:
            logger.debug("Coerced status %r to %r for bug %s", raw_status, status, doc_id)
        return cls(
            id=doc_id,
            bug_id=_text(_pick(data, "bug_id")) or _text(data.get("id")) or doc_id,
            title=_text(_pick(data, "title")),
            description=_text(_pick(data, "description")),
            status=status,
            severity=severity,
            priority=priority_for_severity(severity),
            assignee=_optional_ref(_pick(data, "assignee")),
            reporter=_optional_ref(_pick(data, "reporter")),
            sprint_id=_optional_ref(_pick(data, "sprint_id")),
            environment=_coerce_choice(_pick(data, "environment"), VALID_ENVIRONMENTS, DEFAULT_ENVIRONMENT),
            tags=_tag_list(_pick(data, "tags")),
            category=_text(_pick(data, "category")),
            source=_text(_pick(data, "source")),
            frequency=_coerce_choice(_pick(data, "frequency"), VALID_FREQUENCIES, DEFAULT_FREQUENCY),
            steps_to_reproduce=_text(_pick(data, "steps_to_reproduce")),
            expected_behavior=_text(_pick(data, "expected_behavior")),
            actual_behavior=_text(_pick(data, "actual_behavior")),
            has_video_evidence=bool(_pick(data, "has_video_evidence")),
            has_network_logs=bool(_pick(data, "has_network_logs")),
            has_console_logs=bool(_pick(data, "has_console_logs")),
            has_attachments=bool(_pick(data, "has_attachments")),
            due_date=normalize_timestamp(_pick(data, "due_date")),
            created_at=normalize_timestamp(_pick(data, "created_at")),
            updated_at=normalize_timestamp(_pick(data, "updated_at")),
            resolved_at=normalize_timestamp(_pick(data, "resolved_at")),
            comments=_dict_list(_pick(data, "comments")),
            activity_log=_dict_list(_pick(data, "activity_log")),
            attachments=_dict_list(_pick(data, "attachments")),
            extra={k: v for k, v in data.items() if k not in _KNOWN_STORE_KEYS},
        )

    def with_fields(self, patch: Mapping[str, Any]) -> Bug:
        """Return a copy with *patch* folded in (patch keys are Bug attribute names).

        Unknown keys land in ``extra``.  Priority is always re-derived from
        the resulting severity.
        """
        known = {f.name for f in fields(self)} - {"id", "extra"}
        changes: dict[str, Any] = {}
        extra = dict(self.extra)
        for key, value in patch.items():
            if key in _TIMESTAMP_FIELDS:
                changes[key] = normalize_timestamp(value)
            elif key == "tags":
                changes[key] = _tag_list(value)
            elif key in known:
                changes[key] = value
            elif key != "id":
                extra[key] = value
        bug = replace(self, **changes, extra=extra)
        if bug.priority != priority_for_severity(bug.severity):
            bug = replace(bug, priority=priority_for_severity(bug.severity))
        return bug

    def to_dict(self) -> BugDict:
        return {
            "id": self.id,
            "bug_id": self.bug_id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "severity": self.severity,
            "priority": self.priority,
            "assignee": self.assignee,
            "reporter": self.reporter,
            "sprint_id": self.sprint_id,
            "environment": self.environment,
            "tags": list(self.tags),
            "category": self.category,
            "source": self.source,
            "frequency": self.frequency,
            "steps_to_reproduce": self.steps_to_reproduce,
            "expected_behavior": self.expected_behavior,
            "actual_behavior": self.actual_behavior,
            "has_video_evidence": self.has_video_evidence,
            "has_network_logs": self.has_network_logs,
            "has_console_logs": self.has_console_logs,
            "has_attachments": self.has_attachments,
            "due_date": _iso(self.due_date),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "resolved_at": _iso(self.resolved_at),
            "comments": self.comments,
            "activity_log": self.activity_log,
            "attachments": self.attachments,
            "extra": self.extra,
        }


@dataclass(frozen=True)
class TeamMember:
    id: str
    name: str = ""
    email: str = ""
    role: str = "member"

    @classmethod
    def from_document(cls, doc_id: str, data: Mapping[str, Any]) -> TeamMember:
        email = _text(data.get("email"))
        role = data.get("role")
        if isinstance(role, list):
            role = next((r for r in role if isinstance(r, str)), "member")
        return cls(
            id=doc_id,
            name=member_display_name(data, fallback=doc_id),
            email=email,
            role=role if isinstance(role, str) and role else "member",
        )

    def to_dict(self) -> TeamMemberDict:
        return {"id": self.id, "name": self.name, "email": self.email, "role": self.role}


def member_display_name(data: Mapping[str, Any], *, fallback: str = "Unknown") -> str:
    """Resolve a human-readable name from a member document."""
    for key in ("name", "display_name", "displayName", "full_name"):
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    first, last = _text(data.get("first_name")), _text(data.get("last_name"))
    if first or last:
        return f"{first} {last}".strip()
    email = _text(data.get("email"))
    if "@" in email:
        return email.split("@", 1)[0]
    return fallback


def resolve_member_name(identifier: str | None, members: list[TeamMember] | tuple[TeamMember, ...]) -> str:
    """Map an assignee reference (member id or email) to a display name."""
    if not identifier:
        return "Unassigned"
    for member in members:
        if member.email == identifier or member.id == identifier:
            return member.name
    if "@" in identifier:
        return identifier.split("@", 1)[0]
    return identifier


@dataclass(frozen=True)
class Sprint:
    id: str
    name: str = ""
    status: str = "planning"
    start_date: datetime | None = None
    end_date: datetime | None = None

    @classmethod
    def from_document(cls, doc_id: str, data: Mapping[str, Any]) -> Sprint:
        return cls(
            id=doc_id,
            name=_text(data.get("name")) or doc_id,
            status=_coerce_choice(data.get("status"), VALID_SPRINT_STATUSES, "planning"),
            start_date=normalize_timestamp(data.get("start_date", data.get("startDate"))),
            end_date=normalize_timestamp(data.get("end_date", data.get("endDate"))),
        )

    def to_dict(self) -> SprintDict:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
        }
