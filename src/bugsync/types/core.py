"""Foundational TypedDicts for dataclass to_dict() returns."""

from __future__ import annotations

from typing import Any, NewType, TypedDict

ISOTimestamp = NewType("ISOTimestamp", str)


class ProjectConfig(TypedDict, total=False):
    """Shape of .bugsync/config.json."""

    workspace: str
    organization: str
    account_kind: str
    short_id_length: int
    mutation_timeout_seconds: float | None
    require_loaded_permissions: bool
    notification_limit: int


class BugDict(TypedDict):
    id: str
    bug_id: str
    title: str
    description: str
    status: str
    severity: str
    priority: str
    assignee: str | None
    reporter: str | None
    sprint_id: str | None
    environment: str
    tags: list[str]
    category: str
    source: str
    frequency: str
    steps_to_reproduce: str
    expected_behavior: str
    actual_behavior: str
    has_video_evidence: bool
    has_network_logs: bool
    has_console_logs: bool
    has_attachments: bool
    due_date: ISOTimestamp | None
    created_at: ISOTimestamp | None
    updated_at: ISOTimestamp | None
    resolved_at: ISOTimestamp | None
    comments: list[dict[str, Any]]
    activity_log: list[dict[str, Any]]
    attachments: list[dict[str, Any]]
    extra: dict[str, Any]


class TeamMemberDict(TypedDict):
    id: str
    name: str
    email: str
    role: str


class SprintDict(TypedDict):
    id: str
    name: str
    status: str
    start_date: ISOTimestamp | None
    end_date: ISOTimestamp | None
