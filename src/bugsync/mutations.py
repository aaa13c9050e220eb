"""Gated writes against the bug collection.

Every mutation follows one contract:

1. Access is re-checked at call time against the current session.
2. An entity with a write already in flight is rejected as ``busy``;
   nothing is queued.
3. The patch is validated and normalized before the store is contacted.
4. The write runs with the entity id in the in-flight set, optionally
   bounded by a timeout.
5. A successful write is folded into the local snapshot at once; a failed
   one leaves the snapshot untouched.

The in-flight set is emptied for the entity on every path out.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, TypeAlias

from bugsync.access import AccessValidator, Session
from bugsync.errors import ErrorKind, StoreError, classify_exception, describe_error
from bugsync.models import (
    DEFAULT_ENVIRONMENT,
    DEFAULT_FREQUENCY,
    DEFAULT_SEVERITY,
    DEFAULT_STATUS,
    RESOLVED_STATUSES,
    VALID_ENVIRONMENTS,
    VALID_FREQUENCIES,
    VALID_SEVERITIES,
    VALID_SPRINT_STATUSES,
    VALID_STATUSES,
    Bug,
    canonical_bug_key,
    normalize_timestamp,
    priority_for_severity,
    utc_now,
)
from bugsync.permissions import Capability
from bugsync.store import DocumentStore
from bugsync.subscriptions import SubscriptionManager
from bugsync.types.api import BulkResultDict, NotificationDict, OutcomeDict

logger = logging.getLogger(__name__)

BulkAction: TypeAlias = Literal["reopen", "close", "resolve", "delete"]
NotificationLevel: TypeAlias = Literal["success", "info", "warning", "error"]

BULK_STATUS: dict[str, str] = {"reopen": "Open", "close": "Closed", "resolve": "Resolved"}
VALID_BULK_ACTIONS: tuple[str, ...] = ("reopen", "close", "resolve", "delete")

PROTECTED_KEYS: frozenset[str] = frozenset({"id", "created_at", "updated_at"})
_CHOICE_FIELDS: dict[str, tuple[str, ...]] = {
    "status": VALID_STATUSES,
    "severity": VALID_SEVERITIES,
    "environment": VALID_ENVIRONMENTS,
    "frequency": VALID_FREQUENCIES,
}
_REFERENCE_FIELDS = frozenset({"assignee", "reporter", "sprint_id"})
_TEXT_FIELDS = frozenset(
    {"description", "category", "source", "steps_to_reproduce", "expected_behavior", "actual_behavior"}
)
_FLAG_FIELDS = frozenset({"has_video_evidence", "has_network_logs", "has_console_logs", "has_attachments"})


# ---------------------------------------------------------------------------
# Outcomes and notifications
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MutationOutcome:
    entity_id: str
    ok: bool
    kind: ErrorKind | None = None
    message: str = ""
    patch: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> OutcomeDict:
        return {
            "entity_id": self.entity_id,
            "ok": self.ok,
            "kind": self.kind,
            "message": self.message,
            "patch": dict(self.patch),
        }


@dataclass(frozen=True)
class BulkResult:
    action: str
    outcomes: tuple[MutationOutcome, ...] = ()

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.ok)

    def to_dict(self) -> BulkResultDict:
        return {
            "action": self.action,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


@dataclass(frozen=True)
class Notification:
    level: NotificationLevel
    title: str
    message: str
    persistent: bool = False
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> NotificationDict:
        return {
            "level": self.level,
            "title": self.title,
            "message": self.message,
            "persistent": self.persistent,
            "created_at": self.created_at.isoformat(),
        }


Notifier: TypeAlias = Callable[[Notification], None]


def failure_notification(kind: ErrorKind, message: str) -> Notification:
    """Access problems get a persistent banner; busy is a passing warning."""
    if kind == "access_denied":
        return Notification(level="error", title="Permission denied", message=message, persistent=True)
    if kind == "busy":
        return Notification(level="warning", title="Update in progress", message=message)
    return Notification(level="error", title="Update failed", message=message)


# ---------------------------------------------------------------------------
# Patch validation
# ---------------------------------------------------------------------------


def _choice(key: str, value: Any, choices: tuple[str, ...]) -> str:
    if isinstance(value, str):
        if value in choices:
            return value
        lowered = value.strip().lower()
        for choice in choices:
            if choice.lower() == lowered:
                return choice
    msg = f'Invalid {key} "{value}". Must be one of: {", ".join(choices)}'
    raise ValueError(msg)


def _tags(value: Any) -> list[str]:
    if not isinstance(value, list | tuple) or not all(isinstance(t, str) for t in value):
        msg = "tags must be a list of strings"
        raise ValueError(msg)
    return list(dict.fromkeys(t.strip() for t in value if t.strip()))


def _optional_timestamp(key: str, value: Any) -> str | None:
    if value is None or value == "":
        return None
    stamp = normalize_timestamp(value)
    if stamp is None:
        msg = f"{key} is not a valid timestamp: {value!r}"
        raise ValueError(msg)
    return stamp.isoformat()


def normalize_patch(patch: Mapping[str, Any], *, current: Bug | None, now: datetime) -> dict[str, Any]:
    """Validate *patch* and return the exact field set to write.

    Keys are mapped to canonical attribute names.  Raises ValueError on any
    invalid value; nothing partial is returned.  A severity change carries
    its derived priority, and a status change in or out of the resolved
    states stamps or clears ``resolved_at``.
    """
    if not patch:
        msg = "Nothing to update"
        raise ValueError(msg)
    result: dict[str, Any] = {}
    for raw_key, value in patch.items():
        key = canonical_bug_key(raw_key)
        if key in PROTECTED_KEYS:
            msg = f"{key} cannot be changed"
            raise ValueError(msg)
        if key == "priority":
            if "severity" not in patch:
                msg = "priority is derived from severity; update severity instead"
                raise ValueError(msg)
            continue
        if key in _CHOICE_FIELDS:
            result[key] = _choice(key, value, _CHOICE_FIELDS[key])
        elif key == "title":
            if not isinstance(value, str) or not value.strip():
                msg = "title cannot be empty"
                raise ValueError(msg)
            result[key] = value.strip()
        elif key == "tags":
            result[key] = _tags(value)
        elif key in _REFERENCE_FIELDS:
            if value is not None and not isinstance(value, str):
                msg = f"{key} must be a string or null"
                raise ValueError(msg)
            result[key] = (value.strip() or None) if isinstance(value, str) else None
        elif key in _TEXT_FIELDS:
            if not isinstance(value, str):
                msg = f"{key} must be a string"
                raise ValueError(msg)
            result[key] = value
        elif key in _FLAG_FIELDS:
            result[key] = bool(value)
        elif key in ("due_date", "resolved_at"):
            result[key] = _optional_timestamp(key, value)
        else:
            result[key] = value

    if "severity" in result:
        result["priority"] = priority_for_severity(result["severity"])
    if "status" in result and "resolved_at" not in result:
        was_resolved = current is not None and current.is_resolved
        if result["status"] in RESOLVED_STATUSES and not was_resolved:
            result["resolved_at"] = now.isoformat()
        elif result["status"] not in RESOLVED_STATUSES and (was_resolved or current is None):
            result["resolved_at"] = None
    return result


def new_bug_id(now: datetime) -> str:
    return f"bug_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:9]}"


def build_bug_document(fields: Mapping[str, Any], *, reporter: str | None, now: datetime) -> dict[str, Any]:
    """Validated document for a new bug, with defaults and timestamps filled in."""
    if not isinstance(fields.get("title"), str) or not fields["title"].strip():
        msg = "title is required"
        raise ValueError(msg)
    given = {canonical_bug_key(k): v for k, v in fields.items()}
    bug_id = given.pop("bug_id", None)
    if bug_id is not None and (not isinstance(bug_id, str) or not bug_id.strip()):
        msg = "bug_id must be a non-empty string"
        raise ValueError(msg)
    doc = normalize_patch(given, current=None, now=now)
    doc.setdefault("status", DEFAULT_STATUS)
    doc.setdefault("severity", DEFAULT_SEVERITY)
    doc["priority"] = priority_for_severity(doc["severity"])
    doc.setdefault("environment", DEFAULT_ENVIRONMENT)
    doc.setdefault("frequency", DEFAULT_FREQUENCY)
    doc.setdefault("tags", [])
    doc.setdefault("assignee", None)
    doc.setdefault("sprint_id", None)
    if doc.get("reporter") is None:
        doc["reporter"] = reporter
    if doc["status"] in RESOLVED_STATUSES:
        doc.setdefault("resolved_at", now.isoformat())
    else:
        doc["resolved_at"] = None
    doc["bug_id"] = bug_id.strip() if bug_id else new_bug_id(now)
    doc["created_at"] = now.isoformat()
    doc["updated_at"] = now.isoformat()
    return doc


def build_sprint_document(fields: Mapping[str, Any], *, now: datetime) -> dict[str, Any]:
    name = fields.get("name")
    if not isinstance(name, str) or not name.strip():
        msg = "Sprint name is required"
        raise ValueError(msg)
    status = _choice("status", fields.get("status", "planning"), VALID_SPRINT_STATUSES)
    start = _optional_timestamp("start_date", fields.get("start_date", fields.get("startDate")))
    end = _optional_timestamp("end_date", fields.get("end_date", fields.get("endDate")))
    if start is not None and end is not None and end < start:
        msg = "end_date must not be before start_date"
        raise ValueError(msg)
    return {
        "name": name.strip(),
        "status": status,
        "start_date": start,
        "end_date": end,
        "created_at": now.isoformat(),
    }


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class MutationCoordinator:
    """Serializes writes per entity and folds results into the snapshot."""

    def __init__(
        self,
        store: DocumentStore,
        subscriptions: SubscriptionManager,
        session_provider: Callable[[], Session],
        *,
        validator: AccessValidator | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = utc_now,
        timeout: float | None = None,
    ) -> None:
        self._store = store
        self._subscriptions = subscriptions
        self._session_provider = session_provider
        self._validator = validator or AccessValidator()
        self._notifier = notifier
        self._clock = clock
        self.timeout = timeout
        self._in_flight: set[str] = set()

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    def _notify(self, notification: Notification) -> None:
        if self._notifier is not None:
            self._notifier(notification)

    def _fail(self, entity_id: str, kind: ErrorKind, message: str, *, notify: bool) -> MutationOutcome:
        outcome = MutationOutcome(entity_id=entity_id, ok=False, kind=kind, message=message)
        if notify:
            self._notify(failure_notification(kind, message))
        return outcome

    async def _bounded(self, operation: Awaitable[Any]) -> Any:
        if self.timeout is None:
            return await operation
        return await asyncio.wait_for(operation, self.timeout)

    def _authorize(self, capability: Capability) -> tuple[Session, str | None, ErrorKind | None]:
        session = self._session_provider()
        decision = self._validator.check_mutate(session.identity, session.context, session.capabilities, capability)
        if not decision:
            return session, decision.reason, decision.kind
        return session, None, None

    # -- Updates and deletes -----------------------------------------------

    async def mutate(
        self,
        entity_id: str,
        patch: Mapping[str, Any],
        capability: Capability = "update",
        *,
        notify: bool = True,
    ) -> MutationOutcome:
        """Validate and write *patch* to one bug."""
        return await self._run(entity_id, patch, capability, notify=notify)

    async def delete(self, entity_id: str, *, notify: bool = True) -> MutationOutcome:
        return await self._run(entity_id, None, "delete", notify=notify)

    async def _run(
        self,
        entity_id: str,
        patch: Mapping[str, Any] | None,
        capability: Capability,
        *,
        notify: bool,
    ) -> MutationOutcome:
        session, reason, kind = self._authorize(capability)
        if kind is not None:
            return self._fail(entity_id, kind, reason or describe_error(kind), notify=notify)
        context = session.context
        if context is None:
            return self._fail(entity_id, "not_configured", describe_error("not_configured"), notify=notify)

        # No await between this check and the add below.
        if entity_id in self._in_flight:
            return self._fail(entity_id, "busy", describe_error("busy"), notify=notify)

        current = self._subscriptions.snapshot.bug(entity_id)
        if current is None:
            return self._fail(entity_id, "not_found", f"Bug not found: {entity_id}", notify=notify)

        written_at = self._clock()
        fields: dict[str, Any] = {}
        if patch is not None:
            try:
                fields = normalize_patch(patch, current=current, now=written_at)
            except ValueError as exc:
                return self._fail(entity_id, "validation", str(exc), notify=notify)

        path = context.collection_path("bugs")
        self._in_flight.add(entity_id)
        t0 = time.monotonic()
        try:
            if patch is None:
                await self._bounded(self._store.delete_document(path, entity_id))
            else:
                await self._bounded(
                    self._store.write_fields(path, entity_id, {**fields, "updated_at": written_at.isoformat()})
                )
        except (StoreError, TimeoutError, OSError) as exc:
            kind = classify_exception(exc)
            code = exc.code if isinstance(exc, StoreError) else None
            logger.warning(
                "Write to %s failed: %s",
                entity_id,
                exc,
                extra={
                    "collection": "bugs",
                    "entity_id": entity_id,
                    "outcome": kind,
                    "duration_ms": round((time.monotonic() - t0) * 1000, 1),
                    "error": str(exc),
                },
            )
            return self._fail(entity_id, kind, describe_error(kind, code), notify=notify)
        except Exception as exc:
            logger.error(
                "Write to %s failed unexpectedly: %s",
                entity_id,
                exc,
                exc_info=True,
                extra={
                    "collection": "bugs",
                    "entity_id": entity_id,
                    "outcome": "unknown",
                    "duration_ms": round((time.monotonic() - t0) * 1000, 1),
                    "error": str(exc),
                },
            )
            return self._fail(entity_id, "unknown", describe_error("unknown"), notify=notify)
        finally:
            self._in_flight.discard(entity_id)

        if patch is None:
            self._subscriptions.apply_local_removal(entity_id, written_at)
            message = f"Bug {current.display_id} deleted"
        else:
            self._subscriptions.apply_local_patch(entity_id, {**fields, "updated_at": written_at}, written_at)
            message = f"Bug {current.display_id} updated"
        logger.info(
            message,
            extra={
                "collection": "bugs",
                "entity_id": entity_id,
                "outcome": "ok",
                "duration_ms": round((time.monotonic() - t0) * 1000, 1),
            },
        )
        if notify:
            self._notify(Notification(level="success", title="Saved", message=message))
        return MutationOutcome(entity_id=entity_id, ok=True, message=message, patch=fields)

    # -- Bulk --------------------------------------------------------------

    async def bulk_action(self, entity_ids: Iterable[str], action: str) -> BulkResult:
        """Apply *action* to every id concurrently; one failure never stops the rest.

        Raises ValueError for an unknown action.
        """
        if action not in VALID_BULK_ACTIONS:
            msg = f'Unknown bulk action "{action}". Must be one of: {", ".join(VALID_BULK_ACTIONS)}'
            raise ValueError(msg)
        ids = list(dict.fromkeys(entity_ids))
        if action == "delete":
            operations = [self.delete(entity_id, notify=False) for entity_id in ids]
        else:
            status_patch = {"status": BULK_STATUS[action]}
            operations = [self.mutate(entity_id, status_patch, notify=False) for entity_id in ids]
        results = await asyncio.gather(*operations, return_exceptions=True)

        outcomes: list[MutationOutcome] = []
        for entity_id, result in zip(ids, results, strict=True):
            if isinstance(result, MutationOutcome):
                outcomes.append(result)
            else:
                logger.error("Bulk %s failed for %s: %s", action, entity_id, result, exc_info=result)
                outcomes.append(
                    MutationOutcome(entity_id=entity_id, ok=False, kind="unknown", message=describe_error("unknown"))
                )
        bulk = BulkResult(action=action, outcomes=tuple(outcomes))
        if ids:
            self._notify(self._bulk_notification(bulk))
        return bulk

    @staticmethod
    def _bulk_notification(bulk: BulkResult) -> Notification:
        noun = "bug" if bulk.succeeded == 1 else "bugs"
        if bulk.failed == 0:
            return Notification(level="success", title="Bulk update", message=f"{bulk.action}: {bulk.succeeded} {noun}")
        denied = any(o.kind == "access_denied" for o in bulk.outcomes)
        return Notification(
            level="warning" if bulk.succeeded else "error",
            title="Bulk update",
            message=f"{bulk.action}: {bulk.succeeded} succeeded, {bulk.failed} failed",
            persistent=denied,
        )

    # -- Creation ----------------------------------------------------------

    async def create_entity(self, fields: Mapping[str, Any]) -> MutationOutcome:
        """Create a bug.  The new record arrives through the next feed snapshot."""
        return await self._create("bugs", "create", fields)

    async def create_sprint(self, fields: Mapping[str, Any]) -> MutationOutcome:
        return await self._create("sprints", "manage", fields)

    async def _create(
        self,
        collection: Literal["bugs", "sprints"],
        capability: Capability,
        fields: Mapping[str, Any],
    ) -> MutationOutcome:
        session, reason, kind = self._authorize(capability)
        if kind is not None:
            return self._fail("", kind, reason or describe_error(kind), notify=True)
        context = session.context
        if context is None:
            return self._fail("", "not_configured", describe_error("not_configured"), notify=True)

        now = self._clock()
        try:
            if collection == "bugs":
                identity = session.identity
                reporter = (identity.email or identity.uid) if identity is not None else None
                document = build_bug_document(fields, reporter=reporter, now=now)
            else:
                document = build_sprint_document(fields, now=now)
        except ValueError as exc:
            return self._fail("", "validation", str(exc), notify=True)

        path = context.collection_path(collection)
        try:
            new_id = await self._bounded(self._store.create_document(path, document))
        except (StoreError, TimeoutError, OSError) as exc:
            kind = classify_exception(exc)
            code = exc.code if isinstance(exc, StoreError) else None
            logger.warning(
                "Create in %s failed: %s",
                collection,
                exc,
                extra={"collection": collection, "outcome": kind, "error": str(exc)},
            )
            return self._fail("", kind, describe_error(kind, code), notify=True)
        except Exception as exc:
            logger.error(
                "Create in %s failed unexpectedly: %s",
                collection,
                exc,
                exc_info=True,
                extra={"collection": collection, "outcome": "unknown", "error": str(exc)},
            )
            return self._fail("", "unknown", describe_error("unknown"), notify=True)

        label = "Bug" if collection == "bugs" else "Sprint"
        message = f"{label} created"
        logger.info(message, extra={"collection": collection, "entity_id": new_id, "outcome": "ok"})
        self._notify(Notification(level="success", title=message, message=document.get("title") or document["name"]))
        return MutationOutcome(entity_id=new_id, ok=True, message=message, patch=document)
