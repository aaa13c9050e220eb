"""BugTracker — the facade the presentation layer talks to.

Composes permission resolution, access checks, live subscriptions, the
mutation coordinator and the derived views.  Derived data (filtered list,
metrics, groups, export) is recomputed on every read; only the snapshot,
the filter spec and the notification log are held.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from bugsync.access import AccessDecision, AccessValidator, Session
from bugsync.config import TrackerConfig
from bugsync.context import COLLECTIONS, ActiveContext, Identity
from bugsync.errors import StoreError, TrackerError
from bugsync.filters import BugGroup, apply_filters, group_bugs, normalize_filter_spec
from bugsync.metrics import compute_metrics
from bugsync.models import Bug, Sprint, TeamMember, resolve_member_name, utc_now
from bugsync.mutations import BulkResult, MutationCoordinator, MutationOutcome, Notification, Notifier
from bugsync.permissions import Capabilities, resolve_capabilities
from bugsync.store import DocumentStore
from bugsync.subscriptions import BUG_ORDER, Snapshot, SnapshotListener, SubscriptionManager, SyncState
from bugsync.types.api import BugMetrics, NotificationDict, StateResponse
from bugsync.types.filters import FilterSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrackerState:
    """Everything a view needs to render, captured at one instant."""

    raw_entities: tuple[Bug, ...]
    filtered_entities: list[Bug]
    team_members: tuple[TeamMember, ...]
    sprints: tuple[Sprint, ...]
    filter_spec: FilterSpec
    in_flight: frozenset[str]
    last_error: TrackerError | None
    loading: bool
    capabilities: Capabilities
    sync_state: SyncState
    snapshot_version: int

    def to_dict(self) -> StateResponse:
        spec = dict(self.filter_spec)
        if "tags" in spec:
            spec["tags"] = list(spec["tags"])
        return {
            "raw_count": len(self.raw_entities),
            "filtered": [b.to_dict() for b in self.filtered_entities],
            "team_members": [m.to_dict() for m in self.team_members],
            "sprints": [s.to_dict() for s in self.sprints],
            "filter_spec": spec,
            "in_flight": sorted(self.in_flight),
            "last_error": self.last_error.to_dict() if self.last_error is not None else None,
            "loading": self.loading,
            "sync_state": self.sync_state,
            "snapshot_version": self.snapshot_version,
            "capabilities": self.capabilities.to_dict(),
        }


class BugTracker:
    def __init__(
        self,
        store: DocumentStore,
        *,
        config: TrackerConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
        notifier: Notifier | None = None,
    ) -> None:
        self.config = config or TrackerConfig()
        self._store = store
        self._clock = clock
        self._external_notifier = notifier
        self._validator = AccessValidator(require_loaded_permissions=self.config.require_loaded_permissions)
        self._subscriptions = SubscriptionManager(store, validator=self._validator)
        self._session = Session()
        self._session_error: TrackerError | None = None
        self._filter_spec: FilterSpec = {}
        self._notifications: deque[Notification] = deque(maxlen=self.config.notification_limit)
        self._mutations = MutationCoordinator(
            store,
            self._subscriptions,
            lambda: self._session,
            validator=self._validator,
            notifier=self._record_notification,
            clock=clock,
            timeout=self.config.mutation_timeout_seconds,
        )

    # -- Session -----------------------------------------------------------

    @property
    def session(self) -> Session:
        return self._session

    @property
    def subscriptions(self) -> SubscriptionManager:
        return self._subscriptions

    def set_session(
        self,
        identity: Identity | None,
        profile: Mapping[str, Any] | None = None,
        context: ActiveContext | None = None,
    ) -> AccessDecision:
        """Adopt a new identity/profile/context and (re)start or stop syncing.

        *profile* None means the permission payload is still loading.
        """
        account_kind = context.kind if context is not None else "organization"
        capabilities = resolve_capabilities(identity, profile, account_kind=account_kind)
        self._session = Session(identity=identity, context=context, capabilities=capabilities)
        decision = self._validator.check_subscribe(identity, context, capabilities)
        if decision and context is not None:
            self._session_error = None
            self._subscriptions.start(context)
        else:
            self._subscriptions.stop(reset_access=False)
            self._session_error = decision.to_error()
        return decision

    def clear_session(self) -> None:
        """Sign-out: stop every feed and forget the identity."""
        self._subscriptions.stop()
        self._session = Session()
        self._session_error = None

    def add_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        return self._subscriptions.add_listener(listener)

    def retry(self) -> bool:
        return self._subscriptions.retry()

    # -- Filters -----------------------------------------------------------

    @property
    def filter_spec(self) -> FilterSpec:
        return self._filter_spec

    def set_filter_spec(self, spec: Mapping[str, Any] | None) -> FilterSpec:
        """Replace the whole filter spec.  Raises ValueError on invalid input."""
        self._filter_spec = normalize_filter_spec(spec or {})
        return self._filter_spec

    def update_filters(self, changes: Mapping[str, Any]) -> FilterSpec:
        """Merge *changes* into the current spec; ``"all"`` or None clears a dimension."""
        merged: dict[str, Any] = dict(self._filter_spec)
        merged.update(changes)
        return self.set_filter_spec(merged)

    # -- Derived views -----------------------------------------------------

    def _snapshot(self) -> Snapshot:
        return self._subscriptions.snapshot

    def filtered(self, spec: FilterSpec | None = None) -> list[Bug]:
        """Bugs matching *spec*, or the tracker's own filter spec when omitted."""
        return apply_filters(
            self._snapshot().bugs,
            self._filter_spec if spec is None else spec,
            now=self._clock(),
            short_id_length=self.config.short_id_length,
        )

    def state(self) -> TrackerState:
        snapshot = self._snapshot()
        sync_state = self._subscriptions.state
        return TrackerState(
            raw_entities=snapshot.bugs,
            filtered_entities=self.filtered(),
            team_members=snapshot.members,
            sprints=snapshot.sprints,
            filter_spec=self._filter_spec,
            in_flight=self._mutations.in_flight,
            last_error=self._session_error or snapshot.last_error,
            loading=sync_state in ("starting", "restarting"),
            capabilities=self._session.capabilities,
            sync_state=sync_state,
            snapshot_version=snapshot.version,
        )

    def metrics(self, *, filtered: bool = False) -> BugMetrics:
        bugs = self.filtered() if filtered else list(self._snapshot().bugs)
        return compute_metrics(bugs, now=self._clock())

    def groups(self, by: str = "none") -> list[BugGroup]:
        return group_bugs(self.filtered(), by, sprints=self._snapshot().sprints)

    def export_entities(self) -> list[dict[str, Any]]:
        """Filtered bugs as plain dicts, with the short id and assignee name resolved."""
        members = self._snapshot().members
        length = self.config.short_id_length
        return [
            {
                **bug.to_dict(),
                "short_id": bug.short_id(length),
                "assignee_name": resolve_member_name(bug.assignee, members),
            }
            for bug in self.filtered()
        ]

    # -- Notifications -----------------------------------------------------

    def _record_notification(self, notification: Notification) -> None:
        self._notifications.append(notification)
        if self._external_notifier is not None:
            self._external_notifier(notification)

    def notifications(self) -> list[NotificationDict]:
        return [n.to_dict() for n in self._notifications]

    def clear_notifications(self) -> None:
        self._notifications.clear()

    # -- Mutations ---------------------------------------------------------

    async def mutate_status(self, entity_id: str, status: str) -> MutationOutcome:
        return await self._mutations.mutate(entity_id, {"status": status})

    async def mutate_severity(self, entity_id: str, severity: str) -> MutationOutcome:
        return await self._mutations.mutate(entity_id, {"severity": severity})

    async def mutate_assignment(self, entity_id: str, assignee: str | None) -> MutationOutcome:
        return await self._mutations.mutate(entity_id, {"assignee": assignee})

    async def mutate_environment(self, entity_id: str, environment: str) -> MutationOutcome:
        return await self._mutations.mutate(entity_id, {"environment": environment})

    async def mutate_frequency(self, entity_id: str, frequency: str) -> MutationOutcome:
        return await self._mutations.mutate(entity_id, {"frequency": frequency})

    async def mutate_title(self, entity_id: str, title: str) -> MutationOutcome:
        return await self._mutations.mutate(entity_id, {"title": title})

    async def mutate_arbitrary(self, entity_id: str, patch: Mapping[str, Any]) -> MutationOutcome:
        return await self._mutations.mutate(entity_id, patch)

    async def delete_entity(self, entity_id: str) -> MutationOutcome:
        return await self._mutations.delete(entity_id)

    async def create_entity(self, fields: Mapping[str, Any]) -> MutationOutcome:
        return await self._mutations.create_entity(fields)

    async def create_sprint(self, fields: Mapping[str, Any]) -> MutationOutcome:
        return await self._mutations.create_sprint(fields)

    async def bulk_action(self, entity_ids: Iterable[str], action: str) -> BulkResult:
        return await self._mutations.bulk_action(entity_ids, action)

    # -- Refetch -----------------------------------------------------------

    async def manual_refetch(self) -> bool:
        """Re-read all three collections once, outside the live feeds.

        Results that arrive after a context switch are discarded.  Returns
        True when every collection was refreshed.
        """
        session = self._session
        decision = self._validator.check_subscribe(session.identity, session.context, session.capabilities)
        context = session.context
        if not decision or context is None:
            self._session_error = decision.to_error()
            return False
        generation = self._subscriptions.generation
        results = await asyncio.gather(
            *(
                self._store.query_documents(context.collection_path(name), BUG_ORDER if name == "bugs" else None)
                for name in COLLECTIONS
            ),
            return_exceptions=True,
        )
        refreshed = True
        for name, result in zip(COLLECTIONS, results, strict=True):
            if isinstance(result, StoreError | TimeoutError | OSError):
                self._subscriptions.report_error(name, result, generation=generation)
                refreshed = False
            elif isinstance(result, BaseException):
                raise result
            elif not self._subscriptions.replace_collection(name, result, generation=generation):
                refreshed = False
        if refreshed:
            logger.info("Manual refetch complete", extra={"outcome": "ok"})
        else:
            self._record_notification(
                Notification(level="warning", title="Refresh incomplete", message="Some data could not be reloaded.")
            )
        return refreshed

    # -- Teardown ----------------------------------------------------------

    def close(self) -> None:
        self._subscriptions.stop()
