"""Live synchronization of the bug, member and sprint collections.

``SubscriptionManager`` owns the three store feeds for one workspace
context and publishes an immutable ``Snapshot`` after every update.  Feed
callbacks carry the generation that opened them; once the manager is
stopped or restarted those callbacks fall through as no-ops, so data from
a previous workspace can never land in the current snapshot.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from functools import partial
from typing import Any, Literal, TypeAlias

from bugsync.access import AccessValidator
from bugsync.context import COLLECTIONS, ActiveContext, CollectionName
from bugsync.errors import StoreError, TrackerError, classify_exception, describe_error
from bugsync.models import Bug, Sprint, TeamMember
from bugsync.store import DocumentStore, OrderBy, StoreDocument, Unsubscribe

logger = logging.getLogger(__name__)

SyncState: TypeAlias = Literal["idle", "starting", "active", "restarting", "stopped"]
SnapshotListener: TypeAlias = Callable[["Snapshot"], None]

BUG_ORDER: OrderBy = ("created_at", "desc")


@dataclass(frozen=True)
class Snapshot:
    """One consistent view of all three collections.

    Replaced wholesale on every update; ``version`` increases monotonically
    for the lifetime of the manager.
    """

    version: int = 0
    bugs: tuple[Bug, ...] = ()
    members: tuple[TeamMember, ...] = ()
    sprints: tuple[Sprint, ...] = ()
    errors: Mapping[str, TrackerError] = field(default_factory=dict)
    loaded: frozenset[str] = frozenset()

    def bug(self, entity_id: str) -> Bug | None:
        return next((b for b in self.bugs if b.id == entity_id), None)

    @property
    def loading(self) -> bool:
        return any(name not in self.loaded for name in COLLECTIONS)

    @property
    def last_error(self) -> TrackerError | None:
        for name in COLLECTIONS:
            if name in self.errors:
                return self.errors[name]
        return None


@dataclass(frozen=True)
class _Overlay:
    entity_id: str
    fields: dict[str, Any] | None  # None marks a removal
    written_at: datetime

    def superseded_by(self, incoming: Bug | None) -> bool:
        if incoming is None:
            return True
        if self.fields is None:
            return False
        return incoming.updated_at is not None and incoming.updated_at >= self.written_at


class SubscriptionManager:
    def __init__(self, store: DocumentStore, *, validator: AccessValidator | None = None) -> None:
        self._store = store
        self._validator = validator or AccessValidator()
        self._state: SyncState = "idle"
        self._context: ActiveContext | None = None
        self._generation = 0
        self._version = 0
        self._snapshot = Snapshot()
        self._unsubscribers: list[Unsubscribe] = []
        self._listeners: list[SnapshotListener] = []
        self._overlays: dict[str, _Overlay] = {}
        # Last ingested bug feed, before overlays.
        self._remote_bugs: tuple[Bug, ...] = ()

    # -- Read-only views ---------------------------------------------------

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def context(self) -> ActiveContext | None:
        return self._context

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    @property
    def pending_overlays(self) -> frozenset[str]:
        return frozenset(self._overlays)

    def add_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register *listener* for every published snapshot; returns a remover."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # -- Lifecycle ---------------------------------------------------------

    def start(self, context: ActiveContext) -> None:
        """Open the three feeds for *context*.

        A no-op when already running for an equal context; a different
        context fully tears down the previous feeds first.
        """
        if self._state in ("starting", "active") and self._context == context:
            return
        if self._state in ("starting", "active"):
            logger.info("Workspace context changed; restarting subscriptions")
            self._state = "restarting"
            self._teardown()
        self._context = context
        self._overlays.clear()
        self._remote_bugs = ()
        self._publish(Snapshot())
        self._validator.reset()
        self._open_feeds(context)

    def stop(self, *, reset_access: bool = True) -> None:
        """Release every feed and clear local data.  Safe to call repeatedly.

        *reset_access* False keeps the access log-once flag, for a stop caused
        by the denial that just set it.
        """
        if self._state in ("idle", "stopped") and not self._unsubscribers:
            self._state = "stopped"
            return
        self._state = "stopped"
        self._teardown(reset_access=reset_access)
        self._context = None
        self._overlays.clear()
        self._remote_bugs = ()
        self._publish(Snapshot())

    def retry(self) -> bool:
        """Re-open the feeds for the current context, keeping last-known-good data.

        Returns False when there is no context to retry.
        """
        context = self._context
        if context is None or self._state == "stopped":
            return False
        self._state = "restarting"
        self._teardown()
        self._publish(replace(self._snapshot, errors={}))
        self._open_feeds(context)
        return True

    def _open_feeds(self, context: ActiveContext) -> None:
        self._generation += 1
        generation = self._generation
        self._state = "starting"
        for name in COLLECTIONS:
            path = context.collection_path(name)
            order_by = BUG_ORDER if name == "bugs" else None
            try:
                unsubscribe = self._store.subscribe(
                    path,
                    order_by,
                    partial(self._on_snapshot, generation, name),
                    partial(self._on_error, generation, name),
                )
            except StoreError as exc:
                self._on_error(generation, name, exc)
                continue
            self._unsubscribers.append(unsubscribe)
        logger.debug("Opened feeds for workspace %s (generation %d)", context.workspace_id, generation)

    def _teardown(self, *, reset_access: bool = True) -> None:
        # Invalidate in-flight callbacks before releasing the feeds.
        self._generation += 1
        unsubscribers, self._unsubscribers = self._unsubscribers, []
        for unsubscribe in unsubscribers:
            try:
                unsubscribe()
            except Exception:
                logger.warning("Failed to release a subscription", exc_info=True)
        if reset_access:
            self._validator.reset()

    # -- Feed callbacks ----------------------------------------------------

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and self._state in ("starting", "active")

    def _on_snapshot(self, generation: int, name: CollectionName, documents: Sequence[StoreDocument]) -> None:
        if not self._is_current(generation):
            return
        self._ingest(name, documents)

    def _on_error(self, generation: int, name: CollectionName, exc: BaseException) -> None:
        self.report_error(name, exc, generation=generation)

    def report_error(self, name: CollectionName, exc: BaseException, *, generation: int | None = None) -> bool:
        """Record a failure of one collection as UI state; never raises.

        Authorization failures clear the collection.  Anything else keeps
        the last-known-good data and is reported as retryable.  Returns
        False when *generation* is outdated and the error was discarded.
        """
        expected = self._generation if generation is None else generation
        if not self._is_current(expected):
            return False
        kind = classify_exception(exc)
        code = exc.code if isinstance(exc, StoreError) else None
        errors = dict(self._snapshot.errors)
        loaded = self._snapshot.loaded | {name}
        if kind == "access_denied":
            errors[name] = TrackerError(kind="access_denied", message=describe_error(kind, code), collection=name)
            snapshot = replace(self._snapshot, errors=errors, loaded=loaded, **{name: ()})
            if name == "bugs":
                self._remote_bugs = ()
                self._overlays.clear()
        else:
            # Keep last-known-good data; the error stays retryable.
            errors[name] = TrackerError(kind="transient", message=describe_error("transient", code), collection=name)
            snapshot = replace(self._snapshot, errors=errors, loaded=loaded)
        logger.warning(
            "Feed error on %s: %s",
            name,
            exc,
            extra={"collection": name, "outcome": kind, "error": str(exc)},
        )
        self._mark_active(snapshot)
        self._publish(snapshot)
        return True

    def replace_collection(
        self,
        name: CollectionName,
        documents: Sequence[StoreDocument],
        *,
        generation: int | None = None,
    ) -> bool:
        """Ingest a one-shot query result as if the feed had delivered it.

        *generation* is the value captured before the query was issued; a
        result from an outdated generation is discarded and False returned.
        """
        expected = self._generation if generation is None else generation
        if not self._is_current(expected):
            return False
        self._ingest(name, documents)
        return True

    def _ingest(self, name: CollectionName, documents: Sequence[StoreDocument]) -> None:
        errors = {k: v for k, v in self._snapshot.errors.items() if k != name}
        loaded = self._snapshot.loaded | {name}
        if name == "bugs":
            self._remote_bugs = tuple(Bug.from_document(doc.id, doc.data) for doc in documents)
            snapshot = replace(self._snapshot, bugs=self._reconcile(), errors=errors, loaded=loaded)
        elif name == "members":
            members = tuple(TeamMember.from_document(doc.id, doc.data) for doc in documents)
            snapshot = replace(self._snapshot, members=members, errors=errors, loaded=loaded)
        else:
            sprints = tuple(Sprint.from_document(doc.id, doc.data) for doc in documents)
            snapshot = replace(self._snapshot, sprints=sprints, errors=errors, loaded=loaded)
        self._mark_active(snapshot)
        self._publish(snapshot)

    def _mark_active(self, snapshot: Snapshot) -> None:
        if self._state == "starting" and not snapshot.loading:
            self._state = "active"

    # -- Optimistic overlays -----------------------------------------------

    def _reconcile(self) -> tuple[Bug, ...]:
        """Apply outstanding overlays to the last remote bug feed.

        Overlays the feed has caught up with are dropped for good.
        """
        by_id = {bug.id: bug for bug in self._remote_bugs}
        for entity_id, overlay in list(self._overlays.items()):
            if overlay.superseded_by(by_id.get(entity_id)):
                del self._overlays[entity_id]
        result: list[Bug] = []
        for bug in self._remote_bugs:
            overlay = self._overlays.get(bug.id)
            if overlay is None:
                result.append(bug)
            elif overlay.fields is not None:
                result.append(bug.with_fields(overlay.fields))
        return tuple(result)

    def apply_local_patch(self, entity_id: str, fields: Mapping[str, Any], written_at: datetime) -> bool:
        """Fold a committed write into the snapshot ahead of the feed.

        Returns False when the entity is not in the current snapshot.
        """
        if self._snapshot.bug(entity_id) is None:
            return False
        existing = self._overlays.get(entity_id)
        merged = dict(existing.fields or {}) if existing is not None else {}
        merged.update(fields)
        self._overlays[entity_id] = _Overlay(entity_id=entity_id, fields=merged, written_at=written_at)
        self._publish(replace(self._snapshot, bugs=self._reconcile()))
        return True

    def apply_local_removal(self, entity_id: str, written_at: datetime) -> bool:
        if self._snapshot.bug(entity_id) is None:
            return False
        self._overlays[entity_id] = _Overlay(entity_id=entity_id, fields=None, written_at=written_at)
        self._publish(replace(self._snapshot, bugs=self._reconcile()))
        return True

    # -- Publication -------------------------------------------------------

    def _publish(self, snapshot: Snapshot) -> None:
        self._version += 1
        self._snapshot = replace(snapshot, version=self._version)
        for listener in list(self._listeners):
            try:
                listener(self._snapshot)
            except Exception:
                logger.exception("Snapshot listener failed")
