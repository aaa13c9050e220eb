"""Document store protocol and an in-process implementation.

The engine never speaks a wire protocol directly; it consumes the
``DocumentStore`` protocol below.  ``MemoryStore`` backs the dashboard
command and the test suite.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal, Protocol, TypeAlias

from bugsync.errors import StoreError
from bugsync.models import normalize_timestamp

logger = logging.getLogger(__name__)

Direction: TypeAlias = Literal["asc", "desc"]
OrderBy: TypeAlias = tuple[str, Direction]
Unsubscribe: TypeAlias = Callable[[], None]


@dataclass(frozen=True)
class StoreDocument:
    id: str
    data: dict[str, Any] = field(default_factory=dict)


SnapshotCallback: TypeAlias = Callable[[list[StoreDocument]], None]
ErrorCallback: TypeAlias = Callable[[BaseException], None]


class DocumentStore(Protocol):
    """Minimal surface the sync and mutation engine needs from a backend.

    Every operation reports failure by raising ``StoreError``; live feeds
    report failure through ``on_error`` instead.
    """

    def subscribe(
        self,
        path: str,
        order_by: OrderBy | None,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> Unsubscribe: ...

    async def write_fields(self, path: str, doc_id: str, patch: Mapping[str, Any]) -> None: ...

    async def create_document(self, path: str, fields: Mapping[str, Any], doc_id: str | None = None) -> str: ...

    async def delete_document(self, path: str, doc_id: str) -> None: ...

    async def query_documents(self, path: str, order_by: OrderBy | None = None) -> list[StoreDocument]: ...


# ---------------------------------------------------------------------------
# Seed files
# ---------------------------------------------------------------------------


def _documents_by_id(raw: Any, name: str) -> dict[str, dict[str, Any]]:
    if isinstance(raw, Mapping):
        return {str(k): dict(v) for k, v in raw.items() if isinstance(v, Mapping)}
    if isinstance(raw, list):
        docs: dict[str, dict[str, Any]] = {}
        for item in raw:
            if not isinstance(item, Mapping):
                continue
            doc_id = item.get("id") or item.get("bug_id") or item.get("bugId")
            if not isinstance(doc_id, str) or not doc_id:
                doc_id = uuid.uuid4().hex[:20]
            docs[doc_id] = {k: v for k, v in item.items() if k != "id"}
        return docs
    msg = f"Collection {name!r} must be a JSON object or array"
    raise ValueError(msg)


def read_seed_file(path: Path) -> dict[str, dict[str, dict[str, Any]]]:
    """Load collections from a JSON export.

    The file holds ``bugs``, ``members`` and ``sprints`` keys, each either a
    mapping of document id to fields or an array of documents carrying an
    ``id``.  A bare array is taken as the bug collection.  Raises ValueError
    on malformed content and OSError when the file cannot be read.
    """
    try:
        raw = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        msg = f"{path} is not valid JSON: {exc}"
        raise ValueError(msg) from exc
    if isinstance(raw, list):
        raw = {"bugs": raw}
    if not isinstance(raw, dict):
        msg = f"{path} must contain a JSON object or array"
        raise ValueError(msg)
    return {name: _documents_by_id(raw.get(name, {}), name) for name in ("bugs", "members", "sprints")}


# ---------------------------------------------------------------------------
# In-process implementation
# ---------------------------------------------------------------------------

_FAR_PAST = datetime.min.replace(tzinfo=UTC)


def order_documents(docs: Sequence[StoreDocument], order_by: OrderBy | None) -> list[StoreDocument]:
    """Sort documents on one field; documents missing the field sort last."""
    if order_by is None:
        return list(docs)
    key, direction = order_by

    def sort_key(doc: StoreDocument) -> Any:
        value = doc.data.get(key)
        stamp = normalize_timestamp(value)
        if stamp is not None:
            return stamp
        return _FAR_PAST if value is None else value

    present = [d for d in docs if d.data.get(key) is not None]
    missing = [d for d in docs if d.data.get(key) is None]
    return sorted(present, key=sort_key, reverse=direction == "desc") + missing


@dataclass
class _Listener:
    order_by: OrderBy | None
    on_snapshot: SnapshotCallback
    on_error: ErrorCallback
    active: bool = True


class MemoryStore:
    """Dict-backed DocumentStore with live feeds.

    Feed callbacks are dispatched with ``loop.call_soon`` when an event loop
    is running, so a write returns before its own snapshot is delivered, as
    with a remote backend.  Without a running loop they are invoked inline.
    """

    def __init__(self, *, latency: float = 0.0) -> None:
        self.latency = latency
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._listeners: dict[str, list[_Listener]] = {}

    # -- Seeding and inspection --------------------------------------------

    def seed(self, path: str, documents: Mapping[str, Mapping[str, Any]]) -> None:
        """Replace the contents of *path* without round-tripping the feed contract."""
        self._collections[path] = {doc_id: dict(data) for doc_id, data in documents.items()}
        logger.debug("Seeded %d document(s) into %s", len(documents), path)
        self._notify(path)

    def get(self, path: str, doc_id: str) -> dict[str, Any] | None:
        doc = self._collections.get(path, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    def listener_count(self, path: str | None = None) -> int:
        if path is not None:
            return sum(1 for lst in self._listeners.get(path, []) if lst.active)
        return sum(1 for listeners in self._listeners.values() for lst in listeners if lst.active)

    def fail_feed(self, path: str, error: BaseException) -> None:
        """Deliver *error* to every live feed on *path*."""
        for listener in list(self._listeners.get(path, [])):
            if listener.active:
                self._dispatch(listener, lambda lst=listener: lst.on_error(error))

    # -- Protocol ----------------------------------------------------------

    def subscribe(
        self,
        path: str,
        order_by: OrderBy | None,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> Unsubscribe:
        listener = _Listener(order_by=order_by, on_snapshot=on_snapshot, on_error=on_error)
        self._listeners.setdefault(path, []).append(listener)
        self._deliver(path, listener)

        def unsubscribe() -> None:
            listener.active = False
            listeners = self._listeners.get(path, [])
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    async def write_fields(self, path: str, doc_id: str, patch: Mapping[str, Any]) -> None:
        await self._simulate_latency()
        doc = self._collections.get(path, {}).get(doc_id)
        if doc is None:
            raise StoreError("not-found", f"No document {doc_id} in {path}")
        doc.update(copy.deepcopy(dict(patch)))
        self._notify(path)

    async def create_document(self, path: str, fields: Mapping[str, Any], doc_id: str | None = None) -> str:
        await self._simulate_latency()
        collection = self._collections.setdefault(path, {})
        new_id = doc_id or uuid.uuid4().hex[:20]
        if new_id in collection:
            raise StoreError("already-exists", f"Document {new_id} already exists in {path}")
        collection[new_id] = copy.deepcopy(dict(fields))
        self._notify(path)
        return new_id

    async def delete_document(self, path: str, doc_id: str) -> None:
        await self._simulate_latency()
        collection = self._collections.get(path, {})
        if collection.pop(doc_id, None) is not None:
            self._notify(path)

    async def query_documents(self, path: str, order_by: OrderBy | None = None) -> list[StoreDocument]:
        await self._simulate_latency()
        return self._documents(path, order_by)

    # -- Internals ---------------------------------------------------------

    async def _simulate_latency(self) -> None:
        if self.latency > 0:
            await asyncio.sleep(self.latency)

    def _documents(self, path: str, order_by: OrderBy | None) -> list[StoreDocument]:
        docs = [StoreDocument(id=k, data=copy.deepcopy(v)) for k, v in self._collections.get(path, {}).items()]
        return order_documents(docs, order_by)

    def _notify(self, path: str) -> None:
        for listener in list(self._listeners.get(path, [])):
            self._deliver(path, listener)

    def _deliver(self, path: str, listener: _Listener) -> None:
        docs = self._documents(path, listener.order_by)
        self._dispatch(listener, lambda: listener.on_snapshot(docs))

    @staticmethod
    def _dispatch(listener: _Listener, callback: Callable[[], None]) -> None:
        def run() -> None:
            # Unsubscribed between scheduling and delivery.
            if listener.active:
                callback()

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            run()
            return
        loop.call_soon(run)
