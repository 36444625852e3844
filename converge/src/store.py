from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from converge.src.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    ResourceVersionTooOldError,
)
from converge.src.records import ReconcileKey, ResourceRecord, utc_now

LOGGER = logging.getLogger(__name__)

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"
BOOKMARK = "BOOKMARK"


@dataclass(frozen=True)
class WatchEvent:
    """One change notification from a store watch.

    ``BOOKMARK`` events carry no record; they only advance the resume point.
    """

    type: str
    record: ResourceRecord | None
    resource_version: str


@dataclass(frozen=True)
class ListResult:
    items: list[ResourceRecord]
    resource_version: str


class WatchStream(Protocol):
    def __iter__(self) -> Iterator[WatchEvent]: ...

    def stop(self) -> None: ...


class StateStore(Protocol):
    """Client interface to a watchable, versioned key-value store.

    Every mutating call is conditioned on the version the caller last read,
    and a stale version raises :class:`ConflictError`.
    """

    def get(self, key: ReconcileKey) -> ResourceRecord: ...

    def list(self, kind: str) -> ListResult: ...

    def create(self, record: ResourceRecord) -> ResourceRecord: ...

    def write(
        self, key: ReconcileKey, record: ResourceRecord, expected_version: str | None
    ) -> ResourceRecord: ...

    def delete(
        self, key: ReconcileKey, expected_version: str | None = None
    ) -> ResourceRecord | None: ...

    def watch(
        self, kind: str, since_version: str | None, timeout_seconds: float | None = None
    ) -> WatchStream: ...


def _same_content(left: ResourceRecord, right: ResourceRecord) -> bool:
    return (
        left.spec == right.spec
        and left.status == right.status
        and left.labels == right.labels
        and left.finalizers == right.finalizers
        and left.owner_references == right.owner_references
    )


class InMemoryStore:
    """A watchable store kept in process memory.

    Revisions come from one global counter, so a record's
    ``resource_version`` strictly increases on every accepted write.  The last
    ``history_limit`` change events are retained for watches.  A watch that
    resumes from a revision older than the retained window fails with
    :class:`ResourceVersionTooOldError`, the same way an etcd-backed API server
    answers ``410 Gone`` after compaction.

    Deletion is two-phase: ``delete`` on a record that still carries finalizers
    only stamps ``deletion_timestamp``.  The record is removed by the write that
    clears its last finalizer.
    """

    def __init__(
        self,
        history_limit: int = 1000,
        bookmark_interval_seconds: float = 1.0,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        if history_limit < 1:
            raise ValueError("history_limit must be >= 1")
        self.history_limit = history_limit
        self.bookmark_interval_seconds = bookmark_interval_seconds
        self.now_fn = now_fn
        self._cond = threading.Condition()
        self._objects: dict[ReconcileKey, ResourceRecord] = {}
        self._revision = 0
        self._compacted_revision = 0
        self._history: deque[tuple[int, str, WatchEvent]] = deque()

    @property
    def revision(self) -> int:
        with self._cond:
            return self._revision

    def _emit(self, event_type: str, record: ResourceRecord) -> None:
        """Append a change event.  Caller holds ``_cond`` and has already bumped the revision."""
        event = WatchEvent(type=event_type, record=record.copy(), resource_version=str(self._revision))
        self._history.append((self._revision, record.kind, event))
        while len(self._history) > self.history_limit:
            evicted_revision, _, _ = self._history.popleft()
            self._compacted_revision = evicted_revision
        self._cond.notify_all()

    def compact(self) -> None:
        """Drop all retained history, expiring every outstanding watch bookmark."""
        with self._cond:
            self._history.clear()
            self._compacted_revision = self._revision
            self._cond.notify_all()
        LOGGER.info("Compacted store history at revision %d", self._compacted_revision)

    def get(self, key: ReconcileKey) -> ResourceRecord:
        with self._cond:
            record = self._objects.get(key)
            if record is None:
                raise NotFoundError(f"{key} not found")
            return record.copy()

    def list(self, kind: str) -> ListResult:
        with self._cond:
            items = [record.copy() for key, record in self._objects.items() if key.kind == kind]
            return ListResult(items=items, resource_version=str(self._revision))

    def create(self, record: ResourceRecord) -> ResourceRecord:
        key = record.key
        with self._cond:
            if key in self._objects:
                raise AlreadyExistsError(f"{key} already exists")
            self._revision += 1
            stored = record.evolve(
                uid=record.uid or str(uuid.uuid4()),
                resource_version=str(self._revision),
                generation=1,
                creation_timestamp=self.now_fn(),
                deletion_timestamp=None,
            )
            self._objects[key] = stored
            self._emit(ADDED, stored)
            return stored.copy()

    def write(
        self, key: ReconcileKey, record: ResourceRecord, expected_version: str | None
    ) -> ResourceRecord:
        with self._cond:
            current = self._objects.get(key)
            if current is None:
                raise NotFoundError(f"{key} not found")
            if expected_version is None or expected_version != current.resource_version:
                raise ConflictError(
                    f"{key} is at version {current.resource_version}, "
                    f"write expected {expected_version}"
                )
            candidate = record.evolve(
                kind=key.kind,
                namespace=key.namespace,
                name=key.name,
                uid=current.uid,
                creation_timestamp=current.creation_timestamp,
                deletion_timestamp=current.deletion_timestamp,
                resource_version=current.resource_version,
                generation=current.generation,
            )
            if _same_content(candidate, current):
                return current.copy()

            self._revision += 1
            candidate.resource_version = str(self._revision)
            if candidate.spec != current.spec:
                candidate.generation = current.generation + 1

            if candidate.is_deleting and not candidate.finalizers:
                del self._objects[key]
                self._emit(DELETED, candidate)
                return candidate.copy()

            self._objects[key] = candidate
            self._emit(MODIFIED, candidate)
            return candidate.copy()

    def delete(
        self, key: ReconcileKey, expected_version: str | None = None
    ) -> ResourceRecord | None:
        """Soft-delete a record with finalizers, remove one without.

        Returns the still-present record after a soft delete, ``None`` once
        the record is gone.
        """
        with self._cond:
            current = self._objects.get(key)
            if current is None:
                raise NotFoundError(f"{key} not found")
            if expected_version is not None and expected_version != current.resource_version:
                raise ConflictError(
                    f"{key} is at version {current.resource_version}, "
                    f"delete expected {expected_version}"
                )
            if current.finalizers:
                if current.is_deleting:
                    return current.copy()
                self._revision += 1
                current.deletion_timestamp = self.now_fn()
                current.resource_version = str(self._revision)
                self._emit(MODIFIED, current)
                return current.copy()

            self._revision += 1
            del self._objects[key]
            current.resource_version = str(self._revision)
            if current.deletion_timestamp is None:
                current.deletion_timestamp = self.now_fn()
            self._emit(DELETED, current)
            return None

    def watch(
        self, kind: str, since_version: str | None, timeout_seconds: float | None = None
    ) -> _MemoryWatchStream:
        since = int(since_version) if since_version else self.revision
        with self._cond:
            if since < self._compacted_revision:
                raise ResourceVersionTooOldError(
                    f"resource version {since} is older than compacted revision "
                    f"{self._compacted_revision}"
                )
        return _MemoryWatchStream(self, kind, since, timeout_seconds)


class _MemoryWatchStream:
    """Iterator over :class:`InMemoryStore` changes for one kind.

    Ends when ``timeout_seconds`` elapses or :meth:`stop` is called.  Emits a
    ``BOOKMARK`` while the kind is quiet so the consumer's resume point keeps
    up with revisions spent on other kinds.
    """

    def __init__(
        self, store: InMemoryStore, kind: str, since: int, timeout_seconds: float | None
    ) -> None:
        self._store = store
        self._kind = kind
        self._since = since
        self._timeout_seconds = timeout_seconds
        self._stopped = False

    def stop(self) -> None:
        with self._store._cond:
            self._stopped = True
            self._store._cond.notify_all()

    def __iter__(self) -> Iterator[WatchEvent]:
        store = self._store
        started = time.monotonic()
        deadline = None if self._timeout_seconds is None else started + self._timeout_seconds
        last_bookmark = started
        while True:
            with store._cond:
                if self._stopped:
                    return
                if self._since < store._compacted_revision:
                    raise ResourceVersionTooOldError(
                        f"watch fell behind: resource version {self._since} was compacted"
                    )
                events = [
                    event
                    for revision, kind, event in store._history
                    if revision > self._since and kind == self._kind
                ]
                self._since = store._revision
                if not events:
                    now = time.monotonic()
                    if deadline is not None and now >= deadline:
                        return
                    if now - last_bookmark >= store.bookmark_interval_seconds:
                        events = [WatchEvent(BOOKMARK, None, str(self._since))]
                    else:
                        wait_for = store.bookmark_interval_seconds - (now - last_bookmark)
                        if deadline is not None:
                            wait_for = min(wait_for, deadline - now)
                        store._cond.wait(timeout=max(0.0, wait_for))
                        continue
            last_bookmark = time.monotonic()
            for event in events:
                if self._stopped:
                    return
                yield event
