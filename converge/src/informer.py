from __future__ import annotations

import enum
import logging
import queue
import random
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass

from converge.src.errors import AccessDeniedError, ResourceVersionTooOldError
from converge.src.metrics import METRICS
from converge.src.records import ReconcileKey, ResourceRecord
from converge.src.store import (
    ADDED,
    BOOKMARK,
    DELETED,
    MODIFIED,
    ListResult,
    StateStore,
    WatchEvent,
    WatchStream,
)

LOGGER = logging.getLogger(__name__)


class EventType(enum.Enum):
    ADDED = "Added"
    UPDATED = "Updated"
    DELETED = "Deleted"
    RESYNCED = "Resynced"


@dataclass(frozen=True)
class InformerEvent:
    """A normalized change notification.  ``record`` is a private snapshot copy."""

    type: EventType
    key: ReconcileKey
    record: ResourceRecord


class Cache:
    """Local mirror of one kind's records, plus an owner-uid index.

    Written only by the owning informer's thread and read concurrently by
    reconcile workers.  Readers always receive copies.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._items: dict[ReconcileKey, ResourceRecord] = {}
        self._owner_index: dict[str, set[ReconcileKey]] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def get(self, key: ReconcileKey) -> ResourceRecord | None:
        with self._lock:
            record = self._items.get(key)
            return None if record is None else record.copy()

    def list(self) -> list[ResourceRecord]:
        with self._lock:
            return [record.copy() for record in self._items.values()]

    def keys(self) -> list[ReconcileKey]:
        with self._lock:
            return list(self._items)

    def by_owner(self, owner_uid: str) -> list[ResourceRecord]:
        with self._lock:
            keys = self._owner_index.get(owner_uid, set())
            return [self._items[key].copy() for key in sorted(keys) if key in self._items]

    def put(self, record: ResourceRecord) -> ResourceRecord | None:
        with self._lock:
            previous = self._items.get(record.key)
            if previous is not None:
                self._unindex(previous)
            stored = record.copy()
            self._items[record.key] = stored
            for ref in stored.owner_references:
                self._owner_index.setdefault(ref.uid, set()).add(stored.key)
            return previous

    def remove(self, key: ReconcileKey) -> ResourceRecord | None:
        with self._lock:
            previous = self._items.pop(key, None)
            if previous is not None:
                self._unindex(previous)
            return previous

    def _unindex(self, record: ResourceRecord) -> None:
        for ref in record.owner_references:
            keys = self._owner_index.get(ref.uid)
            if keys is None:
                continue
            keys.discard(record.key)
            if not keys:
                del self._owner_index[ref.uid]


class Informer:
    """Mirrors one kind from the store into a :class:`Cache` and emits change events.

    The algorithm:

    1. List the kind (retrying with jittered exponential backoff) and seed the
       cache; this marks the informer synced.
    2. Watch from the list's ``resource_version``.  Every event, including
       store ``BOOKMARK`` events, advances the resume bookmark so a dropped
       connection resumes without a re-list.
    3. If the store reports the bookmark as too old, re-list once, diff the
       result against the cache to emit the drift, then resume watching.
    4. Every ``resync_interval`` seconds, re-list and re-emit every key as
       ``RESYNCED`` (drift as the matching change event) so consumers recover
       from any notification that was lost.

    ``AccessDeniedError`` is treated as fatal: the informer stops and records
    the error in :attr:`error` instead of retrying forever.

    Events are delivered to bounded subscriber channels with blocking puts,
    so a slow consumer applies backpressure to the watch instead of growing an
    unbounded buffer.
    """

    def __init__(
        self,
        store: StateStore,
        kind: str,
        resync_interval: float | None = 300.0,
        watch_timeout_seconds: float = 30.0,
        initial_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.kind = kind
        self.resync_interval = resync_interval
        self.watch_timeout_seconds = watch_timeout_seconds
        self.initial_backoff_seconds = initial_backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.logger = logger or LOGGER
        self.cache = Cache()
        self.synced = threading.Event()
        self.error: BaseException | None = None
        self._resource_version: str | None = None
        self._subscribers: list[queue.Queue[InformerEvent]] = []
        self._subscribers_lock = threading.Lock()
        self._external_stop = threading.Event()
        self._stop: threading.Event = threading.Event()
        self._active_stream: WatchStream | None = None
        self._stream_lock = threading.Lock()

    @property
    def resource_version(self) -> str | None:
        return self._resource_version

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def has_synced(self) -> bool:
        return self.synced.is_set()

    def subscribe(self, maxsize: int = 1024) -> queue.Queue[InformerEvent]:
        """Return a new bounded channel that receives every subsequent event."""
        channel: queue.Queue[InformerEvent] = queue.Queue(maxsize=maxsize)
        with self._subscribers_lock:
            self._subscribers.append(channel)
        return channel

    def unsubscribe(self, channel: queue.Queue[InformerEvent]) -> None:
        with self._subscribers_lock:
            if channel in self._subscribers:
                self._subscribers.remove(channel)

    def get(self, key: ReconcileKey) -> ResourceRecord | None:
        return self.cache.get(key)

    def list(self) -> list[ResourceRecord]:
        return self.cache.list()

    def keys(self) -> list[ReconcileKey]:
        return self.cache.keys()

    def by_owner(self, owner_uid: str) -> list[ResourceRecord]:
        return self.cache.by_owner(owner_uid)

    def wait_for_sync(self, timeout: float | None = None) -> bool:
        """Wait for the initial list.  Returns False on timeout or fatal failure."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.synced.is_set():
            if self.failed:
                return False
            if deadline is not None and time.monotonic() >= deadline:
                return False
            self.synced.wait(timeout=0.05)
        return True

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._stream_lock:
            active_stream = self._active_stream
        if active_stream is not None:
            active_stream.stop()

    def _should_stop(self) -> bool:
        return self._stop.is_set() or self._external_stop.is_set()

    def _dispatch(self, event_type: EventType, record: ResourceRecord) -> None:
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for channel in subscribers:
            event = InformerEvent(type=event_type, key=record.key, record=record.copy())
            while True:
                try:
                    channel.put(event, timeout=0.5)
                    break
                except queue.Full:
                    if self._should_stop():
                        return
                    self.logger.debug("Subscriber channel for %s is full; waiting", self.kind)

    def _apply_watch_event(self, event: WatchEvent) -> None:
        if event.resource_version:
            self._resource_version = event.resource_version
        if event.type == BOOKMARK or event.record is None:
            return
        record = event.record
        if event.type in {ADDED, MODIFIED}:
            previous = self.cache.put(record)
            self._dispatch(EventType.ADDED if previous is None else EventType.UPDATED, record)
        elif event.type == DELETED:
            self.cache.remove(record.key)
            self._dispatch(EventType.DELETED, record)
        else:
            self.logger.warning("Ignoring unsupported watch event type %r for %s", event.type, self.kind)
        METRICS.cache_objects.labels(kind=self.kind).set(len(self.cache))

    def _replace(self, listing: ListResult, unchanged: EventType | None = None) -> None:
        """Replace the cache with a full listing, emitting events for every difference.

        Records whose version did not move are emitted as *unchanged* when given.
        """
        seen: set[ReconcileKey] = set()
        for record in listing.items:
            seen.add(record.key)
            previous = self.cache.put(record)
            if previous is None:
                self._dispatch(EventType.ADDED, record)
            elif previous.resource_version != record.resource_version:
                self._dispatch(EventType.UPDATED, record)
            elif unchanged is not None:
                self._dispatch(unchanged, record)
        for key in self.cache.keys():
            if key in seen:
                continue
            removed = self.cache.remove(key)
            if removed is not None:
                self._dispatch(EventType.DELETED, removed)
        self._resource_version = listing.resource_version
        METRICS.cache_objects.labels(kind=self.kind).set(len(self.cache))

    def resync(self) -> None:
        """Re-list the kind and re-emit every key.

        Drift between cache and store (a lost watch event) comes out as
        ``ADDED``/``UPDATED``/``DELETED``, every other key as ``RESYNCED``.  If the
        list fails the cached records are re-emitted unchanged.
        ``AccessDeniedError`` propagates.
        """
        METRICS.resyncs_total.labels(kind=self.kind).inc()
        try:
            listing = self.store.list(self.kind)
        except AccessDeniedError:
            raise
        except Exception:
            self.logger.warning(
                "Resync list of %s failed; re-emitting cached records", self.kind, exc_info=True
            )
        else:
            self.logger.debug("Resyncing %d %s record(s)", len(listing.items), self.kind)
            self._replace(listing, unchanged=EventType.RESYNCED)
            return

        records = self.cache.list()
        for record in records:
            if self._should_stop():
                return
            self._dispatch(EventType.RESYNCED, record)

    def _fail(self, exc: BaseException) -> None:
        self.error = exc
        self.synced.clear()
        METRICS.watch_errors_total.labels(kind=self.kind).inc()
        self.logger.error(
            "Store access denied for %s (%s); informer halted. "
            "Check the controller's credentials and permissions.",
            self.kind,
            exc,
        )

    def _backoff_wait(self, backoff_seconds: float) -> float:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        self._stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, self.max_backoff_seconds)

    def _next_resync_at(self) -> float | None:
        if not self.resync_interval or self.resync_interval <= 0:
            return None
        return time.monotonic() + self.resync_interval

    def _next_watch_timeout(self, next_resync_at: float | None) -> float:
        """Return the watch timeout, shortened so the stream ends in time for the next resync."""
        if next_resync_at is None:
            return self.watch_timeout_seconds
        remaining = max(0.05, next_resync_at - time.monotonic())
        return min(self.watch_timeout_seconds, remaining)

    def relist(self) -> None:
        listing = self.store.list(self.kind)
        self._replace(listing)
        METRICS.relists_total.labels(kind=self.kind).inc()

    def run(self, stop_event: threading.Event | None = None) -> None:
        """List, then watch, until stopped or a fatal error occurs."""
        self._stop = stop_event or threading.Event()
        self._external_stop.clear()
        self.error = None

        backoff_seconds = self.initial_backoff_seconds
        while not self._should_stop():
            try:
                self._replace(self.store.list(self.kind))
                self.synced.set()
                self.logger.info(
                    "Informer for %s synced %d record(s) at resourceVersion %s",
                    self.kind,
                    len(self.cache),
                    self._resource_version,
                )
                break
            except AccessDeniedError as exc:
                self._fail(exc)
                return
            except Exception:
                self.logger.exception("Initial list of %s failed", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
            backoff_seconds = self._backoff_wait(backoff_seconds)

        if self._should_stop():
            self.synced.clear()
            return

        next_resync_at = self._next_resync_at()
        backoff_seconds = self.initial_backoff_seconds
        stream_count = 0

        while not self._should_stop():
            if next_resync_at is not None and time.monotonic() >= next_resync_at:
                try:
                    self.resync()
                except AccessDeniedError as exc:
                    self._fail(exc)
                    return
                next_resync_at = self._next_resync_at()

            stream: WatchStream | None = None
            try:
                stream = self.store.watch(
                    self.kind,
                    self._resource_version,
                    timeout_seconds=self._next_watch_timeout(next_resync_at),
                )
                with self._stream_lock:
                    self._active_stream = stream
                if self._should_stop():
                    break
                if stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.kind).inc()
                stream_count += 1

                for event in stream:
                    if self._should_stop():
                        break
                    self._apply_watch_event(event)
                    if next_resync_at is not None and time.monotonic() >= next_resync_at:
                        break

                backoff_seconds = self.initial_backoff_seconds
            except ResourceVersionTooOldError:
                self.logger.warning(
                    "Watch bookmark %s for %s expired, re-listing", self._resource_version, self.kind
                )
                try:
                    self.relist()
                except AccessDeniedError as exc:
                    self._fail(exc)
                    return
                except Exception:
                    self.logger.exception("Failed to re-list %s after expired bookmark", self.kind)
                    METRICS.watch_errors_total.labels(kind=self.kind).inc()
                    backoff_seconds = self._backoff_wait(backoff_seconds)
            except AccessDeniedError as exc:
                self._fail(exc)
                return
            except Exception:
                self.logger.exception("Watch of %s failed", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                backoff_seconds = self._backoff_wait(backoff_seconds)
            finally:
                if stream is not None:
                    stream.stop()
                with self._stream_lock:
                    if self._active_stream is stream:
                        self._active_stream = None

        self.synced.clear()


class InformerFactory:
    """Hands out one shared :class:`Informer` per kind.

    Controllers that watch the same kind share its cache and its watch
    connection.  Informers requested after :meth:`start` are started at once.
    """

    def __init__(
        self,
        store: StateStore,
        resync_interval: float | None = 300.0,
        watch_timeout_seconds: float = 30.0,
    ) -> None:
        self.store = store
        self.resync_interval = resync_interval
        self.watch_timeout_seconds = watch_timeout_seconds
        self._informers: dict[str, Informer] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._lock = threading.Lock()
        self._stop_event: threading.Event | None = None

    @property
    def informers(self) -> dict[str, Informer]:
        with self._lock:
            return dict(self._informers)

    def informer_for(self, kind: str, resync_interval: float | None = None) -> Informer:
        """Return the shared informer for *kind*, creating it on first use.

        A shorter *resync_interval* than the informer already has lowers it;
        a longer one never raises it.
        """
        with self._lock:
            informer = self._informers.get(kind)
            if informer is None:
                informer = Informer(
                    store=self.store,
                    kind=kind,
                    resync_interval=(
                        resync_interval if resync_interval is not None else self.resync_interval
                    ),
                    watch_timeout_seconds=self.watch_timeout_seconds,
                )
                self._informers[kind] = informer
            elif resync_interval and (
                not informer.resync_interval or resync_interval < informer.resync_interval
            ):
                informer.resync_interval = resync_interval
            if self._stop_event is not None and kind not in self._threads:
                self._start_locked(kind, informer)
            return informer

    def _start_locked(self, kind: str, informer: Informer) -> None:
        thread = threading.Thread(
            target=informer.run,
            kwargs={"stop_event": self._stop_event},
            name=f"informer-{kind}",
            daemon=True,
        )
        self._threads[kind] = thread
        thread.start()

    def start(self, stop_event: threading.Event) -> None:
        with self._lock:
            self._stop_event = stop_event
            for kind, informer in self._informers.items():
                if kind not in self._threads:
                    self._start_locked(kind, informer)

    def wait_for_cache_sync(self, kinds: Iterable[str], timeout: float | None = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        for kind in kinds:
            informer = self.informer_for(kind)
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not informer.wait_for_sync(timeout=remaining):
                return False
        return True

    def stop(self, timeout: float | None = None) -> bool:
        """Stop every informer and wait for their threads.  Returns False if any is still alive."""
        with self._lock:
            informers = list(self._informers.values())
            threads = list(self._threads.values())
        for informer in informers:
            informer.request_stop()
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(timeout=remaining)
        return not any(thread.is_alive() for thread in threads)
