from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from converge.src.config import ConfigError, EngineSettings
from converge.src.errors import CacheSyncError, FatalError
from converge.src.informer import EventType, Informer, InformerEvent, InformerFactory
from converge.src.leader import LeaseManager, default_identity
from converge.src.metrics import METRICS
from converge.src.reconciler import (
    ReconcileContext,
    ReconcileFn,
    Reconciler,
    Worker,
    as_reconciler,
)
from converge.src.records import ReconcileKey
from converge.src.store import StateStore
from converge.src.workqueue import RateLimiter, RateLimitingQueue, default_controller_rate_limiter

LOGGER = logging.getLogger(__name__)

KeyMapper = Callable[[InformerEvent], list[ReconcileKey]]


@dataclass(frozen=True)
class Watch:
    """Map events of another kind onto keys of the controller's own kind."""

    kind: str
    map_fn: Callable[[InformerEvent], Iterable[ReconcileKey]]
    event_types: frozenset[EventType] | None = None


@dataclass(frozen=True)
class ControllerOptions:
    """Per-controller configuration.

    Attributes:
        workers:        Concurrent reconciles for this controller (>= 1).
        resync_interval: Seconds between full cache resyncs; ``None`` or 0 disables.
        lease_name:     Lease gating this controller.  ``None`` runs without
                        leader election (single-replica mode).
        cache_sync_timeout: Seconds to wait for caches before declaring the
                        controller failed.
        stop_timeout:   Seconds to wait for in-flight reconciles after losing the
                        lease; defaults to ``renew_deadline_seconds``.
        owns:           Kinds whose events are routed to their controlling owner.
        watches:        Extra event-to-key mappings.
    """

    workers: int = 2
    resync_interval: float | None = 300.0
    lease_name: str | None = None
    lease_namespace: str = "default"
    lease_duration_seconds: float = 15
    renew_deadline_seconds: float = 10
    retry_period_seconds: float = 2
    cache_sync_timeout: float = 60.0
    stop_timeout: float | None = None
    owns: tuple[str, ...] = ()
    watches: tuple[Watch, ...] = ()
    backoff_base_seconds: float = 0.005
    backoff_max_seconds: float = 1000.0
    overall_qps: float = 10.0
    overall_burst: int = 100
    channel_size: int = 1024
    rate_limiter_factory: Callable[[], RateLimiter] | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.workers < 1:
            raise ConfigError(f"workers must be >= 1, got: {self.workers}")
        if self.resync_interval is not None and self.resync_interval < 0:
            raise ConfigError("resync_interval must be >= 0")
        if self.lease_name is not None and not self.lease_name.strip():
            raise ConfigError("lease_name must be a non-empty string when set")
        if self.renew_deadline_seconds >= self.lease_duration_seconds:
            raise ConfigError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if self.retry_period_seconds >= self.renew_deadline_seconds:
            raise ConfigError("retry_period_seconds must be smaller than renew_deadline_seconds")
        if self.cache_sync_timeout <= 0:
            raise ConfigError("cache_sync_timeout must be > 0")
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ConfigError("backoff_max_seconds must be >= backoff_base_seconds")
        if self.channel_size < 1:
            raise ConfigError("channel_size must be >= 1")

    @classmethod
    def from_settings(
        cls, settings: EngineSettings, lease_name: str | None = None, **overrides: Any
    ) -> ControllerOptions:
        """Build options from process settings; *overrides* win over settings."""
        values: dict[str, Any] = {
            "workers": settings.workers,
            "resync_interval": settings.resync_interval_seconds,
            "lease_name": lease_name if settings.leader_election_enabled else None,
            "lease_namespace": settings.lease_namespace,
            "lease_duration_seconds": settings.lease_duration_seconds,
            "renew_deadline_seconds": settings.renew_deadline_seconds,
            "retry_period_seconds": settings.retry_period_seconds,
            "cache_sync_timeout": settings.cache_sync_timeout_seconds,
            "backoff_base_seconds": settings.backoff_base_seconds,
            "backoff_max_seconds": settings.backoff_max_seconds,
        }
        values.update(overrides)
        return cls(**values)

    def make_rate_limiter(self) -> RateLimiter:
        if self.rate_limiter_factory is not None:
            return self.rate_limiter_factory()
        return default_controller_rate_limiter(
            base_delay=self.backoff_base_seconds,
            max_delay=self.backoff_max_seconds,
            qps=self.overall_qps,
            burst=self.overall_burst,
        )

    @property
    def effective_stop_timeout(self) -> float:
        if self.stop_timeout is not None:
            return self.stop_timeout
        return self.renew_deadline_seconds


class Controller:
    """One kind's informers, work queue and worker pool behind one lease.

    Lifecycle per leadership term:

    1. Informers run from :meth:`start` onwards, so a standby replica keeps
       warm caches.  Their events are dropped while we are not leading.
    2. Wait for every cache to sync before contending for the lease.  A
       replica with cold caches never holds the lease, so the lease is
       renewed for the whole time a leader does reconcile work.
    3. On acquiring the lease, build a fresh queue and cancellation signal,
       enqueue every cached key of our kind, and start the worker pool.
    4. On losing the lease, stop accepting enqueues, raise the cancellation
       signal, shut the queue down, give in-flight reconciles up to
       ``stop_timeout`` to finish, and discard the queue.  Workers still
       running after that are kept track of, and the next term refuses to
       start while any of them is alive.

    A :class:`FatalError` (revoked identity, caches that never sync, an
    informer that lost access, workers stuck from a previous term) halts the
    controller and marks it unhealthy.
    """

    def __init__(
        self,
        kind: str,
        reconciler: Reconciler | ReconcileFn,
        options: ControllerOptions,
        store: StateStore,
        informers: InformerFactory,
        identity: str,
    ) -> None:
        self.kind = kind
        self.reconciler = as_reconciler(reconciler)
        self.options = options
        self.store = store
        self.informers = informers
        self.identity = identity
        self.drain_timeout = options.effective_stop_timeout

        self.leading = threading.Event()
        self.error: BaseException | None = None
        self._stop = threading.Event()
        self._cancel = threading.Event()
        self._queue: RateLimitingQueue | None = None
        self._workers: list[threading.Thread] = []
        self._abandoned: list[threading.Thread] = []
        self._state_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._pump_threads: list[threading.Thread] = []

        self.lease: LeaseManager | None = None
        if options.lease_name:
            self.lease = LeaseManager(
                store=store,
                namespace=options.lease_namespace,
                lease_name=options.lease_name,
                identity=identity,
                lease_duration_seconds=options.lease_duration_seconds,
                renew_deadline_seconds=options.renew_deadline_seconds,
                retry_period_seconds=options.retry_period_seconds,
            )

        primary = informers.informer_for(kind, options.resync_interval)
        self._sources: list[tuple[Informer, queue.Queue[InformerEvent], KeyMapper]] = [
            (primary, primary.subscribe(options.channel_size), self._map_primary)
        ]
        for owned_kind in options.owns:
            informer = informers.informer_for(owned_kind, options.resync_interval)
            self._sources.append((informer, informer.subscribe(options.channel_size), self._map_owned))
        for watch in options.watches:
            informer = informers.informer_for(watch.kind, options.resync_interval)
            self._sources.append(
                (informer, informer.subscribe(options.channel_size), self._mapper_for_watch(watch))
            )

    @property
    def kinds(self) -> list[str]:
        return list(dict.fromkeys(informer.kind for informer, _, _ in self._sources))

    @property
    def healthy(self) -> bool:
        return self.error is None

    @property
    def ready(self) -> bool:
        return self.healthy and all(
            self.informers.informer_for(kind).has_synced for kind in self.kinds
        )

    @property
    def queue(self) -> RateLimitingQueue | None:
        return self._queue

    def _map_primary(self, event: InformerEvent) -> list[ReconcileKey]:
        return [event.key]

    def _map_owned(self, event: InformerEvent) -> list[ReconcileKey]:
        owner = event.record.controller_owner()
        if owner is None or owner.kind != self.kind:
            return []
        return [ReconcileKey(self.kind, event.record.namespace, owner.name)]

    def _mapper_for_watch(self, watch: Watch) -> KeyMapper:
        def _map(event: InformerEvent) -> list[ReconcileKey]:
            if watch.event_types is not None and event.type not in watch.event_types:
                return []
            return list(watch.map_fn(event))

        return _map

    def context_for(self, key: ReconcileKey) -> ReconcileContext:
        return ReconcileContext(
            key=key,
            store=self.store,
            informers=self.informers,
            cancelled=self._cancel,
        )

    def start(self) -> None:
        METRICS.controller_healthy.labels(controller=self.kind).set(1)
        for informer, channel, mapper in self._sources:
            thread = threading.Thread(
                target=self._pump,
                args=(informer, channel, mapper),
                name=f"controller-{self.kind}-pump-{informer.kind}",
                daemon=True,
            )
            self._pump_threads.append(thread)
            thread.start()
        self._thread = threading.Thread(target=self._run, name=f"controller-{self.kind}", daemon=True)
        self._thread.start()

    def request_stop(self) -> None:
        """Raise the stop and cancellation signals.

        In-flight reconciles observe them at their next checkpoint.
        """
        self._stop.set()
        self._cancel.set()

    def join(self, timeout: float | None = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        threads = [
            t
            for t in [self._thread, *self._pump_threads, *self._workers, *self._abandoned]
            if t is not None
        ]
        for thread in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(timeout=remaining)
        return not any(thread.is_alive() for thread in threads)

    def _fail(self, exc: BaseException) -> None:
        if self.error is None:
            self.error = exc
        METRICS.controller_healthy.labels(controller=self.kind).set(0)
        LOGGER.error("Controller %s halted: %s", self.kind, exc)
        self._stop.set()
        self._cancel.set()

    def _pump(
        self,
        informer: Informer,
        channel: queue.Queue[InformerEvent],
        mapper: KeyMapper,
    ) -> None:
        """Move informer events into the work queue while we hold the lease."""
        while not self._stop.is_set():
            try:
                event = channel.get(timeout=0.2)
            except queue.Empty:
                if informer.failed:
                    self._fail(informer.error or FatalError(f"informer for {informer.kind} failed"))
                    return
                continue
            if not self.leading.is_set():
                continue
            work_queue = self._queue
            if work_queue is None:
                continue
            try:
                keys = mapper(event)
            except Exception:
                LOGGER.exception("Failed to map %s event for %s", event.type.value, event.key)
                continue
            for key in keys:
                work_queue.add(key)

    def _wait_for_caches(self) -> bool:
        """Block until every cache this controller reads has synced.

        Returns False if the controller was stopped first.  Raises
        :class:`CacheSyncError` on timeout or when an informer failed.
        """
        deadline = time.monotonic() + self.options.cache_sync_timeout
        while not self._stop.is_set():
            remaining = deadline - time.monotonic()
            if self.informers.wait_for_cache_sync(self.kinds, timeout=min(0.1, max(0.0, remaining))):
                return True
            failed = [kind for kind in self.kinds if self.informers.informer_for(kind).failed]
            if failed or remaining <= 0:
                raise CacheSyncError(
                    f"caches for {', '.join(self.kinds)} did not sync within "
                    f"{self.options.cache_sync_timeout}s"
                )
        return False

    def _run(self) -> None:
        try:
            if not self._wait_for_caches():
                return
            if self.lease is None:
                self._on_started_leading()
                self._stop.wait()
            else:
                self.lease.run(
                    on_started_leading=self._on_started_leading,
                    on_stopped_leading=self._on_stopped_leading,
                    stop_event=self._stop,
                )
        except FatalError as exc:
            self._fail(exc)
        except Exception as exc:
            LOGGER.exception("Controller %s crashed", self.kind)
            self._fail(exc)
        finally:
            self._on_stopped_leading()

    def _run_worker(self, worker: Worker, work_queue: RateLimitingQueue) -> None:
        while True:
            try:
                worker.run()
                return
            except Exception:
                if work_queue.shutting_down:
                    return
                LOGGER.exception("Worker for %s crashed; restarting it", self.kind)

    def _on_started_leading(self) -> None:
        with self._state_lock:
            if self._stop.is_set():
                return
            self._abandoned = [thread for thread in self._abandoned if thread.is_alive()]
            if self._abandoned:
                raise FatalError(
                    f"refusing to start workers for {self.kind}: {len(self._abandoned)} worker(s) "
                    "from the previous leadership term are still running"
                )
            self._cancel = threading.Event()
            work_queue = RateLimitingQueue(self.options.make_rate_limiter(), name=self.kind)
            self._queue = work_queue
            self.leading.set()
            primary = self.informers.informer_for(self.kind)
            for key in primary.keys():
                work_queue.add(key)
            self._workers = []
            for index in range(self.options.workers):
                worker = Worker(
                    controller=self.kind,
                    reconciler=self.reconciler,
                    queue=work_queue,
                    context_factory=self.context_for,
                )
                thread = threading.Thread(
                    target=self._run_worker,
                    args=(worker, work_queue),
                    name=f"controller-{self.kind}-worker-{index}",
                    daemon=True,
                )
                self._workers.append(thread)
                thread.start()
        LOGGER.info(
            "Controller %s started %d worker(s) with %d key(s) queued",
            self.kind,
            self.options.workers,
            len(work_queue),
        )

    def _on_stopped_leading(self) -> None:
        with self._state_lock:
            work_queue = self._queue
            if work_queue is None:
                return
            self.leading.clear()
            self._cancel.set()
            work_queue.shutdown()
            deadline = time.monotonic() + self.drain_timeout
            drained = work_queue.wait_for_in_flight(timeout=self.drain_timeout)
            for thread in self._workers:
                thread.join(timeout=max(0.0, deadline - time.monotonic()))
            stuck = [thread for thread in self._workers if thread.is_alive()]
            if not drained or stuck:
                LOGGER.error(
                    "Controller %s: %d reconcile(s) still running after %.1fs; "
                    "no new workers start until they return",
                    self.kind,
                    work_queue.in_flight,
                    self.drain_timeout,
                )
            self._abandoned.extend(stuck)
            self._queue = None
            self._workers = []
        LOGGER.info("Controller %s stopped processing", self.kind)


class ControllerManager:
    """Registry and lifecycle owner of every controller in the process.

    ``register_controller`` is the only setup entry point.  Each registered
    kind gets an independent instance of the same generic engine, sharing
    informers with the other controllers.
    """

    def __init__(
        self,
        store: StateStore,
        identity: str | None = None,
        informers: InformerFactory | None = None,
    ) -> None:
        self.store = store
        self.identity = identity or default_identity()
        self.informers = informers or InformerFactory(store)
        self._controllers: dict[str, Controller] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._started = False

    @property
    def controllers(self) -> dict[str, Controller]:
        with self._lock:
            return dict(self._controllers)

    def register_controller(
        self,
        kind: str,
        reconciler: Reconciler | ReconcileFn,
        options: ControllerOptions | None = None,
    ) -> Controller:
        if not kind:
            raise ConfigError("kind must be a non-empty string")
        with self._lock:
            if kind in self._controllers:
                raise ConfigError(f"a controller for {kind} is already registered")
            controller = Controller(
                kind=kind,
                reconciler=reconciler,
                options=options or ControllerOptions(),
                store=self.store,
                informers=self.informers,
                identity=self.identity,
            )
            self._controllers[kind] = controller
            started = self._started
        if started:
            controller.start()
        LOGGER.info("Registered controller for %s", kind)
        return controller

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            self._started = True
            controllers = list(self._controllers.values())
        self.informers.start(self._stop)
        for controller in controllers:
            controller.start()
        LOGGER.info("Started %d controller(s) as %s", len(controllers), self.identity)

    @property
    def healthy(self) -> bool:
        return all(controller.healthy for controller in self.controllers.values())

    @property
    def ready(self) -> bool:
        return self._started and all(controller.ready for controller in self.controllers.values())

    @property
    def leading(self) -> bool:
        return any(controller.leading.is_set() for controller in self.controllers.values())

    def status(self) -> dict[str, dict[str, Any]]:
        return {
            kind: {
                "healthy": controller.healthy,
                "ready": controller.ready,
                "leading": controller.leading.is_set(),
                "error": None if controller.error is None else str(controller.error),
            }
            for kind, controller in self.controllers.items()
        }

    def shutdown(self, grace_period: float = 30.0) -> bool:
        """Cancel all work and wait up to *grace_period* for it to stop.

        Returns True when every controller and informer stopped in time.  After
        the grace period it returns anyway; leftover threads are daemons.
        """
        deadline = time.monotonic() + grace_period
        controllers = list(self.controllers.values())
        for controller in controllers:
            controller.drain_timeout = grace_period
            controller.request_stop()
        self._stop.set()

        clean = True
        for controller in controllers:
            if not controller.join(timeout=max(0.0, deadline - time.monotonic())):
                LOGGER.error("Controller %s did not stop within %.1fs", controller.kind, grace_period)
                clean = False
        if not self.informers.stop(timeout=max(0.0, deadline - time.monotonic())):
            LOGGER.error("Informers did not stop within %.1fs", grace_period)
            clean = False
        LOGGER.info("Controller manager stopped (clean=%s)", clean)
        return clean
