from __future__ import annotations

import threading
import time
from collections.abc import Callable

import pytest

from converge.src.config import ConfigError, EngineSettings
from converge.src.errors import AccessDeniedError, CacheSyncError, FatalError, StoreUnavailableError
from converge.src.informer import EventType, InformerFactory
from converge.src.leader import LeaseManager
from converge.src.metrics import METRICS
from converge.src.reconciler import ReconcileContext, Worker, as_reconciler
from converge.src.records import ReconcileKey, ResourceRecord, owner_reference_for
from converge.src.store import MODIFIED, InMemoryStore, ListResult
from converge.src.supervisor import Controller, ControllerManager, ControllerOptions, Watch
from converge.src.workqueue import RateLimitingQueue

FAST_LEASE = {
    "lease_duration_seconds": 1.0,
    "renew_deadline_seconds": 0.6,
    "retry_period_seconds": 0.1,
    "stop_timeout": 0.5,
}


def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def make_record(name: str, kind: str = "Widget", **fields) -> ResourceRecord:
    return ResourceRecord(kind=kind, namespace="default", name=name, **fields)


def _key(name: str, kind: str = "Widget") -> ReconcileKey:
    return ReconcileKey(kind, "default", name)


class DroppingStore(InMemoryStore):
    """Silently loses the next MODIFIED watch event once ``drop_next`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.drop_next = False
        self.dropped = 0

    def watch(self, kind, since_version, timeout_seconds=None):
        return _DroppingStream(super().watch(kind, since_version, timeout_seconds), self)


class _DroppingStream:
    def __init__(self, inner, store: DroppingStore) -> None:
        self.inner = inner
        self.store = store

    def __iter__(self):
        for event in self.inner:
            if event.type == MODIFIED and self.store.drop_next:
                self.store.drop_next = False
                self.store.dropped += 1
                continue
            yield event

    def stop(self) -> None:
        self.inner.stop()


class UnavailableStore(InMemoryStore):
    def list(self, kind: str) -> ListResult:
        raise StoreUnavailableError("store unreachable")


class DeniedStore(InMemoryStore):
    def list(self, kind: str) -> ListResult:
        raise AccessDeniedError("forbidden")


class SlowListStore(InMemoryStore):
    """The first list of ``kind`` takes ``delay`` seconds."""

    def __init__(self, kind: str, delay: float) -> None:
        super().__init__()
        self.slow_kind = kind
        self.delay = delay
        self.slowed = False

    def list(self, kind: str) -> ListResult:
        if kind == self.slow_kind and not self.slowed:
            self.slowed = True
            time.sleep(self.delay)
        return super().list(kind)


class Recorder:
    """Reconciler that records every key it is asked to reconcile."""

    def __init__(self, label: str = "") -> None:
        self.label = label
        self.calls: list[tuple[str, ReconcileKey]] = []

    def reconcile(self, ctx: ReconcileContext, key: ReconcileKey) -> None:
        self.calls.append((self.label, key))

    @property
    def keys(self) -> set[ReconcileKey]:
        return {key for _, key in self.calls}


class TestManager:
    def setup_method(self) -> None:
        self.managers: list[ControllerManager] = []

    def teardown_method(self) -> None:
        for manager in self.managers:
            manager.shutdown(grace_period=2)

    def _manager(self, store: InMemoryStore, identity: str = "pod-1") -> ControllerManager:
        manager = ControllerManager(
            store,
            identity=identity,
            informers=InformerFactory(store, resync_interval=None, watch_timeout_seconds=0.5),
        )
        self.managers.append(manager)
        return manager

    def test_cold_start_reconciles_every_existing_key(self) -> None:
        store = InMemoryStore()
        for name in ("a", "b", "c"):
            store.create(make_record(name))
        recorder = Recorder()
        manager = self._manager(store)
        manager.register_controller("Widget", recorder, ControllerOptions(resync_interval=None))

        manager.start()

        assert _wait_until(lambda: recorder.keys == {_key("a"), _key("b"), _key("c")})
        assert manager.healthy
        assert _wait_until(lambda: manager.ready)

    def test_store_changes_trigger_reconciles(self) -> None:
        store = InMemoryStore()
        recorder = Recorder()
        manager = self._manager(store)
        manager.register_controller("Widget", recorder, ControllerOptions(resync_interval=None))
        manager.start()
        assert _wait_until(lambda: manager.leading)

        record = store.create(make_record("a", spec={"size": 1}))
        assert _wait_until(lambda: _key("a") in recorder.keys)

        calls_before = len(recorder.calls)
        store.write(record.key, record.evolve(spec={"size": 2}), record.resource_version)

        assert _wait_until(lambda: len(recorder.calls) > calls_before)

    def test_owned_kind_events_reconcile_the_owner(self) -> None:
        store = InMemoryStore()
        owner = store.create(make_record("web"))
        recorder = Recorder()
        manager = self._manager(store)
        manager.register_controller(
            "Widget", recorder, ControllerOptions(resync_interval=None, owns=("Gadget",))
        )
        manager.start()
        assert _wait_until(lambda: _key("web") in recorder.keys)
        calls_before = len(recorder.calls)

        store.create(make_record("web-0", kind="Gadget", owner_references=[owner_reference_for(owner)]))
        store.create(make_record("stray", kind="Gadget"))

        assert _wait_until(lambda: len(recorder.calls) > calls_before)
        assert recorder.keys == {_key("web")}

    def test_watch_mapping_filters_event_types(self) -> None:
        store = InMemoryStore()
        recorder = Recorder()
        manager = self._manager(store)
        watch = Watch(
            kind="Gadget",
            map_fn=lambda event: [_key(event.key.name)],
            event_types=frozenset({EventType.DELETED}),
        )
        manager.register_controller(
            "Widget", recorder, ControllerOptions(resync_interval=None, watches=(watch,))
        )
        manager.start()
        assert _wait_until(lambda: manager.leading)

        gadget = store.create(make_record("g", kind="Gadget"))
        time.sleep(0.3)
        assert recorder.calls == []

        store.delete(gadget.key)

        assert _wait_until(lambda: recorder.keys == {_key("g")})

    def test_register_after_start_runs_controller(self) -> None:
        store = InMemoryStore()
        store.create(make_record("late", kind="Gadget"))
        manager = self._manager(store)
        manager.start()
        recorder = Recorder()

        manager.register_controller("Gadget", recorder, ControllerOptions(resync_interval=None))

        assert _wait_until(lambda: recorder.keys == {_key("late", "Gadget")})

    def test_duplicate_registration_is_rejected(self) -> None:
        manager = self._manager(InMemoryStore())
        manager.register_controller("Widget", Recorder())

        with pytest.raises(ConfigError, match="already registered"):
            manager.register_controller("Widget", Recorder())
        with pytest.raises(ConfigError):
            manager.register_controller("", Recorder())

    def test_status_reports_each_controller(self) -> None:
        store = InMemoryStore()
        manager = self._manager(store)
        manager.register_controller("Widget", Recorder(), ControllerOptions(resync_interval=None))
        manager.start()
        assert _wait_until(lambda: manager.ready and manager.leading)

        status = manager.status()

        assert status == {"Widget": {"healthy": True, "ready": True, "leading": True, "error": None}}

    def test_shutdown_cancels_in_flight_reconcile(self) -> None:
        store = InMemoryStore()
        store.create(make_record("slow"))
        started = threading.Event()
        outcomes: list[str] = []

        def _slow(ctx: ReconcileContext, key: ReconcileKey) -> None:
            started.set()
            try:
                while True:
                    ctx.check_cancelled()
                    time.sleep(0.01)
            finally:
                outcomes.append("cancelled" if ctx.cancelled else "finished")

        manager = ControllerManager(
            store,
            identity="pod-1",
            informers=InformerFactory(store, resync_interval=None, watch_timeout_seconds=0.5),
        )
        manager.register_controller("Widget", _slow, ControllerOptions(resync_interval=None))
        manager.start()
        assert started.wait(timeout=5)

        began = time.monotonic()
        clean = manager.shutdown(grace_period=3)

        assert clean is True
        assert outcomes == ["cancelled"]
        assert time.monotonic() - began < 3
        assert not manager.leading

    def test_shutdown_gives_up_after_grace_period(self) -> None:
        store = InMemoryStore()
        store.create(make_record("stuck"))
        started = threading.Event()
        release = threading.Event()

        def _ignores_cancellation(ctx: ReconcileContext, key: ReconcileKey) -> None:
            started.set()
            release.wait(timeout=10)

        manager = ControllerManager(
            store,
            identity="pod-1",
            informers=InformerFactory(store, resync_interval=None, watch_timeout_seconds=0.5),
        )
        manager.register_controller("Widget", _ignores_cancellation, ControllerOptions(resync_interval=None))
        manager.start()
        try:
            assert started.wait(timeout=5)

            began = time.monotonic()
            clean = manager.shutdown(grace_period=1.0)
            elapsed = time.monotonic() - began

            assert clean is False
            assert 0.5 <= elapsed < 2.0
            assert not manager.leading
        finally:
            release.set()

    def test_lease_is_not_contended_until_caches_sync(self) -> None:
        store = SlowListStore("Widget", delay=1.5)
        store.create(make_record("a"))
        holders: list[str | None] = []
        rival = LeaseManager(
            store,
            namespace="default",
            lease_name="converge-widget",
            identity="pod-b",
            lease_duration_seconds=1.0,
            renew_deadline_seconds=0.6,
            retry_period_seconds=0.1,
        )

        def _record_holder(ctx: ReconcileContext, key: ReconcileKey) -> None:
            holders.append(store.get(rival.key).spec.get("holderIdentity"))

        manager = self._manager(store, identity="pod-a")
        manager.register_controller(
            "Widget",
            _record_holder,
            ControllerOptions(resync_interval=None, lease_name="converge-widget", **FAST_LEASE),
        )
        rival_stop = threading.Event()

        def _contend() -> None:
            while not rival_stop.is_set():
                rival.try_acquire_or_renew()
                rival_stop.wait(timeout=0.1)

        manager.start()
        rival_thread = threading.Thread(target=_contend, daemon=True)
        rival_thread.start()
        try:
            time.sleep(2.5)
            assert holders == []
            assert not manager.leading
        finally:
            rival_stop.set()
            rival_thread.join(timeout=2)
        rival.release()

        assert _wait_until(lambda: len(holders) >= 1)
        assert set(holders) == {"pod-a"}
        assert manager.healthy

    def test_only_the_lease_holder_reconciles_and_standby_takes_over(self) -> None:
        store = InMemoryStore()
        for name in ("a", "b"):
            store.create(make_record(name))
        recorders = {identity: Recorder(identity) for identity in ("pod-1", "pod-2")}
        managers = {}
        for identity, recorder in recorders.items():
            manager = self._manager(store, identity=identity)
            manager.register_controller(
                "Widget",
                recorder,
                ControllerOptions(resync_interval=None, lease_name="converge-widget", **FAST_LEASE),
            )
            managers[identity] = manager
        for manager in managers.values():
            manager.start()

        assert _wait_until(lambda: sum(m.leading for m in managers.values()) == 1)
        leader = next(identity for identity, m in managers.items() if m.leading)
        standby = next(identity for identity in managers if identity != leader)
        assert _wait_until(lambda: recorders[leader].keys == {_key("a"), _key("b")})

        store.create(make_record("c"))
        assert _wait_until(lambda: _key("c") in recorders[leader].keys)
        time.sleep(0.3)
        assert recorders[standby].calls == []

        assert managers[leader].shutdown(grace_period=2)

        assert _wait_until(lambda: managers[standby].leading)
        assert _wait_until(lambda: recorders[standby].keys == {_key("a"), _key("b"), _key("c")})
        assert managers[standby].healthy

    def test_resync_recovers_from_a_lost_watch_event(self) -> None:
        store = DroppingStore()
        record = store.create(make_record("a", spec={"size": 1}))
        seen: list[int] = []

        def _observe(ctx: ReconcileContext, key: ReconcileKey) -> None:
            current = ctx.get()
            if current is not None:
                seen.append(current.spec["size"])

        manager = self._manager(store)
        manager.register_controller("Widget", _observe, ControllerOptions(resync_interval=0.3))
        manager.start()
        assert _wait_until(lambda: 1 in seen)

        store.drop_next = True
        store.write(record.key, record.evolve(spec={"size": 2}), record.resource_version)

        assert _wait_until(lambda: 2 in seen)
        assert store.dropped == 1

    def test_cache_that_never_syncs_marks_controller_unhealthy(self) -> None:
        store = UnavailableStore()
        manager = self._manager(store)
        controller = manager.register_controller(
            "Widget", Recorder(), ControllerOptions(resync_interval=None, cache_sync_timeout=0.3)
        )

        manager.start()

        assert _wait_until(lambda: not manager.healthy)
        assert isinstance(controller.error, CacheSyncError)
        assert "did not sync" in manager.status()["Widget"]["error"]
        assert METRICS.controller_healthy.labels(controller="Widget")._value.get() == 0

    def test_revoked_access_marks_controller_unhealthy(self) -> None:
        store = DeniedStore()
        manager = self._manager(store)
        controller = manager.register_controller(
            "Widget", Recorder(), ControllerOptions(resync_interval=None, cache_sync_timeout=5)
        )

        manager.start()

        assert _wait_until(lambda: not controller.healthy)
        assert not manager.ready
        assert not controller.leading.is_set()


def test_conflicting_writers_converge_within_bounded_retries() -> None:
    store = InMemoryStore()
    record = store.create(make_record("a", spec={"size": 3}))
    informers = InformerFactory(store, resync_interval=None)
    informer = informers.informer_for("Widget")
    informer.relist()
    work_queue = RateLimitingQueue(name="conflict-liveness")
    attempts = 0

    def _converge(ctx: ReconcileContext, key: ReconcileKey) -> None:
        nonlocal attempts
        attempts += 1
        current = ctx.get()
        if attempts <= 2:
            rival = store.get(key)
            store.write(key, rival.evolve(spec={**rival.spec, "rival": attempts}), rival.resource_version)
        ctx.update_status(current, {"observedSize": current.spec["size"]})

    worker = Worker(
        controller="Widget",
        reconciler=as_reconciler(_converge),
        queue=work_queue,
        context_factory=lambda key: ReconcileContext(key, store, informers, threading.Event()),
    )
    work_queue.add(record.key)

    for _ in range(5):
        if not worker.process_next_item(timeout=0.5) or len(work_queue) == 0:
            break
        informer.relist()

    assert store.get(record.key).status == {"observedSize": 3}
    assert attempts == 3
    assert work_queue.num_requeues(record.key) == 0
    work_queue.shutdown()


def test_new_term_refuses_to_start_while_previous_workers_run() -> None:
    store = InMemoryStore()
    store.create(make_record("stuck"))
    informers = InformerFactory(store, resync_interval=None, watch_timeout_seconds=0.5)
    release = threading.Event()
    lock = threading.Lock()
    running = 0
    peak = 0
    calls = 0

    def _stuck(ctx: ReconcileContext, key: ReconcileKey) -> None:
        nonlocal running, peak, calls
        with lock:
            running += 1
            calls += 1
            peak = max(peak, running)
        try:
            release.wait(timeout=10)
        finally:
            with lock:
                running -= 1

    controller = Controller(
        kind="Widget",
        reconciler=_stuck,
        options=ControllerOptions(resync_interval=None, workers=1, stop_timeout=0.2),
        store=store,
        informers=informers,
        identity="pod-1",
    )
    stop = threading.Event()
    informers.start(stop)
    try:
        assert informers.wait_for_cache_sync(["Widget"], timeout=5)
        controller._on_started_leading()
        assert _wait_until(lambda: calls == 1)

        controller._on_stopped_leading()
        assert not controller.join(timeout=0)

        with pytest.raises(FatalError, match="still running"):
            controller._on_started_leading()
        assert not controller.leading.is_set()
        assert calls == 1

        release.set()
        assert _wait_until(lambda: controller.join(timeout=0))

        controller._on_started_leading()
        assert controller.leading.is_set()
        assert _wait_until(lambda: calls == 2)
        assert peak == 1
    finally:
        release.set()
        controller.request_stop()
        controller._on_stopped_leading()
        stop.set()
        informers.stop(timeout=2)


class TestControllerOptions:
    def test_defaults(self) -> None:
        options = ControllerOptions()

        assert options.workers == 2
        assert options.lease_name is None
        assert options.effective_stop_timeout == options.renew_deadline_seconds

    @pytest.mark.parametrize(
        "overrides",
        [
            {"workers": 0},
            {"resync_interval": -1},
            {"lease_name": "  "},
            {"lease_duration_seconds": 5, "renew_deadline_seconds": 5},
            {"retry_period_seconds": 10},
            {"cache_sync_timeout": 0},
            {"backoff_base_seconds": 2.0, "backoff_max_seconds": 1.0},
            {"channel_size": 0},
        ],
    )
    def test_rejects_invalid_values(self, overrides: dict) -> None:
        with pytest.raises(ConfigError):
            ControllerOptions(**overrides)

    def test_config_error_is_a_value_error(self) -> None:
        with pytest.raises(ValueError):
            ControllerOptions(workers=0)

    def test_from_settings_drops_lease_when_election_disabled(self) -> None:
        settings = EngineSettings(leader_election_enabled=False, workers=4)

        options = ControllerOptions.from_settings(settings, lease_name="converge-widget")

        assert options.lease_name is None
        assert options.workers == 4

    def test_from_settings_applies_overrides(self) -> None:
        settings = EngineSettings(resync_interval_seconds=120)

        options = ControllerOptions.from_settings(
            settings, lease_name="converge-widget", workers=1, owns=("Gadget",)
        )

        assert options.lease_name == "converge-widget"
        assert options.resync_interval == 120
        assert options.workers == 1
        assert options.owns == ("Gadget",)

    def test_rate_limiter_factory_overrides_default(self) -> None:
        sentinel = object()
        options = ControllerOptions(rate_limiter_factory=lambda: sentinel)

        assert options.make_rate_limiter() is sentinel


def test_controller_lists_all_watched_kinds_once() -> None:
    store = InMemoryStore()
    informers = InformerFactory(store)
    watch = Watch(kind="Gadget", map_fn=lambda event: [])
    controller = Controller(
        kind="Widget",
        reconciler=Recorder(),
        options=ControllerOptions(owns=("Gadget",), watches=(watch,)),
        store=store,
        informers=informers,
        identity="pod-1",
    )

    assert controller.kinds == ["Widget", "Gadget"]
    assert controller.lease is None
    assert controller.queue is None
