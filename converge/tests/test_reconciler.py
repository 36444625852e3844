from __future__ import annotations

import threading
from typing import Any

import pytest

from converge.src.errors import (
    ConflictError,
    ReconcileCancelled,
    RetryableError,
    StoreUnavailableError,
    ValidationError,
)
from converge.src.informer import InformerFactory
from converge.src.reconciler import (
    RECONCILED_CONDITION,
    Expectations,
    FunctionReconciler,
    ObservedResult,
    ReconcileContext,
    Result,
    SideEffect,
    Worker,
    as_reconciler,
    get_condition,
    set_condition,
)
from converge.src.records import ReconcileKey, ResourceRecord
from converge.src.store import InMemoryStore
from converge.src.workqueue import ExponentialFailureRateLimiter, RateLimitingQueue

KEY = ReconcileKey("Widget", "default", "a")


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class Harness:
    """A store, a synced informer cache, a queue and a worker around one reconcile function."""

    def __init__(self, fn: Any, spec: dict[str, Any] | None = None) -> None:
        self.store = InMemoryStore()
        self.record = self.store.create(
            ResourceRecord(kind=KEY.kind, namespace=KEY.namespace, name=KEY.name, spec=spec or {})
        )
        self.informers = InformerFactory(self.store)
        self.informers.informer_for(KEY.kind).relist()
        self.cancelled = threading.Event()
        self.queue = RateLimitingQueue(
            ExponentialFailureRateLimiter(base_delay=0.01, max_delay=0.05), name="test-worker"
        )
        self.worker = Worker(
            controller="Widget",
            reconciler=as_reconciler(fn),
            queue=self.queue,
            context_factory=self.context_for,
        )

    def context_for(self, key: ReconcileKey) -> ReconcileContext:
        return ReconcileContext(key, self.store, self.informers, self.cancelled)

    def refresh_cache(self) -> None:
        self.informers.informer_for(KEY.kind).relist()

    def run_once(self) -> bool:
        self.queue.add(KEY)
        return self.worker.process_next_item(timeout=1)

    def close(self) -> None:
        self.queue.shutdown()


def test_success_forgets_backoff_and_leaves_queue_empty() -> None:
    calls: list[ReconcileKey] = []
    harness = Harness(lambda ctx, key: calls.append(key))
    harness.queue.rate_limiter.when(KEY)

    assert harness.run_once() is True

    assert calls == [KEY]
    assert len(harness.queue) == 0
    assert harness.queue.num_requeues(KEY) == 0
    assert harness.queue.in_flight == 0
    harness.close()


def test_conflict_requeues_immediately_without_backoff() -> None:
    def _conflict(ctx: ReconcileContext, key: ReconcileKey) -> None:
        raise ConflictError("stale")

    harness = Harness(_conflict)

    assert harness.worker.reconcile_key(KEY) == "conflict"

    assert len(harness.queue) == 1
    assert harness.queue.num_requeues(KEY) == 0
    harness.close()


@pytest.mark.parametrize(
    "error",
    [RetryableError("try later"), StoreUnavailableError("down"), RuntimeError("bug")],
)
def test_transient_errors_back_off(error: Exception) -> None:
    def _fail(ctx: ReconcileContext, key: ReconcileKey) -> None:
        raise error

    harness = Harness(_fail)

    assert harness.worker.reconcile_key(KEY) == "error"

    assert harness.queue.num_requeues(KEY) == 1
    assert harness.queue.get(timeout=1) == KEY
    harness.close()


def test_terminal_error_records_condition_and_backs_off() -> None:
    def _invalid(ctx: ReconcileContext, key: ReconcileKey) -> None:
        raise ValidationError("spec.size must be positive")

    harness = Harness(_invalid)

    assert harness.worker.reconcile_key(KEY) == "terminal"

    condition = get_condition(harness.store.get(KEY).status, RECONCILED_CONDITION)
    assert condition["status"] == "False"
    assert condition["reason"] == "InvalidSpec"
    assert "positive" in condition["message"]
    assert harness.queue.num_requeues(KEY) == 1
    harness.close()


def test_success_after_terminal_error_clears_condition() -> None:
    outcomes = iter([ValidationError("bad"), None])

    def _flaky(ctx: ReconcileContext, key: ReconcileKey) -> None:
        outcome = next(outcomes)
        if outcome is not None:
            raise outcome

    harness = Harness(_flaky)
    harness.worker.reconcile_key(KEY)
    harness.refresh_cache()

    assert harness.worker.reconcile_key(KEY) == "success"

    condition = get_condition(harness.store.get(KEY).status, RECONCILED_CONDITION)
    assert condition["status"] == "True"
    assert harness.queue.num_requeues(KEY) == 0
    harness.close()


def test_cancelled_reconcile_is_dropped() -> None:
    def _cancelled(ctx: ReconcileContext, key: ReconcileKey) -> None:
        raise ReconcileCancelled("stop")

    harness = Harness(_cancelled)

    assert harness.worker.reconcile_key(KEY) == "cancelled"

    assert len(harness.queue) == 0
    assert harness.queue.num_requeues(KEY) == 0
    harness.close()


def test_requeue_after_schedules_delayed_pass() -> None:
    harness = Harness(lambda ctx, key: Result(requeue_after=0.05))

    assert harness.worker.reconcile_key(KEY) == "requeue"

    assert len(harness.queue) == 0
    assert harness.queue.get(timeout=1) == KEY
    harness.close()


def test_requeue_flag_uses_backoff() -> None:
    harness = Harness(lambda ctx, key: Result(requeue=True))

    harness.worker.reconcile_key(KEY)

    assert harness.queue.num_requeues(KEY) == 1
    harness.close()


def test_worker_run_exits_on_queue_shutdown() -> None:
    harness = Harness(lambda ctx, key: None)
    runner = threading.Thread(target=harness.worker.run)
    runner.start()

    harness.queue.shutdown()
    runner.join(timeout=2)

    assert not runner.is_alive()


def test_context_writes_use_cached_version() -> None:
    def _bump(ctx: ReconcileContext, key: ReconcileKey) -> None:
        record = ctx.get()
        ctx.write(record.evolve(spec={"size": record.spec["size"] + 1}))

    harness = Harness(_bump, spec={"size": 1})
    harness.worker.reconcile_key(KEY)
    assert harness.store.get(KEY).spec == {"size": 2}

    assert harness.worker.reconcile_key(KEY) == "conflict"
    harness.refresh_cache()
    assert harness.worker.reconcile_key(KEY) == "success"
    assert harness.store.get(KEY).spec == {"size": 3}
    harness.close()


def test_context_refuses_writes_after_cancellation() -> None:
    harness = Harness(lambda ctx, key: None)
    ctx = harness.context_for(KEY)
    harness.cancelled.set()

    with pytest.raises(ReconcileCancelled):
        ctx.write(harness.record.evolve(spec={"size": 5}))
    with pytest.raises(ReconcileCancelled):
        ctx.check_cancelled()
    assert harness.store.get(KEY).spec == {}
    harness.close()


def test_update_status_skips_identical_status() -> None:
    harness = Harness(lambda ctx, key: None)
    ctx = harness.context_for(KEY)
    revision = harness.store.revision

    unchanged = ctx.update_status(harness.record, {})

    assert unchanged is harness.record
    assert harness.store.revision == revision
    harness.close()


def test_finalizer_helpers_are_idempotent() -> None:
    harness = Harness(lambda ctx, key: None)
    ctx = harness.context_for(KEY)

    record = ctx.add_finalizer(harness.record, "example.io/cleanup")
    assert ctx.add_finalizer(record, "example.io/cleanup") is record
    record = ctx.remove_finalizer(record, "example.io/cleanup")

    assert record.finalizers == []
    assert ctx.remove_finalizer(record, "example.io/cleanup") is record
    harness.close()


def test_apply_forwards_side_effect_to_collaborator() -> None:
    applied: list[SideEffect] = []

    class Recorder:
        def apply(self, effect: SideEffect) -> ObservedResult:
            applied.append(effect)
            return ObservedResult(ok=True, details={"echo": effect.payload})

    harness = Harness(lambda ctx, key: None)
    ctx = harness.context_for(KEY)

    result = ctx.apply(Recorder(), SideEffect("scale", KEY, {"to": 3}))

    assert result.ok
    assert applied[0].payload == {"to": 3}
    harness.close()


def test_set_condition_keeps_transition_time_when_value_unchanged() -> None:
    first = set_condition({}, "Ready", "False", "Waiting", "0/1")
    second = set_condition(first, "Ready", "False", "Waiting", "0/1")
    flipped = set_condition(second, "Ready", "True", "Done")

    assert first == second
    assert get_condition(flipped, "Ready")["status"] == "True"
    assert len(flipped["conditions"]) == 1


def test_as_reconciler_wraps_functions_and_rejects_other_values() -> None:
    reconciler = as_reconciler(lambda ctx, key: None)

    assert isinstance(reconciler, FunctionReconciler)
    with pytest.raises(TypeError):
        as_reconciler(42)  # type: ignore[arg-type]


def test_expectations_clear_on_observation_or_expiry() -> None:
    clock = FakeClock()
    expectations = Expectations(ttl_seconds=10, clock=clock)
    owner = ReconcileKey("Group", "default", "g")

    expectations.expect_creations(owner, ["g-0", "g-1"])

    assert expectations.pending(owner, observed=["g-0"]) == {"g-1"}
    clock.now = 11
    assert expectations.pending(owner, observed=[]) == set()


def test_expectations_forget_drops_owner() -> None:
    expectations = Expectations()
    owner = ReconcileKey("Group", "default", "g")
    expectations.expect_creations(owner, ["g-0"])

    expectations.forget(owner)

    assert expectations.pending(owner, observed=[]) == set()
