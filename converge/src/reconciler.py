from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

from converge.src.errors import ConflictError, ReconcileCancelled, TerminalError
from converge.src.informer import InformerFactory
from converge.src.metrics import METRICS
from converge.src.records import ReconcileKey, ResourceRecord, format_timestamp, utc_now
from converge.src.store import StateStore
from converge.src.workqueue import QueueShutDown, RateLimitingQueue

LOGGER = logging.getLogger(__name__)

RECONCILED_CONDITION = "Reconciled"


@dataclass(frozen=True)
class Result:
    """Outcome of a successful reconcile.

    ``requeue_after`` schedules another pass after a fixed delay and resets
    the key's backoff.  ``requeue`` asks for another pass with backoff.
    """

    requeue_after: float | None = None
    requeue: bool = False


class Reconciler(Protocol):
    def reconcile(self, ctx: ReconcileContext, key: ReconcileKey) -> Result | None: ...


ReconcileFn = Callable[["ReconcileContext", ReconcileKey], "Result | None"]


class FunctionReconciler:
    """Adapts a plain ``fn(ctx, key)`` to the :class:`Reconciler` protocol."""

    def __init__(self, fn: ReconcileFn) -> None:
        self.fn = fn

    def reconcile(self, ctx: ReconcileContext, key: ReconcileKey) -> Result | None:
        return self.fn(ctx, key)


def as_reconciler(value: Reconciler | ReconcileFn) -> Reconciler:
    if hasattr(value, "reconcile"):
        return value  # type: ignore[return-value]
    if callable(value):
        return FunctionReconciler(value)
    raise TypeError(f"expected a reconciler or a callable, got {type(value).__name__}")


@dataclass(frozen=True)
class SideEffect:
    """A corrective action handed to an external collaborator."""

    action: str
    key: ReconcileKey
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ObservedResult:
    ok: bool
    details: dict[str, Any] = field(default_factory=dict)


class Collaborator(Protocol):
    """An opaque, possibly slow, possibly failing external capability.

    Implementations raise :class:`~converge.src.errors.RetryableError` for
    transient failures and :class:`~converge.src.errors.TerminalError` when
    the effect cannot succeed as requested.
    """

    def apply(self, effect: SideEffect) -> ObservedResult: ...


def get_condition(status: dict[str, Any], condition_type: str) -> dict[str, Any] | None:
    for condition in status.get("conditions") or []:
        if condition.get("type") == condition_type:
            return condition
    return None


def set_condition(
    status: dict[str, Any],
    condition_type: str,
    value: str,
    reason: str,
    message: str = "",
) -> dict[str, Any]:
    """Return a copy of *status* with the condition set.

    ``lastTransitionTime`` only moves when the condition's value changes, so
    setting the same condition twice yields an identical status.
    """
    updated = dict(status)
    conditions = [dict(condition) for condition in status.get("conditions") or []]
    existing = next((c for c in conditions if c.get("type") == condition_type), None)
    if existing is None:
        existing = {"type": condition_type}
        conditions.append(existing)
    if existing.get("status") != value:
        existing["lastTransitionTime"] = format_timestamp(utc_now())
    existing["status"] = value
    existing["reason"] = reason
    existing["message"] = message
    updated["conditions"] = conditions
    return updated


class ReconcileContext:
    """Everything a reconcile pass may touch.

    Reads come from the shared informer caches.  Writes go to the store with
    the record's last-read ``resource_version`` and are refused once the
    controller's cancellation signal is raised.
    """

    def __init__(
        self,
        key: ReconcileKey,
        store: StateStore,
        informers: InformerFactory,
        cancelled: threading.Event,
        logger: logging.Logger | None = None,
    ) -> None:
        self.key = key
        self.store = store
        self.informers = informers
        self._cancelled = cancelled
        self.logger = logger or LOGGER

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def check_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise ReconcileCancelled(f"reconcile of {self.key} cancelled")

    def get(self, key: ReconcileKey | None = None) -> ResourceRecord | None:
        target = key or self.key
        return self.informers.informer_for(target.kind).get(target)

    def list(self, kind: str) -> list[ResourceRecord]:
        return self.informers.informer_for(kind).list()

    def dependents(self, kind: str, owner_uid: str) -> list[ResourceRecord]:
        return self.informers.informer_for(kind).by_owner(owner_uid)

    def create(self, record: ResourceRecord) -> ResourceRecord:
        self.check_cancelled()
        return self.store.create(record)

    def write(self, record: ResourceRecord) -> ResourceRecord:
        self.check_cancelled()
        return self.store.write(record.key, record, record.resource_version)

    def delete(self, record: ResourceRecord) -> ResourceRecord | None:
        self.check_cancelled()
        return self.store.delete(record.key, expected_version=record.resource_version)

    def apply(self, collaborator: Collaborator, effect: SideEffect) -> ObservedResult:
        self.check_cancelled()
        return collaborator.apply(effect)

    def update_status(self, record: ResourceRecord, status: dict[str, Any]) -> ResourceRecord:
        """Write *status* unless it already matches what the record carries."""
        if record.status == status:
            return record
        return self.write(record.evolve(status=status))

    def add_finalizer(self, record: ResourceRecord, finalizer: str) -> ResourceRecord:
        if finalizer in record.finalizers:
            return record
        return self.write(record.evolve(finalizers=[*record.finalizers, finalizer]))

    def remove_finalizer(self, record: ResourceRecord, finalizer: str) -> ResourceRecord:
        if finalizer not in record.finalizers:
            return record
        remaining = [name for name in record.finalizers if name != finalizer]
        return self.write(record.evolve(finalizers=remaining))


class Expectations:
    """Creates issued per owner that the cache has not reflected yet.

    Without this a second pass that runs before the informer observes the
    first pass's creates would issue them again.  Entries expire after
    ``ttl_seconds`` so a lost create cannot block an owner forever.
    """

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._pending: dict[ReconcileKey, dict[str, float]] = {}
        self._lock = threading.Lock()

    def expect_creations(self, owner: ReconcileKey, names: Iterable[str]) -> None:
        expires_at = self._clock() + self.ttl_seconds
        with self._lock:
            bucket = self._pending.setdefault(owner, {})
            for name in names:
                bucket[name] = expires_at

    def pending(self, owner: ReconcileKey, observed: Iterable[str]) -> set[str]:
        """Drop observed and expired entries and return what is still outstanding."""
        now = self._clock()
        seen = set(observed)
        with self._lock:
            bucket = self._pending.get(owner)
            if not bucket:
                return set()
            for name in list(bucket):
                if name in seen or bucket[name] <= now:
                    del bucket[name]
            if not bucket:
                del self._pending[owner]
                return set()
            return set(bucket)

    def forget(self, owner: ReconcileKey) -> None:
        with self._lock:
            self._pending.pop(owner, None)


class Worker:
    """Pulls keys from a controller's queue and turns reconcile outcomes into queue actions.

    This is the only place reconcile errors are interpreted:

    - :class:`ConflictError`: the cache was stale; re-add at once without
      touching the key's backoff.
    - :class:`TerminalError`: back off and record a ``Reconciled=False``
      condition on the record.
    - :class:`ReconcileCancelled`: drop; the queue is being torn down.
    - anything else: back off.

    Nothing raised by a reconciler propagates past :meth:`process_next_item`.
    """

    def __init__(
        self,
        controller: str,
        reconciler: Reconciler,
        queue: RateLimitingQueue,
        context_factory: Callable[[ReconcileKey], ReconcileContext],
        logger: logging.Logger | None = None,
    ) -> None:
        self.controller = controller
        self.reconciler = reconciler
        self.queue = queue
        self.context_factory = context_factory
        self.logger = logger or LOGGER

    def run(self) -> None:
        while self.process_next_item():
            pass

    def process_next_item(self, timeout: float | None = None) -> bool:
        """Handle one key.  Returns False once the queue is shut down."""
        try:
            key = self.queue.get(timeout=timeout)
        except QueueShutDown:
            return False
        if key is None:
            return True
        try:
            self.reconcile_key(key)  # type: ignore[arg-type]
        finally:
            self.queue.done(key)
        return True

    def reconcile_key(self, key: ReconcileKey) -> str:
        ctx = self.context_factory(key)
        started = time.monotonic()
        outcome = "success"
        try:
            result = self.reconciler.reconcile(ctx, key) or Result()
        except ConflictError as exc:
            outcome = "conflict"
            self.logger.info("Conflict reconciling %s, retrying against fresh state: %s", key, exc)
            self.queue.add(key)
        except ReconcileCancelled:
            outcome = "cancelled"
            self.logger.info("Reconcile of %s cancelled", key)
        except TerminalError as exc:
            outcome = "terminal"
            self.logger.warning("Reconcile of %s failed (%s): %s", key, exc.reason, exc)
            self._record_failure(ctx, key, exc)
            self.queue.add_rate_limited(key)
        except Exception:
            outcome = "error"
            self.logger.exception("Reconcile of %s failed", key)
            self.queue.add_rate_limited(key)
        else:
            if result.requeue_after is not None and result.requeue_after > 0:
                outcome = "requeue"
                self.queue.forget(key)
                self.queue.add_after(key, result.requeue_after)
            elif result.requeue:
                outcome = "requeue"
                self.queue.add_rate_limited(key)
            else:
                self.queue.forget(key)
            self._clear_failure(ctx, key)
        finally:
            METRICS.reconcile_duration_seconds.labels(controller=self.controller).observe(
                time.monotonic() - started
            )
            METRICS.reconcile_total.labels(controller=self.controller, result=outcome).inc()
        return outcome

    def _record_failure(self, ctx: ReconcileContext, key: ReconcileKey, exc: TerminalError) -> None:
        record = ctx.get(key)
        if record is None or ctx.cancelled:
            return
        status = set_condition(record.status, RECONCILED_CONDITION, "False", exc.reason, str(exc))
        try:
            ctx.update_status(record, status)
        except ConflictError:
            self.logger.debug("Conflict recording failure condition on %s; next retry will redo it", key)
        except Exception:
            self.logger.warning("Could not record failure condition on %s", key, exc_info=True)

    def _clear_failure(self, ctx: ReconcileContext, key: ReconcileKey) -> None:
        record = ctx.get(key)
        if record is None or ctx.cancelled:
            return
        condition = get_condition(record.status, RECONCILED_CONDITION)
        if condition is None or condition.get("status") != "False":
            return
        status = set_condition(record.status, RECONCILED_CONDITION, "True", "ReconcileSucceeded")
        try:
            ctx.update_status(record, status)
        except ConflictError:
            self.logger.debug("Conflict clearing failure condition on %s", key)
        except Exception:
            self.logger.warning("Could not clear failure condition on %s", key, exc_info=True)
