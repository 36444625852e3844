from __future__ import annotations

import logging
from typing import Any

from converge.src.errors import (
    AlreadyExistsError,
    NotFoundError,
    RetryableError,
    StoreUnavailableError,
    TerminalError,
    ValidationError,
)
from converge.src.reconciler import (
    Collaborator,
    Expectations,
    ObservedResult,
    ReconcileContext,
    Result,
    SideEffect,
    set_condition,
)
from converge.src.records import ReconcileKey, ResourceRecord, owner_reference_for
from converge.src.store import StateStore

LOGGER = logging.getLogger(__name__)

REPLICA_SET_KIND = "ReplicaSet"
REPLICA_KIND = "Replica"
REPLICAS_FINALIZER = "converge.io/replicas"
OWNER_LABEL = "converge.io/owner"
READY_CONDITION = "Ready"
PROBE_ACTION = "probe"


def replica_name(owner_name: str, index: int) -> str:
    return f"{owner_name}-{index}"


def desired_replicas(owner: ResourceRecord) -> int:
    raw = owner.spec.get("replicas", 1)
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 0:
        raise ValidationError(f"spec.replicas must be a non-negative integer, got: {raw!r}")
    return raw


class RecordStatusProbe:
    """Readiness probe that trusts the ``status.ready`` flag a replica's runtime writes."""

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def apply(self, effect: SideEffect) -> ObservedResult:
        if effect.action != PROBE_ACTION:
            raise TerminalError(f"unsupported action {effect.action!r}", reason="UnsupportedAction")
        try:
            record = self.store.get(effect.key)
        except NotFoundError:
            return ObservedResult(ok=False, details={"reason": "NotFound"})
        except StoreUnavailableError as exc:
            raise RetryableError(f"probe of {effect.key} failed: {exc}") from exc
        return ObservedResult(
            ok=record.status.get("ready") is True,
            details={"phase": record.status.get("phase")},
        )


class ReplicaSetReconciler:
    """Keeps ``spec.replicas`` dependent ``Replica`` records alive for each ReplicaSet.

    Each pass reads the owner and its dependents from the cache, creates the
    missing replicas (named ``<owner>-<index>``), deletes surplus ones, probes
    readiness of the replicas it can observe, and writes
    ``status.replicas`` / ``status.readyReplicas`` / a ``Ready`` condition.
    Status only ever reflects observed dependents, never the ones it has just
    asked for.  While fewer replicas are ready than desired the key is
    requeued after ``ready_requeue_seconds``.

    Only a missing ``Replica`` record triggers a create.  A replica whose
    record still exists but reports ``status.ready`` false counts as observed
    and is waited on, never replaced; whatever runs the replica is expected to
    restart it or delete its record.

    Deleting a ReplicaSet deletes its replicas first; the finalizer is removed
    once none remain.
    """

    def __init__(
        self,
        probe: Collaborator | None = None,
        expectations: Expectations | None = None,
        ready_requeue_seconds: float = 5.0,
    ) -> None:
        self.probe = probe
        self.expectations = expectations or Expectations()
        self.ready_requeue_seconds = ready_requeue_seconds

    def reconcile(self, ctx: ReconcileContext, key: ReconcileKey) -> Result | None:
        owner = ctx.get(key)
        if owner is None:
            self.expectations.forget(key)
            return None
        if owner.is_deleting:
            return self._finalize(ctx, key, owner)

        desired = desired_replicas(owner)
        owner = ctx.add_finalizer(owner, REPLICAS_FINALIZER)

        dependents = self._owned(ctx, owner)
        observed_names = {record.name for record in dependents}
        pending = self.expectations.pending(key, observed_names)
        wanted = [replica_name(owner.name, index) for index in range(desired)]

        created = 0
        for name in wanted:
            if name in observed_names or name in pending:
                continue
            self._create_replica(ctx, owner, name)
            self.expectations.expect_creations(key, [name])
            created += 1

        live = [record for record in dependents if not record.is_deleting]
        for record in live:
            if record.name not in wanted:
                LOGGER.info("Scaling %s down: deleting %s", key, record.key)
                try:
                    ctx.delete(record)
                except NotFoundError:
                    pass

        observed = [record for record in live if record.name in wanted]
        probe = self.probe or RecordStatusProbe(ctx.store)
        ready = 0
        for record in observed:
            if ctx.apply(probe, SideEffect(PROBE_ACTION, record.key)).ok:
                ready += 1

        ctx.update_status(owner, self._status(owner, desired, len(observed), ready))

        if created or pending or ready < desired:
            return Result(requeue_after=self.ready_requeue_seconds)
        return Result()

    @staticmethod
    def _owned(ctx: ReconcileContext, owner: ResourceRecord) -> list[ResourceRecord]:
        owned = []
        for record in ctx.dependents(REPLICA_KIND, owner.uid or ""):
            controller = record.controller_owner()
            if controller is not None and controller.uid == owner.uid:
                owned.append(record)
        return owned

    @staticmethod
    def _create_replica(ctx: ReconcileContext, owner: ResourceRecord, name: str) -> None:
        record = ResourceRecord(
            kind=REPLICA_KIND,
            namespace=owner.namespace,
            name=name,
            spec=dict(owner.spec.get("template") or {}),
            labels={OWNER_LABEL: owner.name},
            owner_references=[owner_reference_for(owner)],
        )
        try:
            ctx.create(record)
            LOGGER.info("Created %s for %s", record.key, owner.key)
        except AlreadyExistsError:
            LOGGER.debug("%s already exists; waiting for the cache to observe it", record.key)

    @staticmethod
    def _status(owner: ResourceRecord, desired: int, observed: int, ready: int) -> dict[str, Any]:
        status = dict(owner.status)
        status["replicas"] = observed
        status["readyReplicas"] = ready
        status["observedGeneration"] = owner.generation
        message = f"{ready}/{desired} replicas ready"
        if ready >= desired:
            return set_condition(status, READY_CONDITION, "True", "AllReplicasReady", message)
        return set_condition(status, READY_CONDITION, "False", "ReplicasNotReady", message)

    def _finalize(self, ctx: ReconcileContext, key: ReconcileKey, owner: ResourceRecord) -> Result | None:
        if REPLICAS_FINALIZER not in owner.finalizers:
            return None
        dependents = self._owned(ctx, owner)
        for record in dependents:
            if record.is_deleting:
                continue
            try:
                ctx.delete(record)
            except NotFoundError:
                pass
        if dependents:
            return Result(requeue_after=1.0)
        self.expectations.forget(key)
        ctx.remove_finalizer(owner, REPLICAS_FINALIZER)
        LOGGER.info("Finalized %s", key)
        return None
