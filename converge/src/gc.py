from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable, Iterable

from converge.src.errors import NotFoundError
from converge.src.informer import EventType, InformerEvent, InformerFactory
from converge.src.reconciler import ReconcileContext, Result
from converge.src.records import OwnerReference, ReconcileKey
from converge.src.supervisor import Controller, ControllerManager, ControllerOptions, Watch

LOGGER = logging.getLogger(__name__)


class GarbageCollector:
    """Deletes dependents whose owners are all gone.

    A dependent survives while at least one of its owner references still
    resolves to a live record with the same uid.  An owner that is missing
    from the cache is confirmed against the store before anything is deleted,
    since the cache may simply not have observed a fresh owner yet.  A record
    recreated under the same name gets a new uid and does not count as the
    original owner.
    """

    def reconcile(self, ctx: ReconcileContext, key: ReconcileKey) -> Result | None:
        record = ctx.get(key)
        if record is None or record.is_deleting or not record.owner_references:
            return None
        for ref in record.owner_references:
            if self._owner_exists(ctx, record.namespace, ref):
                return None

        LOGGER.info(
            "Deleting %s: owner(s) %s no longer exist",
            key,
            ", ".join(f"{ref.kind}/{ref.name}" for ref in record.owner_references),
        )
        try:
            ctx.delete(record)
        except NotFoundError:
            LOGGER.debug("%s was already deleted", key)
        return None

    @staticmethod
    def _owner_exists(ctx: ReconcileContext, namespace: str, ref: OwnerReference) -> bool:
        owner_key = ReconcileKey(ref.kind, namespace, ref.name)
        cached = ctx.get(owner_key)
        if cached is not None and cached.uid == ref.uid:
            return True
        try:
            live = ctx.store.get(owner_key)
        except NotFoundError:
            return False
        return live.uid == ref.uid


def dependents_of_deleted_owner(
    informers: InformerFactory, dependent_kind: str
) -> Callable[[InformerEvent], Iterable[ReconcileKey]]:
    """Map an owner's deletion event to the keys of its dependents."""

    def _map(event: InformerEvent) -> Iterable[ReconcileKey]:
        if not event.record.uid:
            return []
        dependents = informers.informer_for(dependent_kind).by_owner(event.record.uid)
        return [record.key for record in dependents]

    return _map


def register_garbage_collector(
    manager: ControllerManager,
    dependent_kind: str,
    owner_kinds: Iterable[str],
    options: ControllerOptions | None = None,
) -> Controller:
    """Register a collector for *dependent_kind* that reacts to deletions of *owner_kinds*."""
    base = options or ControllerOptions()
    watches = tuple(
        Watch(
            kind=owner_kind,
            map_fn=dependents_of_deleted_owner(manager.informers, dependent_kind),
            event_types=frozenset({EventType.DELETED}),
        )
        for owner_kind in owner_kinds
    )
    return manager.register_controller(
        dependent_kind,
        GarbageCollector(),
        dataclasses.replace(base, watches=base.watches + watches),
    )
