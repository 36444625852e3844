from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, NamedTuple


class ReconcileKey(NamedTuple):
    """Identity of one unit of reconciliation work.

    Only keys travel through the work queue.  Reconcilers look the record up in
    the cache when they run, so they never act on a snapshot taken at enqueue
    time.
    """

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> ReconcileKey:
        """Parse the ``kind/namespace/name`` form produced by ``str(key)``."""
        parts = value.split("/")
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"reconcile key must look like kind/namespace/name, got: {value!r}")
        return cls(*parts)


@dataclass(frozen=True)
class OwnerReference:
    """Named back-reference from a dependent record to the record that created it."""

    kind: str
    name: str
    uid: str
    controller: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "name": self.name, "uid": self.uid, "controller": self.controller}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> OwnerReference:
        return cls(
            kind=str(raw.get("kind", "")),
            name=str(raw.get("name", "")),
            uid=str(raw.get("uid", "")),
            controller=bool(raw.get("controller", False)),
        )


@dataclass
class ResourceRecord:
    """A versioned, typed object as held by the store and mirrored by informers.

    ``spec`` is the desired state and ``status`` the observed state.
    ``resource_version`` is opaque: callers only hand it back on writes.
    """

    kind: str
    namespace: str
    name: str
    spec: dict[str, Any] = field(default_factory=dict)
    status: dict[str, Any] = field(default_factory=dict)
    resource_version: str | None = None
    uid: str | None = None
    generation: int = 0
    labels: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    owner_references: list[OwnerReference] = field(default_factory=list)
    creation_timestamp: datetime | None = None
    deletion_timestamp: datetime | None = None

    @property
    def key(self) -> ReconcileKey:
        return ReconcileKey(self.kind, self.namespace, self.name)

    @property
    def is_deleting(self) -> bool:
        return self.deletion_timestamp is not None

    def controller_owner(self) -> OwnerReference | None:
        """Return the owner reference flagged as the managing controller, if any."""
        for ref in self.owner_references:
            if ref.controller:
                return ref
        return None

    def is_owned_by(self, owner: ResourceRecord) -> bool:
        return any(ref.uid == owner.uid for ref in self.owner_references)

    def copy(self) -> ResourceRecord:
        return copy.deepcopy(self)

    def evolve(self, **changes: Any) -> ResourceRecord:
        """Return a deep copy with *changes* applied."""
        return replace(self.copy(), **changes)


def owner_reference_for(owner: ResourceRecord, controller: bool = True) -> OwnerReference:
    if not owner.uid:
        raise ValueError(f"cannot reference {owner.key} before the store assigns it a uid")
    return OwnerReference(kind=owner.kind, name=owner.name, uid=owner.uid, controller=controller)


def utc_now() -> datetime:
    return datetime.now(UTC)


def format_timestamp(value: datetime | None) -> str | None:
    """Render a timestamp in the RFC 3339 micro-time form used by the Kubernetes API."""
    if value is None:
        return None
    aware = value if value.tzinfo else value.replace(tzinfo=UTC)
    return aware.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an RFC 3339 string (or pass a datetime through), always returning UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
