from __future__ import annotations

import enum
import logging
import os
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from converge.src.errors import (
    AccessDeniedError,
    AlreadyExistsError,
    ConflictError,
    IdentityRevokedError,
    NotFoundError,
    StoreError,
)
from converge.src.metrics import METRICS
from converge.src.records import (
    ReconcileKey,
    ResourceRecord,
    format_timestamp,
    parse_timestamp,
    utc_now,
)
from converge.src.store import StateStore

LOGGER = logging.getLogger(__name__)

LEASE_KIND = "Lease"


class LeaderState(enum.Enum):
    FOLLOWER = "Follower"
    CANDIDATE = "Candidate"
    LEADER = "Leader"


@dataclass
class Lease:
    """Time-bounded exclusive ownership of one controller.

    Persisted as the ``spec`` of a ``Lease`` record using the field names of
    the Kubernetes ``coordination.k8s.io/v1`` Lease.
    """

    holder_identity: str | None = None
    lease_duration_seconds: float = 15
    acquire_time: datetime | None = None
    renew_time: datetime | None = None
    leader_transitions: int = 0

    def expired(self, now: datetime) -> bool:
        if self.renew_time is None:
            return True
        return now > self.renew_time + timedelta(seconds=self.lease_duration_seconds)

    def to_spec(self) -> dict[str, Any]:
        return {
            "holderIdentity": self.holder_identity,
            "leaseDurationSeconds": self.lease_duration_seconds,
            "acquireTime": format_timestamp(self.acquire_time),
            "renewTime": format_timestamp(self.renew_time),
            "leaseTransitions": self.leader_transitions,
        }

    @classmethod
    def from_spec(cls, spec: dict[str, Any], default_duration: float = 15) -> Lease:
        return cls(
            holder_identity=spec.get("holderIdentity") or None,
            lease_duration_seconds=spec.get("leaseDurationSeconds") or default_duration,
            acquire_time=parse_timestamp(spec.get("acquireTime")),
            renew_time=parse_timestamp(spec.get("renewTime")),
            leader_transitions=int(spec.get("leaseTransitions") or 0),
        )


class LeaseManager:
    """Leader election over a ``Lease`` record in the state store.

    Ensures at most one replica of a controller reconciles at a time.  The
    algorithm:

    1. Read the Lease.  If it does not exist, create it and become leader.
    2. If *we* are the holder, renew it (update ``renewTime``).
    3. If another identity holds it, wait until
       ``renewTime + leaseDurationSeconds`` has passed (the holder failed to
       renew), then take it over and bump ``leaseTransitions``.
    4. Every write is conditioned on the version just read.  A conflict means
       another candidate won the race, so we stay follower.

    Followers poll every ``retry_period_seconds`` stretched by up to
    ``jitter_factor``.  The leader renews every ``retry_period_seconds``.  A
    leader whose renewal fails demotes itself at once and calls
    ``on_stopped_leading``.  It never waits to find out whether the Lease is
    still its own, because the rest of the fleet treats it as dead after
    ``lease_duration_seconds``.  Store clients must therefore time out
    requests well inside ``renew_deadline_seconds``.

    All timestamps use UTC to avoid timezone ambiguity across nodes.
    """

    def __init__(
        self,
        store: StateStore,
        namespace: str,
        lease_name: str,
        identity: str,
        lease_duration_seconds: float = 15,
        renew_deadline_seconds: float = 10,
        retry_period_seconds: float = 2,
        jitter_factor: float = 1.2,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        if lease_duration_seconds <= 0:
            raise ValueError("lease_duration_seconds must be > 0")
        if renew_deadline_seconds <= 0:
            raise ValueError("renew_deadline_seconds must be > 0")
        if retry_period_seconds < 0:
            raise ValueError("retry_period_seconds must be >= 0")
        if jitter_factor < 0:
            raise ValueError("jitter_factor must be >= 0")
        if renew_deadline_seconds >= lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if retry_period_seconds >= renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")
        if not identity:
            raise ValueError("identity must be a non-empty string")

        self.store = store
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self.jitter_factor = jitter_factor
        self.now_fn = now_fn
        self._state = LeaderState.FOLLOWER

    @property
    def key(self) -> ReconcileKey:
        return ReconcileKey(LEASE_KIND, self.namespace, self.lease_name)

    @property
    def state(self) -> LeaderState:
        return self._state

    @property
    def is_leader(self) -> bool:
        return self._state is LeaderState.LEADER

    def _now_utc(self) -> datetime:
        return self.now_fn()

    def try_acquire_or_renew(self) -> bool:
        """Attempt a single acquire-or-renew cycle.  Returns True on success."""
        now = self._now_utc()
        try:
            record = self.store.get(self.key)
        except NotFoundError:
            return self._create_lease(now)
        except AccessDeniedError as exc:
            raise IdentityRevokedError(
                f"identity {self.identity} may not read lease {self.lease_name}"
            ) from exc
        except StoreError as exc:
            LOGGER.warning("Failed to read lease %s: %s", self.lease_name, exc)
            return False

        lease = Lease.from_spec(record.spec, default_duration=self.lease_duration_seconds)

        if lease.holder_identity == self.identity:
            lease.renew_time = now
            lease.lease_duration_seconds = self.lease_duration_seconds
            if lease.acquire_time is None:
                lease.acquire_time = now
            return self._write_lease(record, lease)

        if lease.holder_identity and not lease.expired(now):
            return False

        previous_holder = lease.holder_identity
        lease.holder_identity = self.identity
        lease.lease_duration_seconds = self.lease_duration_seconds
        lease.acquire_time = now
        lease.renew_time = now
        lease.leader_transitions += 1
        acquired = self._write_lease(record, lease)
        if acquired:
            LOGGER.info(
                "Took over lease %s from %s (transition %d)",
                self.lease_name,
                previous_holder or "<released>",
                lease.leader_transitions,
            )
        return acquired

    def _create_lease(self, now: datetime) -> bool:
        """Create a new Lease record, claiming leadership.

        Returns False when another replica created it first.
        """
        lease = Lease(
            holder_identity=self.identity,
            lease_duration_seconds=self.lease_duration_seconds,
            acquire_time=now,
            renew_time=now,
        )
        record = ResourceRecord(
            kind=LEASE_KIND,
            namespace=self.namespace,
            name=self.lease_name,
            spec=lease.to_spec(),
        )
        try:
            self.store.create(record)
            LOGGER.info("Acquired leader lease %s", self.lease_name)
            return True
        except AlreadyExistsError:
            LOGGER.debug("Lease %s already exists, will retry", self.lease_name)
            return False
        except AccessDeniedError as exc:
            raise IdentityRevokedError(
                f"identity {self.identity} may not create lease {self.lease_name}"
            ) from exc
        except StoreError as exc:
            LOGGER.warning("Failed to create lease %s: %s", self.lease_name, exc)
            return False

    def _write_lease(self, record: ResourceRecord, lease: Lease) -> bool:
        try:
            self.store.write(self.key, record.evolve(spec=lease.to_spec()), record.resource_version)
            return True
        except ConflictError:
            LOGGER.debug("Lease %s update conflict, will retry", self.lease_name)
            return False
        except AccessDeniedError as exc:
            raise IdentityRevokedError(
                f"identity {self.identity} may not update lease {self.lease_name}"
            ) from exc
        except StoreError as exc:
            LOGGER.warning("Failed to update lease %s: %s", self.lease_name, exc)
            return False

    def release(self) -> None:
        """Clear the holder and backdate ``renewTime`` so a successor can acquire at once."""
        try:
            record = self.store.get(self.key)
            lease = Lease.from_spec(record.spec, default_duration=self.lease_duration_seconds)
            if lease.holder_identity != self.identity:
                return
            lease.holder_identity = None
            lease.renew_time = self._now_utc() - timedelta(seconds=lease.lease_duration_seconds + 1)
            self.store.write(self.key, record.evolve(spec=lease.to_spec()), record.resource_version)
            LOGGER.info("Released leader lease %s", self.lease_name)
        except Exception:
            LOGGER.warning("Failed to release leader lease %s", self.lease_name, exc_info=True)

    def _poll_interval(self) -> float:
        if self._state is LeaderState.LEADER:
            return self.retry_period_seconds
        return self.retry_period_seconds * (1.0 + random.random() * self.jitter_factor)  # noqa: S311

    def _demote(self, transition: str) -> None:
        self._state = LeaderState.FOLLOWER
        METRICS.leader_state.labels(lease=self.lease_name).set(0)
        METRICS.leader_transitions_total.labels(lease=self.lease_name, transition=transition).inc()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Contend for the lease until *stop_event* is set.

        Raises :class:`IdentityRevokedError` when the store rejects our
        identity; leadership is given up before the error propagates.
        """
        LOGGER.info(
            "Starting leader election for lease %s (identity=%s)",
            self.lease_name,
            self.identity,
        )
        acquire_wait_started = time.monotonic()
        last_renewed = acquire_wait_started
        METRICS.leader_state.labels(lease=self.lease_name).set(0)
        self._state = LeaderState.FOLLOWER

        try:
            while not stop_event.is_set():
                leading = self.is_leader
                if not leading:
                    self._state = LeaderState.CANDIDATE
                try:
                    acquired = self.try_acquire_or_renew()
                except IdentityRevokedError:
                    raise
                except Exception:
                    LOGGER.exception("Unexpected error in leader election cycle")
                    acquired = False

                now = time.monotonic()
                if acquired and leading and now - last_renewed > self.renew_deadline_seconds:
                    LOGGER.warning(
                        "Lease %s renewed %.1fs after the previous renewal, past the %ss deadline",
                        self.lease_name,
                        now - last_renewed,
                        self.renew_deadline_seconds,
                    )
                    acquired = False
                if acquired:
                    last_renewed = now

                if acquired and not leading:
                    self._state = LeaderState.LEADER
                    LOGGER.info("Became leader of %s (identity=%s)", self.lease_name, self.identity)
                    METRICS.leader_state.labels(lease=self.lease_name).set(1)
                    METRICS.leader_transitions_total.labels(
                        lease=self.lease_name, transition="acquired"
                    ).inc()
                    METRICS.leader_acquire_latency_seconds.labels(lease=self.lease_name).observe(
                        time.monotonic() - acquire_wait_started
                    )
                    on_started_leading()
                elif not acquired and leading:
                    LOGGER.warning(
                        "Lease %s renewal failed; stepping down (identity=%s)",
                        self.lease_name,
                        self.identity,
                    )
                    self._demote("lost")
                    acquire_wait_started = time.monotonic()
                    on_stopped_leading()
                elif not acquired:
                    self._state = LeaderState.FOLLOWER

                stop_event.wait(timeout=self._poll_interval())
        finally:
            if self.is_leader:
                self._demote("released")
                try:
                    on_stopped_leading()
                finally:
                    self.release()
            else:
                self._state = LeaderState.FOLLOWER


def default_identity() -> str:
    """Return a unique identity for this replica, defaulting to the pod name.

    In Kubernetes the ``HOSTNAME`` env var is set to the pod name, giving each
    replica a stable identity for lease ownership.  Outside a pod the process
    id keeps two local replicas apart.
    """
    return os.getenv("HOSTNAME", os.getenv("POD_NAME", f"converge-{os.getpid()}"))
