from __future__ import annotations


class EngineError(Exception):
    """Base class for every error raised by the reconciliation engine."""


class StoreError(EngineError):
    """A state store operation failed."""


class NotFoundError(StoreError):
    """The requested record does not exist in the store."""


class AlreadyExistsError(StoreError):
    """A create was issued for a key that is already present."""


class ConflictError(StoreError):
    """A write carried a stale ``resource_version``.

    Not a failure of the reconciler: it means the cache was behind the store.
    Workers requeue the key immediately without growing its backoff.
    """


class ResourceVersionTooOldError(StoreError):
    """A watch bookmark points before the store's retained history."""


class StoreUnavailableError(StoreError):
    """The store could not be reached or answered with a server-side error."""


class AccessDeniedError(StoreError):
    """The store rejected our identity (401/403)."""


class ReconcileError(EngineError):
    """Base class for errors a reconciler raises on purpose."""


class RetryableError(ReconcileError):
    """A transient failure: requeue with exponential backoff."""


class TerminalError(ReconcileError):
    """This attempt cannot succeed until something external changes.

    The key is still requeued with backoff and a status condition is written
    so that the stuck state is visible. A later fix to the desired state is
    picked up on the next retry or resync.
    """

    def __init__(self, message: str, reason: str = "ReconcileFailed") -> None:
        super().__init__(message)
        self.reason = reason


class ValidationError(TerminalError):
    """The desired state of a record is invalid."""

    def __init__(self, message: str, reason: str = "InvalidSpec") -> None:
        super().__init__(message, reason=reason)


class ReconcileCancelled(EngineError):
    """Raised at a checkpoint after the controller lost its lease or is stopping."""


class FatalError(EngineError):
    """The controller cannot continue and must be halted."""


class IdentityRevokedError(FatalError):
    """The lease could not be acquired or renewed because our identity was rejected."""


class CacheSyncError(FatalError):
    """The informer caches never reached a synced state."""
