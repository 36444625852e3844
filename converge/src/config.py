from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigError(ValueError):
    """Raised when settings or controller options are invalid."""


def parse_bool(name: str, raw: str | None, default: bool = False) -> bool:
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigError(f"{name} must be a boolean, got: {raw!r}")


def env_int(
    env: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(
    env: Mapping[str, str],
    name: str,
    default: float,
    *,
    minimum: float | None = None,
) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be a number") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    return value


@dataclass(frozen=True)
class EngineSettings:
    """Process-wide settings read from the environment.

    Environment variables (with defaults):
        ``LOG_LEVEL``                   Root log level (``INFO``).
        ``HEALTH_PORT``                 Health and metrics port (``8080``).
        ``LEADER_ELECTION_ENABLED``     Gate controllers behind leases (``true``).
        ``LEASE_NAMESPACE``             Namespace holding the Lease records (``default``).
        ``LEASE_NAME_PREFIX``           Lease names are ``<prefix>-<kind>`` (``converge``).
        ``IDENTITY``                    This replica's lease identity (pod name).
        ``LEASE_DURATION_SECONDS``      ``15``
        ``RENEW_DEADLINE_SECONDS``      ``10``
        ``RETRY_PERIOD_SECONDS``        ``2``
        ``WORKERS``                     Concurrent reconciles per controller (``2``).
        ``RESYNC_INTERVAL_SECONDS``     Full resync period, 0 disables (``300``).
        ``CACHE_SYNC_TIMEOUT_SECONDS``  ``60``
        ``SHUTDOWN_GRACE_SECONDS``      ``30``
        ``BACKOFF_BASE_SECONDS``        Per-key retry backoff start (``0.005``).
        ``BACKOFF_MAX_SECONDS``         Per-key retry backoff cap (``1000``).
        ``RESOURCE_GROUP``              API group of custom kinds (``converge.io``).
        ``RESOURCE_VERSION``            API version of custom kinds (``v1alpha1``).
    """

    log_level: str = "INFO"
    health_port: int = 8080
    leader_election_enabled: bool = True
    lease_namespace: str = "default"
    lease_name_prefix: str = "converge"
    identity: str | None = None
    lease_duration_seconds: int = 15
    renew_deadline_seconds: int = 10
    retry_period_seconds: int = 2
    workers: int = 2
    resync_interval_seconds: float = 300.0
    cache_sync_timeout_seconds: float = 60.0
    shutdown_grace_seconds: float = 30.0
    backoff_base_seconds: float = 0.005
    backoff_max_seconds: float = 1000.0
    resource_group: str = "converge.io"
    resource_version: str = "v1alpha1"

    def __post_init__(self) -> None:
        if self.renew_deadline_seconds >= self.lease_duration_seconds:
            raise ConfigError("RENEW_DEADLINE_SECONDS must be smaller than LEASE_DURATION_SECONDS")
        if self.retry_period_seconds >= self.renew_deadline_seconds:
            raise ConfigError("RETRY_PERIOD_SECONDS must be smaller than RENEW_DEADLINE_SECONDS")
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ConfigError("BACKOFF_MAX_SECONDS must be >= BACKOFF_BASE_SECONDS")

    def lease_name_for(self, kind: str) -> str:
        return f"{self.lease_name_prefix}-{kind.lower()}"


def load_settings(env: Mapping[str, str] | None = None) -> EngineSettings:
    """Build :class:`EngineSettings` from *env* (``os.environ`` when omitted)."""
    source = os.environ if env is None else env
    return EngineSettings(
        log_level=(source.get("LOG_LEVEL") or "INFO").upper(),
        health_port=env_int(source, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        leader_election_enabled=parse_bool(
            "LEADER_ELECTION_ENABLED", source.get("LEADER_ELECTION_ENABLED"), default=True
        ),
        lease_namespace=source.get("LEASE_NAMESPACE") or "default",
        lease_name_prefix=source.get("LEASE_NAME_PREFIX") or "converge",
        identity=source.get("IDENTITY") or None,
        lease_duration_seconds=env_int(source, "LEASE_DURATION_SECONDS", 15, minimum=1),
        renew_deadline_seconds=env_int(source, "RENEW_DEADLINE_SECONDS", 10, minimum=1),
        retry_period_seconds=env_int(source, "RETRY_PERIOD_SECONDS", 2, minimum=1),
        workers=env_int(source, "WORKERS", 2, minimum=1),
        resync_interval_seconds=env_float(source, "RESYNC_INTERVAL_SECONDS", 300.0, minimum=0),
        cache_sync_timeout_seconds=env_float(
            source, "CACHE_SYNC_TIMEOUT_SECONDS", 60.0, minimum=1
        ),
        shutdown_grace_seconds=env_float(source, "SHUTDOWN_GRACE_SECONDS", 30.0, minimum=0),
        backoff_base_seconds=env_float(source, "BACKOFF_BASE_SECONDS", 0.005, minimum=0.001),
        backoff_max_seconds=env_float(source, "BACKOFF_MAX_SECONDS", 1000.0, minimum=0.001),
        resource_group=source.get("RESOURCE_GROUP") or "converge.io",
        resource_version=source.get("RESOURCE_VERSION") or "v1alpha1",
    )
