from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from converge.src.config import EngineSettings, load_settings
from converge.src.gc import register_garbage_collector
from converge.src.health import start_health_server
from converge.src.kube import KubernetesStore, load_kube_configuration
from converge.src.leader import default_identity
from converge.src.metrics import METRICS
from converge.src.replicas import REPLICA_KIND, REPLICA_SET_KIND, ReplicaSetReconciler
from converge.src.store import StateStore
from converge.src.supervisor import ControllerManager, ControllerOptions

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level, logging.INFO))


def build_manager(settings: EngineSettings, store: StateStore) -> ControllerManager:
    """Register the built-in controllers: ReplicaSet and the Replica garbage collector."""
    manager = ControllerManager(store, identity=settings.identity or default_identity())
    manager.register_controller(
        REPLICA_SET_KIND,
        ReplicaSetReconciler(),
        ControllerOptions.from_settings(
            settings,
            lease_name=settings.lease_name_for(REPLICA_SET_KIND),
            owns=(REPLICA_KIND,),
        ),
    )
    register_garbage_collector(
        manager,
        dependent_kind=REPLICA_KIND,
        owner_kinds=(REPLICA_SET_KIND,),
        options=ControllerOptions.from_settings(
            settings, lease_name=settings.lease_name_for(f"{REPLICA_KIND}-gc")
        ),
    )
    return manager


def main() -> None:
    """Engine entrypoint: configure logging, start controllers and health server, wait for a signal."""
    settings = load_settings()
    configure_logging(settings.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    store = KubernetesStore(group=settings.resource_group, version=settings.resource_version)
    manager = build_manager(settings, store)
    health_server = start_health_server(manager, port=settings.health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    manager.start()
    while not shutdown_event.wait(timeout=1.0):
        if not manager.healthy:
            logging.getLogger(__name__).error("A controller failed fatally; terminating process")
            break

    clean = manager.shutdown(grace_period=settings.shutdown_grace_seconds)
    health_server.shutdown()
    logging.getLogger(__name__).info("Engine stopped (clean=%s)", clean)
    if not clean or not manager.healthy:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
