from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class EngineMetrics:
    """Prometheus metrics exported by the engine on ``/metrics``.

    Queue and reconcile series carry a ``queue``/``controller`` label (the
    controller's kind), informer series a ``kind`` label and leadership series
    a ``lease`` label, so a multi-controller process can be alerted on per
    controller.
    """

    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "converge_workqueue_depth",
            "Current number of keys waiting in the work queue",
            ["queue"],
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "converge_workqueue_adds_total",
            "Total keys accepted by the work queue (deduplicated adds excluded)",
            ["queue"],
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "converge_workqueue_retries_total",
            "Total rate-limited re-enqueues after failed reconciles",
            ["queue"],
        )
    )
    queue_item_requeues: Histogram = field(
        default_factory=lambda: Histogram(
            "converge_workqueue_item_requeues",
            "Per-key consecutive retry count observed at each rate-limited requeue",
            ["queue"],
            buckets=(1, 2, 3, 5, 8, 13, 21, float("inf")),
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "converge_reconcile_duration_seconds",
            "Seconds spent in a single reconcile invocation",
            ["controller"],
        )
    )
    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "converge_reconcile_total",
            "Total reconcile invocations by outcome",
            ["controller", "result"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "converge_leader_transitions_total",
            "Total leadership state transitions",
            ["lease", "transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "converge_leader_state",
            "Whether this replica currently holds the lease (1=yes, 0=no)",
            ["lease"],
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "converge_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            ["lease"],
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "converge_informer_watch_errors_total",
            "Total list/watch errors seen by informers",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "converge_informer_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    relists_total: Counter = field(
        default_factory=lambda: Counter(
            "converge_informer_relists_total",
            "Total full relists after an expired watch bookmark",
            ["kind"],
        )
    )
    resyncs_total: Counter = field(
        default_factory=lambda: Counter(
            "converge_informer_resyncs_total",
            "Total periodic resyncs re-emitting every cached key",
            ["kind"],
        )
    )
    cache_objects: Gauge = field(
        default_factory=lambda: Gauge(
            "converge_informer_cache_objects",
            "Number of records currently held in the informer cache",
            ["kind"],
        )
    )
    controller_healthy: Gauge = field(
        default_factory=lambda: Gauge(
            "converge_controller_healthy",
            "Whether the controller is running without a fatal error (1=yes, 0=no)",
            ["controller"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "converge",
            "Build information for the engine",
        )
    )


METRICS = EngineMetrics()
