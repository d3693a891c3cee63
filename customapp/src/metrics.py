from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics recorded by the reconciliation engine.

    Reconcile counters carry a ``kind`` label so one process reconciling
    several resource types can be alerted on per type.  Exposing the
    registry over HTTP is left to the hosting process.
    """

    reconcile_attempts_total: Counter = field(
        default_factory=lambda: Counter(
            "customapp_reconcile_attempts_total",
            "Total reconcile attempts started",
            ["kind"],
        )
    )
    reconcile_successes_total: Counter = field(
        default_factory=lambda: Counter(
            "customapp_reconcile_successes_total",
            "Total reconcile attempts that converged",
            ["kind"],
        )
    )
    reconcile_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "customapp_reconcile_failures_total",
            "Total reconcile attempts that failed, by error class",
            ["kind", "reason"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "customapp_reconcile_duration_seconds",
            "Seconds spent in a single reconcile attempt",
            ["kind"],
            buckets=(0.01, 0.1, 0.25, 0.5, 1, 5, 15, 60, float("inf")),
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "customapp_queue_depth",
            "Number of keys ready in the work queue",
        )
    )
    terminal_surfaced_total: Counter = field(
        default_factory=lambda: Counter(
            "customapp_terminal_failures_surfaced_total",
            "Total terminal failures surfaced as status conditions after bounded retries",
            ["kind"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "customapp_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["kind"],
        )
    )
    watch_relists_total: Counter = field(
        default_factory=lambda: Counter(
            "customapp_watch_relists_total",
            "Total full relists after a watch stream terminated abnormally",
            ["kind"],
        )
    )
    cache_discarded_events_total: Counter = field(
        default_factory=lambda: Counter(
            "customapp_cache_discarded_events_total",
            "Total watch events discarded because they were not newer than the cache",
            ["kind"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "customapp_leader_transitions_total",
            "Total leadership changes of this replica, by direction",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "customapp_leader_state",
            "1 while this replica holds the leader Lease, else 0",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "customapp_leader_acquire_latency_seconds",
            "Seconds between starting a campaign and holding the Lease",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "customapp_controller",
            "Version of the running controller build",
        )
    )


METRICS = ControllerMetrics()
