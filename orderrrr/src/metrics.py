from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Restart counters carry a ``kind`` label (Deployment, StatefulSet, ...) so
    operators can alert on restart storms per pod controller type.
    """

    restarts_total: Counter = field(
        default_factory=lambda: Counter(
            "orderrrr_restarts_total",
            "Total rolling restarts issued for pod controllers",
            ["kind"],
        )
    )
    restart_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "orderrrr_restart_errors_total",
            "Total rolling restart patches that failed",
            ["kind"],
        )
    )
    deferred_total: Counter = field(
        default_factory=lambda: Counter(
            "orderrrr_deferred_total",
            "Total pod controller restarts deferred to a later tick",
            ["reason"],
        )
    )
    skipped_total: Counter = field(
        default_factory=lambda: Counter(
            "orderrrr_skipped_total",
            "Total buffer items or pod controllers skipped without action",
            ["reason"],
        )
    )
    buffer_pending: Gauge = field(
        default_factory=lambda: Gauge(
            "orderrrr_buffer_pending",
            "Current number of changed resources waiting in the buffer",
        )
    )
    buffer_dropped_total: Counter = field(
        default_factory=lambda: Counter(
            "orderrrr_buffer_dropped_total",
            "Total buffered changes dropped on shutdown",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "orderrrr_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "orderrrr_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    tick_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "orderrrr_tick_duration_seconds",
            "Seconds spent processing one reconciliation tick",
            buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, 30, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "orderrrr",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
