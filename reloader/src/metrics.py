from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class ReloaderMetrics:
    """Prometheus metrics exported by the reloader on ``/metrics``.

    Reload counters carry a ``success`` label so operators can alert on the
    failure ratio; the per-namespace variant lets them see which tenants are
    reloading most.
    """

    reloaded_total: Counter = field(
        default_factory=lambda: Counter(
            "reloader_reload_executed_total",
            "Total workload reloads triggered by ConfigMap or Secret changes",
            ["success"],
        )
    )
    reloaded_by_namespace_total: Counter = field(
        default_factory=lambda: Counter(
            "reloader_reload_executed_by_namespace_total",
            "Total workload reloads by namespace",
            ["success", "namespace"],
        )
    )
    delayed_upgrades_pending: Gauge = field(
        default_factory=lambda: Gauge(
            "reloader_delayed_upgrades_pending",
            "Current number of workloads waiting for a delayed upgrade",
        )
    )
    delayed_changes_dropped_total: Counter = field(
        default_factory=lambda: Counter(
            "reloader_delayed_changes_dropped_total",
            "Total changes dropped because the workload's delayed upgrade was already firing",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "reloader_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "reloader",
            "Build information for the reloader",
        )
    )


METRICS = ReloaderMetrics()
