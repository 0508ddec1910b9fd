from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``."""

    sync_passes_total: Counter = field(
        default_factory=lambda: Counter(
            "foo_controller_sync_passes_total",
            "Total synchronization passes started by a debounced tick",
        )
    )
    sync_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "foo_controller_sync_failures_total",
            "Total synchronization passes aborted by a failed create or update",
        )
    )
    deployments_created_total: Counter = field(
        default_factory=lambda: Counter(
            "foo_controller_deployments_created_total",
            "Total deployments created for Foo resources",
        )
    )
    deployments_updated_total: Counter = field(
        default_factory=lambda: Counter(
            "foo_controller_deployments_updated_total",
            "Total deployments whose replica count was updated",
        )
    )
    ownership_conflicts_total: Counter = field(
        default_factory=lambda: Counter(
            "foo_controller_ownership_conflicts_total",
            "Total times a target deployment was found controlled by someone else",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "foo_controller_watch_errors_total",
            "Total fatal watch stream errors",
            ["stream"],
        )
    )
    dirty_resources: Gauge = field(
        default_factory=lambda: Gauge(
            "foo_controller_dirty_resources",
            "Current number of Foo resources awaiting reconciliation",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "foo_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
