"""Prometheus metrics for the publishing pipeline."""

from prometheus_client import REGISTRY, Counter, Gauge, Histogram

# Worker outcomes
PUBLISH_OUTCOMES = Counter(
    "publisher_dispatch_outcomes_total",
    "Dispatch entries handled by publish workers",
    ["outcome"],  # published, retry, failed, duplicate, backpressure, lost
)

PUBLISH_DURATION = Histogram(
    "publisher_ledger_publish_seconds",
    "Duration of ledger publish calls",
    ["result"],  # success, error
    buckets=(1, 5, 15, 30, 60, 120, 300, 600, 900),
)

PUBLISHES_IN_FLIGHT = Gauge(
    "publisher_ledger_publishes_in_flight",
    "Ledger publish calls currently running in this process",
)

LOST_LEASES = Counter(
    "publisher_lost_leases_total",
    "Publishes that finished after their wallet lease could no longer be renewed",
)

# Maintenance sweeps
RECOVERED_ASSETS = Counter(
    "publisher_recovered_assets_total",
    "Assets moved back to queued by maintenance sweeps",
    ["reason"],  # stuck_publishing, resignal
)

REAPED_LEASES = Counter(
    "publisher_reaped_leases_total",
    "Expired wallet leases removed by maintenance sweeps",
)

# Snapshot gauges, refreshed by the metrics reporter
ASSETS_BY_STATUS = Gauge(
    "publisher_assets",
    "Assets per lifecycle state",
    ["status"],
)

WALLETS = Gauge(
    "publisher_wallets",
    "Wallet pool occupancy",
    ["state"],  # total, available, locked
)

DISPATCH_ENTRIES = Gauge(
    "publisher_dispatch_entries",
    "Dispatch queue entries",
    ["state"],  # waiting, active, delayed
)

ACTIVE_WORKERS = Gauge(
    "publisher_active_workers",
    "Publish workers with a recent heartbeat",
)


def register_metrics() -> None:
    """Register metrics with Prometheus."""
    metrics = [
        PUBLISH_OUTCOMES,
        PUBLISH_DURATION,
        PUBLISHES_IN_FLIGHT,
        LOST_LEASES,
        RECOVERED_ASSETS,
        REAPED_LEASES,
        ASSETS_BY_STATUS,
        WALLETS,
        DISPATCH_ENTRIES,
        ACTIVE_WORKERS,
    ]
    for metric in metrics:
        try:
            REGISTRY.register(metric)
        except ValueError:
            # Metric already registered
            pass


# Register metrics on module import
register_metrics()
