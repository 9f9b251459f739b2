"""
Prometheus metrics definitions for doc-updates-sync.

Process-local Counter/Gauge/Histogram metrics for sync runs, plus a
Pushgateway push for short-lived CLI runs. Naming: snake_case with the
doc_updates_ prefix.
"""

import logging

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

logger = logging.getLogger("doc_updates.metrics")

# ==============================================================================
# COUNTERS
# ==============================================================================

sync_files_total = Counter(
    "doc_updates_sync_files_total",
    "Candidate files handled by sync runs",
    ["status"],
    # status: updated, unchanged, failed, deferred
)

sync_runs_total = Counter(
    "doc_updates_sync_runs_total",
    "Sync runs by outcome",
    ["outcome"],
    # outcome: success, partial, failed, skipped
)

# ==============================================================================
# GAUGES / HISTOGRAMS
# ==============================================================================

github_rate_limit_remaining = Gauge(
    "doc_updates_github_rate_limit_remaining",
    "Last X-RateLimit-Remaining value seen from GitHub",
)

sync_duration_seconds = Histogram(
    "doc_updates_sync_duration_seconds",
    "Sync run duration",
    buckets=[0.5, 1, 5, 15, 30, 60, 120, 300, 600, 1800],
)


def push_sync_metrics(
    gateway: str,
    result: dict,
    grouping_key: dict[str, str] | None = None,
) -> bool:
    """Push one run's metrics to a Prometheus Pushgateway.

    Uses a fresh registry so only this run's values are pushed. Failures
    are logged and swallowed.

    Args:
        gateway: Pushgateway host:port
        result: SyncResult.to_dict() output
        grouping_key: Optional Pushgateway grouping labels

    Returns:
        True if the push succeeded
    """
    try:
        from prometheus_client.exposition import pushadd_to_gateway

        registry = CollectorRegistry()
        files = Counter(
            "doc_updates_sync_files_total",
            "Candidate files handled by sync runs",
            ["status"],
            registry=registry,
        )
        duration = Gauge(
            "doc_updates_sync_last_duration_seconds",
            "Duration of the last sync run",
            registry=registry,
        )
        for status in ("updated", "unchanged", "failed", "deferred"):
            files.labels(status=status).inc(result.get(f"{status}_count", 0))
        duration.set(result.get("duration_ms", 0) / 1000.0)

        pushadd_to_gateway(
            gateway,
            job="doc_updates_sync",
            registry=registry,
            grouping_key=grouping_key or {},
        )
        return True
    except Exception as e:
        logger.warning("Failed to push metrics: %s", e)
        return False
