"""Tests for Prometheus metrics definitions and Pushgateway push."""

from unittest.mock import patch

from prometheus_client import Counter, Gauge, Histogram

from doc_updates import metrics
from doc_updates.metrics import push_sync_metrics

RESULT = {
    "updated_count": 3,
    "unchanged_count": 5,
    "failed_count": 1,
    "deferred_count": 2,
    "duration_ms": 1500,
}


def test_metric_types():
    assert isinstance(metrics.sync_files_total, Counter)
    assert isinstance(metrics.sync_runs_total, Counter)
    assert isinstance(metrics.github_rate_limit_remaining, Gauge)
    assert isinstance(metrics.sync_duration_seconds, Histogram)


def test_push_uses_fresh_registry():
    with patch("prometheus_client.exposition.pushadd_to_gateway") as mock_push:
        assert push_sync_metrics("localhost:9091", RESULT, {"host": "ci"}) is True

    mock_push.assert_called_once()
    args, kwargs = mock_push.call_args
    assert args[0] == "localhost:9091"
    assert kwargs["job"] == "doc_updates_sync"
    assert kwargs["grouping_key"] == {"host": "ci"}

    registry = kwargs["registry"]
    assert registry.get_sample_value("doc_updates_sync_files_total", {"status": "updated"}) == 3
    assert registry.get_sample_value("doc_updates_sync_files_total", {"status": "deferred"}) == 2
    assert registry.get_sample_value("doc_updates_sync_last_duration_seconds") == 1.5


def test_push_missing_counts_default_to_zero():
    with patch("prometheus_client.exposition.pushadd_to_gateway") as mock_push:
        assert push_sync_metrics("localhost:9091", {}) is True

    kwargs = mock_push.call_args.kwargs
    assert kwargs["grouping_key"] == {}
    assert kwargs["registry"].get_sample_value(
        "doc_updates_sync_files_total", {"status": "failed"}
    ) == 0


def test_push_failure_is_swallowed():
    """Gateway errors never propagate to the sync run."""
    with patch(
        "prometheus_client.exposition.pushadd_to_gateway",
        side_effect=OSError("connection refused"),
    ):
        assert push_sync_metrics("localhost:9091", RESULT) is False
