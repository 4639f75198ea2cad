"""
Unit tests for the in-memory metric buffers.

Covers bounded retention, windowed queries and summaries.
"""

from datetime import timedelta

from ops_monitor.models.metric_record import MetricCategory
from ops_monitor.services.metrics_registry import MetricsRegistry, percentile


# ============================================================================
# Retention
# ============================================================================

class TestRetention:
    """Each category keeps at most max_records snapshots."""

    def test_oldest_records_are_evicted_past_the_cap(self, clock):
        registry = MetricsRegistry(max_records=1000, clock=clock)

        for i in range(1500):
            registry.record(MetricCategory.API_REQUESTS, {'sequence': i})

        records = registry.query(MetricCategory.API_REQUESTS)
        assert len(records) == 1000
        assert records[0]['sequence'] == 500
        assert records[-1]['sequence'] == 1499

    def test_categories_are_bounded_independently(self, clock):
        registry = MetricsRegistry(max_records=3, clock=clock)

        for i in range(5):
            registry.record(MetricCategory.SYSTEM, {'i': i})
        registry.record('custom', {'i': 0})

        assert registry.count(MetricCategory.SYSTEM) == 3
        assert registry.count('custom') == 1
        assert set(registry.categories()) == {'system', 'custom'}

    def test_sweep_drops_records_older_than_max_age(self, registry, clock):
        registry.record(MetricCategory.SYSTEM, {'old': True})
        clock.advance(hours=25)
        registry.record(MetricCategory.SYSTEM, {'old': False})

        removed = registry.sweep(timedelta(hours=24))

        assert removed == 1
        assert [record['old'] for record in registry.query(MetricCategory.SYSTEM)] == [False]

    def test_records_are_immutable_snapshots(self, registry):
        values = {'duration': 10}
        record = registry.record(MetricCategory.API_REQUESTS, values)
        values['duration'] = 99

        assert record['duration'] == 10


# ============================================================================
# Queries and summaries
# ============================================================================

class TestQueries:

    def test_query_window_excludes_older_records(self, registry, clock):
        registry.record(MetricCategory.API_REQUESTS, {'duration': 100})
        clock.advance(minutes=10)
        registry.record(MetricCategory.API_REQUESTS, {'duration': 200})

        recent = registry.query(MetricCategory.API_REQUESTS, since=timedelta(minutes=5))

        assert [record['duration'] for record in recent] == [200]

    def test_latest_returns_none_for_empty_category(self, registry):
        assert registry.latest(MetricCategory.SYSTEM) is None

    def test_summary_of_empty_window_is_zeroed(self, registry):
        summary = registry.summarize(MetricCategory.API_REQUESTS, timedelta(minutes=5))

        assert summary.count == 0
        assert summary.mean == 0.0
        assert summary.error_rate == 0.0

    def test_summary_computes_rates_in_percent(self, registry):
        for i in range(10):
            registry.record(MetricCategory.API_REQUESTS, {
                'duration': 100.0,
                'is_error': i < 2,
                'is_slow': i < 1,
            })

        summary = registry.summarize(MetricCategory.API_REQUESTS)

        assert summary.count == 10
        assert summary.mean == 100.0
        assert summary.error_rate == 20.0
        assert summary.slow_rate == 10.0
        assert summary.error_count == 2

    def test_percentile_uses_nearest_rank(self):
        data = [float(i) for i in range(1, 101)]

        assert percentile(data, 0.95) == 96.0
        assert percentile([], 0.95) == 0.0
