"""
Tests for Prometheus metrics.

Tests cover:
- One registry per instance (no duplicate registration errors)
- Labelled counters, gauges and histograms are readable from the registry
"""

from prometheus_client import CollectorRegistry, generate_latest

from autotrader.monitoring.metrics_rich import RichMetrics


class TestRichMetrics:
    def test_instances_do_not_collide(self):
        a = RichMetrics()
        b = RichMetrics()
        a.orders_submitted.labels(symbol="BTCUSDC", side="BUY", module="grid").inc()

        labels = {"symbol": "BTCUSDC", "side": "BUY", "module": "grid"}
        assert a.registry.get_sample_value("orders_submitted_total", labels) == 1.0
        assert b.registry.get_sample_value("orders_submitted_total", labels) is None

    def test_explicit_registry(self):
        reg = CollectorRegistry()
        metrics = RichMetrics(reg)
        assert metrics.get_registry() is reg

    def test_samples(self):
        m = RichMetrics()
        m.grid_open_orders.labels(symbol="ETHUSDC").set(4)
        m.risk_state.set(2)
        m.queue_overflow_dropped.labels(queue="sync").inc(50)
        m.tick_duration_ms.labels(component="grid").observe(120)

        reg = m.registry
        assert reg.get_sample_value("grid_open_orders", {"symbol": "ETHUSDC"}) == 4.0
        assert reg.get_sample_value("risk_state") == 2.0
        assert reg.get_sample_value("queue_overflow_dropped_total", {"queue": "sync"}) == 50.0
        assert reg.get_sample_value("tick_duration_ms_bucket", {"component": "grid", "le": "250.0"}) == 1.0
        assert b"fill_rows_persisted_total" in generate_latest(reg)
