"""
Rich Prometheus metrics for production observability.

Organized into: execution, grid, positions, risk, fill sync, operational.
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from typing import Optional


class RichMetrics:
    """Metrics for the trading controller. One registry per instance."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Execution Metrics ===
        self.orders_submitted = Counter(
            'orders_submitted_total',
            'Orders submitted to exchange',
            labelnames=['symbol', 'side', 'module'],
            registry=reg
        )
        self.orders_failed = Counter(
            'orders_failed_total',
            'Order submissions that failed',
            labelnames=['symbol', 'side', 'module'],
            registry=reg
        )
        self.orders_cancelled = Counter(
            'orders_cancelled_total',
            'Orders cancelled',
            labelnames=['symbol', 'module'],
            registry=reg
        )

        # === Grid Metrics ===
        self.grid_open_orders = Gauge(
            'grid_open_orders',
            'Tracked resting grid orders',
            labelnames=['symbol'],
            registry=reg
        )
        self.grid_pnl_home = Gauge(
            'grid_pnl_home',
            'Grid virtual PnL (home asset)',
            labelnames=['symbol'],
            registry=reg
        )
        self.grid_breakouts = Counter(
            'grid_breakouts_total',
            'Grids stopped by range breakout',
            labelnames=['symbol'],
            registry=reg
        )

        # === Position Metrics ===
        self.positions_open = Gauge(
            'positions_open',
            'Tracked open positions',
            registry=reg
        )
        self.auto_trade_decisions = Counter(
            'auto_trade_decisions_total',
            'Auto-trade decisions by action',
            labelnames=['action'],
            registry=reg
        )

        # === Risk Metrics ===
        self.risk_state = Gauge(
            'risk_state',
            'Risk governor state (0=NORMAL, 1=CAUTION, 2=HALT)',
            registry=reg
        )
        self.drawdown_pct = Gauge(
            'drawdown_pct',
            'Drawdown from baseline (%)',
            labelnames=['window'],
            registry=reg
        )
        self.fee_burn_pct = Gauge(
            'fee_burn_pct',
            'Fees / traded notional over the risk window (%)',
            registry=reg
        )
        self.equity_home = Gauge(
            'equity_home',
            'Account equity in home asset',
            registry=reg
        )

        # === Fill Sync Metrics ===
        self.fill_rows_persisted = Counter(
            'fill_rows_persisted_total',
            'Fill ledger rows written',
            labelnames=['module'],
            registry=reg
        )
        self.sync_queue_depth = Gauge(
            'sync_queue_depth',
            'Pending fill sync tasks',
            registry=reg
        )
        self.missing_queue_depth = Gauge(
            'missing_queue_depth',
            'Orders waiting for a terminal status check',
            registry=reg
        )
        self.queue_overflow_dropped = Counter(
            'queue_overflow_dropped_total',
            'Queue entries evicted on overflow',
            labelnames=['queue'],
            registry=reg
        )

        # === Operational Metrics ===
        self.tick_duration_ms = Histogram(
            'tick_duration_ms',
            'Controller step duration (milliseconds)',
            labelnames=['component'],
            buckets=[10, 50, 100, 250, 500, 1000, 2500, 5000, 10000],
            registry=reg
        )
        self.tick_errors = Counter(
            'tick_errors_total',
            'Unexpected exceptions caught at the tick boundary',
            labelnames=['component'],
            registry=reg
        )

        self.registry = reg

    def get_registry(self):
        """Return the Prometheus registry for export."""
        return self.registry
