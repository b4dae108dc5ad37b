"""
Factory for creating a fully wired TradingController.

Keeps construction out of the components: each one receives its
collaborators and a *Config built from Settings, so tests can build any
component alone with fakes.

Usage:
    from autotrader.factory import build_controller

    settings = Settings.load()
    controller = build_controller(settings, gateway, signals)
    await controller.run()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, TYPE_CHECKING

from autotrader.core.json_utils import dumps
from autotrader.core.single_flight import KeyedSingleFlight
from autotrader.execution.fill_sync import FillSyncConfig, FillSyncQueue
from autotrader.execution.grid_engine import GridEngine, GridEngineConfig
from autotrader.execution.position_engine import PositionEngine, PositionEngineConfig
from autotrader.execution.sweep import SweepConfig, SweepService
from autotrader.infra.logging_cfg import build_logger, level_from_name
from autotrader.market_data.fx import DEFAULT_MIDS, SYNC_MIDS, RateResolver
from autotrader.monitoring.metrics_rich import RichMetrics
from autotrader.orchestrator.controller import ControllerConfig, TradingController
from autotrader.reporting.pnl_reconcile import PnlReconciler
from autotrader.risk.risk_governor import RiskGovernor, RiskGovernorConfig
from autotrader.state.fill_ledger import AsyncFillLedger, FillLedger
from autotrader.state.payload_store import PayloadStore

if TYPE_CHECKING:
    from autotrader.config.config import Settings
    from autotrader.gateway.protocol import ExchangeGateway, SignalProvider

log = logging.getLogger("autotrader")


@dataclass
class ControllerDependencies:
    """Everything build_controller needs. Optional fields are overrides for tests."""
    settings: "Settings"
    gateway: "ExchangeGateway"
    signals: Optional["SignalProvider"] = None
    store: Optional[PayloadStore] = None
    ledger: Optional[AsyncFillLedger] = None
    rich_metrics: Optional[RichMetrics] = None
    clock: Optional[Callable[[], int]] = None
    configure_logging: bool = False


def create_controller(deps: ControllerDependencies) -> TradingController:
    s = deps.settings
    if deps.configure_logging:
        build_logger(level=level_from_name(s.log_level), file_path=s.log_file)

    store = deps.store or PayloadStore(s.state_path).load()
    ledger = deps.ledger or AsyncFillLedger(FillLedger(s.ledger_path))
    metrics = deps.rich_metrics
    if metrics is None and s.metrics_enabled:
        metrics = RichMetrics()
    flights = KeyedSingleFlight()
    rates = RateResolver(deps.gateway, DEFAULT_MIDS, ttl_sec=s.rate_cache_ttl_sec)
    sync_rates = RateResolver(deps.gateway, SYNC_MIDS, ttl_sec=s.rate_cache_ttl_sec)

    risk = RiskGovernor(
        deps.gateway, store, rates, ledger,
        config=RiskGovernorConfig.from_settings(s),
        rich_metrics=metrics,
        clock=deps.clock,
    )
    grids = GridEngine(
        deps.gateway, store, ledger, deps.signals,
        config=GridEngineConfig.from_settings(s),
        rich_metrics=metrics,
        flights=flights,
        clock=deps.clock,
    )
    positions = PositionEngine(
        deps.gateway, store, deps.signals, rates, ledger,
        config=PositionEngineConfig.from_settings(s),
        rich_metrics=metrics,
        flights=flights,
        clock=deps.clock,
    )
    fill_sync = FillSyncQueue(
        deps.gateway, store, ledger, sync_rates, risk=risk,
        config=FillSyncConfig.from_settings(s),
        rich_metrics=metrics,
        flights=flights,
        clock=deps.clock,
    )
    sweeper = SweepService(
        deps.gateway, store, ledger,
        config=SweepConfig.from_settings(s),
        rich_metrics=metrics,
        clock=deps.clock,
    )
    pnl = PnlReconciler(deps.gateway, ledger, rates, home_asset=s.home_asset, clock=deps.clock)

    log.info(dumps({"event": "controller_built", "venue": s.trade_venue, "home": s.home_asset, "trading": s.trading_enabled}))
    return TradingController(
        store, risk, grids, positions, fill_sync, sweeper, pnl,
        ledger=ledger,
        config=ControllerConfig.from_settings(s),
        rich_metrics=metrics,
        clock=deps.clock,
    )


def build_controller(
    settings: "Settings",
    gateway: "ExchangeGateway",
    signals: Optional["SignalProvider"] = None,
    **overrides,
) -> TradingController:
    """Shorthand for create_controller(ControllerDependencies(...))."""
    return create_controller(ControllerDependencies(settings, gateway, signals, **overrides))
