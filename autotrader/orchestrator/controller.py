"""
TradingController: thin coordination layer over the trading components.

The controller owns the periodic tick and the imperative control surface,
but not the business logic. Each tick runs an explicit sequence of steps:

    1. RiskGovernor.tick()                 -> decision (or previous one)
    2. GridEngine.start_or_sync_grids()    -> buys paused when the governor says so
    3. PositionEngine.auto_trade_tick()    -> entries paused when state != NORMAL
    4. FillSyncQueue.tick()                -> observe open orders, enqueue syncs

A failing step is logged and counted; the remaining steps still run.

Usage:
    controller = build_controller(settings, gateway, signals)
    await controller.run()           # until stop()
    await controller.shutdown()
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

from autotrader.core.clock import now_ms
from autotrader.core.json_utils import dumps
from autotrader.core.results import ActionResult
from autotrader.risk.risk_governor import META_KEY, RiskDecision

if TYPE_CHECKING:
    from autotrader.config.config import Settings
    from autotrader.execution.fill_sync import FillSyncQueue, SyncTickResult
    from autotrader.execution.grid_engine import GridEngine, GridTickResult
    from autotrader.execution.position_engine import Decision, PositionEngine
    from autotrader.execution.sweep import SweepResult, SweepService
    from autotrader.monitoring.metrics_rich import RichMetrics
    from autotrader.reporting.pnl_reconcile import PnlReconciler, PnlReport
    from autotrader.risk.risk_governor import RiskGovernor
    from autotrader.state.fill_ledger import AsyncFillLedger
    from autotrader.state.payload_store import PayloadStore

log = logging.getLogger("autotrader")


@dataclass
class ControllerConfig:
    """Configuration for TradingController."""
    loop_interval_sec: float = 30.0
    short_sleep_sec: float = 2.0
    default_symbol: str = "BTCUSDC"
    drain_timeout_sec: float = 10.0

    # Logging callback
    log_event_callback: Optional[Callable[..., None]] = None

    @classmethod
    def from_settings(cls, s: "Settings") -> "ControllerConfig":
        return cls(loop_interval_sec=s.loop_interval_sec, default_symbol=s.default_symbol)


@dataclass
class TickResult:
    """Result of one controller tick."""
    success: bool
    risk: Optional[RiskDecision] = None
    grids: List["GridTickResult"] = field(default_factory=list)
    decision: Optional["Decision"] = None
    fill_sync: Optional["SyncTickResult"] = None
    errors: Dict[str, str] = field(default_factory=dict)
    duration_ms: float = 0.0


class TradingController:
    def __init__(
        self,
        store: "PayloadStore",
        risk: "RiskGovernor",
        grids: "GridEngine",
        positions: "PositionEngine",
        fill_sync: "FillSyncQueue",
        sweeper: "SweepService",
        pnl: "PnlReconciler",
        ledger: Optional["AsyncFillLedger"] = None,
        config: Optional[ControllerConfig] = None,
        rich_metrics: Optional["RichMetrics"] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.store = store
        self.risk = risk
        self.grids = grids
        self.positions = positions
        self.fill_sync = fill_sync
        self.sweeper = sweeper
        self.pnl = pnl
        self.ledger = ledger
        self.config = config or ControllerConfig()
        self.metrics = rich_metrics
        self._clock = clock or now_ms

        self._running = False
        self._tick_count = 0
        self._error_count = 0
        self._last_tick_at: Optional[int] = None
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    @property
    def is_running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Signal the run loop to exit after the current tick."""
        self._running = False
        self._log_event("controller_stop")

    # ── Tick ─────────────────────────────────────────────────────────────

    async def _step(self, component: str, fn: Callable[[], Awaitable[Any]], errors: Dict[str, str]) -> Any:
        start = time.perf_counter()
        try:
            return await fn()
        except Exception as exc:
            errors[component] = str(exc)
            if self.metrics:
                self.metrics.tick_errors.labels(component=component).inc()
            log.error(dumps({"event": "tick_step_failed", "component": component, "error": str(exc)}))
            return None
        finally:
            if self.metrics:
                self.metrics.tick_duration_ms.labels(component=component).observe(
                    (time.perf_counter() - start) * 1000
                )

    async def tick(self, symbol: Optional[str] = None) -> TickResult:
        start = time.perf_counter()
        self._tick_count += 1
        errors: Dict[str, str] = {}

        decision = await self._step("risk", lambda: self.risk.tick(symbol), errors)
        if decision is None:
            # Governor disabled or failed: keep acting on the last persisted decision.
            decision = self.risk_decision()
        entries_paused = bool(decision and decision.entries_paused)
        buys_paused = bool(decision and decision.grid_buy_paused_global)

        grid_results = await self._step(
            "grid", lambda: self.grids.start_or_sync_grids(grid_buy_paused=buys_paused), errors
        )
        trade = await self._step(
            "auto_trade", lambda: self.positions.auto_trade_tick(symbol, entries_paused=entries_paused), errors
        )
        synced = await self._step("fill_sync", self.fill_sync.tick, errors)

        self._last_tick_at = self._clock()
        if errors:
            self._error_count += 1
        duration_ms = (time.perf_counter() - start) * 1000
        if self.metrics:
            self.metrics.tick_duration_ms.labels(component="controller").observe(duration_ms)
        return TickResult(
            success=not errors,
            risk=decision,
            grids=grid_results or [],
            decision=trade,
            fill_sync=synced,
            errors=errors,
            duration_ms=duration_ms,
        )

    async def run(self, symbol: Optional[str] = None) -> None:
        """Tick on a fixed period until stop() is called or the task is cancelled."""
        self._running = True
        self._log_event("controller_start", interval_sec=self.config.loop_interval_sec)
        while self._running:
            try:
                result = await self.tick(symbol)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # Steps are individually guarded; this only catches controller bugs.
                if self.metrics:
                    self.metrics.tick_errors.labels(component="controller").inc()
                log.error(dumps({"event": "controller_tick_error", "error": str(exc)}))
                await asyncio.sleep(self.config.short_sleep_sec)
                continue
            if not self._running:
                break
            await asyncio.sleep(self.config.loop_interval_sec if result.success else self.config.short_sleep_sec)

    async def shutdown(self) -> None:
        self._log_event("controller_shutdown_start")
        self._running = False
        try:
            await self.fill_sync.drain(timeout=self.config.drain_timeout_sec)
        except Exception as exc:
            log.warning(dumps({"event": "shutdown_drain_error", "error": str(exc)}))
        if self.ledger is not None:
            await self.ledger.close()
        self._log_event("controller_shutdown_complete", ticks=self._tick_count)

    # ── Read-only snapshots ──────────────────────────────────────────────

    def risk_decision(self) -> Optional[RiskDecision]:
        data = (self.store.get_meta(META_KEY) or {}).get("decision")
        return RiskDecision.from_dict(data) if data else None

    def positions_snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {key: pos.to_dict() for key, pos in self.store.positions().items()}

    def grids_snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {symbol: grid.to_dict() for symbol, grid in self.store.grids().items()}

    def last_decision(self) -> Optional[Dict[str, Any]]:
        return self.positions.last_decision()

    def emergency_stop_state(self) -> Dict[str, Any]:
        return {
            "enabled": bool(self.store.get_meta("emergency_stop")),
            "at": self.store.get_meta("emergency_stop_at"),
            "reason": self.store.get_meta("emergency_stop_reason"),
        }

    def status(self) -> Dict[str, Any]:
        decision = self.risk_decision()
        return {
            "risk": decision.to_dict() if decision else None,
            "emergency_stop": self.emergency_stop_state(),
            "positions": self.positions_snapshot(),
            "grids": self.grids_snapshot(),
            "last_decision": self.last_decision(),
        }

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "tick_count": self._tick_count,
            "error_ticks": self._error_count,
            "last_tick_at": self._last_tick_at,
            "fill_sync": self.fill_sync.get_stats(),
        }

    # ── Imperative control ───────────────────────────────────────────────

    def set_emergency_stop(self, enabled: bool, reason: Optional[str] = None) -> ActionResult:
        now = self._clock()
        reason = reason or ("manual" if enabled else "cleared")
        self.store.persist_meta({
            "emergency_stop": bool(enabled),
            "emergency_stop_at": now,
            "emergency_stop_reason": reason,
        })
        log.warning(dumps({"event": "emergency_stop", "enabled": bool(enabled), "reason": reason}))
        return ActionResult.success(reason, enabled=bool(enabled), at=now)

    async def open_position(self, symbol: str, horizon: Optional[str] = None) -> ActionResult:
        decision = self.risk_decision()
        return await self.positions.open_position(
            symbol, horizon, entries_paused=bool(decision and decision.entries_paused)
        )

    async def close_position(self, key: str) -> ActionResult:
        return await self.positions.close_position_by_key(key)

    async def start_grid(self, symbol: str) -> ActionResult:
        decision = self.risk_decision()
        return await self.grids.start_grid(symbol, grid_buy_paused=bool(decision and decision.grid_buy_paused_global))

    async def stop_grid(self, symbol: str) -> ActionResult:
        return await self.grids.stop_grid(symbol)

    async def sweep_unused(
        self,
        dry_run: bool = False,
        stop_auto_trade: bool = False,
        keep_allowed_quotes: bool = True,
        keep_position_assets: bool = True,
        keep_assets: Optional[List[str]] = None,
    ) -> "SweepResult":
        if stop_auto_trade:
            self.set_emergency_stop(True, "sweep-unused")
        return await self.sweeper.sweep_unused(
            dry_run=dry_run,
            keep_allowed_quotes=keep_allowed_quotes,
            keep_position_assets=keep_position_assets,
            keep_assets=keep_assets,
        )

    async def pnl_report(self, window: Optional[str] = None) -> "PnlReport":
        return await self.pnl.reconcile(window)
