"""
GridEngine: geometric price ladders of resting LIMIT orders per symbol.

Each running grid owns a fixed home-asset budget and a virtual inventory
ledger (GridPerformance). Every tick, per running grid:

1. Breakout check: price outside [lower, upper] x (1 +/- buffer) cancels all
   resting orders, optionally liquidates the grid's base inventory and marks
   the grid stopped. Restarting is an explicit start_grid call.
2. One-time bootstrap market buy toward bootstrap_base_pct of the budget.
3. Diff tracked orders against the exchange's open orders. Orders no longer
   open are dropped; a bounded number are re-queried and any fill is folded
   into the virtual ledger and the grid_fills table.
4. Cover every level outside the gap band with one order, importing an
   existing open order at the same side and price when there is one. New
   orders never spend budget already committed to other open orders.
5. Revalue the ledger at the current price and persist.

A reconciliation that raises marks the grid `error` and is retried on the
next tick. Individual order failures are logged and skipped.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, TYPE_CHECKING

from autotrader.core.assets import is_stable_pair, looks_like_leverage_token
from autotrader.core.clock import now_ms
from autotrader.core.json_utils import dumps
from autotrader.core.results import ActionResult
from autotrader.core.rounding import floor_to_step, floor_to_tick, price_key
from autotrader.core.single_flight import KeyedSingleFlight
from autotrader.gateway.types import (
    BUY,
    LIMIT,
    MARKET,
    SELL,
    Balance,
    GatewayError,
    OrderReport,
    OrderRequest,
    SymbolInfo,
    free_by_asset,
    symbol_map,
)
from autotrader.state.fill_ledger import GridFill
from autotrader.state.models import (
    GRID_ERROR,
    GRID_RUNNING,
    GRID_STOPPED,
    GridOrder,
    GridPerformance,
    GridState,
)
from autotrader.strategy.grid_calculator import (
    build_ladder,
    compute_auto_range,
    in_gap,
    score_grid_candidate,
)

if TYPE_CHECKING:
    from autotrader.config.config import Settings
    from autotrader.gateway.protocol import ExchangeGateway, SignalProvider
    from autotrader.monitoring.metrics_rich import RichMetrics
    from autotrader.state.fill_ledger import AsyncFillLedger
    from autotrader.state.payload_store import PayloadStore

log = logging.getLogger("autotrader")

MODULE = "grid"


class GridBuildError(ValueError):
    """A grid cannot be built for this symbol right now."""


@dataclass
class GridEngineConfig:
    """Configuration for GridEngine."""
    enabled: bool = False
    trading_enabled: bool = False
    venue: str = "spot"
    home_asset: str = "USDC"
    levels: int = 12
    min_step_pct: float = 0.3
    min_range_pct: float = 2.0
    max_range_pct: float = 20.0
    max_trend_ratio: float = 0.6
    kline_interval: str = "1h"
    kline_limit: int = 168
    gap_bps: float = 15.0
    breakout_buffer_pct: float = 0.5
    breakout_action: str = "cancel"
    bootstrap_base_pct: float = 50.0
    max_new_orders_per_tick: int = 4
    max_alloc_pct: float = 30.0
    max_active_grids: int = 2
    rebalance_seconds: int = 60
    symbols: List[str] = field(default_factory=list)
    auto_discover: bool = True
    min_quote_volume: float = 5_000_000.0
    universe_max_symbols: int = 40
    blacklist_symbols: List[str] = field(default_factory=list)
    fee_maker: float = 0.001
    fee_taker: float = 0.001

    # Rate-friendly bound on dropped orders re-queried per tick
    max_fill_checks_per_tick: int = 12
    # Failed lookups before a dropped order is given up
    max_fill_check_attempts: int = 5
    shortlist_size: int = 8

    # Logging callback
    log_event_callback: Optional[Callable[..., None]] = None

    @classmethod
    def from_settings(cls, s: "Settings") -> "GridEngineConfig":
        return cls(
            enabled=s.grid_enabled,
            trading_enabled=s.trading_enabled,
            venue=s.trade_venue,
            home_asset=s.home_asset,
            levels=s.grid_levels,
            min_step_pct=s.grid_min_step_pct,
            min_range_pct=s.grid_min_range_pct,
            max_range_pct=s.grid_max_range_pct,
            max_trend_ratio=s.grid_max_trend_ratio,
            kline_interval=s.grid_kline_interval,
            kline_limit=s.grid_kline_limit,
            gap_bps=s.grid_gap_bps,
            breakout_buffer_pct=s.grid_breakout_buffer_pct,
            breakout_action=s.grid_breakout_action,
            bootstrap_base_pct=s.grid_bootstrap_base_pct,
            max_new_orders_per_tick=s.grid_max_new_orders_per_tick,
            max_alloc_pct=s.grid_max_alloc_pct,
            max_active_grids=s.grid_max_active_grids,
            rebalance_seconds=s.grid_rebalance_seconds,
            symbols=list(s.grid_symbols),
            auto_discover=s.grid_auto_discover,
            min_quote_volume=s.min_quote_volume,
            universe_max_symbols=s.universe_max_symbols,
            blacklist_symbols=list(s.blacklist_symbols),
            fee_maker=s.fee_maker,
            fee_taker=s.fee_taker,
        )


@dataclass
class GridTickResult:
    """Result of one grid reconciliation pass."""
    symbol: str
    success: bool
    status: str
    placed: int = 0
    imported: int = 0
    dropped: int = 0
    fills_detected: int = 0
    fill_checks_pending: int = 0
    breakout: bool = False
    buys_paused: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class GridCandidate:
    symbol: str
    score: float


def grid_fill_row(symbol: str, order: OrderReport, now: int, fee_maker: float, fee_taker: float) -> Optional[GridFill]:
    """Ledger row for an order with executed quantity, else None."""
    qty = order.executed_qty
    if qty <= 0 or order.side not in (BUY, SELL):
        return None
    notional = order.cumulative_quote_qty if order.cumulative_quote_qty > 0 else qty * max(order.price, 1e-8)
    if not math.isfinite(notional) or notional <= 0:
        return None
    fee_rate = fee_taker if order.type == MARKET else fee_maker
    price = order.price if order.price > 0 else notional / qty
    return GridFill(
        at=order.update_time or now,
        symbol=symbol,
        side=order.side,
        qty=qty,
        price=price,
        notional=notional,
        order_id=order.order_id,
        fee_home=notional * fee_rate,
    )


class GridEngine:
    """
    Grid lifecycle and per-tick reconciliation.

    Usage:
        engine = GridEngine(gateway, store, ledger, signals, config)
        results = await engine.start_or_sync_grids(grid_buy_paused=False)
        await engine.stop_grid("BTCUSDC")
    """

    def __init__(
        self,
        gateway: "ExchangeGateway",
        store: "PayloadStore",
        ledger: Optional["AsyncFillLedger"] = None,
        signals: Optional["SignalProvider"] = None,
        config: Optional[GridEngineConfig] = None,
        rich_metrics: Optional["RichMetrics"] = None,
        flights: Optional[KeyedSingleFlight] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.ledger = ledger
        self.signals = signals
        self.config = config or GridEngineConfig()
        self.metrics = rich_metrics
        self.flights = flights or KeyedSingleFlight()
        self._clock = clock or now_ms
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    # ── Helpers ──────────────────────────────────────────────────────────

    def _available(self) -> Optional[str]:
        if self.config.venue != "spot":
            return "Grid is only available in spot mode."
        if not self.config.enabled:
            return "AT_GRID_ENABLED=false (enable grid mode in the environment)"
        return None

    def _emergency_stop(self) -> bool:
        return bool(self.store.get_meta("emergency_stop"))

    def _can_trade(self) -> bool:
        return self.config.trading_enabled and not self._emergency_stop()

    def _blocked_symbols(self) -> Set[str]:
        blocked = {s.upper() for s in self.config.blacklist_symbols}
        blocked.update(k.upper() for k in (self.store.get_meta("account_blacklist") or {}))
        return blocked

    @staticmethod
    def _resumable(grid: GridState) -> bool:
        """A pass failed after the ladder was built; the grid resumes in place."""
        return grid.status == GRID_ERROR and len(grid.prices) >= 2

    def active_grids(self) -> List[GridState]:
        """Running grids plus errored grids that keep their ladder and orders."""
        return [g for g in self.store.grids().values() if g.status == GRID_RUNNING or self._resumable(g)]

    def _check_symbol(self, symbol: str, info: Optional[SymbolInfo]) -> SymbolInfo:
        home = self.config.home_asset.upper()
        if info is None:
            raise GridBuildError(f"Unknown symbol {symbol}")
        if not info.spot_tradable:
            raise GridBuildError(f"Symbol {symbol} not tradable on spot")
        if info.quote_asset != home:
            raise GridBuildError(f"Grid requires quoteAsset={home}. {symbol} quote is {info.quote_asset}")
        if is_stable_pair(info.base_asset, info.quote_asset):
            raise GridBuildError("Grid disabled for stable-to-stable pairs")
        if looks_like_leverage_token(symbol):
            raise GridBuildError("Grid disabled for leverage tokens")
        return info

    async def _persist_fill(self, row: Optional[GridFill]) -> None:
        if row is None or self.ledger is None:
            return
        await self.ledger.upsert_grid_fills([row])
        if self.metrics:
            self.metrics.fill_rows_persisted.labels(module=MODULE).inc()

    # ── Construction ─────────────────────────────────────────────────────

    async def build_grid_state(self, symbol: str, info: Optional[SymbolInfo], allocation_home: float) -> GridState:
        """
        Derive range and ladder for a symbol.

        Raises:
            GridBuildError: symbol ineligible, or range/trend outside bounds
            GatewayError: klines unavailable
        """
        symbol = symbol.upper()
        info = self._check_symbol(symbol, info)
        cfg = self.config
        klines = await self.gateway.get_klines(symbol, cfg.kline_interval, cfg.kline_limit)
        rng = compute_auto_range(klines)
        if rng is None:
            raise GridBuildError("Unable to derive auto range from klines")
        if rng.range_pct < cfg.min_range_pct or rng.range_pct > cfg.max_range_pct:
            raise GridBuildError(
                f"Range {rng.range_pct:.2f}% outside {cfg.min_range_pct}-{cfg.max_range_pct}%"
            )
        if rng.trend_ratio > cfg.max_trend_ratio:
            raise GridBuildError(f"Trend ratio {rng.trend_ratio:.2f} above cap {cfg.max_trend_ratio}")

        try:
            prices = build_ladder(rng.lower, rng.upper, cfg.levels, cfg.min_step_pct, info.tick_size)
        except ValueError as exc:
            raise GridBuildError(str(exc)) from exc
        allocation = max(0.0, allocation_home)
        now = self._clock()
        return GridState(
            symbol=symbol,
            status=GRID_RUNNING,
            base_asset=info.base_asset,
            quote_asset=info.quote_asset,
            home_asset=cfg.home_asset.upper(),
            lower_price=rng.lower,
            upper_price=rng.upper,
            levels=len(prices),
            prices=prices,
            order_notional_home=allocation / max(1, len(prices) - 1),
            allocation_home=allocation,
            performance=GridPerformance.initial(allocation, now),
            tick_size=info.tick_size,
            step_size=info.step_size,
            min_qty=info.min_qty,
            min_notional=info.min_notional,
            created_at=now,
            updated_at=now,
        )

    def _error_stub(self, symbol: str, message: str) -> GridState:
        now = self._clock()
        home = self.config.home_asset.upper()
        return GridState(
            symbol=symbol.upper(),
            status=GRID_ERROR,
            base_asset="",
            quote_asset=home,
            home_asset=home,
            lower_price=0.0,
            upper_price=0.0,
            levels=0,
            prices=[],
            order_notional_home=0.0,
            allocation_home=0.0,
            performance=GridPerformance.initial(0.0, now),
            created_at=now,
            updated_at=now,
            last_error=message,
        )

    # ── Discovery ────────────────────────────────────────────────────────

    def _universe(self) -> List[str]:
        if self.config.symbols:
            return [s.upper() for s in self.config.symbols]
        ranked: List[str] = self.signals.ranked_candidates() if self.signals else []
        if not ranked:
            ranked = [c["symbol"] for c in self.store.get_meta("ranked_candidates") or [] if "symbol" in c]
        return [s.upper() for s in ranked][: self.config.universe_max_symbols]

    async def refresh_grid_candidates(self, force: bool = False) -> List[GridCandidate]:
        """
        Rank symbols that currently look range-bound.

        Cached for max(30 s, rebalance seconds) in meta["ranked_grid_candidates"].
        """
        if self._available():
            return []
        cfg = self.config
        now = self._clock()
        last = self.store.get_meta("grid_updated_at") or 0
        if not force and now - last < max(30_000, cfg.rebalance_seconds * 1000):
            return [GridCandidate(**c) for c in self.store.get_meta("ranked_grid_candidates") or []]

        try:
            infos = symbol_map(await self.gateway.get_symbols())
        except GatewayError as exc:
            log.warning(dumps({"event": "grid_discovery_failed", "error": str(exc)}))
            return []

        blocked = self._blocked_symbols()
        coarse = []
        for sym in self._universe():
            if sym in blocked:
                continue
            try:
                self._check_symbol(sym, infos.get(sym))
            except GridBuildError:
                continue
            try:
                ticker = await self.gateway.get_ticker(sym)
            except GatewayError:
                continue
            vol_pct = abs((ticker.high_price - ticker.low_price) / max(ticker.price, 1e-8)) * 100
            if vol_pct < cfg.min_range_pct or vol_pct > cfg.max_range_pct:
                continue
            if abs(ticker.price_change_pct) > max(1.5, cfg.min_range_pct):
                continue
            if ticker.quote_volume < cfg.min_quote_volume:
                continue
            coarse.append(ticker)

        coarse.sort(key=lambda t: t.quote_volume, reverse=True)
        candidates: List[GridCandidate] = []
        for ticker in coarse[: cfg.shortlist_size]:
            try:
                klines = await self.gateway.get_klines(ticker.symbol, cfg.kline_interval, cfg.kline_limit)
            except GatewayError:
                continue
            rng = compute_auto_range(klines)
            if rng is None:
                continue
            if rng.range_pct < cfg.min_range_pct or rng.range_pct > cfg.max_range_pct:
                continue
            if rng.trend_ratio > cfg.max_trend_ratio:
                continue
            score = score_grid_candidate(ticker.quote_volume, rng.range_pct, rng.trend_ratio)
            candidates.append(GridCandidate(symbol=ticker.symbol, score=score))

        candidates.sort(key=lambda c: c.score, reverse=True)
        self.store.persist_meta({
            "ranked_grid_candidates": [{"symbol": c.symbol, "score": c.score} for c in candidates[:50]],
            "grid_updated_at": now,
        })
        return candidates

    # ── Exchange actions ─────────────────────────────────────────────────

    async def _cancel_grid_orders(self, grid: GridState) -> None:
        if self.config.venue != "spot" or not self.config.trading_enabled:
            return
        for order in grid.orders_by_level.values():
            try:
                await self.gateway.cancel_order(grid.symbol, order.order_id)
                if self.metrics:
                    self.metrics.orders_cancelled.labels(symbol=grid.symbol, module=MODULE).inc()
            except GatewayError as exc:
                log.warning(dumps({
                    "event": "grid_cancel_failed",
                    "symbol": grid.symbol,
                    "order_id": order.order_id,
                    "error": str(exc),
                }))

    async def _market(self, grid: GridState, side: str, qty: float) -> Optional[OrderReport]:
        try:
            report = await self.gateway.place_order(OrderRequest(grid.symbol, side, MARKET, qty))
        except GatewayError as exc:
            if self.metrics:
                self.metrics.orders_failed.labels(symbol=grid.symbol, side=side, module=MODULE).inc()
            log.warning(dumps({"event": "grid_market_order_failed", "symbol": grid.symbol, "side": side, "error": str(exc)}))
            return None
        if self.metrics:
            self.metrics.orders_submitted.labels(symbol=grid.symbol, side=side, module=MODULE).inc()
        return report

    async def _liquidate(self, grid: GridState, balances: List[Balance], price: float) -> None:
        """Sell min(free base, virtual base) back to home after a breakout."""
        if not self.config.trading_enabled or grid.quote_asset != self.config.home_asset.upper():
            return
        free_base = free_by_asset(balances).get(grid.base_asset, 0.0)
        qty = floor_to_step(max(0.0, min(free_base, grid.performance.base_virtual)), grid.step_size)
        if not self._passes_filters(grid, qty, price):
            return
        report = await self._market(grid, SELL, qty)
        if report is None:
            return
        now = self._clock()
        grid.performance.apply_fill(report, self.config.fee_maker, self.config.fee_taker, fallback_price=price)
        await self._persist_fill(grid_fill_row(grid.symbol, report, now, self.config.fee_maker, self.config.fee_taker))

    async def _ensure_bootstrap_base(
        self, grid: GridState, balances: List[Balance], price: float
    ) -> List[Balance]:
        """One-time market buy so SELL legs have inventory from the first tick."""
        if grid.bootstrapped:
            return balances
        free = free_by_asset(balances)
        target_quote = grid.allocation_home * max(0.0, min(100.0, self.config.bootstrap_base_pct)) / 100
        if target_quote <= 0 or free.get(grid.quote_asset, 0.0) <= 0:
            return balances
        desired_base = target_quote / max(price, 1e-8)
        qty = floor_to_step(max(0.0, desired_base - free.get(grid.base_asset, 0.0)), grid.step_size)
        if not self._passes_filters(grid, qty, price):
            # Already holding enough, or the top-up is below exchange minimums.
            grid.bootstrapped = True
            return balances
        report = await self._market(grid, BUY, qty)
        if report is None:
            return balances
        now = self._clock()
        grid.performance.apply_fill(report, self.config.fee_maker, self.config.fee_taker, fallback_price=price)
        await self._persist_fill(grid_fill_row(grid.symbol, report, now, self.config.fee_maker, self.config.fee_taker))
        grid.bootstrapped = True
        self.store.persist_grid(grid.symbol, grid)
        self._log_event("grid_bootstrap_buy", symbol=grid.symbol, qty=qty, price=price)
        try:
            return await self.gateway.get_balances()
        except GatewayError:
            return balances

    @staticmethod
    def _passes_filters(grid: GridState, qty: float, price: float) -> bool:
        if not math.isfinite(qty) or qty <= 0:
            return False
        if grid.min_qty and qty < grid.min_qty:
            return False
        if grid.min_notional and qty * max(price, 1e-8) < grid.min_notional:
            return False
        return True

    # ── Reconciliation ───────────────────────────────────────────────────

    async def reconcile_grid(
        self, grid: GridState, balances: List[Balance], buy_paused: bool = False
    ) -> GridTickResult:
        """One reconciliation pass; overlapping passes for the same symbol are rejected."""
        key = f"grid:{grid.symbol}"
        if not self.flights.try_acquire(key):
            return GridTickResult(grid.symbol, success=False, status=grid.status, error="Grid tick already in flight")
        try:
            return await self._reconcile(grid, balances, buy_paused)
        finally:
            self.flights.release(key)

    async def _reconcile(self, grid: GridState, balances: List[Balance], buy_paused: bool) -> GridTickResult:
        cfg = self.config
        now = self._clock()
        ticker = await self.gateway.get_ticker(grid.symbol)
        current = ticker.price
        if not math.isfinite(current) or current <= 0:
            raise ValueError("Invalid market price")
        perf = grid.performance

        buffer = max(0.0, cfg.breakout_buffer_pct) / 100
        if cfg.breakout_action != "none" and (
            current < grid.lower_price * (1 - buffer) or current > grid.upper_price * (1 + buffer)
        ):
            await self._cancel_grid_orders(grid)
            if cfg.breakout_action == "cancel_and_liquidate":
                await self._liquidate(grid, balances, current)
            perf.breakouts += 1
            perf.revalue(current, now)
            grid.status = GRID_STOPPED
            grid.orders_by_level = {}
            grid.last_error = f"Breakout: price {current} outside [{grid.lower_price}, {grid.upper_price}]"
            grid.updated_at = now
            self.store.persist_grid(grid.symbol, grid)
            log.warning(dumps({
                "event": "grid_breakout",
                "symbol": grid.symbol,
                "price": current,
                "lower": grid.lower_price,
                "upper": grid.upper_price,
                "action": cfg.breakout_action,
            }))
            if self.metrics:
                self.metrics.grid_breakouts.labels(symbol=grid.symbol).inc()
                self.metrics.grid_open_orders.labels(symbol=grid.symbol).set(0)
                self.metrics.grid_pnl_home.labels(symbol=grid.symbol).set(perf.pnl_home)
            return GridTickResult(grid.symbol, success=True, status=GRID_STOPPED, breakout=True)

        trading = self._can_trade()
        if trading and not buy_paused:
            balances = await self._ensure_bootstrap_base(grid, balances, current)

        free = free_by_asset(balances)
        free_base = free.get(grid.base_asset, 0.0)
        free_quote = free.get(grid.quote_asset, 0.0)

        open_orders = await self.gateway.get_open_orders(grid.symbol)
        open_ids: Set[str] = set()
        open_by_key: Dict[str, OrderReport] = {}
        for row in open_orders:
            if row.price <= 0 or row.side is None:
                continue
            open_ids.add(row.order_id)
            open_by_key[price_key(row.side, row.price, grid.tick_size)] = row

        tracked: Dict[int, GridOrder] = {}
        dropped: List[GridOrder] = []
        for level, order in grid.orders_by_level.items():
            if order.order_id in open_ids:
                order.last_seen_at = now
                tracked[level] = order
            else:
                dropped.append(order)

        # Orders left unchecked by earlier passes go first.
        candidates: List[GridOrder] = []
        seen: Set[str] = set()
        for order in grid.pending_fill_checks + dropped:
            if order.order_id in open_ids or order.order_id in seen:
                continue
            seen.add(order.order_id)
            candidates.append(order)

        fills = 0
        pending = candidates[cfg.max_fill_checks_per_tick:]
        for order in candidates[: cfg.max_fill_checks_per_tick]:
            try:
                detail = await self.gateway.get_order(grid.symbol, order.order_id)
            except GatewayError as exc:
                order.fill_checks += 1
                retry = order.fill_checks < cfg.max_fill_check_attempts
                if retry:
                    pending.append(order)
                log.warning(dumps({
                    "event": "grid_fill_check_failed",
                    "symbol": grid.symbol,
                    "order_id": order.order_id,
                    "attempts": order.fill_checks,
                    "retry": retry,
                    "error": str(exc),
                }))
                continue
            if perf.apply_fill(detail, cfg.fee_maker, cfg.fee_taker, fallback_price=order.price) > 0:
                fills += 1
                await self._persist_fill(grid_fill_row(grid.symbol, detail, now, cfg.fee_maker, cfg.fee_taker))

        # Budget already committed to resting orders is not available again.
        avail_quote = max(0.0, perf.quote_virtual - sum(o.quantity * o.price for o in tracked.values() if o.side == BUY))
        avail_base = max(0.0, perf.base_virtual - sum(o.quantity for o in tracked.values() if o.side == SELL))

        placed = imported = 0
        for level, raw_price in enumerate(grid.prices):
            if placed >= cfg.max_new_orders_per_tick:
                break
            level_price = floor_to_tick(raw_price, grid.tick_size)
            if not math.isfinite(level_price) or level_price <= 0:
                continue
            if in_gap(level_price, current, cfg.gap_bps):
                continue
            side = BUY if level_price < current else SELL

            existing = tracked.get(level)
            if existing and existing.side == side and abs(existing.price - level_price) <= (grid.tick_size or 0.0):
                continue

            match = open_by_key.get(price_key(side, level_price, grid.tick_size))
            if match is not None:
                tracked[level] = GridOrder(match.order_id, side, level_price, match.orig_qty, now, now)
                if side == BUY:
                    avail_quote = max(0.0, avail_quote - match.orig_qty * level_price)
                else:
                    avail_base = max(0.0, avail_base - match.orig_qty)
                imported += 1
                continue

            if not trading or (side == BUY and buy_paused):
                continue
            qty = floor_to_step(grid.order_notional_home / max(level_price, 1e-8), grid.step_size)
            if not self._passes_filters(grid, qty, level_price):
                continue
            required = qty * level_price
            if side == BUY and (free_quote < required or avail_quote < required):
                continue
            if side == SELL and (free_base < qty or avail_base < qty):
                continue

            if existing is not None:
                # Level flipped sides; retire the stale order before replacing it.
                try:
                    await self.gateway.cancel_order(grid.symbol, existing.order_id)
                except GatewayError as exc:
                    log.warning(dumps({
                        "event": "grid_cancel_failed",
                        "symbol": grid.symbol,
                        "order_id": existing.order_id,
                        "error": str(exc),
                    }))
                    continue
                # Partial fills on the retired order are picked up next pass.
                pending.append(existing)

            try:
                report = await self.gateway.place_order(OrderRequest(grid.symbol, side, LIMIT, qty, level_price))
            except GatewayError as exc:
                if self.metrics:
                    self.metrics.orders_failed.labels(symbol=grid.symbol, side=side, module=MODULE).inc()
                log.warning(dumps({
                    "event": "grid_order_failed",
                    "symbol": grid.symbol,
                    "side": side,
                    "price": level_price,
                    "error": str(exc),
                }))
                continue
            tracked[level] = GridOrder(report.order_id, side, level_price, qty, now, now)
            if side == BUY:
                free_quote -= required
                avail_quote = max(0.0, avail_quote - required)
            else:
                free_base -= qty
                avail_base = max(0.0, avail_base - qty)
            placed += 1
            if self.metrics:
                self.metrics.orders_submitted.labels(symbol=grid.symbol, side=side, module=MODULE).inc()

        perf.revalue(current, now)
        grid.status = GRID_RUNNING
        grid.orders_by_level = tracked
        grid.pending_fill_checks = pending
        grid.last_error = None
        grid.updated_at = now
        self.store.persist_grid(grid.symbol, grid)

        if self.metrics:
            self.metrics.grid_open_orders.labels(symbol=grid.symbol).set(len(tracked))
            self.metrics.grid_pnl_home.labels(symbol=grid.symbol).set(perf.pnl_home)
        if placed or fills:
            self._log_event(
                "grid_reconciled",
                symbol=grid.symbol,
                price=current,
                placed=placed,
                imported=imported,
                fills=fills,
                open=len(tracked),
                pnl_home=perf.pnl_home,
            )
        return GridTickResult(
            grid.symbol,
            success=True,
            status=GRID_RUNNING,
            placed=placed,
            imported=imported,
            dropped=len(dropped),
            fills_detected=fills,
            fill_checks_pending=len(pending),
            buys_paused=buy_paused,
        )

    # ── Tick ─────────────────────────────────────────────────────────────

    async def start_or_sync_grids(self, grid_buy_paused: bool = False) -> List[GridTickResult]:
        """
        Start desired grids within the allocation cap, then reconcile every active grid.

        Gated by rebalance_seconds. New grids are not started while the
        emergency stop is set or grid buys are paused.
        """
        if self._available():
            return []
        cfg = self.config
        now = self._clock()
        last = self.store.get_meta("grid_rebalance_at") or 0
        if now - last < cfg.rebalance_seconds * 1000:
            return []
        self.store.persist_meta({"grid_rebalance_at": now})

        try:
            balances = await self.gateway.get_balances()
            infos = symbol_map(await self.gateway.get_symbols())
        except GatewayError as exc:
            log.warning(dumps({"event": "grid_tick_load_failed", "error": str(exc)}))
            return []

        home = cfg.home_asset.upper()
        max_alloc = free_by_asset(balances).get(home, 0.0) * cfg.max_alloc_pct / 100
        grids = self.store.grids()
        running = {g.symbol for g in self.active_grids()}
        stopped = {s for s, g in grids.items() if g.status == GRID_STOPPED}

        if not self._emergency_stop() and not grid_buy_paused:
            if cfg.symbols:
                desired = [s.upper() for s in cfg.symbols]
            elif cfg.auto_discover:
                desired = [c.symbol for c in await self.refresh_grid_candidates()]
            else:
                desired = []
            desired = desired[: cfg.max_active_grids]
            to_start = [s for s in desired if s not in running and s not in stopped]

            allocated = sum(grids[s].allocation_home for s in running)
            remaining = max(0.0, max_alloc - allocated)
            per_grid = remaining / max(1, len(to_start)) if to_start else 0.0
            for sym in to_start:
                if len(running) >= cfg.max_active_grids or per_grid <= 0:
                    break
                try:
                    grid = await self.build_grid_state(sym, infos.get(sym), per_grid)
                except (GridBuildError, GatewayError) as exc:
                    self.store.persist_grid(sym, self._error_stub(sym, str(exc)))
                    log.warning(dumps({"event": "grid_start_failed", "symbol": sym, "error": str(exc)}))
                    continue
                self.store.persist_grid(grid.symbol, grid)
                running.add(grid.symbol)
                self._log_event(
                    "grid_started",
                    symbol=grid.symbol,
                    lower=grid.lower_price,
                    upper=grid.upper_price,
                    levels=grid.levels,
                    allocation_home=grid.allocation_home,
                )

        results: List[GridTickResult] = []
        for grid in self.active_grids():
            if grid.symbol not in infos:
                continue
            try:
                results.append(await self.reconcile_grid(grid, balances, buy_paused=grid_buy_paused))
            except Exception as exc:
                grid.status = GRID_ERROR
                grid.last_error = str(exc)
                grid.updated_at = self._clock()
                self.store.persist_grid(grid.symbol, grid)
                log.warning(dumps({"event": "grid_tick_failed", "symbol": grid.symbol, "error": str(exc)}))
                results.append(GridTickResult(grid.symbol, success=False, status=GRID_ERROR, error=str(exc)))
        return results

    # ── Imperative control ───────────────────────────────────────────────

    async def start_grid(self, symbol: str, grid_buy_paused: bool = False) -> ActionResult:
        unavailable = self._available()
        if unavailable:
            return ActionResult.failure(unavailable)
        cfg = self.config
        symbol = symbol.upper()
        existing = self.store.get_grid(symbol)
        if existing and existing.status == GRID_RUNNING:
            return ActionResult.success("Grid already running")
        if self._emergency_stop():
            return ActionResult.failure("Emergency stop is active")
        if existing is not None and self._resumable(existing):
            return await self._resume_grid(existing, grid_buy_paused)
        if len(self.active_grids()) >= cfg.max_active_grids:
            return ActionResult.failure(
                f"Max active grids reached ({cfg.max_active_grids}). Stop another grid first."
            )

        try:
            balances = await self.gateway.get_balances()
            infos = symbol_map(await self.gateway.get_symbols())
        except GatewayError as exc:
            return ActionResult.failure(f"Failed to fetch balances: {exc}")

        home = cfg.home_asset.upper()
        max_alloc = free_by_asset(balances).get(home, 0.0) * cfg.max_alloc_pct / 100
        allocated = sum(g.allocation_home for g in self.active_grids())
        remaining = max(0.0, max_alloc - allocated)
        if remaining <= 0:
            return ActionResult.failure(f"No remaining grid allocation (cap {cfg.max_alloc_pct}% of free {home}).")

        try:
            grid = await self.build_grid_state(symbol, infos.get(symbol), remaining)
        except (GridBuildError, GatewayError) as exc:
            return ActionResult.failure(str(exc))
        self.store.persist_grid(grid.symbol, grid)
        self._log_event("grid_started", symbol=grid.symbol, lower=grid.lower_price, upper=grid.upper_price,
                        levels=grid.levels, allocation_home=grid.allocation_home)

        if self._can_trade():
            try:
                await self.reconcile_grid(grid, balances, buy_paused=grid_buy_paused)
            except Exception as exc:
                grid.status = GRID_ERROR
                grid.last_error = str(exc)
                self.store.persist_grid(grid.symbol, grid)
                return ActionResult.failure(str(exc), symbol=grid.symbol)
        return ActionResult.success("Grid started", symbol=grid.symbol, levels=grid.levels)

    async def _resume_grid(self, grid: GridState, grid_buy_paused: bool) -> ActionResult:
        try:
            balances = await self.gateway.get_balances()
            result = await self.reconcile_grid(grid, balances, buy_paused=grid_buy_paused)
        except Exception as exc:
            grid.last_error = str(exc)
            grid.updated_at = self._clock()
            self.store.persist_grid(grid.symbol, grid)
            return ActionResult.failure(str(exc), symbol=grid.symbol)
        if not result.success:
            return ActionResult.failure(result.error or "Grid resume failed", symbol=grid.symbol)
        self._log_event("grid_resumed", symbol=grid.symbol, open=len(grid.orders_by_level))
        return ActionResult.success("Grid resumed", symbol=grid.symbol, levels=grid.levels)

    async def stop_grid(self, symbol: str) -> ActionResult:
        unavailable = self._available()
        if unavailable:
            return ActionResult.failure(unavailable)
        symbol = symbol.upper()
        grid = self.store.get_grid(symbol)
        if grid is None:
            return ActionResult.failure(f"No grid found for {symbol}")
        await self._cancel_grid_orders(grid)
        grid.status = GRID_STOPPED
        grid.orders_by_level = {}
        grid.updated_at = self._clock()
        self.store.persist_grid(symbol, grid)
        if self.metrics:
            self.metrics.grid_open_orders.labels(symbol=symbol).set(0)
        self._log_event("grid_stopped", symbol=symbol)
        return ActionResult.success("Grid stopped", symbol=symbol)
