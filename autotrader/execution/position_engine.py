"""
PositionEngine: open / exit / reconcile tracked positions.

Two modes share the same primitives:

    single-symbol   one position slot per horizon for the default symbol
    portfolio       many symbols under a shared allocation cap and a
                    position-count cap

Every tick runs in this order and commits at most one action:

1. Reconcile tracked sizes against live balances (spot) or live exchange
   positions (futures). Stale inventory is resized or dropped.
2. Re-arm missing OCO orders (throttled).
3. Exits: macro risk-off closes everything; then stop-loss, take-profit,
   strategy flip and symbol trade-halt close one position.
4. Entries (only when nothing exited and entries are not paused).

A new position is persisted before its OCO is armed, so an OCO failure
never loses track of live inventory.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union, TYPE_CHECKING

from autotrader.core.assets import is_stable_pair
from autotrader.core.clock import now_ms
from autotrader.core.json_utils import dumps
from autotrader.core.results import ActionResult
from autotrader.core.rounding import floor_to_step
from autotrader.core.single_flight import KeyedSingleFlight
from autotrader.gateway.types import (
    BUY,
    MARKET,
    SELL,
    Balance,
    GatewayError,
    OrderReport,
    OrderRequest,
    StrategyPlan,
    SymbolInfo,
    free_by_asset,
    symbol_map,
)
from autotrader.state.fill_ledger import CLOSE, OPEN, DecisionRecord, TradeEvent
from autotrader.state.models import Position, position_key

if TYPE_CHECKING:
    from autotrader.config.config import Settings
    from autotrader.gateway.protocol import ExchangeGateway, SignalProvider
    from autotrader.market_data.fx import RateResolver
    from autotrader.monitoring.metrics_rich import RichMetrics
    from autotrader.state.fill_ledger import AsyncFillLedger
    from autotrader.state.payload_store import PayloadStore

log = logging.getLogger("autotrader")

MODULE = "portfolio"
DECISION_MODULE = "auto_trade"

PLACED = "placed"
SKIPPED = "skipped"
ERROR = "error"

HORIZON_ORDER = ("short", "medium", "long")

# Entry sizing headroom on top of slippage (fees + price drift).
ENTRY_BUFFER = 0.002
# Applied to executed qty when the post-buy balance cannot be read.
POST_BUY_HAIRCUT = 0.998

_SKIP_NOTES = ("Conversions disabled", "No conversion path", "Conversion failed", "Insufficient")


@dataclass
class PositionEngineConfig:
    """Configuration for PositionEngine."""
    venue: str = "spot"
    trading_enabled: bool = False
    auto_trade_enabled: bool = True
    portfolio_enabled: bool = True
    home_asset: str = "USDC"
    default_symbol: str = "BTCUSDC"
    quote_assets: List[str] = field(default_factory=lambda: ["USDC", "USDT"])
    blacklist_symbols: List[str] = field(default_factory=list)
    max_alloc_pct: float = 50.0
    max_positions: int = 3
    min_confidence: float = 0.65
    cooldown_minutes: float = 60.0
    preferred_horizon: Optional[str] = None
    risk_off_sentiment: float = -0.5
    slippage_bps: float = 10.0
    conversion_enabled: bool = True
    oco_enabled: bool = True
    oco_reconcile_minutes: float = 10.0
    fee_taker: float = 0.001
    universe_size: int = 20

    # Logging callback
    log_event_callback: Optional[Callable[..., None]] = None

    @classmethod
    def from_settings(cls, s: "Settings") -> "PositionEngineConfig":
        return cls(
            venue=s.trade_venue,
            trading_enabled=s.trading_enabled,
            auto_trade_enabled=s.auto_trade_enabled,
            portfolio_enabled=s.portfolio_enabled,
            home_asset=s.home_asset,
            default_symbol=s.default_symbol,
            quote_assets=list(s.quote_assets),
            blacklist_symbols=list(s.blacklist_symbols),
            max_alloc_pct=s.portfolio_max_alloc_pct,
            max_positions=s.portfolio_max_positions,
            min_confidence=s.auto_trade_min_confidence,
            cooldown_minutes=s.auto_trade_cooldown_minutes,
            preferred_horizon=s.auto_trade_horizon,
            risk_off_sentiment=s.risk_off_sentiment,
            slippage_bps=s.slippage_bps,
            conversion_enabled=s.conversion_enabled,
            oco_enabled=s.oco_enabled,
            oco_reconcile_minutes=s.oco_reconcile_minutes,
            fee_taker=s.fee_taker,
        )


@dataclass
class Decision:
    """Outcome of one auto-trade tick (mirrored into meta.last_auto_trade)."""
    at: int
    symbol: str
    action: str
    reason: Optional[str] = None
    horizon: Optional[str] = None
    order_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class ConversionOutcome:
    balances: List[Balance]
    note: Optional[str] = None


@dataclass
class CloseOutcome:
    balances: List[Balance]
    closed: bool
    note: str


def select_horizon(price: float, plans: Dict[str, StrategyPlan], preferred: Optional[str] = None) -> str:
    """
    Pick the horizon with the best confidence / risk-reward score.

    A volatility bonus uses the short plan's stop distance. A preferred
    horizon wins unless the best one beats it by more than 0.2.
    """
    short = plans.get("short")
    vol_pct = 0.0
    if short is not None and short.exit_plan.stop_loss and price > 0:
        vol_pct = abs((short.exit_plan.stop_loss - price) / price) * 100

    scores: Dict[str, float] = {}
    for h in HORIZON_ORDER:
        plan = plans.get(h)
        if plan is None or plan.entry is None:
            continue
        score = plan.entry.confidence + plan.risk_reward_ratio / 10
        if h == "short" and vol_pct > 8:
            score += 0.1
        if h == "medium" and 4 <= vol_pct <= 8:
            score += 0.05
        if h == "long" and vol_pct < 4:
            score += 0.05
        scores[h] = score
    if not scores:
        return "short"
    best = max(scores, key=lambda h: scores[h])
    if preferred and preferred in scores:
        return best if scores[best] - scores[preferred] > 0.2 else preferred
    return best


def find_conversion(infos: Dict[str, SymbolInfo], from_asset: str, to_asset: str) -> Optional[Tuple[str, str]]:
    """(symbol, side) of a market that turns from_asset into to_asset."""
    src, dst = from_asset.upper(), to_asset.upper()
    for info in infos.values():
        if info.tradable and info.base_asset == dst and info.quote_asset == src:
            return info.symbol, BUY
    for info in infos.values():
        if info.tradable and info.base_asset == src and info.quote_asset == dst:
            return info.symbol, SELL
    return None


def fill_price(report: OrderReport, fallback: float) -> float:
    if report.executed_qty > 0 and report.cumulative_quote_qty > 0:
        return report.cumulative_quote_qty / report.executed_qty
    return report.price if report.price > 0 else fallback


def _passes_filters(info: Optional[SymbolInfo], qty: float, price: float) -> bool:
    if not math.isfinite(qty) or qty <= 0:
        return False
    if info is None:
        return True
    if info.min_qty and qty < info.min_qty:
        return False
    if info.min_notional and qty * max(price, 1e-8) < info.min_notional:
        return False
    return True


class PositionEngine:
    """
    Position lifecycle for spot and futures venues.

    Usage:
        engine = PositionEngine(gateway, store, signals, rates, ledger, config)
        decision = await engine.auto_trade_tick("BTCUSDC", entries_paused=False)
    """

    def __init__(
        self,
        gateway: "ExchangeGateway",
        store: "PayloadStore",
        signals: Optional["SignalProvider"],
        rates: "RateResolver",
        ledger: Optional["AsyncFillLedger"] = None,
        config: Optional[PositionEngineConfig] = None,
        rich_metrics: Optional["RichMetrics"] = None,
        flights: Optional[KeyedSingleFlight] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.signals = signals
        self.rates = rates
        self.ledger = ledger
        self.config = config or PositionEngineConfig()
        self.metrics = rich_metrics
        self.flights = flights or KeyedSingleFlight()
        self._clock = clock or now_ms
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def home(self) -> str:
        return self.config.home_asset.upper()

    @property
    def is_spot(self) -> bool:
        return self.config.venue == "spot"

    def _blocked_symbols(self) -> Set[str]:
        blocked = {s.upper() for s in self.config.blacklist_symbols}
        blocked.update(k.upper() for k in (self.store.get_meta("account_blacklist") or {}))
        return blocked

    def _blacklist_account_symbol(self, symbol: str, reason: str) -> None:
        existing = self.store.get_meta("account_blacklist") or {}
        if symbol in existing:
            return
        existing[symbol] = {"at": self._clock(), "reason": reason}
        self.store.persist_meta({"account_blacklist": existing})
        log.warning(dumps({"event": "account_blacklisted", "symbol": symbol, "reason": reason}))

    def _bump_conversion_counter(self) -> None:
        now = self._clock()
        day = datetime.fromtimestamp(now / 1000, tz=timezone.utc).strftime("%Y-%m-%d")
        current = self.store.get_meta("conversions") or {}
        count = current.get("count", 0) + 1 if current.get("date") == day else 1
        self.store.persist_meta({"conversions": {"date": day, "count": count, "last_at": now}})

    async def _refresh_balances(self, fallback: List[Balance]) -> List[Balance]:
        try:
            fresh = await self.gateway.get_balances()
        except GatewayError as exc:
            log.warning(dumps({"event": "balance_refresh_failed", "error": str(exc)}))
            return fallback
        return fresh or fallback

    def _update_positions_gauge(self) -> None:
        if self.metrics:
            self.metrics.positions_open.set(len(self.store.positions()))

    async def record_decision(self, decision: Decision) -> Decision:
        self.store.persist_meta({"last_auto_trade": decision.to_dict()})
        if self.metrics:
            self.metrics.auto_trade_decisions.labels(action=decision.action).inc()
        if self.ledger is not None:
            await self.ledger.insert_decision(DecisionRecord(
                at=decision.at,
                module=DECISION_MODULE,
                symbol=decision.symbol,
                action=decision.action,
                reason=decision.reason or "",
                details={"horizon": decision.horizon, "order_id": decision.order_id},
            ))
        self._log_event("auto_trade_decision", **decision.to_dict())
        return decision

    def last_decision(self) -> Optional[Dict[str, Any]]:
        return self.store.get_meta("last_auto_trade")

    async def _write_event(self, event: TradeEvent) -> None:
        if self.ledger is not None:
            await self.ledger.insert_trade_event(event)

    async def _market(self, symbol: str, side: str, qty: float, reduce_only: bool = False) -> OrderReport:
        """Place a MARKET order; GatewayError propagates after being counted."""
        try:
            report = await self.gateway.place_order(OrderRequest(symbol, side, MARKET, qty, reduce_only=reduce_only))
        except GatewayError:
            if self.metrics:
                self.metrics.orders_failed.labels(symbol=symbol, side=side, module=MODULE).inc()
            raise
        if self.metrics:
            self.metrics.orders_submitted.labels(symbol=symbol, side=side, module=MODULE).inc()
        return report

    # ── Reconciliation against reality ───────────────────────────────────

    async def reconcile_positions(
        self, infos: Dict[str, SymbolInfo], balances: Optional[List[Balance]] = None
    ) -> List[str]:
        """
        Resize or drop tracked positions that exceed live inventory.

        Spot: positions sharing a base asset are capped, oldest first, by
        the live free + locked balance. Futures: a position must match a
        live exchange position on the same side.

        Returns:
            Position keys that were changed or removed.
        """
        positions = self.store.positions()
        if not positions:
            return []
        changed: List[str] = []
        if self.is_spot:
            if balances is None:
                balances = await self.gateway.get_balances()
            totals = {b.asset: b.total for b in balances}
            for key, pos in sorted(positions.items(), key=lambda kv: kv[1].opened_at):
                info = infos.get(pos.symbol)
                base = pos.base_asset or (info.base_asset if info else "")
                live = totals.get(base, 0.0)
                if live >= pos.size:
                    totals[base] = live - pos.size
                    continue
                size = floor_to_step(max(0.0, live), info.step_size if info else None)
                price = pos.entry_price
                if size <= 0 or not _passes_filters(info, size, price):
                    self.store.persist_position(key, None)
                    log.warning(dumps({"event": "position_cleared", "key": key, "tracked": pos.size, "live": live}))
                else:
                    pos.notional_home = pos.notional_home * size / pos.size if pos.size > 0 else 0.0
                    pos.size = size
                    self.store.persist_position(key, pos)
                    log.warning(dumps({"event": "position_resized", "key": key, "size": size, "live": live}))
                totals[base] = max(0.0, live - size)
                changed.append(key)
        else:
            live_by_symbol = {p.symbol: p for p in await self.gateway.get_futures_positions()}
            for key, pos in positions.items():
                live = live_by_symbol.get(pos.symbol)
                live_side = None if live is None or live.size == 0 else (BUY if live.size > 0 else SELL)
                if live_side != pos.side:
                    self.store.persist_position(key, None)
                    log.warning(dumps({"event": "position_cleared", "key": key, "tracked": pos.size, "live": 0.0}))
                    changed.append(key)
                elif abs(live.size) < pos.size:
                    pos.size = abs(live.size)
                    self.store.persist_position(key, pos)
                    log.warning(dumps({"event": "position_resized", "key": key, "size": pos.size}))
                    changed.append(key)
        if changed:
            self._update_positions_gauge()
        return changed

    # ── Conversions ──────────────────────────────────────────────────────

    async def ensure_quote_asset(
        self, infos: Dict[str, SymbolInfo], balances: List[Balance], quote: str, required: float
    ) -> ConversionOutcome:
        """Buy the missing quote-asset amount from home; never raises."""
        home, quote = self.home, quote.upper()
        if quote == home:
            return ConversionOutcome(balances)
        if not self.config.conversion_enabled:
            return ConversionOutcome(balances, f"Conversions disabled; need {quote}")
        free = free_by_asset(balances)
        missing = required - free.get(quote, 0.0)
        if missing <= 0:
            return ConversionOutcome(balances)
        conversion = find_conversion(infos, home, quote)
        if conversion is None:
            return ConversionOutcome(balances, f"No conversion path {home}->{quote}")
        symbol, side = conversion
        step = infos[symbol].step_size
        buffer = 1.001 + self.config.slippage_bps / 10000
        try:
            if side == BUY:
                qty = floor_to_step(missing * buffer, step)
            else:
                price = await self.gateway.get_latest_price(symbol)
                qty_from = (missing / price) * buffer if price > 0 else 0.0
                free_home = free.get(home, 0.0)
                if qty_from <= 0 or free_home <= 0:
                    return ConversionOutcome(balances, f"Insufficient {home} to convert")
                qty = floor_to_step(min(qty_from, free_home), step)
            await self._market(symbol, side, qty)
        except GatewayError as exc:
            log.warning(dumps({"event": "conversion_failed", "conversion": f"{home}->{quote}", "error": str(exc)}))
            return ConversionOutcome(balances, f"Conversion failed: {exc}")
        self._bump_conversion_counter()
        return ConversionOutcome(await self._refresh_balances(balances), f"Converted {home}->{quote}")

    async def convert_to_home(
        self, infos: Dict[str, SymbolInfo], balances: List[Balance], asset: str, amount: float
    ) -> ConversionOutcome:
        """Sell up to `amount` of asset back into home; never raises."""
        home, src = self.home, asset.upper()
        if src == home:
            return ConversionOutcome(balances)
        if not self.config.conversion_enabled:
            return ConversionOutcome(balances, "Conversions disabled")
        conversion = find_conversion(infos, src, home)
        if conversion is None:
            return ConversionOutcome(balances, f"No conversion path {src}->{home}")
        qty_from = min(amount, free_by_asset(balances).get(src, 0.0))
        if qty_from <= 0:
            return ConversionOutcome(balances)
        symbol, side = conversion
        step = infos[symbol].step_size
        buffer = 1 - self.config.slippage_bps / 10000
        try:
            if side == SELL:
                qty = floor_to_step(qty_from * buffer, step)
            else:
                price = await self.gateway.get_latest_price(symbol)
                qty = floor_to_step(qty_from * price * buffer, step) if price > 0 else 0.0
                if qty <= 0:
                    return ConversionOutcome(balances, "Conversion sizing failed")
            await self._market(symbol, side, qty)
        except GatewayError as exc:
            log.warning(dumps({"event": "conversion_failed", "conversion": f"{src}->{home}", "error": str(exc)}))
            return ConversionOutcome(balances, f"Conversion failed: {exc}")
        self._bump_conversion_counter()
        return ConversionOutcome(await self._refresh_balances(balances), f"Converted {src}->{home}")

    # ── Exit ─────────────────────────────────────────────────────────────

    async def close_position(
        self,
        key: str,
        position: Position,
        balances: List[Balance],
        infos: Dict[str, SymbolInfo],
        reason: str,
    ) -> CloseOutcome:
        """
        Flatten one position with a MARKET order and write a CLOSE event.

        A failed exit order keeps the position tracked so the next tick can
        retry; missing or dust inventory just drops it.
        """
        symbol = position.symbol
        info = infos.get(symbol)
        try:
            price = await self.gateway.get_latest_price(symbol)
        except GatewayError:
            price = position.entry_price

        if position.oco_order_id:
            try:
                await self.gateway.cancel_oco(symbol, position.oco_order_id)
            except GatewayError as exc:
                log.warning(dumps({
                    "event": "oco_cancel_failed",
                    "symbol": symbol,
                    "order_list_id": position.oco_order_id,
                    "error": str(exc),
                }))
            balances = await self._refresh_balances(balances)

        if self.is_spot:
            free_base = free_by_asset(balances).get(position.base_asset, 0.0)
            if free_base <= 0:
                self.store.persist_position(key, None)
                self._update_positions_gauge()
                return CloseOutcome(balances, True, f"Position cleared (no {position.base_asset} balance)")
            qty = floor_to_step(min(position.size, free_base), info.step_size if info else None)
            exit_side = SELL
        else:
            qty = position.size
            exit_side = SELL if position.side == BUY else BUY
        if not _passes_filters(info, qty, price):
            self.store.persist_position(key, None)
            self._update_positions_gauge()
            return CloseOutcome(balances, True, "Position cleared (dust)")

        try:
            report = await self._market(symbol, exit_side, qty, reduce_only=not self.is_spot)
        except GatewayError as exc:
            log.warning(dumps({"event": "close_position_failed", "symbol": symbol, "key": key, "error": str(exc)}))
            return CloseOutcome(balances, False, f"Close failed: {exc}")

        self.store.persist_position(key, None)
        self._update_positions_gauge()
        exit_price = fill_price(report, price)
        executed = report.executed_qty or qty
        await self._write_close_event(key, position, executed, exit_price)
        self._log_event("position_closed", key=key, symbol=symbol, qty=executed, price=exit_price, reason=reason)

        balances = await self._refresh_balances(balances)
        if self.is_spot and position.quote_asset and position.quote_asset != self.home:
            converted = await self.convert_to_home(infos, balances, position.quote_asset, executed * exit_price)
            return CloseOutcome(converted.balances, True, converted.note or reason)
        return CloseOutcome(balances, True, reason)

    async def _write_close_event(self, key: str, position: Position, qty: float, exit_price: float) -> None:
        rate = await self.rates.rate(position.quote_asset, self.home) if position.quote_asset else None
        direction = 1.0 if position.side == BUY else -1.0
        pnl_quote = (exit_price - position.entry_price) * qty * direction
        notional_home = qty * exit_price * rate if rate else 0.0
        await self._write_event(TradeEvent(
            at=self._clock(),
            kind=CLOSE,
            symbol=position.symbol,
            position_key=key,
            side=position.side,
            qty=qty,
            avg_price=exit_price,
            quote_asset=position.quote_asset,
            home_asset=self.home,
            notional_home=notional_home,
            fees_home=notional_home * self.config.fee_taker,
            pnl_home=pnl_quote * rate if rate else None,
        ))

    def _exit_trigger(self, position: Position, price: float) -> Optional[str]:
        long = position.side == BUY
        if position.stop_loss is not None and position.stop_loss > 0:
            if (long and price <= position.stop_loss) or (not long and price >= position.stop_loss):
                return "Stop triggered"
        if position.take_profit:
            tp = position.take_profit[0]
            if (long and price >= tp) or (not long and price <= tp):
                return "Take-profit triggered"
        return None

    async def _strategy_exit(self, position: Position) -> Optional[str]:
        if self.signals is None:
            return None
        try:
            snap = await self.signals.get_snapshot(position.symbol, refresh=True)
        except GatewayError as exc:
            log.warning(dumps({"event": "exit_check_refresh_failed", "symbol": position.symbol, "error": str(exc)}))
            return None
        if snap is None:
            return None
        if snap.trade_halted:
            return "Exit: risk flags"
        plan = snap.plans.get(position.horizon)
        if plan is not None and plan.entry is not None and plan.entry.side != position.side:
            return f"Exit: strategy flipped to {plan.entry.side}"
        return None

    async def _risk_off(self) -> Optional[float]:
        if self.signals is None:
            return None
        sentiment = await self.signals.news_sentiment()
        if sentiment is not None and sentiment <= self.config.risk_off_sentiment:
            return sentiment
        return None

    # ── OCO ──────────────────────────────────────────────────────────────

    async def reconcile_oco(self, infos: Dict[str, SymbolInfo], force: bool = False) -> int:
        """
        Arm an OCO for every open long that has stop and target but none yet.

        Runs at most once per oco_reconcile_minutes. Returns OCOs placed.
        """
        cfg = self.config
        if not cfg.oco_enabled or not cfg.trading_enabled or not self.is_spot:
            return 0
        now = self._clock()
        last = self.store.get_meta("oco_reconcile_at") or 0
        if not force and now - last < cfg.oco_reconcile_minutes * 60_000:
            return 0
        pending = [
            (k, p) for k, p in self.store.positions().items()
            if p.side == BUY and not p.oco_order_id and p.stop_loss and p.take_profit
        ]
        if not pending:
            return 0
        try:
            balances = await self.gateway.get_balances()
        except GatewayError as exc:
            log.warning(dumps({"event": "oco_reconcile_balances_failed", "error": str(exc)}))
            self.store.persist_meta({"oco_reconcile_at": now})
            return 0

        free = free_by_asset(balances)
        placed = 0
        for key, pos in pending:
            info = infos.get(pos.symbol)
            qty = floor_to_step(min(pos.size, free.get(pos.base_asset, 0.0)), info.step_size if info else None)
            if not math.isfinite(qty) or qty <= 0:
                continue
            if await self._arm_oco(key, pos, qty):
                placed += 1
        self.store.persist_meta({"oco_reconcile_at": now})
        return placed

    async def _arm_oco(self, key: str, position: Position, qty: float) -> bool:
        try:
            oco = await self.gateway.place_oco(
                position.symbol, SELL, qty, position.take_profit[0], position.stop_loss
            )
        except GatewayError as exc:
            log.warning(dumps({
                "event": "oco_place_failed",
                "symbol": position.symbol,
                "key": key,
                "error": str(exc),
            }))
            return False
        position.size = qty
        position.oco_order_id = oco.order_list_id
        self.store.persist_position(key, position)
        self._log_event("oco_placed", symbol=position.symbol, order_list_id=oco.order_list_id, quantity=qty)
        return True

    # ── Entry ────────────────────────────────────────────────────────────

    def _cooldown_active(self, key: str, now: int) -> bool:
        last = self.store.last_trade_at(key) or 0
        return now - last < self.config.cooldown_minutes * 60_000

    def _eligible_symbol(self, info: Optional[SymbolInfo]) -> Optional[str]:
        """None when eligible, else the reason it is not."""
        if info is None or not info.base_asset or not info.quote_asset:
            return "Symbol metadata missing"
        if self.is_spot and not info.spot_tradable:
            return f"{info.symbol} not tradable on spot"
        allowed = {q.upper() for q in self.config.quote_assets} | {self.home}
        if info.quote_asset not in allowed:
            return f"Quote asset {info.quote_asset} not allowed"
        if is_stable_pair(info.base_asset, info.quote_asset):
            return "Stable-to-stable pair"
        return None

    async def _available_quote(self, balances: List[Balance], quote: str) -> float:
        if self.is_spot:
            return free_by_asset(balances).get(quote, 0.0)
        equity = await self.gateway.get_futures_equity()
        return equity.equity if equity is not None else 0.0

    async def _enter(
        self,
        symbol: str,
        horizon: str,
        plan: StrategyPlan,
        price: float,
        info: SymbolInfo,
        balances: List[Balance],
        infos: Dict[str, SymbolInfo],
        remaining_home: Optional[float],
    ) -> Union[Decision, str]:
        """
        Size and place one entry.

        Returns:
            A committed Decision (placed or error), or a skip reason string
            when this candidate cannot be entered right now.
        """
        cfg = self.config
        now = self._clock()
        entry = plan.entry
        base, quote = info.base_asset, info.quote_asset
        key = position_key(symbol, horizon)

        quote_to_home = await self.rates.rate(quote, self.home)
        if not quote_to_home:
            return f"No conversion rate {quote}->{self.home}"

        buffer = 1 + ENTRY_BUFFER + cfg.slippage_bps / 10000
        quantity = entry.size
        if remaining_home is not None:
            quantity = min(quantity, remaining_home / (price * quote_to_home * buffer))
        if not math.isfinite(quantity) or quantity <= 0:
            return "Entry size is zero"

        if self.is_spot:
            ensured = await self.ensure_quote_asset(infos, balances, quote, quantity * price * buffer)
            balances = ensured.balances
            if ensured.note and ensured.note.startswith(_SKIP_NOTES):
                return ensured.note
        available = await self._available_quote(balances, quote)
        quantity = min(quantity, available / (price * buffer) if available > 0 else 0.0)
        quantity = floor_to_step(quantity, info.step_size)
        if not math.isfinite(quantity) or quantity <= 0:
            return f"Insufficient {quote} for {entry.side}"
        if not _passes_filters(info, quantity, price):
            return f"Below exchange minimum for {symbol}"

        try:
            report = await self._market(symbol, entry.side, quantity)
        except GatewayError as exc:
            message = str(exc)
            log.warning(dumps({"event": "entry_failed", "symbol": symbol, "horizon": horizon, "error": message}))
            if "not permitted for this account" in message.lower():
                self._blacklist_account_symbol(symbol, message)
            return Decision(now, symbol, ERROR, reason=message, horizon=horizon)

        self.store.persist_last_trade(key, now)
        executed = report.executed_qty or quantity
        avg_price = fill_price(report, price)
        size = executed
        if self.is_spot:
            try:
                fresh = await self.gateway.get_balances()
                free_base = free_by_asset(fresh).get(base, 0.0)
                size = min(executed, free_base) if free_base > 0 else executed * POST_BUY_HAIRCUT
            except GatewayError as exc:
                log.warning(dumps({"event": "post_buy_balance_failed", "symbol": symbol, "error": str(exc)}))
                size = executed * POST_BUY_HAIRCUT
            size = floor_to_step(size, info.step_size)

        position = Position(
            symbol=symbol,
            horizon=horizon,
            side=entry.side,
            entry_price=avg_price,
            size=size,
            stop_loss=plan.exit_plan.stop_loss,
            take_profit=list(plan.exit_plan.take_profit),
            base_asset=base,
            quote_asset=quote,
            home_asset=self.home,
            notional_home=size * avg_price * quote_to_home,
            opened_at=now,
            venue=cfg.venue,
        )
        # Durable before the OCO: a failed OCO must not lose the position.
        self.store.persist_position(key, position)
        self._update_positions_gauge()
        await self._write_event(TradeEvent(
            at=now,
            kind=OPEN,
            symbol=symbol,
            position_key=key,
            side=entry.side,
            qty=size,
            avg_price=avg_price,
            quote_asset=quote,
            home_asset=self.home,
            notional_home=position.notional_home,
            fees_home=position.notional_home * cfg.fee_taker,
        ))
        self._log_event("position_opened", key=key, symbol=symbol, side=entry.side, size=size, price=avg_price)

        if cfg.oco_enabled and self.is_spot and position.stop_loss and position.take_profit:
            await self._arm_oco(key, position, size)
        return Decision(now, symbol, PLACED, horizon=horizon, order_id=report.order_id)

    # ── Ticks ────────────────────────────────────────────────────────────

    async def _close_for(
        self, key: str, pos: Position, balances: List[Balance], infos: Dict[str, SymbolInfo], reason: str
    ) -> Decision:
        closed = await self.close_position(key, pos, balances, infos, reason)
        action = PLACED if closed.closed else ERROR
        return Decision(self._clock(), pos.symbol, action, reason=closed.note, horizon=pos.horizon)

    async def _close_all(self, balances: List[Balance], infos: Dict[str, SymbolInfo], reason: str) -> None:
        for key, pos in self.store.positions().items():
            closed = await self.close_position(key, pos, balances, infos, reason)
            balances = closed.balances

    async def portfolio_tick(
        self, seed_symbol: Optional[str], infos: Dict[str, SymbolInfo], balances: List[Balance], entries_paused: bool
    ) -> Decision:
        cfg = self.config
        now = self._clock()
        seed = (seed_symbol or cfg.default_symbol).upper()

        sentiment = await self._risk_off()
        if sentiment is not None:
            await self._close_all(balances, infos, f"Risk-off: news sentiment {sentiment:.2f}")
            return Decision(now, seed, SKIPPED, reason=f"Risk-off: news sentiment {sentiment:.2f}")

        for key, pos in self.store.positions().items():
            try:
                price = await self.gateway.get_latest_price(pos.symbol)
            except GatewayError as exc:
                log.warning(dumps({"event": "exit_price_failed", "symbol": pos.symbol, "error": str(exc)}))
                continue
            reason = self._exit_trigger(pos, price) or await self._strategy_exit(pos)
            if reason:
                return await self._close_for(key, pos, balances, infos, reason)

        if entries_paused:
            return Decision(now, seed, SKIPPED, reason="Entries paused by risk governor")

        positions = self.store.positions()
        if len(positions) >= cfg.max_positions:
            return Decision(now, seed, SKIPPED, reason=f"Max positions reached ({cfg.max_positions})")

        free_home = free_by_asset(balances).get(self.home, 0.0)
        if not self.is_spot:
            free_home = await self._available_quote(balances, self.home)
        remaining = max(0.0, free_home * cfg.max_alloc_pct / 100 - sum(p.notional_home for p in positions.values()))
        if remaining <= 0:
            return Decision(now, seed, SKIPPED, reason=f"Allocation cap reached ({cfg.max_alloc_pct}%)")

        ranked = self.signals.ranked_candidates() if self.signals else []
        if not ranked:
            ranked = [c["symbol"] for c in self.store.get_meta("ranked_candidates") or [] if "symbol" in c]
        blocked = self._blocked_symbols()
        universe: List[str] = []
        for sym in [seed, *(s.upper() for s in ranked)]:
            if sym not in universe and sym not in blocked:
                universe.append(sym)
        held = {p.symbol for p in positions.values()}

        last_skip: Optional[str] = None
        for candidate in universe[: cfg.universe_size]:
            if candidate in held:
                continue
            info = infos.get(candidate)
            if self._eligible_symbol(info):
                continue
            try:
                snap = await self.signals.get_snapshot(candidate, refresh=candidate != seed) if self.signals else None
            except GatewayError as exc:
                log.warning(dumps({"event": "candidate_refresh_failed", "symbol": candidate, "error": str(exc)}))
                continue
            if snap is None or not snap.plans or snap.trade_halted:
                continue
            horizon = select_horizon(snap.price, snap.plans, cfg.preferred_horizon)
            plan = snap.plans[horizon]
            entry = plan.entry
            if entry is None or entry.confidence < cfg.min_confidence:
                continue
            if self.is_spot and entry.side != BUY:
                continue
            if self._cooldown_active(position_key(candidate, horizon), now):
                continue
            outcome = await self._enter(candidate, horizon, plan, snap.price, info, balances, infos, remaining)
            if isinstance(outcome, Decision):
                return outcome
            last_skip = outcome
            balances = await self._refresh_balances(balances)

        reason = "No eligible candidates to open"
        if last_skip:
            reason = f"{reason} (last: {last_skip})"
        return Decision(now, seed, SKIPPED, reason=reason)

    async def single_symbol_tick(
        self, symbol: Optional[str], infos: Dict[str, SymbolInfo], balances: List[Balance], entries_paused: bool
    ) -> Decision:
        cfg = self.config
        now = self._clock()
        symbol = (symbol or cfg.default_symbol).upper()
        snap = await self.signals.get_snapshot(symbol) if self.signals else None
        if snap is None or not snap.plans:
            return Decision(now, symbol, SKIPPED, reason="No strategies yet")

        horizon = select_horizon(snap.price, snap.plans, cfg.preferred_horizon)
        plan = snap.plans[horizon]
        entry = plan.entry
        key = position_key(symbol, horizon)

        open_pos = self.store.get_position(key)
        if open_pos is not None:
            sentiment = await self._risk_off()
            if sentiment is not None:
                return await self._close_for(key, open_pos, balances, infos, f"Risk-off: sentiment {sentiment:.2f}")
            price = await self.gateway.get_latest_price(symbol)
            reason = self._exit_trigger(open_pos, price)
            if reason is None and snap.trade_halted:
                reason = "Exit: risk flags"
            if reason is None and entry is not None and entry.side != open_pos.side:
                reason = f"Exit: strategy flipped to {entry.side}"
            if reason:
                return await self._close_for(key, open_pos, balances, infos, reason)
            return Decision(now, symbol, SKIPPED, reason="Position already open", horizon=horizon)

        if entries_paused:
            return Decision(now, symbol, SKIPPED, reason="Entries paused by risk governor", horizon=horizon)
        if entry is None:
            return Decision(now, symbol, SKIPPED, reason="No entry plan", horizon=horizon)
        if self.is_spot and entry.side != BUY:
            return Decision(now, symbol, SKIPPED, reason="SELL signal (spot opens longs only)", horizon=horizon)
        if entry.confidence < cfg.min_confidence:
            return Decision(
                now, symbol, SKIPPED, horizon=horizon,
                reason=f"Low confidence {entry.confidence * 100:.0f}% < {cfg.min_confidence * 100:.0f}%",
            )
        if self._cooldown_active(key, now):
            return Decision(now, symbol, SKIPPED, reason=f"Cooldown active ({cfg.cooldown_minutes:g}m)", horizon=horizon)
        if snap.trade_halted:
            return Decision(now, symbol, SKIPPED, reason=f"Risk flags: {'; '.join(snap.risk_flags)}", horizon=horizon)
        if symbol in self._blocked_symbols():
            return Decision(now, symbol, SKIPPED, reason=f"{symbol} is blacklisted", horizon=horizon)
        info = infos.get(symbol)
        ineligible = self._eligible_symbol(info)
        if ineligible:
            return Decision(now, symbol, SKIPPED, reason=ineligible, horizon=horizon)

        outcome = await self._enter(symbol, horizon, plan, snap.price, info, balances, infos, None)
        if isinstance(outcome, Decision):
            return outcome
        return Decision(now, symbol, SKIPPED, reason=outcome, horizon=horizon)

    async def auto_trade_tick(self, symbol: Optional[str] = None, entries_paused: bool = False) -> Optional[Decision]:
        """
        One lifecycle pass. Returns the recorded decision, or None when auto
        trading is disabled or a previous pass is still in flight.
        """
        cfg = self.config
        if not cfg.auto_trade_enabled:
            return None
        label = (symbol or cfg.default_symbol).upper()
        if not self.flights.try_acquire("positions"):
            log.warning(dumps({"event": "auto_trade_tick_in_flight", "symbol": label}))
            return None
        try:
            if self.store.get_meta("emergency_stop"):
                return await self.record_decision(Decision(self._clock(), label, SKIPPED, reason="Emergency stop enabled"))
            if not cfg.trading_enabled:
                return await self.record_decision(Decision(self._clock(), label, SKIPPED, reason="AT_TRADING_ENABLED=false"))
            try:
                infos = symbol_map(await self.gateway.get_symbols())
                balances = await self.gateway.get_balances()
                if await self.reconcile_positions(infos, balances):
                    balances = await self._refresh_balances(balances)
                await self.reconcile_oco(infos)
                if cfg.portfolio_enabled:
                    decision = await self.portfolio_tick(symbol, infos, balances, entries_paused)
                else:
                    decision = await self.single_symbol_tick(symbol, infos, balances, entries_paused)
            except Exception as exc:
                log.error(dumps({"event": "auto_trade_tick_failed", "symbol": label, "error": str(exc)}))
                decision = Decision(self._clock(), label, ERROR, reason=str(exc))
            return await self.record_decision(decision)
        finally:
            self.flights.release("positions")

    # ── Imperative control ───────────────────────────────────────────────

    async def open_position(
        self, symbol: str, horizon: Optional[str] = None, entries_paused: bool = False
    ) -> ActionResult:
        """Enter one symbol now (cooldown and confidence still apply)."""
        cfg = self.config
        symbol = symbol.upper()
        if self.store.get_meta("emergency_stop"):
            return ActionResult.failure("Emergency stop is active")
        if not cfg.trading_enabled:
            return ActionResult.failure("AT_TRADING_ENABLED=false")
        if entries_paused:
            return ActionResult.failure("Entries paused by risk governor")
        if symbol in self._blocked_symbols():
            return ActionResult.failure(f"{symbol} is blacklisted")
        if self.signals is None:
            return ActionResult.failure("No signal provider configured")
        try:
            infos = symbol_map(await self.gateway.get_symbols())
            balances = await self.gateway.get_balances()
            snap = await self.signals.get_snapshot(symbol, refresh=True)
        except GatewayError as exc:
            return ActionResult.failure(f"Failed to load market context: {exc}")
        if snap is None or not snap.plans:
            return ActionResult.failure("No strategies yet")
        info = infos.get(symbol)
        ineligible = self._eligible_symbol(info)
        if ineligible:
            return ActionResult.failure(ineligible)
        horizon = horizon or select_horizon(snap.price, snap.plans, cfg.preferred_horizon)
        plan = snap.plans.get(horizon)
        if plan is None or plan.entry is None:
            return ActionResult.failure(f"No {horizon} plan for {symbol}")
        key = position_key(symbol, horizon)
        if self.store.get_position(key) is not None:
            return ActionResult.failure(f"Position {key} already open")
        if self.is_spot and plan.entry.side != BUY:
            return ActionResult.failure("SELL signal (spot opens longs only)")
        if plan.entry.confidence < cfg.min_confidence:
            return ActionResult.failure(f"Low confidence {plan.entry.confidence * 100:.0f}%")
        if self._cooldown_active(key, self._clock()):
            return ActionResult.failure(f"Cooldown active ({cfg.cooldown_minutes:g}m)")

        outcome = await self._enter(symbol, horizon, plan, snap.price, info, balances, infos, None)
        if isinstance(outcome, str):
            return ActionResult.failure(outcome)
        await self.record_decision(outcome)
        if outcome.action != PLACED:
            return ActionResult.failure(outcome.reason or "Entry failed", key=key)
        return ActionResult.success("Position opened", key=key, order_id=outcome.order_id)

    async def close_position_by_key(self, key: str) -> ActionResult:
        if not self.config.trading_enabled:
            return ActionResult.failure("AT_TRADING_ENABLED=false")
        position = self.store.get_position(key)
        if position is None:
            return ActionResult.failure(f"No position {key}")
        try:
            infos = symbol_map(await self.gateway.get_symbols())
            balances = await self.gateway.get_balances()
        except GatewayError as exc:
            return ActionResult.failure(f"Failed to fetch balances: {exc}")
        closed = await self.close_position(key, position, balances, infos, "Manual close")
        await self.record_decision(Decision(
            self._clock(), position.symbol, PLACED if closed.closed else ERROR,
            reason=closed.note, horizon=position.horizon,
        ))
        if not closed.closed:
            return ActionResult.failure(closed.note, key=key)
        return ActionResult.success(closed.note, key=key)
