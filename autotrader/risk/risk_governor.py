"""
Risk Governor: hysteretic NORMAL / CAUTION / HALT state machine.

Inputs each tick:
- home-asset equity (spot balances valued via RateResolver, or futures equity)
- daily baseline: first equity observed on the local calendar day
- rolling baseline: peak of an equity ring over the risk window
- fee burn: fees / traded notional over the same window
- trend regime (ADX, ATR%, Bollinger break, EMA alignment) on one symbol

Transition rules live in evaluate_risk_governor (pure, unit-testable).
Escalation into HALT is immediate; every other transition waits for the
minimum hold time of the current state.

Outputs:
- entries_paused: state != NORMAL
- grid_buy_paused_global: HALT, or CAUTION while trend is on

A tick never raises. Any failure logs and returns None, and callers keep
the previous decision.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from autotrader.core.clock import now_ms
from autotrader.core.json_utils import dumps
from autotrader.gateway.types import GatewayError
from autotrader.market_data import indicators
from autotrader.state.fill_ledger import EquitySnapshot

if TYPE_CHECKING:
    from autotrader.config.config import Settings
    from autotrader.gateway.protocol import ExchangeGateway
    from autotrader.market_data.fx import RateResolver
    from autotrader.monitoring.metrics_rich import RichMetrics
    from autotrader.state.fill_ledger import AsyncFillLedger
    from autotrader.state.payload_store import PayloadStore

log = logging.getLogger("autotrader")

NORMAL = "NORMAL"
CAUTION = "CAUTION"
HALT = "HALT"
STATE_CODES = {NORMAL: 0, CAUTION: 1, HALT: 2}

CORE_REASONS = ("drawdown_daily", "drawdown_rolling", "trend", "fee_burn")

META_KEY = "risk_governor"


@dataclass(frozen=True)
class RiskReason:
    code: str
    detail: str


@dataclass(frozen=True)
class RiskDecision:
    state: str
    since: int
    reasons: List[RiskReason]
    entries_paused: bool
    grid_buy_paused_global: bool

    @property
    def reason_codes(self) -> List[str]:
        return [r.code for r in self.reasons]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RiskDecision":
        return cls(
            state=str(data.get("state") or NORMAL),
            since=int(data.get("since") or 0),
            reasons=[RiskReason(**r) for r in data.get("reasons") or []],
            entries_paused=bool(data.get("entries_paused")),
            grid_buy_paused_global=bool(data.get("grid_buy_paused_global")),
        )


@dataclass(frozen=True)
class TrendSignals:
    adx: Optional[float] = None
    atr_pct: Optional[float] = None
    bollinger_break: Optional[bool] = None
    ema_aligned: Optional[bool] = None


@dataclass(frozen=True)
class RiskThresholds:
    min_state_seconds: int = 900
    halt_min_seconds: int = 3600
    drawdown_caution_pct: float = 1.5
    drawdown_halt_pct: float = 3.0
    fee_burn_caution_pct: float = 0.25
    fee_burn_halt_pct: float = 0.5
    trend_adx_on: float = 25.0
    trend_adx_off: float = 18.0
    grid_atr_pct_max: float = 6.0

    @classmethod
    def from_settings(cls, s: "Settings") -> "RiskThresholds":
        return cls(
            min_state_seconds=s.risk_min_state_seconds,
            halt_min_seconds=s.risk_halt_min_seconds,
            drawdown_caution_pct=s.risk_drawdown_caution_pct,
            drawdown_halt_pct=s.risk_drawdown_halt_pct,
            fee_burn_caution_pct=s.risk_fee_burn_caution_pct,
            fee_burn_halt_pct=s.risk_fee_burn_halt_pct,
            trend_adx_on=s.risk_trend_adx_on,
            trend_adx_off=s.risk_trend_adx_off,
            grid_atr_pct_max=s.grid_atr_pct_max,
        )


# ── Pure helpers ─────────────────────────────────────────────────────────


def local_day_key(ts_ms: int) -> str:
    return datetime.fromtimestamp(ts_ms / 1000).strftime("%Y-%m-%d")


def percent_drawdown(baseline: Optional[float], equity_now: float) -> float:
    if baseline is None or not math.isfinite(baseline) or baseline <= 0:
        return 0.0
    if not math.isfinite(equity_now) or equity_now <= 0:
        return 0.0
    return (baseline - equity_now) / baseline * 100


def _non_negative(v: Any) -> float:
    try:
        n = float(v)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, n) if math.isfinite(n) else 0.0


def push_ring(points: List[Dict[str, Any]], item: Dict[str, Any], max_minutes: float) -> List[Dict[str, Any]]:
    """Append item and drop points older than max_minutes (relative to item['at'])."""
    now = item["at"]
    horizon_ms = max(0.0, max_minutes) * 60_000
    kept = [p for p in [*points, item] if now - p["at"] <= horizon_ms]
    # ~2 points per minute at most, even with a misbehaving clock.
    hard_cap = max(32, math.ceil(max_minutes * 2))
    return kept[-hard_cap:]


def compute_fee_burn_pct(points: List[Dict[str, Any]]) -> Optional[float]:
    fees = sum(_non_negative(p.get("fees_home")) for p in points)
    notional = sum(_non_negative(p.get("notional_home")) for p in points)
    if notional <= 0:
        return None
    return fees / notional * 100


def evaluate_risk_governor(
    now: int,
    prev: Optional[RiskDecision],
    equity_now: float,
    daily_baseline: Optional[float],
    rolling_baseline: Optional[float],
    fee_burn_pct: Optional[float],
    trend: Optional[TrendSignals],
    thresholds: RiskThresholds,
) -> RiskDecision:
    """
    One step of the state machine.

    Args:
        now: Current time (ms)
        prev: Previous decision (None starts in NORMAL)
        equity_now: Current equity in home asset
        daily_baseline: Same-day baseline equity
        rolling_baseline: Rolling-window peak equity
        fee_burn_pct: Rolling fee burn, None when nothing traded
        trend: Trend signals, None when indicators were unavailable
        thresholds: Caution/halt levels and hold times

    Returns:
        The next decision. `since` only moves when the state changes.
    """
    t = thresholds
    min_state = max(0, t.min_state_seconds)
    halt_min = max(0, t.halt_min_seconds)
    dd_caution = max(0.0, t.drawdown_caution_pct)
    dd_halt = max(0.0, t.drawdown_halt_pct)
    fee_caution = max(0.0, t.fee_burn_caution_pct)
    fee_halt = max(0.0, t.fee_burn_halt_pct)
    adx_on = max(0.0, t.trend_adx_on)
    adx_off = max(0.0, t.trend_adx_off)

    dd_daily = percent_drawdown(daily_baseline, equity_now)
    dd_rolling = percent_drawdown(rolling_baseline, equity_now)

    trend = trend or TrendSignals()
    adx = trend.adx if trend.adx is not None and math.isfinite(trend.adx) else None
    ema_aligned = True if trend.ema_aligned is None else trend.ema_aligned
    trending_on = adx is not None and adx >= adx_on and ema_aligned
    trending_off = adx is not None and adx <= adx_off
    fee_burn = fee_burn_pct if fee_burn_pct is not None and math.isfinite(fee_burn_pct) else None

    reasons: List[RiskReason] = []
    if dd_caution > 0 and dd_daily >= dd_caution:
        reasons.append(RiskReason("drawdown_daily", f"Daily drawdown {dd_daily:.2f}% >= {dd_caution:.2f}%"))
    if dd_caution > 0 and dd_rolling >= dd_caution:
        reasons.append(RiskReason("drawdown_rolling", f"Rolling drawdown {dd_rolling:.2f}% >= {dd_caution:.2f}%"))
    if trending_on:
        reasons.append(RiskReason("trend", f"Trend regime: ADX {adx:.1f} >= {adx_on:.1f}"))
    if fee_burn is not None and fee_caution > 0 and fee_burn >= fee_caution:
        reasons.append(RiskReason("fee_burn", f"Fee burn {fee_burn:.2f}% >= {fee_caution:.2f}%"))
    # Context only; these two never move the state on their own.
    atr_pct = trend.atr_pct
    if atr_pct is not None and math.isfinite(atr_pct) and atr_pct > 0 and atr_pct >= max(8.0, t.grid_atr_pct_max):
        reasons.append(RiskReason("vol_spike", f"ATR% elevated: {atr_pct:.2f}%"))
    if trend.bollinger_break is True:
        reasons.append(RiskReason("manual", "Bollinger breakout detected"))

    wants_halt = (
        (dd_halt > 0 and dd_daily >= dd_halt)
        or (dd_halt > 0 and dd_rolling >= dd_halt)
        or (fee_burn is not None and fee_halt > 0 and fee_burn >= fee_halt)
    )
    wants_caution = any(r.code in CORE_REASONS for r in reasons)

    prev_state = prev.state if prev else NORMAL
    prev_since = prev.since if prev else now
    held_seconds = now // 1000 - prev_since // 1000
    can_leave = held_seconds >= min_state
    can_leave_halt = held_seconds >= halt_min
    calm = trending_off and dd_daily < dd_caution and dd_rolling < dd_caution

    if prev_state == HALT:
        if wants_halt or not can_leave_halt:
            next_state = HALT
        elif wants_caution and not calm:
            next_state = CAUTION
        elif can_leave and not wants_caution:
            next_state = NORMAL
        else:
            next_state = CAUTION if wants_caution else NORMAL
    elif prev_state == CAUTION:
        if wants_halt:
            next_state = HALT
        elif not can_leave:
            next_state = CAUTION
        elif not wants_caution:
            next_state = NORMAL
        elif calm and (fee_burn or 0.0) < fee_caution:
            next_state = NORMAL
        else:
            next_state = CAUTION
    else:
        if wants_halt:
            next_state = HALT
        elif wants_caution:
            next_state = CAUTION
        else:
            next_state = NORMAL

    since = now if next_state != prev_state else prev_since
    return RiskDecision(
        state=next_state,
        since=since,
        reasons=reasons,
        entries_paused=next_state != NORMAL,
        grid_buy_paused_global=next_state == HALT or (next_state == CAUTION and trending_on),
    )


# ── Service ──────────────────────────────────────────────────────────────


@dataclass
class RiskGovernorConfig:
    """Configuration for RiskGovernor."""
    enabled: bool = True
    home_asset: str = "USDC"
    venue: str = "spot"
    default_symbol: str = "BTCUSDC"
    window_minutes: int = 360
    trend_interval: str = "1h"
    trend_kline_limit: int = 200
    equity_snapshot_interval_sec: int = 60
    fee_maker: float = 0.001
    fee_taker: float = 0.001
    thresholds: RiskThresholds = field(default_factory=RiskThresholds)

    # Logging callback
    log_event_callback: Optional[Callable[..., None]] = None

    @classmethod
    def from_settings(cls, s: "Settings") -> "RiskGovernorConfig":
        return cls(
            enabled=s.risk_governor_enabled,
            home_asset=s.home_asset,
            venue=s.trade_venue,
            default_symbol=s.default_symbol,
            window_minutes=s.risk_window_minutes,
            trend_interval=s.risk_trend_interval,
            equity_snapshot_interval_sec=s.equity_snapshot_interval_sec,
            fee_maker=s.fee_maker,
            fee_taker=s.fee_taker,
            thresholds=RiskThresholds.from_settings(s),
        )


@dataclass(frozen=True)
class EquityResult:
    equity_home: float
    home_asset: str
    missing_assets: List[str]


class RiskGovernor:
    """
    Owns the governor snapshot in meta["risk_governor"].

    Usage:
        governor = RiskGovernor(gateway, store, rates, ledger, config)
        decision = await governor.tick()
        if decision and decision.entries_paused:
            ...
    """

    def __init__(
        self,
        gateway: "ExchangeGateway",
        store: "PayloadStore",
        rates: "RateResolver",
        ledger: Optional["AsyncFillLedger"] = None,
        config: Optional[RiskGovernorConfig] = None,
        rich_metrics: Optional["RichMetrics"] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.rates = rates
        self.ledger = ledger
        self.config = config or RiskGovernorConfig()
        self.metrics = rich_metrics
        self._clock = clock or now_ms
        self._last_equity_snapshot_at: Optional[int] = None
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    @property
    def window_minutes(self) -> int:
        return max(30, self.config.window_minutes)

    def _snapshot_meta(self) -> Dict[str, Any]:
        return self.store.get_meta(META_KEY) or {}

    @property
    def decision(self) -> Optional[RiskDecision]:
        raw = self._snapshot_meta().get("decision")
        return RiskDecision.from_dict(raw) if raw else None

    # ── Inputs ───────────────────────────────────────────────────────────

    async def compute_equity_home(self) -> EquityResult:
        home = self.config.home_asset.upper()
        if self.config.venue == "futures":
            eq = await self.gateway.get_futures_equity()
            asset = eq.asset.upper() if eq and eq.asset else home
            return EquityResult(equity_home=eq.equity if eq else 0.0, home_asset=asset, missing_assets=[])

        balances = await self.gateway.get_balances()
        equity = 0.0
        missing: List[str] = []
        for bal in balances:
            amount = bal.total
            if not math.isfinite(amount) or amount <= 0:
                continue
            if bal.asset == home:
                equity += amount
                continue
            rate = await self.rates.rate(bal.asset, home)
            if not rate or rate <= 0:
                missing.append(bal.asset)
                continue
            equity += amount * rate
        return EquityResult(equity_home=equity, home_asset=home, missing_assets=missing)

    async def compute_trend_signals(self, symbol: str) -> Optional[TrendSignals]:
        try:
            klines = await self.gateway.get_klines(symbol, self.config.trend_interval, self.config.trend_kline_limit)
        except GatewayError as exc:
            log.warning(dumps({"event": "risk_indicator_fetch_failed", "symbol": symbol, "error": str(exc)}))
            return None
        if not klines:
            return None
        ind = indicators.snapshot(symbol, self.config.trend_interval, klines)
        price = ind.close
        atr_pct = ind.atr14 / price * 100 if ind.atr14 and price > 0 else None
        ema_aligned = ind.ema20 != ind.ema50 if ind.ema20 is not None and ind.ema50 is not None else None
        bb = ind.bb20
        bollinger_break = (
            price > bb.upper or price < bb.lower
            if bb.lower is not None and bb.upper is not None and price > 0
            else None
        )
        return TrendSignals(adx=ind.adx14, atr_pct=atr_pct, bollinger_break=bollinger_break, ema_aligned=ema_aligned)

    # ── Tick ─────────────────────────────────────────────────────────────

    async def tick(self, seed_symbol: Optional[str] = None) -> Optional[RiskDecision]:
        if not self.config.enabled:
            return None
        now = self._clock()
        symbol = (seed_symbol or self.store.get_meta("active_symbol") or self.config.default_symbol).upper()
        try:
            eq = await self.compute_equity_home()
            prev_meta = self._snapshot_meta()

            day_key = local_day_key(now)
            prev_daily = prev_meta.get("daily_baseline") or {}
            if prev_daily.get("day_key") == day_key and str(prev_daily.get("home_asset", "")).upper() == eq.home_asset:
                daily_baseline = float(prev_daily["equity_home"])
            else:
                daily_baseline = eq.equity_home

            rolling = push_ring(
                prev_meta.get("rolling_equity") or [],
                {"at": now, "equity_home": eq.equity_home},
                self.window_minutes,
            )
            rolling_baseline = max((_non_negative(p["equity_home"]) for p in rolling), default=None)

            horizon_ms = self.window_minutes * 60_000
            fees = [p for p in prev_meta.get("rolling_fees") or [] if now - p["at"] <= horizon_ms]
            fee_burn = compute_fee_burn_pct(fees)

            trend = await self.compute_trend_signals(symbol)
            prev_decision = RiskDecision.from_dict(prev_meta["decision"]) if prev_meta.get("decision") else None

            decision = evaluate_risk_governor(
                now=now,
                prev=prev_decision,
                equity_now=eq.equity_home,
                daily_baseline=daily_baseline,
                rolling_baseline=rolling_baseline,
                fee_burn_pct=fee_burn,
                trend=trend,
                thresholds=self.config.thresholds,
            )

            self.store.persist_meta({META_KEY: {
                "decision": decision.to_dict(),
                "daily_baseline": {
                    "day_key": day_key,
                    "equity_home": daily_baseline,
                    "home_asset": eq.home_asset,
                    "at": now,
                },
                "rolling_equity": rolling,
                "rolling_fees": fees,
                "last_equity_home": eq.equity_home,
                "home_asset": eq.home_asset,
                "missing_assets": eq.missing_assets or None,
                "fee_burn_pct": fee_burn,
                "updated_at": now,
            }})

            if prev_decision is None or prev_decision.state != decision.state:
                self._log_event(
                    "risk_state_changed",
                    prev=prev_decision.state if prev_decision else None,
                    state=decision.state,
                    reasons=decision.reason_codes,
                )
            if self.metrics:
                self.metrics.risk_state.set(STATE_CODES[decision.state])
                self.metrics.drawdown_pct.labels(window="daily").set(percent_drawdown(daily_baseline, eq.equity_home))
                self.metrics.drawdown_pct.labels(window="rolling").set(
                    percent_drawdown(rolling_baseline, eq.equity_home)
                )
                self.metrics.fee_burn_pct.set(fee_burn or 0.0)
                self.metrics.equity_home.set(eq.equity_home)

            await self._maybe_record_equity(now, eq)
            return decision
        except Exception as exc:
            log.warning(dumps({"event": "risk_governor_tick_failed", "symbol": symbol, "error": str(exc)}))
            return None

    async def _maybe_record_equity(self, now: int, eq: EquityResult) -> None:
        if self.ledger is None or eq.equity_home <= 0:
            return
        interval_ms = max(0, self.config.equity_snapshot_interval_sec) * 1000
        if self._last_equity_snapshot_at is not None and now - self._last_equity_snapshot_at < interval_ms:
            return
        await self.ledger.insert_equity_snapshot(EquitySnapshot(at=now, home_asset=eq.home_asset, equity_home=eq.equity_home))
        self._last_equity_snapshot_at = now

    # ── Fee telemetry ────────────────────────────────────────────────────

    def record_fee_telemetry(
        self, at: int, fees_home: Optional[float], notional_home: Optional[float], fills: int
    ) -> None:
        """Append one fee observation to the rolling fee ring (no-op when empty)."""
        if not self.config.enabled or at <= 0:
            return
        fees = _non_negative(fees_home or 0.0)
        notional = _non_negative(notional_home or 0.0)
        if fees <= 0 and notional <= 0:
            return
        snap = self._snapshot_meta()
        snap["rolling_fees"] = push_ring(
            snap.get("rolling_fees") or [],
            {"at": at, "fees_home": fees, "notional_home": notional, "fills": max(0, fills)},
            self.window_minutes,
        )
        snap.setdefault("home_asset", self.config.home_asset.upper())
        snap["updated_at"] = at
        self.store.persist_meta({META_KEY: snap})

    def estimate_fees_home(self, notional_home: float, kind: str) -> float:
        """Conservative fee estimate for fills without commission data."""
        rate = self.config.fee_maker if kind == "maker" else self.config.fee_taker
        n = _non_negative(notional_home)
        return n * rate if n > 0 else 0.0
