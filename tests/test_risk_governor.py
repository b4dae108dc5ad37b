"""
Tests for the risk governor.

Tests cover:
- State transitions and hold times (pure evaluate_risk_governor)
- Reason codes, context-only reasons
- Entry and grid-buy pause outputs
- Ring buffer and fee burn helpers
- Service tick: equity valuation, persisted snapshot, equity snapshots
- Fee telemetry ring
"""

from unittest.mock import AsyncMock

import pytest

from autotrader.gateway.types import FuturesEquity
from autotrader.risk.risk_governor import (
    CAUTION,
    HALT,
    META_KEY,
    NORMAL,
    RiskDecision,
    RiskGovernor,
    RiskGovernorConfig,
    RiskThresholds,
    TrendSignals,
    compute_fee_burn_pct,
    evaluate_risk_governor,
    percent_drawdown,
    push_ring,
)

from conftest import T0

TH = RiskThresholds()


def step(now=T0, prev=None, equity=1000.0, daily=1000.0, rolling=1000.0, fee_burn=None, trend=None):
    return evaluate_risk_governor(now, prev, equity, daily, rolling, fee_burn, trend, TH)


def state(name, since=T0):
    return RiskDecision(name, since, [], name != NORMAL, name == HALT)


class TestTransitions:
    def test_starts_normal(self):
        d = step()
        assert d.state == NORMAL
        assert d.since == T0
        assert d.entries_paused is False
        assert d.grid_buy_paused_global is False

    def test_drawdown_enters_caution(self):
        d = step(equity=980.0)
        assert d.state == CAUTION
        assert d.reason_codes == ["drawdown_daily", "drawdown_rolling"]
        assert d.entries_paused is True
        assert d.grid_buy_paused_global is False

    def test_halt_entry_is_immediate(self):
        d = step(now=T0 + 1000, prev=state(CAUTION), equity=960.0)
        assert d.state == HALT
        assert d.since == T0 + 1000
        assert d.grid_buy_paused_global is True

    def test_caution_held_for_min_state(self):
        d = step(now=T0 + 60_000, prev=state(CAUTION))
        assert d.state == CAUTION
        assert d.since == T0

    def test_caution_recovers_after_hold(self):
        d = step(now=T0 + 900_000, prev=state(CAUTION))
        assert d.state == NORMAL
        assert d.since == T0 + 900_000
        assert d.entries_paused is False

    def test_halt_held_for_halt_min(self):
        d = step(now=T0 + 900_000, prev=state(HALT))
        assert d.state == HALT

    def test_halt_releases_after_halt_min(self):
        d = step(now=T0 + 3_600_000, prev=state(HALT))
        assert d.state == NORMAL

    def test_halt_steps_down_to_caution(self):
        d = step(now=T0 + 3_600_000, prev=state(HALT), equity=980.0)
        assert d.state == CAUTION

    def test_trend_pauses_grid_buys_in_caution(self):
        d = step(trend=TrendSignals(adx=30.0, ema_aligned=True))
        assert d.state == CAUTION
        assert d.reason_codes == ["trend"]
        assert d.grid_buy_paused_global is True

    def test_trend_requires_ema_alignment(self):
        d = step(trend=TrendSignals(adx=30.0, ema_aligned=False))
        assert d.state == NORMAL

    def test_fee_burn_levels(self):
        assert step(fee_burn=0.3).state == CAUTION
        assert step(fee_burn=0.6).state == HALT
        assert step(fee_burn=None).state == NORMAL

    def test_context_reasons_do_not_move_state(self):
        d = step(trend=TrendSignals(adx=10.0, atr_pct=12.0, bollinger_break=True))
        assert d.state == NORMAL
        assert set(d.reason_codes) == {"vol_spike", "manual"}

    def test_decision_dict_round_trip(self):
        d = step(equity=980.0)
        assert RiskDecision.from_dict(d.to_dict()) == d


class TestHelpers:
    def test_percent_drawdown(self):
        assert percent_drawdown(1000.0, 900.0) == pytest.approx(10.0)
        assert percent_drawdown(None, 900.0) == 0.0
        assert percent_drawdown(1000.0, 0.0) == 0.0

    def test_push_ring_drops_old_points(self):
        old = {"at": T0 - 400 * 60_000, "equity_home": 1.0}
        recent = {"at": T0 - 60_000, "equity_home": 2.0}
        ring = push_ring([old, recent], {"at": T0, "equity_home": 3.0}, 360)
        assert [p["equity_home"] for p in ring] == [2.0, 3.0]

    def test_push_ring_hard_cap(self):
        points = [{"at": T0 + i} for i in range(100)]
        ring = push_ring(points, {"at": T0 + 100}, 10)
        assert len(ring) == 32
        assert ring[-1]["at"] == T0 + 100

    def test_fee_burn(self):
        assert compute_fee_burn_pct([{"fees_home": 1.0, "notional_home": 1000.0}]) == pytest.approx(0.1)
        assert compute_fee_burn_pct([]) is None
        assert compute_fee_burn_pct([{"fees_home": -5.0, "notional_home": 100.0}]) == 0.0


class TestRiskGovernorService:
    @pytest.fixture
    def governor(self, gateway, store, rates, ledger, clock):
        gateway.set_balance("BTC", 1.0)
        return RiskGovernor(gateway, store, rates, ledger, RiskGovernorConfig(), clock=clock)

    @pytest.mark.asyncio
    async def test_equity_includes_converted_balances(self, governor):
        eq = await governor.compute_equity_home()
        assert eq.equity_home == pytest.approx(1100.0)
        assert eq.missing_assets == []

    @pytest.mark.asyncio
    async def test_unpriced_asset_reported_missing(self, governor, gateway):
        gateway.set_balance("XYZ", 5.0)
        eq = await governor.compute_equity_home()
        assert eq.missing_assets == ["XYZ"]

    @pytest.mark.asyncio
    async def test_tick_persists_snapshot(self, governor, store, ledger):
        decision = await governor.tick()

        assert decision.state == NORMAL
        snap = store.get_meta(META_KEY)
        assert snap["last_equity_home"] == pytest.approx(1100.0)
        assert snap["daily_baseline"]["equity_home"] == pytest.approx(1100.0)
        assert len(snap["rolling_equity"]) == 1
        assert governor.decision == decision
        latest = await ledger.latest_equity("USDC")
        assert latest.equity_home == pytest.approx(1100.0)

    @pytest.mark.asyncio
    async def test_price_drop_halts(self, governor, gateway, clock):
        await governor.tick()
        gateway.prices["BTCUSDC"] = 50.0
        clock.advance(60_000)

        decision = await governor.tick()

        assert decision.state == HALT
        assert "drawdown_daily" in decision.reason_codes
        assert decision.entries_paused is True

    @pytest.mark.asyncio
    async def test_equity_snapshot_interval(self, governor, ledger, clock):
        await governor.tick()
        clock.advance(10_000)
        await governor.tick()
        clock.advance(60_000)
        await governor.tick()

        rows = ledger.ledger.list_equity_snapshots("USDC")
        assert [r.at for r in rows] == [T0, T0 + 70_000]

    @pytest.mark.asyncio
    async def test_tick_failure_returns_none(self, governor, gateway):
        gateway.get_balances = AsyncMock(side_effect=RuntimeError("boom"))
        assert await governor.tick() is None

    @pytest.mark.asyncio
    async def test_disabled(self, gateway, store, rates, clock):
        governor = RiskGovernor(gateway, store, rates, config=RiskGovernorConfig(enabled=False), clock=clock)
        assert await governor.tick() is None
        assert store.get_meta(META_KEY) is None

    @pytest.mark.asyncio
    async def test_futures_equity(self, gateway, store, rates, clock):
        gateway.futures_equity = FuturesEquity("USDT", 500.0)
        governor = RiskGovernor(gateway, store, rates, config=RiskGovernorConfig(venue="futures"), clock=clock)
        eq = await governor.compute_equity_home()
        assert eq.equity_home == 500.0
        assert eq.home_asset == "USDT"


class TestFeeTelemetry:
    def test_records_into_ring(self, gateway, store, rates, clock):
        governor = RiskGovernor(gateway, store, rates, clock=clock)
        governor.record_fee_telemetry(T0, 0.1, 100.0, 1)
        governor.record_fee_telemetry(T0 + 1000, 0.0, 0.0, 0)

        fees = store.get_meta(META_KEY)["rolling_fees"]
        assert fees == [{"at": T0, "fees_home": 0.1, "notional_home": 100.0, "fills": 1}]

    @pytest.mark.asyncio
    async def test_fee_burn_feeds_next_tick(self, gateway, store, rates, clock):
        governor = RiskGovernor(gateway, store, rates, clock=clock)
        governor.record_fee_telemetry(T0, 1.0, 100.0, 1)
        decision = await governor.tick()
        assert decision.state == HALT
        assert store.get_meta(META_KEY)["fee_burn_pct"] == pytest.approx(1.0)

    def test_estimate_fees(self, gateway, store, rates):
        governor = RiskGovernor(gateway, store, rates, config=RiskGovernorConfig(fee_maker=0.001, fee_taker=0.002))
        assert governor.estimate_fees_home(1000.0, "maker") == pytest.approx(1.0)
        assert governor.estimate_fees_home(1000.0, "taker") == pytest.approx(2.0)
        assert governor.estimate_fees_home(-5.0, "taker") == 0.0
