"""
Tests for the trading controller.

Tests cover:
- Tick step ordering and pause flags from the risk decision
- Step isolation (one failing component does not stop the others)
- Fallback to the persisted decision when the governor returns None
- Emergency stop and sweep-unused with stop_auto_trade
- Imperative surface passes the persisted pause flags
- run() / stop() and shutdown()
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from autotrader.monitoring.metrics_rich import RichMetrics
from autotrader.orchestrator.controller import ControllerConfig, TradingController
from autotrader.risk.risk_governor import CAUTION, HALT, META_KEY, NORMAL, RiskDecision

from conftest import T0


def decision(state, entries=False, buys=False):
    return RiskDecision(state, T0, [], entries, buys)


@pytest.fixture
def parts():
    risk = MagicMock()
    risk.tick = AsyncMock(return_value=decision(NORMAL))
    grids = MagicMock()
    grids.start_or_sync_grids = AsyncMock(return_value=[])
    grids.start_grid = AsyncMock(return_value="grid-started")
    grids.stop_grid = AsyncMock(return_value="grid-stopped")
    positions = MagicMock()
    positions.auto_trade_tick = AsyncMock(return_value=None)
    positions.open_position = AsyncMock(return_value="opened")
    positions.close_position_by_key = AsyncMock(return_value="closed")
    positions.last_decision.return_value = {"action": "hold"}
    fill_sync = MagicMock()
    fill_sync.tick = AsyncMock(return_value=None)
    fill_sync.drain = AsyncMock()
    fill_sync.get_stats.return_value = {"queue": 0}
    sweeper = MagicMock()
    sweeper.sweep_unused = AsyncMock(return_value="swept")
    pnl = MagicMock()
    pnl.reconcile = AsyncMock(return_value="report")
    ledger = MagicMock()
    ledger.close = AsyncMock()
    return {
        "risk": risk, "grids": grids, "positions": positions, "fill_sync": fill_sync,
        "sweeper": sweeper, "pnl": pnl, "ledger": ledger,
    }


@pytest.fixture
def controller(parts, store, clock):
    return TradingController(
        store, parts["risk"], parts["grids"], parts["positions"], parts["fill_sync"],
        parts["sweeper"], parts["pnl"], ledger=parts["ledger"],
        config=ControllerConfig(loop_interval_sec=0.0, short_sleep_sec=0.0),
        clock=clock,
    )


class TestTick:
    @pytest.mark.asyncio
    async def test_runs_every_step(self, controller, parts):
        parts["risk"].tick.return_value = decision(CAUTION, entries=True)

        result = await controller.tick("BTCUSDC")

        assert result.success is True
        assert result.risk.state == CAUTION
        parts["risk"].tick.assert_awaited_once_with("BTCUSDC")
        parts["grids"].start_or_sync_grids.assert_awaited_once_with(grid_buy_paused=False)
        parts["positions"].auto_trade_tick.assert_awaited_once_with("BTCUSDC", entries_paused=True)
        parts["fill_sync"].tick.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failing_step_is_isolated(self, controller, parts):
        parts["grids"].start_or_sync_grids.side_effect = RuntimeError("exchange down")

        result = await controller.tick()

        assert result.success is False
        assert result.errors == {"grid": "exchange down"}
        assert result.grids == []
        parts["positions"].auto_trade_tick.assert_awaited_once()
        parts["fill_sync"].tick.assert_awaited_once()
        assert controller.get_stats()["error_ticks"] == 1

    @pytest.mark.asyncio
    async def test_falls_back_to_persisted_decision(self, controller, parts, store):
        parts["risk"].tick.return_value = None
        store.persist_meta({META_KEY: {"decision": decision(HALT, True, True).to_dict()}})

        result = await controller.tick()

        assert result.risk.state == HALT
        parts["grids"].start_or_sync_grids.assert_awaited_once_with(grid_buy_paused=True)
        parts["positions"].auto_trade_tick.assert_awaited_once_with(None, entries_paused=True)

    @pytest.mark.asyncio
    async def test_no_decision_means_not_paused(self, controller, parts):
        parts["risk"].tick.side_effect = RuntimeError("boom")

        result = await controller.tick()

        assert result.risk is None
        assert result.errors == {"risk": "boom"}
        parts["grids"].start_or_sync_grids.assert_awaited_once_with(grid_buy_paused=False)

    @pytest.mark.asyncio
    async def test_errors_counted_in_metrics(self, parts, store, clock):
        metrics = RichMetrics()
        controller = TradingController(
            store, parts["risk"], parts["grids"], parts["positions"], parts["fill_sync"],
            parts["sweeper"], parts["pnl"], rich_metrics=metrics, clock=clock,
        )
        parts["fill_sync"].tick.side_effect = RuntimeError("x")

        await controller.tick()

        assert metrics.registry.get_sample_value("tick_errors_total", {"component": "fill_sync"}) == 1.0
        assert metrics.registry.get_sample_value("tick_duration_ms_count", {"component": "risk"}) == 1.0


class TestControl:
    def test_emergency_stop(self, controller, store, clock):
        result = controller.set_emergency_stop(True, "manual check")

        assert result.ok is True
        assert controller.emergency_stop_state() == {"enabled": True, "at": T0, "reason": "manual check"}

        clock.advance(1000)
        controller.set_emergency_stop(False)
        assert controller.emergency_stop_state() == {"enabled": False, "at": T0 + 1000, "reason": "cleared"}

    @pytest.mark.asyncio
    async def test_sweep_can_stop_auto_trade(self, controller, parts):
        result = await controller.sweep_unused(dry_run=True, stop_auto_trade=True, keep_assets=["BNB"])

        assert result == "swept"
        assert controller.emergency_stop_state()["reason"] == "sweep-unused"
        parts["sweeper"].sweep_unused.assert_awaited_once_with(
            dry_run=True, keep_allowed_quotes=True, keep_position_assets=True, keep_assets=["BNB"],
        )

    @pytest.mark.asyncio
    async def test_sweep_leaves_emergency_flag_alone(self, controller):
        await controller.sweep_unused()
        assert controller.emergency_stop_state()["enabled"] is False

    @pytest.mark.asyncio
    async def test_imperative_calls_use_persisted_flags(self, controller, parts, store):
        store.persist_meta({META_KEY: {"decision": decision(CAUTION, True, True).to_dict()}})

        await controller.open_position("ETHUSDC", "short")
        await controller.start_grid("BTCUSDC")
        await controller.close_position("ETHUSDC:short")
        await controller.stop_grid("BTCUSDC")

        parts["positions"].open_position.assert_awaited_once_with("ETHUSDC", "short", entries_paused=True)
        parts["grids"].start_grid.assert_awaited_once_with("BTCUSDC", grid_buy_paused=True)
        parts["positions"].close_position_by_key.assert_awaited_once_with("ETHUSDC:short")
        parts["grids"].stop_grid.assert_awaited_once_with("BTCUSDC")

    @pytest.mark.asyncio
    async def test_pnl_report(self, controller, parts):
        assert await controller.pnl_report("24h") == "report"
        parts["pnl"].reconcile.assert_awaited_once_with("24h")

    def test_status(self, controller):
        status = controller.status()
        assert status["risk"] is None
        assert status["positions"] == {}
        assert status["grids"] == {}
        assert status["last_decision"] == {"action": "hold"}
        assert status["emergency_stop"]["enabled"] is False


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_run_until_stopped(self, controller, parts):
        async def stop_after_two():
            if parts["fill_sync"].tick.await_count >= 2:
                controller.stop()

        parts["fill_sync"].tick.side_effect = stop_after_two

        await controller.run()

        assert controller.is_running is False
        assert controller.get_stats()["tick_count"] == 2

    @pytest.mark.asyncio
    async def test_shutdown_drains_and_closes(self, controller, parts):
        await controller.shutdown()

        parts["fill_sync"].drain.assert_awaited_once_with(timeout=10.0)
        parts["ledger"].close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_shutdown_survives_drain_timeout(self, controller, parts):
        parts["fill_sync"].drain.side_effect = TimeoutError()

        await controller.shutdown()

        parts["ledger"].close.assert_awaited_once()
