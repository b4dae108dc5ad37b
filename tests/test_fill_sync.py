"""
Tests for fill synchronization.

Tests cover:
- Idempotent per-trade upserts
- Aggregation of trades without ids into one order row
- Debounce and in-flight suppression
- Queue overflow drops the oldest tenth
- Tick: open-order polling, missing-order follow-up, retry cap
- Vanished orders held until their final sync is accepted
- Grid vs portfolio module attribution
- Fee telemetry reports only the new notional
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from autotrader.execution.fill_sync import FillSyncConfig, FillSyncQueue, SyncTask, TrackedOrder
from autotrader.gateway.types import BUY, PARTIALLY_FILLED, GatewayError, TradeRecord
from autotrader.state.fill_ledger import GRID, PORTFOLIO
from autotrader.state.models import GridOrder, GridPerformance, GridState

from conftest import T0


def make_sync(gateway, store, ledger, rates, clock, risk=None, **overrides):
    config = FillSyncConfig(trading_enabled=True, **overrides)
    return FillSyncQueue(gateway, store, ledger, rates, risk=risk, config=config, clock=clock)


def no_id_trade(order_id, qty, price, commission=None, asset=None):
    return TradeRecord("BTCUSDC", order_id, None, T0, qty, price, qty * price, commission, asset, True)


class TestSyncOrder:
    @pytest.mark.asyncio
    async def test_trade_rows_are_idempotent(self, gateway, store, ledger, rates, clock):
        order = gateway.add_open_order("BTCUSDC", BUY, 100.0, 1.0)
        gateway.fill_order(order.order_id)
        sync = make_sync(gateway, store, ledger, rates, clock)

        first = await sync.sync_order("BTCUSDC", order.order_id, PORTFOLIO)
        await sync.sync_order("BTCUSDC", order.order_id, PORTFOLIO)

        assert first.rows == 1
        assert first.aggregated is False
        rows = await ledger.list_trade_fills()
        assert len(rows) == 1
        assert rows[0].side == BUY
        assert rows[0].notional == pytest.approx(100.0)
        assert rows[0].fees_home == pytest.approx(0.1)
        assert rows[0].quote_asset == "USDC"

    @pytest.mark.asyncio
    async def test_trades_without_ids_collapse(self, gateway, store, ledger, rates, clock):
        gateway.trades = [
            no_id_trade("77", 0.5, 100.0, 0.05, "USDC"),
            no_id_trade("77", 0.5, 110.0, 0.05, "USDC"),
        ]
        sync = make_sync(gateway, store, ledger, rates, clock)

        result = await sync.sync_order("BTCUSDC", "77", PORTFOLIO)
        await sync.sync_order("BTCUSDC", "77", PORTFOLIO)

        assert result.aggregated is True
        rows = await ledger.list_trade_fills()
        assert len(rows) == 1
        assert rows[0].qty == pytest.approx(1.0)
        assert rows[0].price == pytest.approx(105.0)
        assert rows[0].fee_amount == pytest.approx(0.1)
        assert rows[0].trade_id is None

    @pytest.mark.asyncio
    async def test_unknown_side_is_skipped(self, gateway, store, ledger, rates, clock):
        gateway.trades = [TradeRecord("BTCUSDC", "5", "t1", T0, 1.0, 100.0)]
        sync = make_sync(gateway, store, ledger, rates, clock)

        assert (await sync.sync_order("BTCUSDC", "5", PORTFOLIO)).rows == 0
        assert (await sync.sync_order("BTCUSDC", "5", PORTFOLIO, side_hint=BUY)).rows == 1

    @pytest.mark.asyncio
    async def test_trades_failure_reported(self, gateway, store, ledger, rates, clock):
        gateway.fail["get_my_trades"] = GatewayError("down")
        sync = make_sync(gateway, store, ledger, rates, clock)

        result = await sync.sync_order("BTCUSDC", "1", PORTFOLIO)

        assert result.error == "down"
        assert await ledger.count_trade_fills() == 0


class TestQueue:
    @pytest.mark.asyncio
    async def test_debounce_and_progress(self, gateway, store, ledger, rates, clock):
        sync = make_sync(gateway, store, ledger, rates, clock)

        def snap(qty):
            return TrackedOrder("BTCUSDC", "9", PORTFOLIO, BUY, PARTIALLY_FILLED, qty)

        assert sync.observe(snap(0.5)) is True
        assert sync.observe(snap(0.5)) is False
        await sync.drain()

        assert sync.observe(snap(0.8)) is False
        assert sync.get_stats()["debounced"] == 1

        clock.advance(1000)
        assert sync.observe(snap(0.9)) is True
        await sync.drain()
        assert sync.get_stats()["synced"] == 2

    @pytest.mark.asyncio
    async def test_in_flight_key_not_requeued(self, gateway, store, ledger, rates, clock):
        sync = make_sync(gateway, store, ledger, rates, clock, debounce_ms=0)
        assert sync.enqueue(SyncTask("BTCUSDC", "1", PORTFOLIO)) is True
        assert sync.enqueue(SyncTask("BTCUSDC", "1", PORTFOLIO)) is False
        await sync.drain()

    @pytest.mark.asyncio
    async def test_rejected_progress_is_seen_again(self, gateway, store, ledger, rates, clock):
        sync = make_sync(gateway, store, ledger, rates, clock, debounce_ms=0)
        order = TrackedOrder("BTCUSDC", "9", PORTFOLIO, BUY, PARTIALLY_FILLED, 0.5)
        assert sync.enqueue(SyncTask("BTCUSDC", "9", PORTFOLIO)) is True

        assert sync.observe(order) is False
        assert sync.has_unsynced_progress(order) is True
        await sync.drain()

        assert sync.observe(order) is True
        assert sync.has_unsynced_progress(order) is False
        await sync.drain()

    @pytest.mark.asyncio
    async def test_overflow_drops_oldest(self, gateway, store, ledger, rates, clock):
        sync = make_sync(gateway, store, ledger, rates, clock, queue_max=10, concurrency=1)

        for i in range(12):
            sync.enqueue(SyncTask("BTCUSDC", str(i), PORTFOLIO))

        stats = sync.get_stats()
        assert stats["dropped"] == 1
        assert stats["queue"] == 10
        assert stats["in_flight"] == 1
        await sync.drain()
        assert sync.get_stats()["queue"] == 0


class TestTick:
    @pytest.mark.asyncio
    async def test_inactive_when_trading_disabled(self, gateway, store, ledger, rates, clock):
        sync = FillSyncQueue(gateway, store, ledger, rates, clock=clock)
        gateway.add_open_order("BTCUSDC", BUY, 100.0, 1.0, executed=0.5)

        result = await sync.tick()

        assert result.success is True
        assert result.open_orders == 0

    @pytest.mark.asyncio
    async def test_partial_then_vanished(self, gateway, store, ledger, rates, clock):
        sync = make_sync(gateway, store, ledger, rates, clock)
        order = gateway.add_open_order("BTCUSDC", BUY, 100.0, 1.0)

        first = await sync.tick()
        assert (first.open_orders, first.enqueued) == (1, 0)

        gateway.fill_order(order.order_id, 0.4)
        clock.advance(5000)
        second = await sync.tick()
        await sync.drain()
        assert second.enqueued == 1
        assert await ledger.count_trade_fills() == 1

        gateway.fill_order(order.order_id)
        clock.advance(5000)
        third = await sync.tick()
        await sync.drain()
        assert third.open_orders == 0
        assert third.missing_checked == 1
        assert third.enqueued == 1
        assert await ledger.count_trade_fills() == 2

    @pytest.mark.asyncio
    async def test_order_vanishing_during_partial_sync_is_resynced(self, gateway, store, ledger, rates, clock):
        sync = make_sync(gateway, store, ledger, rates, clock)
        order = gateway.add_open_order("BTCUSDC", BUY, 100.0, 1.0)
        await sync.tick()

        release = asyncio.Event()
        fetch_trades = gateway.get_my_trades

        async def slow_trades(symbol, order_id=None, limit=None):
            rows = await fetch_trades(symbol, order_id=order_id, limit=limit)
            await release.wait()
            return rows

        gateway.get_my_trades = slow_trades
        gateway.fill_order(order.order_id, 0.4)
        clock.advance(5000)
        assert (await sync.tick()).enqueued == 1
        await asyncio.sleep(0)  # the partial sync has read its trades and is still running

        gateway.fill_order(order.order_id)
        clock.advance(5000)
        vanished = await sync.tick()

        assert vanished.missing_checked == 1
        assert vanished.enqueued == 0
        assert sync.get_stats()["missing"] == 1

        release.set()
        await sync.drain()
        assert await ledger.count_trade_fills() == 1

        clock.advance(5000)
        retried = await sync.tick()
        await sync.drain()

        assert retried.enqueued == 1
        assert sync.get_stats()["missing"] == 0
        assert await ledger.count_trade_fills() == 2

    @pytest.mark.asyncio
    async def test_vanished_order_queried_once(self, gateway, store, ledger, rates, clock):
        sync = make_sync(gateway, store, ledger, rates, clock)
        order = gateway.add_open_order("BTCUSDC", BUY, 100.0, 1.0)
        await sync.tick()

        gateway.fill_order(order.order_id)
        result = await sync.tick()
        await sync.drain()

        assert result.missing_checked == 1
        assert result.enqueued == 1
        assert await ledger.count_trade_fills() == 1

    @pytest.mark.asyncio
    async def test_cancelled_order_not_synced(self, gateway, store, ledger, rates, clock):
        sync = make_sync(gateway, store, ledger, rates, clock)
        order = gateway.add_open_order("BTCUSDC", BUY, 100.0, 1.0)
        await sync.tick()

        await gateway.cancel_order("BTCUSDC", order.order_id)
        result = await sync.tick()

        assert result.missing_checked == 1
        assert result.enqueued == 0
        assert sync.get_stats()["missing"] == 0

    @pytest.mark.asyncio
    async def test_missing_lookup_retry_cap(self, gateway, store, ledger, rates, clock):
        sync = make_sync(gateway, store, ledger, rates, clock, missing_max_attempts=3)
        gateway.add_open_order("BTCUSDC", BUY, 100.0, 1.0)
        await sync.tick()

        gateway.open_ids.clear()
        gateway.fail["get_order"] = GatewayError("timeout")
        for _ in range(2):
            assert (await sync.tick()).missing_checked == 1
            assert sync.get_stats()["missing"] == 1

        assert (await sync.tick()).missing_checked == 1
        assert sync.get_stats()["missing"] == 0
        assert (await sync.tick()).missing_checked == 0

    @pytest.mark.asyncio
    async def test_grid_orders_attributed_to_grid(self, gateway, store, ledger, rates, clock):
        order = gateway.add_open_order("BTCUSDC", BUY, 95.0, 0.5)
        store.persist_grid("BTCUSDC", GridState(
            "BTCUSDC", "running", "BTC", "USDC", "USDC", 95.0, 105.0, 2, [95.0, 105.0],
            50.0, 100.0, GridPerformance(),
            orders_by_level={0: GridOrder(order.order_id, BUY, 95.0, 0.5, T0, T0)},
        ))
        sync = make_sync(gateway, store, ledger, rates, clock)
        await sync.tick()

        gateway.fill_order(order.order_id)
        await sync.tick()
        await sync.drain()

        rows = await ledger.list_trade_fills(module=GRID)
        assert len(rows) == 1
        assert rows[0].price == 95.0

    @pytest.mark.asyncio
    async def test_open_orders_failure(self, gateway, store, ledger, rates, clock):
        gateway.fail["get_open_orders"] = GatewayError("503")
        sync = make_sync(gateway, store, ledger, rates, clock)

        result = await sync.tick()

        assert result.success is False
        assert result.error == "503"


class TestFeeTelemetry:
    @pytest.mark.asyncio
    async def test_reports_delta_only(self, gateway, store, ledger, rates, clock):
        risk = MagicMock()
        order = gateway.add_open_order("BTCUSDC", BUY, 100.0, 1.0)
        sync = make_sync(gateway, store, ledger, rates, clock, risk=risk)

        gateway.fill_order(order.order_id, 0.5)
        await sync.sync_order("BTCUSDC", order.order_id, PORTFOLIO)
        gateway.fill_order(order.order_id)
        await sync.sync_order("BTCUSDC", order.order_id, PORTFOLIO)
        await sync.sync_order("BTCUSDC", order.order_id, PORTFOLIO)

        calls = risk.record_fee_telemetry.call_args_list
        assert len(calls) == 2
        at, fees, notional, fills = calls[1].args
        assert at == T0
        assert fees == pytest.approx(0.05)
        assert notional == pytest.approx(50.0)
        assert fills == 2

    @pytest.mark.asyncio
    async def test_estimates_when_commission_unknown(self, gateway, store, ledger, rates, clock):
        risk = MagicMock()
        risk.estimate_fees_home.return_value = 0.1
        gateway.trades = [TradeRecord("BTCUSDC", "3", "t3", T0, 1.0, 100.0, 100.0, None, None, True)]
        sync = make_sync(gateway, store, ledger, rates, clock, risk=risk)

        await sync.sync_order("BTCUSDC", "3", GRID)

        risk.estimate_fees_home.assert_called_once_with(100.0, "maker")
        risk.record_fee_telemetry.assert_called_once_with(T0, 0.1, 100.0, 1)
