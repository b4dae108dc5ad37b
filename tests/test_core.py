"""
Tests for core helpers and boundary types.

Tests cover:
- Step / tick rounding
- KeyedSingleFlight
- ActionResult constructors
- Stable-asset classification
- from_raw coercion of exchange records
"""

from pathlib import PurePosixPath

import pytest

from autotrader.core.assets import is_stable_like, is_stable_pair, looks_like_leverage_token
from autotrader.core.json_utils import dumps, dumps_bytes, loads
from autotrader.core.results import ActionResult
from autotrader.core.rounding import decimals_for_step, floor_to_step, floor_to_tick, price_key
from autotrader.core.single_flight import KeyedSingleFlight
from autotrader.gateway.types import (
    BUY,
    Balance,
    Kline,
    OcoReport,
    OrderReport,
    SymbolInfo,
    Ticker,
    TradeRecord,
    to_float,
    to_id,
)


class TestRounding:
    def test_decimals_for_step(self):
        assert decimals_for_step(0.001) == 3
        assert decimals_for_step(0.00001) == 5
        assert decimals_for_step(1.0) == 0
        assert decimals_for_step(None) == 8

    def test_floor_to_step(self):
        assert floor_to_step(1.23456, 0.001) == 1.234
        assert floor_to_step(0.3, 0.1) == 0.3
        assert floor_to_step(7.9, 1.0) == 7.0
        assert floor_to_step(1.23456, None) == 1.23456

    def test_floor_to_tick(self):
        assert floor_to_tick(100.019, 0.01) == 100.01

    def test_price_key(self):
        assert price_key("buy", 100.5, 0.01) == "BUY:100.50"


class TestSingleFlight:
    def test_second_acquire_rejected(self):
        flights = KeyedSingleFlight()
        assert flights.try_acquire("grid:BTCUSDC") is True
        assert flights.try_acquire("grid:BTCUSDC") is False
        assert flights.try_acquire("grid:ETHUSDC") is True
        assert flights.get_stats() == {"entered": 2, "rejected": 1, "in_flight": 2}

        flights.release("grid:BTCUSDC")
        assert flights.is_busy("grid:BTCUSDC") is False

    @pytest.mark.asyncio
    async def test_guard_releases(self):
        flights = KeyedSingleFlight()
        async with flights.guard("k") as entered:
            assert entered is True
            async with flights.guard("k") as nested:
                assert nested is False
            assert flights.is_busy("k") is True
        assert flights.is_busy("k") is False

    @pytest.mark.asyncio
    async def test_guard_releases_on_error(self):
        flights = KeyedSingleFlight()
        with pytest.raises(RuntimeError):
            async with flights.guard("k"):
                raise RuntimeError("boom")
        assert flights.is_busy("k") is False


class TestActionResult:
    def test_constructors(self):
        ok = ActionResult.success("placed", order_id="1")
        assert (ok.ok, ok.reason, ok.data) == (True, "placed", {"order_id": "1"})

        bad = ActionResult.failure("rejected", symbol="BTCUSDC")
        assert (bad.ok, bad.error, bad.data) == (False, "rejected", {"symbol": "BTCUSDC"})


class TestAssets:
    def test_stable_like(self):
        assert is_stable_like("usdc") is True
        assert is_stable_like("USDX") is True
        assert is_stable_like("USDXX") is False
        assert is_stable_like("BTC") is False

    def test_stable_pair(self):
        assert is_stable_pair("USDC", "USDT") is True
        assert is_stable_pair("BTC", "USDT") is False

    def test_leverage_token(self):
        assert looks_like_leverage_token("BTCUP") is True
        assert looks_like_leverage_token("ETHBEAR") is True
        assert looks_like_leverage_token("BTC") is False


class TestJson:
    def test_round_trip(self):
        assert loads(dumps({"a": 1, 2: "b"})) == {"a": 1, "2": "b"}

    def test_dataclass_and_fallback(self):
        assert loads(dumps(Balance("BTC", 1.0))) == {"asset": "BTC", "free": 1.0, "locked": 0.0}
        assert loads(dumps({"path": PurePosixPath("/data/fills.db")})) == {"path": "/data/fills.db"}
        assert dumps_bytes({"a": 1}, pretty=True).startswith(b"{\n")


class TestCoercion:
    def test_to_float(self):
        assert to_float("1.5") == 1.5
        assert to_float(True) is None
        assert to_float("nan") is None
        assert to_float("x") is None

    def test_to_id(self):
        assert to_id(123) == "123"
        assert to_id("undefined") is None
        assert to_id("  ") is None

    def test_symbol_info(self):
        info = SymbolInfo.from_raw({
            "symbol": "btcusdc",
            "baseAsset": "BTC",
            "quoteAsset": "USDC",
            "isSpotTradingAllowed": True,
            "filters": [
                {"filterType": "PRICE_FILTER", "tickSize": "0.01"},
                {"filterType": "LOT_SIZE", "stepSize": "0.00001", "minQty": "0.00001"},
                {"filterType": "NOTIONAL", "minNotional": "5"},
            ],
        })
        assert info.symbol == "BTCUSDC"
        assert (info.tick_size, info.step_size, info.min_qty, info.min_notional) == (0.01, 0.00001, 0.00001, 5.0)
        assert info.spot_tradable is True

    def test_symbol_info_requires_assets(self):
        with pytest.raises(ValueError):
            SymbolInfo.from_raw({"symbol": "BTCUSDC", "baseAsset": "BTC"})

    def test_kline_array(self):
        k = Kline.from_raw([1, "100", "105", "95", "101", "10", 2])
        assert (k.open_time, k.close, k.volume, k.close_time) == (1, 101.0, 10.0, 2)
        with pytest.raises(ValueError):
            Kline.from_raw([1, "100", "x", "95", "101"])

    def test_order_report(self):
        order = OrderReport.from_raw({
            "orderId": 123,
            "side": "buy",
            "status": "filled",
            "executedQty": "1",
            "cummulativeQuoteQty": "100",
            "transactTime": 5,
        }, symbol="btcusdc")
        assert (order.symbol, order.order_id, order.side, order.update_time) == ("BTCUSDC", "123", BUY, 5)
        assert order.is_filled is True
        assert order.cumulative_quote_qty == 100.0

    def test_trade_record(self):
        trade = TradeRecord.from_raw({
            "orderId": 1, "id": 9, "qty": "0.5", "price": "100", "time": 7,
            "commission": "0.001", "commissionAsset": "bnb", "isBuyer": True,
        }, symbol="BTCUSDC")
        assert (trade.trade_id, trade.commission_asset, trade.is_buyer) == ("9", "BNB", True)
        with pytest.raises(ValueError):
            TradeRecord.from_raw({"orderId": 1, "price": "100"})

    def test_ticker_and_balance(self):
        assert Ticker.from_raw({"symbol": "BTCUSDC", "price": "100"}).price == 100.0
        assert Balance.from_raw({"asset": "btc", "free": "1", "locked": "0.5"}).total == 1.5
        assert OcoReport.from_raw({"orderListId": 4, "listOrderStatus": "executing"}).status == "EXECUTING"
