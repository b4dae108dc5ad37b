"""
Pytest configuration and shared fakes.

FakeGateway is a small in-memory exchange: MARKET orders fill immediately
at the current price and move balances, LIMIT orders rest until a test
calls fill_order(). Any method can be made to fail by putting an exception
in `gateway.fail[<method name>]`.
"""

from typing import Dict, List, Optional

import pytest

from autotrader.gateway.types import (
    BUY,
    FILLED,
    LIMIT,
    MARKET,
    PARTIALLY_FILLED,
    SELL,
    Balance,
    EntryPlan,
    ExitPlan,
    FuturesEquity,
    FuturesPosition,
    GatewayError,
    Kline,
    OcoReport,
    OrderReport,
    OrderRequest,
    StrategyPlan,
    StrategySnapshot,
    SymbolInfo,
    Ticker,
    TradeRecord,
)
from autotrader.market_data.fx import DEFAULT_MIDS, RateResolver
from autotrader.state.fill_ledger import AsyncFillLedger, FillLedger
from autotrader.state.models import Position
from autotrader.state.payload_store import PayloadStore

T0 = 1_700_000_000_000


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


def flat_klines(n: int = 48, low: float = 95.0, high: float = 105.0, close: float = 100.0,
                start: int = T0 - 48 * 3_600_000, step_ms: int = 3_600_000) -> List[Kline]:
    """Range-bound candles: every bar spans [low, high] and opens/closes at `close`."""
    return [
        Kline(start + i * step_ms, close, high, low, close, 10.0, start + (i + 1) * step_ms - 1)
        for i in range(n)
    ]


class FakeGateway:
    def __init__(self):
        self.symbols: Dict[str, SymbolInfo] = {}
        self.free: Dict[str, float] = {}
        self.locked: Dict[str, float] = {}
        self.prices: Dict[str, float] = {}
        self.tickers: Dict[str, Ticker] = {}
        self.klines: Dict[str, List[Kline]] = {}
        self.orders: Dict[str, OrderReport] = {}
        self.open_ids: List[str] = []
        self.trades: List[TradeRecord] = []
        self.placed: List[OrderRequest] = []
        self.cancelled: List[str] = []
        self.ocos: Dict[str, Dict] = {}
        self.cancelled_ocos: List[str] = []
        self.futures_positions: List[FuturesPosition] = []
        self.futures_equity: Optional[FuturesEquity] = None
        self.fail: Dict[str, Exception] = {}
        self.commission_rate = 0.001
        self.now = T0
        self._next_id = 1000

    # ── Test helpers ─────────────────────────────────────────────────────

    def add_symbol(self, symbol: str, base: str, quote: str, price: Optional[float] = None, **filters) -> None:
        self.symbols[symbol] = SymbolInfo(symbol, base, quote, **filters)
        if price is not None:
            self.prices[symbol] = price

    def set_balance(self, asset: str, free: float, locked: float = 0.0) -> None:
        self.free[asset] = free
        self.locked[asset] = locked

    def _id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    def _check(self, name: str) -> None:
        exc = self.fail.get(name)
        if exc is not None:
            raise exc

    def _settle(self, symbol: str, side: str, qty: float, price: float) -> None:
        info = self.symbols[symbol]
        sign = 1 if side == BUY else -1
        self.free[info.base_asset] = self.free.get(info.base_asset, 0.0) + sign * qty
        self.free[info.quote_asset] = self.free.get(info.quote_asset, 0.0) - sign * qty * price

    def _trade(self, order: OrderReport, qty: float, price: float, trade_id: Optional[str] = None) -> None:
        info = self.symbols[order.symbol]
        self.trades.append(TradeRecord(
            symbol=order.symbol,
            order_id=order.order_id,
            trade_id=trade_id or self._id(),
            time_ms=self.now,
            qty=qty,
            price=price,
            quote_qty=qty * price,
            commission=qty * price * self.commission_rate,
            commission_asset=info.quote_asset,
            is_buyer=order.side == BUY,
        ))

    def add_open_order(self, symbol: str, side: str, price: float, qty: float, executed: float = 0.0) -> OrderReport:
        order = OrderReport(
            symbol, self._id(), side, LIMIT, PARTIALLY_FILLED if executed else "NEW",
            price, qty, executed, executed * price, self.now,
        )
        self.orders[order.order_id] = order
        self.open_ids.append(order.order_id)
        return order

    def fill_order(self, order_id: str, qty: Optional[float] = None) -> OrderReport:
        """Fill a resting order (fully, or by `qty` more)."""
        order = self.orders[order_id]
        fill_qty = qty if qty is not None else order.orig_qty - order.executed_qty
        executed = order.executed_qty + fill_qty
        done = executed >= order.orig_qty - 1e-12
        updated = OrderReport(
            order.symbol, order.order_id, order.side, order.type,
            FILLED if done else PARTIALLY_FILLED,
            order.price, order.orig_qty, executed, executed * order.price, self.now,
        )
        self.orders[order_id] = updated
        if done and order_id in self.open_ids:
            self.open_ids.remove(order_id)
        self._settle(order.symbol, order.side, fill_qty, order.price)
        self._trade(updated, fill_qty, order.price)
        return updated

    # ── ExchangeGateway ──────────────────────────────────────────────────

    async def get_symbols(self) -> List[SymbolInfo]:
        self._check("get_symbols")
        return list(self.symbols.values())

    async def get_balances(self) -> List[Balance]:
        self._check("get_balances")
        assets = sorted(set(self.free) | set(self.locked))
        return [Balance(a, self.free.get(a, 0.0), self.locked.get(a, 0.0)) for a in assets]

    async def get_ticker(self, symbol: str) -> Ticker:
        self._check("get_ticker")
        if symbol in self.tickers:
            return self.tickers[symbol]
        if symbol not in self.prices:
            raise GatewayError(f"Invalid symbol {symbol}")
        return Ticker(symbol, self.prices[symbol])

    async def get_latest_price(self, symbol: str) -> float:
        self._check("get_latest_price")
        if symbol not in self.prices:
            raise GatewayError(f"Invalid symbol {symbol}")
        return self.prices[symbol]

    async def get_klines(self, symbol: str, interval: str, limit: int, start_ms: Optional[int] = None) -> List[Kline]:
        self._check("get_klines")
        rows = self.klines.get(symbol, [])
        if start_ms is not None:
            return [k for k in rows if k.open_time >= start_ms][:limit]
        return rows[-limit:]

    async def place_order(self, request: OrderRequest) -> OrderReport:
        self._check("place_order")
        self.placed.append(request)
        order_id = self._id()
        if request.type == MARKET:
            price = self.prices[request.symbol]
            report = OrderReport(
                request.symbol, order_id, request.side, MARKET, FILLED, 0.0,
                request.quantity, request.quantity, request.quantity * price, self.now,
            )
            self.orders[order_id] = report
            self._settle(request.symbol, request.side, request.quantity, price)
            self._trade(report, request.quantity, price)
            return report
        report = OrderReport(
            request.symbol, order_id, request.side, LIMIT, "NEW", request.price or 0.0,
            request.quantity, 0.0, 0.0, self.now,
        )
        self.orders[order_id] = report
        self.open_ids.append(order_id)
        return report

    async def cancel_order(self, symbol: str, order_id: str) -> None:
        self._check("cancel_order")
        self.cancelled.append(order_id)
        if order_id in self.open_ids:
            self.open_ids.remove(order_id)
        order = self.orders.get(order_id)
        if order is not None:
            self.orders[order_id] = OrderReport(
                order.symbol, order.order_id, order.side, order.type, "CANCELED",
                order.price, order.orig_qty, order.executed_qty, order.cumulative_quote_qty, self.now,
            )

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[OrderReport]:
        self._check("get_open_orders")
        rows = [self.orders[i] for i in self.open_ids]
        return [r for r in rows if symbol is None or r.symbol == symbol]

    async def get_order(self, symbol: str, order_id: str) -> OrderReport:
        self._check("get_order")
        if order_id not in self.orders:
            raise GatewayError("Order does not exist.", code=-2013)
        return self.orders[order_id]

    async def get_my_trades(self, symbol: str, order_id: Optional[str] = None, limit: Optional[int] = None) -> List[TradeRecord]:
        self._check("get_my_trades")
        rows = [t for t in self.trades if t.symbol == symbol and (order_id is None or t.order_id == order_id)]
        return rows[-limit:] if limit else rows

    async def place_oco(self, symbol: str, side: str, quantity: float, take_profit: float, stop_loss: float) -> OcoReport:
        self._check("place_oco")
        list_id = self._id()
        self.ocos[list_id] = {
            "symbol": symbol, "side": side, "quantity": quantity,
            "take_profit": take_profit, "stop_loss": stop_loss,
        }
        return OcoReport(list_id, symbol, "EXECUTING")

    async def get_oco(self, symbol: str, order_list_id: str) -> Optional[OcoReport]:
        self._check("get_oco")
        if order_list_id not in self.ocos:
            return None
        return OcoReport(order_list_id, symbol, "EXECUTING")

    async def cancel_oco(self, symbol: str, order_list_id: str) -> None:
        self._check("cancel_oco")
        self.cancelled_ocos.append(order_list_id)
        self.ocos.pop(order_list_id, None)

    async def get_futures_positions(self) -> List[FuturesPosition]:
        self._check("get_futures_positions")
        return list(self.futures_positions)

    async def get_futures_equity(self) -> Optional[FuturesEquity]:
        self._check("get_futures_equity")
        return self.futures_equity


class FakeSignals:
    def __init__(self):
        self.snapshots: Dict[str, StrategySnapshot] = {}
        self.sentiment: Optional[float] = None
        self.ranked: List[str] = []

    async def get_snapshot(self, symbol: str, refresh: bool = False) -> Optional[StrategySnapshot]:
        return self.snapshots.get(symbol.upper())

    async def news_sentiment(self) -> Optional[float]:
        return self.sentiment

    def ranked_candidates(self) -> List[str]:
        return list(self.ranked)


def make_plan(side: str = BUY, price: float = 100.0, confidence: float = 0.8, size: float = 1.0,
              stop_loss: Optional[float] = 95.0, take_profit: Optional[List[float]] = None,
              horizon: str = "short", rr: float = 2.0) -> StrategyPlan:
    return StrategyPlan(
        horizon=horizon,
        entries=[EntryPlan(side, price, size, confidence)],
        exit_plan=ExitPlan(stop_loss, [110.0] if take_profit is None else take_profit),
        risk_reward_ratio=rr,
    )


def make_snapshot(symbol: str, price: float = 100.0, halted: bool = False, **plan_kwargs) -> StrategySnapshot:
    plan = make_plan(price=price, **plan_kwargs)
    return StrategySnapshot(symbol, price, {plan.horizon: plan}, trade_halted=halted)


def make_position(symbol: str = "BTCUSDC", horizon: str = "short", size: float = 1.0,
                  entry_price: float = 100.0, opened_at: int = T0, base: str = "BTC",
                  quote: str = "USDC", side: str = BUY, venue: str = "spot", **kwargs) -> Position:
    return Position(
        symbol=symbol,
        horizon=horizon,
        side=side,
        entry_price=entry_price,
        size=size,
        stop_loss=kwargs.pop("stop_loss", 95.0),
        take_profit=kwargs.pop("take_profit", [110.0]),
        base_asset=base,
        quote_asset=quote,
        home_asset="USDC",
        notional_home=size * entry_price,
        opened_at=opened_at,
        venue=venue,
        **kwargs,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    gw = FakeGateway()
    gw.add_symbol("BTCUSDC", "BTC", "USDC", 100.0, tick_size=0.01, step_size=0.00001,
                  min_qty=0.00001, min_notional=5.0)
    gw.add_symbol("ETHUSDC", "ETH", "USDC", 20.0, tick_size=0.01, step_size=0.0001,
                  min_qty=0.0001, min_notional=5.0)
    gw.add_symbol("BTCUSDT", "BTC", "USDT", 100.0, tick_size=0.01, step_size=0.00001,
                  min_qty=0.00001, min_notional=5.0)
    gw.add_symbol("USDCUSDT", "USDC", "USDT", 1.0, tick_size=0.0001, step_size=0.01,
                  min_qty=1.0, min_notional=5.0)
    gw.klines["BTCUSDC"] = flat_klines()
    gw.set_balance("USDC", 1000.0)
    return gw


@pytest.fixture
def signals():
    return FakeSignals()


@pytest.fixture
def store():
    return PayloadStore(None)


@pytest.fixture
def ledger():
    async_ledger = AsyncFillLedger(FillLedger())
    yield async_ledger
    async_ledger.ledger.close()


@pytest.fixture
def rates(gateway):
    # ttl 0: every lookup sees the current fake prices
    return RateResolver(gateway, DEFAULT_MIDS, ttl_sec=0.0)
