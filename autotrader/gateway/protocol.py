"""
Collaborator contracts consumed by the engines.

ExchangeGateway is the black-box RPC surface of the exchange account.
Every call may fail transiently by raising GatewayError; call sites log
and continue rather than retrying inside the same tick.

SignalProvider is the upstream advisory layer (strategy plans, news
sentiment, ranked candidates). The engines only read from it.
"""

from __future__ import annotations

from typing import List, Optional, Protocol, runtime_checkable

from autotrader.gateway.types import (
    Balance,
    FuturesEquity,
    FuturesPosition,
    Kline,
    OcoReport,
    OrderReport,
    OrderRequest,
    StrategySnapshot,
    SymbolInfo,
    Ticker,
    TradeRecord,
)


@runtime_checkable
class ExchangeGateway(Protocol):
    async def get_symbols(self) -> List[SymbolInfo]: ...

    async def get_balances(self) -> List[Balance]: ...

    async def get_ticker(self, symbol: str) -> Ticker: ...

    async def get_latest_price(self, symbol: str) -> float: ...

    async def get_klines(
        self, symbol: str, interval: str, limit: int, start_ms: Optional[int] = None
    ) -> List[Kline]: ...

    async def place_order(self, request: OrderRequest) -> OrderReport: ...

    async def cancel_order(self, symbol: str, order_id: str) -> None: ...

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[OrderReport]: ...

    async def get_order(self, symbol: str, order_id: str) -> OrderReport: ...

    async def get_my_trades(
        self, symbol: str, order_id: Optional[str] = None, limit: Optional[int] = None
    ) -> List[TradeRecord]: ...

    async def place_oco(
        self, symbol: str, side: str, quantity: float, take_profit: float, stop_loss: float
    ) -> OcoReport: ...

    async def get_oco(self, symbol: str, order_list_id: str) -> Optional[OcoReport]: ...

    async def cancel_oco(self, symbol: str, order_list_id: str) -> None: ...

    async def get_futures_positions(self) -> List[FuturesPosition]: ...

    async def get_futures_equity(self) -> Optional[FuturesEquity]: ...


@runtime_checkable
class SignalProvider(Protocol):
    async def get_snapshot(self, symbol: str, refresh: bool = False) -> Optional[StrategySnapshot]: ...

    async def news_sentiment(self) -> Optional[float]: ...

    def ranked_candidates(self) -> List[str]: ...
