"""
Tagged result types for every exchange call.

Exchange adapters return loosely-typed JSON. Each type's `from_raw`
coerces and validates one record at the boundary (raising ValueError when
a required field is missing or malformed), so engines never re-check shape.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

BUY = "BUY"
SELL = "SELL"
SIDES = (BUY, SELL)

MARKET = "MARKET"
LIMIT = "LIMIT"

FILLED = "FILLED"
PARTIALLY_FILLED = "PARTIALLY_FILLED"
FILL_STATUSES = (FILLED, PARTIALLY_FILLED)


class GatewayError(Exception):
    """Transport or remote failure raised by an exchange adapter."""

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


def to_float(value: Any) -> Optional[float]:
    """Finite float or None (accepts numeric strings)."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    if n != n or n in (float("inf"), float("-inf")):
        return None
    return n


def to_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    if not s or s in ("undefined", "None", "null"):
        return None
    return s


def _pick(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _side(value: Any) -> Optional[str]:
    s = str(value or "").upper()
    return s if s in SIDES else None


@dataclass(frozen=True)
class SymbolInfo:
    symbol: str
    base_asset: str
    quote_asset: str
    status: str = "TRADING"
    spot_allowed: bool = True
    tick_size: Optional[float] = None
    step_size: Optional[float] = None
    min_qty: Optional[float] = None
    min_notional: Optional[float] = None

    @property
    def tradable(self) -> bool:
        return self.status == "TRADING"

    @property
    def spot_tradable(self) -> bool:
        return self.tradable and self.spot_allowed

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "SymbolInfo":
        symbol = str(raw.get("symbol") or "").upper()
        base = str(raw.get("baseAsset") or "").upper()
        quote = str(raw.get("quoteAsset") or "").upper()
        if not symbol or not base or not quote:
            raise ValueError(f"symbol record missing symbol/baseAsset/quoteAsset: {raw!r}")
        filters: Dict[str, Mapping[str, Any]] = {
            str(f.get("filterType")): f for f in raw.get("filters") or [] if isinstance(f, Mapping)
        }
        price_f = filters.get("PRICE_FILTER", {})
        lot_f = filters.get("LOT_SIZE", {})
        notional_f = filters.get("NOTIONAL") or filters.get("MIN_NOTIONAL") or {}
        permissions = raw.get("permissions") or []
        spot_allowed = bool(raw.get("isSpotTradingAllowed")) or "SPOT" in permissions
        return cls(
            symbol=symbol,
            base_asset=base,
            quote_asset=quote,
            status=str(raw.get("status") or "TRADING").upper(),
            spot_allowed=spot_allowed,
            tick_size=to_float(_pick(raw, "tickSize")) or to_float(price_f.get("tickSize")),
            step_size=to_float(_pick(raw, "stepSize")) or to_float(lot_f.get("stepSize")),
            min_qty=to_float(_pick(raw, "minQty")) or to_float(lot_f.get("minQty")),
            min_notional=to_float(_pick(raw, "minNotional")) or to_float(notional_f.get("minNotional")),
        )


@dataclass(frozen=True)
class Balance:
    asset: str
    free: float
    locked: float = 0.0

    @property
    def total(self) -> float:
        return self.free + self.locked

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "Balance":
        asset = str(raw.get("asset") or "").upper()
        if not asset:
            raise ValueError(f"balance record missing asset: {raw!r}")
        return cls(asset=asset, free=to_float(raw.get("free")) or 0.0, locked=to_float(raw.get("locked")) or 0.0)


@dataclass(frozen=True)
class Ticker:
    symbol: str
    price: float
    price_change_pct: float = 0.0
    high_price: float = 0.0
    low_price: float = 0.0
    volume: float = 0.0
    quote_volume: float = 0.0

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "Ticker":
        symbol = str(raw.get("symbol") or "").upper()
        price = to_float(_pick(raw, "lastPrice", "price"))
        if not symbol or price is None:
            raise ValueError(f"ticker record missing symbol/price: {raw!r}")
        return cls(
            symbol=symbol,
            price=price,
            price_change_pct=to_float(raw.get("priceChangePercent")) or 0.0,
            high_price=to_float(raw.get("highPrice")) or 0.0,
            low_price=to_float(raw.get("lowPrice")) or 0.0,
            volume=to_float(raw.get("volume")) or 0.0,
            quote_volume=to_float(raw.get("quoteVolume")) or 0.0,
        )


@dataclass(frozen=True)
class Kline:
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    close_time: int = 0

    @classmethod
    def from_raw(cls, raw: Any) -> "Kline":
        """Accepts the exchange's positional array form or a mapping."""
        if isinstance(raw, Mapping):
            values = [raw.get(k) for k in ("openTime", "open", "high", "low", "close", "volume", "closeTime")]
        else:
            values = list(raw)[:7]
        if len(values) < 5:
            raise ValueError(f"kline record too short: {raw!r}")
        nums = [to_float(v) for v in values[:5]]
        if any(n is None for n in nums):
            raise ValueError(f"kline record has non-numeric OHLC: {raw!r}")
        volume = to_float(values[5]) if len(values) > 5 else None
        close_time = to_float(values[6]) if len(values) > 6 else None
        return cls(
            open_time=int(nums[0]),
            open=nums[1],
            high=nums[2],
            low=nums[3],
            close=nums[4],
            volume=volume or 0.0,
            close_time=int(close_time or 0),
        )


@dataclass(frozen=True)
class OrderRequest:
    symbol: str
    side: str
    type: str
    quantity: float
    price: Optional[float] = None
    reduce_only: bool = False


@dataclass(frozen=True)
class OrderReport:
    """Order acknowledgement, order detail and open-order rows share this shape."""
    symbol: str
    order_id: str
    side: Optional[str]
    type: str = ""
    status: str = ""
    price: float = 0.0
    orig_qty: float = 0.0
    executed_qty: float = 0.0
    cumulative_quote_qty: float = 0.0
    update_time: Optional[int] = None

    @property
    def is_filled(self) -> bool:
        return self.status in FILL_STATUSES

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any], symbol: Optional[str] = None) -> "OrderReport":
        sym = str(raw.get("symbol") or symbol or "").upper()
        order_id = to_id(raw.get("orderId"))
        if not sym or order_id is None:
            raise ValueError(f"order record missing symbol/orderId: {raw!r}")
        update_time = to_float(_pick(raw, "updateTime", "transactTime", "time"))
        return cls(
            symbol=sym,
            order_id=order_id,
            side=_side(raw.get("side")),
            type=str(raw.get("type") or "").upper(),
            status=str(raw.get("status") or "").upper(),
            price=to_float(raw.get("price")) or 0.0,
            orig_qty=to_float(_pick(raw, "origQty", "quantity")) or 0.0,
            executed_qty=to_float(_pick(raw, "executedQty", "executedQuantity")) or 0.0,
            cumulative_quote_qty=to_float(
                _pick(raw, "cummulativeQuoteQty", "cumulativeQuoteQty", "cumQuote", "cumQuoteQty")
            ) or 0.0,
            update_time=int(update_time) if update_time is not None else None,
        )


@dataclass(frozen=True)
class OcoReport:
    order_list_id: str
    symbol: str
    status: str = ""

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any], symbol: Optional[str] = None) -> "OcoReport":
        list_id = to_id(raw.get("orderListId"))
        if list_id is None:
            raise ValueError(f"oco record missing orderListId: {raw!r}")
        return cls(
            order_list_id=list_id,
            symbol=str(raw.get("symbol") or symbol or "").upper(),
            status=str(raw.get("listOrderStatus") or raw.get("listStatusType") or "").upper(),
        )


@dataclass(frozen=True)
class TradeRecord:
    """One execution of an order (own-trade history)."""
    symbol: str
    order_id: str
    trade_id: Optional[str]
    time_ms: Optional[int]
    qty: float
    price: float
    quote_qty: Optional[float] = None
    commission: Optional[float] = None
    commission_asset: Optional[str] = None
    is_buyer: Optional[bool] = None

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any], symbol: Optional[str] = None) -> "TradeRecord":
        order_id = to_id(raw.get("orderId"))
        qty = to_float(_pick(raw, "qty", "quantity"))
        price = to_float(raw.get("price"))
        if order_id is None or qty is None or price is None:
            raise ValueError(f"trade record missing orderId/qty/price: {raw!r}")
        at = to_float(raw.get("time"))
        is_buyer = raw.get("isBuyer")
        asset = raw.get("commissionAsset")
        return cls(
            symbol=str(raw.get("symbol") or symbol or "").upper(),
            order_id=order_id,
            trade_id=to_id(raw.get("id")),
            time_ms=int(at) if at is not None else None,
            qty=qty,
            price=price,
            quote_qty=to_float(raw.get("quoteQty")),
            commission=to_float(raw.get("commission")),
            commission_asset=str(asset).upper() if isinstance(asset, str) and asset else None,
            is_buyer=is_buyer if isinstance(is_buyer, bool) else None,
        )


@dataclass(frozen=True)
class FuturesPosition:
    symbol: str
    size: float
    entry_price: float = 0.0

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "FuturesPosition":
        symbol = str(raw.get("symbol") or "").upper()
        size = to_float(_pick(raw, "positionAmt", "size"))
        if not symbol or size is None:
            raise ValueError(f"futures position missing symbol/positionAmt: {raw!r}")
        return cls(symbol=symbol, size=size, entry_price=to_float(raw.get("entryPrice")) or 0.0)


@dataclass(frozen=True)
class FuturesEquity:
    asset: str
    equity: float


# ── Advisory signals ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class EntryPlan:
    side: str
    price_target: float
    size: float
    confidence: float


@dataclass(frozen=True)
class ExitPlan:
    stop_loss: Optional[float]
    take_profit: List[float] = field(default_factory=list)


@dataclass(frozen=True)
class StrategyPlan:
    horizon: str
    entries: List[EntryPlan]
    exit_plan: ExitPlan
    risk_reward_ratio: float = 0.0

    @property
    def entry(self) -> Optional[EntryPlan]:
        return self.entries[0] if self.entries else None


@dataclass(frozen=True)
class StrategySnapshot:
    """Latest advisory output for one symbol."""
    symbol: str
    price: float
    plans: Dict[str, StrategyPlan]
    trade_halted: bool = False
    risk_flags: List[str] = field(default_factory=list)


def free_by_asset(balances: List[Balance]) -> Dict[str, float]:
    return {b.asset: b.free for b in balances}


def symbol_map(symbols: List[SymbolInfo]) -> Dict[str, SymbolInfo]:
    return {s.symbol: s for s in symbols}
