"""
Domain records owned by the engines.

Every record round-trips through plain dicts (to_dict/from_dict) so the
payload file stays human-readable JSON.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from autotrader.gateway.types import BUY, MARKET, SELL, FILL_STATUSES, OrderReport, to_float

GRID_RUNNING = "running"
GRID_STOPPED = "stopped"
GRID_ERROR = "error"


def position_key(symbol: str, horizon: str) -> str:
    return f"{symbol.upper()}:{horizon}"


@dataclass
class Position:
    symbol: str
    horizon: str
    side: str
    entry_price: float
    size: float
    stop_loss: Optional[float]
    take_profit: List[float]
    base_asset: str
    quote_asset: str
    home_asset: str
    notional_home: float
    opened_at: int
    venue: str = "spot"
    oco_order_id: Optional[str] = None
    leverage: Optional[float] = None

    @property
    def key(self) -> str:
        return position_key(self.symbol, self.horizon)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        return cls(
            symbol=str(data["symbol"]).upper(),
            horizon=str(data.get("horizon") or "short"),
            side=str(data.get("side") or BUY).upper(),
            entry_price=float(data.get("entry_price") or 0.0),
            size=float(data.get("size") or 0.0),
            stop_loss=to_float(data.get("stop_loss")),
            take_profit=[float(v) for v in data.get("take_profit") or []],
            base_asset=str(data.get("base_asset") or "").upper(),
            quote_asset=str(data.get("quote_asset") or "").upper(),
            home_asset=str(data.get("home_asset") or "").upper(),
            notional_home=float(data.get("notional_home") or 0.0),
            opened_at=int(data.get("opened_at") or 0),
            venue=str(data.get("venue") or "spot"),
            oco_order_id=data.get("oco_order_id"),
            leverage=to_float(data.get("leverage")),
        )


@dataclass
class GridOrder:
    order_id: str
    side: str
    price: float
    quantity: float
    placed_at: int
    last_seen_at: int
    fill_checks: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GridOrder":
        return cls(
            order_id=str(data["order_id"]),
            side=str(data["side"]).upper(),
            price=float(data["price"]),
            quantity=float(data["quantity"]),
            placed_at=int(data.get("placed_at") or 0),
            last_seen_at=int(data.get("last_seen_at") or 0),
            fill_checks=int(data.get("fill_checks") or 0),
        )


@dataclass
class GridPerformance:
    """Virtual inventory ledger for one grid, in home-asset terms."""
    base_virtual: float = 0.0
    quote_virtual: float = 0.0
    fees_home: float = 0.0
    fills_buy: int = 0
    fills_sell: int = 0
    breakouts: int = 0
    start_value_home: float = 0.0
    last_value_home: float = 0.0
    pnl_home: float = 0.0
    pnl_pct: float = 0.0
    started_at: int = 0
    updated_at: int = 0

    @classmethod
    def initial(cls, allocation_home: float, now_ms: int) -> "GridPerformance":
        return cls(
            quote_virtual=allocation_home,
            start_value_home=allocation_home,
            last_value_home=allocation_home,
            started_at=now_ms,
            updated_at=now_ms,
        )

    def apply_fill(
        self,
        order: OrderReport,
        fee_maker: float,
        fee_taker: float,
        fallback_price: float = 0.0,
    ) -> float:
        """
        Fold an observed (possibly partial) fill into the virtual ledger.

        Returns:
            The fill notional, or 0.0 when nothing executed.
        """
        qty = order.executed_qty
        if qty <= 0:
            return 0.0
        price = order.price if order.price > 0 else fallback_price
        notional = order.cumulative_quote_qty if order.cumulative_quote_qty > 0 else qty * price
        fee_rate = fee_taker if order.type == MARKET else fee_maker
        self.fees_home += notional * fee_rate
        if order.side == BUY:
            self.base_virtual += qty
            self.quote_virtual = max(0.0, self.quote_virtual - notional)
            if order.status in FILL_STATUSES:
                self.fills_buy += 1
        elif order.side == SELL:
            self.base_virtual = max(0.0, self.base_virtual - qty)
            self.quote_virtual += notional
            if order.status in FILL_STATUSES:
                self.fills_sell += 1
        return notional

    def revalue(self, price: float, now_ms: int) -> None:
        if price <= 0:
            return
        net = max(0.0, self.base_virtual * price + self.quote_virtual - self.fees_home)
        self.last_value_home = net
        self.pnl_home = net - self.start_value_home
        self.pnl_pct = (self.pnl_home / self.start_value_home * 100) if self.start_value_home > 0 else 0.0
        self.updated_at = now_ms

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GridPerformance":
        known = cls.__dataclass_fields__
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class GridState:
    symbol: str
    status: str
    base_asset: str
    quote_asset: str
    home_asset: str
    lower_price: float
    upper_price: float
    levels: int
    prices: List[float]
    order_notional_home: float
    allocation_home: float
    performance: GridPerformance
    orders_by_level: Dict[int, GridOrder] = field(default_factory=dict)
    pending_fill_checks: List[GridOrder] = field(default_factory=list)
    tick_size: Optional[float] = None
    step_size: Optional[float] = None
    min_qty: Optional[float] = None
    min_notional: Optional[float] = None
    bootstrapped: bool = False
    created_at: int = 0
    updated_at: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["orders_by_level"] = {str(k): v.to_dict() for k, v in self.orders_by_level.items()}
        data["pending_fill_checks"] = [o.to_dict() for o in self.pending_fill_checks]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GridState":
        orders = {
            int(k): GridOrder.from_dict(v) for k, v in (data.get("orders_by_level") or {}).items()
        }
        return cls(
            symbol=str(data["symbol"]).upper(),
            status=str(data.get("status") or GRID_STOPPED),
            base_asset=str(data.get("base_asset") or "").upper(),
            quote_asset=str(data.get("quote_asset") or "").upper(),
            home_asset=str(data.get("home_asset") or "").upper(),
            lower_price=float(data.get("lower_price") or 0.0),
            upper_price=float(data.get("upper_price") or 0.0),
            levels=int(data.get("levels") or 0),
            prices=[float(p) for p in data.get("prices") or []],
            order_notional_home=float(data.get("order_notional_home") or 0.0),
            allocation_home=float(data.get("allocation_home") or 0.0),
            performance=GridPerformance.from_dict(data.get("performance") or {}),
            orders_by_level=orders,
            pending_fill_checks=[GridOrder.from_dict(o) for o in data.get("pending_fill_checks") or []],
            tick_size=to_float(data.get("tick_size")),
            step_size=to_float(data.get("step_size")),
            min_qty=to_float(data.get("min_qty")),
            min_notional=to_float(data.get("min_notional")),
            bootstrapped=bool(data.get("bootstrapped")),
            created_at=int(data.get("created_at") or 0),
            updated_at=int(data.get("updated_at") or 0),
            last_error=data.get("last_error"),
        )
