"""
PnL reconciliation over an arbitrary time window.

Fills are replayed in timestamp order into per-symbol FIFO lot books:
BUY pushes a lot, SELL consumes the oldest lots and credits
(sell price - lot price) x qty to realized PnL. Two snapshots are taken,
one just before the first fill after the window start and one at the end
of the replay. Each snapshot marks the remaining lots to the price at that
moment, and the window figures are the differences between the two.

Three variants share that shape:

    grid        grid_fills table (quote == home, no FX)
    portfolio   OPEN / CLOSE trade events of tracked positions
    fills       trade_fills table, with per-symbol attribution

Missing prices or FX rates never fail the computation; the affected
symbol is left out and a note says so. The reconciler cross-checks the
components against equity snapshots and surfaces the residual.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, TYPE_CHECKING

from autotrader.core.clock import now_ms
from autotrader.core.json_utils import dumps
from autotrader.gateway.types import BUY, SELL, GatewayError
from autotrader.state.fill_ledger import CLOSE, OPEN, GridFill, TradeEvent, TradeFill

if TYPE_CHECKING:
    from autotrader.gateway.protocol import ExchangeGateway
    from autotrader.market_data.fx import RateResolver
    from autotrader.state.fill_ledger import AsyncFillLedger

log = logging.getLogger("autotrader")

DEFAULT_WINDOW_MS = 24 * 3_600_000
MIN_WINDOW_MS = 60_000
MAX_WINDOW_MS = 365 * 24 * 3_600_000

_UNIT_MS = {"s": 1000, "m": 60_000, "h": 3_600_000, "d": 86_400_000, "w": 7 * 86_400_000}
_TOKEN_RE = re.compile(r"(\d+(?:\.\d+)?)([smhdw])")


def parse_window_ms(window: Optional[str], fallback_ms: int = DEFAULT_WINDOW_MS) -> Tuple[int, Optional[str]]:
    """
    Parse "24h", "1d12h", "90m" or plain seconds into milliseconds.

    Returns:
        (window_ms, note); note is set when the input was reinterpreted
        or rejected. The result is clamped to 60 s .. 365 d.
    """
    raw = (window or "").strip().lower()
    if not raw:
        return fallback_ms, None
    if raw.isdigit():
        seconds = int(raw)
        if seconds <= 0:
            return fallback_ms, f'Invalid window="{window}". Using default.'
        return _clamp(seconds * 1000), f'Interpreted window="{window}" as seconds.'
    matches = _TOKEN_RE.findall(raw)
    total = sum(float(v) * _UNIT_MS[u] for v, u in matches if float(v) > 0)
    if not matches or total <= 0:
        return fallback_ms, f'Invalid window="{window}". Using default.'
    return _clamp(int(total)), None


def _clamp(ms: int) -> int:
    return min(MAX_WINDOW_MS, max(MIN_WINDOW_MS, ms))


def _valid(n: Optional[float]) -> bool:
    return n is not None and math.isfinite(n) and n > 0


def _uniq(notes: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(notes))


# ── Lot book ─────────────────────────────────────────────────────────────

@dataclass
class Lot:
    qty: float
    price: float


@dataclass
class LotBook:
    """FIFO inventory for one symbol, in quote-asset terms."""
    lots: List[Lot] = field(default_factory=list)
    realized: float = 0.0
    fees: float = 0.0
    quote_asset: Optional[str] = None

    def buy(self, qty: float, price: float) -> None:
        self.lots.append(Lot(qty, price))

    def sell(self, qty: float, price: float) -> float:
        """Consume oldest lots first. Returns the quantity not covered by inventory."""
        remaining = qty
        while remaining > 1e-12 and self.lots:
            lot = self.lots[0]
            take = min(remaining, lot.qty)
            self.realized += (price - lot.price) * take
            lot.qty -= take
            remaining -= take
            if lot.qty <= 1e-12:
                self.lots.pop(0)
        return max(0.0, remaining)

    @property
    def holding(self) -> bool:
        return any(lot.qty > 0 for lot in self.lots)

    def unrealized(self, price: float) -> float:
        return sum((price - lot.price) * lot.qty for lot in self.lots if lot.qty > 0)


@dataclass
class PnlDeltas:
    realized: float = 0.0
    unrealized: float = 0.0
    fees: float = 0.0
    notes: List[str] = field(default_factory=list)

    @property
    def net(self) -> float:
        return self.realized + self.unrealized - self.fees


@dataclass
class SymbolAttribution:
    symbol: str
    realized: float
    unrealized: float
    fees: float

    @property
    def contribution(self) -> float:
        return self.realized + self.unrealized - self.fees


@dataclass
class FillPnlDeltas(PnlDeltas):
    by_symbol: List[SymbolAttribution] = field(default_factory=list)


_Snap = Tuple[float, float, float]


def _replay(
    fills: Sequence,
    start_at: int,
    apply: Callable[[Dict[str, LotBook], object], None],
    snapshot: Callable[[Dict[str, LotBook], bool], object],
):
    """Replay sorted fills; snapshot before the first fill after start_at and at the end."""
    books: Dict[str, LotBook] = {}
    start = None
    for fill in fills:
        if start is None and fill.at > start_at:
            start = snapshot(books, True)
        apply(books, fill)
    if start is None:
        start = snapshot(books, True)
    return start, snapshot(books, False)


# ── Grid variant ─────────────────────────────────────────────────────────

def dedupe_grid_fills(rows: Iterable[GridFill]) -> List[GridFill]:
    """Keep one row per (symbol, side, order); the larger / later observation wins."""
    by_order: Dict[str, GridFill] = {}
    passthrough: List[GridFill] = []
    for row in rows:
        if not row.order_id:
            passthrough.append(row)
            continue
        key = f"{row.symbol}:{row.side}:{row.order_id}"
        prev = by_order.get(key)
        if prev is None or row.qty > prev.qty or row.notional > prev.notional or row.at > prev.at:
            by_order[key] = row
    return sorted([*by_order.values(), *passthrough], key=lambda r: (r.at, r.symbol))


def compute_grid_pnl_deltas(
    rows: Iterable[GridFill],
    start_at: int,
    price_start: Dict[str, float],
    price_now: Dict[str, float],
) -> PnlDeltas:
    notes: List[str] = []
    parsed = [r for r in rows if r.side in (BUY, SELL) and r.qty > 0 and r.notional > 0]
    if not parsed:
        return PnlDeltas()
    short: Set[str] = set()

    def apply(books: Dict[str, LotBook], fill: GridFill) -> None:
        book = books.setdefault(fill.symbol, LotBook())
        price = fill.price if fill.price > 0 else fill.notional / fill.qty
        book.fees += fill.fee_home if fill.fee_home > 0 else 0.0
        if fill.side == BUY:
            book.buy(fill.qty, price)
        elif book.sell(fill.qty, price) > 0 and fill.symbol not in short:
            short.add(fill.symbol)
            notes.append(f"Grid sells exceed tracked inventory for {fill.symbol} (PnL may be understated).")

    def snapshot(books: Dict[str, LotBook], at_start: bool) -> _Snap:
        prices = price_start if at_start else price_now
        realized = fees = unrealized = 0.0
        for symbol, book in books.items():
            realized += book.realized
            fees += book.fees
            price = prices.get(symbol)
            if not _valid(price):
                if book.holding:
                    notes.append(f"Missing price for {symbol} (grid unrealized skipped).")
                continue
            unrealized += book.unrealized(price)
        return realized, unrealized, fees

    start, end = _replay(dedupe_grid_fills(parsed), start_at, apply, snapshot)
    return PnlDeltas(end[0] - start[0], end[1] - start[1], end[2] - start[2], _uniq(notes))


# ── Portfolio variant ────────────────────────────────────────────────────

def compute_portfolio_pnl_deltas(
    events: Iterable[TradeEvent],
    start_at: int,
    price_start: Dict[str, float],
    price_now: Dict[str, float],
    fx_start: Dict[str, float],
    fx_now: Dict[str, float],
    home_asset: str,
) -> PnlDeltas:
    """Realized from CLOSE pnl_home; unrealized marks still-open positions."""
    home = home_asset.upper()
    notes: List[str] = []
    parsed = sorted(
        (
            e for e in events
            if e.kind in (OPEN, CLOSE) and e.side in (BUY, SELL) and e.qty > 0
            and e.avg_price > 0 and e.quote_asset and e.position_key
        ),
        key=lambda e: (e.at, e.symbol),
    )
    if not parsed:
        return PnlDeltas()

    open_by_key: Dict[str, TradeEvent] = {}
    totals = {"realized": 0.0, "fees": 0.0}
    missing_open: Set[str] = set()

    def snapshot(at_start: bool) -> _Snap:
        prices = price_start if at_start else price_now
        fx = fx_start if at_start else fx_now
        unrealized = 0.0
        for pos in open_by_key.values():
            price = prices.get(pos.symbol)
            if not _valid(price):
                notes.append(f"Missing price for {pos.symbol} (portfolio unrealized skipped).")
                continue
            quote = pos.quote_asset.upper()
            rate = 1.0 if quote == home else fx.get(quote)
            if not _valid(rate):
                notes.append(f"Missing FX rate {quote}->{home} (portfolio unrealized skipped).")
                continue
            diff = pos.avg_price - price if pos.side == SELL else price - pos.avg_price
            unrealized += diff * pos.qty * rate
        return totals["realized"], unrealized, totals["fees"]

    start: Optional[_Snap] = None
    for ev in parsed:
        if start is None and ev.at > start_at:
            start = snapshot(True)
        if ev.fees_home and ev.fees_home > 0:
            totals["fees"] += ev.fees_home
        if ev.kind == OPEN:
            open_by_key[ev.position_key] = ev
            continue
        if ev.pnl_home is not None:
            totals["realized"] += ev.pnl_home
        if ev.position_key not in open_by_key and ev.position_key not in missing_open:
            missing_open.add(ev.position_key)
            notes.append(f"Missing OPEN for position {ev.position_key} (portfolio PnL may be incomplete).")
        open_by_key.pop(ev.position_key, None)
    if start is None:
        start = snapshot(True)
    end = snapshot(False)
    return PnlDeltas(end[0] - start[0], end[1] - start[1], end[2] - start[2], _uniq(notes))


# ── Fill variant ─────────────────────────────────────────────────────────

def dedupe_fill_rows(rows: Iterable[TradeFill]) -> List[TradeFill]:
    """
    Trade-id rows: latest observation wins. Order-keyed rows: monotonic
    max on qty / notional / at. Rows with neither pass through.
    """
    by_trade: Dict[str, TradeFill] = {}
    by_order: Dict[str, TradeFill] = {}
    passthrough: List[TradeFill] = []
    for row in rows:
        if row.trade_id:
            key = f"{row.symbol}:{row.trade_id}"
            prev = by_trade.get(key)
            if prev is None or row.at > prev.at:
                by_trade[key] = row
        elif row.order_id:
            key = f"{row.symbol}:{row.side}:{row.order_id}"
            prev = by_order.get(key)
            if prev is None or row.qty > prev.qty or row.notional > prev.notional or row.at > prev.at:
                by_order[key] = row
        else:
            passthrough.append(row)
    return sorted([*by_trade.values(), *by_order.values(), *passthrough], key=lambda r: (r.at, r.symbol))


def compute_fill_pnl_deltas(
    rows: Iterable[TradeFill],
    start_at: int,
    price_start: Dict[str, float],
    price_now: Dict[str, float],
    fx_start: Dict[str, float],
    fx_now: Dict[str, float],
    home_asset: str,
) -> FillPnlDeltas:
    """FIFO replay of exchange fills with per-symbol attribution, in home terms."""
    home = home_asset.upper()
    notes: List[str] = []
    parsed: List[TradeFill] = []
    for row in rows:
        if row.side not in (BUY, SELL) or row.qty <= 0:
            continue
        price = row.price if row.price > 0 else (row.notional / row.qty if row.notional > 0 else 0.0)
        if price <= 0:
            continue
        if price != row.price or row.notional <= 0:
            row = replace(row, price=price, notional=row.notional if row.notional > 0 else row.qty * price)
        parsed.append(row)
    if not parsed:
        return FillPnlDeltas()
    short: Set[str] = set()

    def apply(books: Dict[str, LotBook], fill: TradeFill) -> None:
        book = books.setdefault(fill.symbol, LotBook())
        if fill.quote_asset and not book.quote_asset:
            book.quote_asset = fill.quote_asset.upper()
        if fill.fees_home is not None and fill.fees_home > 0:
            book.fees += fill.fees_home
        if fill.side == BUY:
            book.buy(fill.qty, fill.price)
        elif book.sell(fill.qty, fill.price) > 0 and fill.symbol not in short:
            short.add(fill.symbol)
            notes.append(f"Sells exceed tracked inventory for {fill.symbol} (fill PnL may be understated).")

    def snapshot(books: Dict[str, LotBook], at_start: bool) -> Dict[str, _Snap]:
        prices = price_start if at_start else price_now
        fx = fx_start if at_start else fx_now
        out: Dict[str, _Snap] = {}
        for symbol, book in books.items():
            quote = book.quote_asset
            rate = None if quote is None else 1.0 if quote == home else fx.get(quote)
            active = book.realized != 0 or book.holding
            if not _valid(rate):
                if active and quote:
                    notes.append(f"Missing FX rate {quote}->{home} for {symbol} (fill PnL skipped).")
                elif active:
                    notes.append(f"Missing quoteAsset for {symbol} (fill PnL skipped).")
                continue
            price = prices.get(symbol)
            if not _valid(price):
                if book.holding:
                    notes.append(f"Missing price for {symbol} (fill unrealized skipped).")
                out[symbol] = (book.realized * rate, 0.0, book.fees)
                continue
            out[symbol] = (book.realized * rate, book.unrealized(price) * rate, book.fees)
        return out

    start, end = _replay(dedupe_fill_rows(parsed), start_at, apply, snapshot)
    result = FillPnlDeltas(notes=[])
    zero = (0.0, 0.0, 0.0)
    for symbol in {*start, *end}:
        s, e = start.get(symbol, zero), end.get(symbol, zero)
        attr = SymbolAttribution(symbol, e[0] - s[0], e[1] - s[1], e[2] - s[2])
        result.realized += attr.realized
        result.unrealized += attr.unrealized
        result.fees += attr.fees
        result.by_symbol.append(attr)
    result.by_symbol.sort(key=lambda a: (-abs(a.contribution), a.symbol))
    result.notes = _uniq(notes)
    return result


# ── Narrative ────────────────────────────────────────────────────────────

def explain(realized: float, unrealized: float, fees: float, residual: Optional[float], home: str) -> List[str]:
    """Short human-readable reasons derived from the sign of each component."""
    why: List[str] = []
    net = realized + unrealized - fees
    if abs(realized) < 1e-9 and abs(unrealized) < 1e-9 and fees < 1e-9:
        why.append("No trading activity moved PnL in this window.")
    else:
        if realized > 0:
            why.append(f"Closed trades locked in {realized:.2f} {home}.")
        elif realized < 0:
            why.append(f"Closed trades realized a loss of {abs(realized):.2f} {home}.")
        if unrealized > 0:
            why.append(f"Open inventory gained {unrealized:.2f} {home} mark-to-market.")
        elif unrealized < 0:
            why.append(f"Open inventory lost {abs(unrealized):.2f} {home} mark-to-market.")
        if fees > 0:
            why.append(f"Fees dragged {fees:.2f} {home}.")
            if net < 0 < realized + unrealized:
                why.append("Fees turned a gross gain into a net loss.")
        drivers = {"realized": abs(realized), "unrealized": abs(unrealized), "fees": fees}
        main = max(drivers, key=lambda k: drivers[k])
        why.append(f"Main driver: {main}.")
    if residual is not None and abs(residual) > max(1.0, abs(net) * 0.25):
        why.append(
            f"Equity moved {residual:+.2f} {home} beyond tracked PnL "
            "(transfers, untracked fills or price gaps)."
        )
    return why


# ── Reconciler ───────────────────────────────────────────────────────────

@dataclass
class PnlReport:
    window_ms: int
    start_at: int
    end_at: int
    home_asset: str
    realized: float
    unrealized: float
    fees: float
    equity_start: Optional[float] = None
    equity_now: Optional[float] = None
    equity_change: Optional[float] = None
    residual: Optional[float] = None
    source: str = "fills"
    grid: PnlDeltas = field(default_factory=PnlDeltas)
    portfolio: PnlDeltas = field(default_factory=PnlDeltas)
    fills: FillPnlDeltas = field(default_factory=FillPnlDeltas)
    by_symbol: List[SymbolAttribution] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    why: List[str] = field(default_factory=list)

    @property
    def net(self) -> float:
        return self.realized + self.unrealized - self.fees


class PnlReconciler:
    """
    Usage:
        reconciler = PnlReconciler(gateway, ledger, rates, home_asset="USDC")
        report = await reconciler.reconcile("6h")
    """

    def __init__(
        self,
        gateway: "ExchangeGateway",
        ledger: "AsyncFillLedger",
        rates: "RateResolver",
        home_asset: str = "USDC",
        price_interval: str = "1m",
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.gateway = gateway
        self.ledger = ledger
        self.rates = rates
        self.home_asset = home_asset.upper()
        self.price_interval = price_interval
        self._clock = clock or now_ms

    async def _price_at(self, symbol: str, at_ms: int) -> Optional[float]:
        try:
            klines = await self.gateway.get_klines(symbol, self.price_interval, 1, start_ms=at_ms)
        except GatewayError as exc:
            log.warning(dumps({"event": "pnl_price_lookup_failed", "symbol": symbol, "error": str(exc)}))
            return None
        return klines[0].close if klines and klines[0].close > 0 else None

    async def _rate_at(self, asset: str, at_ms: int, known: Optional[Set[str]]) -> Optional[float]:
        home = self.home_asset
        if asset == home:
            return 1.0
        if known is None or f"{asset}{home}" in known:
            price = await self._price_at(f"{asset}{home}", at_ms)
            if price:
                return price
        if known is None or f"{home}{asset}" in known:
            price = await self._price_at(f"{home}{asset}", at_ms)
            if price:
                return 1 / price
        return None

    async def _prices(self, symbols: Set[str], start_at: int) -> Tuple[Dict[str, float], Dict[str, float]]:
        start: Dict[str, float] = {}
        now: Dict[str, float] = {}
        for symbol in sorted(symbols):
            p0 = await self._price_at(symbol, start_at)
            if p0:
                start[symbol] = p0
            p1 = await self.rates.price(symbol)
            if p1:
                now[symbol] = p1
        return start, now

    async def _fx(self, quotes: Set[str], start_at: int) -> Tuple[Dict[str, float], Dict[str, float]]:
        known = await self.rates.known_symbols()
        start: Dict[str, float] = {}
        now: Dict[str, float] = {}
        for quote in sorted(quotes):
            r0 = await self._rate_at(quote, start_at, known)
            r1 = await self.rates.rate(quote, self.home_asset)
            if r1 and not r0:
                # Fall back to the multi-hop current rate when no direct history exists.
                r0 = r1
            if r0:
                start[quote] = r0
            if r1:
                now[quote] = r1
        return start, now

    async def reconcile(self, window: Optional[str] = None) -> PnlReport:
        window_ms, window_note = parse_window_ms(window)
        end_at = self._clock()
        start_at = end_at - window_ms
        home = self.home_asset

        grid_rows = await self.ledger.list_grid_fills(until_ms=end_at)
        events = await self.ledger.list_trade_events(until_ms=end_at)
        fills = await self.ledger.list_trade_fills(until_ms=end_at)

        symbols = {r.symbol for r in grid_rows} | {e.symbol for e in events} | {f.symbol for f in fills}
        quotes = {e.quote_asset.upper() for e in events if e.quote_asset}
        quotes |= {f.quote_asset.upper() for f in fills if f.quote_asset}
        price_start, price_now = await self._prices(symbols, start_at)
        fx_start, fx_now = await self._fx(quotes, start_at)

        grid = compute_grid_pnl_deltas(grid_rows, start_at, price_start, price_now)
        portfolio = compute_portfolio_pnl_deltas(events, start_at, price_start, price_now, fx_start, fx_now, home)
        fill = compute_fill_pnl_deltas(fills, start_at, price_start, price_now, fx_start, fx_now, home)

        # Exchange fills cover both modules; the engine-side ledgers are the fallback.
        if fills:
            source, realized, unrealized, fees = "fills", fill.realized, fill.unrealized, fill.fees
        else:
            source = "engines"
            realized = grid.realized + portfolio.realized
            unrealized = grid.unrealized + portfolio.unrealized
            fees = grid.fees + portfolio.fees

        eq_start = await self.ledger.equity_at_or_before(home, start_at)
        eq_now = await self.ledger.latest_equity(home)
        equity_change = residual = None
        if eq_start is not None and eq_now is not None:
            equity_change = eq_now.equity_home - eq_start.equity_home
            residual = equity_change - (realized + unrealized - fees)

        notes = [n for n in [window_note] if n]
        notes += grid.notes + portfolio.notes + fill.notes
        if equity_change is None:
            notes.append("No equity snapshots bracket the window (residual unavailable).")

        report = PnlReport(
            window_ms=window_ms,
            start_at=start_at,
            end_at=end_at,
            home_asset=home,
            realized=realized,
            unrealized=unrealized,
            fees=fees,
            equity_start=eq_start.equity_home if eq_start else None,
            equity_now=eq_now.equity_home if eq_now else None,
            equity_change=equity_change,
            residual=residual,
            source=source,
            grid=grid,
            portfolio=portfolio,
            fills=fill,
            by_symbol=fill.by_symbol,
            notes=_uniq(notes),
            why=explain(realized, unrealized, fees, residual, home),
        )
        log.info(dumps({
            "event": "pnl_reconciled",
            "window_ms": window_ms,
            "source": source,
            "realized": realized,
            "unrealized": unrealized,
            "fees": fees,
            "residual": residual,
            "notes": len(report.notes),
        }))
        return report
