"""
Durable fill ledger (sqlite).

Append-only tables for everything the PnL engine replays:

    trade_fills       per-trade exchange fills (both modules)
    grid_fills        grid order fills, one row per (symbol, side, order)
    trades            position OPEN/CLOSE events
    equity_snapshots  home-asset equity time series
    decisions         every auto-trade / grid / sweep decision

Idempotency lives in the schema: each fill row carries a dedup_key with a
UNIQUE constraint. Re-ingesting the same fill upserts with monotonic MAX()
on qty / notional / at, so observing an order twice never double-counts.

FillLedger is synchronous. AsyncFillLedger serializes calls behind an
asyncio.Lock and runs them in the default executor so the control loop
never blocks on disk.
"""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from autotrader.core.json_utils import dumps, loads

GRID = "grid"
PORTFOLIO = "portfolio"

OPEN = "OPEN"
CLOSE = "CLOSE"


@dataclass(frozen=True)
class TradeFill:
    at: int
    symbol: str
    module: str
    side: str
    qty: float
    price: float
    notional: float
    fee_asset: Optional[str] = None
    fee_amount: Optional[float] = None
    fees_home: Optional[float] = None
    quote_asset: Optional[str] = None
    order_id: Optional[str] = None
    trade_id: Optional[str] = None

    @property
    def dedup_key(self) -> str:
        if self.trade_id:
            return f"t:{self.symbol}:{self.trade_id}"
        return f"o:{self.symbol}:{self.module}:{self.side}:{self.order_id}"


@dataclass(frozen=True)
class GridFill:
    at: int
    symbol: str
    side: str
    qty: float
    price: float
    notional: float
    order_id: str
    fee_home: float = 0.0

    @property
    def dedup_key(self) -> str:
        return f"{self.symbol}:{self.side}:{self.order_id}"


@dataclass(frozen=True)
class TradeEvent:
    at: int
    kind: str
    symbol: str
    position_key: str
    side: str
    qty: float
    avg_price: float
    quote_asset: str
    home_asset: str
    notional_home: float = 0.0
    fees_home: float = 0.0
    pnl_home: Optional[float] = None


@dataclass(frozen=True)
class EquitySnapshot:
    at: int
    home_asset: str
    equity_home: float


@dataclass(frozen=True)
class DecisionRecord:
    at: int
    module: str
    symbol: Optional[str]
    action: str
    reason: str
    details: Optional[Dict[str, Any]] = None


_SCHEMA = """
CREATE TABLE IF NOT EXISTS trade_fills (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    dedup_key TEXT NOT NULL UNIQUE,
    at INTEGER NOT NULL,
    symbol TEXT NOT NULL,
    module TEXT NOT NULL,
    side TEXT NOT NULL,
    qty REAL NOT NULL,
    price REAL NOT NULL,
    notional REAL NOT NULL,
    fee_asset TEXT,
    fee_amount REAL,
    fees_home REAL,
    quote_asset TEXT,
    order_id TEXT,
    trade_id TEXT
);
CREATE INDEX IF NOT EXISTS idx_trade_fills_at ON trade_fills(at);
CREATE INDEX IF NOT EXISTS idx_trade_fills_symbol ON trade_fills(symbol, at);

CREATE TABLE IF NOT EXISTS grid_fills (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    dedup_key TEXT NOT NULL UNIQUE,
    at INTEGER NOT NULL,
    symbol TEXT NOT NULL,
    side TEXT NOT NULL,
    qty REAL NOT NULL,
    price REAL NOT NULL,
    notional REAL NOT NULL,
    order_id TEXT NOT NULL,
    fee_home REAL NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_grid_fills_symbol ON grid_fills(symbol, at);

CREATE TABLE IF NOT EXISTS trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    at INTEGER NOT NULL,
    kind TEXT NOT NULL,
    symbol TEXT NOT NULL,
    position_key TEXT NOT NULL,
    side TEXT NOT NULL,
    qty REAL NOT NULL,
    avg_price REAL NOT NULL,
    quote_asset TEXT NOT NULL,
    home_asset TEXT NOT NULL,
    notional_home REAL NOT NULL DEFAULT 0,
    fees_home REAL NOT NULL DEFAULT 0,
    pnl_home REAL
);
CREATE INDEX IF NOT EXISTS idx_trades_at ON trades(at);

CREATE TABLE IF NOT EXISTS equity_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    at INTEGER NOT NULL,
    home_asset TEXT NOT NULL,
    equity_home REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_equity_at ON equity_snapshots(home_asset, at);

CREATE TABLE IF NOT EXISTS decisions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    at INTEGER NOT NULL,
    module TEXT NOT NULL,
    symbol TEXT,
    action TEXT NOT NULL,
    reason TEXT NOT NULL,
    details TEXT
);
"""

_UPSERT_TRADE_FILL = """
INSERT INTO trade_fills (
    dedup_key, at, symbol, module, side, qty, price, notional,
    fee_asset, fee_amount, fees_home, quote_asset, order_id, trade_id
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(dedup_key) DO UPDATE SET
    at = MAX(trade_fills.at, excluded.at),
    qty = MAX(trade_fills.qty, excluded.qty),
    notional = MAX(trade_fills.notional, excluded.notional),
    price = CASE WHEN excluded.qty >= trade_fills.qty THEN excluded.price ELSE trade_fills.price END,
    fee_amount = COALESCE(MAX(trade_fills.fee_amount, excluded.fee_amount), trade_fills.fee_amount, excluded.fee_amount),
    fees_home = COALESCE(MAX(trade_fills.fees_home, excluded.fees_home), trade_fills.fees_home, excluded.fees_home),
    fee_asset = COALESCE(excluded.fee_asset, trade_fills.fee_asset)
"""

_UPSERT_GRID_FILL = """
INSERT INTO grid_fills (dedup_key, at, symbol, side, qty, price, notional, order_id, fee_home)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(dedup_key) DO UPDATE SET
    at = MAX(grid_fills.at, excluded.at),
    qty = MAX(grid_fills.qty, excluded.qty),
    notional = MAX(grid_fills.notional, excluded.notional),
    price = CASE WHEN excluded.qty >= grid_fills.qty THEN excluded.price ELSE grid_fills.price END,
    fee_home = MAX(grid_fills.fee_home, excluded.fee_home)
"""


def _where(clauses: List[str]) -> str:
    return (" WHERE " + " AND ".join(clauses)) if clauses else ""


def _range(column: str, since_ms: Optional[int], until_ms: Optional[int], clauses: List[str], args: List[Any]) -> None:
    if since_ms is not None:
        clauses.append(f"{column} >= ?")
        args.append(int(since_ms))
    if until_ms is not None:
        clauses.append(f"{column} <= ?")
        args.append(int(until_ms))


class FillLedger:
    def __init__(self, path: str = ":memory:") -> None:
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.path = path
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._mutex = threading.Lock()
        with self._mutex:
            self._conn.executescript(_SCHEMA)
            self._conn.commit()

    def close(self) -> None:
        with self._mutex:
            self._conn.close()

    def _write(self, sql: str, rows: Iterable[tuple]) -> int:
        rows = list(rows)
        if not rows:
            return 0
        with self._mutex:
            with self._conn:
                self._conn.executemany(sql, rows)
        return len(rows)

    def _query(self, sql: str, args: Iterable[Any] = ()) -> List[sqlite3.Row]:
        with self._mutex:
            return list(self._conn.execute(sql, tuple(args)))

    # ── Fills ────────────────────────────────────────────────────────────

    def upsert_trade_fills(self, fills: Iterable[TradeFill]) -> int:
        return self._write(_UPSERT_TRADE_FILL, (
            (
                f.dedup_key, int(f.at), f.symbol, f.module, f.side, f.qty, f.price, f.notional,
                f.fee_asset, f.fee_amount, f.fees_home, f.quote_asset, f.order_id, f.trade_id,
            )
            for f in fills
        ))

    def list_trade_fills(
        self,
        since_ms: Optional[int] = None,
        until_ms: Optional[int] = None,
        symbol: Optional[str] = None,
        module: Optional[str] = None,
    ) -> List[TradeFill]:
        clauses: List[str] = []
        args: List[Any] = []
        _range("at", since_ms, until_ms, clauses, args)
        if symbol:
            clauses.append("symbol = ?")
            args.append(symbol.upper())
        if module:
            clauses.append("module = ?")
            args.append(module)
        rows = self._query(
            "SELECT at, symbol, module, side, qty, price, notional, fee_asset, fee_amount, fees_home,"
            " quote_asset, order_id, trade_id FROM trade_fills" + _where(clauses) + " ORDER BY at, id",
            args,
        )
        return [TradeFill(**dict(r)) for r in rows]

    def count_trade_fills(self) -> int:
        return int(self._query("SELECT COUNT(*) AS n FROM trade_fills")[0]["n"])

    def upsert_grid_fills(self, fills: Iterable[GridFill]) -> int:
        return self._write(_UPSERT_GRID_FILL, (
            (f.dedup_key, int(f.at), f.symbol, f.side, f.qty, f.price, f.notional, f.order_id, f.fee_home)
            for f in fills
        ))

    def list_grid_fills(
        self, symbol: Optional[str] = None, since_ms: Optional[int] = None, until_ms: Optional[int] = None
    ) -> List[GridFill]:
        clauses: List[str] = []
        args: List[Any] = []
        _range("at", since_ms, until_ms, clauses, args)
        if symbol:
            clauses.append("symbol = ?")
            args.append(symbol.upper())
        rows = self._query(
            "SELECT at, symbol, side, qty, price, notional, order_id, fee_home FROM grid_fills"
            + _where(clauses) + " ORDER BY at, id",
            args,
        )
        return [GridFill(**dict(r)) for r in rows]

    # ── Position events ──────────────────────────────────────────────────

    def insert_trade_event(self, event: TradeEvent) -> None:
        self._write(
            "INSERT INTO trades (at, kind, symbol, position_key, side, qty, avg_price, quote_asset,"
            " home_asset, notional_home, fees_home, pnl_home) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [(
                int(event.at), event.kind, event.symbol, event.position_key, event.side, event.qty,
                event.avg_price, event.quote_asset, event.home_asset, event.notional_home,
                event.fees_home, event.pnl_home,
            )],
        )

    def list_trade_events(
        self, since_ms: Optional[int] = None, until_ms: Optional[int] = None
    ) -> List[TradeEvent]:
        clauses: List[str] = []
        args: List[Any] = []
        _range("at", since_ms, until_ms, clauses, args)
        rows = self._query(
            "SELECT at, kind, symbol, position_key, side, qty, avg_price, quote_asset, home_asset,"
            " notional_home, fees_home, pnl_home FROM trades" + _where(clauses) + " ORDER BY at, id",
            args,
        )
        return [TradeEvent(**dict(r)) for r in rows]

    # ── Equity ───────────────────────────────────────────────────────────

    def insert_equity_snapshot(self, snap: EquitySnapshot) -> None:
        self._write(
            "INSERT INTO equity_snapshots (at, home_asset, equity_home) VALUES (?, ?, ?)",
            [(int(snap.at), snap.home_asset, snap.equity_home)],
        )

    def list_equity_snapshots(
        self, home_asset: str, since_ms: Optional[int] = None, until_ms: Optional[int] = None
    ) -> List[EquitySnapshot]:
        clauses = ["home_asset = ?"]
        args: List[Any] = [home_asset.upper()]
        _range("at", since_ms, until_ms, clauses, args)
        rows = self._query(
            "SELECT at, home_asset, equity_home FROM equity_snapshots" + _where(clauses) + " ORDER BY at, id",
            args,
        )
        return [EquitySnapshot(**dict(r)) for r in rows]

    def equity_at_or_before(self, home_asset: str, at_ms: int) -> Optional[EquitySnapshot]:
        rows = self._query(
            "SELECT at, home_asset, equity_home FROM equity_snapshots WHERE home_asset = ? AND at <= ?"
            " ORDER BY at DESC, id DESC LIMIT 1",
            (home_asset.upper(), int(at_ms)),
        )
        return EquitySnapshot(**dict(rows[0])) if rows else None

    def latest_equity(self, home_asset: str) -> Optional[EquitySnapshot]:
        rows = self._query(
            "SELECT at, home_asset, equity_home FROM equity_snapshots WHERE home_asset = ?"
            " ORDER BY at DESC, id DESC LIMIT 1",
            (home_asset.upper(),),
        )
        return EquitySnapshot(**dict(rows[0])) if rows else None

    # ── Decisions ────────────────────────────────────────────────────────

    def insert_decision(self, decision: DecisionRecord) -> None:
        details = dumps(decision.details) if decision.details is not None else None
        self._write(
            "INSERT INTO decisions (at, module, symbol, action, reason, details) VALUES (?, ?, ?, ?, ?, ?)",
            [(int(decision.at), decision.module, decision.symbol, decision.action, decision.reason, details)],
        )

    def list_decisions(self, limit: int = 100, module: Optional[str] = None) -> List[DecisionRecord]:
        clauses: List[str] = []
        args: List[Any] = []
        if module:
            clauses.append("module = ?")
            args.append(module)
        args.append(int(limit))
        rows = self._query(
            "SELECT at, module, symbol, action, reason, details FROM decisions"
            + _where(clauses) + " ORDER BY at DESC, id DESC LIMIT ?",
            args,
        )
        out: List[DecisionRecord] = []
        for r in rows:
            data = dict(r)
            data["details"] = loads(data["details"]) if data["details"] else None
            out.append(DecisionRecord(**data))
        return out


class AsyncFillLedger:
    """Async facade over FillLedger; one call at a time, off the event loop."""

    def __init__(self, ledger: FillLedger) -> None:
        self.ledger = ledger
        self._lock = asyncio.Lock()

    async def _run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        async with self._lock:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, lambda: fn(*args, **kwargs))

    async def upsert_trade_fills(self, fills: Iterable[TradeFill]) -> int:
        return await self._run(self.ledger.upsert_trade_fills, list(fills))

    async def list_trade_fills(self, **kwargs: Any) -> List[TradeFill]:
        return await self._run(self.ledger.list_trade_fills, **kwargs)

    async def count_trade_fills(self) -> int:
        return await self._run(self.ledger.count_trade_fills)

    async def upsert_grid_fills(self, fills: Iterable[GridFill]) -> int:
        return await self._run(self.ledger.upsert_grid_fills, list(fills))

    async def list_grid_fills(self, **kwargs: Any) -> List[GridFill]:
        return await self._run(self.ledger.list_grid_fills, **kwargs)

    async def insert_trade_event(self, event: TradeEvent) -> None:
        await self._run(self.ledger.insert_trade_event, event)

    async def list_trade_events(self, **kwargs: Any) -> List[TradeEvent]:
        return await self._run(self.ledger.list_trade_events, **kwargs)

    async def insert_equity_snapshot(self, snap: EquitySnapshot) -> None:
        await self._run(self.ledger.insert_equity_snapshot, snap)

    async def equity_at_or_before(self, home_asset: str, at_ms: int) -> Optional[EquitySnapshot]:
        return await self._run(self.ledger.equity_at_or_before, home_asset, at_ms)

    async def latest_equity(self, home_asset: str) -> Optional[EquitySnapshot]:
        return await self._run(self.ledger.latest_equity, home_asset)

    async def insert_decision(self, decision: DecisionRecord) -> None:
        await self._run(self.ledger.insert_decision, decision)

    async def list_decisions(self, limit: int = 100, module: Optional[str] = None) -> List[DecisionRecord]:
        return await self._run(self.ledger.list_decisions, limit, module)

    async def close(self) -> None:
        await self._run(self.ledger.close)


def decision_to_dict(decision: DecisionRecord) -> Dict[str, Any]:
    return asdict(decision)
