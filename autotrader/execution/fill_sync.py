"""
FillSyncQueue: keep the durable fill ledger in step with the exchange.

Order observation and fill retrieval are decoupled:

    tick()                polls open orders, feeds observe() and the
                          missing-order queue
    observe(order)        enqueues a sync when executed qty grows or the
                          status becomes a fill status
    sync queue            bounded deque, debounced per (symbol, order),
                          drained by at most `concurrency` worker tasks
    missing-order queue   orders that vanished from the open list are
                          re-queried a capped number of times

Each sync pulls the order's own trades and upserts them. Rows with trade
ids are keyed by trade id; without one the trades collapse into a single
aggregate row keyed by order id, so re-observation never double-counts.

Both queues drop their oldest tenth on overflow instead of blocking.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple, TYPE_CHECKING

from autotrader.core.clock import now_ms
from autotrader.core.json_utils import dumps
from autotrader.core.single_flight import KeyedSingleFlight
from autotrader.gateway.types import BUY, FILL_STATUSES, PARTIALLY_FILLED, SELL, GatewayError, TradeRecord
from autotrader.state.fill_ledger import GRID, PORTFOLIO, TradeFill

if TYPE_CHECKING:
    from autotrader.config.config import Settings
    from autotrader.gateway.protocol import ExchangeGateway
    from autotrader.market_data.fx import RateResolver
    from autotrader.monitoring.metrics_rich import RichMetrics
    from autotrader.risk.risk_governor import RiskGovernor
    from autotrader.state.fill_ledger import AsyncFillLedger
    from autotrader.state.payload_store import PayloadStore

log = logging.getLogger("autotrader")

FLIGHT_KEY = "fill_sync"

# Bound on per-order fee telemetry memory.
_TELEMETRY_KEYS_MAX = 5000


@dataclass
class FillSyncConfig:
    """Configuration for FillSyncQueue."""
    trading_enabled: bool = False
    venue: str = "spot"
    home_asset: str = "USDC"
    queue_max: int = 500
    concurrency: int = 2
    debounce_ms: int = 1000
    missing_queue_max: int = 2000
    missing_checks_per_tick: int = 20
    missing_max_attempts: int = 3
    trades_fallback_limit: int = 1000

    # Logging callback
    log_event_callback: Optional[Callable[..., None]] = None

    @classmethod
    def from_settings(cls, s: "Settings") -> "FillSyncConfig":
        return cls(
            trading_enabled=s.trading_enabled,
            venue=s.trade_venue,
            home_asset=s.home_asset,
            queue_max=s.sync_queue_max,
            concurrency=s.sync_concurrency,
            debounce_ms=s.sync_debounce_ms,
            missing_queue_max=s.missing_queue_max,
            missing_checks_per_tick=s.missing_checks_per_tick,
            missing_max_attempts=s.missing_max_attempts,
        )


@dataclass(frozen=True)
class TrackedOrder:
    symbol: str
    order_id: str
    module: str
    side: Optional[str]
    status: str
    executed_qty: float

    @property
    def key(self) -> str:
        return f"{self.symbol}:{self.order_id}"


@dataclass(frozen=True)
class SyncTask:
    symbol: str
    order_id: str
    module: str
    side: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.symbol}:{self.order_id}"


@dataclass
class SyncResult:
    """Result of syncing one order's fills."""
    symbol: str
    order_id: str
    module: str
    rows: int = 0
    aggregated: bool = False
    error: Optional[str] = None


@dataclass
class SyncTickResult:
    success: bool
    open_orders: int = 0
    enqueued: int = 0
    missing_checked: int = 0
    error: Optional[str] = None


def _key(symbol: str, order_id: str) -> str:
    return f"{symbol.upper()}:{order_id}"


class FillSyncQueue:
    """
    Bounded, debounced, concurrency-limited fill synchronization.

    Usage:
        sync = FillSyncQueue(gateway, store, ledger, rates, risk=governor)
        await sync.tick()          # once per control-loop tick
        await sync.drain()         # on shutdown
    """

    def __init__(
        self,
        gateway: "ExchangeGateway",
        store: "PayloadStore",
        ledger: "AsyncFillLedger",
        rates: "RateResolver",
        risk: Optional["RiskGovernor"] = None,
        config: Optional[FillSyncConfig] = None,
        rich_metrics: Optional["RichMetrics"] = None,
        flights: Optional[KeyedSingleFlight] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.ledger = ledger
        self.rates = rates
        self.risk = risk
        self.config = config or FillSyncConfig()
        self.metrics = rich_metrics
        self.flights = flights or KeyedSingleFlight()
        self._clock = clock or now_ms
        self._log_event = self.config.log_event_callback or self._default_log

        self._queue: Deque[SyncTask] = deque()
        self._in_flight: Set[str] = set()
        self._last_enqueued: Dict[str, int] = {}
        self._workers: Set[asyncio.Task] = set()

        self._snapshots: Dict[str, Tuple[float, str]] = {}
        self._prev_open: Dict[str, TrackedOrder] = {}
        self._missing: Deque[Tuple[TrackedOrder, int]] = deque()
        self._missing_keys: Set[str] = set()

        self._reported_notional: "OrderedDict[str, float]" = OrderedDict()
        self._stats = {"enqueued": 0, "debounced": 0, "dropped": 0, "synced": 0, "failed": 0, "missing_dropped": 0}

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    @property
    def active(self) -> bool:
        return self.config.trading_enabled and self.config.venue == "spot"

    # ── Enqueue ──────────────────────────────────────────────────────────

    def enqueue(self, task: SyncTask) -> bool:
        """Queue a sync unless it is in flight or was queued within the debounce window."""
        key = task.key
        if key in self._in_flight:
            return False
        now = self._clock()
        if now - self._last_enqueued.get(key, -self.config.debounce_ms) < self.config.debounce_ms:
            self._stats["debounced"] += 1
            return False
        self._last_enqueued[key] = now
        self._prune_debounce(now)

        if len(self._queue) >= self.config.queue_max:
            n = max(1, self.config.queue_max // 10)
            for _ in range(min(n, len(self._queue))):
                self._queue.popleft()
            self._stats["dropped"] += n
            if self.metrics:
                self.metrics.queue_overflow_dropped.labels(queue="sync").inc(n)
            log.warning(dumps({"event": "fill_sync_overflow", "dropped": n}))

        self._queue.append(task)
        self._stats["enqueued"] += 1
        self._update_depth()
        self._pump()
        return True

    def _prune_debounce(self, now: int) -> None:
        if len(self._last_enqueued) <= self.config.queue_max * 4:
            return
        cutoff = now - self.config.debounce_ms
        self._last_enqueued = {k: t for k, t in self._last_enqueued.items() if t >= cutoff}

    def observe(self, order: TrackedOrder) -> bool:
        """
        Record an order snapshot; enqueue a sync when it made fill progress.

        Returns:
            True if a sync was enqueued.
        """
        snapshot = (max(order.executed_qty, 0.0), order.status.upper())
        if not self.has_unsynced_progress(order):
            self._snapshots[order.key] = snapshot
            return False
        # A rejected enqueue keeps the old snapshot so the progress is seen again.
        if not self.enqueue(SyncTask(order.symbol, order.order_id, order.module, order.side)):
            return False
        self._snapshots[order.key] = snapshot
        return True

    def has_unsynced_progress(self, order: TrackedOrder) -> bool:
        """True when executed qty grew, or a fill status is new, since the last accepted sync."""
        qty = max(order.executed_qty, 0.0)
        status = order.status.upper()
        prev_qty, prev_status = self._snapshots.get(order.key, (0.0, ""))
        return (status in FILL_STATUSES and status != prev_status) or qty > prev_qty + 1e-12

    def enqueue_missing(self, order: TrackedOrder) -> None:
        key = order.key
        if key in self._missing_keys:
            return
        cap = self.config.missing_queue_max
        if len(self._missing) >= cap:
            n = max(1, cap // 10)
            for _ in range(min(n, len(self._missing))):
                dropped, _ = self._missing.popleft()
                self._missing_keys.discard(dropped.key)
            self._stats["missing_dropped"] += n
            if self.metrics:
                self.metrics.queue_overflow_dropped.labels(queue="missing").inc(n)
            log.warning(dumps({"event": "missing_queue_overflow", "dropped": n}))
        self._missing_keys.add(key)
        self._missing.append((order, 0))
        self._update_depth()

    # ── Workers ──────────────────────────────────────────────────────────

    def _pump(self) -> None:
        while self._queue and len(self._in_flight) < max(1, self.config.concurrency):
            task = self._queue.popleft()
            if task.key in self._in_flight:
                continue
            self._in_flight.add(task.key)
            worker = asyncio.ensure_future(self._run(task))
            self._workers.add(worker)
            worker.add_done_callback(self._workers.discard)
        self._update_depth()

    async def _run(self, task: SyncTask) -> None:
        try:
            result = await self.sync_order(task.symbol, task.order_id, task.module, task.side)
            self._stats["failed" if result.error else "synced"] += 1
        except Exception as exc:
            self._stats["failed"] += 1
            log.warning(dumps({
                "event": "fill_sync_failed",
                "symbol": task.symbol,
                "order_id": task.order_id,
                "module": task.module,
                "error": str(exc),
            }))
        finally:
            self._in_flight.discard(task.key)
            self._pump()

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until the queue is empty and no worker is running."""
        async def _wait() -> None:
            while self._queue or self._workers:
                if self._workers:
                    await asyncio.gather(*list(self._workers), return_exceptions=True)
                else:
                    self._pump()
                    await asyncio.sleep(0)

        await asyncio.wait_for(_wait(), timeout)

    def _update_depth(self) -> None:
        if self.metrics:
            self.metrics.sync_queue_depth.set(len(self._queue))
            self.metrics.missing_queue_depth.set(len(self._missing))

    # ── Sync one order ───────────────────────────────────────────────────

    async def _fetch_trades(self, symbol: str, order_id: str) -> List[TradeRecord]:
        rows = await self.gateway.get_my_trades(symbol, order_id=order_id)
        if rows:
            return rows
        # Some adapters ignore the order filter; scan recent trades instead.
        try:
            recent = await self.gateway.get_my_trades(symbol, limit=self.config.trades_fallback_limit)
        except GatewayError:
            return []
        return [r for r in recent if r.order_id == order_id]

    async def sync_order(
        self, symbol: str, order_id: str, module: str, side_hint: Optional[str] = None
    ) -> SyncResult:
        """Fetch and idempotently persist the fills of one order."""
        symbol = symbol.upper()
        result = SyncResult(symbol, order_id, module)
        try:
            rows = await self._fetch_trades(symbol, order_id)
        except GatewayError as exc:
            log.warning(dumps({"event": "fill_sync_trades_failed", "symbol": symbol, "order_id": order_id, "error": str(exc)}))
            result.error = str(exc)
            return result
        if not rows:
            return result

        quote_asset = await self._quote_asset(symbol)
        home = self.config.home_asset.upper()
        now = self._clock()

        fills: List[TradeFill] = []
        missing_trade_id = False
        for row in rows:
            if row.order_id != order_id or row.qty <= 0 or row.price <= 0:
                continue
            notional = row.quote_qty if row.quote_qty and row.quote_qty > 0 else row.qty * row.price
            side = BUY if row.is_buyer is True else SELL if row.is_buyer is False else side_hint
            if side not in (BUY, SELL):
                continue
            fees_home = None
            if row.commission is not None and row.commission >= 0 and row.commission_asset:
                if row.commission_asset == home:
                    fees_home = row.commission
                else:
                    rate = await self.rates.rate(row.commission_asset, home)
                    if rate:
                        fees_home = row.commission * rate
            if not row.trade_id:
                missing_trade_id = True
            fills.append(TradeFill(
                at=row.time_ms or now,
                symbol=symbol,
                module=module,
                side=side,
                qty=row.qty,
                price=row.price,
                notional=notional,
                fee_asset=row.commission_asset,
                fee_amount=row.commission,
                fees_home=fees_home,
                quote_asset=quote_asset,
                order_id=order_id,
                trade_id=row.trade_id,
            ))
        if not fills:
            return result

        if missing_trade_id:
            agg = self._aggregate(fills)
            if agg is None:
                return result
            fills = [agg]
            result.aggregated = True

        result.rows = await self.ledger.upsert_trade_fills(fills)
        if self.metrics:
            self.metrics.fill_rows_persisted.labels(module=module).inc(result.rows)
        await self._feed_fee_telemetry(symbol, order_id, module, quote_asset, fills)
        self._log_event("fill_synced", symbol=symbol, order_id=order_id, module=module,
                        rows=result.rows, aggregated=result.aggregated)
        return result

    @staticmethod
    def _aggregate(fills: List[TradeFill]) -> Optional[TradeFill]:
        """Collapse trades without ids into one order-keyed row."""
        first = fills[0]
        qty = sum(f.qty for f in fills)
        notional = sum(f.notional for f in fills)
        if qty <= 0 or notional <= 0:
            return None
        fee_assets = {f.fee_asset for f in fills if f.fee_asset}
        fee_asset = next(iter(fee_assets)) if len(fee_assets) == 1 else None
        fee_amount = None
        if fee_asset and all(f.fee_asset == fee_asset and f.fee_amount is not None for f in fills):
            fee_amount = sum(f.fee_amount for f in fills)
        fees_home = None
        if any(f.fees_home is not None for f in fills):
            fees_home = sum(f.fees_home or 0.0 for f in fills)
        return TradeFill(
            at=first.at,
            symbol=first.symbol,
            module=first.module,
            side=first.side,
            qty=qty,
            price=notional / qty,
            notional=notional,
            fee_asset=fee_asset,
            fee_amount=fee_amount,
            fees_home=fees_home,
            quote_asset=first.quote_asset,
            order_id=first.order_id,
        )

    async def _quote_asset(self, symbol: str) -> Optional[str]:
        try:
            infos = await self.gateway.get_symbols()
        except GatewayError:
            return None
        for info in infos:
            if info.symbol == symbol:
                return info.quote_asset
        return None

    async def _feed_fee_telemetry(
        self, symbol: str, order_id: str, module: str, quote_asset: Optional[str], fills: List[TradeFill]
    ) -> None:
        """Report only the notional not reported before for this order."""
        if self.risk is None:
            return
        key = _key(symbol, order_id)
        notional = sum(f.notional for f in fills)
        delta = notional - self._reported_notional.get(key, 0.0)
        if delta <= 1e-12:
            return
        self._reported_notional[key] = notional
        self._reported_notional.move_to_end(key)
        while len(self._reported_notional) > _TELEMETRY_KEYS_MAX:
            self._reported_notional.popitem(last=False)

        rate = await self.rates.rate(quote_asset, self.config.home_asset) if quote_asset else None
        if not rate:
            return
        share = delta / notional
        notional_home = delta * rate
        known = [f.fees_home for f in fills if f.fees_home is not None]
        if known:
            fees_home = sum(known) * share
        else:
            fees_home = self.risk.estimate_fees_home(notional_home, "maker" if module == GRID else "taker")
        self.risk.record_fee_telemetry(self._clock(), fees_home, notional_home, len(fills))

    # ── Tick ─────────────────────────────────────────────────────────────

    def _grid_order_ids(self) -> Set[str]:
        ids: Set[str] = set()
        for grid in self.store.grids().values():
            ids.update(o.order_id for o in grid.orders_by_level.values())
        return ids

    async def tick(self) -> SyncTickResult:
        """
        Poll open orders, enqueue fill progress and re-check vanished orders.
        Overlapping ticks are rejected.
        """
        if not self.active:
            return SyncTickResult(success=True)
        if not self.flights.try_acquire(FLIGHT_KEY):
            return SyncTickResult(success=False, error="Fill sync tick already in flight")
        try:
            return await self._tick()
        except Exception as exc:
            log.warning(dumps({"event": "fill_sync_tick_failed", "error": str(exc)}))
            return SyncTickResult(success=False, error=str(exc))
        finally:
            self.flights.release(FLIGHT_KEY)

    async def _tick(self) -> SyncTickResult:
        grid_ids = self._grid_order_ids()
        open_rows = await self.gateway.get_open_orders()
        enqueued = 0
        next_open: Dict[str, TrackedOrder] = {}
        for row in open_rows:
            order = TrackedOrder(
                symbol=row.symbol,
                order_id=row.order_id,
                module=GRID if row.order_id in grid_ids else PORTFOLIO,
                side=row.side,
                status=row.status,
                executed_qty=max(0.0, row.executed_qty),
            )
            next_open[order.key] = order
            if self.observe(order):
                enqueued += 1

        for key, prev in self._prev_open.items():
            if key not in next_open:
                self.enqueue_missing(prev)

        # Retries re-queued below wait for the next tick.
        checked = 0
        budget = min(self.config.missing_checks_per_tick, len(self._missing))
        while checked < budget:
            order, attempts = self._missing.popleft()
            checked += 1
            prev_qty, prev_status = self._snapshots.get(order.key, (order.executed_qty, order.status))
            if prev_qty > 0 or prev_status == PARTIALLY_FILLED:
                # Final fills land only through a sync; hold the order until one is accepted.
                if self.enqueue(SyncTask(order.symbol, order.order_id, order.module, order.side)):
                    enqueued += 1
                    self._missing_keys.discard(order.key)
                else:
                    self._missing.append((order, attempts))
                continue
            try:
                detail = await self.gateway.get_order(order.symbol, order.order_id)
            except GatewayError as exc:
                if attempts + 1 < self.config.missing_max_attempts:
                    self._missing.append((order, attempts + 1))
                else:
                    self._missing_keys.discard(order.key)
                    log.warning(dumps({
                        "event": "missing_order_given_up",
                        "symbol": order.symbol,
                        "order_id": order.order_id,
                        "error": str(exc),
                    }))
                continue
            final = TrackedOrder(
                symbol=order.symbol,
                order_id=order.order_id,
                module=order.module,
                side=detail.side or order.side,
                status=detail.status,
                executed_qty=max(0.0, detail.executed_qty),
            )
            if self.observe(final):
                enqueued += 1
            elif self.has_unsynced_progress(final):
                self._missing.append((final, attempts))
                continue
            self._missing_keys.discard(order.key)

        self._prev_open = next_open
        self._update_depth()
        return SyncTickResult(success=True, open_orders=len(next_open), enqueued=enqueued, missing_checked=checked)

    def get_stats(self) -> Dict[str, int]:
        return {
            **self._stats,
            "queue": len(self._queue),
            "in_flight": len(self._in_flight),
            "missing": len(self._missing),
        }
