"""
Sweep unused balances back to the home asset.

Every non-protected asset with a free balance and a direct ASSET/HOME
spot market is sold at market, after rounding to the step size and
checking the dust filters. Protected: the home asset, allowed quote
assets (optional), an explicit keep list, assets of open spot positions
(optional) and assets of running grids.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, TYPE_CHECKING

from autotrader.core.clock import now_ms
from autotrader.core.json_utils import dumps
from autotrader.core.rounding import floor_to_step
from autotrader.gateway.types import MARKET, SELL, Balance, GatewayError, OrderRequest, SymbolInfo
from autotrader.state.fill_ledger import DecisionRecord
from autotrader.state.models import GRID_ERROR, GRID_RUNNING

if TYPE_CHECKING:
    from autotrader.config.config import Settings
    from autotrader.gateway.protocol import ExchangeGateway
    from autotrader.monitoring.metrics_rich import RichMetrics
    from autotrader.state.fill_ledger import AsyncFillLedger
    from autotrader.state.payload_store import PayloadStore

log = logging.getLogger("autotrader")

MODULE = "sweep"

PLACED = "placed"
SIMULATED = "simulated"
SKIPPED = "skipped"
ERROR = "error"


@dataclass
class SweepConfig:
    venue: str = "spot"
    trading_enabled: bool = False
    home_asset: str = "USDC"
    quote_assets: List[str] = field(default_factory=lambda: ["USDC", "USDT"])

    @classmethod
    def from_settings(cls, s: "Settings") -> "SweepConfig":
        return cls(
            venue=s.trade_venue,
            trading_enabled=s.trading_enabled,
            home_asset=s.home_asset,
            quote_assets=list(s.quote_assets),
        )


@dataclass
class SweepAction:
    asset: str
    status: str
    symbol: Optional[str] = None
    side: Optional[str] = None
    requested_qty: Optional[float] = None
    executed_qty: Optional[float] = None
    order_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class SweepResult:
    ok: bool
    error: Optional[str] = None
    dry_run: bool = True
    home_asset: str = ""
    protected_assets: List[str] = field(default_factory=list)
    actions: List[SweepAction] = field(default_factory=list)
    balances: List[Balance] = field(default_factory=list)
    still_held: int = 0

    def count(self, status: str) -> int:
        return sum(1 for a in self.actions if a.status == status)

    @property
    def summary(self) -> Dict[str, int]:
        return {
            "placed": self.count(PLACED),
            "skipped": self.count(SKIPPED),
            "errored": self.count(ERROR),
            "still_held": self.still_held,
        }


def find_direct_pair(infos: List[SymbolInfo], base: str, quote: str) -> Optional[SymbolInfo]:
    base, quote = base.upper(), quote.upper()
    for info in infos:
        if info.spot_tradable and info.base_asset == base and info.quote_asset == quote:
            return info
    return None


class SweepService:
    """
    Usage:
        sweeper = SweepService(gateway, store, config=SweepConfig(...))
        result = await sweeper.sweep_unused(dry_run=True)
    """

    def __init__(
        self,
        gateway: "ExchangeGateway",
        store: "PayloadStore",
        ledger: Optional["AsyncFillLedger"] = None,
        config: Optional[SweepConfig] = None,
        rich_metrics: Optional["RichMetrics"] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.ledger = ledger
        self.config = config or SweepConfig()
        self.metrics = rich_metrics
        self._clock = clock or now_ms

    def protected_assets(
        self,
        keep_allowed_quotes: bool = True,
        keep_position_assets: bool = True,
        keep_assets: Optional[List[str]] = None,
    ) -> Set[str]:
        home = self.config.home_asset.upper()
        protected = {home}
        if keep_allowed_quotes:
            protected.update(q.upper() for q in self.config.quote_assets)
        protected.update(a.upper() for a in keep_assets or [])
        if keep_position_assets:
            for pos in self.store.positions().values():
                if pos.venue != "spot":
                    continue
                protected.update(a for a in (pos.base_asset, pos.quote_asset, pos.home_asset) if a)
        for grid in self.store.grids().values():
            # Errored grids with a ladder resume, so their inventory stays.
            if grid.status == GRID_RUNNING or (grid.status == GRID_ERROR and grid.prices):
                protected.update(a for a in (grid.base_asset, grid.quote_asset, grid.home_asset) if a)
        return protected

    async def _sweep_one(self, bal: Balance, infos: List[SymbolInfo], dry_run: bool) -> SweepAction:
        home = self.config.home_asset.upper()
        asset = bal.asset
        if bal.free <= 0:
            return SweepAction(asset, SKIPPED, reason=f"No free balance (locked={bal.locked})")
        pair = find_direct_pair(infos, asset, home)
        if pair is None:
            return SweepAction(asset, SKIPPED, reason=f"No direct {asset}{home} market")

        qty = floor_to_step(bal.free, pair.step_size)
        if qty <= 0:
            return SweepAction(asset, SKIPPED, reason=f"Dust: qty {bal.free} rounds to 0 (stepSize={pair.step_size or 'n/a'})")
        if pair.min_qty and qty < pair.min_qty:
            return SweepAction(asset, SKIPPED, reason=f"Dust: qty {qty} below minQty {pair.min_qty}")
        if pair.min_notional:
            try:
                price = await self.gateway.get_latest_price(pair.symbol)
            except GatewayError:
                # Let the exchange validate the order instead.
                price = None
            if price is not None and qty * price < pair.min_notional:
                return SweepAction(
                    asset, SKIPPED,
                    reason=f"Dust: notional {qty * price:.8f} below minNotional {pair.min_notional}",
                )

        if dry_run:
            return SweepAction(asset, SIMULATED, symbol=pair.symbol, side=SELL, requested_qty=qty)
        try:
            report = await self.gateway.place_order(OrderRequest(pair.symbol, SELL, MARKET, qty))
        except GatewayError as exc:
            if self.metrics:
                self.metrics.orders_failed.labels(symbol=pair.symbol, side=SELL, module=MODULE).inc()
            log.warning(dumps({"event": "sweep_order_failed", "asset": asset, "symbol": pair.symbol, "error": str(exc)}))
            return SweepAction(asset, ERROR, symbol=pair.symbol, reason=str(exc))
        if self.metrics:
            self.metrics.orders_submitted.labels(symbol=pair.symbol, side=SELL, module=MODULE).inc()
        return SweepAction(
            asset,
            PLACED,
            symbol=pair.symbol,
            side=SELL,
            requested_qty=qty,
            executed_qty=report.executed_qty or None,
            order_id=report.order_id,
        )

    async def sweep_unused(
        self,
        dry_run: bool = False,
        keep_allowed_quotes: bool = True,
        keep_position_assets: bool = True,
        keep_assets: Optional[List[str]] = None,
    ) -> SweepResult:
        """Sell every unprotected free balance into home. Never raises."""
        if self.config.venue != "spot":
            return SweepResult(ok=False, error="Sweep-unused is only available in spot mode.")
        home = self.config.home_asset.upper()
        if not home:
            return SweepResult(ok=False, error="AT_HOME_ASSET is not configured")
        dry_run = dry_run or not self.config.trading_enabled

        try:
            balances = await self.gateway.get_balances()
        except GatewayError as exc:
            return SweepResult(ok=False, error=f"Failed to fetch balances: {exc}")
        if not balances:
            return SweepResult(ok=False, error="No balances returned. Check API key permissions.")
        try:
            infos = await self.gateway.get_symbols()
        except GatewayError as exc:
            return SweepResult(ok=False, error=f"Failed to fetch symbols: {exc}")

        protected = self.protected_assets(keep_allowed_quotes, keep_position_assets, keep_assets)
        targets = sorted(
            (b for b in balances if b.asset not in protected and (b.free > 0 or b.locked > 0)),
            key=lambda b: b.asset,
        )
        actions = [await self._sweep_one(bal, infos, dry_run) for bal in targets]

        final = balances
        if not dry_run:
            try:
                final = await self.gateway.get_balances()
            except GatewayError as exc:
                log.warning(dumps({"event": "sweep_balance_refresh_failed", "error": str(exc)}))

        still_held = sum(1 for b in final if b.asset not in protected and b.total > 0)
        result = SweepResult(
            ok=True,
            dry_run=dry_run,
            home_asset=home,
            protected_assets=sorted(protected),
            actions=actions,
            balances=final,
            still_held=still_held,
        )
        await self._record(result)
        return result

    async def _record(self, result: SweepResult) -> None:
        details: Dict[str, Any] = {"dry_run": result.dry_run, **result.summary}
        log.info(dumps({"event": "sweep_unused", **details}))
        if self.ledger is None:
            return
        action = SIMULATED if result.dry_run else PLACED if result.count(PLACED) else SKIPPED
        await self.ledger.insert_decision(DecisionRecord(
            at=self._clock(),
            module=MODULE,
            symbol=None,
            action=action,
            reason=f"Sweep to {result.home_asset}: {result.summary}",
            details=details,
        ))
