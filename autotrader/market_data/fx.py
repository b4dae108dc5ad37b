"""
Asset-to-asset rate resolution.

Tries a direct pair (FROMTO), then the inverse pair (TOFROM), then one
intermediate "mid" asset (FROM->MID->TO). Prices are cached for a short TTL
so a tick that values many balances does not hit the exchange per asset.
A missing rate is None, never an exception.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Iterable, Optional, Set, Tuple, TYPE_CHECKING

from autotrader.core.json_utils import dumps
from autotrader.gateway.types import GatewayError

if TYPE_CHECKING:
    from autotrader.gateway.protocol import ExchangeGateway

log = logging.getLogger("autotrader")

DEFAULT_MIDS: Tuple[str, ...] = ("USDC", "USDT", "BTC", "ETH", "BNB")
SYNC_MIDS: Tuple[str, ...] = ("USDC", "USDT", "FDUSD", "BTC", "ETH", "BNB")

# Exchange symbol list changes rarely; refresh hourly.
SYMBOLS_TTL_SEC = 3600.0


class RateResolver:
    def __init__(
        self,
        gateway: "ExchangeGateway",
        mids: Iterable[str] = DEFAULT_MIDS,
        ttl_sec: float = 30.0,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.gateway = gateway
        self.mids = tuple(m.upper() for m in mids)
        self.ttl_sec = ttl_sec
        self._clock = clock or time.time
        self._prices: Dict[str, Tuple[float, float]] = {}
        self._symbols: Optional[Set[str]] = None
        self._symbols_at = 0.0

    def clear(self) -> None:
        self._prices.clear()

    async def known_symbols(self) -> Optional[Set[str]]:
        now = self._clock()
        if self._symbols is not None and now - self._symbols_at < SYMBOLS_TTL_SEC:
            return self._symbols
        try:
            infos = await self.gateway.get_symbols()
        except GatewayError as exc:
            log.warning(dumps({"event": "rate_lookup_failed", "symbol": "*", "error": str(exc)}))
            return self._symbols
        self._symbols = {i.symbol for i in infos if i.tradable}
        self._symbols_at = now
        return self._symbols

    async def price(self, symbol: str) -> Optional[float]:
        """Latest price for a symbol (cached), None when unavailable."""
        symbol = symbol.upper()
        now = self._clock()
        cached = self._prices.get(symbol)
        if cached and now - cached[1] < self.ttl_sec:
            return cached[0]
        try:
            px = await self.gateway.get_latest_price(symbol)
        except GatewayError as exc:
            log.warning(dumps({"event": "rate_lookup_failed", "symbol": symbol, "error": str(exc)}))
            return None
        if not px or px <= 0:
            return None
        self._prices[symbol] = (px, now)
        return px

    async def _pair_rate(self, base: str, quote: str, symbols: Optional[Set[str]]) -> Optional[float]:
        direct = f"{base}{quote}"
        if symbols is None or direct in symbols:
            px = await self.price(direct)
            if px:
                return px
        inverse = f"{quote}{base}"
        if symbols is None or inverse in symbols:
            px = await self.price(inverse)
            if px:
                return 1.0 / px
        return None

    async def rate(self, from_asset: str, to_asset: str) -> Optional[float]:
        """
        Units of to_asset per one unit of from_asset.

        Returns:
            The rate, or None when no direct, inverse or one-hop path exists.
        """
        src = (from_asset or "").upper()
        dst = (to_asset or "").upper()
        if not src or not dst:
            return None
        if src == dst:
            return 1.0
        symbols = await self.known_symbols()
        direct = await self._pair_rate(src, dst, symbols)
        if direct:
            return direct
        for mid in self.mids:
            if mid in (src, dst):
                continue
            leg1 = await self._pair_rate(src, mid, symbols)
            if not leg1:
                continue
            leg2 = await self._pair_rate(mid, dst, symbols)
            if leg2:
                return leg1 * leg2
        return None

    async def to_home(self, asset: str, amount: float, home: str) -> Optional[float]:
        if amount == 0:
            return 0.0
        r = await self.rate(asset, home)
        return amount * r if r is not None else None
