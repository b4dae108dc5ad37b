"""
Minimal async HTTP client for public market-data endpoints.

Speaks the Binance-style public REST API (exchangeInfo, 24hr ticker, price,
klines) and parses responses into the tagged gateway types. Order placement
and account endpoints are not here; they live behind ExchangeGateway.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from autotrader.gateway.types import GatewayError, Kline, SymbolInfo, Ticker, to_float


class PublicMarketData:
    def __init__(self, base_url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = base_url.rstrip("/")
        # A shared client passed in is not closed by close(); otherwise we own it.
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def get_symbols(self) -> List[SymbolInfo]:
        data = await self._get("/api/v3/exchangeInfo")
        out: List[SymbolInfo] = []
        for raw in data.get("symbols", []) if isinstance(data, dict) else []:
            try:
                out.append(SymbolInfo.from_raw(raw))
            except ValueError:
                continue
        return out

    async def get_ticker(self, symbol: str) -> Ticker:
        data = await self._get("/api/v3/ticker/24hr", {"symbol": symbol.upper()})
        try:
            return Ticker.from_raw(data)
        except ValueError as exc:
            raise GatewayError(f"bad ticker payload for {symbol}: {exc}") from exc

    async def get_latest_price(self, symbol: str) -> float:
        data = await self._get("/api/v3/ticker/price", {"symbol": symbol.upper()})
        price = to_float(data.get("price")) if isinstance(data, dict) else None
        if price is None or price <= 0:
            raise GatewayError(f"bad price payload for {symbol}")
        return price

    async def get_klines(
        self, symbol: str, interval: str, limit: int, start_ms: Optional[int] = None
    ) -> List[Kline]:
        params: Dict[str, Any] = {"symbol": symbol.upper(), "interval": interval, "limit": int(limit)}
        if start_ms is not None:
            params["startTime"] = int(start_ms)
        data = await self._get("/api/v3/klines", params)
        if not isinstance(data, list):
            raise GatewayError(f"bad klines payload for {symbol}")
        return [Kline.from_raw(row) for row in data]

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            resp = await self.client.get(path, params=params)
        except httpx.HTTPError as exc:
            raise GatewayError(f"GET {path} failed: {exc}") from exc
        if resp.status_code >= 400:
            code: Optional[int] = None
            msg = resp.text
            try:
                body = resp.json()
                code = body.get("code") if isinstance(body, dict) else None
                msg = body.get("msg", msg) if isinstance(body, dict) else msg
            except ValueError:
                pass
            raise GatewayError(f"GET {path} -> {resp.status_code}: {msg}", code=code)
        return resp.json()
