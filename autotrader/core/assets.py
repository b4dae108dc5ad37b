"""
Asset classification helpers.
"""

from __future__ import annotations

import re

STABLE_LIKE_ASSETS = frozenset({
    "USD", "EUR", "GBP", "USDT", "USDC", "BUSD", "TUSD", "FDUSD", "DAI", "USDP", "USDD",
})

_LEVERAGE_TOKEN_RE = re.compile(r"(UP|DOWN|BULL|BEAR)$")


def is_stable_like(asset: str) -> bool:
    upper = (asset or "").upper()
    if upper in STABLE_LIKE_ASSETS:
        return True
    return upper.startswith("USD") and len(upper) <= 4


def is_stable_pair(base_asset: str, quote_asset: str) -> bool:
    return is_stable_like(base_asset) and is_stable_like(quote_asset)


def looks_like_leverage_token(symbol: str) -> bool:
    return bool(_LEVERAGE_TOKEN_RE.search((symbol or "").upper()))
