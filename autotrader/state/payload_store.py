"""
PayloadStore: the single persisted payload (positions, grids, meta).

One instance per process, passed by handle to every engine. All mutation
goes through field-scoped persist_* methods; each one updates memory and
flushes the whole payload to disk (tmp file + atomic replace) before
returning, so a crash never loses an acknowledged change.

Readers get copies, never the live dicts.
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from autotrader.core.json_utils import dumps, dumps_bytes, loads
from autotrader.state.models import GridState, Position

log = logging.getLogger("autotrader")

PAYLOAD_VERSION = 1


class PayloadStore:
    def __init__(self, path: Optional[str]) -> None:
        """
        Args:
            path: JSON file path; None keeps the payload in memory only (tests).
        """
        self.path = Path(path) if path else None
        self.tmp = self.path.with_suffix(".tmp") if self.path else None
        self._positions: Dict[str, Position] = {}
        self._grids: Dict[str, GridState] = {}
        self._strategies: Dict[str, Any] = {}
        self._last_trades: Dict[str, int] = {}
        self._meta: Dict[str, Any] = {}
        self.save_errors = 0

    # ── Load / flush ─────────────────────────────────────────────────────

    def load(self) -> "PayloadStore":
        if self.path is None or not self.path.exists():
            return self
        try:
            data = loads(self.path.read_bytes())
        except (OSError, ValueError) as exc:
            log.error(dumps({"event": "state_load_error", "path": str(self.path), "error": str(exc)}))
            return self
        for key, raw in (data.get("positions") or {}).items():
            try:
                self._positions[key] = Position.from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                log.warning(dumps({"event": "state_position_skipped", "key": key, "error": str(exc)}))
        for symbol, raw in (data.get("grids") or {}).items():
            try:
                self._grids[symbol] = GridState.from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                log.warning(dumps({"event": "state_grid_skipped", "symbol": symbol, "error": str(exc)}))
        self._strategies = dict(data.get("strategies") or {})
        self._last_trades = {k: int(v) for k, v in (data.get("last_trades") or {}).items()}
        self._meta = dict(data.get("meta") or {})
        log.info(dumps({
            "event": "state_loaded",
            "positions": len(self._positions),
            "grids": len(self._grids),
        }))
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": PAYLOAD_VERSION,
            "positions": {k: p.to_dict() for k, p in self._positions.items()},
            "grids": {k: g.to_dict() for k, g in self._grids.items()},
            "strategies": copy.deepcopy(self._strategies),
            "last_trades": dict(self._last_trades),
            "meta": copy.deepcopy(self._meta),
        }

    def _flush(self) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.tmp.write_bytes(dumps_bytes(self.to_dict(), pretty=True))
            self.tmp.replace(self.path)
        except OSError as exc:
            self.save_errors += 1
            log.error(dumps({"event": "state_save_error", "path": str(self.path), "error": str(exc)}))

    # ── Reads ────────────────────────────────────────────────────────────

    def positions(self) -> Dict[str, Position]:
        return {k: copy.deepcopy(p) for k, p in self._positions.items()}

    def get_position(self, key: str) -> Optional[Position]:
        p = self._positions.get(key)
        return copy.deepcopy(p) if p else None

    def grids(self) -> Dict[str, GridState]:
        return {k: copy.deepcopy(g) for k, g in self._grids.items()}

    def get_grid(self, symbol: str) -> Optional[GridState]:
        g = self._grids.get(symbol.upper())
        return copy.deepcopy(g) if g else None

    def meta(self) -> Dict[str, Any]:
        return copy.deepcopy(self._meta)

    def get_meta(self, key: str, default: Any = None) -> Any:
        return copy.deepcopy(self._meta.get(key, default))

    def last_trade_at(self, key: str) -> Optional[int]:
        return self._last_trades.get(key)

    def strategy(self, symbol: str) -> Optional[Any]:
        return copy.deepcopy(self._strategies.get(symbol.upper()))

    # ── Field-scoped writes ──────────────────────────────────────────────

    def persist_position(self, key: str, position: Optional[Position]) -> None:
        """Store a position under key; None removes it."""
        if position is None:
            self._positions.pop(key, None)
        else:
            self._positions[key] = copy.deepcopy(position)
        self._flush()

    def persist_grid(self, symbol: str, grid: Optional[GridState]) -> None:
        symbol = symbol.upper()
        if grid is None:
            self._grids.pop(symbol, None)
        else:
            self._grids[symbol] = copy.deepcopy(grid)
        self._flush()

    def persist_meta(self, patch: Dict[str, Any]) -> None:
        """Shallow-merge patch into meta; keys mapped to None are removed."""
        for k, v in patch.items():
            if v is None:
                self._meta.pop(k, None)
            else:
                self._meta[k] = copy.deepcopy(v)
        self._flush()

    def persist_last_trade(self, key: str, at_ms: int) -> None:
        self._last_trades[key] = int(at_ms)
        self._flush()

    def persist_strategy(self, symbol: str, data: Any) -> None:
        self._strategies[symbol.upper()] = copy.deepcopy(data)
        self._flush()
