"""
Environment-driven configuration with validation.

All variables use the AT_ prefix. A .env file in the working directory is
loaded first (python-dotenv); real environment variables win.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

from autotrader.core.json_utils import dumps

log = logging.getLogger("autotrader")

VENUES = ("spot", "futures")
BREAKOUT_ACTIONS = ("none", "cancel", "cancel_and_liquidate")
HORIZONS = ("short", "medium", "long")


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None or val == "":
        return default
    return val.strip().lower() in {"1", "true", "yes", "y", "on"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return float(raw)


def _list_env(key: str, default: Optional[List[str]] = None) -> List[str]:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return list(default or [])
    return [item.strip().upper() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    # General
    home_asset: str = "USDC"
    trade_venue: str = "spot"
    trading_enabled: bool = False
    auto_trade_enabled: bool = True
    portfolio_enabled: bool = True
    default_symbol: str = "BTCUSDC"
    quote_assets: List[str] = field(default_factory=lambda: ["USDC", "USDT"])
    blacklist_symbols: List[str] = field(default_factory=list)
    loop_interval_sec: float = 30.0
    fee_maker: float = 0.001
    fee_taker: float = 0.001

    # Risk governor
    risk_governor_enabled: bool = True
    risk_min_state_seconds: int = 900
    risk_halt_min_seconds: int = 3600
    risk_drawdown_caution_pct: float = 1.5
    risk_drawdown_halt_pct: float = 3.0
    risk_fee_burn_caution_pct: float = 0.25
    risk_fee_burn_halt_pct: float = 0.5
    risk_trend_adx_on: float = 25.0
    risk_trend_adx_off: float = 18.0
    risk_window_minutes: int = 360
    risk_trend_interval: str = "1h"
    equity_snapshot_interval_sec: int = 60

    # Grid engine
    grid_enabled: bool = False
    grid_levels: int = 12
    grid_min_step_pct: float = 0.3
    grid_min_range_pct: float = 2.0
    grid_max_range_pct: float = 20.0
    grid_max_trend_ratio: float = 0.6
    grid_kline_interval: str = "1h"
    grid_kline_limit: int = 168
    grid_gap_bps: float = 15.0
    grid_breakout_buffer_pct: float = 0.5
    grid_breakout_action: str = "cancel"
    grid_bootstrap_base_pct: float = 50.0
    grid_max_new_orders_per_tick: int = 4
    grid_max_alloc_pct: float = 30.0
    grid_max_active_grids: int = 2
    grid_rebalance_seconds: int = 60
    grid_symbols: List[str] = field(default_factory=list)
    grid_auto_discover: bool = True
    grid_atr_pct_max: float = 6.0
    min_quote_volume: float = 5_000_000.0
    universe_max_symbols: int = 40

    # Position lifecycle / auto trade
    portfolio_max_alloc_pct: float = 50.0
    portfolio_max_positions: int = 3
    auto_trade_min_confidence: float = 0.65
    auto_trade_cooldown_minutes: float = 60.0
    auto_trade_horizon: Optional[str] = None
    risk_off_sentiment: float = -0.5
    slippage_bps: float = 10.0
    conversion_enabled: bool = True
    oco_enabled: bool = True
    oco_reconcile_minutes: float = 10.0

    # Persistence
    state_path: str = "state/autotrader_state.json"
    ledger_path: str = "state/autotrader.sqlite"

    # Fill sync
    sync_queue_max: int = 500
    sync_concurrency: int = 2
    sync_debounce_ms: int = 1000
    missing_queue_max: int = 2000
    missing_checks_per_tick: int = 20
    missing_max_attempts: int = 3
    rate_cache_ttl_sec: float = 30.0

    # Observability / market data
    metrics_enabled: bool = True
    log_level: str = "INFO"
    log_file: Optional[str] = "autotrader.log"
    market_data_base_url: str = "https://api.binance.com"
    http_timeout: float = 5.0

    def dump(self) -> dict:
        """Return a dict of settings for sanity checks/logging."""
        return self.__dict__.copy()

    @classmethod
    def load(cls) -> "Settings":
        load_dotenv()
        horizon = (os.getenv("AT_AUTO_TRADE_HORIZON") or "").strip().lower() or None
        log_file = os.getenv("AT_LOG_FILE", "autotrader.log")
        cfg = cls(
            home_asset=os.getenv("AT_HOME_ASSET", "USDC").strip().upper(),
            trade_venue=os.getenv("AT_TRADE_VENUE", "spot").strip().lower(),
            trading_enabled=env_bool("AT_TRADING_ENABLED", False),
            auto_trade_enabled=env_bool("AT_AUTO_TRADE_ENABLED", True),
            portfolio_enabled=env_bool("AT_PORTFOLIO_ENABLED", True),
            default_symbol=os.getenv("AT_DEFAULT_SYMBOL", "BTCUSDC").strip().upper(),
            quote_assets=_list_env("AT_QUOTE_ASSETS", ["USDC", "USDT"]),
            blacklist_symbols=_list_env("AT_BLACKLIST_SYMBOLS"),
            loop_interval_sec=_float_env("AT_LOOP_INTERVAL_SEC", 30.0),
            fee_maker=_float_env("AT_FEE_MAKER", 0.001),
            fee_taker=_float_env("AT_FEE_TAKER", 0.001),
            risk_governor_enabled=env_bool("AT_RISK_GOVERNOR_ENABLED", True),
            risk_min_state_seconds=_int_env("AT_RISK_MIN_STATE_SECONDS", 900),
            risk_halt_min_seconds=_int_env("AT_RISK_HALT_MIN_SECONDS", 3600),
            risk_drawdown_caution_pct=_float_env("AT_RISK_DRAWDOWN_CAUTION_PCT", 1.5),
            risk_drawdown_halt_pct=_float_env("AT_RISK_DRAWDOWN_HALT_PCT", 3.0),
            risk_fee_burn_caution_pct=_float_env("AT_RISK_FEE_BURN_CAUTION_PCT", 0.25),
            risk_fee_burn_halt_pct=_float_env("AT_RISK_FEE_BURN_HALT_PCT", 0.5),
            risk_trend_adx_on=_float_env("AT_RISK_TREND_ADX_ON", 25.0),
            risk_trend_adx_off=_float_env("AT_RISK_TREND_ADX_OFF", 18.0),
            risk_window_minutes=_int_env("AT_RISK_WINDOW_MINUTES", 360),
            risk_trend_interval=os.getenv("AT_RISK_TREND_INTERVAL", "1h"),
            equity_snapshot_interval_sec=_int_env("AT_EQUITY_SNAPSHOT_INTERVAL_SEC", 60),
            grid_enabled=env_bool("AT_GRID_ENABLED", False),
            grid_levels=_int_env("AT_GRID_LEVELS", 12),
            grid_min_step_pct=_float_env("AT_GRID_MIN_STEP_PCT", 0.3),
            grid_min_range_pct=_float_env("AT_GRID_MIN_RANGE_PCT", 2.0),
            grid_max_range_pct=_float_env("AT_GRID_MAX_RANGE_PCT", 20.0),
            grid_max_trend_ratio=_float_env("AT_GRID_MAX_TREND_RATIO", 0.6),
            grid_kline_interval=os.getenv("AT_GRID_KLINE_INTERVAL", "1h"),
            grid_kline_limit=_int_env("AT_GRID_KLINE_LIMIT", 168),
            grid_gap_bps=_float_env("AT_GRID_GAP_BPS", 15.0),
            grid_breakout_buffer_pct=_float_env("AT_GRID_BREAKOUT_BUFFER_PCT", 0.5),
            grid_breakout_action=os.getenv("AT_GRID_BREAKOUT_ACTION", "cancel").strip().lower(),
            grid_bootstrap_base_pct=_float_env("AT_GRID_BOOTSTRAP_BASE_PCT", 50.0),
            grid_max_new_orders_per_tick=_int_env("AT_GRID_MAX_NEW_ORDERS_PER_TICK", 4),
            grid_max_alloc_pct=_float_env("AT_GRID_MAX_ALLOC_PCT", 30.0),
            grid_max_active_grids=_int_env("AT_GRID_MAX_ACTIVE_GRIDS", 2),
            grid_rebalance_seconds=_int_env("AT_GRID_REBALANCE_SECONDS", 60),
            grid_symbols=_list_env("AT_GRID_SYMBOLS"),
            grid_auto_discover=env_bool("AT_GRID_AUTO_DISCOVER", True),
            grid_atr_pct_max=_float_env("AT_GRID_ATR_PCT_MAX", 6.0),
            min_quote_volume=_float_env("AT_MIN_QUOTE_VOLUME", 5_000_000.0),
            universe_max_symbols=_int_env("AT_UNIVERSE_MAX_SYMBOLS", 40),
            portfolio_max_alloc_pct=_float_env("AT_PORTFOLIO_MAX_ALLOC_PCT", 50.0),
            portfolio_max_positions=_int_env("AT_PORTFOLIO_MAX_POSITIONS", 3),
            auto_trade_min_confidence=_float_env("AT_AUTO_TRADE_MIN_CONFIDENCE", 0.65),
            auto_trade_cooldown_minutes=_float_env("AT_AUTO_TRADE_COOLDOWN_MINUTES", 60.0),
            auto_trade_horizon=horizon,
            risk_off_sentiment=_float_env("AT_RISK_OFF_SENTIMENT", -0.5),
            slippage_bps=_float_env("AT_SLIPPAGE_BPS", 10.0),
            conversion_enabled=env_bool("AT_CONVERSION_ENABLED", True),
            oco_enabled=env_bool("AT_OCO_ENABLED", True),
            oco_reconcile_minutes=_float_env("AT_OCO_RECONCILE_MINUTES", 10.0),
            state_path=os.getenv("AT_STATE_PATH", "state/autotrader_state.json"),
            ledger_path=os.getenv("AT_LEDGER_PATH", "state/autotrader.sqlite"),
            sync_queue_max=_int_env("AT_SYNC_QUEUE_MAX", 500),
            sync_concurrency=_int_env("AT_SYNC_CONCURRENCY", 2),
            sync_debounce_ms=_int_env("AT_SYNC_DEBOUNCE_MS", 1000),
            missing_queue_max=_int_env("AT_MISSING_QUEUE_MAX", 2000),
            missing_checks_per_tick=_int_env("AT_MISSING_CHECKS_PER_TICK", 20),
            missing_max_attempts=_int_env("AT_MISSING_MAX_ATTEMPTS", 3),
            rate_cache_ttl_sec=_float_env("AT_RATE_CACHE_TTL_SEC", 30.0),
            metrics_enabled=env_bool("AT_METRICS_ENABLED", True),
            log_level=os.getenv("AT_LOG_LEVEL", "INFO"),
            log_file=log_file or None,
            market_data_base_url=os.getenv("AT_MARKET_DATA_BASE_URL", "https://api.binance.com"),
            http_timeout=_float_env("AT_HTTP_TIMEOUT", 5.0),
        )
        _sanity_check(cfg)
        cfg._validate()
        return cfg

    def _validate(self) -> None:
        if self.trade_venue not in VENUES:
            raise ValueError(f"AT_TRADE_VENUE must be one of {VENUES}")
        if not self.home_asset:
            raise ValueError("AT_HOME_ASSET must be set")
        if self.grid_breakout_action not in BREAKOUT_ACTIONS:
            raise ValueError(f"AT_GRID_BREAKOUT_ACTION must be one of {BREAKOUT_ACTIONS}")
        if self.auto_trade_horizon is not None and self.auto_trade_horizon not in HORIZONS:
            raise ValueError(f"AT_AUTO_TRADE_HORIZON must be one of {HORIZONS}")
        if self.grid_levels < 2:
            raise ValueError("AT_GRID_LEVELS must be >= 2")
        if self.grid_min_range_pct <= 0 or self.grid_max_range_pct <= self.grid_min_range_pct:
            raise ValueError("AT_GRID_MIN_RANGE_PCT must be > 0 and < AT_GRID_MAX_RANGE_PCT")
        if self.grid_max_new_orders_per_tick <= 0:
            raise ValueError("AT_GRID_MAX_NEW_ORDERS_PER_TICK must be > 0")
        for key, pct in (
            ("AT_GRID_MAX_ALLOC_PCT", self.grid_max_alloc_pct),
            ("AT_GRID_BOOTSTRAP_BASE_PCT", self.grid_bootstrap_base_pct),
            ("AT_PORTFOLIO_MAX_ALLOC_PCT", self.portfolio_max_alloc_pct),
        ):
            if pct < 0 or pct > 100:
                raise ValueError(f"{key} must be within 0..100")
        if self.risk_drawdown_halt_pct < self.risk_drawdown_caution_pct:
            raise ValueError("AT_RISK_DRAWDOWN_HALT_PCT must be >= AT_RISK_DRAWDOWN_CAUTION_PCT")
        if self.risk_fee_burn_halt_pct < self.risk_fee_burn_caution_pct:
            raise ValueError("AT_RISK_FEE_BURN_HALT_PCT must be >= AT_RISK_FEE_BURN_CAUTION_PCT")
        if self.risk_trend_adx_off > self.risk_trend_adx_on:
            raise ValueError("AT_RISK_TREND_ADX_OFF must be <= AT_RISK_TREND_ADX_ON")
        if self.sync_concurrency <= 0 or self.sync_queue_max <= 0 or self.missing_queue_max <= 0:
            raise ValueError("Fill sync limits must be > 0")
        if self.loop_interval_sec <= 0:
            raise ValueError("AT_LOOP_INTERVAL_SEC must be > 0")
        if not 0 <= self.auto_trade_min_confidence <= 1:
            raise ValueError("AT_AUTO_TRADE_MIN_CONFIDENCE must be within 0..1")

        if self.trading_enabled and not self.risk_governor_enabled:
            log.warning(dumps({
                "event": "config_warning",
                "msg": "AT_TRADING_ENABLED=true with the risk governor disabled",
            }))


def _sanity_check(cfg: Settings) -> None:
    log.info(dumps({"event": "config_loaded", **cfg.dump()}))
