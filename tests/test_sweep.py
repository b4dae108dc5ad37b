"""
Tests for sweeping unused balances into the home asset.

Tests cover:
- Live sweep: market sells, missing pairs, dust filters
- Dry run (explicit and trading disabled)
- Protected assets: home, quotes, keep list, positions, running grids
- Failure paths and the futures guard
"""

import pytest

from autotrader.execution.sweep import (
    ERROR,
    PLACED,
    SIMULATED,
    SKIPPED,
    SweepConfig,
    SweepService,
    find_direct_pair,
)
from autotrader.gateway.types import MARKET, SELL, GatewayError, SymbolInfo
from autotrader.state.models import GRID_ERROR, GRID_RUNNING, GRID_STOPPED, GridPerformance, GridState

from conftest import make_position


@pytest.fixture
def sweeper(gateway, store, ledger, clock):
    gateway.set_balance("BTC", 0.5)
    gateway.set_balance("DOGE", 100.0)
    gateway.set_balance("ETH", 0.1)
    return SweepService(gateway, store, ledger, SweepConfig(trading_enabled=True), clock=clock)


def grid_on(symbol, base, status):
    return GridState(symbol, status, base, "USDC", "USDC", 95.0, 105.0, 2, [95.0, 105.0], 50.0, 100.0, GridPerformance())


def by_asset(result):
    return {a.asset: a for a in result.actions}


class TestSweep:
    @pytest.mark.asyncio
    async def test_live_sweep(self, sweeper, gateway, ledger):
        result = await sweeper.sweep_unused()

        assert result.ok is True
        assert result.dry_run is False
        actions = by_asset(result)
        assert [a.asset for a in result.actions] == ["BTC", "DOGE", "ETH"]
        assert actions["BTC"].status == PLACED
        assert actions["BTC"].requested_qty == 0.5
        assert actions["DOGE"].reason == "No direct DOGEUSDC market"
        assert actions["ETH"].reason == "Dust: notional 2.00000000 below minNotional 5.0"
        assert gateway.placed[0].symbol == "BTCUSDC"
        assert gateway.placed[0].side == SELL
        assert gateway.placed[0].type == MARKET
        assert result.still_held == 2
        assert result.summary == {"placed": 1, "skipped": 2, "errored": 0, "still_held": 2}

        decisions = await ledger.list_decisions(module="sweep")
        assert decisions[0].action == PLACED
        assert decisions[0].details["placed"] == 1

    @pytest.mark.asyncio
    async def test_dry_run_places_nothing(self, sweeper, gateway, ledger):
        result = await sweeper.sweep_unused(dry_run=True)

        assert result.dry_run is True
        assert by_asset(result)["BTC"].status == SIMULATED
        assert gateway.placed == []
        assert result.still_held == 3
        assert (await ledger.list_decisions())[0].action == SIMULATED

    @pytest.mark.asyncio
    async def test_trading_disabled_forces_dry_run(self, gateway, store):
        gateway.set_balance("BTC", 0.5)
        result = await SweepService(gateway, store).sweep_unused()
        assert result.dry_run is True
        assert gateway.placed == []

    @pytest.mark.asyncio
    async def test_step_dust(self, sweeper, gateway):
        gateway.set_balance("BTC", 0.000004)
        action = by_asset(await sweeper.sweep_unused())["BTC"]
        assert action.status == SKIPPED
        assert action.reason.startswith("Dust: qty 4e-06 rounds to 0")

    @pytest.mark.asyncio
    async def test_locked_only_balance(self, sweeper, gateway):
        gateway.set_balance("BTC", 0.0, 0.5)
        result = await sweeper.sweep_unused()
        assert by_asset(result)["BTC"].reason == "No free balance (locked=0.5)"
        assert result.still_held == 3

    @pytest.mark.asyncio
    async def test_order_failure(self, sweeper, gateway):
        gateway.fail["place_order"] = GatewayError("Insufficient balance")
        result = await sweeper.sweep_unused()
        assert by_asset(result)["BTC"].status == ERROR
        assert by_asset(result)["BTC"].reason == "Insufficient balance"
        assert result.summary["errored"] == 1


class TestProtection:
    @pytest.mark.asyncio
    async def test_quotes_kept_unless_disabled(self, sweeper, gateway):
        gateway.set_balance("USDT", 50.0)
        kept = await sweeper.sweep_unused(dry_run=True)
        assert "USDT" not in by_asset(kept)
        assert "USDC" not in by_asset(kept)

        swept = await sweeper.sweep_unused(dry_run=True, keep_allowed_quotes=False)
        assert by_asset(swept)["USDT"].reason == "No direct USDTUSDC market"

    @pytest.mark.asyncio
    async def test_keep_list(self, sweeper):
        result = await sweeper.sweep_unused(dry_run=True, keep_assets=["doge"])
        assert "DOGE" not in by_asset(result)
        assert "DOGE" in result.protected_assets

    @pytest.mark.asyncio
    async def test_position_assets(self, sweeper, store):
        store.persist_position("ETHUSDC:short", make_position("ETHUSDC", base="ETH"))
        assert "ETH" not in by_asset(await sweeper.sweep_unused(dry_run=True))
        assert "ETH" in by_asset(await sweeper.sweep_unused(dry_run=True, keep_position_assets=False))

    @pytest.mark.asyncio
    async def test_running_grid_assets(self, sweeper, store):
        store.persist_grid("BTCUSDC", grid_on("BTCUSDC", "BTC", GRID_RUNNING))
        store.persist_grid("ETHUSDC", grid_on("ETHUSDC", "ETH", GRID_STOPPED))

        actions = by_asset(await sweeper.sweep_unused(dry_run=True))

        assert "BTC" not in actions
        assert "ETH" in actions

    @pytest.mark.asyncio
    async def test_errored_grid_with_ladder_keeps_assets(self, sweeper, store):
        store.persist_grid("BTCUSDC", grid_on("BTCUSDC", "BTC", GRID_ERROR))
        assert "BTC" not in by_asset(await sweeper.sweep_unused(dry_run=True))


class TestFailures:
    @pytest.mark.asyncio
    async def test_futures_venue(self, gateway, store):
        result = await SweepService(gateway, store, config=SweepConfig(venue="futures")).sweep_unused()
        assert result.ok is False
        assert result.error == "Sweep-unused is only available in spot mode."

    @pytest.mark.asyncio
    async def test_balances_failure(self, sweeper, gateway):
        gateway.fail["get_balances"] = GatewayError("down")
        result = await sweeper.sweep_unused()
        assert result.error == "Failed to fetch balances: down"

    @pytest.mark.asyncio
    async def test_no_balances(self, gateway, store):
        gateway.free.clear()
        gateway.locked.clear()
        result = await SweepService(gateway, store).sweep_unused()
        assert result.error == "No balances returned. Check API key permissions."

    @pytest.mark.asyncio
    async def test_symbols_failure(self, sweeper, gateway):
        gateway.fail["get_symbols"] = GatewayError("503")
        result = await sweeper.sweep_unused()
        assert result.error == "Failed to fetch symbols: 503"


class TestDirectPair:
    def test_matches_base_and_quote(self):
        infos = [
            SymbolInfo("USDCUSDT", "USDC", "USDT"),
            SymbolInfo("BTCUSDC", "BTC", "USDC", status="BREAK"),
        ]
        assert find_direct_pair(infos, "usdc", "usdt").symbol == "USDCUSDT"
        assert find_direct_pair(infos, "USDT", "USDC") is None
        assert find_direct_pair(infos, "BTC", "USDC") is None
