"""Shared test fixtures."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from unittest.mock import patch

import pytest

from slicer.collaborators.paper import (
    PaperPriceSource,
    PaperSwapVenue,
    PaperToken,
    PaperWrapper,
)
from slicer.config.settings import Settings
from slicer.core.models import RATE_SCALE
from slicer.portfolio.rebalance import RebalanceConfig
from slicer.portfolio.slice import Slice

OWNER = "0x" + "0a" * 20
USER = "0x" + "0b" * 20
OTHER = "0x" + "0c" * 20
PROVIDER = "0x" + "0d" * 20

# Pool depth per side, deep enough that price impact is negligible
POOL_DEPTH = 10**30


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class Market:
    """A slice wired to paper tokens, wrappers, price sources and a venue."""

    clock: FakeClock
    base: PaperToken
    venue: PaperSwapVenue
    slice: Slice
    tokens: list[PaperToken] = field(default_factory=list)
    wrappers: list[PaperWrapper] = field(default_factory=list)
    feeds: list[PaperPriceSource] = field(default_factory=list)

    def add_asset(
        self, symbol: str, price: int = RATE_SCALE, unlock_duration: float = 0
    ) -> PaperWrapper:
        """Create an asset, its wrapper and its price source (not registered)."""
        token = PaperToken(symbol, clock=self.clock)
        wrapper = PaperWrapper(token, unlock_duration=unlock_duration, clock=self.clock)
        feed = PaperPriceSource(price, clock=self.clock)
        self.tokens.append(token)
        self.wrappers.append(wrapper)
        self.feeds.append(feed)
        return wrapper

    async def setup(self, percentages: list[int], with_pools: bool = True) -> None:
        """Register one allocation per percentage, creating assets as needed."""
        for i, pct in enumerate(percentages):
            if i >= len(self.wrappers):
                self.add_asset(f"TK{i}")
            await self.slice.add_allocation(OWNER, self.wrappers[i], self.feeds[i], pct)
            if with_pools:
                await self.add_pool(i)

    async def add_pool(self, index: int, depth: int = POOL_DEPTH) -> None:
        """Pool the asset against the base currency at its feed price."""
        token = self.tokens[index]
        reading = await self.feeds[index].latest_price()
        base_amount = depth * reading.value // reading.scale
        token.mint(PROVIDER, depth)
        self.base.mint(PROVIDER, base_amount)
        await self.venue.add_liquidity(token, depth, self.base, base_amount, PROVIDER)

    async def fund(self, index: int, holder: str, amount: int) -> None:
        """Give `holder` underlying and approve the slice to pull it."""
        self.tokens[index].mint(holder, amount)
        await self.tokens[index].approve(holder, self.slice.address, amount)

    async def deposit(self, index: int, amount: int, holder: str = USER) -> int:
        await self.fund(index, holder, amount)
        return await self.slice.deposit(self.wrappers[index].address, amount, holder)

    async def value_of(self, index: int) -> int:
        return await self.slice.valuator.value_of(self.wrappers[index].address)


@pytest.fixture
def clock() -> FakeClock:
    """Create a fake clock for testing."""
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    """Create default settings isolated from the environment."""
    with patch.dict(os.environ, {}, clear=True):
        return Settings(_env_file=None)


@pytest.fixture
def market(clock: FakeClock, settings: Settings) -> Market:
    """Create an empty slice with a base currency and a swap venue."""
    base = PaperToken("USDC", clock=clock)
    venue = PaperSwapVenue(fee_bps=30, clock=clock)
    slice_ = Slice(
        OWNER,
        venue,
        base,
        name="BuildingSlice",
        symbol="sBLD",
        settings=settings,
        config=RebalanceConfig(slippage_bps=50),
        clock=clock,
    )
    return Market(clock=clock, base=base, venue=venue, slice=slice_)


@pytest.fixture
def owner() -> str:
    return OWNER


@pytest.fixture
def user() -> str:
    return USER


@pytest.fixture
def other() -> str:
    return OTHER
