"""Paper simulation of a slice built from a YAML scenario."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal

from loguru import logger

from slicer.collaborators.paper import (
    PaperPriceSource,
    PaperSwapVenue,
    PaperToken,
    PaperWrapper,
)
from slicer.config.scenario import ScenarioConfig
from slicer.config.settings import Settings, get_settings
from slicer.core.models import RATE_SCALE, new_address
from slicer.portfolio.rebalance import RebalanceConfig, RebalanceResult
from slicer.portfolio.slice import Slice

TOKEN_DECIMALS = 18


def to_units(amount: float, decimals: int = TOKEN_DECIMALS) -> int:
    """Convert a whole-token amount to integer base units (floor)."""
    return int(Decimal(str(amount)) * 10**decimals)


def price_units(price: float) -> int:
    """Convert a display price to a RATE_SCALE-scaled reading."""
    return int(Decimal(str(price)) * RATE_SCALE)


def from_units(amount: int, decimals: int = TOKEN_DECIMALS) -> float:
    return amount / 10**decimals


@dataclass
class Simulation:
    """Slice wired to paper collaborators, plus the actors using it."""

    scenario: ScenarioConfig
    slice: Slice
    venue: PaperSwapVenue
    base_token: PaperToken
    owner: str
    depositor: str
    liquidity_provider: str
    tokens: dict[str, PaperToken] = field(default_factory=dict)
    wrappers: dict[str, PaperWrapper] = field(default_factory=dict)
    price_sources: dict[str, PaperPriceSource] = field(default_factory=dict)

    def symbol_of(self, wrapper: str) -> str:
        for symbol, w in self.wrappers.items():
            if w.address == wrapper:
                return symbol
        return wrapper

    def apply_price_changes(self) -> None:
        """Publish the scenario's price changes."""
        for symbol, price in self.scenario.price_changes.items():
            source = self.price_sources[symbol.upper()]
            source.set_price(price_units(price))
            logger.info(f"Price of {symbol.upper()} set to {price}")

    async def rebalance(self) -> RebalanceResult:
        return await self.slice.rebalance()


def _rebalance_config(scenario: ScenarioConfig, settings: Settings) -> RebalanceConfig:
    overrides = scenario.rebalance.model_dump(exclude_none=True)
    return replace(RebalanceConfig.from_settings(settings), **overrides)


async def build_simulation(
    scenario: ScenarioConfig, settings: Settings | None = None
) -> Simulation:
    """Create tokens, wrappers, prices and pools, then seed the slice.

    Each allocation gets a pool against the base currency priced at its
    scenario price, and the depositor's scenario deposit is made through
    the slice.
    """
    settings = settings or get_settings()

    owner = new_address("owner")
    depositor = new_address("depositor")
    provider = new_address("liquidity")

    base = PaperToken(scenario.base_symbol.upper(), decimals=TOKEN_DECIMALS)
    venue = PaperSwapVenue(fee_bps=scenario.swap_fee_bps)
    slice_ = Slice(
        owner,
        venue,
        base,
        name=scenario.name,
        symbol=scenario.symbol,
        metadata_uri=scenario.metadata_uri,
        settings=settings,
        config=_rebalance_config(scenario, settings),
    )
    sim = Simulation(
        scenario=scenario,
        slice=slice_,
        venue=venue,
        base_token=base,
        owner=owner,
        depositor=depositor,
        liquidity_provider=provider,
    )

    for alloc in scenario.allocations:
        symbol = alloc.symbol.upper()
        token = PaperToken(symbol, decimals=TOKEN_DECIMALS)
        wrapper = PaperWrapper(token, unlock_duration=alloc.unlock_duration)
        source = PaperPriceSource(price_units(alloc.price))

        sim.tokens[symbol] = token
        sim.wrappers[symbol] = wrapper
        sim.price_sources[symbol] = source

        await slice_.add_allocation(owner, wrapper, source, alloc.percentage)

        pool_amount = to_units(alloc.pool_liquidity)
        pool_base = to_units(alloc.pool_liquidity * alloc.price)
        token.mint(provider, pool_amount)
        base.mint(provider, pool_base)
        await venue.add_liquidity(token, pool_amount, base, pool_base, provider)

        deposit = to_units(alloc.deposit)
        if deposit > 0:
            token.mint(depositor, deposit)
            await token.approve(depositor, slice_.address, deposit)
            await slice_.deposit(wrapper.address, deposit, depositor)

    logger.info(
        f"Simulation '{scenario.name}' built with {len(scenario.allocations)} allocations"
    )
    return sim
