"""Tests for the Slice portfolio facade."""

from __future__ import annotations

import asyncio
import os
from unittest.mock import patch

import pytest

from slicer.collaborators.paper import PaperSwapVenue, PaperToken
from slicer.config.settings import Settings
from slicer.core.exceptions import (
    ConfigurationError,
    NotFoundError,
    PriceUnavailableError,
    ReentrancyError,
    UnauthorizedError,
)
from slicer.core.models import (
    RATE_SCALE,
    ZERO_ADDRESS,
    AllocationAdded,
    AllocationPercentageChanged,
    AllocationRemoved,
)
from slicer.portfolio.slice import Slice


class TestSliceMetadata:
    """Tests for Slice construction."""

    def test_share_metadata(self, market) -> None:
        slice_ = market.slice
        assert slice_.name == "BuildingSlice"
        assert slice_.symbol == "sBLD"
        assert slice_.decimals == 18
        assert slice_.address == slice_.shares.address
        assert slice_.base_token is market.base

    def test_generated_addresses_are_unique(self, settings: Settings) -> None:
        venue = PaperSwapVenue()
        base = PaperToken("USDC")
        a = Slice("owner", venue, base, settings=settings)
        b = Slice("owner", venue, base, settings=settings)
        assert a.address != b.address
        assert a.metadata_uri == ""


class TestAllocationAdmin:
    """Tests for owner-only allocation management."""

    @pytest.mark.asyncio
    async def test_add_two_then_oversubscribe(self, market, owner: str) -> None:
        """Test 4000 + 6000 are listed and a further 1 bps is rejected."""
        await market.setup([4000, 6000], with_pools=False)

        allocations = market.slice.allocations()
        assert [a.target_percentage for a in allocations] == [4000, 6000]

        z = market.add_asset("Z")
        with pytest.raises(ConfigurationError):
            await market.slice.add_allocation(owner, z, market.feeds[-1], 1)
        assert len(market.slice.allocations()) == 2

        added = market.slice.events.of_type(AllocationAdded)
        assert [e.target_percentage for e in added] == [4000, 6000]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("pct", [0, 10_000])
    async def test_invalid_percentage_leaves_count(self, market, owner: str, pct: int) -> None:
        wrapper = market.add_asset("X")

        with pytest.raises(ConfigurationError):
            await market.slice.add_allocation(owner, wrapper, market.feeds[0], pct)
        assert market.slice.allocations() == []
        assert market.slice.events.history == []

    @pytest.mark.asyncio
    async def test_only_owner(self, market, user: str) -> None:
        """Test non-owners cannot manage allocations."""
        wrapper = market.add_asset("X")

        with pytest.raises(UnauthorizedError):
            await market.slice.add_allocation(user, wrapper, market.feeds[0], 1000)

        await market.setup([1000], with_pools=False)
        with pytest.raises(PermissionError):
            await market.slice.set_allocation_percentage(user, wrapper.address, 2000)
        with pytest.raises(UnauthorizedError):
            await market.slice.remove_allocation(user, wrapper.address)
        assert market.slice.get_allocation(wrapper.address).target_percentage == 1000

    @pytest.mark.asyncio
    async def test_set_percentage_emits_change(self, market, owner: str) -> None:
        await market.setup([4000, 6000], with_pools=False)
        wrapper = market.wrappers[1].address

        await market.slice.set_allocation_percentage(owner, wrapper, 5000)

        [event] = market.slice.events.of_type(AllocationPercentageChanged)
        assert event.wrapper == wrapper
        assert (event.old_percentage, event.new_percentage) == (6000, 5000)
        assert market.slice.get_allocation(wrapper).target_percentage == 5000

    @pytest.mark.asyncio
    async def test_remove_allocation(self, market, owner: str) -> None:
        """Test removal of an empty allocation and index fixup."""
        await market.setup([1000, 2000, 3000], with_pools=False)
        a, b, c = (w.address for w in market.wrappers)

        await market.slice.remove_allocation(owner, a)

        assert [al.wrapper for al in market.slice.allocations()] == [c, b]
        assert market.slice.get_allocation(a).wrapper == ZERO_ADDRESS
        assert market.slice.get_allocation(c).target_percentage == 3000
        [event] = market.slice.events.of_type(AllocationRemoved)
        assert event.wrapper == a

        with pytest.raises(NotFoundError):
            await market.slice.remove_allocation(owner, a)

    @pytest.mark.asyncio
    async def test_remove_held_allocation_fails(self, market, owner: str, user: str) -> None:
        """Test an allocation still holding wrapper shares cannot be removed."""
        await market.setup([5000], with_pools=False)
        await market.deposit(0, 100)
        wrapper = market.wrappers[0].address

        with pytest.raises(ConfigurationError, match="still holds"):
            await market.slice.remove_allocation(owner, wrapper)

        await market.slice.withdraw(100, user)
        await market.slice.remove_allocation(owner, wrapper)
        assert market.slice.allocations() == []

    @pytest.mark.asyncio
    async def test_max_allocations(self, market, owner: str) -> None:
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings(_env_file=None, max_allocations=2)
        slice_ = Slice(owner, market.venue, market.base, settings=settings, clock=market.clock)
        for symbol in ("A", "B", "C"):
            market.add_asset(symbol)

        await slice_.add_allocation(owner, market.wrappers[0], market.feeds[0], 1000)
        await slice_.add_allocation(owner, market.wrappers[1], market.feeds[1], 1000)
        with pytest.raises(ConfigurationError, match="limit"):
            await slice_.add_allocation(owner, market.wrappers[2], market.feeds[2], 1000)

    @pytest.mark.asyncio
    async def test_price_feed_lookup(self, market) -> None:
        await market.setup([5000], with_pools=False)

        assert market.slice.price_feed(market.tokens[0].address) == market.feeds[0].address
        assert market.slice.price_feed(market.base.address) == ZERO_ADDRESS

    @pytest.mark.asyncio
    async def test_latest_price(self, market) -> None:
        """Test reading an asset's price through its allocation's feed."""
        await market.setup([5000], with_pools=False)
        market.feeds[0].set_price(2 * RATE_SCALE)

        reading = await market.slice.latest_price(market.tokens[0].address)
        assert reading.value == 2 * RATE_SCALE

        market.feeds[0].set_price(0)
        with pytest.raises(PriceUnavailableError):
            await market.slice.latest_price(market.tokens[0].address)

        with pytest.raises(NotFoundError):
            await market.slice.latest_price(market.base.address)


class TestShareSurface:
    """Tests for the portfolio share token surface."""

    @pytest.mark.asyncio
    async def test_transfer_and_allowance(self, market, user: str, other: str) -> None:
        await market.setup([5000], with_pools=False)
        await market.deposit(0, 1000)

        await market.slice.transfer(user, other, 300)
        await market.slice.approve(other, user, 100)
        await market.slice.transfer_from(user, other, user, 100)

        assert await market.slice.balance_of(user) == 800
        assert await market.slice.balance_of(other) == 200
        assert await market.slice.allowance(other, user) == 0
        assert await market.slice.total_supply() == 1000

    @pytest.mark.asyncio
    async def test_transferred_shares_withdraw(self, market, user: str, other: str) -> None:
        """Test any holder of shares can redeem them."""
        await market.setup([5000], with_pools=False)
        await market.deposit(0, 1000)
        await market.slice.transfer(user, other, 250)

        withdrawn = await market.slice.withdraw(250, other)

        assert withdrawn[0].underlying_amount == 250
        assert await market.tokens[0].balance_of(other) == 250


class TestConcurrency:
    """Tests for serialization and re-entrancy protection."""

    @pytest.mark.asyncio
    async def test_concurrent_deposits_serialize(self, market, user: str, other: str) -> None:
        await market.setup([5000], with_pools=False)
        wrapper = market.wrappers[0].address
        await market.fund(0, user, 500)
        await market.fund(0, other, 700)

        await asyncio.gather(
            market.slice.deposit(wrapper, 500, user),
            market.slice.deposit(wrapper, 700, other),
        )

        assert await market.slice.total_supply() == 1200
        assert await market.wrappers[0].balance_of(market.slice.address) == 1200

    @pytest.mark.asyncio
    async def test_reentrant_collaborator_rejected(self, market, user: str, mocker) -> None:
        """Test a wrapper calling back into the slice mid-deposit is rejected."""
        await market.setup([5000], with_pools=False)
        await market.deposit(0, 100)
        wrapper = market.wrappers[0]

        async def reenter(amount, receiver, sender):
            await market.slice.withdraw(100, user)
            return amount

        mocker.patch.object(wrapper, "deposit", side_effect=reenter)
        await market.fund(0, user, 50)

        with pytest.raises(ReentrancyError):
            await market.slice.deposit(wrapper.address, 50, user)

        assert await market.slice.balance_of(user) == 100

    @pytest.mark.asyncio
    async def test_reentrant_subscriber_rejected(self, market) -> None:
        """Test an event subscriber cannot re-enter the emitting call."""
        errors = []

        async def reenter(event):
            try:
                await market.slice.total_value()
            except ReentrancyError as e:
                errors.append(e)

        market.slice.events.subscribe(reenter)
        await market.setup([5000], with_pools=False)

        assert len(errors) == 1

        # Outside of a call the slice is usable again
        assert await market.slice.total_value() == 0
