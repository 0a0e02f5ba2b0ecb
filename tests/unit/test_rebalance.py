"""Tests for portfolio rebalancing."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from slicer.collaborators.paper import PaperPriceSource, PaperWrapper
from slicer.core.exceptions import LockedError, SwapError
from slicer.core.models import (
    RATE_SCALE,
    ZERO_ADDRESS,
    Direction,
    Rebalanced,
    RebalanceSkipped,
)
from slicer.portfolio.calls import CallResult, ExternalCalls
from slicer.portfolio.rebalance import (
    RebalanceConfig,
    RebalanceOrder,
    RebalanceResult,
)

UNIT = 10**18


async def seed_80_20(market) -> None:
    """Target 40/60 but hold value at 80/20."""
    await market.setup([4000, 6000])
    await market.deposit(0, 800 * UNIT)
    await market.deposit(1, 200 * UNIT)


async def deviations(market) -> list[int]:
    snapshot = await market.slice.snapshot()
    return [abs(v.delta) for v in snapshot.entries]


class TestRebalanceConfig:
    """Tests for RebalanceConfig dataclass."""

    def test_defaults(self) -> None:
        config = RebalanceConfig()
        assert config.slippage_bps == 50
        assert config.swap_deadline_seconds == 300
        assert config.drift_threshold_bps == 0
        assert config.dry_run is False

    def test_invalid_slippage(self) -> None:
        with pytest.raises(ValueError, match="slippage_bps must be between"):
            RebalanceConfig(slippage_bps=10_000)

    def test_invalid_deadline(self) -> None:
        with pytest.raises(ValueError, match="swap_deadline_seconds must be positive"):
            RebalanceConfig(swap_deadline_seconds=0)

    def test_invalid_drift_threshold(self) -> None:
        with pytest.raises(ValueError, match="drift_threshold_bps must be between"):
            RebalanceConfig(drift_threshold_bps=-1)

    def test_negative_min_trade_value(self) -> None:
        with pytest.raises(ValueError, match="min_trade_value cannot be negative"):
            RebalanceConfig(min_trade_value=-1)

    def test_from_settings(self, settings) -> None:
        config = RebalanceConfig.from_settings(settings)
        assert config.slippage_bps == settings.slippage_bps
        assert config.swap_deadline_seconds == settings.swap_deadline_seconds


class TestRebalancePlan:
    """Tests for planning a rebalance from one snapshot."""

    @pytest.mark.asyncio
    async def test_plan_sources_and_sinks(self, market) -> None:
        """Test overweight allocations shed and underweight ones acquire."""
        await seed_80_20(market)

        plan = await market.slice.plan_rebalance()

        assert plan.total_value == 1000 * UNIT
        assert plan.needs_rebalance
        [source] = plan.sources
        [sink] = plan.sinks
        assert source.allocation.wrapper == market.wrappers[0].address
        assert source.value == 400 * UNIT
        assert source.current_bps == 8000
        assert source.target_bps == 4000
        assert source.drift_bps == 4000
        assert sink.allocation.wrapper == market.wrappers[1].address
        assert sink.value == 400 * UNIT
        assert sink.drift_bps == -4000

    @pytest.mark.asyncio
    async def test_plan_balanced_portfolio(self, market) -> None:
        await market.setup([4000, 6000])
        await market.deposit(0, 400 * UNIT)
        await market.deposit(1, 600 * UNIT)

        plan = await market.slice.plan_rebalance()

        assert not plan.needs_rebalance
        assert all(o.direction == Direction.HOLD for o in plan.orders)

    @pytest.mark.asyncio
    async def test_drift_threshold_holds(self, market) -> None:
        """Test drift below the threshold is not traded."""
        await seed_80_20(market)
        market.slice.engine.config = RebalanceConfig(drift_threshold_bps=5000)

        plan = await market.slice.plan_rebalance()

        assert not plan.needs_rebalance

    @pytest.mark.asyncio
    async def test_min_trade_value_holds(self, market) -> None:
        await seed_80_20(market)
        market.slice.engine.config = RebalanceConfig(min_trade_value=401 * UNIT)

        plan = await market.slice.plan_rebalance()

        assert not plan.needs_rebalance

    def test_order_drift(self) -> None:
        order = RebalanceOrder(
            allocation=MagicMock(),
            direction=Direction.ACQUIRE,
            value=10,
            current_bps=2000,
            target_bps=6000,
        )
        assert order.drift_bps == -4000


class TestRebalanceEngine:
    """Tests for RebalanceEngine."""

    @pytest.mark.asyncio
    async def test_converges_toward_target(self, market) -> None:
        """Test 80/20 against a 40/60 target moves close to 40/60."""
        await seed_80_20(market)
        a, b = (w.address for w in market.wrappers)

        result = await market.slice.rebalance()
        snapshot = await market.slice.snapshot()

        assert result.traded
        assert [e.direction for e in result.executed] == [Direction.SHED, Direction.ACQUIRE]
        assert result.skipped == []
        assert snapshot.weight_bps(a) < 8000
        assert snapshot.weight_bps(b) > 2000
        assert abs(snapshot.weight_bps(a) - 4000) <= 50
        assert abs(snapshot.weight_bps(b) - 6000) <= 50
        assert market.slice.events.of_type(Rebalanced) == result.executed

    @pytest.mark.asyncio
    async def test_shed_amounts(self, market) -> None:
        """Test the shed redeems exactly the excess and records swap amounts."""
        await seed_80_20(market)

        result = await market.slice.rebalance()
        shed, acquire = result.executed

        assert shed.wrapper == market.wrappers[0].address
        assert shed.amount_in == 400 * UNIT
        assert 0 < shed.amount_out < 400 * UNIT
        assert result.proceeds == shed.amount_out
        assert acquire.amount_in == shed.amount_out
        assert result.spent == acquire.amount_in
        assert result.base_leftover == 0
        assert await market.wrappers[0].balance_of(market.slice.address) == 400 * UNIT

    @pytest.mark.asyncio
    async def test_supply_unchanged(self, market, user: str) -> None:
        """Test rebalancing never mints or burns portfolio shares."""
        await seed_80_20(market)
        supply = await market.slice.total_supply()

        await market.slice.rebalance()

        assert await market.slice.total_supply() == supply
        assert await market.slice.balance_of(user) == supply

    @pytest.mark.asyncio
    async def test_second_pass_does_not_worsen(self, market) -> None:
        """Test consecutive passes never increase any allocation's deviation."""
        await seed_80_20(market)

        await market.slice.rebalance()
        before = await deviations(market)
        await market.slice.rebalance()
        after = await deviations(market)

        for prev, curr in zip(before, after):
            assert curr <= prev

    @pytest.mark.asyncio
    async def test_zero_value_is_noop(self, market) -> None:
        """Test rebalancing an empty portfolio changes nothing."""
        await market.setup([4000, 6000])
        history = market.slice.events.history

        result = await market.slice.rebalance()

        assert result.total_value == 0
        assert result.executed == []
        assert result.skipped == []
        assert result.aborted_reason is None
        assert market.slice.events.history == history
        assert await market.base.balance_of(market.slice.address) == 0

    @pytest.mark.asyncio
    async def test_no_allocations_is_noop(self, market) -> None:
        result = await market.slice.rebalance()
        assert result.executed == []
        assert result.plan is not None
        assert result.plan.orders == []

    @pytest.mark.asyncio
    async def test_dry_run(self, market) -> None:
        """Test dry run plans without trading."""
        await seed_80_20(market)
        market.slice.engine.config = RebalanceConfig(dry_run=True)

        result = await market.slice.rebalance()

        assert result.plan is not None
        assert result.plan.needs_rebalance
        assert result.executed == []
        assert await market.value_of(0) == 800 * UNIT

    @pytest.mark.asyncio
    async def test_locked_source_skipped(self, market) -> None:
        """Test a locked source is skipped with a notification and the pass continues."""
        market.add_asset("LCK", unlock_duration=3600)
        await seed_80_20(market)

        result = await market.slice.rebalance()

        assert result.executed == []
        shed_skip, acquire_skip = result.skipped
        assert shed_skip.wrapper == market.wrappers[0].address
        assert shed_skip.direction == Direction.SHED
        assert shed_skip.reason == "locked"
        assert acquire_skip.direction == Direction.ACQUIRE
        assert acquire_skip.reason == "no intermediate currency available"
        assert market.slice.events.of_type(RebalanceSkipped) == result.skipped
        assert await market.value_of(0) == 800 * UNIT

    @pytest.mark.asyncio
    async def test_locked_source_unlocks_later(self, market) -> None:
        market.add_asset("LCK", unlock_duration=3600)
        await seed_80_20(market)

        market.clock.advance(3600)
        market.feeds[0].set_price(RATE_SCALE)
        market.feeds[1].set_price(RATE_SCALE)
        result = await market.slice.rebalance()

        assert len(result.executed) == 2

    @pytest.mark.asyncio
    async def test_swap_failure_rewraps_underlying(self, market, mocker) -> None:
        """Test a failed shed swap puts the redeemed underlying back in the wrapper."""
        await seed_80_20(market)
        mocker.patch.object(market.venue, "swap", side_effect=SwapError("EXPIRED"))

        result = await market.slice.rebalance()

        assert result.executed == []
        assert result.skipped[0].direction == Direction.SHED
        assert "EXPIRED" in result.skipped[0].reason
        assert await market.wrappers[0].balance_of(market.slice.address) == 800 * UNIT
        assert await market.tokens[0].balance_of(market.slice.address) == 0
        assert await market.slice.total_value() == 1000 * UNIT

    @pytest.mark.asyncio
    async def test_withdraw_failure_skips(self, market, mocker) -> None:
        await seed_80_20(market)
        mocker.patch.object(
            market.wrappers[0], "withdraw", side_effect=LockedError("paused")
        )

        result = await market.slice.rebalance()

        assert result.executed == []
        assert "paused" in result.skipped[0].reason

    @pytest.mark.asyncio
    async def test_acquire_swap_failure_keeps_base(self, market, mocker) -> None:
        """Test base currency from a shed stays in the portfolio when the acquire fails."""
        await seed_80_20(market)
        real_swap = market.venue.swap
        calls = []

        async def flaky_swap(amount_in, min_out, path, receiver, deadline, sender):
            calls.append(path)
            if path[0] == market.base.address:
                raise SwapError("INSUFFICIENT_OUTPUT_AMOUNT")
            return await real_swap(amount_in, min_out, path, receiver, deadline, sender)

        mocker.patch.object(market.venue, "swap", side_effect=flaky_swap)

        result = await market.slice.rebalance()

        assert [e.direction for e in result.executed] == [Direction.SHED]
        assert result.skipped[0].direction == Direction.ACQUIRE
        assert result.base_leftover == result.proceeds > 0
        assert await market.base.balance_of(market.slice.address) == result.proceeds
        assert len(calls) == 2

        # Leftover base currency is deployed by the next pass
        mocker.stopall()
        again = await market.slice.rebalance()
        assert Direction.ACQUIRE in [e.direction for e in again.executed]
        assert again.base_leftover < result.base_leftover

    @pytest.mark.asyncio
    async def test_acquire_capped_by_deficit(self, market) -> None:
        """Test a cheap pool does not overbuy the sink's underlying."""
        market.add_asset("AAA")
        market.add_asset("BBB", price=RATE_SCALE // 2)
        await seed_80_20(market)
        # Pool trades BBB at half its reference price
        market.feeds[1].set_price(RATE_SCALE)

        before = await market.wrappers[1].balance_of(market.slice.address)
        result = await market.slice.rebalance()
        after = await market.wrappers[1].balance_of(market.slice.address)

        bought = after - before
        assert bought <= 400 * UNIT * 10_001 // 10_000
        assert bought >= 399 * UNIT
        assert result.base_leftover > 190 * UNIT

    @pytest.mark.asyncio
    async def test_bad_price_aborts_pass(self, market) -> None:
        """Test a non-positive price ends the pass before any trade."""
        await seed_80_20(market)
        market.feeds[1].set_price(0)

        result = await market.slice.rebalance()

        assert result.plan is None
        assert result.aborted_reason is not None
        assert "non-positive" in result.aborted_reason
        assert result.executed == []
        [skip] = result.skipped
        assert skip.wrapper == ZERO_ADDRESS
        assert skip.direction == Direction.HOLD
        assert await market.wrappers[0].balance_of(market.slice.address) == 800 * UNIT

    @pytest.mark.asyncio
    async def test_base_asset_allocation(self, market, owner: str, user: str) -> None:
        """Test an allocation whose underlying is the base currency needs no swap."""
        await market.setup([4000])
        base_wrapper = PaperWrapper(market.base, clock=market.clock)
        base_feed = PaperPriceSource(RATE_SCALE, clock=market.clock)
        await market.slice.add_allocation(owner, base_wrapper, base_feed, 6000)

        await market.deposit(0, 800 * UNIT)
        market.base.mint(user, 200 * UNIT)
        await market.base.approve(user, market.slice.address, 200 * UNIT)
        await market.slice.deposit(base_wrapper.address, 200 * UNIT, user)

        result = await market.slice.rebalance()

        shed, acquire = result.executed
        assert acquire.wrapper == base_wrapper.address
        assert acquire.amount_in == acquire.amount_out == shed.amount_out
        assert await market.base.balance_of(market.slice.address) == 0


    @pytest.mark.asyncio
    async def test_idle_base_reduces_shed(self, market) -> None:
        """Test base currency already held funds sinks before anything is shed."""
        await seed_80_20(market)
        market.base.mint(market.slice.address, 100 * UNIT)

        plan = await market.slice.plan_rebalance()

        assert plan.idle_base_value == 100 * UNIT
        assert plan.sources[0].value == 300 * UNIT
        assert plan.sinks[0].value == 400 * UNIT

    @pytest.mark.asyncio
    async def test_idle_base_covering_demand_holds_sources(self, market) -> None:
        await seed_80_20(market)
        market.base.mint(market.slice.address, 500 * UNIT)

        plan = await market.slice.plan_rebalance()

        assert plan.sources == []
        assert plan.orders[0].direction == Direction.HOLD
        assert plan.sinks[0].value == 400 * UNIT

    @pytest.mark.asyncio
    async def test_undersubscribed_targets_stay_claimable(self, market, user: str) -> None:
        """Test targets summing below 100% never strand value in base currency."""
        await market.setup([4000, 5000])
        await market.deposit(0, 500 * UNIT)
        await market.deposit(1, 500 * UNIT)

        plan = await market.slice.plan_rebalance()
        assert plan.needs_rebalance is False

        for _ in range(5):
            await market.slice.rebalance()
        assert await market.base.balance_of(market.slice.address) == 0

        await market.slice.withdraw(await market.slice.total_supply(), user)

        assert await market.slice.total_supply() == 0
        assert await market.base.balance_of(market.slice.address) == 0
        received = [await t.balance_of(user) for t in market.tokens]
        assert received == [500 * UNIT, 500 * UNIT]

    @pytest.mark.asyncio
    async def test_undersubscribed_shed_capped_by_demand(self, market, user: str) -> None:
        """Test an overweight source sheds only what the sinks can take."""
        await market.setup([4000, 5000])
        await market.deposit(0, 800 * UNIT)
        await market.deposit(1, 200 * UNIT)

        plan = await market.slice.plan_rebalance()
        [source] = plan.sources
        [sink] = plan.sinks
        assert sink.value == 300 * UNIT
        assert source.value == 300 * UNIT

        for _ in range(5):
            await market.slice.rebalance()
        await market.slice.withdraw(await market.slice.total_supply(), user)

        received = sum([await t.balance_of(user) for t in market.tokens])
        received += await market.base.balance_of(user)
        assert received >= 990 * UNIT
        assert await market.base.balance_of(market.slice.address) == 0
        for wrapper in market.wrappers:
            assert await wrapper.balance_of(market.slice.address) == 0


class TestExternalCalls:
    """Tests for the CallResult adapters."""

    @pytest.mark.asyncio
    async def test_failure_is_data(self) -> None:
        venue = MagicMock()
        venue.address = "0xvenue"
        venue.quote = AsyncMock(side_effect=SwapError("INSUFFICIENT_LIQUIDITY"))
        calls = ExternalCalls("0xholder", venue)

        result = await calls.quote(100, ["0xa", "0xb"])

        assert result.ok is False
        assert "INSUFFICIENT_LIQUIDITY" in result.error

    @pytest.mark.asyncio
    async def test_swap_min_out_uses_slippage(self) -> None:
        """Test the minimum output is the quote less the slippage tolerance."""
        venue = MagicMock()
        venue.address = "0xvenue"
        venue.quote = AsyncMock(return_value=10_000)
        venue.swap = AsyncMock(return_value=9_990)
        token = MagicMock()
        token.symbol = "TK"
        token.approve = AsyncMock(return_value=True)
        calls = ExternalCalls("0xholder", venue)

        result = await calls.swap(token, 500, ["0xa", "0xb"], slippage_bps=50, deadline=123)

        assert result == CallResult.success(9_990)
        token.approve.assert_awaited_once_with("0xholder", "0xvenue", 500)
        venue.swap.assert_awaited_once_with(
            500, 9_950, ["0xa", "0xb"], "0xholder", 123, "0xholder"
        )

    @pytest.mark.asyncio
    async def test_zero_quote_fails(self) -> None:
        venue = MagicMock()
        venue.quote = AsyncMock(return_value=0)
        calls = ExternalCalls("0xholder", venue)

        result = await calls.swap(MagicMock(), 1, ["0xa", "0xb"], 50, 0)

        assert result == CallResult.failure("quote returned zero output")

    @pytest.mark.asyncio
    async def test_is_unlocked(self) -> None:
        wrapper = MagicMock()
        wrapper.is_unlocked = AsyncMock(return_value=False)
        calls = ExternalCalls("0xholder", MagicMock())

        assert (await calls.is_unlocked(wrapper)).error == "locked"

        wrapper.is_unlocked = AsyncMock(return_value=True)
        assert (await calls.is_unlocked(wrapper)).ok


class TestRebalanceResult:
    def test_empty_result(self) -> None:
        result = RebalanceResult(plan=None, aborted_reason="feed down")
        assert result.total_value == 0
        assert result.traded is False

