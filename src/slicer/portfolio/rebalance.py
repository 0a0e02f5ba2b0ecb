"""Portfolio rebalancing engine for maintaining target allocations."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from loguru import logger

from slicer.core.exceptions import NotFoundError, PriceUnavailableError
from slicer.core.models import (
    BPS_DENOMINATOR,
    ZERO_ADDRESS,
    Allocation,
    Direction,
    Rebalanced,
    RebalanceSkipped,
)

if TYPE_CHECKING:
    from slicer.collaborators.base import FungibleToken, PriceSource
    from slicer.config.settings import Settings
    from slicer.notifications.events import EventBus
    from slicer.portfolio.calls import ExternalCalls
    from slicer.portfolio.registry import AllocationRegistry
    from slicer.portfolio.valuation import (
        AllocationValuation,
        ValuationSnapshot,
        Valuator,
    )


@dataclass
class RebalanceConfig:
    """Configuration for portfolio rebalancing.

    Attributes:
        slippage_bps: Accepted shortfall of a swap against its quote
        swap_deadline_seconds: Lifetime of each swap's quote
        drift_threshold_bps: Minimum drift from target to trade an allocation
        min_trade_value: Minimum trade value in value units (avoid dust)
        dry_run: If True, only plan without executing
    """

    slippage_bps: int = 50
    swap_deadline_seconds: int = 300
    drift_threshold_bps: int = 0
    min_trade_value: int = 0
    dry_run: bool = False

    def __post_init__(self) -> None:
        """Validate configuration."""
        if not 0 <= self.slippage_bps < BPS_DENOMINATOR:
            raise ValueError(
                f"slippage_bps must be between 0 and {BPS_DENOMINATOR}, got {self.slippage_bps}"
            )
        if self.swap_deadline_seconds <= 0:
            raise ValueError("swap_deadline_seconds must be positive")
        if not 0 <= self.drift_threshold_bps < BPS_DENOMINATOR:
            raise ValueError(
                f"drift_threshold_bps must be between 0 and {BPS_DENOMINATOR}, "
                f"got {self.drift_threshold_bps}"
            )
        if self.min_trade_value < 0:
            raise ValueError("min_trade_value cannot be negative")

    @classmethod
    def from_settings(cls, settings: Settings) -> RebalanceConfig:
        return cls(
            slippage_bps=settings.slippage_bps,
            swap_deadline_seconds=settings.swap_deadline_seconds,
            drift_threshold_bps=settings.drift_threshold_bps,
            min_trade_value=settings.min_trade_value,
        )


@dataclass
class RebalanceOrder:
    """A planned movement of value for one allocation.

    Attributes:
        allocation: Allocation concerned
        direction: SHED (overweight), ACQUIRE (underweight) or HOLD
        value: Value to move, in value units
        current_bps: Current share of portfolio value
        target_bps: Target share of portfolio value
    """

    allocation: Allocation
    direction: Direction
    value: int
    current_bps: int
    target_bps: int

    @property
    def drift_bps(self) -> int:
        return self.current_bps - self.target_bps


@dataclass
class RebalancePlan:
    """Orders derived from a single valuation snapshot."""

    snapshot: ValuationSnapshot
    orders: list[RebalanceOrder] = field(default_factory=list)
    idle_base_value: int = 0

    @property
    def total_value(self) -> int:
        return self.snapshot.total_value

    @property
    def sources(self) -> list[RebalanceOrder]:
        """Overweight allocations, in registry order."""
        return [o for o in self.orders if o.direction == Direction.SHED]

    @property
    def sinks(self) -> list[RebalanceOrder]:
        """Underweight allocations, in registry order."""
        return [o for o in self.orders if o.direction == Direction.ACQUIRE]

    @property
    def needs_rebalance(self) -> bool:
        return bool(self.sources or self.sinks)

    def valuation(self, wrapper: str) -> AllocationValuation:
        for e in self.snapshot.entries:
            if e.allocation.wrapper == wrapper:
                return e
        raise NotFoundError(wrapper)


@dataclass
class RebalanceResult:
    """Result of a rebalance pass.

    Attributes:
        plan: Plan the pass executed (None when valuation was aborted)
        executed: One notification per swap actually executed
        skipped: One notification per allocation skipped
        proceeds: Intermediate currency raised in the shed phase
        spent: Intermediate currency deployed in the acquire phase
        base_leftover: Intermediate currency still held after the pass
        aborted_reason: Why the pass ended before trading, if it did
    """

    plan: RebalancePlan | None
    executed: list[Rebalanced] = field(default_factory=list)
    skipped: list[RebalanceSkipped] = field(default_factory=list)
    proceeds: int = 0
    spent: int = 0
    base_leftover: int = 0
    aborted_reason: str | None = None

    @property
    def total_value(self) -> int:
        return self.plan.total_value if self.plan else 0

    @property
    def traded(self) -> bool:
        return bool(self.executed)


class RebalanceEngine:
    """
    Engine for moving portfolio value back toward target allocations.

    A pass is planned from one valuation snapshot and then executed in two
    phases. The shed phase redeems the excess of every overweight
    allocation and swaps it into the intermediate (base) currency. The
    acquire phase swaps available base currency into every underweight
    allocation's asset and deposits it back into the wrapper.

    A locked holding or a failed withdraw/swap/deposit skips only that
    allocation. Base currency that could not be deployed stays in the
    portfolio for the next pass and is paid out pro rata on withdraw. Sources never shed more than the sinks can absorb.

    Example:
        engine = RebalanceEngine(registry, valuator, calls, base_token, events)
        result = await engine.rebalance()

        for action in result.executed:
            print(action.wrapper, action.direction, action.amount_out)
    """

    def __init__(
        self,
        registry: AllocationRegistry,
        valuator: Valuator,
        calls: ExternalCalls,
        base_token: FungibleToken,
        events: EventBus,
        config: RebalanceConfig | None = None,
        base_price_source: PriceSource | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize rebalance engine.

        Args:
            registry: Allocations to rebalance
            valuator: Valuator for the portfolio's holdings
            calls: External call adapters acting for the portfolio
            base_token: Intermediate currency swaps route through
            events: Bus receiving rebalance notifications
            config: Rebalance configuration. Uses defaults if not provided.
            base_price_source: Price of the base currency. Without one,
                one base unit is worth one value unit.
            clock: Time source for swap deadlines
        """
        self.registry = registry
        self.valuator = valuator
        self.calls = calls
        self.base_token = base_token
        self.events = events
        self.config = config or RebalanceConfig()
        self.base_price_source = base_price_source
        self._clock = clock

    @property
    def holder(self) -> str:
        return self.calls.holder

    async def plan(self) -> RebalancePlan:
        """Classify every allocation as source, sink, or hold.

        Raises:
            PriceUnavailableError: A price reading violated the price policy
        """
        snapshot = await self.valuator.snapshot()
        plan = RebalancePlan(snapshot=snapshot)
        total = snapshot.total_value

        if total == 0:
            return plan

        for v in snapshot.entries:
            current_bps = v.current_value * BPS_DENOMINATOR // total
            target_bps = v.allocation.target_percentage
            delta = v.delta

            direction = Direction.HOLD
            if delta != 0:
                drift_bps = abs(delta) * BPS_DENOMINATOR // total
                if drift_bps < self.config.drift_threshold_bps:
                    logger.debug(
                        f"{v.allocation.wrapper}: drift {drift_bps} bps within threshold"
                    )
                elif abs(delta) < self.config.min_trade_value:
                    logger.debug(
                        f"{v.allocation.wrapper}: trade value {abs(delta)} below minimum "
                        f"{self.config.min_trade_value}, skipping"
                    )
                else:
                    direction = Direction.SHED if delta > 0 else Direction.ACQUIRE

            plan.orders.append(
                RebalanceOrder(
                    allocation=v.allocation,
                    direction=direction,
                    value=abs(delta) if direction != Direction.HOLD else 0,
                    current_bps=current_bps,
                    target_bps=target_bps,
                )
            )

        await self._cap_sources(plan)
        return plan

    async def _idle_base_value(self) -> int:
        """Value of base currency the portfolio already holds."""
        balance = await self.calls.balance(self.base_token)
        idle = balance.value if balance.ok else 0
        if idle == 0 or self.base_price_source is None:
            return idle
        price = await self.valuator.read_price(self.base_price_source)
        return idle * price.value // price.scale

    async def _cap_sources(self, plan: RebalancePlan) -> None:
        """Limit total shed value to sink demand less idle base currency.

        Sources are scaled down pro rata; one that rounds to nothing holds.
        """
        plan.idle_base_value = await self._idle_base_value()
        demand = sum(o.value for o in plan.sinks)
        budget = max(demand - plan.idle_base_value, 0)
        excess = sum(o.value for o in plan.sources)
        if excess <= budget:
            return

        logger.info(
            f"Capping shed at {budget} (sink demand {demand}, idle base "
            f"{plan.idle_base_value}, excess {excess})"
        )
        for order in plan.sources:
            order.value = order.value * budget // excess
            if order.value == 0 or order.value < self.config.min_trade_value:
                order.direction = Direction.HOLD
                order.value = 0

    async def _skip(
        self, result: RebalanceResult, wrapper: str, direction: Direction, reason: str
    ) -> None:
        event = RebalanceSkipped(wrapper=wrapper, direction=direction, reason=reason)
        result.skipped.append(event)
        logger.warning(f"Rebalance {direction.value} skipped for {wrapper}: {reason}")
        await self.events.emit(event)

    async def _record(
        self,
        result: RebalanceResult,
        wrapper: str,
        direction: Direction,
        amount_in: int,
        amount_out: int,
    ) -> None:
        event = Rebalanced(
            wrapper=wrapper,
            direction=direction,
            amount_in=amount_in,
            amount_out=amount_out,
        )
        result.executed.append(event)
        logger.info(
            f"Rebalance {direction.value.upper()} {wrapper}: {amount_in} -> {amount_out}"
        )
        await self.events.emit(event)

    def _deadline(self) -> int:
        return int(self._clock()) + self.config.swap_deadline_seconds

    async def _shed(self, plan: RebalancePlan, order: RebalanceOrder, result: RebalanceResult) -> None:
        wrapper_address = order.allocation.wrapper
        try:
            entry = self.registry.entry(wrapper_address)
        except NotFoundError:
            await self._skip(result, wrapper_address, Direction.SHED, "allocation removed")
            return

        v = plan.valuation(wrapper_address)
        shares = min(
            order.value * v.wrapper_balance // v.current_value, v.wrapper_balance
        )
        if shares == 0:
            await self._skip(result, wrapper_address, Direction.SHED, "amount rounds to zero")
            return

        unlocked = await self.calls.is_unlocked(entry.wrapper)
        if not unlocked.ok:
            await self._skip(result, wrapper_address, Direction.SHED, unlocked.error or "locked")
            return

        withdrawn = await self.calls.withdraw(entry.wrapper, shares)
        if not withdrawn.ok:
            await self._skip(result, wrapper_address, Direction.SHED, withdrawn.error or "withdraw failed")
            return
        received = withdrawn.value

        asset = entry.wrapper.asset
        if asset.address == self.base_token.address:
            result.proceeds += received
            await self._record(result, wrapper_address, Direction.SHED, shares, received)
            return

        swapped = await self.calls.swap(
            asset,
            received,
            [asset.address, self.base_token.address],
            self.config.slippage_bps,
            self._deadline(),
        )
        if not swapped.ok:
            # Put the redeemed underlying back to work rather than leave it idle
            rewrapped = await self.calls.deposit(entry.wrapper, received)
            if not rewrapped.ok:
                logger.error(
                    f"Could not re-deposit {received} into {wrapper_address}; "
                    f"underlying left idle"
                )
            await self._skip(result, wrapper_address, Direction.SHED, swapped.error or "swap failed")
            return

        result.proceeds += swapped.value
        await self._record(result, wrapper_address, Direction.SHED, received, swapped.value)

    async def _base_needed(self, value: int) -> int:
        """Convert a value amount into base currency units (floor)."""
        if self.base_price_source is None:
            return value
        price = await self.valuator.read_price(self.base_price_source)
        return value * price.scale // price.value

    async def _acquire(
        self,
        plan: RebalancePlan,
        order: RebalanceOrder,
        result: RebalanceResult,
        available: int,
    ) -> int:
        """Fund one sink. Returns base currency spent."""
        wrapper_address = order.allocation.wrapper
        try:
            entry = self.registry.entry(wrapper_address)
        except NotFoundError:
            await self._skip(result, wrapper_address, Direction.ACQUIRE, "allocation removed")
            return 0

        if available <= 0:
            await self._skip(
                result, wrapper_address, Direction.ACQUIRE, "no intermediate currency available"
            )
            return 0

        try:
            needed = await self._base_needed(order.value)
        except PriceUnavailableError as e:
            await self._skip(result, wrapper_address, Direction.ACQUIRE, str(e))
            return 0

        amount_in = min(needed, available)
        if amount_in <= 0:
            await self._skip(result, wrapper_address, Direction.ACQUIRE, "amount rounds to zero")
            return 0

        asset = entry.wrapper.asset
        if asset.address == self.base_token.address:
            received = amount_in
        else:
            path = [self.base_token.address, asset.address]

            # Never buy more underlying than the deficit is worth
            try:
                price = await self.valuator.read_price(entry.price_source)
            except PriceUnavailableError as e:
                await self._skip(result, wrapper_address, Direction.ACQUIRE, str(e))
                return 0
            underlying_needed = order.value * price.scale // price.value
            quoted = await self.calls.quote(amount_in, path)
            if quoted.ok and quoted.value > underlying_needed > 0:
                amount_in = amount_in * underlying_needed // quoted.value

            if amount_in <= 0:
                await self._skip(result, wrapper_address, Direction.ACQUIRE, "amount rounds to zero")
                return 0

            swapped = await self.calls.swap(
                self.base_token,
                amount_in,
                path,
                self.config.slippage_bps,
                self._deadline(),
            )
            if not swapped.ok:
                await self._skip(result, wrapper_address, Direction.ACQUIRE, swapped.error or "swap failed")
                return 0
            received = swapped.value

        deposited = await self.calls.deposit(entry.wrapper, received)
        if not deposited.ok:
            await self._skip(
                result, wrapper_address, Direction.ACQUIRE, deposited.error or "deposit failed"
            )
            return amount_in

        await self._record(result, wrapper_address, Direction.ACQUIRE, amount_in, received)
        return amount_in

    async def execute(self, plan: RebalancePlan) -> RebalanceResult:
        """Execute a plan: shed every source, then fund every sink.

        Args:
            plan: RebalancePlan from plan()

        Returns:
            RebalanceResult with executed and skipped actions
        """
        result = RebalanceResult(plan=plan)

        if self.config.dry_run:
            logger.info("Dry run mode - rebalance not executed")
            return result

        if not plan.needs_rebalance:
            logger.info("No rebalancing needed")
            return result

        for order in plan.sources:
            await self._shed(plan, order, result)

        balance = await self.calls.balance(self.base_token)
        available = balance.value if balance.ok else 0

        for order in plan.sinks:
            spent = await self._acquire(plan, order, result, available)
            available -= spent
            result.spent += spent

        leftover = await self.calls.balance(self.base_token)
        result.base_leftover = leftover.value if leftover.ok else available

        logger.info(
            f"Rebalance complete: {len(result.executed)} swaps, "
            f"{len(result.skipped)} skipped, {result.base_leftover} base left over"
        )
        return result

    async def rebalance(self) -> RebalanceResult:
        """Plan and execute a rebalance in one step.

        Never raises for a single allocation's failure; a valuation that
        violates the price policy ends the pass without trading.
        """
        try:
            plan = await self.plan()
        except PriceUnavailableError as e:
            result = RebalanceResult(plan=None, aborted_reason=str(e))
            await self._skip(result, ZERO_ADDRESS, Direction.HOLD, str(e))
            return result

        if plan.total_value == 0:
            logger.info("Portfolio has no value, nothing to rebalance")
            return RebalanceResult(plan=plan)

        return await self.execute(plan)

