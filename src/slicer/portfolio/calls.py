"""Adapters turning collaborator failures into ordinary result values.

The rebalance loop inspects a CallResult instead of catching exceptions,
so a locked wrapper or a failed swap is just data that leads to a skip.
"""

from __future__ import annotations

from collections.abc import Awaitable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger

from slicer.core.models import BPS_DENOMINATOR

if TYPE_CHECKING:
    from slicer.collaborators.base import FungibleToken, SwapVenue, YieldWrapper


@dataclass(frozen=True)
class CallResult:
    """Outcome of one external call."""

    ok: bool
    value: int = 0
    error: str | None = None

    @classmethod
    def success(cls, value: int) -> CallResult:
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str) -> CallResult:
        return cls(ok=False, error=error)


async def _capture(label: str, call: Awaitable[int]) -> CallResult:
    try:
        return CallResult.success(await call)
    except Exception as e:
        logger.warning(f"{label} failed: {e}")
        return CallResult.failure(f"{label} failed: {e}")


class ExternalCalls:
    """External call surface used by the rebalance engine on behalf of `holder`."""

    def __init__(self, holder: str, venue: SwapVenue) -> None:
        self.holder = holder
        self.venue = venue

    async def balance(self, token: FungibleToken) -> CallResult:
        return await _capture(f"{token.symbol} balance", token.balance_of(self.holder))

    async def is_unlocked(self, wrapper: YieldWrapper) -> CallResult:
        try:
            unlocked = await wrapper.is_unlocked(self.holder)
        except Exception as e:
            logger.warning(f"Lock check on {wrapper.symbol} failed: {e}")
            return CallResult.failure(f"lock check failed: {e}")
        if not unlocked:
            return CallResult.failure("locked")
        return CallResult.success(1)

    async def withdraw(self, wrapper: YieldWrapper, shares: int) -> CallResult:
        """Redeem wrapper shares to underlying held by the holder."""
        return await _capture(
            f"withdraw {shares} {wrapper.symbol}",
            wrapper.withdraw(shares, self.holder, self.holder),
        )

    async def deposit(self, wrapper: YieldWrapper, amount: int) -> CallResult:
        """Approve and deposit underlying into the wrapper for the holder."""

        async def _run() -> int:
            await wrapper.asset.approve(self.holder, wrapper.address, amount)
            return await wrapper.deposit(amount, self.holder, self.holder)

        return await _capture(f"deposit {amount} into {wrapper.symbol}", _run())

    async def quote(self, amount_in: int, path: list[str]) -> CallResult:
        return await _capture(
            f"quote {amount_in} along {len(path)}-token path",
            self.venue.quote(amount_in, path),
        )

    async def swap(
        self,
        token_in: FungibleToken,
        amount_in: int,
        path: list[str],
        slippage_bps: int,
        deadline: int,
    ) -> CallResult:
        """Quote, bound by slippage, approve and swap.

        The minimum output is the quote reduced by `slippage_bps`.
        """
        quoted = await self.quote(amount_in, path)
        if not quoted.ok:
            return quoted
        if quoted.value <= 0:
            return CallResult.failure("quote returned zero output")

        min_out = quoted.value * (BPS_DENOMINATOR - slippage_bps) // BPS_DENOMINATOR

        async def _run() -> int:
            await token_in.approve(self.holder, self.venue.address, amount_in)
            return await self.venue.swap(
                amount_in, min_out, path, self.holder, deadline, self.holder
            )

        return await _capture(f"swap {amount_in} {token_in.symbol}", _run())
