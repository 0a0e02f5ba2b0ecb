"""Portfolio share token and deposit/withdraw accounting."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from loguru import logger

from slicer.collaborators.base import FungibleToken, PermitToken
from slicer.core.exceptions import (
    AllowanceError,
    AmountError,
    AuthorizationError,
    InsufficientBalanceError,
)
from slicer.core.models import RATE_SCALE, Deposited, Withdrawn

if TYPE_CHECKING:
    from slicer.auth.permit import Authorization, DepositRequest
    from slicer.notifications.events import EventBus
    from slicer.portfolio.registry import AllocationEntry, AllocationRegistry


class ShareToken(FungibleToken):
    """
    Fungible portfolio share.

    Supply only changes through `mint` and `burn`, which the ledger calls
    on deposit and withdraw.
    """

    def __init__(self, name: str, symbol: str, address: str, decimals: int = 18) -> None:
        self.name = name
        self._symbol = symbol
        self._address = address
        self._decimals = decimals
        self._balances: dict[str, int] = {}
        self._allowances: dict[tuple[str, str], int] = {}
        self._total_supply = 0

    @property
    def address(self) -> str:
        return self._address

    @property
    def symbol(self) -> str:
        return self._symbol

    @property
    def decimals(self) -> int:
        return self._decimals

    async def balance_of(self, holder: str) -> int:
        return self._balances.get(holder, 0)

    async def total_supply(self) -> int:
        return self._total_supply

    async def allowance(self, owner: str, spender: str) -> int:
        return self._allowances.get((owner, spender), 0)

    async def transfer(self, sender: str, to: str, amount: int) -> bool:
        self._move(sender, to, amount)
        return True

    async def approve(self, owner: str, spender: str, amount: int) -> bool:
        if amount < 0:
            raise AmountError("Invalid amount")
        self._allowances[(owner, spender)] = amount
        return True

    async def transfer_from(
        self, spender: str, owner: str, to: str, amount: int
    ) -> bool:
        allowed = self._allowances.get((owner, spender), 0)
        if allowed < amount:
            raise AllowanceError(
                f"{spender} allowance {allowed} below {amount} for {owner}"
            )
        self._move(owner, to, amount)
        self._allowances[(owner, spender)] = allowed - amount
        return True

    def mint(self, to: str, amount: int) -> None:
        self._balances[to] = self._balances.get(to, 0) + amount
        self._total_supply += amount

    def burn(self, holder: str, amount: int) -> None:
        balance = self._balances.get(holder, 0)
        if balance < amount:
            raise InsufficientBalanceError(holder, amount, balance)
        self._balances[holder] = balance - amount
        self._total_supply -= amount

    def _move(self, sender: str, to: str, amount: int) -> None:
        if amount < 0:
            raise AmountError("Invalid amount")
        balance = self._balances.get(sender, 0)
        if balance < amount:
            raise InsufficientBalanceError(sender, amount, balance)
        self._balances[sender] = balance - amount
        self._balances[to] = self._balances.get(to, 0) + amount


class ShareLedger:
    """
    Mints shares on deposit and burns them on withdraw.

    Deposits go into a single allocation's wrapper and mint
    `amount * 10**18 // exchange_rate` shares. Withdrawals pay out the same
    fraction of every allocation's wrapper holding, plus the same fraction
    of any base currency or underlying the portfolio holds unwrapped.

    Every precondition is checked before the first transfer. A collaborator
    failure after funds have moved is unwound before the error propagates,
    so a failed deposit, batch or withdraw leaves balances and supply as
    they were.
    """

    def __init__(
        self,
        registry: AllocationRegistry,
        shares: ShareToken,
        events: EventBus,
        clock: Callable[[], float] = time.time,
        base_token: FungibleToken | None = None,
    ) -> None:
        """Initialize share ledger.

        Args:
            registry: Allocations deposits can target
            shares: Portfolio share token (its address holds the wrappers)
            events: Bus receiving Deposited / Withdrawn notifications
            clock: Time source for authorization deadlines
            base_token: Intermediate currency rebalancing may leave idle
        """
        self.registry = registry
        self.shares = shares
        self.events = events
        self.base_token = base_token
        self._clock = clock

    @property
    def holder(self) -> str:
        return self.shares.address

    async def _check_deposit(
        self, wrapper: str, amount: int, sender: str
    ) -> tuple[AllocationEntry, int]:
        """Validate a deposit and compute the shares it would mint."""
        entry = self.registry.entry(wrapper)
        if amount <= 0:
            raise AmountError("Invalid amount")

        balance = await entry.wrapper.asset.balance_of(sender)
        if balance < amount:
            raise InsufficientBalanceError(sender, amount, balance)

        rate = await entry.wrapper.exchange_rate()
        shares = amount * RATE_SCALE // rate
        if shares == 0:
            raise AmountError(f"Deposit of {amount} too small to mint shares")
        return entry, shares

    async def _wrap(self, entry: AllocationEntry, amount: int, sender: str) -> int:
        """Pull underlying from `sender` into the wrapper.

        The underlying is refunded if the wrapper rejects it.

        Returns:
            Wrapper shares received by the portfolio
        """
        asset = entry.wrapper.asset
        await asset.transfer_from(self.holder, sender, self.holder, amount)
        try:
            await asset.approve(self.holder, entry.wrapper.address, amount)
            return await entry.wrapper.deposit(amount, self.holder, self.holder)
        except Exception as e:
            logger.error(
                f"Deposit into {entry.wrapper.symbol} failed, refunding {amount} to {sender}: {e}"
            )
            await asset.transfer(self.holder, sender, amount)
            raise

    async def _unwrap_to(
        self, entry: AllocationEntry, wrapped: int, receiver: str
    ) -> None:
        """Hand wrapper shares back as underlying, or in kind while locked."""
        try:
            underlying = await entry.wrapper.withdraw(wrapped, self.holder, self.holder)
        except Exception as e:
            logger.warning(
                f"Cannot redeem {wrapped} {entry.wrapper.symbol} ({e}), returning in kind"
            )
            await entry.wrapper.transfer(self.holder, receiver, wrapped)
            return
        await entry.wrapper.asset.transfer(self.holder, receiver, underlying)

    async def deposit(self, wrapper: str, amount: int, sender: str) -> int:
        """Deposit underlying into an allocation's wrapper.

        Args:
            wrapper: Allocation wrapper address
            amount: Underlying amount pulled from `sender` (needs allowance)
            sender: Depositor receiving the shares

        Returns:
            Shares minted

        Raises:
            NotFoundError: No allocation for the wrapper
            AmountError: Zero amount
            InsufficientBalanceError: Sender lacks the underlying
            AllowanceError: Portfolio not approved for the amount
            ExternalCallFailure: The wrapper rejected the deposit (refunded)
        """
        entry, shares = await self._check_deposit(wrapper, amount, sender)

        allowed = await entry.wrapper.asset.allowance(sender, self.holder)
        if allowed < amount:
            raise AllowanceError(f"Allowance {allowed} below deposit {amount}")

        await self._wrap(entry, amount, sender)
        self.shares.mint(sender, shares)

        logger.info(f"Deposit {amount} into {entry.wrapper.symbol} by {sender}: {shares} shares")
        await self.events.emit(
            Deposited(wrapper=wrapper, sender=sender, amount=amount, shares=shares)
        )
        return shares

    def _permit_token(self, entry: AllocationEntry) -> PermitToken:
        asset = entry.wrapper.asset
        if not isinstance(asset, PermitToken):
            raise AuthorizationError(
                f"{asset.symbol} does not accept signed authorizations"
            )
        return asset

    async def _check_authorization(
        self,
        token: PermitToken,
        sender: str,
        amount: int,
        authorization: Authorization,
        nonce: int | None = None,
    ) -> None:
        if authorization.deadline < self._clock():
            raise AuthorizationError("Authorization expired")
        valid = await token.verify_permit(
            sender,
            self.holder,
            amount,
            authorization.deadline,
            authorization.signature,
            nonce,
        )
        if not valid:
            raise AuthorizationError("Invalid authorization signature")

    async def deposit_with_authorization(
        self,
        wrapper: str,
        amount: int,
        sender: str,
        authorization: Authorization,
    ) -> int:
        """Deposit using a signed approval instead of a prior `approve`."""
        entry, _ = await self._check_deposit(wrapper, amount, sender)
        token = self._permit_token(entry)
        await self._check_authorization(token, sender, amount, authorization)

        await token.permit(
            sender, self.holder, amount, authorization.deadline, authorization.signature
        )
        return await self.deposit(wrapper, amount, sender)

    async def deposit_batch(self, requests: list[DepositRequest], sender: str) -> list[int]:
        """Apply several signed deposits atomically.

        Every request is validated, including its signature against the
        nonce it will be consumed at, before any authorization is used.
        One invalid or expired request fails the whole batch. If a wrapper
        rejects a later request, the requests already wrapped are handed
        back to the sender and no shares are minted.

        Returns:
            Shares minted per request
        """
        if not requests:
            raise AmountError("Empty deposit batch")

        nonce_offsets: dict[str, int] = {}
        required: dict[str, int] = {}
        for request in requests:
            entry, _ = await self._check_deposit(request.wrapper, request.amount, sender)
            token = self._permit_token(entry)

            offset = nonce_offsets.get(token.address, 0)
            nonce = await token.nonces(sender) + offset
            await self._check_authorization(
                token, sender, request.amount, request.authorization, nonce
            )
            nonce_offsets[token.address] = offset + 1

            required[token.address] = required.get(token.address, 0) + request.amount
            balance = await token.balance_of(sender)
            if balance < required[token.address]:
                raise InsufficientBalanceError(sender, required[token.address], balance)

        applied: list[tuple[AllocationEntry, int]] = []
        minted: list[int] = []
        try:
            for request in requests:
                entry, shares = await self._check_deposit(request.wrapper, request.amount, sender)
                token = self._permit_token(entry)
                auth = request.authorization
                await token.permit(
                    sender, self.holder, request.amount, auth.deadline, auth.signature
                )
                applied.append((entry, await self._wrap(entry, request.amount, sender)))
                minted.append(shares)
        except Exception as e:
            logger.error(
                f"Batch deposit by {sender} failed after {len(applied)} of "
                f"{len(requests)} requests, unwinding: {e}"
            )
            for entry, wrapped in reversed(applied):
                await self._unwrap_to(entry, wrapped, sender)
            raise

        for request, shares in zip(requests, minted):
            self.shares.mint(sender, shares)
            await self.events.emit(
                Deposited(
                    wrapper=request.wrapper, sender=sender, amount=request.amount, shares=shares
                )
            )

        logger.info(f"Batch deposit of {len(requests)} requests by {sender}")
        return minted

    def _idle_tokens(self) -> list[FungibleToken]:
        """Tokens the portfolio may hold outside any wrapper."""
        tokens: dict[str, FungibleToken] = {}
        if self.base_token is not None:
            tokens[self.base_token.address] = self.base_token
        for entry in self.registry:
            asset = entry.wrapper.asset
            tokens.setdefault(asset.address, asset)
        return list(tokens.values())

    async def withdraw(
        self, share_amount: int, sender: str, receiver: str | None = None
    ) -> list[Withdrawn]:
        """Burn shares and pay out the same fraction of every allocation.

        For each allocation `balance * share_amount // supply_before_burn`
        wrapper shares are redeemed to underlying for the receiver. A wrapper
        still inside its lock period is paid out in kind instead. The same
        fraction of base currency or underlying held unwrapped is paid too.

        Redemptions complete before anything is delivered. If one fails, the
        redeemed underlying goes back into its wrapper, the burned shares are
        restored and the error propagates.

        Returns:
            One Withdrawn notification per allocation, zero amounts included
        """
        if share_amount <= 0:
            raise AmountError("Invalid amount")
        balance = await self.shares.balance_of(sender)
        if share_amount > balance:
            raise InsufficientBalanceError(sender, share_amount, balance)

        receiver = receiver or sender
        supply = await self.shares.total_supply()

        payouts: list[tuple[AllocationEntry, int, bool]] = []
        for entry in self.registry:
            held = await entry.wrapper.balance_of(self.holder)
            amount = held * share_amount // supply
            unlocked = await entry.wrapper.is_unlocked(self.holder) if amount else True
            payouts.append((entry, amount, unlocked))

        idle: list[tuple[FungibleToken, int]] = []
        for token in self._idle_tokens():
            amount = await token.balance_of(self.holder) * share_amount // supply
            if amount > 0:
                idle.append((token, amount))

        self.shares.burn(sender, share_amount)

        redeemed: dict[str, int] = {}
        try:
            for entry, amount, unlocked in payouts:
                if amount > 0 and unlocked:
                    redeemed[entry.allocation.wrapper] = await entry.wrapper.withdraw(
                        amount, self.holder, self.holder
                    )
        except Exception as e:
            logger.error(f"Withdraw of {share_amount} shares by {sender} failed, restoring: {e}")
            await self._rewrap(redeemed)
            self.shares.mint(sender, share_amount)
            raise

        withdrawn = []
        for entry, amount, unlocked in payouts:
            underlying: int | None = 0
            if amount > 0:
                if unlocked:
                    underlying = redeemed[entry.allocation.wrapper]
                    await entry.wrapper.asset.transfer(self.holder, receiver, underlying)
                else:
                    logger.info(f"{entry.wrapper.symbol} locked, paying {amount} shares in kind")
                    await entry.wrapper.transfer(self.holder, receiver, amount)
                    underlying = None

            withdrawn.append(
                Withdrawn(
                    wrapper=entry.allocation.wrapper,
                    receiver=receiver,
                    amount=amount,
                    underlying_amount=underlying,
                )
            )

        for token, amount in idle:
            await token.transfer(self.holder, receiver, amount)
            logger.info(f"Paid {amount} unwrapped {token.symbol} to {receiver}")

        for event in withdrawn:
            await self.events.emit(event)

        logger.info(f"Withdraw {share_amount} shares by {sender} across {len(withdrawn)} allocations")
        return withdrawn

    async def _rewrap(self, redeemed: dict[str, int]) -> None:
        """Deposit redeemed underlying back into its wrapper."""
        for wrapper, underlying in redeemed.items():
            entry = self.registry.entry(wrapper)
            try:
                await entry.wrapper.asset.approve(self.holder, entry.wrapper.address, underlying)
                await entry.wrapper.deposit(underlying, self.holder, self.holder)
            except Exception as e:
                logger.error(
                    f"Could not re-deposit {underlying} into {entry.wrapper.symbol}; "
                    f"left unwrapped: {e}"
                )
