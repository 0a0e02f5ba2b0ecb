"""In-memory collaborators for simulation and testing.

These implementations keep all balances in memory and settle instantly,
mirroring how the live contracts behave closely enough to exercise the
portfolio without a network:

- PaperToken: fungible token with allowances and signed approvals
- PaperPriceSource: settable price feed
- PaperWrapper: yield wrapper with an exchange rate and a per-holder lock
- PaperSwapVenue: constant-product pools with a swap fee
"""

from __future__ import annotations

import time
from collections.abc import Callable

from loguru import logger

from slicer.auth.permit import PermitDomain, permit_digest, verify_signature
from slicer.collaborators.base import (
    FungibleToken,
    PermitToken,
    PriceSource,
    SwapVenue,
    YieldWrapper,
)
from slicer.core.exceptions import LockedError, SwapError, TokenError
from slicer.core.models import BPS_DENOMINATOR, RATE_SCALE, PriceReading, new_address

Clock = Callable[[], float]


class _PaperLedger:
    """Balance and allowance bookkeeping shared by paper tokens."""

    def __init__(self, symbol: str, decimals: int, address: str | None) -> None:
        self._symbol = symbol
        self._decimals = decimals
        self._address = address or new_address(symbol)
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
            raise TokenError(f"{self._symbol}: negative approval")
        self._allowances[(owner, spender)] = amount
        return True

    async def transfer_from(
        self, spender: str, owner: str, to: str, amount: int
    ) -> bool:
        allowed = self._allowances.get((owner, spender), 0)
        if allowed < amount:
            raise TokenError(
                f"{self._symbol}: insufficient allowance "
                f"({allowed} < {amount}) for {spender}"
            )
        self._move(owner, to, amount)
        self._allowances[(owner, spender)] = allowed - amount
        return True

    def mint(self, to: str, amount: int) -> None:
        """Create `amount` new units for `to`."""
        self._balances[to] = self._balances.get(to, 0) + amount
        self._total_supply += amount

    def burn(self, holder: str, amount: int) -> None:
        """Destroy `amount` units held by `holder`."""
        balance = self._balances.get(holder, 0)
        if balance < amount:
            raise TokenError(
                f"{self._symbol}: burn exceeds balance ({balance} < {amount})"
            )
        self._balances[holder] = balance - amount
        self._total_supply -= amount

    def _move(self, sender: str, to: str, amount: int) -> None:
        if amount < 0:
            raise TokenError(f"{self._symbol}: negative transfer")
        balance = self._balances.get(sender, 0)
        if balance < amount:
            raise TokenError(
                f"{self._symbol}: transfer amount exceeds balance "
                f"({balance} < {amount})"
            )
        self._balances[sender] = balance - amount
        self._balances[to] = self._balances.get(to, 0) + amount


class PaperToken(_PaperLedger, PermitToken):
    """
    Paper fungible token with signed approvals.

    Owners that want to sign authorizations register an HMAC key with
    `register_signer`. Each consumed authorization bumps the owner's nonce.
    """

    def __init__(
        self,
        symbol: str,
        decimals: int = 18,
        address: str | None = None,
        chain_id: int = 1,
        clock: Clock = time.time,
    ) -> None:
        super().__init__(symbol, decimals, address)
        self._domain = PermitDomain(
            name=symbol, verifying_contract=self.address, chain_id=chain_id
        )
        self._clock = clock
        self._nonces: dict[str, int] = {}
        self._signers: dict[str, bytes] = {}

    @property
    def domain(self) -> PermitDomain:
        return self._domain

    def register_signer(self, owner: str, key: bytes) -> None:
        """Register the key `owner` signs authorizations with."""
        self._signers[owner] = key

    async def nonces(self, owner: str) -> int:
        return self._nonces.get(owner, 0)

    async def verify_permit(
        self,
        owner: str,
        spender: str,
        value: int,
        deadline: int,
        signature: bytes,
        nonce: int | None = None,
    ) -> bool:
        if deadline < self._clock():
            return False
        key = self._signers.get(owner)
        if key is None:
            return False
        if nonce is None:
            nonce = self._nonces.get(owner, 0)
        digest = permit_digest(self._domain, owner, spender, value, nonce, deadline)
        return verify_signature(key, digest, signature)

    async def permit(
        self,
        owner: str,
        spender: str,
        value: int,
        deadline: int,
        signature: bytes,
    ) -> None:
        if deadline < self._clock():
            raise TokenError(f"{self._symbol}: permit expired")
        if not await self.verify_permit(owner, spender, value, deadline, signature):
            raise TokenError(f"{self._symbol}: invalid permit signature")
        self._nonces[owner] = self._nonces.get(owner, 0) + 1
        self._allowances[(owner, spender)] = value


class PaperPriceSource(PriceSource):
    """Price feed whose value is set by hand."""

    def __init__(
        self,
        value: int,
        scale: int = RATE_SCALE,
        address: str | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._address = address or new_address("price")
        self._scale = scale
        self._clock = clock
        self._value = value
        self._updated_at = clock()

    @property
    def address(self) -> str:
        return self._address

    def set_price(self, value: int, updated_at: float | None = None) -> None:
        """Publish a new price."""
        self._value = value
        self._updated_at = self._clock() if updated_at is None else updated_at

    async def latest_price(self) -> PriceReading:
        return PriceReading(self._value, self._scale, self._updated_at)


class PaperWrapper(_PaperLedger, YieldWrapper):
    """
    Paper yield wrapper (auto-compounder style).

    Shares are minted at the current exchange rate. A holder's shares are
    locked for `unlock_duration` seconds after their latest deposit.
    `accrue` adds underlying without minting shares, raising the rate.
    """

    def __init__(
        self,
        asset: PaperToken,
        symbol: str | None = None,
        unlock_duration: float = 0,
        address: str | None = None,
        clock: Clock = time.time,
    ) -> None:
        super().__init__(symbol or f"a{asset.symbol}", asset.decimals, address)
        self._asset = asset
        self._unlock_duration = unlock_duration
        self._clock = clock
        self._deposited_at: dict[str, float] = {}

    @property
    def asset(self) -> PaperToken:
        return self._asset

    async def total_assets(self) -> int:
        return await self._asset.balance_of(self.address)

    async def exchange_rate(self) -> int:
        if self._total_supply == 0:
            return RATE_SCALE
        return await self.total_assets() * RATE_SCALE // self._total_supply

    async def deposit(self, amount: int, receiver: str, sender: str) -> int:
        if amount <= 0:
            raise TokenError(f"{self.symbol}: invalid deposit amount")
        rate = await self.exchange_rate()
        shares = amount * RATE_SCALE // rate
        if shares == 0:
            raise TokenError(f"{self.symbol}: deposit too small")
        await self._asset.transfer_from(self.address, sender, self.address, amount)
        self.mint(receiver, shares)
        self._deposited_at[receiver] = self._clock()
        logger.debug(f"{self.symbol}: deposit {amount} -> {shares} shares for {receiver}")
        return shares

    async def withdraw(self, shares: int, receiver: str, sender: str) -> int:
        if shares <= 0:
            raise TokenError(f"{self.symbol}: invalid withdraw amount")
        if not await self.is_unlocked(sender):
            raise LockedError(f"{self.symbol}: shares of {sender} are locked")
        balance = self._balances.get(sender, 0)
        if balance < shares:
            raise TokenError(
                f"{self.symbol}: withdraw exceeds balance ({balance} < {shares})"
            )
        assets = shares * await self.exchange_rate() // RATE_SCALE
        self.burn(sender, shares)
        await self._asset.transfer(self.address, receiver, assets)
        logger.debug(f"{self.symbol}: withdraw {shares} shares -> {assets} for {receiver}")
        return assets

    async def is_unlocked(self, holder: str) -> bool:
        deposited_at = self._deposited_at.get(holder)
        if deposited_at is None:
            return True
        return self._clock() >= deposited_at + self._unlock_duration

    def accrue(self, amount: int) -> None:
        """Add rewards to the wrapper, raising the exchange rate."""
        self._asset.mint(self.address, amount)


class PaperSwapVenue(SwapVenue):
    """
    Constant-product swap venue (x * y = k) with a flat fee.

    Paths may be multi-hop; every adjacent pair needs a pool.
    """

    def __init__(
        self,
        fee_bps: int = 30,
        address: str | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._address = address or new_address("venue")
        self._fee_bps = fee_bps
        self._clock = clock
        self._tokens: dict[str, FungibleToken] = {}
        self._reserves: dict[tuple[str, str], tuple[int, int]] = {}

    @property
    def address(self) -> str:
        return self._address

    @staticmethod
    def _key(token_a: str, token_b: str) -> tuple[str, str]:
        return (token_a, token_b) if token_a < token_b else (token_b, token_a)

    def reserves(self, token_in: str, token_out: str) -> tuple[int, int]:
        """Pool reserves ordered as (reserve_in, reserve_out)."""
        key = self._key(token_in, token_out)
        if key not in self._reserves:
            raise SwapError(f"No pool for {token_in}/{token_out}")
        r0, r1 = self._reserves[key]
        return (r0, r1) if key[0] == token_in else (r1, r0)

    async def add_liquidity(
        self,
        token_a: FungibleToken,
        amount_a: int,
        token_b: FungibleToken,
        amount_b: int,
        provider: str,
    ) -> None:
        """Move liquidity from `provider` into the pool for the pair."""
        await token_a.transfer(provider, self.address, amount_a)
        await token_b.transfer(provider, self.address, amount_b)
        self._tokens[token_a.address] = token_a
        self._tokens[token_b.address] = token_b

        key = self._key(token_a.address, token_b.address)
        r0, r1 = self._reserves.get(key, (0, 0))
        if key[0] == token_a.address:
            self._reserves[key] = (r0 + amount_a, r1 + amount_b)
        else:
            self._reserves[key] = (r0 + amount_b, r1 + amount_a)
        logger.debug(f"Liquidity added {token_a.symbol}/{token_b.symbol}")

    def _amount_out(self, amount_in: int, reserve_in: int, reserve_out: int) -> int:
        if reserve_in <= 0 or reserve_out <= 0:
            raise SwapError("INSUFFICIENT_LIQUIDITY")
        amount_in_with_fee = amount_in * (BPS_DENOMINATOR - self._fee_bps)
        return (amount_in_with_fee * reserve_out) // (
            reserve_in * BPS_DENOMINATOR + amount_in_with_fee
        )

    def _amounts_out(self, amount_in: int, path: list[str]) -> list[int]:
        if amount_in <= 0:
            raise SwapError("INSUFFICIENT_INPUT_AMOUNT")
        if len(path) < 2:
            raise SwapError("INVALID_PATH")
        amounts = [amount_in]
        for token_in, token_out in zip(path, path[1:]):
            reserve_in, reserve_out = self.reserves(token_in, token_out)
            amounts.append(self._amount_out(amounts[-1], reserve_in, reserve_out))
        return amounts

    async def quote(self, amount_in: int, path: list[str]) -> int:
        return self._amounts_out(amount_in, path)[-1]

    async def swap(
        self,
        amount_in: int,
        min_amount_out: int,
        path: list[str],
        receiver: str,
        deadline: int,
        sender: str,
    ) -> int:
        if deadline < self._clock():
            raise SwapError("EXPIRED")
        amounts = self._amounts_out(amount_in, path)
        amount_out = amounts[-1]
        if amount_out <= 0 or amount_out < min_amount_out:
            raise SwapError(
                f"INSUFFICIENT_OUTPUT_AMOUNT ({amount_out} < {min_amount_out})"
            )

        await self._tokens[path[0]].transfer_from(
            self.address, sender, self.address, amount_in
        )
        for i, (token_in, token_out) in enumerate(zip(path, path[1:])):
            key = self._key(token_in, token_out)
            r0, r1 = self._reserves[key]
            delta_in, delta_out = amounts[i], amounts[i + 1]
            if key[0] == token_in:
                self._reserves[key] = (r0 + delta_in, r1 - delta_out)
            else:
                self._reserves[key] = (r0 - delta_out, r1 + delta_in)
        await self._tokens[path[-1]].transfer(self.address, receiver, amount_out)
        return amount_out
