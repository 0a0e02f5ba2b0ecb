"""Capability interfaces for external collaborators.

The portfolio only talks to tokens, price sources, yield wrappers and swap
venues through these interfaces, so live integrations and the in-memory
paper implementations are interchangeable.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from slicer.auth.permit import PermitDomain
    from slicer.core.models import PriceReading


class FungibleToken(ABC):
    """Standard fungible token surface."""

    @property
    @abstractmethod
    def address(self) -> str:
        """Token identity."""
        pass

    @property
    @abstractmethod
    def symbol(self) -> str:
        pass

    @property
    @abstractmethod
    def decimals(self) -> int:
        pass

    @abstractmethod
    async def balance_of(self, holder: str) -> int:
        pass

    @abstractmethod
    async def total_supply(self) -> int:
        pass

    @abstractmethod
    async def allowance(self, owner: str, spender: str) -> int:
        pass

    @abstractmethod
    async def transfer(self, sender: str, to: str, amount: int) -> bool:
        pass

    @abstractmethod
    async def approve(self, owner: str, spender: str, amount: int) -> bool:
        pass

    @abstractmethod
    async def transfer_from(
        self, spender: str, owner: str, to: str, amount: int
    ) -> bool:
        """Move `amount` from `owner` to `to` using `spender`'s allowance."""
        pass


class PermitToken(FungibleToken):
    """Fungible token that accepts signed, deadline-bounded approvals."""

    @property
    @abstractmethod
    def domain(self) -> PermitDomain:
        """Domain the authorization digest is separated by."""
        pass

    @abstractmethod
    async def nonces(self, owner: str) -> int:
        pass

    @abstractmethod
    async def verify_permit(
        self,
        owner: str,
        spender: str,
        value: int,
        deadline: int,
        signature: bytes,
        nonce: int | None = None,
    ) -> bool:
        """Check an authorization without consuming it.

        Args:
            nonce: Nonce to check against. Defaults to the owner's current nonce.
        """
        pass

    @abstractmethod
    async def permit(
        self,
        owner: str,
        spender: str,
        value: int,
        deadline: int,
        signature: bytes,
    ) -> None:
        """Consume an authorization and set the allowance."""
        pass


class PriceSource(ABC):
    """External price oracle for one asset."""

    @property
    @abstractmethod
    def address(self) -> str:
        pass

    @abstractmethod
    async def latest_price(self) -> PriceReading:
        pass


class YieldWrapper(FungibleToken):
    """
    Yield-bearing wrapper around an underlying asset.

    Wrapper shares are themselves fungible; `exchange_rate` gives the
    underlying amount per share scaled by 10**18.
    """

    @property
    @abstractmethod
    def asset(self) -> FungibleToken:
        """Underlying asset token."""
        pass

    @abstractmethod
    async def exchange_rate(self) -> int:
        pass

    @abstractmethod
    async def deposit(self, amount: int, receiver: str, sender: str) -> int:
        """
        Pull `amount` of underlying from `sender` and mint shares.

        Returns:
            Shares minted to `receiver`
        """
        pass

    @abstractmethod
    async def withdraw(self, shares: int, receiver: str, sender: str) -> int:
        """
        Burn `sender`'s shares and send underlying to `receiver`.

        Returns:
            Underlying amount sent
        """
        pass

    @abstractmethod
    async def is_unlocked(self, holder: str) -> bool:
        pass


class SwapVenue(ABC):
    """External swap venue routing along a token path."""

    @property
    @abstractmethod
    def address(self) -> str:
        pass

    @abstractmethod
    async def quote(self, amount_in: int, path: list[str]) -> int:
        """Expected output for swapping `amount_in` along `path`."""
        pass

    @abstractmethod
    async def swap(
        self,
        amount_in: int,
        min_amount_out: int,
        path: list[str],
        receiver: str,
        deadline: int,
        sender: str,
    ) -> int:
        """
        Swap `amount_in` of `path[0]` pulled from `sender` into `path[-1]`.

        Returns:
            Output amount sent to `receiver`
        """
        pass
