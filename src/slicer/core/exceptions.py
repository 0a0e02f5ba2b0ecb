"""Error taxonomy for the slice portfolio."""

from __future__ import annotations


class SliceError(Exception):
    """Base class for all portfolio errors."""


class ConfigurationError(SliceError):
    """Bad address, percentage, or oversubscribed allocation set."""


class DuplicateAllocationError(SliceError):
    """An allocation for the wrapper is already registered."""

    def __init__(self, wrapper: str) -> None:
        super().__init__(f"Allocation for {wrapper} already exists")
        self.wrapper = wrapper


class NotFoundError(SliceError):
    """No allocation registered for the wrapper."""

    def __init__(self, wrapper: str) -> None:
        super().__init__(f"Allocation for {wrapper} not found")
        self.wrapper = wrapper


class AmountError(SliceError):
    """Zero or otherwise invalid amount."""


class InsufficientBalanceError(SliceError):
    """Holder does not have enough balance for the operation."""

    def __init__(self, holder: str, required: int, available: int) -> None:
        super().__init__(
            f"Insufficient balance for {holder}: need {required}, have {available}"
        )
        self.holder = holder
        self.required = required
        self.available = available


class AllowanceError(SliceError):
    """Spender is not approved for the requested amount."""


class AuthorizationError(SliceError):
    """Signed authorization is expired or does not match its digest."""


class UnauthorizedError(SliceError, PermissionError):
    """Caller is not allowed to perform an administrative call."""


class ReentrancyError(SliceError):
    """A public call was re-entered from inside an in-flight call."""


class PriceUnavailableError(SliceError):
    """Price source returned a non-positive, stale, or failing reading."""

    def __init__(self, price_source: str, reason: str) -> None:
        super().__init__(f"Price from {price_source} unavailable: {reason}")
        self.price_source = price_source
        self.reason = reason


class ExternalCallFailure(SliceError):
    """A call into a wrapper, token, or swap venue failed."""


class TokenError(ExternalCallFailure):
    """Fungible token transfer or approval failed."""


class LockedError(ExternalCallFailure):
    """Wrapper holding is inside its lock period."""


class SwapError(ExternalCallFailure):
    """Swap venue rejected a quote or swap."""
