"""External collaborator interfaces and paper implementations."""

from slicer.collaborators.base import (
    FungibleToken,
    PermitToken,
    PriceSource,
    SwapVenue,
    YieldWrapper,
)
from slicer.collaborators.paper import (
    PaperPriceSource,
    PaperSwapVenue,
    PaperToken,
    PaperWrapper,
)

__all__ = [
    "FungibleToken",
    "PermitToken",
    "PriceSource",
    "SwapVenue",
    "YieldWrapper",
    "PaperPriceSource",
    "PaperSwapVenue",
    "PaperToken",
    "PaperWrapper",
]
