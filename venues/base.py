"""Venue contract: quote a swap or fail with a typed reason, then build an unsigned tx."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from trading.errors import ErrorKind


@dataclass
class RouteQuote:
    """A quoted swap path. Lives for one resolve-then-execute attempt only."""

    venue: str
    token_in: str
    token_out: str
    amount_in: int
    amount_out: int
    price_impact_pct: float = 0.0
    slippage_bps: int = 0
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class VenueFailure:
    venue: str
    kind: ErrorKind
    detail: str = ""

    def __str__(self) -> str:
        return f"{self.venue}:{self.kind.value}:{self.detail}" if self.detail else f"{self.venue}:{self.kind.value}"


@dataclass
class UnsignedTransaction:
    venue: str
    to: str
    data: str
    value: int = 0
    # ERC-20 allowance the signer must grant `approve_spender` before sending.
    approve_token: str = ""
    approve_spender: str = ""
    approve_amount: int = 0
    quote: RouteQuote | None = None


class VenueClient(ABC):
    """One swap venue (aggregator, AMM router, launchpad curve).

    Implementations must return `VenueFailure(kind=NO_ROUTE)` for "no
    liquidity" rather than raising.
    """

    name: str = "venue"

    @abstractmethod
    async def quote(
        self,
        token_in: str,
        token_out: str,
        amount_in: int,
        max_slippage_bps: int,
        timeout: float,
    ) -> RouteQuote | VenueFailure:
        raise NotImplementedError

    @abstractmethod
    async def build_transaction(self, quote: RouteQuote, owner: str) -> UnsignedTransaction | VenueFailure:
        raise NotImplementedError

    async def close(self) -> None:
        return None

    def fail(self, kind: ErrorKind, detail: str = "") -> VenueFailure:
        return VenueFailure(venue=self.name, kind=kind, detail=detail)
