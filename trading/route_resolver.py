"""Priority-ordered route resolution across swap venues."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, Sequence

import config
from trading.errors import ErrorKind
from utils.addressing import short_address
from venues.base import RouteQuote, VenueClient, VenueFailure

logger = logging.getLogger(__name__)


@dataclass
class RouteResolution:
    quote: RouteQuote | None = None
    failures: list[VenueFailure] = field(default_factory=list)
    rate_limited: bool = False

    @property
    def found(self) -> bool:
        return self.quote is not None

    @property
    def venue(self) -> str:
        return self.quote.venue if self.quote is not None else ""

    @property
    def error_kind(self) -> ErrorKind | None:
        if self.quote is not None:
            return None
        return ErrorKind.RATE_LIMITED if self.rate_limited else ErrorKind.NO_ROUTE

    def summary(self) -> str:
        if self.quote is not None:
            return f"ok:{self.quote.venue}"
        return ";".join(str(item) for item in self.failures) or "no_venues"


class RouteResolver:
    """Try venues in strict priority order and return the first usable quote.

    Venues are never queried in parallel. A rate limit on the top venue
    stops resolution immediately so the caller backs off instead of
    drawing a false "no liquidity" conclusion from lower venues. A rate
    limit further down is recorded and the chain continues, but an
    all-failed result that saw any rate limit is still reported as
    rate-limited.
    """

    def __init__(
        self,
        venues: Sequence[VenueClient],
        *,
        timeout_seconds: float | None = None,
        default_slippage_bps: int | None = None,
    ) -> None:
        self.venues = list(venues)
        self.timeout_seconds = float(
            timeout_seconds if timeout_seconds is not None else getattr(config, "VENUE_TIMEOUT_SECONDS", 8.0)
        )
        self.default_slippage_bps = int(
            default_slippage_bps if default_slippage_bps is not None else getattr(config, "LIVE_SLIPPAGE_BPS", 200)
        )

    @property
    def venue_names(self) -> list[str]:
        return [venue.name for venue in self.venues]

    def get_venue(self, name: str) -> VenueClient | None:
        for venue in self.venues:
            if venue.name == name:
                return venue
        return None

    async def _quote_one(
        self,
        venue: VenueClient,
        token_in: str,
        token_out: str,
        amount_raw: int,
        slippage_bps: int,
    ) -> RouteQuote | VenueFailure:
        try:
            return await asyncio.wait_for(
                venue.quote(token_in, token_out, int(amount_raw), int(slippage_bps), self.timeout_seconds),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            return venue.fail(ErrorKind.TIMEOUT, f"quote_timeout>{self.timeout_seconds:.1f}s")
        except Exception as exc:
            logger.warning("ROUTE venue_error venue=%s err=%s", venue.name, exc)
            return venue.fail(ErrorKind.MALFORMED, f"venue_exception:{exc.__class__.__name__}")

    async def resolve(
        self,
        token_in: str,
        token_out: str,
        amount_raw: int,
        slippage_bps: int | None = None,
        exclude_venues: Iterable[str] = (),
    ) -> RouteResolution:
        slip = int(slippage_bps if slippage_bps is not None else self.default_slippage_bps)
        excluded = {str(name) for name in exclude_venues}
        result = RouteResolution()
        candidates = [venue for venue in self.venues if venue.name not in excluded]

        for index, venue in enumerate(candidates):
            outcome = await self._quote_one(venue, token_in, token_out, amount_raw, slip)
            if isinstance(outcome, RouteQuote):
                result.quote = outcome
                logger.info(
                    "ROUTE resolved venue=%s in=%s out=%s amount_in=%s amount_out=%s impact=%.2f%%",
                    venue.name,
                    short_address(token_in),
                    short_address(token_out),
                    outcome.amount_in,
                    outcome.amount_out,
                    outcome.price_impact_pct,
                )
                return result

            result.failures.append(outcome)
            if outcome.kind == ErrorKind.RATE_LIMITED:
                result.rate_limited = True
                if index == 0:
                    logger.warning(
                        "ROUTE rate_limited venue=%s in=%s out=%s detail=%s",
                        venue.name,
                        short_address(token_in),
                        short_address(token_out),
                        outcome.detail,
                    )
                    return result
            logger.debug("ROUTE fallthrough venue=%s kind=%s detail=%s", venue.name, outcome.kind.value, outcome.detail)

        logger.info(
            "ROUTE none in=%s out=%s rate_limited=%s failures=%s",
            short_address(token_in),
            short_address(token_out),
            result.rate_limited,
            result.summary(),
        )
        return result

    async def close(self) -> None:
        for venue in self.venues:
            await venue.close()
