"""Typed error taxonomy shared by venues, resolver and coordinators."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    # Venue / route level
    NO_ROUTE = "NO_ROUTE"
    RATE_LIMITED = "RATE_LIMITED"
    TIMEOUT = "TIMEOUT"
    MALFORMED = "MALFORMED"

    # Token level
    HONEYPOT = "HONEYPOT"
    HIGH_TAX = "HIGH_TAX"
    BALANCE_MISMATCH = "BALANCE_MISMATCH"
    TOKEN_NOT_HELD = "TOKEN_NOT_HELD"

    # Coordination
    LOCK_BUSY = "LOCK_BUSY"

    # Submission / confirmation
    REVERTED = "REVERTED"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    GAS_CAP = "GAS_CAP"
    SUBMIT_FAILED = "SUBMIT_FAILED"
    UNCONFIRMED = "UNCONFIRMED"


# Failures after which the next venue in priority order is worth one try.
VENUE_FALLBACK_KINDS = frozenset(
    {
        ErrorKind.NO_ROUTE,
        ErrorKind.TIMEOUT,
        ErrorKind.MALFORMED,
        ErrorKind.REVERTED,
        ErrorKind.GAS_CAP,
    }
)

TRANSIENT_KINDS = frozenset({ErrorKind.RATE_LIMITED, ErrorKind.TIMEOUT})


class EngineError(Exception):
    """Base exception for the engine."""

    kind: ErrorKind = ErrorKind.MALFORMED

    def __init__(
        self,
        message: str,
        kind: Optional[ErrorKind] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.kind.value}] {super().__str__()}"


class ConfigurationError(EngineError):
    """Required settings are missing or inconsistent."""

    kind = ErrorKind.MALFORMED


class VenueUnavailableError(EngineError):
    """A venue cannot be used in this process (missing address, RPC down)."""

    kind = ErrorKind.MALFORMED
