"""Address normalization helpers."""

from __future__ import annotations

WALLET_SCAN_ID_PREFIX = "wallet-"


def normalize_address(value: str | None) -> str:
    """Normalize on-chain address keys for internal maps/dedup."""
    return str(value or "").strip().lower()


def short_address(value: str | None, head: int = 8) -> str:
    addr = normalize_address(value)
    if len(addr) <= head + 4:
        return addr
    return f"{addr[:head]}..{addr[-4:]}"


def wallet_scan_id(token_address: str) -> str:
    """Synthetic id for a holding found by a wallet-balance scan (no durable row)."""
    return f"{WALLET_SCAN_ID_PREFIX}{normalize_address(token_address)}"


def is_wallet_scan_id(position_id: str | None) -> bool:
    return str(position_id or "").startswith(WALLET_SCAN_ID_PREFIX)
