"""Holdings found in the wallet that have no live position row.

EVM wallets cannot be enumerated for ERC-20 balances without an indexer, so
the scan reads a configured token list. Each held token without an open,
pending or waiting row becomes a synthetic waiting position that the
recovery worker can sell; nothing is written to the store for it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable

import config
from trading.positions import (
    STATUS_OPEN,
    STATUS_PENDING,
    STATUS_WAITING,
    BalanceReader,
    Position,
    PositionStore,
)
from utils.addressing import normalize_address, short_address, wallet_scan_id

logger = logging.getLogger(__name__)

_LIVE_STATUSES = (STATUS_OPEN, STATUS_PENDING, STATUS_WAITING)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WalletScanner:
    def __init__(
        self,
        balances: BalanceReader,
        store: PositionStore,
        *,
        owner: str | None = None,
        account_id: str | None = None,
        tokens: Iterable[str] | None = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.balances = balances
        self.store = store
        self.owner = str(owner or config.LIVE_WALLET_ADDRESS)
        self.account_id = str(account_id if account_id is not None else config.ACCOUNT_ID)
        source = tokens if tokens is not None else config.WALLET_SCAN_TOKENS
        self.tokens = list(dict.fromkeys(normalize_address(t) for t in source if normalize_address(t)))
        self._now = now
        # First time each token was seen held, so oldest-first ordering is stable across ticks.
        self._first_seen: dict[str, datetime] = {}

    def _tracked_tokens(self) -> set[str]:
        tracked: set[str] = set()
        for status in _LIVE_STATUSES:
            for position in self.store.fetch_by_status(status, self.account_id):
                tracked.add(normalize_address(position.token_address))
        return tracked

    async def __call__(self) -> list[Position]:
        return await self.scan()

    async def scan(self) -> list[Position]:
        if not self.tokens:
            return []
        tracked = self._tracked_tokens()
        found: list[Position] = []
        for token in self.tokens:
            if token in tracked:
                self._first_seen.pop(token, None)
                continue
            try:
                balance = await self.balances.fetch_on_chain_balance(token, self.owner)
            except Exception as exc:
                logger.warning("WALLET_SCAN balance_error token=%s err=%s", short_address(token), exc)
                continue
            if balance.amount_raw <= 0:
                self._first_seen.pop(token, None)
                continue
            since = self._first_seen.setdefault(token, self._now())
            found.append(
                Position(
                    id=wallet_scan_id(token),
                    account_id=self.account_id,
                    token_address=token,
                    amount=balance.amount_ui,
                    status=STATUS_WAITING,
                    waiting_since=since,
                )
            )
        if found:
            logger.info("WALLET_SCAN untracked_holdings count=%s", len(found))
        return found
