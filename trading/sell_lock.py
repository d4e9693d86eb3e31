"""Per-token exclusive sell lock.

One instance is shared by every exit path in the process (manual exit,
auto-exit sweep, liquidity worker). Acquisition never blocks: a caller that
loses the race backs off and tries again on its own schedule. A live holder
keeps its entry fresh with `refresh()`; entries not refreshed for
`max_hold_seconds` are treated as abandoned and may be reclaimed.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable

import config
from utils.addressing import normalize_address, short_address

logger = logging.getLogger(__name__)

SOURCE_MANUAL_EXIT = "manual_exit"
SOURCE_AUTO_EXIT = "auto_exit"
SOURCE_LIQUIDITY_WORKER = "liquidity_worker"
SOURCE_PARTIAL_RETRY = "partial_retry"


def make_holder_tag(source: str) -> str:
    return f"{source}:{uuid.uuid4().hex[:8]}"


@dataclass
class SellLockEntry:
    token_address: str
    holder: str
    acquired_at: float
    elapsed_seconds: float = 0.0


class ExclusiveSellLock:
    def __init__(
        self,
        max_hold_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_hold_seconds is None:
            max_hold_seconds = float(getattr(config, "SELL_LOCK_MAX_HOLD_SECONDS", 60.0))
        self.max_hold_seconds = max(0.001, float(max_hold_seconds))
        self._clock = clock
        self._mutex = threading.Lock()
        self._entries: dict[str, tuple[str, float]] = {}

    def _is_stale(self, acquired_at: float, now: float) -> bool:
        return (now - acquired_at) >= self.max_hold_seconds

    def _live_entry(self, key: str, now: float) -> tuple[str, float] | None:
        # Caller holds the mutex.
        row = self._entries.get(key)
        if row is None:
            return None
        if self._is_stale(row[1], now):
            return None
        return row

    def try_acquire(self, token_address: str, holder: str) -> bool:
        key = normalize_address(token_address)
        if not key:
            return False
        with self._mutex:
            now = self._clock()
            row = self._entries.get(key)
            if row is not None:
                if not self._is_stale(row[1], now):
                    logger.info(
                        "SELL_LOCK busy token=%s holder=%s requested_by=%s age=%.1fs",
                        short_address(key),
                        row[0],
                        holder,
                        now - row[1],
                    )
                    return False
                logger.warning(
                    "SELL_LOCK reclaimed token=%s stale_holder=%s age=%.1fs new_holder=%s",
                    short_address(key),
                    row[0],
                    now - row[1],
                    holder,
                )
            self._entries[key] = (str(holder), now)
        logger.info("SELL_LOCK acquired token=%s holder=%s", short_address(key), holder)
        return True

    def release(self, token_address: str, holder: str | None = None) -> bool:
        """Drop the lock. With `holder`, only that holder's entry is removed."""
        key = normalize_address(token_address)
        with self._mutex:
            row = self._entries.get(key)
            if row is None:
                return False
            if holder is not None and row[0] != holder:
                logger.warning(
                    "SELL_LOCK release_ignored token=%s holder=%s current=%s",
                    short_address(key),
                    holder,
                    row[0],
                )
                return False
            self._entries.pop(key, None)
            held_for = self._clock() - row[1]
        logger.info("SELL_LOCK released token=%s holder=%s held=%.2fs", short_address(key), row[0], held_for)
        return True

    def refresh(self, token_address: str, holder: str) -> bool:
        """Restart the hold timer for a live holder. False once the entry is gone or reclaimed."""
        key = normalize_address(token_address)
        with self._mutex:
            row = self._entries.get(key)
            if row is None or row[0] != holder:
                return False
            self._entries[key] = (row[0], self._clock())
        return True

    def is_locked(self, token_address: str) -> bool:
        key = normalize_address(token_address)
        with self._mutex:
            return self._live_entry(key, self._clock()) is not None

    def status(self, token_address: str) -> SellLockEntry | None:
        key = normalize_address(token_address)
        with self._mutex:
            now = self._clock()
            row = self._live_entry(key, now)
            if row is None:
                return None
            return SellLockEntry(token_address=key, holder=row[0], acquired_at=row[1], elapsed_seconds=now - row[1])

    def active_count(self) -> int:
        with self._mutex:
            now = self._clock()
            stale = [key for key, row in self._entries.items() if self._is_stale(row[1], now)]
            for key in stale:
                self._entries.pop(key, None)
            if stale:
                logger.warning("SELL_LOCK pruned_stale count=%s", len(stale))
            return len(self._entries)

    def clear(self) -> None:
        with self._mutex:
            self._entries.clear()
