"""Background poller that retries exits for positions waiting for liquidity."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

import config
from trading.exit_coordinator import ExitExecutionCoordinator, ExitOutcome
from trading.positions import STATUS_WAITING, Position, PositionStore
from trading.sell_lock import SOURCE_LIQUIDITY_WORKER
from utils.addressing import normalize_address, short_address

logger = logging.getLogger(__name__)

WalletPositionsProvider = Callable[[], Awaitable[list[Position]]]

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _waiting_key(position: Position) -> datetime:
    ts = position.waiting_since
    if ts is None:
        return _EPOCH
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


@dataclass
class TickReport:
    checked: int = 0
    skipped_locked: int = 0
    still_waiting: int = 0
    rate_limited: int = 0
    errors: int = 0
    batches: list[list[str]] = field(default_factory=list)
    outcomes: dict[str, ExitOutcome] = field(default_factory=dict)


class LiquidityRecoveryWorker:
    """Polls waiting positions oldest-first in small sequential batches.

    Positions inside a batch run concurrently. A failure on one position is
    logged and never aborts the batch or the tick. `stop()` lets the batch
    in flight finish before the loop exits.
    """

    def __init__(
        self,
        coordinator: ExitExecutionCoordinator,
        store: PositionStore,
        *,
        account_id: str | None = None,
        interval_seconds: float | None = None,
        batch_size: int | None = None,
        batch_pause_seconds: float | None = None,
        wallet_positions: Optional[WalletPositionsProvider] = None,
    ) -> None:
        self.coordinator = coordinator
        self.store = store
        self.account_id = str(account_id if account_id is not None else config.ACCOUNT_ID)
        self.interval_seconds = float(
            interval_seconds if interval_seconds is not None else config.LIQUIDITY_RETRY_INTERVAL_SECONDS
        )
        self.batch_size = max(1, int(batch_size if batch_size is not None else config.LIQUIDITY_RETRY_BATCH_SIZE))
        self.batch_pause_seconds = max(
            0.0,
            float(batch_pause_seconds if batch_pause_seconds is not None else config.LIQUIDITY_RETRY_BATCH_PAUSE_SECONDS),
        )
        self.wallet_positions = wallet_positions
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name="liquidity-recovery-worker")
        logger.info(
            "LIQUIDITY_RETRY started interval=%.1fs batch_size=%s",
            self.interval_seconds,
            self.batch_size,
        )

    async def stop(self) -> None:
        task = self._task
        if task is None:
            return
        self._stop_event.set()
        try:
            await task
        finally:
            self._task = None
        logger.info("LIQUIDITY_RETRY stopped")

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("LIQUIDITY_RETRY tick_failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def _collect(self) -> list[Position]:
        positions = list(self.store.fetch_by_status(STATUS_WAITING, self.account_id))
        if self.wallet_positions is not None:
            try:
                extra = await self.wallet_positions()
            except Exception:
                logger.exception("LIQUIDITY_RETRY wallet_scan_failed")
                extra = []
            seen = {normalize_address(p.token_address) for p in positions}
            for item in extra:
                if item.status == STATUS_WAITING and normalize_address(item.token_address) not in seen:
                    positions.append(item)
        held = [p for p in positions if self.coordinator.needs_review(p.token_address)]
        if held:
            logger.info("LIQUIDITY_RETRY skip_review count=%s", len(held))
            positions = [p for p in positions if not self.coordinator.needs_review(p.token_address)]
        positions.sort(key=_waiting_key)
        return positions

    async def run_once(self) -> TickReport:
        report = TickReport()
        positions = await self._collect()
        if not positions:
            return report

        batches = [positions[i : i + self.batch_size] for i in range(0, len(positions), self.batch_size)]
        logger.info("LIQUIDITY_RETRY tick waiting=%s batches=%s", len(positions), len(batches))
        for index, batch in enumerate(batches):
            if index > 0:
                if self._stop_event.is_set():
                    break
                if self.batch_pause_seconds > 0:
                    await asyncio.sleep(self.batch_pause_seconds)
            report.batches.append([p.id for p in batch])
            await asyncio.gather(*(self._process_one(position, report) for position in batch))
        logger.info(
            "LIQUIDITY_RETRY tick_done checked=%s still_waiting=%s locked=%s rate_limited=%s errors=%s",
            report.checked,
            report.still_waiting,
            report.skipped_locked,
            report.rate_limited,
            report.errors,
        )
        return report

    async def _process_one(self, position: Position, report: TickReport) -> None:
        try:
            if self.coordinator.lock.is_locked(position.token_address):
                report.skipped_locked += 1
                logger.debug("LIQUIDITY_RETRY skip_locked id=%s", position.id)
                return
            report.checked += 1
            balance, resolution = await self.coordinator.quote_exit(position)
            if balance.amount_raw <= 0:
                # Let the coordinator surface it as not held.
                report.outcomes[position.id] = await self.coordinator.exit_position(position, SOURCE_LIQUIDITY_WORKER)
                return
            if resolution.quote is None:
                if resolution.rate_limited:
                    report.rate_limited += 1
                    return
                report.still_waiting += 1
                self.coordinator.record_liquidity_check(position)
                logger.debug(
                    "LIQUIDITY_RETRY still_no_route id=%s token=%s checks=%s",
                    position.id,
                    short_address(position.token_address),
                    position.liquidity_check_count,
                )
                return
            logger.info(
                "LIQUIDITY_RETRY route_found id=%s token=%s venue=%s",
                position.id,
                short_address(position.token_address),
                resolution.venue,
            )
            outcome = await self.coordinator.execute_resolved(position, resolution, SOURCE_LIQUIDITY_WORKER)
            report.outcomes[position.id] = outcome
        except Exception:
            report.errors += 1
            logger.exception("LIQUIDITY_RETRY position_failed id=%s", position.id)
