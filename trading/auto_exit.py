"""Scheduled take-profit / stop-loss sweep over open positions.

Prices come from a live sell quote for the full on-chain balance, so the
P&L is what an exit would actually realise. Triggered exits go through the
coordinator and therefore share the per-token sell lock with manual exits
and the liquidity worker.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

import config
from trading.exit_coordinator import ExitExecutionCoordinator, ExitOutcome
from trading.positions import STATUS_OPEN, Position, PositionStore
from trading.sell_lock import SOURCE_AUTO_EXIT
from utils.addressing import short_address

logger = logging.getLogger(__name__)

TRIGGER_TAKE_PROFIT = "take_profit"
TRIGGER_STOP_LOSS = "stop_loss"

WEI_PER_ETH = 10**18


@dataclass
class ExitSignal:
    should_exit: bool
    reason: str = ""
    pnl_percent: float = 0.0
    clamped: bool = False


def check_exit_conditions(
    entry_price: float,
    current_price: float,
    take_profit_percent: float,
    stop_loss_percent: float,
    *,
    max_gain_percent: float = 10_000.0,
    max_loss_percent: float = 99.99,
) -> ExitSignal:
    """Compare the current price against the entry and the configured thresholds.

    P&L outside [-max_loss, +max_gain] points at a data error (unit mismatch,
    stale price); it is clamped, not discarded, so a threshold can still fire.
    A threshold of 0 disables that side.
    """
    if not current_price or current_price <= 0 or current_price != current_price:
        return ExitSignal(False)
    if not entry_price or entry_price <= 0 or entry_price != entry_price:
        return ExitSignal(False)

    pnl = (current_price - entry_price) / entry_price * 100.0
    clamped = False
    if pnl > max_gain_percent or pnl < -max_loss_percent:
        clamped = True
        pnl = max(-max_loss_percent, min(max_gain_percent, pnl))

    if take_profit_percent > 0 and pnl >= take_profit_percent:
        return ExitSignal(True, TRIGGER_TAKE_PROFIT, pnl, clamped)
    if stop_loss_percent > 0 and pnl <= -stop_loss_percent:
        return ExitSignal(True, TRIGGER_STOP_LOSS, pnl, clamped)
    return ExitSignal(False, "", pnl, clamped)


@dataclass
class SweepReport:
    checked: int = 0
    skipped_locked: int = 0
    unpriced: int = 0
    errors: int = 0
    triggers: dict[str, str] = field(default_factory=dict)
    outcomes: dict[str, ExitOutcome] = field(default_factory=dict)


class AutoExitSweep:
    def __init__(
        self,
        coordinator: ExitExecutionCoordinator,
        store: PositionStore,
        *,
        account_id: str | None = None,
        interval_seconds: float | None = None,
        take_profit_percent: float | None = None,
        stop_loss_percent: float | None = None,
        max_gain_percent: float | None = None,
        max_loss_percent: float | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.store = store
        self.account_id = str(account_id if account_id is not None else config.ACCOUNT_ID)
        self.interval_seconds = float(
            interval_seconds if interval_seconds is not None else config.AUTO_EXIT_INTERVAL_SECONDS
        )
        self.take_profit_percent = float(
            take_profit_percent if take_profit_percent is not None else config.AUTO_EXIT_TAKE_PROFIT_PERCENT
        )
        self.stop_loss_percent = float(
            stop_loss_percent if stop_loss_percent is not None else config.AUTO_EXIT_STOP_LOSS_PERCENT
        )
        self.max_gain_percent = float(
            max_gain_percent if max_gain_percent is not None else config.AUTO_EXIT_MAX_GAIN_PERCENT
        )
        self.max_loss_percent = float(
            max_loss_percent if max_loss_percent is not None else config.AUTO_EXIT_MAX_LOSS_PERCENT
        )
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name="auto-exit-sweep")
        logger.info(
            "AUTO_EXIT started interval=%.1fs take_profit=%.1f%% stop_loss=%.1f%%",
            self.interval_seconds,
            self.take_profit_percent,
            self.stop_loss_percent,
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
        logger.info("AUTO_EXIT stopped")

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("AUTO_EXIT tick_failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def run_once(self) -> SweepReport:
        report = SweepReport()
        positions = [
            p
            for p in self.store.fetch_by_status(STATUS_OPEN, self.account_id)
            if not self.coordinator.needs_review(p.token_address)
        ]
        for position in positions:
            await self._evaluate(position, report)
        if report.checked or report.triggers:
            logger.info(
                "AUTO_EXIT tick_done checked=%s triggered=%s locked=%s unpriced=%s errors=%s",
                report.checked,
                len(report.triggers),
                report.skipped_locked,
                report.unpriced,
                report.errors,
            )
        return report

    async def _evaluate(self, position: Position, report: SweepReport) -> None:
        try:
            if self.coordinator.lock.is_locked(position.token_address):
                report.skipped_locked += 1
                return
            report.checked += 1
            balance, resolution = await self.coordinator.quote_exit(position)
            if balance.amount_ui <= 0 or resolution.quote is None:
                # No price without a route; the next manual or triggered exit moves it to waiting.
                report.unpriced += 1
                return
            current_price = resolution.quote.amount_out / WEI_PER_ETH / balance.amount_ui
            signal = check_exit_conditions(
                position.entry_price,
                current_price,
                self.take_profit_percent,
                self.stop_loss_percent,
                max_gain_percent=self.max_gain_percent,
                max_loss_percent=self.max_loss_percent,
            )
            if signal.clamped:
                logger.warning(
                    "AUTO_EXIT suspicious_pnl id=%s token=%s entry=%.12f current=%.12f pnl=%.2f%%",
                    position.id,
                    short_address(position.token_address),
                    position.entry_price,
                    current_price,
                    signal.pnl_percent,
                )
            if not signal.should_exit:
                return
            logger.info(
                "AUTO_EXIT trigger id=%s token=%s reason=%s pnl=%.2f%%",
                position.id,
                short_address(position.token_address),
                signal.reason,
                signal.pnl_percent,
            )
            report.triggers[position.id] = signal.reason
            report.outcomes[position.id] = await self.coordinator.execute_resolved(
                position, resolution, SOURCE_AUTO_EXIT
            )
        except Exception:
            report.errors += 1
            logger.exception("AUTO_EXIT position_failed id=%s", position.id)
