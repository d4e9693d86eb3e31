from __future__ import annotations

import asyncio
import unittest
from datetime import datetime, timezone

from fakes import (
    ACCOUNT,
    WALLET,
    WETH,
    FakeChain,
    FakeRiskSignal,
    FakeSigner,
    FakeVenue,
    InMemoryPositionStore,
    ListHistory,
    make_position,
)
from trading.errors import ErrorKind
from trading.exit_coordinator import EXIT_CLOSED, EXIT_HONEYPOT, EXIT_TOKEN_NOT_HELD, ExitExecutionCoordinator
from trading.liquidity_worker import LiquidityRecoveryWorker
from trading.positions import STATUS_CLOSED, STATUS_PENDING, STATUS_WAITING, ConfirmResult, RiskSignal
from trading.route_resolver import RouteResolver
from trading.sell_lock import ExclusiveSellLock
from utils.addressing import wallet_scan_id

NOW = datetime(2026, 1, 3, tzinfo=timezone.utc)


def _token(index: int) -> str:
    return f"0x{index + 1:040x}"


class _LiquidityAwareVenue(FakeVenue):
    """Quotes only tokens listed in `liquid`; everything else fails with `otherwise`."""

    def __init__(self, name: str) -> None:
        super().__init__(name, [0.5])
        self.liquid: set[str] = set()
        self.otherwise = ErrorKind.NO_ROUTE

    async def quote(self, token_in, token_out, amount_in, max_slippage_bps, timeout):  # type: ignore[no-untyped-def]
        if token_in.lower() not in self.liquid:
            self.quote_calls.append((token_in, token_out, int(amount_in), int(max_slippage_bps)))
            return self.fail(self.otherwise, "scripted")
        return await super().quote(token_in, token_out, amount_in, max_slippage_bps, timeout)


class LiquidityWorkerTests(unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.chain = FakeChain()
        self.signer = FakeSigner(self.chain)
        self.store = InMemoryPositionStore()
        self.lock = ExclusiveSellLock(max_hold_seconds=60)
        self.venue = _LiquidityAwareVenue("aggregator")
        self.coordinator = ExitExecutionCoordinator(
            RouteResolver([self.venue], timeout_seconds=1, default_slippage_bps=200),
            self.signer,
            self.chain,
            self.store,
            self.lock,
            history=ListHistory(),
            owner=WALLET,
            weth_address=WETH,
            dust_amount=0.001,
            dust_percent=1.0,
            retry_slippage_bps=0,
            confirm_timeout_seconds=5,
            now=lambda: NOW,
        )

    def _worker(self, **kwargs: object) -> LiquidityRecoveryWorker:
        params: dict[str, object] = {
            "account_id": ACCOUNT,
            "interval_seconds": 10.0,
            "batch_size": 3,
            "batch_pause_seconds": 0.0,
        }
        params.update(kwargs)
        return LiquidityRecoveryWorker(self.coordinator, self.store, **params)  # type: ignore[arg-type]

    def _waiting(self, count: int, order: list[int] | None = None) -> list[str]:
        ids = []
        for index in order if order is not None else range(count):
            position = make_position(
                position_id=f"pos-{index}",
                token=_token(index),
                status=STATUS_WAITING,
                waiting_offset_minutes=index,
            )
            self.chain.set_balance(position.token_address, 1000.0)
            self.store.add(position)
            ids.append(position.id)
        return ids

    def test_batches_are_oldest_first_and_bounded(self) -> None:
        self._waiting(7, order=[4, 0, 6, 2, 1, 5, 3])
        report = asyncio.run(self._worker().run_once())
        self.assertEqual(
            report.batches,
            [["pos-0", "pos-1", "pos-2"], ["pos-3", "pos-4", "pos-5"], ["pos-6"]],
        )
        self.assertEqual(report.checked, 7)
        self.assertEqual(report.still_waiting, 7)
        for row in self.store.rows.values():
            self.assertEqual(row.status, STATUS_WAITING)
            self.assertEqual(row.liquidity_check_count, 1)
            self.assertEqual(row.liquidity_last_checked_at, NOW)

    def test_check_count_grows_each_tick(self) -> None:
        self._waiting(2)
        worker = self._worker()
        asyncio.run(worker.run_once())
        asyncio.run(worker.run_once())
        self.assertEqual(self.store.rows["pos-0"].liquidity_check_count, 2)

    def test_locked_tokens_are_skipped(self) -> None:
        self._waiting(3)
        self.lock.try_acquire(_token(1), "manual_exit:1")
        report = asyncio.run(self._worker().run_once())
        self.assertEqual(report.skipped_locked, 1)
        self.assertEqual(report.checked, 2)
        self.assertEqual(self.store.rows["pos-1"].liquidity_check_count, 0)
        self.assertNotIn(_token(1), [call[0] for call in self.venue.quote_calls])

    def test_rate_limit_does_not_count_a_check(self) -> None:
        self._waiting(1)
        self.venue.otherwise = ErrorKind.RATE_LIMITED
        report = asyncio.run(self._worker().run_once())
        self.assertEqual(report.rate_limited, 1)
        self.assertEqual(self.store.rows["pos-0"].liquidity_check_count, 0)

    def test_route_found_sells_and_closes(self) -> None:
        self._waiting(3)
        self.venue.liquid.add(_token(2))
        report = asyncio.run(self._worker().run_once())
        self.assertEqual(report.outcomes["pos-2"].kind, EXIT_CLOSED)
        self.assertEqual(self.store.rows["pos-2"].status, STATUS_CLOSED)
        self.assertEqual(self.store.rows["pos-2"].exit_reason, "liquidity_worker")
        self.assertEqual(self.store.rows["pos-0"].status, STATUS_WAITING)
        self.assertFalse(self.lock.is_locked(_token(2)))

    def test_one_failing_position_does_not_stop_the_tick(self) -> None:
        self._waiting(4)
        original = self.coordinator.quote_exit

        async def flaky_quote_exit(position):  # type: ignore[no-untyped-def]
            if position.id == "pos-1":
                raise RuntimeError("rpc hiccup")
            return await original(position)

        self.coordinator.quote_exit = flaky_quote_exit  # type: ignore[method-assign]
        report = asyncio.run(self._worker(batch_size=2).run_once())
        self.assertEqual(report.errors, 1)
        self.assertEqual(report.still_waiting, 3)
        self.assertEqual(len(report.batches), 2)
        self.assertEqual(self.store.rows["pos-3"].liquidity_check_count, 1)

    def test_zero_balance_surfaces_token_not_held(self) -> None:
        self._waiting(1)
        self.chain.set_balance(_token(0), 0.0)
        report = asyncio.run(self._worker().run_once())
        self.assertEqual(report.outcomes["pos-0"].kind, EXIT_TOKEN_NOT_HELD)
        self.assertEqual(self.signer.submitted, [])

    def test_wallet_scan_positions_join_without_duplicates(self) -> None:
        self._waiting(1)
        scanned_token = _token(9)
        self.chain.set_balance(scanned_token, 5.0)
        scanned = make_position(
            position_id=wallet_scan_id(scanned_token),
            token=scanned_token,
            status=STATUS_WAITING,
            waiting_offset_minutes=30,
        )
        duplicate = make_position(
            position_id=wallet_scan_id(_token(0)),
            token=_token(0),
            status=STATUS_WAITING,
        )

        async def provider():  # type: ignore[no-untyped-def]
            return [scanned, duplicate]

        report = asyncio.run(self._worker(wallet_positions=provider).run_once())
        self.assertEqual(report.batches, [["pos-0", scanned.id]])
        self.assertEqual(scanned.liquidity_check_count, 1)
        self.assertNotIn(("update_liquidity_check", scanned.id), self.store.writes)

    def _flag_honeypot(self, token: str) -> None:
        self.venue.liquid.add(token)
        reverted = ConfirmResult(confirmed=False, error_kind=ErrorKind.REVERTED, error="TRANSFER_FAILED")
        self.signer.confirm_script = [reverted] * 4
        self.coordinator.risk_signal = FakeRiskSignal(RiskSignal(available=True, is_honeypot=True))

    def test_honeypot_is_not_resubmitted_on_the_next_tick(self) -> None:
        self._waiting(1)
        self._flag_honeypot(_token(0))
        worker = self._worker()

        first = asyncio.run(worker.run_once())
        self.assertEqual(first.outcomes["pos-0"].kind, EXIT_HONEYPOT)
        self.assertEqual(len(self.signer.submitted), 1)
        row = self.store.rows["pos-0"]
        self.assertEqual(row.status, STATUS_PENDING)
        self.assertEqual(row.exit_reason, "HONEYPOT")

        second = asyncio.run(worker.run_once())
        self.assertEqual(second.checked, 0)
        self.assertEqual(second.batches, [])
        self.assertEqual(len(self.signer.submitted), 1)

    def test_flagged_wallet_holding_is_held_back(self) -> None:
        token = _token(7)
        self.chain.set_balance(token, 5.0)
        self._flag_honeypot(token)

        async def provider():  # type: ignore[no-untyped-def]
            return [make_position(position_id=wallet_scan_id(token), token=token, status=STATUS_WAITING)]

        worker = self._worker(wallet_positions=provider)
        first = asyncio.run(worker.run_once())
        self.assertEqual(first.outcomes[wallet_scan_id(token)].kind, EXIT_HONEYPOT)
        second = asyncio.run(worker.run_once())
        self.assertEqual(second.batches, [])
        self.assertEqual(len(self.signer.submitted), 1)
        self.assertEqual(self.store.writes, [])

    def test_requotes_when_balance_moved_after_quote(self) -> None:
        self._waiting(1)
        self.venue.liquid.add(_token(0))
        position = self.store.get("pos-0", ACCOUNT)
        assert position is not None

        async def scenario():  # type: ignore[no-untyped-def]
            _, resolution = await self.coordinator.quote_exit(position)
            self.chain.set_balance(_token(0), 400.0)
            return await self.coordinator.execute_resolved(position, resolution)

        outcome = asyncio.run(scenario())
        self.assertEqual(outcome.kind, EXIT_CLOSED)
        self.assertEqual(self.signer.submitted[0].quote.amount_in, 400 * 10**18)

    def test_start_and_stop_are_idempotent(self) -> None:
        self._waiting(1)

        async def scenario() -> tuple[bool, bool]:
            worker = self._worker()
            await worker.stop()
            worker.start()
            task = worker._task
            worker.start()
            same_task = worker._task is task
            await asyncio.sleep(0.05)
            await worker.stop()
            await worker.stop()
            return same_task, worker.running

        same_task, running = asyncio.run(scenario())
        self.assertTrue(same_task)
        self.assertFalse(running)
        self.assertEqual(self.store.rows["pos-0"].liquidity_check_count, 1)


if __name__ == "__main__":
    unittest.main()
