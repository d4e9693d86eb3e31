from __future__ import annotations

import asyncio
import unittest
from datetime import datetime, timedelta, timezone

from fakes import (
    ACCOUNT,
    TOKEN_A,
    TOKEN_B,
    WALLET,
    WETH,
    FakeChain,
    FakeSigner,
    FakeVenue,
    InMemoryPositionStore,
    ListHistory,
    make_position,
)
from trading.exit_coordinator import EXIT_CLOSED, ExitExecutionCoordinator
from trading.liquidity_worker import LiquidityRecoveryWorker
from trading.positions import STATUS_CLOSED, STATUS_PENDING, STATUS_WAITING
from trading.route_resolver import RouteResolver
from trading.sell_lock import ExclusiveSellLock
from trading.wallet_scan import WalletScanner
from utils.addressing import wallet_scan_id

TOKEN_C = "0xcccccccccccccccccccccccccccccccccccccccc"


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 5, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


class WalletScannerTests(unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.chain = FakeChain()
        self.store = InMemoryPositionStore()
        self.clock = _Clock()

    def _scanner(self, tokens: list[str]) -> WalletScanner:
        return WalletScanner(self.chain, self.store, owner=WALLET, account_id=ACCOUNT, tokens=tokens, now=self.clock)

    def test_no_configured_tokens_reads_nothing(self) -> None:
        found = asyncio.run(self._scanner([]).scan())
        self.assertEqual(found, [])
        self.assertEqual(self.chain.balance_reads, 0)

    def test_untracked_holding_becomes_a_waiting_position(self) -> None:
        self.chain.set_balance(TOKEN_C, 42.0)
        found = asyncio.run(self._scanner([TOKEN_C.upper().replace("0X", "0x")]).scan())
        self.assertEqual(len(found), 1)
        position = found[0]
        self.assertEqual(position.id, wallet_scan_id(TOKEN_C))
        self.assertTrue(position.is_wallet_scan)
        self.assertEqual(position.status, STATUS_WAITING)
        self.assertEqual(position.account_id, ACCOUNT)
        self.assertAlmostEqual(position.amount, 42.0)
        self.assertEqual(position.waiting_since, self.clock.now)
        self.assertEqual(self.store.writes, [])

    def test_tracked_and_empty_tokens_are_left_out(self) -> None:
        self.store.add(make_position(position_id="open", token=TOKEN_A))
        self.store.add(make_position(position_id="pending", token=TOKEN_B, status=STATUS_PENDING))
        self.chain.set_balance(TOKEN_A, 10.0)
        self.chain.set_balance(TOKEN_B, 10.0)
        found = asyncio.run(self._scanner([TOKEN_A, TOKEN_B, TOKEN_C]).scan())
        self.assertEqual(found, [])
        # Tracked tokens are never read; only the empty one is.
        self.assertEqual(self.chain.balance_reads, 1)

    def test_closed_row_does_not_hide_a_new_holding(self) -> None:
        self.store.add(make_position(position_id="old", token=TOKEN_C, status=STATUS_CLOSED))
        self.chain.set_balance(TOKEN_C, 3.0)
        found = asyncio.run(self._scanner([TOKEN_C]).scan())
        self.assertEqual([p.id for p in found], [wallet_scan_id(TOKEN_C)])

    def test_first_seen_time_is_stable_across_scans(self) -> None:
        self.chain.set_balance(TOKEN_C, 3.0)
        scanner = self._scanner([TOKEN_C])
        first = asyncio.run(scanner.scan())[0].waiting_since
        self.clock.now += timedelta(minutes=5)
        again = asyncio.run(scanner.scan())[0].waiting_since
        self.assertEqual(first, again)

        self.chain.set_balance(TOKEN_C, 0.0)
        self.assertEqual(asyncio.run(scanner.scan()), [])
        self.chain.set_balance(TOKEN_C, 3.0)
        self.assertEqual(asyncio.run(scanner.scan())[0].waiting_since, self.clock.now)

    def test_balance_read_error_skips_the_token(self) -> None:
        self.chain.set_balance(TOKEN_C, 3.0)
        self.chain.fail_reads_with = RuntimeError("rpc down")
        with self.assertLogs("trading.wallet_scan", level="WARNING") as logs:
            found = asyncio.run(self._scanner([TOKEN_C]).scan())
        self.assertEqual(found, [])
        self.assertIn("WALLET_SCAN balance_error", logs.output[0])

    def test_duplicate_tokens_are_read_once(self) -> None:
        self.chain.set_balance(TOKEN_C, 3.0)
        found = asyncio.run(self._scanner([TOKEN_C, TOKEN_C.upper().replace("0X", "0x")]).scan())
        self.assertEqual(len(found), 1)
        self.assertEqual(self.chain.balance_reads, 1)


class WalletScannerWorkerTests(unittest.TestCase):
    def test_worker_sells_an_untracked_holding(self) -> None:
        chain = FakeChain()
        chain.set_balance(TOKEN_C, 500.0)
        store = InMemoryPositionStore()
        signer = FakeSigner(chain)
        coordinator = ExitExecutionCoordinator(
            RouteResolver([FakeVenue("aggregator")], timeout_seconds=1, default_slippage_bps=200),
            signer,
            chain,
            store,
            ExclusiveSellLock(max_hold_seconds=60),
            history=ListHistory(),
            owner=WALLET,
            weth_address=WETH,
            dust_amount=0.001,
            dust_percent=1.0,
            retry_slippage_bps=0,
            confirm_timeout_seconds=5,
        )
        scanner = WalletScanner(chain, store, owner=WALLET, account_id=ACCOUNT, tokens=[TOKEN_C])
        worker = LiquidityRecoveryWorker(
            coordinator,
            store,
            account_id=ACCOUNT,
            interval_seconds=10.0,
            batch_size=3,
            batch_pause_seconds=0.0,
            wallet_positions=scanner,
        )

        report = asyncio.run(worker.run_once())
        self.assertEqual(report.outcomes[wallet_scan_id(TOKEN_C)].kind, EXIT_CLOSED)
        self.assertEqual(len(signer.submitted), 1)
        self.assertEqual(store.writes, [])
        self.assertEqual(asyncio.run(scanner.scan()), [])


if __name__ == "__main__":
    unittest.main()
