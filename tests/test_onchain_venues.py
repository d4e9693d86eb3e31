from __future__ import annotations

import asyncio
import unittest
from types import SimpleNamespace

from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

import config
from fakes import TOKEN_A, WALLET, WETH
from trading.errors import ConfigurationError, ErrorKind, VenueUnavailableError
from trading.live_executor import LiveExecutor, SubmitError, classify_send_error
from venues.base import RouteQuote, UnsignedTransaction, VenueFailure
from venues.onchain import BondingCurveVenue, UniswapV2RouterVenue, min_out_after_slippage

ROUTER = "0x4752ba5DBc23f44D87826276BF6Fd6b1C372aD24"
CURVE = "0x1234567890123456789012345678901234567890"
TEST_KEY = "0x" + "11" * 32


class ConfigPatchMixin:
    def setUp(self) -> None:
        super().setUp()
        self._cfg_old: dict[str, object] = {}

    def patch_cfg(self, **kwargs: object) -> None:
        for key, value in kwargs.items():
            if key not in self._cfg_old:
                self._cfg_old[key] = getattr(config, key, None)
            setattr(config, key, value)

    def tearDown(self) -> None:
        for key, value in self._cfg_old.items():
            setattr(config, key, value)
        super().tearDown()


def _offline_web3() -> Web3:
    # Never contacted: the tests stub every contract read.
    return Web3(Web3.HTTPProvider("http://127.0.0.1:1"))


class RouterVenueTests(unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.venue = UniswapV2RouterVenue(_offline_web3(), router_address=ROUTER, weth_address=WETH)

    def test_quote_reports_impact_against_reference_size(self) -> None:
        # Full size gets 10% less per unit than the 1/1000 reference.
        self.venue._amounts_out = lambda amount_in, path: amount_in * 9 // 10 if amount_in > 10**15 else amount_in  # type: ignore[method-assign]
        quote = asyncio.run(self.venue.quote(TOKEN_A, WETH, 10**18, 300, 5.0))
        self.assertIsInstance(quote, RouteQuote)
        self.assertEqual(quote.amount_out, 9 * 10**17)
        self.assertAlmostEqual(quote.price_impact_pct, 10.0)
        self.assertEqual(len(quote.payload["path"]), 2)

    def test_zero_output_is_no_route(self) -> None:
        self.venue._amounts_out = lambda amount_in, path: 0  # type: ignore[method-assign]
        failure = asyncio.run(self.venue.quote(TOKEN_A, WETH, 10**18, 300, 5.0))
        self.assertEqual(failure.kind, ErrorKind.NO_ROUTE)

    def test_reverted_quote_is_no_route(self) -> None:
        def reverting(amount_in, path):  # type: ignore[no-untyped-def]
            raise ContractLogicError("execution reverted: INSUFFICIENT_LIQUIDITY")

        self.venue._amounts_out = reverting  # type: ignore[method-assign]
        failure = asyncio.run(self.venue.quote(TOKEN_A, WETH, 10**18, 300, 5.0))
        self.assertIsInstance(failure, VenueFailure)
        self.assertEqual(failure.kind, ErrorKind.NO_ROUTE)

    def test_rpc_error_is_malformed(self) -> None:
        def broken(amount_in, path):  # type: ignore[no-untyped-def]
            raise OSError("connection refused")

        self.venue._amounts_out = broken  # type: ignore[method-assign]
        failure = asyncio.run(self.venue.quote(TOKEN_A, WETH, 10**18, 300, 5.0))
        self.assertEqual(failure.kind, ErrorKind.MALFORMED)

    def test_sell_build_encodes_call_and_requests_allowance(self) -> None:
        quote = RouteQuote(
            venue="router",
            token_in=TOKEN_A,
            token_out=WETH,
            amount_in=10**18,
            amount_out=10**16,
            slippage_bps=500,
            payload={"path": [Web3.to_checksum_address(TOKEN_A), Web3.to_checksum_address(WETH)]},
        )
        tx = asyncio.run(self.venue.build_transaction(quote, WALLET))
        self.assertIsInstance(tx, UnsignedTransaction)
        self.assertEqual(tx.to, ROUTER)
        self.assertTrue(tx.data.startswith("0x"))
        self.assertEqual(tx.value, 0)
        self.assertEqual(tx.approve_spender, ROUTER)
        self.assertEqual(tx.approve_amount, 10**18)

    def test_empty_address_is_unavailable(self) -> None:
        with self.assertRaises(VenueUnavailableError):
            BondingCurveVenue(_offline_web3(), curve_address="", weth_address=WETH)


class BondingCurveVenueTests(unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.venue = BondingCurveVenue(_offline_web3(), curve_address=CURVE, weth_address=WETH)

    def test_graduated_curve_has_no_route(self) -> None:
        self.venue._quote_sync = lambda token, amount_in, buying: (True, 0, 0)  # type: ignore[method-assign]
        failure = asyncio.run(self.venue.quote(TOKEN_A, WETH, 10**18, 300, 5.0))
        self.assertEqual(failure.kind, ErrorKind.NO_ROUTE)
        self.assertEqual(failure.detail, "curve_graduated")

    def test_buy_quote_on_live_curve(self) -> None:
        self.venue._quote_sync = lambda token, amount_in, buying: (False, 5000, 5)  # type: ignore[method-assign]
        quote = asyncio.run(self.venue.quote(WETH, TOKEN_A, 10**16, 300, 5.0))
        self.assertIsInstance(quote, RouteQuote)
        self.assertTrue(quote.payload["buy"])
        self.assertAlmostEqual(quote.price_impact_pct, 0.0)

    def test_non_eth_pair_has_no_route(self) -> None:
        failure = asyncio.run(self.venue.quote(TOKEN_A, "0x" + "c" * 40, 10**18, 300, 5.0))
        self.assertEqual(failure.kind, ErrorKind.NO_ROUTE)


class SlippageFloorTests(unittest.TestCase):
    def test_min_out(self) -> None:
        self.assertEqual(min_out_after_slippage(10_000, 300), 9_700)
        self.assertEqual(min_out_after_slippage(10_000, 0), 9_999)
        self.assertEqual(min_out_after_slippage(1, 5000), 1)


class LiveExecutorTests(ConfigPatchMixin, unittest.TestCase):
    def test_missing_key_is_a_configuration_error(self) -> None:
        self.patch_cfg(LIVE_PRIVATE_KEY="", LIVE_WALLET_ADDRESS=WALLET)
        with self.assertRaises(ConfigurationError):
            LiveExecutor(w3=_offline_web3())

    def test_key_must_match_wallet(self) -> None:
        self.patch_cfg(LIVE_PRIVATE_KEY=TEST_KEY, LIVE_WALLET_ADDRESS=WALLET)
        with self.assertRaises(ConfigurationError):
            LiveExecutor(w3=_offline_web3())

    def _executor(self, receipt_fn) -> LiveExecutor:  # type: ignore[no-untyped-def]
        self.patch_cfg(LIVE_PRIVATE_KEY=TEST_KEY, LIVE_WALLET_ADDRESS=Account.from_key(TEST_KEY).address)
        fake_w3 = SimpleNamespace(
            to_checksum_address=Web3.to_checksum_address,
            eth=SimpleNamespace(wait_for_transaction_receipt=receipt_fn),
        )
        return LiveExecutor(w3=fake_w3)  # type: ignore[arg-type]

    def test_confirmation_outcomes(self) -> None:
        ok = self._executor(lambda tx_hash, timeout: SimpleNamespace(status=1))
        self.assertTrue(asyncio.run(ok.wait_for_confirmation("0xaa", 5)).confirmed)

        reverted = self._executor(lambda tx_hash, timeout: SimpleNamespace(status=0))
        result = asyncio.run(reverted.wait_for_confirmation("0xbb", 5))
        self.assertFalse(result.confirmed)
        self.assertEqual(result.error_kind, ErrorKind.REVERTED)

        def never(tx_hash, timeout):  # type: ignore[no-untyped-def]
            raise TimeExhausted("not mined")

        pending = asyncio.run(self._executor(never).wait_for_confirmation("0xcc", 5))
        self.assertTrue(pending.pending)
        self.assertEqual(pending.error_kind, ErrorKind.UNCONFIRMED)

    def test_send_error_classification(self) -> None:
        funds = ValueError({"code": -32000, "message": "insufficient funds for gas * price + value"})
        self.assertEqual(classify_send_error(funds), ErrorKind.INSUFFICIENT_FUNDS)
        self.assertEqual(classify_send_error(SubmitError(ErrorKind.GAS_CAP, "cap")), ErrorKind.GAS_CAP)
        self.assertEqual(classify_send_error(ContractLogicError("reverted")), ErrorKind.REVERTED)
        self.assertEqual(classify_send_error(TimeoutError()), ErrorKind.TIMEOUT)
        self.assertEqual(classify_send_error(RuntimeError("nonce too low")), ErrorKind.SUBMIT_FAILED)


if __name__ == "__main__":
    unittest.main()
