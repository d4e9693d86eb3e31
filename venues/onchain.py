"""Venues quoted straight from contracts: a UniswapV2 router and a launchpad bonding curve."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

from web3 import Web3
from web3.contract import Contract
from web3.exceptions import ContractLogicError

import config
from trading.errors import ErrorKind, VenueUnavailableError
from utils.addressing import normalize_address
from venues.base import RouteQuote, UnsignedTransaction, VenueClient, VenueFailure

logger = logging.getLogger(__name__)


ROUTER_ABI: list[dict[str, Any]] = [
    {
        "name": "getAmountsOut",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "amountIn", "type": "uint256"}, {"name": "path", "type": "address[]"}],
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
    },
    {
        "name": "swapExactETHForTokensSupportingFeeOnTransferTokens",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "path", "type": "address[]"},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "name": "swapExactTokensForETHSupportingFeeOnTransferTokens",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "path", "type": "address[]"},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "outputs": [],
    },
]


BONDING_CURVE_ABI: list[dict[str, Any]] = [
    {
        "name": "isGraduated",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "token", "type": "address"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "getTokensForEth",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "token", "type": "address"}, {"name": "ethIn", "type": "uint256"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "getEthForTokens",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "token", "type": "address"}, {"name": "tokensIn", "type": "uint256"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "buy",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "minTokensOut", "type": "uint256"},
            {"name": "deadline", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "name": "sell",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "tokensIn", "type": "uint256"},
            {"name": "minEthOut", "type": "uint256"},
            {"name": "deadline", "type": "uint256"},
        ],
        "outputs": [],
    },
]


def min_out_after_slippage(amount_out: int, slippage_bps: int) -> int:
    slip = max(1, min(9_999, int(slippage_bps)))
    return max(1, int(int(amount_out) * (10_000 - slip) / 10_000))


class _ContractVenue(VenueClient):
    """Shared plumbing: blocking web3 calls run in a worker thread."""

    def __init__(self, w3: Web3, contract_address: str, abi: list[dict[str, Any]], weth_address: str | None = None) -> None:
        if not contract_address:
            raise VenueUnavailableError(f"{self.name} contract address is empty")
        self.w3 = w3
        self.address = w3.to_checksum_address(contract_address)
        self.contract: Contract = w3.eth.contract(address=self.address, abi=abi)
        self.weth = normalize_address(weth_address or config.WETH_ADDRESS)

    async def _call(self, fn: Callable[[], Any]) -> Any:
        return await asyncio.to_thread(fn)

    def _map_call_error(self, exc: Exception) -> VenueFailure:
        if isinstance(exc, ContractLogicError):
            return self.fail(ErrorKind.NO_ROUTE, f"quote_reverted:{exc}")
        if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
            return self.fail(ErrorKind.TIMEOUT, "rpc_timeout")
        return self.fail(ErrorKind.MALFORMED, f"rpc_error:{exc.__class__.__name__}")

    def _is_buy(self, token_in: str) -> bool:
        return normalize_address(token_in) == self.weth

    @staticmethod
    def _deadline() -> int:
        return int(time.time()) + int(config.LIVE_SWAP_DEADLINE_SECONDS)

    @staticmethod
    def _impact_from_reference(amount_in: int, amount_out: int, ref_in: int, ref_out: int) -> float:
        if amount_in <= 0 or ref_in <= 0 or ref_out <= 0:
            return 0.0
        spot = ref_out / ref_in
        realized = amount_out / amount_in
        return max(0.0, (1.0 - realized / spot) * 100.0)


class UniswapV2RouterVenue(_ContractVenue):
    name = "router"

    def __init__(self, w3: Web3, router_address: str | None = None, weth_address: str | None = None) -> None:
        super().__init__(w3, router_address or config.LIVE_ROUTER_ADDRESS, ROUTER_ABI, weth_address)

    def _amounts_out(self, amount_in: int, path: list[str]) -> int:
        amounts = self.contract.functions.getAmountsOut(int(amount_in), path).call()
        if not isinstance(amounts, (list, tuple)) or len(amounts) < 2:
            return 0
        return int(amounts[-1])

    async def quote(
        self,
        token_in: str,
        token_out: str,
        amount_in: int,
        max_slippage_bps: int,
        timeout: float,
    ) -> RouteQuote | VenueFailure:
        if int(amount_in) <= 0:
            return self.fail(ErrorKind.NO_ROUTE, "zero_amount")
        try:
            path = [self.w3.to_checksum_address(token_in), self.w3.to_checksum_address(token_out)]
        except ValueError as exc:
            return self.fail(ErrorKind.MALFORMED, f"invalid_token_address:{exc}")

        try:
            amount_out = await self._call(lambda: self._amounts_out(int(amount_in), path))
            if amount_out <= 0:
                return self.fail(ErrorKind.NO_ROUTE, "quote_zero")
            # Reference quote at 1/1000 size approximates the spot price.
            ref_in = max(1, int(amount_in) // 1000)
            ref_out = await self._call(lambda: self._amounts_out(ref_in, path))
        except Exception as exc:
            return self._map_call_error(exc)

        return RouteQuote(
            venue=self.name,
            token_in=normalize_address(token_in),
            token_out=normalize_address(token_out),
            amount_in=int(amount_in),
            amount_out=int(amount_out),
            price_impact_pct=self._impact_from_reference(int(amount_in), int(amount_out), ref_in, int(ref_out)),
            slippage_bps=int(max_slippage_bps),
            payload={"path": path},
        )

    async def build_transaction(self, quote: RouteQuote, owner: str) -> UnsignedTransaction | VenueFailure:
        path = list(quote.payload.get("path") or [])
        if len(path) < 2:
            return self.fail(ErrorKind.MALFORMED, "missing_path")
        recipient = self.w3.to_checksum_address(owner)
        min_out = min_out_after_slippage(quote.amount_out, quote.slippage_bps)
        if self._is_buy(quote.token_in):
            data = self.contract.encode_abi(
                "swapExactETHForTokensSupportingFeeOnTransferTokens",
                args=[min_out, path, recipient, self._deadline()],
            )
            return UnsignedTransaction(venue=self.name, to=self.address, data=data, value=int(quote.amount_in), quote=quote)
        data = self.contract.encode_abi(
            "swapExactTokensForETHSupportingFeeOnTransferTokens",
            args=[int(quote.amount_in), min_out, path, recipient, self._deadline()],
        )
        return UnsignedTransaction(
            venue=self.name,
            to=self.address,
            data=data,
            approve_token=quote.token_in,
            approve_spender=self.address,
            approve_amount=int(quote.amount_in),
            quote=quote,
        )


class BondingCurveVenue(_ContractVenue):
    """Launchpad curve that trades a token against ETH until it graduates to an AMM."""

    name = "launchpad"

    def __init__(self, w3: Web3, curve_address: str | None = None, weth_address: str | None = None) -> None:
        super().__init__(w3, curve_address or config.LAUNCHPAD_ADDRESS, BONDING_CURVE_ABI, weth_address)

    def _quote_sync(self, token: str, amount_in: int, buying: bool) -> tuple[bool, int, int]:
        fns = self.contract.functions
        if bool(fns.isGraduated(token).call()):
            return True, 0, 0
        getter = fns.getTokensForEth if buying else fns.getEthForTokens
        out = int(getter(token, int(amount_in)).call())
        ref_in = max(1, int(amount_in) // 1000)
        ref_out = int(getter(token, ref_in).call())
        return False, out, ref_out

    async def quote(
        self,
        token_in: str,
        token_out: str,
        amount_in: int,
        max_slippage_bps: int,
        timeout: float,
    ) -> RouteQuote | VenueFailure:
        if int(amount_in) <= 0:
            return self.fail(ErrorKind.NO_ROUTE, "zero_amount")
        buying = self._is_buy(token_in)
        if not buying and normalize_address(token_out) != self.weth:
            return self.fail(ErrorKind.NO_ROUTE, "curve_pairs_eth_only")
        try:
            token = self.w3.to_checksum_address(token_out if buying else token_in)
        except ValueError as exc:
            return self.fail(ErrorKind.MALFORMED, f"invalid_token_address:{exc}")

        try:
            graduated, amount_out, ref_out = await self._call(lambda: self._quote_sync(token, int(amount_in), buying))
        except Exception as exc:
            return self._map_call_error(exc)
        if graduated:
            return self.fail(ErrorKind.NO_ROUTE, "curve_graduated")
        if amount_out <= 0:
            return self.fail(ErrorKind.NO_ROUTE, "quote_zero")

        ref_in = max(1, int(amount_in) // 1000)
        return RouteQuote(
            venue=self.name,
            token_in=normalize_address(token_in),
            token_out=normalize_address(token_out),
            amount_in=int(amount_in),
            amount_out=int(amount_out),
            price_impact_pct=self._impact_from_reference(int(amount_in), int(amount_out), ref_in, int(ref_out)),
            slippage_bps=int(max_slippage_bps),
            payload={"token": token, "buy": buying},
        )

    async def build_transaction(self, quote: RouteQuote, owner: str) -> UnsignedTransaction | VenueFailure:
        token = str(quote.payload.get("token") or "")
        if not token:
            return self.fail(ErrorKind.MALFORMED, "missing_token")
        min_out = min_out_after_slippage(quote.amount_out, quote.slippage_bps)
        if bool(quote.payload.get("buy")):
            data = self.contract.encode_abi("buy", args=[token, min_out, self._deadline()])
            return UnsignedTransaction(venue=self.name, to=self.address, data=data, value=int(quote.amount_in), quote=quote)
        data = self.contract.encode_abi("sell", args=[token, int(quote.amount_in), min_out, self._deadline()])
        return UnsignedTransaction(
            venue=self.name,
            to=self.address,
            data=data,
            approve_token=quote.token_in,
            approve_spender=self.address,
            approve_amount=int(quote.amount_in),
            quote=quote,
        )
