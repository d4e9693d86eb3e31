"""On-chain signer and balance reader for Base (EIP-1559, local key)."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from eth_account import Account
from web3 import HTTPProvider, Web3
from web3.contract import Contract
from web3.exceptions import ContractLogicError, TimeExhausted

import config
from trading.errors import ConfigurationError, ErrorKind
from trading.positions import ConfirmResult, SubmitResult, TokenBalance
from utils.addressing import short_address
from venues.base import UnsignedTransaction

logger = logging.getLogger(__name__)


ERC20_ABI: list[dict[str, Any]] = [
    {
        "name": "decimals",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "spender", "type": "address"}, {"name": "value", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]


class SubmitError(RuntimeError):
    """Submission refused or failed; carries the mapped error kind."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


def build_web3() -> Web3:
    rpc = (config.RPC_PRIMARY or "").strip() or (config.RPC_SECONDARY or "").strip()
    if not rpc:
        raise ConfigurationError("RPC_PRIMARY/RPC_SECONDARY is empty")
    return Web3(HTTPProvider(rpc, request_kwargs={"timeout": config.RPC_TIMEOUT_SECONDS}))


def classify_send_error(exc: Exception) -> ErrorKind:
    if isinstance(exc, SubmitError):
        return exc.kind
    if isinstance(exc, ContractLogicError):
        return ErrorKind.REVERTED
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return ErrorKind.TIMEOUT
    # Nodes report underfunded sends as a JSON-RPC ValueError payload.
    if isinstance(exc, ValueError) and exc.args and isinstance(exc.args[0], dict):
        code = exc.args[0].get("code")
        if code == -32000 and "insufficient funds" in str(exc.args[0].get("message", "")).lower():
            return ErrorKind.INSUFFICIENT_FUNDS
    return ErrorKind.SUBMIT_FAILED


class LiveExecutor:
    """Signs with a local key and submits through one RPC.

    Web3 calls are blocking and run on a worker thread.
    """

    def __init__(self, w3: Web3 | None = None) -> None:
        if not config.LIVE_PRIVATE_KEY:
            raise ConfigurationError("LIVE_PRIVATE_KEY is empty")
        if not config.LIVE_WALLET_ADDRESS:
            raise ConfigurationError("LIVE_WALLET_ADDRESS is empty")

        self.w3 = w3 or build_web3()
        self.account = Account.from_key(config.LIVE_PRIVATE_KEY)
        self.wallet = self.w3.to_checksum_address(config.LIVE_WALLET_ADDRESS)
        if self.account.address.lower() != self.wallet.lower():
            raise ConfigurationError("LIVE_WALLET_ADDRESS does not match LIVE_PRIVATE_KEY")
        self._decimals_cache: dict[str, int] = {}

    def _erc20(self, token_address: str) -> Contract:
        return self.w3.eth.contract(address=self.w3.to_checksum_address(token_address), abi=ERC20_ABI)

    def native_balance_eth(self) -> float:
        wei = self.w3.eth.get_balance(self.wallet)
        return float(self.w3.from_wei(wei, "ether"))

    def _token_decimals_sync(self, token_address: str) -> int:
        """Best-effort ERC20 decimals() with a safe fallback."""
        key = token_address.lower()
        if key in self._decimals_cache:
            return self._decimals_cache[key]
        try:
            dec = int(self._erc20(token_address).functions.decimals().call())
        except Exception:
            return 18
        if not 0 <= dec <= 255:
            return 18
        self._decimals_cache[key] = dec
        return dec

    async def token_decimals(self, token_address: str) -> int:
        return await asyncio.to_thread(self._token_decimals_sync, token_address)

    def _balance_sync(self, token_address: str, owner: str) -> TokenBalance:
        decimals = self._token_decimals_sync(token_address)
        raw = int(self._erc20(token_address).functions.balanceOf(self.w3.to_checksum_address(owner)).call())
        return TokenBalance(amount_raw=raw, decimals=decimals, amount_ui=raw / float(10**decimals))

    async def fetch_on_chain_balance(self, token_address: str, owner: str) -> TokenBalance:
        return await asyncio.to_thread(self._balance_sync, token_address, owner)

    def _tx_params(self, value_wei: int = 0) -> dict[str, Any]:
        pending_nonce = self.w3.eth.get_transaction_count(self.wallet, "pending")
        latest = self.w3.eth.get_block("latest")
        base_fee = int(latest.get("baseFeePerGas") or 0)
        priority = int(self.w3.to_wei(max(0.0, float(config.LIVE_PRIORITY_FEE_GWEI)), "gwei"))
        cap = int(self.w3.to_wei(max(0.0, float(config.LIVE_MAX_GAS_GWEI)), "gwei"))
        if cap <= 0:
            # Never send with an unbounded fee cap.
            cap = int(self.w3.to_wei(1, "gwei"))

        observed_gas_price = int(self.w3.eth.gas_price or 0)
        if observed_gas_price > cap:
            obs_gwei = float(self.w3.from_wei(observed_gas_price, "gwei"))
            cap_gwei = float(self.w3.from_wei(cap, "gwei"))
            raise SubmitError(
                ErrorKind.GAS_CAP,
                f"gas_price_too_high observed_gwei={obs_gwei:.3f} cap_gwei={cap_gwei:.3f}",
            )

        # Max fee stays within the cap but never below the observed gas price.
        max_fee = min(cap, max(observed_gas_price, (base_fee * 2) + priority))
        if max_fee <= 0:
            max_fee = min(cap, int(self.w3.to_wei(1, "gwei")))

        return {
            "from": self.wallet,
            "chainId": int(config.LIVE_CHAIN_ID),
            "nonce": pending_nonce,
            "value": int(value_wei),
            "maxFeePerGas": max_fee,
            "maxPriorityFeePerGas": min(priority, max_fee),
            "type": 2,
        }

    def _send(self, tx: dict[str, Any]) -> str:
        gas = self.w3.eth.estimate_gas(tx)
        gas_cap = int(getattr(config, "LIVE_MAX_SWAP_GAS", 0) or 0)
        gas_limit = int(gas * 1.15)
        if gas_cap > 0 and gas_limit > gas_cap:
            raise SubmitError(ErrorKind.GAS_CAP, f"gas_estimate_too_high gas={gas_limit} cap={gas_cap}")
        tx["gas"] = gas_limit

        # Worst case maxFeePerGas * gas + value, with 20% headroom for the Base L1 data fee.
        bal = int(self.w3.eth.get_balance(self.wallet))
        max_fee = int(tx.get("maxFeePerGas") or 0)
        value = int(tx.get("value") or 0)
        buffered = int(((gas_limit * max_fee) + value) * 1.20)
        if buffered > bal:
            have_eth = float(self.w3.from_wei(bal, "ether"))
            want_eth = float(self.w3.from_wei(buffered, "ether"))
            raise SubmitError(
                ErrorKind.INSUFFICIENT_FUNDS,
                f"insufficient_balance_for_tx have_eth={have_eth:.8f} want_eth={want_eth:.8f} gas={gas_limit}",
            )
        signed = self.account.sign_transaction(tx)
        raw_tx = getattr(signed, "raw_transaction", None)
        if raw_tx is None:
            raw_tx = getattr(signed, "rawTransaction", None)
        if raw_tx is None:
            raise SubmitError(ErrorKind.SUBMIT_FAILED, "signed_tx_missing_raw_bytes")
        return self.w3.to_hex(self.w3.eth.send_raw_transaction(raw_tx))

    def _ensure_allowance(self, token_address: str, spender: str, required_amount: int) -> None:
        token_contract = self._erc20(token_address)
        spender_cs = self.w3.to_checksum_address(spender)
        allowance = int(token_contract.functions.allowance(self.wallet, spender_cs).call())
        if allowance >= required_amount:
            return
        approve_tx = token_contract.functions.approve(spender_cs, (2**256) - 1).build_transaction(self._tx_params())
        tx_hash = self._send(approve_tx)
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=int(config.LIVE_TX_TIMEOUT_SECONDS))
        if int(receipt.status) != 1:
            raise SubmitError(ErrorKind.REVERTED, f"approve_failed hash={tx_hash}")
        logger.info("LIVE approve token=%s spender=%s tx=%s", short_address(token_address), short_address(spender), tx_hash)

    def _sign_and_submit_sync(self, tx: UnsignedTransaction) -> str:
        if tx.approve_token and tx.approve_spender and tx.approve_amount > 0:
            self._ensure_allowance(tx.approve_token, tx.approve_spender, int(tx.approve_amount))
        params = self._tx_params(value_wei=int(tx.value))
        params["to"] = self.w3.to_checksum_address(tx.to)
        params["data"] = tx.data
        return self._send(params)

    async def sign_and_submit(self, tx: UnsignedTransaction) -> SubmitResult:
        try:
            tx_hash = await asyncio.to_thread(self._sign_and_submit_sync, tx)
        except Exception as exc:
            kind = classify_send_error(exc)
            logger.warning("LIVE submit_failed venue=%s kind=%s err=%s", tx.venue, kind.value, exc)
            return SubmitResult(success=False, error_kind=kind, error=str(exc))
        logger.info("LIVE submitted venue=%s tx=%s", tx.venue, tx_hash)
        return SubmitResult(success=True, tx_hash=tx_hash)

    async def wait_for_confirmation(self, tx_hash: str, timeout: float) -> ConfirmResult:
        try:
            receipt = await asyncio.to_thread(
                self.w3.eth.wait_for_transaction_receipt,
                tx_hash,
                timeout=max(1, int(timeout)),
            )
        except TimeExhausted:
            return ConfirmResult(confirmed=False, tx_hash=tx_hash, pending=True, error_kind=ErrorKind.UNCONFIRMED)
        except Exception as exc:
            return ConfirmResult(confirmed=False, tx_hash=tx_hash, error_kind=ErrorKind.SUBMIT_FAILED, error=str(exc))
        if int(receipt.status) != 1:
            return ConfirmResult(confirmed=False, tx_hash=tx_hash, error_kind=ErrorKind.REVERTED, error="tx_reverted")
        return ConfirmResult(confirmed=True, tx_hash=tx_hash)
