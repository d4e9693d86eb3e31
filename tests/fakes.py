from __future__ import annotations

import asyncio
from dataclasses import replace
from decimal import Decimal
from datetime import datetime, timedelta, timezone
from typing import Any

from trading.errors import ErrorKind
from trading.positions import (
    STATUS_CLOSED,
    STATUS_OPEN,
    STATUS_WAITING,
    ConfirmResult,
    Position,
    RiskSignal,
    SubmitResult,
    TokenBalance,
)
from venues.base import RouteQuote, UnsignedTransaction, VenueClient

WETH = "0x4200000000000000000000000000000000000006"
TOKEN_A = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
TOKEN_B = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
WALLET = "0x9999999999999999999999999999999999999999"
ACCOUNT = "acct-1"

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FakeVenue(VenueClient):
    """Scripted venue. Script items: float = success with that price impact,
    ErrorKind = typed failure, Exception = raised, ("sleep", s) = hang."""

    def __init__(self, name: str, script: list[Any] | None = None, build_failures: list[ErrorKind] | None = None) -> None:
        self.name = name
        self.script = list(script if script is not None else [0.5])
        self.build_failures = list(build_failures or [])
        self.quote_calls: list[tuple[str, str, int, int]] = []
        self.build_calls: list[RouteQuote] = []

    def _next(self) -> Any:
        if len(self.script) > 1:
            return self.script.pop(0)
        return self.script[0]

    async def quote(self, token_in, token_out, amount_in, max_slippage_bps, timeout):  # type: ignore[no-untyped-def]
        self.quote_calls.append((token_in, token_out, int(amount_in), int(max_slippage_bps)))
        item = self._next()
        if isinstance(item, tuple) and item and item[0] == "sleep":
            await asyncio.sleep(float(item[1]))
            return self.fail(ErrorKind.NO_ROUTE, "slept")
        if isinstance(item, Exception):
            raise item
        if isinstance(item, ErrorKind):
            return self.fail(item, "scripted")
        return RouteQuote(
            venue=self.name,
            token_in=token_in,
            token_out=token_out,
            amount_in=int(amount_in),
            amount_out=max(1, int(amount_in) // 1000),
            price_impact_pct=float(item),
            slippage_bps=int(max_slippage_bps),
        )

    async def build_transaction(self, quote, owner):  # type: ignore[no-untyped-def]
        self.build_calls.append(quote)
        if self.build_failures:
            return self.fail(self.build_failures.pop(0), "scripted_build")
        return UnsignedTransaction(venue=self.name, to="0x" + "1" * 40, data="0x", quote=quote)


class FakeChain:
    """Token balances held by the wallet, in raw units."""

    def __init__(self) -> None:
        self.raw: dict[str, int] = {}
        self.decimals: dict[str, int] = {}
        self.balance_reads = 0
        self.fail_reads_with: Exception | None = None

    def set_balance(self, token: str, amount_ui: float, decimals: int = 18) -> None:
        self.decimals[token.lower()] = decimals
        self.raw[token.lower()] = int(Decimal(str(amount_ui)) * 10**decimals)

    def balance_ui(self, token: str) -> float:
        return self.raw.get(token.lower(), 0) / float(10 ** self.decimals.get(token.lower(), 18))

    async def fetch_on_chain_balance(self, token_address: str, owner: str) -> TokenBalance:
        self.balance_reads += 1
        if self.fail_reads_with is not None:
            raise self.fail_reads_with
        key = token_address.lower()
        dec = self.decimals.get(key, 18)
        raw = self.raw.get(key, 0)
        return TokenBalance(amount_raw=raw, decimals=dec, amount_ui=raw / float(10**dec))

    async def token_decimals(self, token_address: str) -> int:
        return self.decimals.get(token_address.lower(), 18)


class FakeSigner:
    """Submits instantly. Confirmed sells debit the chain balance.

    `leave_ui` scripts the balance left after each confirmed sell; without
    it the whole quoted amount is sold.
    """

    def __init__(self, chain: FakeChain, wallet: str = WALLET) -> None:
        self.chain = chain
        self.wallet = wallet
        self.submit_script: list[SubmitResult] = []
        self.confirm_script: list[ConfirmResult] = []
        self.leave_ui: list[float] = []
        self.submitted: list[UnsignedTransaction] = []
        self.raise_on_submit: Exception | None = None
        self.submit_delay = 0.0
        self.confirm_delay = 0.0
        self._by_hash: dict[str, UnsignedTransaction] = {}

    async def sign_and_submit(self, tx: UnsignedTransaction) -> SubmitResult:
        if self.submit_delay:
            await asyncio.sleep(self.submit_delay)
        if self.raise_on_submit is not None:
            raise self.raise_on_submit
        self.submitted.append(tx)
        if self.submit_script:
            scripted = self.submit_script.pop(0)
            if not scripted.success:
                return scripted
        tx_hash = f"0xtx{len(self.submitted)}"
        self._by_hash[tx_hash] = tx
        return SubmitResult(success=True, tx_hash=tx_hash)

    async def wait_for_confirmation(self, tx_hash: str, timeout: float) -> ConfirmResult:
        if self.confirm_delay:
            await asyncio.sleep(self.confirm_delay)
        if self.confirm_script:
            scripted = self.confirm_script.pop(0)
            if not scripted.confirmed:
                return replace(scripted, tx_hash=tx_hash)
        tx = self._by_hash[tx_hash]
        quote = tx.quote
        if quote is not None:
            token_in = quote.token_in.lower()
            if token_in == WETH:
                self.chain.raw[quote.token_out.lower()] = self.chain.raw.get(quote.token_out.lower(), 0) + quote.amount_out
            elif self.leave_ui:
                self.chain.set_balance(token_in, self.leave_ui.pop(0), self.chain.decimals.get(token_in, 18))
            else:
                self.chain.raw[token_in] = max(0, self.chain.raw.get(token_in, 0) - quote.amount_in)
        return ConfirmResult(confirmed=True, tx_hash=tx_hash)


class FakeRiskSignal:
    def __init__(self, signal: RiskSignal | None = None) -> None:
        self.signal = signal or RiskSignal(available=True)
        self.calls: list[str] = []

    async def check(self, token_address: str) -> RiskSignal:
        self.calls.append(token_address)
        return self.signal


class ListHistory:
    def __init__(self, fail: bool = False) -> None:
        self.events: list[dict[str, Any]] = []
        self.fail = fail

    def record(self, event: dict[str, Any]) -> None:
        if self.fail:
            raise OSError("disk full")
        self.events.append(dict(event))

    def reasons(self) -> list[str]:
        return [str(e.get("reason")) for e in self.events]


class InMemoryPositionStore:
    def __init__(self) -> None:
        self.rows: dict[str, Position] = {}
        self.writes: list[tuple[str, str]] = []

    def add(self, position: Position) -> Position:
        self.rows[position.id] = replace(position)
        return position

    def _owned(self, position_id: str, account_id: str) -> Position | None:
        row = self.rows.get(position_id)
        if row is None or row.account_id != account_id:
            return None
        return row

    def get(self, position_id: str, account_id: str) -> Position | None:
        row = self._owned(position_id, account_id)
        return replace(row) if row else None

    def fetch_by_status(self, status: str, account_id: str) -> list[Position]:
        rows = [replace(r) for r in self.rows.values() if r.status == status and r.account_id == account_id]
        if status == STATUS_WAITING:
            rows.sort(key=lambda r: r.waiting_since or T0)
        return rows

    def insert(self, position: Position) -> Position:
        self.writes.append(("insert", position.id))
        return self.add(position)

    def update_status(self, position_id: str, account_id: str, status: str, **fields: Any) -> bool:
        self.writes.append(("update_status", position_id))
        row = self._owned(position_id, account_id)
        if row is None:
            return False
        if row.status == STATUS_CLOSED and status != STATUS_CLOSED:
            return False
        for key, value in fields.items():
            setattr(row, key, value)
        row.status = status
        if status != STATUS_WAITING:
            row.waiting_since = None
        return True

    def update_liquidity_check(self, position_id: str, account_id: str, *, count: int, checked_at: datetime) -> bool:
        self.writes.append(("update_liquidity_check", position_id))
        row = self._owned(position_id, account_id)
        if row is None or row.status != STATUS_WAITING:
            return False
        row.liquidity_check_count = count
        row.liquidity_last_checked_at = checked_at
        return True

    def update_amount(self, position_id: str, account_id: str, amount: float) -> bool:
        self.writes.append(("update_amount", position_id))
        row = self._owned(position_id, account_id)
        if row is None or row.status == STATUS_CLOSED:
            return False
        row.amount = amount
        return True


def make_position(
    position_id: str = "pos-1",
    token: str = TOKEN_A,
    amount: float = 1000.0,
    status: str = STATUS_OPEN,
    waiting_offset_minutes: int | None = None,
    account_id: str = ACCOUNT,
) -> Position:
    waiting_since = None
    if status == STATUS_WAITING:
        waiting_since = T0 + timedelta(minutes=waiting_offset_minutes or 0)
    return Position(
        id=position_id,
        account_id=account_id,
        token_address=token,
        symbol="TKN",
        amount=amount,
        entry_price=0.000001,
        entry_value=0.01,
        status=status,
        waiting_since=waiting_since,
        opened_at=T0,
    )


class FixedClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)
