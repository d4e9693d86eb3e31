"""Position record and the narrow collaborator interfaces the engine talks to."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

from utils.addressing import is_wallet_scan_id

STATUS_OPEN = "open"
STATUS_PENDING = "pending"
STATUS_WAITING = "waiting_for_liquidity"
STATUS_CLOSED = "closed"

POSITION_STATUSES = (STATUS_OPEN, STATUS_PENDING, STATUS_WAITING, STATUS_CLOSED)


@dataclass
class Position:
    id: str
    account_id: str
    token_address: str
    symbol: str = ""
    amount: float = 0.0
    entry_price: float = 0.0
    current_price: float = 0.0
    entry_value: float = 0.0
    current_value: float = 0.0
    pnl_percent: float = 0.0
    pnl_value: float = 0.0
    status: str = STATUS_OPEN
    waiting_since: Optional[datetime] = None
    liquidity_check_count: int = 0
    liquidity_last_checked_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    exit_price: float = 0.0
    exit_tx_hash: str = ""
    exit_reason: str = ""

    @property
    def is_wallet_scan(self) -> bool:
        """Synthetic positions built from a wallet balance scan have no stored row."""
        return is_wallet_scan_id(self.id)

    @property
    def is_closed(self) -> bool:
        return self.status == STATUS_CLOSED


@dataclass
class TokenBalance:
    amount_raw: int
    decimals: int
    amount_ui: float


@dataclass
class SubmitResult:
    success: bool
    tx_hash: str = ""
    error_kind: Any = None
    error: str = ""


@dataclass
class ConfirmResult:
    confirmed: bool
    tx_hash: str = ""
    # True when the wait timed out and the tx may still land.
    pending: bool = False
    error_kind: Any = None
    error: str = ""


@dataclass
class RiskSignal:
    """Static (off-chain) honeypot verdict for a token."""

    available: bool
    is_honeypot: bool = False
    sell_tax_pct: float = 0.0
    buy_tax_pct: float = 0.0
    detail: str = ""
    flags: list[str] = field(default_factory=list)


class PositionStore(Protocol):
    def get(self, position_id: str, account_id: str) -> Optional[Position]: ...

    def fetch_by_status(self, status: str, account_id: str) -> list[Position]: ...

    def update_status(self, position_id: str, account_id: str, status: str, **fields: Any) -> bool: ...

    def update_liquidity_check(
        self, position_id: str, account_id: str, *, count: int, checked_at: datetime
    ) -> bool: ...

    def update_amount(self, position_id: str, account_id: str, amount: float) -> bool: ...

    def insert(self, position: Position) -> Position: ...


class BalanceReader(Protocol):
    async def fetch_on_chain_balance(self, token_address: str, owner: str) -> TokenBalance: ...

    async def token_decimals(self, token_address: str) -> int: ...


class Signer(Protocol):
    wallet: str

    async def sign_and_submit(self, tx: Any) -> SubmitResult: ...

    async def wait_for_confirmation(self, tx_hash: str, timeout: float) -> ConfirmResult: ...


class RiskSignalSource(Protocol):
    async def check(self, token_address: str) -> RiskSignal: ...


class TradeHistorySink(Protocol):
    def record(self, event: dict[str, Any]) -> None: ...
