"""Position storage on SQLAlchemy.

Every read and write is filtered by position id AND account id so one
account can never touch another account's rows.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

import config
from database.models import Base, PositionRow
from trading.positions import POSITION_STATUSES, STATUS_CLOSED, STATUS_WAITING, Position

logger = logging.getLogger(__name__)

# Fields a closed row still accepts.
AUDIT_FIELDS = frozenset({"exit_price", "exit_tx_hash", "exit_reason"})

_UPDATABLE_FIELDS = frozenset(
    {
        "amount",
        "current_price",
        "current_value",
        "pnl_percent",
        "pnl_value",
        "waiting_since",
        "liquidity_check_count",
        "liquidity_last_checked_at",
        "closed_at",
        "exit_price",
        "exit_tx_hash",
        "exit_reason",
    }
)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_db_time(value: Any) -> Any:
    # SQLite drops tzinfo; store naive UTC.
    if isinstance(value, datetime):
        return _as_utc(value).replace(tzinfo=None)
    return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_engine(url: str | None = None) -> Engine:
    url = str(url or config.DATABASE_URL)
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, future=True, connect_args=connect_args)


def row_to_position(row: PositionRow) -> Position:
    return Position(
        id=row.id,
        account_id=row.account_id,
        token_address=row.token_address,
        symbol=row.symbol or "",
        amount=float(row.amount or 0.0),
        entry_price=float(row.entry_price or 0.0),
        current_price=float(row.current_price or 0.0),
        entry_value=float(row.entry_value or 0.0),
        current_value=float(row.current_value or 0.0),
        pnl_percent=float(row.pnl_percent or 0.0),
        pnl_value=float(row.pnl_value or 0.0),
        status=row.status,
        waiting_since=_as_utc(row.waiting_since),
        liquidity_check_count=int(row.liquidity_check_count or 0),
        liquidity_last_checked_at=_as_utc(row.liquidity_last_checked_at),
        opened_at=_as_utc(row.opened_at),
        closed_at=_as_utc(row.closed_at),
        exit_price=float(row.exit_price or 0.0),
        exit_tx_hash=row.exit_tx_hash or "",
        exit_reason=row.exit_reason or "",
    )


class SqlPositionStore:
    def __init__(self, engine: Engine | str | None = None) -> None:
        if engine is None or isinstance(engine, str):
            engine = make_engine(engine)
        self.engine = engine
        self.SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

    def init_db(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def get_db(self) -> Session:
        return self.SessionLocal()

    @staticmethod
    def _owned(db: Session, position_id: str, account_id: str) -> Optional[PositionRow]:
        return (
            db.query(PositionRow)
            .filter(PositionRow.id == str(position_id), PositionRow.account_id == str(account_id))
            .first()
        )

    def get(self, position_id: str, account_id: str) -> Optional[Position]:
        db = self.get_db()
        try:
            row = self._owned(db, position_id, account_id)
            return row_to_position(row) if row else None
        finally:
            db.close()

    def fetch_by_status(self, status: str, account_id: str) -> list[Position]:
        db = self.get_db()
        try:
            query = db.query(PositionRow).filter(PositionRow.status == status, PositionRow.account_id == str(account_id))
            if status == STATUS_WAITING:
                query = query.order_by(PositionRow.waiting_since.asc(), PositionRow.id.asc())
            else:
                query = query.order_by(PositionRow.opened_at.asc())
            return [row_to_position(row) for row in query.all()]
        finally:
            db.close()

    def insert(self, position: Position) -> Position:
        if position.status not in POSITION_STATUSES:
            raise ValueError(f"unknown position status: {position.status}")
        db = self.get_db()
        try:
            row = PositionRow(
                id=position.id,
                account_id=position.account_id,
                token_address=position.token_address.lower(),
                symbol=position.symbol,
                amount=position.amount,
                entry_price=position.entry_price,
                current_price=position.current_price,
                entry_value=position.entry_value,
                current_value=position.current_value,
                pnl_percent=position.pnl_percent,
                pnl_value=position.pnl_value,
                status=position.status,
                waiting_since=_to_db_time(position.waiting_since if position.status == STATUS_WAITING else None),
                liquidity_check_count=position.liquidity_check_count,
                liquidity_last_checked_at=_to_db_time(position.liquidity_last_checked_at),
                opened_at=_to_db_time(position.opened_at or _utcnow()),
            )
            if position.status == STATUS_WAITING and row.waiting_since is None:
                row.waiting_since = _to_db_time(_utcnow())
            db.add(row)
            db.commit()
            db.refresh(row)
            return row_to_position(row)
        finally:
            db.close()

    def update_status(self, position_id: str, account_id: str, status: str, **fields: Any) -> bool:
        """Move a row to `status`, keeping `waiting_since` set iff the row is waiting.

        A closed row is never reopened; repeat closes only touch audit fields.
        """
        if status not in POSITION_STATUSES:
            raise ValueError(f"unknown position status: {status}")
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")

        db = self.get_db()
        try:
            row = self._owned(db, position_id, account_id)
            if row is None:
                logger.warning("DB update_status_missing id=%s account=%s", position_id, account_id)
                return False
            if row.status == STATUS_CLOSED:
                if status != STATUS_CLOSED:
                    logger.warning("DB reopen_refused id=%s status=%s", position_id, status)
                    return False
                for key in AUDIT_FIELDS & set(fields):
                    setattr(row, key, fields[key])
                db.commit()
                return True

            for key, value in fields.items():
                setattr(row, key, _to_db_time(value))
            row.status = status
            if status == STATUS_WAITING:
                if row.waiting_since is None:
                    row.waiting_since = _to_db_time(_utcnow())
            else:
                row.waiting_since = None
            if status == STATUS_CLOSED and row.closed_at is None:
                row.closed_at = _to_db_time(_utcnow())
            db.commit()
            return True
        finally:
            db.close()

    def update_liquidity_check(
        self,
        position_id: str,
        account_id: str,
        *,
        count: int,
        checked_at: datetime,
    ) -> bool:
        db = self.get_db()
        try:
            row = self._owned(db, position_id, account_id)
            if row is None or row.status != STATUS_WAITING:
                return False
            row.liquidity_check_count = int(count)
            row.liquidity_last_checked_at = _to_db_time(checked_at)
            db.commit()
            return True
        finally:
            db.close()

    def update_amount(self, position_id: str, account_id: str, amount: float) -> bool:
        db = self.get_db()
        try:
            row = self._owned(db, position_id, account_id)
            if row is None or row.status == STATUS_CLOSED:
                return False
            row.amount = float(amount)
            db.commit()
            return True
        finally:
            db.close()
