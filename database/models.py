"""SQLAlchemy models."""

from datetime import datetime

from sqlalchemy import Column, DateTime, Float, Integer, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class PositionRow(Base):
    __tablename__ = "positions"

    id = Column(String(64), primary_key=True)
    account_id = Column(String(64), nullable=False, index=True)
    token_address = Column(String(64), nullable=False, index=True)
    symbol = Column(String, nullable=False, default="")
    amount = Column(Float, nullable=False, default=0.0)
    entry_price = Column(Float, nullable=False, default=0.0)
    current_price = Column(Float, nullable=False, default=0.0)
    entry_value = Column(Float, nullable=False, default=0.0)
    current_value = Column(Float, nullable=False, default=0.0)
    pnl_percent = Column(Float, nullable=False, default=0.0)
    pnl_value = Column(Float, nullable=False, default=0.0)
    status = Column(String(32), nullable=False, default="open", index=True)  # open/pending/waiting_for_liquidity/closed
    waiting_since = Column(DateTime, nullable=True)
    liquidity_check_count = Column(Integer, nullable=False, default=0)
    liquidity_last_checked_at = Column(DateTime, nullable=True)
    opened_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    closed_at = Column(DateTime, nullable=True)
    exit_price = Column(Float, nullable=True)
    exit_tx_hash = Column(String, nullable=True)
    exit_reason = Column(String, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
