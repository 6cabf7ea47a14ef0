from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Date, DateTime, Integer, PrimaryKeyConstraint, String, func
from sqlalchemy.orm import Mapped, mapped_column

from memo_engine.core.database import Base


class UsageAccount(Base):
  """Subscription tier per account; accounts without a row fall back to the default tier."""

  __tablename__ = "usage_accounts"

  account_id: Mapped[str] = mapped_column(String, primary_key=True)
  tier: Mapped[str] = mapped_column(String, nullable=False)
  monthly_minutes_override: Mapped[int | None] = mapped_column(Integer, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class UsageCounter(Base):
  __tablename__ = "usage_counters"
  __table_args__ = (PrimaryKeyConstraint("account_id", "period_start", name="pk_usage_counters"),)

  account_id: Mapped[str] = mapped_column(String, nullable=False)
  period_start: Mapped[date] = mapped_column(Date, nullable=False)
  minutes_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class UsageLog(Base):
  """Ledger of counter increments; the unique key makes a repeated increment a no-op."""

  __tablename__ = "usage_logs"

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  idempotency_key: Mapped[str] = mapped_column(String, nullable=False, unique=True)
  account_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  memo_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  period_start: Mapped[date] = mapped_column(Date, nullable=False)
  minutes: Mapped[int] = mapped_column(Integer, nullable=False)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
