from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class TransactionRecord(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    eur_amount: Mapped[Optional[float]] = mapped_column(Float)
    exchange_rate: Mapped[Optional[float]] = mapped_column(Float)
    rate_date: Mapped[Optional[date]] = mapped_column(Date)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    main_category: Mapped[str] = mapped_column(String(100), nullable=False)
    sub_category: Mapped[Optional[str]] = mapped_column(String(100))
    title: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_money_transfer: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    hide_from_totals: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    split_across_year: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_updated", "user_id", "updated_at"),
        Index(
            "ix_transactions_user_category_date",
            "user_id",
            "main_category",
            "sub_category",
            "date",
        ),
    )


class ExchangeRate(Base, TimestampMixin):
    __tablename__ = "exchange_rates"
    __table_args__ = (
        UniqueConstraint(
            "date",
            "base_currency",
            "target_currency",
            name="uq_exchange_rate_date_pair",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    base_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    target_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    rate: Mapped[float] = mapped_column(Float, nullable=False)
    source: Mapped[str] = mapped_column(String(40), nullable=False)
    is_missing: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
