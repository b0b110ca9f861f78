import datetime as dt
from datetime import date, datetime
from typing import Any, Literal, Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import get_settings
from models import TransactionType


def naive_local(value: Any) -> Any:
    """Shift aware datetimes into the ledger timezone and drop the offset.

    Stored rows and cache keys use naive local wall time, so every datetime
    entering the engine is brought to that form once, here.
    """
    if isinstance(value, datetime) and value.tzinfo is not None:
        zone = ZoneInfo(get_settings().timezone)
        return value.astimezone(zone).replace(tzinfo=None)
    return value


class Transaction(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    amount: float
    currency: str = "EUR"
    eur_amount: Optional[float] = None
    exchange_rate: Optional[float] = None
    rate_date: Optional[dt.date] = None
    type: TransactionType
    main_category: str
    sub_category: Optional[str] = None
    title: str = ""
    date: datetime
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_money_transfer: bool = False
    hide_from_totals: bool = False
    split_across_year: bool = False
    split_display_amount: Optional[float] = None
    split_display_eur_amount: Optional[float] = None
    split_is_read_only: Optional[bool] = None
    split_source_transaction_id: Optional[str] = None

    @field_validator("date", "created_at", "updated_at")
    @classmethod
    def localize_dates(cls, value: Any) -> Any:
        return naive_local(value)


class TransactionIn(BaseModel):
    amount: float
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    type: TransactionType
    main_category: str = Field(..., min_length=1, max_length=100)
    sub_category: Optional[str] = Field(default=None, max_length=100)
    title: str = Field(default="", max_length=200)
    date: datetime
    is_money_transfer: bool = False
    hide_from_totals: bool = False
    split_across_year: bool = False

    @field_validator("date")
    @classmethod
    def localize_date(cls, value: Any) -> Any:
        return naive_local(value)


class TransactionPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: Optional[float] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    type: Optional[TransactionType] = None
    main_category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    sub_category: Optional[str] = Field(default=None, max_length=100)
    title: Optional[str] = Field(default=None, max_length=200)
    date: Optional[datetime] = None
    is_money_transfer: Optional[bool] = None
    hide_from_totals: Optional[bool] = None
    split_across_year: Optional[bool] = None

    @field_validator("date")
    @classmethod
    def localize_date(cls, value: Any) -> Any:
        return naive_local(value)


class ChangeRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    date: Optional[datetime] = None

    @field_validator("date")
    @classmethod
    def localize_date(cls, value: Any) -> Any:
        return naive_local(value)


class ChangeEvent(BaseModel):
    event_type: Literal["INSERT", "UPDATE", "DELETE"]
    new: Optional[ChangeRecord] = None
    old: Optional[ChangeRecord] = None


class SyncMessage(BaseModel):
    type: Literal["realtime_update"] = "realtime_update"
    origin: str
    payload: ChangeEvent
    timestamp: float


class PersistedEntry(BaseModel):
    data: list[Transaction]
    timestamp: float
    is_validating: bool = False


class PersistedCache(BaseModel):
    version: str
    timestamp: float
    data: dict[str, PersistedEntry] = Field(default_factory=dict)


class OverallTotals(BaseModel):
    income: float
    expenses: float
    balance: float
    transaction_count: int
    as_of: date
