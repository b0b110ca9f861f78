from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from functools import lru_cache
from typing import Awaitable, Callable, Optional, Sequence
from urllib.error import URLError
from urllib.request import Request, urlopen

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from config import get_settings
from database import session_scope
from models import ExchangeRate


logger = logging.getLogger(__name__)

BASE_CURRENCY = "EUR"
RATE_SOURCE = "frankfurter.app"
FETCH_ATTEMPTS = 3


@dataclass(frozen=True)
class FxQuote:
    provider: str
    base: str
    quote: str
    rate: Decimal  # quote per 1 base
    rate_date: date
    fetched_at: datetime


@dataclass(frozen=True)
class RateLookup:
    rate: Decimal
    rate_date: date
    is_missing: bool


@dataclass(frozen=True)
class ConversionResult:
    eur_amount: float
    exchange_rate: float
    rate_date: date
    is_missing: bool


def _money(value: Decimal) -> float:
    return float(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


class FxRateService:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = get_settings()
        self.session_factory = session_factory
        self._sleep = sleep

    def _provider(self) -> str:
        provider = (self.settings.fx_provider or "frankfurter").lower()
        if provider != "frankfurter":
            raise ValueError(f"Unsupported FX provider: {provider}")
        return provider

    async def get_exchange_rate(
        self, on_date: date, currency: str
    ) -> Optional[RateLookup]:
        currency = currency.upper()
        if currency == BASE_CURRENCY:
            return RateLookup(rate=Decimal("1"), rate_date=on_date, is_missing=False)

        stored = self._stored_rate(on_date, currency)
        if stored is not None:
            return stored

        lookup = await self._fetch_with_retries(on_date, currency)
        if lookup is None:
            return None
        self._store_rate(on_date, currency, lookup.rate, is_missing=lookup.is_missing)
        return RateLookup(rate=lookup.rate, rate_date=on_date, is_missing=lookup.is_missing)

    async def convert_to_eur(
        self, amount: float, currency: str, on_date: date
    ) -> Optional[ConversionResult]:
        if currency.upper() == BASE_CURRENCY:
            return ConversionResult(
                eur_amount=amount, exchange_rate=1.0, rate_date=on_date, is_missing=False
            )
        lookup = await self.get_exchange_rate(on_date, currency)
        if lookup is None or lookup.rate <= 0:
            return None
        return ConversionResult(
            eur_amount=_money(Decimal(str(amount)) / lookup.rate),
            exchange_rate=float(lookup.rate),
            rate_date=lookup.rate_date,
            is_missing=lookup.is_missing,
        )

    async def batch_convert_to_eur(
        self,
        items: Sequence[tuple[float, str, date]],
        *,
        batch_size: int = 20,
        delay_secs: float = 0.2,
    ) -> list[Optional[ConversionResult]]:
        """Convert many amounts, fetching each (date, currency) rate once."""
        unique_pairs: list[tuple[date, str]] = []
        for _, currency, on_date in items:
            pair = (on_date, currency.upper())
            if pair[1] != BASE_CURRENCY and pair not in unique_pairs:
                unique_pairs.append(pair)

        rates: dict[tuple[date, str], Optional[RateLookup]] = {}
        for start in range(0, len(unique_pairs), batch_size):
            batch = unique_pairs[start : start + batch_size]
            results = await asyncio.gather(
                *(self.get_exchange_rate(on_date, cur) for on_date, cur in batch)
            )
            rates.update(zip(batch, results))
            if start + batch_size < len(unique_pairs):
                await self._sleep(delay_secs)

        converted: list[Optional[ConversionResult]] = []
        for amount, currency, on_date in items:
            if currency.upper() == BASE_CURRENCY:
                converted.append(
                    ConversionResult(amount, 1.0, on_date, is_missing=False)
                )
                continue
            lookup = rates.get((on_date, currency.upper()))
            if lookup is None or lookup.rate <= 0:
                converted.append(None)
                continue
            converted.append(
                ConversionResult(
                    eur_amount=_money(Decimal(str(amount)) / lookup.rate),
                    exchange_rate=float(lookup.rate),
                    rate_date=lookup.rate_date,
                    is_missing=lookup.is_missing,
                )
            )
        logger.info(
            f"fx_batch_converted: items={len(items)} pairs={len(unique_pairs)}"
        )
        return converted

    def missing_rate_dates(self, currency: Optional[str] = None) -> list[tuple[date, str]]:
        stmt = select(ExchangeRate).where(
            ExchangeRate.base_currency == BASE_CURRENCY,
            ExchangeRate.is_missing.is_(True),
        )
        if currency:
            stmt = stmt.where(ExchangeRate.target_currency == currency.upper())
        stmt = stmt.order_by(ExchangeRate.date.asc())
        with session_scope(self.session_factory) as session:
            return [(row.date, row.target_currency) for row in session.scalars(stmt)]

    async def retry_missing_rates(self, currency: Optional[str] = None) -> int:
        """Re-fetch rates flagged as missing; returns how many were resolved."""
        resolved = 0
        for on_date, target in self.missing_rate_dates(currency):
            try:
                quote = await self._fetch_quote(on_date, target)
            except RuntimeError as exc:
                logger.warning(
                    f"fx_retry_failed: date={on_date} currency={target} error={exc}"
                )
                continue
            self._store_rate(on_date, target, quote.rate, is_missing=False)
            resolved += 1
        logger.info(f"fx_missing_retried: resolved={resolved}")
        return resolved

    async def _fetch_quote(self, on_date: date, currency: str) -> FxQuote:
        self._provider()
        return await asyncio.to_thread(
            _fetch_frankfurter_quote,
            on_date,
            currency,
            timeout=self.settings.fx_timeout_secs,
        )

    async def _fetch_with_retries(
        self, on_date: date, currency: str
    ) -> Optional[RateLookup]:
        for attempt in range(1, FETCH_ATTEMPTS + 1):
            try:
                quote = await self._fetch_quote(on_date, currency)
                return RateLookup(quote.rate, quote.rate_date, is_missing=False)
            except RuntimeError as exc:
                logger.warning(
                    f"fx_fetch_failed: date={on_date} currency={currency} "
                    f"attempt={attempt}/{FETCH_ATTEMPTS} error={exc}"
                )
                if attempt < FETCH_ATTEMPTS:
                    await self._sleep(2**attempt)

        fallback = self._latest_known_rate(currency)
        if fallback is None:
            return None
        return RateLookup(fallback, on_date, is_missing=True)

    def _stored_rate(self, on_date: date, currency: str) -> Optional[RateLookup]:
        stmt = select(ExchangeRate).where(
            ExchangeRate.date == on_date,
            ExchangeRate.base_currency == BASE_CURRENCY,
            ExchangeRate.target_currency == currency,
        )
        with session_scope(self.session_factory) as session:
            row = session.scalars(stmt).first()
            if row is None:
                return None
            return RateLookup(Decimal(str(row.rate)), row.date, row.is_missing)

    def _latest_known_rate(self, currency: str) -> Optional[Decimal]:
        stmt = (
            select(ExchangeRate.rate)
            .where(
                ExchangeRate.base_currency == BASE_CURRENCY,
                ExchangeRate.target_currency == currency,
                ExchangeRate.is_missing.is_(False),
            )
            .order_by(ExchangeRate.date.desc())
            .limit(1)
        )
        with session_scope(self.session_factory) as session:
            value = session.scalars(stmt).first()
        return Decimal(str(value)) if value is not None else None

    def _store_rate(
        self, on_date: date, currency: str, rate: Decimal, *, is_missing: bool
    ) -> None:
        rounded = float(rate.quantize(Decimal("0.00001"), rounding=ROUND_HALF_UP))
        try:
            with session_scope(self.session_factory) as session:
                row = session.scalars(
                    select(ExchangeRate).where(
                        ExchangeRate.date == on_date,
                        ExchangeRate.base_currency == BASE_CURRENCY,
                        ExchangeRate.target_currency == currency,
                    )
                ).first()
                if row is None:
                    session.add(
                        ExchangeRate(
                            date=on_date,
                            base_currency=BASE_CURRENCY,
                            target_currency=currency,
                            rate=rounded,
                            source=RATE_SOURCE,
                            is_missing=is_missing,
                        )
                    )
                else:
                    row.rate = rounded
                    row.is_missing = is_missing
        except SQLAlchemyError as exc:
            logger.warning(
                f"fx_store_failed: date={on_date} currency={currency} error={exc}"
            )


@lru_cache(maxsize=2048)
def _fetch_frankfurter_quote(on_date: date, currency: str, *, timeout: float) -> FxQuote:
    url = (
        f"https://api.frankfurter.app/{on_date.isoformat()}"
        f"?from={BASE_CURRENCY}&to={currency}"
    )
    req = Request(url, headers={"Accept": "application/json"})
    fetched_at = datetime.now(timezone.utc)
    try:
        with urlopen(req, timeout=timeout) as resp:
            payload = json.loads(resp.read().decode("utf-8"))
    except (URLError, TimeoutError, json.JSONDecodeError) as exc:
        raise RuntimeError(
            f"Failed to fetch FX rate from Frankfurter for {on_date} {currency}"
        ) from exc

    try:
        rate_value = payload["rates"][currency]
        effective_date = date.fromisoformat(payload["date"])
    except Exception as exc:
        raise RuntimeError("Unexpected FX provider response") from exc

    return FxQuote(
        provider="frankfurter",
        base=BASE_CURRENCY,
        quote=currency,
        rate=Decimal(str(rate_value)),
        rate_date=effective_date,
        fetched_at=fetched_at,
    )
