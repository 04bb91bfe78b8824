from __future__ import annotations

import json
import logging
import re
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from functools import lru_cache
from typing import Iterable, Optional, Protocol
from urllib.error import URLError
from urllib.request import Request, urlopen

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from errors import ValidationFailed
from models import ExchangeRate, PaymentMethod, Profile, RateSourceTag, utcnow

logger = logging.getLogger(__name__)

MICROS = Decimal("1000000")
_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


def normalize_currency(code: str) -> str:
    clean = (code or "").strip().upper()
    if not _CURRENCY_RE.match(clean):
        raise ValidationFailed(f"Invalid currency code: {code!r}")
    return clean


def rate_to_micros(rate: Decimal) -> int:
    return int((Decimal(rate) * MICROS).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def micros_to_rate(micros: int) -> Decimal:
    return (Decimal(micros) / MICROS).quantize(Decimal("0.000001"))


def convert_cents(cents: int, rate: Decimal) -> int:
    return int(
        (Decimal(cents) * Decimal(rate)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    )


@dataclass(frozen=True)
class FxQuote:
    provider: str
    base: str
    quote: str
    rate: Decimal  # quote per 1 base
    rate_date: date
    fetched_at: datetime


class RateProviderError(RuntimeError):
    pass


class RateProvider(Protocol):
    name: str

    def fetch(self, base: str, quote: str, on_date: Optional[date]) -> FxQuote: ...


class FrankfurterRateProvider:
    name = "frankfurter"

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout

    def fetch(self, base: str, quote: str, on_date: Optional[date]) -> FxQuote:
        if on_date is None or on_date >= date.today():
            return _fetch_frankfurter_quote(base, quote, "latest", timeout=self.timeout)
        return _fetch_frankfurter_quote_cached(
            base, quote, on_date.isoformat(), timeout=self.timeout
        )


class NullRateProvider:
    """Offline provider: every lookup falls back to the local cache."""

    name = "none"

    def fetch(self, base: str, quote: str, on_date: Optional[date]) -> FxQuote:
        raise RateProviderError("FX provider disabled")


def build_provider() -> RateProvider:
    settings = get_settings()
    provider = (settings.fx_provider or "frankfurter").lower()
    if provider == "frankfurter":
        return FrankfurterRateProvider(timeout=settings.fx_timeout_secs)
    if provider == "none":
        return NullRateProvider()
    raise ValueError(f"Unsupported FX provider: {provider}")


def _fetch_frankfurter_quote(
    base: str, quote: str, when: str, *, timeout: float
) -> FxQuote:
    url = f"https://api.frankfurter.app/{when}?from={base}&to={quote}"
    req = Request(url, headers={"Accept": "application/json"})
    fetched_at = datetime.now(timezone.utc).replace(tzinfo=None)
    try:
        with urlopen(req, timeout=timeout) as resp:
            payload = json.loads(resp.read().decode("utf-8"))
    except (URLError, TimeoutError, json.JSONDecodeError) as exc:
        raise RateProviderError(
            f"Failed to fetch FX rate {base}->{quote} from Frankfurter for {when}"
        ) from exc

    try:
        rate_value = payload["rates"][quote]
        effective_date = date.fromisoformat(payload["date"])
    except (KeyError, TypeError, ValueError) as exc:
        raise RateProviderError("Unexpected FX provider response") from exc

    return FxQuote(
        provider="frankfurter",
        base=base,
        quote=quote,
        rate=Decimal(str(rate_value)),
        rate_date=effective_date,
        fetched_at=fetched_at,
    )


@lru_cache(maxsize=2048)
def _fetch_frankfurter_quote_cached(
    base: str, quote: str, when: str, *, timeout: float
) -> FxQuote:
    return _fetch_frankfurter_quote(base, quote, when, timeout=timeout)


class RateSource(str, Enum):
    live = "live"
    cached = "cached"
    stale = "stale"


@dataclass(frozen=True)
class RateQuote:
    rate: Optional[Decimal]
    source: Optional[RateSource]
    fetched_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    rate_date: Optional[date] = None
    is_stale: bool = False

    @property
    def available(self) -> bool:
        return self.rate is not None


UNAVAILABLE = RateQuote(rate=None, source=None)


class ExchangeRateService:
    """Resolves currency pairs against the local rate cache and a live provider.

    Lookup order: identity, fresh cache, live fetch, stale cache. A pair that
    cannot be resolved yields a quote with ``rate=None``; provider failures are
    logged and never raised.
    """

    def __init__(
        self, session: Session, provider: Optional[RateProvider] = None
    ) -> None:
        self.session = session
        self.settings = get_settings()
        self.provider = provider if provider is not None else build_provider()
        self.ttl = timedelta(hours=self.settings.fx_cache_ttl_hours)

    def get_rate(
        self, from_currency: str, to_currency: str, on_date: Optional[date] = None
    ) -> RateQuote:
        src = normalize_currency(from_currency)
        dst = normalize_currency(to_currency)
        if src == dst:
            return RateQuote(rate=Decimal("1"), source=RateSource.live)

        target = on_date or date.today()
        now = utcnow()

        fresh = self._latest_row(src, dst, target, now=now, fresh_only=True)
        if fresh:
            return self._quote_from_row(fresh, RateSource.cached, now)

        live = self._fetch_live(src, dst, on_date)
        if live:
            return live

        fallback = self._latest_row(src, dst, target, now=now, fresh_only=False)
        if fallback:
            quote = self._quote_from_row(fallback, RateSource.stale, now)
            logger.warning(
                f"fx_stale_rate_used: pair={src}->{dst} rate={quote.rate} "
                f"fetched_at={quote.fetched_at}"
            )
            return quote

        logger.warning(f"fx_rate_unavailable: pair={src}->{dst} date={target}")
        return UNAVAILABLE

    def convert(
        self,
        cents: int,
        from_currency: str,
        to_currency: str,
        on_date: Optional[date] = None,
    ) -> Optional[int]:
        quote = self.get_rate(from_currency, to_currency, on_date)
        if quote.rate is None:
            return None
        return convert_cents(cents, quote.rate)

    def set_manual_rate(
        self,
        from_currency: str,
        to_currency: str,
        rate: Decimal,
        on_date: Optional[date] = None,
    ) -> ExchangeRate:
        src = normalize_currency(from_currency)
        dst = normalize_currency(to_currency)
        if src == dst:
            raise ValidationFailed("Cannot set a rate between identical currencies")
        if Decimal(rate) <= 0:
            raise ValidationFailed("Exchange rate must be positive")
        row = self._upsert(
            src,
            dst,
            on_date or date.today(),
            rate_to_micros(Decimal(rate)),
            source=RateSourceTag.manual,
            api_provider=None,
            fetched_at=None,
            expires_at=None,
        )
        self.session.commit()
        logger.info(f"fx_manual_rate_set: pair={src}->{dst} rate={rate}")
        return row

    def active_currencies(self) -> list[str]:
        codes = set(
            self.session.scalars(
                select(PaymentMethod.currency).where(PaymentMethod.is_active.is_(True))
            ).all()
        )
        codes.update(self.session.scalars(select(Profile.currency)).all())
        codes.add(self.settings.base_currency)
        codes.add("USD")
        return sorted(codes)

    def refresh_all(self, currencies: Optional[Iterable[str]] = None) -> int:
        targets = sorted(
            {normalize_currency(c) for c in (currencies or self.active_currencies())}
        )
        pairs = [(a, b) for a in targets for b in targets if a != b]
        logger.info(f"fx_refresh_start: currencies={','.join(targets)} pairs={len(pairs)}")
        if not pairs:
            return 0

        quotes: dict[tuple[str, str], FxQuote] = {}
        failures: list[tuple[str, str]] = []
        with ThreadPoolExecutor(max_workers=min(8, len(pairs))) as pool:
            futures = {
                pool.submit(self.provider.fetch, base, quote, None): (base, quote)
                for base, quote in pairs
            }
            for future in as_completed(futures):
                pair = futures[future]
                try:
                    quotes[pair] = future.result()
                except RateProviderError as exc:
                    logger.warning(f"fx_refresh_failed: pair={pair[0]}->{pair[1]} error={exc}")
                    failures.append(pair)

        for quote in quotes.values():
            self._store_quote(self._apply_markup(quote), with_inverse=False)
        for base, quote in failures:
            self.session.execute(
                update(ExchangeRate)
                .where(
                    ExchangeRate.from_currency == base,
                    ExchangeRate.to_currency == quote,
                    ExchangeRate.source == RateSourceTag.api,
                )
                .values(fetch_error_count=ExchangeRate.fetch_error_count + 1)
            )
        self.session.commit()
        marked = self.mark_stale()
        logger.info(
            f"fx_refresh_done: stored={len(quotes)} failed={len(failures)} marked_stale={marked}"
        )
        return len(quotes)

    def mark_stale(self) -> int:
        result = self.session.execute(
            update(ExchangeRate)
            .where(
                ExchangeRate.expires_at.is_not(None),
                ExchangeRate.expires_at <= utcnow(),
                ExchangeRate.is_stale.is_(False),
            )
            .values(is_stale=True)
        )
        self.session.commit()
        return result.rowcount or 0

    def cleanup_old(self, days: int = 90) -> int:
        cutoff = date.today() - timedelta(days=days)
        result = self.session.execute(
            delete(ExchangeRate).where(
                ExchangeRate.source == RateSourceTag.api,
                ExchangeRate.is_stale.is_(True),
                ExchangeRate.date < cutoff,
            )
        )
        self.session.commit()
        return result.rowcount or 0

    def _latest_row(
        self,
        src: str,
        dst: str,
        target: date,
        *,
        now: datetime,
        fresh_only: bool,
    ) -> Optional[ExchangeRate]:
        stmt = select(ExchangeRate).where(
            ExchangeRate.from_currency == src,
            ExchangeRate.to_currency == dst,
            ExchangeRate.date <= target,
        )
        if fresh_only:
            stmt = stmt.where(
                ExchangeRate.is_stale.is_(False),
                or_(ExchangeRate.expires_at.is_(None), ExchangeRate.expires_at > now),
            )
        stmt = stmt.order_by(
            ExchangeRate.date.desc(),
            ExchangeRate.fetched_at.desc(),
            ExchangeRate.id.desc(),
        ).limit(1)
        return self.session.scalar(stmt)

    def _quote_from_row(
        self, row: ExchangeRate, source: RateSource, now: datetime
    ) -> RateQuote:
        aged = row.fetched_at is not None and now - row.fetched_at > self.ttl
        return RateQuote(
            rate=micros_to_rate(row.rate_micros),
            source=source,
            fetched_at=row.fetched_at,
            expires_at=row.expires_at,
            rate_date=row.date,
            is_stale=source == RateSource.stale or row.is_stale or aged,
        )

    def _fetch_live(
        self, src: str, dst: str, on_date: Optional[date]
    ) -> Optional[RateQuote]:
        try:
            fetched = self.provider.fetch(src, dst, on_date)
        except RateProviderError as exc:
            logger.warning(f"fx_provider_failed: pair={src}->{dst} error={exc}")
            return None
        fx = self._apply_markup(fetched)
        row = self._store_quote(fx, with_inverse=True)
        return RateQuote(
            rate=micros_to_rate(rate_to_micros(fx.rate)),
            source=RateSource.live,
            fetched_at=fx.fetched_at,
            expires_at=row.expires_at if row else fx.fetched_at + self.ttl,
            rate_date=fx.rate_date,
        )

    def _apply_markup(self, quote: FxQuote) -> FxQuote:
        markup_bps = self.settings.fx_markup_bps
        if not markup_bps:
            return quote
        factor = Decimal("1") - (Decimal(markup_bps) / Decimal("10000"))
        return FxQuote(
            provider=quote.provider,
            base=quote.base,
            quote=quote.quote,
            rate=quote.rate * factor,
            rate_date=quote.rate_date,
            fetched_at=quote.fetched_at,
        )

    def _store_quote(self, quote: FxQuote, *, with_inverse: bool) -> Optional[ExchangeRate]:
        expires_at = quote.fetched_at + self.ttl
        try:
            row = self._upsert(
                quote.base,
                quote.quote,
                quote.rate_date,
                rate_to_micros(quote.rate),
                source=RateSourceTag.api,
                api_provider=quote.provider,
                fetched_at=quote.fetched_at,
                expires_at=expires_at,
            )
            if with_inverse and quote.rate > 0:
                self._upsert(
                    quote.quote,
                    quote.base,
                    quote.rate_date,
                    rate_to_micros(Decimal("1") / quote.rate),
                    source=RateSourceTag.api,
                    api_provider=quote.provider,
                    fetched_at=quote.fetched_at,
                    expires_at=expires_at,
                )
            self.session.flush()
            return row
        except SQLAlchemyError:
            # the cache is best-effort; callers resolve rates before writing
            logger.exception(
                f"fx_cache_store_failed: pair={quote.base}->{quote.quote}"
            )
            self.session.rollback()
            return None

    def _upsert(
        self,
        src: str,
        dst: str,
        on_date: date,
        rate_micros: int,
        *,
        source: RateSourceTag,
        api_provider: Optional[str],
        fetched_at: Optional[datetime],
        expires_at: Optional[datetime],
    ) -> ExchangeRate:
        existing = self.session.scalar(
            select(ExchangeRate).where(
                ExchangeRate.from_currency == src,
                ExchangeRate.to_currency == dst,
                ExchangeRate.date == on_date,
            )
        )
        if existing:
            existing.rate_micros = rate_micros
            existing.source = source
            existing.api_provider = api_provider
            existing.fetched_at = fetched_at
            existing.expires_at = expires_at
            existing.is_stale = False
            existing.fetch_error_count = 0
            return existing

        row = ExchangeRate(
            from_currency=src,
            to_currency=dst,
            date=on_date,
            rate_micros=rate_micros,
            source=source,
            api_provider=api_provider,
            fetched_at=fetched_at,
            expires_at=expires_at,
            is_stale=False,
            fetch_error_count=0,
        )
        self.session.add(row)
        return row
