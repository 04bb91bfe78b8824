from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy import select

from database import Base, build_engine, make_sessionmaker
from fx_rates import (
    ExchangeRateService,
    FxQuote,
    RateProviderError,
    RateSource,
    convert_cents,
    micros_to_rate,
    rate_to_micros,
)
from models import ExchangeRate, PaymentMethod, RateSourceTag, utcnow


def make_session():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return make_sessionmaker(engine)()


class StubProvider:
    name = "stub"

    def __init__(self, rates=None) -> None:
        self.rates = rates or {}
        self.calls = []

    def fetch(self, base, quote, on_date):
        self.calls.append((base, quote, on_date))
        if (base, quote) not in self.rates:
            raise RateProviderError(f"no rate for {base}->{quote}")
        return FxQuote(
            provider="stub",
            base=base,
            quote=quote,
            rate=self.rates[(base, quote)],
            rate_date=on_date or date.today(),
            fetched_at=utcnow(),
        )


def test_money_helpers_round_half_up() -> None:
    assert rate_to_micros(Decimal("0.9")) == 900_000
    assert rate_to_micros(Decimal("1.2345675")) == 1_234_568
    assert micros_to_rate(1_100_000) == Decimal("1.1")
    assert convert_cents(10000, Decimal("0.9")) == 9000
    assert convert_cents(5, Decimal("0.5")) == 3
    assert convert_cents(-5, Decimal("0.5")) == -3


def test_identity_pair_short_circuits_without_lookup() -> None:
    session = make_session()
    provider = StubProvider()
    quote = ExchangeRateService(session, provider).get_rate("usd", "USD")

    assert quote.rate == Decimal("1")
    assert quote.source == RateSource.live
    assert quote.fetched_at is None
    assert provider.calls == []


def test_manual_rate_is_served_from_cache() -> None:
    session = make_session()
    provider = StubProvider()
    service = ExchangeRateService(session, provider)
    service.set_manual_rate("USD", "EUR", Decimal("0.9"), on_date=date(2025, 1, 1))

    quote = service.get_rate("USD", "EUR", date(2025, 3, 1))

    assert quote.rate == Decimal("0.9")
    assert quote.source == RateSource.cached
    assert quote.is_stale is False
    assert provider.calls == []


def test_live_fetch_stores_rate_and_inverse() -> None:
    session = make_session()
    provider = StubProvider({("USD", "EUR"): Decimal("0.8")})
    service = ExchangeRateService(session, provider)

    first = service.get_rate("USD", "EUR", date(2025, 2, 3))
    second = service.get_rate("USD", "EUR", date(2025, 2, 3))

    assert first.source == RateSource.live
    assert first.rate == Decimal("0.8")
    assert second.source == RateSource.cached
    assert len(provider.calls) == 1

    inverse = session.scalar(
        select(ExchangeRate).where(
            ExchangeRate.from_currency == "EUR", ExchangeRate.to_currency == "USD"
        )
    )
    assert inverse is not None
    assert inverse.rate_micros == 1_250_000
    assert inverse.source == RateSourceTag.api
    assert inverse.expires_at is not None


def test_expired_row_is_used_as_stale_fallback_when_provider_fails() -> None:
    session = make_session()
    now = utcnow()
    session.add(
        ExchangeRate(
            from_currency="GBP",
            to_currency="USD",
            date=date.today() - timedelta(days=3),
            rate_micros=1_270_000,
            source=RateSourceTag.api,
            fetched_at=now - timedelta(days=3),
            expires_at=now - timedelta(days=2),
        )
    )
    session.commit()

    quote = ExchangeRateService(session, StubProvider()).get_rate("GBP", "USD")

    assert quote.source == RateSource.stale
    assert quote.is_stale is True
    assert quote.rate == Decimal("1.27")


def test_cached_row_older_than_ttl_is_flagged_stale() -> None:
    session = make_session()
    now = utcnow()
    session.add(
        ExchangeRate(
            from_currency="CHF",
            to_currency="USD",
            date=date.today() - timedelta(days=2),
            rate_micros=1_100_000,
            source=RateSourceTag.api,
            fetched_at=now - timedelta(hours=30),
            expires_at=now + timedelta(hours=1),
        )
    )
    session.commit()

    quote = ExchangeRateService(session, StubProvider()).get_rate("CHF", "USD")

    assert quote.source == RateSource.cached
    assert quote.is_stale is True


def test_unresolvable_pair_returns_no_rate() -> None:
    session = make_session()
    service = ExchangeRateService(session, StubProvider())

    quote = service.get_rate("USD", "JPY", date(2025, 5, 1))

    assert quote.rate is None
    assert quote.source is None
    assert service.convert(1000, "USD", "JPY", date(2025, 5, 1)) is None


def test_mark_stale_and_cleanup_old() -> None:
    session = make_session()
    now = utcnow()
    old_day = date.today() - timedelta(days=120)
    session.add_all(
        [
            ExchangeRate(
                from_currency="USD",
                to_currency="EUR",
                date=old_day,
                rate_micros=900_000,
                source=RateSourceTag.api,
                fetched_at=now - timedelta(days=120),
                expires_at=now - timedelta(days=119),
            ),
            ExchangeRate(
                from_currency="USD",
                to_currency="GBP",
                date=old_day,
                rate_micros=800_000,
                source=RateSourceTag.manual,
            ),
        ]
    )
    session.commit()
    service = ExchangeRateService(session, StubProvider())

    assert service.mark_stale() == 1
    assert service.cleanup_old(days=90) == 1

    session.expire_all()
    remaining = session.scalars(select(ExchangeRate)).all()
    assert [(r.from_currency, r.to_currency) for r in remaining] == [("USD", "GBP")]


def test_refresh_all_stores_quotes_and_counts_failures() -> None:
    session = make_session()
    session.add(
        ExchangeRate(
            from_currency="EUR",
            to_currency="USD",
            date=date(2025, 1, 1),
            rate_micros=1_100_000,
            source=RateSourceTag.api,
            fetched_at=utcnow() - timedelta(days=2),
            expires_at=utcnow() - timedelta(days=1),
        )
    )
    session.commit()
    provider = StubProvider({("USD", "EUR"): Decimal("0.91")})
    service = ExchangeRateService(session, provider)

    stored = service.refresh_all(["USD", "EUR"])

    assert stored == 1
    assert sorted((b, q) for b, q, _ in provider.calls) == [("EUR", "USD"), ("USD", "EUR")]
    session.expire_all()
    failed = session.scalar(
        select(ExchangeRate).where(
            ExchangeRate.from_currency == "EUR", ExchangeRate.to_currency == "USD"
        )
    )
    assert failed.fetch_error_count == 1
    assert failed.is_stale is True
    fresh = service.get_rate("USD", "EUR")
    assert fresh.rate == Decimal("0.91")
    assert fresh.source == RateSource.cached


def test_active_currencies_include_accounts_and_usd() -> None:
    session = make_session()
    session.add_all(
        [
            PaymentMethod(user_id=1, name="Euro card", currency="EUR"),
            PaymentMethod(user_id=1, name="Old yen", currency="JPY", is_active=False),
        ]
    )
    session.commit()

    currencies = ExchangeRateService(session, StubProvider()).active_currencies()

    assert "EUR" in currencies
    assert "USD" in currencies
    assert "JPY" not in currencies
