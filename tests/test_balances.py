from datetime import date
from decimal import Decimal

import pytest

from database import Base, build_engine, make_sessionmaker
from errors import NotFound
from fx_rates import ExchangeRateService, NullRateProvider
from models import CategoryType, Transaction, TransactionType
from schemas import CategoryIn, PaymentMethodIn, TransactionIn, TransferIn
from services import (
    BalanceService,
    CategoryService,
    PaymentMethodService,
    ProfileService,
    TransactionService,
    TransferService,
)


def make_session():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return make_sessionmaker(engine)()


def seed(session):
    """Two USD accounts: A gets salary, pays groceries and moves 10.00 to B."""
    ProfileService(session).set_base_currency("USD")
    rates = ExchangeRateService(session, NullRateProvider())
    categories = CategoryService(session)
    food = categories.create(CategoryIn(name="Food", type=CategoryType.expense))
    salary = categories.create(CategoryIn(name="Salary", type=CategoryType.income))
    methods = PaymentMethodService(session)
    a = methods.create(PaymentMethodIn(name="Account A", currency="USD"))
    b = methods.create(PaymentMethodIn(name="Account B", currency="USD"))

    txns = TransactionService(session, rates=rates)
    txns.create(
        TransactionIn(
            type=TransactionType.income,
            amount_cents=5000,
            date=date(2025, 3, 1),
            category_id=salary.id,
            payment_method_id=a.id,
        )
    )
    txns.create(
        TransactionIn(
            type=TransactionType.expense,
            amount_cents=1200,
            date=date(2025, 3, 2),
            category_id=food.id,
            payment_method_id=a.id,
        )
    )
    TransferService(session, rates=rates).create_transfer(
        TransferIn(
            source_payment_method_id=a.id,
            destination_payment_method_id=b.id,
            amount_cents=1000,
            date=date(2025, 3, 3),
        )
    )
    return rates, food, a, b


def add_orphan(session, category_id: int, amount: int) -> None:
    session.add(
        Transaction(
            user_id=1,
            date=date(2025, 3, 4),
            type=TransactionType.expense,
            amount_cents=amount,
            native_amount_cents=amount,
            base_currency="USD",
            category_id=category_id,
            payment_method_id=None,
        )
    )
    session.commit()


def test_signed_contribution_per_account() -> None:
    session = make_session()
    rates, _, a, b = seed(session)
    balances = BalanceService(session, rates=rates)

    assert balances.account_balance(a.id) == 2800
    assert balances.account_balance(b.id) == 1000
    assert balances.account_balances() == {a.id: 2800, b.id: 1000}

    total = balances.total_balance()
    assert total.total_cents == 3800
    assert total.base_currency == "USD"
    assert [item.name for item in total.breakdown] == ["Account A", "Account B"]


def test_archived_accounts_still_count() -> None:
    session = make_session()
    rates, _, _, b = seed(session)
    PaymentMethodService(session).archive(b.id)

    total = BalanceService(session, rates=rates).total_balance()

    archived = [item for item in total.breakdown if not item.is_active]
    assert [item.payment_method_id for item in archived] == [b.id]
    assert total.total_cents == 3800


def test_orphaned_transactions_are_reported_not_totalled() -> None:
    session = make_session()
    rates, food, _, _ = seed(session)
    add_orphan(session, food.id, 700)
    balances = BalanceService(session, rates=rates)

    orphaned = balances.orphaned_summary()
    assert orphaned.count == 1
    assert orphaned.expense_cents == 700
    assert orphaned.income_cents == 0
    assert orphaned.net_cents == -700

    total = balances.total_balance()
    assert total.total_cents == 3800
    assert total.orphaned.count == 1

    report = balances.reconciliation_report()
    assert report.owner_balance_cents == 3100
    assert report.accounts_total_cents == 3800
    assert report.difference_cents == -700
    assert report.difference_cents == report.orphaned.net_cents


def test_owner_balance_ignores_transfers() -> None:
    session = make_session()
    rates, _, _, _ = seed(session)

    assert BalanceService(session, rates=rates).owner_balance() == 3800


def test_missing_rate_falls_back_to_native_value() -> None:
    session = make_session()
    rates, _, _, _ = seed(session)
    euros = PaymentMethodService(session).create(
        PaymentMethodIn(name="Euro card", currency="EUR")
    )
    salary = CategoryService(session).list_all(type=CategoryType.income)[0]
    TransactionService(session, rates=rates).create(
        TransactionIn(
            type=TransactionType.income,
            amount_cents=2000,
            date=date(2025, 3, 5),
            category_id=salary.id,
            payment_method_id=euros.id,
            exchange_rate=Decimal("1.1"),
        )
    )

    total = BalanceService(session, rates=rates).total_balance()

    euro_line = next(i for i in total.breakdown if i.payment_method_id == euros.id)
    assert euro_line.native_cents == 2000
    assert euro_line.converted_cents == 2000
    assert euro_line.rate_unavailable is True
    assert euro_line.exchange_rate is None
    assert total.total_cents == 5800


def test_converted_balance_uses_rate_to_base() -> None:
    session = make_session()
    rates, _, _, _ = seed(session)
    rates.set_manual_rate("EUR", "USD", Decimal("1.1"), on_date=date(2025, 1, 1))
    euros = PaymentMethodService(session).create(
        PaymentMethodIn(name="Euro card", currency="EUR")
    )
    salary = CategoryService(session).list_all(type=CategoryType.income)[0]
    TransactionService(session, rates=rates).create(
        TransactionIn(
            type=TransactionType.income,
            amount_cents=2000,
            date=date(2025, 3, 5),
            category_id=salary.id,
            payment_method_id=euros.id,
        )
    )

    total = BalanceService(session, rates=rates).total_balance()

    euro_line = next(i for i in total.breakdown if i.payment_method_id == euros.id)
    assert euro_line.converted_cents == 2200
    assert euro_line.exchange_rate == Decimal("1.1")
    assert euro_line.rate_source == "cached"
    assert total.total_cents == 6000

    by_currency = BalanceService(session, rates=rates).balances_by_currency()
    assert by_currency == [
        {"currency": "EUR", "balance_cents": 2000},
        {"currency": "USD", "balance_cents": 3800},
    ]


def test_account_details_and_ownership() -> None:
    session = make_session()
    rates, _, a, b = seed(session)
    balances = BalanceService(session, rates=rates)

    details = {d.balance.payment_method_id: d for d in balances.account_details()}
    assert details[a.id].transaction_count == 3
    assert details[a.id].last_transaction_date == date(2025, 3, 3)
    assert details[b.id].transaction_count == 1

    theirs = PaymentMethodService(session, user_id=2).create(
        PaymentMethodIn(name="Theirs", currency="USD")
    )
    with pytest.raises(NotFound):
        balances.account_balance(theirs.id)
    assert theirs.id not in balances.account_balances()
