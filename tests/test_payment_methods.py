from datetime import date

import pytest
from sqlalchemy import func, select

from database import Base, build_engine, make_sessionmaker
from errors import CannotDelete, Conflict, NotFound, ValidationFailed
from fx_rates import ExchangeRateService, NullRateProvider
from models import CategoryType, PaymentMethod, TransactionType
from schemas import CategoryIn, PaymentMethodIn, PaymentMethodUpdate, TransactionIn
from services import (
    CategoryService,
    PaymentMethodService,
    ProfileService,
    TransactionService,
)


def make_session():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return make_sessionmaker(engine)()


def default_count(session, user_id: int = 1) -> int:
    return session.execute(
        select(func.count(PaymentMethod.id)).where(
            PaymentMethod.user_id == user_id, PaymentMethod.is_default.is_(True)
        )
    ).scalar_one()


def test_first_transaction_without_account_creates_cash_wallet() -> None:
    session = make_session()
    ProfileService(session).set_base_currency("EUR")
    food = CategoryService(session).create(
        CategoryIn(name="Food", type=CategoryType.expense)
    )
    rates = ExchangeRateService(session, NullRateProvider())

    txn = TransactionService(session, rates=rates).create(
        TransactionIn(
            type=TransactionType.expense,
            amount_cents=450,
            date=date(2025, 3, 2),
            category_id=food.id,
        )
    )

    wallet = PaymentMethodService(session).get(txn.payment_method_id)
    assert wallet.name == "Cash/Wallet"
    assert wallet.currency == "EUR"
    assert wallet.is_default is True
    assert wallet.is_active is True
    assert txn.base_currency == "EUR"
    assert txn.amount_cents == 450


def test_resolution_prefers_default_then_first_active_by_name() -> None:
    session = make_session()
    service = PaymentMethodService(session)
    zeta = service.create(PaymentMethodIn(name="Zeta", currency="USD"))
    alpha = service.create(PaymentMethodIn(name="Alpha", currency="USD"))

    assert service.resolve_for_transaction().id == alpha.id

    service.set_default(zeta.id)
    assert service.resolve_for_transaction().id == zeta.id


def test_explicit_archived_account_is_rejected() -> None:
    session = make_session()
    service = PaymentMethodService(session)
    card = service.create(PaymentMethodIn(name="Card", currency="usd"))
    assert card.currency == "USD"
    service.archive(card.id)

    with pytest.raises(ValidationFailed):
        service.resolve_for_transaction(card.id)


def test_other_owners_account_is_not_found() -> None:
    session = make_session()
    theirs = PaymentMethodService(session, user_id=2).create(
        PaymentMethodIn(name="Theirs", currency="USD")
    )

    with pytest.raises(NotFound):
        PaymentMethodService(session, user_id=1).resolve_for_transaction(theirs.id)


def test_set_default_unsets_previous_default() -> None:
    session = make_session()
    service = PaymentMethodService(session)
    first = service.create(PaymentMethodIn(name="First", currency="USD", is_default=True))
    second = service.create(PaymentMethodIn(name="Second", currency="EUR"))

    service.set_default(second.id)
    session.expire_all()

    assert service.get(first.id).is_default is False
    assert service.get(second.id).is_default is True
    assert default_count(session) == 1

    third = service.create(PaymentMethodIn(name="Third", currency="USD", is_default=True))
    session.expire_all()
    assert service.get_default().id == third.id
    assert default_count(session) == 1


def test_archived_account_cannot_become_default() -> None:
    session = make_session()
    service = PaymentMethodService(session)
    card = service.create(PaymentMethodIn(name="Card", currency="USD"))
    service.archive(card.id)

    with pytest.raises(ValidationFailed):
        service.set_default(card.id)
    with pytest.raises(ValidationFailed):
        service.archive(card.id)

    service.activate(card.id)
    with pytest.raises(ValidationFailed):
        service.activate(card.id)


def test_delete_refused_while_transactions_reference_account() -> None:
    session = make_session()
    service = PaymentMethodService(session)
    card = service.create(PaymentMethodIn(name="Card", currency="USD"))
    spare = service.create(PaymentMethodIn(name="Spare", currency="USD"))
    food = CategoryService(session).create(
        CategoryIn(name="Food", type=CategoryType.expense)
    )
    TransactionService(
        session, rates=ExchangeRateService(session, NullRateProvider())
    ).create(
        TransactionIn(
            type=TransactionType.expense,
            amount_cents=1000,
            date=date(2025, 1, 10),
            category_id=food.id,
            payment_method_id=card.id,
        )
    )

    with pytest.raises(CannotDelete) as excinfo:
        service.delete(card.id)
    assert "1 transaction" in excinfo.value.message

    service.archive(card.id)
    service.delete(spare.id)
    with pytest.raises(NotFound):
        service.get(spare.id)
    assert [pm.name for pm in service.list_all(is_active=False)] == ["Card"]


def test_duplicate_name_is_a_conflict() -> None:
    session = make_session()
    service = PaymentMethodService(session)
    service.create(PaymentMethodIn(name="Savings", currency="USD"))
    other = service.create(PaymentMethodIn(name="Checking", currency="USD"))

    with pytest.raises(Conflict):
        service.create(PaymentMethodIn(name="savings", currency="EUR"))
    with pytest.raises(Conflict):
        service.update(other.id, PaymentMethodUpdate(name="Savings"))


def test_list_filters_by_currency() -> None:
    session = make_session()
    service = PaymentMethodService(session)
    service.create(PaymentMethodIn(name="Dollars", currency="USD"))
    service.create(PaymentMethodIn(name="Euros", currency="EUR"))

    assert [pm.name for pm in service.list_all(currency="eur")] == ["Euros"]


def test_archived_foreign_wallet_is_not_revived_as_fallback() -> None:
    session = make_session()
    ProfileService(session).set_base_currency("USD")
    service = PaymentMethodService(session)
    old_wallet = service.create(PaymentMethodIn(name="Cash/Wallet", currency="EUR"))
    service.archive(old_wallet.id)
    food = CategoryService(session).create(
        CategoryIn(name="Food", type=CategoryType.expense)
    )

    txn = TransactionService(
        session, rates=ExchangeRateService(session, NullRateProvider())
    ).create(
        TransactionIn(
            type=TransactionType.expense,
            amount_cents=800,
            date=date(2025, 3, 2),
            category_id=food.id,
        )
    )

    wallet = service.get(txn.payment_method_id)
    assert wallet.id != old_wallet.id
    assert wallet.name == "Cash/Wallet 2"
    assert wallet.currency == "USD"
    assert wallet.is_default is True
    assert txn.amount_cents == 800
    session.expire_all()
    assert service.get(old_wallet.id).is_active is False


def test_archived_base_currency_wallet_is_reactivated() -> None:
    session = make_session()
    ProfileService(session).set_base_currency("USD")
    service = PaymentMethodService(session)
    old_wallet = service.create(PaymentMethodIn(name="Cash/Wallet", currency="USD"))
    service.archive(old_wallet.id)

    wallet = service.resolve_for_transaction()

    assert wallet.id == old_wallet.id
    assert wallet.is_active is True
    assert wallet.is_default is True
