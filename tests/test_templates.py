from datetime import date

import pytest
from sqlalchemy import func, select

from database import Base, build_engine, make_sessionmaker
from errors import Conflict, NotFound, ValidationFailed
from fx_rates import ExchangeRateService, NullRateProvider
from models import CategoryType, Transaction, TransactionType
from schemas import (
    CategoryIn,
    PaymentMethodIn,
    TagIn,
    TemplateIn,
    TemplateUpdate,
    TemplateUseIn,
)
from services import (
    CategoryService,
    PaymentMethodService,
    ProfileService,
    TagService,
    TemplateService,
)


def make_session():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return make_sessionmaker(engine)()


def seed(session):
    ProfileService(session).set_base_currency("USD")
    categories = CategoryService(session)
    coffee = categories.create(CategoryIn(name="Coffee", type=CategoryType.expense))
    salary = categories.create(CategoryIn(name="Salary", type=CategoryType.income))
    card = PaymentMethodService(session).create(
        PaymentMethodIn(name="Card", currency="USD", is_default=True)
    )
    return coffee, salary, card


def make_service(session) -> TemplateService:
    return TemplateService(
        session, rates=ExchangeRateService(session, NullRateProvider())
    )


def txn_count(session) -> int:
    return session.execute(select(func.count(Transaction.id))).scalar_one()


def test_fixed_price_template_books_its_own_amount() -> None:
    session = make_session()
    coffee, _, card = seed(session)
    morning = TagService(session).create(TagIn(name="Morning"))
    service = make_service(session)
    template = service.create(
        TemplateIn(
            name="  Flat white ",
            amount_cents=450,
            category_id=coffee.id,
            payment_method_id=card.id,
            description="Corner cafe",
            tag_ids=[morning.id],
        )
    )
    assert template.name == "Flat white"
    assert [tag.name for tag in template.tags] == ["Morning"]

    txn = service.create_transaction(
        template.id, TemplateUseIn(amount_cents=999, date=date(2025, 3, 4))
    )

    assert txn.type == TransactionType.expense
    assert txn.native_amount_cents == 450
    assert txn.payment_method_id == card.id
    assert txn.date == date(2025, 3, 4)
    assert txn.description == "Corner cafe"
    assert [tag.id for tag in txn.tags] == [morning.id]

    again = service.create_transaction(
        template.id, TemplateUseIn(date=date(2025, 3, 5), description="Station")
    )
    assert again.description == "Station"
    assert txn_count(session) == 2


def test_variable_price_template_needs_an_amount() -> None:
    session = make_session()
    _, salary, card = seed(session)
    service = make_service(session)
    template = service.create(TemplateIn(name="Payday", category_id=salary.id))

    with pytest.raises(ValidationFailed):
        service.create_transaction(template.id, TemplateUseIn(date=date(2025, 3, 1)))
    assert txn_count(session) == 0

    txn = service.create_transaction(
        template.id, TemplateUseIn(amount_cents=250000, date=date(2025, 3, 1))
    )
    assert txn.type == TransactionType.income
    assert txn.amount_cents == 250000
    # no account on the template: the default account is used
    assert txn.payment_method_id == card.id


def test_template_without_category_cannot_be_used() -> None:
    session = make_session()
    seed(session)
    service = make_service(session)
    template = service.create(TemplateIn(name="Misc", amount_cents=100))

    with pytest.raises(ValidationFailed):
        service.create_transaction(template.id)
    assert txn_count(session) == 0


def test_template_names_are_unique_case_insensitively() -> None:
    session = make_session()
    coffee, _, _ = seed(session)
    service = make_service(session)
    service.create(TemplateIn(name="Rent", amount_cents=90000, category_id=coffee.id))
    lunch = service.create(TemplateIn(name="Lunch", category_id=coffee.id))

    with pytest.raises(Conflict):
        service.create(TemplateIn(name="rent"))
    with pytest.raises(Conflict):
        service.update(lunch.id, TemplateUpdate(name=" RENT "))
    with pytest.raises(ValidationFailed):
        service.create(TemplateIn(name="   "))

    renamed = service.update(lunch.id, TemplateUpdate(name="lunch"))
    assert renamed.name == "lunch"
    # the same name owned by someone else is fine
    TemplateService(session, user_id=2).create(TemplateIn(name="Rent"))


def test_update_can_clear_amount_and_replace_tags() -> None:
    session = make_session()
    coffee, _, card = seed(session)
    tags = TagService(session)
    work = tags.create(TagIn(name="Work"))
    trip = tags.create(TagIn(name="Trip"))
    service = make_service(session)
    template = service.create(
        TemplateIn(
            name="Taxi",
            amount_cents=1800,
            category_id=coffee.id,
            payment_method_id=card.id,
            tag_ids=[work.id],
        )
    )

    updated = service.update(
        template.id,
        TemplateUpdate(amount_cents=None, payment_method_id=None, tag_ids=[trip.id]),
    )

    assert updated.amount_cents is None
    assert updated.payment_method_id is None
    assert updated.category_id == coffee.id
    assert [tag.name for tag in updated.tags] == ["Trip"]

    with pytest.raises(NotFound):
        service.update(template.id, TemplateUpdate(tag_ids=[12345]))
    assert [tag.name for tag in service.get(template.id).tags] == ["Trip"]


def test_favorites_sort_first_and_toggle() -> None:
    session = make_session()
    coffee, _, _ = seed(session)
    service = make_service(session)
    bus = service.create(TemplateIn(name="Bus", category_id=coffee.id))
    service.create(TemplateIn(name="Apples", category_id=coffee.id))
    service.create(TemplateIn(name="Water", category_id=coffee.id, is_favorite=True))

    assert [t.name for t in service.list_all()] == ["Water", "Apples", "Bus"]

    assert service.toggle_favorite(bus.id).is_favorite is True
    assert [t.name for t in service.list_favorites()] == ["Bus", "Water"]
    assert service.toggle_favorite(bus.id).is_favorite is False
    assert [t.name for t in service.list_favorites()] == ["Water"]
    assert [t.name for t in service.list_all(category_id=coffee.id)] == [
        "Water",
        "Apples",
        "Bus",
    ]


def test_templates_are_scoped_to_owner() -> None:
    session = make_session()
    coffee, _, _ = seed(session)
    theirs = CategoryService(session, user_id=2).create(
        CategoryIn(name="Coffee", type=CategoryType.expense)
    )
    service = make_service(session)

    with pytest.raises(NotFound):
        service.create(TemplateIn(name="Borrowed", category_id=theirs.id))

    mine = service.create(TemplateIn(name="Espresso", category_id=coffee.id))
    with pytest.raises(NotFound):
        TemplateService(session, user_id=2).get(mine.id)
    with pytest.raises(NotFound):
        TemplateService(session, user_id=2).delete(mine.id)
    assert TemplateService(session, user_id=2).list_all() == []


def test_deleting_referenced_rows_detaches_templates() -> None:
    session = make_session()
    coffee, _, _ = seed(session)
    spare = PaymentMethodService(session).create(
        PaymentMethodIn(name="Spare", currency="USD")
    )
    trip = TagService(session).create(TagIn(name="Trip"))
    service = make_service(session)
    template = service.create(
        TemplateIn(
            name="Souvenir",
            category_id=coffee.id,
            payment_method_id=spare.id,
            tag_ids=[trip.id],
        )
    )

    PaymentMethodService(session).delete(spare.id)
    TagService(session).delete(trip.id)
    session.expire_all()

    kept = service.get(template.id)
    assert kept.payment_method_id is None
    assert kept.tags == []

    service.delete(template.id)
    with pytest.raises(NotFound):
        service.get(template.id)
