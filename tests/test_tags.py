from datetime import date

import pytest
from sqlalchemy import func, select

from database import Base, build_engine, make_sessionmaker
from errors import Conflict, NotFound, ValidationFailed
from fx_rates import ExchangeRateService, NullRateProvider
from models import Budget, CategoryType, TransactionType
from schemas import BudgetIn, CategoryIn, TagIn, TagUpdate, TransactionIn
from services import BudgetService, CategoryService, TagService, TransactionService


def make_session():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return make_sessionmaker(engine)()


def test_create_returns_existing_tag_case_insensitive() -> None:
    session = make_session()
    service = TagService(session)

    first = service.create(TagIn(name="Dining"))
    again = service.create(TagIn(name=" dining "))

    assert again.id == first.id
    assert [tag.name for tag in service.list_all()] == ["Dining"]


def test_blank_tag_name_is_rejected() -> None:
    session = make_session()
    with pytest.raises(ValidationFailed):
        TagService(session).create(TagIn(name="   "))


def test_tags_are_scoped_to_owner() -> None:
    session = make_session()
    mine = TagService(session, user_id=1).create(TagIn(name="Trip"))
    theirs = TagService(session, user_id=2).create(TagIn(name="Trip"))

    assert mine.id != theirs.id
    with pytest.raises(NotFound):
        TagService(session, user_id=1).get(theirs.id)


def test_deleting_used_tag_clears_associations_and_budgets() -> None:
    session = make_session()
    category = CategoryService(session).create(
        CategoryIn(name="Food", type=CategoryType.expense)
    )
    tag = TagService(session).create(TagIn(name="Dining"))
    txn = TransactionService(
        session, rates=ExchangeRateService(session, NullRateProvider())
    ).create(
        TransactionIn(
            date=date(2025, 1, 5),
            type=TransactionType.expense,
            amount_cents=1299,
            category_id=category.id,
            description="Lunch",
            tag_ids=[tag.id],
        )
    )
    BudgetService(session).create(
        BudgetIn(amount_cents=5000, period="2025-01", tag_id=tag.id)
    )

    TagService(session).delete(tag.id)
    session.expire_all()

    txn_after = TransactionService(session).get(txn.id)
    assert txn_after.tags == []
    assert session.execute(select(func.count(Budget.id))).scalar_one() == 0
    with pytest.raises(NotFound):
        TagService(session).delete(tag.id)


def test_update_renames_and_recolors() -> None:
    session = make_session()
    service = TagService(session)
    tag = service.create(TagIn(name="Dinning"))

    renamed = service.update(tag.id, TagUpdate(name=" Dining ", color="#F59E0B"))
    assert renamed.name == "Dining"
    assert renamed.color == "#F59E0B"

    # a case-only change of the same tag is not a clash
    assert service.update(tag.id, TagUpdate(name="dining")).name == "dining"
    assert service.update(tag.id, TagUpdate(color=None)).color is None


def test_update_rejects_names_taken_by_another_tag() -> None:
    session = make_session()
    service = TagService(session)
    service.create(TagIn(name="Travel"))
    food = service.create(TagIn(name="Food"))

    with pytest.raises(Conflict):
        service.update(food.id, TagUpdate(name="TRAVEL"))
    with pytest.raises(ValidationFailed):
        service.update(food.id, TagUpdate(name="   "))
    with pytest.raises(NotFound):
        TagService(session, user_id=2).update(food.id, TagUpdate(name="Mine"))

    assert service.get(food.id).name == "Food"
    # other owners' tags never clash
    TagService(session, user_id=2).create(TagIn(name="Groceries"))
    assert service.update(food.id, TagUpdate(name="Groceries")).name == "Groceries"
