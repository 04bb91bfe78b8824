from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy import and_, case, delete, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, aliased, selectinload

from config import get_settings
from errors import (
    CannotDelete,
    Conflict,
    NotFound,
    RateUnavailable,
    Unexpected,
    ValidationFailed,
)
from fx_rates import (
    ExchangeRateService,
    RateQuote,
    convert_cents,
    normalize_currency,
    rate_to_micros,
)
from models import (
    Budget,
    Category,
    CategoryType,
    PaymentMethod,
    Profile,
    Tag,
    Transaction,
    TransactionTemplate,
    TransactionType,
    TransferRole,
    template_tags,
    transaction_tags,
)
from periods import month_bounds, normalize_month_period
from schemas import (
    BudgetIn,
    BudgetUpdate,
    CategoryIn,
    PaymentMethodIn,
    PaymentMethodUpdate,
    TagIn,
    TagUpdate,
    TemplateIn,
    TemplateUpdate,
    TemplateUseIn,
    TransactionFilters,
    TransactionIn,
    TransactionUpdate,
    TransferIn,
)

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_NAME = "Cash/Wallet"
DEFAULT_ACCOUNT_COLOR = "#10B981"
LEGACY_BUCKET_NAME = "Legacy Transactions"
LEGACY_BUCKET_COLOR = "#6B7280"


def get_current_user_id() -> int:
    return 1


def _rollback(session: Session, context: str) -> None:
    try:
        session.rollback()
    except SQLAlchemyError:
        logger.exception(f"rollback_failed: context={context}")


def _owned_tags(session: Session, user_id: int, tag_ids: list[int]) -> list[Tag]:
    wanted = list(dict.fromkeys(tag_ids))
    if not wanted:
        return []
    found = {
        tag.id: tag
        for tag in session.scalars(
            select(Tag).where(Tag.user_id == user_id, Tag.id.in_(wanted))
        ).all()
    }
    missing = [tag_id for tag_id in wanted if tag_id not in found]
    if missing:
        raise NotFound(f"Tag not found: {missing[0]}")
    return [found[tag_id] for tag_id in wanted]


def _base_amount(
    rates: ExchangeRateService,
    native_cents: int,
    currency: str,
    base_currency: str,
    on_date: date,
    override: Optional[Decimal] = None,
) -> tuple[int, Decimal]:
    """Convert a native amount into the owner's base currency.

    Returns ``(amount_cents, rate)``. An explicit ``override`` rate wins over
    the resolver; an unresolvable pair raises ``RateUnavailable``.
    """
    if override is not None:
        rate = Decimal(override)
    elif currency == base_currency:
        rate = Decimal("1")
    else:
        quote = rates.get_rate(currency, base_currency, on_date)
        if quote.rate is None:
            raise RateUnavailable(currency, base_currency)
        if quote.is_stale:
            logger.warning(
                f"stale_rate_used_for_write: pair={currency}->{base_currency} "
                f"source={quote.source.value if quote.source else None}"
            )
        rate = quote.rate
    amount = convert_cents(native_cents, rate)
    if amount <= 0:
        raise ValidationFailed("Converted amount must be positive")
    return amount, rate


class ProfileService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get_base_currency(self) -> str:
        profile = self.session.scalar(select(Profile).where(Profile.id == self.user_id))
        if profile:
            return profile.currency
        return get_settings().base_currency

    def set_base_currency(self, currency: str) -> Profile:
        code = normalize_currency(currency)
        profile = self.session.scalar(select(Profile).where(Profile.id == self.user_id))
        if not profile:
            profile = Profile(id=self.user_id, currency=code)
            self.session.add(profile)
        else:
            profile.currency = code
        self.session.commit()
        return profile


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, type: Optional[CategoryType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.name)
        )
        if type is not None:
            stmt = stmt.where(Category.type == type)
        return list(self.session.scalars(stmt).all())

    def get(self, category_id: int) -> Category:
        category = self.session.scalar(
            select(Category).where(
                Category.id == category_id, Category.user_id == self.user_id
            )
        )
        if not category:
            raise NotFound("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        existing = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                Category.type == data.type,
                func.lower(Category.name) == name.lower(),
            )
        )
        if existing:
            raise Conflict("Category with this name already exists")
        category = Category(
            user_id=self.user_id, name=name, type=data.type, color=data.color
        )
        self.session.add(category)
        try:
            self.session.commit()
        except IntegrityError as exc:
            _rollback(self.session, "category_create")
            raise Conflict("Category with this name already exists") from exc
        return category


class TagService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Tag]:
        stmt = select(Tag).where(Tag.user_id == self.user_id).order_by(Tag.name)
        return list(self.session.scalars(stmt).all())

    def get(self, tag_id: int) -> Tag:
        tag = self.session.scalar(
            select(Tag).where(Tag.id == tag_id, Tag.user_id == self.user_id)
        )
        if not tag:
            raise NotFound("Tag not found")
        return tag

    def _find(self, name: str) -> Optional[Tag]:
        return self.session.scalar(
            select(Tag).where(
                Tag.user_id == self.user_id, func.lower(Tag.name) == name.lower()
            )
        )

    def create(self, data: TagIn) -> Tag:
        """Return the owner's tag with this name, creating it if needed."""
        clean_name = data.name.strip()
        if not clean_name:
            raise ValidationFailed("Tag name cannot be empty")

        existing = self._find(clean_name)
        if existing:
            return existing

        tag = Tag(user_id=self.user_id, name=clean_name, color=data.color)
        self.session.add(tag)
        try:
            self.session.commit()
        except IntegrityError:
            # lost a race with a concurrent create of the same name
            _rollback(self.session, "tag_create")
            existing = self._find(clean_name)
            if not existing:
                raise
            return existing
        return tag

    def update(self, tag_id: int, data: TagUpdate) -> Tag:
        tag = self.get(tag_id)
        fields = data.model_dump(exclude_unset=True)
        if "name" in fields:
            clean_name = (fields["name"] or "").strip()
            if not clean_name:
                raise ValidationFailed("Tag name cannot be empty")
            clash = self._find(clean_name)
            if clash and clash.id != tag.id:
                raise Conflict("A tag with this name already exists")
            tag.name = clean_name
        if "color" in fields:
            tag.color = fields["color"]
        try:
            self.session.commit()
        except IntegrityError as exc:
            _rollback(self.session, "tag_update")
            raise Conflict("A tag with this name already exists") from exc
        logger.info(f"tag_updated: user_id={self.user_id} tag_id={tag.id}")
        return tag

    def delete(self, tag_id: int) -> None:
        tag = self.get(tag_id)
        self.session.execute(
            delete(Tag).where(Tag.id == tag.id, Tag.user_id == self.user_id)
        )
        self.session.commit()


class PaymentMethodService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(
        self, is_active: Optional[bool] = None, currency: Optional[str] = None
    ) -> list[PaymentMethod]:
        stmt = (
            select(PaymentMethod)
            .where(PaymentMethod.user_id == self.user_id)
            .order_by(PaymentMethod.is_default.desc(), PaymentMethod.name)
        )
        if is_active is not None:
            stmt = stmt.where(PaymentMethod.is_active.is_(is_active))
        if currency:
            stmt = stmt.where(PaymentMethod.currency == normalize_currency(currency))
        return list(self.session.scalars(stmt).all())

    def get(self, payment_method_id: int) -> PaymentMethod:
        pm = self.session.scalar(
            select(PaymentMethod).where(
                PaymentMethod.id == payment_method_id,
                PaymentMethod.user_id == self.user_id,
            )
        )
        if not pm:
            raise NotFound("Payment method not found")
        return pm

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(PaymentMethod.id).where(
            PaymentMethod.user_id == self.user_id,
            func.lower(PaymentMethod.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(PaymentMethod.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def _unset_defaults(self, keep_id: Optional[int] = None) -> None:
        stmt = update(PaymentMethod).where(
            PaymentMethod.user_id == self.user_id,
            PaymentMethod.is_default.is_(True),
        )
        if keep_id is not None:
            stmt = stmt.where(PaymentMethod.id != keep_id)
        self.session.execute(stmt.values(is_default=False))
        self.session.flush()

    def create(self, data: PaymentMethodIn) -> PaymentMethod:
        name = data.name.strip()
        if self._name_taken(name):
            raise Conflict("A payment method with this name already exists")
        pm = PaymentMethod(
            user_id=self.user_id,
            name=name,
            currency=normalize_currency(data.currency),
            card_type=data.card_type,
            color=data.color,
            is_default=data.is_default,
            is_active=True,
        )
        try:
            if data.is_default:
                self._unset_defaults()
            self.session.add(pm)
            self.session.commit()
        except IntegrityError as exc:
            _rollback(self.session, "payment_method_create")
            raise Conflict("A payment method with this name already exists") from exc
        return pm

    def update(self, payment_method_id: int, data: PaymentMethodUpdate) -> PaymentMethod:
        pm = self.get(payment_method_id)
        fields = data.model_dump(exclude_unset=True)
        if fields.get("is_default") is True and not pm.is_active:
            raise ValidationFailed("Archived payment methods cannot be default")
        if fields.get("name") is not None:
            name = fields["name"].strip()
            if self._name_taken(name, exclude_id=pm.id):
                raise Conflict("A payment method with this name already exists")
            pm.name = name
        if "color" in fields:
            pm.color = fields["color"]
        if "card_type" in fields:
            pm.card_type = fields["card_type"]
        try:
            self.session.flush()
            if fields.get("is_default") is True:
                self._unset_defaults(keep_id=pm.id)
                pm.is_default = True
            elif fields.get("is_default") is False:
                pm.is_default = False
            self.session.commit()
        except IntegrityError as exc:
            _rollback(self.session, "payment_method_update")
            raise Conflict("A payment method with this name already exists") from exc
        return pm

    def archive(self, payment_method_id: int) -> PaymentMethod:
        pm = self.get(payment_method_id)
        if not pm.is_active:
            raise ValidationFailed("Payment method is already archived")
        pm.is_active = False
        pm.is_default = False
        self.session.commit()
        return pm

    def activate(self, payment_method_id: int) -> PaymentMethod:
        pm = self.get(payment_method_id)
        if pm.is_active:
            raise ValidationFailed("Payment method is already active")
        pm.is_active = True
        self.session.commit()
        return pm

    def transaction_count(self, payment_method_id: int) -> int:
        return int(
            self.session.execute(
                select(func.count(Transaction.id)).where(
                    Transaction.payment_method_id == payment_method_id
                )
            ).scalar_one()
            or 0
        )

    def delete(self, payment_method_id: int) -> None:
        pm = self.get(payment_method_id)
        count = self.transaction_count(pm.id)
        if count:
            raise CannotDelete(
                f"Cannot delete payment method with {count} transaction(s). "
                "Archive it instead."
            )
        self.session.execute(
            delete(PaymentMethod).where(
                PaymentMethod.id == pm.id, PaymentMethod.user_id == self.user_id
            )
        )
        self.session.commit()

    def set_default(self, payment_method_id: int) -> PaymentMethod:
        pm = self.get(payment_method_id)
        if not pm.is_active:
            raise ValidationFailed("Archived payment methods cannot be default")
        try:
            # unset first: the partial unique index allows one default per owner
            self._unset_defaults(keep_id=pm.id)
            self.session.execute(
                update(PaymentMethod)
                .where(PaymentMethod.id == pm.id)
                .values(is_default=True)
            )
            self.session.commit()
        except SQLAlchemyError as exc:
            _rollback(self.session, "payment_method_set_default")
            raise Unexpected("Failed to set default payment method") from exc
        return pm

    def get_default(self) -> Optional[PaymentMethod]:
        return self.session.scalar(
            select(PaymentMethod).where(
                PaymentMethod.user_id == self.user_id,
                PaymentMethod.is_default.is_(True),
                PaymentMethod.is_active.is_(True),
            )
        )

    def resolve_for_transaction(
        self, payment_method_id: Optional[int] = None
    ) -> PaymentMethod:
        """Pick the account a new transaction is booked against.

        An explicit id must name an active, owned account. Otherwise the
        default account, then the first active account by name, and finally a
        freshly created "Cash/Wallet" account in the owner's base currency.
        """
        if payment_method_id is not None:
            pm = self.get(payment_method_id)
            if not pm.is_active:
                raise ValidationFailed(
                    "Payment method is archived. Activate it to add transactions."
                )
            return pm

        default = self.get_default()
        if default:
            return default

        first_active = self.session.scalar(
            select(PaymentMethod)
            .where(
                PaymentMethod.user_id == self.user_id,
                PaymentMethod.is_active.is_(True),
            )
            .order_by(PaymentMethod.name, PaymentMethod.id)
            .limit(1)
        )
        if first_active:
            return first_active

        return self._create_fallback_account()

    def _fallback_name(self) -> str:
        name = DEFAULT_ACCOUNT_NAME
        suffix = 2
        while self._name_taken(name):
            name = f"{DEFAULT_ACCOUNT_NAME} {suffix}"
            suffix += 1
        return name

    def _create_fallback_account(self) -> PaymentMethod:
        currency = ProfileService(self.session, self.user_id).get_base_currency()
        # an archived wallet is only reused when it already holds the base currency
        archived = self.session.scalar(
            select(PaymentMethod)
            .where(
                PaymentMethod.user_id == self.user_id,
                PaymentMethod.is_active.is_(False),
                PaymentMethod.currency == currency,
                func.lower(PaymentMethod.name) == DEFAULT_ACCOUNT_NAME.lower(),
            )
            .limit(1)
        )
        try:
            self._unset_defaults()
            if archived:
                archived.is_active = True
                archived.is_default = True
                pm = archived
            else:
                pm = PaymentMethod(
                    user_id=self.user_id,
                    name=self._fallback_name(),
                    currency=currency,
                    color=DEFAULT_ACCOUNT_COLOR,
                    is_default=True,
                    is_active=True,
                )
                self.session.add(pm)
            self.session.commit()
        except SQLAlchemyError as exc:
            _rollback(self.session, "payment_method_fallback")
            raise Unexpected("Failed to create default payment method") from exc
        logger.info(
            f"payment_method_auto_created: user_id={self.user_id} id={pm.id} "
            f"currency={pm.currency}"
        )
        return pm


class TransactionService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        rates: Optional[ExchangeRateService] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.rates = rates if rates is not None else ExchangeRateService(session)

    def _require_category(
        self, category_id: Optional[int], txn_type: TransactionType
    ) -> Category:
        if category_id is None:
            raise ValidationFailed("Income and expense transactions need a category")
        category = CategoryService(self.session, self.user_id).get(category_id)
        if category.type.value != txn_type.value:
            raise ValidationFailed("Category type mismatch")
        return category

    def _require_tags(self, tag_ids: list[int]) -> list[Tag]:
        return _owned_tags(self.session, self.user_id, tag_ids)

    def _replace_tags(self, txn: Transaction, tags: list[Tag]) -> None:
        self.session.execute(
            delete(transaction_tags).where(transaction_tags.c.transaction_id == txn.id)
        )
        if tags:
            self.session.execute(
                insert(transaction_tags),
                [{"transaction_id": txn.id, "tag_id": tag.id} for tag in tags],
            )
        self.session.flush()
        self.session.expire(txn, ["tags"])

    def create(self, data: TransactionIn) -> Transaction:
        if data.type == TransactionType.transfer:
            raise ValidationFailed("Transfers are created through the transfer service")
        self._require_category(data.category_id, data.type)
        tags = self._require_tags(data.tag_ids)
        pm = PaymentMethodService(self.session, self.user_id).resolve_for_transaction(
            data.payment_method_id
        )
        base_currency = ProfileService(self.session, self.user_id).get_base_currency()
        amount_cents, rate = _base_amount(
            self.rates,
            data.amount_cents,
            pm.currency,
            base_currency,
            data.date,
            data.exchange_rate,
        )

        txn = Transaction(
            user_id=self.user_id,
            date=data.date,
            type=data.type,
            amount_cents=amount_cents,
            native_amount_cents=data.amount_cents,
            exchange_rate_micros=rate_to_micros(rate),
            base_currency=base_currency,
            category_id=data.category_id,
            payment_method_id=pm.id,
            description=data.description,
        )
        try:
            self.session.add(txn)
            self.session.flush()
            if tags:
                self._replace_tags(txn, tags)
            self.session.commit()
        except SQLAlchemyError as exc:
            logger.error(f"transaction_create_failed: user_id={self.user_id} error={exc}")
            _rollback(self.session, "transaction_create")
            raise Unexpected("Failed to create transaction") from exc
        return self.get(txn.id)

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction)
            .options(selectinload(Transaction.tags))
            .where(
                Transaction.id == transaction_id, Transaction.user_id == self.user_id
            )
        )
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        if txn.type == TransactionType.transfer:
            raise ValidationFailed("Transfers cannot be edited; delete and recreate them")
        fields = data.model_dump(exclude_unset=True)
        new_type = fields.get("type") or txn.type
        if new_type == TransactionType.transfer:
            raise ValidationFailed("Transactions cannot be converted into transfers")
        new_category_id = fields.get("category_id", txn.category_id)
        if "type" in fields or "category_id" in fields:
            self._require_category(new_category_id, new_type)
        tags = self._require_tags(data.tag_ids) if data.tag_ids is not None else None
        new_date = fields.get("date") or txn.date
        new_native = fields.get("amount_cents") or txn.native_amount_cents
        new_pm_id = fields.get("payment_method_id", txn.payment_method_id)

        # currency fields are only recomputed when what they derive from changes
        recompute = (
            new_pm_id != txn.payment_method_id
            or new_native != txn.native_amount_cents
            or data.exchange_rate is not None
        )
        if recompute:
            pm = PaymentMethodService(
                self.session, self.user_id
            ).resolve_for_transaction(new_pm_id)
            base_currency = ProfileService(self.session, self.user_id).get_base_currency()
            amount_cents, rate = _base_amount(
                self.rates,
                new_native,
                pm.currency,
                base_currency,
                new_date,
                data.exchange_rate,
            )

        try:
            txn.type = new_type
            txn.date = new_date
            txn.category_id = new_category_id
            if "description" in fields:
                txn.description = fields["description"]
            if recompute:
                txn.payment_method_id = pm.id
                txn.native_amount_cents = new_native
                txn.amount_cents = amount_cents
                txn.exchange_rate_micros = rate_to_micros(rate)
                txn.base_currency = base_currency
            self.session.flush()
            if tags is not None:
                self._replace_tags(txn, tags)
            self.session.commit()
        except SQLAlchemyError as exc:
            logger.error(
                f"transaction_update_failed: id={transaction_id} error={exc}"
            )
            _rollback(self.session, "transaction_update")
            raise Unexpected("Failed to update transaction") from exc
        return self.get(txn.id)

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        # a transfer leg takes its linked leg with it (ON DELETE CASCADE)
        self.session.execute(
            delete(Transaction).where(
                Transaction.id == txn.id, Transaction.user_id == self.user_id
            )
        )
        self.session.commit()

    def list_all(
        self,
        filters: Optional[TransactionFilters] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.tags))
            .where(Transaction.user_id == self.user_id)
        )
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.payment_method_id:
            stmt = stmt.where(Transaction.payment_method_id == filters.payment_method_id)
        if filters.start:
            stmt = stmt.where(Transaction.date >= filters.start)
        if filters.end:
            stmt = stmt.where(Transaction.date <= filters.end)
        for tag_id in dict.fromkeys(filters.tag_ids):
            stmt = stmt.where(
                Transaction.id.in_(
                    select(transaction_tags.c.transaction_id).where(
                        transaction_tags.c.tag_id == tag_id
                    )
                )
            )
        stmt = (
            stmt.order_by(
                Transaction.date.desc(),
                Transaction.created_at.desc(),
                Transaction.id.desc(),
            )
            .limit(limit)
            .offset(offset)
        )
        return list(self.session.scalars(stmt).all())


@dataclass
class TransferPair:
    id: int
    source_transaction: Transaction
    destination_transaction: Transaction
    source_payment_method: Optional[PaymentMethod]
    destination_payment_method: Optional[PaymentMethod]
    source_amount_cents: int
    destination_amount_cents: int
    exchange_rate: Decimal


def _created_first(a: Transaction, b: Transaction) -> bool:
    return (a.created_at, a.id) <= (b.created_at, b.id)


def split_transfer_legs(
    a: Transaction, b: Transaction
) -> tuple[Transaction, Transaction]:
    """Order two linked legs as (withdrawal, deposit).

    The stored role decides; legs written without one fall back to creation
    order, earlier leg first.
    """
    if a.transfer_role == TransferRole.withdrawal or b.transfer_role == TransferRole.deposit:
        return a, b
    if a.transfer_role == TransferRole.deposit or b.transfer_role == TransferRole.withdrawal:
        return b, a
    return (a, b) if _created_first(a, b) else (b, a)


class TransferService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        rates: Optional[ExchangeRateService] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.rates = rates if rates is not None else ExchangeRateService(session)

    def _load_accounts(
        self, source_id: int, destination_id: int
    ) -> tuple[PaymentMethod, PaymentMethod]:
        rows = {
            pm.id: pm
            for pm in self.session.scalars(
                select(PaymentMethod).where(
                    PaymentMethod.user_id == self.user_id,
                    PaymentMethod.id.in_([source_id, destination_id]),
                )
            ).all()
        }
        source = rows.get(source_id)
        destination = rows.get(destination_id)
        if not source or not destination:
            raise NotFound("One or both payment methods not found")
        if not source.is_active or not destination.is_active:
            raise ValidationFailed(
                "One or both payment methods are archived. Activate them first."
            )
        return source, destination

    def _link(self, withdrawal: Transaction, deposit: Transaction) -> None:
        withdrawal.linked_transaction_id = deposit.id
        self.session.flush()

    def create_transfer(self, data: TransferIn) -> TransferPair:
        if data.source_payment_method_id == data.destination_payment_method_id:
            raise ValidationFailed(
                "Source and destination payment methods must be different"
            )
        source, destination = self._load_accounts(
            data.source_payment_method_id, data.destination_payment_method_id
        )

        cross_rate = Decimal("1")
        if source.currency != destination.currency:
            quote = self.rates.get_rate(source.currency, destination.currency, data.date)
            if quote.rate is None:
                raise RateUnavailable(source.currency, destination.currency)
            cross_rate = quote.rate
        destination_native = convert_cents(data.amount_cents, cross_rate)
        if destination_native <= 0:
            raise ValidationFailed("Converted transfer amount must be positive")

        base_currency = ProfileService(self.session, self.user_id).get_base_currency()
        source_base, source_rate = _base_amount(
            self.rates, data.amount_cents, source.currency, base_currency, data.date
        )
        destination_base, destination_rate = _base_amount(
            self.rates, destination_native, destination.currency, base_currency, data.date
        )

        withdrawal = Transaction(
            user_id=self.user_id,
            date=data.date,
            type=TransactionType.transfer,
            transfer_role=TransferRole.withdrawal,
            amount_cents=source_base,
            native_amount_cents=data.amount_cents,
            exchange_rate_micros=rate_to_micros(source_rate),
            base_currency=base_currency,
            category_id=None,
            payment_method_id=source.id,
            description=data.description or f"Transfer to {destination.name}",
        )
        try:
            self.session.add(withdrawal)
            self.session.flush()
            deposit = Transaction(
                user_id=self.user_id,
                date=data.date,
                type=TransactionType.transfer,
                transfer_role=TransferRole.deposit,
                amount_cents=destination_base,
                native_amount_cents=destination_native,
                exchange_rate_micros=rate_to_micros(destination_rate),
                base_currency=base_currency,
                category_id=None,
                payment_method_id=destination.id,
                linked_transaction_id=withdrawal.id,
                description=data.description or f"Transfer from {source.name}",
            )
            self.session.add(deposit)
            self.session.flush()
            self._link(withdrawal, deposit)
            self.session.commit()
        except SQLAlchemyError as exc:
            logger.error(
                f"transfer_create_failed: user_id={self.user_id} "
                f"source={source.id} destination={destination.id} error={exc}"
            )
            _rollback(self.session, "transfer_create")
            raise Unexpected("Failed to create transfer") from exc

        logger.info(
            f"transfer_created: withdrawal_id={withdrawal.id} deposit_id={deposit.id} "
            f"rate={cross_rate}"
        )
        return self._pair(withdrawal, deposit)

    def _pair(self, a: Transaction, b: Transaction) -> TransferPair:
        source_txn, destination_txn = split_transfer_legs(a, b)
        rate = (
            Decimal(destination_txn.native_amount_cents)
            / Decimal(source_txn.native_amount_cents)
        ).quantize(Decimal("0.000001"), rounding=ROUND_HALF_UP)
        return TransferPair(
            id=source_txn.id,
            source_transaction=source_txn,
            destination_transaction=destination_txn,
            source_payment_method=source_txn.payment_method,
            destination_payment_method=destination_txn.payment_method,
            source_amount_cents=source_txn.native_amount_cents,
            destination_amount_cents=destination_txn.native_amount_cents,
            exchange_rate=rate,
        )

    def _transfer_stmt(self):
        return (
            select(Transaction)
            .options(
                selectinload(Transaction.payment_method),
                selectinload(Transaction.tags),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.transfer,
            )
        )

    def get_transfer(self, transaction_id: int) -> Optional[TransferPair]:
        txn = self.session.scalar(
            self._transfer_stmt().where(Transaction.id == transaction_id)
        )
        if not txn:
            return None
        partner_filter = (
            Transaction.id == txn.linked_transaction_id
            if txn.linked_transaction_id is not None
            else Transaction.linked_transaction_id == txn.id
        )
        partner = self.session.scalar(
            self._transfer_stmt().where(partner_filter, Transaction.id != txn.id)
        )
        if not partner:
            return None
        return self._pair(txn, partner)

    def list_transfers(
        self, start: Optional[date] = None, end: Optional[date] = None
    ) -> list[TransferPair]:
        stmt = self._transfer_stmt()
        if start:
            stmt = stmt.where(Transaction.date >= start)
        if end:
            stmt = stmt.where(Transaction.date <= end)
        legs = list(
            self.session.scalars(
                stmt.order_by(
                    Transaction.date.desc(),
                    Transaction.created_at.desc(),
                    Transaction.id.desc(),
                )
            ).all()
        )
        by_id = {leg.id: leg for leg in legs}
        pointed_at = {
            leg.linked_transaction_id: leg
            for leg in legs
            if leg.linked_transaction_id is not None
        }

        pairs: list[TransferPair] = []
        seen: set[int] = set()
        for leg in legs:
            partner = by_id.get(leg.linked_transaction_id) or pointed_at.get(leg.id)
            if not partner or partner.id == leg.id:
                continue
            pair = self._pair(leg, partner)
            if pair.id in seen:
                continue
            seen.add(pair.id)
            pairs.append(pair)
        return pairs

    def delete_transfer(self, transaction_id: int) -> None:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.id == transaction_id, Transaction.user_id == self.user_id
            )
        )
        if not txn:
            raise NotFound("Transfer not found")
        if txn.type != TransactionType.transfer:
            raise ValidationFailed("Transaction is not a transfer")
        self.session.execute(
            delete(Transaction).where(
                Transaction.id == txn.id, Transaction.user_id == self.user_id
            )
        )
        self.session.commit()
        logger.info(f"transfer_deleted: transaction_id={transaction_id}")


@dataclass
class AccountBalance:
    payment_method_id: int
    name: str
    currency: str
    is_active: bool
    native_cents: int
    exchange_rate: Optional[Decimal]
    converted_cents: int
    rate_source: Optional[str]
    is_rate_stale: bool = False
    rate_unavailable: bool = False


@dataclass
class OrphanedSummary:
    count: int = 0
    income_cents: int = 0
    expense_cents: int = 0
    net_cents: int = 0


@dataclass
class TotalBalance:
    total_cents: int
    base_currency: str
    breakdown: list[AccountBalance] = field(default_factory=list)
    orphaned: OrphanedSummary = field(default_factory=OrphanedSummary)


@dataclass
class AccountDetail:
    balance: AccountBalance
    transaction_count: int
    last_transaction_date: Optional[date]


@dataclass
class ReconciliationReport:
    base_currency: str
    owner_balance_cents: int
    accounts_total_cents: int
    difference_cents: int
    orphaned: OrphanedSummary
    archived_accounts: list[AccountBalance]


class BalanceService:
    """Role-aware balance aggregation.

    One signed-contribution rule serves every balance: income adds, expense
    subtracts, a withdrawal leg subtracts and a deposit leg adds. Legs stored
    without a role are treated as the withdrawal when they were created
    before their linked leg.
    """

    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        rates: Optional[ExchangeRateService] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.rates = rates if rates is not None else ExchangeRateService(session)

    def _signed_native(self):
        linked = aliased(Transaction)
        native = Transaction.native_amount_cents
        created_first = or_(
            Transaction.created_at < linked.created_at,
            and_(Transaction.created_at == linked.created_at, Transaction.id < linked.id),
        )
        signed = case(
            (Transaction.type == TransactionType.income, native),
            (Transaction.type == TransactionType.expense, -native),
            (Transaction.transfer_role == TransferRole.withdrawal, -native),
            (Transaction.transfer_role == TransferRole.deposit, native),
            (created_first, -native),
            else_=native,
        )
        join_on = and_(
            Transaction.type == TransactionType.transfer,
            Transaction.transfer_role.is_(None),
            linked.id != Transaction.id,
            linked.type == TransactionType.transfer,
            linked.user_id == Transaction.user_id,
            or_(
                Transaction.linked_transaction_id == linked.id,
                linked.linked_transaction_id == Transaction.id,
            ),
        )
        return linked, join_on, func.coalesce(func.sum(signed), 0)

    def _accounts(self) -> list[PaymentMethod]:
        return list(
            self.session.scalars(
                select(PaymentMethod)
                .where(PaymentMethod.user_id == self.user_id)
                .order_by(PaymentMethod.is_active.desc(), PaymentMethod.name)
            ).all()
        )

    def account_balance(self, payment_method_id: int) -> int:
        pm = PaymentMethodService(self.session, self.user_id).get(payment_method_id)
        linked, join_on, total = self._signed_native()
        stmt = (
            select(total)
            .select_from(Transaction)
            .outerjoin(linked, join_on)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.payment_method_id == pm.id,
            )
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def account_balances(self) -> dict[int, int]:
        linked, join_on, total = self._signed_native()
        rows = self.session.execute(
            select(Transaction.payment_method_id, total)
            .select_from(Transaction)
            .outerjoin(linked, join_on)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.payment_method_id.is_not(None),
            )
            .group_by(Transaction.payment_method_id)
        ).all()
        sums = {pm_id: int(value or 0) for pm_id, value in rows}
        return {pm.id: sums.get(pm.id, 0) for pm in self._accounts()}

    def orphaned_summary(self) -> OrphanedSummary:
        row = self.session.execute(
            select(
                func.count(Transaction.id),
                func.coalesce(
                    func.sum(
                        case(
                            (Transaction.type == TransactionType.income, Transaction.amount_cents),
                            else_=0,
                        )
                    ),
                    0,
                ),
                func.coalesce(
                    func.sum(
                        case(
                            (Transaction.type == TransactionType.expense, Transaction.amount_cents),
                            else_=0,
                        )
                    ),
                    0,
                ),
            ).where(
                Transaction.user_id == self.user_id,
                Transaction.payment_method_id.is_(None),
            )
        ).one()
        count, income, expense = int(row[0] or 0), int(row[1] or 0), int(row[2] or 0)
        return OrphanedSummary(
            count=count,
            income_cents=income,
            expense_cents=expense,
            net_cents=income - expense,
        )

    def _convert(
        self,
        pm: PaymentMethod,
        native_cents: int,
        base_currency: str,
        quotes: dict[str, RateQuote],
    ) -> AccountBalance:
        if pm.currency not in quotes:
            quotes[pm.currency] = self.rates.get_rate(pm.currency, base_currency)
        quote = quotes[pm.currency]
        if quote.rate is None:
            logger.warning(
                f"balance_rate_unavailable: payment_method_id={pm.id} "
                f"pair={pm.currency}->{base_currency}; using native value"
            )
            return AccountBalance(
                payment_method_id=pm.id,
                name=pm.name,
                currency=pm.currency,
                is_active=pm.is_active,
                native_cents=native_cents,
                exchange_rate=None,
                converted_cents=native_cents,
                rate_source=None,
                rate_unavailable=True,
            )
        return AccountBalance(
            payment_method_id=pm.id,
            name=pm.name,
            currency=pm.currency,
            is_active=pm.is_active,
            native_cents=native_cents,
            exchange_rate=quote.rate,
            converted_cents=convert_cents(native_cents, quote.rate),
            rate_source=quote.source.value if quote.source else None,
            is_rate_stale=quote.is_stale,
        )

    def total_balance(self) -> TotalBalance:
        """Sum every owned account, active or archived, at today's rates.

        Transactions with no account are left out of the total and reported
        in ``orphaned``.
        """
        base_currency = ProfileService(self.session, self.user_id).get_base_currency()
        balances = self.account_balances()
        quotes: dict[str, RateQuote] = {}
        breakdown = [
            self._convert(pm, balances.get(pm.id, 0), base_currency, quotes)
            for pm in self._accounts()
        ]
        orphaned = self.orphaned_summary()
        if orphaned.count:
            logger.warning(
                f"orphaned_transactions: user_id={self.user_id} count={orphaned.count} "
                f"net_cents={orphaned.net_cents}"
            )
        return TotalBalance(
            total_cents=sum(item.converted_cents for item in breakdown),
            base_currency=base_currency,
            breakdown=breakdown,
            orphaned=orphaned,
        )

    def owner_balance(self) -> int:
        signed = case(
            (Transaction.type == TransactionType.income, Transaction.amount_cents),
            (Transaction.type == TransactionType.expense, -Transaction.amount_cents),
            else_=0,
        )
        return int(
            self.session.execute(
                select(func.coalesce(func.sum(signed), 0)).where(
                    Transaction.user_id == self.user_id
                )
            ).scalar_one()
            or 0
        )

    def balances_by_currency(self) -> list[dict[str, object]]:
        balances = self.account_balances()
        totals: dict[str, int] = defaultdict(int)
        for pm in self._accounts():
            totals[pm.currency] += balances.get(pm.id, 0)
        return [
            {"currency": currency, "balance_cents": totals[currency]}
            for currency in sorted(totals)
        ]

    def account_details(self) -> list[AccountDetail]:
        stats = {
            pm_id: (int(count or 0), last_date)
            for pm_id, count, last_date in self.session.execute(
                select(
                    Transaction.payment_method_id,
                    func.count(Transaction.id),
                    func.max(Transaction.date),
                )
                .where(
                    Transaction.user_id == self.user_id,
                    Transaction.payment_method_id.is_not(None),
                )
                .group_by(Transaction.payment_method_id)
            ).all()
        }
        details = []
        for item in self.total_balance().breakdown:
            count, last_date = stats.get(item.payment_method_id, (0, None))
            details.append(
                AccountDetail(
                    balance=item,
                    transaction_count=count,
                    last_transaction_date=last_date,
                )
            )
        return details

    def reconciliation_report(self) -> ReconciliationReport:
        total = self.total_balance()
        owner = self.owner_balance()
        return ReconciliationReport(
            base_currency=total.base_currency,
            owner_balance_cents=owner,
            accounts_total_cents=total.total_cents,
            difference_cents=owner - total.total_cents,
            orphaned=total.orphaned,
            archived_accounts=[item for item in total.breakdown if not item.is_active],
        )


@dataclass
class BudgetProgress:
    budget: Budget
    spent_cents: int
    remaining_cents: int
    percentage: float
    is_overspent: bool


@dataclass
class PaymentMethodSpend:
    payment_method_id: Optional[int]
    name: str
    currency: Optional[str]
    color: Optional[str]
    amount_cents: int
    percentage: float
    transaction_count: int


@dataclass
class BudgetBreakdown:
    budget: Budget
    total_spent_cents: int
    items: list[PaymentMethodSpend]


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    @staticmethod
    def normalize_period(value) -> date:
        return normalize_month_period(value)

    def get(self, budget_id: int) -> Budget:
        budget = self.session.scalar(
            select(Budget).where(Budget.id == budget_id, Budget.user_id == self.user_id)
        )
        if not budget:
            raise NotFound("Budget not found")
        return budget

    def list_all(
        self,
        period: Optional[str] = None,
        category_id: Optional[int] = None,
        tag_id: Optional[int] = None,
    ) -> list[Budget]:
        stmt = select(Budget).where(Budget.user_id == self.user_id)
        if period:
            stmt = stmt.where(Budget.period == self.normalize_period(period))
        if category_id:
            stmt = stmt.where(Budget.category_id == category_id)
        if tag_id:
            stmt = stmt.where(Budget.tag_id == tag_id)
        return list(
            self.session.scalars(stmt.order_by(Budget.period.desc(), Budget.id)).all()
        )

    def _existing(
        self,
        period: date,
        category_id: Optional[int],
        tag_id: Optional[int],
        exclude_id: Optional[int] = None,
    ) -> Optional[Budget]:
        stmt = select(Budget).where(
            Budget.user_id == self.user_id, Budget.period == period
        )
        if category_id is not None:
            stmt = stmt.where(Budget.category_id == category_id)
        else:
            stmt = stmt.where(Budget.tag_id == tag_id)
        if exclude_id is not None:
            stmt = stmt.where(Budget.id != exclude_id)
        return self.session.scalar(stmt)

    def create(self, data: BudgetIn) -> Budget:
        if (data.category_id is None) == (data.tag_id is None):
            raise ValidationFailed("A budget targets exactly one category or one tag")
        period = self.normalize_period(data.period)
        if data.category_id is not None:
            category = CategoryService(self.session, self.user_id).get(data.category_id)
            if category.type != CategoryType.expense:
                raise ValidationFailed("Budgets can only target expense categories")
        else:
            TagService(self.session, self.user_id).get(data.tag_id)

        if self._existing(period, data.category_id, data.tag_id):
            raise Conflict("A budget already exists for this target and period")

        budget = Budget(
            user_id=self.user_id,
            amount_cents=data.amount_cents,
            period=period,
            category_id=data.category_id,
            tag_id=data.tag_id,
        )
        self.session.add(budget)
        try:
            self.session.commit()
        except IntegrityError as exc:
            _rollback(self.session, "budget_create")
            raise Conflict("A budget already exists for this target and period") from exc
        return budget

    def update(self, budget_id: int, data: BudgetUpdate) -> Budget:
        budget = self.get(budget_id)
        if data.period is not None:
            period = self.normalize_period(data.period)
            if self._existing(
                period, budget.category_id, budget.tag_id, exclude_id=budget.id
            ):
                raise Conflict("A budget already exists for this target and period")
            budget.period = period
        if data.amount_cents is not None:
            budget.amount_cents = data.amount_cents
        try:
            self.session.commit()
        except IntegrityError as exc:
            _rollback(self.session, "budget_update")
            raise Conflict("A budget already exists for this target and period") from exc
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.execute(
            delete(Budget).where(Budget.id == budget.id, Budget.user_id == self.user_id)
        )
        self.session.commit()

    def _spend_filter(self, stmt, budget: Budget, start: date, end: date):
        stmt = stmt.where(
            Transaction.user_id == self.user_id,
            Transaction.type == TransactionType.expense,
            Transaction.date >= start,
            Transaction.date <= end,
        )
        if budget.category_id is not None:
            return stmt.where(Transaction.category_id == budget.category_id)
        return stmt.join(
            transaction_tags, transaction_tags.c.transaction_id == Transaction.id
        ).where(transaction_tags.c.tag_id == budget.tag_id)

    def spent_cents(self, budget: Budget, period=None) -> int:
        start, end = month_bounds(
            self.normalize_period(period) if period is not None else budget.period
        )
        stmt = self._spend_filter(
            select(func.coalesce(func.sum(func.abs(Transaction.amount_cents)), 0)).select_from(
                Transaction
            ),
            budget,
            start,
            end,
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def _progress(self, budget: Budget) -> BudgetProgress:
        spent = self.spent_cents(budget)
        percentage = round(spent / budget.amount_cents * 100, 2) if budget.amount_cents else 0.0
        return BudgetProgress(
            budget=budget,
            spent_cents=spent,
            remaining_cents=budget.amount_cents - spent,
            percentage=percentage,
            is_overspent=spent > budget.amount_cents,
        )

    def progress(self, budget_id: int) -> BudgetProgress:
        return self._progress(self.get(budget_id))

    def progress_for_period(self, period) -> list[BudgetProgress]:
        return [self._progress(budget) for budget in self.list_all(period=period)]

    def breakdown_by_payment_method(self, budget_id: int) -> BudgetBreakdown:
        budget = self.get(budget_id)
        start, end = month_bounds(budget.period)
        stmt = self._spend_filter(
            select(
                Transaction.payment_method_id,
                func.coalesce(func.sum(func.abs(Transaction.amount_cents)), 0),
                func.count(Transaction.id),
            ).select_from(Transaction),
            budget,
            start,
            end,
        ).group_by(Transaction.payment_method_id)
        rows = self.session.execute(stmt).all()

        pm_ids = [pm_id for pm_id, _, _ in rows if pm_id is not None]
        methods = {
            pm.id: pm
            for pm in self.session.scalars(
                select(PaymentMethod).where(PaymentMethod.id.in_(pm_ids))
            ).all()
        } if pm_ids else {}

        items: list[PaymentMethodSpend] = []
        for pm_id, amount, count in rows:
            amount = int(amount or 0)
            percentage = (
                round(amount / budget.amount_cents * 100, 2) if budget.amount_cents else 0.0
            )
            pm = methods.get(pm_id) if pm_id is not None else None
            if pm is None:
                items.append(
                    PaymentMethodSpend(
                        payment_method_id=None,
                        name=LEGACY_BUCKET_NAME,
                        currency=None,
                        color=LEGACY_BUCKET_COLOR,
                        amount_cents=amount,
                        percentage=percentage,
                        transaction_count=int(count or 0),
                    )
                )
                continue
            items.append(
                PaymentMethodSpend(
                    payment_method_id=pm.id,
                    name=pm.name,
                    currency=pm.currency,
                    color=pm.color,
                    amount_cents=amount,
                    percentage=percentage,
                    transaction_count=int(count or 0),
                )
            )
        items.sort(key=lambda item: (-item.amount_cents, item.name))
        return BudgetBreakdown(
            budget=budget,
            total_spent_cents=sum(item.amount_cents for item in items),
            items=items,
        )


class TemplateService:
    """Saved transaction shapes that can be replayed into real transactions.

    A template with no amount is variable-price: the amount is supplied when
    it is used. The transaction type follows the template's category.
    """

    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        rates: Optional[ExchangeRateService] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.rates = rates

    def list_all(
        self,
        favorites_only: bool = False,
        category_id: Optional[int] = None,
        payment_method_id: Optional[int] = None,
    ) -> list[TransactionTemplate]:
        stmt = (
            select(TransactionTemplate)
            .options(selectinload(TransactionTemplate.tags))
            .where(TransactionTemplate.user_id == self.user_id)
        )
        if favorites_only:
            stmt = stmt.where(TransactionTemplate.is_favorite.is_(True))
        if category_id:
            stmt = stmt.where(TransactionTemplate.category_id == category_id)
        if payment_method_id:
            stmt = stmt.where(TransactionTemplate.payment_method_id == payment_method_id)
        stmt = stmt.order_by(
            TransactionTemplate.is_favorite.desc(), TransactionTemplate.name
        )
        return list(self.session.scalars(stmt).all())

    def list_favorites(self) -> list[TransactionTemplate]:
        return self.list_all(favorites_only=True)

    def get(self, template_id: int) -> TransactionTemplate:
        template = self.session.scalar(
            select(TransactionTemplate)
            .options(selectinload(TransactionTemplate.tags))
            .where(
                TransactionTemplate.id == template_id,
                TransactionTemplate.user_id == self.user_id,
            )
        )
        if not template:
            raise NotFound("Template not found")
        return template

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(TransactionTemplate.id).where(
            TransactionTemplate.user_id == self.user_id,
            func.lower(TransactionTemplate.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(TransactionTemplate.id != exclude_id)
        return self.session.scalar(stmt.limit(1)) is not None

    def _clean_name(self, name: Optional[str], exclude_id: Optional[int] = None) -> str:
        clean = (name or "").strip()
        if not clean:
            raise ValidationFailed("Template name is required")
        if self._name_taken(clean, exclude_id):
            raise Conflict("A template with this name already exists")
        return clean

    def _check_refs(
        self, category_id: Optional[int], payment_method_id: Optional[int]
    ) -> None:
        if category_id is not None:
            CategoryService(self.session, self.user_id).get(category_id)
        if payment_method_id is not None:
            PaymentMethodService(self.session, self.user_id).get(payment_method_id)

    def _replace_tags(self, template: TransactionTemplate, tags: list[Tag]) -> None:
        self.session.execute(
            delete(template_tags).where(template_tags.c.template_id == template.id)
        )
        if tags:
            self.session.execute(
                insert(template_tags),
                [{"template_id": template.id, "tag_id": tag.id} for tag in tags],
            )
        self.session.flush()
        self.session.expire(template, ["tags"])

    def create(self, data: TemplateIn) -> TransactionTemplate:
        name = self._clean_name(data.name)
        self._check_refs(data.category_id, data.payment_method_id)
        tags = _owned_tags(self.session, self.user_id, data.tag_ids)
        description = (data.description or "").strip() or None

        template = TransactionTemplate(
            user_id=self.user_id,
            name=name,
            amount_cents=data.amount_cents,
            category_id=data.category_id,
            payment_method_id=data.payment_method_id,
            description=description,
            is_favorite=data.is_favorite,
        )
        try:
            self.session.add(template)
            self.session.flush()
            if tags:
                self._replace_tags(template, tags)
            self.session.commit()
        except IntegrityError as exc:
            _rollback(self.session, "template_create")
            raise Conflict("A template with this name already exists") from exc
        except SQLAlchemyError as exc:
            _rollback(self.session, "template_create")
            raise Unexpected("Failed to create template") from exc
        return self.get(template.id)

    def update(self, template_id: int, data: TemplateUpdate) -> TransactionTemplate:
        template = self.get(template_id)
        fields = data.model_dump(exclude_unset=True)
        name = (
            self._clean_name(fields["name"], exclude_id=template.id)
            if "name" in fields
            else template.name
        )
        self._check_refs(fields.get("category_id"), fields.get("payment_method_id"))
        tags = (
            _owned_tags(self.session, self.user_id, data.tag_ids)
            if data.tag_ids is not None
            else None
        )

        try:
            template.name = name
            # explicit nulls clear: a null amount turns the template variable-price
            for key in ("amount_cents", "category_id", "payment_method_id"):
                if key in fields:
                    setattr(template, key, fields[key])
            if "description" in fields:
                template.description = (fields["description"] or "").strip() or None
            if fields.get("is_favorite") is not None:
                template.is_favorite = fields["is_favorite"]
            self.session.flush()
            if tags is not None:
                self._replace_tags(template, tags)
            self.session.commit()
        except IntegrityError as exc:
            _rollback(self.session, "template_update")
            raise Conflict("A template with this name already exists") from exc
        except SQLAlchemyError as exc:
            _rollback(self.session, "template_update")
            raise Unexpected("Failed to update template") from exc
        return self.get(template.id)

    def delete(self, template_id: int) -> None:
        template = self.get(template_id)
        self.session.execute(
            delete(TransactionTemplate).where(
                TransactionTemplate.id == template.id,
                TransactionTemplate.user_id == self.user_id,
            )
        )
        self.session.commit()

    def toggle_favorite(self, template_id: int) -> TransactionTemplate:
        template = self.get(template_id)
        template.is_favorite = not template.is_favorite
        self.session.commit()
        return template

    def create_transaction(
        self, template_id: int, data: Optional[TemplateUseIn] = None
    ) -> Transaction:
        template = self.get(template_id)
        data = data or TemplateUseIn()
        if template.category_id is None:
            raise ValidationFailed(
                "Template needs a category before it can create transactions"
            )
        amount = template.amount_cents
        if amount is None:
            amount = data.amount_cents
        if amount is None:
            raise ValidationFailed("Amount is required for variable-price templates")
        category = CategoryService(self.session, self.user_id).get(template.category_id)

        txn = TransactionService(self.session, self.user_id, self.rates).create(
            TransactionIn(
                type=TransactionType(category.type.value),
                amount_cents=amount,
                date=data.date or date.today(),
                category_id=category.id,
                payment_method_id=template.payment_method_id,
                description=(
                    data.description
                    if data.description is not None
                    else template.description
                ),
                tag_ids=[tag.id for tag in template.tags],
            )
        )
        logger.info(
            f"template_used: user_id={self.user_id} template_id={template.id} "
            f"transaction_id={txn.id}"
        )
        return txn
