from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class CategoryType(str, Enum):
    income = "income"
    expense = "expense"


class TransferRole(str, Enum):
    withdrawal = "withdrawal"
    deposit = "deposit"


class CardType(str, Enum):
    debit = "debit"
    credit = "credit"
    prepaid = "prepaid"
    other = "other"


class RateSourceTag(str, Enum):
    api = "api"
    manual = "manual"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class Profile(Base, TimestampMixin):
    __tablename__ = "profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[CategoryType] = mapped_column(SAEnum(CategoryType), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(7))

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "type", "name", name="uq_category_user_type_name"),
    )


class Tag(Base, TimestampMixin):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_tag_user_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(9))

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction",
        secondary="transaction_tags",
        back_populates="tags",
        passive_deletes=True,
    )


transaction_tags = Table(
    "transaction_tags",
    Base.metadata,
    Column(
        "transaction_id",
        Integer,
        ForeignKey("transactions.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "tag_id",
        Integer,
        ForeignKey("tags.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class PaymentMethod(Base, TimestampMixin):
    __tablename__ = "payment_methods"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    card_type: Mapped[Optional[CardType]] = mapped_column(SAEnum(CardType))
    color: Mapped[Optional[str]] = mapped_column(String(7))
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="payment_method", passive_deletes=True
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_payment_method_user_name"),
        Index(
            "uq_payment_method_user_default",
            "user_id",
            unique=True,
            sqlite_where=text("is_default = 1"),
            postgresql_where=text("is_default"),
        ),
        Index("ix_payment_methods_user_active", "user_id", "is_active"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    # base-currency amount; sign is never stored
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    native_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    exchange_rate_micros: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1_000_000
    )
    base_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    payment_method_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("payment_methods.id", ondelete="SET NULL")
    )
    linked_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE")
    )
    transfer_role: Mapped[Optional[TransferRole]] = mapped_column(
        SAEnum(TransferRole)
    )
    description: Mapped[Optional[str]] = mapped_column(Text)

    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="transactions"
    )
    payment_method: Mapped[Optional["PaymentMethod"]] = relationship(
        "PaymentMethod", back_populates="transactions"
    )
    tags: Mapped[list["Tag"]] = relationship(
        "Tag",
        secondary="transaction_tags",
        back_populates="transactions",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_type_date", "user_id", "type", "date"),
        Index("ix_transactions_payment_method", "payment_method_id"),
        Index("ix_transactions_linked", "linked_transaction_id"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "native_amount_cents > 0", name="ck_transactions_native_amount_positive"
        ),
        CheckConstraint(
            "(type = 'transfer' AND category_id IS NULL)"
            " OR (type != 'transfer' AND category_id IS NOT NULL)",
            name="ck_transactions_category_by_type",
        ),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    period: Mapped[date] = mapped_column(Date, nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id", ondelete="CASCADE")
    )
    tag_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("tags.id", ondelete="CASCADE")
    )

    category: Mapped[Optional["Category"]] = relationship("Category")
    tag: Mapped[Optional["Tag"]] = relationship("Tag")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_budget_amount_positive"),
        CheckConstraint(
            "(category_id IS NULL) != (tag_id IS NULL)",
            name="ck_budget_category_xor_tag",
        ),
        UniqueConstraint(
            "user_id", "period", "category_id", name="uq_budget_user_period_category"
        ),
        UniqueConstraint("user_id", "period", "tag_id", name="uq_budget_user_period_tag"),
        Index("ix_budget_user_period", "user_id", "period"),
    )


class ExchangeRate(Base, TimestampMixin):
    __tablename__ = "exchange_rates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    from_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    to_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    rate_micros: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[RateSourceTag] = mapped_column(
        SAEnum(RateSourceTag), nullable=False, default=RateSourceTag.api
    )
    api_provider: Mapped[Optional[str]] = mapped_column(String(40))
    fetched_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    # NULL for permanent (manual) rates
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    is_stale: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    fetch_error_count: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "from_currency", "to_currency", "date", name="uq_exchange_rate_pair_date"
        ),
        Index("ix_exchange_rates_lookup", "from_currency", "to_currency", "date"),
        CheckConstraint("rate_micros > 0", name="ck_exchange_rate_positive"),
    )


template_tags = Table(
    "template_tags",
    Base.metadata,
    Column(
        "template_id",
        Integer,
        ForeignKey("transaction_templates.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "tag_id",
        Integer,
        ForeignKey("tags.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class TransactionTemplate(Base, TimestampMixin):
    __tablename__ = "transaction_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    # NULL for variable-price templates
    amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL")
    )
    payment_method_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("payment_methods.id", ondelete="SET NULL")
    )
    description: Mapped[Optional[str]] = mapped_column(Text)
    is_favorite: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    category: Mapped[Optional["Category"]] = relationship("Category")
    payment_method: Mapped[Optional["PaymentMethod"]] = relationship("PaymentMethod")
    tags: Mapped[list["Tag"]] = relationship(
        "Tag", secondary="template_tags", passive_deletes=True
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_template_user_name"),
        Index("ix_transaction_templates_user_favorite", "user_id", "is_favorite"),
        CheckConstraint(
            "amount_cents IS NULL OR amount_cents > 0",
            name="ck_template_amount_positive",
        ),
    )
