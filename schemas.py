import datetime as dt
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from fx_rates import RateSource
from models import CardType, CategoryType, TransactionType, TransferRole


def _upper_currency(value: str) -> str:
    clean = value.strip().upper()
    if len(clean) != 3 or not clean.isalpha():
        raise ValueError("currency must be a 3-letter ISO 4217 code")
    return clean


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType
    color: Optional[str] = Field(default=None, max_length=7)


class TagIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    color: Optional[str] = Field(default=None, max_length=9)


class TagUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    color: Optional[str] = Field(default=None, max_length=9)


class PaymentMethodIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    currency: str = Field(..., min_length=3, max_length=3)
    card_type: Optional[CardType] = None
    color: Optional[str] = Field(default=None, max_length=7)
    is_default: bool = False

    @field_validator("currency")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        return _upper_currency(value)


class PaymentMethodUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    card_type: Optional[CardType] = None
    color: Optional[str] = Field(default=None, max_length=7)
    is_default: Optional[bool] = None


class TransactionIn(BaseModel):
    type: TransactionType
    # native amount, in the payment method's currency
    amount_cents: int = Field(..., gt=0)
    date: date
    category_id: int
    payment_method_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=500)
    tag_ids: list[int] = Field(default_factory=list)
    exchange_rate: Optional[Decimal] = Field(default=None, gt=0)


class TransactionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Optional[TransactionType] = None
    amount_cents: Optional[int] = Field(default=None, gt=0)
    date: Optional[dt.date] = None
    category_id: Optional[int] = None
    payment_method_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=500)
    tag_ids: Optional[list[int]] = None
    exchange_rate: Optional[Decimal] = Field(default=None, gt=0)


class TransactionFilters(BaseModel):
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    payment_method_id: Optional[int] = None
    start: Optional[date] = None
    end: Optional[date] = None
    tag_ids: list[int] = Field(default_factory=list)


class TransferIn(BaseModel):
    source_payment_method_id: int
    destination_payment_method_id: int
    amount_cents: int = Field(..., gt=0)
    date: date
    description: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def _distinct_accounts(self) -> "TransferIn":
        if self.source_payment_method_id == self.destination_payment_method_id:
            raise ValueError("Source and destination payment methods must be different")
        return self


class BudgetIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    period: str
    category_id: Optional[int] = None
    tag_id: Optional[int] = None


class BudgetUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: Optional[int] = Field(default=None, gt=0)
    period: Optional[str] = None


class TemplateIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    # None makes a variable-price template
    amount_cents: Optional[int] = Field(default=None, gt=0)
    category_id: Optional[int] = None
    payment_method_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=500)
    is_favorite: bool = False
    tag_ids: list[int] = Field(default_factory=list)


class TemplateUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    amount_cents: Optional[int] = Field(default=None, gt=0)
    category_id: Optional[int] = None
    payment_method_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=500)
    is_favorite: Optional[bool] = None
    tag_ids: Optional[list[int]] = None


class TemplateUseIn(BaseModel):
    # only read for variable-price templates
    amount_cents: Optional[int] = Field(default=None, gt=0)
    date: Optional[dt.date] = None
    description: Optional[str] = Field(default=None, max_length=500)


class ManualRateIn(BaseModel):
    from_currency: str
    to_currency: str
    rate: Decimal = Field(..., gt=0)
    date: Optional[dt.date] = None

    @field_validator("from_currency", "to_currency")
    @classmethod
    def _normalize_currencies(cls, value: str) -> str:
        return _upper_currency(value)


class BaseCurrencyIn(BaseModel):
    currency: str

    @field_validator("currency")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        return _upper_currency(value)


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: CategoryType
    color: Optional[str] = None


class TagOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    color: Optional[str] = None


class PaymentMethodOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    currency: str
    card_type: Optional[CardType] = None
    color: Optional[str] = None
    is_default: bool
    is_active: bool


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: TransactionType
    date: date
    amount_cents: int
    native_amount_cents: int
    exchange_rate_micros: int
    base_currency: str
    category_id: Optional[int] = None
    payment_method_id: Optional[int] = None
    linked_transaction_id: Optional[int] = None
    transfer_role: Optional[TransferRole] = None
    description: Optional[str] = None
    tags: list[TagOut] = Field(default_factory=list)
    created_at: datetime


class TransferPairOut(BaseModel):
    id: int
    source_transaction: TransactionOut
    destination_transaction: TransactionOut
    source_payment_method: Optional[PaymentMethodOut] = None
    destination_payment_method: Optional[PaymentMethodOut] = None
    source_amount_cents: int
    destination_amount_cents: int
    exchange_rate: Decimal


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount_cents: int
    period: date
    category_id: Optional[int] = None
    tag_id: Optional[int] = None


class RateQuoteOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    rate: Optional[Decimal] = None
    source: Optional[RateSource] = None
    fetched_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    rate_date: Optional[date] = None
    is_stale: bool = False


class TemplateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    amount_cents: Optional[int] = None
    category_id: Optional[int] = None
    payment_method_id: Optional[int] = None
    description: Optional[str] = None
    is_favorite: bool
    tags: list[TagOut] = Field(default_factory=list)
