import logging
from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from errors import LedgerError, NotFound, Unauthorized
from fx_rates import ExchangeRateService
from models import CategoryType, TransactionType
from scheduler import SchedulerManager
from schemas import (
    BaseCurrencyIn,
    BudgetIn,
    BudgetOut,
    BudgetUpdate,
    CategoryIn,
    CategoryOut,
    ManualRateIn,
    PaymentMethodIn,
    PaymentMethodOut,
    PaymentMethodUpdate,
    RateQuoteOut,
    TagIn,
    TagOut,
    TagUpdate,
    TemplateIn,
    TemplateOut,
    TemplateUpdate,
    TemplateUseIn,
    TransactionFilters,
    TransactionIn,
    TransactionOut,
    TransactionUpdate,
    TransferIn,
    TransferPairOut,
)
from services import (
    BalanceService,
    BudgetBreakdown,
    BudgetProgress,
    BudgetService,
    CategoryService,
    PaymentMethodService,
    ProfileService,
    TagService,
    TemplateService,
    TransactionService,
    TransferPair,
    TransferService,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    finally:
        db.close()


def get_rate_service(db: Session = Depends(get_db)) -> ExchangeRateService:
    return ExchangeRateService(db)


def current_user_id(x_user_id: Optional[str] = Header(default=None)) -> int:
    if not x_user_id:
        raise Unauthorized("Authentication required")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise Unauthorized("Invalid user id") from exc
    if user_id <= 0:
        raise Unauthorized("Invalid user id")
    return user_id


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(LedgerError)
def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"request_failed: path={request.url.path} kind={exc.kind} error={exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.to_dict()},
    )


@app.exception_handler(RequestValidationError)
def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": {"kind": "validation", "message": str(message)},
        },
    )


def ok(data) -> dict:
    return {"success": True, "data": jsonable_encoder(data, custom_encoder={Decimal: str})}


def _pair_out(pair: TransferPair) -> TransferPairOut:
    return TransferPairOut.model_validate(pair, from_attributes=True)


def _progress_out(progress: BudgetProgress) -> dict:
    return {
        "budget": BudgetOut.model_validate(progress.budget),
        "spent_cents": progress.spent_cents,
        "remaining_cents": progress.remaining_cents,
        "percentage": progress.percentage,
        "is_overspent": progress.is_overspent,
    }


def _breakdown_out(breakdown: BudgetBreakdown) -> dict:
    return {
        "budget": BudgetOut.model_validate(breakdown.budget),
        "total_spent_cents": breakdown.total_spent_cents,
        "items": breakdown.items,
    }


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/api/profile/currency")
def api_get_base_currency(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return ok({"currency": ProfileService(db, user_id).get_base_currency()})


@app.put("/api/profile/currency")
def api_set_base_currency(
    data: BaseCurrencyIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    profile = ProfileService(db, user_id).set_base_currency(data.currency)
    return ok({"currency": profile.currency})


@app.get("/api/exchange-rates")
def api_get_rate(
    from_currency: str = Query(..., alias="from"),
    to_currency: str = Query(..., alias="to"),
    on_date: Optional[date] = Query(default=None, alias="date"),
    rates: ExchangeRateService = Depends(get_rate_service),
    user_id: int = Depends(current_user_id),
):
    quote = rates.get_rate(from_currency, to_currency, on_date)
    return ok(RateQuoteOut.model_validate(quote))


@app.post("/api/exchange-rates", status_code=201)
def api_set_manual_rate(
    data: ManualRateIn,
    rates: ExchangeRateService = Depends(get_rate_service),
    user_id: int = Depends(current_user_id),
):
    row = rates.set_manual_rate(data.from_currency, data.to_currency, data.rate, data.date)
    return ok(
        {
            "from_currency": row.from_currency,
            "to_currency": row.to_currency,
            "date": row.date,
            "rate_micros": row.rate_micros,
            "source": row.source,
        }
    )


@app.post("/api/exchange-rates/refresh")
def api_refresh_rates(
    rates: ExchangeRateService = Depends(get_rate_service),
    user_id: int = Depends(current_user_id),
):
    return ok({"stored": rates.refresh_all()})


@app.get("/api/categories")
def api_categories(
    type: Optional[CategoryType] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    categories = CategoryService(db, user_id).list_all(type)
    return ok([CategoryOut.model_validate(c) for c in categories])


@app.post("/api/categories", status_code=201)
def api_create_category(
    data: CategoryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(CategoryOut.model_validate(CategoryService(db, user_id).create(data)))


@app.get("/api/tags")
def api_tags(db: Session = Depends(get_db), user_id: int = Depends(current_user_id)):
    return ok([TagOut.model_validate(t) for t in TagService(db, user_id).list_all()])


@app.post("/api/tags")
def api_create_tag(
    data: TagIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(TagOut.model_validate(TagService(db, user_id).create(data)))


@app.patch("/api/tags/{tag_id}")
def api_update_tag(
    tag_id: int,
    data: TagUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(TagOut.model_validate(TagService(db, user_id).update(tag_id, data)))


@app.delete("/api/tags/{tag_id}")
def api_delete_tag(
    tag_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    TagService(db, user_id).delete(tag_id)
    return ok({"id": tag_id})


@app.get("/api/payment-methods")
def api_payment_methods(
    is_active: Optional[bool] = None,
    currency: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    methods = PaymentMethodService(db, user_id).list_all(is_active, currency)
    return ok([PaymentMethodOut.model_validate(pm) for pm in methods])


@app.post("/api/payment-methods", status_code=201)
def api_create_payment_method(
    data: PaymentMethodIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    pm = PaymentMethodService(db, user_id).create(data)
    return ok(PaymentMethodOut.model_validate(pm))


@app.get("/api/payment-methods/{payment_method_id}")
def api_payment_method(
    payment_method_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    pm = PaymentMethodService(db, user_id).get(payment_method_id)
    return ok(PaymentMethodOut.model_validate(pm))


@app.patch("/api/payment-methods/{payment_method_id}")
def api_update_payment_method(
    payment_method_id: int,
    data: PaymentMethodUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    pm = PaymentMethodService(db, user_id).update(payment_method_id, data)
    return ok(PaymentMethodOut.model_validate(pm))


@app.post("/api/payment-methods/{payment_method_id}/archive")
def api_archive_payment_method(
    payment_method_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    pm = PaymentMethodService(db, user_id).archive(payment_method_id)
    return ok(PaymentMethodOut.model_validate(pm))


@app.post("/api/payment-methods/{payment_method_id}/activate")
def api_activate_payment_method(
    payment_method_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    pm = PaymentMethodService(db, user_id).activate(payment_method_id)
    return ok(PaymentMethodOut.model_validate(pm))


@app.post("/api/payment-methods/{payment_method_id}/default")
def api_default_payment_method(
    payment_method_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    pm = PaymentMethodService(db, user_id).set_default(payment_method_id)
    return ok(PaymentMethodOut.model_validate(pm))


@app.delete("/api/payment-methods/{payment_method_id}")
def api_delete_payment_method(
    payment_method_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    PaymentMethodService(db, user_id).delete(payment_method_id)
    return ok({"id": payment_method_id})


@app.get("/api/transactions")
def api_transactions(
    type: Optional[TransactionType] = None,
    category_id: Optional[int] = None,
    payment_method_id: Optional[int] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    tag_id: list[int] = Query(default=[]),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    db: Session = Depends(get_db),
    rates: ExchangeRateService = Depends(get_rate_service),
    user_id: int = Depends(current_user_id),
):
    filters = TransactionFilters(
        type=type,
        category_id=category_id,
        payment_method_id=payment_method_id,
        start=start,
        end=end,
        tag_ids=tag_id,
    )
    offset = (page - 1) * limit
    items = TransactionService(db, user_id, rates).list_all(
        filters, limit=limit + 1, offset=offset
    )
    has_more = len(items) > limit
    return ok(
        {
            "items": [TransactionOut.model_validate(t) for t in items[:limit]],
            "page": page,
            "limit": limit,
            "has_more": has_more,
        }
    )


@app.post("/api/transactions", status_code=201)
def api_create_transaction(
    data: TransactionIn,
    db: Session = Depends(get_db),
    rates: ExchangeRateService = Depends(get_rate_service),
    user_id: int = Depends(current_user_id),
):
    txn = TransactionService(db, user_id, rates).create(data)
    return ok(TransactionOut.model_validate(txn))


@app.get("/api/transactions/{transaction_id}")
def api_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    rates: ExchangeRateService = Depends(get_rate_service),
    user_id: int = Depends(current_user_id),
):
    txn = TransactionService(db, user_id, rates).get(transaction_id)
    return ok(TransactionOut.model_validate(txn))


@app.patch("/api/transactions/{transaction_id}")
def api_update_transaction(
    transaction_id: int,
    data: TransactionUpdate,
    db: Session = Depends(get_db),
    rates: ExchangeRateService = Depends(get_rate_service),
    user_id: int = Depends(current_user_id),
):
    txn = TransactionService(db, user_id, rates).update(transaction_id, data)
    return ok(TransactionOut.model_validate(txn))


@app.delete("/api/transactions/{transaction_id}")
def api_delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    rates: ExchangeRateService = Depends(get_rate_service),
    user_id: int = Depends(current_user_id),
):
    TransactionService(db, user_id, rates).delete(transaction_id)
    return ok({"id": transaction_id})


@app.post("/api/transfers", status_code=201)
def api_create_transfer(
    data: TransferIn,
    db: Session = Depends(get_db),
    rates: ExchangeRateService = Depends(get_rate_service),
    user_id: int = Depends(current_user_id),
):
    pair = TransferService(db, user_id, rates).create_transfer(data)
    return ok(_pair_out(pair))


@app.get("/api/transfers")
def api_transfers(
    start: Optional[date] = None,
    end: Optional[date] = None,
    db: Session = Depends(get_db),
    rates: ExchangeRateService = Depends(get_rate_service),
    user_id: int = Depends(current_user_id),
):
    pairs = TransferService(db, user_id, rates).list_transfers(start, end)
    return ok([_pair_out(pair) for pair in pairs])


@app.get("/api/transfers/{transaction_id}")
def api_transfer(
    transaction_id: int,
    db: Session = Depends(get_db),
    rates: ExchangeRateService = Depends(get_rate_service),
    user_id: int = Depends(current_user_id),
):
    pair = TransferService(db, user_id, rates).get_transfer(transaction_id)
    if pair is None:
        raise NotFound("Transfer not found")
    return ok(_pair_out(pair))


@app.delete("/api/transfers/{transaction_id}")
def api_delete_transfer(
    transaction_id: int,
    db: Session = Depends(get_db),
    rates: ExchangeRateService = Depends(get_rate_service),
    user_id: int = Depends(current_user_id),
):
    TransferService(db, user_id, rates).delete_transfer(transaction_id)
    return ok({"id": transaction_id})


@app.get("/api/balances/total")
def api_total_balance(
    db: Session = Depends(get_db),
    rates: ExchangeRateService = Depends(get_rate_service),
    user_id: int = Depends(current_user_id),
):
    return ok(BalanceService(db, user_id, rates).total_balance())


@app.get("/api/balances/accounts")
def api_account_balances(
    db: Session = Depends(get_db),
    rates: ExchangeRateService = Depends(get_rate_service),
    user_id: int = Depends(current_user_id),
):
    balances = BalanceService(db, user_id, rates).account_balances()
    return ok(
        [
            {"payment_method_id": pm_id, "balance_cents": cents}
            for pm_id, cents in balances.items()
        ]
    )


@app.get("/api/balances/accounts/{payment_method_id}")
def api_account_balance(
    payment_method_id: int,
    db: Session = Depends(get_db),
    rates: ExchangeRateService = Depends(get_rate_service),
    user_id: int = Depends(current_user_id),
):
    cents = BalanceService(db, user_id, rates).account_balance(payment_method_id)
    return ok({"payment_method_id": payment_method_id, "balance_cents": cents})


@app.get("/api/balances/by-currency")
def api_balances_by_currency(
    db: Session = Depends(get_db),
    rates: ExchangeRateService = Depends(get_rate_service),
    user_id: int = Depends(current_user_id),
):
    return ok(BalanceService(db, user_id, rates).balances_by_currency())


@app.get("/api/balances/details")
def api_account_details(
    db: Session = Depends(get_db),
    rates: ExchangeRateService = Depends(get_rate_service),
    user_id: int = Depends(current_user_id),
):
    return ok(BalanceService(db, user_id, rates).account_details())


@app.get("/api/balances/reconciliation")
def api_reconciliation(
    db: Session = Depends(get_db),
    rates: ExchangeRateService = Depends(get_rate_service),
    user_id: int = Depends(current_user_id),
):
    return ok(BalanceService(db, user_id, rates).reconciliation_report())


@app.get("/api/budgets")
def api_budgets(
    period: Optional[str] = None,
    category_id: Optional[int] = None,
    tag_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    budgets = BudgetService(db, user_id).list_all(period, category_id, tag_id)
    return ok([BudgetOut.model_validate(b) for b in budgets])


@app.post("/api/budgets", status_code=201)
def api_create_budget(
    data: BudgetIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(BudgetOut.model_validate(BudgetService(db, user_id).create(data)))


@app.get("/api/budgets/progress")
def api_budget_progress_for_period(
    period: str,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    progress = BudgetService(db, user_id).progress_for_period(period)
    return ok([_progress_out(p) for p in progress])


@app.get("/api/budgets/{budget_id}")
def api_budget(
    budget_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return ok(BudgetOut.model_validate(BudgetService(db, user_id).get(budget_id)))


@app.patch("/api/budgets/{budget_id}")
def api_update_budget(
    budget_id: int,
    data: BudgetUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    budget = BudgetService(db, user_id).update(budget_id, data)
    return ok(BudgetOut.model_validate(budget))


@app.delete("/api/budgets/{budget_id}")
def api_delete_budget(
    budget_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    BudgetService(db, user_id).delete(budget_id)
    return ok({"id": budget_id})


@app.get("/api/budgets/{budget_id}/progress")
def api_budget_progress(
    budget_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    return ok(_progress_out(BudgetService(db, user_id).progress(budget_id)))


@app.get("/api/budgets/{budget_id}/breakdown")
def api_budget_breakdown(
    budget_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    breakdown = BudgetService(db, user_id).breakdown_by_payment_method(budget_id)
    return ok(_breakdown_out(breakdown))


@app.get("/api/templates")
def api_templates(
    favorites_only: bool = False,
    category_id: Optional[int] = None,
    payment_method_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    templates = TemplateService(db, user_id).list_all(
        favorites_only=favorites_only,
        category_id=category_id,
        payment_method_id=payment_method_id,
    )
    return ok([TemplateOut.model_validate(t) for t in templates])


@app.post("/api/templates", status_code=201)
def api_create_template(
    data: TemplateIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(TemplateOut.model_validate(TemplateService(db, user_id).create(data)))


@app.get("/api/templates/favorites")
def api_favorite_templates(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    templates = TemplateService(db, user_id).list_favorites()
    return ok([TemplateOut.model_validate(t) for t in templates])


@app.get("/api/templates/{template_id}")
def api_template(
    template_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return ok(TemplateOut.model_validate(TemplateService(db, user_id).get(template_id)))


@app.patch("/api/templates/{template_id}")
def api_update_template(
    template_id: int,
    data: TemplateUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    template = TemplateService(db, user_id).update(template_id, data)
    return ok(TemplateOut.model_validate(template))


@app.delete("/api/templates/{template_id}")
def api_delete_template(
    template_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    TemplateService(db, user_id).delete(template_id)
    return ok({"id": template_id})


@app.post("/api/templates/{template_id}/favorite")
def api_toggle_favorite_template(
    template_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    template = TemplateService(db, user_id).toggle_favorite(template_id)
    return ok(TemplateOut.model_validate(template))


@app.post("/api/templates/{template_id}/transactions", status_code=201)
def api_use_template(
    template_id: int,
    data: Optional[TemplateUseIn] = None,
    db: Session = Depends(get_db),
    rates: ExchangeRateService = Depends(get_rate_service),
    user_id: int = Depends(current_user_id),
):
    txn = TemplateService(db, user_id, rates).create_transaction(template_id, data)
    return ok(TransactionOut.model_validate(txn))



def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
