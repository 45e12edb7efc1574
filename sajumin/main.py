#!/usr/bin/env python3
"""Sajumin backend (FastAPI).

- Five Elements: deterministic stem/branch accounting
- Coins: append-only ledger with conditional balance updates
- Payments: PortOne verification, idempotent credit
- Fortune text: OpenAI (opaque JSON payload)
"""

import logging
from datetime import date
from functools import lru_cache
from typing import Any, Literal, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from sajumin import config
from sajumin.accounts import AccountService, AccountSuspended
from sajumin.analysis import AnalysisNotFound, AnalysisService, PriceNotFound, UnknownService
from sajumin.five_elements import InvalidChartInput, SajuChart, analyze_chart, parse_chart
from sajumin.fortune_writer import FortuneWriter, build_openai_client
from sajumin.ledger import (
    CoinLedger,
    DuplicateTransaction,
    IdempotencyConflict,
    InsufficientBalance,
    InvalidTransaction,
    UserNotFound,
    kst_day_window,
)
from sajumin.payments import PaymentService, PaymentVerificationError, PortOneClient
from sajumin.storage import Database, init_database

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s - %(message)s",
)

logger = logging.getLogger("sajumin")

MSG_INSUFFICIENT = "코인이 부족합니다. 충전 후 이용해주세요."
MSG_RETRY = "잠시 후 다시 시도해주세요."
MSG_PAYMENT_FAILED = "결제 검증에 실패했습니다."
MSG_PAYMENT_DONE = "결제가 완료되었습니다."
MSG_PAYMENT_REPLAY = "이미 처리된 결제입니다."
MSG_LOGIN_REQUIRED = "로그인이 필요합니다."
MSG_SUSPENDED = "정지된 계정입니다. 고객센터에 문의해주세요."

app = FastAPI(title="Sajumin API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ------------------------------------------------------------------------------
# Dependencies
# ------------------------------------------------------------------------------
@lru_cache(maxsize=1)
def get_database() -> Database:
    db = init_database(config.DATABASE_URL)
    logger.info("Database ready url=%s", db.engine.url.render_as_string(hide_password=True))
    return db


@lru_cache(maxsize=1)
def get_fortune_writer() -> FortuneWriter:
    writer = FortuneWriter(build_openai_client())
    if not writer.configured:
        logger.warning("OpenAI client is None. Fortunes will use the deterministic fallback.")
    return writer


def get_ledger(db: Database = Depends(get_database)) -> CoinLedger:
    return CoinLedger(db)


def get_analysis_service(
    db: Database = Depends(get_database),
    ledger: CoinLedger = Depends(get_ledger),
    writer: FortuneWriter = Depends(get_fortune_writer),
) -> AnalysisService:
    return AnalysisService(db, ledger, writer)


def get_payment_service(ledger: CoinLedger = Depends(get_ledger)) -> PaymentService:
    return PaymentService(ledger, PortOneClient())


def get_account_service(db: Database = Depends(get_database)) -> AccountService:
    return AccountService(db)


def current_user_id(
    x_user_id: str = Header(default=""),
    accounts: AccountService = Depends(get_account_service),
) -> int:
    """User id asserted by the upstream identity provider; suspended accounts are refused."""
    try:
        user_id = int(x_user_id.strip())
    except (AttributeError, ValueError):
        raise HTTPException(status_code=401, detail=MSG_LOGIN_REQUIRED)
    if user_id <= 0:
        raise HTTPException(status_code=401, detail=MSG_LOGIN_REQUIRED)
    try:
        accounts.ensure_active(user_id)
    except UserNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AccountSuspended:
        logger.info("Suspended account refused user_id=%s", user_id)
        raise HTTPException(status_code=403, detail=MSG_SUSPENDED)
    except Exception as e:
        raise _unexpected(f"Account lookup user_id={user_id}", e)
    return user_id


def require_admin(x_admin_key: str = Header(default="")) -> None:
    expected = config.ADMIN_API_KEY
    if not expected or x_admin_key != expected:
        raise HTTPException(status_code=403, detail="Forbidden")


def _resolve_request_id(request: Optional[Request]) -> str:
    if request is not None:
        for header in ("x-request-id", "x-correlation-id"):
            value = (request.headers.get(header) or "").strip()
            if value:
                return value
    return str(uuid4())


def _insufficient(exc: InsufficientBalance) -> HTTPException:
    return HTTPException(
        status_code=402,
        detail={
            "message": MSG_INSUFFICIENT,
            "required_coins": exc.required,
            "current_balance": exc.balance,
        },
    )


def _unexpected(context: str, exc: Exception) -> HTTPException:
    logger.exception("%s failed: %s", context, exc)
    return HTTPException(status_code=500, detail=MSG_RETRY)


# ------------------------------------------------------------------------------
# Pydantic schemas
# ------------------------------------------------------------------------------
class PillarIn(BaseModel):
    stem: str = Field(..., min_length=1, max_length=4, description="Heavenly stem (甲 or 갑)")
    branch: str = Field(..., min_length=1, max_length=4, description="Earthly branch (子 or 자)")


class ChartIn(BaseModel):
    year: Optional[PillarIn] = None
    month: Optional[PillarIn] = None
    day: Optional[PillarIn] = None
    hour: Optional[PillarIn] = Field(None, description="Absent when birth time is unknown")

    @model_validator(mode="after")
    def validate_has_pillar(self) -> "ChartIn":
        if not any(p is not None for p in (self.year, self.month, self.day, self.hour)):
            raise ValueError("chart requires at least one pillar.")
        return self

    def to_chart(self, strict: bool = False) -> SajuChart:
        return parse_chart(self.model_dump(), strict=strict)


class ElementsRequest(BaseModel):
    chart: ChartIn
    strict: bool = Field(False, description="Reject unknown stem/branch symbols instead of skipping them")


class AnalyzeRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")
    analysis_type: str = Field(..., validation_alias=AliasChoices("analysis_type", "analysisType"))
    chart: ChartIn
    title: Optional[str] = Field(None, max_length=255)
    birth_data: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("birth_data", "birthData"),
    )


class PaymentVerifyRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")
    payment_id: str = Field(..., min_length=1, validation_alias=AliasChoices("payment_id", "paymentId"))
    amount: int = Field(..., gt=0, description="Paid amount in KRW")
    coin_amount: Optional[int] = Field(None, gt=0, validation_alias=AliasChoices("coin_amount", "coinAmount"))


class PaymentWebhookRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")
    payment_id: str = Field(..., min_length=1, validation_alias=AliasChoices("payment_id", "paymentId"))
    status: str = ""
    # customData in the body is ignored; the payer comes from the verified PSP record.


class CoinAdjustRequest(BaseModel):
    amount: int = Field(..., gt=0)
    type: Literal["add", "subtract"]
    description: str = Field(..., min_length=1)


class RefundRequest(BaseModel):
    amount: int = Field(..., gt=0)
    description: str = Field(..., min_length=1)
    reference_id: Optional[int] = None
    idempotency_key: Optional[str] = None



class SuspendRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class ServicePriceUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")
    coin_cost: Optional[int] = Field(None, gt=0, validation_alias=AliasChoices("coin_cost", "coinCost"))
    is_active: Optional[bool] = Field(None, validation_alias=AliasChoices("is_active", "isActive"))
    description: Optional[str] = Field(None, min_length=1)

    @model_validator(mode="after")
    def validate_has_update(self) -> "ServicePriceUpdateRequest":
        if self.coin_cost is None and self.is_active is None and self.description is None:
            raise ValueError("nothing to update.")
        return self


# ------------------------------------------------------------------------------
# API endpoints: Health Check
# ------------------------------------------------------------------------------
@app.get("/health")
def health(
    db: Database = Depends(get_database),
    writer: FortuneWriter = Depends(get_fortune_writer),
):
    return {
        "status": "ok",
        "database": db.ping(),
        "openai_configured": writer.configured,
        "model": writer.model,
        "portone_configured": bool(config.PORTONE_API_SECRET),
    }


# ------------------------------------------------------------------------------
# API endpoints: Saju
# ------------------------------------------------------------------------------
@app.post("/api/saju/elements")
def compute_elements(request: ElementsRequest):
    """Five Elements distribution and ranked summary for a chart."""
    try:
        chart = request.chart.to_chart(strict=request.strict)
        return {"chart": chart.to_dict(), "elements": analyze_chart(chart)}
    except InvalidChartInput as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise _unexpected("Element computation", e)


@app.post("/api/saju/analyze")
async def analyze_saju(
    body: AnalyzeRequest,
    request: Request,
    user_id: int = Depends(current_user_id),
    service: AnalysisService = Depends(get_analysis_service),
):
    request_id = _resolve_request_id(request)
    try:
        chart = body.chart.to_chart()
        return await service.create_analysis(
            user_id,
            body.analysis_type,
            chart,
            birth_data=body.birth_data,
            title=body.title,
            request_id=request_id,
        )
    except InsufficientBalance as e:
        raise _insufficient(e)
    except UserNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (UnknownService, InvalidChartInput) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise _unexpected(f"Saju analysis request_id={request_id}", e)


@app.get("/api/saju/analyses")
def list_analyses(
    user_id: int = Depends(current_user_id),
    service: AnalysisService = Depends(get_analysis_service),
):
    try:
        return {"analyses": [a.to_dict() for a in service.list_analyses(user_id)]}
    except Exception as e:
        raise _unexpected(f"Analysis list user_id={user_id}", e)


@app.get("/api/saju/analysis/{analysis_id}")
def get_analysis(
    analysis_id: int,
    user_id: int = Depends(current_user_id),
    service: AnalysisService = Depends(get_analysis_service),
):
    try:
        return {"analysis": service.get_analysis(user_id, analysis_id).to_dict()}
    except AnalysisNotFound:
        raise HTTPException(status_code=404, detail="Analysis not found")
    except Exception as e:
        raise _unexpected(f"Analysis fetch analysis_id={analysis_id}", e)


# ------------------------------------------------------------------------------
# API endpoints: Coins
# ------------------------------------------------------------------------------
@app.get("/api/coins/balance")
def coin_balance(user_id: int = Depends(current_user_id), ledger: CoinLedger = Depends(get_ledger)):
    try:
        return {"balance": ledger.get_balance(user_id)}
    except UserNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        raise _unexpected(f"Balance user_id={user_id}", e)


@app.get("/api/coins/transactions")
def coin_transactions(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    user_id: int = Depends(current_user_id),
    ledger: CoinLedger = Depends(get_ledger),
):
    try:
        rows = ledger.list_transactions(user_id, page=page, page_size=page_size)
    except UserNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        raise _unexpected(f"Transaction history user_id={user_id}", e)
    return {
        "page": page,
        "page_size": page_size,
        "transactions": [row.to_dict() for row in rows],
    }


@app.get("/api/services/prices")
def service_prices(service: AnalysisService = Depends(get_analysis_service)):
    try:
        return {"prices": [p.to_dict() for p in service.list_prices()]}
    except Exception as e:
        raise _unexpected("Price catalog", e)


# ------------------------------------------------------------------------------
# API endpoints: Payments
# ------------------------------------------------------------------------------
@app.post("/api/payment/verify")
def verify_payment(
    body: PaymentVerifyRequest,
    user_id: int = Depends(current_user_id),
    payments: PaymentService = Depends(get_payment_service),
):
    try:
        credit = payments.confirm_payment(user_id, body.payment_id, amount=body.amount, coin_amount=body.coin_amount)
    except PaymentVerificationError as e:
        logger.warning("Payment verification failed user_id=%s payment_id=%s: %s", user_id, body.payment_id, e)
        raise HTTPException(status_code=400, detail=MSG_PAYMENT_FAILED)
    except IdempotencyConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    except UserNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        raise _unexpected(f"Payment verify payment_id={body.payment_id}", e)
    return {
        "success": True,
        "message": MSG_PAYMENT_REPLAY if credit.already_processed else MSG_PAYMENT_DONE,
        "already_processed": credit.already_processed,
        "payment_id": body.payment_id,
        "coin_amount": credit.coin_amount,
        "balance": credit.transaction.balance_after,
        "transaction": credit.transaction.to_dict(),
    }


@app.post("/api/payment/webhook")
def payment_webhook(body: PaymentWebhookRequest, payments: PaymentService = Depends(get_payment_service)):
    try:
        credit = payments.handle_webhook(body.payment_id, body.status)
    except PaymentVerificationError as e:
        # PSP retries on non-2xx; a failed verification is retried later.
        logger.warning("Webhook verification failed payment_id=%s: %s", body.payment_id, e)
        raise HTTPException(status_code=400, detail=MSG_PAYMENT_FAILED)
    except IdempotencyConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    except UserNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        raise _unexpected(f"Payment webhook payment_id={body.payment_id}", e)
    return {
        "received": True,
        "credited": credit is not None and not credit.already_processed,
        "already_processed": bool(credit and credit.already_processed),
    }


# ------------------------------------------------------------------------------
# API endpoints: Admin
# ------------------------------------------------------------------------------
@app.get("/api/admin/users", dependencies=[Depends(require_admin)])
def admin_users(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    search: Optional[str] = Query(None),
    accounts: AccountService = Depends(get_account_service),
):
    try:
        return accounts.list_users(page=page, limit=limit, search=search)
    except Exception as e:
        raise _unexpected("Admin user list", e)


@app.post("/api/admin/users/{user_id}/suspend", dependencies=[Depends(require_admin)])
def admin_suspend_user(user_id: int, body: SuspendRequest, accounts: AccountService = Depends(get_account_service)):
    try:
        user = accounts.suspend(user_id, body.reason)
    except UserNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        raise _unexpected(f"Admin suspend user_id={user_id}", e)
    return {"message": "User suspended successfully", "user": user.to_dict()}


@app.post("/api/admin/users/{user_id}/reactivate", dependencies=[Depends(require_admin)])
def admin_reactivate_user(user_id: int, accounts: AccountService = Depends(get_account_service)):
    try:
        user = accounts.reactivate(user_id)
    except UserNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        raise _unexpected(f"Admin reactivate user_id={user_id}", e)
    return {"message": "User reactivated successfully", "user": user.to_dict()}


@app.get("/api/admin/service-prices", dependencies=[Depends(require_admin)])
def admin_service_prices(service: AnalysisService = Depends(get_analysis_service)):
    try:
        return {"services": [p.to_dict() for p in service.list_prices(include_inactive=True)]}
    except Exception as e:
        raise _unexpected("Admin price catalog", e)


@app.put("/api/admin/service-prices/{price_id}", dependencies=[Depends(require_admin)])
def admin_update_service_price(
    price_id: int,
    body: ServicePriceUpdateRequest,
    service: AnalysisService = Depends(get_analysis_service),
):
    try:
        price = service.update_price(
            price_id,
            coin_cost=body.coin_cost,
            is_active=body.is_active,
            description=body.description,
        )
    except PriceNotFound:
        raise HTTPException(status_code=404, detail="Service not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise _unexpected(f"Admin price update id={price_id}", e)
    return {"service": price.to_dict(), "message": "Service price updated successfully"}


@app.get("/api/admin/transactions", dependencies=[Depends(require_admin)])
def admin_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    type: str = Query("all"),
    ledger: CoinLedger = Depends(get_ledger),
):
    try:
        return ledger.list_all_transactions(page=page, limit=limit, tx_type=type)
    except InvalidTransaction as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise _unexpected("Admin transaction list", e)


@app.get("/api/admin/stats/sales", dependencies=[Depends(require_admin)])
def admin_sales_stats(
    start_date: Optional[date] = Query(None, description="KST date, inclusive"),
    end_date: Optional[date] = Query(None, description="KST date, inclusive"),
    today: bool = Query(False),
    ledger: CoinLedger = Depends(get_ledger),
):
    if start_date and end_date and start_date > end_date:
        raise HTTPException(status_code=400, detail="start_date must be <= end_date")
    try:
        if today:
            return ledger.today_sales_stats()
        start = kst_day_window(start_date)[0] if start_date else None
        end = kst_day_window(end_date)[1] if end_date else None
        return ledger.sales_stats(start, end)
    except Exception as e:
        raise _unexpected("Admin sales stats", e)


@app.post("/api/admin/users/{user_id}/coins", dependencies=[Depends(require_admin)])
def admin_adjust_coins(user_id: int, body: CoinAdjustRequest, ledger: CoinLedger = Depends(get_ledger)):
    delta = body.amount if body.type == "add" else -body.amount
    try:
        transaction = ledger.adjust(user_id, delta, body.description)
    except InsufficientBalance as e:
        raise _insufficient(e)
    except UserNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransaction as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise _unexpected(f"Admin coin adjustment user_id={user_id}", e)
    logger.info("Admin coin adjustment user_id=%s delta=%s reason=%s", user_id, delta, body.description)
    return {"message": "Coins updated successfully", "transaction": transaction.to_dict()}


@app.post("/api/admin/users/{user_id}/refund", dependencies=[Depends(require_admin)])
def admin_refund(user_id: int, body: RefundRequest, ledger: CoinLedger = Depends(get_ledger)):
    try:
        transaction = ledger.refund(
            user_id,
            body.amount,
            body.description,
            reference_id=body.reference_id,
            idempotency_key=body.idempotency_key,
        )
    except DuplicateTransaction as e:
        return {"message": "Refund already processed", "already_processed": True,
                "transaction": e.transaction.to_dict()}
    except IdempotencyConflict:
        raise HTTPException(status_code=409, detail="idempotency_key is already used by another transaction")
    except UserNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransaction as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise _unexpected(f"Admin refund user_id={user_id}", e)
    logger.info("Admin refund user_id=%s amount=%s", user_id, body.amount)
    return {"message": "Refund applied", "already_processed": False, "transaction": transaction.to_dict()}


@app.get("/api/admin/ledger/audit", dependencies=[Depends(require_admin)])
def admin_ledger_audit(ledger: CoinLedger = Depends(get_ledger)):
    try:
        return ledger.audit()
    except Exception as e:
        raise _unexpected("Ledger audit", e)


# ------------------------------------------------------------------------------
# Local entrypoint
# ------------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
