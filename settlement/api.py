from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Optional

import structlog
from fastapi import FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .exceptions import (
    AlreadyResolvedError,
    AlreadySettledError,
    ConcurrentModificationError,
    InsufficientFundsError,
    NotFoundError,
    PackageNotFoundError,
    PrizeError,
)
from .leaderboard import EarningsAggregator
from .ledger import EarningsLedger
from .logging_config import configure_logging
from .models import (
    AccountBalance,
    EarningsSummary,
    EarningsWindow,
    Leaderboard,
    Leaderboards,
    MonthlyAchiever,
    MonthlyTarget,
    Order,
    PlatformAnalytics,
    PrizeRecord,
    SettlementResponse,
    WithdrawalEligibility,
    WithdrawalRequest,
    WithdrawalResponse,
)
from .notifications import EmailWebhookNotifier, LoggingNotifier
from .orders import OrderSettlementService
from .storage import InMemoryStorage
from .targets import MonthlyTargetService
from .withdrawals import WithdrawalService

settings = get_settings()
configure_logging(settings)
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("application_startup")
    try:
        yield
    finally:
        if isinstance(notifier, EmailWebhookNotifier):
            notifier.close()
        logger.info("application_shutdown")


app = FastAPI(
    title="Order Settlement API",
    description="Order settlement, earnings ledger and affiliate leaderboards",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

storage = InMemoryStorage(seed=True)
ledger = EarningsLedger(storage)
notifier = (
    EmailWebhookNotifier(storage, settings.notification_url, settings.notification_timeout)
    if settings.notification_url
    else LoggingNotifier()
)
order_service = OrderSettlementService(storage, ledger, notifier, settings)
withdrawal_service = WithdrawalService(storage, ledger, notifier, settings)
aggregator = EarningsAggregator(storage, settings)
target_service = MonthlyTargetService(storage, aggregator, notifier, settings)


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "order-settlement"}


# -- admin actions -------------------------------------------------------------

@app.post("/admin/orders/{order_id}/approve", response_model=SettlementResponse, tags=["Admin"])
def approve_order(order_id: str) -> SettlementResponse:
    try:
        return order_service.approve_order(order_id)
    except PackageNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (AlreadySettledError, ConcurrentModificationError) as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@app.post("/admin/orders/{order_id}/reject", response_model=SettlementResponse, tags=["Admin"])
def reject_order(order_id: str) -> SettlementResponse:
    try:
        return order_service.reject_order(order_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except AlreadySettledError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@app.post("/admin/withdrawals/{request_id}/approve", response_model=WithdrawalResponse, tags=["Admin"])
def approve_withdrawal(request_id: str) -> WithdrawalResponse:
    try:
        return withdrawal_service.approve_withdrawal(request_id)
    except InsufficientFundsError as e:
        detail = {"reason": str(e)}
        if e.request is not None:
            detail["status"] = e.request.status.value
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (AlreadyResolvedError, ConcurrentModificationError) as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@app.post("/admin/withdrawals/{request_id}/reject", response_model=WithdrawalResponse, tags=["Admin"])
def reject_withdrawal(request_id: str) -> WithdrawalResponse:
    try:
        return withdrawal_service.reject_withdrawal(request_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except AlreadyResolvedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@app.get("/admin/analytics", response_model=PlatformAnalytics, tags=["Admin"])
def get_analytics() -> PlatformAnalytics:
    return aggregator.platform_analytics()


@app.get("/admin/monthly-target", response_model=MonthlyTarget, tags=["Admin"])
def get_monthly_target() -> MonthlyTarget:
    return target_service.get_target()


@app.put("/admin/monthly-target", response_model=MonthlyTarget, tags=["Admin"])
def set_monthly_target(target: MonthlyTarget) -> MonthlyTarget:
    return target_service.set_target(target)


@app.get("/admin/monthly-target/achievers", response_model=list[MonthlyAchiever], tags=["Admin"])
def get_monthly_achievers() -> list[MonthlyAchiever]:
    return target_service.achievers()


@app.post("/admin/monthly-target/achievers/{user_id}/prize", response_model=PrizeRecord, tags=["Admin"])
def award_prize(user_id: str) -> PrizeRecord:
    try:
        return target_service.award_prize(user_id)
    except PrizeError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


# -- reads -----------------------------------------------------------------------

@app.get("/orders/{order_id}", response_model=Order, tags=["Orders"])
def get_order(order_id: str) -> Order:
    try:
        return order_service.get_order(order_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Order {order_id} not found")


@app.get("/withdrawals/{request_id}", response_model=WithdrawalRequest, tags=["Withdrawals"])
def get_withdrawal(request_id: str) -> WithdrawalRequest:
    try:
        return withdrawal_service.get_withdrawal(request_id)
    except NotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Withdrawal request {request_id} not found"
        )


@app.get("/users/{user_id}/balance", response_model=AccountBalance, tags=["Users"])
def get_user_balance(user_id: str) -> AccountBalance:
    try:
        return ledger.account_balance(user_id, order_service.clock())
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@app.get("/users/{user_id}/earnings", response_model=EarningsSummary, tags=["Users"])
def get_user_earnings(user_id: str) -> EarningsSummary:
    try:
        return aggregator.earnings_summary(user_id, target=target_service.get_target())
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@app.get("/users/{user_id}/withdrawal-eligibility", response_model=WithdrawalEligibility, tags=["Users"])
def get_withdrawal_eligibility(user_id: str, amount: Decimal = Query(...)) -> WithdrawalEligibility:
    try:
        return withdrawal_service.check_eligibility(user_id, amount)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@app.get("/leaderboards", response_model=Leaderboards, tags=["Leaderboards"])
def get_leaderboards(limit: Optional[int] = Query(None, gt=0, le=100)) -> Leaderboards:
    return aggregator.leaderboards(limit=limit)


@app.get("/leaderboards/{window}", response_model=Leaderboard, tags=["Leaderboards"])
def get_leaderboard(window: EarningsWindow, limit: Optional[int] = Query(None, gt=0, le=100)) -> Leaderboard:
    return aggregator.leaderboard(window, limit=limit)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
