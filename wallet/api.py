import logging
from contextlib import asynccontextmanager
from typing import Optional
from uuid import UUID
from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware

from .config import configure_logging, get_settings
from .errors import (
    AboveMaximum, AccountNotFound, BelowMinimum, DuplicateEntry, IdempotencyConflict,
    InsufficientBalance, InvalidAmount, InvalidCursor, InvalidTransition,
    RejectionReasonRequired, StoreUnavailable, WithdrawalNotFound,
)
from .models import (
    AccountBalance, AccountResponse, CreateWithdrawalRequest, LedgerEntry, LedgerPage,
    ManualAdjustmentRequest, PayoutConfirmedEvent, PurchaseCompletedEvent, ReferralStats,
    RegisterAccountRequest, WithdrawalDecisionEvent, WithdrawalPage, WithdrawalRequest,
    WithdrawalStatus, Account,
)
from .service import WalletService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(get_settings())
    logger.info("Referral wallet API starting")
    yield
    logger.info("Referral wallet API shutting down")


app = FastAPI(
    title="Referral Wallet API",
    description="Wallet ledger for referral commissions and admin-approved withdrawals",
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

wallet_service = WalletService(settings=get_settings())


def get_wallet_service() -> WalletService:
    return wallet_service


def _unavailable(e: StoreUnavailable) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "referral-wallet"}


@app.post("/accounts", response_model=AccountResponse, tags=["Accounts"])
def register_account(
    request: RegisterAccountRequest, service: WalletService = Depends(get_wallet_service)
) -> AccountResponse:
    try:
        return service.register(request.identity, request.referral_code)
    except StoreUnavailable as e:
        raise _unavailable(e)


@app.get("/accounts/{account_id}", response_model=Account, tags=["Accounts"])
def get_account(account_id: str, service: WalletService = Depends(get_wallet_service)) -> Account:
    try:
        return service.accounts.get(account_id)
    except AccountNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@app.get("/accounts/{account_id}/balance", response_model=AccountBalance, tags=["Accounts"])
def get_balance(account_id: str, service: WalletService = Depends(get_wallet_service)) -> AccountBalance:
    try:
        return service.queries.balance(account_id)
    except AccountNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except StoreUnavailable as e:
        raise _unavailable(e)


@app.get("/accounts/{account_id}/ledger", response_model=LedgerPage, tags=["Accounts"])
def list_transactions(
    account_id: str,
    cursor: Optional[str] = None,
    limit: Optional[int] = None,
    service: WalletService = Depends(get_wallet_service),
) -> LedgerPage:
    try:
        return service.queries.transaction_history(account_id, cursor=cursor, limit=limit)
    except AccountNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidCursor as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.get("/accounts/{account_id}/referrals", response_model=ReferralStats, tags=["Accounts"])
def get_referral_stats(account_id: str, service: WalletService = Depends(get_wallet_service)) -> ReferralStats:
    try:
        return service.queries.referral_stats(account_id)
    except AccountNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@app.post(
    "/accounts/{account_id}/adjustments", response_model=LedgerEntry,
    status_code=status.HTTP_201_CREATED, tags=["Admin"],
)
def create_adjustment(
    account_id: str, request: ManualAdjustmentRequest, service: WalletService = Depends(get_wallet_service)
) -> LedgerEntry:
    try:
        return service.adjust(account_id, request)
    except AccountNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except DuplicateEntry as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except (InvalidAmount, InsufficientBalance) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StoreUnavailable as e:
        raise _unavailable(e)


@app.post(
    "/accounts/{account_id}/withdrawals", response_model=WithdrawalRequest,
    status_code=status.HTTP_201_CREATED, tags=["Withdrawals"],
)
def request_withdrawal(
    account_id: str, request: CreateWithdrawalRequest, service: WalletService = Depends(get_wallet_service)
) -> WithdrawalRequest:
    try:
        return service.request_withdrawal(account_id, request)
    except AccountNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except IdempotencyConflict as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except (BelowMinimum, AboveMaximum, InsufficientBalance) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StoreUnavailable as e:
        raise _unavailable(e)


@app.get("/withdrawals", response_model=WithdrawalPage, tags=["Withdrawals"])
def list_withdrawals(
    account_id: Optional[str] = None,
    status_filter: Optional[WithdrawalStatus] = Query(None, alias="status"),
    cursor: Optional[str] = None,
    limit: Optional[int] = None,
    service: WalletService = Depends(get_wallet_service),
) -> WithdrawalPage:
    try:
        return service.queries.list_withdrawals(
            account_id=account_id, status=status_filter, cursor=cursor, limit=limit
        )
    except AccountNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidCursor as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.get("/withdrawals/{request_id}", response_model=WithdrawalRequest, tags=["Withdrawals"])
def get_withdrawal(request_id: UUID, service: WalletService = Depends(get_wallet_service)) -> WithdrawalRequest:
    try:
        return service.withdrawals.get(request_id)
    except WithdrawalNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Withdrawal {request_id} not found")


@app.post("/withdrawals/{request_id}/decision", response_model=WithdrawalRequest, tags=["Withdrawals"])
def decide_withdrawal(
    request_id: UUID, event: WithdrawalDecisionEvent, service: WalletService = Depends(get_wallet_service)
) -> WithdrawalRequest:
    try:
        return service.decide_withdrawal(request_id, event)
    except WithdrawalNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Withdrawal {request_id} not found")
    except RejectionReasonRequired as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except InvalidTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except StoreUnavailable as e:
        raise _unavailable(e)


@app.post("/withdrawals/{request_id}/payout-confirmation", response_model=WithdrawalRequest, tags=["Withdrawals"])
def confirm_payout(
    request_id: UUID, event: PayoutConfirmedEvent, service: WalletService = Depends(get_wallet_service)
) -> WithdrawalRequest:
    try:
        return service.confirm_payout(request_id, event)
    except WithdrawalNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Withdrawal {request_id} not found")
    except InvalidTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except StoreUnavailable as e:
        raise _unavailable(e)


@app.post("/events/purchase-completed", tags=["Events"])
def purchase_completed(event: PurchaseCompletedEvent, service: WalletService = Depends(get_wallet_service)):
    try:
        entry = service.handle_purchase_completed(event)
    except AccountNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidAmount as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StoreUnavailable as e:
        raise _unavailable(e)
    return {
        "purchase_id": event.purchase_id,
        "commission": entry.amount if entry else 0,
        "ledger_entry": entry,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
