import logging
from typing import Optional, Union
from uuid import UUID

from .accounts import AccountRegistry
from .commission import CommissionEngine
from .config import WalletSettings, get_settings
from .errors import DuplicateEntry, InvalidAmount, InvalidReferralCode
from .ledger import LedgerStore, make_entry
from .models import (
    AccountResponse,
    CreateWithdrawalRequest,
    EntryKind,
    LedgerEntry,
    ManualAdjustmentRequest,
    PayoutConfirmedEvent,
    PurchaseCompletedEvent,
    WithdrawalDecisionEvent,
    WithdrawalRequest,
)
from .queries import WalletQueries
from .storage import AccountLocks, InMemoryStorage
from .withdrawals import WithdrawalStateMachine

logger = logging.getLogger(__name__)


class WalletService:
    """Wires the wallet components together and consumes inbound events."""

    def __init__(self, storage: Optional[InMemoryStorage] = None, settings: Optional[WalletSettings] = None):
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryStorage(lock_timeout=self.settings.store_lock_timeout_seconds)
        self.locks = AccountLocks()
        self.ledger = LedgerStore(self.storage)
        self.accounts = AccountRegistry(self.storage, self.ledger, self.settings)
        self.commissions = CommissionEngine(self.accounts, self.ledger, self.locks, self.settings)
        self.withdrawals = WithdrawalStateMachine(
            self.storage, self.accounts, self.ledger, self.locks, self.settings
        )
        self.queries = WalletQueries(self.accounts, self.ledger, self.withdrawals, self.settings)

    def register(self, identity: str, referral_code: Optional[str] = None) -> AccountResponse:
        try:
            account, created = self.accounts.get_or_create(identity, referral_code)
        except InvalidReferralCode as e:
            return AccountResponse(account=e.account, created=True, warnings=[str(e)])

        # Bonuses are idempotent per account, so a retried registration
        # finishes crediting whatever an earlier attempt left out.
        if account.referred_by:
            self.commissions.on_signup_completed(account.id)
            account = self.accounts.get(account.id)
        return AccountResponse(account=account, created=created)

    def handle_purchase_completed(self, event: PurchaseCompletedEvent) -> Optional[LedgerEntry]:
        return self.commissions.on_purchase_completed(
            event.purchase_id, event.buyer_account_id, event.amount
        )

    def request_withdrawal(self, account_id: str, request: CreateWithdrawalRequest) -> WithdrawalRequest:
        return self.withdrawals.request(
            account_id,
            request.amount,
            request.method,
            payout_details=request.payout_details,
            idempotency_key=request.idempotency_key,
        )

    def decide_withdrawal(self, request_id: Union[UUID, str], event: WithdrawalDecisionEvent) -> WithdrawalRequest:
        return self.withdrawals.decide(
            request_id, event.decision, reason=event.reason, performed_by=event.performed_by
        )

    def confirm_payout(self, request_id: Union[UUID, str], event: PayoutConfirmedEvent) -> WithdrawalRequest:
        return self.withdrawals.confirm_completion(request_id, event.external_transaction_id)

    def adjust(self, account_id: str, request: ManualAdjustmentRequest) -> LedgerEntry:
        """Admin credit or debit. Replaying the same adjustment_id is a no-op."""
        if request.amount == 0:
            raise InvalidAmount("Adjustment amount must not be zero")
        self.accounts.get(account_id)

        entry = make_entry(
            account_id,
            request.amount,
            EntryKind.MANUAL_ADJUSTMENT,
            request.adjustment_id,
            description=request.note,
            metadata={"performed_by": request.performed_by},
        )
        with self.locks.hold(account_id):
            try:
                stored = self.ledger.append(entry)
            except DuplicateEntry as e:
                if e.existing.account_id != account_id or e.existing.amount != request.amount:
                    raise
                return e.existing
            self.accounts.refresh_balance_cache(account_id)

        logger.info(
            "Manual adjustment %s of %+d on %s by %s",
            request.adjustment_id, request.amount, account_id, request.performed_by or "admin",
        )
        return stored
