from datetime import datetime, timezone
from typing import Optional

from .accounts import AccountRegistry
from .config import WalletSettings, get_settings
from .ledger import LedgerStore
from .models import (
    EARNING_KINDS,
    PENDING_STATUSES,
    AccountBalance,
    LedgerPage,
    ReferralStats,
    WithdrawalPage,
    WithdrawalRequest,
    WithdrawalStatus,
)
from .withdrawals import WithdrawalStateMachine


class WalletQueries:
    """Read-only views for profile and admin screens."""

    def __init__(
        self,
        registry: AccountRegistry,
        ledger: LedgerStore,
        withdrawals: WithdrawalStateMachine,
        settings: Optional[WalletSettings] = None,
    ):
        self.registry = registry
        self.ledger = ledger
        self.withdrawals = withdrawals
        self.settings = settings or get_settings()

    def current_balance(self, account_id: str) -> int:
        cached = self.registry.cached_balance(account_id)
        if cached is not None:
            return cached
        # Missing or stale cache: rebuild it from the ledger.
        return self.registry.refresh_balance_cache(account_id).cached_balance

    def balance(self, account_id: str) -> AccountBalance:
        current = self.current_balance(account_id)
        pending = sum(w.amount for w in self.pending_withdrawals(account_id))
        return AccountBalance(
            account_id=account_id,
            currency=self.settings.currency,
            current_balance=current,
            pending_withdrawals=pending,
        )

    def pending_withdrawals(self, account_id: str) -> list[WithdrawalRequest]:
        self.registry.get(account_id)
        pending = []
        cursor = None
        while True:
            page = self.withdrawals.list_withdrawals(
                account_id=account_id, statuses=PENDING_STATUSES,
                cursor=cursor, limit=self.settings.max_page_size,
            )
            pending.extend(page.withdrawals)
            if page.next_cursor is None:
                return pending
            cursor = page.next_cursor

    def transaction_history(
        self, account_id: str, cursor: Optional[str] = None, limit: Optional[int] = None
    ) -> LedgerPage:
        self.registry.get(account_id)
        return self.ledger.history(account_id, cursor=cursor, limit=self._page_size(limit))

    def list_withdrawals(
        self,
        account_id: Optional[str] = None,
        status: Optional[WithdrawalStatus] = None,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> WithdrawalPage:
        if account_id is not None:
            self.registry.get(account_id)
        return self.withdrawals.list_withdrawals(
            account_id=account_id,
            statuses=[status] if status else None,
            cursor=cursor,
            limit=self._page_size(limit),
        )

    def referral_stats(self, account_id: str) -> ReferralStats:
        account = self.registry.get(account_id)
        earnings = self.ledger.entries(account_id, kinds=EARNING_KINDS)
        today = datetime.now(timezone.utc).date()
        return ReferralStats(
            account_id=account_id,
            referral_code=account.referral_code,
            total_referrals=len(self.registry.referred_accounts(account_id)),
            total_earnings=sum(e.amount for e in earnings),
            today_earnings=sum(e.amount for e in earnings if e.created_at.date() == today),
            currency=self.settings.currency,
        )

    def _page_size(self, limit: Optional[int]) -> int:
        if not limit or limit < 1:
            return self.settings.history_page_size
        return min(limit, self.settings.max_page_size)
