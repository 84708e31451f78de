import logging
from decimal import Decimal, ROUND_FLOOR
from typing import Optional

from .accounts import AccountRegistry
from .config import WalletSettings, get_settings
from .errors import DuplicateEntry, InvalidAmount
from .ledger import LedgerStore, make_entry
from .models import EntryKind, LedgerEntry
from .storage import AccountLocks

logger = logging.getLogger(__name__)


class CommissionEngine:
    """Credits referral earnings exactly once per causing event.

    Purchase commission and the signup bonus are separate policies with
    separate entry kinds and settings.
    """

    def __init__(
        self,
        registry: AccountRegistry,
        ledger: LedgerStore,
        locks: AccountLocks,
        settings: Optional[WalletSettings] = None,
    ):
        self.registry = registry
        self.ledger = ledger
        self.locks = locks
        self.settings = settings or get_settings()

    def purchase_commission(self, purchase_amount: int) -> int:
        commission = Decimal(purchase_amount) * self.settings.purchase_commission_rate
        return int(commission.to_integral_value(rounding=ROUND_FLOOR))

    def on_purchase_completed(
        self, purchase_id: str, buyer_account_id: str, purchase_amount: int
    ) -> Optional[LedgerEntry]:
        if purchase_amount < 0:
            raise InvalidAmount(f"Purchase amount must not be negative, got {purchase_amount}")

        buyer = self.registry.get(buyer_account_id)
        if not buyer.referred_by:
            logger.debug("Purchase %s by %s has no referrer", purchase_id, buyer_account_id)
            return None

        commission = self.purchase_commission(purchase_amount)
        if commission <= 0:
            logger.debug("Purchase %s earns no commission (amount %d)", purchase_id, purchase_amount)
            return None

        entry = make_entry(
            buyer.referred_by,
            commission,
            EntryKind.PURCHASE_COMMISSION,
            purchase_id,
            description=f"Referral commission on purchase {purchase_id}",
            metadata={
                "buyer_account_id": buyer_account_id,
                "purchase_amount": purchase_amount,
                "rate": str(self.settings.purchase_commission_rate),
            },
        )
        return self._credit(entry)

    def on_signup_completed(self, account_id: str) -> list[LedgerEntry]:
        account = self.registry.get(account_id)
        if not account.referred_by:
            return []

        credited = []
        if self.settings.referral_signup_bonus > 0:
            credited.append(self._credit(make_entry(
                account.referred_by,
                self.settings.referral_signup_bonus,
                EntryKind.REFERRAL_SIGNUP_BONUS,
                account.id,
                description=f"Referral signup bonus for {account.id}",
                metadata={"referred_account_id": account.id},
            )))
        if self.settings.referred_signup_bonus > 0:
            credited.append(self._credit(make_entry(
                account.id,
                self.settings.referred_signup_bonus,
                EntryKind.REFERRED_SIGNUP_BONUS,
                account.id,
                description="Signup bonus for joining with a referral code",
                metadata={"referrer_account_id": account.referred_by},
            )))
        return credited

    def _credit(self, entry: LedgerEntry) -> LedgerEntry:
        with self.locks.hold(entry.account_id):
            try:
                stored = self.ledger.append(entry)
            except DuplicateEntry as e:
                # At-least-once delivery: a replay is a success.
                logger.debug("Replay of %s for %s ignored", entry.kind.value, entry.related_entity_id)
                return e.existing
            self.registry.refresh_balance_cache(entry.account_id)
        return stored
