import logging
import secrets
import string
from datetime import datetime, timezone
from typing import Optional

from .config import WalletSettings, get_settings
from .errors import AccountNotFound, InvalidReferralCode
from .ledger import LedgerStore
from .models import Account
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

REFERRAL_ALPHABET = string.ascii_uppercase + string.digits


def normalize_referral_code(code: Optional[str]) -> Optional[str]:
    if code is None:
        return None
    code = code.strip().upper()
    return code or None


class AccountRegistry:
    def __init__(self, storage: InMemoryStorage, ledger: LedgerStore, settings: Optional[WalletSettings] = None):
        self.storage = storage
        self.ledger = ledger
        self.settings = settings or get_settings()

    def get_or_create(self, identity: str, referral_code: Optional[str] = None) -> tuple[Account, bool]:
        """Return ``(account, created)`` for an external identity.

        ``referred_by`` is captured only when the account is first created. An
        unknown referral code still creates the account (without a referrer)
        and then raises ``InvalidReferralCode`` carrying it.
        """
        code = normalize_referral_code(referral_code)
        with self.storage.transaction():
            existing = self.storage.accounts.get(identity)
            if existing is not None:
                return Account(**existing), False

            referrer_id = self.storage.referral_index.get(code) if code else None
            data = {
                "id": identity,
                "referral_code": self._generate_code(),
                "referred_by": referrer_id,
                "created_at": datetime.now(timezone.utc),
                "cached_balance": 0,
                "balance_version": None,
            }
            self.storage.put(self.storage.accounts, identity, data)
            self.storage.put(self.storage.referral_index, data["referral_code"], identity)
            if referrer_id:
                self.storage.push_to(self.storage.referrals, referrer_id, identity)

        account = Account(**data)
        logger.info("Created account %s (referred_by=%s)", identity, referrer_id)
        if code and referrer_id is None:
            logger.warning("Account %s signed up with unknown referral code %r", identity, referral_code)
            raise InvalidReferralCode(referral_code, account=account)
        return account, True

    def get(self, account_id: str) -> Account:
        with self.storage.reading():
            data = self.storage.accounts.get(account_id)
        if data is None:
            raise AccountNotFound(account_id)
        return Account(**data)

    def find_by_referral_code(self, code: str) -> Optional[Account]:
        code = normalize_referral_code(code)
        if not code:
            return None
        with self.storage.reading():
            account_id = self.storage.referral_index.get(code)
            data = self.storage.accounts.get(account_id) if account_id else None
        return Account(**data) if data else None

    def referred_accounts(self, account_id: str) -> list[Account]:
        with self.storage.reading():
            rows = [self.storage.accounts[i] for i in self.storage.referrals.get(account_id, [])]
        return [Account(**row) for row in rows]

    def refresh_balance_cache(self, account_id: str) -> Account:
        with self.storage.transaction():
            data = self.storage.accounts.get(account_id)
            if data is None:
                raise AccountNotFound(account_id)
            balance, version = self.ledger.balance_with_version(account_id)
            data = {**data, "cached_balance": balance, "balance_version": version}
            self.storage.put(self.storage.accounts, account_id, data)
        return Account(**data)

    def cached_balance(self, account_id: str) -> Optional[int]:
        """Cached balance, or None when the cache is missing or stale."""
        with self.storage.reading():
            data = self.storage.accounts.get(account_id)
            if data is None:
                raise AccountNotFound(account_id)
            if data["cached_balance"] is None:
                return None
            if data["balance_version"] != self.ledger.last_sequence(account_id):
                return None
            return data["cached_balance"]

    def _generate_code(self) -> str:
        while True:
            code = "".join(
                secrets.choice(REFERRAL_ALPHABET) for _ in range(self.settings.referral_code_length)
            )
            if code not in self.storage.referral_index:
                return code
