"""
In-memory storage backing the wallet.

All tables live on one ``InMemoryStorage``. Writes go through ``put`` and
``push`` inside ``transaction()``, which records an undo step for each
one; if the block raises, the steps are replayed in reverse so no partial
write survives. Readers take the same lock, so they never observe a
half-applied transaction.

The lock only covers index lookups and single-row writes. Running
balances, referral lists and withdrawal lists are kept per account, so
no critical section scans a whole table. Business logic is serialized
per account with ``AccountLocks``.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator
from uuid import UUID

from .errors import StoreUnavailable

logger = logging.getLogger(__name__)


class InMemoryStorage:
    def __init__(self, lock_timeout: float = 5.0):
        self.accounts: dict[str, dict] = {}
        self.referral_index: dict[str, str] = {}
        self.referrals: dict[str, list[str]] = {}
        self.ledger_entries: dict[UUID, dict] = {}
        self.account_entries: dict[str, list[UUID]] = {}
        self.balances: dict[str, int] = {}
        self.entry_index: dict[tuple, UUID] = {}
        self.withdrawals: dict[UUID, dict] = {}
        self.withdrawal_order: list[UUID] = []
        self.account_withdrawals: dict[str, list[UUID]] = {}
        self.withdrawal_keys: dict[tuple[str, str], UUID] = {}

        self._sequence = 0
        self._lock = threading.RLock()
        self._lock_timeout = lock_timeout
        self._local = threading.local()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self._lock_timeout):
            raise StoreUnavailable(f"Ledger store busy for more than {self._lock_timeout}s")
        journal = getattr(self._local, "journal", None)
        outermost = journal is None
        if outermost:
            journal = []
            self._local.journal = journal
        try:
            yield
        except BaseException:
            if outermost and journal:
                logger.debug("Rolling back %d storage writes", len(journal))
                for undo in reversed(journal):
                    undo()
            raise
        finally:
            if outermost:
                self._local.journal = None
            self._lock.release()

    @contextmanager
    def reading(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self._lock_timeout):
            raise StoreUnavailable(f"Ledger store busy for more than {self._lock_timeout}s")
        try:
            yield
        finally:
            self._lock.release()

    def next_sequence(self) -> int:
        # Gaps left by rolled back transactions are fine.
        self._require_transaction()
        self._sequence += 1
        return self._sequence

    def put(self, table: dict, key, value) -> None:
        self._require_transaction()
        missing = key not in table
        previous = table.get(key)
        table[key] = value

        def undo():
            if missing:
                table.pop(key, None)
            else:
                table[key] = previous

        self._local.journal.append(undo)

    def push(self, items: list, value) -> None:
        self._require_transaction()
        items.append(value)
        self._local.journal.append(items.pop)

    def push_to(self, table: dict[str, list], key: str, value) -> None:
        if key not in table:
            self.put(table, key, [])
        self.push(table[key], value)

    def _require_transaction(self) -> None:
        if getattr(self._local, "journal", None) is None:
            raise RuntimeError("Storage writes must happen inside transaction()")


class AccountLocks:
    """One re-entrant lock per account id, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def for_account(self, account_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = self._locks[account_id] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, *account_ids: str) -> Iterator[None]:
        # Sorted acquisition order keeps multi-account holds deadlock free.
        locks = [self.for_account(a) for a in sorted(set(account_ids))]
        acquired: list[threading.RLock] = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
