"""
Append-only ledger of balance-affecting entries.

The ledger is the only source of truth for money: an account's balance is
the sum of its entries. Two invariants are enforced here, at the storage
boundary:

- at most one entry per (kind, related_entity_id)
- no append may take an account's balance below zero
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Iterator, Optional
from uuid import uuid4

from .errors import DuplicateEntry, InsufficientBalance, InvalidCursor
from .models import EntryKind, LedgerEntry, LedgerPage
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


def make_entry(
    account_id: str,
    amount: int,
    kind: EntryKind,
    related_entity_id: str,
    description: str = "",
    metadata: Optional[dict] = None,
) -> LedgerEntry:
    return LedgerEntry(
        id=uuid4(),
        account_id=account_id,
        amount=amount,
        kind=kind,
        related_entity_id=str(related_entity_id),
        description=description,
        created_at=datetime.now(timezone.utc),
        metadata=metadata or {},
    )


def parse_cursor(cursor: Optional[str]) -> Optional[int]:
    if cursor is None or cursor == "":
        return None
    try:
        value = int(cursor)
    except (TypeError, ValueError):
        raise InvalidCursor(f"Invalid cursor: {cursor!r}")
    if value < 0:
        raise InvalidCursor(f"Invalid cursor: {cursor!r}")
    return value


class LedgerStore:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        key = (entry.kind, entry.related_entity_id)
        with self.storage.transaction():
            existing_id = self.storage.entry_index.get(key)
            if existing_id is not None:
                raise DuplicateEntry(
                    entry.kind, entry.related_entity_id,
                    existing=LedgerEntry(**self.storage.ledger_entries[existing_id]),
                )

            balance = self._balance(entry.account_id)
            if balance + entry.amount < 0:
                raise InsufficientBalance(entry.account_id, balance, -entry.amount)

            stored = entry.model_copy(update={"sequence": self.storage.next_sequence()})
            self.storage.put(self.storage.ledger_entries, stored.id, stored.model_dump())
            self.storage.put(self.storage.entry_index, key, stored.id)
            self.storage.put(self.storage.balances, stored.account_id, balance + stored.amount)
            self.storage.push_to(self.storage.account_entries, stored.account_id, stored.id)

        logger.info(
            "Ledger %s %+d on account %s (related %s, seq %d)",
            stored.kind.value, stored.amount, stored.account_id,
            stored.related_entity_id, stored.sequence,
        )
        return stored

    def balance_of(self, account_id: str) -> int:
        with self.storage.reading():
            return self._balance(account_id)

    def balance_with_version(self, account_id: str) -> tuple[int, Optional[int]]:
        """Balance together with the sequence of the last entry it includes."""
        with self.storage.reading():
            return self._balance(account_id), self._last_sequence(account_id)

    def last_sequence(self, account_id: str) -> Optional[int]:
        with self.storage.reading():
            return self._last_sequence(account_id)

    def find(self, kind: EntryKind, related_entity_id: str) -> Optional[LedgerEntry]:
        with self.storage.reading():
            entry_id = self.storage.entry_index.get((kind, str(related_entity_id)))
            if entry_id is None:
                return None
            return LedgerEntry(**self.storage.ledger_entries[entry_id])

    def entries(self, account_id: str, kinds: Optional[Iterable[EntryKind]] = None) -> list[LedgerEntry]:
        wanted = set(kinds) if kinds is not None else None
        with self.storage.reading():
            ids = list(self.storage.account_entries.get(account_id, []))
        rows = [self.storage.ledger_entries[entry_id] for entry_id in ids]
        return [
            LedgerEntry(**row) for row in rows
            if wanted is None or row["kind"] in wanted
        ]

    def history(self, account_id: str, cursor: Optional[str] = None, limit: int = 50) -> LedgerPage:
        """Newest-first page of entries.

        ``cursor`` is the ``next_cursor`` of the previous page; entries older
        than it are returned.
        """
        before = parse_cursor(cursor)
        limit = max(limit, 1)
        with self.storage.reading():
            ids = list(self.storage.account_entries.get(account_id, []))

        # Committed entries are never modified, so the scan runs outside the lock.
        page = []
        has_more = False
        for entry_id in reversed(ids):
            row = self.storage.ledger_entries[entry_id]
            if before is not None and row["sequence"] >= before:
                continue
            if len(page) == limit:
                has_more = True
                break
            page.append(LedgerEntry(**row))

        next_cursor = str(page[-1].sequence) if has_more and page else None
        return LedgerPage(account_id=account_id, entries=page, next_cursor=next_cursor)

    def iter_history(self, account_id: str, page_size: int = 50) -> Iterator[LedgerEntry]:
        cursor = None
        while True:
            page = self.history(account_id, cursor=cursor, limit=page_size)
            yield from page.entries
            if page.next_cursor is None:
                return
            cursor = page.next_cursor

    def recompute_balance(self, account_id: str) -> int:
        """Sum of every entry for the account, independent of the running total."""
        with self.storage.reading():
            ids = list(self.storage.account_entries.get(account_id, []))
        return sum(self.storage.ledger_entries[entry_id]["amount"] for entry_id in ids)

    def _balance(self, account_id: str) -> int:
        return self.storage.balances.get(account_id, 0)

    def _last_sequence(self, account_id: str) -> Optional[int]:
        ids = self.storage.account_entries.get(account_id)
        if not ids:
            return None
        return self.storage.ledger_entries[ids[-1]]["sequence"]
