"""
Withdrawal lifecycle: RESERVED -> APPROVED -> COMPLETED, or RESERVED -> REJECTED.

Funds are debited when the request is made (WITHDRAWAL_RESERVE), so two
requests can never together exceed the balance. A rejection credits them
back (WITHDRAWAL_RELEASE); a completed payout only appends a zero-amount
WITHDRAWAL_SETTLED marker for the audit trail.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional, Union
from uuid import UUID, uuid4

from .accounts import AccountRegistry
from .config import WalletSettings, get_settings
from .errors import (
    AboveMaximum,
    BelowMinimum,
    IdempotencyConflict,
    InsufficientBalance,
    InvalidTransition,
    RejectionReasonRequired,
    WithdrawalNotFound,
)
from .ledger import LedgerStore, make_entry, parse_cursor
from .models import (
    EntryKind,
    WithdrawalDecision,
    WithdrawalMethod,
    WithdrawalPage,
    WithdrawalRequest,
    WithdrawalStatus,
)
from .storage import AccountLocks, InMemoryStorage

logger = logging.getLogger(__name__)


class WithdrawalStateMachine:
    def __init__(
        self,
        storage: InMemoryStorage,
        registry: AccountRegistry,
        ledger: LedgerStore,
        locks: AccountLocks,
        settings: Optional[WalletSettings] = None,
    ):
        self.storage = storage
        self.registry = registry
        self.ledger = ledger
        self.locks = locks
        self.settings = settings or get_settings()

    def request(
        self,
        account_id: str,
        amount: int,
        method: Union[WithdrawalMethod, str],
        payout_details: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> WithdrawalRequest:
        method = WithdrawalMethod(method)
        self.registry.get(account_id)

        if amount < self.settings.minimum_withdrawal:
            raise BelowMinimum(amount, self.settings.minimum_withdrawal)
        if amount > self.settings.maximum_withdrawal:
            raise AboveMaximum(amount, self.settings.maximum_withdrawal)

        with self.locks.hold(account_id):
            if idempotency_key:
                existing = self._find_by_key(account_id, idempotency_key)
                if existing is not None:
                    if existing.amount != amount or existing.method != method:
                        raise IdempotencyConflict(
                            f"Idempotency key {idempotency_key!r} was already used for a different withdrawal"
                        )
                    logger.debug("Withdrawal replay for key %s returns %s", idempotency_key, existing.id)
                    return existing

            balance = self.ledger.balance_of(account_id)
            if amount > balance:
                raise InsufficientBalance(account_id, balance, amount)

            request_id = uuid4()
            data = {
                "id": request_id,
                "account_id": account_id,
                "amount": amount,
                "method": method,
                "payout_details": dict(payout_details or {}),
                "status": WithdrawalStatus.REQUESTED,
                "requested_at": datetime.now(timezone.utc),
                "decided_at": None,
                "completed_at": None,
                "decided_by": None,
                "rejection_reason": None,
                "external_transaction_id": None,
                "idempotency_key": idempotency_key,
            }

            # The request record and its reserve entry commit together or not at all.
            with self.storage.transaction():
                self.storage.put(self.storage.withdrawals, request_id, data)
                self.storage.push(self.storage.withdrawal_order, request_id)
                self.storage.push_to(self.storage.account_withdrawals, account_id, request_id)
                if idempotency_key:
                    self.storage.put(self.storage.withdrawal_keys, (account_id, idempotency_key), request_id)
                self.ledger.append(make_entry(
                    account_id,
                    -amount,
                    EntryKind.WITHDRAWAL_RESERVE,
                    request_id,
                    description=f"Withdrawal via {method.value} reserved",
                    metadata={"method": method.value},
                ))
                data = {**data, "status": WithdrawalStatus.RESERVED}
                self.storage.put(self.storage.withdrawals, request_id, data)

            self.registry.refresh_balance_cache(account_id)

        logger.info("Withdrawal %s of %d reserved on account %s", request_id, amount, account_id)
        return WithdrawalRequest(**data)

    def decide(
        self,
        request_id: Union[UUID, str],
        decision: Union[WithdrawalDecision, str],
        reason: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> WithdrawalRequest:
        decision = WithdrawalDecision(decision)
        withdrawal = self.get(request_id)
        with self.locks.hold(withdrawal.account_id):
            with self.storage.transaction():
                # Re-read under the account lock; another decision may have won.
                withdrawal = self.get(withdrawal.id)
                if not withdrawal.can_decide():
                    logger.warning(
                        "Rejected %s on withdrawal %s in %s state",
                        decision.value, withdrawal.id, withdrawal.status.value,
                    )
                    raise InvalidTransition(
                        f"Cannot {decision.value.lower()} withdrawal in {withdrawal.status.value} state"
                    )
                if decision == WithdrawalDecision.REJECT and not (reason and reason.strip()):
                    raise RejectionReasonRequired("A rejection reason is required")

                now = datetime.now(timezone.utc)
                update = {"decided_at": now, "decided_by": performed_by}
                if decision == WithdrawalDecision.REJECT:
                    self.ledger.append(make_entry(
                        withdrawal.account_id,
                        withdrawal.amount,
                        EntryKind.WITHDRAWAL_RELEASE,
                        withdrawal.id,
                        description=f"Withdrawal rejected: {reason}",
                        metadata={"reason": reason, "performed_by": performed_by},
                    ))
                    update.update(status=WithdrawalStatus.REJECTED, rejection_reason=reason)
                else:
                    update.update(status=WithdrawalStatus.APPROVED)

                data = {**self.storage.withdrawals[withdrawal.id], **update}
                self.storage.put(self.storage.withdrawals, withdrawal.id, data)

            if decision == WithdrawalDecision.REJECT:
                self.registry.refresh_balance_cache(withdrawal.account_id)

        logger.info("Withdrawal %s %s by %s", withdrawal.id, data["status"].value, performed_by or "admin")
        return WithdrawalRequest(**data)

    def confirm_completion(self, request_id: Union[UUID, str], external_transaction_id: str) -> WithdrawalRequest:
        withdrawal = self.get(request_id)
        with self.locks.hold(withdrawal.account_id):
            with self.storage.transaction():
                withdrawal = self.get(withdrawal.id)
                if not withdrawal.can_complete():
                    logger.warning(
                        "Payout confirmation for withdrawal %s in %s state",
                        withdrawal.id, withdrawal.status.value,
                    )
                    raise InvalidTransition(
                        f"Cannot complete withdrawal in {withdrawal.status.value} state"
                    )

                self.ledger.append(make_entry(
                    withdrawal.account_id,
                    0,
                    EntryKind.WITHDRAWAL_SETTLED,
                    withdrawal.id,
                    description=f"Withdrawal paid out via {withdrawal.method.value}",
                    metadata={
                        "amount": withdrawal.amount,
                        "external_transaction_id": external_transaction_id,
                    },
                ))
                data = {
                    **self.storage.withdrawals[withdrawal.id],
                    "status": WithdrawalStatus.COMPLETED,
                    "completed_at": datetime.now(timezone.utc),
                    "external_transaction_id": external_transaction_id,
                }
                self.storage.put(self.storage.withdrawals, withdrawal.id, data)

            self.registry.refresh_balance_cache(withdrawal.account_id)

        logger.info("Withdrawal %s completed (external txn %s)", withdrawal.id, external_transaction_id)
        return WithdrawalRequest(**data)

    def get(self, request_id: Union[UUID, str]) -> WithdrawalRequest:
        try:
            key = request_id if isinstance(request_id, UUID) else UUID(str(request_id))
        except ValueError:
            raise WithdrawalNotFound(request_id)
        with self.storage.reading():
            data = self.storage.withdrawals.get(key)
        if data is None:
            raise WithdrawalNotFound(request_id)
        return WithdrawalRequest(**data)

    def list_withdrawals(
        self,
        account_id: Optional[str] = None,
        statuses: Optional[Iterable[WithdrawalStatus]] = None,
        cursor: Optional[str] = None,
        limit: int = 50,
    ) -> WithdrawalPage:
        """Newest-first page of withdrawals, optionally for one account.

        The cursor is a position in the listed sequence (the account's own
        requests when ``account_id`` is given), so it is only valid with the
        same ``account_id``.
        """
        before = parse_cursor(cursor)
        limit = max(limit, 1)
        wanted = {WithdrawalStatus(s) for s in statuses} if statuses else None
        with self.storage.reading():
            if account_id is not None:
                order = self.storage.account_withdrawals.get(account_id, [])
            else:
                order = self.storage.withdrawal_order
            end = len(order)
            if before is not None:
                end = min(end, before)
            page = []
            next_cursor = None
            for position in range(end - 1, -1, -1):
                row = self.storage.withdrawals[order[position]]
                if wanted is not None and row["status"] not in wanted:
                    continue
                if len(page) == limit:
                    next_cursor = str(position + 1)
                    break
                page.append(WithdrawalRequest(**row))
        return WithdrawalPage(withdrawals=page, next_cursor=next_cursor)

    def _find_by_key(self, account_id: str, idempotency_key: str) -> Optional[WithdrawalRequest]:
        with self.storage.reading():
            request_id = self.storage.withdrawal_keys.get((account_id, idempotency_key))
            data = self.storage.withdrawals.get(request_id) if request_id else None
        return WithdrawalRequest(**data) if data else None
