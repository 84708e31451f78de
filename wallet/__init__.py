"""
Wallet Ledger for Referral Commissions and Withdrawals

This module provides:
- Append-only ledger; balances are derived from entries and never negative
- Exactly-once referral commission per purchase and signup bonus per referral
- Withdrawal lifecycle: reserved → approved → completed / rejected
- Per-account serialization of every money movement
- Read-only balance, history and withdrawal projections
"""

from .models import (
    EntryKind,
    WithdrawalStatus,
    WithdrawalMethod,
    WithdrawalDecision,
    Account,
    LedgerEntry,
    WithdrawalRequest,
)
from .service import WalletService

__all__ = [
    "EntryKind",
    "WithdrawalStatus",
    "WithdrawalMethod",
    "WithdrawalDecision",
    "Account",
    "LedgerEntry",
    "WithdrawalRequest",
    "WalletService",
]
