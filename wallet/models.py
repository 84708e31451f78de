from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class EntryKind(str, Enum):
    PURCHASE_COMMISSION = "PURCHASE_COMMISSION"
    REFERRAL_SIGNUP_BONUS = "REFERRAL_SIGNUP_BONUS"
    REFERRED_SIGNUP_BONUS = "REFERRED_SIGNUP_BONUS"
    WITHDRAWAL_RESERVE = "WITHDRAWAL_RESERVE"
    WITHDRAWAL_RELEASE = "WITHDRAWAL_RELEASE"
    WITHDRAWAL_SETTLED = "WITHDRAWAL_SETTLED"
    MANUAL_ADJUSTMENT = "MANUAL_ADJUSTMENT"


EARNING_KINDS = frozenset({
    EntryKind.PURCHASE_COMMISSION,
    EntryKind.REFERRAL_SIGNUP_BONUS,
})


class WithdrawalStatus(str, Enum):
    REQUESTED = "REQUESTED"
    RESERVED = "RESERVED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    COMPLETED = "COMPLETED"


PENDING_STATUSES = frozenset({WithdrawalStatus.RESERVED, WithdrawalStatus.APPROVED})


class WithdrawalMethod(str, Enum):
    BANK = "bank"
    UPI = "upi"
    PAYTM = "paytm"
    PAYPAL = "paypal"
    CRYPTO = "crypto"


class WithdrawalDecision(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class Account(BaseModel):
    id: str
    referral_code: str
    referred_by: Optional[str] = None
    created_at: datetime
    cached_balance: Optional[int] = None
    balance_version: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class LedgerEntry(BaseModel):
    id: UUID
    account_id: str
    amount: int
    kind: EntryKind
    related_entity_id: str
    description: str = ""
    created_at: datetime
    sequence: int = 0
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True, frozen=True)


class WithdrawalRequest(BaseModel):
    id: UUID
    account_id: str
    amount: int
    method: WithdrawalMethod
    payout_details: dict = Field(default_factory=dict)
    status: WithdrawalStatus
    requested_at: datetime
    decided_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    external_transaction_id: Optional[str] = None
    idempotency_key: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    def can_decide(self) -> bool:
        return self.status == WithdrawalStatus.RESERVED

    def can_complete(self) -> bool:
        return self.status == WithdrawalStatus.APPROVED


# Inbound requests / events

class RegisterAccountRequest(BaseModel):
    identity: str = Field(..., min_length=1, description="Identity issued by the auth provider")
    referral_code: Optional[str] = None


class PurchaseCompletedEvent(BaseModel):
    purchase_id: str = Field(..., min_length=1, description="Stable id of the verified purchase")
    buyer_account_id: str
    amount: int = Field(..., ge=0)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "purchase_id": "purchase-2024-0042",
            "buyer_account_id": "firebase-uid-123",
            "amount": 500
        }
    })


class CreateWithdrawalRequest(BaseModel):
    amount: int
    method: WithdrawalMethod
    payout_details: dict = Field(default_factory=dict)
    idempotency_key: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "amount": 1000,
            "method": "upi",
            "payout_details": {"upi_id": "yourname@paytm"},
            "idempotency_key": "withdraw-2024-05-01-a"
        }
    })


class WithdrawalDecisionEvent(BaseModel):
    decision: WithdrawalDecision
    reason: Optional[str] = None
    performed_by: Optional[str] = None


class PayoutConfirmedEvent(BaseModel):
    external_transaction_id: str = Field(..., min_length=1)


class ManualAdjustmentRequest(BaseModel):
    adjustment_id: str = Field(..., min_length=1, description="Unique key to prevent duplicates")
    amount: int
    note: str = Field(..., min_length=1)
    performed_by: Optional[str] = None


# Projections

class AccountBalance(BaseModel):
    account_id: str
    currency: str
    current_balance: int
    pending_withdrawals: int


class LedgerPage(BaseModel):
    account_id: str
    entries: list[LedgerEntry]
    next_cursor: Optional[str] = None


class WithdrawalPage(BaseModel):
    withdrawals: list[WithdrawalRequest]
    next_cursor: Optional[str] = None


class ReferralStats(BaseModel):
    account_id: str
    referral_code: str
    total_referrals: int
    total_earnings: int
    today_earnings: int
    currency: str


class AccountResponse(BaseModel):
    account: Account
    created: bool
    warnings: list[str] = Field(default_factory=list)
