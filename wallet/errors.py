class WalletError(Exception):
    pass


class InvalidAmount(WalletError):
    pass


class InsufficientBalance(WalletError):
    def __init__(self, account_id: str, available: int, requested: int):
        super().__init__(
            f"Insufficient balance on account {account_id}: available {available}, requested {requested}"
        )
        self.account_id = account_id
        self.available = available
        self.requested = requested


class BelowMinimum(WalletError):
    def __init__(self, amount: int, minimum: int):
        super().__init__(f"Minimum withdrawal amount is {minimum}, got {amount}")
        self.amount = amount
        self.minimum = minimum


class AboveMaximum(WalletError):
    def __init__(self, amount: int, maximum: int):
        super().__init__(f"Maximum withdrawal amount is {maximum}, got {amount}")
        self.amount = amount
        self.maximum = maximum


class AccountNotFound(WalletError):
    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} not found")
        self.account_id = account_id


class WithdrawalNotFound(WalletError):
    def __init__(self, request_id):
        super().__init__(f"Withdrawal request {request_id} not found")
        self.request_id = request_id


class InvalidReferralCode(WalletError):
    """Raised after the account was created without a referrer.

    ``account`` holds the account that was created anyway.
    """

    def __init__(self, code: str, account=None):
        super().__init__(f"Invalid referral code: {code}")
        self.code = code
        self.account = account


class InvalidTransition(WalletError):
    pass


class DuplicateEntry(WalletError):
    def __init__(self, kind, related_entity_id: str, existing=None):
        super().__init__(f"Ledger entry {kind.value} for {related_entity_id} already exists")
        self.kind = kind
        self.related_entity_id = related_entity_id
        self.existing = existing


class IdempotencyConflict(WalletError):
    pass


class StoreUnavailable(WalletError):
    pass


class InvalidCursor(WalletError):
    pass


class RejectionReasonRequired(WalletError):
    pass
