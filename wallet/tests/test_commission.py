"""
Unit Tests for the Commission Engine

Tests cover:
1. Purchase commission credit and rounding
2. Exactly-once crediting under replays
3. Buyers without a referrer
4. Signup bonus as a separate policy
"""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from wallet.config import WalletSettings
from wallet.errors import AccountNotFound, InvalidAmount
from wallet.models import EntryKind, PurchaseCompletedEvent
from wallet.service import WalletService


@pytest.fixture
def referral_pair(service):
    referrer = service.register("uid-referrer").account
    buyer = service.register("uid-buyer", referrer.referral_code).account
    return referrer, buyer


class TestPurchaseCommission:
    """Tests for on_purchase_completed."""

    def test_commission_credited_to_referrer(self, service, referral_pair, fund):
        """Test 30% of a 500 purchase credits 150 and leaves the buyer alone."""
        fund("uid-buyer", 1000)
        referrer_before = service.ledger.balance_of("uid-referrer")
        buyer_before = service.ledger.balance_of("uid-buyer")

        entry = service.commissions.on_purchase_completed("purchase-1", "uid-buyer", 500)

        assert entry.kind == EntryKind.PURCHASE_COMMISSION
        assert entry.amount == 150
        assert entry.account_id == "uid-referrer"
        assert entry.related_entity_id == "purchase-1"
        assert service.ledger.balance_of("uid-referrer") == referrer_before + 150
        assert service.ledger.balance_of("uid-buyer") == buyer_before

    def test_commission_rounds_down(self, service, referral_pair):
        """Test that fractional commission is floored."""
        entry = service.commissions.on_purchase_completed("purchase-1", "uid-buyer", 333)

        # 333 * 0.30 = 99.9
        assert entry.amount == 99

    def test_replay_credits_once(self, service, referral_pair):
        """Test that replaying the same purchase id yields one entry."""
        first = service.commissions.on_purchase_completed("purchase-1", "uid-buyer", 500)
        balance_after_first = service.ledger.balance_of("uid-referrer")

        for _ in range(5):
            replay = service.commissions.on_purchase_completed("purchase-1", "uid-buyer", 500)
            assert replay.id == first.id

        commissions = service.ledger.entries("uid-referrer", kinds=[EntryKind.PURCHASE_COMMISSION])
        assert len(commissions) == 1
        assert service.ledger.balance_of("uid-referrer") == balance_after_first

    def test_concurrent_replays_credit_once(self, service, referral_pair):
        """Test at-least-once delivery racing on the same purchase id."""
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(
                lambda _: service.commissions.on_purchase_completed("purchase-1", "uid-buyer", 500),
                range(20),
            ))

        assert len({r.id for r in results}) == 1
        commissions = service.ledger.entries("uid-referrer", kinds=[EntryKind.PURCHASE_COMMISSION])
        assert len(commissions) == 1

    def test_distinct_purchases_accumulate(self, service, referral_pair):
        """Test that different purchase ids each earn commission."""
        service.commissions.on_purchase_completed("purchase-1", "uid-buyer", 500)
        service.commissions.on_purchase_completed("purchase-2", "uid-buyer", 1000)

        commissions = service.ledger.entries("uid-referrer", kinds=[EntryKind.PURCHASE_COMMISSION])
        assert sum(e.amount for e in commissions) == 450

    def test_buyer_without_referrer_is_noop(self, service):
        """Test that no commission is paid when nobody referred the buyer."""
        service.register("uid-solo")

        assert service.commissions.on_purchase_completed("purchase-1", "uid-solo", 500) is None
        assert service.ledger.find(EntryKind.PURCHASE_COMMISSION, "purchase-1") is None

    def test_unknown_buyer_fails(self, service):
        """Test that an unknown buyer raises AccountNotFound."""
        with pytest.raises(AccountNotFound):
            service.commissions.on_purchase_completed("purchase-1", "uid-ghost", 500)

    def test_negative_amount_rejected(self, service, referral_pair):
        """Test that a negative purchase amount is refused."""
        with pytest.raises(InvalidAmount):
            service.commissions.on_purchase_completed("purchase-1", "uid-buyer", -5)

    def test_zero_commission_not_recorded(self, service, referral_pair):
        """Test that a purchase too small to earn anything writes no entry."""
        assert service.commissions.on_purchase_completed("purchase-1", "uid-buyer", 3) is None
        assert service.ledger.find(EntryKind.PURCHASE_COMMISSION, "purchase-1") is None

    def test_cache_refreshed_after_credit(self, service, referral_pair):
        """Test that the referrer's cached balance is current after a credit."""
        service.commissions.on_purchase_completed("purchase-1", "uid-buyer", 500)

        assert service.accounts.cached_balance("uid-referrer") == service.ledger.balance_of("uid-referrer")

    def test_event_facade(self, service, referral_pair):
        """Test the PurchaseCompleted event entry point."""
        entry = service.handle_purchase_completed(PurchaseCompletedEvent(
            purchase_id="purchase-9", buyer_account_id="uid-buyer", amount=1000,
        ))

        assert entry.amount == 300


class TestSignupBonus:
    """Tests for on_signup_completed."""

    def test_signup_bonus_uses_its_own_kinds(self, service, referral_pair):
        """Test that signup bonuses are not recorded as purchase commission."""
        referrer_entries = service.ledger.entries("uid-referrer")
        buyer_entries = service.ledger.entries("uid-buyer")

        assert [e.kind for e in referrer_entries] == [EntryKind.REFERRAL_SIGNUP_BONUS]
        assert [e.kind for e in buyer_entries] == [EntryKind.REFERRED_SIGNUP_BONUS]

    def test_signup_bonus_idempotent(self, service, referral_pair):
        """Test that re-running the signup hook pays nothing extra."""
        service.commissions.on_signup_completed("uid-buyer")
        service.commissions.on_signup_completed("uid-buyer")

        assert service.ledger.balance_of("uid-referrer") == 10
        assert service.ledger.balance_of("uid-buyer") == 10

    def test_policies_configured_independently(self):
        """Test that the signup bonus and commission rate are separate settings."""
        service = WalletService(settings=WalletSettings(
            purchase_commission_rate=Decimal("0.10"),
            referral_signup_bonus=25,
            referred_signup_bonus=0,
        ))
        referrer = service.register("uid-referrer").account
        service.register("uid-buyer", referrer.referral_code)

        service.commissions.on_purchase_completed("purchase-1", "uid-buyer", 500)

        assert service.ledger.balance_of("uid-referrer") == 25 + 50
        assert service.ledger.balance_of("uid-buyer") == 0

    def test_no_bonus_without_referrer(self, service):
        """Test that unreferred accounts get no signup bonus."""
        service.register("uid-solo")

        assert service.commissions.on_signup_completed("uid-solo") == []
