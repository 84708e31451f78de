"""
Unit Tests for the Account Registry

Tests cover:
1. Account creation and referral code issuance
2. Referral capture at creation time
3. Graceful handling of unknown referral codes
4. Balance cache refresh and staleness
"""

import pytest

from wallet.errors import AccountNotFound, InvalidReferralCode, StoreUnavailable
from wallet.ledger import make_entry
from wallet.models import EntryKind


class TestGetOrCreate:
    """Tests for get_or_create."""

    def test_creates_account_with_referral_code(self, service, settings):
        """Test that a new account gets a fresh uppercase code."""
        account, created = service.accounts.get_or_create("uid-alice")

        assert created is True
        assert account.id == "uid-alice"
        assert account.referred_by is None
        assert len(account.referral_code) == settings.referral_code_length
        assert account.referral_code == account.referral_code.upper()

    def test_second_call_returns_same_account(self, service):
        """Test that the referral code is never regenerated."""
        first, _ = service.accounts.get_or_create("uid-alice")
        second, created = service.accounts.get_or_create("uid-alice")

        assert created is False
        assert second.referral_code == first.referral_code

    def test_referral_codes_are_unique(self, service):
        """Test that every account gets its own code."""
        codes = {service.accounts.get_or_create(f"uid-{i}")[0].referral_code for i in range(200)}

        assert len(codes) == 200

    def test_referred_by_captured_from_code(self, service):
        """Test that a valid referral code links the new account."""
        referrer, _ = service.accounts.get_or_create("uid-referrer")

        account, created = service.accounts.get_or_create("uid-new", referrer.referral_code.lower())

        assert created is True
        assert account.referred_by == "uid-referrer"

    def test_referred_by_never_mutated(self, service):
        """Test that a later referral code does not relink an existing account."""
        service.accounts.get_or_create("uid-new")
        referrer, _ = service.accounts.get_or_create("uid-referrer")

        account, created = service.accounts.get_or_create("uid-new", referrer.referral_code)

        assert created is False
        assert account.referred_by is None

    def test_invalid_code_still_creates_account(self, service):
        """Test that a garbage code raises but the account exists without a referrer."""
        with pytest.raises(InvalidReferralCode) as exc_info:
            service.accounts.get_or_create("uid-new", "NOSUCHCODE")

        assert exc_info.value.account.id == "uid-new"
        assert exc_info.value.account.referred_by is None
        assert service.accounts.get("uid-new").referred_by is None

    def test_blank_code_is_ignored(self, service):
        """Test that an empty referral code is treated as none."""
        account, created = service.accounts.get_or_create("uid-new", "   ")

        assert created is True
        assert account.referred_by is None

    def test_find_by_referral_code(self, service):
        """Test lookups by code are case-insensitive."""
        account, _ = service.accounts.get_or_create("uid-alice")

        assert service.accounts.find_by_referral_code(account.referral_code.lower()).id == "uid-alice"
        assert service.accounts.find_by_referral_code("MISSING00") is None

    def test_get_unknown_account(self, service):
        """Test that unknown accounts raise AccountNotFound."""
        with pytest.raises(AccountNotFound):
            service.accounts.get("uid-ghost")


class TestRegister:
    """Tests for the registration facade."""

    def test_register_with_referral_pays_signup_bonuses(self, service):
        """Test that both sides of a referral get the signup bonus."""
        referrer = service.register("uid-referrer").account

        response = service.register("uid-new", referrer.referral_code)

        assert response.created is True
        assert response.warnings == []
        assert service.queries.current_balance("uid-referrer") == 10
        assert service.queries.current_balance("uid-new") == 10

    def test_register_with_invalid_code_returns_warning(self, service):
        """Test that registration succeeds and reports the bad code."""
        response = service.register("uid-new", "BADCODE99")

        assert response.created is True
        assert response.account.referred_by is None
        assert "Invalid referral code" in response.warnings[0]
        assert service.queries.current_balance("uid-new") == 0

    def test_register_twice_pays_bonus_once(self, service):
        """Test that a repeated registration does not pay again."""
        referrer = service.register("uid-referrer").account
        service.register("uid-new", referrer.referral_code)

        service.register("uid-new", referrer.referral_code)

        assert service.queries.current_balance("uid-referrer") == 10

    def test_retried_register_pays_bonuses_after_store_failure(self, service, monkeypatch):
        """Test that a registration retried after a store outage still pays both bonuses."""
        referrer = service.register("uid-referrer").account
        real_append = service.ledger.append
        calls = []

        def flaky_append(entry):
            calls.append(entry)
            if len(calls) == 1:
                raise StoreUnavailable("Ledger store busy")
            return real_append(entry)

        monkeypatch.setattr(service.ledger, "append", flaky_append)

        with pytest.raises(StoreUnavailable):
            service.register("uid-new", referrer.referral_code)
        assert service.ledger.balance_of("uid-referrer") == 0

        response = service.register("uid-new", referrer.referral_code)

        assert response.created is False
        assert response.account.referred_by == "uid-referrer"
        assert service.ledger.balance_of("uid-referrer") == 10
        assert service.ledger.balance_of("uid-new") == 10


class TestBalanceCache:
    """Tests for the cached balance."""

    def test_refresh_recomputes_from_ledger(self, service, fund):
        """Test that refresh_balance_cache matches the ledger."""
        service.accounts.get_or_create("uid-alice")
        fund("uid-alice", 700)

        account = service.accounts.refresh_balance_cache("uid-alice")

        assert account.cached_balance == 700
        assert account.balance_version == service.ledger.last_sequence("uid-alice")

    def test_cache_reports_stale_after_direct_append(self, service, fund):
        """Test that an append without refresh makes the cache stale."""
        service.accounts.get_or_create("uid-alice")
        fund("uid-alice", 700)
        assert service.accounts.cached_balance("uid-alice") == 700

        service.ledger.append(make_entry("uid-alice", 50, EntryKind.MANUAL_ADJUSTMENT, "direct-1"))

        assert service.accounts.cached_balance("uid-alice") is None

    def test_refresh_unknown_account(self, service):
        """Test refreshing a missing account fails."""
        with pytest.raises(AccountNotFound):
            service.accounts.refresh_balance_cache("uid-ghost")
