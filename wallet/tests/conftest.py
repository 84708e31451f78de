from decimal import Decimal
from uuid import uuid4

import pytest

from wallet.config import WalletSettings
from wallet.models import ManualAdjustmentRequest
from wallet.service import WalletService


@pytest.fixture
def settings():
    return WalletSettings(
        purchase_commission_rate=Decimal("0.30"),
        referral_signup_bonus=10,
        referred_signup_bonus=10,
        minimum_withdrawal=100,
        maximum_withdrawal=50_000,
        history_page_size=50,
    )


@pytest.fixture
def service(settings):
    return WalletService(settings=settings)


@pytest.fixture
def fund(service):
    """Credit an account through a manual adjustment."""

    def _fund(account_id, amount):
        return service.adjust(account_id, ManualAdjustmentRequest(
            adjustment_id=f"seed-{uuid4()}",
            amount=amount,
            note="Test funding",
            performed_by="tests",
        ))

    return _fund
