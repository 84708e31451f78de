"""
Wallet configuration using Pydantic Settings.

Every value can be overridden with a ``WALLET_``-prefixed environment
variable, e.g. ``WALLET_MINIMUM_WITHDRAWAL=200``.
"""

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class WalletSettings(BaseSettings):
    currency: str = "INR"

    # Commission policies
    purchase_commission_rate: Decimal = Field(default=Decimal("0.30"), ge=0, le=1)
    referral_signup_bonus: int = Field(default=10, ge=0)
    referred_signup_bonus: int = Field(default=10, ge=0)

    # Withdrawals
    minimum_withdrawal: int = Field(default=100, gt=0)
    maximum_withdrawal: int = Field(default=50_000, gt=0)

    # Accounts / queries
    referral_code_length: int = Field(default=9, ge=4)
    history_page_size: int = Field(default=50, gt=0)
    max_page_size: int = Field(default=200, gt=0)

    # Storage
    store_lock_timeout_seconds: float = Field(default=5.0, gt=0)

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="WALLET_", env_file=".env", extra="ignore")


@lru_cache()
def get_settings() -> WalletSettings:
    return WalletSettings()


def configure_logging(settings: Optional[WalletSettings] = None) -> None:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
