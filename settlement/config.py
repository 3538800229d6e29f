from decimal import Decimal
from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SpecialAccessScope(str, Enum):
    ANY = "any"
    PACKAGE = "package"


class Settings(BaseSettings):
    """Runtime configuration for the settlement service."""

    model_config = SettingsConfigDict(
        env_prefix="SETTLEMENT_",
        env_file=".env",
        extra="ignore",
    )

    cashback_percent: Decimal = Field(default=Decimal("10"), ge=0, le=100)
    default_commission_percent: Decimal = Field(default=Decimal("58"), gt=0, le=100)
    # "any" applies an active override to every purchase the referrer brings in
    special_access_scope: SpecialAccessScope = SpecialAccessScope.ANY

    minimum_withdrawal_amount: Decimal = Field(default=Decimal("400"), ge=0)
    leaderboard_limit: int = Field(default=10, gt=0)
    timezone: str = "Asia/Kolkata"

    monthly_target_goal: Decimal = Field(default=Decimal("30000"), gt=0)
    monthly_target_prize: str = "T-Shirt + Gift Hamper"

    cas_retries: int = Field(default=3, ge=1)

    notification_url: Optional[str] = None
    notification_timeout: float = Field(default=5.0, gt=0)

    log_level: str = "INFO"
    log_json: bool = False


@lru_cache
def get_settings() -> Settings:
    return Settings()
