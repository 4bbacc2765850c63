import json
import os
from functools import lru_cache
from typing import Dict, List, Optional
from urllib.parse import quote_plus

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file="tokenapi/.env",
        env_file_encoding="utf-8",
        extra="allow",
    )
    # Application
    APP_NAME: str = "Token Ledger API"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    ALLOWED_ORIGINS: List[str] = Field(default_factory=lambda: ["*"])
    FRONTEND_URL: str = "http://localhost:3000"

    # Database
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USERNAME: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DATABASE: str = "postgres"

    # Takes precedence over POSTGRES_* when set
    DATABASE_URL: Optional[str] = None
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    @property
    def database_url(self) -> str:
        """Construct database URL from individual components"""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        encoded_password = quote_plus(self.POSTGRES_PASSWORD)
        return f"postgresql+psycopg2://{self.POSTGRES_USERNAME}:{encoded_password}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DATABASE}"

    # Security
    SECRET_KEY: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24
    PASSWORD_RESET_EXPIRE_HOURS: int = 24 * 7

    # Cron trigger endpoints (Authorization: Bearer <CRON_SECRET>)
    CRON_SECRET: str = ""

    # PhonePe
    PHONEPE_ENV: str = "sandbox"  # sandbox | production
    PHONEPE_CLIENT_ID: str = ""
    PHONEPE_CLIENT_SECRET: str = ""
    PHONEPE_CLIENT_VERSION: str = "1"
    PHONEPE_WEBHOOK_USERNAME: str = ""
    PHONEPE_WEBHOOK_PASSWORD: str = ""
    PHONEPE_ORDER_PREFIX: str = "ORD"
    PHONEPE_TOKEN_REFRESH_BUFFER_SECONDS: int = 300

    # Razorpay
    RAZORPAY_KEY_ID: str = ""
    RAZORPAY_KEY_SECRET: str = ""
    RAZORPAY_WEBHOOK_SECRET: str = ""

    PAYMENT_EXPIRE_AFTER_SECONDS: int = 900
    PAYMENT_CURRENCY: str = "INR"

    # Token policy
    DEFAULT_DAILY_TOKEN_LIMIT: int = 100
    RENEWAL_CARRYOVER_POLICY: str = "reset"  # reset | carry_over
    TOKEN_MUTATION_MAX_RETRIES: int = 3
    PRIZE_HISTORY_RETENTION_DAYS: int = 365
    TOKEN_HISTORY_PAGE_SIZE: int = 20

    # Referral milestones: active referrals -> prize tokens
    REFERRAL_MILESTONES: Dict[int, int] = Field(
        default_factory=lambda: {8: 300, 15: 500, 25: 1000}
    )

    # Timezone used for the "once per day" refresh boundary (IST by default)
    SERVICE_TIMEZONE: str = "Asia/Kolkata"

    @field_validator("REFERRAL_MILESTONES", mode="before")
    @classmethod
    def _parse_milestones(cls, value):
        if isinstance(value, str):
            value = json.loads(value)
        return {int(k): int(v) for k, v in dict(value).items()}

    @field_validator("RENEWAL_CARRYOVER_POLICY")
    @classmethod
    def _check_carryover_policy(cls, value: str) -> str:
        value = value.lower()
        if value not in ("reset", "carry_over"):
            raise ValueError("RENEWAL_CARRYOVER_POLICY must be 'reset' or 'carry_over'")
        return value

    @property
    def phonepe_is_production(self) -> bool:
        return self.PHONEPE_ENV.lower() == "production"


class DevelopmentSettings(Settings):
    DEBUG: bool = True


class StagingSettings(Settings):
    DEBUG: bool = False


class ProductionSettings(Settings):
    DEBUG: bool = False
    PHONEPE_ENV: str = "production"


ENVIRONMENTS: dict[str, type[Settings]] = {
    "development": DevelopmentSettings,
    "staging": StagingSettings,
    "production": ProductionSettings,
}


@lru_cache
def get_settings() -> Settings:
    """Return settings instance based on ENVIRONMENT variable."""

    env = os.getenv("ENVIRONMENT", "development").lower()
    settings_cls = ENVIRONMENTS.get(env, DevelopmentSettings)
    return settings_cls()


settings = get_settings()
