"""
Configuration Management Module

Settings come from FUNDS_CORE_* environment variables (or .env) via
pydantic-settings; get_config() returns the process-wide instance.
"""

from decimal import Decimal, InvalidOperation
from pydantic import field_validator
from pydantic_settings import BaseSettings


class FundsCoreConfig(BaseSettings):
    """funds_core engine and API configuration"""

    # Database configuration
    database_url: str = "sqlite:///funds_core.db"  # or memory://
    sqlite_busy_timeout_ms: int = 5000
    lock_timeout_seconds: float = 5.0

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    cors_origins: str = "*"  # Comma separated

    # Security configuration
    auth_enabled: bool = True
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    pin_length: int = 4
    otp_length: int = 6
    otp_ttl_seconds: int = 300  # 5 minutes
    step_up_policy: str = "durable"  # durable or single_use
    demo_mode: bool = False  # Echo OTP codes in API responses

    # Business rules configuration
    max_transfer_amount: str = "1000000.00"
    attempt_ttl_seconds: int = 900
    reference_code_length: int = 8
    require_debit_card: bool = False

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    class Config:
        env_prefix = "FUNDS_CORE_"
        env_file = ".env"
        case_sensitive = False

    @field_validator("step_up_policy")
    @classmethod
    def _known_policy(cls, value: str) -> str:
        if value not in ("durable", "single_use"):
            raise ValueError("step_up_policy must be durable or single_use")
        return value

    @field_validator("max_transfer_amount")
    @classmethod
    def _decimal_limit(cls, value: str) -> str:
        try:
            limit = Decimal(value)
        except InvalidOperation:
            raise ValueError("max_transfer_amount must be a decimal string")
        if not limit.is_finite() or limit <= 0:
            raise ValueError("max_transfer_amount must be positive")
        return value

    @property
    def max_transfer(self) -> Decimal:
        return Decimal(self.max_transfer_amount)


# Global configuration instance
config = FundsCoreConfig()


def get_config() -> FundsCoreConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> FundsCoreConfig:
    """Reload configuration from environment"""
    global config
    config = FundsCoreConfig()
    return config
