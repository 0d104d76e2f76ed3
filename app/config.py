"""
Application Configuration - Pydantic Settings for type-safe config.

FAIL FAST - Database config is validated at startup.
PesaPal credentials are checked lazily by the config validator so a
misconfigured provider blocks payments without taking the API down.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PESAPAL_SANDBOX_URL = "https://cybqa.pesapal.com/pesapalv3"
PESAPAL_PRODUCTION_URL = "https://pay.pesapal.com/v3"


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 10
    database_max_overflow: int = 5
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "ZedQuiz Payments API"
    api_version: str = "0.1.0"
    api_description: str = "PesaPal subscription payments for ZedQuiz"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability
    metrics_enabled: bool = True
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "zedquiz-payments-api"

    # Payment Provider - PesaPal
    pesapal_base_url: str = ""  # Explicit override, wins over the sandbox flag
    pesapal_sandbox: bool = False
    pesapal_consumer_key: str = ""
    pesapal_consumer_secret: str = ""
    pesapal_callback_url: str = "http://localhost:3000/payment-callback"
    pesapal_ipn_url: str = "http://localhost:8000/v1/payments/ipn"
    pesapal_ipn_id: str = ""  # Pre-registered IPN id, skips registration
    pesapal_http_timeout_seconds: float = 30.0

    # Order defaults
    payment_currency: str = "ZMW"
    payment_country_code: str = "ZM"
    order_id_prefix: str = "ZEDQUIZ"
    default_billing_address: str = "Lusaka, Zambia"
    default_billing_city: str = "Lusaka"
    default_billing_state: str = "Lusaka"
    default_billing_postal_code: str = "10101"

    # Status polling
    status_poll_interval_seconds: float = 3.0
    status_poll_max_attempts: int = 40
    status_poll_timeout_seconds: float = 180.0
    status_check_max_errors: int = 5
    status_check_backoff_cap_seconds: float = 30.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start without a usable database.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.status_poll_max_attempts <= 0:
            errors.append("STATUS_POLL_MAX_ATTEMPTS must be positive")
        if self.status_poll_timeout_seconds <= 0:
            errors.append("STATUS_POLL_TIMEOUT_SECONDS must be positive")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def pesapal_api_base(self) -> str:
        """Resolve the PesaPal API base URL (override > sandbox flag > production)."""
        if self.pesapal_base_url:
            return self.pesapal_base_url.rstrip("/")
        return PESAPAL_SANDBOX_URL if self.pesapal_sandbox else PESAPAL_PRODUCTION_URL


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
