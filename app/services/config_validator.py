"""
PesaPal configuration check.

Run before any payment action is offered to the user.
"""

from structlog import get_logger

from app.config import Settings
from app.exceptions import ConfigError
from app.models.domain import ConfigValidation

logger = get_logger(__name__)


def validate_pesapal_config(settings: Settings) -> ConfigValidation:
    """Check that the credentials needed to take payments are present. No side effects."""
    missing: list[str] = []

    if not settings.pesapal_consumer_key.strip():
        missing.append("PESAPAL_CONSUMER_KEY")
    if not settings.pesapal_consumer_secret.strip():
        missing.append("PESAPAL_CONSUMER_SECRET")
    if not settings.pesapal_api_base.startswith(("https://", "http://")):
        missing.append("PESAPAL_BASE_URL")
    if not settings.pesapal_callback_url:
        missing.append("PESAPAL_CALLBACK_URL")
    if not settings.pesapal_ipn_url and not settings.pesapal_ipn_id:
        missing.append("PESAPAL_IPN_URL")

    return ConfigValidation(is_valid=not missing, missing=missing)


def require_pesapal_config(settings: Settings) -> None:
    """
    Block payment initiation when PesaPal is not configured.

    Raises:
        ConfigError: With every missing field
    """
    result = validate_pesapal_config(settings)
    if not result.is_valid:
        logger.error("pesapal_config_invalid", missing=result.missing)
        raise ConfigError(result.missing)
