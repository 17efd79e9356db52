import os
import logging
from django.core.exceptions import ImproperlyConfigured

logger = logging.getLogger(__name__)

# Mandatory environment variables for production
REQUIRED_PRODUCTION_ENV_VARS = [
    "SECRET_KEY",
    "DATABASE_URL",
]

VALID_DISPATCH_MODES = ("thread", "sync")

def validate_env():
    """
    Validate critical environment variables for Django settings.
    Runs once per process; subsequent calls are idempotent.
    """
    is_production = os.getenv("PRODUCTION", "false").lower() == "true"

    secret_key = os.getenv("SECRET_KEY")
    if not secret_key:
        if is_production:
            raise ImproperlyConfigured("CRITICAL: SECRET_KEY is required in production.")
        else:
            logger.warning("SECRET_KEY not set, using insecure default for development.")

    dispatch_mode = os.getenv("WEBHOOK_DISPATCH_MODE", "thread")
    if dispatch_mode not in VALID_DISPATCH_MODES:
        raise ImproperlyConfigured(
            f"WEBHOOK_DISPATCH_MODE must be one of {', '.join(VALID_DISPATCH_MODES)}, got '{dispatch_mode}'"
        )

    if is_production:
        missing = [var for var in REQUIRED_PRODUCTION_ENV_VARS if not os.getenv(var)]
        if missing:
            error_msg = f"CRITICAL: Missing required environment variables in production: {', '.join(missing)}"
            logger.critical(error_msg)
            raise ImproperlyConfigured(error_msg)

        if secret_key and (secret_key.startswith("django-insecure") or len(secret_key) < 50):
            error_msg = "CRITICAL: SECRET_KEY must be a long, secure string in production"
            logger.critical(error_msg)
            raise ImproperlyConfigured(error_msg)

        if not os.getenv("ADMIN_EMAIL"):
            logger.warning("ADMIN_EMAIL not set; workflow emails addressed to 'admin' go to admin@localhost")

    logger.info("Environment validation passed successfully")
