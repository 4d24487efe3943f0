"""
Configuration & Logging
=======================
Environment-driven settings for the checkout backend, plus the one-time
structlog setup shared by every component.
"""

import logging
import os

import structlog


# =============================================================================
# SETTINGS
# =============================================================================

class Settings:
    """Checkout backend configuration from environment"""

    # Server
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ENV = os.getenv("ENV", "development")
    DEBUG = ENV == "development"
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_JSON = os.getenv("LOG_JSON", "false" if DEBUG else "true").lower() == "true"

    # Key-value store
    STORE_BACKEND = os.getenv("STORE_BACKEND", "redis")  # redis | memory
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    STORE_TIMEOUT_SECONDS = float(os.getenv("STORE_TIMEOUT_SECONDS", "2.0"))
    CAS_MAX_RETRIES = int(os.getenv("CAS_MAX_RETRIES", "20"))

    # TTLs
    SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", "1800"))  # 30 minutes
    CART_TTL_SECONDS = int(os.getenv("CART_TTL_SECONDS", "1800"))
    RESERVATION_TTL_SECONDS = int(os.getenv("RESERVATION_TTL_SECONDS", "300"))  # 5 minutes

    # Order lifecycle
    PAYMENT_TIMEOUT_SECONDS = int(os.getenv("PAYMENT_TIMEOUT_SECONDS", "1800"))  # Stripe minimum
    # Local cancel waits this long past the provider deadline for its expiry webhook
    PAYMENT_GRACE_SECONDS = int(os.getenv("PAYMENT_GRACE_SECONDS", "600"))
    SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))
    SWEEPER_ENABLED = os.getenv("SWEEPER_ENABLED", "true").lower() == "true"

    # Payments
    CURRENCY = os.getenv("CURRENCY", "inr")
    GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10.0"))

    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_SUCCESS_URL = os.getenv("STRIPE_SUCCESS_URL", "https://axionikai.com/success")
    STRIPE_CANCEL_URL = os.getenv("STRIPE_CANCEL_URL", "https://axionikai.com/cancel")

    RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
    RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET")
    RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET")


settings = Settings()


# =============================================================================
# STRUCTURED LOGGING
# =============================================================================

def configure_logging(json_logs: bool = None, level: str = None) -> None:
    """Configure structlog once for the process."""
    json_logs = settings.LOG_JSON if json_logs is None else json_logs
    level = level or settings.LOG_LEVEL

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=True)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
