"""Configuration management for the payment reconciliation service"""

import os
import logging
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower().strip() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./payments.db")
    DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "7"))
    DATABASE_MAX_OVERFLOW = int(os.getenv("DATABASE_MAX_OVERFLOW", "15"))

    # Payment expiration: pending payments older than this are failed unconditionally
    PAYMENT_EXPIRY_HOURS = int(os.getenv("PAYMENT_EXPIRY_HOURS", "24"))

    # Fraud screening thresholds
    FRAUD_PROTECTION_ENABLED = _env_bool("FRAUD_PROTECTION_ENABLED", "true")
    VELOCITY_WINDOW_MINUTES = int(os.getenv("VELOCITY_WINDOW_MINUTES", "10"))
    VELOCITY_THRESHOLD = int(os.getenv("VELOCITY_THRESHOLD", "3"))
    VELOCITY_RISK_IMPACT = int(os.getenv("VELOCITY_RISK_IMPACT", "25"))
    LARGE_AMOUNT_THRESHOLD = float(os.getenv("LARGE_AMOUNT_THRESHOLD", "500"))
    LARGE_AMOUNT_WINDOW_MINUTES = int(os.getenv("LARGE_AMOUNT_WINDOW_MINUTES", "60"))
    LARGE_AMOUNT_VELOCITY_THRESHOLD = int(os.getenv("LARGE_AMOUNT_VELOCITY_THRESHOLD", "2"))
    LARGE_AMOUNT_RISK_IMPACT = int(os.getenv("LARGE_AMOUNT_RISK_IMPACT", "20"))
    BLACKLIST_RISK_SCORE = int(os.getenv("BLACKLIST_RISK_SCORE", "80"))
    FRAUD_BLOCK_SCORE = int(os.getenv("FRAUD_BLOCK_SCORE", "80"))
    FRAUD_REVIEW_SCORE = int(os.getenv("FRAUD_REVIEW_SCORE", "50"))

    # Background verification
    VERIFY_PENDING_MIN_AGE = int(os.getenv("VERIFY_PENDING_MIN_AGE", "5"))
    VERIFY_PENDING_MAX_AGE = int(os.getenv("VERIFY_PENDING_MAX_AGE", "1440"))
    VERIFY_PENDING_LIMIT = int(os.getenv("VERIFY_PENDING_LIMIT", "100"))
    VERIFY_PENDING_INTERVAL_MINUTES = int(os.getenv("VERIFY_PENDING_INTERVAL_MINUTES", "5"))
    VERIFICATION_WORKERS = int(os.getenv("VERIFICATION_WORKERS", "4"))
    VERIFICATION_MAX_TRIES = int(os.getenv("VERIFICATION_MAX_TRIES", "3"))
    VERIFICATION_MAX_BACKOFF_SECONDS = int(os.getenv("VERIFICATION_MAX_BACKOFF_SECONDS", "3600"))
    RECENT_ATTEMPT_WINDOW_MINUTES = int(os.getenv("RECENT_ATTEMPT_WINDOW_MINUTES", "10"))

    # Gateways
    GATEWAY_REQUEST_TIMEOUT = float(os.getenv("GATEWAY_REQUEST_TIMEOUT", "30"))
    STRIPE_API_KEY = os.getenv("STRIPE_API_KEY")
    STRIPE_BASE_URL = os.getenv("STRIPE_BASE_URL", "https://api.stripe.com/v1")
    PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID")
    PAYPAL_CLIENT_SECRET = os.getenv("PAYPAL_CLIENT_SECRET")
    PAYPAL_BASE_URL = os.getenv("PAYPAL_BASE_URL", "https://api-m.paypal.com")

    # Account selection
    ACCOUNT_COUNTER_MAX_RETRIES = int(os.getenv("ACCOUNT_COUNTER_MAX_RETRIES", "3"))

    # Subscriptions
    SUBSCRIPTION_GRACE_DAYS_ON_FAILURE = int(os.getenv("SUBSCRIPTION_GRACE_DAYS_ON_FAILURE", "3"))
    SUBSCRIPTION_SWEEP_BATCH_SIZE = int(os.getenv("SUBSCRIPTION_SWEEP_BATCH_SIZE", "100"))
    UPCOMING_RENEWAL_DAYS = int(os.getenv("UPCOMING_RENEWAL_DAYS", "3"))

    # Settings store
    SETTINGS_CACHE_TTL = int(os.getenv("SETTINGS_CACHE_TTL", "3600"))

    # HTTP server
    SERVER_HOST = os.getenv("SERVER_HOST", "0.0.0.0")
    SERVER_PORT = int(os.getenv("PORT", "8000"))
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", "true")

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info(f"🔧 Payment Service Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Payment expiry: {Config.PAYMENT_EXPIRY_HOURS}h")
        logger.info(
            f"   Velocity: >{Config.VELOCITY_THRESHOLD} payments in "
            f"{Config.VELOCITY_WINDOW_MINUTES}min adds {Config.VELOCITY_RISK_IMPACT}"
        )
        logger.info(
            f"   Verify sweep: every {Config.VERIFY_PENDING_INTERVAL_MINUTES}min, "
            f"age {Config.VERIFY_PENDING_MIN_AGE}-{Config.VERIFY_PENDING_MAX_AGE}min, "
            f"limit {Config.VERIFY_PENDING_LIMIT}"
        )
        logger.info(f"   Verification workers: {Config.VERIFICATION_WORKERS}")

    @classmethod
    def validate(cls) -> bool:
        """Validate configuration values, logging every problem found"""
        problems = []
        if not cls.DATABASE_URL:
            problems.append("DATABASE_URL is required")
        if cls.PAYMENT_EXPIRY_HOURS <= 0:
            problems.append("PAYMENT_EXPIRY_HOURS must be positive")
        if cls.VERIFY_PENDING_MIN_AGE > cls.VERIFY_PENDING_MAX_AGE:
            problems.append("VERIFY_PENDING_MIN_AGE must not exceed VERIFY_PENDING_MAX_AGE")
        if cls.FRAUD_REVIEW_SCORE > cls.FRAUD_BLOCK_SCORE:
            problems.append("FRAUD_REVIEW_SCORE must not exceed FRAUD_BLOCK_SCORE")
        if cls.IS_PRODUCTION and not (cls.STRIPE_API_KEY or cls.PAYPAL_CLIENT_ID):
            problems.append("No gateway credentials configured for production")

        for problem in problems:
            logger.error(f"❌ CONFIG: {problem}")
        return not problems
