"""Configuration management for the civic cleanup escrow service"""

import os
import logging
from decimal import Decimal

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./civic_cleanup.db")
    DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "7"))
    DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "15"))

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @staticmethod
    def _validate_percentage(env_var: str, default: str, max_val: float = 50.0) -> Decimal:
        """Read a fee percentage with bounds checking"""
        try:
            value = Decimal(os.getenv(env_var, default))
            if value < 0 or value > Decimal(str(max_val)):
                logger.error(f"❌ {env_var}={value}% is outside 0..{max_val}%. Using default {default}%")
                return Decimal(default)
            return value
        except Exception as e:
            logger.error(f"❌ Invalid {env_var} value '{os.getenv(env_var)}': {e}. Using default {default}%")
            return Decimal(default)

    # Fees. Platform fee at contribution time is per execution mode; the worker
    # payout fee is taken from the accepted bid when the job settles.
    WORKER_EXECUTION_FEE_PERCENT = _validate_percentage("WORKER_EXECUTION_FEE_PERCENT", "0")
    LEADER_EXECUTION_FEE_PERCENT = _validate_percentage("LEADER_EXECUTION_FEE_PERCENT", "0")
    WORKER_PAYOUT_FEE_PERCENT = _validate_percentage("WORKER_PAYOUT_FEE_PERCENT", "5")

    # Review windows
    REVIEW_WINDOW_WORKER_HOURS = int(os.getenv("REVIEW_WINDOW_WORKER_HOURS", "24"))
    REVIEW_WINDOW_LEADER_DAYS = int(os.getenv("REVIEW_WINDOW_LEADER_DAYS", "7"))

    # Limits
    MAX_JOB_TARGET = Decimal(os.getenv("MAX_JOB_TARGET", "10000"))
    MIN_WALLET_TOPUP = Decimal(os.getenv("MIN_WALLET_TOPUP", "100"))
    MAX_SUBMISSION_NOTE_LENGTH = int(os.getenv("MAX_SUBMISSION_NOTE_LENGTH", "2000"))

    # Background sweep
    ENABLE_REVIEW_SWEEPER = os.getenv("ENABLE_REVIEW_SWEEPER", "true").lower() == "true"
    REVIEW_SWEEP_INTERVAL_MINUTES = int(os.getenv("REVIEW_SWEEP_INTERVAL_MINUTES", "60"))
    REVIEW_SWEEP_BATCH_SIZE = int(os.getenv("REVIEW_SWEEP_BATCH_SIZE", "50"))

    NORMALIZE_LEGACY_STATUSES = os.getenv("NORMALIZE_LEGACY_STATUSES", "true").lower() == "true"

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Service Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Database: {Config.DATABASE_URL.split('@')[-1]}")
        logger.info(
            f"   Fees: worker_mode={Config.WORKER_EXECUTION_FEE_PERCENT}% "
            f"leader_mode={Config.LEADER_EXECUTION_FEE_PERCENT}% payout={Config.WORKER_PAYOUT_FEE_PERCENT}%"
        )
        logger.info(
            f"   Review windows: worker={Config.REVIEW_WINDOW_WORKER_HOURS}h leader={Config.REVIEW_WINDOW_LEADER_DAYS}d"
        )
        logger.info(
            f"   Review sweep: enabled={Config.ENABLE_REVIEW_SWEEPER} every {Config.REVIEW_SWEEP_INTERVAL_MINUTES}min"
        )
