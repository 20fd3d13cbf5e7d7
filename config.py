# config.py
"""
Configuration management for the settlement engine.
Loads from .env, validates critical keys.
"""
import os
import logging
from typing import Any, Dict
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Configuration error exception."""
    pass


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """
    Configuration manager with static and dynamic values.

    Usage:
        # Load from .env
        Config.initialize_from_env()

        # Get value
        depth = Config.get(Config.COMMISSION_DEPTH)

        # Set dynamic value
        Config.set(Config.SYSTEM_READY, True)
    """

    # ═══════════════════════════════════════════════════════════════════════
    # CONFIGURATION KEYS
    # ═══════════════════════════════════════════════════════════════════════

    # Database
    DATABASE_URL = "DATABASE_URL"

    # Commission / phase engine
    COMMISSION_DEPTH = "COMMISSION_DEPTH"
    PHASE_VISIBLE_LEVELS = "PHASE_VISIBLE_LEVELS"
    PHASE_DEMOTION_ENABLED = "PHASE_DEMOTION_ENABLED"
    SUBSCRIPTION_PERIOD_DAYS = "SUBSCRIPTION_PERIOD_DAYS"

    # Payouts
    PLATFORM_MIN_PAYOUT_CENTS = "PLATFORM_MIN_PAYOUT_CENTS"
    PAYOUT_MODE = "PAYOUT_MODE"
    PAYOUT_PROVIDER_TIMEOUT = "PAYOUT_PROVIDER_TIMEOUT"

    # Payout providers
    STRIPE_SECRET_KEY = "STRIPE_SECRET_KEY"
    PAYPAL_CLIENT_ID = "PAYPAL_CLIENT_ID"
    PAYPAL_CLIENT_SECRET = "PAYPAL_CLIENT_SECRET"
    PAYPAL_MODE = "PAYPAL_MODE"
    AUTHORIZE_NET_API_URL = "AUTHORIZE_NET_API_URL"
    AUTHORIZE_NET_API_KEY = "AUTHORIZE_NET_API_KEY"
    PAYONEER_API_URL = "PAYONEER_API_URL"
    PAYONEER_API_KEY = "PAYONEER_API_KEY"

    # Notifications - Mailgun
    MAILGUN_API_KEY = "MAILGUN_API_KEY"
    MAILGUN_DOMAIN = "MAILGUN_DOMAIN"
    MAILGUN_REGION = "MAILGUN_REGION"
    NOTIFICATIONS_ENABLED = "NOTIFICATIONS_ENABLED"
    NOTIFICATIONS_SENDER = "NOTIFICATIONS_SENDER"

    # System
    SYSTEM_READY = "SYSTEM_READY"

    # ═══════════════════════════════════════════════════════════════════════
    # CRITICAL KEYS (must be present)
    # ═══════════════════════════════════════════════════════════════════════

    CRITICAL_KEYS = [
        DATABASE_URL,
    ]

    # Values used when initialize_from_env() was never called (tests, scripts)
    DEFAULTS: Dict[str, Any] = {
        COMMISSION_DEPTH: 2,
        PHASE_VISIBLE_LEVELS: 2,
        PHASE_DEMOTION_ENABLED: False,
        SUBSCRIPTION_PERIOD_DAYS: 30,
        PLATFORM_MIN_PAYOUT_CENTS: 900,
        PAYOUT_MODE: "automatic",
        PAYOUT_PROVIDER_TIMEOUT: 30,
        PAYPAL_MODE: "sandbox",
        MAILGUN_REGION: "eu",
        NOTIFICATIONS_ENABLED: False,
        NOTIFICATIONS_SENDER: "Network Earnings",
        SYSTEM_READY: False,
    }

    # ═══════════════════════════════════════════════════════════════════════
    # STORAGE
    # ═══════════════════════════════════════════════════════════════════════

    _config: Dict[str, Any] = {}
    _initialized: bool = False

    # ═══════════════════════════════════════════════════════════════════════
    # METHODS
    # ═══════════════════════════════════════════════════════════════════════

    @classmethod
    def initialize_from_env(cls) -> None:
        """
        Load configuration from .env file and process environment.

        Raises:
            ConfigurationError: If a value cannot be parsed
        """
        load_dotenv()

        logger.info("Loading configuration from environment...")

        try:
            # Database
            cls._config[cls.DATABASE_URL] = os.getenv(
                "DATABASE_URL",
                "sqlite:///settlement.db"
            )

            # Commission / phase engine
            cls._config[cls.COMMISSION_DEPTH] = int(os.getenv("COMMISSION_DEPTH", "2"))
            cls._config[cls.PHASE_VISIBLE_LEVELS] = int(os.getenv("PHASE_VISIBLE_LEVELS", "2"))
            cls._config[cls.PHASE_DEMOTION_ENABLED] = _env_bool("PHASE_DEMOTION_ENABLED")
            cls._config[cls.SUBSCRIPTION_PERIOD_DAYS] = int(os.getenv("SUBSCRIPTION_PERIOD_DAYS", "30"))

            # Payouts
            cls._config[cls.PLATFORM_MIN_PAYOUT_CENTS] = int(
                os.getenv("PLATFORM_MIN_PAYOUT_CENTS", "900")
            )
            cls._config[cls.PAYOUT_MODE] = os.getenv("PAYOUT_MODE", "automatic").lower()
            cls._config[cls.PAYOUT_PROVIDER_TIMEOUT] = int(os.getenv("PAYOUT_PROVIDER_TIMEOUT", "30"))

            if cls._config[cls.PAYOUT_MODE] not in ("automatic", "manual"):
                raise ValueError(f"PAYOUT_MODE must be 'automatic' or 'manual', got {cls._config[cls.PAYOUT_MODE]}")

            # Payout providers
            cls._config[cls.STRIPE_SECRET_KEY] = os.getenv("STRIPE_SECRET_KEY")
            cls._config[cls.PAYPAL_CLIENT_ID] = os.getenv("PAYPAL_CLIENT_ID")
            cls._config[cls.PAYPAL_CLIENT_SECRET] = os.getenv("PAYPAL_CLIENT_SECRET")
            cls._config[cls.PAYPAL_MODE] = os.getenv("PAYPAL_MODE", "sandbox")
            cls._config[cls.AUTHORIZE_NET_API_URL] = os.getenv("AUTHORIZE_NET_API_URL")
            cls._config[cls.AUTHORIZE_NET_API_KEY] = os.getenv("AUTHORIZE_NET_API_KEY")
            cls._config[cls.PAYONEER_API_URL] = os.getenv("PAYONEER_API_URL")
            cls._config[cls.PAYONEER_API_KEY] = os.getenv("PAYONEER_API_KEY")

            # Notifications - Mailgun
            cls._config[cls.MAILGUN_API_KEY] = os.getenv("MAILGUN_API_KEY")
            cls._config[cls.MAILGUN_DOMAIN] = os.getenv("MAILGUN_DOMAIN")
            cls._config[cls.MAILGUN_REGION] = os.getenv("MAILGUN_REGION", "eu")
            cls._config[cls.NOTIFICATIONS_ENABLED] = _env_bool("NOTIFICATIONS_ENABLED")
            cls._config[cls.NOTIFICATIONS_SENDER] = os.getenv("NOTIFICATIONS_SENDER", "Network Earnings")

            # System
            cls._config[cls.SYSTEM_READY] = False

            cls._initialized = True
            logger.info("Configuration loaded from environment successfully")

        except Exception as e:
            logger.error(f"Failed to load configuration: {e}")
            raise ConfigurationError(f"Configuration loading failed: {e}")

    @classmethod
    async def validate_critical_keys(cls) -> None:
        """
        Validate that all critical configuration keys are present.

        Raises:
            ConfigurationError: If any critical key is missing
        """
        missing = []
        for key in cls.CRITICAL_KEYS:
            if not cls.get(key):
                missing.append(key)

        if missing:
            error_msg = f"Missing critical configuration keys: {', '.join(missing)}"
            logger.critical(error_msg)
            raise ConfigurationError(error_msg)

        logger.info("All critical configuration keys validated ✓")

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        """
        Get configuration value.

        Args:
            key: Configuration key
            default: Default value if key not found

        Returns:
            Configuration value, built-in default, or the given default
        """
        if key in cls._config:
            return cls._config[key]
        if default is not None:
            return default
        return cls.DEFAULTS.get(key)

    @classmethod
    def set(cls, key: str, value: Any, source: str = "runtime") -> None:
        """
        Set configuration value.

        Args:
            key: Configuration key
            value: Value to store
            source: Where the value came from (for logging)
        """
        old_value = cls._config.get(key)
        cls._config[key] = value

        if old_value != value:
            logger.debug(f"Config updated [{source}]: {key}")

    @classmethod
    def reset(cls) -> None:
        """Drop all loaded values. Used by tests."""
        cls._config = {}
        cls._initialized = False
