"""
Environment-driven settings for the escrow ledger service.

Values come from the process environment, optionally seeded from a .env
file. Only the entry point reads the global config; the ledger and its
collaborators receive their settings explicitly.
"""

import os
from decimal import Decimal, InvalidOperation
from typing import List, Optional
from dotenv import load_dotenv


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


def _get_bool(key: str, default: str) -> bool:
    return os.getenv(key, default).lower() in ('true', '1', 'yes')


class Config:
    """
    Settings of one service process, read from the environment.

    Missing or out-of-range values fail fast with ConfigError.

    Attributes:
        database_url: PostgreSQL connection URL
        gateway_api_key: Payment gateway secret key
        gateway_base_url: Payment gateway API root
        default_currency: Currency used when a contract does not name one
        default_platform_fee_percentage: Fee rate when no commission rule applies
        auto_release_enabled: Default for new accounts' auto-release control
        auto_release_delay_hours: Default delay between funding and auto-release
        lock_timeout_seconds: How long an operation waits for an account lock
        conflict_max_retries: Internal retries of a lock-timeout conflict
        admin_user_ids: Users allowed to call the admin control layer
    """

    def __init__(self, env_file: Optional[str] = None, require_database: bool = True):
        """
        Read and validate the settings.

        Args:
            env_file: .env file to load; defaults to ./.env when present
            require_database: Set to False for in-memory runs

        Raises:
            ConfigError: If required configuration is missing or invalid
        """
        # Load environment variables
        if env_file:
            load_dotenv(env_file)
        else:
            load_dotenv()

        # Database Configuration
        if require_database:
            self.database_url: Optional[str] = self._get_required_env('DATABASE_URL')
        else:
            self.database_url = os.getenv('DATABASE_URL')
        self.db_pool_min_size: int = self._get_int('DB_POOL_MIN_SIZE', '2')
        self.db_pool_max_size: int = self._get_int('DB_POOL_MAX_SIZE', '10')

        # Payment Gateway Configuration
        self.gateway_api_key: str = self._get_required_env('GATEWAY_API_KEY')
        self.gateway_base_url: str = os.getenv('GATEWAY_BASE_URL', 'https://api.stripe.com/v1')
        self.gateway_timeout: int = self._get_int('GATEWAY_TIMEOUT', '30')

        # Marketplace Backend (contracts and user profiles)
        self.marketplace_api_url: Optional[str] = os.getenv('MARKETPLACE_API_URL')
        self.marketplace_api_token: Optional[str] = os.getenv('MARKETPLACE_API_TOKEN')

        # Escrow Settings
        self.default_currency: str = os.getenv('DEFAULT_CURRENCY', 'usd').lower()
        self.default_platform_fee_percentage: Decimal = self._get_decimal(
            'DEFAULT_PLATFORM_FEE_PERCENTAGE', '5.0'
        )
        self.auto_release_enabled: bool = _get_bool('AUTO_RELEASE_ENABLED', 'True')
        self.auto_release_delay_hours: int = self._get_int('AUTO_RELEASE_DELAY_HOURS', '72')
        self.reconcile_interval_minutes: int = self._get_int('RECONCILE_INTERVAL_MINUTES', '15')
        self.stale_deposit_minutes: int = self._get_int('STALE_DEPOSIT_MINUTES', '30')

        # Concurrency
        self.lock_timeout_seconds: float = float(self._get_decimal('LOCK_TIMEOUT_SECONDS', '5'))
        self.conflict_max_retries: int = self._get_int('CONFLICT_MAX_RETRIES', '3')
        self.conflict_backoff_base: float = float(self._get_decimal('CONFLICT_BACKOFF_BASE', '0.05'))

        # Admin
        self.admin_user_ids: List[str] = [
            uid.strip() for uid in os.getenv('ADMIN_USER_IDS', '').split(',') if uid.strip()
        ]

        # Telegram (optional ops alerts)
        self.telegram_bot_token: Optional[str] = os.getenv('TELEGRAM_BOT_TOKEN')
        self.admin_chat_id: Optional[str] = os.getenv('ADMIN_CHAT_ID')

        # Application Settings
        self.app_env: str = os.getenv('APP_ENV', 'development')
        self.app_name: str = os.getenv('APP_NAME', 'escrow-ledger')

        # Logging Configuration
        self.log_level: str = os.getenv('LOG_LEVEL', 'INFO')
        self.log_format: str = os.getenv('LOG_FORMAT', 'text')
        self.log_file: Optional[str] = os.getenv('LOG_FILE', 'logs/escrow_ledger.log') or None
        self.log_max_size: int = self._get_int('LOG_MAX_SIZE', '10485760')  # 10MB
        self.log_backup_count: int = self._get_int('LOG_BACKUP_COUNT', '5')

        # API Configuration
        self.api_host: str = os.getenv('API_HOST', '0.0.0.0')
        self.api_port: int = self._get_int('API_PORT', '8000')

        # Validate configuration
        self._validate_config()

    def _get_required_env(self, key: str) -> str:
        """
        Get a required environment variable.

        Args:
            key: Environment variable name

        Returns:
            Value of the environment variable

        Raises:
            ConfigError: If the environment variable is not set
        """
        value = os.getenv(key)
        if not value:
            raise ConfigError(f"Required environment variable '{key}' is not set")
        return value

    def _get_int(self, key: str, default: str) -> int:
        raw = os.getenv(key, default)
        try:
            return int(raw)
        except ValueError as e:
            raise ConfigError(f"{key} must be an integer, got '{raw}'") from e

    def _get_decimal(self, key: str, default: str) -> Decimal:
        raw = os.getenv(key, default)
        try:
            return Decimal(raw)
        except InvalidOperation as e:
            raise ConfigError(f"{key} must be a number, got '{raw}'") from e

    def _validate_config(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigError: If any configuration value is invalid
        """
        if not Decimal('0') <= self.default_platform_fee_percentage <= Decimal('100'):
            raise ConfigError(
                f"DEFAULT_PLATFORM_FEE_PERCENTAGE must be between 0 and 100, "
                f"got {self.default_platform_fee_percentage}"
            )

        if self.auto_release_delay_hours < 0:
            raise ConfigError(
                f"AUTO_RELEASE_DELAY_HOURS cannot be negative, got {self.auto_release_delay_hours}"
            )

        if self.lock_timeout_seconds <= 0:
            raise ConfigError(
                f"LOCK_TIMEOUT_SECONDS must be positive, got {self.lock_timeout_seconds}"
            )

        if self.conflict_max_retries < 0:
            raise ConfigError(
                f"CONFLICT_MAX_RETRIES cannot be negative, got {self.conflict_max_retries}"
            )

        if len(self.default_currency) != 3 or not self.default_currency.isalpha():
            raise ConfigError(
                f"DEFAULT_CURRENCY must be a 3-letter ISO code, got '{self.default_currency}'"
            )

        # Validate log level
        valid_log_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if self.log_level.upper() not in valid_log_levels:
            raise ConfigError(
                f"LOG_LEVEL must be one of {valid_log_levels}, got '{self.log_level}'"
            )

        if self.log_format not in ('text', 'json'):
            raise ConfigError(f"LOG_FORMAT must be 'text' or 'json', got '{self.log_format}'")

        # Validate admin chat ID format
        if self.admin_chat_id and not self.admin_chat_id.lstrip('-').isdigit():
            raise ConfigError(
                f"ADMIN_CHAT_ID must be numeric (can start with -), "
                f"got '{self.admin_chat_id}'"
            )

        # Validate port ranges
        if not 1 <= self.api_port <= 65535:
            raise ConfigError(f"API_PORT must be between 1 and 65535, got {self.api_port}")

        if self.db_pool_min_size > self.db_pool_max_size:
            raise ConfigError(
                f"DB_POOL_MIN_SIZE ({self.db_pool_min_size}) exceeds "
                f"DB_POOL_MAX_SIZE ({self.db_pool_max_size})"
            )

    @property
    def has_database_config(self) -> bool:
        """Check if a database URL is configured."""
        return bool(self.database_url)

    @property
    def has_telegram_config(self) -> bool:
        """Check if ops alerts through Telegram are configured."""
        return bool(self.telegram_bot_token and self.admin_chat_id)

    @property
    def has_marketplace_config(self) -> bool:
        """Check if the marketplace backend URL is configured."""
        return bool(self.marketplace_api_url)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == 'production'

    def __repr__(self) -> str:
        """String representation of Config (hiding sensitive data)."""
        return (
            f"Config(app_env={self.app_env}, "
            f"currency={self.default_currency}, "
            f"default_fee={self.default_platform_fee_percentage}%, "
            f"auto_release={self.auto_release_enabled}/{self.auto_release_delay_hours}h, "
            f"has_db={self.has_database_config}, "
            f"has_telegram={self.has_telegram_config})"
        )


# Singleton instance for easy access
_config_instance: Optional[Config] = None


def get_config(
    env_file: Optional[str] = None,
    reload: bool = False,
    require_database: bool = True
) -> Config:
    """
    Get or create the global Config instance.

    Args:
        env_file: Optional path to .env file
        reload: If True, force reload configuration
        require_database: Set to False for in-memory runs

    Returns:
        Config instance

    Raises:
        ConfigError: If configuration is invalid

    Example:
        >>> config = get_config()
        >>> print(config.auto_release_delay_hours)
        72
    """
    global _config_instance

    if _config_instance is None or reload:
        _config_instance = Config(env_file, require_database=require_database)

    return _config_instance
