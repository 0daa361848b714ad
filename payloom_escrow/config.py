"""
Environment-driven settings for the PayLoom escrow service.

Everything is read once from the process environment (optionally seeded
from a .env file) and checked up front so a bad deploy fails at start.
Business rules (fees, auto-release window) are exposed as an immutable
EscrowSettings object that is handed to every component constructor.
"""

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional, Literal

from dotenv import load_dotenv


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class EscrowSettings:
    """
    Immutable escrow business settings.

    Attributes:
        fee_percent: Platform fee as a percentage of the gross amount
        fee_minimum: Fee floor in the escrow currency
        min_order_amount: Smallest gross amount accepted into escrow
        max_order_amount: Largest gross amount accepted into escrow
        auto_release_days: Days after lock before auto-release is considered
        currency: ISO currency code for all escrow amounts
        frontend_url: Base URL used in buyer/seller links
    """
    fee_percent: Decimal = Decimal("5")
    fee_minimum: Decimal = Decimal("50")
    min_order_amount: Decimal = Decimal("100")
    max_order_amount: Decimal = Decimal("500000")
    auto_release_days: int = 7
    currency: str = "KES"
    frontend_url: str = "https://payloom.app"

    def __post_init__(self):
        if not Decimal("0") <= self.fee_percent < Decimal("100"):
            raise ConfigError(
                f"PLATFORM_FEE_PERCENT must be in [0, 100), got {self.fee_percent}"
            )
        if self.fee_minimum < 0:
            raise ConfigError(f"PLATFORM_FEE_MINIMUM cannot be negative, got {self.fee_minimum}")
        # The fee must stay below every accepted gross amount
        if self.fee_minimum >= self.min_order_amount:
            raise ConfigError(
                f"PLATFORM_FEE_MINIMUM ({self.fee_minimum}) must be less than "
                f"MIN_ORDER_AMOUNT ({self.min_order_amount})"
            )
        if self.max_order_amount < self.min_order_amount:
            raise ConfigError(
                f"MAX_ORDER_AMOUNT ({self.max_order_amount}) must be greater than "
                f"MIN_ORDER_AMOUNT ({self.min_order_amount})"
            )
        if self.auto_release_days < 1:
            raise ConfigError(f"AUTO_RELEASE_DAYS must be at least 1, got {self.auto_release_days}")


class Config:
    """
    Process settings: database, M-Pesa credentials and endpoints, secrets,
    notification channels and logging. ENVIRONMENT=production selects the
    live Daraja hosts; anything else uses the sandbox.

    Attributes:
        database_url: PostgreSQL connection URL
        escrow: Immutable escrow business settings
        mpesa_environment: Either 'sandbox' or 'production'
        mpesa_consumer_key: M-Pesa API consumer key
        mpesa_consumer_secret: M-Pesa API consumer secret
        mpesa_shortcode: M-Pesa business shortcode
        mpesa_passkey: M-Pesa passkey for password generation
        payment_timeout: Seconds allowed for each M-Pesa call
        admin_api_key: Shared secret for admin endpoints
        cron_secret: Shared secret for the scheduled auto-release trigger
    """

    # M-Pesa API endpoints
    MPESA_ENDPOINTS = {
        'sandbox': {
            'auth': 'https://sandbox.safaricom.co.ke/oauth/v1/generate?grant_type=client_credentials',
            'stk_push': 'https://sandbox.safaricom.co.ke/mpesa/stkpush/v1/processrequest',
            'b2c': 'https://sandbox.safaricom.co.ke/mpesa/b2c/v1/paymentrequest',
        },
        'production': {
            'auth': 'https://api.safaricom.co.ke/oauth/v1/generate?grant_type=client_credentials',
            'stk_push': 'https://api.safaricom.co.ke/mpesa/stkpush/v1/processrequest',
            'b2c': 'https://api.safaricom.co.ke/mpesa/b2c/v1/paymentrequest',
        }
    }

    def __init__(self, env_file: Optional[str] = None):
        """
        Args:
            env_file: .env file to load first; the default lookup is used when omitted

        Raises:
            ConfigError: If required configuration is missing or invalid
        """
        if env_file:
            load_dotenv(env_file)
        else:
            load_dotenv()

        # Database Configuration
        self.database_url: str = self._get_required_env('DATABASE_URL')
        self.db_pool_min: int = self._get_int('DB_POOL_MIN', '2')
        self.db_pool_max: int = self._get_int('DB_POOL_MAX', '10')

        # Escrow Business Rules
        self.escrow: EscrowSettings = EscrowSettings(
            fee_percent=self._get_decimal('PLATFORM_FEE_PERCENT', '5'),
            fee_minimum=self._get_decimal('PLATFORM_FEE_MINIMUM', '50'),
            min_order_amount=self._get_decimal('MIN_ORDER_AMOUNT', '100'),
            max_order_amount=self._get_decimal('MAX_ORDER_AMOUNT', '500000'),
            auto_release_days=self._get_int('AUTO_RELEASE_DAYS', '7'),
            currency=os.getenv('CURRENCY', 'KES'),
            frontend_url=os.getenv('FRONTEND_URL', 'https://payloom.app').rstrip('/'),
        )
        self.auto_release_interval_hours: int = self._get_int('AUTO_RELEASE_INTERVAL_HOURS', '1')

        # M-Pesa Configuration
        self.mpesa_environment: Literal['sandbox', 'production'] = self._get_mpesa_environment()
        self.mpesa_consumer_key: Optional[str] = os.getenv('MPESA_CONSUMER_KEY')
        self.mpesa_consumer_secret: Optional[str] = os.getenv('MPESA_CONSUMER_SECRET')
        self.mpesa_shortcode: Optional[str] = os.getenv('MPESA_SHORTCODE')
        self.mpesa_passkey: Optional[str] = os.getenv('MPESA_PASSKEY')
        self.mpesa_initiator_name: Optional[str] = os.getenv('MPESA_INITIATOR_NAME')
        self.mpesa_security_credential: Optional[str] = os.getenv('MPESA_SECURITY_CREDENTIAL')
        self.mpesa_callback_url: str = os.getenv('MPESA_CALLBACK_URL', 'https://your-domain.com/mpesa/callback')
        self.mpesa_b2c_result_url: str = os.getenv('MPESA_B2C_RESULT_URL', 'https://your-domain.com/mpesa/b2c-result')
        self.mpesa_timeout_url: str = os.getenv('MPESA_TIMEOUT_URL', 'https://your-domain.com/mpesa/timeout')
        self.mpesa_transaction_type: str = os.getenv('MPESA_TRANSACTION_TYPE', 'CustomerPayBillOnline')

        # Outbound call policy
        self.payment_timeout: int = self._get_int('PAYMENT_TIMEOUT', '90')
        self.auth_max_retries: int = self._get_int('AUTH_MAX_RETRIES', '3')
        self.auth_retry_backoff: float = float(os.getenv('AUTH_RETRY_BACKOFF', '2'))

        # Security
        self.admin_api_key: Optional[str] = os.getenv('ADMIN_API_KEY')
        self.cron_secret: Optional[str] = os.getenv('CRON_SECRET')

        # Notifications
        self.bulk_sms_api_key: Optional[str] = os.getenv('BULK_SMS_API_KEY')
        self.bulk_sms_sender_id: str = os.getenv('BULK_SMS_SENDER_ID', 'PayLoom')
        self.bulk_sms_api_url: str = os.getenv('BULK_SMS_API_URL', 'https://api.bulksms.co.ke/sms/send')
        self.telegram_bot_token: Optional[str] = os.getenv('TELEGRAM_BOT_TOKEN')
        self.admin_chat_id: Optional[str] = os.getenv('ADMIN_CHAT_ID')
        self.notification_queue_size: int = self._get_int('NOTIFICATION_QUEUE_SIZE', '1000')

        # Application Settings
        self.app_env: str = os.getenv('APP_ENV', 'development')
        self.app_name: str = os.getenv('APP_NAME', 'PAYLOOM_ESCROW')

        # Logging Configuration
        self.log_level: str = os.getenv('LOG_LEVEL', 'INFO')
        self.log_format: str = os.getenv('LOG_FORMAT', 'text')
        self.log_file: Optional[str] = os.getenv('LOG_FILE', 'logs/payloom.log') or None
        self.log_max_size: int = self._get_int('LOG_MAX_SIZE', '10485760')  # 10MB
        self.log_backup_count: int = self._get_int('LOG_BACKUP_COUNT', '5')

        # API Configuration
        self.api_host: str = os.getenv('API_HOST', '0.0.0.0')
        self.api_port: int = self._get_int('API_PORT', '8000')

        self._set_mpesa_urls()
        self._validate_config()

    def _get_required_env(self, key: str) -> str:
        """
        Raises:
            ConfigError: If the variable is unset or empty
        """
        value = os.getenv(key)
        if not value:
            raise ConfigError(f"Required environment variable '{key}' is not set")
        return value

    def _get_int(self, key: str, default: str) -> int:
        raw = os.getenv(key, default)
        try:
            return int(raw)
        except ValueError:
            raise ConfigError(f"{key} must be an integer, got '{raw}'")

    def _get_decimal(self, key: str, default: str) -> Decimal:
        raw = os.getenv(key, default)
        try:
            return Decimal(raw)
        except InvalidOperation:
            raise ConfigError(f"{key} must be a number, got '{raw}'")

    def _get_mpesa_environment(self) -> Literal['sandbox', 'production']:
        """Map the deployment environment to an M-Pesa environment."""
        env = os.getenv('ENVIRONMENT', 'development').lower()
        if env == 'production':
            return 'production'
        return 'sandbox'

    def _set_mpesa_urls(self) -> None:
        endpoints = self.MPESA_ENDPOINTS[self.mpesa_environment]
        self.mpesa_auth_url: str = endpoints['auth']
        self.mpesa_stk_push_url: str = endpoints['stk_push']
        self.mpesa_b2c_url: str = endpoints['b2c']

    def _validate_config(self) -> None:
        """Cross-field checks that cannot be done while reading values."""
        if self.mpesa_shortcode and not self.mpesa_shortcode.isdigit():
            raise ConfigError(f"MPESA_SHORTCODE must be numeric, got '{self.mpesa_shortcode}'")

        valid_log_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if self.log_level.upper() not in valid_log_levels:
            raise ConfigError(
                f"LOG_LEVEL must be one of {valid_log_levels}, got '{self.log_level}'"
            )

        if not 1 <= self.api_port <= 65535:
            raise ConfigError(f"API_PORT must be between 1 and 65535, got {self.api_port}")

        if self.db_pool_min < 1 or self.db_pool_max < self.db_pool_min:
            raise ConfigError(
                f"DB_POOL_MAX ({self.db_pool_max}) must be >= DB_POOL_MIN ({self.db_pool_min}) >= 1"
            )

        if self.payment_timeout < 1:
            raise ConfigError(f"PAYMENT_TIMEOUT must be positive, got {self.payment_timeout}")

        if self.auto_release_interval_hours < 1:
            raise ConfigError(
                f"AUTO_RELEASE_INTERVAL_HOURS must be at least 1, got {self.auto_release_interval_hours}"
            )

    @property
    def has_stk_config(self) -> bool:
        """True when buyer STK pushes can be sent."""
        return all([
            self.mpesa_consumer_key,
            self.mpesa_consumer_secret,
            self.mpesa_shortcode,
            self.mpesa_passkey
        ])

    @property
    def has_b2c_config(self) -> bool:
        """True when seller payouts can be sent."""
        return all([
            self.mpesa_consumer_key,
            self.mpesa_consumer_secret,
            self.mpesa_shortcode,
            self.mpesa_initiator_name,
            self.mpesa_security_credential
        ])

    @property
    def has_telegram_config(self) -> bool:
        return bool(self.telegram_bot_token and self.admin_chat_id)

    @property
    def is_production(self) -> bool:
        return self.mpesa_environment == 'production'

    def __repr__(self) -> str:
        return (
            f"Config(environment={self.mpesa_environment}, "
            f"fee={self.escrow.fee_percent}%/min {self.escrow.fee_minimum}, "
            f"auto_release_days={self.escrow.auto_release_days}, "
            f"app_env={self.app_env})"
        )


# Process-wide instance, built by the entry point
_config_instance: Optional[Config] = None


def get_config(env_file: Optional[str] = None, reload: bool = False) -> Config:
    """
    Return the process-wide Config, building it on first use.

    Only the process entry point should call this; components receive
    their settings through their constructors.

    Raises:
        ConfigError: If configuration is invalid
    """
    global _config_instance

    if _config_instance is None or reload:
        _config_instance = Config(env_file)

    return _config_instance
