"""
Utilities module for the escrow ledger.

Provides helper functions for logging, money handling (Decimal parsing,
currency rounding, minor-unit conversion), formatting and input hygiene.
"""

import json
import logging
import re
import sys
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional, Tuple

TEXT_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'

# Third-party loggers that drown out ledger events at INFO
NOISY_LOGGERS = ('apscheduler', 'urllib3', 'httpx', 'telegram', 'uvicorn.access')

LEVEL_COLORS = {
    'DEBUG': '\033[90m',
    'INFO': '\033[92m',
    'WARNING': '\033[93m',
    'ERROR': '\033[91m',
    'CRITICAL': '\033[1m\033[91m',
}
RESET = '\033[0m'


class ConsoleFormatter(logging.Formatter):
    """Colors the level name for terminal output."""

    def format(self, record: logging.LogRecord) -> str:
        # Work on a copy; the file handler sees the same record
        record = logging.makeLogRecord(record.__dict__)
        color = LEVEL_COLORS.get(record.levelname)
        if color:
            record.levelname = f"{color}{record.levelname}{RESET}"
        return super().format(record)


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'time': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        if record.exc_info:
            entry['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def setup_logger(
    name: str = '',
    log_level: str = 'INFO',
    log_file: Optional[str] = None,
    log_format: str = 'text',
    max_bytes: int = 10485760,  # 10MB
    backup_count: int = 5,
    colorful_console: bool = True
) -> logging.Logger:
    """
    Configure logging for the service.

    The default empty name configures the root logger so every module
    logger (``logging.getLogger(__name__)``) inherits the handlers.

    Args:
        name: Logger to configure
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_file: Rotating log file; None logs to the console only
        log_format: 'text' or 'json'
        max_bytes: Size at which the log file rotates
        backup_count: Rotated files kept
        colorful_console: Color level names on the console (text format only)

    Returns:
        The configured logger
    """
    level = getattr(logging, log_level.upper())
    logger = logging.getLogger(name or None)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    if log_format == 'json':
        file_formatter: logging.Formatter = JsonFormatter()
        console_formatter: logging.Formatter = JsonFormatter()
    else:
        file_formatter = logging.Formatter(TEXT_FORMAT)
        console_formatter = ConsoleFormatter(TEXT_FORMAT) if colorful_console else file_formatter

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(console_formatter)
    logger.addHandler(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        rotating = RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
        )
        rotating.setFormatter(file_formatter)
        logger.addHandler(rotating)

    if level < logging.WARNING:
        for noisy in NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(logging.WARNING)

    return logger


# ==================== Money ====================

# ISO 4217 currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset({
    'bif', 'clp', 'djf', 'gnf', 'jpy', 'kmf', 'krw', 'mga',
    'pyg', 'rwf', 'ugx', 'vnd', 'vuv', 'xaf', 'xof', 'xpf',
})


def currency_exponent(currency: str) -> int:
    """Number of decimal places of the smallest unit of ``currency``."""
    return 0 if currency.lower() in ZERO_DECIMAL_CURRENCIES else 2


def to_decimal(value: Any) -> Decimal:
    """
    Convert a user or database value into a Decimal without float drift.

    Raises:
        ValueError: If the value is not numeric
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount format: '{value}'")
    try:
        if isinstance(value, str):
            value = value.replace(',', '').strip()
        return Decimal(str(value))
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Invalid amount format: '{value}'") from e


def quantize_money(amount: Decimal, currency: str = 'usd') -> Decimal:
    """
    Round an amount to the smallest unit of its currency, half-up.

    Example:
        >>> quantize_money(Decimal('10.005'))
        Decimal('10.01')
    """
    exponent = Decimal(1).scaleb(-currency_exponent(currency))
    return to_decimal(amount).quantize(exponent, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal, currency: str = 'usd') -> int:
    """Convert a major-unit amount to the integer the gateway expects (cents)."""
    rounded = quantize_money(amount, currency)
    return int(rounded.scaleb(currency_exponent(currency)))


def from_minor_units(amount: int, currency: str = 'usd') -> Decimal:
    """Convert an integer gateway amount back to major units."""
    return Decimal(int(amount)).scaleb(-currency_exponent(currency))


def validate_amount(
    amount: Any,
    currency: str = 'usd',
    min_amount: Decimal = Decimal('0.01'),
    max_amount: Optional[Decimal] = None
) -> Tuple[bool, Optional[Decimal], Optional[str]]:
    """
    Validate a money amount.

    Args:
        amount: Amount to validate (str, int, float or Decimal)
        currency: Currency the amount is expressed in
        min_amount: Minimum allowed amount
        max_amount: Maximum allowed amount (optional)

    Returns:
        Tuple of (is_valid, amount_as_decimal, error_message)

    Example:
        >>> is_valid, amt, error = validate_amount('400.00')
        >>> print(amt)
        400.00
    """
    try:
        value = to_decimal(amount)
    except ValueError:
        return False, None, f"Invalid amount format: '{amount}'"

    if not value.is_finite():
        return False, None, f"Invalid amount format: '{amount}'"

    try:
        quantized = quantize_money(value, currency)
    except InvalidOperation:
        return False, None, f"Invalid amount format: '{amount}'"

    if quantized != value:
        return False, None, (
            f"Amount {value} has more precision than {currency.upper()} allows"
        )

    if value < min_amount:
        return False, None, f"Amount must be at least {format_currency(min_amount, currency)}"

    if max_amount is not None and value > max_amount:
        return False, None, f"Amount must not exceed {format_currency(max_amount, currency)}"

    return True, value, None


def format_currency(amount: Decimal, currency: str = 'usd') -> str:
    """
    Format amount as currency string.

    Example:
        >>> format_currency(Decimal('1234567.5'))
        'USD 1,234,567.50'
    """
    places = currency_exponent(currency)
    return f"{currency.upper()} {to_decimal(amount):,.{places}f}"


# ==================== Misc ====================

def utc_now() -> datetime:
    """Timezone-aware current UTC time; the default ledger clock."""
    return datetime.now(timezone.utc)


def sanitize_input(text: str, max_length: int = 500) -> str:
    """
    Sanitize free-text input (reasons, notes) before it is stored.

    Args:
        text: Input text to sanitize
        max_length: Maximum allowed length

    Returns:
        Sanitized text
    """
    if not text:
        return ''

    text = text[:max_length]

    # Remove potentially dangerous characters
    text = re.sub(r'[<>"\';`]', '', text)

    # Remove control characters
    text = ''.join(char for char in text if ord(char) >= 32 or char in '\n\r\t')

    return text.strip()


def mask_sensitive_data(data: str, visible_chars: int = 4) -> str:
    """
    Mask sensitive data for logging (payment method refs, API keys).

    Example:
        >>> mask_sensitive_data('pm_card_visa_4242', 4)
        '*************4242'
    """
    if not data or len(data) <= visible_chars:
        return '*' * len(data) if data else ''

    masked_length = len(data) - visible_chars
    return '*' * masked_length + data[-visible_chars:]
