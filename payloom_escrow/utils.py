"""
Shared helpers for the PayLoom escrow service: logging setup, Kenyan phone
normalisation, money conversion and masking values before they reach logs.
"""

import json
import re
import logging
import sys
import traceback
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Any, Tuple
from logging.handlers import RotatingFileHandler
from pathlib import Path


CENTS = Decimal("0.01")

TEXT_LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Subscriber part of a Kenyan mobile number: 7XXXXXXXX or 1XXXXXXXX
_SUBSCRIBER = r'([17]\d{8})'
_PHONE_PATTERNS = (
    re.compile(rf'^\+?254{_SUBSCRIBER}$'),
    re.compile(rf'^0{_SUBSCRIBER}$'),
    re.compile(rf'^{_SUBSCRIBER}$'),
)


class Colors:
    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    YELLOW = '\033[93m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GRAY = '\033[90m'


class ColoredFormatter(logging.Formatter):
    """Console formatter that colours the level and logger name."""

    LEVEL_COLORS = {
        'DEBUG': Colors.GRAY,
        'INFO': Colors.BLUE,
        'WARNING': Colors.YELLOW,
        'ERROR': Colors.RED,
        'CRITICAL': Colors.BOLD + Colors.RED,
    }

    def format(self, record: logging.LogRecord) -> str:
        # Copy so the file handler sees the plain record
        tinted = logging.makeLogRecord(record.__dict__)
        level_color = self.LEVEL_COLORS.get(tinted.levelname, Colors.RESET)
        tinted.levelname = f"{level_color}{tinted.levelname}{Colors.RESET}"
        tinted.name = f"{Colors.CYAN}{tinted.name}{Colors.RESET}"
        return super().format(tinted)


class JsonFormatter(logging.Formatter):
    """One JSON object per line; tracebacks stay inside the object."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': traceback.format_exception(*record.exc_info),
            }
        return json.dumps(entry, ensure_ascii=False)


def setup_logger(
    name: str = 'payloom_escrow',
    log_level: str = 'INFO',
    log_file: Optional[str] = None,
    log_format: str = 'text',
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    colorful_console: bool = True
) -> logging.Logger:
    """
    Configure the package logger once at startup.

    Every ``logging.getLogger(__name__)`` inside ``payloom_escrow`` propagates
    to this logger, so the handlers added here cover the whole service.

    Args:
        name: Logger to configure
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_file: Rotating log file path; None logs to the console only
        log_format: 'text' or 'json' (one JSON object per line)
        max_bytes: Rotate the file at this size
        backup_count: Rotated files kept
        colorful_console: Colour console output (text format only)

    Returns:
        The configured logger
    """
    level = getattr(logging, log_level.upper())
    package_logger = logging.getLogger(name)
    package_logger.setLevel(level)
    package_logger.handlers.clear()

    if log_format == 'json':
        plain = JsonFormatter()
    else:
        plain = logging.Formatter(TEXT_LOG_FORMAT)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    if colorful_console and log_format == 'text':
        console.setFormatter(ColoredFormatter(TEXT_LOG_FORMAT))
    else:
        console.setFormatter(plain)
    package_logger.addHandler(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        rotating = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        rotating.setLevel(level)
        rotating.setFormatter(plain)
        package_logger.addHandler(rotating)

    return package_logger


def validate_kenyan_phone(phone: str) -> Tuple[bool, Optional[str], Optional[str]]:
    """
    Normalise a Kenyan mobile number to the 2547XXXXXXXX form M-Pesa expects.

    Spaces and dashes are ignored; ``+254``, ``254``, ``0`` and bare
    subscriber prefixes are accepted.

    Returns:
        Tuple of (is_valid, normalised_number, error_message)

    Example:
        >>> validate_kenyan_phone('0712 345 678')
        (True, '254712345678', None)
    """
    if not phone:
        return False, None, "Phone number is required"

    compact = re.sub(r'[\s\-]', '', phone)
    for pattern in _PHONE_PATTERNS:
        match = pattern.match(compact)
        if match:
            return True, f"254{match.group(1)}", None

    return False, None, (
        f"Invalid Kenyan mobile number '{mask_sensitive_data(compact)}'. "
        "Use 2547XXXXXXXX, +2547XXXXXXXX or 07XXXXXXXX"
    )


def to_money(amount: Any) -> Decimal:
    """
    Convert an amount to a Decimal rounded to cents.

    Raises:
        ValueError: If the amount is not numeric
    """
    if isinstance(amount, Decimal):
        value = amount
    else:
        text = amount.replace(',', '').strip() if isinstance(amount, str) else amount
        try:
            value = Decimal(str(text))
        except (InvalidOperation, TypeError):
            raise ValueError(f"Invalid amount format: '{amount}'")
    if not value.is_finite():
        raise ValueError(f"Invalid amount format: '{amount}'")
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def format_currency(amount: Any, currency: str = 'KES') -> str:
    """
    Example:
        >>> format_currency(Decimal('1234567.5'))
        'KES 1,234,567.50'
    """
    return f"{currency} {to_money(amount):,.2f}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def mask_sensitive_data(data: Optional[str], visible_chars: int = 4) -> str:
    """
    Hide all but the last ``visible_chars`` characters of a phone or token.

    Example:
        >>> mask_sensitive_data('254712345678')
        '********5678'
    """
    if not data:
        return ''
    hidden = max(len(data) - visible_chars, 0)
    if hidden == 0:
        return '*' * len(data)
    return '*' * hidden + data[hidden:]
