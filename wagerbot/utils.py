"""
Utility functions for the wager settlement worker.

This module provides shared helper utilities used across the codebase.
All functions are pure helpers with no domain logic.
"""

import logging
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

# Configure module logger
logger = logging.getLogger(__name__)

# Type variable for generic function typing
T = TypeVar('T')


def utc_now() -> datetime:
    """
    Get the current time as a timezone-aware UTC datetime.

    Returns:
        Current UTC datetime
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """
    Normalize a datetime to timezone-aware UTC.

    Naive datetimes are assumed to already be in UTC.

    Args:
        value: Datetime to normalize

    Returns:
        Timezone-aware UTC datetime
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_token_amount(value: Any, decimals: int) -> int:
    """
    Convert a human-readable token amount into the token's smallest unit.

    Equivalent to parseUnits: "12.5" with 6 decimals becomes 12500000.
    Fractions finer than the token's precision are rejected rather than rounded.

    Args:
        value: Amount as string, int or Decimal (floats are converted via str)
        decimals: Token decimals

    Returns:
        Integer amount in the smallest unit

    Raises:
        ValueError: If the value is not a finite non-negative number or is too precise
    """
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid token amount: {value!r}")

    if not amount.is_finite() or amount < 0:
        raise ValueError(f"Token amount must be a finite non-negative number, got {value!r}")

    scaled = amount.scaleb(decimals)
    if scaled != scaled.to_integral_value(rounding=ROUND_DOWN):
        raise ValueError(f"Token amount {value!r} has more than {decimals} decimal places")

    return int(scaled)


def format_token_amount(units: int, decimals: int, symbol: str = "") -> str:
    """
    Format a smallest-unit integer amount for display.

    Args:
        units: Amount in the token's smallest unit
        decimals: Token decimals
        symbol: Optional token symbol appended to the amount

    Returns:
        Formatted string (e.g., "100.50 USDC")
    """
    amount = Decimal(units).scaleb(-decimals)
    text = f"{amount:,.2f}" if decimals >= 2 else f"{amount:,}"
    return f"{text} {symbol}".strip()


def safe_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    """
    Safely convert a value to int with a default fallback.

    Handles ints, decimal strings and 0x-prefixed hex strings. Returns default on failure.

    Args:
        value: Value to convert
        default: Default value if conversion fails (default: None)

    Returns:
        Integer value or default if conversion fails
    """
    if value is None or isinstance(value, bool):
        return default

    if isinstance(value, int):
        return value

    if isinstance(value, str):
        text = value.strip()
        try:
            if text.lower().startswith("0x"):
                return int(text, 16)
            return int(text)
        except ValueError:
            return default

    return default


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: tuple = (Exception,)
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator for retrying function calls with exponential backoff.

    Only use this on idempotent calls. Broadcasting a transfer must never be
    wrapped in a retry.

    Args:
        max_retries: Maximum number of retry attempts (default: 3)
        initial_delay: Initial delay in seconds before first retry (default: 1.0)
        max_delay: Maximum delay in seconds between retries (default: 60.0)
        exponential_base: Base for exponential backoff calculation (default: 2.0)
        exceptions: Tuple of exceptions to catch and retry on (default: Exception)

    Returns:
        Decorator function
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            last_exception = None
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)

                except exceptions as e:
                    last_exception = e

                    if attempt < max_retries:
                        logger.warning(
                            f"{func.__name__} failed (attempt {attempt + 1}/{max_retries + 1}): {e}. "
                            f"Retrying in {delay:.2f}s..."
                        )
                        time.sleep(delay)

                        # Calculate next delay with exponential backoff
                        delay = min(delay * exponential_base, max_delay)
                    else:
                        logger.error(
                            f"{func.__name__} failed after {max_retries + 1} attempts: {e}"
                        )

            # All retries exhausted, raise last exception
            raise last_exception

        return wrapper

    return decorator
