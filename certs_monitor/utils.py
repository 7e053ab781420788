"""
Small helpers shared across Certs Monitor.
"""

import secrets
from datetime import datetime

from certs_monitor.status import DomainStatus

BASE62_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"


def generate_token(length: int = 64) -> str:
    """Random base62 token, used for settings links."""
    return "".join(secrets.choice(BASE62_ALPHABET) for _ in range(length))


def format_expires_in(days: int, status: DomainStatus) -> str:
    """
    Human phrase for the remaining validity of a certificate.

    Args:
        days: Whole days remaining, rounded up (negative once expired)
        status: Current status band

    Returns:
        Phrase such as "in 12 days", "today" or "3 days ago"
    """
    if status == DomainStatus.EXPIRED or days < 0:
        ago = abs(days)
        if ago == 0:
            return "today"
        return f"{ago} day ago" if ago == 1 else f"{ago} days ago"
    if days == 0:
        return "today"
    if days == 1:
        return "in 1 day"
    return f"in {days} days"


def format_expiration_date(value: datetime) -> str:
    """Absolute expiry date, e.g. "March 5, 2026"."""
    return f"{value.strftime('%B')} {value.day}, {value.year}"
