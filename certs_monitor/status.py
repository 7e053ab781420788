"""
Certificate health status derived from the expiry date.
"""

import enum
import math
from datetime import datetime

SECONDS_PER_DAY = 86400


class DomainStatus(str, enum.Enum):
    """Discrete certificate health bands."""

    PENDING = "PENDING"
    OK = "OK"
    EXPIRING_30DAYS = "EXPIRING_30DAYS"
    EXPIRING_14DAYS = "EXPIRING_14DAYS"
    EXPIRING_7DAYS = "EXPIRING_7DAYS"
    EXPIRING_1DAY = "EXPIRING_1DAY"
    EXPIRED = "EXPIRED"


# Bands that trigger an expiry notification when a domain enters them
NOTIFY_STATUSES = frozenset(
    {
        DomainStatus.EXPIRING_30DAYS,
        DomainStatus.EXPIRING_14DAYS,
        DomainStatus.EXPIRING_7DAYS,
        DomainStatus.EXPIRING_1DAY,
        DomainStatus.EXPIRED,
    }
)

CRITICAL_STATUSES = frozenset(
    {DomainStatus.EXPIRED, DomainStatus.EXPIRING_1DAY, DomainStatus.EXPIRING_7DAYS}
)

WARNING_STATUSES = frozenset({DomainStatus.EXPIRING_14DAYS, DomainStatus.EXPIRING_30DAYS})


def days_remaining(not_after: datetime, now: datetime) -> int:
    """Whole days until ``not_after``, rounded up."""
    return math.ceil((not_after - now).total_seconds() / SECONDS_PER_DAY)


def compute_domain_status(not_after: datetime, now: datetime) -> DomainStatus:
    """
    Map a certificate expiry date to its health band.

    Args:
        not_after: Certificate expiry time
        now: Reference time

    Returns:
        Status band for the remaining validity
    """
    days = days_remaining(not_after, now)

    if days < 0:
        return DomainStatus.EXPIRED
    if days <= 1:
        return DomainStatus.EXPIRING_1DAY
    if days <= 7:
        return DomainStatus.EXPIRING_7DAYS
    if days <= 14:
        return DomainStatus.EXPIRING_14DAYS
    if days <= 30:
        return DomainStatus.EXPIRING_30DAYS
    return DomainStatus.OK
