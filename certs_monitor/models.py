"""
SQLAlchemy ORM models for Certs Monitor.
"""

import enum
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.orm import declarative_base, relationship

from certs_monitor.status import DomainStatus

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC datetime column.

    Values are stored as naive UTC and always come back with ``tzinfo=UTC``,
    so comparisons behave the same on PostgreSQL and SQLite.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetimes are not accepted; use UTC-aware values")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class OutboxStatus(str, enum.Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"


class OutboxPriority(enum.IntEnum):
    HIGH = 0
    MEDIUM = 5
    LOW = 10


class User(Base):
    """Subscriber that owns monitored domains."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    email = Column(String(320), nullable=False, unique=True)
    confirmed = Column(Boolean, nullable=False, default=False)
    settings_token = Column(String(128), nullable=False, unique=True)
    send_heartbeat_report = Column(Boolean, nullable=False, default=True)
    last_heartbeat_sent_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    domains = relationship(
        "Domain", back_populates="user", cascade="all, delete-orphan", order_by="Domain.name"
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r}>"


class Domain(Base):
    """A monitored hostname and its last known certificate."""

    __tablename__ = "domains"
    __table_args__ = (Index("ix_domains_confirmed_last_checked", "confirmed", "last_checked_at"),)

    id = Column(Integer, primary_key=True)
    name = Column(String(253), nullable=False)
    port = Column(Integer, nullable=False, default=443)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    confirmed = Column(Boolean, nullable=False, default=False)
    status = Column(
        Enum(DomainStatus, native_enum=False, length=32),
        nullable=False,
        default=DomainStatus.PENDING,
    )
    last_checked_at = Column(UTCDateTime, nullable=True)

    # Last successfully observed certificate
    not_before = Column(UTCDateTime, nullable=True)
    not_after = Column(UTCDateTime, nullable=True)
    issuer = Column(String(255), nullable=True)
    cn = Column(String(255), nullable=True)
    san = Column(JSON, nullable=False, default=list)
    serial = Column(String(128), nullable=True)
    fingerprint = Column(String(128), nullable=True)
    ip = Column(String(45), nullable=True)

    error = Column(Text, nullable=True)
    error_started_at = Column(UTCDateTime, nullable=True)

    last_notified_at = Column(UTCDateTime, nullable=True)
    last_cert_change_notified_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    user = relationship("User", back_populates="domains")
    checks = relationship(
        "Check", back_populates="domain", cascade="all, delete-orphan", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"<Domain id={self.id} name={self.name!r} status={self.status}>"


class Check(Base):
    """Append-only record of a single probe outcome."""

    __tablename__ = "checks"

    id = Column(Integer, primary_key=True)
    domain_id = Column(
        Integer, ForeignKey("domains.id", ondelete="CASCADE"), nullable=False, index=True
    )
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    not_before = Column(UTCDateTime, nullable=True)
    not_after = Column(UTCDateTime, nullable=True)
    issuer = Column(String(255), nullable=True)
    cn = Column(String(255), nullable=True)
    san = Column(JSON, nullable=False, default=list)
    serial = Column(String(128), nullable=True)
    fingerprint = Column(String(128), nullable=True)
    ip = Column(String(45), nullable=True)

    error = Column(Text, nullable=True)

    domain = relationship("Domain", back_populates="checks")


class OutboxJob(Base):
    """Queued email with its own retry state."""

    __tablename__ = "email_outbox"
    __table_args__ = (
        Index("ix_email_outbox_pending", "status", "priority", "created_at"),
    )

    id = Column(Integer, primary_key=True)
    recipients = Column(JSON, nullable=False)
    subject = Column(String(998), nullable=False)
    body = Column(Text, nullable=False)
    template_name = Column(String(64), nullable=True)
    priority = Column(Integer, nullable=False, default=int(OutboxPriority.MEDIUM))
    status = Column(
        Enum(OutboxStatus, native_enum=False, length=16),
        nullable=False,
        default=OutboxStatus.PENDING,
    )
    failed_attempts = Column(Integer, nullable=False, default=0)
    send_after = Column(UTCDateTime, nullable=True)
    retry_after = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    completed_at = Column(UTCDateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<OutboxJob id={self.id} status={self.status} attempts={self.failed_attempts}>"
