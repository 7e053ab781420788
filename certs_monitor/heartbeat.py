"""
Periodic per-user certificate status digest.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List

from sqlalchemy import select, update
from sqlalchemy.orm import selectinload

from certs_monitor.config import Config
from certs_monitor.logger import get_logger
from certs_monitor.models import Domain, OutboxPriority, User, utcnow
from certs_monitor.outbox import NotificationOutbox
from certs_monitor.renderer import DomainError, DomainInfo, PendingDomain, TemplateRenderer
from certs_monitor.status import (
    CRITICAL_STATUSES,
    WARNING_STATUSES,
    DomainStatus,
    days_remaining,
)
from certs_monitor.store import Store
from certs_monitor.utils import format_expiration_date, format_expires_in

HEARTBEAT_SUBJECT = "Your certificate status report"


@dataclass
class HeartbeatDigest:
    """A user's domains grouped by health."""

    errors: List[DomainError] = field(default_factory=list)
    pending: List[PendingDomain] = field(default_factory=list)
    critical: List[DomainInfo] = field(default_factory=list)
    warning: List[DomainInfo] = field(default_factory=list)
    healthy: List[DomainInfo] = field(default_factory=list)


class HeartbeatAggregator:
    """Builds and queues the periodic status report for every opted-in user."""

    def __init__(
        self,
        config: Config,
        store: Store,
        outbox: NotificationOutbox,
        renderer: TemplateRenderer,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.store = store
        self.outbox = outbox
        self.renderer = renderer
        self.clock = clock
        self.logger = get_logger("heartbeat")

        self.period = timedelta(seconds=config.heartbeat_period_seconds)
        self.error_grace = timedelta(seconds=config.heartbeat_error_grace_seconds)

    async def fetch_candidates(self) -> List[User]:
        """Confirmed, opted-in users with at least one confirmed domain."""
        confirmed_domain = Domain.confirmed.is_(True)
        query = (
            select(User)
            .where(
                User.confirmed.is_(True),
                User.send_heartbeat_report.is_(True),
                User.domains.any(confirmed_domain),
            )
            .options(selectinload(User.domains.and_(confirmed_domain)))
            .order_by(User.id)
        )
        async with self.store.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    def is_due(self, user: User, now: datetime) -> bool:
        last_sent = user.last_heartbeat_sent_at
        return last_sent is None or now - last_sent >= self.period

    def build_digest(self, domains: List[Domain], now: datetime) -> HeartbeatDigest:
        """
        Group domains into report sections.

        Domains whose error has lasted longer than the grace window are
        reported as errors; every other domain is placed by its status.
        """
        digest = HeartbeatDigest()
        error_cutoff = now - self.error_grace

        for domain in domains:
            if domain.error and domain.error_started_at and domain.error_started_at <= error_cutoff:
                digest.errors.append({"domain": domain.name, "error": domain.error})
                continue

            if domain.status == DomainStatus.PENDING:
                digest.pending.append({"domain": domain.name})
                continue

            if domain.not_after is None:
                continue

            days = days_remaining(domain.not_after, now)
            info: DomainInfo = {
                "domain": domain.name,
                "expires_in": format_expires_in(days, domain.status),
                "expires_date": format_expiration_date(domain.not_after),
                "issuer": domain.issuer,
            }

            if domain.status in CRITICAL_STATUSES:
                digest.critical.append(info)
            elif domain.status in WARNING_STATUSES:
                digest.warning.append(info)
            elif domain.status == DomainStatus.OK:
                digest.healthy.append(info)

        return digest

    async def run_heartbeat(self) -> Dict[str, Any]:
        """
        Queue a digest for every user that is due one.

        Returns:
            Run summary
        """
        now = self.clock()
        users = await self.fetch_candidates()

        self.logger.info(f"Found {len(users)} users to consider for heartbeat report")

        summary = {"users": len(users), "sent": 0, "skipped": 0, "failed": 0}

        for user in users:
            if not user.domains or not self.is_due(user, now):
                summary["skipped"] += 1
                continue

            try:
                await self._queue_report(user, now)
            except Exception:
                summary["failed"] += 1
                self.logger.exception(f"Failed to queue heartbeat report for user {user.id}")
                continue

            summary["sent"] += 1

        return summary

    async def _queue_report(self, user: User, now: datetime) -> None:
        digest = self.build_digest(user.domains, now)
        body = self.renderer.render_heartbeat(
            generated_date=now.date().isoformat(),
            critical=digest.critical,
            warning=digest.warning,
            errors=digest.errors,
            healthy=digest.healthy,
            pending=digest.pending,
            total_domains=len(user.domains),
            settings_url=self.config.settings_url(user.settings_token),
        )

        self.logger.info(f"Sending heartbeat report to user {user.email}")

        # The timestamp only moves when the job is actually queued
        async with self.store.transaction() as session:
            await self.outbox.enqueue(
                [user.email],
                HEARTBEAT_SUBJECT,
                body,
                template_name="Heartbeat",
                priority=OutboxPriority.LOW,
                session=session,
            )
            await session.execute(
                update(User)
                .execution_options(synchronize_session=False)
                .where(User.id == user.id)
                .values(last_heartbeat_sent_at=now)
            )
