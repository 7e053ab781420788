"""
Domain check runner for Certs Monitor.

Probes every domain that is due, records the outcome and queues expiry and
certificate-change notifications.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, literal, or_, select, update
from sqlalchemy.orm import contains_eager

from certs_monitor.config import Config
from certs_monitor.errors import ProbeError
from certs_monitor.logger import get_logger, log_probe_failed, log_status
from certs_monitor.metrics import MetricsCollector
from certs_monitor.models import Check, Domain, OutboxPriority, User, UTCDateTime, utcnow
from certs_monitor.outbox import NotificationOutbox
from certs_monitor.prober import CertificateInfo, CertificateProber
from certs_monitor.renderer import TemplateRenderer
from certs_monitor.status import (
    NOTIFY_STATUSES,
    DomainStatus,
    compute_domain_status,
    days_remaining,
)
from certs_monitor.store import Store
from certs_monitor.utils import format_expiration_date, format_expires_in

UNKNOWN_ERROR = "Unknown error"


@dataclass(frozen=True)
class ExpirationMetadata:
    label: str
    class_name: str
    subject: str


EXPIRATION_EMAIL_METADATA: Dict[DomainStatus, ExpirationMetadata] = {
    DomainStatus.EXPIRING_30DAYS: ExpirationMetadata(
        "EXPIRING IN 30 DAYS", "warning", "Certificate expiring in 30 days"
    ),
    DomainStatus.EXPIRING_14DAYS: ExpirationMetadata(
        "EXPIRING IN 14 DAYS", "warning", "Certificate expiring in 14 days"
    ),
    DomainStatus.EXPIRING_7DAYS: ExpirationMetadata(
        "EXPIRING IN 7 DAYS", "critical", "Certificate expiring in 7 days"
    ),
    DomainStatus.EXPIRING_1DAY: ExpirationMetadata(
        "EXPIRING IN 1 DAY", "critical", "Certificate expiring in 1 day"
    ),
    DomainStatus.EXPIRED: ExpirationMetadata("EXPIRED", "critical", "Certificate expired"),
}


@dataclass
class CheckOutcome:
    """What a single domain check did."""

    domain: str
    status: Optional[DomainStatus] = None
    error: Optional[str] = None
    notified_expiry: bool = False
    notified_change: bool = False


class DomainCheckRunner:
    """Selects due domains and checks them in bounded chunks."""

    def __init__(
        self,
        config: Config,
        store: Store,
        prober: CertificateProber,
        outbox: NotificationOutbox,
        renderer: TemplateRenderer,
        metrics: MetricsCollector,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.store = store
        self.prober = prober
        self.outbox = outbox
        self.renderer = renderer
        self.metrics = metrics
        self.clock = clock
        self.logger = get_logger("checks")

        self.concurrency = config.check_concurrency
        self.stale_threshold = timedelta(seconds=config.check_stale_threshold_seconds)
        self.probe_timeout = float(config.probe_timeout_seconds)

    async def fetch_due_domains(self, now: datetime) -> List[Domain]:
        """Confirmed domains of confirmed users that were never checked or are stale."""
        stale_before = now - self.stale_threshold
        query = (
            select(Domain)
            .join(Domain.user)
            .options(contains_eager(Domain.user))
            .where(
                Domain.confirmed.is_(True),
                User.confirmed.is_(True),
                or_(Domain.last_checked_at.is_(None), Domain.last_checked_at < stale_before),
            )
            .order_by(Domain.id)
        )
        async with self.store.session() as session:
            result = await session.execute(query)
            return list(result.scalars().unique().all())

    async def run_checks(self) -> Dict[str, Any]:
        """
        Check every due domain.

        Returns:
            Run summary
        """
        now = self.clock()
        domains = await self.fetch_due_domains(now)
        self.metrics.domains_due.set(len(domains))

        self.logger.info(f"Found {len(domains)} domains to process")

        summary = {"domains": len(domains), "succeeded": 0, "failed": 0, "notifications": 0}

        for index in range(0, len(domains), self.concurrency):
            chunk = domains[index : index + self.concurrency]
            results = await asyncio.gather(
                *(self.check_domain(domain, now) for domain in chunk), return_exceptions=True
            )

            for domain, result in zip(chunk, results):
                if isinstance(result, BaseException):
                    summary["failed"] += 1
                    self.logger.error(
                        f"[{domain.name}] Could not record check result: {result}",
                        exc_info=result,
                    )
                    continue

                if result.error is None:
                    summary["succeeded"] += 1
                else:
                    summary["failed"] += 1
                summary["notifications"] += int(result.notified_expiry) + int(
                    result.notified_change
                )

        return summary

    async def check_domain(self, domain: Domain, now: datetime) -> CheckOutcome:
        """
        Probe one domain and persist the outcome.

        Args:
            domain: Domain with its owner loaded
            now: Time of the current run

        Returns:
            What was recorded for the domain
        """
        try:
            cert = await self.prober.probe(domain.name, domain.port or 443, self.probe_timeout)
        except ProbeError as e:
            log_probe_failed(self.logger, domain.name, e)
            self.metrics.record_probe(type(e).__name__)
            return await self._record_failure(domain, str(e), now)
        except Exception:
            self.logger.exception(
                f"[{domain.name}] Unknown error while fetching certificate for domain, continuing"
            )
            self.metrics.record_probe("unknown")
            return await self._record_failure(domain, UNKNOWN_ERROR, now)

        self.metrics.record_probe("success")
        return await self._record_success(domain, cert, now)

    async def _record_failure(self, domain: Domain, message: str, now: datetime) -> CheckOutcome:
        async with self.store.transaction() as session:
            session.add(Check(domain_id=domain.id, created_at=now, error=message))
            await session.execute(
                update(Domain)
                .execution_options(synchronize_session=False)
                .where(Domain.id == domain.id)
                .values(
                    last_checked_at=now,
                    error=message,
                    error_started_at=func.coalesce(
                        Domain.error_started_at, literal(now, UTCDateTime())
                    ),
                )
            )

        return CheckOutcome(domain=domain.name, error=message)

    async def _record_success(
        self, domain: Domain, cert: CertificateInfo, now: datetime
    ) -> CheckOutcome:
        next_status = compute_domain_status(cert.not_after, now)
        days = days_remaining(cert.not_after, now)

        # A missing stored fingerprint means this is the first observation
        cert_changed = (
            domain.fingerprint is not None
            and cert.fingerprint is not None
            and cert.fingerprint != domain.fingerprint
        )
        should_notify = next_status != domain.status and next_status in NOTIFY_STATUSES

        log_status(self.logger, domain.name, next_status.value, days)
        self.metrics.record_certificate(domain.name, cert.not_after, days)

        change_body = (
            self._render_certificate_changed(domain, cert, next_status, days)
            if cert_changed
            else None
        )
        expiry_body = (
            self._render_expiring(domain, cert, next_status, days) if should_notify else None
        )

        values: Dict[str, Any] = {
            "last_checked_at": now,
            "status": next_status,
            "not_before": cert.not_before,
            "not_after": cert.not_after,
            "issuer": cert.issuer,
            "cn": cert.cn,
            "san": list(cert.san),
            "serial": cert.serial,
            "fingerprint": cert.fingerprint,
            "ip": cert.ip,
            "error": None,
            "error_started_at": None,
        }

        async with self.store.transaction() as session:
            if change_body is not None:
                self.logger.info(f"[{domain.name}] Certificate changed, sending notification")
                await self.outbox.enqueue(
                    [domain.user.email],
                    f"Certificate changed: {domain.name}",
                    change_body,
                    template_name="CertificateChanged",
                    priority=OutboxPriority.MEDIUM,
                    session=session,
                )
                values["last_cert_change_notified_at"] = now

            if expiry_body is not None:
                self.logger.info(
                    f"[{domain.name}] Sending notification for new status: {next_status.value} "
                    f"({days} days remaining)"
                )
                await self.outbox.enqueue(
                    [domain.user.email],
                    f"{EXPIRATION_EMAIL_METADATA[next_status].subject}: {domain.name}",
                    expiry_body,
                    template_name="Expiring",
                    priority=OutboxPriority.MEDIUM,
                    session=session,
                )
                values["last_notified_at"] = now

            session.add(
                Check(
                    domain_id=domain.id,
                    created_at=now,
                    not_before=cert.not_before,
                    not_after=cert.not_after,
                    issuer=cert.issuer,
                    cn=cert.cn,
                    san=list(cert.san),
                    serial=cert.serial,
                    fingerprint=cert.fingerprint,
                    ip=cert.ip,
                )
            )
            await session.execute(
                update(Domain)
                .execution_options(synchronize_session=False)
                .where(Domain.id == domain.id)
                .values(**values)
            )

        return CheckOutcome(
            domain=domain.name,
            status=next_status,
            notified_expiry=should_notify,
            notified_change=cert_changed,
        )

    def _render_expiring(
        self, domain: Domain, cert: CertificateInfo, status: DomainStatus, days: int
    ) -> str:
        metadata = EXPIRATION_EMAIL_METADATA[status]
        return self.renderer.render_expiring_domain(
            domain=domain.name,
            status_label=metadata.label,
            status_class=metadata.class_name,
            expires_in=format_expires_in(days, status),
            expires_date=format_expiration_date(cert.not_after),
            issuer=cert.issuer or "Unknown",
            settings_url=self.config.settings_url(domain.user.settings_token),
        )

    def _render_certificate_changed(
        self, domain: Domain, cert: CertificateInfo, status: DomainStatus, days: int
    ) -> str:
        return self.renderer.render_certificate_changed(
            domain=domain.name,
            issuer=cert.issuer or "Unknown",
            expires_in=format_expires_in(days, status),
            expires_date=format_expiration_date(cert.not_after),
            previous_fingerprint=domain.fingerprint or "",
            fingerprint=cert.fingerprint or "",
            settings_url=self.config.settings_url(domain.user.settings_token),
        )
