"""
Durable email outbox for Certs Monitor.

Producers enqueue jobs; a separate recurring task drains them in priority
order and retries failed deliveries with exponential backoff.
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from certs_monitor.config import Config
from certs_monitor.logger import get_logger, log_outbox_retry
from certs_monitor.mailer import MailTransport
from certs_monitor.metrics import MetricsCollector
from certs_monitor.models import OutboxJob, OutboxPriority, OutboxStatus, utcnow
from certs_monitor.store import Store


class NotificationOutbox:
    """Priority queue of pending emails backed by the store."""

    def __init__(
        self,
        config: Config,
        store: Store,
        mailer: MailTransport,
        metrics: MetricsCollector,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.store = store
        self.mailer = mailer
        self.metrics = metrics
        self.clock = clock
        self.logger = get_logger("outbox")

        self.batch_size = config.outbox_batch_size
        self.max_attempts = config.outbox_max_attempts
        self.initial_delay = config.outbox_initial_delay_seconds
        self.base_delay = config.outbox_base_delay_seconds
        self.max_delay = config.outbox_max_delay_seconds

    def retry_delay(self, failed_attempts: int) -> float:
        """
        Seconds to wait before the next attempt.

        Args:
            failed_attempts: Failures recorded before the attempt that just failed

        Returns:
            Initial delay plus an exponential term capped at the maximum delay
        """
        exponential = min(2**failed_attempts * self.base_delay, self.max_delay)
        return float(self.initial_delay + exponential)

    def delivery_tag(self, template_name: Optional[str]) -> Optional[str]:
        if not template_name:
            return None
        return f"{self.config.mail_tag_prefix}-{template_name}"

    async def enqueue(
        self,
        recipients: List[str],
        subject: str,
        body: str,
        template_name: Optional[str] = None,
        priority: OutboxPriority = OutboxPriority.MEDIUM,
        send_after: Optional[datetime] = None,
        session: Optional[AsyncSession] = None,
    ) -> OutboxJob:
        """
        Queue an email.

        Args:
            recipients: Destination addresses
            subject: Subject line
            body: Rendered HTML body
            template_name: Template tag used for delivery categorisation
            priority: Lower values are sent first
            send_after: Earliest time the job may be sent
            session: Join the caller's transaction instead of opening one

        Returns:
            The pending job
        """
        job = OutboxJob(
            recipients=list(recipients),
            subject=subject,
            body=body,
            template_name=template_name,
            priority=int(priority),
            status=OutboxStatus.PENDING,
            failed_attempts=0,
            send_after=send_after,
            created_at=self.clock(),
        )

        if session is not None:
            session.add(job)
            await session.flush()
        else:
            async with self.store.transaction() as own_session:
                own_session.add(job)

        self.metrics.record_notification(template_name or "untagged")
        self.logger.debug(f"Queued email '{subject}' for {', '.join(recipients)}")
        return job

    async def fetch_due(self) -> List[OutboxJob]:
        """Pending jobs that may be sent now, highest priority and oldest first."""
        now = self.clock()
        query = (
            select(OutboxJob)
            .where(
                OutboxJob.status == OutboxStatus.PENDING,
                or_(OutboxJob.send_after.is_(None), OutboxJob.send_after <= now),
                or_(OutboxJob.retry_after.is_(None), OutboxJob.retry_after <= now),
            )
            .order_by(OutboxJob.priority.asc(), OutboxJob.created_at.asc(), OutboxJob.id.asc())
            .limit(self.batch_size)
        )
        async with self.store.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def drain(self) -> int:
        """
        Deliver one batch of due jobs.

        Returns:
            Number of jobs attempted
        """
        jobs = await self.fetch_due()
        self.metrics.outbox_batch_size.set(len(jobs))

        if not jobs:
            return 0

        self.logger.info(f"Processing {len(jobs)} queued emails")

        for job in jobs:
            try:
                await self._deliver(job)
            except SQLAlchemyError:
                self.logger.exception(f"Could not record delivery result for email {job.id}")

        return len(jobs)

    async def _deliver(self, job: OutboxJob) -> None:
        self.logger.info(f"Sending email {job.id} to {', '.join(job.recipients)}")

        try:
            await self.mailer.send(
                list(job.recipients), job.subject, job.body, self.delivery_tag(job.template_name)
            )
        except Exception as e:
            await self._record_failure(job, e)
            return

        async with self.store.transaction() as session:
            await session.execute(
                update(OutboxJob)
                .execution_options(synchronize_session=False)
                .where(OutboxJob.id == job.id, OutboxJob.status == OutboxStatus.PENDING)
                .values(status=OutboxStatus.COMPLETED, completed_at=self.clock(), retry_after=None)
            )
        self.metrics.record_delivery("completed")

    async def _record_failure(self, job: OutboxJob, error: Exception) -> None:
        next_attempts = job.failed_attempts + 1

        if next_attempts >= self.max_attempts:
            async with self.store.transaction() as session:
                await session.execute(
                    update(OutboxJob)
                    .execution_options(synchronize_session=False)
                    .where(OutboxJob.id == job.id, OutboxJob.status == OutboxStatus.PENDING)
                    .values(status=OutboxStatus.FAILED, failed_attempts=next_attempts)
                )
            self.metrics.record_delivery("failed")
            self.logger.error(
                f"Email outbox job {job.id} failed permanently "
                f"after {next_attempts} attempts: {error}",
                extra={"job_id": job.id, "attempts": next_attempts},
            )
            return

        delay = self.retry_delay(job.failed_attempts)
        retry_after = self.clock() + timedelta(seconds=delay)

        async with self.store.transaction() as session:
            await session.execute(
                update(OutboxJob)
                .execution_options(synchronize_session=False)
                .where(OutboxJob.id == job.id, OutboxJob.status == OutboxStatus.PENDING)
                .values(failed_attempts=next_attempts, retry_after=retry_after)
            )
        self.metrics.record_delivery("retry")
        log_outbox_retry(self.logger, job.id, next_attempts, delay, error)
