"""
Tests for the domain check runner.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select, update

from certs_monitor.checks import UNKNOWN_ERROR, DomainCheckRunner
from certs_monitor.errors import ConnectionFailed, ProbeTimeout
from certs_monitor.models import Check, Domain, OutboxJob
from certs_monitor.status import DomainStatus
from tests.helpers import NOW, make_cert


@pytest.fixture
def runner(config, store, prober, outbox, renderer, metrics, clock):
    return DomainCheckRunner(config, store, prober, outbox, renderer, metrics, clock=clock)


async def add_domain(
    store, name="example.com", email="owner@example.com", confirmed=True, user_confirmed=True
):
    user = await store.add_user(email, confirmed=user_confirmed)
    return await store.add_domain(user.id, name, confirmed=confirmed)


async def queued_jobs(store):
    async with store.session() as session:
        result = await session.execute(select(OutboxJob).order_by(OutboxJob.id))
        return list(result.scalars().all())


async def checks_for(store, domain_id):
    async with store.session() as session:
        result = await session.execute(
            select(Check).where(Check.domain_id == domain_id).order_by(Check.id)
        )
        return list(result.scalars().all())


class TestDueSelection:
    """Test which domains a run picks up."""

    @pytest.mark.asyncio
    async def test_never_checked_and_stale_domains_are_due(self, runner, store, clock):
        fresh = await add_domain(store, "fresh.example.com", "a@example.com")
        never = await add_domain(store, "never.example.com", "b@example.com")

        async with store.transaction() as session:
            await session.execute(
                update(Domain)
                .where(Domain.id == fresh.id)
                .values(last_checked_at=clock() - timedelta(hours=1))
            )

        due = await runner.fetch_due_domains(clock())
        assert [domain.name for domain in due] == ["never.example.com"]

        clock.advance(hours=6)
        due = await runner.fetch_due_domains(clock())
        assert {domain.name for domain in due} == {"fresh.example.com", "never.example.com"}
        assert never.id in {domain.id for domain in due}

    @pytest.mark.asyncio
    async def test_unconfirmed_domains_and_users_are_skipped(self, runner, store, clock):
        await add_domain(store, "unconfirmed.example.com", "a@example.com", confirmed=False)
        await add_domain(store, "orphan.example.com", "b@example.com", user_confirmed=False)
        await add_domain(store, "ok.example.com", "c@example.com")

        due = await runner.fetch_due_domains(clock())
        assert [domain.name for domain in due] == ["ok.example.com"]
        assert due[0].user.email == "c@example.com"


class TestSuccessfulChecks:
    """Test recording of successful probes."""

    @pytest.mark.asyncio
    async def test_first_check_records_certificate(self, runner, store, prober, clock):
        domain = await add_domain(store)
        prober.results["example.com"] = make_cert(NOW + timedelta(days=90))

        summary = await runner.run_checks()

        assert summary == {"domains": 1, "succeeded": 1, "failed": 0, "notifications": 0}

        stored = await store.get_domain(domain.id)
        assert stored.status == DomainStatus.OK
        assert stored.last_checked_at == clock()
        assert stored.not_after == NOW + timedelta(days=90)
        assert stored.fingerprint == "AA:BB:CC"
        assert stored.san == ["example.com", "www.example.com"]
        assert stored.ip == "93.184.216.34"
        assert stored.error is None

        history = await checks_for(store, domain.id)
        assert len(history) == 1
        assert history[0].fingerprint == "AA:BB:CC"
        assert history[0].error is None

        assert await queued_jobs(store) == []

    @pytest.mark.asyncio
    async def test_entering_expiry_band_notifies_once(self, runner, store, prober, clock):
        """Test OK -> EXPIRING_30DAYS queues exactly one email."""
        domain = await add_domain(store)
        prober.results["example.com"] = make_cert(NOW + timedelta(days=35))
        await runner.run_checks()
        assert await queued_jobs(store) == []

        clock.advance(days=7)
        await runner.run_checks()

        stored = await store.get_domain(domain.id)
        assert stored.status == DomainStatus.EXPIRING_30DAYS
        assert stored.last_notified_at == clock()

        jobs = await queued_jobs(store)
        assert len(jobs) == 1
        assert jobs[0].subject == "Certificate expiring in 30 days: example.com"
        assert jobs[0].recipients == ["owner@example.com"]
        assert jobs[0].template_name == "Expiring"
        assert "example.com" in jobs[0].body
        assert "https://certs.example/?token=" in jobs[0].body

        # Same band on the next run: no new email
        clock.advance(hours=7)
        await runner.run_checks()
        assert len(await queued_jobs(store)) == 1

    @pytest.mark.asyncio
    async def test_each_band_notifies(self, runner, store, prober, clock):
        await add_domain(store)
        prober.results["example.com"] = make_cert(NOW + timedelta(days=20))

        subjects = []
        for _ in range(3):
            await runner.run_checks()
            subjects = [job.subject for job in await queued_jobs(store)]
            clock.advance(days=7)

        assert subjects == [
            "Certificate expiring in 30 days: example.com",
            "Certificate expiring in 14 days: example.com",
            "Certificate expiring in 7 days: example.com",
        ]

    @pytest.mark.asyncio
    async def test_already_expired_certificate(self, runner, store, prober, clock):
        domain = await add_domain(store)
        prober.results["example.com"] = make_cert(NOW - timedelta(days=3))

        summary = await runner.run_checks()
        assert summary["notifications"] == 1

        stored = await store.get_domain(domain.id)
        assert stored.status == DomainStatus.EXPIRED

        jobs = await queued_jobs(store)
        assert [job.subject for job in jobs] == ["Certificate expired: example.com"]
        assert "3 days ago" in jobs[0].body

        clock.advance(hours=7)
        await runner.run_checks()
        assert len(await queued_jobs(store)) == 1

    @pytest.mark.asyncio
    async def test_renewal_back_to_ok_is_silent(self, runner, store, prober, clock):
        domain = await add_domain(store)
        prober.results["example.com"] = make_cert(NOW + timedelta(days=5), fingerprint="OLD")
        await runner.run_checks()

        clock.advance(hours=7)
        prober.results["example.com"] = make_cert(NOW + timedelta(days=90), fingerprint="OLD")
        await runner.run_checks()

        stored = await store.get_domain(domain.id)
        assert stored.status == DomainStatus.OK
        assert len(await queued_jobs(store)) == 1


class TestCertificateChange:
    """Test fingerprint change detection."""

    @pytest.mark.asyncio
    async def test_change_is_notified(self, runner, store, prober, clock):
        domain = await add_domain(store)
        prober.results["example.com"] = make_cert(NOW + timedelta(days=90), fingerprint="AA:AA")
        await runner.run_checks()

        clock.advance(hours=7)
        prober.results["example.com"] = make_cert(NOW + timedelta(days=91), fingerprint="BB:BB")
        summary = await runner.run_checks()

        assert summary["notifications"] == 1
        jobs = await queued_jobs(store)
        assert [job.template_name for job in jobs] == ["CertificateChanged"]
        assert jobs[0].subject == "Certificate changed: example.com"
        assert "AA:AA" in jobs[0].body
        assert "BB:BB" in jobs[0].body

        stored = await store.get_domain(domain.id)
        assert stored.fingerprint == "BB:BB"
        assert stored.last_cert_change_notified_at == clock()
        assert stored.last_notified_at is None

    @pytest.mark.asyncio
    async def test_first_observation_is_not_a_change(self, runner, store, prober):
        domain = await add_domain(store)
        prober.results["example.com"] = make_cert(NOW + timedelta(days=90))
        await runner.run_checks()

        stored = await store.get_domain(domain.id)
        assert stored.last_cert_change_notified_at is None
        assert await queued_jobs(store) == []

    @pytest.mark.asyncio
    async def test_change_and_band_together(self, runner, store, prober, clock):
        await add_domain(store)
        prober.results["example.com"] = make_cert(NOW + timedelta(days=90), fingerprint="AA")
        await runner.run_checks()

        clock.advance(hours=7)
        prober.results["example.com"] = make_cert(NOW + timedelta(days=10), fingerprint="BB")
        await runner.run_checks()

        templates = sorted(job.template_name for job in await queued_jobs(store))
        assert templates == ["CertificateChanged", "Expiring"]


class TestFailedChecks:
    """Test recording of failed probes."""

    @pytest.mark.asyncio
    async def test_failure_bookkeeping(self, runner, store, prober, clock):
        domain = await add_domain(store)
        prober.results["example.com"] = make_cert(NOW + timedelta(days=90))
        await runner.run_checks()
        clock.advance(hours=7)
        first_failure = clock()

        prober.results["example.com"] = ProbeTimeout()
        summary = await runner.run_checks()
        assert summary == {"domains": 1, "succeeded": 0, "failed": 1, "notifications": 0}

        stored = await store.get_domain(domain.id)
        assert stored.error == "TLS connection timed out"
        assert stored.error_started_at == first_failure
        assert stored.last_checked_at == first_failure
        # The last good certificate is kept
        assert stored.status == DomainStatus.OK
        assert stored.fingerprint == "AA:BB:CC"

        # A second failure keeps the original start time
        clock.advance(hours=7)
        prober.results["example.com"] = ConnectionFailed()
        await runner.run_checks()

        stored = await store.get_domain(domain.id)
        assert stored.error == "TLS connection failed"
        assert stored.error_started_at == first_failure
        assert stored.last_checked_at == clock()

        history = await checks_for(store, domain.id)
        assert [check.error for check in history] == [
            None,
            "TLS connection timed out",
            "TLS connection failed",
        ]

        # Recovery clears the error
        clock.advance(hours=7)
        prober.results["example.com"] = make_cert(NOW + timedelta(days=90))
        await runner.run_checks()

        stored = await store.get_domain(domain.id)
        assert stored.error is None
        assert stored.error_started_at is None

    @pytest.mark.asyncio
    async def test_unexpected_error_is_recorded_generically(self, runner, store, prober):
        domain = await add_domain(store)
        prober.results["example.com"] = RuntimeError("socket exploded")

        await runner.run_checks()

        stored = await store.get_domain(domain.id)
        assert stored.error == UNKNOWN_ERROR
        assert stored.status == DomainStatus.PENDING

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_the_run(self, runner, store, prober, metrics):
        names = [f"site{index}.example.com" for index in range(5)]
        for index, name in enumerate(names):
            await add_domain(store, name, f"user{index}@example.com")
            prober.results[name] = make_cert(NOW + timedelta(days=90))
        prober.results["site2.example.com"] = ProbeTimeout()

        summary = await runner.run_checks()

        assert summary["domains"] == 5
        assert summary["succeeded"] == 4
        assert summary["failed"] == 1
        assert sorted(prober.calls) == sorted(names)
        assert metrics.registry.get_sample_value(
            "certs_probes_total", {"outcome": "ProbeTimeout"}
        ) == 1
