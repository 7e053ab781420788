"""
Test doubles and data builders for Certs Monitor tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple, Union

from certs_monitor.errors import DeliveryError
from certs_monitor.prober import CertificateInfo

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeMailer:
    """Records sent messages and fails for chosen recipients."""

    def __init__(self) -> None:
        self.sent: List[Tuple[List[str], str, str, Optional[str]]] = []
        self.failing: set = set()

    async def send(
        self, recipients: List[str], subject: str, html: str, tag: Optional[str] = None
    ) -> None:
        if any(recipient in self.failing for recipient in recipients):
            raise DeliveryError(f"Mailbox unavailable: {', '.join(recipients)}")
        self.sent.append((list(recipients), subject, html, tag))


class FakeProber:
    """Returns canned certificates or raises canned errors per hostname."""

    def __init__(self) -> None:
        self.results: Dict[str, Union[CertificateInfo, Exception]] = {}
        self.calls: List[str] = []

    async def probe(
        self, hostname: str, port: int = 443, timeout: Optional[float] = None
    ) -> CertificateInfo:
        self.calls.append(hostname)
        result = self.results[hostname]
        if isinstance(result, Exception):
            raise result
        return result


def make_cert(
    not_after: datetime,
    fingerprint: str = "AA:BB:CC",
    issuer: str = "Let's Encrypt",
) -> CertificateInfo:
    return CertificateInfo(
        not_before=not_after - timedelta(days=90),
        not_after=not_after,
        issuer=issuer,
        cn="example.com",
        san=["example.com", "www.example.com"],
        serial="0A1B2C",
        fingerprint=fingerprint,
        ip="93.184.216.34",
    )
