"""
Exception hierarchy for Certs Monitor.
"""

from typing import Optional


class CertsMonitorError(Exception):
    """Base class for all application errors."""


class ProbeError(CertsMonitorError):
    """A TLS probe did not yield a certificate."""

    message = "Certificate probe failed"

    def __init__(self, message: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message or self.message)
        self.cause = cause

    def __str__(self) -> str:
        return self.args[0]


class DnsFailure(ProbeError):
    message = "DNS lookup failed"


class NoPublicAddress(ProbeError):
    message = "DNS lookup returned no public IPv4 addresses"


class ProbeTimeout(ProbeError):
    message = "TLS connection timed out"


class ConnectionFailed(ProbeError):
    message = "TLS connection failed"


class NoCertificate(ProbeError):
    message = "No certificate received"


class ReadFailure(ProbeError):
    message = "Failed to read certificate"


class DeliveryError(CertsMonitorError):
    """The mail transport could not deliver a message."""


class TemplateNotFoundError(CertsMonitorError):
    """A requested email template does not exist."""
