"""
Certs Monitor

Background worker that watches the TLS certificates of registered domains
and emails their owners when certificate health changes.
"""

__version__ = "1.0.0"
__author__ = "Certs Monitor Team"
__description__ = "TLS certificate expiry monitoring and notification worker"

from certs_monitor.config import Config
from certs_monitor.prober import CertificateProber
from certs_monitor.status import DomainStatus, compute_domain_status

__all__ = [
    "Config",
    "CertificateProber",
    "DomainStatus",
    "compute_domain_status",
]
