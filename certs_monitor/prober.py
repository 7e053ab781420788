"""
TLS certificate prober for Certs Monitor.

Connects to a domain, reads whatever certificate the endpoint presents and
extracts its metadata. Chain of trust is deliberately not validated.
"""

import asyncio
import ipaddress
import socket
import ssl
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import ExtensionOID, NameOID

from certs_monitor.errors import (
    ConnectionFailed,
    DnsFailure,
    NoCertificate,
    NoPublicAddress,
    ProbeTimeout,
    ReadFailure,
)
from certs_monitor.logger import get_logger

DEFAULT_TIMEOUT = 10.0


@dataclass
class CertificateInfo:
    """Metadata read from a presented certificate."""

    not_before: datetime
    not_after: datetime
    issuer: Optional[str]
    cn: Optional[str]
    san: List[str] = field(default_factory=list)
    serial: Optional[str] = None
    fingerprint: Optional[str] = None
    ip: Optional[str] = None


class ProbeOutcome:
    """
    Single-assignment result cell for one probe.

    Success, timeout and connection errors race to settle it; the first one
    wins and every later attempt is ignored.
    """

    def __init__(self) -> None:
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def settled(self) -> bool:
        return self._future.done()

    def resolve(self, info: CertificateInfo) -> bool:
        if self._future.done():
            return False
        self._future.set_result(info)
        return True

    def reject(self, error: BaseException) -> bool:
        if self._future.done():
            return False
        self._future.set_exception(error)
        return True

    async def wait(self) -> CertificateInfo:
        return await self._future  # type: ignore[no-any-return]


def is_public_ipv4(address: str) -> bool:
    """True when the address is a globally routable unicast IPv4 address."""
    try:
        ip = ipaddress.IPv4Address(address)
    except ValueError:
        return False
    return ip.is_global and not ip.is_multicast


def select_public_address(addresses: Iterable[str]) -> str:
    """
    Pick the first public address.

    Raises:
        NoPublicAddress: If every address is private, loopback, link-local or reserved
    """
    for address in addresses:
        if is_public_ipv4(address):
            return address
    raise NoPublicAddress()


def _name_attribute(name: x509.Name, oid: x509.ObjectIdentifier) -> Optional[str]:
    attrs = name.get_attributes_for_oid(oid)
    if not attrs:
        return None
    value = attrs[0].value
    value = value if isinstance(value, str) else value.decode("utf-8")
    return value or None


def _get_san_list(cert: x509.Certificate) -> List[str]:
    """DNS names from the subject alternative name extension."""
    try:
        san_ext = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
    except x509.ExtensionNotFound:
        return []
    names = san_ext.value.get_values_for_type(x509.DNSName)  # type: ignore[attr-defined]
    return [name.strip() for name in names if name.strip()]


def extract_certificate_info(cert: x509.Certificate, ip: Optional[str]) -> CertificateInfo:
    """
    Extract the monitored fields from a parsed certificate.

    Args:
        cert: Certificate presented by the peer
        ip: Remote address the connection was made to

    Returns:
        Certificate metadata
    """
    fingerprint = cert.fingerprint(hashes.SHA256()).hex(":").upper()

    return CertificateInfo(
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        issuer=_name_attribute(cert.issuer, NameOID.ORGANIZATION_NAME)
        or _name_attribute(cert.issuer, NameOID.COMMON_NAME),
        cn=_name_attribute(cert.subject, NameOID.COMMON_NAME),
        san=_get_san_list(cert),
        serial=format(cert.serial_number, "X"),
        fingerprint=fingerprint,
        ip=ip,
    )


def parse_der_certificate(der: Optional[bytes], ip: Optional[str]) -> CertificateInfo:
    """
    Parse the DER bytes returned by the TLS layer.

    Raises:
        NoCertificate: If the peer presented nothing
        ReadFailure: If the bytes are not a readable certificate
    """
    if not der:
        raise NoCertificate()

    try:
        cert = x509.load_der_x509_certificate(der)
        return extract_certificate_info(cert, ip)
    except ValueError as e:
        raise ReadFailure(cause=e) from e


class CertificateProber:
    """Reads the certificate presented by a TLS endpoint."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout
        self.logger = get_logger("prober")
        self._ssl_context = self._create_ssl_context()

    @staticmethod
    def _create_ssl_context() -> ssl.SSLContext:
        # Metadata only: accept whatever certificate the endpoint presents
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        return context

    async def probe(
        self, hostname: str, port: int = 443, timeout: Optional[float] = None
    ) -> CertificateInfo:
        """
        Probe a domain and return its certificate metadata.

        Args:
            hostname: Domain name, also sent as SNI
            port: TCP port
            timeout: Hard limit for the whole attempt in seconds

        Returns:
            Certificate metadata

        Raises:
            ProbeError: One of DnsFailure, NoPublicAddress, ProbeTimeout,
                ConnectionFailed, NoCertificate or ReadFailure
        """
        limit = self.timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        outcome = ProbeOutcome()

        timer = loop.call_later(limit, outcome.reject, ProbeTimeout())
        attempt = asyncio.create_task(self._attempt(hostname, port, outcome))

        try:
            return await outcome.wait()
        finally:
            timer.cancel()
            if not attempt.done():
                attempt.cancel()
            await asyncio.gather(attempt, return_exceptions=True)

    async def _attempt(self, hostname: str, port: int, outcome: ProbeOutcome) -> None:
        try:
            info = await self._fetch(hostname, port)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            outcome.reject(e)
        else:
            outcome.resolve(info)

    async def _fetch(self, hostname: str, port: int) -> CertificateInfo:
        addresses = await self._resolve(hostname, port)
        address = select_public_address(addresses)
        self.logger.debug(f"[{hostname}] Connecting to {address}:{port}")

        try:
            _, writer = await asyncio.open_connection(
                address, port, ssl=self._ssl_context, server_hostname=hostname
            )
        except (ssl.SSLError, OSError) as e:
            raise ConnectionFailed(cause=e) from e

        try:
            ssl_object = writer.get_extra_info("ssl_object")
            peer = writer.get_extra_info("peername")
            remote_ip = peer[0] if peer else address
            try:
                der = ssl_object.getpeercert(binary_form=True) if ssl_object else None
            except (ValueError, ssl.SSLError) as e:
                raise ReadFailure(cause=e) from e
        finally:
            writer.close()

        return parse_der_certificate(der, remote_ip)

    async def _resolve(self, hostname: str, port: int) -> List[str]:
        loop = asyncio.get_running_loop()
        try:
            infos: List[Any] = await loop.getaddrinfo(
                hostname, port, family=socket.AF_INET, type=socket.SOCK_STREAM
            )
        except (OSError, UnicodeError) as e:
            raise DnsFailure(cause=e) from e

        addresses: List[str] = []
        for *_, sockaddr in infos:
            if sockaddr[0] not in addresses:
                addresses.append(sockaddr[0])
        return addresses
