import asyncio
import logging
import socket
import ssl
from datetime import datetime, timezone
from typing import Dict, List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import NameOID
from pydantic import BaseModel, Field

from ..agent_config import AgentConfig, CertificateTarget

logger = logging.getLogger("cw-agent.scanner")

EXPIRING_THRESHOLD_DAYS = 30


class CertificateResult(BaseModel):
    """Outcome of one TLS inspection, as reported to the CertWatch API."""
    hostname: str
    port: int
    status: str  # valid | expiring | expired | error
    error: str = ""
    subject_cn: str = ""
    issuer: str = ""
    serial_number: str = ""
    sans: List[str] = Field(default_factory=list)
    not_before: Optional[datetime] = None
    not_after: Optional[datetime] = None
    fingerprint_sha256: str = ""
    days_until_expiry: Optional[int] = None
    tags: List[str] = Field(default_factory=list)
    scanned_at: datetime


def _common_name(name: x509.Name) -> str:
    attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    if attrs:
        return str(attrs[0].value)
    return name.rfc4514_string()


def parse_certificate(der: bytes, target: CertificateTarget, now: Optional[datetime] = None) -> CertificateResult:
    """Turn a DER-encoded leaf certificate into a CertificateResult."""
    now = now or datetime.now(timezone.utc)
    cert = x509.load_der_x509_certificate(der)

    sans: List[str] = []
    try:
        san_ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        for name in san_ext.value:
            if isinstance(name, x509.DNSName):
                sans.append(name.value)
            elif isinstance(name, x509.IPAddress):
                sans.append(str(name.value))
    except x509.ExtensionNotFound:
        pass

    not_after = cert.not_valid_after_utc
    days_left = (not_after - now).days
    if not_after <= now:
        status = "expired"
    elif days_left < EXPIRING_THRESHOLD_DAYS:
        status = "expiring"
    else:
        status = "valid"

    return CertificateResult(
        hostname=target.hostname,
        port=target.port,
        status=status,
        subject_cn=_common_name(cert.subject),
        issuer=_common_name(cert.issuer),
        serial_number=format(cert.serial_number, "x"),
        sans=sans,
        not_before=cert.not_valid_before_utc,
        not_after=not_after,
        fingerprint_sha256=cert.fingerprint(hashes.SHA256()).hex(),
        days_until_expiry=days_left,
        tags=list(target.tags),
        scanned_at=now,
    )


def fetch_peer_certificate(hostname: str, port: int, timeout: float) -> bytes:
    """
    Blocking TLS handshake returning the server's leaf certificate (DER).
    Verification is off: expired or self-signed certificates must still be inspected.
    """
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE

    with socket.create_connection((hostname, port), timeout=timeout) as sock:
        with context.wrap_socket(sock, server_hostname=hostname) as ssock:
            der = ssock.getpeercert(binary_form=True)
    if not der:
        raise ssl.SSLError("server presented no certificate")
    return der


class CertificateScannerService:
    """
    Certificate Scanner Service.
    Responsibility: Inspect every configured endpoint on the scan interval and keep
    the latest result per endpoint for the sync loop.
    """

    def __init__(self, config: AgentConfig):
        self._config = config
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._results: Dict[str, CertificateResult] = {}
        self._semaphore = asyncio.Semaphore(config.agent.concurrency)

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._scan_loop())
        logger.info(f"CertificateScannerService started ({len(self._config.certificates)} endpoints).")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("CertificateScannerService stopped.")

    def latest_results(self) -> List[CertificateResult]:
        return list(self._results.values())

    async def scan_all(self) -> List[CertificateResult]:
        results = await asyncio.gather(*(self._scan_one(t) for t in self._config.certificates))
        for result in results:
            self._results[f"{result.hostname}:{result.port}"] = result

        problems = sum(1 for r in results if r.status != "valid")
        logger.info(f"Scanned {len(results)} endpoints ({problems} need attention)")
        return results

    async def _scan_one(self, target: CertificateTarget) -> CertificateResult:
        timeout = self._config.api.timeout.total_seconds()
        async with self._semaphore:
            try:
                der = await asyncio.to_thread(fetch_peer_certificate, target.hostname, target.port, timeout)
                result = parse_certificate(der, target)
            except (OSError, ValueError) as e:
                logger.warning(f"Scan of {target.address} failed: {e}")
                return CertificateResult(
                    hostname=target.hostname,
                    port=target.port,
                    status="error",
                    error=str(e) or type(e).__name__,
                    tags=list(target.tags),
                    scanned_at=datetime.now(timezone.utc),
                )

        if result.status != "valid":
            logger.warning(
                f"{target.address}: certificate {result.status} "
                f"(expires {result.not_after:%Y-%m-%d}, {result.days_until_expiry} days)"
            )
        else:
            logger.debug(f"{target.address}: valid for {result.days_until_expiry} days")
        return result

    async def _scan_loop(self):
        interval = self._config.agent.scan_interval.total_seconds()
        while self._running:
            await asyncio.sleep(interval)
            try:
                await self.scan_all()
            except Exception as e:
                logger.error(f"Error in scan loop: {e}", exc_info=True)
