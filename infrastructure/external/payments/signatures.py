"""
Pluggable webhook signature schemes.

Each scheme owns its header names and signed-message construction and
answers a single question: is this raw body authentic? ``verify`` never
raises; anything malformed is simply not authentic.
"""
from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import zlib
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, Mapping, Optional
from urllib.parse import urlsplit

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from core.logging_config import get_logger
from domain.common.exceptions import BusinessException


logger = get_logger(__name__)

_VERIFY_ERRORS = (ValueError, TypeError, UnicodeError, OverflowError)

# Downloads a PEM certificate; raises on transport or HTTP failure
CertificateFetcher = Callable[[str], Awaitable[bytes]]


def header_value(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


class WebhookSignatureScheme(ABC):
    @abstractmethod
    async def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> bool: ...


class TransmissionRsaScheme(WebhookSignatureScheme):
    """Card wallet transmission signature (PayPal webhook scheme).

    Signed message: ``<transmission_id>|<transmission_time>|<webhook_id>|<crc32(body)>``,
    SHA256withRSA, base64 encoded in the signature header. The signing
    certificate is downloaded from the cert-url header; only https URLs on an
    allow-listed host are fetched, and downloaded certificates are cached per URL.
    """

    supported_algorithms = frozenset({"SHA256WITHRSA"})

    def __init__(
        self,
        *,
        webhook_id: Optional[str],
        fetch_certificate: CertificateFetcher,
        cert_hosts: Iterable[str],
        id_header: str,
        time_header: str,
        signature_header: str,
        cert_url_header: str,
        auth_algo_header: str,
        tolerance_seconds: int,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._webhook_id = webhook_id
        self._fetch_certificate = fetch_certificate
        self._cert_hosts = frozenset(h.lower() for h in cert_hosts)
        self._id_header = id_header
        self._time_header = time_header
        self._signature_header = signature_header
        self._cert_url_header = cert_url_header
        self._auth_algo_header = auth_algo_header
        self._tolerance = tolerance_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._certificates: dict[str, x509.Certificate] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def signed_message(raw_body: bytes, transmission_id: str, transmission_time: str, webhook_id: str) -> bytes:
        return f"{transmission_id}|{transmission_time}|{webhook_id}|{zlib.crc32(raw_body)}".encode("utf-8")

    def cert_url_allowed(self, url: str) -> bool:
        try:
            parts = urlsplit(url.strip())
        except ValueError:
            return False
        return parts.scheme == "https" and (parts.hostname or "").lower() in self._cert_hosts

    async def certificate(self, url: str) -> x509.Certificate:
        cached = self._certificates.get(url)
        if cached is not None:
            return cached
        async with self._lock:
            cached = self._certificates.get(url)
            if cached is None:
                cached = x509.load_pem_x509_certificate(await self._fetch_certificate(url))
                self._certificates[url] = cached
                logger.info("webhook_certificate_cached", host=urlsplit(url).hostname)
        return cached

    async def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        transmission_id = header_value(headers, self._id_header)
        transmission_time = header_value(headers, self._time_header)
        signature = header_value(headers, self._signature_header)
        cert_url = header_value(headers, self._cert_url_header)
        auth_algo = header_value(headers, self._auth_algo_header)
        if not (transmission_id and transmission_time and signature and cert_url and auth_algo):
            return False
        if not self._webhook_id:
            logger.warning("webhook_id_not_configured", scheme="transmission_rsa")
            return False
        if auth_algo.strip().upper() not in self.supported_algorithms:
            return False
        if not self.cert_url_allowed(cert_url):
            logger.warning("webhook_cert_url_rejected", host=urlsplit(cert_url).hostname)
            return False
        try:
            sent_at = datetime.fromisoformat(transmission_time.strip().replace("Z", "+00:00"))
            if sent_at.tzinfo is None:
                sent_at = sent_at.replace(tzinfo=timezone.utc)
            if abs((self._clock() - sent_at).total_seconds()) > self._tolerance:
                return False
            signature_bytes = base64.b64decode(signature.strip(), validate=True)
            message = self.signed_message(raw_body, transmission_id, transmission_time, self._webhook_id)
        except _VERIFY_ERRORS:
            return False

        try:
            cert = await self.certificate(cert_url.strip())
        except (BusinessException, ValueError) as exc:
            logger.warning("webhook_certificate_unavailable", error=type(exc).__name__)
            return False
        now = self._clock()
        if not cert.not_valid_before_utc <= now <= cert.not_valid_after_utc:
            logger.warning("webhook_certificate_expired", not_after=cert.not_valid_after_utc.isoformat())
            return False
        public_key = cert.public_key()
        if not isinstance(public_key, rsa.RSAPublicKey):
            return False
        try:
            public_key.verify(signature_bytes, message, padding.PKCS1v15(), hashes.SHA256())
        except InvalidSignature:
            return False
        return True


class TimestampedHmacScheme(WebhookSignatureScheme):
    """Mobile money signature: hex HMAC-SHA256 over ``<timestamp>.<raw body>``.

    The timestamp header carries unix seconds; ``sha256=`` prefixes on the
    signature header are accepted.
    """

    def __init__(
        self,
        *,
        secret: Optional[str],
        signature_header: str,
        timestamp_header: str,
        tolerance_seconds: int,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._secret = secret
        self._signature_header = signature_header
        self._timestamp_header = timestamp_header
        self._tolerance = tolerance_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def sign(self, raw_body: bytes, timestamp: str) -> str:
        if not self._secret:
            raise ValueError("webhook secret is required")
        message = timestamp.encode("ascii") + b"." + raw_body
        return hmac.new(self._secret.encode("utf-8"), message, hashlib.sha256).hexdigest()

    async def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        try:
            signature = header_value(headers, self._signature_header)
            timestamp = header_value(headers, self._timestamp_header)
            if not (signature and timestamp):
                return False
            if not self._secret:
                logger.warning("webhook_secret_not_configured", scheme="timestamped_hmac")
                return False
            timestamp = timestamp.strip()
            if abs(self._clock().timestamp() - int(timestamp)) > self._tolerance:
                return False
            provided = signature.strip()
            if provided.lower().startswith("sha256="):
                provided = provided[len("sha256="):]
            expected = self.sign(raw_body, timestamp)
            return hmac.compare_digest(expected.encode("ascii"), provided.lower().encode("utf-8"))
        except _VERIFY_ERRORS:
            return False
