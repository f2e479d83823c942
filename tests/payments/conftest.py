import base64
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID


@dataclass
class WebhookSigner:
    """RSA key plus a self-signed certificate standing in for the provider's signing cert."""

    key: rsa.RSAPrivateKey
    cert_pem: bytes

    def sign(self, message: bytes) -> str:
        return base64.b64encode(self.key.sign(message, padding.PKCS1v15(), hashes.SHA256())).decode("ascii")


def _self_signed(key, not_before: datetime, not_after: datetime) -> bytes:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "messageverificationcerts.paypal.com")])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM)


@pytest.fixture(scope="session")
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def webhook_signer(signing_key):
    return WebhookSigner(
        key=signing_key,
        cert_pem=_self_signed(
            signing_key,
            datetime(2025, 1, 1, tzinfo=timezone.utc),
            datetime(2030, 1, 1, tzinfo=timezone.utc),
        ),
    )


@pytest.fixture(scope="session")
def expired_signer(signing_key):
    start = datetime(2020, 1, 1, tzinfo=timezone.utc)
    return WebhookSigner(key=signing_key, cert_pem=_self_signed(signing_key, start, start + timedelta(days=365)))


@pytest.fixture(scope="session")
def impostor_signer():
    """Signs with a key that does not match any served certificate."""
    return WebhookSigner(key=rsa.generate_private_key(public_exponent=65537, key_size=2048), cert_pem=b"")
