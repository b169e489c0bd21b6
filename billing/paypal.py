from __future__ import annotations

import base64
import threading
import zlib
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

import httpx
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from config import PAYPAL_CERT_ALLOWED_HOSTS, PAYPAL_CERT_FETCH_TIMEOUT_SECONDS

PAYPAL_TRANSMISSION_HEADERS = (
    "paypal-transmission-id",
    "paypal-transmission-time",
    "paypal-transmission-sig",
    "paypal-cert-url",
    "paypal-auth-algo",
)
_SUPPORTED_AUTH_ALGOS = {"SHA256WITHRSA"}

CertLoader = Callable[[str], str]


class PayPalSignatureError(RuntimeError):
    pass


@dataclass(frozen=True)
class PayPalTransmission:
    transmission_id: str
    transmission_time: str
    transmission_sig: str
    cert_url: str
    auth_algo: str

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> Optional["PayPalTransmission"]:
        """Return None when any transmission header is absent."""

        values = {name: str(headers.get(name) or "").strip() for name in PAYPAL_TRANSMISSION_HEADERS}
        if not all(values.values()):
            return None
        return cls(
            transmission_id=values["paypal-transmission-id"],
            transmission_time=values["paypal-transmission-time"],
            transmission_sig=values["paypal-transmission-sig"],
            cert_url=values["paypal-cert-url"],
            auth_algo=values["paypal-auth-algo"],
        )


def build_expected_message(*, transmission_id: str, transmission_time: str, webhook_id: str, body: bytes) -> bytes:
    """
    Build the string PayPal signs for a webhook delivery.

    Message format:
      transmission_id|transmission_time|webhook_id|crc32(body)

    crc32 is the unsigned decimal checksum of the raw body bytes.
    """

    crc = zlib.crc32(body) & 0xFFFFFFFF
    return f"{transmission_id}|{transmission_time}|{webhook_id}|{crc}".encode("utf-8")


def validate_cert_url(cert_url: str, allowed_hosts: list[str] | None = None) -> str:
    parsed = urlparse(str(cert_url or "").strip())
    if parsed.scheme != "https":
        raise PayPalSignatureError("paypal cert url must use https")
    host = (parsed.hostname or "").lower()
    hosts = {item.lower() for item in (allowed_hosts if allowed_hosts is not None else PAYPAL_CERT_ALLOWED_HOSTS)}
    if host not in hosts:
        raise PayPalSignatureError(f"paypal cert host not allowed: {host}")
    return parsed.geturl()


_CERT_CACHE: dict[str, str] = {}
_CERT_CACHE_LOCK = threading.Lock()


def load_paypal_certificate(cert_url: str, *, timeout_seconds: float = PAYPAL_CERT_FETCH_TIMEOUT_SECONDS) -> str:
    with _CERT_CACHE_LOCK:
        cached = _CERT_CACHE.get(cert_url)
    if cached:
        return cached
    try:
        response = httpx.get(cert_url, timeout=timeout_seconds, follow_redirects=False)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        raise PayPalSignatureError(f"paypal cert download failed: {exc}") from exc
    pem = response.text
    if "BEGIN CERTIFICATE" not in pem:
        raise PayPalSignatureError("paypal cert url did not return a PEM certificate")
    with _CERT_CACHE_LOCK:
        _CERT_CACHE[cert_url] = pem
    return pem


def clear_certificate_cache() -> None:
    with _CERT_CACHE_LOCK:
        _CERT_CACHE.clear()


def verify_rsa_sha256_base64_with_cert(
    *,
    cert_pem: str,
    message: bytes,
    signature_b64: str,
    now: Optional[datetime] = None,
) -> bool:
    pem = str(cert_pem or "").strip()
    if not pem:
        return False
    try:
        cert = x509.load_pem_x509_certificate(pem.encode("utf-8"))
        current = now or datetime.now(timezone.utc)
        if current < cert.not_valid_before_utc or current > cert.not_valid_after_utc:
            return False
        public_key = cert.public_key()
        if not isinstance(public_key, rsa.RSAPublicKey):
            return False
        signature = base64.b64decode(signature_b64.encode("ascii"), validate=True)
        public_key.verify(signature, message, padding.PKCS1v15(), hashes.SHA256())
    except (InvalidSignature, ValueError, TypeError):
        return False
    return True


def verify_paypal_transmission(
    body: bytes,
    transmission: PayPalTransmission,
    *,
    webhook_id: str,
    cert_loader: CertLoader | None = None,
    allowed_hosts: list[str] | None = None,
) -> bool:
    """
    Verify a PayPal webhook delivery offline.

    Raises PayPalSignatureError for configuration or certificate retrieval
    problems; returns False for a signature that does not verify.
    """

    if not webhook_id:
        raise PayPalSignatureError("PAYPAL_WEBHOOK_ID is not configured")
    if transmission.auth_algo.replace("-", "").upper() not in _SUPPORTED_AUTH_ALGOS:
        return False
    cert_url = validate_cert_url(transmission.cert_url, allowed_hosts)
    loader = cert_loader or load_paypal_certificate
    cert_pem = loader(cert_url)
    message = build_expected_message(
        transmission_id=transmission.transmission_id,
        transmission_time=transmission.transmission_time,
        webhook_id=webhook_id,
        body=body,
    )
    return verify_rsa_sha256_base64_with_cert(
        cert_pem=cert_pem,
        message=message,
        signature_b64=transmission.transmission_sig,
    )
