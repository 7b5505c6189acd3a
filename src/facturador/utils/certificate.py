from __future__ import annotations

import re
from datetime import UTC, datetime
from pathlib import Path

from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    pkcs12,
)
from cryptography.x509 import Certificate
from cryptography.x509.oid import NameOID

# Hacienda keys carry the holder in serialNumber, e.g. "CPJ-3-101-123456"
_HOLDER_RE = re.compile(r"^CP[FJ]-([\d-]+)$")


def _read_p12(pfx_path: str, pin: str):
    return pkcs12.load_key_and_certificates(Path(pfx_path).read_bytes(), pin.encode())


def load_pfx(pfx_path: str, password: str) -> tuple[bytes, bytes, list[Certificate]]:
    """Open the .p12 signing key and return (private_key_pem, cert_pem, chain)."""
    private_key, certificate, chain = _read_p12(pfx_path, password)
    if private_key is None or certificate is None:
        raise ValueError("El archivo .p12 no contiene certificado o llave privada")

    return (
        private_key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()),
        certificate.public_bytes(Encoding.PEM),
        list(chain or ()),
    )


def holder_identification(certificate: Certificate) -> str | None:
    """Digits of the holder's cedula from the subject serialNumber, if present."""
    for attr in certificate.subject.get_attributes_for_oid(NameOID.SERIAL_NUMBER):
        match = _HOLDER_RE.match(str(attr.value))
        if match:
            return match.group(1).replace("-", "")
    return None


def certificate_info(pfx_path: str, password: str) -> dict:
    _, certificate, _ = _read_p12(pfx_path, password)
    if certificate is None:
        raise ValueError("El archivo .p12 no contiene certificado")

    desde = certificate.not_valid_before_utc
    hasta = certificate.not_valid_after_utc
    return {
        "subject": certificate.subject.rfc4514_string(),
        "issuer": certificate.issuer.rfc4514_string(),
        "holder_id": holder_identification(certificate),
        "not_before": desde,
        "not_after": hasta,
        "valid": desde <= datetime.now(UTC) <= hasta,
        "serial": certificate.serial_number,
    }
