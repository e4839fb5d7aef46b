from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    pkcs12,
)
from cryptography.x509.oid import NameOID

from emissor_nfe.services.exceptions import CertificateError


@dataclass(frozen=True)
class CertificateData:
    """Key material decoded from a PKCS#12 container, held in memory only."""

    private_key_pem: bytes = field(repr=False)
    certificate_pem: bytes
    subject: str
    not_before: datetime
    not_after: datetime
    pfx_data: bytes = field(repr=False)
    password: str = field(repr=False)

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.not_after < (now or datetime.now(UTC))


def certificate_der_base64(cert_pem: bytes | str) -> str:
    """Strip PEM armour and whitespace, leaving the DER base64 body."""
    text = cert_pem.decode() if isinstance(cert_pem, bytes) else cert_pem
    text = re.sub(r"-----(BEGIN|END) CERTIFICATE-----", "", text)
    return re.sub(r"\s", "", text)


def extract_certificate(pfx_base64: str, password: str) -> CertificateData:
    """Decode a base64 .pfx/.p12 and return its leaf certificate and private key.

    Both pkcs8ShroudedKeyBag and plain pkcs8KeyBag encodings are accepted.
    Raises CertificateError for bad base64, wrong password or missing bags.
    """
    try:
        pfx_data = base64.b64decode(pfx_base64, validate=False)
    except (binascii.Error, ValueError) as exc:
        raise CertificateError(f"Certificado em base64 invalido: {exc}") from exc

    try:
        private_key, certificate, _ = pkcs12.load_key_and_certificates(
            pfx_data, password.encode() if password else None
        )
    except ValueError as exc:
        raise CertificateError(
            f"Nao foi possivel abrir o arquivo PFX (senha incorreta ou arquivo corrompido): {exc}"
        ) from exc

    if private_key is None or certificate is None:
        raise CertificateError("Nao foi possivel extrair chave privada ou certificado do arquivo PFX")

    key_pem = private_key.private_bytes(
        encoding=Encoding.PEM,
        format=PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=NoEncryption(),
    )
    cn = certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)

    return CertificateData(
        private_key_pem=key_pem,
        certificate_pem=certificate.public_bytes(Encoding.PEM),
        subject=str(cn[0].value) if cn else "",
        not_before=certificate.not_valid_before_utc,
        not_after=certificate.not_valid_after_utc,
        pfx_data=pfx_data,
        password=password,
    )


def read_pfx_file(pfx_path: str | Path) -> str:
    """Read a .pfx file from disk and return it base64-encoded."""
    return base64.b64encode(Path(pfx_path).read_bytes()).decode("ascii")
