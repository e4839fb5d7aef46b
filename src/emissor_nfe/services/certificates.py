from __future__ import annotations

import logging
from datetime import datetime

from emissor_nfe.models.certificate import Certificate
from emissor_nfe.services.exceptions import CertificateError
from emissor_nfe.storage.base import Storage
from emissor_nfe.utils.certificate import extract_certificate

logger = logging.getLogger(__name__)


def upload_certificate(
    storage: Storage,
    user_id: int,
    pfx_base64: str,
    password: str,
    name: str | None = None,
    now: datetime | None = None,
) -> Certificate:
    """Validate an A1 credential and make it the user's only active certificate.

    The PKCS#12 is opened before anything is stored, so a wrong password or
    an expired certificate never reaches storage. Returns the masked record.
    """
    data = extract_certificate(pfx_base64, password)
    if data.is_expired(now):
        raise CertificateError(
            f"O certificado A1 está expirado (validade: {data.not_after:%d/%m/%Y})"
        )

    saved = storage.replace_certificate(
        user_id,
        Certificate(
            name=name or data.subject or "Certificado A1",
            certificate_base64=pfx_base64,
            password=password,
            expires_at=data.not_after.isoformat(),
        ),
    )
    logger.info("Certificado '%s' ativo ate %s", saved.name, saved.expires_at)
    return saved.masked()


def list_certificates(storage: Storage, user_id: int) -> list[Certificate]:
    return [c.masked() for c in storage.list_certificates(user_id)]
