from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from emissor_nfe import config as _config
from emissor_nfe.models.invoice import (
    STATUS_AUTHORIZED,
    STATUS_PROCESSING,
    STATUS_REJECTED,
    STATUS_SIGNATURE_ERROR,
    STATUSES,
)
from emissor_nfe.services.exceptions import CertificateError, InvoiceStateError, XmlSignatureError
from emissor_nfe.services.sefaz_client import AuthorityResult, SefazClient, TransportConfig
from emissor_nfe.services.xml_builder import NfeXmlResult, build_nfe
from emissor_nfe.services.xml_signer import sign_nfe
from emissor_nfe.storage.base import Storage
from emissor_nfe.utils.certificate import extract_certificate

logger = logging.getLogger(__name__)

# An authorized NF-e is final. A processing one may still be in flight
# at the authority and is only re-sent when the caller forces it.
EMITTABLE_STATUSES = STATUSES - {STATUS_AUTHORIZED, STATUS_PROCESSING}

MSG_AUTHORIZED = "Esta nota já foi autorizada"
MSG_PROCESSING = "Esta nota já está em processamento"

# Artifacts of a previous attempt, reset when a new emission starts
_STALE_ARTIFACTS = {
    "protocolo": None,
    "recibo": None,
    "codigo_status": None,
    "motivo_rejeicao": None,
    "dh_recebimento": None,
    "xml_signed": None,
    "xml_protocolo": None,
}


@dataclass(frozen=True)
class EmissionResult:
    success: bool
    message: str
    chave_acesso: str | None = None
    protocolo: str | None = None
    status: str | None = None

    def to_dict(self) -> dict:
        """Payload returned to callers: {success, message, chaveAcesso?, protocolo?, status?}."""
        data: dict = {"success": self.success, "message": self.message}
        if self.chave_acesso is not None:
            data["chaveAcesso"] = self.chave_acesso
        if self.protocolo is not None:
            data["protocolo"] = self.protocolo
        if self.status is not None:
            data["status"] = self.status
        return data


def _fail(message: str) -> EmissionResult:
    logger.info("Emissao recusada: %s", message)
    return EmissionResult(success=False, message=message)


def _authorize(
    storage: Storage, user_id: int, invoice_id: int, chave: str, result: AuthorityResult
) -> EmissionResult:
    storage.update_invoice(
        user_id,
        invoice_id,
        status=STATUS_AUTHORIZED,
        protocolo=result.protocolo,
        dh_recebimento=result.dh_recbto,
        xml_protocolo=result.xml_protocolo,
        codigo_status=result.c_stat,
    )
    logger.info("NF-e %s autorizada, protocolo %s", chave, result.protocolo)
    return EmissionResult(
        success=True,
        message=f"NF-e autorizada! Protocolo: {result.protocolo}",
        chave_acesso=chave,
        protocolo=result.protocolo,
        status=STATUS_AUTHORIZED,
    )


def _reject(
    storage: Storage, user_id: int, invoice_id: int, chave: str, result: AuthorityResult
) -> EmissionResult:
    storage.update_invoice(
        user_id,
        invoice_id,
        status=STATUS_REJECTED,
        motivo_rejeicao=result.x_motivo,
        codigo_status=result.c_stat,
    )
    logger.warning("NF-e %s rejeitada: %s - %s", chave, result.c_stat, result.x_motivo)
    return EmissionResult(
        success=False,
        message=f"NF-e rejeitada: {result.c_stat} - {result.x_motivo}",
        chave_acesso=chave,
        status=STATUS_REJECTED,
    )


def emit(
    storage: Storage,
    user_id: int,
    invoice_id: int,
    tp_amb: str = "2",
    *,
    client_factory: Callable[..., SefazClient] = SefazClient,
    config: TransportConfig | None = None,
    sleep_func: Callable[[float], object] = time.sleep,
    poll_delay: float | None = None,
    now: datetime | None = None,
    force: bool = False,
) -> EmissionResult:
    """Build, sign and submit one invoice, persisting every transition.

    Failures are reported through the returned EmissionResult. Nothing is
    left pending when this returns: a receipt (cStat 103) is polled once
    after *poll_delay* seconds and its outcome persisted.

    An invoice in ``processando`` is refused so that two concurrent calls
    cannot both submit it. *force* re-sends it anyway, for an attempt that
    died mid-flight; if the first submission did reach the authority, the
    resend comes back as a duplicate-number rejection.
    """
    invoice = storage.get_invoice(user_id, invoice_id)
    if invoice is None:
        return _fail("Nota fiscal não encontrada")
    if invoice.status == STATUS_AUTHORIZED:
        return _fail(MSG_AUTHORIZED)
    if invoice.status == STATUS_PROCESSING and not force:
        return _fail(MSG_PROCESSING)

    emitter = storage.get_emitter(user_id)
    if emitter is None:
        return _fail("Dados do emitente não configurados")

    items = storage.get_invoice_items(invoice_id)
    if not items:
        return _fail("A nota fiscal não possui itens")

    certificate = storage.get_active_certificate(user_id)
    if certificate is None:
        return _fail("Nenhum certificado A1 ativo encontrado")

    try:
        cert_data = extract_certificate(certificate.certificate_base64, certificate.password)
    except CertificateError as exc:
        return _fail(f"Erro ao ler certificado: {exc}")
    if cert_data.is_expired(now):
        return _fail("O certificado A1 está expirado")

    try:
        built: NfeXmlResult = build_nfe(invoice, items, emitter, tp_amb)
    except ValueError as exc:
        return _fail(str(exc))
    chave = built.chave_acesso
    allowed = EMITTABLE_STATUSES | {STATUS_PROCESSING} if force else EMITTABLE_STATUSES

    try:
        storage.update_invoice(
            user_id,
            invoice_id,
            expected_statuses=allowed,
            xml_content=built.xml,
            chave_acesso=chave,
            ambiente=tp_amb,
            status=STATUS_PROCESSING,
            **_STALE_ARTIFACTS,
        )
    except InvoiceStateError as exc:
        return _fail(MSG_PROCESSING if exc.status == STATUS_PROCESSING else MSG_AUTHORIZED)

    try:
        signed = sign_nfe(built.xml, cert_data.private_key_pem, cert_data.certificate_pem)
    except XmlSignatureError as exc:
        storage.update_invoice(
            user_id,
            invoice_id,
            status=STATUS_SIGNATURE_ERROR,
            motivo_rejeicao=f"Erro na assinatura: {exc}",
        )
        logger.error("Falha ao assinar NF-e %s: %s", chave, exc)
        return EmissionResult(
            success=False,
            message=f"Erro ao assinar XML: {exc}",
            chave_acesso=chave,
            status=STATUS_SIGNATURE_ERROR,
        )

    storage.update_invoice(user_id, invoice_id, xml_signed=signed)

    client = client_factory(cert_data, config or TransportConfig.from_env())
    try:
        response = client.submit(signed, emitter.uf, tp_amb)
        if response.success:
            return _authorize(storage, user_id, invoice_id, chave, response)

        if not response.recibo:
            return _reject(storage, user_id, invoice_id, chave, response)

        storage.update_invoice(
            user_id,
            invoice_id,
            status=STATUS_PROCESSING,
            recibo=response.recibo,
            codigo_status=response.c_stat,
        )
        delay = _config.get_receipt_poll_delay() if poll_delay is None else poll_delay
        logger.info("Lote em processamento, recibo %s; consultando em %.1fs", response.recibo, delay)
        sleep_func(delay)

        polled = client.poll_receipt(response.recibo, emitter.uf, tp_amb)
        if polled.success:
            return _authorize(storage, user_id, invoice_id, chave, polled)
        return _reject(storage, user_id, invoice_id, chave, polled)
    finally:
        client.close()


def preview_xml(storage: Storage, user_id: int, invoice_id: int, tp_amb: str = "2") -> NfeXmlResult:
    """Build an unsigned NF-e for inspection. Nothing is persisted."""
    invoice = storage.get_invoice(user_id, invoice_id)
    if invoice is None:
        raise ValueError("Nota fiscal não encontrada")
    emitter = storage.get_emitter(user_id)
    if emitter is None:
        raise ValueError("Dados do emitente não configurados")
    items = storage.get_invoice_items(invoice_id)
    return build_nfe(invoice, items, emitter, tp_amb)
