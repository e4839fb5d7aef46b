from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime

from emissor_nfe.config import BRT
from emissor_nfe.models.invoice import (
    EDITABLE_STATUSES,
    STATUS_AUTHORIZED,
    Invoice,
    InvoiceItem,
    compute_item_total,
    compute_totals,
)
from emissor_nfe.services.emission import preview_xml
from emissor_nfe.storage.base import Storage
from emissor_nfe.utils.formatters import dec4
from emissor_nfe.utils.validators import (
    validate_cfop,
    validate_cpf_cnpj,
    validate_csosn,
    validate_cst_pis_cofins,
    validate_date,
    validate_monetary,
    validate_ncm,
    validate_quantity,
    validate_time,
)

logger = logging.getLogger(__name__)

_MONEY_FIELDS = {
    "valor_frete": "Valor do frete",
    "valor_seguro": "Valor do seguro",
    "outras_despesas": "Outras despesas",
    "desconto": "Desconto",
}

_REQUIRED_HEADER = {
    "natureza_operacao": "Natureza da operacao",
    "dest_nome": "Nome do destinatario",
    "dest_cpf_cnpj": "CPF/CNPJ do destinatario",
}


def _build_item(raw: dict) -> InvoiceItem:
    data = dict(raw)
    for key, label in (("codigo", "Codigo"), ("descricao", "Descricao")):
        if not str(data.get(key) or "").strip():
            raise ValueError(f"{label} do produto e obrigatorio")
    data["codigo"] = str(data["codigo"])
    data["ncm"] = validate_ncm(str(data.get("ncm") or ""))
    data["cfop"] = validate_cfop(str(data.get("cfop") or "5102"))
    data["quantidade"] = validate_quantity(str(data.get("quantidade", "")))
    validate_monetary(data.get("valor_unitario"), "Valor unitario")
    data["valor_unitario"] = dec4(data["valor_unitario"])
    data["valor_total"] = compute_item_total(data["quantidade"], data["valor_unitario"])
    if data.get("csosn"):
        data["csosn"] = validate_csosn(str(data["csosn"]))
    for key in ("cst_pis", "cst_cofins"):
        if data.get(key):
            data[key] = validate_cst_pis_cofins(str(data[key]))
    return InvoiceItem.from_dict(data)


def build_items(raw_items: Iterable[dict]) -> list[InvoiceItem]:
    """Validate raw item dicts and compute each line total (qty x unit price)."""
    items = []
    for n, raw in enumerate(raw_items, start=1):
        try:
            items.append(_build_item(raw))
        except ValueError as exc:
            raise ValueError(f"Item {n}: {exc}") from exc
    return items


def build_invoice(data: dict, items: list[InvoiceItem], now: datetime | None = None) -> Invoice:
    """Validate an invoice header and fill its totals from *items*.

    Emission date and time default to the current moment in Brasilia time.
    """
    fields = dict(data)
    for key, label in _REQUIRED_HEADER.items():
        if not str(fields.get(key) or "").strip():
            raise ValueError(f"{label} e obrigatorio")

    fields["dest_cpf_cnpj"] = validate_cpf_cnpj(str(fields["dest_cpf_cnpj"]))
    fields["dest_tipo_pessoa"] = "J" if len(fields["dest_cpf_cnpj"]) > 11 else "F"

    current = now or datetime.now(BRT)
    fields["data_emissao"] = validate_date(str(fields.get("data_emissao") or current.strftime("%Y-%m-%d")))
    fields["hora_emissao"] = validate_time(str(fields.get("hora_emissao") or current.strftime("%H:%M:%S")))
    if fields.get("data_saida"):
        fields["data_saida"] = validate_date(str(fields["data_saida"]))
        fields["hora_saida"] = validate_time(str(fields.get("hora_saida") or fields["hora_emissao"]))

    for key, label in _MONEY_FIELDS.items():
        fields[key] = validate_monetary(fields.get(key), label)

    fields["total_produtos"], fields["total_nota"] = compute_totals(
        items,
        fields["valor_frete"],
        fields["valor_seguro"],
        fields["outras_despesas"],
        fields["desconto"],
    )
    return Invoice.from_dict(fields)


def create_invoice(storage: Storage, user_id: int, data: dict, items: Iterable[dict]) -> Invoice:
    """Validate and store a new draft invoice. The storage assigns its numero."""
    built_items = build_items(items)
    invoice = build_invoice(data, built_items)
    created = storage.create_invoice(user_id, invoice, built_items)
    logger.info("Nota %s criada (numero %s)", created.id, created.numero)
    return created


def edit_invoice(
    storage: Storage, user_id: int, invoice_id: int, data: dict, items: Iterable[dict]
) -> Invoice:
    """Replace header and items of an editable invoice, resetting it to draft.

    Raises InvoiceStateError when the invoice is processing or authorized.
    """
    built_items = build_items(items)
    invoice = build_invoice(data, built_items)
    return storage.replace_invoice(user_id, invoice_id, invoice, built_items, EDITABLE_STATUSES)


def delete_invoice(storage: Storage, user_id: int, invoice_id: int) -> bool:
    invoice = storage.get_invoice(user_id, invoice_id)
    if invoice is not None and invoice.status == STATUS_AUTHORIZED:
        logger.warning("Removendo nota %s ja autorizada (chave %s)", invoice_id, invoice.chave_acesso)
    return storage.delete_invoice(user_id, invoice_id)


def get_invoice_xml(storage: Storage, user_id: int, invoice_id: int, tp_amb: str = "2") -> str:
    """Signed XML if the invoice was signed, else the stored unsigned XML, else a fresh preview."""
    invoice = storage.get_invoice(user_id, invoice_id)
    if invoice is None:
        raise ValueError("Nota fiscal não encontrada")
    if invoice.xml_signed:
        return invoice.xml_signed
    if invoice.xml_content:
        return invoice.xml_content
    return preview_xml(storage, user_id, invoice_id, invoice.ambiente or tp_amb).xml
