from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass, fields
from decimal import Decimal

from emissor_nfe.utils.formatters import dec2

STATUS_DRAFT = "rascunho"
STATUS_PROCESSING = "processando"
STATUS_AUTHORIZED = "autorizada"
STATUS_REJECTED = "rejeitada"
STATUS_SIGNATURE_ERROR = "erro_assinatura"

STATUSES = frozenset({
    STATUS_DRAFT,
    STATUS_PROCESSING,
    STATUS_AUTHORIZED,
    STATUS_REJECTED,
    STATUS_SIGNATURE_ERROR,
})

# Header and items may only be replaced in these statuses
EDITABLE_STATUSES = frozenset({STATUS_DRAFT, STATUS_REJECTED, STATUS_SIGNATURE_ERROR})

# Authority artifacts, cleared whenever an invoice is edited
ARTIFACT_FIELDS = (
    "chave_acesso",
    "protocolo",
    "recibo",
    "codigo_status",
    "motivo_rejeicao",
    "dh_recebimento",
    "ambiente",
    "xml_content",
    "xml_signed",
    "xml_protocolo",
)


def _known(cls, d: dict) -> dict:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in d.items() if k in names}


@dataclass(frozen=True)
class InvoiceItem:
    """One line of the NF-e (det)."""

    codigo: str
    descricao: str
    ncm: str
    cfop: str
    unidade: str
    quantidade: str
    valor_unitario: str
    valor_total: str
    ean: str = "SEM GTIN"
    origem: str = "0"
    csosn: str = "102"
    cst_pis: str = "49"
    cst_cofins: str = "49"
    id: int | None = None
    invoice_id: int | None = None

    @classmethod
    def from_dict(cls, d: dict) -> InvoiceItem:
        """Create an item from a dict; valor_total is recomputed when missing."""
        data = _known(cls, d)
        data.setdefault("unidade", "UN")
        data.setdefault("cfop", "5102")
        if not data.get("valor_total"):
            data["valor_total"] = compute_item_total(data["quantidade"], data["valor_unitario"])
        for key in ("ean", "origem", "csosn", "cst_pis", "cst_cofins"):
            if data.get(key) in (None, ""):
                data.pop(key, None)
        for key in ("quantidade", "valor_unitario", "valor_total", "origem", "cfop", "ncm"):
            if key in data and data[key] is not None:
                data[key] = str(data[key])
        return cls(**data)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Invoice:
    """One NF-e (model 55) owned by a single user account."""

    natureza_operacao: str
    data_emissao: str  # YYYY-MM-DD or DD/MM/YYYY
    hora_emissao: str  # HH:MM:SS
    dest_nome: str
    dest_cpf_cnpj: str
    numero: str | None = None
    serie: str = "1"
    tipo_saida: str = "1"
    finalidade: str = "1"
    indicador_presenca: str = "0"
    data_saida: str | None = None
    hora_saida: str | None = None
    dest_tipo_pessoa: str = "F"
    dest_inscricao_estadual: str | None = None
    dest_cep: str | None = None
    dest_uf: str | None = None
    dest_municipio: str | None = None
    dest_codigo_municipio: str | None = None
    dest_bairro: str | None = None
    dest_logradouro: str | None = None
    dest_numero: str | None = None
    dest_complemento: str | None = None
    dest_telefone: str | None = None
    dest_email: str | None = None
    consumidor_final: bool = True
    total_produtos: str = "0.00"
    valor_frete: str = "0.00"
    valor_seguro: str = "0.00"
    outras_despesas: str = "0.00"
    desconto: str = "0.00"
    total_nota: str = "0.00"
    modalidade_frete: str = "9"
    informacoes_complementares: str | None = None
    status: str = STATUS_DRAFT

    # Emission artifacts
    chave_acesso: str | None = None
    protocolo: str | None = None
    recibo: str | None = None
    codigo_status: str | None = None
    motivo_rejeicao: str | None = None
    dh_recebimento: str | None = None
    ambiente: str | None = None
    xml_content: str | None = None
    xml_signed: str | None = None
    xml_protocolo: str | None = None

    id: int | None = None
    user_id: int | None = None
    created_at: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> Invoice:
        """Create an Invoice from a stored or YAML-loaded dict, ignoring unknown keys."""
        data = _known(cls, d)
        for key in ("serie", "tipo_saida", "finalidade", "indicador_presenca", "modalidade_frete"):
            if key in data and data[key] is not None:
                data[key] = str(data[key])
        return cls(**data)

    def to_dict(self) -> dict:
        return asdict(self)

    @property
    def is_editable(self) -> bool:
        return self.status in EDITABLE_STATUSES


def compute_item_total(quantidade: str, valor_unitario: str) -> str:
    """Line total = quantity x unit price, rendered with 2 decimals."""
    return dec2(Decimal(str(quantidade)) * Decimal(str(valor_unitario)))


def compute_totals(
    items: Iterable[InvoiceItem],
    valor_frete: str = "0",
    valor_seguro: str = "0",
    outras_despesas: str = "0",
    desconto: str = "0",
) -> tuple[str, str]:
    """Return (total_produtos, total_nota).

    total_nota = produtos + frete + seguro + outras despesas - desconto.
    Raises ValueError if the result would be negative.
    """
    produtos = sum((Decimal(i.valor_total) for i in items), Decimal("0"))
    nota = (
        produtos
        + Decimal(dec2(valor_frete))
        + Decimal(dec2(valor_seguro))
        + Decimal(dec2(outras_despesas))
        - Decimal(dec2(desconto))
    )
    if nota < 0:
        raise ValueError("Total da nota nao pode ser negativo (desconto maior que o total)")
    return dec2(produtos), dec2(nota)
