from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from lxml import etree

from emissor_nfe.config import MODELO_NFE, NFE_NS, NFE_VERSION, VER_PROC
from emissor_nfe.models.emitter import Emitter
from emissor_nfe.models.invoice import Invoice, InvoiceItem
from emissor_nfe.utils.access_key import (
    AccessKeyParams,
    generate_access_key,
    generate_codigo_numerico,
    get_uf_code,
    parse_date,
)
from emissor_nfe.utils.formatters import dec2, dec4
from emissor_nfe.utils.validators import only_digits, validate_cpf_cnpj

logger = logging.getLogger(__name__)

NSMAP = {None: NFE_NS}

HOMOLOGACAO_DEST_NOME = "NF-E EMITIDA EM AMBIENTE DE HOMOLOGACAO - SEM VALOR FISCAL"
HOMOLOGACAO_XPROD = "NOTA FISCAL EMITIDA EM AMBIENTE DE HOMOLOGACAO - SEM VALOR FISCAL"

_ZEROED_ICMSTOT = (
    "vBC", "vICMS", "vICMSDeson", "vFCPUFDest", "vICMSUFDest", "vICMSUFRemet",
    "vFCP", "vBCST", "vST", "vFCPST", "vFCPSTRet",
)


@dataclass(frozen=True)
class NfeXmlResult:
    xml: str
    chave_acesso: str
    codigo_numerico: str


def _q(tag: str) -> str:
    return f"{{{NFE_NS}}}{tag}"


def _sub(parent: etree._Element, tag: str, text: str | None = None) -> etree._Element:
    el = etree.SubElement(parent, _q(tag))
    if text is not None:
        el.text = text
    return el


def _opt(parent: etree._Element, tag: str, text: str | None) -> None:
    """Emit *tag* only when it has content (empty nodes are schema errors)."""
    if text:
        _sub(parent, tag, text)


def _clean_cep(value: str | None) -> str:
    return only_digits(value).zfill(8)[:8]


def _format_datetime(data: str, hora: str) -> str:
    return f"{parse_date(data).strftime('%Y-%m-%d')}T{hora}-03:00"


def _build_emit(parent: etree._Element, emitter: Emitter, c_mun: str) -> None:
    emit = _sub(parent, "emit")
    _sub(emit, "CNPJ", only_digits(emitter.cnpj))
    _sub(emit, "xNome", emitter.razao_social)
    _opt(emit, "xFant", emitter.nome_fantasia)

    ender = _sub(emit, "enderEmit")
    _sub(ender, "xLgr", emitter.logradouro)
    _sub(ender, "nro", emitter.numero)
    _opt(ender, "xCpl", emitter.complemento)
    _sub(ender, "xBairro", emitter.bairro)
    _sub(ender, "cMun", c_mun or "0000000")
    _sub(ender, "xMun", emitter.municipio)
    _sub(ender, "UF", emitter.uf)
    _sub(ender, "CEP", _clean_cep(emitter.cep))
    _sub(ender, "cPais", "1058")
    _sub(ender, "xPais", "BRASIL")
    _opt(ender, "fone", only_digits(emitter.telefone))

    _sub(emit, "IE", "ISENTO" if emitter.ie_isento else only_digits(emitter.inscricao_estadual))
    _sub(emit, "CRT", emitter.regime_tributario or "1")


def _build_dest(
    parent: etree._Element,
    invoice: Invoice,
    emitter: Emitter,
    dest_doc: str,
    c_mun_emit: str,
    tp_amb: str,
) -> None:
    dest = _sub(parent, "dest")
    _sub(dest, "CNPJ" if len(dest_doc) > 11 else "CPF", dest_doc)
    _sub(dest, "xNome", HOMOLOGACAO_DEST_NOME if tp_amb == "2" else invoice.dest_nome)

    c_mun_dest = only_digits(invoice.dest_codigo_municipio) or c_mun_emit
    if not c_mun_dest:
        logger.warning("Codigo do municipio do destinatario nao configurado")

    ender = _sub(dest, "enderDest")
    _sub(ender, "xLgr", invoice.dest_logradouro or "RUA NAO INFORMADA")
    _sub(ender, "nro", invoice.dest_numero or "S/N")
    _opt(ender, "xCpl", invoice.dest_complemento)
    _sub(ender, "xBairro", invoice.dest_bairro or "NAO INFORMADO")
    _sub(ender, "cMun", c_mun_dest or "0000000")
    _sub(ender, "xMun", invoice.dest_municipio or emitter.municipio)
    _sub(ender, "UF", invoice.dest_uf or emitter.uf)
    _sub(ender, "CEP", _clean_cep(invoice.dest_cep))
    _sub(ender, "cPais", "1058")
    _sub(ender, "xPais", "BRASIL")
    _opt(ender, "fone", only_digits(invoice.dest_telefone))

    _sub(dest, "indIEDest", "9")
    _opt(dest, "email", invoice.dest_email)


def _build_det(parent: etree._Element, n_item: int, item: InvoiceItem, tp_amb: str) -> None:
    det = _sub(parent, "det")
    det.set("nItem", str(n_item))

    prod = _sub(det, "prod")
    ean = item.ean or "SEM GTIN"
    _sub(prod, "cProd", item.codigo)
    _sub(prod, "cEAN", ean)
    _sub(prod, "xProd", HOMOLOGACAO_XPROD if tp_amb == "2" else item.descricao)
    _sub(prod, "NCM", only_digits(item.ncm))
    _sub(prod, "CFOP", item.cfop)
    _sub(prod, "uCom", item.unidade)
    _sub(prod, "qCom", dec4(item.quantidade))
    _sub(prod, "vUnCom", dec4(item.valor_unitario))
    _sub(prod, "vProd", dec2(item.valor_total))
    _sub(prod, "cEANTrib", ean)
    _sub(prod, "uTrib", item.unidade)
    _sub(prod, "qTrib", dec4(item.quantidade))
    _sub(prod, "vUnTrib", dec4(item.valor_unitario))
    _sub(prod, "indTot", "1")

    # Simples Nacional only: ICMSSN102 + PIS/COFINS "outras operações"
    imposto = _sub(det, "imposto")
    icms = _sub(_sub(imposto, "ICMS"), "ICMSSN102")
    _sub(icms, "orig", item.origem or "0")
    _sub(icms, "CSOSN", item.csosn or "102")

    pis = _sub(_sub(imposto, "PIS"), "PISOutr")
    _sub(pis, "CST", item.cst_pis or "49")
    _sub(pis, "vBC", "0.00")
    _sub(pis, "pPIS", "0.00")
    _sub(pis, "vPIS", "0.00")

    cofins = _sub(_sub(imposto, "COFINS"), "COFINSOutr")
    _sub(cofins, "CST", item.cst_cofins or "49")
    _sub(cofins, "vBC", "0.00")
    _sub(cofins, "pCOFINS", "0.00")
    _sub(cofins, "vCOFINS", "0.00")


def _build_total(parent: etree._Element, invoice: Invoice, total_nota: str) -> None:
    tot = _sub(_sub(parent, "total"), "ICMSTot")
    for tag in _ZEROED_ICMSTOT:
        _sub(tot, tag, "0.00")
    _sub(tot, "vProd", dec2(invoice.total_produtos))
    _sub(tot, "vFrete", dec2(invoice.valor_frete))
    _sub(tot, "vSeg", dec2(invoice.valor_seguro))
    _sub(tot, "vDesc", dec2(invoice.desconto))
    _sub(tot, "vII", "0.00")
    _sub(tot, "vIPI", "0.00")
    _sub(tot, "vIPIDevol", "0.00")
    _sub(tot, "vPIS", "0.00")
    _sub(tot, "vCOFINS", "0.00")
    _sub(tot, "vOutro", dec2(invoice.outras_despesas))
    _sub(tot, "vNF", total_nota)


def build_nfe(
    invoice: Invoice,
    items: Sequence[InvoiceItem],
    emitter: Emitter,
    tp_amb: str = "2",
) -> NfeXmlResult:
    """Build the unsigned NF-e 4.00 document and its freshly generated access key.

    The recipient CPF/CNPJ is validated before anything is built; an invalid
    document raises ValueError.
    """
    if tp_amb not in ("1", "2"):
        raise ValueError(f"Ambiente invalido: '{tp_amb}' (use 1=producao ou 2=homologacao)")

    dest_doc = validate_cpf_cnpj(invoice.dest_cpf_cnpj)

    if emitter.regime_tributario == "3":
        logger.warning(
            "Emitente em regime normal (CRT=3), mas os itens usam o grupo ICMSSN102 do Simples Nacional"
        )

    cnpj = only_digits(emitter.cnpj)
    numero = invoice.numero or "000001"
    codigo_numerico = generate_codigo_numerico(numero)
    chave = generate_access_key(
        AccessKeyParams(
            uf=emitter.uf,
            data_emissao=invoice.data_emissao,
            cnpj=cnpj,
            serie=invoice.serie,
            numero=numero,
            codigo_numerico=codigo_numerico,
            modelo=MODELO_NFE,
        )
    )

    dh_emi = _format_datetime(invoice.data_emissao, invoice.hora_emissao)
    if invoice.data_saida and invoice.hora_saida:
        dh_sai_ent = _format_datetime(invoice.data_saida, invoice.hora_saida)
    else:
        dh_sai_ent = dh_emi

    c_mun_emit = only_digits(emitter.codigo_municipio)
    if not c_mun_emit:
        logger.warning("Codigo do municipio do emitente nao configurado")

    nfe = etree.Element(_q("NFe"), nsmap=NSMAP)  # type: ignore[arg-type]  # lxml stubs don't model None key for default ns
    inf = _sub(nfe, "infNFe")
    inf.set("versao", NFE_VERSION)
    inf.set("Id", f"NFe{chave}")

    ide = _sub(inf, "ide")
    _sub(ide, "cUF", get_uf_code(emitter.uf))
    _sub(ide, "cNF", codigo_numerico)
    _sub(ide, "natOp", invoice.natureza_operacao)
    _sub(ide, "mod", MODELO_NFE)
    _sub(ide, "serie", str(int(invoice.serie)))
    _sub(ide, "nNF", str(int(numero)))
    _sub(ide, "dhEmi", dh_emi)
    _sub(ide, "dhSaiEnt", dh_sai_ent)
    _sub(ide, "tpNF", invoice.tipo_saida)
    _sub(ide, "idDest", "1")
    _sub(ide, "cMunFG", c_mun_emit or "0000000")
    _sub(ide, "tpImp", "1")
    _sub(ide, "tpEmis", "1")
    _sub(ide, "cDV", chave[-1])
    _sub(ide, "tpAmb", tp_amb)
    _sub(ide, "finNFe", invoice.finalidade)
    _sub(ide, "indFinal", "1" if invoice.consumidor_final else "0")
    _sub(ide, "indPres", invoice.indicador_presenca)
    _sub(ide, "procEmi", "0")
    _sub(ide, "verProc", VER_PROC)

    _build_emit(inf, emitter, c_mun_emit)
    _build_dest(inf, invoice, emitter, dest_doc, c_mun_emit, tp_amb)

    for n_item, item in enumerate(items, start=1):
        _build_det(inf, n_item, item, tp_amb)

    total_nota = dec2(invoice.total_nota)
    _build_total(inf, invoice, total_nota)

    _sub(_sub(inf, "transp"), "modFrete", invoice.modalidade_frete or "9")

    det_pag = _sub(_sub(inf, "pag"), "detPag")
    _sub(det_pag, "tPag", "01")
    _sub(det_pag, "vPag", total_nota)

    if invoice.informacoes_complementares:
        _sub(_sub(inf, "infAdic"), "infCpl", invoice.informacoes_complementares)

    xml = etree.tostring(nfe, xml_declaration=True, encoding="utf-8").decode("utf-8")
    return NfeXmlResult(xml=xml, chave_acesso=chave, codigo_numerico=codigo_numerico)
