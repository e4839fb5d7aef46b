"""Authorizer routing for the NF-e 4.00 web services.

Each UF either runs its own authorizer or is served by SVRS, the shared
virtual authorizer. The lookup is a plain table plus one explicit default
branch, and every authorizer declares the shape of the SOAP responses it
produces so the parser never has to search the tree for a tag.
"""

from __future__ import annotations

from dataclasses import dataclass

from emissor_nfe.config import SOAP11_NS, SOAP12_NS, WSDL_NS_PREFIX

AUTORIZACAO = "NFeAutorizacao"
RET_AUTORIZACAO = "NFeRetAutorizacao"
SERVICES = (AUTORIZACAO, RET_AUTORIZACAO)

ENVIRONMENTS = ("1", "2")

SVRS = "SVRS"


def wsdl_namespace(service: str) -> str:
    """``NFeAutorizacao`` -> ``http://www.portalfiscal.inf.br/nfe/wsdl/NFeAutorizacao4``."""
    return f"{WSDL_NS_PREFIX}{service}4"


@dataclass(frozen=True)
class ResponseShape:
    """Where the NF-e payload sits inside an authorizer's SOAP response.

    ``envelope_namespaces`` lists the SOAP versions the authorizer answers
    with; ``result_wrapper`` is the element (in the service WSDL namespace)
    wrapping ``retEnviNFe``/``retConsReciNFe`` inside the Body, or None when
    the payload is a direct child of the Body.
    """

    envelope_namespaces: tuple[str, ...] = (SOAP12_NS,)
    result_wrapper: str | None = "nfeResultMsg"


# .NET (asmx) authorizers answer strictly in SOAP 1.2
ASMX_SHAPE = ResponseShape()
# Java/Axis authorizers fall back to SOAP 1.1 envelopes for faults
AXIS_SHAPE = ResponseShape(envelope_namespaces=(SOAP12_NS, SOAP11_NS))


@dataclass(frozen=True)
class Authorizer:
    name: str
    urls: dict[str, dict[str, str]]  # tp_amb -> service -> url
    response_shape: ResponseShape = ASMX_SHAPE


@dataclass(frozen=True)
class Endpoint:
    url: str
    wsdl_namespace: str
    response_shape: ResponseShape
    authorizer: str


def _urls(hom: tuple[str, str], prod: tuple[str, str]) -> dict[str, dict[str, str]]:
    return {
        "2": {AUTORIZACAO: hom[0], RET_AUTORIZACAO: hom[1]},
        "1": {AUTORIZACAO: prod[0], RET_AUTORIZACAO: prod[1]},
    }


AUTHORIZERS: dict[str, Authorizer] = {
    "AM": Authorizer(
        "AM",
        _urls(
            (
                "https://homnfe.sefaz.am.gov.br/services2/services/NfeAutorizacao4",
                "https://homnfe.sefaz.am.gov.br/services2/services/NfeRetAutorizacao4",
            ),
            (
                "https://nfe.sefaz.am.gov.br/services2/services/NfeAutorizacao4",
                "https://nfe.sefaz.am.gov.br/services2/services/NfeRetAutorizacao4",
            ),
        ),
        AXIS_SHAPE,
    ),
    "BA": Authorizer(
        "BA",
        _urls(
            (
                "https://hnfe.sefaz.ba.gov.br/webservices/NFeAutorizacao4/NFeAutorizacao4.asmx",
                "https://hnfe.sefaz.ba.gov.br/webservices/NFeRetAutorizacao4/NFeRetAutorizacao4.asmx",
            ),
            (
                "https://nfe.sefaz.ba.gov.br/webservices/NFeAutorizacao4/NFeAutorizacao4.asmx",
                "https://nfe.sefaz.ba.gov.br/webservices/NFeRetAutorizacao4/NFeRetAutorizacao4.asmx",
            ),
        ),
    ),
    "GO": Authorizer(
        "GO",
        _urls(
            (
                "https://homolog.sefaz.go.gov.br/nfe/services/NFeAutorizacao4?wsdl",
                "https://homolog.sefaz.go.gov.br/nfe/services/NFeRetAutorizacao4?wsdl",
            ),
            (
                "https://nfe.sefaz.go.gov.br/nfe/services/NFeAutorizacao4?wsdl",
                "https://nfe.sefaz.go.gov.br/nfe/services/NFeRetAutorizacao4?wsdl",
            ),
        ),
        AXIS_SHAPE,
    ),
    "MG": Authorizer(
        "MG",
        _urls(
            (
                "https://hnfe.fazenda.mg.gov.br/nfe2/services/NFeAutorizacao4",
                "https://hnfe.fazenda.mg.gov.br/nfe2/services/NFeRetAutorizacao4",
            ),
            (
                "https://nfe.fazenda.mg.gov.br/nfe2/services/NFeAutorizacao4",
                "https://nfe.fazenda.mg.gov.br/nfe2/services/NFeRetAutorizacao4",
            ),
        ),
        AXIS_SHAPE,
    ),
    "MS": Authorizer(
        "MS",
        _urls(
            (
                "https://hom.nfe.sefaz.ms.gov.br/ws/NFeAutorizacao4",
                "https://hom.nfe.sefaz.ms.gov.br/ws/NFeRetAutorizacao4",
            ),
            (
                "https://nfe.sefaz.ms.gov.br/ws/NFeAutorizacao4",
                "https://nfe.sefaz.ms.gov.br/ws/NFeRetAutorizacao4",
            ),
        ),
        AXIS_SHAPE,
    ),
    "MT": Authorizer(
        "MT",
        _urls(
            (
                "https://homologacao.sefaz.mt.gov.br/nfews/v2/services/NfeAutorizacao4?wsdl",
                "https://homologacao.sefaz.mt.gov.br/nfews/v2/services/NfeRetAutorizacao4?wsdl",
            ),
            (
                "https://nfe.sefaz.mt.gov.br/nfews/v2/services/NfeAutorizacao4?wsdl",
                "https://nfe.sefaz.mt.gov.br/nfews/v2/services/NfeRetAutorizacao4?wsdl",
            ),
        ),
        AXIS_SHAPE,
    ),
    "PE": Authorizer(
        "PE",
        _urls(
            (
                "https://nfehomolog.sefaz.pe.gov.br/nfe-service/services/NFeAutorizacao4",
                "https://nfehomolog.sefaz.pe.gov.br/nfe-service/services/NFeRetAutorizacao4",
            ),
            (
                "https://nfe.sefaz.pe.gov.br/nfe-service/services/NFeAutorizacao4",
                "https://nfe.sefaz.pe.gov.br/nfe-service/services/NFeRetAutorizacao4",
            ),
        ),
        AXIS_SHAPE,
    ),
    "PR": Authorizer(
        "PR",
        _urls(
            (
                "https://homologacao.nfe.sefa.pr.gov.br/nfe/NFeAutorizacao4?wsdl",
                "https://homologacao.nfe.sefa.pr.gov.br/nfe/NFeRetAutorizacao4?wsdl",
            ),
            (
                "https://nfe.sefa.pr.gov.br/nfe/NFeAutorizacao4?wsdl",
                "https://nfe.sefa.pr.gov.br/nfe/NFeRetAutorizacao4?wsdl",
            ),
        ),
        AXIS_SHAPE,
    ),
    "RS": Authorizer(
        "RS",
        _urls(
            (
                "https://nfe-homologacao.sefazrs.rs.gov.br/ws/NfeAutorizacao/NFeAutorizacao4.asmx",
                "https://nfe-homologacao.sefazrs.rs.gov.br/ws/NfeRetAutorizacao/NFeRetAutorizacao4.asmx",
            ),
            (
                "https://nfe.sefazrs.rs.gov.br/ws/NfeAutorizacao/NFeAutorizacao4.asmx",
                "https://nfe.sefazrs.rs.gov.br/ws/NfeRetAutorizacao/NFeRetAutorizacao4.asmx",
            ),
        ),
    ),
    "SP": Authorizer(
        "SP",
        _urls(
            (
                "https://homologacao.nfe.fazenda.sp.gov.br/ws/nfeautorizacao4.asmx",
                "https://homologacao.nfe.fazenda.sp.gov.br/ws/nferetautorizacao4.asmx",
            ),
            (
                "https://nfe.fazenda.sp.gov.br/ws/nfeautorizacao4.asmx",
                "https://nfe.fazenda.sp.gov.br/ws/nferetautorizacao4.asmx",
            ),
        ),
    ),
    SVRS: Authorizer(
        SVRS,
        _urls(
            (
                "https://nfe-homologacao.svrs.rs.gov.br/ws/NfeAutorizacao/NFeAutorizacao4.asmx",
                "https://nfe-homologacao.svrs.rs.gov.br/ws/NfeRetAutorizacao/NFeRetAutorizacao4.asmx",
            ),
            (
                "https://nfe.svrs.rs.gov.br/ws/NfeAutorizacao/NFeAutorizacao4.asmx",
                "https://nfe.svrs.rs.gov.br/ws/NfeRetAutorizacao/NFeRetAutorizacao4.asmx",
            ),
        ),
    ),
}

SVRS_STATES = frozenset({
    "AC", "AL", "AP", "CE", "DF", "ES", "MA", "PA", "PB",
    "PI", "RJ", "RN", "RO", "RR", "SC", "SE", "TO",
})

UF_AUTHORIZER: dict[str, str] = {
    **{uf: uf for uf in AUTHORIZERS if uf != SVRS},
    **{uf: SVRS for uf in SVRS_STATES},
}


def authorizer_for(uf: str) -> Authorizer:
    """Return the authorizer serving *uf*.

    Any UF without an entry in UF_AUTHORIZER is routed to SVRS.
    """
    name = UF_AUTHORIZER.get((uf or "").upper())
    if name is None:
        return AUTHORIZERS[SVRS]
    return AUTHORIZERS[name]


def resolve_endpoint(uf: str, tp_amb: str, service: str) -> Endpoint:
    """Resolve the URL and response shape for (UF, environment, service)."""
    if tp_amb not in ENVIRONMENTS:
        raise ValueError(f"Ambiente invalido: '{tp_amb}' (use 1=producao ou 2=homologacao)")
    if service not in SERVICES:
        raise ValueError(f"Servico SEFAZ desconhecido: {service}")
    authorizer = authorizer_for(uf)
    return Endpoint(
        url=authorizer.urls[tp_amb][service],
        wsdl_namespace=wsdl_namespace(service),
        response_shape=authorizer.response_shape,
        authorizer=authorizer.name,
    )
