from __future__ import annotations

import logging
import time
import warnings
from collections.abc import Callable
from dataclasses import dataclass

import requests
from lxml import etree
from requests_pkcs12 import Pkcs12Adapter
from urllib3.exceptions import InsecureRequestWarning

from emissor_nfe import config as _config
from emissor_nfe.config import AMBIENTE_NAMES, NFE_NS, NFE_VERSION, SOAP11_NS, SOAP12_NS
from emissor_nfe.services.http_retry import RECEIPT_QUERY, retry_call
from emissor_nfe.services.sefaz_routes import (
    AUTORIZACAO,
    RET_AUTORIZACAO,
    Endpoint,
    ResponseShape,
    resolve_endpoint,
    wsdl_namespace,
)
from emissor_nfe.utils.certificate import CertificateData

logger = logging.getLogger(__name__)

CONTENT_TYPE = "application/soap+xml; charset=utf-8"
COMMUNICATION_ERROR = "999"

_IPV4_ANY = ("0.0.0.0", 0)


def _n(tag: str) -> str:
    return f"{{{NFE_NS}}}{tag}"


@dataclass(frozen=True)
class TransportConfig:
    timeout: float = _config.SEFAZ_TIMEOUT
    prefer_ipv4: bool = True
    verify: bool = False

    @classmethod
    def from_env(cls) -> TransportConfig:
        return cls(
            timeout=_config.get_sefaz_timeout(),
            prefer_ipv4=_config.get_prefer_ipv4(),
            verify=_config.get_verify_tls(),
        )


@dataclass(frozen=True)
class AuthorityResult:
    """Outcome of one authority call. Transport failures are code 999."""

    success: bool
    c_stat: str
    x_motivo: str
    protocolo: str | None = None
    dh_recbto: str | None = None
    xml_protocolo: str | None = None
    recibo: str | None = None

    @classmethod
    def communication_error(cls, reason: str) -> AuthorityResult:
        return cls(success=False, c_stat=COMMUNICATION_ERROR, x_motivo=reason)


class SefazAdapter(Pkcs12Adapter):
    """mTLS adapter that can pin outgoing connections to IPv4.

    Several authorities publish AAAA records whose IPv6 hosts do not answer;
    binding the socket to the IPv4 wildcard skips them.
    """

    def __init__(self, *args, prefer_ipv4: bool = False, **kwargs) -> None:
        # init_poolmanager runs inside HTTPAdapter.__init__
        self.source_address = _IPV4_ANY if prefer_ipv4 else None
        super().__init__(*args, **kwargs)

    def init_poolmanager(self, *args, **kwargs):
        if self.source_address is not None:
            kwargs["source_address"] = self.source_address
        return super().init_poolmanager(*args, **kwargs)

    def proxy_manager_for(self, *args, **kwargs):
        if self.source_address is not None:
            kwargs["source_address"] = self.source_address
        return super().proxy_manager_for(*args, **kwargs)


# --- request bodies ---


def make_id_lote(now_ms: int | None = None) -> str:
    """Batch id: the last 15 digits of the current epoch in milliseconds."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return str(now_ms)[-15:]


def build_envi_nfe(signed_xml: str, id_lote: str) -> etree._Element:
    """Wrap one signed NFe in a synchronous ``enviNFe`` batch."""
    envi = etree.Element(_n("enviNFe"), nsmap={None: NFE_NS})  # type: ignore[dict-item]
    envi.set("versao", NFE_VERSION)
    etree.SubElement(envi, _n("idLote")).text = id_lote
    etree.SubElement(envi, _n("indSinc")).text = "1"
    envi.append(etree.fromstring(signed_xml.encode("utf-8")))
    return envi


def build_cons_reci_nfe(recibo: str, tp_amb: str) -> etree._Element:
    cons = etree.Element(_n("consReciNFe"), nsmap={None: NFE_NS})  # type: ignore[dict-item]
    cons.set("versao", NFE_VERSION)
    etree.SubElement(cons, _n("tpAmb")).text = tp_amb
    etree.SubElement(cons, _n("nRec")).text = recibo
    return cons


def build_soap_envelope(body: etree._Element, wsdl_ns: str) -> bytes:
    """SOAP 1.2 envelope with *body* inside ``nfeDadosMsg``."""
    env = etree.Element(f"{{{SOAP12_NS}}}Envelope", nsmap={"soap12": SOAP12_NS})
    soap_body = etree.SubElement(env, f"{{{SOAP12_NS}}}Body")
    msg = etree.SubElement(soap_body, f"{{{wsdl_ns}}}nfeDadosMsg", nsmap={None: wsdl_ns})  # type: ignore[dict-item]
    msg.append(body)
    return etree.tostring(env, xml_declaration=True, encoding="utf-8")


# --- response parsing ---


class _ResponseError(Exception):
    """Internal: the response could not be interpreted; message is the 999 reason."""


def _soap_body(text: str, shape: ResponseShape) -> etree._Element:
    if not text or not text.strip():
        raise _ResponseError("SEFAZ retornou resposta vazia")
    try:
        root = etree.fromstring(text.encode("utf-8"))
    except etree.XMLSyntaxError as exc:
        raise _ResponseError(f"Erro ao interpretar resposta SEFAZ: {exc}") from exc

    for soap_ns in shape.envelope_namespaces:
        if root.tag == f"{{{soap_ns}}}Envelope":
            body = root.find(f"{{{soap_ns}}}Body")
            if body is not None:
                return body
    raise _ResponseError(f"Envelope SOAP inesperado na resposta da SEFAZ: {root.tag}")


def _fault_reason(body: etree._Element) -> str | None:
    for soap_ns in (SOAP12_NS, SOAP11_NS):
        fault = body.find(f"{{{soap_ns}}}Fault")
        if fault is None:
            continue
        reason = (
            fault.findtext(f"{{{SOAP12_NS}}}Reason/{{{SOAP12_NS}}}Text")
            or fault.findtext("faultstring")
            or fault.findtext(f"{{{SOAP12_NS}}}Code/{{{SOAP12_NS}}}Value")
            or etree.tostring(fault, encoding="unicode")[:300]
        )
        return reason.strip()
    return None


def _payload(
    text: str, shape: ResponseShape, wsdl_ns: str, tag: str, not_found: str
) -> etree._Element:
    body = _soap_body(text, shape)
    fault = _fault_reason(body)
    if fault is not None:
        raise _ResponseError(f"Erro SEFAZ (SOAP Fault): {fault}")

    container = body
    if shape.result_wrapper:
        container = body.find(f"{{{wsdl_ns}}}{shape.result_wrapper}")
        if container is None:
            raise _ResponseError(not_found)
    ret = container.find(_n(tag))
    if ret is None:
        raise _ResponseError(not_found)
    return ret


def _text(el: etree._Element | None, path: str) -> str:
    if el is None:
        return ""
    return (el.findtext(path) or "").strip()


def _protocol_result(prot_nfe: etree._Element, c_stat: str, x_motivo: str, raw: str) -> AuthorityResult:
    inf_prot = prot_nfe.find(_n("infProt"))
    prot_c_stat = _text(inf_prot, _n("cStat")) or c_stat
    return AuthorityResult(
        success=prot_c_stat == "100",
        c_stat=prot_c_stat,
        x_motivo=_text(inf_prot, _n("xMotivo")) or x_motivo,
        protocolo=_text(inf_prot, _n("nProt")),
        dh_recbto=_text(inf_prot, _n("dhRecbto")),
        xml_protocolo=raw,
    )


def parse_authorization_response(
    text: str,
    shape: ResponseShape,
    wsdl_ns: str | None = None,
) -> AuthorityResult:
    """Interpret a ``retEnviNFe`` answer.

    100/104 with ``protNFe`` is a synchronous decision (authorized only when
    the protocol's own cStat is 100), 103 carries a receipt for polling and
    anything else is a rejection.
    """
    try:
        ret = _payload(
            text,
            shape,
            wsdl_ns or wsdl_namespace(AUTORIZACAO),
            "retEnviNFe",
            "Não foi possível interpretar a resposta da SEFAZ. "
            "Verifique os dados do emitente e do certificado.",
        )
    except _ResponseError as exc:
        return AuthorityResult.communication_error(str(exc))

    c_stat = _text(ret, _n("cStat"))
    x_motivo = _text(ret, _n("xMotivo"))
    logger.info("retEnviNFe cStat=%s xMotivo=%s", c_stat, x_motivo)

    prot_nfe = ret.find(_n("protNFe"))
    if c_stat in ("100", "104") and prot_nfe is not None:
        return _protocol_result(prot_nfe, c_stat, x_motivo, text)

    if c_stat == "103":
        return AuthorityResult(
            success=False,
            c_stat=c_stat,
            x_motivo=x_motivo,
            recibo=_text(ret, f"{_n('infRec')}/{_n('nRec')}"),
        )

    return AuthorityResult(success=False, c_stat=c_stat, x_motivo=x_motivo)


def parse_receipt_response(
    text: str,
    shape: ResponseShape,
    wsdl_ns: str | None = None,
) -> AuthorityResult:
    """Interpret a ``retConsReciNFe`` answer to a receipt query."""
    try:
        ret = _payload(
            text,
            shape,
            wsdl_ns or wsdl_namespace(RET_AUTORIZACAO),
            "retConsReciNFe",
            "Não foi possível interpretar a resposta da consulta",
        )
    except _ResponseError as exc:
        return AuthorityResult.communication_error(str(exc))

    c_stat = _text(ret, _n("cStat"))
    x_motivo = _text(ret, _n("xMotivo"))
    logger.info("retConsReciNFe cStat=%s xMotivo=%s", c_stat, x_motivo)

    prot_nfe = ret.find(_n("protNFe"))
    if prot_nfe is not None:
        return _protocol_result(prot_nfe, c_stat, x_motivo, text)
    return AuthorityResult(success=False, c_stat=c_stat, x_motivo=x_motivo)


# --- client ---


class SefazClient:
    """SOAP client for NFeAutorizacao4/NFeRetAutorizacao4 over mutual TLS.

    The client credential is the in-memory PKCS#12 of *certificate*; nothing
    is written to disk. Every failure is returned as an AuthorityResult, never
    raised.
    """

    def __init__(
        self,
        certificate: CertificateData,
        config: TransportConfig | None = None,
        *,
        sleep_func: Callable[[float], object] = time.sleep,
    ) -> None:
        self.config = config or TransportConfig.from_env()
        self._sleep = sleep_func
        self.session = requests.Session()
        self.session.mount(
            "https://",
            SefazAdapter(
                pkcs12_data=certificate.pfx_data,
                pkcs12_password=certificate.password,
                prefer_ipv4=self.config.prefer_ipv4,
            ),
        )

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> SefazClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _post(self, endpoint: Endpoint, envelope: bytes) -> str:
        with warnings.catch_warnings():
            if not self.config.verify:
                warnings.simplefilter("ignore", InsecureRequestWarning)
            resp = self.session.post(
                endpoint.url,
                data=envelope,
                headers={"Content-Type": CONTENT_TYPE},
                timeout=self.config.timeout,
                verify=self.config.verify,
            )
        logger.debug("SEFAZ %s HTTP %s: %s", endpoint.authorizer, resp.status_code, resp.text[:2000])
        # SOAP faults arrive as HTTP 500 with a parseable body
        if not resp.ok and not resp.text:
            raise requests.exceptions.HTTPError(
                f"HTTP {resp.status_code} sem corpo de resposta", response=resp
            )
        return resp.text

    def _communication_error(self, exc: Exception) -> AuthorityResult:
        if isinstance(exc, requests.exceptions.Timeout):
            reason = f"Tempo limite de {self.config.timeout:g}s excedido na comunicação com a SEFAZ"
        else:
            reason = f"Erro de comunicação: {exc}"
        logger.error("SEFAZ: %s", reason)
        return AuthorityResult.communication_error(reason)

    def submit(self, signed_xml: str, uf: str, tp_amb: str) -> AuthorityResult:
        """Send one signed NF-e for authorization. Never retried."""
        endpoint = resolve_endpoint(uf, tp_amb, AUTORIZACAO)
        try:
            envelope = build_soap_envelope(
                build_envi_nfe(signed_xml, make_id_lote()), endpoint.wsdl_namespace
            )
        except etree.XMLSyntaxError as exc:
            return AuthorityResult.communication_error(f"XML assinado invalido: {exc}")

        logger.info(
            "Enviando NF-e para %s (UF: %s, ambiente %s)",
            endpoint.url,
            uf,
            AMBIENTE_NAMES.get(tp_amb, tp_amb),
        )
        try:
            text = self._post(endpoint, envelope)
        except requests.exceptions.RequestException as exc:
            return self._communication_error(exc)
        return parse_authorization_response(text, endpoint.response_shape, endpoint.wsdl_namespace)

    def poll_receipt(self, recibo: str, uf: str, tp_amb: str) -> AuthorityResult:
        """Query the processing result of a batch receipt (``nRec``)."""
        endpoint = resolve_endpoint(uf, tp_amb, RET_AUTORIZACAO)
        envelope = build_soap_envelope(build_cons_reci_nfe(recibo, tp_amb), endpoint.wsdl_namespace)

        logger.info("Consultando recibo %s em %s", recibo, endpoint.url)
        try:
            text = retry_call(
                lambda: self._post(endpoint, envelope), RECEIPT_QUERY, sleep_func=self._sleep
            )
        except requests.exceptions.RequestException as exc:
            return self._communication_error(exc)
        return parse_receipt_response(text, endpoint.response_shape, endpoint.wsdl_namespace)
