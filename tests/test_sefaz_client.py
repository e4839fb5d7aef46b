from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import requests.exceptions
from lxml import etree

from emissor_nfe.config import NFE_NS, SOAP11_NS, SOAP12_NS
from emissor_nfe.services.sefaz_client import (
    CONTENT_TYPE,
    AuthorityResult,
    SefazAdapter,
    SefazClient,
    TransportConfig,
    build_cons_reci_nfe,
    build_envi_nfe,
    build_soap_envelope,
    make_id_lote,
    parse_authorization_response,
    parse_receipt_response,
)
from emissor_nfe.services.sefaz_routes import ASMX_SHAPE, AXIS_SHAPE, wsdl_namespace
from emissor_nfe.utils.certificate import extract_certificate
from tests.conftest import NS, PFX_PASSWORD, xml_text

AUT_NS = wsdl_namespace("NFeAutorizacao")
RET_NS = wsdl_namespace("NFeRetAutorizacao")

SIGNED = f'<NFe xmlns="{NFE_NS}"><infNFe Id="NFe123" versao="4.00"/></NFe>'

PROT_OK = (
    '<protNFe versao="4.00"><infProt>'
    "<chNFe>35250311222333000181550010000000011123456780</chNFe>"
    "<dhRecbto>2025-03-15T10:31:00-03:00</dhRecbto>"
    "<nProt>135250000000001</nProt><cStat>100</cStat>"
    "<xMotivo>Autorizado o uso da NF-e</xMotivo>"
    "</infProt></protNFe>"
)

PROT_REJECTED = (
    '<protNFe versao="4.00"><infProt>'
    "<cStat>539</cStat><xMotivo>Duplicidade de NF-e</xMotivo>"
    "</infProt></protNFe>"
)


def _envelope(payload: str, wsdl_ns: str = AUT_NS, soap_ns: str = SOAP12_NS) -> str:
    return (
        f'<env:Envelope xmlns:env="{soap_ns}"><env:Body>'
        f'<nfeResultMsg xmlns="{wsdl_ns}">{payload}</nfeResultMsg>'
        "</env:Body></env:Envelope>"
    )


def _ret_envi(c_stat: str, x_motivo: str, extra: str = "") -> str:
    return _envelope(
        f'<retEnviNFe xmlns="{NFE_NS}" versao="4.00"><tpAmb>2</tpAmb>'
        f"<cStat>{c_stat}</cStat><xMotivo>{x_motivo}</xMotivo>{extra}</retEnviNFe>"
    )


def _ret_cons(c_stat: str, x_motivo: str, extra: str = "") -> str:
    return _envelope(
        f'<retConsReciNFe xmlns="{NFE_NS}" versao="4.00"><tpAmb>2</tpAmb>'
        f"<cStat>{c_stat}</cStat><xMotivo>{x_motivo}</xMotivo>{extra}</retConsReciNFe>",
        RET_NS,
    )


def _response(text: str, status_code: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.text = text
    resp.status_code = status_code
    resp.ok = status_code < 400
    return resp


class TestRequestBodies:
    def test_make_id_lote(self):
        assert make_id_lote(1742045400123) == "1742045400123"
        assert make_id_lote(123456789012345678) == "456789012345678"
        assert make_id_lote().isdigit()
        assert len(make_id_lote()) <= 15

    def test_envi_nfe(self):
        envi = build_envi_nfe(SIGNED, "1742045400123")
        assert envi.tag == f"{{{NFE_NS}}}enviNFe"
        assert envi.get("versao") == "4.00"
        assert xml_text(envi, "n:idLote") == "1742045400123"
        assert xml_text(envi, "n:indSinc") == "1"
        assert envi.find("n:NFe/n:infNFe", NS).get("Id") == "NFe123"

    def test_envi_nfe_rejects_malformed(self):
        with pytest.raises(etree.XMLSyntaxError):
            build_envi_nfe("<NFe>", "1")

    def test_cons_reci_nfe(self):
        cons = build_cons_reci_nfe("351000000000001", "2")
        assert xml_text(cons, "n:tpAmb") == "2"
        assert xml_text(cons, "n:nRec") == "351000000000001"

    def test_soap_envelope(self):
        raw = build_soap_envelope(build_envi_nfe(SIGNED, "1"), AUT_NS)
        assert raw.startswith(b"<?xml")
        root = etree.fromstring(raw)
        assert root.tag == f"{{{SOAP12_NS}}}Envelope"
        msg = root.find(f"{{{SOAP12_NS}}}Body/{{{AUT_NS}}}nfeDadosMsg")
        assert msg is not None
        assert msg[0].tag == f"{{{NFE_NS}}}enviNFe"


class TestParseAuthorization:
    def test_sync_authorized(self):
        text = _ret_envi("104", "Lote processado", PROT_OK)
        result = parse_authorization_response(text, ASMX_SHAPE)
        assert result.success
        assert result.c_stat == "100"
        assert result.protocolo == "135250000000001"
        assert result.dh_recbto == "2025-03-15T10:31:00-03:00"
        assert result.xml_protocolo == text

    def test_sync_protocol_rejected(self):
        result = parse_authorization_response(_ret_envi("104", "Lote processado", PROT_REJECTED), ASMX_SHAPE)
        assert not result.success
        assert result.c_stat == "539"
        assert result.x_motivo == "Duplicidade de NF-e"

    def test_receipt(self):
        text = _ret_envi("103", "Lote recebido com sucesso", "<infRec><nRec>351000000000001</nRec><tMed>1</tMed></infRec>")
        result = parse_authorization_response(text, ASMX_SHAPE)
        assert not result.success
        assert result.c_stat == "103"
        assert result.recibo == "351000000000001"

    def test_batch_rejected(self):
        result = parse_authorization_response(_ret_envi("225", "Falha no Schema XML"), ASMX_SHAPE)
        assert not result.success
        assert result.c_stat == "225"
        assert result.x_motivo == "Falha no Schema XML"
        assert result.recibo is None

    def test_soap12_fault(self):
        text = (
            f'<env:Envelope xmlns:env="{SOAP12_NS}"><env:Body><env:Fault>'
            "<env:Code><env:Value>env:Receiver</env:Value></env:Code>"
            '<env:Reason><env:Text xml:lang="pt">Certificado invalido</env:Text></env:Reason>'
            "</env:Fault></env:Body></env:Envelope>"
        )
        result = parse_authorization_response(text, ASMX_SHAPE)
        assert result.c_stat == "999"
        assert result.x_motivo == "Erro SEFAZ (SOAP Fault): Certificado invalido"

    def test_soap11_fault_on_axis(self):
        text = (
            f'<soapenv:Envelope xmlns:soapenv="{SOAP11_NS}"><soapenv:Body><soapenv:Fault>'
            "<faultcode>soapenv:Server</faultcode><faultstring>Erro interno</faultstring>"
            "</soapenv:Fault></soapenv:Body></soapenv:Envelope>"
        )
        result = parse_authorization_response(text, AXIS_SHAPE)
        assert result.c_stat == "999"
        assert result.x_motivo == "Erro SEFAZ (SOAP Fault): Erro interno"

    def test_soap11_envelope_on_asmx(self):
        text = _ret_envi("100", "ok").replace(SOAP12_NS, SOAP11_NS)
        result = parse_authorization_response(text, ASMX_SHAPE)
        assert result.c_stat == "999"
        assert "Envelope SOAP inesperado" in result.x_motivo

    def test_empty_body(self):
        result = parse_authorization_response("  ", ASMX_SHAPE)
        assert result == AuthorityResult.communication_error("SEFAZ retornou resposta vazia")

    def test_malformed(self):
        result = parse_authorization_response("<html><body>502", ASMX_SHAPE)
        assert result.c_stat == "999"
        assert result.x_motivo.startswith("Erro ao interpretar resposta SEFAZ")

    def test_wrong_wrapper(self):
        text = _ret_envi("104", "ok", PROT_OK).replace(AUT_NS, "urn:outro")
        result = parse_authorization_response(text, ASMX_SHAPE)
        assert result.c_stat == "999"
        assert result.x_motivo.startswith("Não foi possível interpretar a resposta da SEFAZ")


class TestParseReceipt:
    def test_authorized(self):
        result = parse_receipt_response(_ret_cons("104", "Lote processado", PROT_OK), ASMX_SHAPE)
        assert result.success
        assert result.protocolo == "135250000000001"

    def test_still_processing(self):
        result = parse_receipt_response(_ret_cons("105", "Lote em processamento"), ASMX_SHAPE)
        assert not result.success
        assert result.c_stat == "105"

    def test_unparseable(self):
        result = parse_receipt_response(_ret_envi("104", "ok"), ASMX_SHAPE)
        assert result.c_stat == "999"
        assert result.x_motivo == "Não foi possível interpretar a resposta da consulta"


class TestSefazAdapter:
    def test_binds_ipv4(self, pfx_b64):
        data = extract_certificate(pfx_b64, PFX_PASSWORD)
        adapter = SefazAdapter(pkcs12_data=data.pfx_data, pkcs12_password=data.password, prefer_ipv4=True)
        assert adapter.poolmanager.connection_pool_kw["source_address"] == ("0.0.0.0", 0)

    def test_no_binding_when_disabled(self, pfx_b64):
        data = extract_certificate(pfx_b64, PFX_PASSWORD)
        adapter = SefazAdapter(pkcs12_data=data.pfx_data, pkcs12_password=data.password)
        assert "source_address" not in adapter.poolmanager.connection_pool_kw


class TestSefazClient:
    @pytest.fixture
    def sleeps(self) -> list[float]:
        return []

    @pytest.fixture
    def client(self, pfx_b64, sleeps):
        data = extract_certificate(pfx_b64, PFX_PASSWORD)
        with SefazClient(data, TransportConfig(timeout=30), sleep_func=sleeps.append) as c:
            yield c

    def test_submit_posts_envelope(self, client):
        with patch.object(client.session, "post", return_value=_response(_ret_envi("104", "ok", PROT_OK))) as post:
            result = client.submit(SIGNED, "SP", "2")

        assert result.success
        args, kwargs = post.call_args
        assert args[0] == "https://homologacao.nfe.fazenda.sp.gov.br/ws/nfeautorizacao4.asmx"
        assert kwargs["headers"]["Content-Type"] == CONTENT_TYPE
        assert kwargs["timeout"] == 30
        assert kwargs["verify"] is False
        sent = etree.fromstring(kwargs["data"])
        envi = sent.find(f"{{{SOAP12_NS}}}Body/{{{AUT_NS}}}nfeDadosMsg/{{{NFE_NS}}}enviNFe")
        assert xml_text(envi, "n:indSinc") == "1"

    def test_submit_timeout_not_retried(self, client):
        with patch.object(client.session, "post", side_effect=requests.exceptions.ReadTimeout()) as post:
            result = client.submit(SIGNED, "SP", "2")
        assert post.call_count == 1
        assert result.c_stat == "999"
        assert result.x_motivo == "Tempo limite de 30s excedido na comunicação com a SEFAZ"

    def test_submit_connection_error_not_retried(self, client):
        with patch.object(
            client.session, "post", side_effect=requests.exceptions.ConnectionError("refused")
        ) as post:
            result = client.submit(SIGNED, "BA", "1")
        assert post.call_count == 1
        assert result.c_stat == "999"
        assert result.x_motivo == "Erro de comunicação: refused"

    def test_submit_invalid_signed_xml(self, client):
        with patch.object(client.session, "post") as post:
            result = client.submit("<NFe>", "SP", "2")
        post.assert_not_called()
        assert result.c_stat == "999"

    def test_http_error_without_body(self, client):
        with patch.object(client.session, "post", return_value=_response("", 503)):
            result = client.submit(SIGNED, "SP", "2")
        assert result.c_stat == "999"
        assert "HTTP 503" in result.x_motivo

    def test_http_500_with_fault_is_parsed(self, client):
        fault = (
            f'<env:Envelope xmlns:env="{SOAP12_NS}"><env:Body><env:Fault>'
            "<env:Reason><env:Text>Rejeicao</env:Text></env:Reason>"
            "</env:Fault></env:Body></env:Envelope>"
        )
        with patch.object(client.session, "post", return_value=_response(fault, 500)):
            result = client.submit(SIGNED, "SP", "2")
        assert result.x_motivo == "Erro SEFAZ (SOAP Fault): Rejeicao"

    def test_poll_retries_connection_errors(self, client, sleeps):
        responses = [
            requests.exceptions.ConnectionError("reset"),
            _response(_ret_cons("104", "Lote processado", PROT_OK)),
        ]
        with patch.object(client.session, "post", side_effect=responses) as post:
            result = client.poll_receipt("351000000000001", "SP", "2")

        assert result.success
        assert post.call_count == 2
        assert len(sleeps) == 1
        args, _ = post.call_args
        assert args[0].endswith("nferetautorizacao4.asmx")

    def test_poll_exhausted(self, client):
        with patch.object(
            client.session, "post", side_effect=requests.exceptions.ConnectionError("down")
        ) as post:
            result = client.poll_receipt("351000000000001", "SP", "2")
        assert post.call_count == 3
        assert result.c_stat == "999"

    def test_poll_retries_overloaded_authorizer(self, client, sleeps):
        responses = [_response("", 503), _response(_ret_cons("104", "Lote processado", PROT_OK))]
        with patch.object(client.session, "post", side_effect=responses) as post:
            result = client.poll_receipt("351000000000001", "SP", "2")
        assert result.success
        assert post.call_count == 2
        assert len(sleeps) == 1
