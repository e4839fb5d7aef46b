from __future__ import annotations

import pytest

from emissor_nfe.services.sefaz_routes import (
    ASMX_SHAPE,
    AUTHORIZERS,
    AUTORIZACAO,
    AXIS_SHAPE,
    RET_AUTORIZACAO,
    SVRS,
    SVRS_STATES,
    authorizer_for,
    resolve_endpoint,
    wsdl_namespace,
)


class TestAuthorizerFor:
    @pytest.mark.parametrize("uf", ["AM", "BA", "GO", "MG", "MS", "MT", "PE", "PR", "RS", "SP"])
    def test_dedicated_authorizers(self, uf):
        assert authorizer_for(uf).name == uf

    @pytest.mark.parametrize("uf", sorted(SVRS_STATES))
    def test_virtual_authorizer_states(self, uf):
        assert authorizer_for(uf).name == SVRS

    def test_lowercase_uf(self):
        assert authorizer_for("sp").name == "SP"

    def test_unknown_uf_defaults_to_svrs(self):
        assert authorizer_for("XX").name == SVRS
        assert authorizer_for("").name == SVRS

    def test_every_authorizer_has_both_environments(self):
        for authorizer in AUTHORIZERS.values():
            for tp_amb in ("1", "2"):
                assert set(authorizer.urls[tp_amb]) == {AUTORIZACAO, RET_AUTORIZACAO}
                assert all(u.startswith("https://") for u in authorizer.urls[tp_amb].values())


class TestResolveEndpoint:
    def test_sp_homologacao(self):
        ep = resolve_endpoint("SP", "2", AUTORIZACAO)
        assert ep.url == "https://homologacao.nfe.fazenda.sp.gov.br/ws/nfeautorizacao4.asmx"
        assert ep.wsdl_namespace == "http://www.portalfiscal.inf.br/nfe/wsdl/NFeAutorizacao4"
        assert ep.response_shape == ASMX_SHAPE
        assert ep.authorizer == "SP"

    def test_svrs_producao_receipt(self):
        ep = resolve_endpoint("SC", "1", RET_AUTORIZACAO)
        assert ep.url == "https://nfe.svrs.rs.gov.br/ws/NfeRetAutorizacao/NFeRetAutorizacao4.asmx"
        assert ep.wsdl_namespace.endswith("/NFeRetAutorizacao4")

    def test_axis_authorizer_accepts_soap11(self):
        ep = resolve_endpoint("MG", "2", AUTORIZACAO)
        assert ep.response_shape == AXIS_SHAPE
        assert len(ep.response_shape.envelope_namespaces) == 2

    def test_invalid_environment(self):
        with pytest.raises(ValueError, match="Ambiente invalido"):
            resolve_endpoint("SP", "3", AUTORIZACAO)

    def test_invalid_service(self):
        with pytest.raises(ValueError, match="desconhecido"):
            resolve_endpoint("SP", "2", "NFeInutilizacao")


def test_wsdl_namespace():
    assert wsdl_namespace(AUTORIZACAO) == "http://www.portalfiscal.inf.br/nfe/wsdl/NFeAutorizacao4"
