from __future__ import annotations

import base64
from datetime import UTC, datetime, timedelta

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from lxml import etree

from emissor_nfe.config import DSIG_NS, NFE_NS
from emissor_nfe.models.certificate import Certificate
from emissor_nfe.models.emitter import Emitter
from emissor_nfe.models.invoice import Invoice, InvoiceItem
from emissor_nfe.storage.json_storage import JsonStorage

NS = {"n": NFE_NS, "ds": DSIG_NS}

PFX_PASSWORD = "testpass"


def xml_text(el: etree._Element, xpath: str) -> str | None:
    """Extract text from an XML element by xpath (prefixes ``n:`` and ``ds:``)."""
    found = el.find(xpath, NS)
    return found.text if found is not None else None


def parse(xml: str) -> etree._Element:
    return etree.fromstring(xml.encode("utf-8"))


# --- Emitter fixtures ---


@pytest.fixture
def emitter_dict() -> dict:
    return {
        "razao_social": "ACME COMERCIO LTDA",
        "nome_fantasia": "ACME",
        "cnpj": "11.222.333/0001-81",
        "inscricao_estadual": "123456789",
        "regime_tributario": "1",
        "cep": "01310-100",
        "uf": "SP",
        "municipio": "Sao Paulo",
        "codigo_municipio": "3550308",
        "bairro": "Bela Vista",
        "logradouro": "Avenida Paulista",
        "numero": "1000",
        "telefone": "(11) 3333-4444",
        "email": "fiscal@acme.com.br",
    }


@pytest.fixture
def emitter(emitter_dict: dict) -> Emitter:
    return Emitter.from_dict(emitter_dict)


# --- Invoice fixtures ---


@pytest.fixture
def item_dict() -> dict:
    return {
        "codigo": "001",
        "descricao": "Camiseta algodao",
        "ncm": "61091000",
        "cfop": "5102",
        "unidade": "UN",
        "quantidade": "2",
        "valor_unitario": "10.00",
    }


@pytest.fixture
def invoice_dict() -> dict:
    return {
        "natureza_operacao": "Venda de mercadoria",
        "data_emissao": "2025-03-15",
        "hora_emissao": "10:30:00",
        "dest_nome": "Maria da Silva",
        "dest_cpf_cnpj": "111.444.777-35",
        "dest_cep": "01310100",
        "dest_uf": "SP",
        "dest_municipio": "Sao Paulo",
        "dest_codigo_municipio": "3550308",
        "dest_bairro": "Centro",
        "dest_logradouro": "Rua Um",
        "dest_numero": "10",
    }


@pytest.fixture
def sample_items() -> list[InvoiceItem]:
    return [
        InvoiceItem(
            codigo="001",
            descricao="Camiseta algodao",
            ncm="61091000",
            cfop="5102",
            unidade="UN",
            quantidade="2.0000",
            valor_unitario="10.0000",
            valor_total="20.00",
        )
    ]


@pytest.fixture
def sample_invoice() -> Invoice:
    return Invoice(
        natureza_operacao="Venda de mercadoria",
        data_emissao="2025-03-15",
        hora_emissao="10:30:00",
        dest_nome="Maria da Silva",
        dest_cpf_cnpj="11144477735",
        dest_cep="01310100",
        dest_uf="SP",
        dest_municipio="Sao Paulo",
        dest_codigo_municipio="3550308",
        dest_bairro="Centro",
        dest_logradouro="Rua Um",
        dest_numero="10",
        numero="000001",
        total_produtos="20.00",
        total_nota="20.00",
    )


# --- Certificate / PFX fixtures ---


def _make_cert(key, cn: str, not_before: datetime, not_after: datetime) -> x509.Certificate:
    subject = issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, cn),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test Org"),
        ]
    )
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )


@pytest.fixture(scope="session")
def test_key_and_cert():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    now = datetime.now(UTC)
    cert = _make_cert(key, "ACME COMERCIO LTDA:11222333000181", now - timedelta(days=1), now + timedelta(days=365))
    return key, cert


@pytest.fixture(scope="session")
def self_signed_pem(test_key_and_cert):
    key, cert = test_key_and_cert
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    return key_pem, cert_pem


@pytest.fixture(scope="session")
def pfx_b64(test_key_and_cert) -> str:
    """Password-protected PFX (pkcs8ShroudedKeyBag), base64."""
    key, cert = test_key_and_cert
    data = pkcs12.serialize_key_and_certificates(
        name=b"test",
        key=key,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(PFX_PASSWORD.encode()),
    )
    return base64.b64encode(data).decode()


@pytest.fixture(scope="session")
def plain_pfx_b64(test_key_and_cert) -> str:
    """Unencrypted PFX (plain pkcs8KeyBag), base64."""
    key, cert = test_key_and_cert
    data = pkcs12.serialize_key_and_certificates(
        name=b"test", key=key, cert=cert, cas=None, encryption_algorithm=serialization.NoEncryption()
    )
    return base64.b64encode(data).decode()


@pytest.fixture(scope="session")
def cert_only_pfx_b64(test_key_and_cert) -> str:
    _, cert = test_key_and_cert
    data = pkcs12.serialize_key_and_certificates(
        name=b"test", key=None, cert=cert, cas=None, encryption_algorithm=serialization.NoEncryption()
    )
    return base64.b64encode(data).decode()


@pytest.fixture(scope="session")
def expired_pfx_b64(test_key_and_cert) -> str:
    key, _ = test_key_and_cert
    now = datetime.now(UTC)
    cert = _make_cert(key, "Expired", now - timedelta(days=400), now - timedelta(days=35))
    data = pkcs12.serialize_key_and_certificates(
        name=b"test",
        key=key,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(PFX_PASSWORD.encode()),
    )
    return base64.b64encode(data).decode()


# --- Storage fixtures ---


@pytest.fixture
def storage(tmp_path) -> JsonStorage:
    return JsonStorage(tmp_path / "emissor.json")


@pytest.fixture
def seeded_storage(storage, emitter, sample_invoice, sample_items, pfx_b64):
    """Storage with emitter, active certificate and one draft invoice (id 1) for user 1."""
    storage.save_emitter(1, emitter)
    storage.replace_certificate(
        1, Certificate(name="A1", certificate_base64=pfx_b64, password=PFX_PASSWORD)
    )
    storage.create_invoice(1, sample_invoice, sample_items)
    return storage
