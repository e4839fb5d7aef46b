from __future__ import annotations

import logging
import re

from lxml import etree
from signxml import namespaces
from signxml.algorithms import (
    CanonicalizationMethod,
    DigestAlgorithm,
    SignatureConstructionMethod,
    SignatureMethod,
)
from signxml.exceptions import SignXMLException
from signxml.signer import XMLSigner

from emissor_nfe.config import NFE_NS
from emissor_nfe.services.exceptions import XmlSignatureError

logger = logging.getLogger(__name__)

# "NFe" followed by the 44-digit access key
_NFE_ID = re.compile(r"NFe\d{44}")


class NfeSigner(XMLSigner):
    """XMLSigner fixed to the NF-e 4.00 profile: RSA-SHA1 over inclusive C14N 1.0.

    signxml refuses SHA1 by default; the NF-e schema still mandates it.
    """

    def __init__(self) -> None:
        super().__init__(
            method=SignatureConstructionMethod.enveloped,
            signature_algorithm=SignatureMethod.RSA_SHA1,
            digest_algorithm=DigestAlgorithm.SHA1,
            c14n_algorithm=CanonicalizationMethod.CANONICAL_XML_1_0,
        )
        # Signature must carry the default xmldsig namespace, no ds: prefix
        self.namespaces = {None: namespaces.ds}

    def check_deprecated_methods(self) -> None:
        pass


def sign_nfe(xml: str, key_pem: bytes, cert_pem: bytes) -> str:
    """Sign the NFe document with an enveloped signature over infNFe.

    The Signature element is appended to NFe, right after infNFe, and the
    X509Certificate carries the signer's DER certificate in base64.
    Returns the signed document as a UTF-8 string with XML declaration.
    """
    try:
        nfe = etree.fromstring(xml.encode("utf-8"))
    except etree.XMLSyntaxError as exc:
        raise XmlSignatureError(f"XML da NF-e malformado: {exc}") from exc

    inf_nfe = nfe.find(f"{{{NFE_NS}}}infNFe")
    if inf_nfe is None:
        inf_nfe = nfe.find("infNFe")
    if inf_nfe is None:
        raise XmlSignatureError("Elemento infNFe nao encontrado no XML")

    nfe_id = inf_nfe.get("Id") or ""
    if not _NFE_ID.fullmatch(nfe_id):
        raise XmlSignatureError("Nao foi possivel encontrar o Id da infNFe no XML")

    try:
        signed = NfeSigner().sign(
            nfe,
            key=key_pem,
            cert=cert_pem.decode() if isinstance(cert_pem, bytes) else cert_pem,
            reference_uri=f"#{nfe_id}",
        )
    except (SignXMLException, ValueError, TypeError) as exc:
        raise XmlSignatureError(str(exc)) from exc

    logger.debug("Signed %s", nfe_id)
    return etree.tostring(signed, xml_declaration=True, encoding="utf-8").decode("utf-8")
