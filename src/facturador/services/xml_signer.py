from __future__ import annotations

from lxml import etree
from signxml.algorithms import (
    DigestAlgorithm,
    SignatureConstructionMethod,
    SignatureMethod,
)
from signxml.signer import XMLSigner

from facturador.config import DOCUMENT_VARIANTS


def sign_document(root: etree._Element, key_pem: bytes, cert_pem: bytes) -> etree._Element:
    """Sign the document root with an enveloped RSA-SHA256 XML-DSig signature.

    The ds:Signature element is appended as the last child of the root.
    Returns the signed root element.
    """
    namespaces = {ns for _, ns in DOCUMENT_VARIANTS.values()}
    if etree.QName(root).namespace not in namespaces:
        raise ValueError(f"Elemento raiz no es un comprobante: {root.tag}")

    signer = XMLSigner(
        method=SignatureConstructionMethod.enveloped,
        signature_algorithm=SignatureMethod.RSA_SHA256,
        digest_algorithm=DigestAlgorithm.SHA256,
    )

    signed = signer.sign(
        root,
        key=key_pem,
        cert=cert_pem.decode(),
    )

    return signed
