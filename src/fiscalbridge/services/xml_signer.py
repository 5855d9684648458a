from __future__ import annotations

from lxml import etree
from signxml.algorithms import (
    DigestAlgorithm,
    SignatureConstructionMethod,
    SignatureMethod,
)
from signxml.signer import XMLSigner

from fiscalbridge.services.invoice_xml import INVOICE_NS


def sign_invoice_xml(root: etree._Element, key_pem: bytes, cert_pem: bytes) -> etree._Element:
    """Sign the invoice XML with an enveloped RSA-SHA256 signature.

    The reference points at the ``infInvoice`` Id. Returns the signed root.
    """
    inf = root.find(f"{{{INVOICE_NS}}}infInvoice")
    if inf is None:
        raise ValueError("infInvoice element not found")

    element_id = inf.get("Id")
    if not element_id:
        raise ValueError("infInvoice is missing Id attribute")

    signer = XMLSigner(
        method=SignatureConstructionMethod.enveloped,
        signature_algorithm=SignatureMethod.RSA_SHA256,
        digest_algorithm=DigestAlgorithm.SHA256,
        c14n_algorithm="http://www.w3.org/2001/10/xml-exc-c14n#",
    )

    return signer.sign(
        root,
        key=key_pem,
        cert=cert_pem.decode(),
        reference_uri=f"#{element_id}",
    )
