from __future__ import annotations

import base64
import gzip

from lxml import etree

from fiscalbridge.models.invoice import Invoice
from fiscalbridge.utils.formatters import format_amount

INVOICE_NS = "urn:fiscal-bridge:invoice:1"

NSMAP = {None: INVOICE_NS}


def _q(tag: str) -> str:
    return f"{{{INVOICE_NS}}}{tag}"


def _sub(parent: etree._Element, tag: str, text: str | None = None) -> etree._Element:
    el = etree.SubElement(parent, _q(tag))
    if text is not None:
        el.text = text
    return el


def invoice_element_id(invoice: Invoice) -> str:
    """XML Id of the signed section; must start with a letter."""
    return f"INV{invoice.id}"


def build_invoice_xml(invoice: Invoice) -> etree._Element:
    """Build the <FiscalInvoice> element ready for signing."""
    root = etree.Element(_q("FiscalInvoice"), nsmap=NSMAP)  # type: ignore[arg-type]  # lxml stubs don't model None key for default ns
    root.set("version", "1.00")

    inf = _sub(root, "infInvoice")
    inf.set("Id", invoice_element_id(invoice))

    _sub(inf, "number", invoice.number)
    _sub(inf, "fiscalDay", str(invoice.fiscal_day))
    _sub(inf, "issuedAt", invoice.created_at)
    # Amount is rendered from minor units, never through float
    _sub(inf, "amount", format_amount(invoice.amount).replace(",", ""))
    _sub(inf, "amountMinor", str(invoice.amount))
    return root


def encode_xml(signed: etree._Element) -> str:
    """GZip compress and Base64 encode the signed XML for the backend payload."""
    xml_bytes = etree.tostring(signed, xml_declaration=True, encoding="utf-8")
    return base64.b64encode(gzip.compress(xml_bytes)).decode("ascii")


def decode_xml(payload: str) -> etree._Element:
    """Inverse of :func:`encode_xml`."""
    return etree.fromstring(gzip.decompress(base64.b64decode(payload)))
