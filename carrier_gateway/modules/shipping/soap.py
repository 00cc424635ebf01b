"""
SOAP 1.1 envelope helpers for XML carriers.

build_envelope() turns a nested dict into a request envelope; parse_envelope()
returns the operation response element, raising TransportFailure for a SOAP
Fault and ParseFailure for anything that is not a well-formed envelope.
element_to_data() flattens a response element into dicts/lists/strings so it
can be validated with the carrier's pydantic schema like any JSON payload.
"""
import logging
import xml.etree.ElementTree as element_tree
from typing import Any, Dict, Optional

from carrier_gateway.core.exceptions import ParseFailure, TransportFailure

logger = logging.getLogger(__name__)

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
SOAP_CONTENT_TYPE = "text/xml; charset=utf-8"


def local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if "}" in tag else tag


def _append(parent: element_tree.Element, name: str, value: Any) -> None:
    if value is None:
        return
    if isinstance(value, (list, tuple)):
        for item in value:
            _append(parent, name, item)
        return
    child = element_tree.SubElement(parent, name)
    if isinstance(value, dict):
        for key, nested in value.items():
            _append(child, key, nested)
    elif isinstance(value, bool):
        child.text = "true" if value else "false"
    else:
        child.text = str(value)


def build_envelope(namespace: str, operation: str, fields: Dict[str, Any]) -> bytes:
    """
    Build ``<Envelope><Body><ns:operation>...</ns:operation></Body></Envelope>``.

    Child elements are unqualified, which is what document/literal services
    generated with Apache CXF expect.
    """
    envelope = element_tree.Element(f"{{{SOAP_ENV_NS}}}Envelope")
    element_tree.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Header")
    body = element_tree.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
    op = element_tree.SubElement(body, f"{{{namespace}}}{operation}")
    for key, value in fields.items():
        _append(op, key, value)
    return element_tree.tostring(envelope, encoding="utf-8", xml_declaration=True)


def _fault_text(fault: element_tree.Element, name: str) -> Optional[str]:
    for child in fault:
        if local_name(child.tag) == name:
            return (child.text or "").strip()
    return None


def parse_envelope(payload: bytes, carrier_id: str) -> element_tree.Element:
    """Return the first element inside soap:Body."""
    try:
        root = element_tree.fromstring(payload)
    except element_tree.ParseError as e:
        logger.error(f"{carrier_id} returned malformed XML: {e}")
        raise ParseFailure(
            f"{carrier_id}: response is not well-formed XML",
            carrier_code=carrier_id,
            details={"cause": str(e)},
        )

    body = root.find(f"{{{SOAP_ENV_NS}}}Body")
    if local_name(root.tag) != "Envelope" or body is None:
        raise ParseFailure(f"{carrier_id}: response is not a SOAP envelope", carrier_code=carrier_id)

    children = list(body)
    if not children:
        raise ParseFailure(f"{carrier_id}: empty SOAP body", carrier_code=carrier_id)

    first = children[0]
    if local_name(first.tag) == "Fault":
        faultcode = _fault_text(first, "faultcode") or "soap:Server"
        faultstring = _fault_text(first, "faultstring") or "SOAP fault"
        logger.error(f"{carrier_id} SOAP fault: {faultcode} - {faultstring}")
        raise TransportFailure(
            f"{carrier_id}: SOAP fault: {faultstring}",
            carrier_code=carrier_id,
            code="SOAP_FAULT",
            details={"faultcode": faultcode},
        )
    return first


def element_to_data(element: element_tree.Element) -> Any:
    """
    Flatten an element: leaves become their text, parents become dicts keyed
    by local name. A name seen more than once becomes a list.
    """
    children = list(element)
    if not children:
        return (element.text or "").strip()

    data: Dict[str, Any] = {}
    for child in children:
        key = local_name(child.tag)
        value = element_to_data(child)
        if key in data:
            existing = data[key]
            if not isinstance(existing, list):
                data[key] = [existing]
            data[key].append(value)
        else:
            data[key] = value
    return data
