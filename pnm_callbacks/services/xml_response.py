"""
Callback XML Responses

Renders the acknowledgments the processor expects from /authorize and
/confirm. Every element lives under the ``t:`` namespace prefix and the
root carries the protocol version.
"""

from typing import Optional
from xml.etree import ElementTree as ET

from pnm_callbacks.models.callbacks import CallbackOutcome, OutcomeKind

NAMESPACE_PREFIX = "t"
DEFAULT_NAMESPACE = "http://www.paynearme.com/api/pnm_xmlschema_v2_0"
XML_MEDIA_TYPE = "application/xml"


class XMLResponseBuilder:
    """Builds protocol XML documents from callback outcomes"""

    def __init__(self, namespace: str = DEFAULT_NAMESPACE):
        self.namespace = namespace

    def _tag(self, name: str) -> str:
        return f"{{{self.namespace}}}{name}"

    def _child(self, parent: ET.Element, name: str, text: Optional[str]) -> ET.Element:
        element = ET.SubElement(parent, self._tag(name))
        element.text = text if text is not None else ""
        return element

    def _serialize(self, root: ET.Element) -> bytes:
        # The prefix registry is process-global
        ET.register_namespace(NAMESPACE_PREFIX, self.namespace)
        return ET.tostring(root, encoding="utf-8", xml_declaration=True)

    def authorization(self, outcome: CallbackOutcome) -> bytes:
        """
        Render a payment_authorization_response.

        Decline outcomes are rendered with the same structure as accepts.
        """
        root = ET.Element(
            self._tag("payment_authorization_response"), {"version": outcome.version}
        )
        authorization = ET.SubElement(root, self._tag("authorization"))
        self._child(authorization, "pnm_order_identifier", outcome.pnm_order_identifier)
        self._child(authorization, "accept_payment", "yes" if outcome.accept else "no")
        if outcome.receipt is not None:
            self._child(authorization, "receipt", outcome.receipt)
        if outcome.memo is not None:
            self._child(authorization, "memo", outcome.memo)
        return self._serialize(root)

    def confirmation(self, outcome: CallbackOutcome) -> bytes:
        """Render a payment_confirmation_response"""
        root = ET.Element(
            self._tag("payment_confirmation_response"), {"version": outcome.version}
        )
        confirmation = ET.SubElement(root, self._tag("confirmation"))
        self._child(confirmation, "pnm_order_identifier", outcome.pnm_order_identifier)
        return self._serialize(root)

    def render(self, endpoint: str, outcome: CallbackOutcome) -> Optional[bytes]:
        """
        Render the body for an outcome.

        Returns:
            XML bytes, or None when the outcome must not be acknowledged
            (untrusted callback) or carries its own response (intercepted)
        """
        if outcome.kind in (OutcomeKind.INVALID_SIGNATURE, OutcomeKind.INTERCEPTED):
            return None
        if endpoint == "authorize":
            return self.authorization(outcome)
        if endpoint == "confirm":
            return self.confirmation(outcome)
        raise ValueError(f"Unknown callback endpoint: {endpoint}")
