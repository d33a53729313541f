"""Inbound email webhook trigger."""

import json
from typing import Any, Dict, List, Mapping, Optional

from ..models.core import NodeKind, TriggerAcknowledgement
from .base import TriggerAdapter, header_value

# Checked in order; the first header present carries the signature.
SIGNATURE_HEADERS = (
    "X-Webhook-Signature",
    "X-Mailgun-Signature",
    "X-Postmark-Signature",
    "X-SendGrid-Signature",
    "X-Hub-Signature-256",
)


def _first(payload: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if payload.get(key) not in (None, ""):
            return payload[key]
    return default


def _address_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return [str(value)]


def normalize_email(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Map vendor field names onto ``{from, to, subject, text, html, attachments, headers}``."""
    return {
        "from": _first(payload, "from", "sender", "From", "From_"),
        "to": _address_list(_first(payload, "to", "recipient", "To", "recipients")),
        "subject": _first(payload, "subject", "Subject", default=""),
        "text": _first(payload, "text", "body-plain", "TextBody", "plain", default=""),
        "html": _first(payload, "html", "body-html", "HtmlBody", default=""),
        "attachments": list(_first(payload, "attachments", "Attachments", default=[]) or []),
        "headers": dict(_first(payload, "headers", "Headers", default={}) or {}),
    }


def _mailbox(address: str) -> str:
    """``"Ada <ada@example.com>"`` -> ``ada@example.com``."""
    address = address.strip()
    if "<" in address and address.endswith(">"):
        address = address[address.rindex("<") + 1:-1]
    return address.lower()


class EmailTriggerAdapter(TriggerAdapter):
    """Admits signed inbound-email webhooks.

    The signature is an HMAC-SHA256 of the raw request body under the node's
    ``signingSecret``. Unsigned or mis-signed deliveries are rejected.
    """

    node_kind = NodeKind.TRIGGER_EMAIL
    source_type = "email"

    def handle(self, workflow_id: str, raw_body: bytes, headers: Mapping[str, str],
               source_ip: Optional[str] = None, trigger_node_id: Optional[str] = None) -> TriggerAcknowledgement:
        workflow = self.resolve_workflow(workflow_id)
        node = self.locate_node(workflow, trigger_node_id)

        signature_header, signature = None, None
        for name in SIGNATURE_HEADERS:
            signature = header_value(headers, name)
            if signature:
                signature_header = name
                break

        self.gate.require_signed_payload(raw_body, node.data.get("signingSecret"), signature, workflow.id, node.id)

        try:
            payload = json.loads(raw_body.decode("utf-8") or "{}")
        except (UnicodeDecodeError, ValueError):
            raise self.reject("Email payload is not valid JSON", "INVALID_JSON", workflow.id)
        if not isinstance(payload, dict):
            raise self.reject("Email payload must be a JSON object", "INVALID_PAYLOAD", workflow.id)

        email = normalize_email(payload)

        pinned = node.data.get("emailAddress")
        if pinned and _mailbox(pinned) not in {_mailbox(address) for address in email["to"]}:
            raise self.reject(
                f"Email is not addressed to the trigger's address {pinned}", "NO_MATCHING_TRIGGER", workflow.id
            )

        return self.admit(workflow, node, email, source_ip=source_ip, extra={"signatureHeader": signature_header})
