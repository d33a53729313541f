"""Generic API-key webhook trigger."""

from typing import Any, Dict, Mapping, Optional

from ..models.core import NodeKind, TriggerAcknowledgement
from .base import TriggerAdapter, header_value

DEFAULT_HEADER = "X-Webhook-Key"


class WebhookTriggerAdapter(TriggerAdapter):
    """Admits JSON webhooks whose key header matches the node's ``apiKeyValue``."""

    node_kind = NodeKind.TRIGGER_WEBHOOK
    source_type = "webhook"

    def handle(self, workflow_id: str, body: Any, headers: Mapping[str, str],
               query: Optional[Dict[str, str]] = None, source_ip: Optional[str] = None,
               trigger_node_id: Optional[str] = None) -> TriggerAcknowledgement:
        workflow = self.resolve_workflow(workflow_id)
        node = self.locate_node(workflow, trigger_node_id)

        header_name = node.data.get("headerName") or DEFAULT_HEADER
        self.gate.require_shared_token(
            header_value(headers, header_name), node.data.get("apiKeyValue"), workflow.id, node.id
        )

        data = dict(body) if isinstance(body, dict) else {"body": body}
        return self.admit(workflow, node, data, source_ip=source_ip, extra={"query": dict(query or {})})
