"""Form submission trigger."""

from typing import Any, Optional

from ..models.core import NodeKind, TriggerAcknowledgement
from .base import TriggerAdapter

TOKEN_FIELD = "formToken"


class FormTriggerAdapter(TriggerAdapter):
    """Admits form posts authenticated by the node's ``formToken``.

    The token travels in the body field ``formToken`` or the ``token`` query
    parameter and is stripped from the data the run sees.
    """

    node_kind = NodeKind.TRIGGER_FORM
    source_type = "form"

    def handle(self, workflow_id: str, body: Any, query_token: Optional[str] = None,
               source_ip: Optional[str] = None, trigger_node_id: Optional[str] = None) -> TriggerAcknowledgement:
        workflow = self.resolve_workflow(workflow_id)
        node = self.locate_node(workflow, trigger_node_id)

        data = dict(body) if isinstance(body, dict) else None
        token = (data.pop(TOKEN_FIELD, None) if data is not None else None) or query_token

        self.gate.require_shared_token(token, node.data.get(TOKEN_FIELD), workflow.id, node.id)

        if data is None:
            raise self.reject("Form submissions must be a JSON object", "INVALID_PAYLOAD", workflow.id)

        return self.admit(workflow, node, data, source_ip=source_ip)
