"""Operator-started test runs."""

from typing import Any, Dict, Optional

from ..core.exceptions import WorkflowNotFoundError
from ..core.logging import get_logger
from ..models.core import NodeDefinition, TriggerAcknowledgement, WorkflowDefinition
from .base import TriggerAdapter

logger = get_logger(__name__)


class ManualRunAdapter(TriggerAdapter):
    """Starts a run from a chosen trigger node with operator-supplied data.

    Test runs skip the trigger's own credential check and work on inactive
    workflows, so a workflow can be exercised before it is switched on. They go
    through the same dispatcher as every other trigger and are marked
    ``test: true`` in the run's trigger metadata.
    """

    source_type = "manual"

    def resolve_workflow(self, workflow_id: str) -> WorkflowDefinition:
        try:
            return self.repository.get_workflow(workflow_id)
        except WorkflowNotFoundError:
            raise self.reject(f"Workflow {workflow_id} not found", "NOT_FOUND", workflow_id)

    def locate_node(self, workflow: WorkflowDefinition, trigger_node_id: Optional[str] = None) -> NodeDefinition:
        candidates = workflow.trigger_nodes()
        if trigger_node_id:
            candidates = [node for node in candidates if node.id == trigger_node_id]
        if not candidates:
            raise self.reject(
                f"Workflow {workflow.id} has no trigger node"
                + (f" with id {trigger_node_id}" if trigger_node_id else ""),
                "NO_MATCHING_TRIGGER",
                workflow.id,
            )
        return candidates[0]

    def handle(self, workflow_id: str, data: Optional[Dict[str, Any]] = None,
               trigger_node_id: Optional[str] = None, source_ip: Optional[str] = None) -> TriggerAcknowledgement:
        workflow = self.resolve_workflow(workflow_id)
        node = self.locate_node(workflow, trigger_node_id)

        if data is not None and not isinstance(data, dict):
            raise self.reject("Test run data must be a JSON object", "INVALID_PAYLOAD", workflow.id)

        logger.info(f"Test run requested for workflow {workflow.id} from node {node.id}"
                    + ("" if workflow.active else " (workflow inactive)"))
        return self.admit(workflow, node, dict(data or {}), source_ip=source_ip,
                          extra={"test": True, "triggerType": node.type.value})
