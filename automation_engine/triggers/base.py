"""Shared admission contract for trigger adapters.

Every adapter follows the same sequence: resolve the workflow, locate a
trigger node of its kind, authenticate against that node's credential, then
hand a canonical ``TriggerPayload`` to the dispatcher and acknowledge. Any
failure before the hand-off is raised to the caller; anything after it is only
visible on the run.
"""

from typing import Any, Dict, Mapping, Optional

from ..core.exceptions import TriggerValidationError, WorkflowNotFoundError
from ..core.logging import get_logger
from ..core.security_gate import SecurityGate
from ..models.core import (
    NodeDefinition, NodeKind, TriggerAcknowledgement, TriggerMetadata, TriggerPayload,
    WorkflowDefinition
)

logger = get_logger(__name__)


def header_value(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    """Case-insensitive header lookup over any mapping."""
    if not headers:
        return None
    getter = getattr(headers, "get", None)
    value = getter(name) if getter else None
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


class TriggerAdapter:
    """Base class for adapters that admit external events as runs."""

    node_kind: NodeKind
    source_type: str

    def __init__(self, repository, dispatcher, gate: Optional[SecurityGate] = None):
        self.repository = repository
        self.dispatcher = dispatcher
        self.gate = gate or SecurityGate()

    def reject(self, message: str, error_code: str, workflow_id: Optional[str] = None) -> TriggerValidationError:
        logger.warning(f"{self.source_type} trigger rejected for workflow {workflow_id}: {error_code}")
        return TriggerValidationError(message, error_code=error_code, workflow_id=workflow_id)

    def resolve_workflow(self, workflow_id: str) -> WorkflowDefinition:
        """
        Load the live workflow definition.

        Raises:
            TriggerValidationError: NOT_FOUND or INACTIVE
        """
        try:
            workflow = self.repository.get_workflow(workflow_id)
        except WorkflowNotFoundError:
            raise self.reject(f"Workflow {workflow_id} not found", "NOT_FOUND", workflow_id)

        if not workflow.active:
            raise self.reject(f"Workflow {workflow_id} is not active", "INACTIVE", workflow_id)
        return workflow

    def locate_node(self, workflow: WorkflowDefinition, trigger_node_id: Optional[str] = None) -> NodeDefinition:
        """
        Find the trigger node this adapter serves.

        Raises:
            TriggerValidationError: NO_MATCHING_TRIGGER
        """
        candidates = workflow.trigger_nodes(self.node_kind)
        if trigger_node_id:
            candidates = [node for node in candidates if node.id == trigger_node_id]
        if not candidates:
            raise self.reject(
                f"Workflow {workflow.id} has no {self.node_kind.value} trigger"
                + (f" with id {trigger_node_id}" if trigger_node_id else ""),
                "NO_MATCHING_TRIGGER",
                workflow.id,
            )
        return candidates[0]

    def build_payload(self, workflow: WorkflowDefinition, node: NodeDefinition, data: Dict[str, Any],
                      source_ip: Optional[str] = None, extra: Optional[Dict[str, Any]] = None) -> TriggerPayload:
        return TriggerPayload(
            workflow_id=workflow.id,
            trigger_node_id=node.id,
            data=data,
            metadata=TriggerMetadata(source_ip=source_ip, source_type=self.source_type, extra=extra or {}),
        )

    def admit(self, workflow: WorkflowDefinition, node: NodeDefinition, data: Dict[str, Any],
              source_ip: Optional[str] = None, extra: Optional[Dict[str, Any]] = None,
              file_info: Optional[Dict[str, Any]] = None) -> TriggerAcknowledgement:
        """
        Hand the event to the dispatcher and build the acknowledgement.

        Raises:
            ResourceExhaustionError: If the run queue is full
        """
        payload = self.build_payload(workflow, node, data, source_ip, extra)
        run_id = self.dispatcher.submit(workflow, payload)

        logger.info(f"{self.source_type} trigger admitted for workflow {workflow.id} node {node.id}: run {run_id}")
        return TriggerAcknowledgement(
            run_id=run_id,
            workflow_id=workflow.id,
            trigger_node_id=node.id,
            file_info=file_info,
        )
