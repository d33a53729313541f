"""Database change trigger, invoked in-process by change producers."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..core.exceptions import ResourceExhaustionError
from ..core.logging import get_logger
from ..models.core import NodeDefinition, NodeKind, TriggerAcknowledgement
from .base import TriggerAdapter

logger = get_logger(__name__)

EVENT_TYPES = ("newRow", "updatedRow")


class DatabaseChangeEvent(BaseModel):
    """A row change observed on a customer connection."""
    connection_id: str = Field(..., alias="connectionId")
    database: Optional[str] = None
    table: str
    event_type: str = Field("newRow", alias="eventType")
    row: Dict[str, Any] = Field(default_factory=dict)
    previous: Optional[Dict[str, Any]] = None
    source_workflow_id: Optional[str] = Field(None, alias="sourceWorkflowId")

    model_config = {"populate_by_name": True}

    @field_validator('event_type')
    @classmethod
    def validate_event_type(cls, event_type):
        if event_type not in EVENT_TYPES:
            raise ValueError(f"eventType must be one of {', '.join(EVENT_TYPES)}")
        return event_type


class DatabaseChangeAdapter(TriggerAdapter):
    """Fans a change event out to every active workflow listening for it.

    There is no external principal, so no credential is checked. The workflow
    that caused the change (``sourceWorkflowId``) is never re-triggered by it.
    """

    node_kind = NodeKind.TRIGGER_DATABASE
    source_type = "database"

    @staticmethod
    def matches(node: NodeDefinition, event: DatabaseChangeEvent) -> bool:
        config = node.data
        if config.get("connectionId") != event.connection_id:
            return False
        if config.get("database") and config["database"] != event.database:
            return False
        if config.get("table") and config["table"] != event.table:
            return False
        return config.get("eventType", "newRow") == event.event_type

    def publish_change(self, event: DatabaseChangeEvent) -> List[TriggerAcknowledgement]:
        """Admit one run per matching (workflow, node) pair."""
        acknowledgements = []
        for workflow in self.repository.find_by_trigger_kind(self.node_kind, active_only=True):
            if workflow.id == event.source_workflow_id:
                continue
            for node in workflow.trigger_nodes(self.node_kind):
                if not self.matches(node, event):
                    continue
                data = {
                    "eventType": event.event_type,
                    "database": event.database,
                    "table": event.table,
                    "row": event.row,
                    "previous": event.previous,
                }
                try:
                    acknowledgements.append(
                        self.admit(workflow, node, data, extra={"connectionId": event.connection_id})
                    )
                except ResourceExhaustionError:
                    logger.warning(
                        f"Dropped {event.event_type} on {event.table} for workflow {workflow.id}: run queue full"
                    )

        logger.info(f"Database change on {event.table} ({event.event_type}) started {len(acknowledgements)} runs")
        return acknowledgements
