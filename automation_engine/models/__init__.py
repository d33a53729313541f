"""Data models for the automation engine."""

from .core import (
    NodeKind,
    RunStatus,
    StepStatus,
    RunEventType,
    NodeDefinition,
    EdgeDefinition,
    WorkflowDefinition,
    TriggerMetadata,
    TriggerPayload,
    TriggerAcknowledgement,
    StepRecord,
    WorkflowRun,
    RunPage,
    RunEvent,
)

__all__ = [
    "NodeKind",
    "RunStatus",
    "StepStatus",
    "RunEventType",
    "NodeDefinition",
    "EdgeDefinition",
    "WorkflowDefinition",
    "TriggerMetadata",
    "TriggerPayload",
    "TriggerAcknowledgement",
    "StepRecord",
    "WorkflowRun",
    "RunPage",
    "RunEvent",
]
