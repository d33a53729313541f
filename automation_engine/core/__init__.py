"""Core automation engine components."""

from .exceptions import (
    WorkflowEngineError,
    TriggerValidationError,
    AuthenticationError,
    NodeExecutionError,
    NodeTimeoutError,
    RunStateError,
    RunNotFoundError,
    HandlerRegistryError,
    ExecutionEngineError,
    StorageError,
    WorkflowNotFoundError,
    WorkflowDefinitionError,
    ResourceExhaustionError,
)
from .logging import setup_logging, get_logger

__all__ = [
    "WorkflowEngineError",
    "TriggerValidationError",
    "AuthenticationError",
    "NodeExecutionError",
    "NodeTimeoutError",
    "RunStateError",
    "RunNotFoundError",
    "HandlerRegistryError",
    "ExecutionEngineError",
    "StorageError",
    "WorkflowNotFoundError",
    "WorkflowDefinitionError",
    "ResourceExhaustionError",
    "setup_logging",
    "get_logger",
]
