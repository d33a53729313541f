"""Handler contract shared by every node kind."""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from ..models.core import NodeDefinition, NodeKind, StepStatus, TriggerPayload


class HandlerResult:
    """What a handler hands back to the executor.

    ``selected_outputs`` names the output handles to follow. ``None`` means every
    outgoing edge is followed; an empty list follows none.
    """

    def __init__(
        self,
        status: StepStatus = StepStatus.SUCCESS,
        output: Any = None,
        error: Optional[Dict[str, Any]] = None,
        selected_outputs: Optional[List[str]] = None,
    ):
        self.status = status
        self.output = output
        self.error = error
        self.selected_outputs = selected_outputs

    @classmethod
    def success(cls, output: Any = None, selected_outputs: Optional[List[str]] = None) -> "HandlerResult":
        return cls(StepStatus.SUCCESS, output=output, selected_outputs=selected_outputs)

    @classmethod
    def failure(cls, message: str, **details) -> "HandlerResult":
        return cls(StepStatus.ERROR, error={"message": message, **details})


class HandlerContext:
    """Read-only view of the run a handler executes in."""

    def __init__(
        self,
        run_id: str,
        workflow_id: str,
        node: NodeDefinition,
        trigger: TriggerPayload,
        inputs: Dict[str, Any],
        outputs: Dict[str, Any],
        cancel_requested: Callable[[], bool] = lambda: False,
    ):
        self.run_id = run_id
        self.workflow_id = workflow_id
        self.node = node
        self.trigger = trigger
        self.inputs = inputs
        self.outputs = outputs
        self.cancel_requested = cancel_requested

    @property
    def input(self) -> Any:
        """Output of the single predecessor, or all predecessor outputs by node id."""
        if len(self.inputs) == 1:
            return next(iter(self.inputs.values()))
        return dict(self.inputs)

    def binding_scope(self) -> Dict[str, Any]:
        return {
            "trigger": self.trigger.data,
            "input": self.input,
            "nodes": self.outputs,
            "run": {"run_id": self.run_id, "workflow_id": self.workflow_id},
        }


class NodeHandler(ABC):
    """Executes one node kind.

    Handlers raise or return ``HandlerResult.failure`` to record an error step.
    ``error_tolerant`` handlers still run when a predecessor failed.
    """

    kind: NodeKind
    error_tolerant: bool = False
    resolve_bindings: bool = True

    @abstractmethod
    def execute(self, config: Dict[str, Any], context: HandlerContext) -> HandlerResult:
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.kind.value})"
