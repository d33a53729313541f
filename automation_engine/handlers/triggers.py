"""Trigger node handlers.

A trigger node is the entry point of a run; executing it publishes the
normalized trigger data as its output.
"""

from typing import Any, Dict

from ..models.core import NodeKind
from .base import HandlerContext, HandlerResult, NodeHandler


class TriggerPassthroughHandler(NodeHandler):
    # Trigger configuration holds credentials; it is never templated or echoed.
    resolve_bindings = False

    def __init__(self, kind: NodeKind):
        if not kind.is_trigger:
            raise ValueError(f"{kind.value} is not a trigger kind")
        self.kind = kind

    def execute(self, config: Dict[str, Any], context: HandlerContext) -> HandlerResult:
        return HandlerResult.success(dict(context.trigger.data))


def trigger_handlers():
    return [TriggerPassthroughHandler(kind) for kind in NodeKind if kind.is_trigger]
