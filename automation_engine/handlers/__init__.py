"""Built-in node handlers."""

from .base import HandlerContext, HandlerResult, NodeHandler
from .actions import action_handlers
from .logic import logic_handlers
from .triggers import trigger_handlers


def builtin_handlers():
    """One handler per node kind."""
    return trigger_handlers() + action_handlers() + logic_handlers()


__all__ = [
    "HandlerContext",
    "HandlerResult",
    "NodeHandler",
    "builtin_handlers",
]
