"""Built-in action handlers."""

import logging
import time
from typing import Any, Dict

from ..core.logging import get_logger, log_with_context
from ..models.core import NodeKind
from .base import HandlerContext, HandlerResult, NodeHandler

logger = get_logger(__name__)

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class EchoHandler(NodeHandler):
    """Returns ``value`` when configured, otherwise the predecessor input unchanged."""

    kind = NodeKind.ACTION_ECHO

    def execute(self, config: Dict[str, Any], context: HandlerContext) -> HandlerResult:
        if "value" in config:
            return HandlerResult.success(config["value"])
        return HandlerResult.success(context.input)


class LoggerHandler(NodeHandler):
    kind = NodeKind.ACTION_LOGGER

    def execute(self, config: Dict[str, Any], context: HandlerContext) -> HandlerResult:
        level_name = str(config.get("level", "info")).lower()
        if level_name not in LOG_LEVELS:
            return HandlerResult.failure(f"Unknown log level: {level_name}")

        message = config.get("message")
        if message is None:
            message = repr(context.input)

        log_with_context(
            logger, LOG_LEVELS[level_name], str(message),
            run_id=context.run_id, workflow_id=context.workflow_id, node_id=context.node.id
        )
        return HandlerResult.success({"message": message, "level": level_name})


class TransformHandler(NodeHandler):
    """Builds its output from the resolved ``mapping``."""

    kind = NodeKind.ACTION_TRANSFORM

    def execute(self, config: Dict[str, Any], context: HandlerContext) -> HandlerResult:
        mapping = config.get("mapping")
        if not isinstance(mapping, dict):
            return HandlerResult.failure("Transform node requires a 'mapping' object")
        return HandlerResult.success(mapping)


class DelayHandler(NodeHandler):
    """Sleeps for ``seconds``, waking periodically to honor cancellation."""

    kind = NodeKind.ACTION_DELAY
    slice_seconds = 0.05

    def execute(self, config: Dict[str, Any], context: HandlerContext) -> HandlerResult:
        try:
            seconds = float(config.get("seconds", 0))
        except (TypeError, ValueError):
            return HandlerResult.failure(f"Invalid delay: {config.get('seconds')!r}")
        if seconds < 0:
            return HandlerResult.failure("Delay cannot be negative")

        deadline = time.monotonic() + seconds
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            if context.cancel_requested():
                return HandlerResult.success({"delayed": seconds - remaining, "interrupted": True})
            time.sleep(min(self.slice_seconds, remaining))

        return HandlerResult.success({"delayed": seconds})


def action_handlers():
    return [EchoHandler(), LoggerHandler(), TransformHandler(), DelayHandler()]
