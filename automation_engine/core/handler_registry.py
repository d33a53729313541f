"""Closed registry binding every node kind to its handler."""

from typing import Dict, List

from ..models.core import NodeKind
from .exceptions import HandlerRegistryError
from .logging import get_logger

logger = get_logger(__name__)


class HandlerRegistry:
    """Maps ``NodeKind`` members to handler instances.

    Registration happens once at startup; after ``freeze()`` the mapping is
    fixed. Lookups take a ``NodeKind``, never a free-form string.
    """

    def __init__(self):
        self._handlers: Dict[NodeKind, "NodeHandler"] = {}
        self._frozen = False

    def register(self, handler) -> None:
        """Bind a handler to its kind.

        Raises:
            HandlerRegistryError: if the registry is frozen, the kind is not a
                ``NodeKind``, or the kind already has a handler
        """
        kind = getattr(handler, "kind", None)
        if self._frozen:
            raise HandlerRegistryError("Handler registry is frozen", node_kind=str(kind))
        if not isinstance(kind, NodeKind):
            raise HandlerRegistryError(f"Handler {handler!r} does not declare a NodeKind")
        if kind in self._handlers:
            raise HandlerRegistryError(f"Kind {kind.value} is already registered", node_kind=kind.value)

        self._handlers[kind] = handler
        logger.debug(f"Registered handler {handler!r}")

    def freeze(self) -> None:
        missing = self.missing_kinds()
        if missing:
            raise HandlerRegistryError(
                f"No handler for kinds: {', '.join(sorted(k.value for k in missing))}"
            )
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def resolve(self, kind: NodeKind):
        """Return the handler bound to ``kind``.

        Raises:
            HandlerRegistryError: if ``kind`` is not a NodeKind or has no handler
        """
        if not isinstance(kind, NodeKind):
            raise HandlerRegistryError(f"Unknown node kind: {kind!r}")
        try:
            return self._handlers[kind]
        except KeyError:
            raise HandlerRegistryError(f"No handler registered for {kind.value}", node_kind=kind.value)

    def missing_kinds(self) -> List[NodeKind]:
        return [kind for kind in NodeKind if kind not in self._handlers]

    def list_kinds(self) -> List[str]:
        return sorted(kind.value for kind in self._handlers)

    def __contains__(self, kind) -> bool:
        return kind in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


def build_default_registry() -> HandlerRegistry:
    """Registry with every built-in handler, frozen."""
    from ..handlers import builtin_handlers

    registry = HandlerRegistry()
    for handler in builtin_handlers():
        registry.register(handler)
    registry.freeze()
    logger.info(f"Handler registry ready with {len(registry)} node kinds")
    return registry
