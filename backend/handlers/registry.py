"""
Handler Registry: central mapping of step types to handler instances.

The engine dispatches every step through this registry; it never
inspects the step type itself.
"""

from typing import Dict, Optional

from core.constants import PARALLEL_STEP_TYPE
from core.exceptions import NotFoundError
from handlers.base_handler import BaseHandler
from handlers.implementations.agent_handler import AGENT_HANDLER_TYPES
from handlers.implementations.branch_handler import BRANCH_HANDLER_TYPES
from handlers.implementations.function_handler import FUNCTION_HANDLER_TYPES
from handlers.implementations.http_handler import HTTP_HANDLER_TYPES
from handlers.implementations.memory_handler import MEMORY_HANDLER_TYPES
from handlers.implementations.template_handler import TEMPLATE_HANDLER_TYPES
from handlers.implementations.transform_handler import TRANSFORM_HANDLER_TYPES


class HandlerRegistry:
    """Central registry for all step handler implementations."""

    def __init__(
        self,
        include_builtin: bool = True,
        generation_service=None,
        memory_service=None,
        http_client_factory=None,
    ):
        self._handlers: Dict[str, BaseHandler] = {}
        if include_builtin:
            self._register_builtin_handlers(
                generation_service=generation_service,
                memory_service=memory_service,
                http_client_factory=http_client_factory,
            )

    def _register_builtin_handlers(self, generation_service, memory_service, http_client_factory):
        """Register all built-in step types."""
        # Pure data handlers
        for handler_type, handler_class in TRANSFORM_HANDLER_TYPES.items():
            self.register(handler_type, handler_class())
        for handler_type, handler_class in BRANCH_HANDLER_TYPES.items():
            self.register(handler_type, handler_class())
        for handler_type, handler_class in TEMPLATE_HANDLER_TYPES.items():
            self.register(handler_type, handler_class())
        for handler_type, handler_class in FUNCTION_HANDLER_TYPES.items():
            self.register(handler_type, handler_class())

        # Handlers backed by collaborators
        for handler_type, handler_class in AGENT_HANDLER_TYPES.items():
            self.register(handler_type, handler_class(generation_service=generation_service))
        for handler_type, handler_class in MEMORY_HANDLER_TYPES.items():
            self.register(handler_type, handler_class(memory_service=memory_service))
        for handler_type, handler_class in HTTP_HANDLER_TYPES.items():
            self.register(handler_type, handler_class(client_factory=http_client_factory))

    def register(self, handler_type: str, handler: BaseHandler):
        """Register (or replace) the handler for a step type."""
        if handler_type == PARALLEL_STEP_TYPE:
            raise ValueError(f"'{PARALLEL_STEP_TYPE}' is reserved and cannot be registered")
        self._handlers[handler_type] = handler

    def get(self, handler_type: str) -> Optional[BaseHandler]:
        """Get a handler by step type string."""
        return self._handlers.get(handler_type)

    def require(self, handler_type: str) -> BaseHandler:
        handler = self.get(handler_type)
        if handler is None:
            raise NotFoundError(f"No handler registered for step type '{handler_type}'")
        return handler

    def __contains__(self, handler_type: str) -> bool:
        return handler_type in self._handlers

    def list_all(self) -> list:
        """List all registered step types with metadata."""
        return [
            {
                "step_type": handler_type,
                "display_name": handler.display_name,
                "description": handler.description,
                "config_schema": handler.get_config_schema(),
            }
            for handler_type, handler in self._handlers.items()
        ]

    @property
    def available_types(self) -> list:
        return list(self._handlers.keys())


# Singleton
_registry: Optional[HandlerRegistry] = None


def get_handler_registry() -> HandlerRegistry:
    """Get or create the singleton handler registry."""
    global _registry
    if _registry is None:
        _registry = HandlerRegistry()
    return _registry
