"""
Handler registry.

Handlers are async callables receiving the QueueItem and returning a
result (a WorkResult, raw bytes or any JSON-serializable value). They
must be idempotent: delivery is at-least-once, so a crash between the
handler finishing and the item being finalized runs the handler again.

To fail an item with a readable message, raise ``HandlerError``; any
other exception is recorded as an unknown error.
"""

import importlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pgqueue.db.models import QueueItem
from pgqueue.errors import HandlerError

logger = logging.getLogger(__name__)

# Type alias for handler functions
Handler = Callable[[QueueItem], Awaitable[Any]]


class HandlerRegistry:
    """Maps item types to handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}

    def register(self, item_type: str) -> Callable[[Handler], Handler]:
        """
        Decorator to register a handler.

        Args:
            item_type: The item type this handler processes.

        Example:
            @registry.register("send_email")
            async def send_email(item: QueueItem) -> WorkResult:
                ...
        """

        def decorator(handler: Handler) -> Handler:
            self._handlers[item_type] = handler
            logger.info(f"Registered handler for type: {item_type}")
            return handler

        return decorator

    def get(self, item_type: str) -> Handler | None:
        return self._handlers.get(item_type)

    def types(self) -> list[str]:
        """List all registered item types."""
        return list(self._handlers.keys())

    async def execute(self, item: QueueItem) -> Any:
        """
        Run the handler registered for the item's type.

        Raises:
            HandlerError: If no handler is registered for the type.
        """
        handler = self.get(item.type)
        if handler is None:
            logger.error(
                f"No handler for type: {item.type}",
                extra={"item_id": str(item.id)},
            )
            raise HandlerError(f"No handler registered for type: {item.type}")
        return await handler(item)


# Default registry used by the worker process
handler_registry = HandlerRegistry()


def register_handler(item_type: str) -> Callable[[Handler], Handler]:
    """
    Decorator to register a handler on the default registry.

    Example:
        @register_handler("send_email")
        async def send_email(item: QueueItem) -> WorkResult:
            ...
    """
    return handler_registry.register(item_type)


def load_handlers_module(module_name: str) -> None:
    """Import a module so its @register_handler decorators run."""
    importlib.import_module(module_name)
    logger.info(
        "Loaded handlers module",
        extra={"module": module_name, "types": handler_registry.types()},
    )
