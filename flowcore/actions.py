"""Typed registry of action handlers."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, runtime_checkable

from .errors import NotFoundError, ValidationError
from .models import Payload

logger = logging.getLogger(__name__)


@dataclass
class ActionContext:
    """Everything a handler may look at while executing one action."""

    tenant: str
    execution_id: str
    event_id: str
    event_name: str
    event_sequence: int
    action_id: str
    parameters: Dict[str, Any]
    idempotency_key: str
    attempt: int = 1
    payload: Payload = field(default_factory=Payload)
    context_data: Payload = field(default_factory=Payload)
    user_id: Optional[str] = None


@runtime_checkable
class ActionHandler(Protocol):
    async def execute(self, ctx: ActionContext) -> Optional[Dict[str, Any]]:
        """Run the action and return a JSON-serializable result."""


class FunctionAction:
    """Adapter turning a coroutine function into an :class:`ActionHandler`."""

    def __init__(
        self, func: Callable[[ActionContext], Awaitable[Optional[Dict[str, Any]]]]
    ) -> None:
        self.func = func

    async def execute(self, ctx: ActionContext) -> Optional[Dict[str, Any]]:
        return await self.func(ctx)


class ActionRegistry:
    """Map action kinds to handlers."""

    def __init__(self) -> None:
        self._handlers: Dict[str, ActionHandler] = {}

    def register(self, kind: str, handler: ActionHandler) -> None:
        if not isinstance(handler, ActionHandler):
            raise ValidationError(f"Handler for {kind} has no execute coroutine")
        if kind in self._handlers:
            logger.warning(f"Replacing handler for action kind {kind}")
        self._handlers[kind] = handler

    def action(self, kind: str):
        """Decorator registering a coroutine function as the handler for ``kind``."""

        def decorator(func):
            self.register(kind, FunctionAction(func))
            return func

        return decorator

    def get(self, kind: str) -> ActionHandler:
        try:
            return self._handlers[kind]
        except KeyError:
            raise NotFoundError(f"No handler registered for action kind {kind}") from None

    def __contains__(self, kind: str) -> bool:
        return kind in self._handlers

    def kinds(self) -> list[str]:
        return sorted(self._handlers)


__all__ = ["ActionContext", "ActionHandler", "FunctionAction", "ActionRegistry"]
