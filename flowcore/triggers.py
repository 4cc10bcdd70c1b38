"""Mapping of tenant event types to the workflows they start."""

from __future__ import annotations

from typing import Dict, Optional, Protocol, Tuple

from pydantic import BaseModel

from .errors import NotFoundError


class TriggerResolution(BaseModel):
    workflow_name: str
    workflow_version: str


class TriggerRegistry(Protocol):
    async def resolve_trigger(self, tenant: str, event_type: str) -> TriggerResolution:
        """Return the workflow started by ``event_type`` for ``tenant``."""


class InMemoryTriggerRegistry:
    """Triggers registered per tenant, with tenant-independent fallbacks."""

    def __init__(self) -> None:
        self._triggers: Dict[Tuple[Optional[str], str], TriggerResolution] = {}

    def register(
        self,
        event_type: str,
        workflow_name: str,
        workflow_version: str = "1",
        tenant: Optional[str] = None,
    ) -> None:
        self._triggers[(tenant, event_type)] = TriggerResolution(
            workflow_name=workflow_name, workflow_version=workflow_version
        )

    async def resolve_trigger(self, tenant: str, event_type: str) -> TriggerResolution:
        resolution = self._triggers.get((tenant, event_type)) or self._triggers.get(
            (None, event_type)
        )
        if resolution is None:
            raise NotFoundError(f"No workflow is triggered by {event_type} for tenant {tenant}")
        return resolution


__all__ = ["TriggerResolution", "TriggerRegistry", "InMemoryTriggerRegistry"]
