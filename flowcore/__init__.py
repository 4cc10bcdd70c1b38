"""flowcore: durable, event-sourced workflow execution."""

from .actions import ActionContext, ActionRegistry
from .definitions import WorkflowDefinition, load_definitions
from .engine import WorkflowEngine
from .errors import (
    ConflictError,
    FlowcoreError,
    InconsistentStateError,
    LockLeaseExpiredError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from .locks import DistributedLock
from .models import ExecutionStatus, Payload
from .persistence import get_store
from .transports import get_transport
from .worker import WorkerService

__version__ = "0.1.0"
__all__ = [
    "ActionContext",
    "ActionRegistry",
    "WorkflowDefinition",
    "load_definitions",
    "WorkflowEngine",
    "DistributedLock",
    "ExecutionStatus",
    "Payload",
    "WorkerService",
    "get_store",
    "get_transport",
    "FlowcoreError",
    "ConflictError",
    "NotFoundError",
    "InconsistentStateError",
    "TransientError",
    "ValidationError",
    "LockLeaseExpiredError",
]
