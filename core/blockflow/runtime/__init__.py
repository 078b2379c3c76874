"""Runtime: execution control, data propagation, admission control and events."""

from blockflow.runtime.controller import (
    ExecutionController,
    ExecutionOptions,
    ExecutionRun,
    RetryPolicy,
)
from blockflow.runtime.event_bus import EventBus, EventType, WorkflowEvent
from blockflow.runtime.propagation import ConnectionFlow, DataPropagationEngine, PropagatedRecord
from blockflow.runtime.resource_manager import (
    AdmissionResult,
    ExecutionPriority,
    ResourceAllocation,
    ResourceManager,
    ResourceUsage,
)

__all__ = [
    "ExecutionController",
    "ExecutionOptions",
    "ExecutionRun",
    "RetryPolicy",
    "EventBus",
    "EventType",
    "WorkflowEvent",
    "ConnectionFlow",
    "DataPropagationEngine",
    "PropagatedRecord",
    "AdmissionResult",
    "ExecutionPriority",
    "ResourceAllocation",
    "ResourceManager",
    "ResourceUsage",
]
