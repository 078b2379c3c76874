"""
Blockflow - workflow execution engine for text/image/video generation blocks.

Blocks are wired into a directed acyclic graph; the engine validates the
graph, orders it, runs each block through a pluggable generation adapter and
feeds every output to the blocks downstream of it.
"""

from blockflow.config import EngineConfig, ModelConfig, ResourceLimits
from blockflow.generation import GenerationAdapter, GenerationConfig
from blockflow.graph import Block, BlockType, Connection, WorkflowGraph, WorkflowValidationError
from blockflow.runtime import (
    EventBus,
    ExecutionController,
    ExecutionOptions,
    ExecutionPriority,
    ResourceManager,
    ResourceUsage,
)
from blockflow.schemas import ExecutionResult, RunStatus

__version__ = "0.1.0"

__all__ = [
    "Block",
    "BlockType",
    "Connection",
    "WorkflowGraph",
    "WorkflowValidationError",
    "EngineConfig",
    "ModelConfig",
    "ResourceLimits",
    "GenerationAdapter",
    "GenerationConfig",
    "EventBus",
    "ExecutionController",
    "ExecutionOptions",
    "ExecutionPriority",
    "ResourceManager",
    "ResourceUsage",
    "ExecutionResult",
    "RunStatus",
]
