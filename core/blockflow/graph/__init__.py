"""Graph structures: blocks, connections, validation and ordering."""

from blockflow.graph.models import Block, BlockStatus, BlockType, Connection, WorkflowGraph
from blockflow.graph.scheduler import Scheduler
from blockflow.graph.validator import (
    GraphValidator,
    IssueType,
    ValidationIssue,
    ValidationReport,
    WorkflowValidationError,
)
from blockflow.graph.variables import VariableReference, VariableResolver

__all__ = [
    # Models
    "Block",
    "BlockStatus",
    "BlockType",
    "Connection",
    "WorkflowGraph",
    # Validation
    "GraphValidator",
    "IssueType",
    "ValidationIssue",
    "ValidationReport",
    "WorkflowValidationError",
    # Ordering
    "Scheduler",
    # Variables
    "VariableReference",
    "VariableResolver",
]
