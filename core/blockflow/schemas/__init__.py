"""Result schemas for workflow runs."""

from blockflow.schemas.run import (
    BlockResult,
    BlockResultStatus,
    ExecutionError,
    ExecutionProgress,
    ExecutionResult,
    ExecutionStatistics,
    ExecutionStatusReport,
    RunStatus,
)

__all__ = [
    "BlockResult",
    "BlockResultStatus",
    "ExecutionError",
    "ExecutionProgress",
    "ExecutionResult",
    "ExecutionStatistics",
    "ExecutionStatusReport",
    "RunStatus",
]
