"""
Run Schema - The outcome of one workflow execution.

An ExecutionResult carries one BlockResult per attempted block (in execution
order), the run-level errors, and the statistics a caller needs to show a
summary without walking the results.
"""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field, computed_field


class RunStatus(StrEnum):
    """Status of a run."""

    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class BlockResultStatus(StrEnum):
    """Outcome of one block within a run."""

    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class BlockResult(BaseModel):
    """Result of executing one block. Never modified once appended."""

    block_id: str
    label: str
    status: BlockResultStatus
    output: str | None = None
    error: str | None = None
    execution_time: float = Field(default=0.0, description="Seconds spent on the block")
    retry_count: int = 0
    timestamp: datetime = Field(default_factory=datetime.now)

    model_config = {"frozen": True}


class ExecutionError(BaseModel):
    """An error recorded against a run (block_id is None for run-level errors)."""

    message: str
    block_id: str | None = None
    timestamp: datetime = Field(default_factory=datetime.now)


class ExecutionStatistics(BaseModel):
    """Counters for a run."""

    total_blocks: int = 0
    completed_blocks: int = 0
    failed_blocks: int = 0
    skipped_blocks: int = 0
    total_execution_time: float = 0.0  # seconds, sum over attempted blocks

    @computed_field
    @property
    def average_block_time(self) -> float:
        attempted = self.completed_blocks + self.failed_blocks
        if attempted == 0:
            return 0.0
        return self.total_execution_time / attempted


class ExecutionResult(BaseModel):
    """
    Final outcome of a workflow run.

    A failed run is still a normal return value: completed outputs stay in
    `results` next to the failures.
    """

    run_id: str
    workflow_id: str | None = None
    status: RunStatus
    results: list[BlockResult] = Field(default_factory=list)
    statistics: ExecutionStatistics = Field(default_factory=ExecutionStatistics)
    errors: list[ExecutionError] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=datetime.now)
    completed_at: datetime | None = None

    model_config = {"extra": "allow"}

    @computed_field
    @property
    def duration_ms(self) -> int:
        if self.completed_at is None:
            return 0
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    def get_block_result(self, block_id: str) -> BlockResult | None:
        for result in self.results:
            if result.block_id == block_id:
                return result
        return None

    def summary(self) -> str:
        """One-paragraph description of the run."""
        stats = self.statistics
        parts = [
            f"Run {self.status.value}.",
            f"{stats.completed_blocks}/{stats.total_blocks} blocks completed, "
            f"{stats.failed_blocks} failed, {stats.skipped_blocks} skipped.",
        ]
        failed = [r.label for r in self.results if r.status == BlockResultStatus.FAILED]
        if failed:
            parts.append(f"Failed on: {', '.join(failed[:3])}")
        if self.errors and not failed:
            parts.append(f"Errors: {'; '.join(e.message for e in self.errors[:3])}")
        return " ".join(parts)


class ExecutionProgress(BaseModel):
    """How far a run has got."""

    completed: int = 0
    total: int = 0
    current_block_id: str | None = None

    @computed_field
    @property
    def percent(self) -> float:
        if self.total == 0:
            return 0.0
        return self.completed / self.total * 100


class ExecutionStatusReport(BaseModel):
    """Snapshot of an active run."""

    run_id: str
    status: RunStatus
    progress: ExecutionProgress
    started_at: datetime
    estimated_completion: datetime | None = None
