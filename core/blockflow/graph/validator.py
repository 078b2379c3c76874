"""Structural validation for workflow graphs.

Checks a block/connection graph before anything runs so that broken
workflows fail fast with every problem listed:

- circular_dependency: one finding per block that sits on a cycle
- missing_block: a connection endpoint names a block that does not exist
- undefined_variable: an instruction token names no direct upstream block
- performance: advisory warning for very large connection counts
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum

from blockflow.graph.models import Block, Connection
from blockflow.graph.variables import VariableResolver

logger = logging.getLogger(__name__)

DEFAULT_PERFORMANCE_THRESHOLD = 20


class IssueType(StrEnum):
    """Category of a validation finding."""

    CIRCULAR_DEPENDENCY = "circular_dependency"
    MISSING_BLOCK = "missing_block"
    UNDEFINED_VARIABLE = "undefined_variable"
    PERFORMANCE = "performance"


@dataclass
class ValidationIssue:
    """A single validation finding."""

    type: IssueType
    message: str
    block_id: str | None = None
    connection_id: str | None = None


@dataclass
class ValidationReport:
    """Result of validating a graph."""

    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def error(self) -> str:
        """Get combined error message."""
        return "; ".join(e.message for e in self.errors)

    def errors_of(self, issue_type: IssueType) -> list[ValidationIssue]:
        return [e for e in self.errors if e.type == issue_type]


class WorkflowValidationError(ValueError):
    """Raised when a workflow is refused before execution."""

    def __init__(self, report: ValidationReport):
        self.report = report
        super().__init__(f"Workflow validation failed: {report.error}")


def find_cycle_issues(
    blocks: Sequence[Block], connections: Sequence[Connection]
) -> list[ValidationIssue]:
    """
    Cycle detection over strongly connected components (Tarjan).

    Every block that sits on some cycle is reported exactly once, in block
    order, so a UI can highlight each loop in full. A block belongs to a cycle
    when its component has more than one member or it connects to itself.
    Blocks leading into a loop are not part of it and are not reported.
    """
    adjacency: dict[str, list[Connection]] = {b.id: [] for b in blocks}
    for conn in connections:
        if conn.from_id in adjacency and conn.to_id in adjacency:
            adjacency[conn.from_id].append(conn)

    index: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    stack: list[str] = []
    on_stack: set[str] = set()
    component_of: dict[str, int] = {}
    sizes: list[int] = []

    def strongconnect(block_id: str) -> None:
        index[block_id] = lowlink[block_id] = len(index)
        stack.append(block_id)
        on_stack.add(block_id)

        for conn in adjacency[block_id]:
            if conn.to_id not in index:
                strongconnect(conn.to_id)
                lowlink[block_id] = min(lowlink[block_id], lowlink[conn.to_id])
            elif conn.to_id in on_stack:
                lowlink[block_id] = min(lowlink[block_id], index[conn.to_id])

        if lowlink[block_id] == index[block_id]:
            sizes.append(0)
            while True:
                member = stack.pop()
                on_stack.discard(member)
                component_of[member] = len(sizes) - 1
                sizes[-1] += 1
                if member == block_id:
                    break

    for block in blocks:
        if block.id not in index:
            strongconnect(block.id)

    issues: list[ValidationIssue] = []
    for block in blocks:
        component = component_of[block.id]
        # Edge that keeps this block inside its loop
        loop_edge = next(
            (
                conn
                for conn in adjacency[block.id]
                if component_of[conn.to_id] == component
                and (sizes[component] > 1 or conn.to_id == block.id)
            ),
            None,
        )
        if loop_edge is None:
            continue
        issues.append(
            ValidationIssue(
                type=IssueType.CIRCULAR_DEPENDENCY,
                message=f"Circular dependency detected involving block {block.id}",
                block_id=block.id,
                connection_id=loop_edge.id,
            )
        )

    return issues


def find_missing_block_issues(
    blocks: Sequence[Block], connections: Sequence[Connection]
) -> list[ValidationIssue]:
    """Report connection endpoints that name unknown blocks."""
    block_ids = {b.id for b in blocks}
    issues = []
    for conn in connections:
        if conn.from_id not in block_ids:
            issues.append(
                ValidationIssue(
                    type=IssueType.MISSING_BLOCK,
                    message=f"Connection references missing source block: {conn.from_id}",
                    connection_id=conn.id,
                )
            )
        if conn.to_id not in block_ids:
            issues.append(
                ValidationIssue(
                    type=IssueType.MISSING_BLOCK,
                    message=f"Connection references missing target block: {conn.to_id}",
                    connection_id=conn.id,
                )
            )
    return issues


class GraphValidator:
    """
    Validates workflow graphs. Pure: no state is kept between calls.

    Example:
        report = GraphValidator().validate(graph.blocks, graph.connections)
        if not report.is_valid:
            raise WorkflowValidationError(report)
    """

    def __init__(
        self,
        performance_threshold: int = DEFAULT_PERFORMANCE_THRESHOLD,
        strict_variables: bool = True,
    ):
        """
        Args:
            performance_threshold: Connection count above which a warning is emitted
            strict_variables: Undefined variables are errors (True) or warnings (False)
        """
        self.performance_threshold = performance_threshold
        self.strict_variables = strict_variables
        self.variables = VariableResolver()

    def validate(
        self, blocks: Sequence[Block], connections: Sequence[Connection]
    ) -> ValidationReport:
        report = ValidationReport()

        report.errors.extend(find_cycle_issues(blocks, connections))
        report.errors.extend(find_missing_block_issues(blocks, connections))

        variable_issues = self._find_variable_issues(blocks, connections)
        if self.strict_variables:
            report.errors.extend(variable_issues)
        else:
            report.warnings.extend(variable_issues)

        if len(connections) > self.performance_threshold:
            report.warnings.append(
                ValidationIssue(
                    type=IssueType.PERFORMANCE,
                    message=(
                        f"High number of connections ({len(connections)}) "
                        "may impact performance"
                    ),
                )
            )

        if not report.is_valid:
            logger.debug(f"Graph rejected with {len(report.errors)} error(s): {report.error}")
        return report

    def _find_variable_issues(
        self, blocks: Sequence[Block], connections: Sequence[Connection]
    ) -> list[ValidationIssue]:
        label_by_id = {b.id: b.label for b in blocks}
        issues = []
        for block in blocks:
            if not block.instruction:
                continue
            available = [
                label_by_id[c.from_id]
                for c in connections
                if c.to_id == block.id and c.from_id in label_by_id
            ]
            for ref in self.variables.find_undefined(block.instruction, available):
                issues.append(
                    ValidationIssue(
                        type=IssueType.UNDEFINED_VARIABLE,
                        message=(
                            f"Variable {ref.token} in block {block.label} "
                            f"references unavailable block {ref.label}"
                        ),
                        block_id=block.id,
                    )
                )
        return issues
