"""
Data Propagation - Moves block outputs to downstream consumers.

For every block that finishes, the engine keeps exactly one snapshot (the
latest) of what that block exposes downstream. Each snapshot picks a single
"primary content" from the candidates a block carries:

1. the block's own generated output, when non-empty
2. else, for text blocks only, the raw attachment, when non-empty
3. else the raw value handed in by the caller

Downstream blocks read the snapshots of their direct predecessors, ordered
by the time each snapshot was written.
"""

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field

from blockflow.graph.models import Block, BlockType, Connection
from blockflow.graph.validator import (
    DEFAULT_PERFORMANCE_THRESHOLD,
    IssueType,
    ValidationIssue,
    ValidationReport,
    find_cycle_issues,
    find_missing_block_issues,
)

logger = logging.getLogger(__name__)

SUMMARY_MAX_LENGTH = 50


@dataclass(frozen=True)
class PropagatedRecord:
    """Snapshot of one block's output as seen by its downstream blocks."""

    block_id: str
    label: str
    primary_content: str
    type: BlockType
    timestamp: float

    # Candidates the primary content was chosen from
    generated_content: str | None = None
    attachment_content: str | None = None
    instruction_content: str | None = None


@dataclass
class ConnectionFlow:
    """Per-connection cache of the last value that travelled along it."""

    connection: Connection
    enabled: bool = True
    data_type: BlockType = BlockType.TEXT
    last_data: str | None = None
    last_update: float = field(default_factory=time.time)


def select_primary_content(raw_value: str, block: Block | None) -> str:
    """Apply the output > text attachment > raw value priority rule."""
    if block is None:
        return raw_value or ""
    if block.output and block.output.strip():
        return block.output
    if block.type == BlockType.TEXT and block.attachment and block.attachment.strip():
        return block.attachment
    return raw_value or ""


def summarize(record: PropagatedRecord) -> str:
    """Short, display-friendly description of a record's content."""
    content = record.primary_content
    if not content:
        return "no content"

    if record.type == BlockType.IMAGE:
        if content.startswith("data:image/"):
            fmt = content[len("data:image/") :].split(";", 1)[0].upper() or "IMAGE"
            return f"{fmt} image"
        if content.startswith("http"):
            return "online image"
        return "image content"

    if record.type == BlockType.VIDEO:
        if content.startswith("http"):
            return "video file"
        return "video content"

    summary = content.strip()
    if len(summary) > SUMMARY_MAX_LENGTH:
        summary = summary[:SUMMARY_MAX_LENGTH] + "..."
    return summary


class DataPropagationEngine:
    """
    Caches each block's latest output and exposes it to downstream blocks.

    Example:
        engine = DataPropagationEngine(graph.connections)
        engine.record_output("a", "hi", BlockType.TEXT, "A01", block_a)
        engine.upstream_of("b")  # -> [PropagatedRecord(label="A01", primary_content="hi", ...)]
    """

    def __init__(self, connections: Sequence[Connection] | None = None):
        self._records: dict[str, PropagatedRecord] = {}
        self._flows: dict[str, ConnectionFlow] = {}
        self._last_timestamp = 0.0
        if connections:
            self.update_connections(connections)

    # === CONNECTIONS ===

    def update_connections(self, connections: Sequence[Connection]) -> None:
        """
        Synchronise the flow cache with the current connection list.

        Removed connections are dropped. A connection whose annotation is
        unchanged keeps its cached flow.
        """
        current_ids = {c.id for c in connections}
        for cached_id in list(self._flows):
            if cached_id not in current_ids:
                del self._flows[cached_id]

        for conn in connections:
            cached = self._flows.get(conn.id)
            if cached is not None and cached.connection.instruction == conn.instruction:
                continue
            self._flows[conn.id] = ConnectionFlow(connection=conn)

    def get_flow(self, connection_id: str) -> ConnectionFlow | None:
        return self._flows.get(connection_id)

    # === WRITES ===

    def record_output(
        self,
        source_block_id: str,
        raw_value: str,
        block_type: BlockType,
        label: str,
        block: Block | None = None,
    ) -> PropagatedRecord:
        """
        Write (or overwrite) the snapshot for a block and update its outgoing flows.

        Calling this twice with the same arguments leaves downstream content
        unchanged; only the timestamp advances.
        """
        timestamp = self._next_timestamp()
        record = PropagatedRecord(
            block_id=source_block_id,
            label=label,
            primary_content=select_primary_content(raw_value, block),
            type=block_type,
            timestamp=timestamp,
            generated_content=block.output if block is not None else None,
            attachment_content=block.attachment if block is not None else None,
            instruction_content=block.instruction if block is not None else None,
        )
        self._records[source_block_id] = record

        for flow in self._flows.values():
            if flow.connection.from_id == source_block_id:
                flow.last_update = timestamp
                flow.data_type = block_type
                flow.last_data = record.primary_content

        logger.debug(
            f"Recorded output of {label} ({len(record.primary_content)} chars)",
            extra={"event": "output_recorded", "block_type": str(block_type)},
        )
        return record

    def clear(self) -> None:
        """Drop all snapshots and flows."""
        self._records.clear()
        self._flows.clear()
        self._last_timestamp = 0.0

    def _next_timestamp(self) -> float:
        # Strictly increasing so upstream ordering never ties
        now = time.time()
        if now <= self._last_timestamp:
            now = self._last_timestamp + 1e-6
        self._last_timestamp = now
        return now

    # === READS ===

    def get_record(self, block_id: str) -> PropagatedRecord | None:
        return self._records.get(block_id)

    def upstream_ids(self, block_id: str) -> list[str]:
        """IDs of enabled direct predecessors, in connection order."""
        ids: list[str] = []
        for flow in self._flows.values():
            conn = flow.connection
            if conn.to_id == block_id and flow.enabled and conn.from_id not in ids:
                ids.append(conn.from_id)
        return ids

    def upstream_of(self, block_id: str) -> list[PropagatedRecord]:
        """
        Snapshots of all direct predecessors, oldest first.

        Ordering depends only on when each predecessor was recorded, never on
        the order the connections were created in. A block with no inbound
        connections (or whose predecessors have not run) gets an empty list.
        """
        records = [
            self._records[source_id]
            for source_id in self.upstream_ids(block_id)
            if source_id in self._records
        ]
        return sorted(records, key=lambda r: r.timestamp)

    def available_variable_labels(self, block_id: str) -> list[str]:
        """Sorted labels usable as [label] tokens in this block's instruction."""
        return sorted(r.label for r in self.upstream_of(block_id))

    def upstream_with_summaries(self, block_id: str) -> list[tuple[PropagatedRecord, str]]:
        return [(record, summarize(record)) for record in self.upstream_of(block_id)]

    def upstream_display_info(self, block_id: str) -> str:
        """One-line description of upstream inputs, e.g. '[A01] text: hello'."""
        return ", ".join(
            f"[{record.label}] {record.type.value}: {summary}"
            for record, summary in self.upstream_with_summaries(block_id)
        )

    def snapshot(self) -> dict[str, PropagatedRecord]:
        """Copy of every record, keyed by block id."""
        return dict(self._records)

    # === VALIDATION ===

    def validate(
        self,
        connections: Sequence[Connection],
        blocks: Sequence[Block],
        performance_threshold: int = DEFAULT_PERFORMANCE_THRESHOLD,
    ) -> ValidationReport:
        """
        Structural check (cycles and missing blocks) usable without a GraphValidator.

        Variable tokens are not checked here.
        """
        report = ValidationReport()
        report.errors.extend(find_cycle_issues(blocks, connections))
        report.errors.extend(find_missing_block_issues(blocks, connections))
        if len(connections) > performance_threshold:
            report.warnings.append(
                ValidationIssue(
                    type=IssueType.PERFORMANCE,
                    message=(
                        f"High number of connections ({len(connections)}) "
                        "may impact performance"
                    ),
                )
            )
        return report
