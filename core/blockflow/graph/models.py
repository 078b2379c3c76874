"""
Workflow graph models - blocks and the connections between them.

A workflow is a directed graph:
1. Blocks are units of generation work (text, image or video)
2. Connections declare that one block's output feeds another's input
3. The graph must be acyclic before a run can start

The canvas that edits these graphs stores layout data (positions, sizes,
colours) on the same records; those extra fields are accepted and ignored.
"""

import json
import uuid
from enum import StrEnum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field


class BlockType(StrEnum):
    """Kind of content a block generates."""

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"


class BlockStatus(StrEnum):
    """Lifecycle status of a block on the canvas."""

    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class Block(BaseModel):
    """
    A unit of generation work.

    Example:
        Block(
            id="b-1",
            label="A01",
            type=BlockType.TEXT,
            instruction="Write a tagline for [B01]",
        )
    """

    id: str
    label: str = Field(description="Human-readable label used in variable tokens, e.g. 'A01'")
    type: BlockType = BlockType.TEXT
    instruction: str = Field(default="", description="Prompt text, may contain [A01] tokens")
    attachment: str | None = Field(
        default=None, description="Raw attachment payload (file text or data URL)"
    )
    output: str = Field(default="", description="Latest generated output")
    status: BlockStatus = BlockStatus.IDLE

    # Generation parameters
    aspect_ratio: Literal["1:1", "4:3", "16:9", "9:16"] | None = None
    duration: int | None = Field(default=None, description="Video duration in seconds")
    character_url: str | None = None
    character_timestamps: str | None = None

    model_config = {"extra": "allow"}


class Connection(BaseModel):
    """
    A directed edge: the output of from_id feeds the input of to_id.

    Only the instruction annotation may change after creation.
    """

    id: str = Field(default_factory=lambda: f"conn_{uuid.uuid4().hex[:8]}")
    from_id: str
    to_id: str
    instruction: str = ""

    model_config = {"extra": "allow"}


class WorkflowGraph(BaseModel):
    """
    Serializable workflow: blocks, connections and opaque viewport settings.

    The engine never interprets the viewport; it is carried so a graph can be
    round-tripped through the engine unchanged.
    """

    id: str = Field(default_factory=lambda: f"wf_{uuid.uuid4().hex[:8]}")
    blocks: list[Block] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)
    viewport: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}

    @classmethod
    def from_file(cls, path: str | Path) -> "WorkflowGraph":
        """Load a graph from a JSON document."""
        with open(path, encoding="utf-8") as f:
            return cls.model_validate(json.load(f))

    def get_block(self, block_id: str) -> Block | None:
        """Get a block by ID."""
        for block in self.blocks:
            if block.id == block_id:
                return block
        return None

    def get_block_by_label(self, label: str) -> Block | None:
        """Get a block by its label."""
        for block in self.blocks:
            if block.label == label:
                return block
        return None

    def get_incoming(self, block_id: str) -> list[Connection]:
        """Get all connections entering a block."""
        return [c for c in self.connections if c.to_id == block_id]

    def get_outgoing(self, block_id: str) -> list[Connection]:
        """Get all connections leaving a block."""
        return [c for c in self.connections if c.from_id == block_id]

    def upstream_ids(self, block_id: str) -> list[str]:
        """IDs of the direct predecessors of a block, in connection order."""
        return [c.from_id for c in self.get_incoming(block_id)]
