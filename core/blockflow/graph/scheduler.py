"""Execution ordering for validated workflow graphs."""

import logging
from collections import deque
from collections.abc import Sequence

from blockflow.graph.models import Block, Connection

logger = logging.getLogger(__name__)


class Scheduler:
    """
    Converts a validated graph into a linear execution order (Kahn's algorithm).

    Zero in-degree blocks are seeded in the order they appear in the block
    list, so the same graph always yields the same order.

    Only call this on a graph the validator accepted: on a cyclic graph the
    blocks on the cycle are simply left out of the order.
    """

    def execution_order(
        self, blocks: Sequence[Block], connections: Sequence[Connection]
    ) -> list[str]:
        adjacency: dict[str, list[str]] = {b.id: [] for b in blocks}
        in_degree: dict[str, int] = {b.id: 0 for b in blocks}

        for conn in connections:
            if conn.from_id in adjacency and conn.to_id in adjacency:
                adjacency[conn.from_id].append(conn.to_id)
                in_degree[conn.to_id] += 1

        queue = deque(b.id for b in blocks if in_degree[b.id] == 0)
        order: list[str] = []

        while queue:
            current = queue.popleft()
            order.append(current)
            for neighbor in adjacency[current]:
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)

        if len(order) != len(blocks):
            logger.warning(
                f"Execution order covers {len(order)} of {len(blocks)} blocks; "
                "graph was not validated for cycles"
            )
        return order
