"""
Event Bus - Pub/sub for workflow run lifecycle events.

Lets hosts (a canvas, a CLI, a progress reporter):
- Follow a run block by block
- React to pause/resume/cancel transitions
- See when a run is held back by admission control
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be published."""

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_PAUSED = "run_paused"
    RUN_RESUMED = "run_resumed"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"

    # Block lifecycle
    BLOCK_STARTED = "block_started"
    BLOCK_COMPLETED = "block_completed"
    BLOCK_FAILED = "block_failed"
    BLOCK_SKIPPED = "block_skipped"
    BLOCK_RETRY = "block_retry"

    # Admission control
    RESOURCE_QUEUED = "resource_queued"
    RESOURCE_GRANTED = "resource_granted"


@dataclass
class WorkflowEvent:
    """An event emitted while a workflow runs."""

    type: EventType
    run_id: str
    workflow_id: str | None = None
    block_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "block_id": self.block_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[WorkflowEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_run: str | None = None  # Only receive events from this run
    filter_block: str | None = None  # Only receive events about this block


class EventBus:
    """
    Pub/sub event bus for run observers.

    Handlers run concurrently; a failing handler is logged and never
    affects the run that published the event.

    Example:
        bus = EventBus()

        async def on_block_done(event: WorkflowEvent):
            print(f"{event.block_id} finished in run {event.run_id}")

        bus.subscribe(event_types=[EventType.BLOCK_COMPLETED], handler=on_block_done)
        controller = ExecutionController(adapter, config, event_bus=bus)
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
    ):
        """
        Args:
            max_history: Maximum events to keep in history
            max_concurrent_handlers: Maximum concurrent handler executions
        """
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[WorkflowEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_run: str | None = None,
        filter_block: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Args:
            event_types: Types of events to receive
            handler: Async function to call when event occurs
            filter_run: Only receive events from this run
            filter_block: Only receive events about this block

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_run=filter_run,
            filter_block=filter_block,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription; True if it existed."""
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: WorkflowEvent) -> None:
        """Record an event and deliver it to every matching subscriber."""
        self._event_history.append(event)
        if len(self._event_history) > self._max_history:
            self._event_history = self._event_history[-self._max_history :]

        handlers = [s.handler for s in self._subscriptions.values() if self._matches(s, event)]
        if handlers:
            await self._execute_handlers(event, handlers)

    def _matches(self, subscription: Subscription, event: WorkflowEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_run and subscription.filter_run != event.run_id:
            return False
        if subscription.filter_block and subscription.filter_block != event.block_id:
            return False
        return True

    async def _execute_handlers(
        self,
        event: WorkflowEvent,
        handlers: list[EventHandler],
    ) -> None:
        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers])

    # === CONVENIENCE PUBLISHERS ===

    async def emit_run_event(
        self,
        event_type: EventType,
        run_id: str,
        workflow_id: str | None = None,
        **data: Any,
    ) -> None:
        """Emit a run-level lifecycle event."""
        await self.publish(
            WorkflowEvent(type=event_type, run_id=run_id, workflow_id=workflow_id, data=data)
        )

    async def emit_block_started(
        self, run_id: str, block_id: str, label: str, block_type: str
    ) -> None:
        await self.publish(
            WorkflowEvent(
                type=EventType.BLOCK_STARTED,
                run_id=run_id,
                block_id=block_id,
                data={"label": label, "block_type": block_type},
            )
        )

    async def emit_block_completed(
        self, run_id: str, block_id: str, label: str, execution_time: float
    ) -> None:
        await self.publish(
            WorkflowEvent(
                type=EventType.BLOCK_COMPLETED,
                run_id=run_id,
                block_id=block_id,
                data={"label": label, "execution_time": execution_time},
            )
        )

    async def emit_block_failed(
        self, run_id: str, block_id: str, label: str, error: str
    ) -> None:
        await self.publish(
            WorkflowEvent(
                type=EventType.BLOCK_FAILED,
                run_id=run_id,
                block_id=block_id,
                data={"label": label, "error": error},
            )
        )

    async def emit_block_skipped(
        self, run_id: str, block_id: str, label: str, reason: str
    ) -> None:
        await self.publish(
            WorkflowEvent(
                type=EventType.BLOCK_SKIPPED,
                run_id=run_id,
                block_id=block_id,
                data={"label": label, "reason": reason},
            )
        )

    async def emit_block_retry(
        self, run_id: str, block_id: str, attempt: int, max_retries: int, error: str
    ) -> None:
        await self.publish(
            WorkflowEvent(
                type=EventType.BLOCK_RETRY,
                run_id=run_id,
                block_id=block_id,
                data={"attempt": attempt, "max_retries": max_retries, "error": error},
            )
        )

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        run_id: str | None = None,
        limit: int = 100,
    ) -> list[WorkflowEvent]:
        """
        Get recent events from history.

        Args:
            event_type: Filter by event type
            run_id: Filter by run
            limit: Maximum events to return

        Returns:
            List of matching events (most recent first)
        """
        events = self._event_history[::-1]
        if event_type:
            events = [e for e in events if e.type == event_type]
        if run_id:
            events = [e for e in events if e.run_id == run_id]
        return events[:limit]

    def get_stats(self) -> dict:
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1
        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": type_counts,
        }

    # === WAITING OPERATIONS ===

    async def wait_for(
        self,
        event_type: EventType,
        run_id: str | None = None,
        block_id: str | None = None,
        timeout: float | None = None,
    ) -> WorkflowEvent | None:
        """
        Wait for a specific event to occur.

        Returns:
            The event if received, None if timeout
        """
        result: WorkflowEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: WorkflowEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe(
            event_types=[event_type],
            handler=handler,
            filter_run=run_id,
            filter_block=block_id,
        )
        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()
            return result
        finally:
            self.unsubscribe(sub_id)
