"""
Resource Manager - Admission control across concurrently running workflows.

Every run asks for a slice of the shared budget (memory, CPU, connections)
before it starts. A request is:
- rejected outright when a single field exceeds its hard limit
- queued (priority, then arrival order) when it does not fit right now
- granted otherwise

Releasing a run's resources drains the queue in order, granting as many
queued requests as capacity allows. Exhaustion is never an exception.

API calls are rate limited separately with a sliding 60-second window.

All methods are synchronous and complete without awaiting, so within one
event loop they are atomic. A multi-threaded host must guard them.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import StrEnum

from blockflow.config import ResourceLimits

logger = logging.getLogger(__name__)

API_WINDOW_SECONDS = 60.0


class ExecutionPriority(StrEnum):
    """Priority of a resource request."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


PRIORITY_RANK = {
    ExecutionPriority.LOW: 1,
    ExecutionPriority.NORMAL: 2,
    ExecutionPriority.HIGH: 3,
}


@dataclass
class ResourceUsage:
    """An amount of each managed resource."""

    memory: float = 0  # MB
    cpu: float = 0  # percent
    connections: int = 0

    def __add__(self, other: "ResourceUsage") -> "ResourceUsage":
        return ResourceUsage(
            memory=self.memory + other.memory,
            cpu=self.cpu + other.cpu,
            connections=self.connections + other.connections,
        )


@dataclass
class ResourceAllocation:
    """Resources currently held by a run."""

    run_id: str
    granted: ResourceUsage
    priority: ExecutionPriority
    timestamp: float = field(default_factory=time.time)


@dataclass
class QueuedRequest:
    """A request waiting for capacity."""

    run_id: str
    need: ResourceUsage
    priority: ExecutionPriority
    timestamp: float = field(default_factory=time.time)


@dataclass
class AdmissionResult:
    """Outcome of a resource request."""

    granted: bool
    allocation: ResourceAllocation | None = None
    queued: bool = False
    reason: str = ""


class ResourceManager:
    """
    Admission controller for shared memory/CPU/connection budgets.

    Example:
        manager = ResourceManager(ResourceLimits(max_concurrent_executions=3))

        result = manager.request("run-1", ResourceUsage(memory=128), ExecutionPriority.HIGH)
        if result.queued:
            await manager.wait_for_grant("run-1")
        ...
        manager.release("run-1")
    """

    def __init__(
        self,
        limits: ResourceLimits | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            limits: Hard limits (defaults: 512 MB, 80% CPU, 10 connections,
                3 concurrent runs, 60 API calls per minute)
            clock: Time source in seconds, used for the API rate window
        """
        self.limits = limits or ResourceLimits()
        self._clock = clock

        self._usage = ResourceUsage()
        self._allocations: dict[str, ResourceAllocation] = {}
        self._queue: list[QueuedRequest] = []
        self._api_calls: deque[float] = deque()

        self._grant_events: dict[str, asyncio.Event] = {}
        self._monitor_task: asyncio.Task | None = None

    # === ADMISSION ===

    def request(
        self,
        run_id: str,
        need: ResourceUsage | None = None,
        priority: ExecutionPriority = ExecutionPriority.NORMAL,
    ) -> AdmissionResult:
        """
        Request resources for a run.

        Returns granted, queued, or rejected (neither granted nor queued).
        """
        need = need or ResourceUsage()

        existing = self._allocations.get(run_id)
        if existing is not None:
            return AdmissionResult(granted=True, allocation=existing)
        if self.is_queued(run_id):
            return AdmissionResult(granted=False, queued=True, reason="already queued")

        reason = self._exceeds_single_limit(need)
        if reason:
            logger.warning(f"Rejected resource request for {run_id}: {reason}")
            return AdmissionResult(granted=False, reason=reason)

        if self._would_exceed_limits(need):
            self._enqueue(QueuedRequest(run_id=run_id, need=need, priority=priority))
            logger.info(
                f"Queued resource request for {run_id} "
                f"(priority={priority}, position={self._queue_position(run_id)})"
            )
            return AdmissionResult(granted=False, queued=True, reason="capacity exhausted")

        allocation = ResourceAllocation(run_id=run_id, granted=need, priority=priority)
        self._allocations[run_id] = allocation
        self._recompute_usage()

        if self._usage_exceeds_limits():
            # Recomputed total disagrees with the admission check; undo
            del self._allocations[run_id]
            self._recompute_usage()
            logger.error(f"Allocation for {run_id} would exceed limits, rolled back")
            return AdmissionResult(granted=False, reason="allocation rolled back")

        logger.debug(f"Granted resources to {run_id}: {need}")
        return AdmissionResult(granted=True, allocation=allocation)

    def release(self, run_id: str) -> None:
        """Release a run's resources (or drop its queued request) and drain the queue."""
        if run_id in self._allocations:
            del self._allocations[run_id]
            self._recompute_usage()
            logger.debug(f"Released resources of {run_id}")
            self._process_queue()
        elif self.is_queued(run_id):
            self._queue = [q for q in self._queue if q.run_id != run_id]
            self._wake(run_id)
            logger.debug(f"Dropped queued request of {run_id}")

    def force_preempt(self, run_id: str, need: ResourceUsage | None = None) -> ResourceAllocation:
        """
        Grant resources unconditionally for urgent work.

        If the request does not fit, the oldest low-priority allocation is
        evicted and its run is put back at the front of the queue. The grant
        itself bypasses the limit checks, so usage may transiently exceed
        the configured limits.
        """
        need = need or ResourceUsage()

        if self._would_exceed_limits(need):
            low = sorted(
                (a for a in self._allocations.values() if a.priority == ExecutionPriority.LOW),
                key=lambda a: a.timestamp,
            )
            if low:
                evicted = low[0]
                del self._allocations[evicted.run_id]
                self._queue.insert(
                    0,
                    QueuedRequest(
                        run_id=evicted.run_id,
                        need=evicted.granted,
                        priority=evicted.priority,
                    ),
                )
                logger.warning(f"Preempted {evicted.run_id} to make room for {run_id}")

        self._queue = [q for q in self._queue if q.run_id != run_id]
        allocation = ResourceAllocation(
            run_id=run_id, granted=need, priority=ExecutionPriority.HIGH
        )
        self._allocations[run_id] = allocation
        self._recompute_usage()
        self._wake(run_id)
        return allocation

    async def wait_for_grant(self, run_id: str, timeout: float | None = None) -> bool:
        """
        Wait until a queued request is granted.

        Returns True once the run holds an allocation, False if it is not
        queued, was dropped from the queue, or the timeout expired.
        """
        if run_id in self._allocations:
            return True
        if not self.is_queued(run_id):
            return False

        event = self._grant_events.setdefault(run_id, asyncio.Event())
        try:
            if timeout is not None:
                await asyncio.wait_for(event.wait(), timeout=timeout)
            else:
                await event.wait()
        except TimeoutError:
            return False
        finally:
            self._grant_events.pop(run_id, None)
        return run_id in self._allocations

    # === API RATE LIMITING ===

    def can_make_api_request(self) -> bool:
        self._prune_api_calls()
        return len(self._api_calls) < self.limits.api_rate_limit

    def record_api_request(self) -> None:
        self._api_calls.append(self._clock())

    def api_rate_limit_delay(self) -> float:
        """Seconds until the oldest call leaves the window (0 when a call is allowed now)."""
        if self.can_make_api_request() or not self._api_calls:
            return 0.0
        oldest = self._api_calls[0]
        return max(0.0, oldest + API_WINDOW_SECONDS - self._clock())

    def _prune_api_calls(self) -> None:
        cutoff = self._clock() - API_WINDOW_SECONDS
        while self._api_calls and self._api_calls[0] <= cutoff:
            self._api_calls.popleft()

    # === INTROSPECTION ===

    @property
    def usage(self) -> ResourceUsage:
        return ResourceUsage(self._usage.memory, self._usage.cpu, self._usage.connections)

    @property
    def active_count(self) -> int:
        return len(self._allocations)

    def get_allocation(self, run_id: str) -> ResourceAllocation | None:
        return self._allocations.get(run_id)

    def is_queued(self, run_id: str) -> bool:
        return any(q.run_id == run_id for q in self._queue)

    def queued_run_ids(self) -> list[str]:
        return [q.run_id for q in self._queue]

    def utilization(self) -> dict[str, float]:
        """Percentage of each limit in use."""
        return {
            "memory": _percent(self._usage.memory, self.limits.max_memory),
            "cpu": _percent(self._usage.cpu, self.limits.max_cpu),
            "connections": _percent(self._usage.connections, self.limits.max_connections),
            "executions": _percent(
                len(self._allocations), self.limits.max_concurrent_executions
            ),
        }

    def queue_status(self) -> dict[str, float]:
        now = time.time()
        waits = [now - q.timestamp for q in self._queue]
        return {
            "queue_length": len(self._queue),
            "high_priority_count": sum(
                1 for q in self._queue if q.priority == ExecutionPriority.HIGH
            ),
            "average_wait_time": sum(waits) / len(waits) if waits else 0.0,
        }

    def recommendations(self) -> dict[str, float | bool]:
        util = self.utilization()
        return {
            "should_reduce_concurrency": util["cpu"] > 90 or util["memory"] > 90,
            "should_increase_delay": util["connections"] > 80,
            "recommended_delay": 2.0 if util["connections"] > 80 else 1.0,
            "should_pause_new_executions": (
                util["memory"] > 80 or util["cpu"] > 80 or util["connections"] > 90
            ),
        }

    # === LIFECYCLE ===

    def update_limits(self, **changes: float) -> None:
        """Replace limits (validated like the constructor) and grant whatever now fits."""
        unknown = [key for key in changes if not hasattr(self.limits, key)]
        if unknown:
            raise ValueError(f"Unknown resource limit: {unknown[0]}")
        self.limits = replace(self.limits, **changes)
        self._process_queue()

    def start_monitoring(self, interval: float = 5.0) -> None:
        """Log high-utilisation warnings every interval seconds (needs a running loop)."""
        if self._monitor_task is not None and not self._monitor_task.done():
            return
        self._monitor_task = asyncio.create_task(self._monitor(interval))

    async def stop_monitoring(self) -> None:
        if self._monitor_task is None:
            return
        self._monitor_task.cancel()
        try:
            await self._monitor_task
        except asyncio.CancelledError:
            pass
        self._monitor_task = None

    async def _monitor(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            util = self.utilization()
            if util["memory"] > 90:
                logger.warning(f"High memory utilization: {util['memory']:.1f}%")
            if util["cpu"] > 90:
                logger.warning(f"High CPU utilization: {util['cpu']:.1f}%")
            if self.recommendations()["should_pause_new_executions"]:
                logger.warning("Resource manager recommends pausing new executions")

    async def cleanup(self) -> None:
        """Stop monitoring and drop all allocations, queued requests and call history."""
        await self.stop_monitoring()
        self._allocations.clear()
        self._queue.clear()
        self._api_calls.clear()
        self._usage = ResourceUsage()
        for event in self._grant_events.values():
            event.set()
        self._grant_events.clear()

    # === INTERNALS ===

    def _exceeds_single_limit(self, need: ResourceUsage) -> str:
        if need.memory > self.limits.max_memory:
            return f"requested memory ({need.memory}MB) exceeds limit ({self.limits.max_memory}MB)"
        if need.cpu > self.limits.max_cpu:
            return f"requested CPU ({need.cpu}%) exceeds limit ({self.limits.max_cpu}%)"
        if need.connections > self.limits.max_connections:
            return (
                f"requested connections ({need.connections}) exceeds limit "
                f"({self.limits.max_connections})"
            )
        return ""

    def _would_exceed_limits(self, need: ResourceUsage) -> bool:
        total = self._usage + need
        return (
            total.memory > self.limits.max_memory
            or total.cpu > self.limits.max_cpu
            or total.connections > self.limits.max_connections
            or len(self._allocations) >= self.limits.max_concurrent_executions
        )

    def _usage_exceeds_limits(self) -> bool:
        return (
            self._usage.memory > self.limits.max_memory
            or self._usage.cpu > self.limits.max_cpu
            or self._usage.connections > self.limits.max_connections
        )

    def _recompute_usage(self) -> None:
        # Sum every allocation rather than adjusting incrementally
        total = ResourceUsage()
        for allocation in self._allocations.values():
            total = total + allocation.granted
        self._usage = total

    def _enqueue(self, queued: QueuedRequest) -> None:
        rank = PRIORITY_RANK[queued.priority]
        for index, existing in enumerate(self._queue):
            if PRIORITY_RANK[existing.priority] < rank:
                self._queue.insert(index, queued)
                return
        self._queue.append(queued)

    def _queue_position(self, run_id: str) -> int:
        for index, queued in enumerate(self._queue):
            if queued.run_id == run_id:
                return index
        return -1

    def _process_queue(self) -> None:
        while self._queue:
            head = self._queue[0]
            if self._would_exceed_limits(head.need):
                break
            self._queue.pop(0)
            self._allocations[head.run_id] = ResourceAllocation(
                run_id=head.run_id, granted=head.need, priority=head.priority
            )
            self._recompute_usage()
            logger.info(f"Resources allocated for queued run: {head.run_id}")
            self._wake(head.run_id)

    def _wake(self, run_id: str) -> None:
        event = self._grant_events.get(run_id)
        if event is not None:
            event.set()


def _percent(value: float, limit: float) -> float:
    return (value / limit) * 100 if limit else 0.0
