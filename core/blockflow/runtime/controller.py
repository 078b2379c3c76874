"""
Execution Controller - Runs workflow graphs block by block.

Each run:
- Is validated and ordered before anything executes (fail fast)
- Waits for admission from the ResourceManager
- Executes blocks strictly one after another in topological order
- Can be paused, resumed or cancelled between blocks
- Has its own DataPropagationEngine, so concurrent runs never share outputs

State machine per run:

    running -> paused <-> running -> completed | failed | cancelled
"""

import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from blockflow.config import EngineConfig
from blockflow.generation import GenerationAdapter, GenerationConfig, build_request, dispatch
from blockflow.graph.models import Block, BlockStatus, WorkflowGraph
from blockflow.graph.scheduler import Scheduler
from blockflow.graph.validator import GraphValidator, WorkflowValidationError
from blockflow.graph.variables import VariableResolver
from blockflow.observability import set_trace_context
from blockflow.runtime.event_bus import EventBus, EventType
from blockflow.runtime.propagation import DataPropagationEngine
from blockflow.runtime.resource_manager import ExecutionPriority, ResourceManager, ResourceUsage
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

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """Retries for a failing adapter call."""

    max_retries: int = 0
    retry_delay: float = 1.0  # seconds before the first retry
    backoff_multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        return self.retry_delay * (self.backoff_multiplier**attempt)


@dataclass
class ExecutionOptions:
    """Per-run options."""

    run_id: str | None = None
    priority: ExecutionPriority = ExecutionPriority.NORMAL
    resources: ResourceUsage = field(default_factory=ResourceUsage)
    preempt: bool = False  # high-priority runs take resources by force
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    skip_failed_dependents: bool = False


@dataclass
class ExecutionRun:
    """In-flight state of one run."""

    run_id: str
    graph: WorkflowGraph
    options: ExecutionOptions
    order: list[str]
    propagation: DataPropagationEngine
    status: RunStatus = RunStatus.RUNNING
    results: list[BlockResult] = field(default_factory=list)
    errors: list[ExecutionError] = field(default_factory=list)
    current_block_id: str | None = None
    started_at: datetime = field(default_factory=datetime.now)
    start_time: float = field(default_factory=time.monotonic)
    resume_event: asyncio.Event = field(default_factory=asyncio.Event)

    def __post_init__(self) -> None:
        self.resume_event.set()

    def count(self, status: BlockResultStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    def result_status(self, block_id: str) -> BlockResultStatus | None:
        for result in self.results:
            if result.block_id == block_id:
                return result.status
        return None


class ExecutionController:
    """
    Orchestrates workflow runs against a generation adapter.

    Example:
        controller = ExecutionController(adapter, EngineConfig.load())

        result = await controller.execute_workflow(graph)

        # Or in the background
        run_id = await controller.start_workflow(graph, ExecutionOptions(priority="high"))
        await controller.pause_execution(run_id)
        await controller.resume_execution(run_id)
        result = await controller.wait_for_completion(run_id)
    """

    def __init__(
        self,
        adapter: GenerationAdapter,
        config: EngineConfig | None = None,
        resource_manager: ResourceManager | None = None,
        event_bus: EventBus | None = None,
    ):
        """
        Args:
            adapter: Backend that performs text/image/video generation
            config: Engine configuration (defaults when None)
            resource_manager: Admission controller; one is built from
                config.limits when None
            event_bus: Optional bus for lifecycle events
        """
        self.adapter = adapter
        self.config = config or EngineConfig()
        self.resource_manager = resource_manager or ResourceManager(self.config.limits)
        self._event_bus = event_bus

        self.validator = GraphValidator(
            performance_threshold=self.config.performance_connection_threshold,
            strict_variables=self.config.strict_variables,
        )
        self.scheduler = Scheduler()
        self.variables = VariableResolver()

        self._active_runs: dict[str, ExecutionRun] = {}
        self._run_tasks: dict[str, asyncio.Task] = {}
        self._completion_events: dict[str, asyncio.Event] = {}
        self._results: OrderedDict[str, ExecutionResult] = OrderedDict()

    # === ENTRY POINTS ===

    async def start_workflow(
        self, graph: WorkflowGraph, options: ExecutionOptions | None = None
    ) -> str:
        """
        Validate a graph and start running it in the background.

        Raises:
            WorkflowValidationError: the graph is invalid; nothing was started
            ValueError: the requested run_id is already active

        Returns:
            Run ID for tracking
        """
        options = options or ExecutionOptions()

        report = self.validator.validate(graph.blocks, graph.connections)
        for warning in report.warnings:
            logger.warning(f"Workflow {graph.id}: {warning.message}")
        if not report.is_valid:
            raise WorkflowValidationError(report)

        run_id = options.run_id or f"exec_{uuid.uuid4().hex[:12]}"
        if run_id in self._active_runs:
            raise ValueError(f"Run {run_id} is already active")

        run = ExecutionRun(
            run_id=run_id,
            graph=graph,
            options=options,
            order=self.scheduler.execution_order(graph.blocks, graph.connections),
            propagation=DataPropagationEngine(graph.connections),
        )
        self._active_runs[run_id] = run
        self._completion_events[run_id] = asyncio.Event()
        self._run_tasks[run_id] = asyncio.create_task(self._run(run))

        logger.info(f"Started run {run_id} for workflow {graph.id} ({len(run.order)} blocks)")
        return run_id

    async def execute_workflow(
        self, graph: WorkflowGraph, options: ExecutionOptions | None = None
    ) -> ExecutionResult:
        """Run a workflow to a terminal state and return its result."""
        run_id = await self.start_workflow(graph, options)
        return await self.wait_for_completion(run_id)

    async def wait_for_completion(
        self, run_id: str, timeout: float | None = None
    ) -> ExecutionResult | None:
        """
        Wait for a run to finish.

        Raises:
            KeyError: the run is neither active nor retained

        Returns:
            ExecutionResult, or None if the timeout expired first
        """
        event = self._completion_events.get(run_id)
        if event is None:
            if run_id in self._results:
                return self._results[run_id]
            raise KeyError(f"Unknown run: {run_id}")

        try:
            if timeout:
                await asyncio.wait_for(event.wait(), timeout=timeout)
            else:
                await event.wait()
        except TimeoutError:
            return None
        return self._results.get(run_id)

    # === CONTROL ===

    async def pause_execution(self, run_id: str) -> bool:
        """Pause a running run after its current block. True if the run was paused."""
        run = self._active_runs.get(run_id)
        if run is None or run.status != RunStatus.RUNNING:
            return False
        run.status = RunStatus.PAUSED
        run.resume_event.clear()
        logger.info(f"Paused run {run_id}")
        await self._emit(EventType.RUN_PAUSED, run)
        return True

    async def resume_execution(self, run_id: str) -> bool:
        """Resume a paused run. True if the run was resumed."""
        run = self._active_runs.get(run_id)
        if run is None or run.status != RunStatus.PAUSED:
            return False
        run.status = RunStatus.RUNNING
        run.resume_event.set()
        logger.info(f"Resumed run {run_id}")
        await self._emit(EventType.RUN_RESUMED, run)
        return True

    async def cancel_execution(self, run_id: str) -> bool:
        """
        Cancel a run. The block in flight (if any) finishes; no further
        block starts. True if the run was cancelled.
        """
        run = self._active_runs.get(run_id)
        if run is None or run.status.is_terminal:
            return False
        run.status = RunStatus.CANCELLED
        run.resume_event.set()
        if self.resource_manager.is_queued(run_id):
            self.resource_manager.release(run_id)
        logger.info(f"Cancelling run {run_id}")
        return True

    async def stop(self) -> None:
        """Cancel every active run task and wait for them to finish."""
        for task in list(self._run_tasks.values()):
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._run_tasks.clear()

    # === QUERIES ===

    def get_execution_status(self, run_id: str) -> ExecutionStatusReport | None:
        """Status of an active run; None once it is finished or if unknown."""
        run = self._active_runs.get(run_id)
        if run is None:
            return None

        processed = len(run.results)
        total = len(run.order)
        estimated = None
        if processed > 0:
            per_block = (time.monotonic() - run.start_time) / processed
            estimated = datetime.now() + timedelta(seconds=(total - processed) * per_block)

        return ExecutionStatusReport(
            run_id=run_id,
            status=run.status,
            progress=ExecutionProgress(
                completed=processed, total=total, current_block_id=run.current_block_id
            ),
            started_at=run.started_at,
            estimated_completion=estimated,
        )

    def get_result(self, run_id: str) -> ExecutionResult | None:
        """Result of a finished run, while it is still retained."""
        return self._results.get(run_id)

    def get_active_runs(self) -> list[str]:
        return list(self._active_runs)

    def get_stats(self) -> dict:
        statuses: dict[str, int] = {}
        for run in self._active_runs.values():
            statuses[run.status.value] = statuses.get(run.status.value, 0) + 1
        return {
            "active_runs": len(self._active_runs),
            "retained_results": len(self._results),
            "status_counts": statuses,
            "resource_utilization": self.resource_manager.utilization(),
        }

    # === RUN LOOP ===

    async def _run(self, run: ExecutionRun) -> None:
        set_trace_context(run_id=run.run_id, workflow_id=run.graph.id)
        await self._emit(EventType.RUN_STARTED, run, total_blocks=len(run.order))

        try:
            if await self._admit(run):
                await self._execute_blocks(run)

            if run.status in (RunStatus.RUNNING, RunStatus.PAUSED):
                failed = run.count(BlockResultStatus.FAILED) > 0 or bool(run.errors)
                run.status = RunStatus.FAILED if failed else RunStatus.COMPLETED

        except asyncio.CancelledError:
            run.status = RunStatus.CANCELLED
            raise

        except Exception as e:
            logger.error(f"Run {run.run_id} failed unexpectedly: {e}")
            run.status = RunStatus.FAILED
            run.errors.append(ExecutionError(message=str(e)))

        finally:
            self.resource_manager.release(run.run_id)
            self._finish(run)
            await self._emit(_TERMINAL_EVENTS[run.status], run)
            self._completion_events.pop(run.run_id).set()
            self._run_tasks.pop(run.run_id, None)

    async def _admit(self, run: ExecutionRun) -> bool:
        """Acquire resources for a run. False means the run must not execute."""
        options = run.options
        manager = self.resource_manager

        if options.preempt and options.priority == ExecutionPriority.HIGH:
            manager.force_preempt(run.run_id, options.resources)
            return True

        admission = manager.request(run.run_id, options.resources, options.priority)
        if admission.granted:
            return True

        if admission.queued:
            logger.info(f"Run {run.run_id} waiting for resources")
            await self._emit(EventType.RESOURCE_QUEUED, run)
            if await manager.wait_for_grant(run.run_id):
                await self._emit(EventType.RESOURCE_GRANTED, run)
                return True
            if run.status == RunStatus.CANCELLED:
                return False
            run.errors.append(ExecutionError(message="Resource request was dropped from the queue"))
            run.status = RunStatus.FAILED
            return False

        run.errors.append(ExecutionError(message=f"Resource request rejected: {admission.reason}"))
        run.status = RunStatus.FAILED
        return False

    async def _execute_blocks(self, run: ExecutionRun) -> None:
        for block_id in run.order:
            if run.status == RunStatus.PAUSED:
                await run.resume_event.wait()
            if run.status == RunStatus.CANCELLED:
                logger.info(f"Run {run.run_id} cancelled before block {block_id}")
                break

            block = run.graph.get_block(block_id)
            run.current_block_id = block_id
            set_trace_context(block_id=block_id)

            if run.options.skip_failed_dependents and self._has_failed_upstream(run, block_id):
                await self._skip_block(run, block, "upstream block failed")
                continue

            await self._execute_block(run, block)

        run.current_block_id = None

    def _has_failed_upstream(self, run: ExecutionRun, block_id: str) -> bool:
        return any(
            run.result_status(upstream_id)
            in (BlockResultStatus.FAILED, BlockResultStatus.SKIPPED)
            for upstream_id in run.graph.upstream_ids(block_id)
        )

    async def _skip_block(self, run: ExecutionRun, block: Block, reason: str) -> None:
        logger.info(f"Skipping block {block.label}: {reason}")
        run.results.append(
            BlockResult(
                block_id=block.id,
                label=block.label,
                status=BlockResultStatus.SKIPPED,
                error=reason,
            )
        )
        if self._event_bus:
            await self._event_bus.emit_block_skipped(run.run_id, block.id, block.label, reason)

    async def _execute_block(self, run: ExecutionRun, block: Block) -> None:
        """Generate one block's output; failures are recorded, never raised."""
        block.status = BlockStatus.PROCESSING
        if self._event_bus:
            await self._event_bus.emit_block_started(
                run.run_id, block.id, block.label, str(block.type)
            )

        upstream = run.propagation.upstream_of(block.id)
        prompt = self.variables.resolve(block.instruction, upstream)
        policy = run.options.retry_policy
        start = time.monotonic()
        retries = 0

        while True:
            try:
                request = build_request(block, prompt)
                gen_config = GenerationConfig.for_block_type(self.config.model, block.type)
                await self._respect_rate_limit()
                output = await dispatch(self.adapter, request, gen_config)
                break
            except Exception as e:
                if retries >= policy.max_retries:
                    await self._fail_block(run, block, e, time.monotonic() - start, retries)
                    return
                delay = policy.delay_for(retries)
                retries += 1
                logger.warning(
                    f"Block {block.label} failed ({e}); retry {retries}/{policy.max_retries} "
                    f"in {delay:.1f}s"
                )
                if self._event_bus:
                    await self._event_bus.emit_block_retry(
                        run.run_id, block.id, retries, policy.max_retries, str(e)
                    )
                await asyncio.sleep(delay)

        elapsed = time.monotonic() - start
        block.output = output
        block.status = BlockStatus.COMPLETED
        run.propagation.record_output(block.id, output, block.type, block.label, block)
        run.results.append(
            BlockResult(
                block_id=block.id,
                label=block.label,
                status=BlockResultStatus.COMPLETED,
                output=output,
                execution_time=elapsed,
                retry_count=retries,
            )
        )
        logger.info(
            f"Block {block.label} completed in {elapsed:.2f}s",
            extra={"event": "block_completed", "latency_ms": int(elapsed * 1000)},
        )
        if self._event_bus:
            await self._event_bus.emit_block_completed(run.run_id, block.id, block.label, elapsed)

    async def _fail_block(
        self, run: ExecutionRun, block: Block, error: Exception, elapsed: float, retries: int
    ) -> None:
        message = str(error) or type(error).__name__
        block.status = BlockStatus.ERROR
        run.results.append(
            BlockResult(
                block_id=block.id,
                label=block.label,
                status=BlockResultStatus.FAILED,
                error=message,
                execution_time=elapsed,
                retry_count=retries,
            )
        )
        run.errors.append(ExecutionError(block_id=block.id, message=f"{block.label}: {message}"))
        logger.error(
            f"Block {block.label} failed: {message}",
            extra={"event": "block_failed", "block_type": str(block.type)},
        )
        if self._event_bus:
            await self._event_bus.emit_block_failed(run.run_id, block.id, block.label, message)

    async def _respect_rate_limit(self) -> None:
        delay = self.resource_manager.api_rate_limit_delay()
        while delay > 0:
            logger.info(f"API rate limit reached, waiting {delay:.1f}s")
            await asyncio.sleep(delay)
            delay = self.resource_manager.api_rate_limit_delay()
        self.resource_manager.record_api_request()

    # === RESULTS ===

    def _finish(self, run: ExecutionRun) -> None:
        """Build the final result, retain it and drop the run from the active table."""
        attempted = [r for r in run.results if r.status != BlockResultStatus.SKIPPED]
        result = ExecutionResult(
            run_id=run.run_id,
            workflow_id=run.graph.id,
            status=run.status,
            results=list(run.results),
            statistics=ExecutionStatistics(
                total_blocks=len(run.order),
                completed_blocks=run.count(BlockResultStatus.COMPLETED),
                failed_blocks=run.count(BlockResultStatus.FAILED),
                skipped_blocks=run.count(BlockResultStatus.SKIPPED),
                total_execution_time=sum(r.execution_time for r in attempted),
            ),
            errors=list(run.errors),
            started_at=run.started_at,
            completed_at=datetime.now(),
        )
        self._results[run.run_id] = result
        self._results.move_to_end(run.run_id)
        while len(self._results) > self.config.result_retention_max:
            self._results.popitem(last=False)

        self._active_runs.pop(run.run_id, None)
        logger.info(f"Run {run.run_id} finished: {result.summary()}")

    async def _emit(self, event_type: EventType, run: ExecutionRun, **data) -> None:
        if self._event_bus:
            await self._event_bus.emit_run_event(event_type, run.run_id, run.graph.id, **data)


_TERMINAL_EVENTS = {
    RunStatus.COMPLETED: EventType.RUN_COMPLETED,
    RunStatus.FAILED: EventType.RUN_FAILED,
    RunStatus.CANCELLED: EventType.RUN_CANCELLED,
}
