"""
Tests for ExecutionController - run lifecycle, pause/resume/cancel,
failure handling and admission control.
"""

import asyncio

import pytest

from blockflow.config import EngineConfig, ResourceLimits
from blockflow.generation import (
    GenerationAdapter,
    GenerationConfig,
    ImageRequest,
    TextRequest,
    VideoRequest,
)
from blockflow.graph import (
    Block,
    BlockStatus,
    BlockType,
    Connection,
    WorkflowGraph,
    WorkflowValidationError,
)
from blockflow.runtime import (
    EventBus,
    EventType,
    ExecutionController,
    ExecutionOptions,
    ExecutionPriority,
    ResourceManager,
    ResourceUsage,
    RetryPolicy,
)
from blockflow.schemas import BlockResultStatus, RunStatus


# ---- Scripted adapter: fixed outputs, failures and gates by prompt ----
class ScriptedAdapter(GenerationAdapter):
    def __init__(
        self,
        outputs: dict[str, str] | None = None,
        failures: dict[str, int] | None = None,
        gates: set[str] | None = None,
    ):
        self.outputs = outputs or {}
        self.failures = dict(failures or {})  # prompt -> remaining failures (-1: always)
        self.gates = gates or set()
        self.entered: dict[str, asyncio.Event] = {p: asyncio.Event() for p in self.gates}
        self.released: dict[str, asyncio.Event] = {p: asyncio.Event() for p in self.gates}
        self.requests: list[TextRequest | ImageRequest | VideoRequest] = []
        self.configs: list[GenerationConfig] = []

    @property
    def prompts(self) -> list[str]:
        return [r.prompt for r in self.requests]

    async def _generate(self, request, config: GenerationConfig) -> str:
        self.requests.append(request)
        self.configs.append(config)
        prompt = request.prompt
        if prompt in self.gates:
            self.entered[prompt].set()
            await self.released[prompt].wait()
        remaining = self.failures.get(prompt, 0)
        if remaining != 0:
            self.failures[prompt] = remaining - 1 if remaining > 0 else remaining
            raise RuntimeError(f"backend error for {prompt!r}")
        return self.outputs.get(prompt, f"out:{prompt}")

    async def generate_text(self, request: TextRequest, config: GenerationConfig) -> str:
        return await self._generate(request, config)

    async def generate_image(self, request: ImageRequest, config: GenerationConfig) -> str:
        return await self._generate(request, config)

    async def generate_video(self, request: VideoRequest, config: GenerationConfig) -> str:
        return await self._generate(request, config)


def _chain(count: int) -> WorkflowGraph:
    blocks = [
        Block(id=f"b{i}", label=f"A{i:02d}", instruction=f"step {i}") for i in range(1, count + 1)
    ]
    connections = [
        Connection(from_id=f"b{i}", to_id=f"b{i + 1}") for i in range(1, count)
    ]
    return WorkflowGraph(blocks=blocks, connections=connections)


async def _wait_until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


class TestBasicRun:
    @pytest.mark.asyncio
    async def test_variable_resolution_across_blocks(self):
        """A outputs 'hi'; B's instruction 'say [A01]' reaches the adapter as 'say hi'."""
        graph = WorkflowGraph(
            blocks=[
                Block(id="b", label="B01", instruction="say [A01]"),
                Block(id="a", label="A01", instruction="hello"),
            ],
            connections=[Connection(from_id="a", to_id="b")],
        )
        adapter = ScriptedAdapter(outputs={"hello": "hi"})
        controller = ExecutionController(adapter)

        result = await controller.execute_workflow(graph)

        assert result.status == RunStatus.COMPLETED
        assert [r.block_id for r in result.results] == ["a", "b"]
        assert adapter.prompts == ["hello", "say hi"]
        assert result.get_block_result("b").output == "out:say hi"

    @pytest.mark.asyncio
    async def test_blocks_updated_in_place(self):
        graph = _chain(2)
        controller = ExecutionController(ScriptedAdapter())

        await controller.execute_workflow(graph)

        assert [b.status for b in graph.blocks] == [BlockStatus.COMPLETED] * 2
        assert graph.blocks[0].output == "out:step 1"

    @pytest.mark.asyncio
    async def test_statistics(self):
        controller = ExecutionController(ScriptedAdapter())

        result = await controller.execute_workflow(_chain(3))

        stats = result.statistics
        assert stats.total_blocks == 3
        assert stats.completed_blocks == 3
        assert stats.failed_blocks == 0
        assert stats.skipped_blocks == 0
        assert stats.average_block_time >= 0
        assert result.completed_at is not None
        assert "3/3 blocks completed" in result.summary()

    @pytest.mark.asyncio
    async def test_model_config_per_block_type(self):
        graph = WorkflowGraph(
            blocks=[
                Block(id="t", label="A01", type=BlockType.TEXT, instruction="describe a cat"),
                Block(
                    id="i",
                    label="B01",
                    type=BlockType.IMAGE,
                    instruction="draw [A01]",
                    aspect_ratio="16:9",
                ),
            ],
            connections=[Connection(from_id="t", to_id="i")],
        )
        adapter = ScriptedAdapter(outputs={"describe a cat": "a fluffy cat"})
        controller = ExecutionController(adapter)

        await controller.execute_workflow(graph)

        image_request = adapter.requests[1]
        assert isinstance(image_request, ImageRequest)
        assert image_request.prompt == "draw a fluffy cat"
        assert image_request.aspect_ratio == "16:9"
        assert [c.model_id for c in adapter.configs] == ["gpt-4o", "nano-banana"]

    @pytest.mark.asyncio
    async def test_empty_graph_completes(self):
        controller = ExecutionController(ScriptedAdapter())

        result = await controller.execute_workflow(WorkflowGraph())

        assert result.status == RunStatus.COMPLETED
        assert result.results == []


class TestValidation:
    @pytest.mark.asyncio
    async def test_invalid_graph_raises_without_side_effects(self):
        graph = _chain(2)
        graph.connections.append(Connection(from_id="b2", to_id="b1"))
        adapter = ScriptedAdapter()
        controller = ExecutionController(adapter)

        with pytest.raises(WorkflowValidationError) as exc_info:
            await controller.execute_workflow(graph)

        assert not exc_info.value.report.is_valid
        assert controller.get_active_runs() == []
        assert adapter.requests == []
        assert controller.resource_manager.active_count == 0

    @pytest.mark.asyncio
    async def test_undefined_variable_refused(self):
        graph = WorkflowGraph(blocks=[Block(id="a", label="A01", instruction="use [Z01]")])
        controller = ExecutionController(ScriptedAdapter())

        with pytest.raises(WorkflowValidationError):
            await controller.start_workflow(graph)

    @pytest.mark.asyncio
    async def test_lenient_variables_leave_token_literal(self):
        graph = WorkflowGraph(blocks=[Block(id="a", label="A01", instruction="use [Z01]")])
        adapter = ScriptedAdapter()
        controller = ExecutionController(adapter, EngineConfig(strict_variables=False))

        result = await controller.execute_workflow(graph)

        assert result.status == RunStatus.COMPLETED
        assert adapter.prompts == ["use [Z01]"]


class TestFailures:
    def _graph(self) -> WorkflowGraph:
        # a -> c, b independent
        return WorkflowGraph(
            blocks=[
                Block(id="a", label="A01", instruction="first"),
                Block(id="b", label="B01", instruction="independent"),
                Block(id="c", label="C01", instruction="after [A01]"),
            ],
            connections=[Connection(from_id="a", to_id="c")],
        )

    @pytest.mark.asyncio
    async def test_failure_does_not_abort_run(self):
        graph = self._graph()
        adapter = ScriptedAdapter(failures={"first": -1})
        controller = ExecutionController(adapter)

        result = await controller.execute_workflow(graph)

        assert result.status == RunStatus.FAILED
        statuses = {r.block_id: r.status for r in result.results}
        assert statuses == {
            "a": BlockResultStatus.FAILED,
            "b": BlockResultStatus.COMPLETED,
            "c": BlockResultStatus.COMPLETED,
        }
        # The dependent block reads absent upstream data; the token stays literal
        assert adapter.prompts[-1] == "after [A01]"
        assert "backend error" in result.get_block_result("a").error
        assert result.errors[0].block_id == "a"
        assert graph.get_block("a").status == BlockStatus.ERROR

    @pytest.mark.asyncio
    async def test_skip_failed_dependents(self):
        adapter = ScriptedAdapter(failures={"first": -1})
        controller = ExecutionController(adapter)

        result = await controller.execute_workflow(
            self._graph(), ExecutionOptions(skip_failed_dependents=True)
        )

        assert result.get_block_result("c").status == BlockResultStatus.SKIPPED
        assert result.statistics.skipped_blocks == 1
        assert "after [A01]" not in adapter.prompts

    @pytest.mark.asyncio
    async def test_retry_then_success(self):
        adapter = ScriptedAdapter(failures={"step 1": 2})
        controller = ExecutionController(adapter)
        options = ExecutionOptions(retry_policy=RetryPolicy(max_retries=2, retry_delay=0))

        result = await controller.execute_workflow(_chain(1), options)

        assert result.status == RunStatus.COMPLETED
        assert result.results[0].retry_count == 2
        assert adapter.prompts == ["step 1"] * 3

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        adapter = ScriptedAdapter(failures={"step 1": -1})
        controller = ExecutionController(adapter)
        options = ExecutionOptions(retry_policy=RetryPolicy(max_retries=1, retry_delay=0))

        result = await controller.execute_workflow(_chain(1), options)

        assert result.status == RunStatus.FAILED
        assert result.results[0].retry_count == 1
        assert len(result.results) == 1

    def test_backoff_delays(self):
        policy = RetryPolicy(max_retries=3, retry_delay=1.0, backoff_multiplier=2.0)

        assert [policy.delay_for(i) for i in range(3)] == [1.0, 2.0, 4.0]


class TestPauseResumeCancel:
    @pytest.mark.asyncio
    async def test_pause_during_block_two_then_resume(self):
        """Pausing mid-block stops after that block; resume continues without repeats."""
        graph = _chain(5)
        adapter = ScriptedAdapter(gates={"step 2"})
        controller = ExecutionController(adapter)

        run_id = await controller.start_workflow(graph)
        await asyncio.wait_for(adapter.entered["step 2"].wait(), timeout=1)

        assert await controller.pause_execution(run_id) is True
        adapter.released["step 2"].set()
        await _wait_until(lambda: controller.get_execution_status(run_id).progress.completed == 2)
        await asyncio.sleep(0.02)

        status = controller.get_execution_status(run_id)
        assert status.status == RunStatus.PAUSED
        assert status.progress.completed == 2
        assert status.progress.total == 5
        assert status.estimated_completion is not None
        assert adapter.prompts == ["step 1", "step 2"]

        assert await controller.resume_execution(run_id) is True
        result = await controller.wait_for_completion(run_id, timeout=1)

        assert result.status == RunStatus.COMPLETED
        assert [r.block_id for r in result.results] == ["b1", "b2", "b3", "b4", "b5"]
        assert adapter.prompts == [f"step {i}" for i in range(1, 6)]

    @pytest.mark.asyncio
    async def test_cancel_stops_after_current_block(self):
        adapter = ScriptedAdapter(gates={"step 1"})
        controller = ExecutionController(adapter)

        run_id = await controller.start_workflow(_chain(3))
        await asyncio.wait_for(adapter.entered["step 1"].wait(), timeout=1)
        assert await controller.cancel_execution(run_id) is True
        adapter.released["step 1"].set()

        result = await controller.wait_for_completion(run_id, timeout=1)

        assert result.status == RunStatus.CANCELLED
        assert len(result.results) == 1
        assert adapter.prompts == ["step 1"]

    @pytest.mark.asyncio
    async def test_cancel_while_paused(self):
        adapter = ScriptedAdapter(gates={"step 1"})
        controller = ExecutionController(adapter)

        run_id = await controller.start_workflow(_chain(3))
        await asyncio.wait_for(adapter.entered["step 1"].wait(), timeout=1)
        await controller.pause_execution(run_id)
        adapter.released["step 1"].set()
        await _wait_until(lambda: controller.get_execution_status(run_id).progress.completed == 1)

        assert await controller.cancel_execution(run_id) is True
        result = await controller.wait_for_completion(run_id, timeout=1)

        assert result.status == RunStatus.CANCELLED
        assert len(result.results) == 1

    @pytest.mark.asyncio
    async def test_invalid_transitions(self):
        adapter = ScriptedAdapter(gates={"step 1"})
        controller = ExecutionController(adapter)
        run_id = await controller.start_workflow(_chain(1))
        await asyncio.wait_for(adapter.entered["step 1"].wait(), timeout=1)

        assert await controller.resume_execution(run_id) is False
        assert await controller.pause_execution(run_id) is True
        assert await controller.pause_execution(run_id) is False

        adapter.released["step 1"].set()
        await controller.resume_execution(run_id)
        await controller.wait_for_completion(run_id, timeout=1)

        assert await controller.cancel_execution(run_id) is False
        assert await controller.pause_execution("unknown") is False


class TestRunTable:
    @pytest.mark.asyncio
    async def test_finished_run_is_evicted_but_result_retained(self):
        controller = ExecutionController(ScriptedAdapter())

        result = await controller.execute_workflow(_chain(1))

        assert controller.get_execution_status(result.run_id) is None
        assert controller.get_active_runs() == []
        assert controller.get_result(result.run_id) is result
        assert await controller.wait_for_completion(result.run_id) is result

    @pytest.mark.asyncio
    async def test_result_retention_is_bounded(self):
        controller = ExecutionController(ScriptedAdapter(), EngineConfig(result_retention_max=1))

        first = await controller.execute_workflow(_chain(1))
        second = await controller.execute_workflow(_chain(1))

        assert controller.get_result(first.run_id) is None
        assert controller.get_result(second.run_id) is second

    @pytest.mark.asyncio
    async def test_unknown_run(self):
        controller = ExecutionController(ScriptedAdapter())

        assert controller.get_execution_status("nope") is None
        with pytest.raises(KeyError):
            await controller.wait_for_completion("nope")

    @pytest.mark.asyncio
    async def test_explicit_run_id(self):
        controller = ExecutionController(ScriptedAdapter())

        result = await controller.execute_workflow(_chain(1), ExecutionOptions(run_id="my-run"))

        assert result.run_id == "my-run"


class TestAdmission:
    @pytest.mark.asyncio
    async def test_rejected_request_fails_run_without_executing(self):
        adapter = ScriptedAdapter()
        controller = ExecutionController(adapter)

        result = await controller.execute_workflow(
            _chain(2), ExecutionOptions(resources=ResourceUsage(memory=10_000))
        )

        assert result.status == RunStatus.FAILED
        assert result.results == []
        assert "rejected" in result.errors[0].message
        assert result.errors[0].block_id is None
        assert adapter.requests == []

    @pytest.mark.asyncio
    async def test_second_run_waits_for_first(self):
        bus = EventBus()
        adapter = ScriptedAdapter(gates={"step 1"})
        manager = ResourceManager(ResourceLimits(max_concurrent_executions=1))
        controller = ExecutionController(adapter, resource_manager=manager, event_bus=bus)

        first = await controller.start_workflow(_chain(1))
        await asyncio.wait_for(adapter.entered["step 1"].wait(), timeout=1)
        second = await controller.start_workflow(
            WorkflowGraph(blocks=[Block(id="x", label="X01", instruction="other")])
        )
        await _wait_until(lambda: manager.is_queued(second))

        adapter.released["step 1"].set()
        results = await asyncio.gather(
            controller.wait_for_completion(first, timeout=1),
            controller.wait_for_completion(second, timeout=1),
        )

        assert [r.status for r in results] == [RunStatus.COMPLETED, RunStatus.COMPLETED]
        assert adapter.prompts == ["step 1", "other"]
        assert bus.get_history(EventType.RESOURCE_QUEUED, run_id=second)
        assert bus.get_history(EventType.RESOURCE_GRANTED, run_id=second)
        assert manager.active_count == 0

    @pytest.mark.asyncio
    async def test_cancel_while_queued(self):
        adapter = ScriptedAdapter(gates={"step 1"})
        manager = ResourceManager(ResourceLimits(max_concurrent_executions=1))
        controller = ExecutionController(adapter, resource_manager=manager)

        first = await controller.start_workflow(_chain(1))
        await asyncio.wait_for(adapter.entered["step 1"].wait(), timeout=1)
        second = await controller.start_workflow(_chain(1))
        await _wait_until(lambda: manager.is_queued(second))

        assert await controller.cancel_execution(second) is True
        result = await controller.wait_for_completion(second, timeout=1)

        assert result.status == RunStatus.CANCELLED
        assert result.results == []

        adapter.released["step 1"].set()
        await controller.wait_for_completion(first, timeout=1)

    @pytest.mark.asyncio
    async def test_preempt_runs_immediately(self):
        adapter = ScriptedAdapter(gates={"step 1"})
        manager = ResourceManager(ResourceLimits(max_concurrent_executions=1))
        controller = ExecutionController(adapter, resource_manager=manager)

        low = await controller.start_workflow(
            _chain(1), ExecutionOptions(priority=ExecutionPriority.LOW)
        )
        await asyncio.wait_for(adapter.entered["step 1"].wait(), timeout=1)

        urgent = await controller.execute_workflow(
            WorkflowGraph(blocks=[Block(id="u", label="U01", instruction="urgent")]),
            ExecutionOptions(priority=ExecutionPriority.HIGH, preempt=True),
        )

        assert urgent.status == RunStatus.COMPLETED
        adapter.released["step 1"].set()
        assert (await controller.wait_for_completion(low, timeout=1)).status == RunStatus.COMPLETED
        assert manager.active_count == 0
        assert manager.queued_run_ids() == []


class TestEvents:
    @pytest.mark.asyncio
    async def test_lifecycle_events(self):
        bus = EventBus()
        controller = ExecutionController(ScriptedAdapter(failures={"step 2": -1}), event_bus=bus)

        result = await controller.execute_workflow(_chain(2))

        types = [e.type for e in reversed(bus.get_history(run_id=result.run_id))]
        assert types == [
            EventType.RUN_STARTED,
            EventType.BLOCK_STARTED,
            EventType.BLOCK_COMPLETED,
            EventType.BLOCK_STARTED,
            EventType.BLOCK_FAILED,
            EventType.RUN_FAILED,
        ]

    @pytest.mark.asyncio
    async def test_pause_and_resume_events(self):
        bus = EventBus()
        adapter = ScriptedAdapter(gates={"step 1"})
        controller = ExecutionController(adapter, event_bus=bus)

        run_id = await controller.start_workflow(_chain(1))
        await asyncio.wait_for(adapter.entered["step 1"].wait(), timeout=1)
        await controller.pause_execution(run_id)
        await controller.resume_execution(run_id)
        adapter.released["step 1"].set()
        await controller.wait_for_completion(run_id, timeout=1)

        assert bus.get_history(EventType.RUN_PAUSED, run_id=run_id)
        assert bus.get_history(EventType.RUN_RESUMED, run_id=run_id)
        assert bus.get_history(EventType.RUN_COMPLETED, run_id=run_id)


@pytest.mark.asyncio
async def test_stop_cancels_active_runs():
    adapter = ScriptedAdapter(gates={"step 1"})
    controller = ExecutionController(adapter)
    run_id = await controller.start_workflow(_chain(2))
    await asyncio.wait_for(adapter.entered["step 1"].wait(), timeout=1)

    await controller.stop()

    assert controller.get_result(run_id).status == RunStatus.CANCELLED
    assert controller.resource_manager.active_count == 0
