import asyncio

import pytest

from codecrew.agents import AgentRole, AgentTask, select_role_for_task
from codecrew.checkpoints import Checkpoint, CheckpointStore
from codecrew.coordinator import (
    DelegationResult,
    DelegationStatus,
    Coordinator,
    aggregate_results,
)
from codecrew.exceptions import ConfigurationError
from codecrew.llm import LLMProvider, StreamChunk, ToolCall
from codecrew.recovery import RecoverySystem, RetryLedger
from codecrew.task_queue import Task, TaskStatus
from codecrew.tools.registry import Tool, ToolRegistry, ToolResult


def _description(prompt: str) -> str:
    return prompt.split("\n", 1)[0].removeprefix("Task: ")


class TaskEchoProvider(LLMProvider):
    """Answers each task prompt with ``done: <description>``.

    ``failures`` maps a description to the errors raised on its first
    requests, in order.
    """

    def __init__(self, name: str = "echo", failures: dict[str, list[BaseException]] | None = None):
        self.name = name
        self.failures = {key: list(errors) for key, errors in (failures or {}).items()}
        self.prompts: list[str] = []

    async def stream_with_tools(self, messages, tools=None, max_tokens=None):
        prompt = next(msg.content for msg in messages if msg.role == "user")
        self.prompts.append(prompt)
        description = _description(prompt)
        pending = self.failures.get(description)
        if pending:
            raise pending.pop(0)
        yield StreamChunk(type="text", text=f"done: {description}")
        yield StreamChunk(type="done")

    def count_tokens(self, text: str) -> int:
        return len(text) // 4


def _coordinator(provider=None, **kwargs) -> Coordinator:
    kwargs.setdefault("recovery", RecoverySystem(ledger=RetryLedger(), max_retries=3))
    kwargs.setdefault("max_parallel", 5)
    return Coordinator(provider=provider, tool_registry=ToolRegistry(), **kwargs)


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def _delegation(agent_id: str, output: str, completed: bool = True) -> DelegationResult:
    return DelegationResult(
        agent_id=agent_id,
        task_id=agent_id,
        role="coder",
        status=DelegationStatus.COMPLETED if completed else DelegationStatus.FAILED,
        output=output,
    )


def test_vote_picks_most_frequent_output():
    assert aggregate_results(["X", "Y", "X"], "vote") == "X"


def test_vote_tie_goes_to_first_seen():
    assert aggregate_results(["Y", "X", "X", "Y"], "vote") == "Y"
    assert aggregate_results([], "vote") == ""


def test_merge_joins_completed_outputs():
    assert aggregate_results([], "merge") == ""
    results = [_delegation("a", "one"), _delegation("b", "two", completed=False), _delegation("c", "three")]
    assert aggregate_results(results, "merge") == "one\n\n---\n\nthree"


def test_best_reports_success_rate():
    results = [
        {"status": "completed", "output": "A"},
        {"status": "completed", "output": "B"},
        {"status": "failed", "output": "C"},
    ]
    output = aggregate_results(results, "best")

    assert "[Success rate: 67%]" in output
    assert "A" in output
    assert aggregate_results([{"status": "failed", "output": "C"}], "best") == ""


def test_summary_lists_every_result():
    results = [_delegation("agent-1", "x"), _delegation("agent-2", "y", completed=False)]

    assert aggregate_results(results, "summary") == (
        "Completed: 1, Failed: 1\n\n- agent-1: Success\n- agent-2: Failed"
    )


def test_unknown_aggregation_strategy_raises():
    with pytest.raises(ValueError):
        aggregate_results(["x"], "average")


# ---------------------------------------------------------------------------
# Role selection
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("description", "role"),
    [
        ("Write unit test coverage for the parser", AgentRole.TESTER),
        ("Review the code for security vulnerability issues", AgentRole.REVIEWER),
        ("Refactor and optimize the hot loop", AgentRole.OPTIMIZER),
        ("Research how the cache layer works", AgentRole.RESEARCHER),
        ("Add a login endpoint", AgentRole.CODER),
    ],
)
def test_select_role_for_task(description, role):
    assert select_role_for_task(description) == role


# ---------------------------------------------------------------------------
# Delegation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_delegate_without_provider_is_unavailable():
    result = await Coordinator(provider=None, tool_registry=None).delegate_task("t1", "do it")

    assert result.status == DelegationStatus.UNAVAILABLE
    assert result.agent_id == "agent-t1-coder"
    assert not result.success
    assert "not initialized" in result.message


@pytest.mark.asyncio
async def test_delegate_unknown_role_is_an_error():
    result = await _coordinator(TaskEchoProvider()).delegate_task("t1", "do it", role="wizard")

    assert result.status == DelegationStatus.ERROR
    assert result.message == "Unknown agent role: wizard"


@pytest.mark.asyncio
async def test_delegate_runs_isolated_agent():
    provider = TaskEchoProvider()
    coordinator = _coordinator(provider)

    result = await coordinator.delegate_task("t1", "build it", role="coder", context="use the v2 api")

    assert result.status == DelegationStatus.COMPLETED
    assert result.output == "done: build it"
    assert result.turns == 1
    assert "use the v2 api" in provider.prompts[0]


@pytest.mark.asyncio
async def test_run_requires_provider():
    with pytest.raises(ConfigurationError):
        await Coordinator(provider=None, tool_registry=None).run([{"description": "x"}])


@pytest.mark.asyncio
async def test_coordinate_agents_runs_levels_in_order():
    provider = TaskEchoProvider()
    tasks = [
        AgentTask(id="api", description="Add the api handler"),
        AgentTask(id="docs", description="Add docs", dependencies=["api", "ghost"]),
        AgentTask(id="cli", description="Add a cli flag"),
    ]

    result = await _coordinator(provider).coordinate_agents(tasks, max_parallel_agents=1)

    assert result.levels_executed == 2
    assert result.parallelism_achieved == 1.5
    assert set(result.results) == {"api", "docs", "cli"}
    assert all(item.success for item in result.results.values())
    docs_prompt = next(prompt for prompt in provider.prompts if prompt.startswith("Task: Add docs"))
    assert "dependency_api" in docs_prompt
    assert "done: Add the api handler" in docs_prompt


# ---------------------------------------------------------------------------
# Queue-driven run
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_run_dispatches_in_dependency_order():
    provider = TaskEchoProvider()
    tasks = [
        {"id": "A", "description": "Add model"},
        {"id": "B", "description": "Add view", "dependencies": ["A"]},
        {"id": "C", "description": "Add config"},
    ]

    result = await _coordinator(provider).run(tasks, strategy="pipeline", aggregation="merge")

    assert result.plan.order == ["A", "C", "B"]
    assert result.completion_order == ["A", "C", "B"]
    assert result.failed_tasks == [] and result.blocked_tasks == []
    assert result.summary["completed"] == 3
    assert result.aggregated_output == "done: Add model\n\n---\n\ndone: Add config\n\n---\n\ndone: Add view"
    view_prompt = next(prompt for prompt in provider.prompts if prompt.startswith("Task: Add view"))
    assert "dependency_A" in view_prompt


@pytest.mark.asyncio
async def test_recoverable_failure_is_redelegated():
    provider = TaskEchoProvider(failures={"Add model": [RuntimeError("3 tests failed")]})

    result = await _coordinator(provider).run([{"id": "A", "description": "Add model"}], strategy="sequential")

    assert result.results["A"].success
    assert result.results["A"].output == "done: Add model"
    assert len(provider.prompts) == 2
    assert "analyze_and_fix" in provider.prompts[1]


@pytest.mark.asyncio
async def test_exhausted_retries_escalate_and_block_dependents():
    failures = [RuntimeError("3 tests failed") for _ in range(10)]
    provider = TaskEchoProvider(failures={"Add model": failures})
    tasks = [
        {"id": "A", "description": "Add model"},
        {"id": "B", "description": "Add view", "dependencies": ["A"]},
    ]

    result = await _coordinator(provider).run(tasks, strategy="pipeline")

    assert len(provider.prompts) == 4
    assert result.results["A"].escalated
    assert result.failed_tasks == ["A"]
    assert result.blocked_tasks == ["B"]
    assert "Max retries (3) exceeded" in result.escalations[0]
    assert result.summary["failed"] == 2


@pytest.mark.asyncio
async def test_overloaded_provider_falls_back():
    primary = TaskEchoProvider(name="anthropic", failures={"Add model": [RuntimeError("server overloaded")]})
    created: dict[str, TaskEchoProvider] = {}

    def factory(name: str) -> TaskEchoProvider:
        created[name] = TaskEchoProvider(name=name)
        return created[name]

    coordinator = _coordinator(primary, provider_factory=factory)
    result = await coordinator.run([{"id": "A", "description": "Add model"}], strategy="sequential")

    assert result.results["A"].success
    assert list(created) == ["openai"]
    assert len(created["openai"].prompts) == 1


@pytest.mark.asyncio
async def test_rate_limit_wait_is_capped():
    provider = TaskEchoProvider(failures={"Add model": [RuntimeError("rate limit exceeded")]})
    coordinator = _coordinator(provider, max_retry_wait_ms=0)

    result = await asyncio.wait_for(
        coordinator.run([{"id": "A", "description": "Add model"}], strategy="sequential"),
        timeout=5,
    )

    assert result.results["A"].success


@pytest.mark.asyncio
async def test_pre_set_abort_dispatches_nothing():
    abort_event = asyncio.Event()
    abort_event.set()
    provider = TaskEchoProvider()

    result = await _coordinator(provider).run(
        [{"id": "A", "description": "Add model"}],
        strategy="sequential",
        abort_event=abort_event,
    )

    assert result.aborted
    assert provider.prompts == []
    assert result.summary["pending"] == 1


@pytest.mark.asyncio
async def test_run_checkpoints_and_resumes(tmp_path):
    store = CheckpointStore(tmp_path / "checkpoints.db", max_versions=3)
    try:
        interrupted = Task(id="B", description="Add view", dependencies={"A"}, status=TaskStatus.IN_PROGRESS)
        finished = Task(id="A", description="Add model", status=TaskStatus.COMPLETED, result="done: Add model")
        await store.save(Checkpoint(
            session_id="s1",
            phase="executing",
            tasks=[finished.to_dict(), interrupted.to_dict()],
            completed_tasks=["A"],
            agent_states={
                "A": DelegationResult(
                    agent_id="agent-A-coder",
                    task_id="A",
                    role="coder",
                    status=DelegationStatus.COMPLETED,
                    output="done: Add model",
                ).to_dict(),
            },
        ))
        provider = TaskEchoProvider()
        tasks = [
            {"id": "A", "description": "Add model"},
            {"id": "B", "description": "Add view", "dependencies": ["A"]},
        ]

        result = await _coordinator(provider, checkpoint_store=store).run(tasks, strategy="pipeline", session_id="s1")

        assert result.resumed
        assert result.completion_order == ["A", "B"]
        assert [_description(prompt) for prompt in provider.prompts] == ["Add view"]
        latest = await store.load_latest("s1")
        assert latest.phase == "completed"
        assert latest.completed_tasks == ["A", "B"]
    finally:
        await store.close()


class LoopingToolProvider(TaskEchoProvider):
    """Requests ``read_file`` on every turn and never finishes on its own."""

    async def stream_with_tools(self, messages, tools=None, max_tokens=None):
        self.prompts.append(messages[-1].content)
        call = ToolCall(id=f"call-{len(self.prompts)}", name="read_file", arguments={"path": "a.py"})
        yield StreamChunk(type="tool_use_start", tool_call=call)
        yield StreamChunk(type="tool_use_end", tool_call=call)
        yield StreamChunk(type="done")


class ReadTool(Tool):
    name = "read_file"
    description = "Returns a fixed body"
    parameters = {"type": "object", "properties": {"path": {"type": "string"}}, "required": []}

    async def execute(self, **kwargs):
        return ToolResult(success=True, output="body")


class SlowProvider(TaskEchoProvider):
    """Sleeps inside each request and records the peak number of requests in flight."""

    def __init__(self):
        super().__init__()
        self.in_flight = 0
        self.peak = 0

    async def stream_with_tools(self, messages, tools=None, max_tokens=None):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(0.01)
        finally:
            self.in_flight -= 1
        yield StreamChunk(type="text", text="done")
        yield StreamChunk(type="done")


@pytest.mark.asyncio
async def test_delegate_exhausting_turn_budget_is_failed_not_aborted():
    registry = ToolRegistry()
    registry.register(ReadTool())
    coordinator = Coordinator(
        provider=LoopingToolProvider(),
        tool_registry=registry,
        recovery=RecoverySystem(ledger=RetryLedger()),
    )

    result = await coordinator.delegate_task("t1", "keep reading", role="coder", max_turns=2)

    assert result.status == DelegationStatus.FAILED
    assert result.turns == 2
    assert not result.aborted
    assert result.tools_used == ["read_file"]


@pytest.mark.asyncio
async def test_run_never_exceeds_plan_parallelism():
    provider = SlowProvider()
    tasks = [{"id": f"T{idx}", "description": f"Add part {idx}"} for idx in range(5)]

    result = await _coordinator(provider, max_parallel=5).run(tasks, strategy="pipeline")

    assert result.plan.max_parallelism == 2
    assert len(result.completion_order) == 5
    assert provider.peak == 2


@pytest.mark.asyncio
async def test_run_never_exceeds_coordinator_limit():
    provider = SlowProvider()
    tasks = [{"id": f"T{idx}", "description": f"Add part {idx}"} for idx in range(4)]

    result = await _coordinator(provider, max_parallel=3).run(tasks, strategy="parallel")

    assert result.plan.max_parallelism == 4
    assert provider.peak == 3
