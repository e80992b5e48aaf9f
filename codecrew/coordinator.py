"""Multi-agent delegation, scheduling and result aggregation.

The ``Coordinator`` turns a task set into agent runs:

* ``delegate_task`` runs one isolated sub-agent on one task.
* ``coordinate_agents`` executes tasks level by level (every level only
  depends on earlier levels), in batches of at most ``max_parallel``.
* ``run`` is the queue-driven loop: plan, queue, dispatch ready tasks in
  batches bounded by the plan, consult recovery on failures, checkpoint
  after every batch, aggregate the outputs.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Iterable, Mapping

from codecrew.agents import (
    AGENT_ROLES,
    DEFAULT_MAX_TURNS,
    AgentDefinition,
    AgentExecutor,
    AgentResult,
    AgentRole,
    AgentTask,
    get_agent_for_task,
    select_role_for_task,
)
from codecrew.checkpoints import Checkpoint, CheckpointStore
from codecrew.config import get_config
from codecrew.exceptions import ConfigurationError
from codecrew.llm import LLMProvider
from codecrew.logging import get_logger
from codecrew.planner import (
    ExecutionPlan,
    ExecutionStrategy,
    dependency_levels,
    normalize_nodes,
    plan_execution,
)
from codecrew.recovery import RecoveryAction, RecoveryContext, RecoverySystem
from codecrew.task_queue import Task, TaskQueue, TaskSpec, TaskStatus
from codecrew.tools.registry import ToolRegistry

log = get_logger(__name__)

MERGE_SEPARATOR = "\n\n---\n\n"
DELEGATION_PHASE = "delegation"
UNAVAILABLE_MESSAGE = (
    "Agent provider not initialized. Configure an LLM provider and tool registry before delegating."
)
UNSCHEDULABLE_ERROR = "Blocked by unresolved, failed or circular dependencies"


class DelegationStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    UNAVAILABLE = "unavailable"
    ERROR = "error"


class AggregationStrategy(str, Enum):
    MERGE = "merge"
    VOTE = "vote"
    BEST = "best"
    SUMMARY = "summary"


@dataclass
class DelegationResult:
    agent_id: str
    task_id: str
    role: str
    status: DelegationStatus
    output: str = ""
    message: str = ""
    turns: int = 0
    tools_used: list[str] = field(default_factory=list)
    tokens_used: int = 0
    duration: float = 0.0
    aborted: bool = False
    escalated: bool = False
    error: BaseException | None = field(default=None, repr=False, compare=False)

    @property
    def success(self) -> bool:
        return self.status == DelegationStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "task_id": self.task_id,
            "role": self.role,
            "status": self.status.value,
            "output": self.output,
            "message": self.message,
            "success": self.success,
            "turns": self.turns,
            "tools_used": list(self.tools_used),
            "tokens_used": self.tokens_used,
            "duration": self.duration,
            "aborted": self.aborted,
            "escalated": self.escalated,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DelegationResult":
        return cls(
            agent_id=str(data.get("agent_id", "")),
            task_id=str(data.get("task_id", "")),
            role=str(data.get("role", "")),
            status=DelegationStatus(data.get("status", DelegationStatus.FAILED.value)),
            output=str(data.get("output", "")),
            message=str(data.get("message", "")),
            turns=int(data.get("turns", 0)),
            tools_used=list(data.get("tools_used") or []),
            tokens_used=int(data.get("tokens_used", 0)),
            duration=float(data.get("duration", 0.0)),
            aborted=bool(data.get("aborted", False)),
            escalated=bool(data.get("escalated", False)),
        )


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Entry:
    agent_id: str
    completed: bool
    output: str


AggregationInput = DelegationResult | Mapping[str, Any] | str


def _entry(item: AggregationInput, index: int) -> _Entry:
    """Bare strings count as completed outputs."""
    if isinstance(item, str):
        return _Entry(agent_id=f"result-{index}", completed=True, output=item)
    if isinstance(item, DelegationResult):
        return _Entry(agent_id=item.agent_id, completed=item.success, output=item.output)
    status = str(item.get("status", DelegationStatus.COMPLETED.value))
    return _Entry(
        agent_id=str(item.get("agent_id") or f"result-{index}"),
        completed=status == DelegationStatus.COMPLETED.value,
        output=str(item.get("output", "")),
    )


def _percent(part: int, whole: int) -> int:
    # Half-up, so 12.5% reads as 13%.
    return int(part * 100 / whole + 0.5) if whole else 0


def aggregate_results(
    results: Iterable[AggregationInput],
    strategy: AggregationStrategy | str = AggregationStrategy.MERGE,
) -> str:
    """Combine delegated outputs.

    ``merge``, ``vote`` and ``best`` only consider completed results;
    ``summary`` reports every result.
    """
    strategy = AggregationStrategy(strategy)
    entries = [_entry(item, idx) for idx, item in enumerate(results)]
    completed = [entry for entry in entries if entry.completed]

    if strategy == AggregationStrategy.MERGE:
        return MERGE_SEPARATOR.join(entry.output for entry in completed)

    if strategy == AggregationStrategy.VOTE:
        counts: dict[str, int] = {}
        for entry in completed:
            counts[entry.output] = counts.get(entry.output, 0) + 1
        winner, best_count = "", 0
        for output, count in counts.items():
            if count > best_count:
                winner, best_count = output, count
        return winner

    if strategy == AggregationStrategy.BEST:
        if not completed:
            return ""
        rate = _percent(len(completed), len(entries))
        return f"[Success rate: {rate}%]\n\n{completed[0].output}"

    lines = [f"Completed: {len(completed)}, Failed: {len(entries) - len(completed)}", ""]
    lines.extend(
        f"- {entry.agent_id}: {'Success' if entry.completed else 'Failed'}"
        for entry in entries
    )
    return "\n".join(lines).rstrip()


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class CoordinationResult:
    results: dict[str, AgentResult]
    total_duration: float
    levels_executed: int
    parallelism_achieved: float


@dataclass
class RunResult:
    session_id: str
    plan: ExecutionPlan
    results: dict[str, DelegationResult]
    completion_order: list[str]
    failed_tasks: list[str]
    blocked_tasks: list[str]
    aggregated_output: str
    summary: dict[str, int]
    aborted: bool = False
    resumed: bool = False

    @property
    def escalations(self) -> list[str]:
        return [result.message for result in self.results.values() if result.escalated]

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "plan": self.plan.to_dict(),
            "results": {task_id: result.to_dict() for task_id, result in self.results.items()},
            "completion_order": list(self.completion_order),
            "failed_tasks": list(self.failed_tasks),
            "blocked_tasks": list(self.blocked_tasks),
            "aggregated_output": self.aggregated_output,
            "summary": dict(self.summary),
            "escalations": self.escalations,
            "aborted": self.aborted,
            "resumed": self.resumed,
        }


def _coerce_spec(item: TaskSpec | Mapping[str, Any] | str) -> TaskSpec:
    if isinstance(item, TaskSpec):
        return item
    if isinstance(item, str):
        return TaskSpec(description=item)
    return TaskSpec.from_dict(dict(item))


def _coerce_agent_task(item: AgentTask | Mapping[str, Any], index: int) -> AgentTask:
    if isinstance(item, AgentTask):
        return item
    return AgentTask(
        id=str(item.get("id") or f"task-{index}"),
        description=str(item.get("description", "")),
        context=dict(item.get("context") or {}),
        dependencies=[str(dep) for dep in item.get("dependencies") or []],
    )


def _role_name(role: AgentRole | str) -> str:
    return str(getattr(role, "value", role))


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class Coordinator:
    """Runs sub-agents for a task set and merges what they produce."""

    def __init__(
        self,
        provider: LLMProvider | None = None,
        tool_registry: ToolRegistry | None = None,
        recovery: RecoverySystem | None = None,
        checkpoint_store: CheckpointStore | None = None,
        project_path: str = "",
        max_parallel: int | None = None,
        agent_definitions: dict[AgentRole, AgentDefinition] | None = None,
        provider_factory: Callable[[str], LLMProvider] | None = None,
        max_retry_wait_ms: int | None = None,
    ):
        cfg = get_config()
        self.provider = provider
        self.tool_registry = tool_registry
        self.recovery = recovery or RecoverySystem()
        self.checkpoint_store = checkpoint_store
        self.project_path = project_path
        self.max_parallel = max(1, max_parallel or cfg.orchestrator.max_parallel)
        self.default_max_turns = cfg.orchestrator.default_max_turns
        self.default_strategy = ExecutionStrategy(cfg.orchestrator.default_strategy)
        self.default_aggregation = AggregationStrategy(cfg.orchestrator.aggregation)
        self.agent_definitions = dict(agent_definitions or AGENT_ROLES)
        self.provider_factory = provider_factory
        self.max_retry_wait_ms = (
            max_retry_wait_ms if max_retry_wait_ms is not None else cfg.recovery.max_wait_ms
        )
        self._fallback_providers: dict[str, LLMProvider] = {}

    def _require_runtime(self) -> None:
        if self.provider is None or self.tool_registry is None:
            raise ConfigurationError(UNAVAILABLE_MESSAGE)

    # ------------------------------------------------------------------
    # Delegation
    # ------------------------------------------------------------------

    async def delegate_task(
        self,
        task_id: str,
        task: str,
        role: AgentRole | str = AgentRole.CODER,
        context: Mapping[str, Any] | str | None = None,
        max_turns: int | None = None,
        abort_event: asyncio.Event | None = None,
        provider: LLMProvider | None = None,
    ) -> DelegationResult:
        """Run one sub-agent in a fresh session.

        Returns a ``DelegationResult`` whose status is ``unavailable`` when
        no provider or registry is configured, ``error`` for an unknown
        role, and otherwise ``completed`` or ``failed`` from the agent run.
        """
        role_name = _role_name(role)
        agent_id = f"agent-{task_id}-{role_name}"
        provider = provider or self.provider

        if provider is None or self.tool_registry is None:
            return DelegationResult(
                agent_id=agent_id,
                task_id=task_id,
                role=role_name,
                status=DelegationStatus.UNAVAILABLE,
                message=UNAVAILABLE_MESSAGE,
            )

        try:
            resolved = AgentRole(role_name.lower())
        except ValueError:
            resolved = None
        if resolved is None or resolved not in self.agent_definitions:
            return DelegationResult(
                agent_id=agent_id,
                task_id=task_id,
                role=role_name,
                status=DelegationStatus.ERROR,
                message=f"Unknown agent role: {role_name}",
            )

        definition = replace(
            self.agent_definitions[resolved],
            max_turns=max_turns if max_turns is not None else self.default_max_turns,
        )
        if isinstance(context, str):
            task_context: dict[str, Any] = {"user_context": context}
        else:
            task_context = dict(context or {})

        executor = AgentExecutor(provider, self.tool_registry, project_path=self.project_path)
        result = await executor.execute(
            definition,
            AgentTask(id=task_id, description=task, context=task_context),
            abort_event=abort_event,
        )
        return DelegationResult(
            agent_id=agent_id,
            task_id=task_id,
            role=role_name,
            status=DelegationStatus.COMPLETED if result.success else DelegationStatus.FAILED,
            output=result.output,
            message=str(result.error) if result.error is not None else "",
            turns=result.turns,
            tools_used=result.tools_used,
            tokens_used=result.tokens_used,
            duration=result.duration,
            aborted=result.aborted,
            error=result.error,
        )

    # ------------------------------------------------------------------
    # Level-based coordination
    # ------------------------------------------------------------------

    @staticmethod
    def _dependency_context(
        dependencies: Iterable[str],
        outputs: Mapping[str, AgentResult | DelegationResult],
        base: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        context = dict(base or {})
        for dep_id in dependencies:
            dep_result = outputs.get(dep_id)
            if dep_result is not None:
                context[f"dependency_{dep_id}"] = {
                    "output": dep_result.output,
                    "success": dep_result.success,
                }
        return context

    async def coordinate_agents(
        self,
        tasks: Iterable[AgentTask | Mapping[str, Any]],
        max_parallel_agents: int | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> CoordinationResult:
        """Execute tasks level by level; each agent is chosen by keyword scoring.

        Raises:
            ConfigurationError if no provider or registry is configured
            CircularDependencyError if the tasks cannot be levelled
        """
        self._require_runtime()
        started = time.monotonic()
        max_parallel = max(1, max_parallel_agents or self.max_parallel)

        agent_tasks = [_coerce_agent_task(item, idx) for idx, item in enumerate(tasks)]
        by_id = {task.id: task for task in agent_tasks}
        graph: dict[str, list[str]] = {}
        for task in agent_tasks:
            known = [dep for dep in task.dependencies if dep in by_id]
            if len(known) != len(task.dependencies):
                log.warning(
                    "Ignoring unknown dependencies",
                    task_id=task.id,
                    dependencies=[dep for dep in task.dependencies if dep not in by_id],
                )
            graph[task.id] = known
        levels = dependency_levels(list(by_id), graph)

        executor = AgentExecutor(self.provider, self.tool_registry, project_path=self.project_path)
        results: dict[str, AgentResult] = {}
        executed = 0

        async def run_one(task: AgentTask) -> AgentResult:
            definition = get_agent_for_task(task.description, self.agent_definitions)
            context = self._dependency_context(task.dependencies, results, task.context)
            return await executor.execute(
                definition,
                replace(task, context=context),
                abort_event=abort_event,
            )

        for level_idx, level in enumerate(levels, start=1):
            log.info("Executing level", level=level_idx, levels=len(levels), agents=len(level))
            for start in range(0, len(level), max_parallel):
                batch = [by_id[task_id] for task_id in level[start:start + max_parallel]]
                batch_results = await asyncio.gather(*(run_one(task) for task in batch))
                for task, result in zip(batch, batch_results):
                    results[task.id] = result
                executed += len(batch)

        return CoordinationResult(
            results=results,
            total_duration=time.monotonic() - started,
            levels_executed=len(levels),
            parallelism_achieved=executed / len(levels) if levels else 0.0,
        )

    # ------------------------------------------------------------------
    # Queue-driven run
    # ------------------------------------------------------------------

    def _fallback_provider(self, name: str | None, current: LLMProvider) -> LLMProvider:
        if not name or self.provider_factory is None:
            log.warning("No provider factory configured; keeping current provider", requested=name)
            return current
        if name not in self._fallback_providers:
            self._fallback_providers[name] = self.provider_factory(name)
        return self._fallback_providers[name]

    async def _run_task(
        self,
        task: Task,
        results: Mapping[str, DelegationResult],
        abort_event: asyncio.Event | None,
    ) -> DelegationResult:
        """Delegate a queued task, re-delegating while recovery says it is recoverable."""
        role = select_role_for_task(task.description)
        max_turns = DEFAULT_MAX_TURNS.get(role, self.default_max_turns)
        context = self._dependency_context(sorted(task.dependencies), results)
        provider = self.provider
        recovery_context = RecoveryContext(
            phase=DELEGATION_PHASE,
            task=task.id,
            provider=getattr(provider, "name", None),
        )

        while True:
            outcome = await self.delegate_task(
                task.id,
                task.description,
                role,
                context=context,
                max_turns=max_turns,
                abort_event=abort_event,
                provider=provider,
            )
            # Turn-budget exhaustion and aborts carry no exception to classify.
            if outcome.success or outcome.aborted or outcome.error is None:
                return outcome

            verdict = self.recovery.recover(outcome.error, recovery_context)
            if not verdict.recovered:
                log.warning("Escalating task failure", task_id=task.id, message=verdict.message)
                outcome.message = verdict.message
                outcome.escalated = True
                return outcome

            recovery_context = replace(
                verdict.new_context or recovery_context,
                iteration=recovery_context.iteration + 1,
            )
            context = {
                **context,
                "recovery": {
                    "action": verdict.action.value,
                    "message": verdict.message,
                    "attempt": recovery_context.iteration,
                    **verdict.details,
                },
            }
            if verdict.action == RecoveryAction.WAIT_AND_RETRY:
                wait_ms = min(int(verdict.details.get("wait_ms", 0)), self.max_retry_wait_ms)
                if wait_ms > 0:
                    await asyncio.sleep(wait_ms / 1000)
            elif verdict.action == RecoveryAction.FALLBACK_PROVIDER:
                provider = self._fallback_provider(recovery_context.provider, provider)
            log.info(
                "Re-delegating task",
                task_id=task.id,
                action=verdict.action.value,
                attempt=recovery_context.iteration,
            )

    def _populate_queue(self, queue: TaskQueue, specs: list[TaskSpec]) -> None:
        for node, spec in zip(normalize_nodes(specs), specs):
            queue.add_task(
                TaskSpec(
                    description=spec.description,
                    priority=node.priority,
                    estimated_duration_ms=spec.estimated_duration_ms,
                    dependencies=node.dependencies,
                ),
                id_override=node.id,
            )

    @staticmethod
    def _restore_queue(
        queue: TaskQueue,
        checkpoint: Checkpoint,
        results: dict[str, DelegationResult],
    ) -> None:
        tasks = [Task.from_dict(raw) for raw in checkpoint.tasks]
        # Completed tasks first, in their original completion order.
        position = {task_id: idx for idx, task_id in enumerate(checkpoint.completed_tasks)}
        tasks.sort(key=lambda t: position.get(t.id, len(position)))
        for task in tasks:
            queue.restore_task(task)
        for task_id, raw in checkpoint.agent_states.items():
            results[task_id] = DelegationResult.from_dict(raw)

    async def _save_checkpoint(
        self,
        session_id: str,
        phase: str,
        queue: TaskQueue,
        results: Mapping[str, DelegationResult],
        plan: ExecutionPlan,
        started_at: float,
    ) -> None:
        if self.checkpoint_store is None or not get_config().checkpoints.enabled:
            return
        await self.checkpoint_store.save(Checkpoint(
            session_id=session_id,
            phase=phase,
            tasks=[task.to_dict() for task in queue.get_tasks()],
            completed_tasks=queue.get_completion_order(),
            agent_states={task_id: result.to_dict() for task_id, result in results.items()},
            metadata={
                "start_time": started_at,
                "project_path": self.project_path,
                "provider": getattr(self.provider, "name", ""),
                "strategy": plan.strategy.value,
            },
        ))

    async def run(
        self,
        tasks: Iterable[TaskSpec | Mapping[str, Any] | str],
        strategy: ExecutionStrategy | str | None = None,
        aggregation: AggregationStrategy | str | None = None,
        session_id: str | None = None,
        abort_event: asyncio.Event | None = None,
        resume: bool = True,
    ) -> RunResult:
        """Plan, dispatch and aggregate a task set.

        Ready tasks are dispatched in plan order, at most
        ``min(plan.max_parallelism, max_parallel)`` at a time. When a
        ``session_id`` is given and a checkpoint exists for it, the run
        resumes from that checkpoint.

        Raises:
            ConfigurationError if no provider or registry is configured
            CircularDependencyError for a cyclic task set under ``pipeline``
        """
        self._require_runtime()
        specs = [_coerce_spec(item) for item in tasks]
        plan = plan_execution(specs, strategy or self.default_strategy)
        aggregation = AggregationStrategy(aggregation or self.default_aggregation)

        queue = TaskQueue()
        results: dict[str, DelegationResult] = {}
        resumed = False
        checkpoint = None
        if session_id and resume and self.checkpoint_store is not None:
            checkpoint = await self.checkpoint_store.load_latest(session_id)
        if checkpoint is not None:
            self._restore_queue(queue, checkpoint, results)
            resumed = True
            log.info("Resuming from checkpoint", session_id=session_id, phase=checkpoint.phase)
        else:
            self._populate_queue(queue, specs)
        session_id = session_id or str(uuid.uuid4())

        started_at = time.time()
        rank = {task_id: idx for idx, task_id in enumerate(plan.order)}
        limit = max(1, min(plan.max_parallelism, self.max_parallel))
        aborted = False

        log.info(
            "Run started",
            session_id=session_id,
            strategy=plan.strategy.value,
            tasks=len(queue),
            max_parallelism=limit,
        )
        while True:
            if abort_event is not None and abort_event.is_set():
                aborted = True
                break
            ready = sorted(queue.get_ready_tasks(), key=lambda t: rank.get(t.id, len(rank)))
            if not ready:
                break

            batch = ready[:limit]
            for task in batch:
                queue.start_task(task.id)
            outcomes = await asyncio.gather(
                *(self._run_task(task, results, abort_event) for task in batch)
            )
            for task, outcome in zip(batch, outcomes):
                results[task.id] = outcome
                if outcome.aborted:
                    # Left in progress; a resumed run picks it up again.
                    aborted = True
                elif outcome.success:
                    queue.complete_task(task.id, outcome.output)
                else:
                    queue.fail_task(task.id, outcome.message or outcome.output or outcome.status.value)

            await self._save_checkpoint(session_id, "executing", queue, results, plan, started_at)
            if aborted:
                break

        blocked: list[str] = []
        if not aborted:
            blocked = [task.id for task in queue.get_pending_tasks()]
            for task_id in blocked:
                queue.fail_task(task_id, UNSCHEDULABLE_ERROR)
            if blocked:
                log.warning("Tasks could not be scheduled", task_ids=blocked)

        await self._save_checkpoint(
            session_id,
            "aborted" if aborted else "completed",
            queue,
            results,
            plan,
            started_at,
        )

        ordered = [results[task_id] for task_id in plan.order if task_id in results]
        ordered.extend(result for task_id, result in results.items() if task_id not in rank)
        failed = [
            task.id
            for task in queue.get_tasks()
            if task.status == TaskStatus.FAILED and task.id not in blocked
        ]
        run_result = RunResult(
            session_id=session_id,
            plan=plan,
            results=results,
            completion_order=queue.get_completion_order(),
            failed_tasks=failed,
            blocked_tasks=blocked,
            aggregated_output=aggregate_results(ordered, aggregation),
            summary=queue.get_summary(),
            aborted=aborted,
            resumed=resumed,
        )
        log.info("Run finished", session_id=session_id, aborted=aborted, **run_result.summary)
        return run_result
