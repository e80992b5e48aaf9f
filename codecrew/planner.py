"""Execution planning for multi-agent task sets.

``plan_execution`` is a pure function: given task descriptions and a
strategy it returns an ordering, a concurrency bound and a rough duration
estimate. The time model is a fixed per-task weight, not a simulation.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping

from codecrew.exceptions import CircularDependencyError
from codecrew.task_queue import Task, TaskPriority, TaskSpec

PARALLEL_TASK_WEIGHT_MS = 100
SEQUENTIAL_TASK_WEIGHT_MS = 100
PRIORITY_TASK_WEIGHT_MS = 80
PIPELINE_TASK_WEIGHT_MS = 90
# Pipelines are modelled as two overlapping stages, not a computed antichain.
PIPELINE_MAX_PARALLELISM = 2

_PRIORITY_RANK = {
    TaskPriority.HIGH: 0,
    TaskPriority.MEDIUM: 1,
    TaskPriority.LOW: 2,
}


class ExecutionStrategy(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"
    PRIORITY_BASED = "priority-based"
    PIPELINE = "pipeline"


@dataclass(frozen=True)
class UnresolvedDependency:
    task_id: str
    dependency: str


@dataclass(frozen=True)
class ExecutionPlan:
    """Ordering, concurrency bound and duration estimate for a task set."""

    strategy: ExecutionStrategy
    order: list[str]
    max_parallelism: int
    estimated_time_ms: int
    unresolved_dependencies: list[UnresolvedDependency] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "order": list(self.order),
            "max_parallelism": self.max_parallelism,
            "estimated_time_ms": self.estimated_time_ms,
            "unresolved_dependencies": [
                {"task_id": item.task_id, "dependency": item.dependency}
                for item in self.unresolved_dependencies
            ],
        }


@dataclass
class _PlanNode:
    id: str
    priority: TaskPriority
    dependencies: list[str]


PlanInput = TaskSpec | Task | Mapping[str, Any]


def _read(item: PlanInput, key: str, default: Any = None) -> Any:
    if isinstance(item, Mapping):
        return item.get(key, default)
    return getattr(item, key, default)


def normalize_nodes(tasks: Iterable[PlanInput]) -> list[_PlanNode]:
    """Assign ids and normalize dependency references.

    Tasks without an id become ``task-<index>``. A purely numeric
    dependency (``"0"``) that does not name a task directly refers to the
    task at that input position.
    """
    items = list(tasks)
    ids = [str(_read(item, "id") or f"task-{idx}") for idx, item in enumerate(items)]
    id_set = set(ids)

    def normalize(dep: Any) -> str:
        text = str(dep)
        if text in id_set:
            return text
        if text.isdigit() and int(text) < len(ids):
            return ids[int(text)]
        return text

    nodes: list[_PlanNode] = []
    for idx, item in enumerate(items):
        raw_priority = _read(item, "priority") or TaskPriority.MEDIUM
        priority = TaskPriority(getattr(raw_priority, "value", raw_priority))
        nodes.append(_PlanNode(
            id=ids[idx],
            priority=priority,
            dependencies=[normalize(dep) for dep in _read(item, "dependencies") or []],
        ))
    return nodes


def _split_dependencies(
    nodes: list[_PlanNode],
) -> tuple[dict[str, list[str]], list[UnresolvedDependency]]:
    """Separate resolvable edges from references to unknown tasks."""
    id_set = {node.id for node in nodes}
    graph: dict[str, list[str]] = {}
    unresolved: list[UnresolvedDependency] = []
    for node in nodes:
        resolved: list[str] = []
        for dep in node.dependencies:
            if dep in id_set:
                if dep not in resolved:
                    resolved.append(dep)
            else:
                unresolved.append(UnresolvedDependency(task_id=node.id, dependency=dep))
        graph[node.id] = resolved
    return graph, unresolved


def topological_order(task_ids: list[str], graph: dict[str, list[str]]) -> list[str]:
    """Kahn's algorithm with a FIFO frontier seeded in input order.

    Raises:
        CircularDependencyError if the graph has a cycle
    """
    in_degree = {tid: 0 for tid in task_ids}
    dependents: dict[str, list[str]] = {tid: [] for tid in task_ids}
    for tid in task_ids:
        for dep in graph.get(tid, []):
            in_degree[tid] += 1
            dependents[dep].append(tid)

    ready = deque(tid for tid in task_ids if in_degree[tid] == 0)
    order: list[str] = []
    while ready:
        current = ready.popleft()
        order.append(current)
        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                ready.append(dependent)

    if len(order) < len(task_ids):
        placed = set(order)
        raise CircularDependencyError([tid for tid in task_ids if tid not in placed])
    return order


def dependency_levels(task_ids: list[str], graph: dict[str, list[str]]) -> list[list[str]]:
    """Group tasks into levels whose members only depend on earlier levels."""
    done: set[str] = set()
    levels: list[list[str]] = []
    remaining = list(task_ids)
    while remaining:
        level = [tid for tid in remaining if all(dep in done for dep in graph.get(tid, []))]
        if not level:
            raise CircularDependencyError(remaining)
        levels.append(level)
        done.update(level)
        remaining = [tid for tid in remaining if tid not in done]
    return levels


def plan_execution(
    tasks: Iterable[PlanInput],
    strategy: ExecutionStrategy | str,
) -> ExecutionPlan:
    """Produce an execution plan for ``tasks`` under ``strategy``.

    Every task appears exactly once in ``order``. Dependencies on unknown
    tasks are reported in ``unresolved_dependencies`` and ignored for
    ordering.

    Raises:
        CircularDependencyError for the pipeline strategy on a cyclic graph
        ValueError for an unknown strategy name
    """
    strategy = ExecutionStrategy(strategy)
    nodes = normalize_nodes(tasks)
    graph, unresolved = _split_dependencies(nodes)
    ids = [node.id for node in nodes]
    count = len(nodes)

    if strategy == ExecutionStrategy.PARALLEL:
        order = ids
        max_parallelism = count
        estimated = PARALLEL_TASK_WEIGHT_MS if count else 0
    elif strategy == ExecutionStrategy.SEQUENTIAL:
        order = ids
        max_parallelism = 1
        estimated = SEQUENTIAL_TASK_WEIGHT_MS * count
    elif strategy == ExecutionStrategy.PRIORITY_BASED:
        # sorted() is stable, so equal priorities keep input order.
        order = [node.id for node in sorted(nodes, key=lambda node: _PRIORITY_RANK[node.priority])]
        max_parallelism = count
        estimated = PRIORITY_TASK_WEIGHT_MS * count
    else:
        order = topological_order(ids, graph)
        max_parallelism = PIPELINE_MAX_PARALLELISM
        estimated = PIPELINE_TASK_WEIGHT_MS * count

    return ExecutionPlan(
        strategy=strategy,
        order=order,
        max_parallelism=max_parallelism,
        estimated_time_ms=estimated,
        unresolved_dependencies=unresolved,
    )
