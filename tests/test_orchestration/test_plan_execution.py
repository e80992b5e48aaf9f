import pytest

from codecrew.exceptions import CircularDependencyError
from codecrew.planner import (
    PIPELINE_MAX_PARALLELISM,
    ExecutionStrategy,
    UnresolvedDependency,
    dependency_levels,
    plan_execution,
)
from codecrew.task_queue import TaskPriority, TaskSpec


def _assert_topological(order: list[str], tasks: list[dict]) -> None:
    position = {task_id: idx for idx, task_id in enumerate(order)}
    for task in tasks:
        for dep in task.get("dependencies", []):
            if dep in position:
                assert position[dep] < position[task["id"]], f"{dep} must precede {task['id']}"


def test_parallel_plan():
    tasks = [{"description": "a"}, {"description": "b"}, {"description": "c"}]
    plan = plan_execution(tasks, "parallel")

    assert plan.strategy == ExecutionStrategy.PARALLEL
    assert plan.order == ["task-0", "task-1", "task-2"]
    assert plan.max_parallelism == 3
    assert plan.estimated_time_ms == 100


def test_sequential_plan():
    plan = plan_execution([{"description": "a"}, {"description": "b"}], ExecutionStrategy.SEQUENTIAL)

    assert plan.order == ["task-0", "task-1"]
    assert plan.max_parallelism == 1
    assert plan.estimated_time_ms == 200


def test_empty_task_set():
    for strategy in ExecutionStrategy:
        plan = plan_execution([], strategy)
        assert plan.order == []
        assert plan.estimated_time_ms == 0


def test_priority_plan_is_stable():
    tasks = [
        {"id": "low-1", "description": "x", "priority": "low"},
        {"id": "med-1", "description": "x"},
        {"id": "high-1", "description": "x", "priority": "high"},
        {"id": "low-2", "description": "x", "priority": "low"},
        {"id": "high-2", "description": "x", "priority": "high"},
    ]
    plan = plan_execution(tasks, "priority-based")

    assert plan.order == ["high-1", "high-2", "med-1", "low-1", "low-2"]
    assert plan.max_parallelism == 5
    assert plan.estimated_time_ms == 400


def test_pipeline_places_independent_tasks_before_dependents():
    tasks = [
        {"id": "A", "description": "a", "dependencies": []},
        {"id": "B", "description": "b", "dependencies": ["A"]},
        {"id": "C", "description": "c", "dependencies": []},
    ]
    plan = plan_execution(tasks, "pipeline")

    assert plan.order == ["A", "C", "B"]
    assert plan.max_parallelism == PIPELINE_MAX_PARALLELISM == 2
    assert plan.estimated_time_ms == 270


def test_pipeline_order_is_topological_for_a_diamond():
    tasks = [
        {"id": "deploy", "description": "d", "dependencies": ["test", "docs"]},
        {"id": "test", "description": "t", "dependencies": ["build"]},
        {"id": "docs", "description": "o", "dependencies": ["build"]},
        {"id": "build", "description": "b"},
    ]
    plan = plan_execution(tasks, "pipeline")

    assert sorted(plan.order) == sorted(task["id"] for task in tasks)
    _assert_topological(plan.order, tasks)


def test_pipeline_cycle_raises():
    tasks = [
        {"id": "A", "description": "a", "dependencies": ["C"]},
        {"id": "B", "description": "b", "dependencies": ["A"]},
        {"id": "C", "description": "c", "dependencies": ["B"]},
        {"id": "D", "description": "d"},
    ]
    with pytest.raises(CircularDependencyError) as exc_info:
        plan_execution(tasks, "pipeline")

    assert set(exc_info.value.task_ids) == {"A", "B", "C"}


def test_non_pipeline_strategies_ignore_cycles():
    tasks = [
        {"id": "A", "description": "a", "dependencies": ["B"]},
        {"id": "B", "description": "b", "dependencies": ["A"]},
    ]
    assert plan_execution(tasks, "sequential").order == ["A", "B"]


def test_unresolved_dependencies_are_reported_and_task_kept():
    tasks = [
        {"id": "A", "description": "a", "dependencies": ["ghost"]},
        {"id": "B", "description": "b", "dependencies": ["A"]},
    ]
    plan = plan_execution(tasks, "pipeline")

    assert plan.order == ["A", "B"]
    assert plan.unresolved_dependencies == [UnresolvedDependency(task_id="A", dependency="ghost")]


def test_numeric_dependencies_refer_to_input_position():
    tasks = [
        {"description": "second", "dependencies": ["1"]},
        {"description": "first"},
    ]
    plan = plan_execution(tasks, "pipeline")

    assert plan.order == ["task-1", "task-0"]
    assert plan.unresolved_dependencies == []


def test_accepts_task_specs():
    specs = [
        TaskSpec(description="a", id="a", priority=TaskPriority.LOW),
        TaskSpec(description="b", id="b", priority=TaskPriority.HIGH),
    ]
    assert plan_execution(specs, "priority-based").order == ["b", "a"]


def test_unknown_strategy_raises_value_error():
    with pytest.raises(ValueError):
        plan_execution([{"description": "a"}], "random")


def test_plan_is_deterministic():
    tasks = [
        {"id": "x", "description": "x", "dependencies": ["y"]},
        {"id": "y", "description": "y"},
        {"id": "z", "description": "z"},
    ]
    assert plan_execution(tasks, "pipeline") == plan_execution(tasks, "pipeline")


def test_dependency_levels_group_by_depth():
    graph = {"A": [], "B": ["A"], "C": [], "D": ["B", "C"]}
    assert dependency_levels(["A", "B", "C", "D"], graph) == [["A", "C"], ["B"], ["D"]]


def test_plan_to_dict():
    plan = plan_execution([{"id": "A", "description": "a", "dependencies": ["Z"]}], "sequential")
    assert plan.to_dict() == {
        "strategy": "sequential",
        "order": ["A"],
        "max_parallelism": 1,
        "estimated_time_ms": 100,
        "unresolved_dependencies": [{"task_id": "A", "dependency": "Z"}],
    }
