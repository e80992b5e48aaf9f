from codecrew.task_queue import Task, TaskPriority, TaskQueue, TaskSpec, TaskStatus


def _spec(description: str, *dependencies: str, **kwargs) -> TaskSpec:
    return TaskSpec(description=description, dependencies=list(dependencies), **kwargs)


def test_auto_assigned_ids_follow_insertion_order():
    queue = TaskQueue()
    first = queue.add_task(_spec("first"))
    explicit = queue.add_task(_spec("second"), id_override="custom")
    third = queue.add_task(_spec("third"))

    assert first == "task-0"
    assert explicit == "custom"
    assert third == "task-2"
    assert [task.id for task in queue.get_tasks()] == ["task-0", "custom", "task-2"]


def test_auto_id_skips_ids_already_taken():
    queue = TaskQueue()
    queue.add_task(_spec("claims task-2"), id_override="task-2")

    assert queue.add_task(_spec("auto")) == "task-1"
    assert queue.add_task(_spec("auto again")) == "task-3"
    assert len(queue) == 3


def test_spec_id_used_when_no_override():
    queue = TaskQueue()
    assert queue.add_task(_spec("a", id="alpha")) == "alpha"
    assert "alpha" in queue


def test_ready_tasks_require_completed_dependencies():
    queue = TaskQueue()
    a = queue.add_task(_spec("A"), id_override="A")
    queue.add_task(_spec("B", "A"), id_override="B")
    queue.add_task(_spec("C"), id_override="C")

    assert [task.id for task in queue.get_ready_tasks()] == ["A", "C"]

    queue.start_task(a)
    assert [task.id for task in queue.get_ready_tasks()] == ["C"]

    queue.complete_task(a, "done")
    assert [task.id for task in queue.get_ready_tasks()] == ["B", "C"]


def test_missing_dependency_is_never_satisfied():
    queue = TaskQueue()
    queue.add_task(_spec("orphan", "ghost"), id_override="orphan")

    assert queue.get_ready_tasks() == []
    assert [task.id for task in queue.get_blocked_tasks()] == ["orphan"]


def test_failed_dependency_blocks_transitively():
    queue = TaskQueue()
    queue.add_task(_spec("A"), id_override="A")
    queue.add_task(_spec("B", "A"), id_override="B")
    queue.add_task(_spec("C", "B"), id_override="C")

    queue.fail_task("A", "boom")

    assert queue.get_ready_tasks() == []
    assert {task.id for task in queue.get_blocked_tasks()} == {"B", "C"}


def test_unknown_ids_are_ignored():
    queue = TaskQueue()
    queue.add_task(_spec("A"), id_override="A")
    before = queue.get_task("A").to_dict()

    queue.complete_task("nope", "x")
    queue.fail_task("nope", "y")
    assert queue.start_task("nope") is False

    assert queue.get_task("A").to_dict() == before
    assert queue.get_completion_order() == []
    assert len(queue) == 1


def test_status_never_moves_backward():
    queue = TaskQueue()
    queue.add_task(_spec("A"), id_override="A")
    queue.add_task(_spec("B"), id_override="B")

    queue.complete_task("A", "first")
    queue.fail_task("A", "late failure")
    queue.complete_task("A", "duplicate")
    assert queue.start_task("A") is False

    task = queue.get_task("A")
    assert task.status == TaskStatus.COMPLETED
    assert task.result == "first"
    assert queue.get_completion_order() == ["A"]

    queue.fail_task("B", "broken")
    queue.complete_task("B", "too late")
    assert queue.get_task("B").status == TaskStatus.FAILED
    assert queue.get_task("B").error == "broken"


def test_completion_order_records_complete_calls():
    queue = TaskQueue()
    for name in ("A", "B", "C"):
        queue.add_task(_spec(name), id_override=name)

    queue.complete_task("C")
    queue.complete_task("A")
    queue.fail_task("B", "x")

    assert queue.get_completion_order() == ["C", "A"]
    assert queue.is_complete
    assert queue.get_summary() == {
        "pending": 0,
        "in_progress": 0,
        "completed": 2,
        "failed": 1,
        "total": 3,
    }


def test_task_round_trip_through_dict():
    task = Task(
        id="t1",
        description="write docs",
        priority=TaskPriority.HIGH,
        dependencies={"t0"},
        status=TaskStatus.COMPLETED,
        result="ok",
    )
    restored = Task.from_dict(task.to_dict())

    assert restored.id == "t1"
    assert restored.priority == TaskPriority.HIGH
    assert restored.dependencies == {"t0"}
    assert restored.status == TaskStatus.COMPLETED


def test_restore_task_keeps_completed_in_completion_order():
    queue = TaskQueue()
    queue.restore_task(Task(id="A", description="a", status=TaskStatus.COMPLETED))
    queue.restore_task(Task(id="B", description="b", dependencies={"A"}))

    assert queue.get_completion_order() == ["A"]
    assert [task.id for task in queue.get_ready_tasks()] == ["B"]


def test_restore_task_restarts_interrupted_work():
    interrupted = Task(id="A", description="a", status=TaskStatus.IN_PROGRESS, started_at=12.5)
    queue = TaskQueue()
    queue.restore_task(interrupted)

    restored = queue.get_task("A")
    assert restored.status == TaskStatus.PENDING
    assert restored.started_at == 0.0
    assert interrupted.status == TaskStatus.IN_PROGRESS
    assert [task.id for task in queue.get_ready_tasks()] == ["A"]

    kept = TaskQueue()
    kept.restore_task(interrupted, restart_in_progress=False)
    assert kept.get_task("A").status == TaskStatus.IN_PROGRESS
    assert kept.get_ready_tasks() == []


def test_task_spec_from_dict_defaults():
    spec = TaskSpec.from_dict({"description": "x", "dependencies": [0, "task-1"]})

    assert spec.priority == TaskPriority.MEDIUM
    assert spec.dependencies == ["0", "task-1"]
    assert spec.id is None
