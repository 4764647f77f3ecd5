from itertools import product

from longhaul.scheduler import (
    Progress,
    dependencies_satisfied,
    is_run_complete,
    is_stalled,
    next_eligible,
    progress,
    revert_premature,
)
from longhaul.state import Task


def _task(task_id, status="pending", deps=()):
    return Task(id=task_id, description=f"do {task_id}", status=status, dependencies=list(deps))


def test_next_eligible_follows_list_order():
    tasks = [_task("a", "completed"), _task("b"), _task("c")]
    assert next_eligible(tasks).id == "b"


def test_next_eligible_waits_for_dependencies():
    tasks = [_task("a"), _task("b", deps=["a"])]
    assert next_eligible(tasks).id == "a"

    tasks = [_task("a", "in_progress"), _task("b", deps=["a"])]
    assert next_eligible(tasks) is None


def test_skipped_dependency_is_satisfied():
    tasks = [_task("a", "skipped"), _task("b", deps=["a"])]
    assert next_eligible(tasks).id == "b"


def test_missing_dependency_is_never_satisfied():
    tasks = [_task("b", deps=["ghost"])]
    assert not dependencies_satisfied(tasks[0], tasks)
    assert next_eligible(tasks) is None


def test_selected_task_always_has_satisfied_dependencies():
    statuses = ["pending", "in_progress", "completed", "skipped", "blocked"]
    for first, second in product(statuses, repeat=2):
        tasks = [_task("a", first), _task("b", second), _task("c", deps=["a", "b"]), _task("d", deps=["c"])]
        chosen = next_eligible(tasks)
        if chosen is None:
            continue
        assert chosen.status == "pending"
        assert dependencies_satisfied(chosen, tasks)


def test_progress_counts():
    tasks = [_task("a", "completed"), _task("b", "blocked"), _task("c")]
    p = progress(tasks)
    assert p == Progress(total=3, completed=1, pending=1, blocked=1, percentage=33)
    assert p.to_dict()["percentage"] == 33


def test_progress_of_empty_list():
    assert progress([]) == Progress()


def test_run_complete_needs_tasks():
    assert not is_run_complete([])
    assert is_run_complete([_task("a", "completed"), _task("b", "skipped")])
    assert not is_run_complete([_task("a", "completed"), _task("b", "blocked")])


def test_revert_premature_cascades():
    tasks = [
        _task("a"),
        _task("b", "completed", deps=["a"]),
        _task("c", "in_progress", deps=["b"]),
        _task("d", "completed"),
    ]
    tasks[1].completed_at = "2026-01-01T00:00:00+00:00"

    assert revert_premature(tasks) == ["b", "c"]
    assert [t.status for t in tasks] == ["pending", "pending", "pending", "completed"]
    assert tasks[1].completed_at is None
    assert revert_premature(tasks) == []


def test_stalled_when_only_blocked_work_remains():
    assert is_stalled([_task("a", "completed"), _task("b", "blocked")])
    assert is_stalled([_task("a", "blocked"), _task("b", deps=["a"])])
    assert not is_stalled([_task("a", "blocked"), _task("b")])
    assert not is_stalled([_task("a", "in_progress")])
    assert not is_stalled([])
    assert not is_stalled([_task("a", "completed")])
