"""Task selection and progress over a task list. Pure functions, no caching."""

from __future__ import annotations

from dataclasses import asdict, dataclass

from longhaul.state import Task

SATISFIED_STATUSES = frozenset({"completed", "skipped"})


@dataclass(frozen=True)
class Progress:
    total: int = 0
    completed: int = 0
    pending: int = 0
    in_progress: int = 0
    blocked: int = 0
    skipped: int = 0
    percentage: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def dependencies_satisfied(task: Task, tasks: list[Task]) -> bool:
    """A dependency that does not exist in the list is never satisfied."""
    status_by_id = {t.id: t.status for t in tasks}
    return all(status_by_id.get(dep) in SATISFIED_STATUSES for dep in task.dependencies)


def next_eligible(tasks: list[Task]) -> Task | None:
    """First pending task, in list order, whose dependencies are completed or skipped."""
    for task in tasks:
        if task.status == "pending" and dependencies_satisfied(task, tasks):
            return task
    return None


def progress(tasks: list[Task]) -> Progress:
    counts = {status: 0 for status in ("pending", "in_progress", "completed", "skipped", "blocked")}
    for task in tasks:
        counts[task.status] += 1
    total = len(tasks)
    return Progress(
        total=total,
        completed=counts["completed"],
        pending=counts["pending"],
        in_progress=counts["in_progress"],
        blocked=counts["blocked"],
        skipped=counts["skipped"],
        percentage=round(counts["completed"] / total * 100) if total else 0,
    )


def is_run_complete(tasks: list[Task]) -> bool:
    return bool(tasks) and all(t.status in SATISFIED_STATUSES for t in tasks)


def revert_premature(tasks: list[Task]) -> list[str]:
    """
    Put tasks marked in_progress/completed back to pending while any of
    their dependencies is unsatisfied. Repeats until nothing changes, since
    reopening one task can unsatisfy its dependents. Returns reopened ids.
    """
    reopened: list[str] = []
    changed = True
    while changed:
        changed = False
        for task in tasks:
            if task.status in ("in_progress", "completed") and not dependencies_satisfied(task, tasks):
                task.status = "pending"
                task.completed_at = None
                reopened.append(task.id)
                changed = True
    return reopened


def is_stalled(tasks: list[Task]) -> bool:
    """Work remains but nothing can be picked: everything left is blocked or waiting on blocked."""
    if not tasks or is_run_complete(tasks):
        return False
    if any(t.status == "in_progress" for t in tasks):
        return False
    return next_eligible(tasks) is None
