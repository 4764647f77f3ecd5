"""
Run-type dispatch.

Run types share one task/session shape and differ only in payload, the
wording of their prompts, and the phrases that count as "done". Each type
is a RunKind entry in RUN_KINDS keyed by the payload's `type` tag.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from longhaul.config_loader import ConfigurationError
from longhaul.scheduler import progress
from longhaul.state import (
    BugfixPayload,
    BuilderPayload,
    FeaturePayload,
    MigratorPayload,
    PlanPayload,
    RefactorPayload,
    RunPayload,
    RunState,
    RunType,
    ScaffoldPayload,
    Task,
)
from longhaul.store import RunStore

# ---------------------------------------------------------------------------
# System prompts
# ---------------------------------------------------------------------------

_BASE_SYSTEM_PROMPT = """You are an expert software engineer working across many independent sessions.

You understand that:
- Each session is independent. You have no memory of previous sessions.
- {tasks_file} is the source of truth for progress.
- {progress_file} and git history show what was done before.

You always:
- Read {tasks_file} before doing anything else
- Work on ONE task at a time and verify it before moving on
- Update the task's status in {tasks_file} when you finish or get stuck
- Commit progress with a descriptive message
- Leave the project in a working state before the session ends

You never:
- Mark a task completed without verifying it
- Start a task whose dependencies are not completed
- Delete tasks from {tasks_file}
"""

_ROLE_PROMPTS: dict[str, str] = {
    "builder": "You are building a complete application from a specification.",
    "migrator": "You are migrating code from one form to another, file by file, preserving behavior.",
    "scaffold": (
        "You are scaffolding a new project or package.\n"
        "When a reference directory is provided, read it first and adapt its patterns, do not copy blindly."
    ),
    "bugfix": "You are diagnosing and fixing a bug. Reproduce it first, fix the root cause, then prove the fix.",
    "feature": "You are implementing a feature in an existing codebase, following its conventions.",
    "refactor": "You are refactoring code without changing behavior. Tests must pass before and after every step.",
    "plan": "You are executing a written implementation plan step by step.",
}


# ---------------------------------------------------------------------------
# Goal sections (what the initializer breaks down into tasks)
# ---------------------------------------------------------------------------

def _builder_goal(p: BuilderPayload) -> str:
    source = f" (from {p.spec_file})" if p.spec_file else ""
    return f"## Specification{source}\n\n{p.spec_text}"


def _migrator_goal(p: MigratorPayload) -> str:
    return (
        f"## Migration\n\n"
        f"- Type: {p.migration_type}\n"
        f"- Source directory: {p.source_dir}\n"
        f"- Target directory: {p.target_dir}\n\n"
        f"Create one task per file (or tightly coupled file group), ordered so that "
        f"files are migrated after the files they import."
    )


def _scaffold_goal(p: ScaffoldPayload) -> str:
    lines = ["## Specification", "", p.spec_text or f"Read the specification from: {p.spec_file}"]
    if p.reference_dir:
        lines += ["", "## Reference implementation", "", f"Study the patterns in {p.reference_dir} before planning."]
    if p.additional_read_paths:
        lines += ["", "Additional read-only paths: " + ", ".join(p.additional_read_paths)]
    lines += ["", "Final verification commands: " + ", ".join(p.verification_commands)]
    return "\n".join(lines)


def _bugfix_goal(p: BugfixPayload) -> str:
    return f"## Bug report\n\n```\n{p.error_text}\n```\n\nStart with a task that reproduces the bug."


def _feature_goal(p: FeaturePayload) -> str:
    return f"## Feature\n\n{p.spec_text}"


def _refactor_goal(p: RefactorPayload) -> str:
    return f"## Refactor\n\n- Target: {p.target}\n- Goal: {p.goal}"


def _plan_goal(p: PlanPayload) -> str:
    source = f" (from {p.plan_file})" if p.plan_file else ""
    return f"## Plan: {p.plan_name}{source}\n\n{p.plan_content}"


@dataclass(frozen=True)
class RunKind:
    name: RunType
    title: str
    goal: Callable[[Any], str]
    completion_phrases: tuple[str, ...]

    def system_prompt(self, store: RunStore) -> str:
        base = _BASE_SYSTEM_PROMPT.format(
            tasks_file=store.relative(store.tasks_path),
            progress_file=store.relative(store.progress_path),
        )
        return f"{_ROLE_PROMPTS[self.name]}\n\n{base}"

    def is_completion_text(self, text: str) -> bool:
        lower = text.lower()
        return any(phrase in lower for phrase in self.completion_phrases)


_COMMON_PHRASES = ("all tasks completed", "all tasks complete", "100% complete")

RUN_KINDS: dict[RunType, RunKind] = {
    "builder": RunKind(
        "builder", "Builder", _builder_goal,
        _COMMON_PHRASES + ("all features passing", "all tests passing", "project complete", "implementation complete"),
    ),
    "migrator": RunKind(
        "migrator", "Migrator", _migrator_goal,
        _COMMON_PHRASES + ("migration complete", "all migrations complete"),
    ),
    "scaffold": RunKind(
        "scaffold", "Scaffold", _scaffold_goal,
        _COMMON_PHRASES + ("scaffold complete", "scaffolding complete", "project setup complete", "package setup complete"),
    ),
    "bugfix": RunKind(
        "bugfix", "Bugfix", _bugfix_goal,
        _COMMON_PHRASES + ("fix verified", "bug fixed", "bug is resolved", "successfully fixed"),
    ),
    "feature": RunKind(
        "feature", "Feature", _feature_goal,
        _COMMON_PHRASES + ("feature implementation complete", "implementation complete", "feature complete"),
    ),
    "refactor": RunKind(
        "refactor", "Refactor", _refactor_goal,
        _COMMON_PHRASES + ("refactoring complete", "refactor complete", "successfully refactored"),
    ),
    "plan": RunKind(
        "plan", "Plan", _plan_goal,
        _COMMON_PHRASES + ("plan complete", "plan execution complete"),
    ),
}


def kind_for(state: RunState) -> RunKind:
    return RUN_KINDS[state.run_type]


# ---------------------------------------------------------------------------
# Payload construction
# ---------------------------------------------------------------------------

def _read_text(path: str | None, what: str) -> str:
    if not path:
        return ""
    file = Path(path).expanduser()
    if not file.is_file():
        raise ConfigurationError(f"{what} not found: {path}")
    return file.read_text(encoding="utf-8")


def make_payload(
    run_type: str,
    *,
    spec_file: str | None = None,
    spec_text: str | None = None,
    source_dir: str | None = None,
    target_dir: str | None = None,
    migration_type: str | None = None,
    reference_dir: str | None = None,
    additional_read_paths: list[str] | None = None,
    verification_commands: list[str] | None = None,
    target: str | None = None,
    goal: str | None = None,
    plan_name: str | None = None,
) -> RunPayload:
    """Build a payload for a new run, raising ConfigurationError if required input is missing."""
    if run_type not in RUN_KINDS:
        raise ConfigurationError(f"Unknown run type: {run_type}. Known: {list(RUN_KINDS)}")

    text = (spec_text or "").strip() or _read_text(spec_file, "Specification file").strip()

    if run_type in ("builder", "scaffold", "feature", "bugfix", "plan") and not text:
        raise ConfigurationError(f"A {run_type} run needs a specification (--spec or --spec-file)")

    if run_type == "builder":
        return BuilderPayload(spec_file=spec_file, spec_text=text)
    if run_type == "scaffold":
        extra = {"verification_commands": verification_commands} if verification_commands else {}
        return ScaffoldPayload(
            spec_file=spec_file,
            spec_text=text,
            reference_dir=reference_dir,
            additional_read_paths=additional_read_paths or [],
            **extra,
        )
    if run_type == "feature":
        return FeaturePayload(spec_text=text)
    if run_type == "bugfix":
        return BugfixPayload(error_text=text)
    if run_type == "plan":
        name = plan_name or (Path(spec_file).stem if spec_file else "plan")
        return PlanPayload(plan_name=name, plan_file=spec_file, plan_content=text)
    if run_type == "migrator":
        if not source_dir or not target_dir:
            raise ConfigurationError("A migrator run needs --source and --target directories")
        return MigratorPayload(
            source_dir=source_dir,
            target_dir=target_dir,
            migration_type=migration_type or "general",
        )
    if not target or not goal:
        raise ConfigurationError("A refactor run needs --target and --goal")
    return RefactorPayload(target=target, goal=goal)


def specification_text(payload: RunPayload) -> str:
    """The free text permissions are inferred from."""
    if isinstance(payload, (BuilderPayload, ScaffoldPayload, FeaturePayload)):
        return payload.spec_text
    if isinstance(payload, BugfixPayload):
        return payload.error_text
    if isinstance(payload, PlanPayload):
        return payload.plan_content
    if isinstance(payload, RefactorPayload):
        return f"{payload.target}\n{payload.goal}"
    return payload.migration_type


def read_paths(payload: RunPayload) -> list[str]:
    """Directories outside the project the executor may read."""
    if isinstance(payload, ScaffoldPayload):
        paths = list(payload.additional_read_paths)
        if payload.reference_dir:
            paths.insert(0, payload.reference_dir)
        return paths
    if isinstance(payload, MigratorPayload):
        return [payload.source_dir]
    return []


# ---------------------------------------------------------------------------
# Session prompts
# ---------------------------------------------------------------------------

_TASK_FORMAT = """```json
[
  {
    "id": "task-001",
    "description": "Create package.json with dependencies",
    "status": "pending",
    "dependencies": [],
    "verification_command": "npm run build"
  },
  {
    "id": "task-002",
    "description": "Add the user model and its tests",
    "status": "pending",
    "dependencies": ["task-001"],
    "verification_command": "npm test -- user",
    "verification_pattern": "passed"
  }
]
```"""


_DEPTH_GUIDANCE = {
    "quick": "Keep changes minimal and focused. Run the task's own check before marking it done.",
    "standard": "Make complete changes. Run the task's check, type checks and the build before marking it done.",
    "thorough": "Be exhaustive. Run the full test suite, type checks, lint and the build before marking it done.",
}


def initializer_prompt(state: RunState, store: RunStore) -> str:
    kind = kind_for(state)
    tasks_file = store.relative(store.tasks_path)
    return f"""# {kind.title} Initializer - Session 1

You are setting up a long-running {kind.name} run in {state.project_dir}.

{kind.goal(state.payload)}

## Your job this session

1. Understand the goal above and explore the project.
2. Break the work into 10-30 concrete, independently verifiable tasks.
3. Write them to `{tasks_file}` in exactly this format:

{_TASK_FORMAT}

Rules:
- Every task starts with "status": "pending".
- Order tasks so dependencies come first; list dependency ids in "dependencies".
- Give a "verification_command" whenever a shell command can prove the task works.
- "verification_pattern" is an optional regex the command output must match.

Do not start implementing tasks in this session. The next session will begin executing them.
"""


def working_prompt(
    state: RunState,
    store: RunStore,
    tasks: list[Task],
    task: Task | None,
    guidance: str = "",
) -> str:
    kind = kind_for(state)
    p = progress(tasks)
    tasks_file = store.relative(store.tasks_path)
    progress_file = store.relative(store.progress_path)
    session = state.session_count + 1

    sections = [
        f"# {kind.title} Worker - Session {session}",
        "",
        f"Continue the {kind.name} run in {state.project_dir}.",
        "",
        "## Progress",
        f"- Tasks: {p.completed}/{p.total} completed ({p.percentage}%)",
        f"- Remaining: {p.pending + p.in_progress + p.blocked} (blocked: {p.blocked})",
        "",
        f"## Depth: {state.depth}",
        _DEPTH_GUIDANCE[state.depth],
        "",
        "## Get your bearings",
        "```bash",
        "git log --oneline -10",
        f"cat {progress_file}",
        f"cat {tasks_file}",
        "```",
    ]

    if task is not None:
        sections += ["", "## Your task", f"**{task.id}**: {task.description}"]
        if task.verification_command:
            sections.append(f"Verify with: `{task.verification_command}`")
        if task.notes:
            sections += ["", "Notes from earlier attempts:", task.notes]
    else:
        sections += ["", f"Pick the next pending task in `{tasks_file}` whose dependencies are completed."]

    if guidance:
        sections += ["", guidance]

    if isinstance(state.payload, PlanPayload) and state.payload.recent_summaries:
        sections += ["", "## Recent sessions"]
        sections += [f"- {s}" for s in state.payload.recent_summaries]

    sections += [
        "",
        "## Before the session ends",
        f"- Set the task's status in `{tasks_file}` to completed (with completed_at) or blocked (with notes).",
        "- Commit your work.",
        "- When every task is completed, say \"All tasks completed\".",
        "",
        "Work on ONE task. Leave the project in a working state.",
    ]

    if isinstance(state.payload, ScaffoldPayload):
        sections.insert(-2, "- When all tasks are done, run: " + ", ".join(state.payload.verification_commands))

    return "\n".join(sections)


def summarize(text: str, limit: int = 300) -> str:
    """Last paragraph of a session's narration, trimmed for bounded context."""
    paragraphs = [chunk.strip() for chunk in text.strip().split("\n\n") if chunk.strip()]
    if not paragraphs:
        return "(no output)"
    last = " ".join(paragraphs[-1].split())
    return last if len(last) <= limit else last[: limit - 3] + "..."
