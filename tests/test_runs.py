import pytest

from longhaul.config_loader import ConfigurationError
from longhaul.runs import (
    RUN_KINDS,
    initializer_prompt,
    make_payload,
    read_paths,
    specification_text,
    summarize,
    working_prompt,
)
from longhaul.state import PlanPayload, RunState, ScaffoldPayload, Task
from longhaul.store import RunStore


def _state(tmp_path, payload, **kwargs):
    return RunState(project_dir=str(tmp_path), model="m", payload=payload, **kwargs)


def test_every_run_type_has_a_kind():
    assert set(RUN_KINDS) == {"builder", "migrator", "scaffold", "bugfix", "feature", "refactor", "plan"}


def test_unknown_run_type():
    with pytest.raises(ConfigurationError):
        make_payload("deploy", spec_text="x")


@pytest.mark.parametrize("run_type", ["builder", "scaffold", "feature", "bugfix", "plan"])
def test_text_runs_need_a_specification(run_type):
    with pytest.raises(ConfigurationError):
        make_payload(run_type)


def test_missing_spec_file(tmp_path):
    with pytest.raises(ConfigurationError):
        make_payload("builder", spec_file=str(tmp_path / "nope.md"))


def test_migrator_and_refactor_need_their_inputs():
    with pytest.raises(ConfigurationError):
        make_payload("migrator", source_dir="src")
    with pytest.raises(ConfigurationError):
        make_payload("refactor", target="src/db")

    migrator = make_payload("migrator", source_dir="legacy", target_dir="src")
    assert migrator.migration_type == "general"
    assert read_paths(migrator) == ["legacy"]


def test_plan_name_comes_from_file(tmp_path):
    plan = tmp_path / "launch-checklist.md"
    plan.write_text("1. Ship it\n")

    payload = make_payload("plan", spec_file=str(plan))

    assert isinstance(payload, PlanPayload)
    assert payload.plan_name == "launch-checklist"
    assert specification_text(payload) == "1. Ship it"


def test_scaffold_defaults_and_overrides():
    default = make_payload("scaffold", spec_text="A UI kit", reference_dir="../kit", additional_read_paths=["../docs"])
    assert default.verification_commands == ["pnpm typecheck", "pnpm build"]
    assert read_paths(default) == ["../kit", "../docs"]

    custom = make_payload("scaffold", spec_text="A UI kit", verification_commands=["npm test"])
    assert custom.verification_commands == ["npm test"]


def test_plan_keeps_three_recent_summaries():
    payload = PlanPayload(plan_name="p")
    for i in range(5):
        payload.remember(f"session {i}")
    assert payload.recent_summaries == ["session 2", "session 3", "session 4"]


def test_completion_phrases():
    assert RUN_KINDS["builder"].is_completion_text("Great. ALL TASKS COMPLETED!")
    assert RUN_KINDS["bugfix"].is_completion_text("The bug is resolved.")
    assert not RUN_KINDS["bugfix"].is_completion_text("migration complete")
    assert RUN_KINDS["migrator"].is_completion_text("Migration complete.")


def test_initializer_prompt_points_at_run_task_file(tmp_path):
    store = RunStore(tmp_path)
    state = _state(tmp_path, make_payload("feature", spec_text="Add dark mode"))

    prompt = initializer_prompt(state, store)

    assert ".longhaul/default/tasks.json" in prompt
    assert "Add dark mode" in prompt
    assert "Feature Initializer" in prompt


def test_working_prompt_names_task_and_notes(tmp_path):
    store = RunStore(tmp_path, "web")
    state = _state(tmp_path, make_payload("builder", spec_text="todo"), initialized=True, session_count=4)
    tasks = [
        Task(id="task-001", description="Setup", status="completed"),
        Task(id="task-002", description="List view", verification_command="npm test", notes="Tests failed before"),
    ]

    prompt = working_prompt(state, store, tasks, tasks[1], guidance="Fix the following issues:")

    assert "Session 5" in prompt
    assert "**task-002**: List view" in prompt
    assert "Verify with: `npm test`" in prompt
    assert "Tests failed before" in prompt
    assert "Fix the following issues:" in prompt
    assert "1/2 completed (50%)" in prompt
    assert ".longhaul/web/tasks.json" in prompt
    assert "All tasks completed" in prompt


def test_working_prompt_carries_run_depth(tmp_path):
    store = RunStore(tmp_path)
    payload = make_payload("bugfix", spec_text="crash on save")

    quick = working_prompt(_state(tmp_path, payload, initialized=True, depth="quick"), store, [], None)
    assert "## Depth: quick" in quick
    assert "minimal" in quick

    default = working_prompt(_state(tmp_path, payload, initialized=True), store, [], None)
    assert "## Depth: thorough" in default


def test_working_prompt_run_type_extras(tmp_path):
    store = RunStore(tmp_path)
    plan = PlanPayload(plan_name="p", plan_content="steps", recent_summaries=["Wired the router."])
    prompt = working_prompt(_state(tmp_path, plan, initialized=True), store, [], None)
    assert "Wired the router." in prompt

    scaffold = ScaffoldPayload(spec_text="kit")
    prompt = working_prompt(_state(tmp_path, scaffold, initialized=True), store, [], None)
    assert "pnpm typecheck, pnpm build" in prompt


def test_system_prompt_uses_run_paths(tmp_path):
    prompt = RUN_KINDS["refactor"].system_prompt(RunStore(tmp_path, "db"))
    assert ".longhaul/db/tasks.json" in prompt
    assert prompt.startswith("You are refactoring")


def test_summarize():
    assert summarize("") == "(no output)"
    assert summarize("First.\n\nDid the   thing\nacross lines.") == "Did the thing across lines."
    assert summarize("x" * 400, limit=50) == "x" * 47 + "..."
