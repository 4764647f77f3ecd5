import json

import pytest

from longhaul.config_loader import ConfigurationError
from longhaul.state import PlanPayload, RunState, Task, VerificationRecord
from longhaul.store import RunStore, atomic_write, list_runs, parse_tasks


def _state(tmp_path, **kwargs):
    return RunState(
        project_dir=str(tmp_path),
        model="anthropic/claude-sonnet-4-5",
        payload=PlanPayload(plan_name="launch", plan_content="# Launch"),
        **kwargs,
    )


def test_state_round_trip_keeps_payload_type(tmp_path):
    store = RunStore(tmp_path)
    store.ensure()
    store.save_state(_state(tmp_path, session_count=4))

    loaded = store.load_state()

    assert loaded.session_count == 4
    assert loaded.run_type == "plan"
    assert isinstance(loaded.payload, PlanPayload)
    assert loaded.payload.plan_name == "launch"


def test_missing_and_malformed_state_read_as_absent(tmp_path):
    store = RunStore(tmp_path)
    assert store.load_state() is None

    store.ensure()
    store.state_path.write_text("{not json")
    assert store.load_state() is None

    store.state_path.write_text(json.dumps({"project_dir": "x"}))
    assert store.load_state() is None


def test_tasks_accept_list_or_wrapped_form(tmp_path):
    store = RunStore(tmp_path)
    store.ensure()

    store.tasks_path.write_text(json.dumps([{"id": "a", "description": "first"}]))
    assert [t.id for t in store.load_tasks()] == ["a"]

    store.tasks_path.write_text(json.dumps({"tasks": [{"id": "b", "description": "second", "status": "completed"}]}))
    assert store.load_tasks()[0].status == "completed"


def test_malformed_tasks_read_as_empty(tmp_path):
    assert parse_tasks(None) == []
    assert parse_tasks("tasks") == []
    assert parse_tasks([{"id": "a"}]) == []
    assert parse_tasks([{"id": "a", "description": "x", "status": "done"}]) == []


def test_save_tasks_omits_unset_fields(tmp_path):
    store = RunStore(tmp_path)
    store.save_tasks([Task(id="a", description="first")])

    data = json.loads(store.tasks_path.read_text())

    assert data == [{"id": "a", "description": "first", "status": "pending", "dependencies": []}]


def test_atomic_write_leaves_no_temp_files(tmp_path):
    target = tmp_path / "nested" / "file.json"
    atomic_write(target, "one")
    atomic_write(target, "two")

    assert target.read_text() == "two"
    assert [p.name for p in target.parent.iterdir()] == ["file.json"]


def test_ensure_adds_gitignore_entry_once(tmp_path):
    (tmp_path / ".gitignore").write_text("node_modules/")

    RunStore(tmp_path, "first").ensure()
    RunStore(tmp_path, "second").ensure()

    assert (tmp_path / ".gitignore").read_text() == "node_modules/\n.longhaul/\n"


def test_progress_notes_are_appended(tmp_path):
    store = RunStore(tmp_path)
    store.append_progress("Session 1: set up\n")
    store.append_progress("Session 2: tests")

    lines = store.read_progress()

    assert len(lines) == 2
    assert lines[0].startswith("[") and lines[0].endswith("] Session 1: set up")
    assert store.read_progress(tail=1)[0].endswith("Session 2: tests")


def test_verification_records_round_trip(tmp_path):
    store = RunStore(tmp_path)
    record = VerificationRecord(task_id="feat/login", attempt=2, behavior_passed=False, quality_passed=True)
    store.save_verification(record)

    assert store.verification_path("feat/login").name == "feat_login.json"
    assert store.load_verification("feat/login").attempt == 2
    assert store.load_verification("other") is None


def test_invalid_run_name_is_rejected(tmp_path):
    with pytest.raises(ConfigurationError):
        RunStore(tmp_path, "../escape")


def test_check_rejects_file_in_place_of_run_dir(tmp_path):
    (tmp_path / ".longhaul").write_text("oops")
    with pytest.raises(ConfigurationError):
        RunStore(tmp_path).check()


def test_check_rejects_missing_project(tmp_path):
    with pytest.raises(ConfigurationError):
        RunStore(tmp_path / "nope").check()


def test_list_runs_and_discard(tmp_path):
    for name in ("beta", "alpha"):
        store = RunStore(tmp_path, name)
        store.ensure()
        store.save_state(_state(tmp_path))
    RunStore(tmp_path, "empty").ensure()

    assert list_runs(tmp_path) == ["alpha", "beta"]
    assert RunStore(tmp_path, "alpha").discard()
    assert not RunStore(tmp_path, "alpha").discard()
    assert list_runs(tmp_path) == ["beta"]
