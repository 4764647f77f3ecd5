"""
File-backed storage for one run.

Layout under <project>/.longhaul/<run name>/:

    state.json                 RunState
    tasks.json                 task list (the executor edits this directly)
    progress.txt               append-only session notes
    events.jsonl               audit trail (see audit_logger)
    sandbox.json               generated sandbox declaration
    verification/<task>.json   latest VerificationRecord per task

Every write replaces the whole file through a temp file and os.replace.
Unreadable files are logged and treated as absent.
"""

from __future__ import annotations

import json
import os
import re
import shutil
import tempfile
from datetime import datetime
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from longhaul.config_loader import STATE_DIR_NAME, ConfigurationError
from longhaul.state import RunState, Task, VerificationRecord

STATE_FILE = "state.json"
TASKS_FILE = "tasks.json"
PROGRESS_FILE = "progress.txt"
EVENTS_FILE = "events.jsonl"
SANDBOX_FILE = "sandbox.json"
VERIFICATION_DIR = "verification"

_RUN_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def atomic_write(path: Path, content: str) -> None:
    """Replace path with content in one step."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def _read_json(path: Path) -> object | None:
    if not path.is_file():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(f"[STORE] Ignoring unreadable {path.name}: {e}")
        return None


def parse_tasks(data: object) -> list[Task]:
    """Accept a bare list or {"tasks": [...]}; anything malformed yields []."""
    if isinstance(data, dict):
        data = data.get("tasks")
    if not isinstance(data, list):
        return []
    try:
        return [Task.model_validate(item) for item in data]
    except ValidationError as e:
        logger.warning(f"[STORE] Ignoring malformed task list: {e.error_count()} error(s)")
        return []


def list_runs(project_dir: Path) -> list[str]:
    """Names of runs with a state file under the project."""
    root = project_dir.resolve() / STATE_DIR_NAME
    if not root.is_dir():
        return []
    return sorted(p.name for p in root.iterdir() if (p / STATE_FILE).is_file())


class RunStore:
    """Paths and whole-file persistence for a single run directory."""

    def __init__(self, project_dir: Path, run_name: str = "default"):
        if not _RUN_NAME.match(run_name):
            raise ConfigurationError(f"Invalid run name: {run_name!r}")
        self.project_dir = project_dir.resolve()
        self.run_name = run_name
        self.root = self.project_dir / STATE_DIR_NAME
        self.run_dir = self.root / run_name

    # --- paths ---

    @property
    def state_path(self) -> Path:
        return self.run_dir / STATE_FILE

    @property
    def tasks_path(self) -> Path:
        return self.run_dir / TASKS_FILE

    @property
    def progress_path(self) -> Path:
        return self.run_dir / PROGRESS_FILE

    @property
    def events_path(self) -> Path:
        return self.run_dir / EVENTS_FILE

    @property
    def sandbox_path(self) -> Path:
        return self.run_dir / SANDBOX_FILE

    def verification_path(self, task_id: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9._-]", "_", task_id)
        return self.run_dir / VERIFICATION_DIR / f"{safe}.json"

    def relative(self, path: Path) -> str:
        """Path as the executor sees it from the project directory."""
        return str(path.relative_to(self.project_dir))

    # --- lifecycle ---

    def check(self) -> None:
        """Fail fast on a project or run path that cannot hold state."""
        if not self.project_dir.is_dir():
            raise ConfigurationError(f"Project directory does not exist: {self.project_dir}")
        for path in (self.root, self.run_dir):
            if path.exists() and not path.is_dir():
                raise ConfigurationError(f"Run directory path is not a directory: {path}")

    def exists(self) -> bool:
        return self.state_path.is_file()

    def ensure(self) -> None:
        self.check()
        created_root = not self.root.exists()
        self.run_dir.mkdir(parents=True, exist_ok=True)
        if created_root:
            self._ignore_in_git()

    def _ignore_in_git(self) -> None:
        gitignore = self.project_dir / ".gitignore"
        entry = f"{STATE_DIR_NAME}/"
        existing = gitignore.read_text(encoding="utf-8") if gitignore.is_file() else ""
        if entry in existing.splitlines():
            return
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        with open(gitignore, "a", encoding="utf-8") as f:
            f.write(f"{prefix}{entry}\n")
        logger.debug(f"[STORE] Added {entry} to .gitignore")

    def discard(self) -> bool:
        if not self.run_dir.is_dir():
            return False
        shutil.rmtree(self.run_dir)
        logger.info(f"[STORE] Discarded run {self.run_name}")
        return True

    # --- state ---

    def load_state(self) -> RunState | None:
        data = _read_json(self.state_path)
        if data is None:
            return None
        try:
            return RunState.model_validate(data)
        except ValidationError as e:
            logger.warning(f"[STORE] Ignoring malformed {STATE_FILE}: {e.error_count()} error(s)")
            return None

    def save_state(self, state: RunState) -> None:
        state.touch()
        atomic_write(self.state_path, state.to_json())

    # --- tasks ---

    def load_tasks(self) -> list[Task]:
        return parse_tasks(_read_json(self.tasks_path))

    def save_tasks(self, tasks: list[Task]) -> None:
        payload = [t.model_dump(exclude_none=True) for t in tasks]
        atomic_write(self.tasks_path, json.dumps(payload, indent=2))

    # --- progress ---

    def append_progress(self, note: str) -> None:
        self.run_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        with open(self.progress_path, "a", encoding="utf-8") as f:
            f.write(f"[{stamp}] {note.strip()}\n")

    def read_progress(self, tail: int | None = None) -> list[str]:
        if not self.progress_path.is_file():
            return []
        lines = self.progress_path.read_text(encoding="utf-8").splitlines()
        return lines[-tail:] if tail else lines

    # --- verification ---

    def load_verification(self, task_id: str) -> VerificationRecord | None:
        data = _read_json(self.verification_path(task_id))
        if data is None:
            return None
        try:
            return VerificationRecord.model_validate(data)
        except ValidationError:
            logger.warning(f"[STORE] Ignoring malformed verification record for {task_id}")
            return None

    def save_verification(self, record: VerificationRecord) -> None:
        atomic_write(self.verification_path(record.task_id), record.model_dump_json(indent=2))
