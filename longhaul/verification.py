"""
LONGHAUL Verification — bounded retry controller for task checks.

After a session claims a task is done, the task's verification command
(or the project's detected test command) is run together with the
project's quality checks (type, lint, build). Failures are classified,
turned into retry guidance for the next session, and counted per task on
disk. The third failed attempt blocks the task; there is never a fourth.
"""

from __future__ import annotations

import json
import re
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from loguru import logger

from longhaul.authorization.policy import authorize
from longhaul.config_loader import VerificationConfig, VerificationLevel
from longhaul.state import (
    MAX_VERIFICATION_ATTEMPTS,
    AuthorizationPolicy,
    FailureClass,
    Task,
    VerificationFailure,
    VerificationRecord,
    utc_now,
)
from longhaul.store import RunStore

OUTPUT_LIMIT = 4000
TIMEOUT_EXIT_CODE = 124


# ---------------------------------------------------------------------------
# Command execution
# ---------------------------------------------------------------------------

@dataclass
class CommandResult:
    command: str
    exit_code: int
    output: str
    duration: float = 0.0

    @property
    def passed(self) -> bool:
        return self.exit_code == 0

    @property
    def timed_out(self) -> bool:
        return self.exit_code == TIMEOUT_EXIT_CODE


def run_command(command: str, cwd: Path, timeout: int) -> CommandResult:
    """Run a shell command; timeouts and spawn failures come back as failing results."""
    start = time.monotonic()
    try:
        proc = subprocess.run(
            command,
            shell=True,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return CommandResult(
            command, TIMEOUT_EXIT_CODE,
            f"Command timed out after {timeout} seconds",
            time.monotonic() - start,
        )
    except OSError as e:
        return CommandResult(command, 1, f"Failed to run: {e}", time.monotonic() - start)

    output = proc.stdout + (f"\nSTDERR:\n{proc.stderr}" if proc.stderr else "")
    return CommandResult(command, proc.returncode, output[-OUTPUT_LIMIT:], time.monotonic() - start)


CommandRunner = Callable[[str, Path, int], CommandResult]


# ---------------------------------------------------------------------------
# Failure classification
# ---------------------------------------------------------------------------

COMPILE_MARKERS = (
    "error ts",
    "syntaxerror",
    "indentationerror",
    "cannot find module",
    "module not found",
    "modulenotfounderror",
    "importerror",
    "cannot find name",
    "error[e",
)

RUNTIME_MARKERS = (
    "typeerror:",
    "referenceerror:",
    "nameerror:",
    "attributeerror:",
    "keyerror:",
    "cannot read propert",
    "is not a function",
    "is not defined",
    "cannot destructure",
    "undefined is not",
    "null is not",
)

ASSERTION_MARKERS = (
    "expected",
    "assert",
    "tobe",
    "toequal",
    "tohave",
    "tomatch",
    "expect(",
)


def classify_failure(exit_code: int, output: str) -> FailureClass:
    """
    Sort a failing run into compilation, runtime, or missing-implementation.

    A clean exit is always "none". Assertion-style output counts as a
    missing implementation only when no compile or runtime marker is present.
    """
    if exit_code == 0:
        return "none"
    lower = output.lower()
    if any(marker in lower for marker in COMPILE_MARKERS):
        return "compilation_error"
    if any(marker in lower for marker in RUNTIME_MARKERS):
        return "runtime_error"
    if any(marker in lower for marker in ASSERTION_MARKERS):
        return "missing_impl"
    return "none"


# ---------------------------------------------------------------------------
# Quality command detection
# ---------------------------------------------------------------------------

@dataclass
class QualityCommands:
    test: str | None = None
    typecheck: str | None = None
    lint: str | None = None
    build: str | None = None


# Quality checks run at each verification level; the test command always runs
QUALITY_CHECKS: dict[VerificationLevel, frozenset[str]] = {
    "basic": frozenset(),
    "standard": frozenset({"type", "build"}),
    "extensive": frozenset({"type", "lint", "build"}),
}


def detect_quality_commands(project_dir: Path) -> QualityCommands:
    commands = QualityCommands()

    package_json = project_dir / "package.json"
    if package_json.is_file():
        try:
            scripts = json.loads(package_json.read_text(encoding="utf-8")).get("scripts") or {}
        except (OSError, ValueError, AttributeError):
            scripts = {}
        if "test" in scripts:
            commands.test = "npm test"
        if "typecheck" in scripts:
            commands.typecheck = "npm run typecheck"
        elif "type-check" in scripts:
            commands.typecheck = "npm run type-check"
        if "lint" in scripts:
            commands.lint = "npm run lint"
        if "build" in scripts:
            commands.build = "npm run build"

    if (project_dir / "bun.lockb").is_file():
        commands.test = "bun test"

    if (project_dir / "tsconfig.json").is_file() and not commands.typecheck:
        commands.typecheck = "npx tsc --noEmit"

    if not commands.test:
        if (project_dir / "pytest.ini").is_file() or (project_dir / "pyproject.toml").is_file():
            commands.test = "python -m pytest -q"
        elif (project_dir / "go.mod").is_file():
            commands.test = "go test ./..."
        elif (project_dir / "Cargo.toml").is_file():
            commands.test = "cargo test"
        elif (project_dir / "Makefile").is_file():
            commands.test = "make test"

    return commands


# ---------------------------------------------------------------------------
# Guidance
# ---------------------------------------------------------------------------

_TEST_LINE = re.compile(r"FAIL|Error|expected|AssertionError|assert", re.IGNORECASE)
_TYPE_LINE = re.compile(r"error TS\d+|error:", re.IGNORECASE)


def _key_lines(output: str | None, pattern: re.Pattern[str], limit: int) -> list[str]:
    if not output:
        return []
    return [line.strip() for line in output.splitlines() if pattern.search(line)][:limit]


def generate_guidance(failures: list[VerificationFailure], classification: FailureClass = "none") -> str:
    if not failures:
        return ""

    lines = ["Fix the following issues:"]

    for failure in failures:
        if failure.kind == "test":
            lines += ["", "**Tests Failed:**", f"- {failure.message}"]
            if classification == "compilation_error":
                lines.append("- The code does not compile or a module is missing. Fix that before anything else.")
            elif classification == "runtime_error":
                lines.append("- A runtime exception was raised. Look for undefined names or wrong types.")
            elif classification == "missing_impl":
                lines.append("- Assertions fail. The implementation is incomplete or returns the wrong result.")
            key = _key_lines(failure.output, _TEST_LINE, 10)
            if key:
                lines.append("- Key errors: " + "; ".join(key))

        elif failure.kind == "type":
            lines += ["", "**Type Errors:**", "- Fix type errors"]
            key = _key_lines(failure.output, _TYPE_LINE, 5)
            if key:
                lines.append("- Errors: " + "; ".join(key))

        elif failure.kind == "lint":
            lines += ["", "**Lint Errors:**", "- Fix linting issues"]

        elif failure.kind == "build":
            lines += ["", "**Build Failed:**", "- Fix build errors before continuing"]

        elif failure.kind == "review":
            lines += ["", "**Review Issues:**", f"- {failure.message}"]

    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class VerificationController:
    """
    Runs checks for one task and records the attempt.

    The attempt counter lives in the task's verification record on disk,
    so it survives process restarts between sessions.
    """

    def __init__(
        self,
        store: RunStore,
        policy: AuthorizationPolicy,
        config: VerificationConfig | None = None,
        runner: CommandRunner = run_command,
        level: VerificationLevel = "extensive",
    ):
        self.store = store
        self.policy = policy
        self.config = config or VerificationConfig()
        self.runner = runner
        self.level = level

    def next_attempt(self, task_id: str) -> int | None:
        """Attempt number for the next run, or None when the cap has been reached."""
        previous = self.store.load_verification(task_id)
        if previous is None or previous.passed:
            return 1
        if previous.attempt >= MAX_VERIFICATION_ATTEMPTS:
            return None
        return previous.attempt + 1

    def _run_checked(self, command: str, timeout: int) -> CommandResult:
        decision = authorize(command, self.policy)
        if not decision.allowed:
            return CommandResult(command, 126, f"Verification command denied: {decision.reason}")
        return self.runner(command, self.store.project_dir, timeout)

    def verify(self, task: Task) -> VerificationRecord | None:
        """Run behavior and quality checks for task. Returns None if there is nothing to check or no attempts left."""
        attempt = self.next_attempt(task.id)
        if attempt is None:
            logger.warning(f"[VERIFY] {task.id} already used {MAX_VERIFICATION_ATTEMPTS} attempts")
            return None

        detected = detect_quality_commands(self.store.project_dir)
        test_command = task.verification_command or detected.test
        checks = [
            (kind, command, timeout)
            for kind, command, timeout in (
                ("type", detected.typecheck, self.config.test_timeout),
                ("lint", detected.lint, self.config.test_timeout),
                ("build", detected.build, self.config.build_timeout),
            )
            if command and kind in QUALITY_CHECKS[self.level]
        ]
        if not test_command and not checks:
            return None

        logger.info(f"[VERIFY] {task.id} attempt {attempt}/{MAX_VERIFICATION_ATTEMPTS}")
        failures: list[VerificationFailure] = []
        classification: FailureClass = "none"

        behavior_passed = True
        if test_command:
            result = self._run_checked(test_command, self.config.test_timeout)
            behavior_passed = result.passed
            if not result.passed:
                message = "Tests timed out" if result.timed_out else f"Tests failed (exit code {result.exit_code})"
                failures.append(VerificationFailure(kind="test", message=message, output=result.output))
                classification = classify_failure(result.exit_code, result.output)
            elif task.verification_pattern and not re.search(task.verification_pattern, result.output):
                behavior_passed = False
                failures.append(VerificationFailure(
                    kind="test",
                    message=f"Output did not match expected pattern: {task.verification_pattern}",
                    output=result.output,
                ))

        quality_passed = True
        for kind, command, timeout in checks:
            result = self._run_checked(command, timeout)
            if not result.passed:
                quality_passed = False
                label = {"type": "Type check", "lint": "Lint check", "build": "Build"}[kind]
                failures.append(VerificationFailure(kind=kind, message=f"{label} failed", output=result.output))

        record = VerificationRecord(
            task_id=task.id,
            attempt=attempt,
            behavior_passed=behavior_passed,
            quality_passed=quality_passed,
            failures=failures,
            classification=classification,
            guidance=generate_guidance(failures, classification),
            timestamp=utc_now(),
        )
        self.store.save_verification(record)

        if record.passed:
            logger.info(f"[VERIFY] {task.id} passed")
        else:
            logger.info(f"[VERIFY] {task.id} failed: {', '.join(f.kind for f in failures)}")
        return record


def apply_outcome(task: Task, record: VerificationRecord) -> None:
    """Move task to the status a verification record implies."""
    if record.passed:
        return
    if record.exhausted:
        task.status = "blocked"
        task.completed_at = None
        task.notes = (
            f"Blocked after {MAX_VERIFICATION_ATTEMPTS} failed verification attempts.\n"
            f"{record.guidance}"
        )
        return
    task.status = "pending"
    task.completed_at = None
    task.notes = f"Verification attempt {record.attempt}/{MAX_VERIFICATION_ATTEMPTS} failed.\n{record.guidance}"
