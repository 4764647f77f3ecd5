"""
LONGHAUL Controller — The Session Loop

It is NOT smart. It is deterministic.

Responsibilities:
  - Reload the task list from disk before every session
  - Pick the prompt: initializer for a fresh run, working prompt after
  - Bind the run's authorization policy into the executor callback
  - Stream executor output as it arrives
  - Verify tasks the executor claims to have finished
  - Persist state after every session, then decide: continue, retry, stop

It never writes code. It only coordinates.

Phases:  fresh → initializing → working → complete
         plus erroring, entered when a session fails. A failed session is
         retried after a delay, up to loop.max_error_retries times in a row;
         an exhausted budget stops the run at once.

Stopping the process at any point is safe: state is flushed after each
session, so the next invocation reloads and resumes.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Literal

from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from longhaul.audit_logger import AuditLogger
from longhaul.authorization.callback import make_tool_authorizer
from longhaul.authorization.policy import build_policy
from longhaul.config_loader import (
    DEPTH_PRESETS,
    ConfigurationError,
    DepthLevel,
    LonghaulConfig,
    LoopConfig,
    load_config,
)
from longhaul.event_bus import EventBus
from longhaul.executor import (
    BudgetExceededError,
    Executor,
    ExecutorError,
    ExecutorMessage,
    ExecutorOptions,
)
from longhaul.runs import (
    RunKind,
    initializer_prompt,
    kind_for,
    read_paths,
    specification_text,
    summarize,
    working_prompt,
)
from longhaul.sandbox import settings_for_run, write_settings
from longhaul.scheduler import (
    is_run_complete,
    is_stalled,
    next_eligible,
    progress,
    revert_premature,
)
from longhaul.state import PlanPayload, PresetName, RunPayload, RunState, Task
from longhaul.store import RunStore
from longhaul.verification import VerificationController, apply_outcome

console = Console()

Phase = Literal["fresh", "initializing", "working", "complete", "erroring"]
StopReason = Literal[
    "complete", "already_complete", "max_sessions", "stalled", "budget", "error_limit", "interrupted", "error",
]


@dataclass
class RunResult:
    state: RunState
    tasks: list[Task]
    sessions: int = 0
    completed: bool = False
    phase: Phase = "fresh"
    reason: StopReason = "error"
    errors: int = 0
    denied: list[str] = field(default_factory=list)


def phase_of(state: RunState, tasks: list[Task]) -> Phase:
    if not state.initialized:
        return "initializing" if state.session_count else "fresh"
    if is_run_complete(tasks):
        return "complete"
    return "working"


# ---------------------------------------------------------------------------
# Run setup
# ---------------------------------------------------------------------------

def prepare_run(
    store: RunStore,
    config: LonghaulConfig,
    payload: RunPayload | None = None,
    model: str | None = None,
    preset: PresetName | None = None,
    allow: Iterable[str] = (),
    deny: Iterable[str] = (),
    depth: DepthLevel | None = None,
) -> RunState:
    """
    Resume the run in store, or describe a new one.

    Nothing is written here. A new run's state is saved when its first
    session starts, so a configuration error never leaves a partial run.
    Options given for an existing run are applied to it and persisted
    with its next session.
    """
    store.check()
    existing = store.load_state()

    if existing is not None:
        if payload is not None and payload.type != existing.run_type:
            raise ConfigurationError(
                f"Run '{store.run_name}' is a {existing.run_type} run, not {payload.type}. "
                f"Use another --name or discard it first."
            )
        changes = apply_overrides(existing, model, preset, allow, deny, depth)
        if changes:
            logger.info(f"[LOOP] Updated run '{store.run_name}': {', '.join(changes)}")
            console.print(f"[yellow]Updated existing run: {escape(', '.join(changes))}[/]")
        return existing

    if payload is None:
        raise ConfigurationError(
            f"No run named '{store.run_name}' in {store.project_dir}. "
            f"Start one with a run type and a specification."
        )

    policy = build_policy(
        preset=preset or config.permissions.preset,
        content=specification_text(payload),
        allow=[*config.permissions.allow, *allow],
        deny=[*config.permissions.deny, *deny],
    )
    return RunState(
        project_dir=str(store.project_dir),
        model=model or config.executor.model,
        payload=payload,
        policy=policy,
        depth=depth or config.loop.depth,
    )


def apply_overrides(
    state: RunState,
    model: str | None = None,
    preset: PresetName | None = None,
    allow: Iterable[str] = (),
    deny: Iterable[str] = (),
    depth: DepthLevel | None = None,
) -> list[str]:
    """Apply explicit run options to an existing run. Returns what changed."""
    changes: list[str] = []
    if model and model != state.model:
        state.model = model
        changes.append(f"model={model}")
    if preset and preset != state.policy.preset:
        state.policy.preset = preset
        changes.append(f"preset={preset}")
    for command in allow:
        if command not in state.policy.allow:
            state.policy.allow.append(command)
            changes.append(f"allow {command}")
    for command in deny:
        if command not in state.policy.deny:
            state.policy.deny.append(command)
            changes.append(f"deny {command}")
    if depth and depth != state.depth:
        state.depth = depth
        changes.append(f"depth={depth}")
    return changes


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class Controller:
    """
    Drives one run through as many executor sessions as it takes.

    Sessions run strictly one after another against the same task file
    and working directory.
    """

    def __init__(
        self,
        store: RunStore,
        executor: Executor,
        config: LonghaulConfig | None = None,
        bus: EventBus | None = None,
        sleep: Callable[[float], None] = time.sleep,
        verifier: VerificationController | None = None,
        output: Console | None = None,
    ):
        self.store = store
        self.executor = executor
        self.config = config or load_config(store.project_dir)
        self.bus = bus or EventBus()
        self.sleep = sleep
        self.verifier = verifier
        self.console = output or console
        self.phase: Phase = "fresh"
        self._denied: list[str] = []
        self.loop: LoopConfig = self.config.loop.resolved()

    # -----------------------------------------------------------------------
    # Main loop
    # -----------------------------------------------------------------------

    def run(self, state: RunState) -> RunResult:
        tasks = self.store.load_tasks()
        self.phase = phase_of(state, tasks)

        if self.phase == "complete":
            self.console.print(f"[green]✅ Run '{self.store.run_name}' is already complete.[/]")
            return RunResult(state, tasks, completed=True, phase="complete", reason="already_complete")

        self.store.ensure()
        audit = AuditLogger(self.store.events_path, self.bus)
        kind = kind_for(state)
        loop = self.loop = self.config.loop.resolved(state.depth)
        verifier = self.verifier or VerificationController(
            self.store, state.policy, self.config.verification,
            level=DEPTH_PRESETS[state.depth].verification_level,
        )

        settings = settings_for_run(self.config.sandbox, read_paths(state.payload))
        write_settings(self.store, settings)

        if not self.store.exists():
            self.store.save_state(state)
            self._emit("run_created", state, {"type": state.run_type, "policy": state.policy.model_dump()})

        self._print_header(state, kind)

        result = RunResult(state, tasks, phase=self.phase)
        error_streak = 0
        # Last task list that parsed; a malformed file must not make old completions look new
        last_known = tasks

        try:
            while True:
                if loop.max_sessions is not None and state.session_count >= loop.max_sessions:
                    result.reason = "max_sessions"
                    self.console.print(
                        f"\n[yellow]Reached max sessions ({loop.max_sessions}). "
                        f"Run again with a higher --max-sessions to continue.[/]"
                    )
                    break

                # The executor may have edited the task file since we last looked
                tasks = self.store.load_tasks()
                if tasks:
                    last_known = tasks
                self.phase = phase_of(state, tasks)
                result.tasks = tasks

                if self.phase == "complete":
                    result.completed, result.reason = True, "complete"
                    break

                if state.initialized and is_stalled(tasks):
                    result.reason = "stalled"
                    self.console.print("[red]🚫 No task can proceed: remaining work is blocked.[/]")
                    self._emit("run_stalled", state, progress(tasks).to_dict())
                    break

                target = next_eligible(tasks) if state.initialized else None
                prompt = self._build_prompt(state, tasks, target)
                session = state.session_count + 1

                self._print_session_banner(session, target)
                self._emit("session_started", state, {
                    "phase": self.phase,
                    "task_id": target.id if target else None,
                }, session)

                try:
                    text = self._run_session(state, kind, prompt, session)
                    tasks, verification_failed = self._after_session(
                        state, tasks or last_known, text, verifier,
                    )
                except BudgetExceededError as e:
                    self.phase = "erroring"
                    result.reason = "budget"
                    result.errors += 1
                    self.console.print(f"[red]💸 {e}[/]")
                    self._emit("budget_exceeded", state, {"error": str(e)}, session)
                    break
                except Exception as e:
                    self.phase = "erroring"
                    error_streak += 1
                    result.errors += 1
                    if isinstance(e, ExecutorError):
                        message = str(e)
                        logger.warning(f"[LOOP] Session {session} failed: {message}")
                    else:
                        message = f"{type(e).__name__}: {e}"
                        logger.error(f"[LOOP] Session {session} failed unexpectedly: {message}")
                    self._emit("session_error", state, {"error": message, "retry": error_streak}, session)
                    if loop.max_error_retries is not None and error_streak > loop.max_error_retries:
                        result.reason = "error_limit"
                        self.console.print(
                            f"[red]💥 Giving up after {error_streak} failed attempts: {escape(message)}[/]"
                        )
                        break
                    self.console.print(
                        f"[yellow]⚠ Session error: {escape(message)}. "
                        f"Retrying in {loop.error_retry_delay:g}s...[/]"
                    )
                    self.sleep(loop.error_retry_delay)
                    continue

                error_streak = 0
                result.sessions += 1
                if tasks:
                    last_known = tasks
                result.tasks = tasks

                p = progress(tasks)
                self._emit("session_completed", state, p.to_dict(), state.session_count)

                if state.initialized and (
                    is_run_complete(tasks)
                    or (kind.is_completion_text(text) and not verification_failed)
                ):
                    self.phase = "complete"
                    result.completed, result.reason = True, "complete"
                    break

                if loop.max_sessions is None or state.session_count < loop.max_sessions:
                    self.console.print(
                        f"\n[dim]Continuing in {loop.auto_continue_delay:g}s... (Ctrl+C to stop)[/]"
                    )
                    self.sleep(loop.auto_continue_delay)

        except KeyboardInterrupt:
            result.reason = "interrupted"
            self.console.print("\n[yellow]⚡ Interrupted. State is saved; resume any time.[/]")
        finally:
            result.phase = self.phase
            result.denied = list(self._denied)
            self._emit("run_stopped", state, {
                "reason": result.reason,
                "completed": result.completed,
                "sessions": result.sessions,
            })
            audit.close()

        self._print_completion(result)
        return result

    # -----------------------------------------------------------------------
    # Session pieces
    # -----------------------------------------------------------------------

    def _build_prompt(self, state: RunState, tasks: list[Task], target: Task | None) -> str:
        if not state.initialized:
            return initializer_prompt(state, self.store)
        guidance = ""
        if target is not None:
            record = self.store.load_verification(target.id)
            if record is not None and not record.passed:
                guidance = record.guidance
        return working_prompt(state, self.store, tasks, target, guidance)

    def _run_session(self, state: RunState, kind: RunKind, prompt: str, session: int) -> str:
        def on_denied(command: str, reason: str) -> None:
            self._denied.append(command)
            self._emit("command_denied", state, {"command": command, "reason": reason}, session)

        options = ExecutorOptions(
            cwd=self.store.project_dir,
            model=state.model,
            system_prompt=kind.system_prompt(self.store),
            can_use_tool=make_tool_authorizer(state.policy, on_denied),
            max_turns=self.config.executor.max_turns,
            permission_mode=self.config.sandbox.permission_mode,
            settings_path=self.store.sandbox_path,
        )

        chunks: list[str] = []
        for message in self.executor.run(prompt, options):
            self._show(message)
            if message.kind == "text":
                chunks.append(message.text)
        return "\n\n".join(chunks)

    def _after_session(
        self,
        state: RunState,
        before: list[Task],
        text: str,
        verifier: VerificationController,
    ) -> tuple[list[Task], bool]:
        """Reload, enforce ordering, verify new completions, then persist everything."""
        tasks = self.store.load_tasks()
        changed = False
        verification_failed = False

        if not state.initialized:
            if tasks:
                state.initialized = True
                self.console.print(f"[green]📋 Initializer created {len(tasks)} tasks.[/]")
            else:
                logger.warning("[LOOP] Initializer session ended without writing any tasks")
        else:
            reverted = revert_premature(tasks)
            if reverted:
                changed = True
                logger.warning(f"[LOOP] Reopened tasks with unfinished dependencies: {reverted}")

            if self.config.verification.enabled:
                was_completed = {t.id for t in before if t.status == "completed"}
                for task in tasks:
                    if task.status != "completed" or task.id in was_completed:
                        continue
                    failed = self._verify(state, task, verifier)
                    changed = changed or failed
                    verification_failed = verification_failed or failed

        if changed:
            self.store.save_tasks(tasks)

        state.session_count += 1
        if isinstance(state.payload, PlanPayload):
            state.payload.remember(summarize(text))
        self.store.save_state(state)

        p = progress(tasks)
        self.store.append_progress(
            f"Session {state.session_count} ({state.run_type}): "
            f"{p.completed}/{p.total} tasks completed ({p.percentage}%), "
            f"{p.blocked} blocked. {summarize(text, 200)}"
        )
        return tasks, verification_failed

    def _verify(self, state: RunState, task: Task, verifier: VerificationController) -> bool:
        """Verify one newly completed task. Returns True if its status had to change."""
        if verifier.next_attempt(task.id) is None:
            # Out of attempts earlier; the executor cannot reopen it by claiming success
            task.status = "blocked"
            task.completed_at = None
            self.console.print(f"[red]🚫 {task.id} has no verification attempts left; kept blocked.[/]")
            return True

        self.console.print(f"\n[bold]🧪 Verifying {task.id}...[/]")
        record = verifier.verify(task)
        if record is None:
            return False

        self._emit("task_verified", state, {
            "task_id": task.id,
            "attempt": record.attempt,
            "passed": record.passed,
            "classification": record.classification,
        })

        if record.passed:
            self.console.print(f"[green]✅ {task.id} verified.[/]")
            return False

        apply_outcome(task, record)
        if task.status == "blocked":
            self.console.print(f"[red]❌ {task.id} failed verification {record.attempt} times; blocked.[/]")
        else:
            self.console.print(
                f"[yellow]❌ {task.id} failed verification "
                f"(attempt {record.attempt}); back to pending with guidance.[/]"
            )
        return True

    # -----------------------------------------------------------------------
    # Output
    # -----------------------------------------------------------------------

    def _show(self, message: ExecutorMessage) -> None:
        if message.kind == "init":
            self.console.print(f"[dim]Session ID: {message.session_id}[/]")
        elif message.kind == "text":
            self.console.print(message.text, markup=False, highlight=False)
        elif message.kind == "tool_use":
            detail = message.tool_input.get("command") or message.tool_input.get("path") or ""
            self.console.print(f"[cyan]⚙ {escape(f'[Tool: {message.tool_name}]')}[/] [dim]{escape(str(detail))}[/]", highlight=False)
        elif message.kind == "tool_result" and message.is_error:
            self.console.print(f"  [red]{escape(message.text[:300])}[/]", highlight=False)
        elif message.kind == "result" and message.is_error:
            self.console.print(f"[red]{escape(f'[Error: {message.text}]')}[/]")

    def _print_header(self, state: RunState, kind: RunKind) -> None:
        max_sessions = self.loop.max_sessions
        self.console.print(Panel(
            f"[bold]Project:[/] {state.project_dir}\n"
            f"[bold]Run:[/] {self.store.run_name}  |  [bold]Type:[/] {kind.title}  |  [bold]Model:[/] {state.model}\n"
            f"[bold]Status:[/] {'Continuing' if state.initialized else 'Fresh start'}  |  "
            f"[bold]Sessions so far:[/] {state.session_count}  |  "
            f"[bold]Max sessions:[/] {max_sessions if max_sessions is not None else 'Unlimited'}\n"
            f"[bold]Depth:[/] {state.depth}  |  [bold]Permissions:[/] {state.policy.preset}"
            + (f" + {', '.join(state.policy.inferred)}" if state.policy.inferred else ""),
            title="🚚 LONGHAUL",
            subtitle="Many sessions. One finish line.",
            border_style="bright_blue",
        ))

    def _print_session_banner(self, session: int, target: Task | None) -> None:
        max_sessions = self.loop.max_sessions
        of = f" / {max_sessions}" if max_sessions is not None else ""
        task = f" — {target.id}" if target else ""
        self.console.rule(f"[bold]SESSION {session}{of}{task}[/]")

    def _print_completion(self, result: RunResult) -> None:
        p = progress(result.tasks)
        table = Table(title="Run Summary", border_style="blue")
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("Status", "[green]Completed[/]" if result.completed else "[yellow]Incomplete[/]")
        table.add_row("Stopped", result.reason)
        table.add_row("Sessions (this invocation)", str(result.sessions))
        table.add_row("Sessions (total)", str(result.state.session_count))
        table.add_row("Tasks", f"{p.completed}/{p.total} completed ({p.percentage}%)")
        table.add_row("Blocked", str(p.blocked))
        if result.denied:
            table.add_row("Denied commands", str(len(result.denied)))
        self.console.print(table)

        if not result.completed:
            self.console.print(
                f"[dim]To continue: longhaul resume -p {result.state.project_dir} -n {self.store.run_name}[/]"
            )

    def _emit(self, event_type: str, state: RunState, payload: dict | None = None, session: int | None = None) -> None:
        self.bus.emit(event_type, self.store.run_name, payload or {}, session)
        logger.debug(f"[LOOP] {event_type}: {payload}")
