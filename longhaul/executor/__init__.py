"""
LONGHAUL Executor interface

An executor is the external code-editing agent a session delegates to.
It is a black box that:
  - takes a prompt plus ExecutorOptions (cwd, model, system prompt,
    tool-authorization callback, turn limit)
  - yields ExecutorMessages as it works, so output can be shown live
  - raises ExecutorError on transport failure

Nothing about how it reasons is visible here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Literal, Protocol

from longhaul.authorization.callback import ToolAuthorizer

MessageKind = Literal["init", "text", "tool_use", "tool_result", "result"]


class ExecutorError(Exception):
    """The executor could not complete a session (transport, API, process failure)."""
    pass


class BudgetExceededError(ExecutorError):
    """Token or dollar budget used up. Retrying will not help."""
    pass


@dataclass
class ExecutorMessage:
    kind: MessageKind
    text: str = ""
    session_id: str | None = None
    tool_name: str | None = None
    tool_input: dict[str, Any] = field(default_factory=dict)
    is_error: bool = False


@dataclass
class ExecutorOptions:
    cwd: Path
    model: str
    system_prompt: str
    can_use_tool: ToolAuthorizer
    max_turns: int = 50
    permission_mode: str = "acceptEdits"
    settings_path: Path | None = None
    resume_session_id: str | None = None


class Executor(Protocol):
    def run(self, prompt: str, options: ExecutorOptions) -> Iterator[ExecutorMessage]:
        ...


__all__ = [
    "BudgetExceededError",
    "Executor",
    "ExecutorError",
    "ExecutorMessage",
    "ExecutorOptions",
    "MessageKind",
]
