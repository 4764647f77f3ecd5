"""
LONGHAUL LLM Executor — tool-calling sessions through LiteLLM

Drives one session as a chat loop: the model answers with text and tool
calls, every tool call passes through the session's authorization
callback, results go back as tool messages, until the model stops calling
tools or the turn limit is hit. Handles budget tracking and retries.
"""

from __future__ import annotations

import json
import re
import subprocess
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

import litellm
from loguru import logger
from tenacity import retry, stop_after_attempt, wait_exponential

from longhaul.config_loader import BudgetConfig, ExecutorConfig
from longhaul.executor import (
    BudgetExceededError,
    ExecutorError,
    ExecutorMessage,
    ExecutorOptions,
)

BASH_TIMEOUT = 300
TOOL_OUTPUT_LIMIT = 8000
MAX_LISTED_FILES = 500
MAX_GREP_MATCHES = 200
_SKIP_DIRS = {".git", "node_modules", ".venv", "__pycache__", ".longhaul"}


# ---------------------------------------------------------------------------
# Usage Tracking
# ---------------------------------------------------------------------------

@dataclass
class UsageRecord:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    call_count: int = 0


@dataclass
class BudgetTracker:
    """Tracks token + dollar spend for one executor across sessions."""
    max_tokens: int = 2_000_000
    max_dollars: float = 25.0
    usage: UsageRecord = field(default_factory=UsageRecord)

    @property
    def tokens_remaining(self) -> int:
        return max(0, self.max_tokens - self.usage.total_tokens)

    @property
    def dollars_remaining(self) -> float:
        return max(0.0, self.max_dollars - self.usage.estimated_cost)

    @property
    def budget_exceeded(self) -> bool:
        return self.usage.total_tokens >= self.max_tokens or self.usage.estimated_cost >= self.max_dollars

    def record(self, response: Any) -> None:
        """Record usage from a LiteLLM response.

        Token counts come from the response's usage block. Cost comes from
        LiteLLM's cost calculator; models it has no price for add nothing.
        """
        usage = getattr(response, "usage", None)
        if usage:
            self.usage.prompt_tokens += getattr(usage, "prompt_tokens", 0) or 0
            self.usage.completion_tokens += getattr(usage, "completion_tokens", 0) or 0
            self.usage.total_tokens += getattr(usage, "total_tokens", 0) or 0

        try:
            self.usage.estimated_cost += litellm.completion_cost(completion_response=response)
        except Exception as e:
            logger.debug(f"[EXECUTOR] No cost estimate: {e}")

        self.usage.call_count += 1

    def summary(self) -> dict:
        return {
            "total_tokens": self.usage.total_tokens,
            "estimated_cost": round(self.usage.estimated_cost, 4),
            "call_count": self.usage.call_count,
            "tokens_remaining": self.tokens_remaining,
            "dollars_remaining": round(self.dollars_remaining, 4),
        }


# ---------------------------------------------------------------------------
# Model capability helpers
# ---------------------------------------------------------------------------

def _is_gpt5_model(model: str) -> bool:
    """GPT-5 family models have restricted parameter support."""
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith("gpt-5")


def _is_o_series_model(model: str) -> bool:
    """OpenAI o-series reasoning models don't support temperature."""
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith(("o1", "o3", "o4"))


def _build_kwargs(
    model: str,
    messages: list[dict[str, Any]],
    temperature: float,
    max_tokens: int,
    tools: list[dict] | None,
) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
    }

    if not _is_gpt5_model(model) and not _is_o_series_model(model):
        kwargs["temperature"] = temperature

    if tools:
        kwargs["tools"] = tools

    return kwargs


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

def _function(name: str, description: str, properties: dict, required: list[str]) -> dict:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        },
    }


TOOL_SCHEMAS = [
    _function(
        "read_file", "Read a text file relative to the project directory.",
        {"path": {"type": "string"}}, ["path"],
    ),
    _function(
        "list_files", "List files under a directory, optionally filtered by a glob pattern.",
        {"path": {"type": "string"}, "pattern": {"type": "string"}}, [],
    ),
    _function(
        "grep", "Search files for a regular expression. Returns path:line: text matches.",
        {"pattern": {"type": "string"}, "path": {"type": "string"}}, ["pattern"],
    ),
    _function(
        "write_file", "Create or overwrite a text file relative to the project directory.",
        {"path": {"type": "string"}, "content": {"type": "string"}}, ["path", "content"],
    ),
    _function(
        "bash", "Run a shell command in the project directory.",
        {"command": {"type": "string"}}, ["command"],
    ),
]


class ToolError(Exception):
    pass


def _resolve(cwd: Path, relative: str) -> Path:
    path = (cwd / relative).resolve()
    if path != cwd and cwd not in path.parents:
        raise ToolError(f"Path escapes the project directory: {relative}")
    return path


def _truncate(text: str) -> str:
    if len(text) <= TOOL_OUTPUT_LIMIT:
        return text
    return text[:TOOL_OUTPUT_LIMIT] + f"\n... [truncated {len(text) - TOOL_OUTPUT_LIMIT} chars]"


def _walk(root: Path) -> Iterator[Path]:
    for path in sorted(root.rglob("*")):
        if any(part in _SKIP_DIRS for part in path.relative_to(root).parts):
            continue
        if path.is_file():
            yield path


def run_tool(name: str, args: dict[str, Any], cwd: Path) -> str:
    """Execute one already-authorized tool call and return its text output."""
    cwd = cwd.resolve()
    if name == "read_file":
        path = _resolve(cwd, str(args.get("path", "")))
        if not path.is_file():
            raise ToolError(f"File not found: {args.get('path')}")
        return _truncate(path.read_text(encoding="utf-8", errors="replace"))

    if name == "list_files":
        root = _resolve(cwd, str(args.get("path") or "."))
        pattern = str(args.get("pattern") or "*")
        files = [
            str(p.relative_to(cwd)) for p in _walk(root)
            if p.match(pattern)
        ][:MAX_LISTED_FILES]
        return "\n".join(files) or "(no files)"

    if name == "grep":
        try:
            regex = re.compile(str(args.get("pattern", "")))
        except re.error as e:
            raise ToolError(f"Invalid pattern: {e}") from e
        root = _resolve(cwd, str(args.get("path") or "."))
        matches: list[str] = []
        for path in ([root] if root.is_file() else _walk(root)):
            try:
                lines = path.read_text(encoding="utf-8").splitlines()
            except (UnicodeDecodeError, OSError):
                continue
            for number, line in enumerate(lines, 1):
                if regex.search(line):
                    matches.append(f"{path.relative_to(cwd)}:{number}: {line.strip()}")
                    if len(matches) >= MAX_GREP_MATCHES:
                        return "\n".join(matches)
        return "\n".join(matches) or "(no matches)"

    if name == "write_file":
        path = _resolve(cwd, str(args.get("path", "")))
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(str(args.get("content", "")), encoding="utf-8")
        return f"Wrote {path.relative_to(cwd)}"

    if name == "bash":
        try:
            proc = subprocess.run(
                str(args.get("command", "")),
                shell=True,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=BASH_TIMEOUT,
            )
        except subprocess.TimeoutExpired:
            return f"Command timed out after {BASH_TIMEOUT} seconds"
        output = proc.stdout + (f"\nSTDERR:\n{proc.stderr}" if proc.stderr else "")
        return _truncate(f"exit code {proc.returncode}\n{output}")

    raise ToolError(f"Unknown tool: {name}")


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class LiteLLMExecutor:
    """
    Executor backed by any LiteLLM-supported model.

    One instance keeps one budget across all sessions of a run.
    """

    def __init__(self, config: ExecutorConfig, budget: BudgetConfig | None = None):
        self.config = config
        budget = budget or BudgetConfig()
        self.budget = BudgetTracker(max_tokens=budget.max_tokens, max_dollars=budget.max_dollars)

        litellm.suppress_debug_info = True

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10), reraise=True)
    def _complete(self, kwargs: dict[str, Any]) -> Any:
        return litellm.completion(**kwargs)

    def run(self, prompt: str, options: ExecutorOptions) -> Iterator[ExecutorMessage]:
        session_id = options.resume_session_id or uuid.uuid4().hex[:12]
        cwd = options.cwd.resolve()
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": options.system_prompt},
            {"role": "user", "content": prompt},
        ]

        yield ExecutorMessage("init", session_id=session_id)

        for turn in range(1, options.max_turns + 1):
            if self.budget.budget_exceeded:
                raise BudgetExceededError(f"Budget exceeded: {self.budget.summary()}")

            kwargs = _build_kwargs(
                options.model, messages, self.config.temperature, self.config.max_tokens, TOOL_SCHEMAS,
            )
            start = time.monotonic()
            logger.debug(f"[EXECUTOR] turn {turn} → {options.model} ({len(messages)} messages)")
            try:
                response = self._complete(kwargs)
            except Exception as e:
                raise ExecutorError(f"Completion failed: {e}") from e

            self.budget.record(response)
            elapsed_ms = int((time.monotonic() - start) * 1000)
            logger.debug(
                f"[EXECUTOR] turn {turn} complete — "
                f"{self.budget.usage.total_tokens} tokens, "
                f"${self.budget.usage.estimated_cost:.4f}, "
                f"{elapsed_ms}ms"
            )

            message = response.choices[0].message
            content = message.content or ""
            tool_calls = getattr(message, "tool_calls", None) or []

            if content:
                yield ExecutorMessage("text", text=content, session_id=session_id)

            if not tool_calls:
                yield ExecutorMessage("result", text="success", session_id=session_id)
                return

            messages.append({
                "role": "assistant",
                "content": content or None,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.function.name, "arguments": call.function.arguments},
                    }
                    for call in tool_calls
                ],
            })

            for call in tool_calls:
                name = call.function.name
                try:
                    args = json.loads(call.function.arguments or "{}")
                except json.JSONDecodeError:
                    args = {}
                if not isinstance(args, dict):
                    args = {}

                yield ExecutorMessage("tool_use", tool_name=name, tool_input=args, session_id=session_id)

                decision = options.can_use_tool(name, args)
                if not decision.allowed:
                    output, is_error = f"Permission denied: {decision.reason}", True
                else:
                    try:
                        output, is_error = run_tool(name, args, cwd), False
                    except (ToolError, OSError) as e:
                        output, is_error = f"Error: {e}", True

                yield ExecutorMessage(
                    "tool_result", text=output, tool_name=name, is_error=is_error, session_id=session_id,
                )
                messages.append({"role": "tool", "tool_call_id": call.id, "content": output})

        yield ExecutorMessage(
            "result", text=f"error_max_turns ({options.max_turns})", is_error=True, session_id=session_id,
        )
