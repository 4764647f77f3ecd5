"""
Tool-authorization callback handed to the executor.

Read-only tools are always allowed. Shell tools go through the policy
engine. Anything else falls back to the session's permission mode, which
is the executor's concern, so it is allowed here.
"""

from __future__ import annotations

from typing import Any, Callable

from loguru import logger

from longhaul.authorization.policy import AuthorizationEngine
from longhaul.authorization.validators import Decision
from longhaul.state import AuthorizationPolicy

READ_ONLY_TOOLS = frozenset({"Read", "Grep", "Glob", "read_file", "list_files", "grep"})
SHELL_TOOLS = frozenset({"Bash", "bash"})

ToolAuthorizer = Callable[[str, dict[str, Any]], Decision]


def make_tool_authorizer(
    policy: AuthorizationPolicy,
    on_denied: Callable[[str, str], None] | None = None,
) -> ToolAuthorizer:
    """Bind a policy for one session. on_denied(command, reason) is called for each denial."""
    engine = AuthorizationEngine(policy)

    def can_use_tool(tool_name: str, tool_input: dict[str, Any]) -> Decision:
        if tool_name in READ_ONLY_TOOLS:
            return Decision.allow()

        if tool_name in SHELL_TOOLS:
            command = str(tool_input.get("command", ""))
            decision = engine.authorize(command)
            if not decision.allowed:
                logger.info(f"[AUTH] Blocked {command!r}: {decision.reason}")
                if on_denied:
                    on_denied(command, decision.reason or "")
            return decision

        return Decision.allow()

    return can_use_tool
