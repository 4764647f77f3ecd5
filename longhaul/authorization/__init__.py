"""
LONGHAUL Authorization — decides which shell commands an executor may run.
"""

from longhaul.authorization.callback import READ_ONLY_TOOLS, make_tool_authorizer
from longhaul.authorization.policy import (
    PRESETS,
    AuthorizationEngine,
    authorize,
    build_policy,
    effective_programs,
    infer_programs,
)
from longhaul.authorization.validators import Decision

__all__ = [
    "AuthorizationEngine",
    "Decision",
    "PRESETS",
    "READ_ONLY_TOOLS",
    "authorize",
    "build_policy",
    "effective_programs",
    "infer_programs",
    "make_tool_authorizer",
]
