"""
Authorization Policy Engine.

Resolves the effective set of programs a run may execute:

    (preset | inferred | allow) - deny

and decides whether a single shell command string may run. The effective
set is recomputed on every decision, so edits to the policy between calls
are always observed.

Order of checks for one command:
  1. dangerous-pattern blocklist over the raw string (no override)
  2. explicit deny substrings over the raw string
  3. per invocation: dedicated validator (rm, chmod, kill, local scripts)
  4. per invocation: membership in the effective set

A segment run through a wrapper (env, sudo, xargs, sh -c ...) yields an
invocation for the wrapper and one for each program it runs.
"""

from __future__ import annotations

import re
from typing import Iterable

from loguru import logger

from longhaul.authorization.shell import extract_invocations
from longhaul.authorization.validators import Decision, check_dangerous, validator_for
from longhaul.state import AuthorizationPolicy, PresetName

# ---------------------------------------------------------------------------
# Presets
# ---------------------------------------------------------------------------

READONLY_PROGRAMS: frozenset[str] = frozenset({
    # inspection
    "ls", "cat", "head", "tail", "wc", "grep", "find", "tree",
    # navigation
    "pwd", "cd",
    # misc
    "echo", "date", "which", "env", "true", "false", "test", "[",
})

DEV_PROGRAMS: frozenset[str] = READONLY_PROGRAMS | frozenset({
    # file operations
    "cp", "mv", "mkdir", "chmod", "touch", "rm",
    # node
    "npm", "npx", "node", "yarn", "pnpm", "bun", "tsc", "tsx",
    # python
    "python", "python3", "pip", "pip3", "poetry", "pytest", "mypy", "ruff", "black",
    # build tools and other languages
    "make", "cargo", "go", "ruby", "bundle",
    "git",
    # processes
    "ps", "lsof", "sleep", "pkill", "kill",
    # network and data
    "curl", "wget", "jq",
    # text processing
    "sed", "awk", "sort", "uniq", "diff", "cut", "tr", "xargs",
    # shells and the bootstrap script
    "bash", "sh", "init.sh",
})

FULL_PROGRAMS: frozenset[str] = DEV_PROGRAMS | frozenset({
    "docker", "docker-compose",
    "psql", "mysql", "sqlite3", "redis-cli", "mongosh",
    "aws", "gcloud", "az",
    "kubectl", "helm",
    "sudo", "systemctl",
})

PRESETS: dict[PresetName, frozenset[str]] = {
    "readonly": READONLY_PROGRAMS,
    "dev": DEV_PROGRAMS,
    "full": FULL_PROGRAMS,
}


# ---------------------------------------------------------------------------
# Content inference
# ---------------------------------------------------------------------------

KEYWORD_PROGRAMS: dict[str, tuple[str, ...]] = {
    "docker": ("docker", "docker-compose"),
    "container": ("docker", "docker-compose"),
    "dockerfile": ("docker", "docker-compose"),
    "database": ("psql", "mysql", "sqlite3"),
    "postgres": ("psql",),
    "postgresql": ("psql",),
    "mysql": ("mysql",),
    "sqlite": ("sqlite3",),
    "redis": ("redis-cli",),
    "mongo": ("mongosh",),
    "mongodb": ("mongosh",),
    "aws": ("aws",),
    "s3": ("aws",),
    "lambda": ("aws",),
    "gcloud": ("gcloud",),
    "gcp": ("gcloud",),
    "azure": ("az",),
    "kubernetes": ("kubectl", "helm"),
    "k8s": ("kubectl", "helm"),
    "kubectl": ("kubectl",),
    "helm": ("helm",),
}

_KEYWORD_PATTERNS = {
    keyword: re.compile(rf"\b{re.escape(keyword)}", re.IGNORECASE)
    for keyword in KEYWORD_PROGRAMS
}


def infer_programs(content: str) -> list[str]:
    """Programs implied by words in a specification, sorted. Keywords match at a word start, so plurals count."""
    found: set[str] = set()
    for keyword, pattern in _KEYWORD_PATTERNS.items():
        if pattern.search(content):
            found.update(KEYWORD_PROGRAMS[keyword])
    return sorted(found)


def effective_programs(policy: AuthorizationPolicy) -> set[str]:
    allowed = set(PRESETS[policy.preset])
    allowed.update(policy.inferred)
    allowed.update(policy.allow)
    allowed.difference_update(policy.deny)
    return allowed


def build_policy(
    preset: PresetName = "dev",
    content: str = "",
    allow: Iterable[str] = (),
    deny: Iterable[str] = (),
) -> AuthorizationPolicy:
    return AuthorizationPolicy(
        preset=preset,
        inferred=infer_programs(content) if content else [],
        allow=list(allow),
        deny=list(deny),
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class AuthorizationEngine:
    """Binds a policy for the lifetime of one session."""

    def __init__(self, policy: AuthorizationPolicy):
        self.policy = policy

    def authorize(self, command: str) -> Decision:
        decision = check_dangerous(command)
        if not decision.allowed:
            return decision

        for entry in self.policy.deny:
            if entry and entry in command:
                return Decision.deny(f"Command matches deny list entry: {entry}")

        invocations = extract_invocations(command)
        if not invocations:
            return Decision.allow()

        allowed = effective_programs(self.policy)

        for inv in invocations:
            validator = validator_for(inv)
            if validator is not None:
                decision = validator(inv)
                if not decision.allowed:
                    return decision

            if inv.program not in allowed:
                return Decision.deny(
                    f"Command '{inv.program}' is not allowed with preset '{self.policy.preset}'"
                )

        return Decision.allow()


def authorize(command: str, policy: AuthorizationPolicy) -> Decision:
    decision = AuthorizationEngine(policy).authorize(command)
    if not decision.allowed:
        logger.debug(f"[AUTH] Denied: {command!r} ({decision.reason})")
    return decision
