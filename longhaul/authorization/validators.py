"""
Per-program validators and the always-on dangerous pattern blocklist.

Validators see one Invocation (a single segment of a pipe or chain) and
return a Decision. The blocklist runs over the raw command string and does
not trust the tokenizer at all.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable

from longhaul.authorization.shell import Invocation


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str | None = None

    @classmethod
    def allow(cls) -> "Decision":
        return cls(True)

    @classmethod
    def deny(cls, reason: str) -> "Decision":
        return cls(False, reason)


# ---------------------------------------------------------------------------
# Dangerous patterns (checked first, cannot be overridden by policy)
# ---------------------------------------------------------------------------

_END = r"(?=$|[\s;&|)])"

DANGEROUS_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    (
        "recursive delete of root or home",
        re.compile(r"\brm\s+(?:-{1,2}[\w-]+\s+)*(?:/|~|\$HOME|\$\{HOME\})/?\*?" + _END),
    ),
    ("raw disk device write", re.compile(r">\s*/dev/(?:sd|hd|nvme|xvd|vd|disk|mmcblk)")),
    ("raw disk copy (dd)", re.compile(r"\bdd\s+(?:\S+\s+)*(?:if|of)=")),
    ("filesystem format", re.compile(r"\b(?:mkfs(?:\.\w+)?|mke2fs|mkswap|wipefs)\b")),
    ("fork bomb", re.compile(r":\s*\(\s*\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;?\s*:")),
    ("credential file access", re.compile(r"/etc/(?:passwd|shadow|sudoers)\b")),
    ("credential file access", re.compile(r"\.ssh/id_[\w-]+|\.aws/credentials\b")),
    ("pipe from network fetch to shell", re.compile(r"\b(?:curl|wget)\b[^|]*\|\s*(?:sudo\s+)?(?:ba|z|da|k)?sh\b")),
]


def check_dangerous(command: str) -> Decision:
    for label, pattern in DANGEROUS_PATTERNS:
        if pattern.search(command):
            return Decision.deny(f"Dangerous command pattern blocked: {label}")
    return Decision.allow()


# ---------------------------------------------------------------------------
# rm
# ---------------------------------------------------------------------------

SYSTEM_DIRS = ("/etc", "/usr", "/bin", "/sbin", "/var", "/boot", "/lib", "/lib64", "/dev", "/proc", "/sys")
HOME_TARGETS = frozenset({"~", "~/", "$HOME", "$HOME/", "${HOME}", "${HOME}/"})


def _split_flags(args: list[str]) -> tuple[list[str], list[str]]:
    flags: list[str] = []
    operands: list[str] = []
    end_of_options = False
    for arg in args:
        if end_of_options or not arg.startswith("-") or arg == "-":
            operands.append(arg)
        elif arg == "--":
            end_of_options = True
        else:
            flags.append(arg)
    return flags, operands


def _short_flags(flags: list[str]) -> str:
    return "".join(f[1:] for f in flags if not f.startswith("--"))


def _is_root_or_top_level(target: str) -> bool:
    if target in HOME_TARGETS:
        return True
    if not target.startswith("/"):
        return False
    stripped = target.rstrip("/")
    if stripped in ("", "/*"):
        return True
    # "/tmp" or "/tmp/" -> one path component under root
    return stripped.count("/") == 1


def validate_rm(inv: Invocation) -> Decision:
    flags, targets = _split_flags(inv.args)
    short = _short_flags(flags)
    recursive = "r" in short or "R" in short or "--recursive" in flags
    force = "f" in short or "--force" in flags

    if recursive and force:
        for target in targets:
            if _is_root_or_top_level(target):
                return Decision.deny(
                    f"rm -rf on root, home or a top-level directory is not allowed: {target}"
                )

    for target in targets:
        normalized = target.rstrip("/") or "/"
        if any(normalized == d or normalized.startswith(d + "/") for d in SYSTEM_DIRS):
            return Decision.deny(f"rm on system directory {target} is not allowed")

    return Decision.allow()


# ---------------------------------------------------------------------------
# chmod
# ---------------------------------------------------------------------------

_SYMBOLIC_EXEC = re.compile(r"^[ugoa]*\+x$")
_NUMERIC_MODE = re.compile(r"^[0-7]{3,4}$")
_OPEN_MODES = frozenset({"777", "0777"})


def validate_chmod(inv: Invocation) -> Decision:
    flags, operands = _split_flags(inv.args)

    if "--recursive" in flags or "R" in _short_flags(flags):
        return Decision.deny("chmod -R (recursive) is not allowed")

    if not operands:
        return Decision.deny("chmod requires a mode")

    mode = operands[0]
    if _SYMBOLIC_EXEC.match(mode):
        return Decision.allow()
    if _NUMERIC_MODE.match(mode):
        if mode in _OPEN_MODES:
            return Decision.deny(f"chmod {mode} is not allowed")
        return Decision.allow()

    return Decision.deny(f"chmod only allowed with +x or a safe numeric mode, got: {mode}")


# ---------------------------------------------------------------------------
# kill / pkill / killall
# ---------------------------------------------------------------------------

ALLOWED_KILL_TARGETS = (
    "node", "npm", "npx", "yarn", "pnpm", "bun",
    "vite", "next", "webpack", "tsc",
    "python", "python3", "pytest", "flask", "uvicorn", "gunicorn",
    "cargo", "go",
)

# Options whose next word is a value, not a target.
_KILL_VALUE_OPTIONS = frozenset({"-s", "-n", "--signal", "-u", "-U", "-g", "-G", "-P", "-t"})


def validate_kill(inv: Invocation) -> Decision:
    targets: list[str] = []
    skip_next = False
    for arg in inv.args:
        if skip_next:
            skip_next = False
            continue
        if arg in _KILL_VALUE_OPTIONS:
            skip_next = True
            continue
        if arg.startswith("-"):
            continue
        targets.append(arg)

    if not targets:
        return Decision.deny(f"{inv.program} requires a process name or PID")

    for target in targets:
        if target.isdigit():
            continue
        # pkill -f "node server.js" names the process by its first word
        name = target.split()[0] if target.split() else target
        if name not in ALLOWED_KILL_TARGETS:
            return Decision.deny(
                f"{inv.program} only allowed for dev processes: {', '.join(ALLOWED_KILL_TARGETS)}"
            )

    return Decision.allow()


# ---------------------------------------------------------------------------
# Local scripts
# ---------------------------------------------------------------------------

BOOTSTRAP_SCRIPT = "init.sh"


def validate_local_script(inv: Invocation) -> Decision:
    raw = inv.raw_program
    if raw == BOOTSTRAP_SCRIPT or raw.endswith("/" + BOOTSTRAP_SCRIPT):
        return Decision.allow()
    return Decision.deny(f"Only {BOOTSTRAP_SCRIPT} may be executed directly, got: {raw}")


Validator = Callable[[Invocation], Decision]

PROGRAM_VALIDATORS: dict[str, Validator] = {
    "rm": validate_rm,
    "chmod": validate_chmod,
    "kill": validate_kill,
    "pkill": validate_kill,
    "killall": validate_kill,
}


def validator_for(inv: Invocation) -> Validator | None:
    if inv.is_local_script:
        return validate_local_script
    return PROGRAM_VALIDATORS.get(inv.program)
