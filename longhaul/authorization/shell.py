"""
Shell command lexing for authorization.

This is NOT a shell parser. It approximates POSIX shell grammar only far
enough to find which programs a command string would start, so that each
constituent command of a pipe or chain can be authorized on its own.

Rules:
  - unquoted whitespace separates words
  - single quotes are literal, no escapes
  - double quotes honor backslash before  "  \\  $  `
  - outside quotes a backslash escapes the next character
  - | || && ; & are operators, an unquoted newline acts like ;
  - > >> < << <& >& are redirects

It never raises. Unterminated quotes swallow the rest of the input into
the current word.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal

TokenKind = Literal["word", "operator", "redirect"]

SEPARATORS = frozenset({"|", "||", "&&", ";", "&"})

_OPERATOR_CHARS = "|&;"
_REDIRECT_CHARS = "<>"
_DOUBLE_QUOTE_ESCAPABLE = '"\\$`'
_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    value: str


@dataclass
class Segment:
    """One independent command between separators."""
    tokens: list[Token] = field(default_factory=list)

    @property
    def words(self) -> list[str]:
        return [t.value for t in self.tokens if t.kind == "word"]

    @property
    def text(self) -> str:
        return " ".join(t.value for t in self.tokens)


@dataclass(frozen=True)
class Invocation:
    """The program a segment starts, plus its arguments."""
    program: str          # path-stripped: /usr/bin/python -> python
    raw_program: str      # as written: ./init.sh, /usr/bin/python
    args: list[str]
    text: str

    @property
    def is_local_script(self) -> bool:
        raw = self.raw_program
        return raw.startswith(("./", "../")) or raw.endswith(".sh")


def tokenize(command: str) -> list[Token]:
    """Lex a command string into word, operator and redirect tokens."""
    tokens: list[Token] = []
    i = 0
    n = len(command)

    while i < n:
        ch = command[i]

        if ch == "\n":
            tokens.append(Token("operator", ";"))
            i += 1
            continue

        if ch.isspace():
            i += 1
            continue

        if ch in _OPERATOR_CHARS:
            nxt = command[i + 1] if i + 1 < n else ""
            if ch in "|&" and nxt == ch:
                tokens.append(Token("operator", ch * 2))
                i += 2
            else:
                tokens.append(Token("operator", ch))
                i += 1
            continue

        if ch in _REDIRECT_CHARS:
            nxt = command[i + 1] if i + 1 < n else ""
            if nxt == ch or nxt == "&":
                tokens.append(Token("redirect", ch + nxt))
                i += 2
            else:
                tokens.append(Token("redirect", ch))
                i += 1
            continue

        word, i = _read_word(command, i)
        tokens.append(Token("word", word))

    return tokens


def _read_word(command: str, i: int) -> tuple[str, int]:
    n = len(command)
    parts: list[str] = []

    while i < n:
        ch = command[i]

        if ch.isspace() or ch in _OPERATOR_CHARS or ch in _REDIRECT_CHARS:
            break

        if ch == "\\":
            if i + 1 < n:
                parts.append(command[i + 1])
                i += 2
            else:
                parts.append(ch)
                i += 1
            continue

        if ch == "'":
            end = command.find("'", i + 1)
            if end == -1:
                parts.append(command[i + 1:])
                return "".join(parts), n
            parts.append(command[i + 1:end])
            i = end + 1
            continue

        if ch == '"':
            i += 1
            while i < n and command[i] != '"':
                if command[i] == "\\" and i + 1 < n and command[i + 1] in _DOUBLE_QUOTE_ESCAPABLE:
                    parts.append(command[i + 1])
                    i += 2
                else:
                    parts.append(command[i])
                    i += 1
            i += 1  # closing quote (or one past the end)
            continue

        parts.append(ch)
        i += 1

    return "".join(parts), i


def split_segments(tokens: list[Token]) -> list[Segment]:
    """Split tokens at pipe/chain operators, dropping the operators and empty segments."""
    segments: list[Segment] = []
    current = Segment()

    for token in tokens:
        if token.kind == "operator" and token.value in SEPARATORS:
            if current.tokens:
                segments.append(current)
            current = Segment()
        else:
            current.tokens.append(token)

    if current.tokens:
        segments.append(current)
    return segments


def segment_strings(command: str) -> list[str]:
    return [s.text for s in split_segments(tokenize(command))]


def is_assignment(word: str) -> bool:
    return bool(_ASSIGNMENT.match(word))


# Programs that run another program. Options listed take a value; the count
# is how many positionals precede the wrapped program (timeout DURATION cmd).
WRAPPERS: dict[str, tuple[frozenset[str], int]] = {
    "env": (frozenset({"-u", "--unset", "-C", "--chdir", "-S", "--split-string"}), 0),
    "sudo": (frozenset({
        "-u", "--user", "-g", "--group", "-h", "--host", "-p", "--prompt",
        "-C", "--close-from", "-U", "--other-user", "-r", "--role", "-t", "--type", "-D", "--chdir",
    }), 0),
    "doas": (frozenset({"-u", "-C"}), 0),
    "nice": (frozenset({"-n", "--adjustment"}), 0),
    "nohup": (frozenset(), 0),
    "time": (frozenset({"-f", "--format", "-o", "--output"}), 0),
    "timeout": (frozenset({"-s", "--signal", "-k", "--kill-after"}), 1),
    "command": (frozenset(), 0),
    "exec": (frozenset({"-a"}), 0),
    "xargs": (frozenset({"-I", "-n", "-P", "-L", "-s", "-d", "-E", "-a"}), 0),
}

# Option values that are themselves command lines
_COMMAND_STRING_OPTIONS = frozenset({"-S", "--split-string"})

SHELLS = frozenset({"sh", "bash", "zsh", "dash", "ksh"})


def _program_name(raw: str) -> str:
    return raw.rstrip("/").rsplit("/", 1)[-1] or raw


def _shell_script(args: list[str]) -> str | None:
    """The script of `sh -c SCRIPT` (or `bash -lc SCRIPT`), if args have one."""
    for i, arg in enumerate(args):
        if not arg.startswith("-"):
            return None
        if not arg.startswith("--") and "c" in arg[1:]:
            return args[i + 1] if i + 1 < len(args) else None
    return None


def _segment_invocations(words: list[str], text: str) -> list[Invocation]:
    invocations: list[Invocation] = []
    idx = 0

    while idx < len(words):
        while idx < len(words) and is_assignment(words[idx]):
            idx += 1
        if idx >= len(words):
            break

        raw = words[idx]
        program = _program_name(raw)
        args = words[idx + 1:]
        invocations.append(Invocation(program=program, raw_program=raw, args=args, text=text))

        if program in SHELLS:
            script = _shell_script(args)
            if script is not None:
                invocations += extract_invocations(script)
            break
        if program not in WRAPPERS:
            break

        value_options, positionals = WRAPPERS[program]
        idx += 1
        while idx < len(words) and words[idx].startswith("-"):
            option = words[idx]
            idx += 1
            if option == "--":
                break
            if option in value_options:
                if option in _COMMAND_STRING_OPTIONS and idx < len(words):
                    invocations += extract_invocations(words[idx])
                idx += 1
        idx += positionals

    return invocations


def extract_invocations(command: str) -> list[Invocation]:
    """
    Find every program a command runs.

    Each segment contributes its leading program (after VAR=value words)
    and, when that program is a wrapper such as env, sudo or xargs, the
    program it wraps. `sh -c SCRIPT` contributes the programs in SCRIPT.
    """
    invocations: list[Invocation] = []
    for segment in split_segments(tokenize(command)):
        invocations += _segment_invocations(segment.words, segment.text)
    return invocations


def extract_programs(command: str) -> list[str]:
    return [inv.program for inv in extract_invocations(command)]
