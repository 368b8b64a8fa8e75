"""Bash parsing and quoting utilities for command analysis and display."""

from __future__ import annotations

import re
from typing import Any

import bashlex

from kubeguard.core.allowlists import WRAPPER_COMMANDS, WRAPPER_FLAGS_WITH_ARG

# Characters that mean a single argument is a shell snippet, not a word
SHELL_SYNTAX = re.compile(r"[|;&<>()$`\s]")
PLAIN_WORD = re.compile(r"[\w./=@:,+%-]+", re.ASCII)
TIME_KEYWORD = re.compile(r"(^|[;&|(]\s*)time\s+(?:-p\s+)?")
ASSIGNMENT = re.compile(r"[A-Za-z_][A-Za-z0-9_]*=")

# Flags whose values are secrets and must never reach the audit log
SECRET_FLAGS = frozenset(
    {"--token", "--password", "--username", "--client-key", "--kube-token", "--from-literal"}
)
REDACTED = "[REDACTED]"


def bash_quote(s: str) -> str:
    """Quote one word for display. Plain words pass through unchanged."""
    if not s:
        return "''"
    if PLAIN_WORD.fullmatch(s):
        return s
    return "'" + s.replace("'", "'\\''") + "'"


def bash_join(tokens: list[str]) -> str:
    """Join tokens into a bash command string with proper quoting."""
    return " ".join(bash_quote(t) for t in tokens)


def is_shell_snippet(argv: list[str]) -> bool:
    """True when argv is a single argument that needs a shell to run."""
    return len(argv) == 1 and bool(SHELL_SYNTAX.search(argv[0]))


def _command_nodes(node: Any) -> list[list[str]]:
    """Recursively collect simple commands from a bashlex AST node."""
    if node.kind == "command":
        # prefix assignments stay in: KUBECONFIG=... changes what the command reaches
        words = [p.word for p in node.parts if p.kind in ("word", "assignment")]
        nested: list[list[str]] = []
        for part in node.parts:
            # command substitutions run too: $(kubectl delete ...) counts
            for sub in getattr(part, "parts", None) or []:
                if sub.kind == "commandsubstitution":
                    nested.extend(_command_nodes(sub.command))
        return ([words] if words else []) + nested

    children = getattr(node, "list", None) or getattr(node, "parts", None) or []
    commands: list[list[str]] = []
    for child in children:
        if hasattr(child, "kind"):
            commands.extend(_command_nodes(child))
    command = getattr(node, "command", None)
    if command is not None and hasattr(command, "kind"):
        commands.extend(_command_nodes(command))
    return commands


def _strip_time(cmd_string: str) -> str:
    """Drop the `time` keyword at command position; bashlex rejects it."""
    return TIME_KEYWORD.sub(r"\1", cmd_string)


def parse_commands(cmd_string: str) -> list[list[str]] | None:
    """Split a shell snippet into its simple commands.

    Returns None when bashlex cannot parse the snippet.
    """
    try:
        parts = bashlex.parse(_strip_time(cmd_string))
    except (bashlex.errors.ParsingError, NotImplementedError, IndexError, AttributeError):
        return None
    commands: list[list[str]] = []
    for part in parts:
        commands.extend(_command_nodes(part))
    return commands


def strip_wrappers(tokens: list[str]) -> list[str]:
    """Strip wrapper commands (and their flags) and return the inner command."""
    while tokens and tokens[0] in WRAPPER_COMMANDS:
        wrapper = tokens[0]
        takes_arg = WRAPPER_FLAGS_WITH_ARG.get(wrapper, frozenset())
        tokens = tokens[1:]
        while tokens and tokens[0].startswith("-"):
            flag = tokens[0]
            tokens = tokens[1:]
            if flag in takes_arg and tokens:
                tokens = tokens[1:]
        if wrapper == "timeout" and tokens:
            tokens = tokens[1:]  # the duration
    return tokens


def redact_tokens(tokens: list[str]) -> list[str]:
    """Mask values of secret-bearing flags, in both `--flag v` and `--flag=v` forms."""
    result: list[str] = []
    mask_next = False
    for token in tokens:
        if mask_next:
            result.append(REDACTED)
            mask_next = False
            continue
        flag, sep, _ = token.partition("=")
        if flag in SECRET_FLAGS:
            if sep:
                result.append(f"{flag}={REDACTED}")
            else:
                result.append(token)
                mask_next = True
            continue
        result.append(token)
    return result


def redact_snippet(snippet: str) -> str:
    """Mask secret flag values inside a shell snippet."""
    pattern = "|".join(re.escape(f) for f in sorted(SECRET_FLAGS))
    return re.sub(rf"({pattern})(=|\s+)(\S+)", rf"\1\2{REDACTED}", snippet)
