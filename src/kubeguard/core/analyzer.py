"""
Command analyzer for kubeguard.

Decides whether a command about to run against a context can change cluster
state. Unknown commands default to destructive. Decisions bubble up
(deny > destructive > safe).
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from kubeguard.cli import HandlerContext, get_handler
from kubeguard.core.allowlists import (
    DECLARATION_BUILTINS,
    ENV_CLEAR_FLAGS,
    ENV_FLAGS_WITH_ARG,
    ENV_SPLIT_FLAGS,
    SHELLS,
    SIMPLE_SAFE,
    TARGETING_ENV_VARS,
    WRAPPER_COMMANDS,
)
from kubeguard.core.bash import (
    ASSIGNMENT,
    bash_join,
    is_shell_snippet,
    parse_commands,
    redact_snippet,
    redact_tokens,
    strip_wrappers,
)
from kubeguard.core.config import Config, match_words

Verdict = Literal["safe", "destructive", "deny"]

_SEVERITY = {"safe": 0, "destructive": 1, "deny": 2}


@dataclass(frozen=True)
class Assessment:
    """Verdict for one simple command."""

    verdict: Verdict
    reason: str


@dataclass(frozen=True)
class CommandAssessment:
    """Combined verdict for everything a command line would run."""

    verdict: Verdict
    reason: str
    display: str
    """Redacted rendering of the command, safe to show and to audit."""

    @property
    def destructive(self) -> bool:
        return self.verdict != "safe"

    @property
    def denied(self) -> bool:
        return self.verdict == "deny"


def redact_command(argv: list[str]) -> str:
    """Render argv for display with secret flag values masked."""
    if is_shell_snippet(argv):
        return redact_snippet(argv[0])
    return bash_join(redact_tokens(list(argv)))


def assess_command(argv: list[str], config: Config) -> CommandAssessment:
    """Classify a command given as argv.

    A single argument containing shell syntax is parsed as a snippet and every
    simple command in it is assessed.
    """
    display = redact_command(argv)
    if not argv or not any(a.strip() for a in argv):
        return CommandAssessment("destructive", "empty command", display)

    if is_shell_snippet(argv):
        commands = parse_commands(argv[0])
        if commands is None:
            return CommandAssessment("destructive", "could not parse shell command", display)
        if not commands:
            return CommandAssessment("destructive", "no commands found", display)
    else:
        commands = [list(argv)]

    assessments = [assess_words(words, config) for words in commands]
    combined = _combine(assessments)
    return CommandAssessment(combined.verdict, combined.reason, display)


def assess_words(words: list[str], config: Config) -> Assessment:
    """Classify a single simple command."""
    tokens, override = _unwrap(words)
    if override is not None:
        return Assessment("deny", override)
    if not tokens:
        if words:
            return Assessment("safe", "no command to run")
        return Assessment("destructive", "empty command")

    # Retargeting is refused before config rules so `safe kubectl *` cannot cover it
    override = _retargeting(tokens)
    if override is not None:
        return Assessment("deny", override)

    # Config rules take precedence over handlers
    match = match_words(tokens, config)
    if match is not None:
        if match.decision == "deny":
            reason = match.message or f"denied by rule '{match.pattern}'"
            return Assessment("deny", reason)
        return Assessment(match.decision, f"rule '{match.pattern}'")  # type: ignore[arg-type]

    base = tokens[0]
    snippet = _inner_snippet(tokens)
    if snippet is not None:
        return _assess_snippet(snippet, config)

    handler = get_handler(base)
    if handler is not None:
        result = handler.classify(HandlerContext(tokens))
        return Assessment(result.action, result.description or base)

    if base in SIMPLE_SAFE:
        return Assessment("safe", base)

    # shell variables only; retargeting ones were refused above
    if base in DECLARATION_BUILTINS or base == "unset":
        return Assessment("safe", base)

    return Assessment("destructive", f"unrecognised command '{base}'")


def _unwrap(words: list[str]) -> tuple[list[str], str | None]:
    """Peel leading assignments, `env` and wrappers off a command.

    Returns the command that actually runs, and a reason to refuse it when the
    peeled environment changes which cluster it reaches.
    """
    tokens = list(words)
    while tokens:
        head = tokens[0]
        if ASSIGNMENT.match(head):
            name = head.partition("=")[0]
            if name in TARGETING_ENV_VARS:
                return tokens, _env_reason(name)
            tokens = tokens[1:]
        elif head == "env":
            tokens, reason = _strip_env(tokens)
            if reason is not None:
                return tokens, reason
        elif head in WRAPPER_COMMANDS:
            tokens = strip_wrappers(tokens)
        else:
            break
    return tokens, None


def _strip_env(tokens: list[str]) -> tuple[list[str], str | None]:
    rest = tokens[1:]
    while rest and rest[0].startswith("-"):
        flag, _, value = rest[0].partition("=")
        rest = rest[1:]
        if flag.startswith("-u") and len(flag) > 2:
            flag, value = "-u", flag[2:]
        if flag in ENV_CLEAR_FLAGS:
            return rest, "env without the inherited environment drops the selected kubeconfig"
        if flag in ENV_SPLIT_FLAGS:
            return rest, "env -S hides the command it runs"
        if flag in ENV_FLAGS_WITH_ARG and not value and rest:
            value, rest = rest[0], rest[1:]
        if flag in ("-u", "--unset") and value in TARGETING_ENV_VARS:
            return rest, _env_reason(value)
    return rest, None


def _env_reason(name: str) -> str:
    return f"{name} overrides the selected context"


def _retargeting(tokens: list[str]) -> str | None:
    """Why a command would reach a cluster other than the selected one, if it would."""
    base = tokens[0]
    if base in DECLARATION_BUILTINS or base == "unset":
        for arg in tokens[1:]:
            name = arg.partition("=")[0]
            if name in TARGETING_ENV_VARS:
                return _env_reason(name)
        return None

    handler = get_handler(base)
    if handler is not None:
        flag = handler.retargeting_flag(tokens)
        return None if flag is None else f"{flag} overrides the selected context"

    # xargs, watch and the like run a command passed as arguments
    for idx in range(1, len(tokens)):
        token = tokens[idx]
        if ASSIGNMENT.match(token) and token.partition("=")[0] in TARGETING_ENV_VARS:
            return _env_reason(token.partition("=")[0])
        handler = get_handler(token)
        if handler is not None:
            flag = handler.retargeting_flag(tokens[idx:])
            if flag is not None:
                return f"{flag} overrides the selected context"
    return None


def _inner_snippet(tokens: list[str]) -> str | None:
    """Command line run by `sh -c '...'` or `eval ...`."""
    if tokens[0] == "eval":
        return " ".join(tokens[1:])
    if Path(tokens[0]).name not in SHELLS:
        return None
    # -c alone or combined, like -lc or -xc
    for idx, token in enumerate(tokens[1:], start=1):
        if token.startswith("-") and not token.startswith("--") and "c" in token:
            return tokens[idx + 1] if idx + 1 < len(tokens) else None
    return None


def _assess_snippet(snippet: str, config: Config) -> Assessment:
    commands = parse_commands(snippet)
    if commands is None:
        return Assessment("destructive", "could not parse shell command")
    if not commands:
        return Assessment("destructive", "no commands found")
    return _combine([assess_words(words, config) for words in commands])


def _combine(assessments: list[Assessment]) -> Assessment:
    """Most severe assessment wins; ties keep the first."""
    worst = assessments[0]
    for assessment in assessments[1:]:
        if _SEVERITY[assessment.verdict] > _SEVERITY[worst.verdict]:
            worst = assessment
    if worst.verdict == "safe":
        return Assessment("safe", ", ".join(a.reason for a in assessments))
    return worst
