"""
CLI-specific command handlers for kubeguard.

Each handler module exports:
- COMMANDS: list[str] - command names this handler supports
- classify(ctx: HandlerContext) -> Classification - is the command destructive
- retargeting_flag(tokens: list[str]) -> str | None - first flag that points
  the command at a cluster, user or kubeconfig other than the one handed to it
"""

from __future__ import annotations

import importlib
import pkgutil
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Literal, Protocol


@dataclass(frozen=True)
class HandlerContext:
    """Context passed to handlers."""

    tokens: list[str]


@dataclass(frozen=True)
class Classification:
    """Result of classifying a command.

    - safe: read-only against the cluster
    - destructive: may change cluster state, needs gating on sensitive tiers
    """

    action: Literal["safe", "destructive"]
    description: str | None = None


class CLIHandler(Protocol):
    """Protocol for CLI handler modules."""

    def classify(self, ctx: HandlerContext) -> Classification:
        """Classify command tokens as safe or destructive."""
        ...

    def retargeting_flag(self, tokens: list[str]) -> str | None:
        """Name of the first flag that overrides the target, if any."""
        ...


def skip_global_flags(tokens: list[str], flags_with_arg: frozenset[str], start: int = 1) -> int:
    """Return index of the first non-flag token at or after `start`."""
    idx = start
    while idx < len(tokens):
        token = tokens[idx]
        if not token.startswith("-"):
            break
        if token in flags_with_arg:
            idx += 2
        else:
            idx += 1
    return idx


def find_flag(tokens: list[str], flags: frozenset[str]) -> str | None:
    """First of `flags` present in `tokens`, as `--flag v` or `--flag=v`. Stops at `--`."""
    for token in tokens:
        if token == "--":
            break
        name = token.partition("=")[0] if token.startswith("--") else token
        if name in flags:
            return name
    return None


def _discover_handlers() -> dict[str, str]:
    """Map each command name to the handler module that claims it."""
    handlers: dict[str, str] = {}
    for info in pkgutil.iter_modules(__path__):
        if info.name.startswith("_"):
            continue
        module = importlib.import_module(f"{__name__}.{info.name}")
        for cmd in getattr(module, "COMMANDS", ()):
            handlers[cmd] = info.name
    return handlers


KNOWN_HANDLERS = _discover_handlers()


def get_handler(command_name: str) -> CLIHandler | None:
    """Handler for a command, looked up by basename so /usr/local/bin/kubectl matches."""
    module_name = KNOWN_HANDLERS.get(Path(command_name).name)
    if module_name is None:
        return None
    return _load_handler(module_name)


@lru_cache(maxsize=8)
def _load_handler(module_name: str) -> CLIHandler:
    return importlib.import_module(f"{__name__}.{module_name}")
