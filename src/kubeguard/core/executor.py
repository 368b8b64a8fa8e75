"""Runs approved commands against one context."""

from __future__ import annotations

import contextlib
import os
import subprocess
import tempfile
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import structlog

from kubeguard.core.bash import is_shell_snippet
from kubeguard.core.errors import ExecutionError
from kubeguard.core.models import ResolvedContext
from kubeguard.core.store import FILE_MODE, Store

log = structlog.get_logger()


@dataclass(frozen=True)
class ExecutionResult:
    """Structured command result. Output is empty when it was not captured."""

    stdout: str
    stderr: str
    exit_code: int


class Executor(Protocol):
    def execute(self, target: ResolvedContext, command: list[str]) -> ExecutionResult: ...


@contextlib.contextmanager
def temporary_kubeconfig(target: ResolvedContext) -> Iterator[Path]:
    """A 0600 kubeconfig holding only `target`, removed afterwards."""
    fd, name = tempfile.mkstemp(prefix="kubeguard-", suffix=".kubeconfig")
    path = Path(name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            os.fchmod(handle.fileno(), FILE_MODE)
            handle.write(Store.for_target(target).to_yaml())
        yield path
    finally:
        with contextlib.suppress(FileNotFoundError):
            path.unlink()


class KubectlExecutor:
    """Subprocess executor. The child sees only the target context.

    With `capture=False` the child inherits the terminal, which keeps
    interactive commands (`kubectl edit`, `exec -it`) working.
    """

    def __init__(
        self,
        *,
        timeout: float | None = None,
        capture: bool = False,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.timeout = timeout
        self.capture = capture
        self._env = env

    def execute(self, target: ResolvedContext, command: list[str]) -> ExecutionResult:
        if not command:
            raise ExecutionError("no command given")
        argv = ["sh", "-c", command[0]] if is_shell_snippet(command) else list(command)
        with temporary_kubeconfig(target) as kubeconfig:
            env = dict(os.environ if self._env is None else self._env)
            env["KUBECONFIG"] = str(kubeconfig)
            log.debug("execute", context=target.name, program=argv[0])
            try:
                result = subprocess.run(
                    argv,
                    check=False,
                    capture_output=self.capture,
                    text=True,
                    env=env,
                    timeout=self.timeout,
                )
            except FileNotFoundError:
                raise ExecutionError(f"command not found: {argv[0]}") from None
            except subprocess.TimeoutExpired:
                raise ExecutionError(
                    f"command timed out after {self.timeout:g}s: {argv[0]}"
                ) from None
            except OSError as exc:
                raise ExecutionError(f"cannot run {argv[0]}: {exc}") from exc
        return ExecutionResult(
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            exit_code=result.returncode,
        )
