"""
Shared test fixtures for kubeguard tests.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import pytest
import structlog
import yaml

from kubeguard.core.audit import AuditLog
from kubeguard.core.config import Config
from kubeguard.core.executor import ExecutionResult
from kubeguard.core.models import ResolvedContext


def kubeconfig_doc(
    *names: str,
    current: str | None = None,
    contexts: dict[str, dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """A kubeconfig with one cluster, user and context per name.

    `contexts` maps a context name to extra context fields (namespace, ...).
    """
    extra_contexts = contexts or {}
    doc: dict[str, Any] = {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [
            {"name": name, "cluster": {"server": f"https://{name}.example.com:6443"}}
            for name in names
        ],
        "users": [{"name": name, "user": {"token": f"token-{name}"}} for name in names],
        "contexts": [
            {"name": name, "context": {"cluster": name, "user": name, **extra_contexts.get(name, {})}}
            for name in names
        ],
    }
    if current:
        doc["current-context"] = current
    return doc


def write_kubeconfig(path: Path, doc: dict[str, Any]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(doc, sort_keys=False), encoding="utf-8")
    return path


class FakeClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedPrompter:
    """Answers prompts from a list. An exception instance in the list is raised.

    With a clock, each answer is given `delay` seconds after the question.
    """

    def __init__(self, *responses: Any, clock: FakeClock | None = None, delay: float = 0.0) -> None:
        self.responses = list(responses)
        self.messages: list[str] = []
        self.timeouts: list[float] = []
        self.clock = clock
        self.delay = delay

    def ask(self, message: str, timeout: float) -> str | None:
        self.messages.append(message)
        self.timeouts.append(timeout)
        if self.clock is not None:
            self.clock.advance(self.delay)
        response = self.responses.pop(0) if self.responses else None
        if isinstance(response, BaseException):
            raise response
        return response


class RecordingExecutor:
    """Executor that records what it was asked to run."""

    def __init__(self, exit_code: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.calls: list[tuple[ResolvedContext, list[str]]] = []
        self.result = ExecutionResult(stdout=stdout, stderr=stderr, exit_code=exit_code)

    def execute(self, target: ResolvedContext, command: list[str]) -> ExecutionResult:
        self.calls.append((target, list(command)))
        return self.result


@pytest.fixture(autouse=True)
def quiet_logging():
    """Keep structlog output out of captured stdout."""
    structlog.configure(
        processors=[structlog.processors.JSONRenderer()],
        wrapper_class=structlog.make_filtering_bound_logger(logging.CRITICAL),
        cache_logger_on_first_use=False,
    )
    yield
    structlog.reset_defaults()


@pytest.fixture
def home(tmp_path) -> Path:
    path = tmp_path / "kubeguard-home"
    path.mkdir()
    return path


@pytest.fixture
def env(home) -> dict[str, str]:
    """Environment pointing kubeguard at a private home directory."""
    return {"KUBEGUARD_HOME": str(home), "PATH": "/usr/bin:/bin"}


@pytest.fixture
def workdir(tmp_path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def audit(tmp_path) -> AuditLog:
    return AuditLog(tmp_path / "audit" / "audit.log", actor="tester")


@pytest.fixture
def config() -> Config:
    return Config()
