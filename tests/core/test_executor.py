"""Tests for the subprocess executor."""

from __future__ import annotations

import stat
from pathlib import Path

import pytest
import yaml

from conftest import kubeconfig_doc
from kubeguard.core.errors import ExecutionError
from kubeguard.core.executor import KubectlExecutor, temporary_kubeconfig
from kubeguard.core.registry import ContextRegistry
from kubeguard.core.store import Store


@pytest.fixture
def target():
    store = Store.from_document(kubeconfig_doc("dev-a", "prod-b", current="dev-a"))
    return ContextRegistry(store).resolve("prod-b")


class TestTemporaryKubeconfig:
    def test_contains_only_target(self, target):
        with temporary_kubeconfig(target) as path:
            assert stat.S_IMODE(path.stat().st_mode) == 0o600
            doc = yaml.safe_load(path.read_text())
        assert [c["name"] for c in doc["contexts"]] == ["prod-b"]
        assert [u["name"] for u in doc["users"]] == ["prod-b"]
        assert doc["current-context"] == "prod-b"
        assert not path.exists()

    def test_removed_on_error(self, target):
        with pytest.raises(RuntimeError):
            with temporary_kubeconfig(target) as path:
                raise RuntimeError("boom")
        assert not path.exists()


class TestKubectlExecutor:
    def test_child_sees_target_kubeconfig(self, target):
        result = KubectlExecutor(capture=True).execute(
            target, ["sh", "-c", 'echo "$KUBECONFIG"; cat "$KUBECONFIG"']
        )
        assert result.exit_code == 0
        first, _, body = result.stdout.partition("\n")
        assert not Path(first).exists()
        assert yaml.safe_load(body)["current-context"] == "prod-b"

    def test_exit_code_passthrough(self, target):
        result = KubectlExecutor(capture=True).execute(target, ["sh", "-c", "echo oops >&2; exit 7"])
        assert result.exit_code == 7
        assert result.stderr == "oops\n"

    def test_shell_snippet(self, target):
        result = KubectlExecutor(capture=True).execute(target, ["echo hello | tr a-z A-Z"])
        assert result.stdout == "HELLO\n"

    def test_missing_binary(self, target):
        with pytest.raises(ExecutionError, match="command not found: no-such-binary-kg"):
            KubectlExecutor(capture=True).execute(target, ["no-such-binary-kg", "get", "pods"])

    def test_timeout(self, target):
        with pytest.raises(ExecutionError, match="timed out after 0.2s"):
            KubectlExecutor(capture=True, timeout=0.2).execute(target, ["sleep", "5"])

    def test_empty_command(self, target):
        with pytest.raises(ExecutionError):
            KubectlExecutor().execute(target, [])
