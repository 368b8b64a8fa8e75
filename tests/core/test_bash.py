"""Tests for bash parsing, quoting and redaction."""

from __future__ import annotations

import pytest

from kubeguard.core.bash import (
    REDACTED,
    bash_join,
    bash_quote,
    is_shell_snippet,
    parse_commands,
    redact_snippet,
    redact_tokens,
    strip_wrappers,
)


class TestQuoting:
    @pytest.mark.parametrize(
        "word,quoted",
        [
            ("", "''"),
            ("pods", "pods"),
            ("app=web,tier=front", "app=web,tier=front"),
            ("deploy/api", "deploy/api"),
            ("hello world", "'hello world'"),
            ("it's", "'it'\\''s'"),
            ("{.items[*].metadata.name}", "'{.items[*].metadata.name}'"),
            ("$HOME", "'$HOME'"),
        ],
    )
    def test_bash_quote(self, word, quoted):
        assert bash_quote(word) == quoted

    def test_bash_join(self):
        assert bash_join(["kubectl", "get", "pods", "-l", "app in (a,b)"]) == "kubectl get pods -l 'app in (a,b)'"
        assert bash_join([]) == ""


class TestShellSnippet:
    @pytest.mark.parametrize(
        "argv,expected",
        [
            (["kubectl get pods | grep api"], True),
            (["kubectl get pods"], True),
            (["kubectl"], False),
            (["kubectl", "get", "pods"], False),
            (["echo $(date)"], True),
        ],
    )
    def test_is_shell_snippet(self, argv, expected):
        assert is_shell_snippet(argv) is expected


class TestParseCommands:
    def test_pipeline(self):
        assert parse_commands("kubectl get pods -o json | jq '.items[]'") == [
            ["kubectl", "get", "pods", "-o", "json"],
            ["jq", ".items[]"],
        ]

    def test_list(self):
        assert parse_commands("kubectl get ns && kubectl delete ns old; echo done") == [
            ["kubectl", "get", "ns"],
            ["kubectl", "delete", "ns", "old"],
            ["echo", "done"],
        ]

    def test_command_substitution_is_included(self):
        commands = parse_commands("echo $(kubectl delete pod api)")
        assert ["kubectl", "delete", "pod", "api"] in commands

    def test_prefix_assignments_are_kept(self):
        assert parse_commands("KUBECONFIG=/tmp/admin.yaml kubectl get pods") == [
            ["KUBECONFIG=/tmp/admin.yaml", "kubectl", "get", "pods"],
        ]

    def test_bare_assignment(self):
        assert parse_commands("KUBECONFIG=/tmp/admin.yaml; kubectl get pods") == [
            ["KUBECONFIG=/tmp/admin.yaml"],
            ["kubectl", "get", "pods"],
        ]

    def test_parse_failure(self):
        assert parse_commands("kubectl get pods -l 'app=web") is None


class TestStripWrappers:
    @pytest.mark.parametrize(
        "tokens,expected",
        [
            (["time", "kubectl", "get", "pods"], ["kubectl", "get", "pods"]),
            (["timeout", "30", "kubectl", "logs", "api"], ["kubectl", "logs", "api"]),
            (["timeout", "-s", "KILL", "30", "kubectl"], ["kubectl"]),
            (["nice", "-n", "10", "helm", "list"], ["helm", "list"]),
            (["nohup", "time", "kubectl", "top", "pods"], ["kubectl", "top", "pods"]),
            (["kubectl", "get", "pods"], ["kubectl", "get", "pods"]),
        ],
    )
    def test_strip(self, tokens, expected):
        assert strip_wrappers(tokens) == expected


class TestRedaction:
    def test_separate_value(self):
        assert redact_tokens(["kubectl", "--token", "abc", "get", "pods"]) == [
            "kubectl",
            "--token",
            REDACTED,
            "get",
            "pods",
        ]

    def test_inline_value(self):
        assert redact_tokens(["helm", "--password=hunter2", "list"]) == [
            "helm",
            f"--password={REDACTED}",
            "list",
        ]

    def test_from_literal(self):
        tokens = ["kubectl", "create", "secret", "generic", "db", "--from-literal=pw=s3cret"]
        assert "s3cret" not in " ".join(redact_tokens(tokens))

    def test_other_flags_untouched(self):
        tokens = ["kubectl", "-n", "apps", "get", "pods"]
        assert redact_tokens(tokens) == tokens

    def test_snippet(self):
        redacted = redact_snippet("kubectl --token abc get pods | grep api")
        assert "abc" not in redacted
        assert redacted == f"kubectl --token {REDACTED} get pods | grep api"
        assert redact_snippet("kubectl --token=abc get pods") == f"kubectl --token={REDACTED} get pods"
