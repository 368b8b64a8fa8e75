"""Tests for kubeguard config system."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest
import structlog

from kubeguard.core.config import (
    DEFAULT_CONFIRM_TIMEOUT,
    SCOPE_ENV,
    SCOPE_PROJECT,
    SCOPE_USER,
    Config,
    Rule,
    audit_log_path,
    configure_logging,
    open_log_file,
    credential_paths,
    load_config,
    match_words,
    parse_config,
    pattern_matches,
)
from kubeguard.core.errors import ConfigError
from kubeguard.core.models import SensitivityTier


class TestParseConfig:
    def test_empty(self):
        config = parse_config("")
        assert config.tier_rules == []
        assert config.rules == []
        assert config.confirm_timeout is None
        assert config.effective_confirm_timeout == DEFAULT_CONFIRM_TIMEOUT

    def test_comments_and_blank_lines(self):
        config = parse_config("# comment\n\n   # indented comment\nproduction acme-*\n")
        assert len(config.tier_rules) == 1

    def test_tier_directives(self):
        config = parse_config(
            "production acme-eu-*\nstaging acme-qa\ndev sandbox\nunclassified shared-*\n"
        )
        assert [(r.tier, r.pattern) for r in config.tier_rules] == [
            (SensitivityTier.PRODUCTION, "acme-eu-*"),
            (SensitivityTier.STAGING, "acme-qa"),
            (SensitivityTier.DEV, "sandbox"),
            (SensitivityTier.UNCLASSIFIED, "shared-*"),
        ]

    def test_command_rules(self):
        config = parse_config(
            'safe kubectl rollout restart *\n'
            'destructive kubectl get secrets*\n'
            'deny kubectl delete namespace * "never delete namespaces"\n'
            "deny helm uninstall *\n"
        )
        assert [(r.decision, r.pattern, r.message) for r in config.rules] == [
            ("safe", "kubectl rollout restart *", None),
            ("destructive", "kubectl get secrets*", None),
            ("deny", "kubectl delete namespace *", "never delete namespaces"),
            ("deny", "helm uninstall *", None),
        ]

    def test_message_with_escaped_quote(self):
        config = parse_config('deny kubectl drain * "ask \\"sre\\" first"')
        assert config.rules[0].message == 'ask "sre" first'

    def test_settings(self):
        digest = "ab" * 32
        config = parse_config(
            "set confirm-timeout 15\n"
            "set exec-timeout 300\n"
            'set confirm-phrase "yes {context}"\n'
            f"set override-token-sha256 {digest.upper()}\n"
            "set audit-log /var/log/kubeguard/audit.log\n"
            "set log ~/kubeguard.log\n"
            "set strict-merge\n"
            "set no-default-tiers\n"
            "set verbose\n"
        )
        assert config.confirm_timeout == 15.0
        assert config.exec_timeout == 300.0
        assert config.confirm_phrase == "yes {context}"
        assert config.override_token_sha256 == digest
        assert config.audit_log == Path("/var/log/kubeguard/audit.log")
        assert config.log == Path.home() / "kubeguard.log"
        assert config.strict_merge
        assert not config.default_tiers
        assert config.verbose

    @pytest.mark.parametrize(
        "text,message",
        [
            ("bogus x", "line 1: unknown directive 'bogus'"),
            ("\nproduction", "line 2: requires a pattern"),
            ("deny", "requires a pattern"),
            ("set", "requires a setting name"),
            ("set colour blue", "unknown setting 'colour'"),
            ("set verbose please", "takes no value"),
            ("set confirm-timeout", "requires a number"),
            ("set confirm-timeout soon", "requires a number"),
            ("set confirm-timeout 0", "must be positive"),
            ("set confirm-phrase", "requires a phrase"),
            ('set confirm-phrase "  "', "must not be blank"),
            ("set override-token-sha256 abc", "64-character hex digest"),
            ("set audit-log", "requires a path"),
            ('deny "only a message"', "pattern required before message"),
        ],
    )
    def test_errors(self, text, message):
        with pytest.raises(ValueError, match=message):
            parse_config(text)


class TestMatching:
    @pytest.mark.parametrize(
        "text,pattern,expected",
        [
            ("prod-eu", "*prod*", True),
            ("PROD-EU", "*prod*", True),
            ("prod-eu", "prod", True),
            ("eu-Payments-1", "payments", True),
            ("prod-eu", "staging", False),
            ("kind-x", "kind-*", True),
            ("my-kind-x", "kind-*", False),
            ("stg1", "stg[0-9]", True),
        ],
    )
    def test_pattern_matches(self, text, pattern, expected):
        assert pattern_matches(text, pattern) is expected

    def test_last_match_wins(self):
        config = Config(
            rules=[
                Rule("deny", "kubectl delete *"),
                Rule("safe", "kubectl delete pod scratch-*"),
            ]
        )
        assert match_words(["kubectl", "delete", "pod", "scratch-1"], config).decision == "safe"
        assert match_words(["kubectl", "delete", "pod", "api-1"], config).decision == "deny"

    def test_no_match(self):
        assert match_words(["kubectl", "get", "pods"], Config()) is None

    def test_match_carries_origin(self):
        config = Config(rules=[Rule("deny", "helm *", message="no helm", source="/x", scope=SCOPE_USER)])
        match = match_words(["helm", "list"], config)
        assert (match.message, match.source, match.scope) == ("no helm", "/x", SCOPE_USER)


class TestLoadConfig:
    def test_no_files(self, env, workdir):
        config = load_config(workdir, env)
        assert config.tier_rules == []
        assert config.rules == []

    def test_scopes_and_priority(self, env, home, workdir):
        (home / "config").write_text("production user-*\ndeny kubectl delete *\nset confirm-timeout 30\n")
        (workdir / ".kubeguard").write_text("production project-*\nsafe kubectl delete pod tmp-*\n")
        extra = workdir / "extra.conf"
        extra.write_text("dev env-*\nset confirm-timeout 5\n")
        env = {**env, "KUBEGUARD_CONFIG": str(extra)}

        config = load_config(workdir, env)

        # tier rules: highest-priority scope first
        assert [r.scope for r in config.tier_rules] == [SCOPE_ENV, SCOPE_PROJECT, SCOPE_USER]
        # command rules: load order, later scopes win under last-match
        assert [r.scope for r in config.rules] == [SCOPE_USER, SCOPE_PROJECT]
        assert config.rules[0].source == str(home / "config")
        assert config.confirm_timeout == 5.0

    def test_project_config_found_walking_up(self, env, workdir):
        (workdir / ".kubeguard").write_text("staging acme-*\n")
        nested = workdir / "a" / "b"
        nested.mkdir(parents=True)
        config = load_config(nested, env)
        assert config.tier_rules[0].pattern == "acme-*"

    def test_syntax_error_names_file_and_line(self, env, home, workdir):
        (home / "config").write_text("production x\nfrobnicate y\n")
        with pytest.raises(ConfigError, match=r"config: line 2: unknown directive 'frobnicate'"):
            load_config(workdir, env)

    def test_missing_env_config(self, env, workdir):
        env = {**env, "KUBEGUARD_CONFIG": str(workdir / "missing")}
        with pytest.raises(ConfigError, match="missing file"):
            load_config(workdir, env)

    def test_settings_fall_through(self, env, home, workdir):
        (home / "config").write_text("set strict-merge\nset confirm-phrase delete-{context}\n")
        (workdir / ".kubeguard").write_text("set verbose\n")
        config = load_config(workdir, env)
        assert config.strict_merge
        assert config.verbose
        assert config.confirm_phrase == "delete-{context}"

    def test_project_can_restore_default_timeout(self, env, home, workdir):
        (home / "config").write_text("set confirm-timeout 30\n")
        (workdir / ".kubeguard").write_text(f"set confirm-timeout {DEFAULT_CONFIRM_TIMEOUT:g}\n")
        config = load_config(workdir, env)
        assert config.effective_confirm_timeout == DEFAULT_CONFIRM_TIMEOUT

    def test_project_can_restore_default_phrase(self, env, home, workdir):
        (home / "config").write_text("set confirm-phrase yes-{context}\n")
        (workdir / ".kubeguard").write_text("set confirm-phrase {context}\n")
        assert load_config(workdir, env).effective_confirm_phrase == "{context}"


class TestPaths:
    def test_default_credential_path(self, env, home):
        assert credential_paths(env) == [home / "kubeconfig"]

    def test_search_path(self, env, tmp_path):
        a, b = tmp_path / "a", tmp_path / "b"
        env = {**env, "KUBEGUARD_KUBECONFIG": f"{a}{os.pathsep}{os.pathsep}{b}"}
        assert credential_paths(env) == [a, b]

    def test_audit_log_path(self, env, home, tmp_path):
        assert audit_log_path(Config(), env) == home / "audit.log"
        custom = tmp_path / "elsewhere.log"
        assert audit_log_path(Config(audit_log=custom), env) == custom


class TestConfigureLogging:
    def test_json_log_file(self, tmp_path):
        log_file = tmp_path / "logs" / "kubeguard.log"
        config = Config(log=log_file)
        with open_log_file(config) as handle:
            configure_logging(config, log_file=handle)
            structlog.get_logger().info("gate_decision", context="prod")
        assert handle.closed
        lines = log_file.read_text().splitlines()
        event = json.loads(lines[-1])
        assert event["event"] == "gate_decision"
        assert event["context"] == "prod"
        assert event["level"] == "info"
        assert "ts" in event

    def test_quiet_by_default(self, capsys):
        configure_logging(Config())
        structlog.get_logger().info("noise")
        structlog.get_logger().warning("careful")
        err = capsys.readouterr().err
        assert "noise" not in err
        assert "careful" in err

    def test_no_log_file_configured(self):
        assert open_log_file(Config()) is None

    def test_unopenable_log_file(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        with pytest.raises(ConfigError, match="cannot open log file"):
            open_log_file(Config(log=blocker / "kubeguard.log"))
