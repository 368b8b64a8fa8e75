"""kubeguard configuration system."""

from __future__ import annotations

import fnmatch
import logging
import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import IO

import structlog

from kubeguard.core.errors import ConfigError
from kubeguard.core.models import SensitivityTier

HOME_ENV = "KUBEGUARD_HOME"
ENV_CONFIG = "KUBEGUARD_CONFIG"
KUBECONFIG_ENV = "KUBEGUARD_KUBECONFIG"
OVERRIDE_TOKEN_ENV = "KUBEGUARD_OVERRIDE_TOKEN"
PROJECT_CONFIG_NAME = ".kubeguard"

DEFAULT_CONFIRM_TIMEOUT = 60.0
DEFAULT_CONFIRM_PHRASE = "{context}"

# Config scopes in priority order (lowest to highest)
SCOPE_USER = "user"
SCOPE_PROJECT = "project"
SCOPE_ENV = "env"

TIER_DIRECTIVES = {tier.value: tier for tier in SensitivityTier}
COMMAND_DIRECTIVES = ("safe", "destructive", "deny")


@dataclass
class TierRule:
    """Maps context names matching `pattern` to a tier."""

    tier: SensitivityTier
    pattern: str
    source: str | None = None  # file path, or 'built-in'
    scope: str | None = None  # user/project/env

    def describe(self) -> str:
        origin = f" from {self.source}" if self.source else ""
        return f"rule '{self.pattern}' -> {self.tier.value}{origin}"


@dataclass
class Rule:
    """A command rule with origin tracking."""

    decision: str  # 'safe' | 'destructive' | 'deny'
    pattern: str
    message: str | None = None
    source: str | None = None
    scope: str | None = None


@dataclass
class Config:
    """Parsed configuration."""

    tier_rules: list[TierRule] = field(default_factory=list)
    """Tier rules, highest-priority scope first. First match wins."""

    rules: list[Rule] = field(default_factory=list)
    """Command rules in load order. Last match wins."""

    confirm_timeout: float | None = None  # None = DEFAULT_CONFIRM_TIMEOUT
    confirm_phrase: str | None = None  # None = DEFAULT_CONFIRM_PHRASE
    audit_log: Path | None = None  # None = $KUBEGUARD_HOME/audit.log
    override_token_sha256: str | None = None
    exec_timeout: float | None = None
    strict_merge: bool = False
    default_tiers: bool = True
    verbose: bool = False
    log: Path | None = None  # None = no diagnostic log file

    @property
    def effective_confirm_timeout(self) -> float:
        return DEFAULT_CONFIRM_TIMEOUT if self.confirm_timeout is None else self.confirm_timeout

    @property
    def effective_confirm_phrase(self) -> str:
        return DEFAULT_CONFIRM_PHRASE if self.confirm_phrase is None else self.confirm_phrase


@dataclass
class Match:
    """Result of matching a command against config rules."""

    decision: str
    pattern: str
    message: str | None = None
    source: str | None = None
    scope: str | None = None


# === Paths ===


def kubeguard_home(env: Mapping[str, str] | None = None) -> Path:
    """Directory holding the user config, credential file and audit log."""
    env = os.environ if env is None else env
    override = env.get(HOME_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".kubeguard"


def credential_paths(env: Mapping[str, str] | None = None) -> list[Path]:
    """Credential search path. $KUBEGUARD_KUBECONFIG, else the default file.

    Entries are os.pathsep-separated. Conflicts between them resolve
    last-wins; the first entry is where changes are saved.
    """
    env = os.environ if env is None else env
    raw = env.get(KUBECONFIG_ENV, "")
    paths = [Path(p).expanduser() for p in raw.split(os.pathsep) if p.strip()]
    if paths:
        return paths
    return [kubeguard_home(env) / "kubeconfig"]


def audit_log_path(config: Config, env: Mapping[str, str] | None = None) -> Path:
    if config.audit_log is not None:
        return config.audit_log
    return kubeguard_home(env) / "audit.log"


# === Config Loading ===


def _find_project_config(cwd: Path) -> Path | None:
    """Walk up from cwd to find a .kubeguard file."""
    current = cwd.resolve()
    while True:
        candidate = current / PROJECT_CONFIG_NAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:  # reached root
            return None
        current = parent


def _merge_configs(base: Config, overlay: Config) -> Config:
    """Merge overlay config into base.

    Command rules accumulate in load order, so later scopes win under
    last-match-wins. Tier rules are first-match-wins, so the overlay's rules
    go in front. Settings: overlay wins if set.
    """
    return replace(
        base,
        tier_rules=overlay.tier_rules + base.tier_rules,
        rules=base.rules + overlay.rules,
        confirm_timeout=overlay.confirm_timeout
        if overlay.confirm_timeout is not None
        else base.confirm_timeout,
        confirm_phrase=overlay.confirm_phrase
        if overlay.confirm_phrase is not None
        else base.confirm_phrase,
        audit_log=overlay.audit_log if overlay.audit_log is not None else base.audit_log,
        override_token_sha256=overlay.override_token_sha256
        if overlay.override_token_sha256 is not None
        else base.override_token_sha256,
        exec_timeout=overlay.exec_timeout
        if overlay.exec_timeout is not None
        else base.exec_timeout,
        strict_merge=overlay.strict_merge or base.strict_merge,
        default_tiers=overlay.default_tiers and base.default_tiers,
        verbose=overlay.verbose or base.verbose,
        log=overlay.log if overlay.log is not None else base.log,
    )


def _tag_rules(config: Config, source: str, scope: str) -> Config:
    """Tag all rules in config with source file and scope."""
    return replace(
        config,
        tier_rules=[replace(r, source=source, scope=scope) for r in config.tier_rules],
        rules=[replace(r, source=source, scope=scope) for r in config.rules],
    )


def _load_file(path: Path, scope: str) -> Config:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read config {path}: {exc}") from exc
    try:
        parsed = parse_config(text)
    except ValueError as exc:
        raise ConfigError(f"{path}: {exc}") from None
    return _tag_rules(parsed, str(path), scope)


def load_config(cwd: Path, env: Mapping[str, str] | None = None) -> Config:
    """Load config from $KUBEGUARD_HOME/config, .kubeguard and $KUBEGUARD_CONFIG."""
    env = os.environ if env is None else env
    config = Config()

    # 1. User config (lowest priority)
    user_config = kubeguard_home(env) / "config"
    if user_config.is_file():
        config = _merge_configs(config, _load_file(user_config, SCOPE_USER))

    # 2. Project config (walk up from cwd)
    project_path = _find_project_config(cwd)
    if project_path is not None:
        config = _merge_configs(config, _load_file(project_path, SCOPE_PROJECT))

    # 3. Env override (highest priority)
    env_path = env.get(ENV_CONFIG)
    if env_path:
        env_config_path = Path(env_path).expanduser()
        if not env_config_path.is_file():
            raise ConfigError(f"{ENV_CONFIG} points at a missing file: {env_config_path}")
        config = _merge_configs(config, _load_file(env_config_path, SCOPE_ENV))

    return config


def parse_config(text: str) -> Config:
    """Parse config text into Config object. Raises ValueError on syntax errors."""
    tier_rules: list[TierRule] = []
    rules: list[Rule] = []
    settings: dict[str, bool | float | str | Path] = {}

    for lineno, raw_line in enumerate(text.splitlines(), 1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue

        parts = line.split(None, 1)
        directive = parts[0].lower()
        rest = parts[1].strip() if len(parts) > 1 else ""

        try:
            if directive in TIER_DIRECTIVES:
                if not rest:
                    raise ValueError("requires a pattern")
                tier_rules.append(TierRule(TIER_DIRECTIVES[directive], rest))

            elif directive in ("safe", "destructive"):
                if not rest:
                    raise ValueError("requires a pattern")
                rules.append(Rule(directive, rest))

            elif directive == "deny":
                if not rest:
                    raise ValueError("requires a pattern")
                pattern, message = _extract_message(rest)
                rules.append(Rule("deny", pattern, message=message))

            elif directive == "set":
                _apply_setting(settings, rest)

            else:
                raise ValueError(f"unknown directive '{directive}'")

        except ValueError as e:
            raise ValueError(f"line {lineno}: {e}") from None

    return Config(
        tier_rules=tier_rules,
        rules=rules,
        confirm_timeout=settings.get("confirm_timeout"),
        confirm_phrase=settings.get("confirm_phrase"),
        audit_log=settings.get("audit_log"),
        override_token_sha256=settings.get("override_token_sha256"),
        exec_timeout=settings.get("exec_timeout"),
        strict_merge=settings.get("strict_merge", False),
        default_tiers=not settings.get("no_default_tiers", False),
        verbose=settings.get("verbose", False),
        log=settings.get("log"),
    )


def _unescape(s: str) -> str:
    """Unescape backslash sequences in a message string."""
    result = []
    i = 0
    while i < len(s):
        if s[i] == "\\" and i + 1 < len(s):
            next_char = s[i + 1]
            if next_char in ('"', "\\"):
                result.append(next_char)
                i += 2
                continue
        result.append(s[i])
        i += 1
    return "".join(result)


def _extract_message(s: str) -> tuple[str, str | None]:
    """Split `pattern "message"` into its parts. Message may be None."""
    s = s.rstrip()
    if not s.endswith('"'):
        return s, None

    # Count trailing backslashes to check if quote is escaped
    j = len(s) - 2
    num_bs = 0
    while j >= 0 and s[j] == "\\":
        num_bs += 1
        j -= 1
    if num_bs % 2 == 1:
        return s, None

    # Find opening quote (must be preceded by whitespace)
    i = len(s) - 2
    while i >= 0:
        if s[i] == '"' and (i == 0 or s[i - 1].isspace()):
            message = _unescape(s[i + 1 : -1])
            pattern = s[:i].rstrip()
            if not pattern:
                raise ValueError("pattern required before message")
            return pattern, message
        i -= 1

    return s, None


def _positive_float(key: str, value: str | None) -> float:
    if value is None:
        raise ValueError(f"'{key}' requires a number of seconds")
    try:
        number = float(value)
    except ValueError:
        raise ValueError(f"'{key}' requires a number, got '{value}'") from None
    if number <= 0:
        raise ValueError(f"'{key}' must be positive, got '{value}'")
    return number


def _apply_setting(settings: dict[str, bool | float | str | Path], rest: str) -> None:
    """Parse and apply a 'set' directive. Raises ValueError on invalid setting."""
    if not rest:
        raise ValueError("'set' requires a setting name")

    parts = rest.split(None, 1)
    key = parts[0].lower()
    value = parts[1].strip() if len(parts) > 1 else None
    key_normalized = key.replace("-", "_")

    # Boolean settings (no value required)
    if key_normalized in ("strict_merge", "no_default_tiers", "verbose"):
        if value is not None:
            raise ValueError(f"'{key}' takes no value")
        settings[key_normalized] = True

    # Number settings
    elif key_normalized in ("confirm_timeout", "exec_timeout"):
        settings[key_normalized] = _positive_float(key, value)

    elif key_normalized == "confirm_phrase":
        if not value:
            raise ValueError("'confirm-phrase' requires a phrase")
        phrase = value
        if len(phrase) >= 2 and phrase[0] == phrase[-1] == '"':
            phrase = _unescape(phrase[1:-1])
        if not phrase.strip():
            raise ValueError("'confirm-phrase' must not be blank")
        settings[key_normalized] = phrase

    elif key_normalized == "override_token_sha256":
        digest = (value or "").lower()
        if len(digest) != 64 or any(c not in "0123456789abcdef" for c in digest):
            raise ValueError("'override-token-sha256' requires a 64-character hex digest")
        settings[key_normalized] = digest

    # Path settings
    elif key_normalized in ("audit_log", "log"):
        if value is None:
            raise ValueError(f"'{key}' requires a path")
        settings[key_normalized] = Path(value).expanduser()

    else:
        raise ValueError(f"unknown setting '{key}'")


# === Matching ===


def pattern_matches(text: str, pattern: str) -> bool:
    """Case-insensitive glob match, or substring match for plain patterns."""
    text = text.lower()
    pattern = pattern.lower()
    if any(c in pattern for c in "*?["):
        return fnmatch.fnmatchcase(text, pattern)
    return pattern in text


def match_words(words: list[str], config: Config) -> Match | None:
    """Match command words against command rules. Returns last matching rule."""
    joined = " ".join(words)
    result: Match | None = None
    for rule in config.rules:
        if fnmatch.fnmatchcase(joined, rule.pattern):
            result = Match(
                decision=rule.decision,
                pattern=rule.pattern,
                message=rule.message,
                source=rule.source,
                scope=rule.scope,
            )
    return result


# === Logging ===


def open_log_file(config: Config) -> IO[str] | None:
    """Open the `set log` file for appending. None when no log file is set.

    The caller owns the handle and closes it when the run ends.
    """
    if config.log is None:
        return None
    try:
        config.log.parent.mkdir(parents=True, exist_ok=True)
        return config.log.open("a", encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot open log file {config.log}: {exc}") from exc


def configure_logging(
    config: Config,
    *,
    stream: IO[str] | None = None,
    log_file: IO[str] | None = None,
) -> None:
    """Configure structlog from config settings. Call once at startup.

    With a `log_file` (see open_log_file), events are written to it as JSON
    lines. Verbose mode renders to stderr for humans. Otherwise only warnings
    reach stderr.
    """
    if log_file is not None:
        structlog.configure(
            processors=[
                structlog.processors.TimeStamper(fmt="iso", key="ts"),
                structlog.processors.add_log_level,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(
                logging.DEBUG if config.verbose else logging.INFO
            ),
            logger_factory=structlog.WriteLoggerFactory(file=log_file),
            cache_logger_on_first_use=False,
        )
        return

    level = logging.DEBUG if config.verbose else logging.WARNING
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S"),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stderr),
        cache_logger_on_first_use=False,
    )
