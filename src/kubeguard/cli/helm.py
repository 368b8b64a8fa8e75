"""
Helm command handler for kubeguard.

Helm is the Kubernetes package manager. Safe operations are read-only queries
(list, get, show, status, history, search) and dry-run modes. Everything that
installs, upgrades, removes or tests a release is destructive.
"""

from __future__ import annotations

from kubeguard.cli import Classification, HandlerContext, find_flag, skip_global_flags

COMMANDS = ["helm"]

FLAGS_WITH_ARG = frozenset(
    {
        "-n",
        "--namespace",
        "--kube-context",
        "--kube-apiserver",
        "--kube-as-user",
        "--kube-as-group",
        "--kube-ca-file",
        "--kube-token",
        "--kubeconfig",
        "--registry-config",
        "--repository-cache",
        "--repository-config",
        "--burst-limit",
        "--qps",
        "--kube-tls-server-name",
    }
)

# Global flags that point helm at another kubeconfig, context or API server
RETARGET_FLAGS = frozenset(
    {"--kubeconfig", "--kube-context", "--kube-apiserver", "--kube-token", "--kube-ca-file"}
)

# Safe top-level commands (read-only)
SAFE_COMMANDS = frozenset(
    {
        "completion",
        "env",
        "get",
        "help",
        "history",
        "lint",
        "list",
        "ls",
        "search",
        "show",
        "inspect",
        "status",
        "template",
        "verify",
        "version",
    }
)

# Release operations that become safe with --dry-run
DRY_RUN_COMMANDS = frozenset({"install", "upgrade", "uninstall", "delete", "del", "un", "rollback"})

# Short aliases that need expansion for clarity
ACTION_ALIASES = {
    "del": "delete",
    "un": "uninstall",
    "fetch": "pull",
}

# Nested commands: read-only subcommands
SAFE_SUBCOMMANDS = {
    "dependency": {"list", "ls"},
    "dep": {"list", "ls"},
    "plugin": {"list", "ls", "verify"},
    "repo": {"list", "ls"},
    "registry": set(),
}


def classify(ctx: HandlerContext) -> Classification:
    """Classify helm command."""
    tokens = ctx.tokens
    base = tokens[0] if tokens else "helm"
    if "-h" in tokens or "--help" in tokens:
        return Classification("safe", description=f"{base} --help")

    idx = skip_global_flags(tokens, FLAGS_WITH_ARG)
    if idx >= len(tokens):
        return Classification("destructive", description=base)

    action = tokens[idx]
    rest = tokens[idx + 1 :]
    display = ACTION_ALIASES.get(action, action)
    desc = f"{base} {display}"

    if action in SAFE_COMMANDS:
        return Classification("safe", description=desc)

    if action in DRY_RUN_COMMANDS:
        for token in rest:
            if token == "--dry-run" or token.startswith("--dry-run="):
                return Classification("safe", description=f"{desc} --dry-run")
        return Classification("destructive", description=desc)

    if action in SAFE_SUBCOMMANDS:
        for token in rest:
            if token.startswith("-"):
                continue
            nested = f"{desc} {token}"
            if token in SAFE_SUBCOMMANDS[action]:
                return Classification("safe", description=nested)
            return Classification("destructive", description=nested)
        return Classification("destructive", description=desc)

    # create, package, pull, push, test and anything unknown
    return Classification("destructive", description=desc)


def retargeting_flag(tokens: list[str]) -> str | None:
    """First flag that sends helm somewhere other than its kubeconfig's current context."""
    return find_flag(tokens[1:], RETARGET_FLAGS)
