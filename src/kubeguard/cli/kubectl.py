"""
Kubectl command handler for kubeguard.

Read-only verbs are safe on any tier. Everything that can change cluster
state, open a shell or tunnel into it, or rewrite kubeconfig is destructive.
"""

from __future__ import annotations

from kubeguard.cli import Classification, HandlerContext, find_flag, skip_global_flags

COMMANDS = ["kubectl", "k", "oc"]

# Global flags that consume the following token
FLAGS_WITH_ARG = frozenset(
    {
        "-n",
        "--namespace",
        "-l",
        "--selector",
        "-o",
        "--output",
        "--context",
        "--cluster",
        "--user",
        "-s",
        "--server",
        "--kubeconfig",
        "--as",
        "--as-group",
        "--request-timeout",
        "-v",
    }
)

# Flags that point kubectl at a kubeconfig, cluster or identity of its own
RETARGET_FLAGS = frozenset(
    {
        "--kubeconfig",
        "--context",
        "--cluster",
        "-s",
        "--server",
        "--user",
        "--token",
        "--username",
        "--password",
        "--certificate-authority",
        "--client-certificate",
        "--client-key",
    }
)

# After these actions some of the same names describe the object being written
OBJECT_FLAGS = {
    "config": RETARGET_FLAGS - {"--kubeconfig", "--context"},
    "create": frozenset({"--user"}),
    "set": frozenset({"--user"}),
}

# Safe read-only actions
SAFE_ACTIONS = frozenset(
    {
        "get",
        "describe",
        "explain",
        "logs",
        "top",
        "events",
        "cluster-info",
        "version",
        "api-resources",
        "api-versions",
        "wait",
        "diff",
        "kustomize",
        "completion",
        "options",
        "help",
    }
)

# Actions that modify cluster state or reach into running workloads
DESTRUCTIVE_ACTIONS = frozenset(
    {
        "create",
        "apply",
        "delete",
        "replace",
        "patch",
        "edit",
        "set",
        "scale",
        "autoscale",
        "expose",
        "run",
        "attach",
        "exec",
        "cp",
        "label",
        "annotate",
        "taint",
        "cordon",
        "uncordon",
        "drain",
        "port-forward",
        "proxy",
        "debug",
    }
)

# Actions that accept --dry-run; a client/server dry run changes nothing
DRY_RUN_ACTIONS = frozenset(
    {"create", "apply", "delete", "replace", "patch", "set", "scale", "expose", "run", "label", "annotate", "taint"}
)

# Multi-level commands: read-only subcommands
SAFE_SUBCOMMANDS = {
    "config": {"view", "get-contexts", "get-clusters", "get-users", "current-context"},
    "auth": {"can-i", "whoami"},
    "rollout": {"status", "history"},
    "certificate": set(),
    "plugin": {"list"},
}


def _is_dry_run(rest: list[str]) -> bool:
    for token in rest:
        if token == "--dry-run":
            return True
        if token.startswith("--dry-run="):
            return token.split("=", 1)[1] in {"client", "server", "true"}
    return False


def classify(ctx: HandlerContext) -> Classification:
    """Classify kubectl command."""
    tokens = ctx.tokens
    base = tokens[0] if tokens else "kubectl"
    if "-h" in tokens or "--help" in tokens:
        return Classification("safe", description=f"{base} --help")

    idx = skip_global_flags(tokens, FLAGS_WITH_ARG)
    if idx >= len(tokens):
        return Classification("destructive", description=base)

    action = tokens[idx]
    rest = tokens[idx + 1 :]
    desc = f"{base} {action}"

    if action in SAFE_SUBCOMMANDS:
        sub_idx = skip_global_flags(rest, FLAGS_WITH_ARG, start=0)
        if sub_idx < len(rest):
            sub = rest[sub_idx]
            if sub in SAFE_SUBCOMMANDS[action]:
                return Classification("safe", description=f"{desc} {sub}")
            return Classification("destructive", description=f"{desc} {sub}")
        return Classification("destructive", description=desc)

    if action in SAFE_ACTIONS:
        return Classification("safe", description=desc)

    if action in DRY_RUN_ACTIONS and _is_dry_run(rest):
        return Classification("safe", description=f"{desc} --dry-run")

    if action in DESTRUCTIVE_ACTIONS:
        return Classification("destructive", description=desc)

    # Unknown verbs and plugins: assume the worst
    return Classification("destructive", description=desc)


def retargeting_flag(tokens: list[str]) -> str | None:
    """First flag that sends kubectl somewhere other than its kubeconfig's current context."""
    idx = skip_global_flags(tokens, FLAGS_WITH_ARG)
    found = find_flag(tokens[1:idx], RETARGET_FLAGS)
    if found is not None or idx >= len(tokens):
        return found
    action = tokens[idx]
    return find_flag(tokens[idx + 1 :], RETARGET_FLAGS - OBJECT_FLAGS.get(action, frozenset()))
