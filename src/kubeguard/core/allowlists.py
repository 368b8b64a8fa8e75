"""
Allowlists for kubeguard - local filters and transparent wrappers.

These may appear in a pipeline after kubectl without making the command
destructive, because they never talk to the cluster.
"""

from __future__ import annotations

# === Local Read-Only Filters ===

SIMPLE_SAFE = frozenset(
    {
        "cat",  # print files
        "head",  # print first lines
        "tail",  # print last lines
        "less",  # pager
        "more",  # pager
        "grep",  # filter lines
        "egrep",  # filter lines (extended)
        "fgrep",  # filter lines (fixed strings)
        "rg",  # ripgrep
        "jq",  # JSON processor
        "yq",  # YAML processor
        "wc",  # count lines/words
        "sort",  # sort lines
        "uniq",  # collapse duplicate lines
        "cut",  # select columns
        "column",  # format columns
        "tr",  # translate characters
        "echo",  # print arguments
        "printf",  # formatted print
        "base64",  # decode secrets for reading
        "true",  # no-op
    }
)


# === Transparent Wrappers ===
# Commands that run another command; the wrapped command is what we classify.

WRAPPER_COMMANDS = frozenset(
    {
        "time",  # measure command execution time
        "timeout",  # run command with time limit
        "nice",  # run command with altered priority
        "nohup",  # run command immune to hangups
        "command",  # run command ignoring functions
    }
)

# Wrapper flags that consume the following token
WRAPPER_FLAGS_WITH_ARG = {
    "timeout": frozenset({"-s", "--signal", "-k", "--kill-after"}),
    "nice": frozenset({"-n", "--adjustment"}),
}


# === Target Overrides ===
# Environment variables that aim kubectl or helm somewhere other than the
# kubeconfig kubeguard hands to the command.

TARGETING_ENV_VARS = frozenset(
    {
        "KUBECONFIG",
        "HELM_KUBECONTEXT",
        "HELM_KUBEAPISERVER",
        "HELM_KUBETOKEN",
        "HELM_KUBECAFILE",
    }
)

# Builtins whose arguments set or export variables
DECLARATION_BUILTINS = frozenset({"export", "declare", "typeset", "readonly", "local"})

# `env` flags: these drop the environment, so kubectl falls back to ~/.kube/config
ENV_CLEAR_FLAGS = frozenset({"-", "-i", "--ignore-environment"})
ENV_FLAGS_WITH_ARG = frozenset({"-u", "--unset", "-C", "--chdir"})
# `env -S` re-splits a string into a command line we never see as words
ENV_SPLIT_FLAGS = frozenset({"-S", "--split-string"})

# Shells whose -c argument is itself a command line
SHELLS = frozenset({"sh", "bash", "zsh", "dash", "ksh"})
