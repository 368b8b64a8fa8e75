"""
kubeguard - context-aware cluster operations.

Switches between kubeconfig contexts and runs kubectl/helm against them,
asking for typed confirmation on production-like contexts and recording
every decision in a hash-chained audit log.

Exit codes:
  0  success (or the command's own status for `exec`)
  1  kubeguard error: bad config, unknown context, audit log unavailable, ...
  2  refused by the safety gate
  3  `exec` only: the command itself exited 2, remapped so it cannot be
     mistaken for a refusal
"""

from __future__ import annotations

import argparse
import contextlib
import os
import sys
from collections.abc import Mapping, Sequence
from dataclasses import replace
from pathlib import Path
from typing import NoReturn

import structlog

from kubeguard.core.config import configure_logging, load_config, open_log_file
from kubeguard.core.dispatcher import Dispatcher, Session
from kubeguard.core.errors import KubeguardError, SafetyDenied
from kubeguard.core.executor import Executor
from kubeguard.core.prompt import Prompter

log = structlog.get_logger()

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_DENIED = 2
EXIT_REMAPPED = 3


class _Parser(argparse.ArgumentParser):
    """argparse exits 2 on usage errors; that status is reserved for refusals."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(EXIT_ERROR, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(prog="kubeguard", description="Context-aware cluster operations with safety gates")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log diagnostics to stderr")
    sub = parser.add_subparsers(dest="action", required=True)

    sub.add_parser("list", help="List contexts with their sensitivity tier").set_defaults(handler=cmd_list)
    sub.add_parser("current", help="Print the current context").set_defaults(handler=cmd_current)
    sub.add_parser("validate", help="Check the credential store for problems").set_defaults(
        handler=cmd_validate
    )

    switch = sub.add_parser("switch", help="Make a context current")
    switch.add_argument("name")
    switch.add_argument("--override-token", help="Pre-authorised token instead of a typed confirmation")
    switch.set_defaults(handler=cmd_switch)

    exec_ = sub.add_parser("exec", help="Run a command against a context: exec NAME -- CMD...")
    exec_.add_argument("name")
    exec_.add_argument("--override-token", help="Pre-authorised token instead of a typed confirmation")
    exec_.add_argument("command", nargs="*", help=argparse.SUPPRESS)
    exec_.set_defaults(handler=cmd_exec)

    audit = sub.add_parser("audit", help="Inspect the audit log")
    audit_sub = audit.add_subparsers(dest="audit_action", required=True)
    tail = audit_sub.add_parser("tail", help="Show the newest entries")
    tail.add_argument("n", nargs="?", type=int, default=10)
    tail.set_defaults(handler=cmd_audit_tail)
    audit_sub.add_parser("verify", help="Check the hash chain").set_defaults(handler=cmd_audit_verify)
    audit_sub.add_parser("rotate", help="Archive the log and start a new chained one").set_defaults(
        handler=cmd_audit_rotate
    )

    merge = sub.add_parser("merge", help="Merge kubeconfig files into the credential store")
    merge.add_argument("paths", nargs="+")
    merge.add_argument("--output", help="Write the merged result here instead")
    merge.add_argument("--strict", action="store_true", help="Fail on conflicting definitions")
    merge.set_defaults(handler=cmd_merge)

    add = sub.add_parser("add", help="Add a context over an existing cluster and user")
    add.add_argument("name")
    add.add_argument("--cluster", required=True)
    add.add_argument("--user", required=True)
    add.add_argument("--namespace", default="")
    add.add_argument("--override-token", help="Pre-authorised token for replacing a sensitive context")
    add.set_defaults(handler=cmd_add)

    delete = sub.add_parser("delete", help="Delete a context")
    delete.add_argument("name")
    delete.add_argument("--override-token", help="Pre-authorised token instead of a typed confirmation")
    delete.set_defaults(handler=cmd_delete)

    return parser


def _split_command(argv: list[str]) -> tuple[list[str], list[str]]:
    """Split at the first `--`: kubeguard's own arguments, then the command."""
    if "--" in argv:
        idx = argv.index("--")
        return argv[:idx], argv[idx + 1 :]
    return argv, []


# === Subcommands ===


def cmd_list(dispatcher: Dispatcher, args: argparse.Namespace) -> int:
    listings = dispatcher.list_contexts()
    if not listings:
        print("no contexts")
        return EXIT_OK
    width = max(len(item.context.name) for item in listings)
    for item in listings:
        marker = "*" if item.current else " "
        print(
            f"{marker} {item.context.name:<{width}}  {item.tier.tier.value:<12}  "
            f"{item.context.effective_namespace:<16}  {item.tier.reason}"
        )
    return EXIT_OK


def cmd_current(dispatcher: Dispatcher, args: argparse.Namespace) -> int:
    listing = dispatcher.current()
    if listing is None:
        _error("no current context")
        return EXIT_ERROR
    print(f"{listing.context.name} ({listing.tier.tier.value})")
    return EXIT_OK


def cmd_validate(dispatcher: Dispatcher, args: argparse.Namespace) -> int:
    issues = dispatcher.validate()
    for issue in issues:
        print(issue)
    if not issues:
        print("ok")
    return EXIT_ERROR if any(i.severity == "error" for i in issues) else EXIT_OK


def cmd_switch(dispatcher: Dispatcher, args: argparse.Namespace) -> int:
    decision = dispatcher.switch(args.name, override_token=args.override_token)
    print(f"switched to {args.name} ({decision.tier.value}, {decision.outcome.value})")
    return EXIT_OK


def cmd_exec(dispatcher: Dispatcher, args: argparse.Namespace) -> int:
    command = list(args.command) + list(args.trailing)
    if not command:
        _error("exec needs a command after --")
        return EXIT_ERROR
    result = dispatcher.exec(args.name, command, override_token=args.override_token)
    if result.stdout:
        sys.stdout.write(result.stdout)
    if result.stderr:
        sys.stderr.write(result.stderr)
    code = result.exit_code
    if code < 0:
        code = 128 - code  # killed by signal -N
    if code == EXIT_DENIED:
        _error(f"command exited with status {EXIT_DENIED}, reported as {EXIT_REMAPPED}")
        return EXIT_REMAPPED
    return code


def cmd_audit_tail(dispatcher: Dispatcher, args: argparse.Namespace) -> int:
    for entry in dispatcher.audit_tail(args.n):
        parts = [
            f"{entry.seq:>5}",
            entry.timestamp,
            entry.actor,
            entry.action.value,
            entry.outcome.value,
            entry.target_context or "-",
            entry.tier or "-",
            entry.reason,
        ]
        if entry.command:
            parts.append(f"cmd={entry.command}")
        if entry.exit_code is not None:
            parts.append(f"exit={entry.exit_code}")
        print("  ".join(parts))
    return EXIT_OK


def cmd_audit_verify(dispatcher: Dispatcher, args: argparse.Namespace) -> int:
    ok, index = dispatcher.audit_verify()
    if ok:
        print("audit log ok")
        return EXIT_OK
    print(f"audit log broken at entry {index}")
    return EXIT_ERROR


def cmd_audit_rotate(dispatcher: Dispatcher, args: argparse.Namespace) -> int:
    archive = dispatcher.audit_rotate()
    if archive is None:
        print("started a new audit log")
    else:
        print(f"archived to {archive}")
    return EXIT_OK


def cmd_merge(dispatcher: Dispatcher, args: argparse.Namespace) -> int:
    merged = dispatcher.merge(args.paths, output=args.output, strict=True if args.strict else None)
    destination = args.output or dispatcher.session.primary_path
    print(f"merged {len(merged.contexts)} contexts into {destination}")
    return EXIT_OK


def cmd_add(dispatcher: Dispatcher, args: argparse.Namespace) -> int:
    context = dispatcher.add_context(
        args.name,
        cluster=args.cluster,
        user=args.user,
        namespace=args.namespace,
        override_token=args.override_token,
    )
    print(f"added context {context.name}")
    return EXIT_OK


def cmd_delete(dispatcher: Dispatcher, args: argparse.Namespace) -> int:
    dispatcher.delete_context(args.name, override_token=args.override_token)
    print(f"deleted context {args.name}")
    return EXIT_OK


# === Entry point ===


def _error(message: str) -> None:
    print(f"kubeguard: {message}", file=sys.stderr)


def main(
    argv: Sequence[str] | None = None,
    *,
    prompter: Prompter | None = None,
    executor: Executor | None = None,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
) -> int:
    raw = list(sys.argv[1:] if argv is None else argv)
    own, trailing = _split_command(raw)
    args = build_parser().parse_args(own)
    args.trailing = trailing
    env = dict(os.environ if env is None else env)
    cwd = Path.cwd() if cwd is None else cwd

    try:
        with contextlib.ExitStack() as stack:
            config = load_config(cwd, env)
            if args.verbose:
                config = replace(config, verbose=True)
            log_file = open_log_file(config)
            if log_file is not None:
                stack.enter_context(log_file)
                stack.callback(structlog.reset_defaults)
            configure_logging(config, log_file=log_file)
            session = Session.open(cwd=cwd, env=env, config=config, prompter=prompter, executor=executor)
            code = args.handler(Dispatcher(session), args)
            log.debug("finished", action=args.action, exit_code=code)
            return code
    except SafetyDenied as exc:
        _error(f"denied: {exc}")
        return EXIT_DENIED
    except KubeguardError as exc:
        _error(str(exc))
        return EXIT_ERROR
    except KeyboardInterrupt:
        _error("interrupted")
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
