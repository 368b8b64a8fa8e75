"""
Command dispatcher for kubeguard.

The only place that runs anything against a cluster. Every operation goes
resolve -> classify -> analyze -> gate -> audit -> execute -> audit, and
nothing reaches the executor unless the gate allowed it.
"""

from __future__ import annotations

import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from kubeguard.core.analyzer import assess_command
from kubeguard.core.audit import AuditAction, AuditEntry, AuditLog
from kubeguard.core.classifier import TierMatch, effective_rules, explain
from kubeguard.core.config import (
    OVERRIDE_TOKEN_ENV,
    Config,
    audit_log_path,
    credential_paths,
    load_config,
)
from kubeguard.core.errors import ExecutionError, NotFoundError, SafetyDenied
from kubeguard.core.executor import ExecutionResult, Executor, KubectlExecutor
from kubeguard.core.gate import GateDecision, GateRequest, Operation, SafetyGate
from kubeguard.core.models import Context, ResolvedContext, ValidationIssue
from kubeguard.core.prompt import Prompter, TerminalPrompter
from kubeguard.core.registry import ContextRegistry
from kubeguard.core.store import Store

log = structlog.get_logger()


@dataclass(frozen=True)
class ContextListing:
    context: Context
    tier: TierMatch
    current: bool = False


@dataclass
class Session:
    """Everything one invocation works with. Built once, passed explicitly."""

    config: Config
    paths: list[Path]
    registry: ContextRegistry
    audit: AuditLog
    gate: SafetyGate
    executor: Executor
    env: Mapping[str, str] = field(default_factory=dict)

    @property
    def primary_path(self) -> Path:
        """Where changes to the credential store are saved."""
        return self.paths[0]

    @classmethod
    def open(
        cls,
        *,
        cwd: Path,
        env: Mapping[str, str] | None = None,
        config: Config | None = None,
        prompter: Prompter | None = None,
        executor: Executor | None = None,
        audit: AuditLog | None = None,
    ) -> Session:
        env = dict(os.environ if env is None else env)
        config = config if config is not None else load_config(cwd, env)
        paths = credential_paths(env)
        store = Store.load(paths, strict=config.strict_merge, missing_ok=True)
        audit = audit if audit is not None else AuditLog(audit_log_path(config, env))
        gate = SafetyGate(config, audit, prompter or TerminalPrompter())
        log.debug("context_loaded", paths=[str(p) for p in paths], contexts=len(store.contexts))
        return cls(
            config=config,
            paths=paths,
            registry=ContextRegistry(store),
            audit=audit,
            gate=gate,
            executor=executor or KubectlExecutor(timeout=config.exec_timeout, env=env),
            env=env,
        )


class Dispatcher:
    def __init__(self, session: Session) -> None:
        self.session = session

    @property
    def registry(self) -> ContextRegistry:
        return self.session.registry

    def _tier(self, context: Context) -> TierMatch:
        return explain(context, effective_rules(self.session.config))

    def _override(self, override_token: str | None) -> str | None:
        if override_token is not None:
            return override_token
        from_env = self.session.env.get(OVERRIDE_TOKEN_ENV, "")
        return from_env or None

    def _decide(self, request: GateRequest) -> GateDecision:
        decision = self.session.gate.evaluate(request)
        if not decision.allowed:
            raise SafetyDenied(decision)
        return decision

    def _save(self) -> None:
        self.registry.store.save(self.session.primary_path)

    # === Queries ===

    def list_contexts(self) -> list[ContextListing]:
        current = self.registry.store.current
        return [
            ContextListing(ctx, self._tier(ctx), ctx.name == current)
            for ctx in self.registry.list()
        ]

    def current(self) -> ContextListing | None:
        context = self.registry.current()
        if context is None:
            return None
        return ContextListing(context, self._tier(context), True)

    def validate(self) -> list[ValidationIssue]:
        return self.registry.store.validate()

    # === Gated operations ===

    def switch(self, name: str, override_token: str | None = None) -> GateDecision:
        """Make `name` the current context, asking first where its tier requires."""
        target = self.registry.resolve(name)
        decision = self._decide(
            GateRequest(
                operation=Operation.SWITCH,
                context=target.context,
                tier=self._tier(target.context),
                credential_ref=target.credential.redacted_ref(),
                override_token=self._override(override_token),
            )
        )
        self.registry.set_current(name)
        self._save()
        return decision

    def exec(
        self,
        name: str,
        command: Sequence[str],
        override_token: str | None = None,
    ) -> ExecutionResult:
        """Run `command` against `name` once the gate allows it."""
        target = self.registry.resolve(name)
        assessment = assess_command(list(command), self.session.config)
        log.debug("command_assessed", context=name, verdict=assessment.verdict, reason=assessment.reason)
        decision = self._decide(
            GateRequest(
                operation=Operation.COMMAND,
                context=target.context,
                tier=self._tier(target.context),
                destructive=assessment.destructive,
                deny_reason=assessment.reason if assessment.denied else None,
                command=assessment.display,
                credential_ref=target.credential.redacted_ref(),
                override_token=self._override(override_token),
            )
        )
        try:
            result = self.session.executor.execute(target, list(command))
        except ExecutionError as exc:
            self._record_result(target, decision, assessment.display, None, str(exc))
            raise
        self._record_result(
            target, decision, assessment.display, result.exit_code, f"exit code {result.exit_code}"
        )
        return result

    def _record_result(
        self,
        target: ResolvedContext,
        decision: GateDecision,
        command: str,
        exit_code: int | None,
        reason: str,
    ) -> AuditEntry:
        return self.session.audit.append(
            AuditAction.RESULT,
            target_context=target.name,
            tier=decision.tier.value,
            outcome=decision.outcome,
            reason=reason,
            command=command,
            credential_ref=target.credential.redacted_ref(),
            exit_code=exit_code,
        )

    def delete_context(self, name: str, override_token: str | None = None) -> Context:
        """Remove a context entry. Gated like any destructive command."""
        context = self.registry.get(name)
        if context is None:
            raise NotFoundError(f"context '{name}' not found")
        credential = self.registry.store.credentials.get(context.credential_ref)
        self._decide(
            GateRequest(
                operation=Operation.COMMAND,
                context=context,
                tier=self._tier(context),
                destructive=True,
                command=f"delete context {name}",
                credential_ref=credential.redacted_ref() if credential else None,
                override_token=self._override(override_token),
            )
        )
        removed = self.registry.store.remove_context(name)
        self._save()
        return removed

    # === Store maintenance ===

    def add_context(
        self,
        name: str,
        cluster: str,
        user: str,
        namespace: str = "",
        override_token: str | None = None,
    ) -> Context:
        """Add a context over an existing cluster and user.

        Replacing an existing context is gated as destructive against it.
        """
        store = self.registry.store
        if cluster not in store.clusters:
            raise NotFoundError(f"cluster '{cluster}' not found")
        if user not in store.credentials:
            raise NotFoundError(f"credential '{user}' not found")
        existing = store.contexts.get(name)
        if existing is not None:
            self._decide(
                GateRequest(
                    operation=Operation.COMMAND,
                    context=existing,
                    tier=self._tier(existing),
                    destructive=True,
                    command=f"replace context {name}",
                    override_token=self._override(override_token),
                )
            )
        context = Context(name=name, cluster_ref=cluster, credential_ref=user, namespace=namespace)
        store.add_context(context)
        self._save()
        return context

    def merge(
        self,
        paths: Sequence[str | Path],
        output: str | Path | None = None,
        strict: bool | None = None,
    ) -> Store:
        """Merge credential files. Later files win.

        Without `output` the files are merged into the credential search path
        and the result is saved to the primary file, as every other save is.
        With `output` only the named files are merged and written there.
        """
        strict = self.session.config.strict_merge if strict is None else strict
        primary = self.session.primary_path
        destination = Path(output).expanduser() if output is not None else primary
        sources: list[str | Path] = []
        if destination == primary:
            sources.extend(p for p in self.session.paths if p.exists())
        sources.extend(paths)
        merged = Store.load(sources, strict=strict)
        merged.save(destination)
        if destination == primary:
            self.registry.reload(merged)
        log.info("merged", sources=[str(p) for p in sources], output=str(destination))
        return merged

    # === Audit ===

    def audit_tail(self, n: int = 10) -> list[AuditEntry]:
        return self.session.audit.tail(n)

    def audit_verify(self) -> tuple[bool, int | None]:
        return self.session.audit.verify()

    def audit_rotate(self) -> Path | None:
        return self.session.audit.rotate()
