"""
Safety gate for kubeguard.

A small state machine: Idle -> Evaluating -> {AwaitingConfirmation, Allowed,
Denied} -> Idle. Every decision that reaches Allowed or Denied is written to
the audit log before it is returned; if that write fails nothing is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

import structlog

from kubeguard.core.audit import AuditAction, AuditEntry, AuditLog, AuditOutcome
from kubeguard.core.classifier import TierMatch
from kubeguard.core.config import Config
from kubeguard.core.models import Context, SensitivityTier
from kubeguard.core.prompt import Prompter

log = structlog.get_logger()


class GateState(str, Enum):
    IDLE = "Idle"
    EVALUATING = "Evaluating"
    AWAITING_CONFIRMATION = "AwaitingConfirmation"
    ALLOWED = "Allowed"
    DENIED = "Denied"


class Operation(str, Enum):
    SWITCH = "switch"
    COMMAND = "command"


@dataclass(frozen=True)
class GateRequest:
    """What is about to happen, and against which context."""

    operation: Operation
    context: Context
    tier: TierMatch
    destructive: bool = False
    deny_reason: str | None = None
    """Set when a deny rule matched the command."""
    command: str | None = None
    """Redacted command line, for the audit entry."""
    credential_ref: str | None = None
    override_token: str | None = None


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    outcome: AuditOutcome
    reason: str
    tier: SensitivityTier
    entry: AuditEntry | None = None


def requires_confirmation(tier: SensitivityTier, operation: Operation, destructive: bool) -> bool:
    """Dev never asks; Staging asks for destructive commands; the rest also ask on switch."""
    if tier is SensitivityTier.DEV:
        return False
    if tier is SensitivityTier.STAGING:
        return destructive
    return destructive or operation is Operation.SWITCH


def render_phrase(template: str, context_name: str) -> str:
    return template.replace("{context}", context_name)


class SafetyGate:
    def __init__(
        self,
        config: Config,
        audit: AuditLog,
        prompter: Prompter,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.audit = audit
        self.prompter = prompter
        self._clock = clock
        self.state = GateState.IDLE
        self.transitions: list[tuple[GateState, GateState]] = []

    def _move(self, state: GateState) -> None:
        self.transitions.append((self.state, state))
        self.state = state

    def _token_valid(self, token: str) -> bool:
        expected = self.config.override_token_sha256
        if not expected:
            return False
        digest = hashlib.sha256(token.encode("utf-8")).hexdigest()
        return hmac.compare_digest(digest, expected)

    def evaluate(self, request: GateRequest) -> GateDecision:
        """Decide on a request, prompting if needed. Always returns to Idle."""
        if self.state is not GateState.IDLE:
            raise RuntimeError(f"gate is busy ({self.state.value})")
        self._move(GateState.EVALUATING)
        tier = request.tier.tier

        if request.deny_reason is not None:
            return self._finish(request, AuditAction.DENY, AuditOutcome.DENIED, request.deny_reason)

        override_ok = False
        if request.override_token is not None:
            if not self._token_valid(request.override_token):
                return self._finish(
                    request, AuditAction.DENY, AuditOutcome.DENIED, "override token rejected"
                )
            override_ok = True

        action = AuditAction.SWITCH if request.operation is Operation.SWITCH else AuditAction.COMMAND
        if not requires_confirmation(tier, request.operation, request.destructive):
            return self._finish(
                request,
                action,
                AuditOutcome.ALLOWED,
                f"{tier.value} context ({request.tier.reason}): no confirmation required",
            )

        if override_ok:
            return self._finish(
                request,
                action,
                AuditOutcome.ALLOWED_BY_OVERRIDE,
                f"{tier.value} context ({request.tier.reason}): authorised by override token",
            )

        return self._confirm(request, action)

    def _confirm(self, request: GateRequest, action: AuditAction) -> GateDecision:
        self._move(GateState.AWAITING_CONFIRMATION)
        name = request.context.name
        tier = request.tier
        timeout = self.config.effective_confirm_timeout
        phrase = render_phrase(self.config.effective_confirm_phrase, name)
        what = "switch to" if request.operation is Operation.SWITCH else f"run '{request.command}' on"
        message = (
            f"About to {what} {tier.tier.value} context '{name}' ({tier.reason}).\n"
            f"Type '{phrase}' within {timeout:g}s to continue: "
        )

        deadline = self._clock() + timeout
        try:
            response = self.prompter.ask(message, timeout)
        except KeyboardInterrupt:
            return self._finish(request, action, AuditOutcome.DENIED, "confirmation interrupted")
        answered_at = self._clock()

        if response is None:
            reason = f"no confirmation received (end of input or {timeout:g}s timeout)"
        elif answered_at >= deadline:
            reason = f"confirmation arrived after the {timeout:g}s timeout"
        elif response != phrase:
            reason = "confirmation phrase did not match"
        else:
            return self._finish(
                request, action, AuditOutcome.CONFIRMED_BY_USER, f"operator typed '{phrase}'"
            )
        return self._finish(request, action, AuditOutcome.DENIED, reason)

    def _finish(
        self,
        request: GateRequest,
        action: AuditAction,
        outcome: AuditOutcome,
        reason: str,
    ) -> GateDecision:
        allowed = outcome is not AuditOutcome.DENIED
        self._move(GateState.ALLOWED if allowed else GateState.DENIED)
        tier = request.tier.tier
        try:
            entry = self.audit.append(
                action,
                target_context=request.context.name,
                tier=tier.value,
                outcome=outcome,
                reason=reason,
                command=request.command,
                credential_ref=request.credential_ref,
            )
        finally:
            self._move(GateState.IDLE)
        log.info(
            "gate_decision",
            context=request.context.name,
            tier=tier.value,
            operation=request.operation.value,
            outcome=outcome.value,
            reason=reason,
        )
        return GateDecision(allowed=allowed, outcome=outcome, reason=reason, tier=tier, entry=entry)
