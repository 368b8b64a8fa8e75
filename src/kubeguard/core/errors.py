"""Error taxonomy for kubeguard.

Every failure surfaces as a subclass of KubeguardError so the CLI can map it
to an exit code. Safety denials are deliberately a separate branch from
execution failures: "refused" and "ran and failed" must never be confused.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kubeguard.core.gate import GateDecision


class KubeguardError(Exception):
    """Base class for all kubeguard errors."""


class ConfigError(KubeguardError):
    """Raised when a config file has a syntax error or an invalid setting."""


class ParseError(KubeguardError):
    """Raised when a credential file is malformed."""


class NotFoundError(KubeguardError, LookupError):
    """Raised when a referenced context, cluster or credential is absent."""


class StorageError(KubeguardError):
    """Raised when a credential file cannot be read or written."""


class DuplicateUnresolvableError(KubeguardError):
    """Raised by a strict merge when two sources disagree about one name."""


class AuditUnavailableError(KubeguardError):
    """Raised when the audit log cannot record an entry.

    Fatal to the calling operation: nothing runs unless it was recorded.
    """


class ExecutionError(KubeguardError):
    """Raised when an approved command could not be started."""


class SafetyDenied(KubeguardError):
    """Raised when the safety gate refuses an operation."""

    def __init__(self, decision: GateDecision) -> None:
        super().__init__(decision.reason)
        self.decision = decision
