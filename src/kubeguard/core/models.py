"""Data model shared by the store, registry, gate and audit log."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SensitivityTier(str, Enum):
    """How careful we must be with a context. Derived, never stored."""

    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"
    UNCLASSIFIED = "unclassified"

    @classmethod
    def parse(cls, value: str) -> SensitivityTier:
        """Parse a tier name case-insensitively. Raises ValueError."""
        normalized = value.strip().lower()
        for tier in cls:
            if tier.value == normalized:
                return tier
        choices = ", ".join(t.value for t in cls)
        raise ValueError(f"unknown tier '{value}' (expected one of: {choices})")


class CredentialKind(str, Enum):
    CLIENT_CERT = "ClientCert"
    BEARER_TOKEN = "BearerToken"
    BASIC_AUTH = "BasicAuth"
    EXEC = "Exec"
    UNKNOWN = "Unknown"  # no recognised authentication fields


@dataclass(frozen=True)
class ClusterEndpoint:
    """A reachable API server."""

    name: str
    server_url: str
    ca_data: bytes = b""
    insecure_skip_verify: bool = False
    extra: dict[str, Any] = field(default_factory=dict)
    """Cluster keys we do not interpret (proxy-url, tls-server-name, ...)."""


@dataclass(frozen=True)
class Credential:
    """Authentication material. Never log `payload`."""

    name: str
    kind: CredentialKind
    payload: dict[str, Any] = field(default_factory=dict)

    def redacted_ref(self) -> str:
        """Stable, non-reversible reference safe to write to the audit log."""
        canonical = json.dumps(self.payload, sort_keys=True, default=str)
        digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        return f"{self.name}#sha256:{digest[:12]}"

    def __repr__(self) -> str:
        return f"Credential(name={self.name!r}, kind={self.kind.value!r}, payload=<redacted>)"


@dataclass(frozen=True)
class Context:
    """A named (cluster, credential, namespace) triple."""

    name: str
    cluster_ref: str
    credential_ref: str
    namespace: str = ""
    tier_override: SensitivityTier | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    """Context keys we do not interpret, including foreign extensions."""

    @property
    def effective_namespace(self) -> str:
        return self.namespace or "default"


@dataclass(frozen=True)
class ResolvedContext:
    """A context with both of its references looked up."""

    context: Context
    cluster: ClusterEndpoint
    credential: Credential

    @property
    def name(self) -> str:
        return self.context.name


@dataclass(frozen=True)
class ValidationIssue:
    """A problem found by Store.validate(). Never raised, only reported."""

    severity: str  # 'error' | 'warning'
    kind: str  # 'context' | 'cluster' | 'credential' | 'current-context'
    name: str
    message: str

    def __str__(self) -> str:
        return f"{self.severity}: {self.kind} '{self.name}': {self.message}"
