"""
Credential store for kubeguard.

Reads and writes kubeconfig-format YAML. Several source files merge by name
with last-source-wins; saves are atomic (temp file, fsync, rename) and
serialised between processes with an advisory lock.
"""

from __future__ import annotations

import base64
import binascii
import contextlib
import fcntl
import os
import tempfile
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any

import structlog
import yaml

from kubeguard.core.errors import (
    DuplicateUnresolvableError,
    NotFoundError,
    ParseError,
    StorageError,
)
from kubeguard.core.models import (
    ClusterEndpoint,
    Context,
    Credential,
    CredentialKind,
    ResolvedContext,
    SensitivityTier,
    ValidationIssue,
)

log = structlog.get_logger()

FILE_MODE = 0o600
TIER_EXTENSION = "kubeguard.io/tier"

# user stanza keys that identify each credential kind, checked in this order
CLIENT_CERT_KEYS = ("client-certificate-data", "client-certificate", "client-key-data", "client-key")
BEARER_TOKEN_KEYS = ("token", "tokenFile")
BASIC_AUTH_KEYS = ("username", "password")
EXEC_KEYS = ("exec", "auth-provider")


class Store:
    """In-memory view of clusters, credentials and contexts."""

    def __init__(
        self,
        clusters: dict[str, ClusterEndpoint] | None = None,
        credentials: dict[str, Credential] | None = None,
        contexts: dict[str, Context] | None = None,
        current: str | None = None,
        preferences: dict[str, Any] | None = None,
    ) -> None:
        self.clusters: dict[str, ClusterEndpoint] = dict(clusters or {})
        self.credentials: dict[str, Credential] = dict(credentials or {})
        self.contexts: dict[str, Context] = dict(contexts or {})
        self.current = current or None
        self.preferences: dict[str, Any] = dict(preferences or {})

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Store):
            return NotImplemented
        return (
            self.clusters == other.clusters
            and self.credentials == other.credentials
            and self.contexts == other.contexts
            and self.current == other.current
            and self.preferences == other.preferences
        )

    def __repr__(self) -> str:
        return (
            f"Store(contexts={list(self.contexts)!r}, clusters={list(self.clusters)!r}, "
            f"credentials={list(self.credentials)!r}, current={self.current!r})"
        )

    # === Loading ===

    @classmethod
    def load(
        cls,
        paths: Iterable[str | Path],
        *,
        strict: bool = False,
        missing_ok: bool = False,
    ) -> Store:
        """Load and merge credential files. Later files win on conflicts.

        In strict mode a name defined differently by two sources raises
        DuplicateUnresolvableError instead of being overwritten.
        """
        store = cls()
        origins: dict[tuple[str, str], str] = {}
        for raw_path in paths:
            path = Path(raw_path).expanduser()
            try:
                text = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                if missing_ok:
                    log.debug("credential_file_missing", path=str(path))
                    continue
                raise StorageError(f"credential file not found: {path}") from None
            except OSError as exc:
                raise StorageError(f"cannot read {path}: {exc}") from exc

            source = cls.from_yaml(text, source=str(path))
            store._absorb(source, source_name=str(path), strict=strict, origins=origins)
            log.debug(
                "credential_file_loaded",
                path=str(path),
                contexts=len(source.contexts),
            )
        return store

    @classmethod
    def from_yaml(cls, text: str, *, source: str = "<string>") -> Store:
        try:
            document = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ParseError(f"{source}: invalid YAML: {exc}") from None
        return cls.from_document(document, source=source)

    @classmethod
    def from_document(cls, document: Any, *, source: str = "<document>") -> Store:
        """Build a store from a parsed kubeconfig mapping. Raises ParseError."""
        if document is None:
            return cls()
        if not isinstance(document, dict):
            raise ParseError(f"{source}: top level must be a mapping")

        store = cls(preferences=_mapping(document.get("preferences"), f"{source}: preferences"))
        for index, entry in enumerate(_entries(document, "clusters", source)):
            where = f"{source}: clusters[{index}]"
            cluster = _parse_cluster(_name(entry, where), _mapping(entry.get("cluster"), where), where)
            store.clusters[cluster.name] = cluster
        for index, entry in enumerate(_entries(document, "users", source)):
            where = f"{source}: users[{index}]"
            credential = _parse_user(_name(entry, where), _mapping(entry.get("user"), where))
            store.credentials[credential.name] = credential
        for index, entry in enumerate(_entries(document, "contexts", source)):
            where = f"{source}: contexts[{index}]"
            context = _parse_context(_name(entry, where), _mapping(entry.get("context"), where), where)
            store.contexts[context.name] = context

        current = document.get("current-context") or None
        if current is not None and not isinstance(current, str):
            raise ParseError(f"{source}: current-context must be a string")
        store.current = current
        return store

    def _absorb(
        self,
        other: Store,
        *,
        source_name: str,
        strict: bool,
        origins: dict[tuple[str, str], str],
    ) -> None:
        """Merge another store into this one, other's entries winning."""
        for collection in ("clusters", "credentials", "contexts"):
            mine: dict[str, Any] = getattr(self, collection)
            for name, item in getattr(other, collection).items():
                key = (collection, name)
                if strict and name in mine and mine[name] != item:
                    raise DuplicateUnresolvableError(
                        f"{collection[:-1]} '{name}' is defined differently in "
                        f"{origins[key]} and {source_name} (strict merge)"
                    )
                mine[name] = item
                origins[key] = source_name
        if other.current:
            self.current = other.current
        self.preferences.update(other.preferences)

    # === Saving ===

    def to_document(self) -> dict[str, Any]:
        """Serialise to a kubeconfig mapping."""
        return {
            "apiVersion": "v1",
            "kind": "Config",
            "preferences": dict(self.preferences),
            "clusters": [
                {"name": c.name, "cluster": _dump_cluster(c)} for c in self.clusters.values()
            ],
            "users": [
                {"name": u.name, "user": dict(u.payload)} for u in self.credentials.values()
            ],
            "contexts": [
                {"name": c.name, "context": _dump_context(c)} for c in self.contexts.values()
            ],
            "current-context": self.current or "",
        }

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_document(), sort_keys=False, default_flow_style=False)

    def save(self, path: str | Path) -> None:
        """Atomically replace `path` with this store, mode 0600.

        On any failure the previous file is left untouched and StorageError
        is raised.
        """
        path = Path(path).expanduser()
        text = self.to_yaml()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with locked(path):
                atomic_write(path, text)
        except OSError as exc:
            raise StorageError(f"cannot write {path}: {exc}") from exc
        log.debug("credential_file_saved", path=str(path), contexts=len(self.contexts))

    # === Mutation ===

    def add_cluster(self, cluster: ClusterEndpoint) -> None:
        self.clusters[cluster.name] = cluster

    def add_credential(self, credential: Credential) -> None:
        self.credentials[credential.name] = credential

    def add_context(self, context: Context) -> None:
        self.contexts[context.name] = context

    def remove_context(self, name: str) -> Context:
        """Delete a context. Clears the current pointer if it pointed there."""
        try:
            context = self.contexts.pop(name)
        except KeyError:
            raise NotFoundError(f"context '{name}' not found") from None
        if self.current == name:
            self.current = None
        return context

    def set_current(self, name: str) -> None:
        if name not in self.contexts:
            raise NotFoundError(f"context '{name}' not found")
        self.current = name

    def minify(self, name: str) -> Store:
        """Return a store holding only `name`, its cluster and credential."""
        context = self.contexts.get(name)
        if context is None:
            raise NotFoundError(f"context '{name}' not found")
        cluster = self.clusters.get(context.cluster_ref)
        if cluster is None:
            raise NotFoundError(
                f"cluster '{context.cluster_ref}' referenced by context '{name}' not found"
            )
        credential = self.credentials.get(context.credential_ref)
        if credential is None:
            raise NotFoundError(
                f"credential '{context.credential_ref}' referenced by context '{name}' not found"
            )
        return Store.for_target(ResolvedContext(context, cluster, credential))

    @classmethod
    def for_target(cls, target: ResolvedContext) -> Store:
        """A store holding only the resolved context, current."""
        return cls(
            clusters={target.cluster.name: target.cluster},
            credentials={target.credential.name: target.credential},
            contexts={target.name: target.context},
            current=target.name,
        )

    # === Validation ===

    def validate(self) -> list[ValidationIssue]:
        """Check referential integrity. Reports problems, never raises."""
        issues: list[ValidationIssue] = []
        for context in self.contexts.values():
            if context.cluster_ref not in self.clusters:
                issues.append(
                    ValidationIssue(
                        "error",
                        "context",
                        context.name,
                        f"cluster '{context.cluster_ref}' does not exist",
                    )
                )
            if context.credential_ref not in self.credentials:
                issues.append(
                    ValidationIssue(
                        "error",
                        "context",
                        context.name,
                        f"credential '{context.credential_ref}' does not exist",
                    )
                )
        if self.current and self.current not in self.contexts:
            issues.append(
                ValidationIssue(
                    "error",
                    "current-context",
                    self.current,
                    "current context does not exist",
                )
            )
        for cluster in self.clusters.values():
            if not cluster.server_url:
                issues.append(
                    ValidationIssue("error", "cluster", cluster.name, "no server URL")
                )
            if cluster.insecure_skip_verify:
                issues.append(
                    ValidationIssue(
                        "warning", "cluster", cluster.name, "TLS verification is disabled"
                    )
                )
        for credential in self.credentials.values():
            if credential.kind is CredentialKind.UNKNOWN or not any(credential.payload.values()):
                issues.append(
                    ValidationIssue(
                        "error",
                        "credential",
                        credential.name,
                        "no authentication material",
                    )
                )
        return issues


# === Document helpers ===


def _entries(document: dict[str, Any], key: str, source: str) -> list[dict[str, Any]]:
    value = document.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ParseError(f"{source}: '{key}' must be a list")
    for index, entry in enumerate(value):
        if not isinstance(entry, dict):
            raise ParseError(f"{source}: {key}[{index}] must be a mapping")
    return value


def _mapping(value: Any, where: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ParseError(f"{where}: expected a mapping")
    return value


def _name(entry: dict[str, Any], where: str) -> str:
    name = entry.get("name")
    if not isinstance(name, str) or not name:
        raise ParseError(f"{where}: missing 'name'")
    return name


def _parse_cluster(name: str, body: dict[str, Any], where: str) -> ClusterEndpoint:
    extra = dict(body)
    server = extra.pop("server", "")
    if not isinstance(server, str):
        raise ParseError(f"{where}: 'server' must be a string")
    ca_raw = extra.pop("certificate-authority-data", "")
    try:
        ca_data = base64.b64decode(ca_raw, validate=True) if ca_raw else b""
    except (binascii.Error, TypeError, ValueError):
        raise ParseError(f"{where}: certificate-authority-data is not valid base64") from None
    insecure = extra.pop("insecure-skip-tls-verify", False)
    return ClusterEndpoint(
        name=name,
        server_url=server,
        ca_data=ca_data,
        insecure_skip_verify=bool(insecure),
        extra=extra,
    )


def _credential_kind(body: dict[str, Any]) -> CredentialKind:
    if any(key in body for key in CLIENT_CERT_KEYS):
        return CredentialKind.CLIENT_CERT
    if any(key in body for key in BEARER_TOKEN_KEYS):
        return CredentialKind.BEARER_TOKEN
    if any(key in body for key in BASIC_AUTH_KEYS):
        return CredentialKind.BASIC_AUTH
    if any(key in body for key in EXEC_KEYS):
        return CredentialKind.EXEC
    return CredentialKind.UNKNOWN


def _parse_user(name: str, body: dict[str, Any]) -> Credential:
    return Credential(name=name, kind=_credential_kind(body), payload=dict(body))


def _parse_context(name: str, body: dict[str, Any], where: str) -> Context:
    extra = dict(body)
    cluster = extra.pop("cluster", "")
    user = extra.pop("user", "")
    namespace = extra.pop("namespace", "") or ""
    for key, value in (("cluster", cluster), ("user", user), ("namespace", namespace)):
        if not isinstance(value, str):
            raise ParseError(f"{where}: '{key}' must be a string")
    extensions = extra.pop("extensions", None)
    tier_override = _parse_tier_extension(extensions, where)
    foreign = [item for item in extensions or [] if not _is_tier_extension(item)]
    if foreign:
        extra["extensions"] = foreign
    return Context(
        name=name,
        cluster_ref=cluster,
        credential_ref=user,
        namespace=namespace,
        tier_override=tier_override,
        extra=extra,
    )


def _is_tier_extension(item: Any) -> bool:
    return isinstance(item, dict) and item.get("name") == TIER_EXTENSION


def _parse_tier_extension(extensions: Any, where: str) -> SensitivityTier | None:
    """Read the optional tier override from a context's extensions list."""
    if not extensions:
        return None
    if not isinstance(extensions, list):
        raise ParseError(f"{where}: 'extensions' must be a list")
    for item in extensions:
        if not _is_tier_extension(item):
            continue
        value = item.get("extension")
        if isinstance(value, dict):
            value = value.get("tier")
        if not isinstance(value, str):
            raise ParseError(f"{where}: {TIER_EXTENSION} needs a tier name")
        try:
            return SensitivityTier.parse(value)
        except ValueError as exc:
            raise ParseError(f"{where}: {exc}") from None
    return None


def _dump_cluster(cluster: ClusterEndpoint) -> dict[str, Any]:
    body: dict[str, Any] = {"server": cluster.server_url}
    if cluster.ca_data:
        body["certificate-authority-data"] = base64.b64encode(cluster.ca_data).decode("ascii")
    if cluster.insecure_skip_verify:
        body["insecure-skip-tls-verify"] = True
    body.update(cluster.extra)
    return body


def _dump_context(context: Context) -> dict[str, Any]:
    body: dict[str, Any] = {"cluster": context.cluster_ref, "user": context.credential_ref}
    if context.namespace:
        body["namespace"] = context.namespace
    body.update((k, v) for k, v in context.extra.items() if k != "extensions")
    extensions = list(context.extra.get("extensions", []))
    if context.tier_override is not None:
        extensions.append(
            {"name": TIER_EXTENSION, "extension": {"tier": context.tier_override.value}}
        )
    if extensions:
        body["extensions"] = extensions
    return body


# === File helpers ===


@contextlib.contextmanager
def locked(path: Path) -> Iterator[None]:
    """Hold an exclusive advisory lock on `<path>.lock`."""
    lock_path = path.with_name(path.name + ".lock")
    fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, FILE_MODE)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


def atomic_write(path: Path, text: str) -> None:
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            os.fchmod(handle.fileno(), FILE_MODE)
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise
    _fsync_directory(path.parent)


def _fsync_directory(directory: Path) -> None:
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)
