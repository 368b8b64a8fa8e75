"""Context registry: the query layer over a loaded Store."""

from __future__ import annotations

from kubeguard.core.errors import NotFoundError
from kubeguard.core.models import Context, ResolvedContext
from kubeguard.core.store import Store


class ContextRegistry:
    """Read-through view over a Store.

    The registry never owns data: every query reads the store it currently
    points at, `set_current` writes through to that store, and `reload`
    replaces the store in a single assignment.
    """

    def __init__(self, store: Store) -> None:
        self._store = store

    @property
    def store(self) -> Store:
        return self._store

    def reload(self, store: Store) -> None:
        self._store = store

    def list(self) -> list[Context]:
        """All contexts in insertion order."""
        return list(self._store.contexts.values())

    def get(self, name: str) -> Context | None:
        return self._store.contexts.get(name)

    def current(self) -> Context | None:
        store = self._store
        if store.current is None:
            return None
        return store.contexts.get(store.current)

    def set_current(self, name: str) -> None:
        """Move the current pointer. Raises NotFoundError for unknown names."""
        self._store.set_current(name)

    def resolve(self, name: str) -> ResolvedContext:
        """Look up a context together with its cluster and credential."""
        store = self._store
        context = store.contexts.get(name)
        if context is None:
            raise NotFoundError(f"context '{name}' not found")
        cluster = store.clusters.get(context.cluster_ref)
        if cluster is None:
            raise NotFoundError(
                f"context '{name}' refers to missing cluster '{context.cluster_ref}'"
            )
        credential = store.credentials.get(context.credential_ref)
        if credential is None:
            raise NotFoundError(
                f"context '{name}' refers to missing credential '{context.credential_ref}'"
            )
        return ResolvedContext(context=context, cluster=cluster, credential=credential)
