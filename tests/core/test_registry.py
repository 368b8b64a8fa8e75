"""Tests for the context registry."""

from __future__ import annotations

import pytest

from conftest import kubeconfig_doc
from kubeguard.core.errors import NotFoundError
from kubeguard.core.models import Context
from kubeguard.core.registry import ContextRegistry
from kubeguard.core.store import Store


@pytest.fixture
def registry():
    return ContextRegistry(Store.from_document(kubeconfig_doc("zeta", "alpha", "mid", current="alpha")))


class TestQueries:
    def test_list_keeps_insertion_order(self, registry):
        assert [c.name for c in registry.list()] == ["zeta", "alpha", "mid"]

    def test_get(self, registry):
        assert registry.get("mid").cluster_ref == "mid"
        assert registry.get("ghost") is None

    def test_current(self, registry):
        assert registry.current().name == "alpha"

    def test_no_current(self):
        assert ContextRegistry(Store()).current() is None

    def test_sees_store_changes(self, registry):
        registry.store.add_context(Context("late", "mid", "mid"))
        assert registry.get("late") is not None
        assert [c.name for c in registry.list()][-1] == "late"


class TestSetCurrent:
    def test_writes_through(self, registry):
        registry.set_current("zeta")
        assert registry.current().name == "zeta"
        assert registry.store.current == "zeta"

    def test_unknown(self, registry):
        with pytest.raises(NotFoundError):
            registry.set_current("ghost")
        assert registry.current().name == "alpha"


class TestResolve:
    def test_resolve(self, registry):
        resolved = registry.resolve("mid")
        assert resolved.name == "mid"
        assert resolved.cluster.name == "mid"
        assert resolved.credential.name == "mid"

    @pytest.mark.parametrize(
        "context,message",
        [
            (None, "context 'ghost' not found"),
            (Context("ghost", "nowhere", "mid"), "missing cluster 'nowhere'"),
            (Context("ghost", "mid", "nobody"), "missing credential 'nobody'"),
        ],
    )
    def test_resolve_missing(self, registry, context, message):
        if context is not None:
            registry.store.add_context(context)
        with pytest.raises(NotFoundError, match=message):
            registry.resolve("ghost")


def test_reload_swaps_view(registry):
    registry.reload(Store.from_document(kubeconfig_doc("fresh")))
    assert [c.name for c in registry.list()] == ["fresh"]
    assert registry.current() is None
