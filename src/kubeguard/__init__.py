"""
kubeguard - context-aware cluster operations.

Confirmation gates before touching sensitive contexts, and a hash-chained
audit trail of every decision.
"""

from __future__ import annotations

__version__ = "0.1.0"

from kubeguard.kubeguard import main

__all__ = ["main", "__version__"]
