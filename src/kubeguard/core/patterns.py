"""
Built-in tier patterns for kubeguard.

Consulted after every configured tier rule. Order matters: the first match
wins, so production patterns come first and a name like "dev-prod-mirror"
is treated as production.
"""

from kubeguard.core.config import TierRule
from kubeguard.core.models import SensitivityTier

BUILTIN_SOURCE = "built-in"


def _rules(tier: SensitivityTier, *patterns: str) -> list[TierRule]:
    return [TierRule(tier, p, source=BUILTIN_SOURCE) for p in patterns]


# === Production ===
PRODUCTION_PATTERNS = ("*prod*", "*prd*")

# === Staging ===
STAGING_PATTERNS = ("*staging*", "*stage*", "*stg*", "*uat*")

# === Development ===
# Local clusters (kind, k3d, minikube, Docker Desktop) are always dev.
DEV_PATTERNS = (
    "*dev*",
    "*test*",
    "*local*",
    "kind-*",
    "k3d-*",
    "minikube",
    "docker-desktop",
)

DEFAULT_TIER_RULES: tuple[TierRule, ...] = tuple(
    _rules(SensitivityTier.PRODUCTION, *PRODUCTION_PATTERNS)
    + _rules(SensitivityTier.STAGING, *STAGING_PATTERNS)
    + _rules(SensitivityTier.DEV, *DEV_PATTERNS)
)
