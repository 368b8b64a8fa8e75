"""
Context classifier for kubeguard.

Pure functions: the same context and rule list always produce the same
tier, so audit entries can be re-derived later.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from kubeguard.core.config import Config, TierRule, pattern_matches
from kubeguard.core.models import Context, SensitivityTier
from kubeguard.core.patterns import DEFAULT_TIER_RULES


@dataclass(frozen=True)
class TierMatch:
    """A tier and what decided it."""

    tier: SensitivityTier
    reason: str
    rule: TierRule | None = None


def effective_rules(config: Config) -> list[TierRule]:
    """Configured tier rules followed by the built-in defaults."""
    rules = list(config.tier_rules)
    if config.default_tiers:
        rules.extend(DEFAULT_TIER_RULES)
    return rules


def explain(ctx: Context, rules: Sequence[TierRule]) -> TierMatch:
    """Classify and say why. Explicit override first, then first matching rule."""
    if ctx.tier_override is not None:
        return TierMatch(ctx.tier_override, f"explicit override ({ctx.tier_override.value})")
    for rule in rules:
        if pattern_matches(ctx.name, rule.pattern):
            return TierMatch(rule.tier, rule.describe(), rule)
    return TierMatch(SensitivityTier.UNCLASSIFIED, "no tier rule matched")


def classify(ctx: Context, rules: Sequence[TierRule]) -> SensitivityTier:
    return explain(ctx, rules).tier
