"""Per-user rule adaptation.

User state lives here, keyed by ``(user_id, rule_id)``, and never inside the
rule objects: a rule's base ``parameters`` are shared by every user and are
only ever overlaid, never written.
"""

import math
from collections.abc import Mapping
from typing import Literal

from pydantic import BaseModel, Field

from stagalgo.validation.rules import UserLevel, ValidationRule

Personality = Literal["conservative", "moderate", "aggressive"]


class UserProfile(BaseModel):
    user_id: str
    level: UserLevel = "beginner"
    personality: Personality | None = None
    risk_tolerance: float | None = Field(default=None, ge=0, le=1)
    avg_performance: float | None = Field(default=None, ge=0, le=1)


def compute_adaptation(
    rule: ValidationRule,
    profile: UserProfile,
    level: UserLevel,
) -> dict[str, float] | None:
    """Threshold overrides for ``rule`` given the user's profile, or ``None``.

    - position size: advanced x1.2, expert x1.5; a conservative personality
      takes precedence with x0.7.
    - volatility: max beta scaled by ``0.5 + risk_tolerance`` when a tolerance is set.
    - overtrading: trades/day x1.3 above 0.7 average performance, x0.7 below 0.4.
    - emotional trading: cooldown x1.5 for an aggressive personality.
    """
    base = rule.parameters
    if rule.id == "position_size_limit":
        if profile.personality == "conservative":
            return {"max_position_percent": base["max_position_percent"] * 0.7}
        if level in ("advanced", "expert"):
            multiplier = 1.5 if level == "expert" else 1.2
            return {"max_position_percent": base["max_position_percent"] * multiplier}
    elif rule.id == "volatility_filter":
        if profile.risk_tolerance is not None:
            return {"max_beta": base["max_beta"] * (0.5 + profile.risk_tolerance)}
    elif rule.id == "overtrading_prevention":
        performance = profile.avg_performance
        if performance is not None and performance > 0.7:
            return {"max_trades_per_day": float(math.floor(base["max_trades_per_day"] * 1.3))}
        if performance is not None and performance < 0.4:
            return {"max_trades_per_day": float(math.floor(base["max_trades_per_day"] * 0.7))}
    elif rule.id == "emotional_trading_filter":
        if profile.personality == "aggressive":
            return {"cooldown_after_loss_minutes": base["cooldown_after_loss_minutes"] * 1.5}
    return None


class UserAdaptationStore:
    """User profiles and per-(user, rule) parameter overrides."""

    def __init__(self) -> None:
        self._profiles: dict[str, UserProfile] = {}
        self._overrides: dict[tuple[str, str], dict[str, float]] = {}

    # ── Profiles ────────────────────────────────────────────────────────────

    def get_profile(self, user_id: str) -> UserProfile | None:
        return self._profiles.get(user_id)

    def upsert_profile(self, profile: UserProfile) -> None:
        self._profiles[profile.user_id] = profile

    def set_level(self, user_id: str, level: UserLevel) -> UserProfile:
        current = self._profiles.get(user_id) or UserProfile(user_id=user_id)
        updated = UserProfile.model_validate({**current.model_dump(), "level": level})
        self._profiles[user_id] = updated
        return updated

    # ── Overrides ───────────────────────────────────────────────────────────

    def get(self, user_id: str, rule_id: str) -> dict[str, float]:
        return dict(self._overrides.get((user_id, rule_id), {}))

    def set(self, user_id: str, rule_id: str, overrides: Mapping[str, float]) -> None:
        self._overrides[(user_id, rule_id)] = dict(overrides)

    def discard(self, user_id: str, rule_id: str) -> None:
        self._overrides.pop((user_id, rule_id), None)

    def clear_user(self, user_id: str) -> None:
        self._profiles.pop(user_id, None)
        for key in [k for k in self._overrides if k[0] == user_id]:
            del self._overrides[key]

    def effective_parameters(self, rule: ValidationRule, user_id: str) -> dict[str, float]:
        """Base parameters overlaid with the user's overrides (a new dict)."""
        return {**rule.parameters, **self._overrides.get((user_id, rule.id), {})}
