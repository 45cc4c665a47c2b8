"""Position-level governance: collapse scoring and the Overseer."""

from stagalgo.governance.models import (
    CollapseSignal,
    GovernanceDecision,
    OverseerContext,
    RiskAlert,
    TradeIntent,
    TradeModification,
)
from stagalgo.governance.overseer import Overseer

__all__ = [
    "CollapseSignal",
    "GovernanceDecision",
    "Overseer",
    "OverseerContext",
    "RiskAlert",
    "TradeIntent",
    "TradeModification",
]
