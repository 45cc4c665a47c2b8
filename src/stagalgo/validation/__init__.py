"""Trade validation: rule catalogue, per-user adaptation and the validator."""

from stagalgo.validation.adaptation import UserAdaptationStore, UserProfile
from stagalgo.validation.ledger import TradeLedger
from stagalgo.validation.rules import ValidationContext, ValidationRule, Violation
from stagalgo.validation.validator import TradeValidator, ValidationResult

__all__ = [
    "TradeLedger",
    "TradeValidator",
    "UserAdaptationStore",
    "UserProfile",
    "ValidationContext",
    "ValidationResult",
    "ValidationRule",
    "Violation",
]
