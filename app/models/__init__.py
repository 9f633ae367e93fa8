"""
NIMBUS - Database Models
SQLAlchemy 2.0 models for wagers, weather verification and the ledger.
"""

from app.models.models import (
    # Base
    Base,

    # Enums
    UserRole,
    CurrencyType,
    BetResult,
    TransactionType,
    ReferenceType,
    BonusType,
    AutoCashoutRuleType,

    # Users
    User,

    # Wagers
    Bet,
    Parlay,

    # Weather
    AccuracySummary,
    AccuracyLogEntry,
    VerificationLogEntry,

    # Ledger & bonuses
    FinancialTransaction,
    BonusEarning,
    ShopPurchase,
    AutoCashoutRule,

    # Admin
    AdminAction,
)

__all__ = [
    "Base",
    "UserRole",
    "CurrencyType",
    "BetResult",
    "TransactionType",
    "ReferenceType",
    "BonusType",
    "AutoCashoutRuleType",
    "User",
    "Bet",
    "Parlay",
    "AccuracySummary",
    "AccuracyLogEntry",
    "VerificationLogEntry",
    "FinancialTransaction",
    "BonusEarning",
    "ShopPurchase",
    "AutoCashoutRule",
    "AdminAction",
]
