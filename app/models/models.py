"""
NIMBUS - Database Models

SQLAlchemy 2.0 models for wagers, weather verification, forecast accuracy
and the balance ledger. Monetary amounts are integers: points for the
virtual currency, cents for the real one.
"""

from datetime import date, datetime
from enum import Enum as PyEnum
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON, Boolean, CheckConstraint, Date, DateTime, Enum, Float,
    ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from app.core.database import Base


JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum_values(obj):
    return [e.value for e in obj]


# =============================================================================
# ENUMS
# =============================================================================

class UserRole(str, PyEnum):
    USER = "user"
    ADMIN = "admin"


class CurrencyType(str, PyEnum):
    VIRTUAL = "virtual"
    REAL = "real"


class BetResult(str, PyEnum):
    PENDING = "pending"
    WIN = "win"
    LOSS = "loss"
    CASHED_OUT = "cashed_out"


class TransactionType(str, PyEnum):
    BET_PLACED = "bet_placed"
    PARLAY_PLACED = "parlay_placed"
    INSURANCE_PURCHASE = "insurance_purchase"
    BET_WON = "bet_won"
    PARLAY_WON = "parlay_won"
    INSURANCE_PAYOUT = "insurance_payout"
    CASHOUT = "cashout"
    PARTIAL_CASHOUT = "partial_cashout"


class ReferenceType(str, PyEnum):
    BET = "bet"
    PARLAY = "parlay"


class BonusType(str, PyEnum):
    MULTIPLIER = "multiplier"
    STREAK = "streak"
    BONUS_POINTS = "bonus_points"
    STAKE_BOOST = "stake_boost"
    INSURANCE = "insurance"


class AutoCashoutRuleType(str, PyEnum):
    PERCENTAGE_ABOVE = "percentage_above"
    PERCENTAGE_BELOW = "percentage_below"
    WEATHER_BONUS_ABOVE = "weather_bonus_above"
    WEATHER_BONUS_BELOW = "weather_bonus_below"
    TIME_BONUS_ABOVE = "time_bonus_above"
    AMOUNT_ABOVE = "amount_above"


# =============================================================================
# USERS
# =============================================================================

class User(Base):
    """Balance and streak mirror of an upstream account."""
    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    role: Mapped[UserRole] = mapped_column(Enum(UserRole, values_callable=_enum_values), default=UserRole.USER)

    points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    balance_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    current_streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    longest_streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())

    bets: Mapped[List["Bet"]] = relationship(back_populates="user")

    def balance_for(self, currency: CurrencyType) -> int:
        return self.points if currency == CurrencyType.VIRTUAL else self.balance_cents


# =============================================================================
# WAGERS
# =============================================================================

class Parlay(Base):
    """Parlay or combined-category bet; legs are Bet rows pointing at it."""
    __tablename__ = "parlays"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    total_stake: Mapped[int] = mapped_column(Integer, nullable=False)
    combined_odds: Mapped[float] = mapped_column(Float, nullable=False)
    # One city, several categories
    is_combined: Mapped[bool] = mapped_column(Boolean, default=False)
    currency_type: Mapped[CurrencyType] = mapped_column(Enum(CurrencyType, values_callable=_enum_values), default=CurrencyType.VIRTUAL)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    result: Mapped[BetResult] = mapped_column(Enum(BetResult, values_callable=_enum_values), default=BetResult.PENDING)
    payout: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    cashout_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    partial_cashout_total: Mapped[int] = mapped_column(Integer, default=0)
    cashed_out_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    legs: Mapped[List["Bet"]] = relationship(back_populates="parlay")

    __table_args__ = (
        CheckConstraint("total_stake > 0", name="ck_parlays_stake_positive"),
        Index("ix_parlays_result", "result"),
    )


class Bet(Base):
    """Single wager on one weather category for one city, or a parlay leg."""
    __tablename__ = "bets"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    parlay_id: Mapped[Optional[UUID]] = mapped_column(Uuid, ForeignKey("parlays.id", ondelete="CASCADE"), nullable=True)

    city: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[str] = mapped_column(String(30), nullable=False)
    prediction_value: Mapped[str] = mapped_column(String(50), nullable=False)

    # Legs carry 0 stake; the parlay owns the money
    stake: Mapped[int] = mapped_column(Integer, nullable=False)
    odds: Mapped[float] = mapped_column(Float, nullable=False)
    currency_type: Mapped[CurrencyType] = mapped_column(Enum(CurrencyType, values_callable=_enum_values), default=CurrencyType.VIRTUAL)
    target_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    has_insurance: Mapped[bool] = mapped_column(Boolean, default=False)
    insurance_cost: Mapped[int] = mapped_column(Integer, default=0)

    result: Mapped[BetResult] = mapped_column(Enum(BetResult, values_callable=_enum_values), default=BetResult.PENDING)
    settled_value: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    payout: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    cashout_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    cashed_out_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    partial_cashout_total: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    user: Mapped["User"] = relationship(back_populates="bets")
    parlay: Mapped[Optional["Parlay"]] = relationship(back_populates="legs")

    __table_args__ = (
        CheckConstraint("stake >= 0", name="ck_bets_stake_non_negative"),
        Index("ix_bets_result_city", "result", "city"),
        Index("ix_bets_user_created", "user_id", "created_at"),
    )

    @property
    def is_parlay_leg(self) -> bool:
        return self.parlay_id is not None


# =============================================================================
# WEATHER ACCURACY & VERIFICATION
# =============================================================================

class AccuracySummary(Base):
    """Monthly forecast accuracy per city and category."""
    __tablename__ = "weather_accuracy_summary"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    city: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[str] = mapped_column(String(30), nullable=False)
    month: Mapped[date] = mapped_column(Date, nullable=False)
    avg_accuracy: Mapped[float] = mapped_column(Float, nullable=False)
    total_predictions: Mapped[int] = mapped_column(Integer, default=0)
    min_accuracy: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    max_accuracy: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("city", "category", "month", name="uq_accuracy_summary_city_category_month"),
        Index("ix_accuracy_summary_city_category", "city", "category"),
    )


class AccuracyLogEntry(Base):
    """Accuracy of one forecast once its target date has passed."""
    __tablename__ = "weather_accuracy_log"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    city: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[str] = mapped_column(String(30), nullable=False)
    target_date: Mapped[date] = mapped_column(Date, nullable=False)
    predicted_value: Mapped[str] = mapped_column(String(50), nullable=False)
    actual_value: Mapped[str] = mapped_column(String(50), nullable=False)
    accuracy_score: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (Index("ix_accuracy_log_city_category_date", "city", "category", "target_date"),)


class VerificationLogEntry(Base):
    """Two-source reading for one city/category and how it was resolved."""
    __tablename__ = "weather_verification_log"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    city: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[str] = mapped_column(String(30), nullable=False)
    primary_value: Mapped[str] = mapped_column(String(50), nullable=False)
    secondary_value: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    deviation: Mapped[float] = mapped_column(Float, default=0.0)
    deviation_percentage: Mapped[float] = mapped_column(Float, default=0.0)
    is_disputed: Mapped[bool] = mapped_column(Boolean, default=False)
    resolution_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    final_value: Mapped[str] = mapped_column(String(50), nullable=False)
    confidence_score: Mapped[float] = mapped_column(Float, default=100.0)
    # "metadata" is reserved on declarative classes
    meta: Mapped[Optional[dict]] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_verification_log_disputed", "is_disputed"),
        Index("ix_verification_log_city_created", "city", "created_at"),
    )


# =============================================================================
# LEDGER & BONUSES
# =============================================================================

class FinancialTransaction(Base):
    """Append-only balance ledger."""
    __tablename__ = "financial_transactions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    # Position in the user's ledger for this currency, starting at 1
    entry_number: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_type: Mapped[TransactionType] = mapped_column(Enum(TransactionType, values_callable=_enum_values), nullable=False)
    reference_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    reference_type: Mapped[Optional[ReferenceType]] = mapped_column(Enum(ReferenceType, values_callable=_enum_values), nullable=True)
    balance_before: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    currency_type: Mapped[CurrencyType] = mapped_column(Enum(CurrencyType, values_callable=_enum_values), nullable=False)
    meta: Mapped[Optional[dict]] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("balance_after = balance_before + amount", name="ck_financial_transactions_balance"),
        UniqueConstraint("user_id", "currency_type", "entry_number", name="uq_financial_transactions_entry"),
        Index("ix_financial_transactions_user_currency", "user_id", "currency_type"),
    )


class BonusEarning(Base):
    """Bonus part of a payout, kept for reporting."""
    __tablename__ = "bonus_earnings"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    bet_id: Mapped[Optional[UUID]] = mapped_column(Uuid, ForeignKey("bets.id"), nullable=True)
    parlay_id: Mapped[Optional[UUID]] = mapped_column(Uuid, ForeignKey("parlays.id"), nullable=True)
    bonus_type: Mapped[BonusType] = mapped_column(Enum(BonusType, values_callable=_enum_values), nullable=False)
    bonus_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    base_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency_type: Mapped[CurrencyType] = mapped_column(Enum(CurrencyType, values_callable=_enum_values), default=CurrencyType.VIRTUAL)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class ShopPurchase(Base):
    """Purchased boosts; only unused temp_multiplier items affect payouts."""
    __tablename__ = "shop_purchases"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    item_type: Mapped[str] = mapped_column(String(50), nullable=False)
    item_value: Mapped[float] = mapped_column(Float, default=1.0)
    used: Mapped[bool] = mapped_column(Boolean, default=False)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (Index("ix_shop_purchases_user_unused", "user_id", "used"),)


class AutoCashoutRule(Base):
    """Cash out automatically when a valuation crosses a threshold."""
    __tablename__ = "auto_cashout_rules"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    bet_id: Mapped[Optional[UUID]] = mapped_column(Uuid, ForeignKey("bets.id"), nullable=True)
    parlay_id: Mapped[Optional[UUID]] = mapped_column(Uuid, ForeignKey("parlays.id"), nullable=True)
    rule_type: Mapped[AutoCashoutRuleType] = mapped_column(Enum(AutoCashoutRuleType, values_callable=_enum_values), nullable=False)
    threshold: Mapped[float] = mapped_column(Float, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cashout_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (Index("ix_auto_cashout_rules_active", "is_active"),)


# =============================================================================
# ADMIN AUDIT
# =============================================================================

class AdminAction(Base):
    """Audit trail for administrative changes."""
    __tablename__ = "admin_actions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    admin_id: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    target_table: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    target_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (Index("ix_admin_actions_created_at", "created_at"),)
