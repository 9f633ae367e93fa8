"""
NIMBUS - API Schemas
Pydantic Request/Response Models
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models import AutoCashoutRuleType, BetResult, CurrencyType
from app.services.betting.placement import naive_utc
from app.services.betting.settlement import BulkAction, OverrideSource


# =============================================================================
# BASE SCHEMAS
# =============================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""
    model_config = ConfigDict(from_attributes=True)


class MessageResponse(BaseModel):
    """Simple message response."""
    message: str
    success: bool = True


# =============================================================================
# ODDS SCHEMAS
# =============================================================================

class OddsQuoteRequest(BaseModel):
    """Price a single prediction."""
    city: str = Field(..., min_length=1, max_length=100)
    category: str
    prediction_value: str = Field(..., min_length=1, max_length=50)
    target_date: Optional[datetime] = None

    @field_validator('target_date')
    @classmethod
    def validate_target_date(cls, v: Optional[datetime]) -> Optional[datetime]:
        return naive_utc(v)


class OddsQuoteResponse(BaseModel):
    city: str
    days_ahead: int
    category: str
    prediction_value: str
    base_odds: float
    volatility_multiplier: float
    volatility_bonus_pct: int
    time_decay_multiplier: float
    time_decay_bonus_pct: int
    final_odds: float
    probability: float
    volatility: Dict[str, Any]
    difficulty: Dict[str, Any]


class OddsBoardResponse(BaseModel):
    city: str
    days_ahead: int
    categories: List[Dict[str, Any]]


# =============================================================================
# BET SCHEMAS
# =============================================================================

class PredictionIn(BaseModel):
    city: str = Field(..., min_length=1, max_length=100)
    category: str
    prediction_value: str = Field(..., min_length=1, max_length=50)
    target_date: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @field_validator('target_date', 'expires_at')
    @classmethod
    def validate_naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Offsets and a trailing Z are converted to naive UTC"""
        return naive_utc(v)


class BetCreate(PredictionIn):
    """Place a single bet."""
    stake: int = Field(..., gt=0)
    currency_type: CurrencyType = CurrencyType.VIRTUAL
    with_insurance: bool = False


class ParlayCreate(BaseModel):
    """Place a parlay; every leg must win."""
    legs: List[PredictionIn] = Field(..., min_length=1)
    stake: int = Field(..., gt=0)
    currency_type: CurrencyType = CurrencyType.VIRTUAL


class CategoryPredictionIn(BaseModel):
    category: str
    prediction_value: str = Field(..., min_length=1, max_length=50)


class CombinedBetCreate(BaseModel):
    """Several categories for one city and date, settled together."""
    city: str = Field(..., min_length=1, max_length=100)
    predictions: List[CategoryPredictionIn] = Field(..., min_length=1)
    stake: int = Field(..., gt=0)
    currency_type: CurrencyType = CurrencyType.VIRTUAL
    target_date: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @field_validator('target_date', 'expires_at')
    @classmethod
    def validate_naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return naive_utc(v)


class BetResponse(BaseSchema):
    id: UUID
    parlay_id: Optional[UUID] = None
    city: str
    category: str
    prediction_value: str
    stake: int
    odds: float
    currency_type: CurrencyType
    target_date: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    has_insurance: bool
    insurance_cost: int
    result: BetResult
    settled_value: Optional[str] = None
    payout: Optional[int] = None
    cashout_amount: Optional[int] = None
    cashed_out_at: Optional[datetime] = None
    partial_cashout_total: int = 0
    created_at: datetime
    settled_at: Optional[datetime] = None


class PlacedBetResponse(BaseModel):
    bet: BetResponse
    difficulty: Dict[str, Any]
    volatility: Dict[str, Any]


class ParlayResponse(BaseSchema):
    id: UUID
    total_stake: int
    combined_odds: float
    is_combined: bool = False
    currency_type: CurrencyType
    expires_at: Optional[datetime] = None
    result: BetResult
    payout: Optional[int] = None
    partial_cashout_total: int = 0
    created_at: datetime
    legs: List[BetResponse] = []


# =============================================================================
# CASH-OUT SCHEMAS
# =============================================================================

class CashOutValuationResponse(BaseModel):
    amount: int
    percentage: int
    time_bonus: int
    weather_bonus: int
    potential_win: int
    reasoning: str
    available: bool = True


class CashOutResponse(BaseModel):
    bet_id: UUID
    amount: int
    remaining_stake: int
    is_partial: bool
    valuation: CashOutValuationResponse


class PartialCashOutRequest(BaseModel):
    """Share of the current stake to cash out, strictly between 0 and 100."""
    percentage: float


class AutoCashoutRuleCreate(BaseModel):
    bet_id: Optional[UUID] = None
    parlay_id: Optional[UUID] = None
    rule_type: AutoCashoutRuleType
    threshold: float = Field(..., ge=0)


class AutoCashoutRuleResponse(BaseSchema):
    id: UUID
    bet_id: Optional[UUID] = None
    parlay_id: Optional[UUID] = None
    rule_type: AutoCashoutRuleType
    threshold: float
    is_active: bool
    triggered_at: Optional[datetime] = None
    cashout_amount: Optional[int] = None


# =============================================================================
# VERIFICATION SCHEMAS
# =============================================================================

class VerifyRequest(BaseModel):
    categories: Optional[List[str]] = None


class VerificationEntryResponse(BaseSchema):
    id: UUID
    city: str
    category: str
    primary_value: str
    secondary_value: Optional[str] = None
    deviation_percentage: float
    is_disputed: bool
    resolution_method: Optional[str] = None
    final_value: str
    confidence_score: float
    created_at: datetime
    resolved_at: Optional[datetime] = None


class OverrideRequest(BaseModel):
    new_value: str = Field(..., min_length=1, max_length=50)
    reason: str = Field(..., min_length=1, max_length=500)
    source: OverrideSource = OverrideSource.MANUAL


class BulkResolveRequest(BaseModel):
    action: BulkAction


class BulkResolveResponse(BaseModel):
    action: BulkAction
    resolved: int


# =============================================================================
# LEDGER SCHEMAS
# =============================================================================

class ReconciliationResponse(BaseModel):
    user_id: UUID
    currency: CurrencyType
    balance: int
    ledger_balance: Optional[int] = None
    entries: int
    broken_entries: List[int]
    is_consistent: bool
