"""
NIMBUS - Cash-Out Valuation & Execution

Values a pending wager before its outcome is known and executes full or
partial cash-outs.

Valuation is a share of the stake:

    raw = base + time_factor * 0.35 + weather_bonus * weather_scale
    percentage = min(raw, cap)
    amount = floor(stake * percentage)

time_factor is the fraction of the bet window already elapsed and
weather_bonus how well current conditions match the prediction (0-1). The
cap comes from the cash-out penalty (15% penalty -> 85% cap), so an offer
never reaches the stake whatever the odds. Parlays use a lower base, a
smaller weather scale and never exceed 80%.

Execution always re-values server-side. The result change is a conditional
UPDATE guarded on result = 'pending' (and on the stake read for partial
cash-outs), written with its ledger entry in one transaction.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, settings
from app.core.exceptions import (
    BetNotFoundError,
    BetNotPendingError,
    CashOutUnavailableError,
    InvalidCashOutError,
)
from app.models import Bet, BetResult, Parlay, ReferenceType, TransactionType
from app.services.betting.ledger import LedgerWriter
from app.services.weather.categories import (
    WeatherCategory,
    WeatherReading,
    in_range,
    parse_binary,
    parse_number,
    parse_range,
)
from app.services.weather.providers import WeatherService

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

SINGLE_BASE_RATE = 0.40
PARLAY_BASE_RATE = 0.30
TIME_SCALE = 0.35
SINGLE_WEATHER_SCALE = 0.20
PARLAY_WEATHER_SCALE = 0.15
PARLAY_MAX_PERCENTAGE = 0.80

# Distance from an exact prediction -> weather bonus
EXACT_MATCH_BONUS = ((0, 1.0), (1, 0.75), (2, 0.5), (4, 0.25))


@dataclass
class CashOutValuation:
    """A cash-out offer; percentages and bonuses are whole percent"""
    amount: int
    percentage: int
    time_bonus: int
    weather_bonus: int
    potential_win: int
    reasoning: str
    # Unrounded share of the stake the amount was computed from
    fraction: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'amount': self.amount,
            'percentage': self.percentage,
            'time_bonus': self.time_bonus,
            'weather_bonus': self.weather_bonus,
            'potential_win': self.potential_win,
            'reasoning': self.reasoning,
        }


def stake_share(stake: int, fraction: float) -> int:
    """Whole units of a stake share; 100 * 0.85 must give 85, not 84"""
    return math.floor(round(stake * fraction, 6))


def time_factor(created_at: datetime, expires_at: Optional[datetime], now: datetime) -> float:
    """Share of the bet window elapsed, 0-1; hours elapsed (capped) without expiry"""
    elapsed = (now - created_at).total_seconds()
    if expires_at is None:
        return min(max(elapsed / 3600.0, 0.0), 1.0)
    total = (expires_at - created_at).total_seconds()
    if total <= 0:
        return 1.0
    return min(max(elapsed / total, 0.0), 1.0)


def weather_bonus(
    category: Optional[WeatherCategory],
    prediction_value: str,
    reading: Optional[WeatherReading],
) -> float:
    """How well current conditions favour the prediction, 0-1"""
    if category is None or reading is None:
        return 0.0
    current = reading.value_for(category)
    if current is None:
        return 0.0

    if category.is_binary:
        predicted = parse_binary(prediction_value)
        return 1.0 if predicted is not None and predicted == bool(current) else 0.0

    current = float(current)
    bounds = parse_range(prediction_value)
    if bounds is not None:
        if in_range(current, bounds):
            return 1.0
        low, high = bounds
        if high >= 999:
            return 0.0
        midpoint = (low + high) / 2
        return 0.5 if abs(current - midpoint) <= high - low else 0.0

    predicted = parse_number(prediction_value)
    if predicted is None:
        return 0.0
    difference = abs(round(current) - predicted)
    for max_difference, bonus in EXACT_MATCH_BONUS:
        if difference <= max_difference:
            return bonus
    return 0.0


def _reasoning(time_part: float, weather_part: float, percentage: float) -> str:
    reasons = []
    if time_part >= 0.20:
        reasons.append('Bet is close to expiration')
    elif time_part >= 0.10:
        reasons.append('Bet is progressing')

    if weather_part >= 0.15:
        reasons.append('Current weather strongly favors your prediction')
    elif weather_part >= 0.05:
        reasons.append('Current weather somewhat favors your prediction')
    elif weather_part == 0 and time_part > 0:
        reasons.append('Weather conditions uncertain')

    if percentage >= 0.85:
        headline = 'Excellent cash-out value.'
    elif percentage >= 0.75:
        headline = 'Good cash-out value.'
    elif percentage >= 0.65:
        headline = 'Fair cash-out value.'
    else:
        headline = 'Early cash-out.'
    return ' '.join([headline] + [f'{r}.' for r in reasons])


# =============================================================================
# VALUATION
# =============================================================================

class CashOutValuationModel:
    """Prices cash-out offers; pure, the caller supplies readings and time."""

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or settings

    def cap(self, penalty_pct: float, is_parlay: bool = False) -> float:
        cap = 1 - penalty_pct / 100.0
        if is_parlay:
            cap = min(cap, PARLAY_MAX_PERCENTAGE)
        return cap

    def can_cash_out(self, expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
        if not self.config.CASHOUT_ENABLED:
            return False
        if expires_at is None:
            return True
        now = now or datetime.utcnow()
        hours_left = (expires_at - now).total_seconds() / 3600.0
        return hours_left >= self.config.CASHOUT_MIN_HOURS_BEFORE_EXPIRY

    def _build(
        self,
        stake: int,
        odds: float,
        elapsed: float,
        bonus: float,
        base_rate: float,
        weather_scale: float,
        cap: float,
    ) -> CashOutValuation:
        potential_win = math.floor(stake * odds)
        time_part = elapsed * TIME_SCALE
        weather_part = bonus * weather_scale
        fraction = min(base_rate + time_part + weather_part, cap)
        return CashOutValuation(
            amount=stake_share(stake, fraction),
            percentage=round(fraction * 100),
            time_bonus=round(time_part * 100),
            weather_bonus=round(weather_part * 100),
            potential_win=potential_win,
            reasoning=_reasoning(time_part, weather_part, fraction),
            fraction=fraction,
        )

    def value(
        self,
        stake: int,
        odds: float,
        created_at: datetime,
        expires_at: Optional[datetime],
        reading: Optional[WeatherReading],
        category: Optional[WeatherCategory],
        prediction_value: str,
        now: Optional[datetime] = None,
        penalty_pct: Optional[float] = None,
    ) -> CashOutValuation:
        now = now or datetime.utcnow()
        if penalty_pct is None:
            penalty_pct = self.config.CASHOUT_PENALTY_PCT
        return self._build(
            stake,
            odds,
            time_factor(created_at, expires_at, now),
            weather_bonus(category, prediction_value, reading),
            SINGLE_BASE_RATE,
            SINGLE_WEATHER_SCALE,
            self.cap(penalty_pct),
        )

    def value_parlay(
        self,
        total_stake: int,
        combined_odds: float,
        created_at: datetime,
        expires_at: Optional[datetime],
        leg_bonuses: Sequence[float],
        now: Optional[datetime] = None,
        penalty_pct: Optional[float] = None,
    ) -> CashOutValuation:
        """The weakest leg sets the weather bonus"""
        now = now or datetime.utcnow()
        if penalty_pct is None:
            penalty_pct = self.config.CASHOUT_PENALTY_PCT
        return self._build(
            total_stake,
            combined_odds,
            time_factor(created_at, expires_at, now),
            min(leg_bonuses) if leg_bonuses else 0.0,
            PARLAY_BASE_RATE,
            PARLAY_WEATHER_SCALE,
            self.cap(penalty_pct, is_parlay=True),
        )


# =============================================================================
# EXECUTION
# =============================================================================

@dataclass
class CashOutResult:
    bet_id: UUID
    amount: int
    valuation: CashOutValuation
    remaining_stake: int = 0
    is_partial: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'bet_id': str(self.bet_id),
            'amount': self.amount,
            'remaining_stake': self.remaining_stake,
            'is_partial': self.is_partial,
            'valuation': self.valuation.to_dict(),
        }


def check_partial_percentage(percentage: float) -> None:
    if not 0 < percentage < 100:
        raise InvalidCashOutError(
            "Partial cash-out percentage must be between 0 and 100 (exclusive)",
            {"percentage": percentage},
        )


def split_stake(stake: int, percentage: float) -> Tuple[int, int]:
    """(cashed, remaining); both must be at least one unit"""
    cashed = math.floor(stake * percentage / 100)
    remaining = stake - cashed
    if cashed <= 0 or remaining <= 0:
        raise InvalidCashOutError(
            "Stake too small for this partial cash-out",
            {"stake": stake, "percentage": percentage},
        )
    return cashed, remaining


class CashOutService:
    """Values and executes cash-outs against the database."""

    def __init__(
        self,
        weather: WeatherService,
        model: Optional[CashOutValuationModel] = None,
        ledger: Optional[LedgerWriter] = None,
    ):
        self.weather = weather
        self.model = model or CashOutValuationModel()
        self.ledger = ledger or LedgerWriter()

    async def _load_bet(self, session: AsyncSession, bet_id: UUID, user_id: Optional[UUID]) -> Bet:
        bet = await session.get(Bet, bet_id)
        if bet is None or (user_id is not None and bet.user_id != user_id):
            raise BetNotFoundError(f"Bet {bet_id} not found")
        return bet

    async def _load_parlay(self, session: AsyncSession, parlay_id: UUID, user_id: Optional[UUID]) -> Parlay:
        parlay = await session.get(Parlay, parlay_id)
        if parlay is None or (user_id is not None and parlay.user_id != user_id):
            raise BetNotFoundError(f"Parlay {parlay_id} not found")
        return parlay

    async def _leg_bonuses(self, session: AsyncSession, parlay_id: UUID) -> List[float]:
        result = await session.execute(select(Bet).where(Bet.parlay_id == parlay_id))
        bonuses = []
        for leg in result.scalars():
            reading = await self.weather.get_current(leg.city)
            bonuses.append(weather_bonus(WeatherCategory.parse(leg.category), leg.prediction_value, reading))
        return bonuses

    async def quote(
        self,
        session: AsyncSession,
        bet_id: UUID,
        user_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
        penalty_pct: Optional[float] = None,
    ) -> CashOutValuation:
        bet = await self._load_bet(session, bet_id, user_id)
        if bet.is_parlay_leg:
            raise InvalidCashOutError("Parlay legs are cashed out through their parlay")
        reading = await self.weather.get_current(bet.city)
        return self.model.value(
            bet.stake,
            bet.odds,
            bet.created_at,
            bet.expires_at,
            reading,
            WeatherCategory.parse(bet.category),
            bet.prediction_value,
            now=now,
            penalty_pct=penalty_pct,
        )

    async def quote_parlay(
        self,
        session: AsyncSession,
        parlay_id: UUID,
        user_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
        penalty_pct: Optional[float] = None,
    ) -> CashOutValuation:
        parlay = await self._load_parlay(session, parlay_id, user_id)
        bonuses = await self._leg_bonuses(session, parlay_id)
        return self.model.value_parlay(
            parlay.total_stake, parlay.combined_odds, parlay.created_at, parlay.expires_at, bonuses,
            now=now, penalty_pct=penalty_pct,
        )

    def _check_open(self, result: BetResult, expires_at: Optional[datetime], now: datetime, ref: UUID) -> None:
        if result != BetResult.PENDING:
            raise BetNotPendingError(f"{ref} is already {result.value}", {"result": result.value})
        if not self.model.can_cash_out(expires_at, now):
            raise CashOutUnavailableError(
                "Cash-out is closed for this bet",
                {"min_hours_before_expiry": self.model.config.CASHOUT_MIN_HOURS_BEFORE_EXPIRY},
            )

    async def cash_out(
        self,
        session: AsyncSession,
        bet_id: UUID,
        user_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> CashOutResult:
        """
        Settle a pending bet at its current cash-out value.

        Raises:
            BetNotFoundError: unknown bet or not the caller's
            BetNotPendingError: already settled or cashed out
            CashOutUnavailableError: too close to expiry or disabled
        """
        now = now or datetime.utcnow()
        bet = await self._load_bet(session, bet_id, user_id)
        self._check_open(bet.result, bet.expires_at, now, bet_id)
        valuation = await self.quote(session, bet_id, now=now)

        stmt = (
            update(Bet)
            .where(Bet.id == bet_id, Bet.result == BetResult.PENDING)
            .values(
                result=BetResult.CASHED_OUT,
                cashout_amount=valuation.amount,
                cashed_out_at=now,
                payout=valuation.amount,
                settled_at=now,
            )
        )
        if (await session.execute(stmt)).rowcount != 1:
            raise BetNotPendingError(f"Bet {bet_id} was settled before the cash-out applied")

        await self.ledger.apply(
            session, bet.user_id, bet.currency_type, valuation.amount, TransactionType.CASHOUT,
            reference_id=bet_id, reference_type=ReferenceType.BET,
            meta={'percentage': valuation.percentage, 'potential_win': valuation.potential_win},
        )
        logger.info(f"Bet {bet_id} cashed out for {valuation.amount} ({valuation.percentage}%)")
        return CashOutResult(bet_id=bet_id, amount=valuation.amount, valuation=valuation)

    async def partial_cash_out(
        self,
        session: AsyncSession,
        bet_id: UUID,
        percentage: float,
        user_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> CashOutResult:
        """
        Cash out a share of the stake and keep the rest riding.

        percentage must be strictly between 0 and 100.

        Raises:
            InvalidCashOutError: percentage out of range, nothing left riding
                or a cashed share worth nothing
            BetNotPendingError: settled, or the stake changed concurrently
        """
        check_partial_percentage(percentage)
        now = now or datetime.utcnow()
        bet = await self._load_bet(session, bet_id, user_id)
        self._check_open(bet.result, bet.expires_at, now, bet_id)

        stake_read = bet.stake
        cashed_stake, remaining = split_stake(stake_read, percentage)

        valuation = await self.quote(
            session, bet_id, now=now, penalty_pct=self.model.config.PARTIAL_CASHOUT_PENALTY_PCT
        )
        amount = stake_share(cashed_stake, valuation.fraction)
        if amount <= 0:
            raise InvalidCashOutError(
                "Cashed share is worth nothing at the current offer",
                {"cashed_stake": cashed_stake, "percentage": valuation.percentage},
            )

        stmt = (
            update(Bet)
            .where(Bet.id == bet_id, Bet.result == BetResult.PENDING, Bet.stake == stake_read)
            .values(stake=remaining, partial_cashout_total=Bet.partial_cashout_total + amount)
        )
        if (await session.execute(stmt)).rowcount != 1:
            raise BetNotPendingError(f"Bet {bet_id} changed before the partial cash-out applied")

        await self.ledger.apply(
            session, bet.user_id, bet.currency_type, amount, TransactionType.PARTIAL_CASHOUT,
            reference_id=bet_id, reference_type=ReferenceType.BET,
            meta={
                'percentage_of_stake': percentage,
                'cashed_stake': cashed_stake,
                'remaining_stake': remaining,
                'offer_percentage': valuation.percentage,
            },
        )
        logger.info(f"Bet {bet_id} partially cashed out: {percentage}% of stake for {amount}, {remaining} left riding")
        return CashOutResult(
            bet_id=bet_id, amount=amount, valuation=valuation, remaining_stake=remaining, is_partial=True
        )

    async def cash_out_parlay(
        self,
        session: AsyncSession,
        parlay_id: UUID,
        user_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> CashOutResult:
        now = now or datetime.utcnow()
        parlay = await self._load_parlay(session, parlay_id, user_id)
        self._check_open(parlay.result, parlay.expires_at, now, parlay_id)
        valuation = await self.quote_parlay(session, parlay_id, now=now)

        stmt = (
            update(Parlay)
            .where(Parlay.id == parlay_id, Parlay.result == BetResult.PENDING)
            .values(
                result=BetResult.CASHED_OUT,
                cashout_amount=valuation.amount,
                cashed_out_at=now,
                payout=valuation.amount,
                settled_at=now,
            )
        )
        if (await session.execute(stmt)).rowcount != 1:
            raise BetNotPendingError(f"Parlay {parlay_id} was settled before the cash-out applied")

        await session.execute(
            update(Bet)
            .where(Bet.parlay_id == parlay_id, Bet.result == BetResult.PENDING)
            .values(result=BetResult.CASHED_OUT, cashed_out_at=now, settled_at=now)
        )
        await self.ledger.apply(
            session, parlay.user_id, parlay.currency_type, valuation.amount, TransactionType.CASHOUT,
            reference_id=parlay_id, reference_type=ReferenceType.PARLAY,
            meta={'percentage': valuation.percentage, 'potential_win': valuation.potential_win},
        )
        logger.info(f"Parlay {parlay_id} cashed out for {valuation.amount} ({valuation.percentage}%)")
        return CashOutResult(bet_id=parlay_id, amount=valuation.amount, valuation=valuation)

    async def partial_cash_out_parlay(
        self,
        session: AsyncSession,
        parlay_id: UUID,
        percentage: float,
        user_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> CashOutResult:
        """
        Cash out a share of a parlay or combined bet's stake; every leg keeps
        riding on the reduced stake.

        Raises:
            InvalidCashOutError: percentage out of range, nothing left riding
                or a cashed share worth nothing
            BetNotPendingError: settled, or the stake changed concurrently
        """
        check_partial_percentage(percentage)
        now = now or datetime.utcnow()
        parlay = await self._load_parlay(session, parlay_id, user_id)
        self._check_open(parlay.result, parlay.expires_at, now, parlay_id)

        stake_read = parlay.total_stake
        cashed_stake, remaining = split_stake(stake_read, percentage)

        valuation = await self.quote_parlay(
            session, parlay_id, now=now, penalty_pct=self.model.config.PARTIAL_CASHOUT_PENALTY_PCT
        )
        amount = stake_share(cashed_stake, valuation.fraction)
        if amount <= 0:
            raise InvalidCashOutError(
                "Cashed share is worth nothing at the current offer",
                {"cashed_stake": cashed_stake, "percentage": valuation.percentage},
            )

        stmt = (
            update(Parlay)
            .where(
                Parlay.id == parlay_id,
                Parlay.result == BetResult.PENDING,
                Parlay.total_stake == stake_read,
            )
            .values(total_stake=remaining, partial_cashout_total=Parlay.partial_cashout_total + amount)
        )
        if (await session.execute(stmt)).rowcount != 1:
            raise BetNotPendingError(f"Parlay {parlay_id} changed before the partial cash-out applied")

        await self.ledger.apply(
            session, parlay.user_id, parlay.currency_type, amount, TransactionType.PARTIAL_CASHOUT,
            reference_id=parlay_id, reference_type=ReferenceType.PARLAY,
            meta={
                'percentage_of_stake': percentage,
                'cashed_stake': cashed_stake,
                'remaining_stake': remaining,
                'offer_percentage': valuation.percentage,
            },
        )
        logger.info(
            f"Parlay {parlay_id} partially cashed out: {percentage}% of stake for {amount}, {remaining} left riding"
        )
        return CashOutResult(
            bet_id=parlay_id, amount=amount, valuation=valuation, remaining_stake=remaining, is_partial=True
        )
