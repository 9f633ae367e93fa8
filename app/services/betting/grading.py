"""
NIMBUS - Bet Grading

Grades pending bets against verified weather values and pays out.

Each bet moves out of 'pending' through a conditional UPDATE guarded on
result = 'pending'. A bet that another run already settled updates zero
rows and is skipped, so grading the same bet twice never pays twice. The
payout and its ledger entry are written in the same transaction as the
result.
"""

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Set
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, settings
from app.core.database import DatabaseManager
from app.core.exceptions import PrimarySourceUnavailableError
from app.models import (
    Bet,
    BetResult,
    BonusEarning,
    BonusType,
    Parlay,
    ReferenceType,
    TransactionType,
    User,
)
from app.services.betting.bonus import (
    StreakBonus,
    active_shop_multiplier,
    consume_purchases,
    record_bonus_earnings,
)
from app.services.betting.ledger import LedgerWriter
from app.services.betting.odds_engine import OddsEngine
from app.services.betting.settlement import SettlementEngine
from app.services.weather.accuracy import AccuracyService
from app.services.weather.categories import (
    WeatherCategory,
    in_range,
    parse_binary,
    parse_number,
    parse_range,
)

logger = logging.getLogger(__name__)


# =============================================================================
# ENUMS AND TYPES
# =============================================================================

class GradeOutcome(str, Enum):
    """What happened to a bet in one grading pass."""
    WIN = 'win'
    LOSS = 'loss'
    SKIPPED = 'skipped'
    ALREADY_SETTLED = 'already_settled'


@dataclass
class GradedBet:
    bet_id: UUID
    category: str
    prediction_value: str
    actual_value: Optional[str]
    outcome: GradeOutcome
    payout: int = 0
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'bet_id': str(self.bet_id),
            'category': self.category,
            'prediction_value': self.prediction_value,
            'actual_value': self.actual_value,
            'outcome': self.outcome.value,
            'payout': self.payout,
            'reason': self.reason,
        }


@dataclass
class GradingReport:
    """Result of grading one city."""
    city: str
    bets: List[GradedBet] = field(default_factory=list)
    parlays_settled: int = 0

    def _count(self, outcome: GradeOutcome) -> int:
        return sum(1 for b in self.bets if b.outcome == outcome)

    @property
    def wins(self) -> int:
        return self._count(GradeOutcome.WIN)

    @property
    def losses(self) -> int:
        return self._count(GradeOutcome.LOSS)

    @property
    def skipped(self) -> int:
        return self._count(GradeOutcome.SKIPPED) + self._count(GradeOutcome.ALREADY_SETTLED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'city': self.city,
            'wins': self.wins,
            'losses': self.losses,
            'skipped': self.skipped,
            'parlays_settled': self.parlays_settled,
            'bets': [b.to_dict() for b in self.bets],
        }


@dataclass
class ResolutionSummary:
    """Result of one resolve_pending run across cities."""
    started_at: datetime = field(default_factory=datetime.utcnow)
    cities: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    failed_cities: List[str] = field(default_factory=list)

    @property
    def resolved(self) -> int:
        return sum(c.get('wins', 0) + c.get('losses', 0) for c in self.cities.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'started_at': self.started_at.isoformat(),
            'resolved': self.resolved,
            'cities': self.cities,
            'failed_cities': self.failed_cities,
        }


def evaluate_prediction(
    category: WeatherCategory,
    prediction_value: str,
    actual_value: str,
    tolerance: float = 0.0,
) -> Optional[bool]:
    """
    True if the prediction wins against the verified value, None if either
    side cannot be interpreted.

    yes/no must match; "min-max" ranges include both ends (999 = open);
    a plain number wins when the actual value, rounded half up to a whole
    number, is within +/- tolerance.
    """
    if category.is_binary:
        predicted, actual = parse_binary(prediction_value), parse_binary(actual_value)
        if predicted is None or actual is None:
            return None
        return predicted == actual

    actual = parse_number(actual_value)
    if actual is None:
        return None

    bounds = parse_range(prediction_value)
    if bounds is not None:
        return in_range(actual, bounds)

    predicted = parse_number(prediction_value)
    if predicted is None:
        return None
    return abs(math.floor(actual + 0.5) - predicted) <= tolerance


# =============================================================================
# GRADER
# =============================================================================

class BetGrader:
    """Settles pending bets for a city from its verified values."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        ledger: Optional[LedgerWriter] = None,
        streaks: Optional[StreakBonus] = None,
        odds_engine: Optional[OddsEngine] = None,
        accuracy: Optional[AccuracyService] = None,
    ):
        self.config = config or settings
        self.ledger = ledger or LedgerWriter()
        self.streaks = streaks or StreakBonus(self.config)
        self.odds_engine = odds_engine or OddsEngine(self.config)
        self.accuracy = accuracy or AccuracyService()

    def tolerance_for(self, category: WeatherCategory) -> float:
        if category == WeatherCategory.TEMPERATURE:
            return self.config.TEMPERATURE_TOLERANCE
        return 0.0

    def is_due(self, bet: Bet, now: datetime) -> bool:
        """Target time reached, or old enough when the bet has no target"""
        if bet.target_date is not None:
            return now >= bet.target_date
        min_age = timedelta(minutes=self.config.RESOLVE_MIN_BET_AGE_MINUTES)
        return bet.created_at is not None and now - bet.created_at >= min_age

    async def _transition(self, session: AsyncSession, model, row_id: UUID, result: BetResult, **values) -> bool:
        """pending -> result; False when the row was no longer pending"""
        stmt = (
            update(model)
            .where(model.id == row_id, model.result == BetResult.PENDING)
            .values(result=result, **values)
        )
        outcome = await session.execute(stmt)
        return outcome.rowcount == 1

    async def grade_city(
        self,
        session: AsyncSession,
        city: str,
        verified_values: Dict[str, str],
        now: Optional[datetime] = None,
    ) -> GradingReport:
        now = now or datetime.utcnow()
        report = GradingReport(city=city)

        result = await session.execute(
            select(Bet)
            .where(Bet.city == city, Bet.result == BetResult.PENDING)
            .order_by(Bet.created_at)
        )
        bets = list(result.scalars())
        touched_parlays: Set[UUID] = set()

        for bet in bets:
            graded = await self._grade_bet(session, bet, verified_values, now)
            report.bets.append(graded)
            if bet.parlay_id is not None and graded.outcome in (GradeOutcome.WIN, GradeOutcome.LOSS):
                touched_parlays.add(bet.parlay_id)

        for parlay_id in touched_parlays:
            if await self._settle_parlay(session, parlay_id, now):
                report.parlays_settled += 1

        await session.flush()
        logger.info(
            f"Graded {city}: {report.wins} won, {report.losses} lost, "
            f"{report.skipped} skipped, {report.parlays_settled} parlays settled"
        )
        return report

    async def _grade_bet(
        self,
        session: AsyncSession,
        bet: Bet,
        verified_values: Dict[str, str],
        now: datetime,
    ) -> GradedBet:
        graded = GradedBet(
            bet_id=bet.id,
            category=bet.category,
            prediction_value=bet.prediction_value,
            actual_value=verified_values.get(bet.category),
            outcome=GradeOutcome.SKIPPED,
        )

        category = WeatherCategory.parse(bet.category)
        if category is None:
            graded.reason = 'unknown category'
            return graded
        if graded.actual_value is None:
            graded.reason = 'no verified value'
            return graded
        if not self.is_due(bet, now):
            graded.reason = 'not due'
            return graded

        is_win = evaluate_prediction(
            category, bet.prediction_value, graded.actual_value, self.tolerance_for(category)
        )
        if is_win is None:
            graded.reason = 'unparseable prediction or value'
            return graded

        if bet.parlay_id is not None:
            settled = await self._transition(
                session, Bet, bet.id,
                BetResult.WIN if is_win else BetResult.LOSS,
                settled_value=graded.actual_value,
                settled_at=now,
            )
        elif is_win:
            settled, graded.payout = await self._settle_single_win(session, bet, graded.actual_value, now)
        else:
            settled, graded.payout = await self._settle_single_loss(session, bet, graded.actual_value, now)

        if not settled:
            graded.outcome = GradeOutcome.ALREADY_SETTLED
            graded.payout = 0
            return graded

        graded.outcome = GradeOutcome.WIN if is_win else GradeOutcome.LOSS
        await self.accuracy.record(
            session,
            bet.city,
            category,
            (bet.target_date or now).date(),
            bet.prediction_value,
            graded.actual_value,
        )
        logger.info(f"Bet {bet.id}: {graded.outcome.value} ({graded.payout} paid)")
        return graded

    async def _settle_single_win(self, session: AsyncSession, bet: Bet, actual: str, now: datetime):
        user = await session.get(User, bet.user_id)
        streak = user.current_streak + 1
        shop_multiplier, purchases = await active_shop_multiplier(session, bet.user_id)
        payout = self.streaks.win_payout(bet.stake, bet.odds, streak, shop_multiplier)

        if not await self._transition(
            session, Bet, bet.id, BetResult.WIN,
            payout=payout.total, settled_value=actual, settled_at=now,
        ):
            return False, 0

        await self.ledger.apply(
            session, bet.user_id, bet.currency_type, payout.total, TransactionType.BET_WON,
            reference_id=bet.id, reference_type=ReferenceType.BET,
            meta={
                'base_winnings': payout.base_winnings,
                'streak_bonus': payout.streak_bonus,
                'shop_bonus': payout.shop_bonus,
                'odds': bet.odds,
            },
        )
        record_bonus_earnings(session, bet.user_id, payout, bet.currency_type, bet_id=bet.id)
        if payout.shop_bonus:
            consume_purchases(purchases)
        self._record_win(user, streak)
        return True, payout.total

    async def _settle_single_loss(self, session: AsyncSession, bet: Bet, actual: str, now: datetime):
        refund = self.odds_engine.insurance_payout(bet.stake) if bet.has_insurance else 0

        if not await self._transition(
            session, Bet, bet.id, BetResult.LOSS,
            payout=refund, settled_value=actual, settled_at=now,
        ):
            return False, 0

        if refund > 0:
            await self.ledger.apply(
                session, bet.user_id, bet.currency_type, refund, TransactionType.INSURANCE_PAYOUT,
                reference_id=bet.id, reference_type=ReferenceType.BET,
            )
            session.add(BonusEarning(
                user_id=bet.user_id,
                bet_id=bet.id,
                bonus_type=BonusType.INSURANCE,
                bonus_amount=refund,
                base_amount=bet.stake,
                currency_type=bet.currency_type,
            ))

        user = await session.get(User, bet.user_id)
        user.current_streak = 0
        return True, refund

    async def _settle_parlay(self, session: AsyncSession, parlay_id: UUID, now: datetime) -> bool:
        parlay = await session.get(Parlay, parlay_id)
        if parlay is None or parlay.result != BetResult.PENDING:
            return False

        legs = await session.execute(select(Bet.result).where(Bet.parlay_id == parlay_id))
        results = [r for (r,) in legs.all()]

        if any(r == BetResult.LOSS for r in results):
            if not await self._transition(session, Parlay, parlay_id, BetResult.LOSS, payout=0, settled_at=now):
                return False
            user = await session.get(User, parlay.user_id)
            user.current_streak = 0
            logger.info(f"Parlay {parlay_id}: loss")
            return True

        if not results or not all(r == BetResult.WIN for r in results):
            return False

        user = await session.get(User, parlay.user_id)
        streak = user.current_streak + 1
        shop_multiplier, purchases = await active_shop_multiplier(session, parlay.user_id)
        payout = self.streaks.win_payout(parlay.total_stake, parlay.combined_odds, streak, shop_multiplier)

        if not await self._transition(
            session, Parlay, parlay_id, BetResult.WIN, payout=payout.total, settled_at=now
        ):
            return False

        await self.ledger.apply(
            session, parlay.user_id, parlay.currency_type, payout.total, TransactionType.PARLAY_WON,
            reference_id=parlay_id, reference_type=ReferenceType.PARLAY,
            meta={'base_winnings': payout.base_winnings, 'legs': len(results)},
        )
        record_bonus_earnings(session, parlay.user_id, payout, parlay.currency_type, parlay_id=parlay_id)
        if payout.shop_bonus:
            consume_purchases(purchases)
        self._record_win(user, streak)
        logger.info(f"Parlay {parlay_id}: win ({payout.total} paid)")
        return True

    @staticmethod
    def _record_win(user: User, streak: int) -> None:
        user.current_streak = streak
        user.longest_streak = max(user.longest_streak or 0, streak)


# =============================================================================
# RESOLUTION RUN
# =============================================================================

class BetResolver:
    """
    Verifies each city with pending bets once and grades its bets.

    Each city runs in its own transaction so one failing city leaves the
    others settled.
    """

    def __init__(
        self,
        db: DatabaseManager,
        settlement: SettlementEngine,
        grader: Optional[BetGrader] = None,
    ):
        self.db = db
        self.settlement = settlement
        self.grader = grader or BetGrader(settlement.config)

    async def pending_categories_by_city(self, now: datetime) -> Dict[str, List[str]]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Bet).where(Bet.result == BetResult.PENDING)
            )
            by_city: Dict[str, Set[str]] = defaultdict(set)
            for bet in result.scalars():
                category = WeatherCategory.parse(bet.category)
                if category is None or not category.is_verifiable:
                    continue
                if self.grader.is_due(bet, now):
                    by_city[bet.city].add(category.value)
        return {city: sorted(categories) for city, categories in by_city.items()}

    async def resolve_pending(self, raise_on_failure: bool = True) -> ResolutionSummary:
        """
        Grade every due bet.

        Raises:
            PrimarySourceUnavailableError: after all cities ran, if the
                primary source failed for any of them and raise_on_failure
        """
        now = datetime.utcnow()
        summary = ResolutionSummary(started_at=now)
        work = await self.pending_categories_by_city(now)
        logger.info(f"Found due bets in {len(work)} cities")

        for city, categories in work.items():
            try:
                async with self.db.session() as session:
                    report = await self.settlement.verify(session, city, categories)
                    graded = await self.grader.grade_city(session, city, report.verified_values, now)
                summary.cities[city] = {
                    **graded.to_dict(),
                    'all_sources_available': report.all_sources_available,
                    'disputed_categories': report.summary['disputed_categories'],
                }
            except PrimarySourceUnavailableError as e:
                logger.error(f"Skipping {city}: {e.message}")
                summary.failed_cities.append(city)
                summary.cities[city] = {'error': e.code, 'detail': e.message}

        logger.info(f"Successfully resolved {summary.resolved} bets")

        if summary.failed_cities and raise_on_failure:
            raise PrimarySourceUnavailableError(
                f"Primary weather source unavailable for {len(summary.failed_cities)} cities",
                {"failed_cities": summary.failed_cities},
            )
        return summary
