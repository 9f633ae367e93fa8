"""
NIMBUS - Bet Placement

Validates a wager, fixes its odds at creation time and debits the stake
(and the insurance premium) through the ledger in the caller's transaction.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.core.exceptions import InvalidBetError
from app.models import Bet, BetResult, CurrencyType, Parlay, ReferenceType, TransactionType
from app.services.betting.ledger import LedgerWriter
from app.services.betting.odds_service import OddsService, PricedPrediction, days_ahead_for
from app.services.weather.categories import WeatherCategory, is_valid_prediction

logger = logging.getLogger(__name__)


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored times are naive UTC; aware inputs are converted, naive ones kept"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass
class PredictionRequest:
    """One prediction: a single bet or a parlay leg"""
    city: str
    category: str
    prediction_value: str
    target_date: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    def __post_init__(self):
        self.target_date = naive_utc(self.target_date)
        self.expires_at = naive_utc(self.expires_at)


@dataclass
class PlacedBet:
    bet: Bet
    pricing: PricedPrediction

    def to_dict(self) -> Dict[str, Any]:
        return {'bet_id': str(self.bet.id), **self.pricing.to_dict()}


@dataclass
class PlacedParlay:
    parlay: Parlay
    legs: List[Bet]
    pricing: List[PricedPrediction]


class BetPlacementService:
    """Creates bets, parlays and combined bets."""

    def __init__(self, odds: OddsService, ledger: Optional[LedgerWriter] = None):
        self.odds = odds
        self.ledger = ledger or LedgerWriter()

    @property
    def config(self) -> Settings:
        return self.odds.engine.config

    def validate(self, request: PredictionRequest, now: datetime) -> WeatherCategory:
        """
        Raises:
            InvalidBetError: unknown category, bad prediction or past dates
        """
        if not request.city or not request.city.strip():
            raise InvalidBetError("City is required")
        category = WeatherCategory.parse(request.category)
        if category is None:
            raise InvalidBetError(f"Unknown category: {request.category}", {"category": request.category})
        if not is_valid_prediction(category, request.prediction_value):
            raise InvalidBetError(
                f"Invalid prediction for {category.value}: {request.prediction_value!r}",
                {"category": category.value, "prediction_value": request.prediction_value},
            )
        if request.target_date is not None and request.target_date.date() < now.date():
            raise InvalidBetError("Target date is in the past")
        if request.expires_at is not None and request.expires_at <= now:
            raise InvalidBetError("Expiry is in the past")
        return category

    def validate_stake(self, stake: int) -> None:
        if not isinstance(stake, int) or stake < self.config.MIN_STAKE:
            raise InvalidBetError(f"Stake must be a whole amount of at least {self.config.MIN_STAKE}")

    def expiry_for(self, request: PredictionRequest, now: datetime) -> datetime:
        if request.expires_at is not None:
            return request.expires_at
        if request.target_date is not None:
            return request.target_date
        return now + timedelta(hours=self.config.BET_DEFAULT_EXPIRY_HOURS)

    async def place_bet(
        self,
        session: AsyncSession,
        user_id: UUID,
        request: PredictionRequest,
        stake: int,
        currency: CurrencyType = CurrencyType.VIRTUAL,
        with_insurance: bool = False,
        now: Optional[datetime] = None,
    ) -> PlacedBet:
        """
        Raises:
            InvalidBetError: invalid request
            InsufficientBalanceError: stake plus premium exceeds the balance
        """
        now = now or datetime.utcnow()
        category = self.validate(request, now)
        self.validate_stake(stake)

        pricing = await self.odds.price(
            request.city, category, request.prediction_value, days_ahead_for(request.target_date, now.date())
        )
        premium = self.odds.engine.insurance_cost(stake) if with_insurance else 0

        bet = Bet(
            id=uuid4(),
            user_id=user_id,
            city=request.city,
            category=category.value,
            prediction_value=request.prediction_value.strip().lower(),
            stake=stake,
            odds=pricing.quote.final_odds,
            currency_type=currency,
            target_date=request.target_date,
            expires_at=self.expiry_for(request, now),
            has_insurance=with_insurance,
            insurance_cost=premium,
            result=BetResult.PENDING,
            created_at=now,
        )
        session.add(bet)
        await session.flush()

        await self.ledger.apply(
            session, user_id, currency, -stake, TransactionType.BET_PLACED,
            reference_id=bet.id, reference_type=ReferenceType.BET,
            meta={'odds': bet.odds, 'category': bet.category, 'city': bet.city},
        )
        if premium > 0:
            await self.ledger.apply(
                session, user_id, currency, -premium, TransactionType.INSURANCE_PURCHASE,
                reference_id=bet.id, reference_type=ReferenceType.BET,
            )

        logger.info(
            f"Placed bet {bet.id}: {bet.city} {bet.category}={bet.prediction_value} "
            f"stake {stake} @ {bet.odds}"
        )
        return PlacedBet(bet=bet, pricing=pricing)

    async def place_parlay(
        self,
        session: AsyncSession,
        user_id: UUID,
        legs: Sequence[PredictionRequest],
        stake: int,
        currency: CurrencyType = CurrencyType.VIRTUAL,
        now: Optional[datetime] = None,
        is_combined: bool = False,
    ) -> PlacedParlay:
        now = now or datetime.utcnow()
        if not self.config.MIN_PARLAY_LEGS <= len(legs) <= self.config.MAX_PARLAY_LEGS:
            raise InvalidBetError(
                f"A parlay needs between {self.config.MIN_PARLAY_LEGS} and {self.config.MAX_PARLAY_LEGS} legs",
                {"legs": len(legs)},
            )
        self.validate_stake(stake)

        categories = [self.validate(leg, now) for leg in legs]
        pricing = [
            await self.odds.price(leg.city, category, leg.prediction_value, days_ahead_for(leg.target_date, now.date()))
            for leg, category in zip(legs, categories)
        ]
        combined = self.odds.engine.parlay_odds([p.quote.final_odds for p in pricing])

        parlay = Parlay(
            id=uuid4(),
            user_id=user_id,
            total_stake=stake,
            combined_odds=combined,
            is_combined=is_combined,
            currency_type=currency,
            expires_at=min(self.expiry_for(leg, now) for leg in legs),
            result=BetResult.PENDING,
            created_at=now,
        )
        session.add(parlay)

        leg_rows = []
        for leg, category, priced in zip(legs, categories, pricing):
            row = Bet(
                id=uuid4(),
                user_id=user_id,
                parlay_id=parlay.id,
                city=leg.city,
                category=category.value,
                prediction_value=leg.prediction_value.strip().lower(),
                stake=0,
                odds=priced.quote.final_odds,
                currency_type=currency,
                target_date=leg.target_date,
                expires_at=self.expiry_for(leg, now),
                result=BetResult.PENDING,
                created_at=now,
            )
            session.add(row)
            leg_rows.append(row)
        await session.flush()

        await self.ledger.apply(
            session, user_id, currency, -stake, TransactionType.PARLAY_PLACED,
            reference_id=parlay.id, reference_type=ReferenceType.PARLAY,
            meta={'combined_odds': combined, 'legs': len(leg_rows), 'is_combined': is_combined},
        )
        kind = "combined bet" if is_combined else "parlay"
        logger.info(f"Placed {kind} {parlay.id}: {len(leg_rows)} legs, stake {stake} @ {combined}")
        return PlacedParlay(parlay=parlay, legs=leg_rows, pricing=pricing)

    async def place_combined(
        self,
        session: AsyncSession,
        user_id: UUID,
        city: str,
        predictions: Sequence[Tuple[str, str]],
        stake: int,
        currency: CurrencyType = CurrencyType.VIRTUAL,
        target_date: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> PlacedParlay:
        """
        Several (category, prediction) pairs on one city and date. Odds
        multiply and the bet settles once every category is graded; any
        losing category loses the whole stake.

        Raises:
            InvalidBetError: fewer than two predictions or a repeated category
        """
        if len(predictions) < 2:
            raise InvalidBetError("A combined bet needs at least two categories", {"categories": len(predictions)})
        parsed = [WeatherCategory.parse(category) for category, _ in predictions]
        known = [c for c in parsed if c is not None]
        if len(set(known)) != len(known):
            raise InvalidBetError("Each category can appear once in a combined bet")

        legs = [
            PredictionRequest(
                city=city,
                category=category,
                prediction_value=value,
                target_date=target_date,
                expires_at=expires_at,
            )
            for category, value in predictions
        ]
        return await self.place_parlay(session, user_id, legs, stake, currency, now=now, is_combined=True)

    @staticmethod
    async def list_bets(
        session: AsyncSession,
        user_id: UUID,
        result: Optional[BetResult] = None,
        limit: int = 50,
    ) -> List[Bet]:
        query = select(Bet).where(Bet.user_id == user_id)
        if result is not None:
            query = query.where(Bet.result == result)
        rows = await session.execute(query.order_by(Bet.created_at.desc()).limit(limit))
        return list(rows.scalars())
