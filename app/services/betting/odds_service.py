"""
NIMBUS - Odds Service

Joins the forecast, volatility and difficulty inputs to price a prediction
for a city. Used by bet placement and the odds endpoints.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from app.services.betting.difficulty import DifficultyRater, DifficultyRating
from app.services.betting.odds_engine import ODDS_RANGES, OddsEngine, OddsQuote
from app.services.betting.volatility import VolatilityInfo, VolatilityModel
from app.services.weather.categories import WeatherCategory
from app.services.weather.providers import WeatherService

logger = logging.getLogger(__name__)

BINARY_PREDICTIONS = ('yes', 'no')


def days_ahead_for(target_date: Optional[datetime], today: Optional[date] = None) -> int:
    """1 for today, 2 for tomorrow; bets without a target date price as today"""
    if target_date is None:
        return 1
    today = today or datetime.utcnow().date()
    return (target_date.date() - today).days + 1


@dataclass
class PricedPrediction:
    city: str
    days_ahead: int
    quote: OddsQuote
    volatility: VolatilityInfo
    difficulty: DifficultyRating

    def to_dict(self) -> Dict[str, Any]:
        return {
            'city': self.city,
            'days_ahead': self.days_ahead,
            **self.quote.to_dict(),
            'volatility': self.volatility.to_dict(),
            'difficulty': self.difficulty.to_dict(),
        }


class OddsService:
    """Async pricing for one city at a time."""

    def __init__(
        self,
        weather: WeatherService,
        volatility: VolatilityModel,
        engine: Optional[OddsEngine] = None,
        rater: Optional[DifficultyRater] = None,
    ):
        self.weather = weather
        self.volatility = volatility
        self.engine = engine or OddsEngine()
        self.rater = rater or DifficultyRater(self.engine.config, self.engine)

    async def price(
        self,
        city: str,
        category: WeatherCategory,
        prediction_value: str,
        days_ahead: int,
    ) -> PricedPrediction:
        forecast = await self.weather.get_forecast(city)
        volatility = await self.volatility.get_volatility(city, category)
        quote = self.engine.quote(category, prediction_value, forecast, days_ahead, volatility.multiplier)
        difficulty = self.rater.rate(category, prediction_value, forecast, days_ahead, volatility)
        return PricedPrediction(
            city=city,
            days_ahead=days_ahead,
            quote=quote,
            volatility=volatility,
            difficulty=difficulty,
        )

    async def board(self, city: str, days_ahead: int = 1) -> List[Dict[str, Any]]:
        """Every offered prediction for a city, grouped by category"""
        board = []
        for category in WeatherCategory:
            if category.is_binary:
                options = [(p.capitalize(), p) for p in BINARY_PREDICTIONS]
            else:
                options = [(label, value) for label, value, _ in ODDS_RANGES.get(category, [])]
            if not options:
                continue

            priced = []
            for label, value in options:
                prediction = await self.price(city, category, value, days_ahead)
                priced.append({'label': label, **prediction.to_dict()})
            board.append({
                'category': category.value,
                'display_name': category.profile.display_name,
                'unit': category.profile.unit,
                'options': priced,
            })
        logger.debug(f"Built odds board for {city} ({len(board)} categories)")
        return board
