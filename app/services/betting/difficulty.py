"""
NIMBUS - Prediction Difficulty Rating

Informational rating that blends three factors into a 0-1 score:
historical volatility, how far ahead the prediction is, and how uncertain
the current forecast is for the chosen value. It never changes odds.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Union

from app.core.config import Settings, settings
from app.services.betting.odds_engine import OddsEngine
from app.services.betting.volatility import VolatilityInfo
from app.services.weather.categories import WeatherCategory, parse_number, parse_range
from app.services.weather.providers import DailyForecast

logger = logging.getLogger(__name__)


class DifficultyLevel(str, Enum):
    EASY = 'Easy'
    MEDIUM = 'Medium'
    HARD = 'Hard'
    EXPERT = 'Expert'


@dataclass
class DifficultyFactor:
    score: float
    label: str

    def to_dict(self) -> Dict[str, Any]:
        return {'score': round(self.score, 4), 'label': self.label}


@dataclass
class DifficultyRating:
    level: DifficultyLevel
    score: float
    description: str
    odds_bonus_pct: int
    factors: Dict[str, DifficultyFactor] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'level': self.level.value,
            'score': self.score,
            'description': self.description,
            'odds_bonus_pct': self.odds_bonus_pct,
            'factors': {name: f.to_dict() for name, f in self.factors.items()},
        }


def _volatility_label(score: float) -> str:
    if score < 0.2:
        return 'Stable'
    if score < 0.5:
        return 'Moderate'
    if score < 0.8:
        return 'Volatile'
    return 'Very Volatile'


def _time_label(score: float) -> str:
    if score < 0.2:
        return 'Near term'
    if score < 0.5:
        return 'Mid range'
    if score < 0.8:
        return 'Extended'
    return 'Long range'


def _forecast_label(score: float) -> str:
    if score < 0.3:
        return 'Clear'
    if score < 0.5:
        return 'Mixed'
    if score < 0.7:
        return 'Uncertain'
    return 'Highly Uncertain'


def _describe(level: DifficultyLevel, odds_bonus: int) -> str:
    if level == DifficultyLevel.EASY:
        return 'High confidence prediction with stable weather patterns.'
    if level == DifficultyLevel.MEDIUM:
        bonus = f'+{odds_bonus}% odds bonus' if odds_bonus > 0 else 'standard odds'
        return f'Moderate challenge with {bonus}.'
    if level == DifficultyLevel.HARD:
        bonus = f'+{odds_bonus}% odds bonus for the risk' if odds_bonus > 0 else 'elevated risk'
        return f'Challenging prediction with {bonus}.'
    bonus = f'+{odds_bonus}% odds bonus' if odds_bonus > 0 else 'maximum risk'
    return f'Expert-level difficulty with {bonus} - high reward potential!'


class DifficultyRater:
    """Rates how hard a prediction is to get right."""

    def __init__(self, config: Optional[Settings] = None, odds_engine: Optional[OddsEngine] = None):
        self.config = config or settings
        self.odds_engine = odds_engine or OddsEngine(self.config)

    def volatility_score(self, volatility: Optional[VolatilityInfo]) -> float:
        if not self.config.VOLATILITY_ENABLED:
            return 0.0
        if volatility is None or not volatility.has_enough_data:
            return 0.3
        return min(volatility.bonus_pct / 40, 1.0)

    def time_decay_score(self, days_ahead: int) -> float:
        if not self.config.TIME_DECAY_ENABLED:
            return 0.0
        return min(self.odds_engine.time_decay_bonus_pct(days_ahead) / 30, 1.0)

    def forecast_uncertainty(
        self,
        category: Union[WeatherCategory, str],
        prediction_value: str,
        forecast: Sequence[DailyForecast],
        days_ahead: int,
    ) -> float:
        """Uncertainty in [0, 1]; highest near 50% rain chance and for narrow bands"""
        day = OddsEngine.forecast_for_day(forecast, days_ahead)
        if day is None:
            return 0.5

        base = min(days_ahead / 7, 1) * 0.3
        parsed = WeatherCategory.parse(category)

        if parsed == WeatherCategory.RAIN:
            distance_from_50 = abs(day.rain_probability - 50)
            return min(base + (1 - distance_from_50 / 50) * 0.7, 1.0)

        if parsed == WeatherCategory.TEMPERATURE:
            bounds = parse_range(prediction_value)
            if bounds is None:
                number = parse_number(prediction_value)
                if number is None:
                    return min(base + 0.4, 1.0)
                bounds = (number, number)
            low, high = bounds
            width = high - low
            range_uncertainty = 0.8 if width <= 5 else 0.5 if width <= 10 else 0.3
            distance = abs(day.temp_day - (low + high) / 2)
            distance_uncertainty = 0.2 if distance <= 3 else 0.4 if distance <= 7 else 0.6
            return min(base + (range_uncertainty * 0.5 + distance_uncertainty * 0.5) * 0.7, 1.0)

        if parsed == WeatherCategory.SNOW:
            return min(base + 0.6, 1.0)

        return min(base + 0.4, 1.0)

    def level_for(self, score: float) -> DifficultyLevel:
        if score < self.config.DIFFICULTY_THRESHOLD_EASY:
            return DifficultyLevel.EASY
        if score < self.config.DIFFICULTY_THRESHOLD_MEDIUM:
            return DifficultyLevel.MEDIUM
        if score < self.config.DIFFICULTY_THRESHOLD_HARD:
            return DifficultyLevel.HARD
        return DifficultyLevel.EXPERT

    def rate(
        self,
        category: Union[WeatherCategory, str],
        prediction_value: str,
        forecast: Sequence[DailyForecast],
        days_ahead: int,
        volatility: Optional[VolatilityInfo] = None,
    ) -> DifficultyRating:
        vol_score = self.volatility_score(volatility)
        time_score = self.time_decay_score(days_ahead)
        uncertainty = self.forecast_uncertainty(category, prediction_value, forecast, days_ahead)

        total = (
            vol_score * self.config.DIFFICULTY_WEIGHT_VOLATILITY
            + time_score * self.config.DIFFICULTY_WEIGHT_TIME_DECAY
            + uncertainty * self.config.DIFFICULTY_WEIGHT_UNCERTAINTY
        )
        level = self.level_for(total)
        volatility_bonus = volatility.bonus_pct if volatility else 0
        odds_bonus = volatility_bonus + self.odds_engine.time_decay_bonus_pct(days_ahead)

        return DifficultyRating(
            level=level,
            score=round(total, 2),
            description=_describe(level, odds_bonus),
            odds_bonus_pct=odds_bonus,
            factors={
                'volatility': DifficultyFactor(vol_score, _volatility_label(vol_score)),
                'time_decay': DifficultyFactor(time_score, _time_label(time_score)),
                'forecast_uncertainty': DifficultyFactor(uncertainty, _forecast_label(uncertainty)),
            },
        )
