"""
NIMBUS - Odds Engine

Prices a weather prediction from the daily forecast:

- Rain yes/no from the forecast precipitation probability, less house edge
- Temperature bands from band width and the distance between the forecast
  day temperature and the band
- Static tables for the remaining categories

Every path ends in the category and global multipliers and the
[MIN_ODDS, MAX_ODDS] clamp. Pricing never raises; anything it cannot price
gets DEFAULT_ODDS.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

from app.core.config import Settings, settings
from app.services.weather.categories import (
    WeatherCategory,
    in_range,
    parse_binary,
    parse_number,
    parse_range,
)
from app.services.weather.providers import DailyForecast

logger = logging.getLogger(__name__)


# =============================================================================
# STATIC TABLES
# =============================================================================

STATIC_ODDS: Dict[WeatherCategory, Dict[str, float]] = {
    WeatherCategory.RAINFALL: {
        '0-5': 2.0,
        '5-10': 2.5,
        '10-20': 3.0,
        '20-999': 4.0,
    },
    WeatherCategory.WIND: {
        '0-10': 2.0,
        '10-20': 2.2,
        '20-30': 2.5,
        '30-999': 3.5,
    },
    WeatherCategory.DEW_POINT: {
        '0-10': 2.0,
        '10-15': 2.2,
        '15-20': 2.5,
        '20-999': 3.0,
    },
    WeatherCategory.PRESSURE: {
        '980-1000': 2.5,
        '1000-1020': 2.0,
        '1020-1040': 2.5,
    },
    WeatherCategory.CLOUD_COVERAGE: {
        '0-25': 2.5,
        '25-50': 2.2,
        '50-75': 2.2,
        '75-100': 2.5,
    },
    WeatherCategory.SNOW: {
        'yes': 5.0,
        'no': 1.2,
    },
}

# Buckets offered on the odds board: (label, value, base odds)
ODDS_RANGES: Dict[WeatherCategory, List[tuple]] = {
    WeatherCategory.TEMPERATURE: [
        ('20-25°C', '20-25', 2.5),
        ('25-30°C', '25-30', 2.0),
        ('30-35°C', '30-35', 3.0),
    ],
    WeatherCategory.RAINFALL: [
        ('0-5mm', '0-5', 2.0),
        ('5-10mm', '5-10', 2.5),
        ('10-20mm', '10-20', 3.0),
        ('20+mm', '20-999', 4.0),
    ],
    WeatherCategory.WIND: [
        ('0-10 km/h', '0-10', 2.0),
        ('10-20 km/h', '10-20', 2.2),
        ('20-30 km/h', '20-30', 2.5),
        ('30+ km/h', '30-999', 3.5),
    ],
    WeatherCategory.DEW_POINT: [
        ('0-10°C', '0-10', 2.0),
        ('10-15°C', '10-15', 2.2),
        ('15-20°C', '15-20', 2.5),
        ('20+°C', '20-999', 3.0),
    ],
    WeatherCategory.PRESSURE: [
        ('980-1000 hPa', '980-1000', 2.5),
        ('1000-1020 hPa', '1000-1020', 2.0),
        ('1020-1040 hPa', '1020-1040', 2.5),
    ],
    WeatherCategory.CLOUD_COVERAGE: [
        ('0-25%', '0-25', 2.5),
        ('25-50%', '25-50', 2.2),
        ('50-75%', '50-75', 2.2),
        ('75-100%', '75-100', 2.5),
    ],
}


@dataclass
class OddsQuote:
    """Odds for one prediction with every adjustment broken out."""
    category: str
    prediction_value: str
    base_odds: float
    volatility_multiplier: float
    time_decay_multiplier: float
    final_odds: float
    probability: float

    @property
    def volatility_bonus_pct(self) -> int:
        return round((self.volatility_multiplier - 1) * 100)

    @property
    def time_decay_bonus_pct(self) -> int:
        return round((self.time_decay_multiplier - 1) * 100)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'category': self.category,
            'prediction_value': self.prediction_value,
            'base_odds': round(self.base_odds, 4),
            'volatility_multiplier': round(self.volatility_multiplier, 4),
            'volatility_bonus_pct': self.volatility_bonus_pct,
            'time_decay_multiplier': round(self.time_decay_multiplier, 4),
            'time_decay_bonus_pct': self.time_decay_bonus_pct,
            'final_odds': round(self.final_odds, 4),
            'probability': self.probability,
        }


# =============================================================================
# ENGINE
# =============================================================================

class OddsEngine:
    """
    Computes payout multipliers for weather predictions.

    All tunables come from the injected settings object.
    """

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or settings

    # ----- Helpers -----

    def clamp(self, odds: float) -> float:
        if not math.isfinite(odds):
            odds = self.config.DEFAULT_ODDS
        return max(self.config.MIN_ODDS, min(self.config.MAX_ODDS, odds))

    def adjusted(self, base_odds: float, category: Union[WeatherCategory, str]) -> float:
        """Apply category and global multipliers, then clamp"""
        name = category.value if isinstance(category, WeatherCategory) else str(category)
        odds = base_odds * self.config.category_multiplier(name) * self.config.GLOBAL_ODDS_MULTIPLIER
        return self.clamp(odds)

    def default_odds(self, category: Union[WeatherCategory, str, None] = None) -> float:
        return self.clamp(self.config.DEFAULT_ODDS)

    @staticmethod
    def forecast_for_day(forecast: Sequence[DailyForecast], days_ahead: int) -> Optional[DailyForecast]:
        """Forecast entry for days_ahead (1 = today); the last day covers later dates"""
        if not forecast:
            return None
        index = min(days_ahead - 1, len(forecast) - 1)
        if index < 0:
            return None
        return forecast[index]

    # ----- Pricing -----

    def compute_odds(
        self,
        category: Union[WeatherCategory, str],
        prediction_value: str,
        forecast: Sequence[DailyForecast],
        days_ahead: int,
    ) -> float:
        """
        Odds for a prediction, always within [MIN_ODDS, MAX_ODDS].

        Unknown categories, unparseable values and missing forecast days
        all fall back to the default odds.
        """
        parsed = WeatherCategory.parse(category)
        if parsed is None:
            logger.debug(f"Unknown category {category!r}, using default odds")
            return self.default_odds()

        day = self.forecast_for_day(forecast, days_ahead)
        if day is None:
            return self.default_odds()

        try:
            if parsed == WeatherCategory.RAIN:
                base = self._rain_odds(prediction_value, day)
            elif parsed == WeatherCategory.TEMPERATURE:
                base = self._temperature_odds(prediction_value, day)
            else:
                base = self._static_odds(parsed, prediction_value)
        except (TypeError, ValueError) as e:
            logger.warning(f"Could not price {parsed.value}={prediction_value!r}: {e}")
            return self.default_odds()

        if base is None:
            return self.default_odds()
        return self.adjusted(base, parsed)

    def _rain_odds(self, prediction_value: str, day: DailyForecast) -> Optional[float]:
        wants_rain = parse_binary(prediction_value)
        if wants_rain is None:
            return None
        rain_prob = float(day.rain_probability)
        probability = rain_prob if wants_rain else 100 - rain_prob
        probability = max(probability, 1)
        house_edge = 1 - self.config.HOUSE_EDGE_PCT / 100
        return (100 / probability) * house_edge

    @staticmethod
    def _temperature_odds(prediction_value: str, day: DailyForecast) -> Optional[float]:
        bounds = parse_range(prediction_value)
        if bounds is None:
            number = parse_number(prediction_value)
            if number is None:
                return None
            bounds = (number, number)
        low, high = bounds
        forecast_temp = float(day.temp_day)

        distance = 0.0
        if forecast_temp < low:
            distance = low - forecast_temp
        elif forecast_temp > high:
            distance = forecast_temp - high

        width = high - low
        if width <= 5:
            base = 3.5
        elif width <= 10:
            base = 2.2
        elif width <= 15:
            base = 1.8
        else:
            base = 1.5

        if distance == 0:
            return max(1.2, base * 0.4)
        if distance <= 3:
            return base * 0.7
        if distance <= 7:
            return base * 1.0
        if distance <= 12:
            return base * 1.4
        return base * 2.0

    @staticmethod
    def _static_odds(category: WeatherCategory, prediction_value: str) -> Optional[float]:
        table = STATIC_ODDS.get(category)
        if table is None:
            return None
        return table.get(str(prediction_value).strip().lower())

    def probability_percentage(
        self,
        category: Union[WeatherCategory, str],
        prediction_value: str,
        forecast: Sequence[DailyForecast],
        days_ahead: int,
    ) -> float:
        """Rough likelihood for display, 0-100"""
        parsed = WeatherCategory.parse(category)
        day = self.forecast_for_day(forecast, days_ahead)
        if parsed is None or day is None:
            return 50.0

        if parsed == WeatherCategory.RAIN:
            wants_rain = parse_binary(prediction_value)
            if wants_rain is None:
                return 50.0
            return float(day.rain_probability if wants_rain else 100 - day.rain_probability)

        if parsed != WeatherCategory.TEMPERATURE:
            return 50.0

        bounds = parse_range(prediction_value)
        if bounds is None:
            return 50.0
        if in_range(day.temp_day, bounds):
            return 70.0
        low, high = bounds
        distance = low - day.temp_day if day.temp_day < low else day.temp_day - high
        if distance <= 3:
            return 50.0
        if distance <= 7:
            return 30.0
        return 15.0

    # ----- Time decay -----

    def time_decay_multiplier(self, days_ahead: float) -> float:
        """Early-bird uplift: linear up to TIME_DECAY_MAX_BONUS at TIME_DECAY_MAX_DAYS"""
        if not self.config.TIME_DECAY_ENABLED or days_ahead <= 0:
            return 1.0
        max_days = self.config.TIME_DECAY_MAX_DAYS
        return 1.0 + min(days_ahead, max_days) / max_days * self.config.TIME_DECAY_MAX_BONUS

    def time_decay_bonus_pct(self, days_ahead: float) -> int:
        return round((self.time_decay_multiplier(days_ahead) - 1) * 100)

    # ----- Quotes -----

    def quote(
        self,
        category: Union[WeatherCategory, str],
        prediction_value: str,
        forecast: Sequence[DailyForecast],
        days_ahead: int,
        volatility_multiplier: float = 1.0,
    ) -> OddsQuote:
        """Base odds times volatility and time decay, clamped once more"""
        base = self.compute_odds(category, prediction_value, forecast, days_ahead)
        decay = self.time_decay_multiplier(days_ahead)
        return OddsQuote(
            category=str(getattr(category, 'value', category)),
            prediction_value=prediction_value,
            base_odds=base,
            volatility_multiplier=volatility_multiplier,
            time_decay_multiplier=decay,
            final_odds=self.clamp(base * volatility_multiplier * decay),
            probability=self.probability_percentage(category, prediction_value, forecast, days_ahead),
        )

    def parlay_odds(self, leg_odds: Sequence[float]) -> float:
        """Product of leg odds within [MIN_ODDS, MAX_PARLAY_ODDS]"""
        combined = math.prod(leg_odds) if leg_odds else self.config.DEFAULT_ODDS
        if not math.isfinite(combined):
            combined = self.config.MAX_PARLAY_ODDS
        return max(self.config.MIN_ODDS, min(self.config.MAX_PARLAY_ODDS, combined))

    def category_odds_ranges(self, category: Union[WeatherCategory, str]) -> List[Dict[str, Any]]:
        parsed = WeatherCategory.parse(category)
        if parsed is None:
            return []
        return [
            {'label': label, 'value': value, 'base_odds': base, 'odds': self.adjusted(base, parsed)}
            for label, value, base in ODDS_RANGES.get(parsed, [])
        ]

    # ----- Insurance -----

    def insurance_cost(self, stake: int) -> int:
        return math.floor(stake * self.config.INSURANCE_COST_PCT / 100)

    def insurance_payout(self, stake: int) -> int:
        return math.floor(stake * self.config.INSURANCE_PAYOUT_PCT / 100)


def odds_change_indicator(current_odds: float, base_odds: float) -> str:
    """'stable' within 0.1, otherwise 'rising' or 'falling'"""
    diff = current_odds - base_odds
    if abs(diff) < 0.1:
        return 'stable'
    return 'rising' if diff > 0 else 'falling'
