"""
NIMBUS - Weather Services
Category definitions, provider clients and forecast accuracy.
"""

from .categories import (
    WeatherCategory,
    ResolutionMethod,
    CategoryProfile,
    WeatherReading,
    DEFAULT_VERIFICATION_CATEGORIES,
    format_value,
    parse_range,
    parse_number,
    parse_binary,
    in_range,
    is_valid_prediction,
)
from .providers import (
    DailyForecast,
    WeatherProvider,
    OpenWeatherMapProvider,
    WeatherAPIProvider,
    WeatherService,
)
from .accuracy import (
    AccuracyService,
    SummaryRow,
    score_accuracy,
)

__all__ = [
    'WeatherCategory',
    'ResolutionMethod',
    'CategoryProfile',
    'WeatherReading',
    'DEFAULT_VERIFICATION_CATEGORIES',
    'format_value',
    'parse_range',
    'parse_number',
    'parse_binary',
    'in_range',
    'is_valid_prediction',
    'DailyForecast',
    'WeatherProvider',
    'OpenWeatherMapProvider',
    'WeatherAPIProvider',
    'WeatherService',
    'AccuracyService',
    'SummaryRow',
    'score_accuracy',
]
