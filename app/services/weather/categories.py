"""
NIMBUS - Weather Categories

The closed set of wager categories and everything that varies per category:
how a live reading is extracted, how it is formatted, how two disagreeing
readings are resolved, and how prediction values are parsed.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

OPEN_UPPER_BOUND = 999.0

ReadingValue = Union[float, bool]


class WeatherCategory(str, Enum):
    """Wager categories"""
    RAIN = "rain"
    TEMPERATURE = "temperature"
    RAINFALL = "rainfall"
    SNOW = "snow"
    WIND = "wind"
    DEW_POINT = "dew_point"
    PRESSURE = "pressure"
    CLOUD_COVERAGE = "cloud_coverage"
    HUMIDITY = "humidity"

    @classmethod
    def parse(cls, value: Any) -> Optional["WeatherCategory"]:
        """Return the category for a raw name, or None when unknown"""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None

    @property
    def profile(self) -> "CategoryProfile":
        return CATEGORY_PROFILES[self]

    @property
    def is_binary(self) -> bool:
        return self.profile.decimals is None

    @property
    def is_verifiable(self) -> bool:
        """True when live providers report a value for this category"""
        return self.profile.reading_field is not None


class ResolutionMethod(str, Enum):
    """How a disputed pair of readings collapses into one final value"""
    AVERAGE = "average"
    CONSERVATIVE_OR = "conservative_or"
    CONSERVATIVE_MAX = "conservative_max"
    PRIMARY_SOURCE = "primary_source"


@dataclass(frozen=True)
class CategoryProfile:
    display_name: str
    unit: str
    reading_field: Optional[str]
    # None marks a yes/no category
    decimals: Optional[int]
    resolution: ResolutionMethod


CATEGORY_PROFILES: Dict[WeatherCategory, CategoryProfile] = {
    WeatherCategory.RAIN: CategoryProfile("Rain", "", "is_raining", None, ResolutionMethod.CONSERVATIVE_OR),
    WeatherCategory.SNOW: CategoryProfile("Snow", "", "is_snowing", None, ResolutionMethod.CONSERVATIVE_OR),
    WeatherCategory.TEMPERATURE: CategoryProfile("Temperature", "°C", "temperature", 1, ResolutionMethod.AVERAGE),
    WeatherCategory.HUMIDITY: CategoryProfile("Humidity", "%", "humidity", 0, ResolutionMethod.AVERAGE),
    WeatherCategory.PRESSURE: CategoryProfile("Pressure", "hPa", "pressure", 0, ResolutionMethod.AVERAGE),
    WeatherCategory.CLOUD_COVERAGE: CategoryProfile("Cloud Coverage", "%", "cloud_coverage", 0, ResolutionMethod.AVERAGE),
    WeatherCategory.WIND: CategoryProfile("Wind", "km/h", "wind_speed", 1, ResolutionMethod.AVERAGE),
    WeatherCategory.RAINFALL: CategoryProfile("Rainfall", "mm", "rain_amount", 1, ResolutionMethod.CONSERVATIVE_MAX),
    WeatherCategory.DEW_POINT: CategoryProfile("Dew Point", "°C", None, 1, ResolutionMethod.PRIMARY_SOURCE),
}

_missing = set(WeatherCategory) - set(CATEGORY_PROFILES)
if _missing:
    raise RuntimeError(f"Categories without a profile: {sorted(c.value for c in _missing)}")


# Categories verified when the caller does not name any
DEFAULT_VERIFICATION_CATEGORIES = tuple(c for c in WeatherCategory if c.is_verifiable)


@dataclass
class WeatherReading:
    """Current conditions normalized across providers (metric, wind in km/h)"""
    source: str
    temperature: float = 0.0
    humidity: float = 0.0
    wind_speed: float = 0.0
    pressure: float = 0.0
    cloud_coverage: float = 0.0
    is_raining: bool = False
    rain_amount: float = 0.0
    is_snowing: bool = False
    condition: str = "Unknown"
    raw_data: Dict[str, Any] = field(default_factory=dict)

    def value_for(self, category: WeatherCategory) -> Optional[ReadingValue]:
        name = category.profile.reading_field
        if name is None:
            return None
        return getattr(self, name)


# =============================================================================
# VALUE FORMATTING
# =============================================================================

def format_value(category: WeatherCategory, value: ReadingValue) -> str:
    """Format a reading the way it is stored and compared"""
    if category.is_binary:
        return "yes" if value else "no"
    return f"{float(value):.{category.profile.decimals}f}"


def format_number(value: float, decimals: int = 1) -> str:
    return f"{value:.{decimals}f}"


# =============================================================================
# PREDICTION VALUES
# =============================================================================

_RANGE_RE = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*-\s*(-?\d+(?:\.\d+)?)\s*$")


def parse_range(value: str) -> Optional[Tuple[float, float]]:
    """Parse "min-max" (negative bounds allowed); 999 marks an open upper bound"""
    match = _RANGE_RE.match(str(value))
    if not match:
        return None
    low, high = float(match.group(1)), float(match.group(2))
    if low > high:
        return None
    return low, high


def parse_number(value: Any) -> Optional[float]:
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def parse_binary(value: Any) -> Optional[bool]:
    text = str(value).strip().lower()
    if text == "yes":
        return True
    if text == "no":
        return False
    return None


def in_range(value: float, bounds: Tuple[float, float]) -> bool:
    low, high = bounds
    if high >= OPEN_UPPER_BOUND:
        return value >= low
    return low <= value <= high


def is_valid_prediction(category: WeatherCategory, prediction: str) -> bool:
    if category.is_binary:
        return parse_binary(prediction) is not None
    return parse_range(prediction) is not None or parse_number(prediction) is not None
