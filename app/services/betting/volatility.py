"""
NIMBUS - Volatility Model

Odds uplift for city/category pairs whose forecasts have historically been
hard to get right. Lower recent accuracy means a higher multiplier.

    90% accuracy -> 1.00x (baseline or better)
    60% accuracy -> ~1.15x
    40% accuracy -> ~1.25x
     0% accuracy -> 1.40x (max)
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

import numpy as np

from app.core.cache import CachePrefix, TTLCache
from app.core.config import Settings, settings
from app.core.database import DatabaseManager
from app.services.weather.accuracy import AccuracyService, SummaryRow
from app.services.weather.categories import WeatherCategory

logger = logging.getLogger(__name__)

SummaryLoader = Callable[[str, WeatherCategory], Awaitable[List[SummaryRow]]]


@dataclass(frozen=True)
class VolatilityInfo:
    city: str
    category: str
    multiplier: float
    avg_accuracy: float
    total_predictions: int
    has_enough_data: bool
    label: str

    @property
    def bonus_pct(self) -> int:
        return round((self.multiplier - 1) * 100)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'city': self.city,
            'category': self.category,
            'multiplier': round(self.multiplier, 4),
            'bonus_pct': self.bonus_pct,
            'avg_accuracy': round(self.avg_accuracy, 2),
            'total_predictions': self.total_predictions,
            'has_enough_data': self.has_enough_data,
            'label': self.label,
        }


def volatility_label(multiplier: float) -> str:
    if multiplier >= 1.35:
        return 'Very Volatile'
    if multiplier >= 1.25:
        return 'High Volatility'
    if multiplier >= 1.15:
        return 'Moderate Volatility'
    if multiplier >= 1.05:
        return 'Slight Volatility'
    return 'Stable'


def database_summary_loader(
    db: DatabaseManager,
    accuracy_service: Optional[AccuracyService] = None,
    months: Optional[int] = None,
) -> SummaryLoader:
    """Loader reading the most recent monthly summaries from the database"""
    service = accuracy_service or AccuracyService()
    history = months or settings.VOLATILITY_HISTORY_MONTHS

    async def load(city: str, category: WeatherCategory) -> List[SummaryRow]:
        async with db.session() as session:
            return await service.recent_summaries(session, city, category, months=history)

    return load


class VolatilityModel:
    """
    Computes and caches volatility multipliers.

    The cache is owned by the instance (or passed in by the caller);
    entries older than its TTL are recomputed on the next read.
    """

    def __init__(
        self,
        loader: SummaryLoader,
        cache: Optional[TTLCache] = None,
        config: Optional[Settings] = None,
    ):
        self.config = config or settings
        self.loader = loader
        self.cache = cache or TTLCache(ttl_seconds=self.config.VOLATILITY_CACHE_TTL)

    def multiplier_for_accuracy(self, avg_accuracy: float) -> float:
        """1.0 at or above the baseline, rising to 1 + VOLATILITY_MAX_BONUS at 0%"""
        if not self.config.VOLATILITY_ENABLED:
            return 1.0
        baseline = self.config.VOLATILITY_BASE_ACCURACY
        if avg_accuracy >= baseline:
            return 1.0
        deficit = min((baseline - avg_accuracy) / baseline, 1.0)
        return 1.0 + (deficit ** 0.7) * self.config.VOLATILITY_MAX_BONUS

    def weighted_accuracy(self, summaries: Sequence[SummaryRow]) -> float:
        """
        Recency-weighted mean of monthly accuracy.

        summaries are most recent first; the latest month gets
        VOLATILITY_RECENCY_WEIGHT and older months share the remainder.
        """
        if not summaries:
            return 0.0
        recency = self.config.VOLATILITY_RECENCY_WEIGHT
        older = (1 - recency) / max(len(summaries) - 1, 1)
        weights = [recency] + [older] * (len(summaries) - 1)
        values = [s.avg_accuracy or 0.0 for s in summaries]
        return round(float(np.average(values, weights=weights)), 2)

    def neutral(self, city: str, category: str, total_predictions: int = 0) -> VolatilityInfo:
        return VolatilityInfo(
            city=city,
            category=category,
            multiplier=1.0,
            avg_accuracy=self.config.VOLATILITY_BASE_ACCURACY,
            total_predictions=total_predictions,
            has_enough_data=False,
            label='Stable (No Data)',
        )

    def evaluate(self, city: str, category: str, summaries: Sequence[SummaryRow]) -> VolatilityInfo:
        total = sum(s.total_predictions or 0 for s in summaries)
        if not summaries or total < self.config.VOLATILITY_MIN_DATA_POINTS:
            return self.neutral(city, category, total)

        avg_accuracy = self.weighted_accuracy(summaries)
        multiplier = self.multiplier_for_accuracy(avg_accuracy)
        return VolatilityInfo(
            city=city,
            category=category,
            multiplier=multiplier,
            avg_accuracy=avg_accuracy,
            total_predictions=total,
            has_enough_data=True,
            label=volatility_label(multiplier),
        )

    async def get_volatility(self, city: str, category: WeatherCategory) -> VolatilityInfo:
        """Volatility for a city/category; neutral when history is missing or unreadable"""
        key = TTLCache.make_key(CachePrefix.VOLATILITY, city, category.value)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            summaries = await self.loader(city, category)
        except Exception as e:
            logger.warning(f"Volatility history unavailable for {city}/{category.value}: {e}")
            return self.neutral(city, category.value)

        info = self.evaluate(city, category.value, summaries)
        self.cache.set(key, info)
        return info

    async def preload(self, cities: Iterable[str], categories: Iterable[WeatherCategory]) -> None:
        categories = list(categories)
        await asyncio.gather(*(
            self.get_volatility(city, category)
            for city in cities
            for category in categories
        ))

    def clear_cache(self) -> None:
        self.cache.clear()
