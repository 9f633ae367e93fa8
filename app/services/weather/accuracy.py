"""
NIMBUS - Forecast Accuracy

Scores settled predictions against the verified weather and rolls the log
up into the monthly summaries the volatility model reads.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import AccuracyLogEntry, AccuracySummary
from app.services.weather.categories import (
    WeatherCategory,
    in_range,
    parse_binary,
    parse_number,
    parse_range,
)

logger = logging.getLogger(__name__)

# Points lost per unit outside the predicted range
DISTANCE_PENALTY: Dict[WeatherCategory, float] = {
    WeatherCategory.TEMPERATURE: 10.0,
    WeatherCategory.RAINFALL: 5.0,
    WeatherCategory.WIND: 3.0,
}


def score_accuracy(category: WeatherCategory, predicted: str, actual: str) -> Optional[float]:
    """
    Accuracy of one prediction, 0-100.

    Yes/no categories score 100 or 0. Range categories score 100 inside the
    range and lose DISTANCE_PENALTY points per unit outside it. Returns None
    for categories that are not scored or values that do not parse.
    """
    if category.is_binary:
        p, a = parse_binary(predicted), parse_binary(actual)
        if p is None or a is None:
            return None
        return 100.0 if p == a else 0.0

    penalty = DISTANCE_PENALTY.get(category)
    actual_num = parse_number(actual)
    if penalty is None or actual_num is None:
        return None

    bounds = parse_range(predicted)
    if bounds is None:
        number = parse_number(predicted)
        if number is None:
            return None
        bounds = (number, number)

    if in_range(actual_num, bounds):
        return 100.0
    low, high = bounds
    distance = low - actual_num if actual_num < low else actual_num - high
    return max(0.0, 100.0 - distance * penalty)


@dataclass
class SummaryRow:
    """Plain view of a monthly summary"""
    month: date
    avg_accuracy: float
    total_predictions: int
    min_accuracy: Optional[float] = None
    max_accuracy: Optional[float] = None


class AccuracyService:
    """Writes the accuracy log and maintains monthly summaries"""

    async def record(
        self,
        session: AsyncSession,
        city: str,
        category: WeatherCategory,
        target_date: date,
        predicted_value: str,
        actual_value: str,
    ) -> Optional[AccuracyLogEntry]:
        score = score_accuracy(category, predicted_value, actual_value)
        if score is None:
            return None

        entry = AccuracyLogEntry(
            city=city,
            category=category.value,
            target_date=target_date,
            predicted_value=predicted_value,
            actual_value=actual_value,
            accuracy_score=score,
        )
        session.add(entry)
        logger.debug(f"Accuracy {city}/{category.value}: {score:.0f}")
        return entry

    async def rebuild_summaries(
        self,
        session: AsyncSession,
        city: Optional[str] = None,
        category: Optional[WeatherCategory] = None,
    ) -> int:
        """Recompute monthly summaries from the log; returns rows written"""
        query = select(AccuracyLogEntry)
        if city:
            query = query.where(AccuracyLogEntry.city == city)
        if category:
            query = query.where(AccuracyLogEntry.category == category.value)

        result = await session.execute(query)
        buckets: Dict[Tuple[str, str, date], List[float]] = defaultdict(list)
        for entry in result.scalars():
            month = entry.target_date.replace(day=1)
            buckets[(entry.city, entry.category, month)].append(entry.accuracy_score)

        for (b_city, b_category, month), scores in buckets.items():
            existing = await session.execute(
                select(AccuracySummary).where(
                    AccuracySummary.city == b_city,
                    AccuracySummary.category == b_category,
                    AccuracySummary.month == month,
                )
            )
            summary = existing.scalar_one_or_none()
            if summary is None:
                summary = AccuracySummary(city=b_city, category=b_category, month=month)
                session.add(summary)
            summary.avg_accuracy = sum(scores) / len(scores)
            summary.total_predictions = len(scores)
            summary.min_accuracy = min(scores)
            summary.max_accuracy = max(scores)

        await session.flush()
        logger.info(f"Rebuilt {len(buckets)} accuracy summaries")
        return len(buckets)

    async def recent_summaries(
        self,
        session: AsyncSession,
        city: str,
        category: WeatherCategory,
        months: int = 6,
    ) -> List[SummaryRow]:
        """Most recent monthly summaries first"""
        result = await session.execute(
            select(AccuracySummary)
            .where(AccuracySummary.city == city, AccuracySummary.category == category.value)
            .order_by(AccuracySummary.month.desc())
            .limit(months)
        )
        return [
            SummaryRow(
                month=s.month,
                avg_accuracy=s.avg_accuracy,
                total_predictions=s.total_predictions,
                min_accuracy=s.min_accuracy,
                max_accuracy=s.max_accuracy,
            )
            for s in result.scalars()
        ]
