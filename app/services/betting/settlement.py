"""
NIMBUS - Settlement Engine

Cross-checks the primary and secondary weather sources for a city, flags
categories where they disagree beyond a per-category threshold, and picks a
final value for each. The final values feed bet grading.

Resolution strategies for disputed categories:
- average:           temperature, humidity, pressure, cloud coverage, wind
- conservative_or:   rain, snow (either source reporting it counts)
- conservative_max:  rainfall (the higher amount)
- primary_source:    anything else

Every verification is logged with both raw payloads. Administrative
overrides never discard the original value.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, settings
from app.core.exceptions import (
    AuditTrailError,
    InvalidBetError,
    VerificationEntryNotFoundError,
)
from app.models import AdminAction, VerificationLogEntry
from app.services.weather.categories import (
    DEFAULT_VERIFICATION_CATEGORIES,
    ResolutionMethod,
    WeatherCategory,
    WeatherReading,
    format_number,
    format_value,
    parse_number,
)
from app.services.weather.providers import WeatherService

logger = logging.getLogger(__name__)

PRIMARY_SOURCE_NAME = 'openweathermap'
SECONDARY_SOURCE_NAME = 'weatherapi'
UNAVAILABLE = 'unavailable'


class OverrideSource(str, Enum):
    PRIMARY = 'primary'
    SECONDARY = 'secondary'
    MANUAL = 'manual'
    AVERAGE = 'average'


class BulkAction(str, Enum):
    USE_PRIMARY = 'use_primary'
    USE_SECONDARY = 'use_secondary'
    USE_AVERAGE = 'use_average'


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass
class CategoryVerification:
    """Outcome of comparing both sources for one category."""
    category: WeatherCategory
    primary_value: str
    secondary_value: str
    deviation: float
    deviation_percentage: float
    is_disputed: bool
    final_value: str
    confidence_score: int
    resolution_method: Optional[ResolutionMethod] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'category': self.category.value,
            'primary_value': self.primary_value,
            'secondary_value': self.secondary_value,
            'deviation': round(self.deviation, 2),
            'deviation_percentage': round(self.deviation_percentage, 2),
            'is_disputed': self.is_disputed,
            'resolution_method': self.resolution_method.value if self.resolution_method else None,
            'final_value': self.final_value,
            'confidence_score': self.confidence_score,
        }


@dataclass
class VerificationReport:
    """Everything one verification run produced for a city."""
    city: str
    all_sources_available: bool
    results: List[CategoryVerification] = field(default_factory=list)
    verified_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def disputed(self) -> List[CategoryVerification]:
        return [r for r in self.results if r.is_disputed]

    @property
    def average_confidence(self) -> int:
        if not self.results:
            return 0
        return round(sum(r.confidence_score for r in self.results) / len(self.results))

    @property
    def verified_values(self) -> Dict[str, str]:
        return {r.category.value: r.final_value for r in self.results}

    @property
    def summary(self) -> Dict[str, Any]:
        return {
            'total_categories': len(self.results),
            'disputed_count': len(self.disputed),
            'disputed_categories': [r.category.value for r in self.disputed],
            'average_confidence': self.average_confidence,
            'all_sources_available': self.all_sources_available,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'city': self.city,
            'verified_at': self.verified_at.isoformat(),
            'sources': {
                'primary': PRIMARY_SOURCE_NAME,
                'secondary': SECONDARY_SOURCE_NAME if self.all_sources_available else UNAVAILABLE,
            },
            'results': [r.to_dict() for r in self.results],
            'summary': self.summary,
            'verified_values': self.verified_values,
        }


# =============================================================================
# PURE FUNCTIONS
# =============================================================================

def relative_deviation(primary: float, secondary: float) -> float:
    """Absolute difference as a percentage of the mean of both readings"""
    if primary == 0 and secondary == 0:
        return 0.0
    avg = (primary + secondary) / 2
    if avg == 0:
        return abs(primary - secondary) * 100
    return abs(primary - secondary) / abs(avg) * 100


def compute_deviation(category: WeatherCategory, primary: WeatherReading, secondary: WeatherReading) -> float:
    """Absolute difference for numeric categories; 0 or 100 for yes/no"""
    a, b = primary.value_for(category), secondary.value_for(category)
    if category.is_binary:
        return 0.0 if bool(a) == bool(b) else 100.0
    return abs(float(a) - float(b))


def confidence_score(deviation: float, threshold: float) -> int:
    """100 when sources agree, falling by 50 points per threshold of deviation"""
    if threshold <= 0:
        return 100 if deviation == 0 else 0
    return round(max(0.0, 100 - (deviation / threshold) * 50))


def resolve_dispute(
    category: WeatherCategory,
    primary: WeatherReading,
    secondary: WeatherReading,
) -> Tuple[ResolutionMethod, str]:
    """Method and final value for a disputed category; depends only on its inputs"""
    method = category.profile.resolution
    a, b = primary.value_for(category), secondary.value_for(category)

    if method == ResolutionMethod.AVERAGE:
        return method, format_number((float(a) + float(b)) / 2, 1)
    if method == ResolutionMethod.CONSERVATIVE_OR:
        return method, 'yes' if (bool(a) or bool(b)) else 'no'
    if method == ResolutionMethod.CONSERVATIVE_MAX:
        return method, format_number(max(float(a), float(b)), 1)
    if a is None:
        return ResolutionMethod.PRIMARY_SOURCE, 'unknown'
    return ResolutionMethod.PRIMARY_SOURCE, format_value(category, a)


def verify_category(
    category: WeatherCategory,
    primary: WeatherReading,
    secondary: WeatherReading,
    threshold: float,
) -> CategoryVerification:
    primary_value = format_value(category, primary.value_for(category))
    secondary_value = format_value(category, secondary.value_for(category))
    deviation = compute_deviation(category, primary, secondary)
    is_disputed = deviation > threshold

    result = CategoryVerification(
        category=category,
        primary_value=primary_value,
        secondary_value=secondary_value,
        deviation=deviation,
        deviation_percentage=relative_deviation(
            parse_number(primary_value) or 0.0,
            parse_number(secondary_value) or 0.0,
        ),
        is_disputed=is_disputed,
        final_value=primary_value,
        confidence_score=confidence_score(deviation, threshold),
    )
    if is_disputed:
        result.resolution_method, result.final_value = resolve_dispute(category, primary, secondary)
    return result


def bulk_value(action: BulkAction, primary_value: str, secondary_value: Optional[str]) -> str:
    if action == BulkAction.USE_PRIMARY:
        return primary_value
    if action == BulkAction.USE_SECONDARY:
        return secondary_value if secondary_value is not None else primary_value
    a, b = parse_number(primary_value), parse_number(secondary_value)
    if a is None or b is None:
        return primary_value
    return format_number((a + b) / 2, 1)


# =============================================================================
# ENGINE
# =============================================================================

class SettlementEngine:
    """
    Verifies live weather against two sources and manages disputes.

    Methods take the caller's session; nothing here commits.
    """

    def __init__(self, weather: WeatherService, config: Optional[Settings] = None):
        self.weather = weather
        self.config = config or settings

    @staticmethod
    def parse_categories(categories: Optional[Iterable[Any]]) -> List[WeatherCategory]:
        """Requested categories, defaulting to every verifiable one"""
        if not categories:
            return list(DEFAULT_VERIFICATION_CATEGORIES)
        parsed = []
        for raw in categories:
            category = WeatherCategory.parse(raw)
            if category is None:
                raise InvalidBetError(f"Unknown weather category: {raw}")
            if not category.is_verifiable:
                logger.info(f"Skipping {category.value}: no live source reports it")
                continue
            if category not in parsed:
                parsed.append(category)
        return parsed

    async def verify(
        self,
        session: AsyncSession,
        city: str,
        categories: Optional[Iterable[Any]] = None,
    ) -> VerificationReport:
        """
        Fetch both sources, compare each category and log the outcome.

        Raises:
            PrimarySourceUnavailableError: primary source failed
        """
        wanted = self.parse_categories(categories)
        logger.info(f"Verifying weather for {city}...")

        primary, secondary = await self.weather.fetch_pair(city)
        secondary_available = secondary is not None
        effective_secondary = secondary if secondary_available else primary

        report = VerificationReport(city=city, all_sources_available=secondary_available)
        for category in wanted:
            result = verify_category(
                category, primary, effective_secondary, self.config.dispute_threshold(category.value)
            )
            report.results.append(result)
            session.add(VerificationLogEntry(
                city=city,
                category=category.value,
                primary_value=result.primary_value,
                secondary_value=result.secondary_value,
                deviation=result.deviation,
                deviation_percentage=result.deviation_percentage,
                is_disputed=result.is_disputed,
                resolution_method=result.resolution_method.value if result.resolution_method else None,
                final_value=result.final_value,
                confidence_score=result.confidence_score,
                meta={
                    'primary_source': PRIMARY_SOURCE_NAME,
                    'secondary_source': SECONDARY_SOURCE_NAME if secondary_available else UNAVAILABLE,
                    'primary_raw': primary.raw_data,
                    'secondary_raw': secondary.raw_data if secondary_available else None,
                    'confidence_score': result.confidence_score,
                },
            ))

        await session.flush()

        if not secondary_available:
            logger.warning(f"Verification for {city} ran on the primary source only")
        logger.info(
            f"Verification complete for {city}: {len(report.disputed)} disputes, "
            f"{report.average_confidence}% avg confidence"
        )
        return report

    async def list_disputes(self, session: AsyncSession, limit: int = 100) -> List[VerificationLogEntry]:
        """Disputed entries not yet settled by an administrator, newest first"""
        result = await session.execute(
            select(VerificationLogEntry)
            .where(
                VerificationLogEntry.is_disputed.is_(True),
                VerificationLogEntry.resolved_at.is_(None),
            )
            .order_by(VerificationLogEntry.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars())

    async def override(
        self,
        session: AsyncSession,
        entry_id: UUID,
        new_value: str,
        reason: str,
        source: OverrideSource,
        admin_id: str,
    ) -> VerificationLogEntry:
        """
        Replace the final value of a verification entry.

        The previous value, reason and source are kept under
        metadata.admin_override and an AdminAction row is written. Both land
        in one savepoint: if the audit trail cannot be written, the override
        is not applied.

        Raises:
            VerificationEntryNotFoundError: unknown entry
            AuditTrailError: the override or its audit record failed to persist
        """
        entry = await session.get(VerificationLogEntry, entry_id)
        if entry is None:
            raise VerificationEntryNotFoundError(f"Verification entry {entry_id} not found")

        now = datetime.utcnow()
        original_value = entry.final_value
        try:
            async with session.begin_nested():
                entry.final_value = new_value
                entry.resolution_method = f"admin_override_{source.value}"
                entry.resolved_at = now
                entry.meta = {
                    **(entry.meta or {}),
                    'admin_override': {
                        'original_final_value': original_value,
                        'new_value': new_value,
                        'reason': reason,
                        'source': source.value,
                        'timestamp': now.isoformat(),
                    },
                }
                session.add(AdminAction(
                    admin_id=admin_id,
                    action='dispute_override',
                    target_table='weather_verification_log',
                    target_id=str(entry.id),
                    details={
                        'city': entry.city,
                        'category': entry.category,
                        'original_value': original_value,
                        'new_value': new_value,
                        'reason': reason,
                        'source': source.value,
                    },
                ))
                await session.flush()
        except SQLAlchemyError as e:
            logger.error(f"Override of {entry_id} rolled back, audit trail not written: {e}")
            raise AuditTrailError(
                "Override was not applied because its audit record could not be saved",
                {"entry_id": str(entry_id)},
            ) from e

        logger.info(
            f"Admin {admin_id} overrode {entry.category} for {entry.city}: "
            f"{original_value} -> {new_value} ({source.value})"
        )
        return entry

    async def bulk_resolve(self, session: AsyncSession, action: BulkAction, admin_id: str) -> int:
        """Resolve every open dispute with one strategy; returns the count"""
        disputes = await self.list_disputes(session, limit=10_000)
        now = datetime.utcnow()

        try:
            async with session.begin_nested():
                for entry in disputes:
                    entry.final_value = bulk_value(action, entry.primary_value, entry.secondary_value)
                    entry.resolution_method = f"bulk_{action.value}"
                    entry.is_disputed = False
                    entry.resolved_at = now

                session.add(AdminAction(
                    admin_id=admin_id,
                    action='bulk_dispute_resolution',
                    target_table='weather_verification_log',
                    details={'action': action.value, 'count': len(disputes)},
                ))
                await session.flush()
        except SQLAlchemyError as e:
            logger.error(f"Bulk resolution rolled back: {e}")
            raise AuditTrailError("Bulk resolution could not be recorded") from e

        logger.info(f"Admin {admin_id} bulk-resolved {len(disputes)} disputes using {action.value}")
        return len(disputes)
