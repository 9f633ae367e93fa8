"""
Unit tests for the Settlement Engine.
Tests two-source comparison, dispute resolution, degraded mode and
administrative overrides.
"""

from uuid import uuid4

import pytest
from sqlalchemy import select

from app.core.exceptions import (
    InvalidBetError,
    PrimarySourceUnavailableError,
    VerificationEntryNotFoundError,
)
from app.models import AdminAction, VerificationLogEntry
from app.services.betting.settlement import (
    BulkAction,
    OverrideSource,
    SettlementEngine,
    bulk_value,
    confidence_score,
    relative_deviation,
    resolve_dispute,
    verify_category,
)
from app.services.weather.categories import ResolutionMethod, WeatherCategory

from tests.factories import FakeWeatherService, reading

pytestmark = pytest.mark.unit


class TestVerifyCategory:
    """Tests for comparing one category across sources."""

    def test_temperature_dispute_is_averaged(self):
        result = verify_category(
            WeatherCategory.TEMPERATURE,
            reading("openweathermap", temperature=20.0),
            reading("weatherapi", temperature=25.0),
            threshold=3,
        )
        assert result.is_disputed
        assert result.resolution_method == ResolutionMethod.AVERAGE
        assert result.final_value == "22.5"
        assert result.confidence_score == 17

    def test_rain_disagreement_counts_as_rain(self):
        result = verify_category(
            WeatherCategory.RAIN,
            reading("openweathermap", is_raining=True),
            reading("weatherapi", is_raining=False),
            threshold=0,
        )
        assert result.is_disputed
        assert result.resolution_method == ResolutionMethod.CONSERVATIVE_OR
        assert result.final_value == "yes"
        assert result.confidence_score == 0

    def test_deviation_at_threshold_is_not_disputed(self):
        result = verify_category(
            WeatherCategory.TEMPERATURE,
            reading("openweathermap", temperature=20.0),
            reading("weatherapi", temperature=23.0),
            threshold=3,
        )
        assert not result.is_disputed
        assert result.final_value == "20.0"
        assert result.confidence_score == 50
        assert result.resolution_method is None

    def test_rainfall_takes_higher_amount(self):
        method, value = resolve_dispute(
            WeatherCategory.RAINFALL,
            reading("openweathermap", rain_amount=2.0),
            reading("weatherapi", rain_amount=9.0),
        )
        assert method == ResolutionMethod.CONSERVATIVE_MAX
        assert value == "9.0"

    def test_agreement(self):
        result = verify_category(
            WeatherCategory.HUMIDITY,
            reading("openweathermap", humidity=60),
            reading("weatherapi", humidity=60),
            threshold=15,
        )
        assert result.confidence_score == 100
        assert result.deviation_percentage == 0.0


class TestPureHelpers:
    """Tests for scoring and bulk helpers."""

    def test_confidence_score(self):
        assert confidence_score(0, 3) == 100
        assert confidence_score(3, 3) == 50
        assert confidence_score(9, 3) == 0
        assert confidence_score(0, 0) == 100
        assert confidence_score(100, 0) == 0

    def test_relative_deviation(self):
        assert relative_deviation(0, 0) == 0.0
        assert relative_deviation(20, 30) == pytest.approx(40.0)

    def test_bulk_value(self):
        assert bulk_value(BulkAction.USE_PRIMARY, "20.0", "25.0") == "20.0"
        assert bulk_value(BulkAction.USE_SECONDARY, "20.0", "25.0") == "25.0"
        assert bulk_value(BulkAction.USE_AVERAGE, "20.0", "25.0") == "22.5"
        assert bulk_value(BulkAction.USE_AVERAGE, "yes", "no") == "yes"
        assert bulk_value(BulkAction.USE_SECONDARY, "20.0", None) == "20.0"


@pytest.mark.asyncio
class TestSettlementEngine:
    """Tests for SettlementEngine against the database."""

    @pytest.fixture
    def weather(self):
        return FakeWeatherService(readings={
            "London": (
                reading("openweathermap", temperature=20.0, is_raining=True),
                reading("weatherapi", temperature=25.0, is_raining=False),
            ),
            "Paris": (reading("openweathermap", temperature=18.0), None),
        })

    @pytest.fixture
    def engine(self, weather, test_settings):
        return SettlementEngine(weather, test_settings)

    async def test_verify_logs_every_category(self, session, engine):
        report = await engine.verify(session, "London", ["temperature", "rain", "humidity"])

        assert report.all_sources_available
        assert report.verified_values == {"temperature": "22.5", "rain": "yes", "humidity": "60"}
        assert report.summary["disputed_categories"] == ["temperature", "rain"]

        rows = (await session.execute(select(VerificationLogEntry))).scalars().all()
        assert len(rows) == 3
        temperature = next(r for r in rows if r.category == "temperature")
        assert temperature.meta["primary_raw"] == {"source": "openweathermap"}
        assert temperature.meta["secondary_raw"] == {"source": "weatherapi"}

    async def test_default_categories_skip_dew_point(self, session, engine):
        report = await engine.verify(session, "London")
        categories = {r.category for r in report.results}
        assert WeatherCategory.DEW_POINT not in categories
        assert WeatherCategory.TEMPERATURE in categories

    async def test_unknown_category(self, session, engine):
        with pytest.raises(InvalidBetError):
            await engine.verify(session, "London", ["hail"])

    async def test_secondary_down_uses_primary_only(self, session, engine):
        report = await engine.verify(session, "Paris", ["temperature"])

        assert report.all_sources_available is False
        assert report.verified_values == {"temperature": "18.0"}
        assert report.disputed == []
        assert report.to_dict()["sources"]["secondary"] == "unavailable"

        row = (await session.execute(select(VerificationLogEntry))).scalar_one()
        assert row.meta["secondary_source"] == "unavailable"
        assert row.meta["secondary_raw"] is None

    async def test_primary_down_raises(self, session, engine, weather):
        weather.failing_primary.add("London")
        with pytest.raises(PrimarySourceUnavailableError):
            await engine.verify(session, "London", ["temperature"])

        rows = (await session.execute(select(VerificationLogEntry))).scalars().all()
        assert rows == []

    async def test_list_disputes(self, session, engine):
        await engine.verify(session, "London", ["temperature", "humidity"])
        disputes = await engine.list_disputes(session)
        assert [d.category for d in disputes] == ["temperature"]

    async def test_override_keeps_original_and_audits(self, session, engine):
        await engine.verify(session, "London", ["temperature"])
        entry = (await engine.list_disputes(session))[0]

        updated = await engine.override(
            session, entry.id, "21.0", "station reading", OverrideSource.MANUAL, "admin-1"
        )

        assert updated.final_value == "21.0"
        assert updated.resolution_method == "admin_override_manual"
        override = updated.meta["admin_override"]
        assert override["original_final_value"] == "22.5"
        assert override["reason"] == "station reading"
        assert updated.meta["primary_raw"] == {"source": "openweathermap"}

        action = (await session.execute(select(AdminAction))).scalar_one()
        assert action.admin_id == "admin-1"
        assert action.target_id == str(entry.id)
        assert action.details["original_value"] == "22.5"

        assert await engine.list_disputes(session) == []

    async def test_override_unknown_entry(self, session, engine):
        with pytest.raises(VerificationEntryNotFoundError):
            await engine.override(session, uuid4(), "1", "x", OverrideSource.MANUAL, "admin-1")

    async def test_bulk_resolve(self, session, engine):
        await engine.verify(session, "London", ["temperature", "rain"])

        resolved = await engine.bulk_resolve(session, BulkAction.USE_SECONDARY, "admin-2")

        assert resolved == 2
        rows = (await session.execute(select(VerificationLogEntry))).scalars().all()
        by_category = {r.category: r for r in rows}
        assert by_category["temperature"].final_value == "25.0"
        assert by_category["rain"].final_value == "no"
        assert all(not r.is_disputed for r in rows)
        assert all(r.resolution_method == "bulk_use_secondary" for r in rows)

        action = (await session.execute(select(AdminAction))).scalar_one()
        assert action.details == {"action": "use_secondary", "count": 2}
