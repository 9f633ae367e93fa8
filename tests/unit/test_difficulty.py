"""
Unit tests for the difficulty rating.
"""

import pytest

from app.services.betting.difficulty import DifficultyLevel, DifficultyRater
from app.services.betting.volatility import VolatilityInfo

from tests.factories import make_forecast

pytestmark = pytest.mark.unit


@pytest.fixture
def rater(test_settings):
    return DifficultyRater(test_settings)


def volatile(multiplier: float) -> VolatilityInfo:
    return VolatilityInfo(
        city="London",
        category="snow",
        multiplier=multiplier,
        avg_accuracy=10.0,
        total_predictions=50,
        has_enough_data=True,
        label="Very Volatile",
    )


class TestDifficultyRater:
    """Tests for DifficultyRater."""

    def test_clear_forecast_is_easy(self, rater):
        rating = rater.rate("rain", "no", make_forecast(rain_probability=0), 1)
        assert rating.level == DifficultyLevel.EASY

    def test_coin_flip_rain_is_medium(self, rater):
        rating = rater.rate("rain", "yes", make_forecast(rain_probability=50), 1)
        assert rating.level == DifficultyLevel.MEDIUM
        assert rating.factors["forecast_uncertainty"].score == pytest.approx(0.3 / 7 + 0.7)

    def test_volatile_long_range_snow_is_expert(self, rater):
        rating = rater.rate("snow", "yes", make_forecast(), 7, volatility=volatile(1.4))
        assert rating.level == DifficultyLevel.EXPERT
        assert rating.odds_bonus_pct == 70
        assert "70%" in rating.description

    def test_missing_volatility_data_scores_midway(self, rater):
        assert rater.volatility_score(None) == 0.3

    def test_missing_forecast(self, rater):
        assert rater.forecast_uncertainty("rain", "yes", [], 1) == 0.5

    def test_score_in_unit_interval(self, rater):
        for days in range(1, 10):
            rating = rater.rate("temperature", "20-21", make_forecast(temp_day=35), days, volatile(1.4))
            assert 0.0 <= rating.score <= 1.0

    def test_to_dict(self, rater):
        data = rater.rate("wind", "10-20", make_forecast(), 2).to_dict()
        assert data["level"] in {level.value for level in DifficultyLevel}
        assert set(data["factors"]) == {"volatility", "time_decay", "forecast_uncertainty"}
