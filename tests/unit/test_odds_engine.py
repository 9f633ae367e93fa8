"""
Unit tests for the Odds Engine.
Tests rain and temperature pricing, static tables, clamping, time decay,
parlays and insurance.
"""

import pytest

from app.services.betting.odds_engine import OddsEngine, odds_change_indicator
from app.services.weather.categories import WeatherCategory

from tests.factories import make_forecast

pytestmark = pytest.mark.unit


@pytest.fixture
def engine(test_settings):
    return OddsEngine(test_settings)


class TestRainOdds:
    """Tests for forecast-driven rain pricing."""

    def test_rain_yes_at_30_percent(self, engine):
        """30% chance of rain less a 5% house edge."""
        odds = engine.compute_odds("rain", "yes", make_forecast(rain_probability=30), 1)
        assert odds == pytest.approx(3.1667, abs=1e-4)

    def test_rain_no_at_30_percent(self, engine):
        odds = engine.compute_odds("rain", "no", make_forecast(rain_probability=30), 1)
        assert odds == pytest.approx(1.357, abs=1e-3)

    def test_zero_probability_clamps_to_max(self, engine):
        """A 0% outcome is priced at 1% and then clamped."""
        odds = engine.compute_odds("rain", "yes", make_forecast(rain_probability=0), 1)
        assert odds == 10.0

    def test_certain_outcome_clamps_to_min(self, engine):
        odds = engine.compute_odds("rain", "yes", make_forecast(rain_probability=100), 1)
        assert odds == 1.1

    def test_invalid_binary_value_uses_default(self, engine):
        assert engine.compute_odds("rain", "maybe", make_forecast(), 1) == 2.0

    def test_uses_forecast_day(self, engine):
        forecast = make_forecast(rain_probability=30)
        forecast[2].rain_probability = 50
        odds = engine.compute_odds("rain", "yes", forecast, 3)
        assert odds == pytest.approx(1.9)


class TestTemperatureOdds:
    """Tests for temperature band pricing."""

    def test_band_containing_forecast(self, engine):
        odds = engine.compute_odds("temperature", "20-25", make_forecast(temp_day=22), 1)
        assert odds == pytest.approx(1.4)

    def test_band_near_forecast(self, engine):
        odds = engine.compute_odds("temperature", "20-25", make_forecast(temp_day=27), 1)
        assert odds == pytest.approx(3.5 * 0.7)

    def test_band_far_from_forecast(self, engine):
        odds = engine.compute_odds("temperature", "20-25", make_forecast(temp_day=10), 1)
        assert odds == pytest.approx(3.5 * 1.4)

    def test_very_far_band_is_clamped(self, engine):
        odds = engine.compute_odds("temperature", "20-25", make_forecast(temp_day=40), 1)
        assert odds == pytest.approx(7.0)

    def test_wide_band_is_cheaper(self, engine):
        forecast = make_forecast(temp_day=0)
        narrow = engine.compute_odds("temperature", "20-25", forecast, 1)
        wide = engine.compute_odds("temperature", "10-30", forecast, 1)
        assert wide < narrow

    def test_single_number(self, engine):
        odds = engine.compute_odds("temperature", "22", make_forecast(temp_day=22), 1)
        assert odds == pytest.approx(1.4)

    def test_negative_bounds(self, engine):
        odds = engine.compute_odds("temperature", "-5-0", make_forecast(temp_day=-2), 1)
        assert odds == pytest.approx(1.4)


class TestStaticOdds:
    """Tests for table-priced categories."""

    @pytest.mark.parametrize("category,value,expected", [
        ("wind", "10-20", 2.2),
        ("rainfall", "20-999", 4.0),
        ("snow", "yes", 5.0),
        ("snow", "no", 1.2),
        ("pressure", "1000-1020", 2.0),
        ("cloud_coverage", "75-100", 2.5),
    ])
    def test_table_values(self, engine, category, value, expected):
        assert engine.compute_odds(category, value, make_forecast(), 1) == pytest.approx(expected)

    def test_value_outside_table_uses_default(self, engine):
        assert engine.compute_odds("wind", "5-15", make_forecast(), 1) == 2.0


class TestFallbacks:
    """Pricing never raises."""

    def test_unknown_category(self, engine):
        assert engine.compute_odds("hail", "yes", make_forecast(), 1) == 2.0

    def test_missing_forecast(self, engine):
        assert engine.compute_odds("rain", "yes", [], 1) == 2.0

    def test_days_ahead_past_forecast_uses_last_day(self, engine):
        forecast = make_forecast(days=3)
        forecast[-1].rain_probability = 50
        assert engine.compute_odds("rain", "yes", forecast, 10) == pytest.approx(1.9)

    def test_category_and_global_multipliers(self, test_settings):
        test_settings.CATEGORY_MULTIPLIERS = {"wind": 1.5}
        test_settings.GLOBAL_ODDS_MULTIPLIER = 2.0
        engine = OddsEngine(test_settings)
        assert engine.compute_odds("wind", "0-10", make_forecast(), 1) == pytest.approx(6.0)

    @pytest.mark.parametrize("category", [c.value for c in WeatherCategory])
    def test_always_within_bounds(self, engine, category):
        for value in ("yes", "no", "0-10", "20-25", "garbage"):
            odds = engine.compute_odds(category, value, make_forecast(rain_probability=3), 2)
            assert 1.1 <= odds <= 10.0


class TestTimeDecay:
    """Tests for the early-bird multiplier."""

    def test_same_day_bonus(self, engine):
        assert engine.time_decay_multiplier(1) == pytest.approx(1 + 0.30 / 7)

    def test_linear_to_max(self, engine):
        assert engine.time_decay_multiplier(7) == pytest.approx(1.30)
        assert engine.time_decay_multiplier(14) == pytest.approx(1.30)

    def test_non_positive_days(self, engine):
        assert engine.time_decay_multiplier(0) == 1.0

    def test_disabled(self, test_settings):
        test_settings.TIME_DECAY_ENABLED = False
        assert OddsEngine(test_settings).time_decay_multiplier(5) == 1.0

    def test_bonus_pct(self, engine):
        assert engine.time_decay_bonus_pct(7) == 30


class TestQuote:
    """Tests for full quotes."""

    def test_quote_applies_multipliers(self, engine):
        quote = engine.quote("rain", "yes", make_forecast(rain_probability=30), 1, volatility_multiplier=1.2)
        expected = (100 / 30) * 0.95 * 1.2 * (1 + 0.30 / 7)
        assert quote.final_odds == pytest.approx(expected)
        assert quote.probability == 30.0
        assert quote.volatility_bonus_pct == 20

    def test_quote_is_clamped(self, engine):
        quote = engine.quote("rain", "yes", make_forecast(rain_probability=5), 7, volatility_multiplier=1.4)
        assert quote.final_odds == 10.0

    def test_to_dict(self, engine):
        data = engine.quote("rain", "no", make_forecast(), 1).to_dict()
        assert data["category"] == "rain"
        assert data["prediction_value"] == "no"
        assert "time_decay_bonus_pct" in data


class TestParlayAndInsurance:
    """Tests for combined odds and insurance amounts."""

    def test_parlay_product(self, engine):
        assert engine.parlay_odds([2.0, 3.0]) == pytest.approx(6.0)

    def test_parlay_cap(self, engine):
        assert engine.parlay_odds([10.0, 10.0, 10.0]) == 100.0

    def test_insurance_amounts(self, engine):
        assert engine.insurance_cost(105) == 10
        assert engine.insurance_payout(105) == 84

    def test_change_indicator(self):
        assert odds_change_indicator(2.05, 2.0) == "stable"
        assert odds_change_indicator(2.5, 2.0) == "rising"
        assert odds_change_indicator(1.5, 2.0) == "falling"
