"""
Unit tests for cash-out valuation and execution.
"""

from datetime import datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select, update

from app.core.exceptions import (
    BetNotFoundError,
    BetNotPendingError,
    CashOutUnavailableError,
    InvalidCashOutError,
)
from app.models import Bet, BetResult, FinancialTransaction, Parlay, ReferenceType, TransactionType
from app.services.betting.cashout import CashOutValuationModel, time_factor, weather_bonus
from app.services.betting.placement import PredictionRequest
from app.services.weather.categories import WeatherCategory

from tests.factories import reading

pytestmark = pytest.mark.unit

NOW = datetime(2026, 6, 1, 12, 0, 0)


@pytest.fixture
def model(test_settings):
    return CashOutValuationModel(test_settings)


class TestValuationHelpers:
    """Tests for the time and weather components."""

    def test_time_factor(self):
        created = NOW - timedelta(hours=6)
        assert time_factor(created, NOW + timedelta(hours=18), NOW) == pytest.approx(0.25)
        assert time_factor(created, NOW - timedelta(hours=1), NOW) == 1.0
        assert time_factor(NOW - timedelta(minutes=30), None, NOW) == pytest.approx(0.5)

    def test_weather_bonus_binary(self):
        raining = reading(is_raining=True)
        assert weather_bonus(WeatherCategory.RAIN, "yes", raining) == 1.0
        assert weather_bonus(WeatherCategory.RAIN, "no", raining) == 0.0

    def test_weather_bonus_ranges(self):
        current = reading(temperature=22.0)
        assert weather_bonus(WeatherCategory.TEMPERATURE, "20-25", current) == 1.0
        assert weather_bonus(WeatherCategory.TEMPERATURE, "23-28", current) == 0.5
        assert weather_bonus(WeatherCategory.TEMPERATURE, "35-40", current) == 0.0
        assert weather_bonus(WeatherCategory.TEMPERATURE, "24", current) == 0.5

    def test_weather_bonus_without_reading(self):
        assert weather_bonus(WeatherCategory.RAIN, "yes", None) == 0.0
        assert weather_bonus(WeatherCategory.DEW_POINT, "10-15", reading()) == 0.0


class TestCashOutValuationModel:
    """Tests for offer amounts."""

    def value(self, model, now, reading_=None, **kwargs):
        return model.value(
            stake=100,
            odds=2.0,
            created_at=NOW - timedelta(hours=2),
            expires_at=NOW + timedelta(hours=22),
            reading=reading_,
            category=WeatherCategory.RAIN,
            prediction_value="yes",
            now=now,
            **kwargs,
        )

    def test_early_offer(self, model):
        valuation = self.value(model, NOW - timedelta(hours=2))
        assert valuation.potential_win == 200
        assert valuation.percentage == 40
        assert valuation.amount == 40

    def test_grows_with_time(self, model):
        amounts = [self.value(model, NOW + timedelta(hours=h)).amount for h in range(0, 22, 3)]
        assert amounts == sorted(amounts)
        assert amounts[-1] > amounts[0]

    def test_favourable_weather_raises_offer(self, model):
        plain = self.value(model, NOW)
        favoured = self.value(model, NOW, reading(is_raining=True))
        assert favoured.amount > plain.amount
        assert favoured.weather_bonus == 20

    def test_capped_by_penalty(self, model):
        valuation = self.value(model, NOW + timedelta(hours=22), reading(is_raining=True))
        assert valuation.percentage == 85
        assert valuation.amount == 85
        assert valuation.amount < valuation.potential_win

    def test_penalty_override(self, model):
        valuation = self.value(model, NOW + timedelta(hours=22), reading(is_raining=True), penalty_pct=30)
        assert valuation.percentage == 70
        assert valuation.amount == 70

    @pytest.mark.parametrize("odds", [1.2, 2.0, 3.3, 10.0])
    def test_offer_stays_below_stake_at_any_odds(self, model, odds):
        valuation = model.value(
            stake=100,
            odds=odds,
            created_at=NOW - timedelta(hours=24),
            expires_at=NOW,
            reading=reading(is_raining=True),
            category=WeatherCategory.RAIN,
            prediction_value="yes",
            now=NOW,
        )
        assert valuation.amount == 85
        assert valuation.potential_win == int(100 * odds)

    def test_parlay_cap(self, model):
        valuation = model.value_parlay(
            100, 10.0, NOW - timedelta(hours=24), NOW, [1.0, 1.0], now=NOW
        )
        assert valuation.percentage == 80
        assert valuation.amount == 80

    def test_parlay_weakest_leg(self, model):
        valuation = model.value_parlay(
            100, 4.0, NOW, NOW + timedelta(hours=24), [1.0, 0.0], now=NOW
        )
        assert valuation.weather_bonus == 0
        assert valuation.percentage == 30
        assert valuation.amount == 30

    def test_window(self, model):
        assert model.can_cash_out(NOW + timedelta(hours=2), NOW)
        assert not model.can_cash_out(NOW + timedelta(minutes=30), NOW)
        assert model.can_cash_out(None, NOW)

    def test_disabled(self, test_settings):
        test_settings.CASHOUT_ENABLED = False
        assert not CashOutValuationModel(test_settings).can_cash_out(None, NOW)


@pytest.mark.asyncio
class TestCashOutService:
    """Tests for executing cash-outs."""

    async def _bet(self, session, make_user, make_bet, **kwargs):
        user = await make_user(session, points=0)
        now = datetime.utcnow()
        bet = await make_bet(
            session, user, stake=100, odds=2.0,
            created_at=now - timedelta(hours=2),
            expires_at=kwargs.pop("expires_at", now + timedelta(hours=22)),
            **kwargs,
        )
        return user, bet

    async def test_full_cash_out(self, session, make_user, make_bet, services):
        user, bet = await self._bet(session, make_user, make_bet)

        result = await services['cashout'].cash_out(session, bet.id, user.id)

        assert result.amount > 0
        assert result.amount <= 85
        await session.refresh(bet)
        await session.refresh(user)
        assert bet.result == BetResult.CASHED_OUT
        assert bet.cashout_amount == result.amount
        assert user.points == result.amount

    async def test_already_settled(self, session, make_user, make_bet, services):
        user, bet = await self._bet(session, make_user, make_bet, result=BetResult.WIN)
        with pytest.raises(BetNotPendingError):
            await services['cashout'].cash_out(session, bet.id, user.id)

    async def test_settled_concurrently(self, session, make_user, make_bet, services):
        user, bet = await self._bet(session, make_user, make_bet)
        await session.execute(
            update(Bet)
            .where(Bet.id == bet.id)
            .values(result=BetResult.LOSS)
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(BetNotPendingError):
            await services['cashout'].cash_out(session, bet.id, user.id)

        await session.refresh(user)
        assert user.points == 0

    async def test_closed_near_expiry(self, session, make_user, make_bet, services):
        user, bet = await self._bet(
            session, make_user, make_bet, expires_at=datetime.utcnow() + timedelta(minutes=30)
        )
        with pytest.raises(CashOutUnavailableError):
            await services['cashout'].cash_out(session, bet.id, user.id)

    async def test_other_users_bet(self, session, make_user, make_bet, services):
        _, bet = await self._bet(session, make_user, make_bet)
        with pytest.raises(BetNotFoundError):
            await services['cashout'].cash_out(session, bet.id, uuid4())

    async def test_parlay_leg_rejected(self, session, make_user, make_bet, services):
        user = await make_user(session)
        parlay = Parlay(id=uuid4(), user_id=user.id, total_stake=100, combined_odds=4.0)
        session.add(parlay)
        await session.flush()
        leg = await make_bet(session, user, stake=0, parlay_id=parlay.id)

        with pytest.raises(InvalidCashOutError):
            await services['cashout'].quote(session, leg.id, user.id)

    async def test_partial_cash_out(self, session, make_user, make_bet, services):
        user, bet = await self._bet(session, make_user, make_bet)

        result = await services['cashout'].partial_cash_out(session, bet.id, 40, user.id)

        assert result.is_partial
        assert result.remaining_stake == 60
        await session.refresh(bet)
        await session.refresh(user)
        assert bet.stake == 60
        assert bet.result == BetResult.PENDING
        assert bet.partial_cashout_total == result.amount
        assert user.points == result.amount
        assert 0 < result.amount < 40

    @pytest.mark.parametrize("percentage", [0, 100, 150, -5])
    async def test_partial_percentage_bounds(self, session, make_user, make_bet, services, percentage):
        user, bet = await self._bet(session, make_user, make_bet)
        with pytest.raises(InvalidCashOutError):
            await services['cashout'].partial_cash_out(session, bet.id, percentage, user.id)

    async def test_partial_share_worth_nothing_rejected(self, session, make_user, make_bet, services):
        user = await make_user(session, points=0)
        bet = await make_bet(session, user, stake=2, expires_at=datetime.utcnow() + timedelta(hours=22))

        with pytest.raises(InvalidCashOutError):
            await services['cashout'].partial_cash_out(session, bet.id, 50, user.id)

        await session.refresh(bet)
        assert bet.stake == 2

    async def test_parlay_cash_out_settles_legs(self, session, make_user, make_bet, services):
        user = await make_user(session, points=0)
        now = datetime.utcnow()
        parlay = Parlay(
            id=uuid4(), user_id=user.id, total_stake=100, combined_odds=4.0,
            created_at=now - timedelta(hours=2), expires_at=now + timedelta(hours=22),
        )
        session.add(parlay)
        await session.flush()
        leg = await make_bet(session, user, stake=0, parlay_id=parlay.id)

        result = await services['cashout'].cash_out_parlay(session, parlay.id, user.id)

        assert result.amount > 0
        await session.refresh(parlay)
        await session.refresh(leg)
        assert parlay.result == BetResult.CASHED_OUT
        assert leg.result == BetResult.CASHED_OUT

    async def test_immediate_cash_out_never_profits(self, session, make_user, services):
        user = await make_user(session, points=1000)
        placed = await services['placement'].place_bet(
            session, user.id, PredictionRequest("London", "rain", "yes"), 100
        )
        assert placed.bet.odds > 2.5

        result = await services['cashout'].cash_out(session, placed.bet.id, user.id)

        assert result.amount < 100
        assert result.valuation.potential_win > 250
        await session.refresh(user)
        assert user.points < 1000

    async def test_high_odds_cash_out_bounded_by_stake(self, session, make_user, make_bet, services):
        user = await make_user(session, points=0)
        now = datetime.utcnow()
        bet = await make_bet(
            session, user, stake=100, odds=9.5,
            created_at=now - timedelta(hours=20), expires_at=now + timedelta(hours=4),
        )

        result = await services['cashout'].cash_out(session, bet.id, user.id)

        assert result.amount <= 85
        await session.refresh(user)
        assert user.points == result.amount


@pytest.mark.asyncio
class TestParlayPartialCashOut:
    """Tests for cashing out part of a parlay or combined bet."""

    async def _parlay(self, session, make_user, make_bet, total_stake=100):
        user = await make_user(session, points=0)
        now = datetime.utcnow()
        parlay = Parlay(
            id=uuid4(), user_id=user.id, total_stake=total_stake, combined_odds=6.0,
            created_at=now - timedelta(hours=2), expires_at=now + timedelta(hours=22),
        )
        session.add(parlay)
        await session.flush()
        legs = [
            await make_bet(session, user, stake=0, parlay_id=parlay.id),
            await make_bet(session, user, category="temperature", prediction_value="18-24", stake=0, parlay_id=parlay.id),
        ]
        return user, parlay, legs

    async def test_reduces_stake_and_keeps_legs_riding(self, session, make_user, make_bet, services):
        user, parlay, legs = await self._parlay(session, make_user, make_bet)

        result = await services['cashout'].partial_cash_out_parlay(session, parlay.id, 40, user.id)

        assert result.is_partial
        assert result.remaining_stake == 60
        assert 0 < result.amount < 40
        await session.refresh(parlay)
        await session.refresh(user)
        assert parlay.total_stake == 60
        assert parlay.result == BetResult.PENDING
        assert parlay.partial_cashout_total == result.amount
        assert user.points == result.amount
        for leg in legs:
            await session.refresh(leg)
            assert leg.result == BetResult.PENDING

    async def test_ledger_entry_references_parlay(self, session, make_user, make_bet, services):
        user, parlay, _ = await self._parlay(session, make_user, make_bet)

        result = await services['cashout'].partial_cash_out_parlay(session, parlay.id, 25, user.id)

        rows = await session.execute(
            select(FinancialTransaction).where(FinancialTransaction.user_id == user.id)
        )
        entry = rows.scalars().one()
        assert entry.transaction_type == TransactionType.PARTIAL_CASHOUT
        assert entry.reference_type == ReferenceType.PARLAY
        assert entry.reference_id == parlay.id
        assert entry.amount == result.amount

    async def test_twice_in_a_row(self, session, make_user, make_bet, services):
        user, parlay, _ = await self._parlay(session, make_user, make_bet)

        first = await services['cashout'].partial_cash_out_parlay(session, parlay.id, 50, user.id)
        await session.refresh(parlay)
        second = await services['cashout'].partial_cash_out_parlay(session, parlay.id, 50, user.id)

        assert first.remaining_stake == 50
        assert second.remaining_stake == 25
        await session.refresh(parlay)
        assert parlay.partial_cashout_total == first.amount + second.amount

    async def test_stake_changed_concurrently(self, session, make_user, make_bet, services):
        user, parlay, _ = await self._parlay(session, make_user, make_bet)
        await session.execute(
            update(Parlay)
            .where(Parlay.id == parlay.id)
            .values(total_stake=50)
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(BetNotPendingError):
            await services['cashout'].partial_cash_out_parlay(session, parlay.id, 40, user.id)

        await session.refresh(user)
        assert user.points == 0

    async def test_settled_parlay_rejected(self, session, make_user, make_bet, services):
        user, parlay, _ = await self._parlay(session, make_user, make_bet)
        parlay.result = BetResult.LOSS
        await session.flush()

        with pytest.raises(BetNotPendingError):
            await services['cashout'].partial_cash_out_parlay(session, parlay.id, 40, user.id)

    @pytest.mark.parametrize("percentage", [0, 100, 120])
    async def test_percentage_bounds(self, session, make_user, make_bet, services, percentage):
        user, parlay, _ = await self._parlay(session, make_user, make_bet)
        with pytest.raises(InvalidCashOutError):
            await services['cashout'].partial_cash_out_parlay(session, parlay.id, percentage, user.id)

    async def test_stake_too_small_to_split(self, session, make_user, make_bet, services):
        user, parlay, _ = await self._parlay(session, make_user, make_bet, total_stake=1)
        with pytest.raises(InvalidCashOutError):
            await services['cashout'].partial_cash_out_parlay(session, parlay.id, 50, user.id)

    async def test_other_users_parlay(self, session, make_user, make_bet, services):
        _, parlay, _ = await self._parlay(session, make_user, make_bet)
        with pytest.raises(BetNotFoundError):
            await services['cashout'].partial_cash_out_parlay(session, parlay.id, 40, uuid4())
