"""
Unit tests for the auto cash-out poller.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from app.models import AutoCashoutRule, AutoCashoutRuleType, Bet, BetResult
from app.services.betting.cashout import CashOutValuation
from app.services.betting.cashout_poller import CashOutPoller, Trend, rule_triggered, trend_between

pytestmark = pytest.mark.unit


def valuation(amount=100, percentage=50, weather=10, time=5) -> CashOutValuation:
    return CashOutValuation(
        amount=amount,
        percentage=percentage,
        time_bonus=time,
        weather_bonus=weather,
        potential_win=200,
        reasoning="",
    )


class BlockingDatabase:
    """Holds every cycle at session() until released, then fails it."""

    def __init__(self):
        self.release = asyncio.Event()

    @asynccontextmanager
    async def session(self):
        await self.release.wait()
        raise RuntimeError("database unavailable")
        yield


class TestRules:
    """Tests for rule thresholds."""

    @pytest.mark.parametrize("rule_type,threshold,expected", [
        (AutoCashoutRuleType.PERCENTAGE_ABOVE, 50, True),
        (AutoCashoutRuleType.PERCENTAGE_ABOVE, 51, False),
        (AutoCashoutRuleType.PERCENTAGE_BELOW, 50, True),
        (AutoCashoutRuleType.WEATHER_BONUS_ABOVE, 15, False),
        (AutoCashoutRuleType.WEATHER_BONUS_BELOW, 15, True),
        (AutoCashoutRuleType.TIME_BONUS_ABOVE, 5, True),
        (AutoCashoutRuleType.AMOUNT_ABOVE, 100, True),
        (AutoCashoutRuleType.AMOUNT_ABOVE, 101, False),
    ])
    def test_rule_triggered(self, rule_type, threshold, expected):
        assert rule_triggered(rule_type, threshold, valuation()) is expected

    def test_trend(self):
        assert trend_between(None, 10) == Trend.STABLE
        assert trend_between(10, 12) == Trend.UP
        assert trend_between(12, 10) == Trend.DOWN


@pytest.mark.asyncio
class TestScheduling:
    """Tests for cycle overlap handling."""

    async def test_tick_skips_while_cycle_running(self, services):
        database = BlockingDatabase()
        poller = CashOutPoller(database, services['cashout'], interval=0.01)

        assert poller.tick() is True
        await asyncio.sleep(0)
        assert poller.tick() is False
        assert poller.cycles_skipped == 1

        database.release.set()
        await poller._cycle_task
        assert poller.cycles_run == 1
        assert poller.tick() is True
        await poller.stop()

    async def test_start_and_stop(self, services):
        database = BlockingDatabase()
        database.release.set()
        poller = CashOutPoller(database, services['cashout'], interval=0.01)

        await poller.start()
        assert poller.is_running
        await asyncio.sleep(0.05)
        await poller.stop()

        assert not poller.is_running
        assert poller.cycles_run >= 1


@pytest.mark.asyncio
class TestRunCycle:
    """Tests for valuation cycles against the database."""

    async def _seed(self, db, make_user, make_bet, expires_in=timedelta(hours=22), rule=None):
        now = datetime.utcnow()
        async with db.session() as session:
            user = await make_user(session, points=0)
            bet = await make_bet(
                session, user, stake=100, odds=2.0,
                created_at=now - timedelta(hours=2), expires_at=now + expires_in,
            )
            if rule is not None:
                rule_type, threshold = rule
                session.add(AutoCashoutRule(
                    user_id=user.id, bet_id=bet.id, rule_type=rule_type, threshold=threshold
                ))
        return user.id, bet.id

    async def test_values_pending_bets(self, db, make_user, make_bet, services):
        _, bet_id = await self._seed(db, make_user, make_bet)
        poller = services['poller']

        stats = await poller.run_cycle()

        assert stats.valued == 1
        polled = poller.valuation_for(bet_id)
        assert polled.trend == Trend.STABLE
        assert polled.valuation.amount > 0
        assert [p.reference_id for p in poller.snapshot()] == [bet_id]

    async def test_rule_cashes_out(self, db, make_user, make_bet, services):
        user_id, bet_id = await self._seed(
            db, make_user, make_bet, rule=(AutoCashoutRuleType.PERCENTAGE_ABOVE, 50)
        )
        poller = services['poller']

        stats = await poller.run_cycle()

        assert stats.rules_triggered == 1
        assert poller.valuation_for(bet_id) is None
        async with db.session() as session:
            bet = await session.get(Bet, bet_id)
            assert bet.result == BetResult.CASHED_OUT
            rule = (await session.execute(select(AutoCashoutRule))).scalar_one()
            assert rule.is_active is False
            assert rule.cashout_amount == bet.cashout_amount

    async def test_rule_below_threshold_waits(self, db, make_user, make_bet, services):
        _, bet_id = await self._seed(
            db, make_user, make_bet, rule=(AutoCashoutRuleType.PERCENTAGE_ABOVE, 95)
        )

        stats = await services['poller'].run_cycle()

        assert stats.rules_triggered == 0
        async with db.session() as session:
            assert (await session.get(Bet, bet_id)).result == BetResult.PENDING

    async def test_rule_on_closed_bet_is_stale(self, db, make_user, make_bet, services):
        _, bet_id = await self._seed(
            db, make_user, make_bet,
            expires_in=timedelta(minutes=30),
            rule=(AutoCashoutRuleType.PERCENTAGE_ABOVE, 0),
        )

        stats = await services['poller'].run_cycle()

        assert stats.rules_stale == 1
        assert stats.rules_triggered == 0
        async with db.session() as session:
            assert (await session.get(Bet, bet_id)).result == BetResult.PENDING

    async def test_settled_bets_are_forgotten(self, db, make_user, make_bet, services):
        _, bet_id = await self._seed(db, make_user, make_bet)
        poller = services['poller']
        await poller.run_cycle()

        async with db.session() as session:
            bet = await session.get(Bet, bet_id)
            bet.result = BetResult.LOSS

        await poller.run_cycle()
        assert poller.valuation_for(bet_id) is None
