"""
NIMBUS - Test Configuration
Pytest fixtures and configuration for the test suite.
"""

from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy import event

from app.core.config import Settings
from app.core.database import DatabaseManager
from app.models import Bet, BetResult, CurrencyType, User

from tests.factories import FakeWeatherService, reading


@pytest.fixture
def test_settings() -> Settings:
    """Settings with the documented defaults, independent of the environment."""
    return Settings(
        ENVIRONMENT="test",
        DATABASE_URL="sqlite+aiosqlite://",
        JWT_SECRET_KEY="test-secret-key",
        HOUSE_EDGE_PCT=5.0,
        GLOBAL_ODDS_MULTIPLIER=1.0,
        MIN_ODDS=1.1,
        MAX_ODDS=10.0,
        CASHOUT_PENALTY_PCT=15.0,
        PARTIAL_CASHOUT_PENALTY_PCT=15.0,
        CASHOUT_MIN_HOURS_BEFORE_EXPIRY=1.0,
        RESOLVE_MIN_BET_AGE_MINUTES=60,
    )


@pytest_asyncio.fixture
async def db():
    """In-memory database with savepoint support, fresh per test."""
    manager = DatabaseManager("sqlite+aiosqlite://")
    await manager.initialize()

    # pysqlite's own transaction handling breaks SAVEPOINT; emit BEGIN ourselves
    @event.listens_for(manager.engine.sync_engine, "connect")
    def _no_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(manager.engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    await manager.create_tables()
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def session(db):
    async with db.session() as s:
        yield s


@pytest.fixture
def make_user():
    """Factory adding a user with starting balances to a session."""
    async def _make(session, points: int = 1000, balance_cents: int = 0, **kwargs) -> User:
        user = User(id=uuid4(), points=points, balance_cents=balance_cents, **kwargs)
        session.add(user)
        await session.flush()
        return user
    return _make


@pytest.fixture
def make_bet():
    """Factory adding a pending bet without going through placement."""
    async def _make(
        session,
        user: User,
        city: str = "London",
        category: str = "rain",
        prediction_value: str = "yes",
        stake: int = 100,
        odds: float = 2.0,
        created_at: Optional[datetime] = None,
        **kwargs,
    ) -> Bet:
        now = datetime.utcnow()
        bet = Bet(
            id=uuid4(),
            user_id=user.id,
            city=city,
            category=category,
            prediction_value=prediction_value,
            stake=stake,
            odds=odds,
            currency_type=kwargs.pop("currency_type", CurrencyType.VIRTUAL),
            result=kwargs.pop("result", BetResult.PENDING),
            created_at=created_at or now - timedelta(hours=2),
            **kwargs,
        )
        session.add(bet)
        await session.flush()
        return bet
    return _make


@pytest.fixture
def fake_weather() -> FakeWeatherService:
    return FakeWeatherService(
        readings={
            "London": (
                reading("openweathermap", temperature=20.0, is_raining=True, rain_amount=2.0),
                reading("weatherapi", temperature=21.0, is_raining=True, rain_amount=2.5),
            ),
        }
    )


@pytest.fixture
def services(db, fake_weather, test_settings):
    """Betting services over the test database with an empty accuracy history."""
    from app.services.betting import create_betting_system

    async def no_history(city, category):
        return []

    system = create_betting_system(db, fake_weather, test_settings)
    system['volatility'].loader = no_history
    return system
