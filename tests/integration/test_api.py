"""
NIMBUS - API Integration Tests
Routes wired against the in-memory database and a canned weather service.
"""

from datetime import datetime, timedelta
from uuid import uuid4

import httpx
import jwt
import pytest
import pytest_asyncio

from app.api.dependencies import get_db
from app.core.config import settings
from app.main import app
from app.models import User

pytestmark = pytest.mark.integration


def auth_header(user_id, role: str = "user") -> dict:
    claims = {
        "sub": str(user_id),
        "aud": "authenticated",
        "exp": datetime.utcnow() + timedelta(hours=1),
        "app_metadata": {"role": role},
    }
    token = jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def client(db, services):
    async def override_get_db():
        async with db.session() as session:
            yield session

    app.state.services = services
    app.dependency_overrides[get_db] = override_get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
    del app.state.services


@pytest_asyncio.fixture
async def user_id(db):
    uid = uuid4()
    async with db.session() as session:
        session.add(User(id=uid, points=1000, balance_cents=0))
    return uid


@pytest.mark.asyncio
class TestAuth:

    async def test_missing_token_rejected(self, client):
        response = await client.get("/api/v1/bets")
        assert response.status_code == 401

    async def test_garbage_token_rejected(self, client):
        response = await client.get(
            "/api/v1/bets", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 401

    async def test_new_account_gets_empty_mirror(self, client):
        response = await client.get("/api/v1/bets", headers=auth_header(uuid4()))
        assert response.status_code == 200
        assert response.json() == []


@pytest.mark.asyncio
class TestOddsRoutes:

    async def test_quote(self, client):
        response = await client.post(
            "/api/v1/odds/quote",
            json={"city": "London", "category": "rain", "prediction_value": "yes"},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["city"] == "London"
        assert body["days_ahead"] == 1
        assert settings.MIN_ODDS <= body["final_odds"] <= settings.MAX_ODDS

    async def test_quote_unknown_category(self, client):
        response = await client.post(
            "/api/v1/odds/quote",
            json={"city": "London", "category": "hail", "prediction_value": "yes"},
        )
        assert response.status_code == 400

    async def test_quote_with_aware_target_date(self, client):
        target = datetime.utcnow() + timedelta(days=1)
        response = await client.post(
            "/api/v1/odds/quote",
            json={
                "city": "London", "category": "rain", "prediction_value": "yes",
                "target_date": target.isoformat() + "Z",
            },
        )
        assert response.status_code == 200
        assert response.json()["days_ahead"] == 2

    async def test_board(self, client):
        response = await client.get("/api/v1/odds/London", params={"days_ahead": 2})
        assert response.status_code == 200
        body = response.json()
        assert body["days_ahead"] == 2
        assert body["categories"]


@pytest.mark.asyncio
class TestBettingFlow:

    async def place(self, client, user_id, **overrides):
        payload = {"city": "London", "category": "rain", "prediction_value": "yes", "stake": 100}
        payload.update(overrides)
        return await client.post("/api/v1/bets", json=payload, headers=auth_header(user_id))

    async def test_place_bet_debits_balance(self, client, db, user_id):
        response = await self.place(client, user_id)
        assert response.status_code == 201
        body = response.json()
        assert body["bet"]["stake"] == 100
        assert body["bet"]["result"] == "pending"
        assert "level" in body["difficulty"]

        async with db.session() as session:
            user = await session.get(User, user_id)
            assert user.points == 900

    async def test_expiry_with_trailing_z(self, client, user_id):
        expires = datetime.utcnow().replace(microsecond=0) + timedelta(days=1)
        response = await self.place(client, user_id, expires_at=expires.isoformat() + "Z")
        assert response.status_code == 201
        assert response.json()["bet"]["expires_at"] == expires.isoformat()

    async def test_target_date_with_offset(self, client, user_id):
        target = datetime.utcnow().replace(microsecond=0) + timedelta(days=2)
        response = await self.place(client, user_id, target_date=target.isoformat() + "+00:00")
        assert response.status_code == 201
        assert response.json()["bet"]["target_date"] == target.isoformat()

    async def test_expired_aware_expiry_rejected(self, client, user_id):
        past = datetime.utcnow() - timedelta(hours=1)
        response = await self.place(client, user_id, expires_at=past.isoformat() + "Z")
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_bet"

    async def test_insufficient_balance(self, client, user_id):
        response = await self.place(client, user_id, stake=5000)
        assert response.status_code == 400
        assert response.json()["error"] == "insufficient_balance"

    async def test_bet_listing(self, client, user_id):
        await self.place(client, user_id)
        response = await client.get("/api/v1/bets", headers=auth_header(user_id))
        assert response.status_code == 200
        assert len(response.json()) == 1

    async def test_cashout_offer(self, client, user_id):
        placed = (await self.place(client, user_id)).json()
        bet_id = placed["bet"]["id"]

        response = await client.get(f"/api/v1/cashout/{bet_id}", headers=auth_header(user_id))
        assert response.status_code == 200
        body = response.json()
        assert body["available"] is True
        assert 0 < body["amount"] <= body["potential_win"]

    async def test_partial_cashout_of_whole_stake_rejected(self, client, user_id):
        placed = (await self.place(client, user_id)).json()
        bet_id = placed["bet"]["id"]

        response = await client.post(
            f"/api/v1/cashout/{bet_id}/partial",
            json={"percentage": 100},
            headers=auth_header(user_id),
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_cashout"

    async def test_ledger_reconciles_after_placement(self, client, user_id):
        await self.place(client, user_id)
        response = await client.get("/api/v1/ledger/reconcile", headers=auth_header(user_id))
        assert response.status_code == 200
        body = response.json()
        assert body["balance"] == 900
        assert body["ledger_balance"] == 900
        assert body["is_consistent"] is True

    async def test_reconcile_other_user_needs_admin(self, client, user_id):
        response = await client.get(
            "/api/v1/ledger/reconcile",
            params={"user_id": str(user_id)},
            headers=auth_header(uuid4()),
        )
        assert response.status_code == 403


@pytest.mark.asyncio
class TestParlayRoutes:

    async def place_combined(self, client, user_id):
        payload = {
            "city": "London",
            "predictions": [
                {"category": "rain", "prediction_value": "yes"},
                {"category": "temperature", "prediction_value": "18-24"},
            ],
            "stake": 100,
        }
        return await client.post("/api/v1/bets/combined", json=payload, headers=auth_header(user_id))

    async def test_combined_bet(self, client, user_id):
        response = await self.place_combined(client, user_id)
        assert response.status_code == 201
        body = response.json()
        assert body["is_combined"] is True
        assert body["total_stake"] == 100
        assert [leg["category"] for leg in body["legs"]] == ["rain", "temperature"]
        assert all(leg["stake"] == 0 for leg in body["legs"])

    async def test_combined_bet_needs_two_categories(self, client, user_id):
        response = await client.post(
            "/api/v1/bets/combined",
            json={"city": "London", "predictions": [{"category": "rain", "prediction_value": "yes"}], "stake": 100},
            headers=auth_header(user_id),
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_bet"

    async def test_parlay_offer_and_partial_cash_out(self, client, user_id):
        parlay_id = (await self.place_combined(client, user_id)).json()["id"]

        offer = await client.get(f"/api/v1/cashout/parlays/{parlay_id}", headers=auth_header(user_id))
        assert offer.status_code == 200
        assert offer.json()["available"] is True
        assert offer.json()["amount"] < 100

        response = await client.post(
            f"/api/v1/cashout/parlays/{parlay_id}/partial",
            json={"percentage": 50},
            headers=auth_header(user_id),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["is_partial"] is True
        assert body["remaining_stake"] == 50
        assert 0 < body["amount"] < 50

    async def test_parlay_full_cash_out(self, client, user_id):
        parlay_id = (await self.place_combined(client, user_id)).json()["id"]
        response = await client.post(f"/api/v1/cashout/parlays/{parlay_id}", headers=auth_header(user_id))
        assert response.status_code == 200
        assert response.json()["amount"] < 100

        again = await client.post(f"/api/v1/cashout/parlays/{parlay_id}", headers=auth_header(user_id))
        assert again.status_code == 409


@pytest.mark.asyncio
class TestVerificationRoutes:

    async def test_requires_admin(self, client):
        response = await client.post("/api/v1/verification/London", headers=auth_header(uuid4()))
        assert response.status_code == 403

    async def test_admin_verifies_city(self, client):
        response = await client.post(
            "/api/v1/verification/London", headers=auth_header(uuid4(), role="admin")
        )
        assert response.status_code == 200
        body = response.json()
        assert body["city"] == "London"
        assert body["sources"]["secondary"] == "weatherapi"
        assert body["results"]

    async def test_primary_down_is_503(self, client, fake_weather):
        fake_weather.failing_primary.add("London")
        response = await client.post(
            "/api/v1/verification/London", headers=auth_header(uuid4(), role="admin")
        )
        assert response.status_code == 503
        assert response.json()["error"] == "primary_source_unavailable"


@pytest.mark.asyncio
async def test_root_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}
