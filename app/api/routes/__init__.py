"""
NIMBUS - API Routes Package

Route modules:
- Odds (odds)
- Bets and parlays (betting)
- Cash out (cashout)
- Verification and disputes (verification)
- Settlement runs (settlement)
- Ledger reconciliation (ledger)
- Health Checks (health)
"""

from fastapi import APIRouter

from app.api.routes import odds
from app.api.routes import betting
from app.api.routes import cashout
from app.api.routes import verification
from app.api.routes import settlement
from app.api.routes import ledger
from app.api.routes import health

# Create main API router
api_router = APIRouter()

api_router.include_router(
    health.router,
    prefix="/health",
    tags=["Health"]
)

api_router.include_router(
    odds.router,
    prefix="/odds",
    tags=["Odds"]
)

api_router.include_router(
    betting.router,
    prefix="/bets",
    tags=["Betting"]
)

api_router.include_router(
    cashout.router,
    prefix="/cashout",
    tags=["Cash Out"]
)

api_router.include_router(
    verification.router,
    prefix="/verification",
    tags=["Verification"]
)

api_router.include_router(
    settlement.router,
    prefix="/settlement",
    tags=["Settlement"]
)

api_router.include_router(
    ledger.router,
    prefix="/ledger",
    tags=["Ledger"]
)

# Export individual routers for direct imports
odds_router = odds.router
betting_router = betting.router
cashout_router = cashout.router
verification_router = verification.router
settlement_router = settlement.router
ledger_router = ledger.router
health_router = health.router

__all__ = [
    "api_router",
    "odds_router",
    "betting_router",
    "cashout_router",
    "verification_router",
    "settlement_router",
    "ledger_router",
    "health_router",
]
