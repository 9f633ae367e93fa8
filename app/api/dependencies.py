"""
NIMBUS - API Dependencies
FastAPI Dependency Injection
"""

import logging
from typing import AsyncGenerator, Optional
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import db_manager
from app.core.security import TokenData, security_manager
from app.models import User
from app.services.betting import (
    BetPlacementService,
    BetResolver,
    CashOutService,
    LedgerWriter,
    OddsService,
    SettlementEngine,
)

logger = logging.getLogger(__name__)

# Security schemes
bearer_scheme = HTTPBearer(auto_error=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Database session dependency.

    Commits when the request handler returns, rolls back on error.
    """
    async with db_manager.session() as session:
        yield session


async def get_token_data(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> TokenData:
    """
    Claims of the caller's bearer token.

    Raises HTTPException if not authenticated.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = security_manager.token_data(credentials.credentials)
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token


async def get_current_user(
    token: TokenData = Depends(get_token_data),
    session: AsyncSession = Depends(get_db),
) -> User:
    """
    Balance mirror of the authenticated account.

    Accounts live upstream; the first request of a new account creates its
    mirror row with empty balances.
    """
    try:
        user_id = UUID(token.user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token subject",
        )

    user = await session.get(User, user_id)
    if user is None:
        user = User(id=user_id, email=token.email, points=0, balance_cents=0)
        session.add(user)
        await session.flush()
        logger.info(f"Created balance mirror for {user_id}")
    return user


async def require_admin(token: TokenData = Depends(get_token_data)) -> TokenData:
    """Admin or service-role token."""
    if not token.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return token


# =============================================================================
# SERVICES
# =============================================================================

def get_services(request: Request) -> dict:
    """Betting components built at startup (see app.main lifespan)."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Services not initialized",
        )
    return services


def get_odds_service(services: dict = Depends(get_services)) -> OddsService:
    return services["odds"]


def get_placement_service(services: dict = Depends(get_services)) -> BetPlacementService:
    return services["placement"]


def get_cashout_service(services: dict = Depends(get_services)) -> CashOutService:
    return services["cashout"]


def get_settlement_engine(services: dict = Depends(get_services)) -> SettlementEngine:
    return services["settlement"]


def get_resolver(services: dict = Depends(get_services)) -> BetResolver:
    return services["resolver"]


def get_ledger(services: dict = Depends(get_services)) -> LedgerWriter:
    return services["ledger"]
