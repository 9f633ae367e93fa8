"""
NIMBUS - Ledger API Routes
Balance reconciliation
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import get_db, get_ledger, get_token_data
from app.api.schemas import ReconciliationResponse
from app.core.security import TokenData
from app.models import CurrencyType
from app.services.betting.ledger import LedgerWriter

router = APIRouter(tags=["ledger"])


@router.get("/reconcile", response_model=ReconciliationResponse)
async def reconcile_balance(
    currency: CurrencyType = CurrencyType.VIRTUAL,
    user_id: Optional[UUID] = None,
    token: TokenData = Depends(get_token_data),
    session: AsyncSession = Depends(get_db),
    ledger: LedgerWriter = Depends(get_ledger),
):
    """Check the caller's ledger against their balance; admins may name any user"""
    if user_id is not None and str(user_id) != token.user_id and not token.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    target = user_id or UUID(token.user_id)
    result = await ledger.reconcile(session, target, currency)
    return result.to_dict()
