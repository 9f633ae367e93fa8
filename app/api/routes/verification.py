"""
NIMBUS - Verification API Routes
Two-source weather verification and dispute administration
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import get_db, get_settlement_engine, require_admin
from app.api.schemas import (
    BulkResolveRequest,
    BulkResolveResponse,
    OverrideRequest,
    VerificationEntryResponse,
    VerifyRequest,
)
from app.core.security import TokenData
from app.services.betting.settlement import SettlementEngine

router = APIRouter(tags=["verification"])


@router.get("/disputes", response_model=List[VerificationEntryResponse])
async def list_disputes(
    limit: int = Query(100, ge=1, le=1000),
    admin: TokenData = Depends(require_admin),
    session: AsyncSession = Depends(get_db),
    settlement: SettlementEngine = Depends(get_settlement_engine),
):
    """Open disputes, newest first"""
    return await settlement.list_disputes(session, limit)


@router.post("/disputes/bulk", response_model=BulkResolveResponse)
async def bulk_resolve_disputes(
    request: BulkResolveRequest,
    admin: TokenData = Depends(require_admin),
    session: AsyncSession = Depends(get_db),
    settlement: SettlementEngine = Depends(get_settlement_engine),
):
    resolved = await settlement.bulk_resolve(session, request.action, admin.user_id)
    return {"action": request.action, "resolved": resolved}


@router.post("/disputes/{entry_id}/override", response_model=VerificationEntryResponse)
async def override_dispute(
    entry_id: UUID,
    request: OverrideRequest,
    admin: TokenData = Depends(require_admin),
    session: AsyncSession = Depends(get_db),
    settlement: SettlementEngine = Depends(get_settlement_engine),
):
    """Replace a final value; the original is kept in the entry metadata"""
    return await settlement.override(
        session, entry_id, request.new_value, request.reason, request.source, admin.user_id
    )


@router.post("/{city}")
async def verify_city(
    city: str,
    request: VerifyRequest = VerifyRequest(),
    admin: TokenData = Depends(require_admin),
    session: AsyncSession = Depends(get_db),
    settlement: SettlementEngine = Depends(get_settlement_engine),
):
    """Fetch both sources for a city and log the comparison"""
    report = await settlement.verify(session, city, request.categories)
    return report.to_dict()
