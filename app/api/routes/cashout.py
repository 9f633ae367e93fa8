"""
NIMBUS - Cash-Out API Routes
Live cash-out offers, full and partial cash-outs and auto-cashout rules
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import get_cashout_service, get_current_user, get_db
from app.api.schemas import (
    AutoCashoutRuleCreate,
    AutoCashoutRuleResponse,
    CashOutResponse,
    CashOutValuationResponse,
    PartialCashOutRequest,
)
from app.core.exceptions import BetNotFoundError
from app.models import AutoCashoutRule, Bet, BetResult, Parlay, User
from app.services.betting.cashout import CashOutService

router = APIRouter(tags=["cashout"])


@router.post("/rules", response_model=AutoCashoutRuleResponse, status_code=status.HTTP_201_CREATED)
async def create_auto_cashout_rule(
    request: AutoCashoutRuleCreate,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    """Cash out automatically once the offer crosses a threshold"""
    if (request.bet_id is None) == (request.parlay_id is None):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Exactly one of bet_id or parlay_id is required",
        )

    target = (
        await session.get(Parlay, request.parlay_id)
        if request.parlay_id
        else await session.get(Bet, request.bet_id)
    )
    if target is None or target.user_id != user.id:
        raise BetNotFoundError("Bet not found")
    if target.result != BetResult.PENDING:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Bet is already {target.result.value}",
        )

    rule = AutoCashoutRule(
        user_id=user.id,
        bet_id=request.bet_id,
        parlay_id=request.parlay_id,
        rule_type=request.rule_type,
        threshold=request.threshold,
        is_active=True,
    )
    session.add(rule)
    await session.flush()
    return rule


@router.get("/parlays/{parlay_id}", response_model=CashOutValuationResponse)
async def get_parlay_cashout_offer(
    parlay_id: UUID,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
    cashout: CashOutService = Depends(get_cashout_service),
):
    """Current cash-out offer for a pending parlay or combined bet"""
    valuation = await cashout.quote_parlay(session, parlay_id, user.id)
    parlay = await session.get(Parlay, parlay_id)
    available = parlay.result == BetResult.PENDING and cashout.model.can_cash_out(parlay.expires_at)
    return {**valuation.to_dict(), "available": available}


@router.post("/parlays/{parlay_id}", response_model=CashOutResponse)
async def cash_out_parlay(
    parlay_id: UUID,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
    cashout: CashOutService = Depends(get_cashout_service),
):
    result = await cashout.cash_out_parlay(session, parlay_id, user.id)
    return result.to_dict()


@router.post("/parlays/{parlay_id}/partial", response_model=CashOutResponse)
async def partial_cash_out_parlay(
    parlay_id: UUID,
    request: PartialCashOutRequest,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
    cashout: CashOutService = Depends(get_cashout_service),
):
    """Cash out a share of the parlay stake; every leg keeps riding"""
    result = await cashout.partial_cash_out_parlay(session, parlay_id, request.percentage, user.id)
    return result.to_dict()


@router.get("/{bet_id}", response_model=CashOutValuationResponse)
async def get_cashout_offer(
    bet_id: UUID,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
    cashout: CashOutService = Depends(get_cashout_service),
):
    """Current cash-out offer for a pending bet"""
    valuation = await cashout.quote(session, bet_id, user.id)
    bet = await session.get(Bet, bet_id)
    available = bet.result == BetResult.PENDING and cashout.model.can_cash_out(bet.expires_at)
    return {**valuation.to_dict(), "available": available}


@router.post("/{bet_id}", response_model=CashOutResponse)
async def cash_out_bet(
    bet_id: UUID,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
    cashout: CashOutService = Depends(get_cashout_service),
):
    result = await cashout.cash_out(session, bet_id, user.id)
    return result.to_dict()


@router.post("/{bet_id}/partial", response_model=CashOutResponse)
async def partial_cash_out_bet(
    bet_id: UUID,
    request: PartialCashOutRequest,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
    cashout: CashOutService = Depends(get_cashout_service),
):
    """Cash out a share of the stake; the rest keeps riding"""
    result = await cashout.partial_cash_out(session, bet_id, request.percentage, user.id)
    return result.to_dict()
