"""
NIMBUS - Betting API Routes
Bet, parlay and combined-bet placement and bet history
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import get_current_user, get_db, get_placement_service
from app.api.schemas import (
    BetCreate,
    BetResponse,
    CombinedBetCreate,
    ParlayCreate,
    ParlayResponse,
    PlacedBetResponse,
)
from app.models import BetResult, User
from app.services.betting.placement import BetPlacementService, PlacedParlay, PredictionRequest

router = APIRouter(tags=["betting"])


def _prediction(leg) -> PredictionRequest:
    return PredictionRequest(
        city=leg.city,
        category=leg.category,
        prediction_value=leg.prediction_value,
        target_date=leg.target_date,
        expires_at=leg.expires_at,
    )


@router.post("", response_model=PlacedBetResponse, status_code=status.HTTP_201_CREATED)
async def place_bet(
    request: BetCreate,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
    placement: BetPlacementService = Depends(get_placement_service),
):
    """Place a single bet; odds are fixed now and the stake is debited"""
    placed = await placement.place_bet(
        session,
        user.id,
        _prediction(request),
        request.stake,
        request.currency_type,
        with_insurance=request.with_insurance,
    )
    return {
        "bet": BetResponse.model_validate(placed.bet),
        "difficulty": placed.pricing.difficulty.to_dict(),
        "volatility": placed.pricing.volatility.to_dict(),
    }


@router.get("", response_model=List[BetResponse])
async def list_bets(
    result: Optional[BetResult] = None,
    limit: int = Query(50, ge=1, le=500),
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    """The caller's bets, newest first"""
    return await BetPlacementService.list_bets(session, user.id, result, limit)


@router.post("/parlays", response_model=ParlayResponse, status_code=status.HTTP_201_CREATED)
async def place_parlay(
    request: ParlayCreate,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
    placement: BetPlacementService = Depends(get_placement_service),
):
    placed = await placement.place_parlay(
        session,
        user.id,
        [_prediction(leg) for leg in request.legs],
        request.stake,
        request.currency_type,
    )
    return _parlay_response(placed)


@router.post("/combined", response_model=ParlayResponse, status_code=status.HTTP_201_CREATED)
async def place_combined_bet(
    request: CombinedBetCreate,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
    placement: BetPlacementService = Depends(get_placement_service),
):
    """Several categories on one city; odds multiply and all must win"""
    placed = await placement.place_combined(
        session,
        user.id,
        request.city,
        [(p.category, p.prediction_value) for p in request.predictions],
        request.stake,
        request.currency_type,
        target_date=request.target_date,
        expires_at=request.expires_at,
    )
    return _parlay_response(placed)


def _parlay_response(placed: PlacedParlay) -> ParlayResponse:
    parlay = placed.parlay
    return ParlayResponse(
        id=parlay.id,
        total_stake=parlay.total_stake,
        combined_odds=parlay.combined_odds,
        is_combined=parlay.is_combined,
        currency_type=parlay.currency_type,
        expires_at=parlay.expires_at,
        result=parlay.result,
        payout=parlay.payout,
        partial_cashout_total=parlay.partial_cashout_total or 0,
        created_at=parlay.created_at,
        legs=[BetResponse.model_validate(leg) for leg in placed.legs],
    )
