"""
NIMBUS - Odds API Routes
Odds board per city and single-prediction quotes
"""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.dependencies import get_odds_service
from app.api.schemas import OddsBoardResponse, OddsQuoteRequest, OddsQuoteResponse
from app.services.betting.odds_service import OddsService, days_ahead_for
from app.services.weather.categories import WeatherCategory

router = APIRouter(tags=["odds"])


@router.post("/quote", response_model=OddsQuoteResponse)
async def quote_prediction(
    request: OddsQuoteRequest,
    odds: OddsService = Depends(get_odds_service),
):
    """Odds for one prediction with volatility, time decay and difficulty"""
    category = WeatherCategory.parse(request.category)
    if category is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown category: {request.category}",
        )

    days_ahead = days_ahead_for(request.target_date, datetime.utcnow().date())
    priced = await odds.price(request.city, category, request.prediction_value, days_ahead)
    return priced.to_dict()


@router.get("/{city}", response_model=OddsBoardResponse)
async def get_odds_board(
    city: str,
    days_ahead: int = Query(1, ge=1, le=14),
    odds: OddsService = Depends(get_odds_service),
):
    """Every offered prediction for a city"""
    return {
        "city": city,
        "days_ahead": days_ahead,
        "categories": await odds.board(city, days_ahead),
    }
