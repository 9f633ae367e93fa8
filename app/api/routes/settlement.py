"""
NIMBUS - Settlement API Routes
On-demand bet resolution
"""

from fastapi import APIRouter, Depends

from app.api.dependencies import get_resolver, require_admin
from app.core.security import TokenData
from app.services.betting.grading import BetResolver

router = APIRouter(tags=["settlement"])


@router.post("/run")
async def run_settlement(
    admin: TokenData = Depends(require_admin),
    resolver: BetResolver = Depends(get_resolver),
):
    """
    Verify every city with due bets and grade them.

    Cities whose primary source failed are listed in failed_cities; the
    others are settled.
    """
    summary = await resolver.resolve_pending(raise_on_failure=False)
    return summary.to_dict()
