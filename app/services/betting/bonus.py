"""
NIMBUS - Streaks & Bonuses

Win-streak multipliers, purchased payout multipliers and the bonus
earnings recorded when a win pays more than its base winnings.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, settings
from app.models import BonusEarning, BonusType, CurrencyType, ShopPurchase

logger = logging.getLogger(__name__)

TEMP_MULTIPLIER_ITEM = 'temp_multiplier'

_THRESHOLD_LABELS = {
    3: 'Hot Streak',
    5: 'On Fire',
    7: 'Blazing',
    10: 'Unstoppable',
    15: 'Legendary',
    20: 'Mythical',
}


@dataclass(frozen=True)
class StreakThreshold:
    min_streak: int
    multiplier: float
    label: str


@dataclass
class StreakInfo:
    current_streak: int
    longest_streak: int
    multiplier: float
    threshold: Optional[StreakThreshold]
    next_threshold: Optional[StreakThreshold]
    wins_to_next_threshold: int
    is_active: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            'current_streak': self.current_streak,
            'longest_streak': self.longest_streak,
            'multiplier': self.multiplier,
            'label': self.threshold.label if self.threshold else None,
            'next_threshold': self.next_threshold.min_streak if self.next_threshold else None,
            'wins_to_next_threshold': self.wins_to_next_threshold,
            'is_active': self.is_active,
        }


@dataclass
class WinPayout:
    """Breakdown of a winning payout"""
    base_winnings: int
    streak_bonus: int
    shop_bonus: int
    streak_multiplier: float
    shop_multiplier: float

    @property
    def total(self) -> int:
        return self.base_winnings + self.streak_bonus + self.shop_bonus


class StreakBonus:
    """Maps a win streak to a payout multiplier."""

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or settings
        self.thresholds = sorted(
            (
                StreakThreshold(
                    min_streak=int(min_streak),
                    multiplier=float(multiplier),
                    label=_THRESHOLD_LABELS.get(int(min_streak), f'{int(min_streak)} Streak'),
                )
                for min_streak, multiplier in self.config.STREAK_THRESHOLDS
            ),
            key=lambda t: t.min_streak,
        )

    def threshold(self, streak: int) -> Optional[StreakThreshold]:
        """Highest threshold reached, None below the minimum streak"""
        if streak < self.config.STREAK_MIN_FOR_BONUS:
            return None
        current = None
        for threshold in self.thresholds:
            if streak >= threshold.min_streak:
                current = threshold
        return current

    def next_threshold(self, streak: int) -> Optional[StreakThreshold]:
        for threshold in self.thresholds:
            if streak < threshold.min_streak:
                return threshold
        return None

    def multiplier(self, streak: int) -> float:
        threshold = self.threshold(streak)
        if threshold is None:
            return 1.0
        return min(threshold.multiplier, self.config.STREAK_MAX_MULTIPLIER)

    def info(self, current_streak: int, longest_streak: int = 0) -> StreakInfo:
        next_threshold = self.next_threshold(current_streak)
        return StreakInfo(
            current_streak=current_streak,
            longest_streak=max(current_streak, longest_streak),
            multiplier=self.multiplier(current_streak),
            threshold=self.threshold(current_streak),
            next_threshold=next_threshold,
            wins_to_next_threshold=next_threshold.min_streak - current_streak if next_threshold else 0,
            is_active=current_streak >= self.config.STREAK_MIN_FOR_BONUS,
        )

    def bonus(self, base_winnings: int, streak: int) -> int:
        multiplier = self.multiplier(streak)
        if multiplier <= 1.0:
            return 0
        return round(base_winnings * (multiplier - 1))

    def winnings_with_streak(self, base_winnings: int, streak: int) -> Dict[str, Any]:
        streak_bonus = self.bonus(base_winnings, streak)
        return {
            'base_winnings': base_winnings,
            'streak_bonus': streak_bonus,
            'total_winnings': base_winnings + streak_bonus,
            'multiplier': self.multiplier(streak),
        }

    def win_payout(self, stake: int, odds: float, streak: int, shop_multiplier: float = 1.0) -> WinPayout:
        """round(stake * odds), then the streak bonus, then purchased multipliers"""
        base = round(stake * odds)
        streak_bonus = self.bonus(base, streak)
        shop_bonus = 0
        if shop_multiplier > 1.0:
            shop_bonus = round((base + streak_bonus) * (shop_multiplier - 1))
        return WinPayout(
            base_winnings=base,
            streak_bonus=streak_bonus,
            shop_bonus=shop_bonus,
            streak_multiplier=self.multiplier(streak),
            shop_multiplier=shop_multiplier,
        )


# =============================================================================
# PERSISTENCE
# =============================================================================

async def active_shop_multiplier(session: AsyncSession, user_id: UUID) -> Tuple[float, List[ShopPurchase]]:
    """Product of unused temp_multiplier purchases and the purchases themselves"""
    result = await session.execute(
        select(ShopPurchase).where(
            ShopPurchase.user_id == user_id,
            ShopPurchase.item_type == TEMP_MULTIPLIER_ITEM,
            ShopPurchase.used.is_(False),
        )
    )
    purchases = list(result.scalars())
    multiplier = math.prod(p.item_value for p in purchases) if purchases else 1.0
    return multiplier, purchases


def consume_purchases(purchases: Sequence[ShopPurchase]) -> None:
    now = datetime.utcnow()
    for purchase in purchases:
        purchase.used = True
        purchase.used_at = now


def record_bonus_earnings(
    session: AsyncSession,
    user_id: UUID,
    payout: WinPayout,
    currency: CurrencyType,
    bet_id: Optional[UUID] = None,
    parlay_id: Optional[UUID] = None,
) -> List[BonusEarning]:
    """One BonusEarning row per non-zero bonus component"""
    earnings = []
    for bonus_type, amount in (
        (BonusType.STREAK, payout.streak_bonus),
        (BonusType.MULTIPLIER, payout.shop_bonus),
    ):
        if amount <= 0:
            continue
        earning = BonusEarning(
            user_id=user_id,
            bet_id=bet_id,
            parlay_id=parlay_id,
            bonus_type=bonus_type,
            bonus_amount=amount,
            base_amount=payout.base_winnings,
            currency_type=currency,
        )
        session.add(earning)
        earnings.append(earning)
    return earnings
