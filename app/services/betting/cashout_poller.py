"""
NIMBUS - Cash-Out Poller

Background task that re-values every pending wager on a fixed interval,
tracks whether each offer is rising or falling and executes auto-cashout
rules whose threshold has been crossed.

Cycles never overlap: when a cycle is still running at the next tick, that
tick is skipped and counted.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import DatabaseManager
from app.core.exceptions import (
    BetNotPendingError,
    CashOutUnavailableError,
    NimbusError,
)
from app.models import AutoCashoutRule, AutoCashoutRuleType, Bet, BetResult, Parlay
from app.services.betting.cashout import CashOutService, CashOutValuation

logger = logging.getLogger(__name__)


class Trend:
    UP = 'up'
    DOWN = 'down'
    STABLE = 'stable'


def trend_between(previous: Optional[int], current: int) -> str:
    if previous is None or previous == current:
        return Trend.STABLE
    return Trend.UP if current > previous else Trend.DOWN


def rule_triggered(rule_type: AutoCashoutRuleType, threshold: float, valuation: CashOutValuation) -> bool:
    """Percentages and bonuses compare in whole percent, amount_above in currency units"""
    if rule_type == AutoCashoutRuleType.PERCENTAGE_ABOVE:
        return valuation.percentage >= threshold
    if rule_type == AutoCashoutRuleType.PERCENTAGE_BELOW:
        return valuation.percentage <= threshold
    if rule_type == AutoCashoutRuleType.WEATHER_BONUS_ABOVE:
        return valuation.weather_bonus >= threshold
    if rule_type == AutoCashoutRuleType.WEATHER_BONUS_BELOW:
        return valuation.weather_bonus <= threshold
    if rule_type == AutoCashoutRuleType.TIME_BONUS_ABOVE:
        return valuation.time_bonus >= threshold
    if rule_type == AutoCashoutRuleType.AMOUNT_ABOVE:
        return valuation.amount >= threshold
    raise ValueError(f"Unknown auto-cashout rule type: {rule_type}")


@dataclass
class PolledValuation:
    reference_id: UUID
    is_parlay: bool
    valuation: CashOutValuation
    trend: str
    polled_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'reference_id': str(self.reference_id),
            'is_parlay': self.is_parlay,
            'trend': self.trend,
            'polled_at': self.polled_at.isoformat(),
            **self.valuation.to_dict(),
        }


@dataclass
class CycleStats:
    valued: int = 0
    failed: int = 0
    rules_triggered: int = 0
    rules_stale: int = 0
    started_at: datetime = field(default_factory=datetime.utcnow)


class CashOutPoller:
    """Explicit start/stop background poller."""

    def __init__(
        self,
        db: DatabaseManager,
        cashout: CashOutService,
        interval: Optional[float] = None,
    ):
        self.db = db
        self.cashout = cashout
        self.interval = interval if interval is not None else settings.CASHOUT_POLL_INTERVAL

        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._cycle_task: Optional[asyncio.Task] = None
        self._valuations: Dict[UUID, PolledValuation] = {}

        self.cycles_run = 0
        self.cycles_skipped = 0
        self.last_cycle: Optional[CycleStats] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._poll_loop())
        logger.info(f"Cash-out poller started (every {self.interval}s)")

    async def stop(self) -> None:
        self._running = False
        for task in (self._loop_task, self._cycle_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = None
        self._cycle_task = None
        logger.info("Cash-out poller stopped")

    def tick(self) -> bool:
        """Start a cycle unless one is in flight; False when skipped"""
        if self._cycle_task is not None and not self._cycle_task.done():
            self.cycles_skipped += 1
            logger.warning(f"Cash-out cycle still running, skipping tick ({self.cycles_skipped} skipped)")
            return False
        self._cycle_task = asyncio.create_task(self._guarded_cycle())
        return True

    async def _guarded_cycle(self) -> None:
        try:
            await self.run_cycle()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Cash-out cycle failed: {e}")

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                self.tick()
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break

    def snapshot(self) -> List[PolledValuation]:
        return list(self._valuations.values())

    def valuation_for(self, reference_id: UUID) -> Optional[PolledValuation]:
        return self._valuations.get(reference_id)

    def _track(self, reference_id: UUID, is_parlay: bool, valuation: CashOutValuation, now: datetime) -> PolledValuation:
        previous = self._valuations.get(reference_id)
        polled = PolledValuation(
            reference_id=reference_id,
            is_parlay=is_parlay,
            valuation=valuation,
            trend=trend_between(previous.valuation.amount if previous else None, valuation.amount),
            polled_at=now,
        )
        self._valuations[reference_id] = polled
        return polled

    async def run_cycle(self, now: Optional[datetime] = None) -> CycleStats:
        now = now or datetime.utcnow()
        stats = CycleStats(started_at=now)
        try:
            async with self.db.session() as session:
                seen = await self._value_pending(session, now, stats)
                await self._apply_rules(session, now, stats)
            # Forget settled wagers
            for reference_id in list(self._valuations):
                if reference_id not in seen:
                    del self._valuations[reference_id]
        finally:
            self.cycles_run += 1
            self.last_cycle = stats

        logger.debug(
            f"Cash-out cycle: {stats.valued} valued, {stats.failed} failed, "
            f"{stats.rules_triggered} rules triggered"
        )
        return stats

    async def _value_pending(self, session: AsyncSession, now: datetime, stats: CycleStats) -> set:
        seen = set()

        bets = await session.execute(
            select(Bet.id).where(Bet.result == BetResult.PENDING, Bet.parlay_id.is_(None))
        )
        for (bet_id,) in bets.all():
            try:
                valuation = await self.cashout.quote(session, bet_id, now=now)
            except NimbusError as e:
                stats.failed += 1
                logger.warning(f"Could not value bet {bet_id}: {e.message}")
                continue
            self._track(bet_id, False, valuation, now)
            seen.add(bet_id)
            stats.valued += 1

        parlays = await session.execute(select(Parlay.id).where(Parlay.result == BetResult.PENDING))
        for (parlay_id,) in parlays.all():
            try:
                valuation = await self.cashout.quote_parlay(session, parlay_id, now=now)
            except NimbusError as e:
                stats.failed += 1
                logger.warning(f"Could not value parlay {parlay_id}: {e.message}")
                continue
            self._track(parlay_id, True, valuation, now)
            seen.add(parlay_id)
            stats.valued += 1

        return seen

    async def _apply_rules(self, session: AsyncSession, now: datetime, stats: CycleStats) -> None:
        result = await session.execute(select(AutoCashoutRule).where(AutoCashoutRule.is_active.is_(True)))
        for rule in result.scalars():
            reference_id = rule.parlay_id or rule.bet_id
            polled = self._valuations.get(reference_id)
            if polled is None:
                continue
            if not rule_triggered(rule.rule_type, rule.threshold, polled.valuation):
                continue

            try:
                async with session.begin_nested():
                    if rule.parlay_id is not None:
                        executed = await self.cashout.cash_out_parlay(session, rule.parlay_id, rule.user_id, now=now)
                    else:
                        executed = await self.cashout.cash_out(session, rule.bet_id, rule.user_id, now=now)
            except (BetNotPendingError, CashOutUnavailableError) as e:
                stats.rules_stale += 1
                logger.info(f"Auto-cashout rule {rule.id} not executed: {e.message}")
                continue

            rule.is_active = False
            rule.triggered_at = now
            rule.cashout_amount = executed.amount
            stats.rules_triggered += 1
            self._valuations.pop(reference_id, None)
            logger.info(
                f"Auto-cashout rule {rule.id} ({rule.rule_type.value} {rule.threshold}) "
                f"cashed out {reference_id} for {executed.amount}"
            )
        await session.flush()
