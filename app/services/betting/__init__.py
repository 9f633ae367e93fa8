"""
NIMBUS - Betting Services Module

This module provides the wagering core:
- Odds pricing with volatility, time decay and difficulty
- Two-source settlement, dispute handling and bet grading
- Cash-out valuation, execution and auto-cashout polling
- Win streak bonuses and the balance ledger
"""

__version__ = '1.0.0'

from typing import Optional

from app.core.config import Settings, settings
from app.core.database import DatabaseManager

# Odds
from .odds_engine import (
    OddsEngine,
    OddsQuote,
    odds_change_indicator,
)
from .volatility import (
    VolatilityModel,
    VolatilityInfo,
    database_summary_loader,
)
from .difficulty import (
    DifficultyRater,
    DifficultyRating,
    DifficultyLevel,
)
from .odds_service import (
    OddsService,
    PricedPrediction,
)

# Settlement
from .settlement import (
    SettlementEngine,
    VerificationReport,
    CategoryVerification,
    OverrideSource,
    BulkAction,
)
from .grading import (
    BetGrader,
    BetResolver,
    GradingReport,
    GradeOutcome,
    ResolutionSummary,
    evaluate_prediction,
)

# Cash-out
from .cashout import (
    CashOutValuationModel,
    CashOutValuation,
    CashOutService,
    CashOutResult,
)
from .cashout_poller import (
    CashOutPoller,
    rule_triggered,
)

# Money
from .bonus import (
    StreakBonus,
    StreakInfo,
    WinPayout,
)
from .ledger import (
    LedgerWriter,
    ReconciliationResult,
)
from .placement import (
    BetPlacementService,
    PredictionRequest,
)

__all__ = [
    '__version__',

    # Odds
    'OddsEngine',
    'OddsQuote',
    'odds_change_indicator',
    'VolatilityModel',
    'VolatilityInfo',
    'database_summary_loader',
    'DifficultyRater',
    'DifficultyRating',
    'DifficultyLevel',
    'OddsService',
    'PricedPrediction',

    # Settlement
    'SettlementEngine',
    'VerificationReport',
    'CategoryVerification',
    'OverrideSource',
    'BulkAction',
    'BetGrader',
    'BetResolver',
    'GradingReport',
    'GradeOutcome',
    'ResolutionSummary',
    'evaluate_prediction',

    # Cash-out
    'CashOutValuationModel',
    'CashOutValuation',
    'CashOutService',
    'CashOutResult',
    'CashOutPoller',
    'rule_triggered',

    # Money
    'StreakBonus',
    'StreakInfo',
    'WinPayout',
    'LedgerWriter',
    'ReconciliationResult',
    'BetPlacementService',
    'PredictionRequest',
]


def create_betting_system(
    db: DatabaseManager,
    weather,
    config: Optional[Settings] = None,
) -> dict:
    """
    Create the betting services sharing one weather client and database.

    Args:
        db: Database manager used by the resolver, poller and volatility loader
        weather: WeatherService instance
        config: Settings override

    Returns:
        Dictionary with all betting components
    """
    from app.services.weather.accuracy import AccuracyService

    config = config or settings
    engine = OddsEngine(config)
    ledger = LedgerWriter()
    accuracy = AccuracyService()

    volatility = VolatilityModel(
        database_summary_loader(db, accuracy, config.VOLATILITY_HISTORY_MONTHS),
        config=config,
    )
    odds = OddsService(weather, volatility, engine, DifficultyRater(config, engine))
    settlement = SettlementEngine(weather, config)
    streaks = StreakBonus(config)
    grader = BetGrader(config, ledger, streaks, engine, accuracy)
    cashout = CashOutService(weather, CashOutValuationModel(config), ledger)

    return {
        'odds_engine': engine,
        'volatility': volatility,
        'odds': odds,
        'placement': BetPlacementService(odds, ledger),
        'settlement': settlement,
        'grader': grader,
        'resolver': BetResolver(db, settlement, grader),
        'cashout': cashout,
        'poller': CashOutPoller(db, cashout, config.CASHOUT_POLL_INTERVAL),
        'accuracy': accuracy,
        'ledger': ledger,
        'streaks': streaks,
    }
