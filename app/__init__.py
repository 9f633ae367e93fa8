"""
NIMBUS - Weather-Wager Engine

Users stake points or cash on tomorrow's weather. This package holds:
- Odds from forecast probability, forecast volatility and time decay
- Two-source weather verification with dispute resolution
- Grading with win streaks, insurance and parlays
- Dynamic and automatic cash-out
- Background settlement scheduling
"""

__version__ = "1.0.0"
__author__ = "Nimbus Team"
__description__ = "Weather-wager engine: odds, settlement and cash-out"


def get_version() -> str:
    """Return the package version."""
    return __version__
