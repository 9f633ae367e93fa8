"""
NIMBUS - API Module
FastAPI routes and schemas for the weather-wager engine.
"""

from app.api.routes import api_router

__all__ = ["api_router"]
