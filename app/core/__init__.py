"""
NIMBUS - Core Module
Configuration, persistence, caching, security and domain errors.
"""

from app.core.config import Settings, get_settings, settings
from app.core.database import (
    Base,
    DatabaseManager,
    db_manager,
    init_db,
    get_database_manager,
)
from app.core.cache import (
    CachePrefix,
    CircuitBreaker,
    CircuitBreakerState,
    TTLCache,
)
from app.core.security import (
    SecurityManager,
    security_manager,
    TokenData,
)
from app.core.exceptions import NimbusError

__all__ = [
    # Config
    "Settings",
    "get_settings",
    "settings",

    # Database
    "Base",
    "DatabaseManager",
    "db_manager",
    "init_db",
    "get_database_manager",

    # Cache
    "CachePrefix",
    "CircuitBreaker",
    "CircuitBreakerState",
    "TTLCache",

    # Security
    "SecurityManager",
    "security_manager",
    "TokenData",

    # Errors
    "NimbusError",
]
