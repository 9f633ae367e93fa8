"""
NIMBUS - Domain Exceptions
Errors raised by the odds, settlement and cash-out services. Each carries
the HTTP status the API layer answers with.
"""

from typing import Any, Dict, Optional


class NimbusError(Exception):
    """Base class for domain errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.message, **self.details}


class PrimarySourceUnavailableError(NimbusError):
    """The primary weather provider could not be reached; settlement cannot run."""
    status_code = 503
    code = "primary_source_unavailable"


class WeatherProviderError(NimbusError):
    """A single provider request failed."""
    status_code = 502
    code = "weather_provider_error"


class BetNotFoundError(NimbusError):
    status_code = 404
    code = "bet_not_found"


class BetNotPendingError(NimbusError):
    """The bet was settled or cashed out before this action was applied."""
    status_code = 409
    code = "bet_not_pending"


class CashOutUnavailableError(NimbusError):
    status_code = 409
    code = "cashout_unavailable"


class InvalidCashOutError(NimbusError):
    status_code = 400
    code = "invalid_cashout"


class UserNotFoundError(NimbusError):
    status_code = 404
    code = "user_not_found"


class InsufficientBalanceError(NimbusError):
    status_code = 400
    code = "insufficient_balance"


class InvalidBetError(NimbusError):
    status_code = 400
    code = "invalid_bet"


class VerificationEntryNotFoundError(NimbusError):
    status_code = 404
    code = "verification_entry_not_found"


class AuditTrailError(NimbusError):
    """An administrative change could not be recorded in the audit trail."""
    status_code = 500
    code = "audit_trail_error"


class LedgerInvariantError(NimbusError):
    status_code = 500
    code = "ledger_invariant_violation"
