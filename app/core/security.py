"""
NIMBUS - Security
Validation of bearer tokens issued by the upstream auth provider.

The service never issues tokens. It verifies the signature, expiry and
audience of tokens signed with the shared secret and extracts the subject
and role claims.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import jwt

from app.core.config import settings

logger = logging.getLogger(__name__)

ADMIN_ROLES = frozenset({"admin", "service_role"})


@dataclass(frozen=True)
class TokenData:
    """Claims the API cares about"""
    user_id: str
    role: str
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


class SecurityManager:
    """Decodes upstream-issued JWTs"""

    def __init__(
        self,
        secret: Optional[str] = None,
        algorithm: Optional[str] = None,
        audience: Optional[str] = None,
    ):
        self.jwt_secret = secret or settings.JWT_SECRET_KEY
        self.algorithm = algorithm or settings.JWT_ALGORITHM
        self.audience = audience or settings.JWT_AUDIENCE

    def decode_token(self, token: str) -> Optional[Dict[str, Any]]:
        """Decode and validate JWT token; None when invalid or expired"""
        try:
            return jwt.decode(
                token,
                self.jwt_secret,
                algorithms=[self.algorithm],
                audience=self.audience,
            )
        except jwt.ExpiredSignatureError as e:
            logger.warning(f"Token expired: {e}")
            return None
        except jwt.InvalidTokenError as e:
            logger.warning(f"Invalid token: {e}")
            return None

    def token_data(self, token: str) -> Optional[TokenData]:
        payload = self.decode_token(token)
        if not payload or not payload.get("sub"):
            return None

        # Application role lives in app_metadata for hosted auth providers
        app_metadata = payload.get("app_metadata") or {}
        role = app_metadata.get("role") or payload.get("role") or "user"
        return TokenData(
            user_id=str(payload["sub"]),
            role=role,
            email=payload.get("email"),
        )


# Global instance
security_manager = SecurityManager()


def get_security_manager() -> SecurityManager:
    """Get the global security manager instance."""
    return security_manager
