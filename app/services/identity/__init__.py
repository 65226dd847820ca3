"""
Identity Service Package
"""

from app.services.identity.service import (
    OPERATOR_ROLE,
    SessionIdentityProvider,
    parse_bearer_token,
)
from app.services.identity.exceptions import (
    AuthenticationError,
    AuthorizationError,
    IdentityServiceError,
)

__all__ = [
    "OPERATOR_ROLE",
    "SessionIdentityProvider",
    "parse_bearer_token",
    "AuthenticationError",
    "AuthorizationError",
    "IdentityServiceError",
]
