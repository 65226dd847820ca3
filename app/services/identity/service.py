"""
Identity Service

Resolves a session token to a platform operator. Who may trigger a trial
run is decided here; the run coordinator trusts whatever id it is given.
"""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import database
from app.services.identity.exceptions import AuthenticationError, AuthorizationError

OPERATOR_ROLE = "super_admin"

SessionLookup = Callable[[str], Awaitable[Optional[Dict[str, Any]]]]


def parse_bearer_token(header: Optional[str]) -> Optional[str]:
    """'Bearer abc' -> 'abc'; anything else -> None"""
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class SessionIdentityProvider:
    def __init__(
        self,
        lookup: SessionLookup = database.fetch_session,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.lookup = lookup
        self.clock = clock

    async def resolve_operator(self, token: Optional[str]) -> str:
        """
        Resolve a session token to an operator id.

        Raises:
            AuthenticationError: missing, unknown, inactive or expired session
            AuthorizationError: session does not belong to a super admin
        """
        if not token:
            raise AuthenticationError("missing session token")

        session = await self.lookup(token)
        if session is None or not session.get("is_active"):
            raise AuthenticationError("invalid session")

        expires_at = session.get("expires_at")
        if expires_at is None or expires_at <= self.clock():
            raise AuthenticationError("session expired")

        user_id = str(session["user_id"])
        role = session.get("user_role") or ""
        if role != OPERATOR_ROLE:
            raise AuthorizationError(user_id, role)
        return user_id
