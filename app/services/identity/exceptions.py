"""
Identity Service Domain Exceptions
"""


class IdentityServiceError(Exception):
    """Base exception for identity errors"""
    pass


class AuthenticationError(IdentityServiceError):
    """Raised when no valid session backs the request (HTTP 401)"""
    pass


class AuthorizationError(IdentityServiceError):
    """Raised when the session is valid but not a platform operator (HTTP 403)"""

    def __init__(self, user_id: str, role: str):
        super().__init__(f"user={user_id} role={role} is not allowed to trigger trial checks")
        self.user_id = user_id
        self.role = role
