"""Custom exception classes for the application"""

from typing import Optional, Dict, Any


# Every failure that should send the client back to the login screen shares
# this message so responses never reveal which check failed.
REAUTHENTICATE_MESSAGE = "Session is no longer valid. Please sign in again."


class BaseAPIException(Exception):
    """Base exception for all API errors"""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
        code: str = "internal_error",
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.code = code
        super().__init__(self.message)


# Authentication Errors
class AuthenticationError(BaseAPIException):
    """Base authentication error"""
    def __init__(self, message: str = "Authentication failed", code: str = "authentication_failed"):
        super().__init__(message, status_code=401, code=code)


class InvalidCredentialsError(AuthenticationError):
    """Wrong password or unknown identity, reported identically"""
    def __init__(self):
        super().__init__("Invalid identifier or password", code="invalid_credentials")


class ReauthenticationRequired(AuthenticationError):
    """Refresh or access credential can no longer be used"""

    reason = "reauthenticate"

    def __init__(self):
        super().__init__(REAUTHENTICATE_MESSAGE, code="reauthentication_required")


class SessionInvalidError(ReauthenticationRequired):
    """Refresh family is expired, revoked or unknown"""
    reason = "session_invalid"


class ReplayDetectedError(ReauthenticationRequired):
    """Superseded refresh credential presented, or a rotation race was lost"""
    reason = "replay_detected"


class MalformedTokenError(ReauthenticationRequired):
    """Token could not be decoded or lacks required claims"""
    reason = "malformed_token"


class TokenInvalidError(ReauthenticationRequired):
    """Token signature, key id or type does not check out"""
    reason = "invalid_token"


class TokenExpiredError(ReauthenticationRequired):
    """Token expiry has passed"""
    reason = "token_expired"


# Infrastructure Errors
class ServiceUnavailableError(BaseAPIException):
    """Backing service failed; the caller may retry with backoff"""
    def __init__(self, message: str = "Service temporarily unavailable"):
        super().__init__(message, status_code=503, code="service_unavailable")


class StoreUnavailableError(ServiceUnavailableError):
    """Credential store could not be reached in time"""


class CacheUnavailableError(ServiceUnavailableError):
    """Session cache could not be reached in time"""


# Resource Errors
class ResourceNotFoundError(BaseAPIException):
    """Resource not found"""
    def __init__(self, resource: str):
        super().__init__(f"{resource} not found", status_code=404, code="not_found")


class ResourceAlreadyExistsError(BaseAPIException):
    """Resource already exists"""
    def __init__(self, resource: str):
        super().__init__(f"{resource} already exists", status_code=409, code="conflict")


class DuplicateIdentifierError(ResourceAlreadyExistsError):
    """Identifier already registered"""
    def __init__(self):
        super().__init__("Account")


class RateLimitExceededError(BaseAPIException):
    """Rate limit exceeded"""
    def __init__(self, message: str = "Rate limit exceeded. Please try again later."):
        super().__init__(message, status_code=429, code="rate_limited")
