"""API dependencies - service wiring and authentication"""

from functools import lru_cache
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from authbackend.core.database import get_db
from authbackend.core.exceptions import AuthenticationError, ResourceNotFoundError, SessionInvalidError
from authbackend.core.tokens import build_token_codec
from authbackend.models.user import User
from authbackend.services.auth_service import AuthService
from authbackend.services.credential_store import credential_store
from authbackend.services.rotation_engine import build_rotation_engine
from authbackend.services.session_cache import build_session_cache

# HTTP Bearer token scheme
security = HTTPBearer(auto_error=False)


@lru_cache()
def get_auth_service() -> AuthService:
    """Process-wide auth service built from settings"""
    codec = build_token_codec()
    cache = build_session_cache()
    return AuthService(build_rotation_engine(codec, cache))


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
) -> User:
    """
    Get current authenticated user from the bearer access token

    Raises:
        AuthenticationError: Missing header
        ReauthenticationRequired: Token invalid or expired, or account gone
    """
    if credentials is None:
        raise AuthenticationError("Missing bearer token")

    claims = auth.authenticate(credentials.credentials)

    try:
        user = credential_store.get(db, claims.subject)
    except ResourceNotFoundError:
        raise SessionInvalidError()

    if not user.is_active:
        raise SessionInvalidError()

    return user
