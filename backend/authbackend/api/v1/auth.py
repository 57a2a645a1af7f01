"""Authentication routes"""

from fastapi import APIRouter, Depends, status, Request
from sqlalchemy.orm import Session

from authbackend.api.deps import client_ip, get_auth_service, get_current_user
from authbackend.config import settings
from authbackend.core.database import get_db
from authbackend.core.exceptions import RateLimitExceededError
from authbackend.models.user import User
from authbackend.schemas.auth import (
    ChangePasswordRequest,
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    RegisterRequest,
    TokenPairResponse,
    UserResponse,
)
from authbackend.schemas.response import APIResponse, ErrorResponse
from authbackend.services.auth_service import AuthService
from authbackend.services.rate_limiter import rate_limiter
from authbackend.services.rotation_engine import TokenPair

router = APIRouter(
    responses={
        401: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    }
)


def _pair_response(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_credential=pair.refresh_credential,
        token_type="bearer",
        expires_in=pair.expires_in,
    )


@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def register(
    body: RegisterRequest,
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
):
    """Create an account"""
    ip = client_ip(request)
    if not rate_limiter.allow(f"register:hour:{ip}", settings.REGISTER_RATE_LIMIT_PER_HOUR, 3600):
        raise RateLimitExceededError("Too many registrations. Please try again later.")

    user = auth.register(db, body.identifier, body.password, ip_address=ip)
    return UserResponse.model_validate(user)


@router.post("/login", response_model=TokenPairResponse, status_code=status.HTTP_200_OK)
def login(
    credentials: LoginRequest,
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
):
    """
    Login endpoint - authenticate and return an access/refresh pair

    Args:
        credentials: Identifier and password
        db: Database session

    Returns:
        Access token and refresh credential
    """
    ip = client_ip(request)
    user_key = credentials.identifier.strip().lower()
    per_min_key = f"login:min:{ip}:{user_key}"
    per_hour_key = f"login:hour:{ip}:{user_key}"
    if not rate_limiter.allow(per_min_key, settings.LOGIN_RATE_LIMIT_PER_MINUTE, 60):
        raise RateLimitExceededError("Too many login attempts. Please wait a minute.")
    if not rate_limiter.allow(per_hour_key, settings.LOGIN_RATE_LIMIT_PER_HOUR, 3600):
        raise RateLimitExceededError("Too many login attempts. Please try again later.")

    pair = auth.login(db, credentials.identifier, credentials.password)
    return _pair_response(pair)


@router.post("/refresh", response_model=TokenPairResponse)
def refresh(
    body: RefreshRequest,
    request: Request,
    auth: AuthService = Depends(get_auth_service),
):
    """
    Exchange a refresh credential for a new pair

    The presented credential is spent; presenting it again revokes the
    whole session family.
    """
    ip = client_ip(request)
    if not rate_limiter.allow(f"refresh:min:{ip}", settings.RATE_LIMIT_PER_MINUTE, 60):
        raise RateLimitExceededError("Too many refresh attempts. Slow down.")
    if not rate_limiter.allow(f"refresh:hour:{ip}", settings.RATE_LIMIT_PER_HOUR, 3600):
        raise RateLimitExceededError("Too many refresh attempts. Try later.")

    pair = auth.refresh(body.refresh_credential)
    return _pair_response(pair)


@router.post("/logout", response_model=APIResponse, status_code=status.HTTP_200_OK)
def logout(
    body: LogoutRequest,
    auth: AuthService = Depends(get_auth_service),
):
    """Logout endpoint - revoke the refresh family"""
    auth.logout(body.refresh_credential)
    return APIResponse(message="Logged out successfully")


@router.get("/me", response_model=UserResponse)
def get_current_user_info(
    current_user: User = Depends(get_current_user)
):
    """Get current user information"""
    return UserResponse.model_validate(current_user)


@router.post("/password", response_model=APIResponse)
def change_password(
    body: ChangePasswordRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
):
    """Change password and sign out every session of the account"""
    revoked = auth.change_password(
        db,
        current_user.id,
        body.current_password,
        body.new_password,
        ip_address=client_ip(request),
    )
    return APIResponse(message="Password changed", data={"revoked_sessions": revoked})


@router.delete("/me", response_model=APIResponse)
def remove_account(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
):
    """Delete the current account and all of its sessions"""
    revoked = auth.remove_account(db, current_user.id, ip_address=client_ip(request))
    return APIResponse(message="Account removed", data={"revoked_sessions": revoked})
