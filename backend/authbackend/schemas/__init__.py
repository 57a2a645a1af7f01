"""Pydantic schemas for API validation"""

from authbackend.schemas.auth import (
    LoginRequest,
    RegisterRequest,
    RefreshRequest,
    LogoutRequest,
    ChangePasswordRequest,
    TokenPairResponse,
    UserResponse,
)
from authbackend.schemas.response import APIResponse, ErrorResponse, HealthResponse

__all__ = [
    "LoginRequest", "RegisterRequest", "RefreshRequest", "LogoutRequest", "ChangePasswordRequest",
    "TokenPairResponse", "UserResponse",
    "APIResponse", "ErrorResponse", "HealthResponse",
]
