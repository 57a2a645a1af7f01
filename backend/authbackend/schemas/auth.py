"""Request and response schemas for the auth endpoints"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional
from datetime import datetime


class _Request(BaseModel):
    """Closed request shape: unknown fields are rejected at the boundary"""
    model_config = ConfigDict(extra="forbid")


class LoginRequest(_Request):
    """Login request"""
    identifier: str = Field(..., min_length=3, max_length=254)
    password: str = Field(..., min_length=1, max_length=1024)


class RegisterRequest(_Request):
    """Account registration request"""
    identifier: str = Field(..., min_length=3, max_length=254, pattern=r'^[A-Za-z0-9_.@+-]+$')
    password: str = Field(..., min_length=8, max_length=1024)

    @field_validator('identifier')
    @classmethod
    def identifier_lowercase(cls, v):
        """Identifiers are case-insensitive"""
        return v.strip().lower()


class RefreshRequest(_Request):
    """Refresh credential exchange request"""
    refresh_credential: str = Field(..., min_length=1, max_length=4096)


class LogoutRequest(_Request):
    """Logout request"""
    refresh_credential: str = Field(..., min_length=1, max_length=4096)


class ChangePasswordRequest(_Request):
    """Password change request"""
    current_password: str = Field(..., min_length=1, max_length=1024)
    new_password: str = Field(..., min_length=8, max_length=1024)


class TokenPairResponse(BaseModel):
    """Access token and refresh credential pair"""
    access_token: str
    refresh_credential: str
    token_type: str = "bearer"
    expires_in: int


class UserResponse(BaseModel):
    """User response schema"""
    id: str
    identifier: str
    is_active: bool
    created_at: Optional[datetime]
    last_login: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)
