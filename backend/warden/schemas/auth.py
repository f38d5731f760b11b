"""Authentication schemas."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from warden.services.credentials import MAX_PASSWORD_BYTES


class UserRegister(BaseModel):
    """User registration request."""

    email: EmailStr
    password: str = Field(..., min_length=8, max_length=72)
    first_name: str | None = Field(None, max_length=100)
    last_name: str | None = Field(None, max_length=100)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded")
        return value


class UserLogin(BaseModel):
    """User login request."""

    email: str
    password: str


class UserProfileUpdate(BaseModel):
    """Profile changes. Email and password are not editable here."""

    first_name: str | None = Field(None, max_length=100)
    last_name: str | None = Field(None, max_length=100)


class Token(BaseModel):
    """Token response. The refresh token travels in an HttpOnly cookie."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class UserResponse(BaseModel):
    """User info response."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    is_active: bool
    is_verified: bool
    created_at: datetime


class MeResponse(BaseModel):
    user: UserResponse
    roles: list[str]
    permissions: list[str]


class MessageResponse(BaseModel):
    """Generic message response."""

    message: str
