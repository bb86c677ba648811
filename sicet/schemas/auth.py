from pydantic import BaseModel, EmailStr, Field
from typing import Literal, Optional


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class MeResponse(BaseModel):
    id: str
    email: EmailStr
    role: str
    status: str


class PasswordRequest(BaseModel):
    """Signup of a pre-registered profile, or a forced password rotation."""

    email: EmailStr
    password: str = Field(min_length=8)


class PreregisterRequest(BaseModel):
    email: EmailStr
    role: Literal["operator", "admin", "referrer"]


class EmailRequest(BaseModel):
    email: EmailStr


class ProfileOut(BaseModel):
    id: str
    email: str
    role: str
    status: str
    created_at: Optional[str] = None
