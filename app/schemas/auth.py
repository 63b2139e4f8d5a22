"""
Pydantic schemas for /auth.

Signup and login answer with the same SessionResponse, so a client can
store the token and its account id the same way after either call.
"""

import uuid

from pydantic import BaseModel, EmailStr, Field


class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    currency: str = Field(default="USD", min_length=3, max_length=3, description="ISO 4217 code")


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class SessionResponse(BaseModel):
    user_id: uuid.UUID
    account_id: uuid.UUID | None = Field(description="Billed account; null for admins")
    email: str
    user_type: str
    token: str
    token_type: str = "bearer"
    expires_in: int = Field(description="Token lifetime in seconds")
