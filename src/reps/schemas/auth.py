"""Pydantic schemas for sign-in and device authorization.

Learn: Request bodies are validated here, before any handler runs, so
malformed input never reaches the store (FastAPI answers 422).
"""

from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field


# ─── Magic link ───────────────────────────────────────────


class MagicLinkRequest(BaseModel):
    email: EmailStr


class MessageResponse(BaseModel):
    message: str


# ─── Device flow ──────────────────────────────────────────


class DeviceInitiateResponse(BaseModel):
    user_code: str
    device_code: str
    verification_uri: str
    expires_in: int
    interval: int


class DevicePollRequest(BaseModel):
    device_code: str = Field(min_length=1, max_length=128)


class DevicePollResponse(BaseModel):
    status: Literal["pending", "approved", "denied", "expired"]
    session_token: Optional[str] = None


class UserCodeRequest(BaseModel):
    """Human-typed code. Case, spaces and hyphens are forgiven later."""
    user_code: str = Field(min_length=1, max_length=20)
