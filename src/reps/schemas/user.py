"""Pydantic schemas for users, their sessions and admin views."""

import uuid
from datetime import datetime
from typing import Literal, Optional
from zoneinfo import available_timezones

from pydantic import BaseModel, Field, field_validator


# ─── User ─────────────────────────────────────────────────


class UserRead(BaseModel):
    id: uuid.UUID
    email: str
    display_name: Optional[str]
    email_verified: bool
    is_admin: bool
    timezone: str
    theme: str
    created_at: datetime

    model_config = {"from_attributes": True}


class ProfileUpdate(BaseModel):
    display_name: Optional[str] = Field(None, max_length=100)
    timezone: Optional[str] = Field(None, max_length=100)
    theme: Optional[Literal["dark", "light", "system"]] = None

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in available_timezones():
            raise ValueError("Invalid timezone")
        return v

    def changes(self) -> dict:
        """Fields the client sent. Only display_name may be cleared to null."""
        sent = self.model_dump(exclude_unset=True)
        return {k: v for k, v in sent.items() if v is not None or k == "display_name"}


# ─── Sessions ─────────────────────────────────────────────


class SessionRead(BaseModel):
    """A session as shown to its owner. Never carries the token."""
    id: uuid.UUID
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    current: bool = False


# ─── Admin ────────────────────────────────────────────────


class AdminUserRead(UserRead):
    is_blocked: bool
    last_active_at: Optional[datetime] = None


class AdminUserUpdate(BaseModel):
    is_admin: Optional[bool] = None
    is_blocked: Optional[bool] = None


class AdminStats(BaseModel):
    total_users: int
    active_sessions: int
