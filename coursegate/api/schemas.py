from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

from coursegate.logging import get_trace_id
from coursegate.service.auth import AuthContext, SignedTokens
from coursegate.storage.models import SessionSummary


class ErrorBody(BaseModel):
    """Error payload with a stable, upper-case error code."""

    code: str = Field(..., pattern="^[A-Z][A-Z_]*$")
    message: str
    details: Optional[Any] = None  # object, array, or null


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    trace_id: Optional[str] = Field(default_factory=get_trace_id)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("email must be a valid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("email must be a valid email address")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("email must be a valid email address")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("email must be a valid email address")
    return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=6, max_length=256)
    device_id: Optional[str] = Field(default=None, max_length=128)
    device_name: Optional[str] = Field(default=None, max_length=120)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshTokenRequest(BaseModel):
    refresh_token: str = Field(..., min_length=10, max_length=2048)


class DeviceResponse(BaseModel):
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class SessionSummaryResponse(BaseModel):
    id: str
    created_at: datetime
    last_accessed_at: datetime
    expires_at: datetime
    device: DeviceResponse

    @classmethod
    def from_summary(cls, summary: SessionSummary) -> "SessionSummaryResponse":
        return cls(
            id=summary.id,
            created_at=summary.created_at,
            last_accessed_at=summary.last_accessed_at,
            expires_at=summary.expires_at,
            device=DeviceResponse(**summary.device.to_dict()),
        )


class TokenResponse(BaseModel):
    token_type: str = "Bearer"
    access_token: str
    expires_in: int
    refresh_token: str
    session: SessionSummaryResponse

    @classmethod
    def from_tokens(cls, tokens: SignedTokens) -> "TokenResponse":
        return cls(
            token_type=tokens.token_type,
            access_token=tokens.access_token,
            expires_in=tokens.expires_in,
            refresh_token=tokens.refresh_token,
            session=SessionSummaryResponse.from_summary(tokens.session),
        )


class IdentityResponse(BaseModel):
    user_id: str
    email: str
    roles: List[str]
    session_id: str

    @classmethod
    def from_context(cls, ctx: AuthContext) -> "IdentityResponse":
        return cls(
            user_id=ctx.user_id,
            email=ctx.email,
            roles=list(ctx.roles),
            session_id=ctx.session_id,
        )


class SessionListResponse(BaseModel):
    sessions: List[SessionSummaryResponse]


class RevokeAllResponse(BaseModel):
    revoked: int
