from __future__ import annotations

import secrets
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

# 48 random bytes, hex encoded: 384 bits of entropy per refresh token
REFRESH_TOKEN_BYTES = 48

# Expired sessions stay readable by refresh token for this long so the
# orchestrator can tell "expired" from "unknown" and revoke explicitly.
EXPIRED_RETENTION = timedelta(days=7)


def new_refresh_token() -> str:
    return secrets.token_hex(REFRESH_TOKEN_BYTES)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DeviceInfo:
    """Descriptive client metadata; never used for authorization."""

    device_id: Optional[str] = None
    device_name: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DeviceInfo":
        data = data or {}
        return cls(
            device_id=data.get("device_id"),
            device_name=data.get("device_name"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
        )


@dataclass
class SessionSummary:
    id: str
    created_at: datetime
    last_accessed_at: datetime
    expires_at: datetime
    device: DeviceInfo = field(default_factory=DeviceInfo)


@dataclass
class Session:
    id: str
    user_id: str
    refresh_token: str
    created_at: datetime
    last_accessed_at: datetime
    expires_at: datetime
    device: DeviceInfo = field(default_factory=DeviceInfo)

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl: timedelta,
        *,
        now: datetime,
        device: DeviceInfo | None = None,
    ) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token=new_refresh_token(),
            created_at=now,
            last_accessed_at=now,
            expires_at=now + ttl,
            device=device or DeviceInfo(),
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def copy(self) -> "Session":
        return replace(self)

    def summary(self) -> SessionSummary:
        """Strip the refresh token and owner before handing a session to callers."""
        return SessionSummary(
            id=self.id,
            created_at=self.created_at,
            last_accessed_at=self.last_accessed_at,
            expires_at=self.expires_at,
            device=self.device,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "refresh_token": self.refresh_token,
            "created_at": self.created_at.isoformat(),
            "last_accessed_at": self.last_accessed_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "device": self.device.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            refresh_token=data["refresh_token"],
            created_at=datetime.fromisoformat(data["created_at"]),
            last_accessed_at=datetime.fromisoformat(data["last_accessed_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            device=DeviceInfo.from_dict(data.get("device")),
        )


@dataclass
class TokenBucket:
    tokens: float
    last_refill_at: float  # milliseconds


@dataclass
class IdempotencyRecord:
    id: str
    cache_key: str
    status_code: int
    body: Any
    headers: Dict[str, str]
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "cache_key": self.cache_key,
            "status_code": self.status_code,
            "body": self.body,
            "headers": self.headers,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IdempotencyRecord":
        return cls(
            id=data["id"],
            cache_key=data["cache_key"],
            status_code=int(data["status_code"]),
            body=data.get("body"),
            headers=dict(data.get("headers") or {}),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )


@dataclass(frozen=True)
class Identity:
    id: str
    email: str
    roles: Tuple[str, ...] = ("student",)
    display_name: Optional[str] = None


@dataclass
class AuditEvent:
    event: str
    occurred_at: datetime
    user_id: Optional[str] = None
    trace_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event,
            "occurred_at": self.occurred_at.isoformat(),
            "user_id": self.user_id,
            "trace_id": self.trace_id,
            "metadata": self.metadata,
        }
