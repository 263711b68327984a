from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol, Tuple

from coursegate.logging import get_logger
from coursegate.service.audit import AuditService
from coursegate.service.errors import (
    AccessTokenExpired,
    AccountNotFound,
    AuthenticationRequired,
    InvalidCredentials,
    InvalidRefreshToken,
    RefreshTokenExpired,
    SessionNotActive,
    SessionNotFound,
)
from coursegate.service.identity import IdentityDirectory
from coursegate.service.tokens import TokenClaims, TokenCodec
from coursegate.storage.models import (
    DeviceInfo,
    Identity,
    Session,
    SessionSummary,
    utcnow,
)

logger = get_logger(__name__)


class SessionStore(Protocol):
    async def create(
        self, user_id: str, ttl: timedelta, device: DeviceInfo | None = None
    ) -> Session: ...

    async def get(self, session_id: str) -> Optional[Session]: ...

    async def find_by_refresh_token(self, refresh_token: str) -> Optional[Session]: ...

    async def rotate(self, session_id: str, ttl: timedelta) -> Optional[Session]: ...

    async def touch(self, session_id: str) -> Optional[Session]: ...

    async def revoke(self, session_id: str) -> None: ...

    async def revoke_user_sessions(self, user_id: str) -> int: ...

    async def list_by_user(self, user_id: str) -> List[Session]: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    roles: Tuple[str, ...]
    session_id: str

    def has_role(self, *roles: str) -> bool:
        return any(role in self.roles for role in roles)


@dataclass
class SignedTokens:
    access_token: str
    expires_in: int
    refresh_token: str
    session: SessionSummary
    token_type: str = "Bearer"


def extract_bearer(header: Optional[str]) -> Optional[str]:
    """Return the credential of an ``Authorization: Bearer <token>`` header.

    The scheme name is matched case-insensitively.
    """
    if not header:
        return None
    scheme, _, credential = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    credential = credential.strip()
    return credential or None


class AuthService:
    """Login, refresh, access-token verification and session revocation.

    This is the only component that reads or writes the session store.
    Session states move ACTIVE -> ACTIVE on rotation and end in REVOKED,
    either explicitly or when expiry is noticed at use time.
    """

    def __init__(
        self,
        sessions: SessionStore,
        codec: TokenCodec,
        identities: IdentityDirectory,
        audit: AuditService,
        *,
        access_token_ttl: timedelta = timedelta(minutes=15),
        session_ttl: timedelta = timedelta(days=30),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sessions = sessions
        self.codec = codec
        self.identities = identities
        self.audit = audit
        self.access_token_ttl = access_token_ttl
        self.session_ttl = session_ttl
        self._clock = clock
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    async def _issue_tokens(self, identity: Identity, session: Session) -> SignedTokens:
        touched = await self.sessions.touch(session.id)
        if touched is None:
            raise SessionNotActive()
        issued_at = int(self._now().timestamp())
        expires_in = int(self.access_token_ttl.total_seconds())
        claims = TokenClaims(
            subject=identity.id,
            session_id=touched.id,
            issued_at=issued_at,
            expires_at=issued_at + expires_in,
            email=identity.email,
            roles=identity.roles,
        )
        return SignedTokens(
            access_token=self.codec.issue(claims),
            expires_in=expires_in,
            refresh_token=touched.refresh_token,
            session=touched.summary(),
        )

    async def login(
        self,
        email: str,
        password: str,
        *,
        device: DeviceInfo | None = None,
        trace_id: str | None = None,
    ) -> SignedTokens:
        """Exchange credentials for a new session and token pair.

        Raises:
            InvalidCredentials: email unknown or password mismatch
        """
        identity = await self.identities.validate_credentials(email, password)
        if identity is None:
            self.logger.info("login_failed")
            await self.audit.record(
                "auth.login.failed",
                trace_id=trace_id,
                metadata={
                    "device_id": device.device_id if device else None,
                    "ip_address": device.ip_address if device else None,
                },
            )
            raise InvalidCredentials()

        session = await self.sessions.create(identity.id, self.session_ttl, device)
        tokens = await self._issue_tokens(identity, session)
        self.logger.info("login_succeeded", user_id=identity.id, session_id=session.id)
        await self.audit.record(
            "auth.login",
            user_id=identity.id,
            trace_id=trace_id,
            metadata={
                "session_id": session.id,
                "device_id": session.device.device_id,
                "ip_address": session.device.ip_address,
            },
        )
        return tokens

    async def refresh(self, refresh_token: str, *, trace_id: str | None = None) -> SignedTokens:
        """Rotate the session behind ``refresh_token`` and issue a new access token.

        Raises:
            InvalidRefreshToken: token is not indexed (unknown or already rotated)
            RefreshTokenExpired: session expired; it is revoked
            AccountNotFound: owner no longer exists; the session is revoked
            SessionNotActive: session disappeared during rotation
        """
        session = await self.sessions.find_by_refresh_token(refresh_token)
        if session is None:
            raise InvalidRefreshToken()

        if session.is_expired(self._now()):
            await self.sessions.revoke(session.id)
            self.logger.info("refresh_token_expired", session_id=session.id)
            raise RefreshTokenExpired()

        identity = await self.identities.find_by_id(session.user_id)
        if identity is None:
            await self.sessions.revoke(session.id)
            self.logger.warning("refresh_account_missing", session_id=session.id)
            raise AccountNotFound()

        rotated = await self.sessions.rotate(session.id, self.session_ttl)
        if rotated is None:
            raise SessionNotActive()

        tokens = await self._issue_tokens(identity, rotated)
        self.logger.info("session_rotated", user_id=identity.id, session_id=rotated.id)
        await self.audit.record(
            "auth.refresh",
            user_id=identity.id,
            trace_id=trace_id,
            metadata={"session_id": rotated.id},
        )
        return tokens

    async def verify_access_token(self, token: str) -> AuthContext:
        """Resolve a bearer token to the identity it was issued for.

        Raises:
            InvalidToken: malformed token or bad signature
            AccessTokenExpired: token lifetime elapsed
            SessionNotActive: session gone or owned by another subject
            AccountNotFound: owner no longer exists
        """
        claims = self.codec.verify(token)
        if claims.expires_at <= self._now().timestamp():
            raise AccessTokenExpired()

        session = await self.sessions.touch(claims.session_id)
        if session is None or session.user_id != claims.subject:
            raise SessionNotActive()

        identity = await self.identities.find_by_id(claims.subject)
        if identity is None:
            raise AccountNotFound()

        return AuthContext(
            user_id=identity.id,
            email=identity.email,
            roles=identity.roles,
            session_id=session.id,
        )

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = extract_bearer(authorization)
        if token is None:
            raise AuthenticationRequired()
        return await self.verify_access_token(token)

    async def list_sessions(self, user_id: str) -> List[SessionSummary]:
        sessions = await self.sessions.list_by_user(user_id)
        return [sess.summary() for sess in sessions]

    async def revoke_session(
        self, user_id: str, session_id: str, *, trace_id: str | None = None
    ) -> None:
        """Revoke one of the caller's sessions.

        Sessions owned by someone else are reported as not found so their
        existence is never confirmed.

        Raises:
            SessionNotFound: no live session with this id belongs to ``user_id``
        """
        session = await self.sessions.get(session_id)
        if session is None or session.user_id != user_id:
            raise SessionNotFound()
        await self.sessions.revoke(session_id)
        self.logger.info("session_revoked", user_id=user_id, session_id=session_id)
        await self.audit.record(
            "auth.session.revoked",
            user_id=user_id,
            trace_id=trace_id,
            metadata={"session_id": session_id},
        )

    async def revoke_all_sessions(self, user_id: str, *, trace_id: str | None = None) -> int:
        revoked = await self.sessions.revoke_user_sessions(user_id)
        self.logger.info("sessions_revoked_all", user_id=user_id, count=revoked)
        await self.audit.record(
            "auth.sessions.revoked_all",
            user_id=user_id,
            trace_id=trace_id,
            metadata={"count": revoked},
        )
        return revoked
