from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass, field
from typing import Any, Sequence, Tuple

from coursegate.logging import get_logger
from coursegate.service.errors import (
    InvalidTokenFormat,
    InvalidTokenPayload,
    InvalidTokenSignature,
)

logger = get_logger(__name__)

TOKEN_HEADER = {"alg": "HS256", "typ": "JWT"}


@dataclass(frozen=True)
class TokenClaims:
    """Identity claims carried by an access token.

    Serialized with JWT-style keys: ``sub``, ``email``, ``roles``,
    ``sessionId``, ``iat`` and ``exp`` (unix seconds).
    """

    subject: str
    session_id: str
    issued_at: int
    expires_at: int
    email: str | None = None
    roles: Tuple[str, ...] = field(default_factory=tuple)

    def to_payload(self) -> dict[str, Any]:
        return {
            "sub": self.subject,
            "email": self.email,
            "roles": list(self.roles),
            "sessionId": self.session_id,
            "iat": self.issued_at,
            "exp": self.expires_at,
        }

    @classmethod
    def from_payload(cls, payload: Any) -> "TokenClaims":
        if not isinstance(payload, dict):
            raise InvalidTokenPayload()
        subject = payload.get("sub")
        session_id = payload.get("sessionId")
        if not isinstance(subject, str) or not subject:
            raise InvalidTokenPayload()
        if not isinstance(session_id, str) or not session_id:
            raise InvalidTokenPayload()
        issued_at = payload.get("iat", 0)
        expires_at = payload.get("exp")
        if not _is_timestamp(issued_at) or not _is_timestamp(expires_at):
            raise InvalidTokenPayload()
        roles = payload.get("roles") or []
        if not isinstance(roles, list) or not all(isinstance(r, str) for r in roles):
            raise InvalidTokenPayload()
        email = payload.get("email")
        if email is not None and not isinstance(email, str):
            raise InvalidTokenPayload()
        return cls(
            subject=subject,
            session_id=session_id,
            issued_at=int(issued_at),
            expires_at=int(expires_at),
            email=email,
            roles=tuple(roles),
        )


def _is_timestamp(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """Signs and verifies compact HS256 tokens.

    The first secret signs; every configured secret is accepted on verify so
    a secret can be rotated without invalidating tokens already in flight.
    Expiry is not checked here.
    """

    def __init__(self, secrets: Sequence[str]) -> None:
        keys = [secret.encode("utf-8") for secret in secrets if secret]
        if not keys:
            raise ValueError("TokenCodec requires at least one secret")
        self._keys: Tuple[bytes, ...] = tuple(keys)

    def _sign(self, key: bytes, signing_input: bytes) -> bytes:
        digest = hmac.new(key, signing_input, hashlib.sha256).digest()
        return encode_segment(digest).encode("ascii")

    def issue(self, claims: TokenClaims) -> str:
        header_enc = encode_segment(json.dumps(TOKEN_HEADER, separators=(",", ":")).encode())
        payload_enc = encode_segment(
            json.dumps(claims.to_payload(), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = self._sign(self._keys[0], signing_input.encode("utf-8"))
        return f"{signing_input}.{signature.decode('ascii')}"

    def verify(self, token: str) -> TokenClaims:
        """Return the claims of a correctly signed token.

        Raises:
            InvalidTokenFormat: not three segments, or an unusable header
            InvalidTokenSignature: no configured secret produced the signature
            InvalidTokenPayload: payload is not a claims object
        """
        if not isinstance(token, str):
            raise InvalidTokenFormat()
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise InvalidTokenFormat()
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(decode_segment(header_b64))
        except (binascii.Error, ValueError):
            logger.warning("token_header_decode_failed")
            raise InvalidTokenFormat() from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "token_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenFormat()

        try:
            signing_input = f"{header_b64}.{payload_b64}".encode("utf-8")
            supplied = sig_b64.encode("utf-8")
        except UnicodeEncodeError:
            raise InvalidTokenFormat() from None

        matched = False
        for key in self._keys:
            # Compare against every secret without early exit
            matched |= hmac.compare_digest(self._sign(key, signing_input), supplied)
        if not matched:
            raise InvalidTokenSignature()

        try:
            payload = json.loads(decode_segment(payload_b64))
        except (binascii.Error, ValueError):
            raise InvalidTokenPayload() from None
        return TokenClaims.from_payload(payload)
