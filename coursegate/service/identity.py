from __future__ import annotations

import json
import threading
import uuid
from pathlib import Path
from typing import Dict, Iterable, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from coursegate.logging import get_logger
from coursegate.storage.models import Identity

logger = get_logger(__name__)


class IdentityDirectory(Protocol):
    async def validate_credentials(self, email: str, password: str) -> Optional[Identity]:
        ...

    async def find_by_id(self, user_id: str) -> Optional[Identity]:
        ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


class MemoryIdentityDirectory:
    """Identities with argon2id password hashes, held in process memory."""

    def __init__(self, *, hasher: PasswordHasher | None = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._by_id: Dict[str, Identity] = {}
        self._by_email: Dict[str, str] = {}
        self._hashes: Dict[str, str] = {}
        self._lock = threading.RLock()
        # Verified against unknown emails so both paths cost one hash check
        self._dummy_hash = self._pwd_hasher.hash(uuid.uuid4().hex)

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def add_user(
        self,
        email: str,
        password: str,
        *,
        roles: Iterable[str] = ("student",),
        user_id: str | None = None,
        display_name: str | None = None,
    ) -> Identity:
        return self.add_user_with_hash(
            email,
            self.hash_password(password),
            roles=roles,
            user_id=user_id,
            display_name=display_name,
        )

    def add_user_with_hash(
        self,
        email: str,
        password_hash: str,
        *,
        roles: Iterable[str] = ("student",),
        user_id: str | None = None,
        display_name: str | None = None,
    ) -> Identity:
        normalized = normalize_email(email)
        with self._lock:
            if normalized in self._by_email:
                raise ValueError(f"identity already exists for {normalized}")
            identity = Identity(
                id=user_id or str(uuid.uuid4()),
                email=normalized,
                roles=tuple(roles),
                display_name=display_name,
            )
            self._by_id[identity.id] = identity
            self._by_email[normalized] = identity.id
            self._hashes[identity.id] = password_hash
            return identity

    def remove_user(self, user_id: str) -> None:
        with self._lock:
            identity = self._by_id.pop(user_id, None)
            self._hashes.pop(user_id, None)
            if identity is not None:
                self._by_email.pop(identity.email, None)

    def load_seed_file(self, path: str | Path) -> int:
        """Load identities from a JSON list of seed entries.

        Each entry holds ``email`` and ``password_hash`` and optionally ``id``,
        ``roles`` and ``display_name``. Returns the number of entries loaded.
        """
        entries = json.loads(Path(path).read_text())
        if not isinstance(entries, list):
            raise ValueError("identity seed file must contain a JSON list")
        for entry in entries:
            self.add_user_with_hash(
                entry["email"],
                entry["password_hash"],
                roles=entry.get("roles") or ("student",),
                user_id=entry.get("id"),
                display_name=entry.get("display_name"),
            )
        logger.info("identity_seed_loaded", path=str(path), count=len(entries))
        return len(entries)

    async def validate_credentials(self, email: str, password: str) -> Optional[Identity]:
        with self._lock:
            user_id = self._by_email.get(normalize_email(email))
            stored_hash = self._hashes.get(user_id) if user_id else None
            identity = self._by_id.get(user_id) if user_id else None
        if stored_hash is None or identity is None:
            try:
                self._pwd_hasher.verify(self._dummy_hash, password)
            except VerificationError:
                pass
            return None
        try:
            self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            logger.info("password_verification_failed", user_id=identity.id)
            return None
        return identity

    async def find_by_id(self, user_id: str) -> Optional[Identity]:
        with self._lock:
            return self._by_id.get(user_id)
