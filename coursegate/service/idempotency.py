from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, Optional, Protocol

from coursegate.storage.models import IdempotencyRecord

IDEMPOTENCY_HEADER = "Idempotency-Key"
REPLAY_HEADER = "X-Idempotent-Replay"
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
IDEMPOTENCY_TTL_SECONDS = 60 * 60 * 24
MAX_IDEMPOTENCY_KEY_LENGTH = 255


def build_cache_key(
    idempotency_key: str,
    method: str,
    path: str,
    user_id: Optional[str] = None,
) -> str:
    """Derive the storage key for one client request.

    Fields are JSON encoded as a list before hashing, so no client-supplied
    value can shift a field boundary and requests that differ in any field
    never share a cached response.
    """
    encoded = json.dumps([idempotency_key, method.upper(), path, user_id or None])
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class IdempotencyStore(Protocol):
    async def get(self, cache_key: str) -> Optional[IdempotencyRecord]:
        ...

    async def save(
        self,
        cache_key: str,
        status_code: int,
        body: Any,
        headers: Dict[str, str],
    ) -> IdempotencyRecord:
        ...

    async def claim(self, cache_key: str) -> bool:
        """Mark ``cache_key`` in flight; False when another request holds it."""
        ...

    async def release(self, cache_key: str) -> None:
        ...
