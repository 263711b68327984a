from __future__ import annotations

import threading
import time
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from coursegate.logging import get_logger
from coursegate.service.rate_limit import (
    DEFAULT_POLICY,
    RateLimitDecision,
    RateLimitPolicy,
    take_token,
)
from coursegate.storage.models import (
    EXPIRED_RETENTION,
    DeviceInfo,
    IdempotencyRecord,
    Session,
    TokenBucket,
    new_refresh_token,
    utcnow,
)

Clock = Callable[[], datetime]


class MemorySessionStore:
    """In-process session store.

    The primary map, the refresh-token index and the per-user index are only
    mutated while holding ``_data_lock``, so readers never observe a session
    whose old and new refresh tokens are both (or neither) indexed. Callers
    receive copies; mutating a returned session has no effect on the store.
    """

    def __init__(
        self, *, clock: Clock = utcnow, sweep_interval: timedelta = timedelta(minutes=1)
    ) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._last_sweep: Optional[datetime] = None
        self.sessions: Dict[str, Session] = {}
        self._by_refresh: Dict[str, str] = {}
        self._by_user: Dict[str, Set[str]] = {}
        self._data_lock = threading.RLock()

    def _index(self, sess: Session) -> None:
        self.sessions[sess.id] = sess
        self._by_refresh[sess.refresh_token] = sess.id
        self._by_user.setdefault(sess.user_id, set()).add(sess.id)

    def _drop(self, session_id: str) -> Optional[Session]:
        sess = self.sessions.pop(session_id, None)
        if sess is None:
            return None
        self._by_refresh.pop(sess.refresh_token, None)
        owned = self._by_user.get(sess.user_id)
        if owned is not None:
            owned.discard(session_id)
            if not owned:
                self._by_user.pop(sess.user_id, None)
        return sess

    def _live(self, session_id: str, now: datetime) -> Optional[Session]:
        sess = self.sessions.get(session_id)
        if sess is None:
            return None
        if sess.is_expired(now):
            self._drop(session_id)
            self.logger.debug("session_expired_purged", session_id=session_id)
            return None
        return sess

    def _sweep(self, now: datetime) -> None:
        if self._last_sweep is not None and now - self._last_sweep < self._sweep_interval:
            return
        self._last_sweep = now
        # Expired sessions stay findable by refresh token until retention ends
        cutoff = now - EXPIRED_RETENTION
        expired = [sid for sid, sess in self.sessions.items() if sess.is_expired(cutoff)]
        for sid in expired:
            self._drop(sid)
        if expired:
            self.logger.debug("sessions_expired_swept", count=len(expired))

    async def create(
        self, user_id: str, ttl: timedelta, device: DeviceInfo | None = None
    ) -> Session:
        with self._data_lock:
            now = self._clock()
            self._sweep(now)
            sess = Session.new(user_id, ttl, now=now, device=device)
            while sess.refresh_token in self._by_refresh:
                sess.refresh_token = new_refresh_token()
            self._index(sess)
            return sess.copy()

    async def get(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self._live(session_id, self._clock())
            return sess.copy() if sess else None

    async def find_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        """Look up by refresh token; expired sessions are returned too."""
        with self._data_lock:
            session_id = self._by_refresh.get(refresh_token)
            if session_id is None:
                return None
            sess = self.sessions.get(session_id)
            return sess.copy() if sess else None

    async def rotate(self, session_id: str, ttl: timedelta) -> Optional[Session]:
        with self._data_lock:
            now = self._clock()
            sess = self._live(session_id, now)
            if sess is None:
                return None
            self._by_refresh.pop(sess.refresh_token, None)
            token = new_refresh_token()
            while token in self._by_refresh:
                token = new_refresh_token()
            sess.refresh_token = token
            sess.expires_at = now + ttl
            sess.last_accessed_at = now
            self._by_refresh[token] = sess.id
            return sess.copy()

    async def touch(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            now = self._clock()
            sess = self._live(session_id, now)
            if sess is None:
                return None
            sess.last_accessed_at = now
            return sess.copy()

    async def revoke(self, session_id: str) -> None:
        with self._data_lock:
            self._drop(session_id)

    async def revoke_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = list(self._by_user.get(user_id, ()))
            for sid in stale:
                self._drop(sid)
            return len(stale)

    async def list_by_user(self, user_id: str) -> List[Session]:
        with self._data_lock:
            now = self._clock()
            live: List[Session] = []
            for sid in list(self._by_user.get(user_id, ())):
                sess = self._live(sid, now)
                if sess is not None:
                    live.append(sess)
            live.sort(key=lambda s: s.last_accessed_at, reverse=True)
            return [sess.copy() for sess in live]


class MemoryRateLimiter:
    """Token buckets held in process memory.

    Buckets are kept in least-recently-used order. A bucket idle for a full
    window has refilled to capacity, so it is dropped on the next sweep with
    no change in behavior; ``max_keys`` caps the map beyond that.
    """

    def __init__(
        self,
        *,
        default_policy: RateLimitPolicy = DEFAULT_POLICY,
        max_keys: int = 100_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.logger = get_logger(__name__)
        self.default_policy = default_policy
        self.max_keys = max_keys
        self._clock = clock
        self._buckets: "OrderedDict[str, Tuple[TokenBucket, int]]" = OrderedDict()
        self._lock = threading.Lock()

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _evict(self, now_ms: float) -> None:
        while self._buckets:
            key, (bucket, window_ms) = next(iter(self._buckets.items()))
            if now_ms - bucket.last_refill_at < window_ms:
                break
            self._buckets.popitem(last=False)
        evicted = 0
        while len(self._buckets) > self.max_keys:
            self._buckets.popitem(last=False)
            evicted += 1
        if evicted:
            self.logger.warning("rate_limit_buckets_evicted", count=evicted, max_keys=self.max_keys)

    async def consume(
        self, key: str, policy: RateLimitPolicy | None = None
    ) -> RateLimitDecision:
        policy = policy or self.default_policy
        with self._lock:
            now_ms = self._now_ms()
            self._evict(now_ms)
            entry = self._buckets.get(key)
            if entry is None:
                bucket = TokenBucket(tokens=float(policy.capacity), last_refill_at=now_ms)
            else:
                bucket = entry[0]
            decision = take_token(bucket, now_ms, policy)
            self._buckets[key] = (bucket, policy.window_ms)
            self._buckets.move_to_end(key)
            if len(self._buckets) > self.max_keys:
                self._evict(now_ms)
            return decision

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)


class MemoryIdempotencyStore:
    """Completed responses keyed by cache key.

    Expired records are dropped on read and swept from the front of the map on
    every write, so memory stays bounded by the traffic of one TTL window.
    """

    def __init__(
        self,
        *,
        ttl_seconds: int = 60 * 60 * 24,
        pending_ttl_seconds: int = 300,
        clock: Clock = utcnow,
    ) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)
        self.pending_ttl = timedelta(seconds=pending_ttl_seconds)
        self._clock = clock
        # Insertion order matches expiry order since the TTL is uniform
        self._records: "OrderedDict[str, IdempotencyRecord]" = OrderedDict()
        self._pending: "OrderedDict[str, datetime]" = OrderedDict()
        self._lock = threading.Lock()

    def _sweep(self, now: datetime) -> None:
        while self._records:
            record = next(iter(self._records.values()))
            if not record.is_expired(now):
                break
            self._records.popitem(last=False)
        while self._pending:
            held_until = next(iter(self._pending.values()))
            if held_until > now:
                break
            self._pending.popitem(last=False)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    async def get(self, cache_key: str) -> Optional[IdempotencyRecord]:
        with self._lock:
            record = self._records.get(cache_key)
            if record is None:
                return None
            if record.is_expired(self._clock()):
                self._records.pop(cache_key, None)
                return None
            return record

    async def save(
        self,
        cache_key: str,
        status_code: int,
        body: Any,
        headers: Dict[str, str],
    ) -> IdempotencyRecord:
        now = self._clock()
        record = IdempotencyRecord(
            id=str(uuid.uuid4()),
            cache_key=cache_key,
            status_code=status_code,
            body=body,
            headers=dict(headers),
            created_at=now,
            expires_at=now + self.ttl,
        )
        with self._lock:
            self._sweep(now)
            self._records.pop(cache_key, None)
            self._records[cache_key] = record
            self._pending.pop(cache_key, None)
        return record

    async def claim(self, cache_key: str) -> bool:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            if cache_key in self._pending:
                return False
            self._pending[cache_key] = now + self.pending_ttl
            return True

    async def release(self, cache_key: str) -> None:
        with self._lock:
            self._pending.pop(cache_key, None)
