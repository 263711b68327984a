from __future__ import annotations

import hashlib
import json
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as aioredis

from coursegate.logging import get_logger
from coursegate.service.rate_limit import (
    DEFAULT_POLICY,
    RateLimitDecision,
    RateLimitPolicy,
    retry_after_seconds,
)
from coursegate.storage.models import (
    EXPIRED_RETENTION,
    DeviceInfo,
    IdempotencyRecord,
    Session,
    new_refresh_token,
    utcnow,
)

logger = get_logger(__name__)

Clock = Callable[[], datetime]

SESSION_PREFIX = "session:"
REFRESH_INDEX_PREFIX = "session:refresh:"
USER_INDEX_PREFIX = "session:user:"


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _encode_session(sess: Session) -> str:
    data = sess.to_dict()
    data["expires_ms"] = _epoch_ms(sess.expires_at)
    return json.dumps(data, separators=(",", ":"))


def _decode_session(raw: Optional[str]) -> Optional[Session]:
    if not raw:
        return None
    try:
        return Session.from_dict(json.loads(raw))
    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
        logger.warning("session_record_corrupt")
        return None


class RedisSessionStore:
    """Sessions stored as JSON documents with a refresh-token index.

    Rotation, touch and revoke run as Lua scripts so the record and its
    index entries change in one atomic step on the server.
    """

    _ROTATE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return false
end
local sess = cjson.decode(raw)
if tonumber(sess['expires_ms']) <= tonumber(ARGV[3]) then
  return false
end
local index_prefix = ARGV[1]
redis.call('DEL', index_prefix .. sess['refresh_token'])
sess['refresh_token'] = ARGV[2]
sess['last_accessed_at'] = ARGV[4]
sess['expires_at'] = ARGV[5]
sess['expires_ms'] = tonumber(ARGV[6])
local encoded = cjson.encode(sess)
redis.call('SET', KEYS[1], encoded, 'PX', ARGV[7])
redis.call('SET', index_prefix .. ARGV[2], sess['id'], 'PX', ARGV[7])
return encoded
"""

    _TOUCH_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return false
end
local sess = cjson.decode(raw)
if tonumber(sess['expires_ms']) <= tonumber(ARGV[1]) then
  return false
end
sess['last_accessed_at'] = ARGV[2]
local encoded = cjson.encode(sess)
redis.call('SET', KEYS[1], encoded, 'KEEPTTL')
return encoded
"""

    _REVOKE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local sess = cjson.decode(raw)
redis.call('DEL', KEYS[1])
redis.call('DEL', ARGV[1] .. sess['refresh_token'])
redis.call('SREM', ARGV[2] .. sess['user_id'], sess['id'])
return 1
"""

    def __init__(self, client: aioredis.Redis, *, clock: Clock = utcnow) -> None:
        self.client = client
        self._clock = clock
        self._rotate = client.register_script(self._ROTATE_SCRIPT)
        self._touch = client.register_script(self._TOUCH_SCRIPT)
        self._revoke = client.register_script(self._REVOKE_SCRIPT)

    def _retention_ms(self, expires_at: datetime) -> int:
        return max(1, _epoch_ms(expires_at + EXPIRED_RETENTION) - _epoch_ms(self._clock()))

    def _live(self, sess: Optional[Session]) -> Optional[Session]:
        if sess is None or sess.is_expired(self._clock()):
            return None
        return sess

    async def create(
        self, user_id: str, ttl: timedelta, device: DeviceInfo | None = None
    ) -> Session:
        sess = Session.new(user_id, ttl, now=self._clock(), device=device)
        keep_ms = self._retention_ms(sess.expires_at)
        # NX on the index keeps refresh tokens unique even on a collision
        while not await self.client.set(
            f"{REFRESH_INDEX_PREFIX}{sess.refresh_token}", sess.id, px=keep_ms, nx=True
        ):
            sess.refresh_token = new_refresh_token()
        pipe = self.client.pipeline(transaction=True)
        pipe.set(f"{SESSION_PREFIX}{sess.id}", _encode_session(sess), px=keep_ms)
        pipe.sadd(f"{USER_INDEX_PREFIX}{user_id}", sess.id)
        await pipe.execute()
        return sess

    async def get(self, session_id: str) -> Optional[Session]:
        raw = await self.client.get(f"{SESSION_PREFIX}{session_id}")
        return self._live(_decode_session(raw))

    async def find_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        """Look up by refresh token; expired sessions are returned too."""
        session_id = await self.client.get(f"{REFRESH_INDEX_PREFIX}{refresh_token}")
        if not session_id:
            return None
        raw = await self.client.get(f"{SESSION_PREFIX}{session_id}")
        return _decode_session(raw)

    async def rotate(self, session_id: str, ttl: timedelta) -> Optional[Session]:
        now = self._clock()
        expires_at = now + ttl
        raw = await self._rotate(
            keys=[f"{SESSION_PREFIX}{session_id}"],
            args=[
                REFRESH_INDEX_PREFIX,
                new_refresh_token(),
                _epoch_ms(now),
                now.isoformat(),
                expires_at.isoformat(),
                _epoch_ms(expires_at),
                self._retention_ms(expires_at),
            ],
        )
        return _decode_session(raw)

    async def touch(self, session_id: str) -> Optional[Session]:
        now = self._clock()
        raw = await self._touch(
            keys=[f"{SESSION_PREFIX}{session_id}"],
            args=[_epoch_ms(now), now.isoformat()],
        )
        return _decode_session(raw)

    async def revoke(self, session_id: str) -> None:
        await self._revoke(
            keys=[f"{SESSION_PREFIX}{session_id}"],
            args=[REFRESH_INDEX_PREFIX, USER_INDEX_PREFIX],
        )

    async def revoke_user_sessions(self, user_id: str) -> int:
        session_ids = await self.client.smembers(f"{USER_INDEX_PREFIX}{user_id}")
        revoked = 0
        for session_id in session_ids:
            revoked += int(
                await self._revoke(
                    keys=[f"{SESSION_PREFIX}{session_id}"],
                    args=[REFRESH_INDEX_PREFIX, USER_INDEX_PREFIX],
                )
            )
        await self.client.delete(f"{USER_INDEX_PREFIX}{user_id}")
        return revoked

    async def list_by_user(self, user_id: str) -> List[Session]:
        user_key = f"{USER_INDEX_PREFIX}{user_id}"
        session_ids = sorted(await self.client.smembers(user_key))
        if not session_ids:
            return []
        raws = await self.client.mget([f"{SESSION_PREFIX}{sid}" for sid in session_ids])
        live: List[Session] = []
        stale: List[str] = []
        for sid, raw in zip(session_ids, raws):
            sess = self._live(_decode_session(raw))
            if sess is None:
                if raw is None:
                    stale.append(sid)
                continue
            live.append(sess)
        if stale:
            await self.client.srem(user_key, *stale)
        live.sort(key=lambda s: s.last_accessed_at, reverse=True)
        return live


class RedisRateLimiter:
    """Token buckets evaluated atomically by a Lua script."""

    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_per_ms = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local window_ms = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_per_ms)

local allowed = 0
if tokens >= 1 then
  tokens = tokens - 1
  allowed = 1
end
redis.call('HSET', key, 'tokens', tostring(tokens), 'ts', tostring(now))
redis.call('PEXPIRE', key, window_ms)
return {allowed, tostring(tokens)}
"""

    def __init__(
        self,
        client: aioredis.Redis,
        *,
        default_policy: RateLimitPolicy = DEFAULT_POLICY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.default_policy = default_policy
        self._clock = clock
        self._token_bucket = client.register_script(self._TOKEN_BUCKET_SCRIPT)

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash the key so caller-supplied fragments cannot collide on delimiters."""
        return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"

    async def consume(
        self, key: str, policy: RateLimitPolicy | None = None
    ) -> RateLimitDecision:
        policy = policy or self.default_policy
        allowed, tokens = await self._token_bucket(
            keys=[self._normalize_rate_key(key)],
            args=[
                int(self._clock() * 1000),
                repr(policy.refill_per_ms),
                policy.capacity,
                policy.window_ms,
            ],
        )
        remaining_tokens = float(tokens)
        if int(allowed):
            return RateLimitDecision(allowed=True, remaining=int(remaining_tokens))
        return RateLimitDecision(
            allowed=False,
            retry_after_seconds=retry_after_seconds(remaining_tokens, policy),
        )


class RedisIdempotencyStore:
    """Completed responses stored with a server-side TTL."""

    def __init__(
        self,
        client: aioredis.Redis,
        *,
        ttl_seconds: int = 60 * 60 * 24,
        pending_ttl_seconds: int = 300,
        clock: Clock = utcnow,
    ) -> None:
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.pending_ttl_seconds = pending_ttl_seconds
        self._clock = clock

    @staticmethod
    def _record_key(cache_key: str) -> str:
        return f"idempotency:{cache_key}"

    @staticmethod
    def _pending_key(cache_key: str) -> str:
        return f"idempotency:pending:{cache_key}"

    async def get(self, cache_key: str) -> Optional[IdempotencyRecord]:
        cached = await self.client.get(self._record_key(cache_key))
        if not cached:
            return None
        try:
            record = IdempotencyRecord.from_dict(json.loads(cached))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            # Corrupted idempotency record - treat as not found
            logger.warning("idempotency_record_corrupt", cache_key=cache_key)
            return None
        if record.is_expired(self._clock()):
            await self.client.delete(self._record_key(cache_key))
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
            expires_at=now + timedelta(seconds=self.ttl_seconds),
        )
        pipe = self.client.pipeline(transaction=True)
        pipe.set(self._record_key(cache_key), json.dumps(record.to_dict()), ex=self.ttl_seconds)
        pipe.delete(self._pending_key(cache_key))
        await pipe.execute()
        return record

    async def claim(self, cache_key: str) -> bool:
        acquired = await self.client.set(
            self._pending_key(cache_key), "1", nx=True, ex=self.pending_ttl_seconds
        )
        return bool(acquired)

    async def release(self, cache_key: str) -> None:
        await self.client.delete(self._pending_key(cache_key))


class RedisCache:
    """Owns the Redis client and the Redis-backed governance stores."""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        default_policy: RateLimitPolicy = DEFAULT_POLICY,
        idempotency_ttl_seconds: int = 60 * 60 * 24,
    ) -> None:
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.sessions = RedisSessionStore(self.client)
        self.rate_limits = RedisRateLimiter(self.client, default_policy=default_policy)
        self.idempotency = RedisIdempotencyStore(
            self.client, ttl_seconds=idempotency_ttl_seconds
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # A short-lived synchronous client keeps the async pool off the startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down."""
        await self.client.aclose()
