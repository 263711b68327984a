from __future__ import annotations

from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from coursegate.config import Settings
from coursegate.logging import get_logger
from coursegate.service.audit import (
    AuditService,
    AuditSink,
    RedisAuditSink,
    StructlogAuditSink,
)
from coursegate.service.auth import AuthService, SessionStore
from coursegate.service.identity import IdentityDirectory, MemoryIdentityDirectory
from coursegate.service.idempotency import IdempotencyStore
from coursegate.service.rate_limit import RateLimiter, RateLimitPolicy
from coursegate.service.tokens import TokenCodec
from coursegate.storage.memory import (
    MemoryIdempotencyStore,
    MemoryRateLimiter,
    MemorySessionStore,
)
from coursegate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Builds and owns the governance components for one application."""

    def __init__(
        self,
        settings: Settings,
        *,
        identities: IdentityDirectory | None = None,
        audit_sink: AuditSink | None = None,
    ) -> None:
        self.settings = settings
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )
        self.default_policy = RateLimitPolicy(
            capacity=settings.rate_limit_default_capacity,
            window_ms=settings.rate_limit_default_window_ms,
        )

        self.cache: RedisCache | None = None
        redis_error: Exception | None = None
        if not settings.use_memory_store and settings.redis_url:
            try:
                cache = RedisCache(
                    settings.redis_url,
                    default_policy=self.default_policy,
                    idempotency_ttl_seconds=settings.idempotency_ttl_seconds,
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        self.sessions: SessionStore
        self.rate_limiter: RateLimiter
        self.idempotency: IdempotencyStore
        if self.cache is not None:
            self.sessions = self.cache.sessions
            self.rate_limiter = self.cache.rate_limits
            self.idempotency = self.cache.idempotency
            logger.info("runtime_store_initialized", store_type="redis")
        else:
            if (
                not settings.use_memory_store
                and not settings.test_mode
                and not settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for sessions, rate limits and idempotency; "
                    "start Redis or set USE_MEMORY_STORE/TEST_MODE/ALLOW_REDIS_FALLBACK_DEV."
                ) from redis_error
            if not settings.use_memory_store:
                fallback_mode = (
                    "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
                )
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(settings.redis_url),
                    error=str(redis_error) if redis_error else "redis_url_missing",
                    message=(
                        f"Running without Redis under {fallback_mode}; sessions, rate limits "
                        "and idempotency records are in-memory only."
                    ),
                    mode=fallback_mode,
                )
            self.sessions = MemorySessionStore()
            self.rate_limiter = MemoryRateLimiter(
                default_policy=self.default_policy,
                max_keys=settings.rate_limit_max_keys,
            )
            self.idempotency = MemoryIdempotencyStore(
                ttl_seconds=settings.idempotency_ttl_seconds
            )
            logger.info("runtime_store_initialized", store_type="memory")

        if identities is None:
            directory = MemoryIdentityDirectory()
            if settings.identity_seed_file:
                directory.load_seed_file(settings.identity_seed_file)
            identities = directory
        self.identities = identities

        if audit_sink is None:
            if settings.audit_sink == "redis" and self.cache is not None:
                audit_sink = RedisAuditSink(
                    self.cache.client, max_events=settings.audit_max_events
                )
            else:
                audit_sink = StructlogAuditSink()
        self.audit = AuditService(audit_sink)

        self.codec = TokenCodec(settings.token_secrets)
        self.auth = AuthService(
            self.sessions,
            self.codec,
            self.identities,
            self.audit,
            access_token_ttl=timedelta(seconds=settings.access_token_ttl_seconds),
            session_ttl=timedelta(days=settings.session_ttl_days),
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
