from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple

from fastapi import Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from coursegate.api.schemas import Envelope
from coursegate.logging import get_logger, get_trace_id
from coursegate.service.auth import AuthContext
from coursegate.service.errors import (
    IdempotencyInProgress,
    MissingIdempotencyKey,
    RateLimitExceeded,
    RoleMismatch,
    ValidationError,
)
from coursegate.service.idempotency import (
    IDEMPOTENCY_HEADER,
    MAX_IDEMPOTENCY_KEY_LENGTH,
    MUTATING_METHODS,
    REPLAY_HEADER,
    build_cache_key,
)
from coursegate.service.rate_limit import RateLimitPolicy, consume_all
from coursegate.service.runtime import Runtime
from coursegate.storage.models import DeviceInfo, IdempotencyRecord

logger = get_logger(__name__)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


@dataclass(frozen=True)
class RoutePolicy:
    """Governance applied to a route before its handler runs.

    ``rate_limit`` falls back to the runtime default. ``idempotency`` is one
    of ``"required"``, ``"optional"`` or ``"none"``.
    """

    rate_limit: Optional[RateLimitPolicy] = None
    public: bool = False
    roles: Tuple[str, ...] = ()
    idempotency: str = "none"


@dataclass
class RequestContext:
    request: Request
    runtime: Runtime
    trace_id: Optional[str]
    device: DeviceInfo
    policy: RoutePolicy = field(default_factory=RoutePolicy)
    auth: Optional[AuthContext] = None
    rate_limit_keys: List[str] = field(default_factory=list)

    @property
    def user(self) -> AuthContext:
        if self.auth is None:
            raise RuntimeError("route is public; no authenticated identity")
        return self.auth


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _route_path(request: Request) -> str:
    # Templated path keeps one bucket per endpoint rather than per resource id
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def anonymous_rate_keys(request: Request, device_id: Optional[str]) -> List[str]:
    keys = [f"endpoint:{request.method}:{_route_path(request)}"]
    ip = _client_ip(request)
    if ip:
        keys.append(f"ip:{ip}")
    if device_id:
        keys.append(f"device:{device_id}")
    return keys


def identity_rate_keys(auth: AuthContext) -> List[str]:
    return [f"user:{auth.user_id}", f"session:{auth.session_id}"]


def scoped_rate_keys(keys: List[str], policy: RateLimitPolicy) -> List[str]:
    # One bucket per (dimension, policy) pair
    return [f"{key}@{policy.capacity}/{policy.window_ms}" for key in keys]


async def _enforce(runtime: Runtime, keys: List[str], policy: RateLimitPolicy) -> None:
    decision = await consume_all(runtime.rate_limiter, scoped_rate_keys(keys, policy), policy)
    if not decision.allowed:
        raise RateLimitExceeded(decision.retry_after_seconds or 1)


def governed(policy: RoutePolicy) -> Callable:
    """Build the dependency that admits, authenticates and authorizes a request.

    Anonymous dimensions (endpoint, IP, device) are charged first so
    unauthenticated floods are throttled before any token work; identity
    dimensions (user, session) are charged once the bearer token verifies.

    Raises:
        RateLimitExceeded: any dimension is out of tokens
        AuthenticationRequired / InvalidToken / AccessTokenExpired / ...: on
            non-public routes when the bearer token does not verify
        RoleMismatch: caller lacks every role the route requires
    """

    async def dependency(
        request: Request,
        authorization: Optional[str] = Header(None),
        x_device_id: Optional[str] = Header(None, max_length=128),
    ) -> RequestContext:
        runtime = get_runtime(request)
        rate_policy = policy.rate_limit or runtime.default_policy
        ctx = RequestContext(
            request=request,
            runtime=runtime,
            trace_id=getattr(request.state, "trace_id", None) or get_trace_id(),
            policy=policy,
            device=DeviceInfo(
                device_id=x_device_id,
                ip_address=_client_ip(request),
                user_agent=request.headers.get("user-agent"),
            ),
        )

        keys = anonymous_rate_keys(request, x_device_id)
        await _enforce(runtime, keys, rate_policy)
        ctx.rate_limit_keys.extend(keys)

        if policy.public:
            return ctx

        ctx.auth = await runtime.auth.authenticate(authorization)
        keys = identity_rate_keys(ctx.auth)
        await _enforce(runtime, keys, rate_policy)
        ctx.rate_limit_keys.extend(keys)

        if policy.roles and not ctx.auth.has_role(*policy.roles):
            logger.warning(
                "role_mismatch",
                user_id=ctx.auth.user_id,
                required=list(policy.roles),
                path=request.url.path,
            )
            raise RoleMismatch()
        return ctx

    return dependency


def _ok_body(data: Any) -> dict:
    return Envelope(status="ok", data=jsonable_encoder(data)).model_dump(mode="json")


def ok_response(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=_ok_body(data))


class IdempotencyGuard:
    """Replays or records the response of a mutating request.

    Usage::

        async with IdempotencyGuard(ctx) as guard:
            if guard.replay is not None:
                return guard.replay_response()
            ...
            return await guard.respond(result)

    Only successful responses are recorded. With in-flight rejection enabled
    a duplicate that arrives while the first attempt is still running fails
    with ``IdempotencyInProgress``.
    """

    def __init__(self, ctx: RequestContext, *, required: Optional[bool] = None) -> None:
        self.ctx = ctx
        if required is None:
            required = ctx.policy.idempotency == "required"
        self.required = required
        self.store = ctx.runtime.idempotency
        self.cache_key: Optional[str] = None
        self.replay: Optional[IdempotencyRecord] = None
        self._claimed = False
        self._stored = False

    async def __aenter__(self) -> "IdempotencyGuard":
        request = self.ctx.request
        if request.method.upper() not in MUTATING_METHODS:
            return self
        raw_key = (request.headers.get(IDEMPOTENCY_HEADER) or "").strip()
        if not raw_key:
            if self.required:
                raise MissingIdempotencyKey()
            return self
        if len(raw_key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise ValidationError(
                detail=[f"{IDEMPOTENCY_HEADER}: must be at most {MAX_IDEMPOTENCY_KEY_LENGTH} characters"]
            )

        user_id = self.ctx.auth.user_id if self.ctx.auth else None
        target = request.url.path
        if request.url.query:
            target = f"{target}?{request.url.query}"
        self.cache_key = build_cache_key(raw_key, request.method, target, user_id)
        self.replay = await self.store.get(self.cache_key)
        if self.replay is not None:
            logger.info("idempotent_replay", path=request.url.path, method=request.method)
            return self

        if self.ctx.runtime.settings.idempotency_reject_inflight:
            if not await self.store.claim(self.cache_key):
                raise IdempotencyInProgress()
            self._claimed = True
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if self._claimed and not self._stored and self.cache_key:
            await self.store.release(self.cache_key)
        return False

    def replay_response(self) -> JSONResponse:
        record = self.replay
        if record is None:
            raise RuntimeError("no recorded response to replay")
        headers = {
            name: value
            for name, value in record.headers.items()
            if name.lower() != "content-length"
        }
        headers[REPLAY_HEADER] = "true"
        return JSONResponse(status_code=record.status_code, content=record.body, headers=headers)

    async def respond(self, data: Any, status_code: int = 200) -> JSONResponse:
        body = _ok_body(data)
        response = JSONResponse(status_code=status_code, content=body)
        if self.cache_key is None:
            return response
        if 200 <= status_code < 300:
            headers = {
                name: value
                for name, value in response.headers.items()
                if name.lower() != "content-length"
            }
            await self.store.save(self.cache_key, status_code, body, headers)
            self._stored = True
        response.headers[REPLAY_HEADER] = "false"
        return response
