from __future__ import annotations

from dataclasses import replace

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from coursegate.api.dependencies import (
    IdempotencyGuard,
    RequestContext,
    RoutePolicy,
    governed,
    ok_response,
)
from coursegate.api.schemas import (
    IdentityResponse,
    LoginRequest,
    RefreshTokenRequest,
    RevokeAllResponse,
    SessionListResponse,
    SessionSummaryResponse,
    TokenResponse,
)
from coursegate.service.rate_limit import RateLimitPolicy

router = APIRouter(prefix="/v1")

LOGIN_POLICY = RoutePolicy(
    rate_limit=RateLimitPolicy(capacity=5, window_ms=60_000),
    public=True,
    idempotency="required",
)
REFRESH_POLICY = RoutePolicy(
    rate_limit=RateLimitPolicy(capacity=10, window_ms=60_000),
    public=True,
    idempotency="required",
)
AUTHENTICATED_POLICY = RoutePolicy()
REVOKE_POLICY = RoutePolicy(
    rate_limit=RateLimitPolicy(capacity=30, window_ms=60_000),
    idempotency="required",
)
REVOKE_ALL_POLICY = RoutePolicy(
    rate_limit=RateLimitPolicy(capacity=10, window_ms=60_000),
    idempotency="optional",
)
ADMIN_POLICY = RoutePolicy(roles=("admin",))


@router.post("/auth/login")
async def login(
    body: LoginRequest, ctx: RequestContext = Depends(governed(LOGIN_POLICY))
) -> JSONResponse:
    """Exchange credentials for an access token and a refresh token.

    Raises:
        InvalidCredentials: email or password mismatch
        MissingIdempotencyKey: no Idempotency-Key header
    """
    async with IdempotencyGuard(ctx) as guard:
        if guard.replay is not None:
            return guard.replay_response()
        device = replace(
            ctx.device,
            device_id=body.device_id or ctx.device.device_id,
            device_name=body.device_name,
        )
        tokens = await ctx.runtime.auth.login(
            body.email, body.password, device=device, trace_id=ctx.trace_id
        )
        return await guard.respond(TokenResponse.from_tokens(tokens))


@router.post("/auth/refresh")
async def refresh(
    body: RefreshTokenRequest, ctx: RequestContext = Depends(governed(REFRESH_POLICY))
) -> JSONResponse:
    """Redeem a refresh token; the token is rotated and cannot be reused.

    Raises:
        InvalidRefreshToken / RefreshTokenExpired / AccountNotFound / SessionNotActive
    """
    async with IdempotencyGuard(ctx) as guard:
        if guard.replay is not None:
            return guard.replay_response()
        tokens = await ctx.runtime.auth.refresh(body.refresh_token, trace_id=ctx.trace_id)
        return await guard.respond(TokenResponse.from_tokens(tokens))


@router.get("/auth/me")
async def me(ctx: RequestContext = Depends(governed(AUTHENTICATED_POLICY))) -> JSONResponse:
    return ok_response(IdentityResponse.from_context(ctx.user))


@router.get("/auth/sessions")
async def list_sessions(
    ctx: RequestContext = Depends(governed(AUTHENTICATED_POLICY)),
) -> JSONResponse:
    summaries = await ctx.runtime.auth.list_sessions(ctx.user.user_id)
    return ok_response(
        SessionListResponse(
            sessions=[SessionSummaryResponse.from_summary(s) for s in summaries]
        )
    )


@router.delete("/auth/sessions/{session_id}")
async def revoke_session(
    session_id: str, ctx: RequestContext = Depends(governed(REVOKE_POLICY))
) -> JSONResponse:
    """Revoke one of the caller's own sessions.

    Raises:
        SessionNotFound: session missing or owned by someone else
    """
    async with IdempotencyGuard(ctx) as guard:
        if guard.replay is not None:
            return guard.replay_response()
        await ctx.runtime.auth.revoke_session(
            ctx.user.user_id, session_id, trace_id=ctx.trace_id
        )
        return await guard.respond({"session_id": session_id, "revoked": True})


@router.delete("/auth/sessions")
async def revoke_all_sessions(
    ctx: RequestContext = Depends(governed(REVOKE_ALL_POLICY)),
) -> JSONResponse:
    """Sign out everywhere: revoke every session of the caller, this one included."""
    async with IdempotencyGuard(ctx) as guard:
        if guard.replay is not None:
            return guard.replay_response()
        revoked = await ctx.runtime.auth.revoke_all_sessions(
            ctx.user.user_id, trace_id=ctx.trace_id
        )
        return await guard.respond(RevokeAllResponse(revoked=revoked))


@router.get("/admin/users/{user_id}/sessions")
async def admin_list_sessions(
    user_id: str, ctx: RequestContext = Depends(governed(ADMIN_POLICY))
) -> JSONResponse:
    summaries = await ctx.runtime.auth.list_sessions(user_id)
    return ok_response(
        SessionListResponse(
            sessions=[SessionSummaryResponse.from_summary(s) for s in summaries]
        )
    )
