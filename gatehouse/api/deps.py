from __future__ import annotations

from typing import Optional, Sequence

from fastapi import Header, Request, Response

from gatehouse.config import AuthConfig
from gatehouse.logging import get_logger
from gatehouse.service.authorization import Predicate
from gatehouse.service.errors import NotFoundError, RateLimitedError
from gatehouse.service.flows import AuthResult
from gatehouse.service.resolver import Principal
from gatehouse.service.runtime import Runtime, check_rate_limit, get_runtime

logger = get_logger(__name__)


class RateLimitInfo:
    """Rate limit state for response headers."""

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limited", key=key, limit=limit)
        raise RateLimitedError(
            "Too many requests.", detail={"retry_after": max(reset_seconds, 1)}
        )
    return info


def require_feature(enabled: bool) -> None:
    """Routes for disabled features behave as if they were never mounted."""
    if not enabled:
        raise NotFoundError("Not found.")


async def session_user_id(request: Request, runtime: Runtime) -> Optional[str]:
    if runtime.config.disable_cookies:
        return None
    return await runtime.sessions.get_user_id(
        request.cookies.get(runtime.config.session_cookie_name)
    )


async def authorize_request(
    request: Request, authorization: Optional[str], predicates: Sequence[Predicate]
) -> Optional[Principal]:
    runtime = get_runtime()
    return await runtime.pipeline.authorize(
        authorization,
        await session_user_id(request, runtime),
        predicates,
        context=request,
    )


def require(*predicates: Predicate):
    """Dependency factory running the authorization pipeline for a route."""

    async def _dependency(
        request: Request, authorization: Optional[str] = Header(None)
    ) -> Optional[Principal]:
        return await authorize_request(request, authorization, predicates)

    return _dependency


def apply_auth_cookies(response: Response, result: AuthResult, config: AuthConfig) -> None:
    if config.disable_cookies:
        return
    if result.session_id:
        response.set_cookie(
            config.session_cookie_name,
            result.session_id,
            httponly=True,
            secure=config.cookie_secure,
            samesite="lax",
            max_age=config.session_ttl_seconds,
            path="/",
        )
    response.set_cookie(
        config.refresh_token_cookie_name,
        result.refresh_token,
        httponly=True,
        secure=config.cookie_secure,
        samesite="lax",
        max_age=config.refresh_token_expires_in,
        path="/",
    )


def clear_auth_cookies(response: Response, config: AuthConfig, *, session: bool = True) -> None:
    if session:
        response.delete_cookie(
            config.session_cookie_name, path="/", secure=config.cookie_secure, samesite="lax"
        )
    response.delete_cookie(
        config.refresh_token_cookie_name,
        path="/",
        secure=config.cookie_secure,
        samesite="lax",
    )
