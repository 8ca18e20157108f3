"""Rate limiting — Redis-backed bucketed window counters.

Learn: Every window is its own counter. The key carries the bucket index
floor(now / window), e.g. "herald:rl:per_application:app_42:/api/v1/notifications/send:28531",
so a new window starts from zero and the old key simply expires.

  INCR key            → count
  count == 1          → EXPIRE key window   (counter cleans itself up)
  count > limit       → reject, Retry-After = TTL of the key

Fail-open: if Redis can't be reached the check admits the call with
remaining = limit. Throttling here is a courtesy to protect the queue,
not a correctness guarantee, so we prefer availability. Setting
HERALD_RATE_LIMIT_SKIP_ON_ERROR=false flips this to fail-closed (the
check raises RateLimitStoreError and the API answers 503).

Three named policies share the primitive — per_application, per_tenant
and bulk_send — each contributing only its key generator and quota.
"""

import hashlib
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import structlog
from fastapi import Depends, HTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from herald.auth.dependencies import get_external_app_optional
from herald.deps import get_core
from herald.schemas.subscriber import ExternalApp

logger = structlog.get_logger()

_ID_SEGMENT = re.compile(
    r"^([0-9]+|[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12})$"
)


class RateLimitStoreError(Exception):
    """Counter store unreachable while the limiter runs fail-closed."""


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int
    reset_at: int

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimiter:
    """Admission check against a shared atomic counter store.

    `store` is a zero-arg callable returning a redis.asyncio client (or
    anything exposing incr/expire/ttl). Resolving the client lazily means
    "Redis never connected" is just another store error — and fails open.
    """

    def __init__(
        self,
        store: Callable[[], Any],
        *,
        skip_on_error: bool = True,
        prefix: str = "herald:rl",
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.skip_on_error = skip_on_error
        self.prefix = prefix
        self.clock = clock

    def bucket_key(self, base: str, window_seconds: int) -> str:
        bucket = int(self.clock() // window_seconds)
        return f"{self.prefix}:{base}:{bucket}"

    async def check_and_consume(
        self, key: str, limit: int, window_seconds: int
    ) -> RateLimitResult:
        now = self.clock()
        reset_at = (int(now // window_seconds) + 1) * window_seconds
        try:
            redis = self.store()
            count = await redis.incr(key)
            if count == 1:
                await redis.expire(key, window_seconds)

            if count > limit:
                ttl = await redis.ttl(key)
                retry_after = ttl if ttl and ttl > 0 else window_seconds
                return RateLimitResult(
                    allowed=False,
                    limit=limit,
                    remaining=0,
                    retry_after=retry_after,
                    reset_at=int(now) + retry_after,
                )

            return RateLimitResult(
                allowed=True,
                limit=limit,
                remaining=max(0, limit - count),
                retry_after=0,
                reset_at=reset_at,
            )
        except Exception as e:
            if not self.skip_on_error:
                raise RateLimitStoreError(str(e)) from e
            logger.warning("herald.rate_limit.store_unavailable", key=key, error=str(e))
            return RateLimitResult(
                allowed=True,
                limit=limit,
                remaining=limit,
                retry_after=0,
                reset_at=reset_at,
            )


# ─── Key generation ───────────────────────────────────────


def normalize_path(path: str) -> str:
    """Collapse numeric / UUID segments so /jobs/123 and /jobs/456 share a key."""
    segments = [
        ":id" if _ID_SEGMENT.match(seg) else seg.lower()
        for seg in path.rstrip("/").split("/")
    ]
    return "/".join(segments) or "/"


def caller_identity(request: Request, caller: Optional[ExternalApp]) -> str:
    """App id if authenticated, else a hash of the raw API key, else client IP."""
    if caller is not None:
        return f"app:{caller.app_id}"
    api_key = request.headers.get("x-api-key")
    if api_key:
        return "key:" + hashlib.sha256(api_key.encode()).hexdigest()[:16]
    return "ip:" + (request.client.host if request.client else "unknown")


async def _requested_tenant(request: Request) -> str:
    tenant_id = request.path_params.get("tenant_id") or request.query_params.get("tenant_id")
    if tenant_id:
        return tenant_id
    try:
        body = await request.json()
    except Exception:
        return "none"
    if isinstance(body, dict) and body.get("tenant_id"):
        return str(body["tenant_id"])
    return "none"


async def per_application_key(request: Request, caller: Optional[ExternalApp]) -> str:
    return f"{caller_identity(request, caller)}:{normalize_path(request.url.path)}"


async def per_tenant_key(request: Request, caller: Optional[ExternalApp]) -> str:
    tenant_id = await _requested_tenant(request)
    return f"{caller_identity(request, caller)}:tenant:{tenant_id}:{normalize_path(request.url.path)}"


async def bulk_send_key(request: Request, caller: Optional[ExternalApp]) -> str:
    return f"{caller_identity(request, caller)}:bulk"


KeyGenerator = Callable[[Request, Optional[ExternalApp]], Awaitable[str]]


@dataclass
class RateLimitPolicy:
    name: str
    limit: int
    window_seconds: int
    key_generator: KeyGenerator


def default_policies(config) -> dict[str, RateLimitPolicy]:
    window = config.rate_limit_window_seconds
    return {
        "per_application": RateLimitPolicy(
            "per_application", config.rate_limit_per_app, window, per_application_key
        ),
        "per_tenant": RateLimitPolicy(
            "per_tenant", config.rate_limit_per_tenant, window, per_tenant_key
        ),
        "bulk_send": RateLimitPolicy(
            "bulk_send", config.rate_limit_bulk, window, bulk_send_key
        ),
    }


# ─── FastAPI integration ──────────────────────────────────


def create_limiter(policy_name: str):
    """Build a route dependency enforcing the named policy.

    Learn: policies are looked up on the core at request time, so tests
    (and deployments) can tune quotas without touching route wiring.
    On admission the X-RateLimit-* headers are merged into the response;
    on rejection we raise 429 with a retryAfter hint.
    """

    async def check_rate_limit(
        request: Request,
        response: Response,
        caller: Optional[ExternalApp] = Depends(get_external_app_optional),
    ) -> RateLimitResult:
        core = get_core(request)
        policy = core.policies[policy_name]
        limiter: RateLimiter = core.rate_limiter

        base = f"{policy.name}:{await policy.key_generator(request, caller)}"
        key = limiter.bucket_key(base, policy.window_seconds)
        try:
            result = await limiter.check_and_consume(key, policy.limit, policy.window_seconds)
        except RateLimitStoreError:
            raise HTTPException(
                status_code=503,
                detail={"error": "Service Unavailable", "message": "Rate limiting unavailable"},
            )

        if not result.allowed:
            logger.info(
                "herald.rate_limit.rejected",
                policy=policy.name,
                key=key,
                retry_after=result.retry_after,
            )
            raise HTTPException(
                status_code=429,
                detail={
                    "error": "Too Many Requests",
                    "message": f"Rate limit exceeded for {policy.name}. Try again later.",
                    "retryAfter": result.retry_after,
                },
                headers=result.headers(),
            )

        for name, value in result.headers().items():
            response.headers[name] = value
        return result

    return check_rate_limit


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Coarse per-IP ceiling over all API traffic, on the same primitive."""

    def __init__(self, app, rpm: int = 300):
        super().__init__(app)
        self.rpm = rpm

    async def dispatch(self, request: Request, call_next) -> Response:
        core = getattr(request.app.state, "core", None)
        if core is None:
            return await call_next(request)

        limiter: RateLimiter = core.rate_limiter
        client_ip = request.client.host if request.client else "unknown"
        key = limiter.bucket_key(f"ip:{client_ip}", 60)

        try:
            result = await limiter.check_and_consume(key, self.rpm, 60)
        except RateLimitStoreError:
            return JSONResponse(
                status_code=503,
                content={"detail": "Rate limiting unavailable"},
            )

        if not result.allowed:
            return JSONResponse(
                status_code=429,
                content={
                    "detail": "Rate limit exceeded. Try again later.",
                    "retryAfter": result.retry_after,
                },
                headers=result.headers(),
            )

        return await call_next(request)
