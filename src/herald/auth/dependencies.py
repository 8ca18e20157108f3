"""FastAPI auth dependencies for the external notification API.

Learn: external applications authenticate with an X-API-Key header.
The key → application lookup belongs to the application registry
(an external collaborator); we only call it and enforce the result:

- missing key                      → 401
- unknown or inactive application  → 401
- tenant outside allowed_tenants   → 403
- registry lookup raised           → 503

get_external_app_optional never raises; a failed lookup is remembered
on request.state so the mandatory dependency can answer 503 instead of
mistaking an outage for a bad key. The rate limiter depends on
it to key counters by app id, and FastAPI caches it per request, so
the lookup runs once even when both the limiter and the handler need it.
"""

from typing import Iterable, Optional

import structlog
from fastapi import Depends, Header, HTTPException
from starlette.requests import Request

from herald.deps import get_core
from herald.schemas.subscriber import ExternalApp

logger = structlog.get_logger()


async def get_external_app_optional(
    request: Request,
    x_api_key: Optional[str] = Header(None),
) -> Optional[ExternalApp]:
    """Resolve the calling application, or None if no/unknown key."""
    if not x_api_key:
        return None
    core = get_core(request)
    try:
        app = await core.api_keys.lookup_caller_by_api_key(x_api_key)
    except Exception as e:
        logger.warning("herald.auth.lookup_failed", error=str(e))
        request.state.api_key_lookup_error = str(e)
        return None
    if app is not None:
        request.state.external_app = app
    return app


async def get_external_app(
    request: Request,
    x_api_key: Optional[str] = Header(None),
    app: Optional[ExternalApp] = Depends(get_external_app_optional),
) -> ExternalApp:
    """Mandatory API-key auth."""
    if not x_api_key:
        raise HTTPException(
            status_code=401,
            detail={"error": "Unauthorized", "message": "API key required in X-API-Key header"},
        )
    if getattr(request.state, "api_key_lookup_error", None):
        raise HTTPException(
            status_code=503,
            detail={"error": "Service Unavailable", "message": "API key lookup unavailable"},
        )
    if app is None or not app.is_active:
        raise HTTPException(
            status_code=401,
            detail={"error": "Unauthorized", "message": "Invalid or inactive API key"},
        )
    return app


def ensure_tenant_access(app: ExternalApp, tenant_ids: Iterable[str]) -> None:
    denied = [t for t in tenant_ids if not app.can_access(t)]
    if denied:
        raise HTTPException(
            status_code=403,
            detail={"error": "Forbidden", "message": "Access denied for this tenant"},
        )
