"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Auth is applied per route rather than at the include_router
level, because the rate limiters must run after the API-key check
(and the health endpoint is open).
"""

from fastapi import APIRouter

from herald.api.health import router as health_router
from herald.api.notifications import router as notifications_router
from herald.api.webhooks import router as webhooks_router

api_router = APIRouter(prefix="/api/v1")

# Open routes — no auth required
api_router.include_router(health_router, tags=["health"])

# Protected routes — require a valid X-API-Key
api_router.include_router(notifications_router, tags=["notifications"])
api_router.include_router(webhooks_router, tags=["webhooks"])
