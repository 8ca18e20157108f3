"""Health check endpoint.

Learn: Simple GET endpoint that verifies the server is running and
reports what it depends on: Redis reachability (rate-limit counters,
and the job broker / broadcast bus when those use Redis), live realtime
connections and the local worker pools.
"""

from fastapi import APIRouter, Request

from herald import __version__
from herald.deps import get_core
from herald.realtime.pubsub import get_redis

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Check server health and dependency connectivity."""
    core = get_core(request)
    checks = {"server": "ok", "version": __version__}

    # Check Redis
    try:
        redis = core.redis or get_redis()
        await redis.ping()
        checks["redis"] = "ok"
    except Exception as e:
        checks["redis"] = f"error: {e}"

    # Redis only matters for health when a backend requires it
    redis_required = (
        core.config.queue_backend == "redis" or core.config.broadcast_backend == "redis"
    )
    healthy = checks["redis"] == "ok" or not redis_required

    return {
        "status": "healthy" if healthy else "degraded",
        **checks,
        "connections": {
            "users": core.registry.get_connection_count(),
            "channels": core.registry.get_channel_count(),
        },
        "queue": core.queue.get_stats(),
    }
