"""Worker entry point — run the queue workers as a separate process.

Learn: The worker is its own process, separate from the API server.
This provides crash isolation — if a worker dies, the API keeps
accepting notifications, and jobs it had claimed go back to waiting
once their visibility timeout passes.

It needs the Redis queue backend: a memory broker is private to one
process, so a separate worker would never see the API's jobs.

Usage:
    python -m herald.dispatcher.main

Or via the console script:
    herald-worker
"""

import asyncio
import logging
import signal
import sys

from herald.config import settings
from herald.core import build_core
from herald.realtime.pubsub import close_redis, init_redis

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("herald.dispatcher")


async def run():
    """Run the worker pools until interrupted."""
    if settings.queue_backend != "redis":
        logger.error("herald-worker requires HERALD_QUEUE_BACKEND=redis")
        sys.exit(1)
    if settings.broadcast_backend != "redis":
        logger.warning(
            "HERALD_BROADCAST_BACKEND is not redis; notifications delivered by this "
            "worker will not reach WebSocket clients of the API processes"
        )

    redis = await init_redis()
    core = build_core(settings, redis=redis)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    logger.info("Worker starting (Redis: %s)", settings.redis_url.split("@")[-1])

    await core.start(run_workers=True, relay=False)
    try:
        await stop.wait()
    except asyncio.CancelledError:
        pass
    finally:
        await core.stop()
        await close_redis()
        logger.info("Worker stopped. Stats: %s", core.queue.get_stats())


def main():
    """CLI entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
