"""Queue dispatcher — tiered notification jobs and their worker pools.

Learn: jobs.py defines jobs, tiers and retry policy; broker.py and
redis_broker.py store them; queue.py runs them. The pools can live
inside the API process (HERALD_QUEUE_AUTOSTART) or in a separate
herald-worker process sharing the Redis broker.
"""
