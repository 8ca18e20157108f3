"""Herald — notification delivery and queueing core.

Accepts notification requests from external applications, throttles them,
queues them across urgency tiers, persists them through a pluggable store,
pushes them to live WebSocket clients and delivers signed webhooks to
subscriber applications.
"""

__version__ = "0.1.0"
