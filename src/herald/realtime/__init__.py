"""Real-time infrastructure — connection registry, broadcast bus, WebSocket.

Learn: Notifications reach live clients in two hops:
1. Queue worker → Broadcaster (local registry, or Redis PUBLISH)
2. Registry → every open WebSocket of every connected user in the tenant

Keeping the sink pluggable lets several API processes, each holding a
subset of the connections, all receive every tenant broadcast.
"""
