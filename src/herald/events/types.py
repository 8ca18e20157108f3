"""Event type constants.

Learn: Centralizing event types as constants prevents typos and
makes it easy to discover every event the core emits — both the
webhook lifecycle events sent to subscribers and the message types
pushed over the realtime channel.
"""

# ─── Webhook lifecycle events ────────────────────────────

NOTIFICATION_SENT = "notification.sent"
NOTIFICATION_FAILED = "notification.failed"
NOTIFICATION_READ = "notification.read"
NOTIFICATION_DISMISSED = "notification.dismissed"

# Connectivity check, sent on demand only
WEBHOOK_TEST = "webhook.test"

# ─── Realtime message types ──────────────────────────────

WS_CONNECTED = "connected"
WS_NOTIFICATION = "notification"
WS_PING = "ping"
WS_PONG = "pong"
WS_ERROR = "error"
