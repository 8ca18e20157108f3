"""Event names shared by webhooks and the realtime channel."""
