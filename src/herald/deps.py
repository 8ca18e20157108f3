"""Request-scoped access to the notification core built in the lifespan."""

from starlette.requests import HTTPConnection


def get_core(conn: HTTPConnection):
    """Return the NotificationCore attached to the running app.

    Works for both HTTP requests and WebSocket connections.
    """
    core = getattr(conn.app.state, "core", None)
    if core is None:
        raise RuntimeError("Notification core not initialized. Call create_app() first.")
    return core
