"""Application configuration via environment variables.

Uses pydantic-settings to load config from env vars with HERALD_ prefix.
No YAML files, no file-based config — just env vars (12-factor app style).

Learn: every tunable of the notification core lives here — rate limit
quotas, per-tier worker pool sizes, webhook retry policy, heartbeat timing.
Components never read env vars themselves; build_core() passes values in.
"""

from pydantic import model_validator
from pydantic_settings import BaseSettings

QUEUE_BACKENDS = ("memory", "redis")
BROADCAST_BACKENDS = ("local", "redis")


class Settings(BaseSettings):
    """All app configuration. Set via HERALD_* env vars."""

    # Redis (rate-limit counters, durable job broker, broadcast bus)
    redis_url: str = "redis://localhost:6379/0"
    redis_prefix: str = "herald"

    # Server
    environment: str = "development"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8000

    # CORS
    cors_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
    ]

    # Rate limiting
    rate_limit_window_seconds: int = 60
    rate_limit_per_app: int = 100
    rate_limit_per_tenant: int = 20
    rate_limit_bulk: int = 10
    rate_limit_rpm: int = 300  # global per-IP ceiling for all API traffic
    rate_limit_skip_on_error: bool = True  # fail open when Redis is unreachable

    # Queue dispatcher
    queue_backend: str = "memory"
    queue_immediate_concurrency: int = 10
    queue_bulk_concurrency: int = 5
    queue_scheduled_concurrency: int = 3
    queue_bulk_chunk_size: int = 100
    queue_bulk_max_items: int = 1000
    queue_visibility_timeout_seconds: int = 300
    queue_poll_interval_seconds: float = 0.5
    queue_completed_retention_seconds: int = 86400
    queue_failed_retention_seconds: int = 604800
    queue_autostart: bool = True  # run worker pools inside the API process

    # Webhooks
    webhook_max_retries: int = 3
    webhook_base_delay_seconds: float = 1.0
    webhook_timeout_seconds: float = 10.0
    webhook_audit_cap: int = 100

    # Seeds for the in-memory application registry (ignored when build_core is
    # handed real collaborators). JSON env values, e.g.
    # HERALD_API_KEYS='{"dev-key": "billing"}'
    # HERALD_SUBSCRIBERS='{"billing": {"callback_url": "http://localhost:9000/hook", "secret": "s"}}'
    api_keys: dict[str, str] = {}
    subscribers: dict[str, dict] = {}

    # Realtime
    broadcast_backend: str = "local"
    ws_heartbeat_interval_seconds: float = 30.0
    ws_heartbeat_timeout_seconds: float = 90.0

    model_config = {"env_prefix": "HERALD_"}

    @model_validator(mode="after")
    def validate_backends(self):
        """Reject unknown backend names up front — retrying can't fix them."""
        if self.queue_backend not in QUEUE_BACKENDS:
            raise ValueError(
                f"HERALD_QUEUE_BACKEND must be one of {QUEUE_BACKENDS}, "
                f"got {self.queue_backend!r}"
            )
        if self.broadcast_backend not in BROADCAST_BACKENDS:
            raise ValueError(
                f"HERALD_BROADCAST_BACKEND must be one of {BROADCAST_BACKENDS}, "
                f"got {self.broadcast_backend!r}"
            )
        if self.ws_heartbeat_timeout_seconds <= self.ws_heartbeat_interval_seconds:
            raise ValueError(
                "HERALD_WS_HEARTBEAT_TIMEOUT_SECONDS must exceed the heartbeat interval"
            )
        return self


# Singleton — import this everywhere
settings = Settings()
