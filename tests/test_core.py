"""Configuration and core wiring tests."""

import pytest
from pydantic import ValidationError

from herald.config import Settings
from herald.core import CoreConfigError, build_core, tier_policies
from herald.dispatcher.broker import MemoryJobBroker
from herald.dispatcher.jobs import Tier
from herald.realtime.broadcast import LocalBroadcaster


def test_settings_defaults():
    s = Settings()
    assert s.rate_limit_window_seconds == 60
    assert (s.rate_limit_per_app, s.rate_limit_per_tenant, s.rate_limit_bulk) == (100, 20, 10)
    assert s.rate_limit_skip_on_error is True
    assert s.queue_backend == "memory"
    assert s.broadcast_backend == "local"


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("HERALD_RATE_LIMIT_PER_APP", "5")
    monkeypatch.setenv("HERALD_QUEUE_BULK_CONCURRENCY", "2")
    s = Settings()
    assert s.rate_limit_per_app == 5
    assert s.queue_bulk_concurrency == 2


@pytest.mark.parametrize("field", ["queue_backend", "broadcast_backend"])
def test_unknown_backend_is_rejected(field):
    with pytest.raises(ValidationError):
        Settings(**{field: "kafka"})


def test_heartbeat_timeout_must_exceed_interval():
    with pytest.raises(ValidationError):
        Settings(ws_heartbeat_interval_seconds=30, ws_heartbeat_timeout_seconds=30)


def test_redis_backends_require_redis():
    with pytest.raises(CoreConfigError):
        build_core(Settings(queue_backend="redis"))
    with pytest.raises(CoreConfigError):
        build_core(Settings(broadcast_backend="redis"))


def test_default_core_is_in_process():
    core = build_core(Settings())
    assert isinstance(core.queue.broker, MemoryJobBroker)
    assert isinstance(core.broadcaster, LocalBroadcaster)
    assert set(core.policies) == {"per_application", "per_tenant", "bulk_send"}
    assert set(core.queue.processors) == set(Tier)


def test_tier_concurrency_comes_from_settings():
    policies = tier_policies(Settings(queue_immediate_concurrency=7, queue_scheduled_concurrency=1))
    assert policies[Tier.IMMEDIATE].concurrency == 7
    assert policies[Tier.IMMEDIATE].max_attempts == 3
    assert policies[Tier.SCHEDULED].concurrency == 1
    assert policies[Tier.BULK].concurrency == 5
    assert policies[Tier.BULK].backoff_base == 5.0


@pytest.mark.asyncio
async def test_registry_seeds_from_settings():
    core = build_core(Settings(
        api_keys={"dev-key": "billing"},
        subscribers={"billing": {"callback_url": "http://localhost:9000/hook", "secret": "s"}},
    ))

    app = await core.api_keys.lookup_caller_by_api_key("dev-key")
    assert app.app_id == "billing"
    config = await core.subscribers.resolve_subscriber_config("billing")
    assert config.callback_url == "http://localhost:9000/hook"
