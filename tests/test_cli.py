"""CLI tests.

Learn: Click's CliRunner invokes commands in-process. Commands that talk
to the service get an httpx client bound to the ASGI app instead of the
network by patching herald.cli.main._client.
"""

import pytest
from click.testing import CliRunner
from httpx import ASGITransport, AsyncClient

from herald.cli import main as cli_module
from herald.config import Settings
from herald.core import build_core
from herald.main import create_app
from herald.schemas.subscriber import ExternalApp
from herald.services.webhook_service import sign_payload


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def service(monkeypatch):
    core = build_core(Settings(queue_autostart=False))
    core.api_keys.register("cli-key", ExternalApp(app_id="cli-app"))
    app = create_app(core=core)

    def client():
        return AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
            headers={"X-API-Key": "cli-key"},
        )

    monkeypatch.setattr(cli_module, "_client", client)
    return core


def test_sign_and_verify(runner, tmp_path):
    payload = tmp_path / "payload.json"
    payload.write_bytes(b'{"event":"notification.sent"}')

    result = runner.invoke(cli_module.main, ["sign", str(payload), "--secret", "s3cr3t"])
    assert result.exit_code == 0
    signature = result.output.strip()
    assert signature == sign_payload(b'{"event":"notification.sent"}', "s3cr3t")

    result = runner.invoke(
        cli_module.main, ["sign", str(payload), "--secret", "s3cr3t", "--verify", signature]
    )
    assert result.exit_code == 0
    assert "valid" in result.output

    result = runner.invoke(
        cli_module.main, ["sign", str(payload), "--secret", "other", "--verify", signature]
    )
    assert result.exit_code == 1


def test_send_direct(runner, service):
    result = runner.invoke(cli_module.main, ["send", "Hello", "World", "-t", "tenant-a"])
    assert result.exit_code == 0, result.output
    assert "Sent notification" in result.output
    assert len(service.store.for_tenant("tenant-a")) == 1


def test_send_queued_then_inspect_and_cancel(runner, service):
    result = runner.invoke(
        cli_module.main,
        ["schedule", "Later", "Msg", "-t", "tenant-a", "--at", "2099-01-01T00:00:00Z"],
    )
    assert result.exit_code == 0, result.output
    job_id = result.output.strip().split()[-1]

    result = runner.invoke(cli_module.main, ["job", "scheduled", job_id])
    assert result.exit_code == 0
    assert "delayed" in result.output

    result = runner.invoke(cli_module.main, ["cancel", "scheduled", job_id])
    assert result.exit_code == 0
    assert "Cancelled" in result.output

    result = runner.invoke(cli_module.main, ["job", "scheduled", job_id])
    assert result.exit_code == 1
    assert "Job not found" in result.output


def test_bulk_send_and_stats(runner, service):
    result = runner.invoke(
        cli_module.main, ["bulk-send", "Maint", "Tonight", "-t", "a", "-t", "b"]
    )
    assert result.exit_code == 0, result.output
    assert "2 notifications" in result.output

    result = runner.invoke(cli_module.main, ["stats", "bulk"])
    assert result.exit_code == 0, result.output
    assert "healthy" in result.output
    assert "bulk" in result.output


def test_invalid_metadata(runner, service):
    result = runner.invoke(
        cli_module.main, ["send", "Hello", "World", "-t", "a", "--metadata", "{not json"]
    )
    assert result.exit_code == 2
