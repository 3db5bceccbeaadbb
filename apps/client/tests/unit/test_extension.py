"""Tests for the host-facing activate/deactivate entry points."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

from gpulse_client import extension
from gpulse_client.config import Settings
from gpulse_client.errors import ServerNotFound
from gpulse_client.extension import Extension, ExtensionContext
from gpulse_client.lsp.manager import ClientState

FAKE_SERVER = Path(__file__).resolve().parent.parent / "fake_server.py"

FAKE_SERVER_SETTINGS = dict(
    server_path=sys.executable,
    start_timeout=10.0,
    stop_timeout=2.0,
    log_level="WARNING",
)


@pytest.fixture(autouse=True)
def fresh_extension(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(extension, "_extension", None)


@pytest.fixture
def fake_settings() -> Settings:
    return Settings(server_args=(str(FAKE_SERVER),), **FAKE_SERVER_SETTINGS)


# ------------------------------------------------------------------
# ExtensionContext
# ------------------------------------------------------------------


@pytest.mark.unit
@pytest.mark.asyncio
async def test_context_dispose_runs_cleanups_in_reverse():
    order: list[str] = []
    context = ExtensionContext()

    async def async_cleanup():
        order.append("async")

    context.register_cleanup(lambda: order.append("sync"))
    context.register_cleanup(async_cleanup)
    await context.dispose()

    assert order == ["async", "sync"]
    assert context.subscriptions == []


# ------------------------------------------------------------------
# Module entry points
# ------------------------------------------------------------------


@pytest.mark.unit
def test_deactivate_without_activate_returns_none():
    assert extension.deactivate() is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_activate_missing_server_surfaces_error(tmp_path, caplog):
    settings = Settings(server_path=str(tmp_path / "gpulse_exe"), log_level="WARNING")

    with pytest.raises(ServerNotFound):
        await extension.activate(ExtensionContext(), settings)

    assert any(
        r.levelname == "ERROR" and "unavailable" in r.getMessage() for r in caplog.records
    )
    assert extension.deactivate() is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_activate_then_deactivate(fake_settings, process_alive):
    context = ExtensionContext()
    client = await extension.activate(context, fake_settings)
    pid = client.pid
    assert client.is_running
    assert len(context.subscriptions) == 1

    done = extension.deactivate()
    assert done is not None
    assert await done is True

    assert not client.is_running
    assert not process_alive(pid)
    # the extension instance is released once teardown has finished
    await asyncio.sleep(0)
    assert extension.deactivate() is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_context_dispose_tears_down(fake_settings, process_alive):
    context = ExtensionContext()
    client = await extension.activate(context, fake_settings)
    pid = client.pid

    await context.dispose()

    assert not process_alive(pid)
    # host teardown released the instance: nothing left to deactivate
    assert extension.deactivate() is None

    again = await extension.activate(ExtensionContext(), fake_settings)
    assert again.is_running
    done = extension.deactivate()
    assert done is not None
    assert await done is True


@pytest.mark.unit
@pytest.mark.asyncio
async def test_server_crash_is_reported_with_error_code(fake_settings, caplog):
    settings = Settings(
        server_args=(*fake_settings.server_args, "--crash-on=textDocument/didOpen"),
        **FAKE_SERVER_SETTINGS,
    )
    ext = Extension(settings)
    client = await ext.activate(ExtensionContext())

    await client.did_open("file:///shaders/main.wgsl", "wgsl", "")
    for _ in range(250):
        if ext.manager.state is ClientState.FAILED:
            break
        await asyncio.sleep(0.02)

    assert ext.manager.state is ClientState.FAILED
    assert any(
        r.levelname == "ERROR" and "GP-TRANSPORT-003" in r.getMessage()
        for r in caplog.records
    )
    assert await ext.deactivate() is False


# ------------------------------------------------------------------
# Extension
# ------------------------------------------------------------------


@pytest.mark.unit
@pytest.mark.asyncio
async def test_extension_uses_debug_variant(fake_settings, tmp_path):
    settings = Settings(
        server_args=fake_settings.server_args,
        debug=True,
        debug_args=("--debug-flag",),
        **FAKE_SERVER_SETTINGS,
    )
    ext = Extension(settings)
    options = ext.server_options()
    assert options.debug.command("--stdio")[-1] == "--debug-flag"

    client = await ext.activate(ExtensionContext(workspace_root=str(tmp_path)))
    try:
        assert ext.manager.state is ClientState.RUNNING
        assert ext.manager.cwd == str(tmp_path)
        assert client.is_running
    finally:
        assert await ext.deactivate() is True


@pytest.mark.unit
def test_extension_default_selector(fake_settings):
    config = Extension(fake_settings).client_configuration()
    assert config.matches("file:///shaders/main.wgsl", "wgsl")
    assert not config.matches("untitled:Untitled-1", "wgsl")
