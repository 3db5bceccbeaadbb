"""Shared pytest fixtures for gpulse client tests.

Tests that need a real server launch ``fake_server.py`` with the current
interpreter, so no external language server binary is required.
"""
import asyncio
import os
import sys
from pathlib import Path
from typing import AsyncGenerator, Callable

import pytest
import pytest_asyncio

from gpulse_client.lsp.manager import ClientState, LifecycleManager
from gpulse_client.lsp.servers import (
    ClientConfiguration,
    ServerOptions,
    build_client_configuration,
    build_server_options,
)

FAKE_SERVER = Path(__file__).parent / "fake_server.py"


# ============================================================================
# Launcher Fixtures
# ============================================================================

@pytest.fixture
def fake_server_options() -> Callable[..., ServerOptions]:
    """Factory for ServerOptions that launch the stub server with extra flags."""
    def _create(*flags: str, transport: str = "stdio") -> ServerOptions:
        return build_server_options(
            sys.executable,
            args=(str(FAKE_SERVER), *flags),
            transport=transport,
        )
    return _create


@pytest.fixture
def wgsl_configuration() -> ClientConfiguration:
    """The default selector: WGSL files on disk."""
    return build_client_configuration()


# ============================================================================
# Lifecycle Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def manager(tmp_path: Path) -> AsyncGenerator[LifecycleManager, None]:
    """A lifecycle manager that is always torn down after the test."""
    mgr = LifecycleManager(cwd=str(tmp_path), start_timeout=10.0, stop_timeout=2.0)
    yield mgr
    await mgr.deactivate()


@pytest.fixture
def spawn_counter(monkeypatch: pytest.MonkeyPatch) -> list[tuple]:
    """Record every subprocess spawned through asyncio."""
    calls: list[tuple] = []
    original = asyncio.create_subprocess_exec

    async def _counting(*args, **kwargs):
        calls.append(args)
        return await original(*args, **kwargs)

    monkeypatch.setattr(asyncio, "create_subprocess_exec", _counting)
    return calls


# ============================================================================
# Helpers
# ============================================================================

@pytest.fixture
def wait_for_state() -> Callable:
    """Poll a manager until it reaches *state* (or time out)."""
    async def _wait(mgr: LifecycleManager, state: ClientState, timeout: float = 5.0) -> None:
        async def _poll() -> None:
            while mgr.state is not state:
                await asyncio.sleep(0.01)
        await asyncio.wait_for(_poll(), timeout=timeout)
    return _wait


@pytest.fixture
def process_alive() -> Callable[[int], bool]:
    """Whether a pid still refers to a live process."""
    def _alive(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True
    return _alive
