"""Host entry points for the gpulse extension.

The editor host calls ``activate(context)`` when the extension loads and
``deactivate()`` when it unloads. ``activate`` builds the launcher output from
``Settings`` and hands it to a ``LifecycleManager`` owned by an ``Extension``
instance; ``deactivate`` returns an awaitable that resolves once the server
process is gone, or ``None`` when nothing was ever activated.

Usage:
    from gpulse_client import extension

    client = await extension.activate(context)
    ...
    done = extension.deactivate()
    if done is not None:
        await done
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable

from gpulse_client.config import CLIENT_ID, CLIENT_NAME, Settings, configure_logging
from gpulse_client.errors import GpulseError, ServerNotFound
from gpulse_client.lsp.client import LanguageClient
from gpulse_client.lsp.manager import ClientState, LifecycleManager
from gpulse_client.lsp.servers import (
    ClientConfiguration,
    ServerOptions,
    build_client_configuration,
    build_server_options,
)

logger = logging.getLogger("gpulse.extension")

Cleanup = Callable[[], Any]


class ExtensionContext:
    """Minimal host context: a stack of cleanup callbacks."""

    def __init__(self, workspace_root: str | None = None) -> None:
        self.workspace_root = workspace_root
        self.subscriptions: list[Cleanup] = []

    def register_cleanup(self, callback: Cleanup) -> None:
        self.subscriptions.append(callback)

    async def dispose(self) -> None:
        """Run cleanups in reverse registration order."""
        while self.subscriptions:
            callback = self.subscriptions.pop()
            result = callback()
            if inspect.isawaitable(result):
                await result


class Extension:
    """Owns the lifecycle manager for one activation."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or Settings.from_env()
        self.manager = LifecycleManager(
            client_id=CLIENT_ID,
            name=CLIENT_NAME,
            debug=self.settings.debug,
            start_timeout=self.settings.start_timeout,
            stop_timeout=self.settings.stop_timeout,
        )
        self.manager.on_error(self._report_error)

    def server_options(self) -> ServerOptions:
        return build_server_options(
            self.settings.server_path,
            args=self.settings.server_args,
            transport=self.settings.transport,
            debug_args=self.settings.debug_args,
            install_root=self.settings.install_root,
        )

    def client_configuration(self) -> ClientConfiguration:
        return build_client_configuration()

    async def activate(self, context: ExtensionContext | None = None) -> LanguageClient:
        try:
            server_options = self.server_options()
        except ServerNotFound as exc:
            logger.error("%s; the WGSL language features are unavailable", exc)
            raise
        if context is not None and context.workspace_root:
            self.manager.cwd = context.workspace_root
        return await self.manager.activate(
            server_options, self.client_configuration(), context
        )

    async def deactivate(self) -> bool:
        return await self.manager.deactivate()

    def _report_error(self, error: GpulseError) -> None:
        report = error.to_dict()["error"]
        logger.error(
            "Language server failed [%s]: %s (details=%s); activate again to restart",
            report["code"],
            report["message"],
            report["details"],
        )


_extension: Extension | None = None


async def activate(
    context: ExtensionContext | None = None, settings: Settings | None = None
) -> LanguageClient:
    """Start the language client for this process."""
    global _extension
    if _extension is None:
        settings = settings or Settings.from_env()
        configure_logging(settings.log_level)
        _extension = Extension(settings)
        _release_when_idle(_extension)
    extension = _extension
    try:
        client = await extension.activate(context)
    except BaseException:
        if _extension is extension and extension.manager.state is ClientState.ABSENT:
            _extension = None
        raise
    # a concurrent teardown may have released the instance while we started
    if _extension is None and extension.manager.state is ClientState.RUNNING:
        _extension = extension
    return client


def deactivate() -> Awaitable[bool] | None:
    """Stop the language client; ``None`` when nothing was activated."""
    extension = _extension
    if extension is None:
        return None

    return asyncio.ensure_future(extension.deactivate())


def _release_when_idle(extension: Extension) -> None:
    """Forget *extension* whenever its manager goes back to ``absent``.

    Covers teardown through ``deactivate()`` as well as through the host
    context disposing its subscriptions.
    """

    def _on_state_change(old: ClientState, new: ClientState) -> None:
        global _extension
        if new is ClientState.ABSENT and _extension is extension:
            _extension = None

    extension.manager.on_state_change(_on_state_change)
