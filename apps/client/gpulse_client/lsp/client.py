"""JSON-RPC language client.

Runs the LSP handshake over a ``Transport``, tracks pending requests, and
forwards text-document events that fall under the configured document
selector. Everything past the handshake (diagnostics, completion, ...) is the
server's business; the client only caches what the server publishes.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Callable

from gpulse_client.errors import (
    ClientNotRunning,
    GpulseError,
    ServerRequestError,
    TransportStartFailure,
    UnexpectedServerExit,
)
from gpulse_client.lsp.servers import ClientConfiguration, ServerOptions
from gpulse_client.lsp.transport import Transport

logger = logging.getLogger("gpulse.lsp.client")

CloseListener = Callable[[UnexpectedServerExit], None]

_MESSAGE_TYPES: dict[int, int] = {
    1: logging.ERROR,
    2: logging.WARNING,
    3: logging.INFO,
    4: logging.DEBUG,
}


def file_to_uri(path: str) -> str:
    """Convert a filesystem path to a file:// URI."""
    return Path(path).resolve().as_uri()


class LanguageClient:
    """Client side of one language server connection."""

    def __init__(
        self,
        client_id: str,
        name: str,
        server_options: ServerOptions,
        configuration: ClientConfiguration,
        *,
        debug: bool = False,
        cwd: str | None = None,
        start_timeout: float = 30.0,
        stop_timeout: float = 5.0,
    ) -> None:
        self.client_id = client_id
        self.name = name
        self.server_options = server_options
        self.configuration = configuration
        self._debug = debug
        self._cwd = cwd
        self._start_timeout = start_timeout
        self._stop_timeout = stop_timeout

        self._transport: Transport | None = None
        self._next_id: int = 1
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._documents: dict[str, str] = {}
        self._diagnostics: dict[str, list[dict]] = {}
        self._close_listeners: list[CloseListener] = []
        self._running = False
        self._stopping = False
        self.capabilities: dict[str, Any] = {}

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        """Whether the handshake finished and the channel is still open."""
        return self._running

    @property
    def pid(self) -> int | None:
        return self._transport.pid if self._transport is not None else None

    def on_close(self, listener: CloseListener) -> None:
        """Register a callback for the server going away while running."""
        self._close_listeners.append(listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Launch the server, connect, and complete the LSP handshake.

        Raises:
            ServerNotFound: If the executable cannot be spawned.
            TransportStartFailure: If connecting or initializing fails.
        """
        if self._running or self._transport is not None:
            logger.warning("Language client %s already started", self.client_id)
            return

        descriptor = self.server_options.select(self._debug)
        transport = Transport(
            descriptor,
            on_message=self._dispatch,
            on_close=self._handle_transport_closed,
            cwd=self._cwd,
            connect_timeout=self._start_timeout,
        )
        self._transport = transport
        self._stopping = False
        try:
            await transport.start()
            self.capabilities = await self.initialize(timeout=self._start_timeout)
        except (ClientNotRunning, ServerRequestError, asyncio.TimeoutError) as exc:
            await self._teardown()
            raise TransportStartFailure(
                f"Language server handshake failed: {exc or type(exc).__name__}",
                details={"executable": descriptor.executable},
            ) from exc
        except BaseException:
            await self._teardown()
            raise

        self._running = True
        logger.info("Language client %s is running (pid=%s)", self.client_id, self.pid)

    async def stop(self, timeout: float | None = None) -> None:
        """Send shutdown/exit and wait for the server process to terminate.

        *timeout* overrides the configured stop timeout for this call.
        """
        if self._transport is None:
            return
        if timeout is None:
            timeout = self._stop_timeout

        self._stopping = True
        logger.info("Stopping language client %s (pid=%s)", self.client_id, self.pid)
        if self._transport.is_connected:
            try:
                await self.request("shutdown", timeout=timeout)
            except (GpulseError, asyncio.TimeoutError):
                logger.debug("Shutdown request failed, proceeding to exit")
            try:
                await self.notify("exit")
            except ClientNotRunning:
                pass

        await self._teardown(timeout)
        logger.info("Language client %s stopped", self.client_id)

    async def _teardown(self, timeout: float | None = None) -> None:
        transport, self._transport = self._transport, None
        self._stopping = True
        self._running = False
        if transport is not None:
            await transport.close(
                timeout=self._stop_timeout if timeout is None else timeout
            )
        self._reject_pending("Language server stopped")
        self._documents.clear()

    def _reject_pending(self, reason: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(ClientNotRunning(reason))
        self._pending.clear()

    def _handle_transport_closed(self, returncode: int | None) -> None:
        was_running = self._running
        self._running = False
        self._reject_pending("Language server channel closed")
        if not was_running or self._stopping:
            return

        error = UnexpectedServerExit(returncode)
        logger.error("%s", error)
        for listener in list(self._close_listeners):
            try:
                listener(error)
            except Exception:
                logger.exception("Close listener failed")

    # ------------------------------------------------------------------
    # JSON-RPC
    # ------------------------------------------------------------------

    async def request(
        self,
        method: str,
        params: dict | None = None,
        timeout: float = 10.0,
    ) -> Any:
        """Send a JSON-RPC request and wait for the response.

        Raises:
            asyncio.TimeoutError: If no response arrives within *timeout*.
            ClientNotRunning: If the transport is not connected.
            ServerRequestError: If the server returns a JSON-RPC error.
        """
        if self._transport is None:
            raise ClientNotRunning()

        request_id = self._next_id
        self._next_id += 1

        message: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": method,
        }
        if params is not None:
            message["params"] = params

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        self._pending[request_id] = future

        try:
            await self._transport.send(message)
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Request %s (id=%d) timed out", method, request_id)
            raise
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: dict | None = None) -> None:
        """Send a JSON-RPC notification (no response expected)."""
        if self._transport is None:
            raise ClientNotRunning()
        message: dict[str, Any] = {
            "jsonrpc": "2.0",
            "method": method,
        }
        if params is not None:
            message["params"] = params
        await self._transport.send(message)

    def _dispatch(self, message: dict) -> None:
        """Route an incoming JSON-RPC message to the right handler."""
        if "id" in message and "method" not in message:
            request_id = message["id"]
            future = self._pending.get(request_id)
            if future is None or future.done():
                logger.debug("No pending future for response id=%s", request_id)
                return
            if "error" in message:
                err = message["error"] or {}
                future.set_exception(
                    ServerRequestError(
                        f"LSP error {err.get('code')}: {err.get('message')}",
                        details={"code": err.get("code")},
                    )
                )
            else:
                future.set_result(message.get("result"))

        elif "method" in message and "id" not in message:
            self._handle_notification(message["method"], message.get("params") or {})

        elif "method" in message and "id" in message:
            # We serve no server->client requests; answer so the server doesn't hang.
            logger.debug(
                "Ignoring server request: %s (id=%s)", message["method"], message["id"]
            )
            response = {"jsonrpc": "2.0", "id": message["id"], "result": None}
            if self._transport is not None and self._transport.is_connected:
                task = asyncio.get_running_loop().create_task(self._transport.send(response))
                task.add_done_callback(_log_send_failure)

    def _handle_notification(self, method: str, params: dict) -> None:
        if method == "textDocument/publishDiagnostics":
            uri = params.get("uri", "")
            self._diagnostics[uri] = params.get("diagnostics", [])
            logger.debug("Received %d diagnostics for %s", len(self._diagnostics[uri]), uri)
        elif method in ("window/logMessage", "window/showMessage"):
            level = _MESSAGE_TYPES.get(params.get("type", 3), logging.INFO)
            logging.getLogger("gpulse.server").log(level, "%s", params.get("message", ""))
        else:
            logger.debug("Unhandled notification: %s", method)

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    async def initialize(self, timeout: float = 30.0) -> dict:
        """Send ``initialize`` then ``initialized``; return server capabilities."""
        root = self._cwd or os.getcwd()
        params = {
            "processId": os.getpid(),
            "clientInfo": {"name": self.name},
            "rootUri": file_to_uri(root),
            "capabilities": {
                "textDocument": {
                    "synchronization": {
                        "dynamicRegistration": False,
                        "willSave": False,
                        "willSaveWaitUntil": False,
                        "didSave": self.configuration.forwards("didSave"),
                    },
                    "publishDiagnostics": {"relatedInformation": True},
                },
                "window": {"showMessage": {}},
            },
            "workspaceFolders": [
                {"uri": file_to_uri(root), "name": Path(root).name}
            ],
        }
        result = await self.request("initialize", params, timeout=timeout)
        await self.notify("initialized", {})
        return (result or {}).get("capabilities", {})

    # ------------------------------------------------------------------
    # Document synchronization
    # ------------------------------------------------------------------

    def _forwarded(self, feature: str, uri: str) -> str | None:
        """Return the document's language if *feature* should reach the server."""
        language_id = self._documents.get(uri)
        if language_id is None or not self.configuration.forwards(feature):
            return None
        return language_id

    async def did_open(self, uri: str, language_id: str, text: str, version: int = 1) -> bool:
        """Notify the server that a document was opened, if it is in scope."""
        if not self.configuration.matches(uri, language_id):
            logger.debug("Not serving %s (%s)", uri, language_id)
            return False
        self._documents[uri] = language_id
        if not self.configuration.forwards("didOpen"):
            return False
        await self.notify(
            "textDocument/didOpen",
            {
                "textDocument": {
                    "uri": uri,
                    "languageId": language_id,
                    "version": version,
                    "text": text,
                }
            },
        )
        return True

    async def did_change(self, uri: str, text: str, version: int) -> bool:
        """Notify the server that a document changed (full sync)."""
        if self._forwarded("didChange", uri) is None:
            return False
        await self.notify(
            "textDocument/didChange",
            {
                "textDocument": {"uri": uri, "version": version},
                "contentChanges": [{"text": text}],
            },
        )
        return True

    async def did_save(self, uri: str, text: str | None = None) -> bool:
        """Notify the server that a document was saved."""
        if self._forwarded("didSave", uri) is None:
            return False
        params: dict[str, Any] = {"textDocument": {"uri": uri}}
        if text is not None:
            params["text"] = text
        await self.notify("textDocument/didSave", params)
        return True

    async def did_close(self, uri: str) -> bool:
        """Notify the server that a document was closed."""
        forwarded = self._forwarded("didClose", uri) is not None
        self._documents.pop(uri, None)
        if not forwarded:
            return False
        await self.notify("textDocument/didClose", {"textDocument": {"uri": uri}})
        return True

    def diagnostics(self, uri: str) -> list[dict]:
        """Diagnostics the server last published for *uri*."""
        return list(self._diagnostics.get(uri, []))


def _log_send_failure(task: asyncio.Task[None]) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Failed to answer server request: %s", task.exception())
