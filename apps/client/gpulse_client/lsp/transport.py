"""Process launch and Content-Length framed byte-stream transport.

Spawns the server described by a ``ServerDescriptor`` and connects to it over
stdio, a loopback TCP socket, or a Unix domain socket ("ipc"). Transport flags
follow the vscode-languageclient conventions (``--stdio``, ``--socket=<port>``,
``--pipe=<path>``), so the same server binary works with either client.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import sys
import tempfile
from typing import Any, Callable

from gpulse_client.errors import ClientNotRunning, ServerNotFound, TransportStartFailure
from gpulse_client.lsp.servers import ServerDescriptor, TransportKind

logger = logging.getLogger("gpulse.lsp.transport")
server_logger = logging.getLogger("gpulse.server")

MessageHandler = Callable[[dict[str, Any]], None]
CloseHandler = Callable[[int | None], None]


def encode_message(body: dict[str, Any]) -> bytes:
    """Encode a JSON-RPC message with Content-Length header."""
    payload = json.dumps(body).encode("utf-8")
    header = f"Content-Length: {len(payload)}\r\n\r\n".encode("ascii")
    return header + payload


async def read_headers(reader: asyncio.StreamReader) -> dict[str, str]:
    """Read LSP message headers until the blank line separator.

    Raises:
        EOFError: If the stream ends before a full header block.
    """
    headers: dict[str, str] = {}
    while True:
        line_bytes = await reader.readline()
        if not line_bytes:
            raise EOFError("stream closed")
        line = line_bytes.decode("ascii", errors="replace").strip()
        if not line:
            if headers:
                break
            continue
        if ":" in line:
            key, value = line.split(":", 1)
            headers[key.strip()] = value.strip()
    return headers


class Transport:
    """One server process and the channel connected to it."""

    def __init__(
        self,
        descriptor: ServerDescriptor,
        *,
        on_message: MessageHandler,
        on_close: CloseHandler,
        cwd: str | None = None,
        connect_timeout: float = 30.0,
    ) -> None:
        self._descriptor = descriptor
        self._on_message = on_message
        self._on_close = on_close
        self._cwd = cwd
        self._connect_timeout = connect_timeout

        self._process: asyncio.subprocess.Process | None = None
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._listener: asyncio.AbstractServer | None = None
        self._pipe_dir: str | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._connected = False
        self._closing = False
        self._close_notified = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process is not None else None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn the server and connect the channel.

        Raises:
            ServerNotFound: If the executable cannot be spawned at all.
            TransportStartFailure: If the process fails to start or connect.
        """
        if self._process is not None:
            raise TransportStartFailure("Transport already started")

        kind = self._descriptor.transport
        try:
            if kind is TransportKind.STDIO:
                process = await self._spawn("--stdio", stdin=asyncio.subprocess.PIPE)
                self._reader = process.stdout
                self._writer = process.stdin
            else:
                flag, accepted = await self._listen(kind)
                process = await self._spawn(flag, stdin=asyncio.subprocess.DEVNULL)
                self._reader, self._writer = await self._await_connection(
                    process, accepted
                )
                # one connection per server; stop listening
                self._close_listener()
            if self._reader is None or self._writer is None:
                raise TransportStartFailure("Language server channel has no pipes")
        except BaseException:
            await self._abort()
            raise

        self._connected = True
        self._tasks.append(
            asyncio.create_task(
                self._reader_loop(self._reader), name="gpulse-lsp-reader"
            )
        )
        logger.info(
            "Language server started (pid=%s, transport=%s)", self.pid, kind.value
        )

    async def _spawn(
        self, transport_flag: str, *, stdin: int
    ) -> asyncio.subprocess.Process:
        command = self._descriptor.command(transport_flag)
        env = None
        if self._descriptor.debug_options is not None and self._descriptor.debug_options.env:
            env = {**os.environ, **self._descriptor.debug_options.env}

        logger.info("Starting language server: %s", " ".join(command))
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=stdin,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                env=env,
            )
        except (FileNotFoundError, PermissionError) as exc:
            logger.error("Language server binary not runnable: %s", command[0])
            raise ServerNotFound(
                f"Language server executable not found: {command[0]}",
                details={"executable": command[0], "reason": str(exc)},
            ) from exc
        except OSError as exc:
            logger.error("Failed to start language server: %s", exc)
            raise TransportStartFailure(
                f"Failed to start language server: {exc}",
                details={"executable": command[0]},
            ) from exc

        self._process = process
        self._forward(process.stderr, "gpulse-lsp-stderr")
        # Outside stdio mode stdout is just more log output.
        if self._descriptor.transport is not TransportKind.STDIO:
            self._forward(process.stdout, "gpulse-lsp-stdout")
        return process

    def _forward(self, stream: asyncio.StreamReader | None, name: str) -> None:
        if stream is not None:
            self._tasks.append(asyncio.create_task(self._forward_output(stream), name=name))

    async def _listen(
        self, kind: TransportKind
    ) -> tuple[str, asyncio.Future[tuple[asyncio.StreamReader, asyncio.StreamWriter]]]:
        """Open the listening endpoint the server connects back to."""
        loop = asyncio.get_running_loop()
        accepted: asyncio.Future[tuple[asyncio.StreamReader, asyncio.StreamWriter]]
        accepted = loop.create_future()

        def on_connect(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            if accepted.done():
                logger.warning("Rejecting extra connection from language server")
                writer.close()
                return
            accepted.set_result((reader, writer))

        if kind is TransportKind.SOCKET:
            self._listener = await asyncio.start_server(on_connect, "127.0.0.1", 0)
            port = self._listener.sockets[0].getsockname()[1]
            return f"--socket={port}", accepted

        if sys.platform == "win32":
            raise TransportStartFailure("ipc transport requires Unix domain sockets")
        self._pipe_dir = tempfile.mkdtemp(prefix="gpulse-")
        path = os.path.join(self._pipe_dir, "lsp.sock")
        self._listener = await asyncio.start_unix_server(on_connect, path)
        return f"--pipe={path}", accepted

    async def _await_connection(
        self,
        process: asyncio.subprocess.Process,
        accepted: asyncio.Future[tuple[asyncio.StreamReader, asyncio.StreamWriter]],
    ) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Wait for the server to connect, or fail if it exits first."""
        exited = asyncio.ensure_future(process.wait())
        try:
            done, _ = await asyncio.wait(
                {accepted, exited},
                timeout=self._connect_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if not exited.done():
                exited.cancel()

        if accepted in done:
            return accepted.result()
        if exited in done:
            raise TransportStartFailure(
                "Language server exited before connecting",
                details={"returncode": process.returncode},
            )
        raise TransportStartFailure(
            f"Language server did not connect within {self._connect_timeout}s"
        )

    async def close(self, timeout: float = 5.0) -> int | None:
        """Close the channel and wait for the process to terminate.

        The process is killed if it has not exited after *timeout* seconds.
        Returns the process return code.
        """
        self._closing = True
        self._connected = False

        if self._writer is not None and not self._writer.is_closing():
            try:
                self._writer.close()
            except (ConnectionError, RuntimeError):
                pass

        returncode = await self._terminate(timeout)
        await self._cleanup()
        logger.info("Language server stopped (returncode=%s)", returncode)
        return returncode

    async def _terminate(self, timeout: float) -> int | None:
        if self._process is None:
            return None
        try:
            await asyncio.wait_for(self._process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Language server did not exit gracefully, killing")
            try:
                self._process.kill()
            except ProcessLookupError:
                pass
            await self._process.wait()
        return self._process.returncode

    async def _abort(self) -> None:
        """Tear down a half-started transport; never leaves a live process."""
        self._closing = True
        self._connected = False
        if self._process is not None and self._process.returncode is None:
            try:
                self._process.kill()
            except ProcessLookupError:
                pass
            await self._process.wait()
        await self._cleanup()

    async def _cleanup(self) -> None:
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        for task in self._tasks:
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

        self._close_listener()
        if self._pipe_dir is not None:
            shutil.rmtree(self._pipe_dir, ignore_errors=True)
            self._pipe_dir = None

    def _close_listener(self) -> None:
        if self._listener is not None:
            self._listener.close()
            self._listener = None

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(self, message: dict[str, Any]) -> None:
        """Write one framed JSON-RPC message to the server."""
        if not self._connected or self._writer is None:
            raise ClientNotRunning("Language server transport is not connected")
        try:
            self._writer.write(encode_message(message))
            await self._writer.drain()
        except (ConnectionError, RuntimeError) as exc:
            raise ClientNotRunning(f"Language server transport closed: {exc}") from exc

    # ------------------------------------------------------------------
    # Reader loop
    # ------------------------------------------------------------------

    async def _reader_loop(self, reader: asyncio.StreamReader) -> None:
        """Continuously read JSON-RPC messages from the server.

        Malformed frames are logged and skipped; only the end of the stream
        (or a stream error) closes the channel.
        """
        try:
            while True:
                try:
                    headers = await read_headers(reader)
                except EOFError:
                    break

                content_length_str = headers.get("Content-Length")
                if content_length_str is None:
                    logger.warning("Missing Content-Length header, skipping")
                    continue
                try:
                    content_length = int(content_length_str)
                except ValueError:
                    content_length = -1
                if content_length < 0:
                    logger.warning("Invalid Content-Length: %s", content_length_str)
                    continue

                try:
                    body_bytes = await reader.readexactly(content_length)
                except asyncio.IncompleteReadError:
                    break
                try:
                    message = json.loads(body_bytes.decode("utf-8"))
                except (UnicodeDecodeError, json.JSONDecodeError):
                    logger.warning("Invalid JSON from language server")
                    continue
                if not isinstance(message, dict):
                    logger.warning(
                        "Ignoring non-object JSON-RPC message: %s", type(message).__name__
                    )
                    continue

                try:
                    self._on_message(message)
                except Exception:
                    logger.exception("Failed to handle message from language server")
        except asyncio.CancelledError:
            return
        except (ConnectionError, ValueError, asyncio.LimitOverrunError) as exc:
            logger.error("LSP reader loop stopped: %s", exc)

        await self._channel_closed()

    async def _channel_closed(self) -> None:
        self._connected = False
        if self._closing:
            return
        returncode = await self._terminate(timeout=5.0)
        if self._closing or self._close_notified:
            return
        self._close_notified = True
        logger.warning("Language server channel closed (returncode=%s)", returncode)
        self._on_close(returncode)

    async def _forward_output(self, stream: asyncio.StreamReader) -> None:
        """Forward server log output line by line to the ``gpulse.server`` logger."""
        try:
            while True:
                line = await stream.readline()
                if not line:
                    return
                server_logger.info("%s", line.decode("utf-8", errors="replace").rstrip())
        except asyncio.CancelledError:
            return
        except (ConnectionError, ValueError) as exc:
            logger.debug("Stopped forwarding server output: %s", exc)
