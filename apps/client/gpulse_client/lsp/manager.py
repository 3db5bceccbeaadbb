"""Language client lifecycle manager.

Owns the single ``LanguageClient`` handle and mediates every transition of
its state machine::

    absent -> starting -> running -> stopping -> absent
                 |           |
                 +-----------+--> failed

Re-activation is an idempotent no-op: calling ``activate`` while a client is
starting or running returns that client (after its start finishes) and never
spawns a second server.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import weakref
from typing import Any, Awaitable, Callable, Protocol

from gpulse_client.config import CLIENT_ID, CLIENT_NAME
from gpulse_client.errors import (
    ActivationCancelled,
    GpulseError,
    TransportStartFailure,
    UnexpectedServerExit,
)
from gpulse_client.lsp.client import LanguageClient
from gpulse_client.lsp.servers import ClientConfiguration, ServerOptions

logger = logging.getLogger("gpulse.lsp.manager")


class ClientState(str, enum.Enum):
    ABSENT = "absent"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


class CleanupRegistry(Protocol):
    """The part of the host context the manager uses.

    Contexts are tracked by weak reference, so implementations must support
    ``weakref``.
    """

    def register_cleanup(self, callback: Callable[[], Awaitable[Any]]) -> None: ...


StateListener = Callable[[ClientState, ClientState], None]
ErrorListener = Callable[[GpulseError], None]
ClientFactory = Callable[..., LanguageClient]


class LifecycleManager:
    """Starts, stops and watches the one language client of this extension."""

    def __init__(
        self,
        *,
        client_id: str = CLIENT_ID,
        name: str = CLIENT_NAME,
        debug: bool = False,
        cwd: str | None = None,
        start_timeout: float = 30.0,
        stop_timeout: float = 5.0,
        client_factory: ClientFactory = LanguageClient,
    ) -> None:
        self._client_id = client_id
        self._name = name
        self._debug = debug
        self.cwd = cwd
        self._start_timeout = start_timeout
        self._stop_timeout = stop_timeout
        self._client_factory = client_factory

        self._state = ClientState.ABSENT
        self._client: LanguageClient | None = None
        self._lock = asyncio.Lock()
        self._start_task: asyncio.Task[None] | None = None
        self._stop_task: asyncio.Task[None] | None = None
        self._cleanup_task: asyncio.Task[None] | None = None
        self._cancel_requested = False
        self._registered_contexts: weakref.WeakSet[CleanupRegistry] = weakref.WeakSet()
        self._state_listeners: list[StateListener] = []
        self._error_listeners: list[ErrorListener] = []
        self.last_error: GpulseError | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def client(self) -> LanguageClient | None:
        return self._client

    @property
    def is_running(self) -> bool:
        return self._state is ClientState.RUNNING

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on_state_change(self, listener: StateListener) -> None:
        """Call *listener(old, new)* on every state transition."""
        self._state_listeners.append(listener)

    def on_error(self, listener: ErrorListener) -> None:
        """Call *listener(error)* when a running client fails."""
        self._error_listeners.append(listener)

    def _set_state(self, new: ClientState) -> None:
        old, self._state = self._state, new
        if old is new:
            return
        logger.debug("Client state %s -> %s", old.value, new.value)
        for listener in list(self._state_listeners):
            try:
                listener(old, new)
            except Exception:
                logger.exception("State listener failed")

    def _report(self, error: GpulseError) -> None:
        self.last_error = error
        for listener in list(self._error_listeners):
            try:
                listener(error)
            except Exception:
                logger.exception("Error listener failed")

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    async def activate(
        self,
        server_options: ServerOptions,
        configuration: ClientConfiguration,
        context: CleanupRegistry | None = None,
    ) -> LanguageClient:
        """Construct and start the client; return it once it is running.

        Raises:
            ServerNotFound: If the server executable cannot be launched.
            TransportStartFailure: If the server fails to connect or initialize.
            ActivationCancelled: If ``deactivate`` cancelled this start.
        """
        if context is not None and context not in self._registered_contexts:
            context.register_cleanup(self.deactivate)
            self._registered_contexts.add(context)

        while True:
            async with self._lock:
                state = self._state
                if state is ClientState.RUNNING and self._client is not None:
                    logger.warning("Language client already running; ignoring activate")
                    return self._client
                if state in (ClientState.ABSENT, ClientState.FAILED):
                    task = self._begin_start(server_options, configuration)
                    break
                if state is ClientState.STARTING and self._start_task is not None:
                    logger.warning("Language client already starting; awaiting it")
                    task = self._start_task
                    break
                pending = self._stop_task
            # stopping: let the teardown finish, then try again
            if pending is not None:
                await asyncio.shield(pending)
            else:
                await asyncio.sleep(0)

        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled() and self._cancel_requested:
                raise ActivationCancelled(
                    "Language client start was cancelled by deactivate"
                ) from None
            raise

        client = self._client
        if client is None or self._state is not ClientState.RUNNING:
            raise TransportStartFailure("Language client stopped during start")
        return client

    def _begin_start(
        self, server_options: ServerOptions, configuration: ClientConfiguration
    ) -> asyncio.Task[None]:
        self.last_error = None
        self._cancel_requested = False
        client = self._client_factory(
            self._client_id,
            self._name,
            server_options,
            configuration,
            debug=self._debug,
            cwd=self.cwd,
            start_timeout=self._start_timeout,
            stop_timeout=self._stop_timeout,
        )
        client.on_close(lambda error: self._handle_unexpected_exit(client, error))
        self._client = client
        self._set_state(ClientState.STARTING)
        self._start_task = asyncio.create_task(
            self._run_start(client), name="gpulse-client-start"
        )
        return self._start_task

    async def _run_start(self, client: LanguageClient) -> None:
        try:
            if self._cleanup_task is not None:
                await asyncio.gather(self._cleanup_task, return_exceptions=True)
            await client.start()
        except BaseException as exc:
            async with self._lock:
                if self._client is client and self._state is ClientState.STARTING:
                    self._client = None
                    self._set_state(ClientState.ABSENT)
            if isinstance(exc, GpulseError):
                logger.error("Language client failed to start: %s", exc)
            raise

        async with self._lock:
            if self._client is client and self._state is ClientState.STARTING:
                self._set_state(ClientState.RUNNING)
                logger.info("Language client %s is running", self._client_id)

    def _handle_unexpected_exit(
        self, client: LanguageClient, error: UnexpectedServerExit
    ) -> None:
        if self._client is not client or self._state not in (
            ClientState.STARTING,
            ClientState.RUNNING,
        ):
            return
        logger.error("Language client %s failed: %s", self._client_id, error)
        self._client = None
        self._set_state(ClientState.FAILED)
        # Release the listener/pipes of the dead transport; no restart.
        self._cleanup_task = asyncio.get_running_loop().create_task(
            client.stop(), name="gpulse-client-cleanup"
        )
        self._report(error)

    # ------------------------------------------------------------------
    # Deactivation
    # ------------------------------------------------------------------

    async def deactivate(self) -> bool:
        """Stop the client if there is one.

        Returns ``True`` once a live or starting client has been torn down and
        its server process has exited, or ``False`` when there was nothing to
        do. Safe to call at any time.
        """
        async with self._lock:
            state = self._state
            if state is ClientState.ABSENT:
                return False
            if state is ClientState.FAILED:
                self._set_state(ClientState.ABSENT)
                cleanup = self._cleanup_task
                stop_task = None
            elif state is ClientState.STOPPING:
                cleanup = None
                stop_task = self._stop_task
            else:
                cleanup = None
                self._set_state(ClientState.STOPPING)
                stop_task = self._stop_task = asyncio.create_task(
                    self._run_stop(state), name="gpulse-client-stop"
                )

        if stop_task is None:
            if cleanup is not None:
                await asyncio.shield(cleanup)
            logger.debug("Nothing to deactivate")
            return False

        await asyncio.shield(stop_task)
        return True

    async def _run_stop(self, previous: ClientState) -> None:
        client = self._client
        try:
            if previous is ClientState.STARTING and self._start_task is not None:
                logger.info("Cancelling in-flight language client start")
                self._cancel_requested = True
                self._start_task.cancel()
                try:
                    await self._start_task
                except (asyncio.CancelledError, GpulseError):
                    pass
            if client is not None:
                await client.stop()
        finally:
            async with self._lock:
                self._client = None
                self._start_task = None
                self._stop_task = None
                self._set_state(ClientState.ABSENT)
