"""LSP client lifecycle for the gpulse WGSL language server.

Provides:
- Launcher helpers (servers): resolve the server binary, build run/debug
  ServerOptions and the document-scoped ClientConfiguration
- Transport: spawn the server and frame JSON-RPC over stdio, socket or ipc
- LanguageClient: handshake, shutdown and selector-filtered document sync
- LifecycleManager: the single client handle and its state machine
"""

from gpulse_client.lsp.client import LanguageClient
from gpulse_client.lsp.manager import ClientState, LifecycleManager
from gpulse_client.lsp.servers import (
    ClientConfiguration,
    DebugOptions,
    DocumentFilter,
    ServerDescriptor,
    ServerOptions,
    TransportKind,
    build_client_configuration,
    build_server_options,
    resolve_executable,
)
from gpulse_client.lsp.transport import Transport

__all__ = [
    "ClientConfiguration",
    "ClientState",
    "DebugOptions",
    "DocumentFilter",
    "LanguageClient",
    "LifecycleManager",
    "ServerDescriptor",
    "ServerOptions",
    "Transport",
    "TransportKind",
    "build_client_configuration",
    "build_server_options",
    "resolve_executable",
]
