"""Server descriptors, document scoping, and executable resolution.

Builds the run/debug ``ServerOptions`` and the ``ClientConfiguration`` from
static inputs. Nothing here starts a process: the only side effect is
resolving (and checking) the server executable path.
"""

from __future__ import annotations

import enum
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping
from urllib.parse import urlparse

from gpulse_client.errors import ServerNotFound

logger = logging.getLogger("gpulse.lsp.servers")


class TransportKind(str, enum.Enum):
    """Byte-stream channel used to talk to the server."""

    STDIO = "stdio"
    IPC = "ipc"
    SOCKET = "socket"


@dataclass(frozen=True)
class DebugOptions:
    """Extra launch settings for attaching a debugger to the server."""

    args: tuple[str, ...] = ()
    """Arguments appended after the transport flag."""

    env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    """Environment entries merged over the inherited environment."""


@dataclass(frozen=True)
class ServerDescriptor:
    """How to launch one server process."""

    executable: str
    """Resolved path to the server binary."""

    args: tuple[str, ...] = ()
    """Arguments placed before the transport flag."""

    transport: TransportKind = TransportKind.STDIO

    debug_options: DebugOptions | None = None

    def command(self, transport_flag: str | None = None) -> list[str]:
        """Full command line, with the transport flag slotted in."""
        cmd = [self.executable, *self.args]
        if transport_flag:
            cmd.append(transport_flag)
        if self.debug_options is not None:
            cmd.extend(self.debug_options.args)
        return cmd


@dataclass(frozen=True)
class ServerOptions:
    """Run and debug variants of the same server."""

    run: ServerDescriptor
    debug: ServerDescriptor

    def select(self, debug: bool = False) -> ServerDescriptor:
        return self.debug if debug else self.run


# ---------------------------------------------------------------------------
# Document scoping
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DocumentFilter:
    """A (scheme, language) pair; ``None`` matches anything."""

    scheme: str | None = None
    language: str | None = None

    def matches(self, scheme: str, language_id: str) -> bool:
        if self.scheme is not None and self.scheme != scheme:
            return False
        if self.language is not None and self.language != language_id:
            return False
        return True


SYNC_FEATURES = ("didOpen", "didChange", "didSave", "didClose")


@dataclass(frozen=True)
class ClientConfiguration:
    """Which documents the client attaches to and which changes it forwards."""

    document_selector: tuple[DocumentFilter, ...]
    synchronize: Mapping[str, bool] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def matches(self, uri: str, language_id: str) -> bool:
        """Whether a document falls under the selector."""
        scheme = urlparse(uri).scheme or "file"
        return any(f.matches(scheme, language_id) for f in self.document_selector)

    def forwards(self, feature: str) -> bool:
        """Whether a sync notification kind is sent; unset features are on."""
        return bool(self.synchronize.get(feature, True))


# ---------------------------------------------------------------------------
# Language mapping
# ---------------------------------------------------------------------------

EXTENSION_TO_LANGUAGE: dict[str, str] = {
    ".wgsl": "wgsl",
    ".txt": "plaintext",
}


def language_for_path(path: str) -> str:
    """Resolve a file path to its LSP language identifier."""
    return EXTENSION_TO_LANGUAGE.get(Path(path).suffix.lower(), "plaintext")


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def resolve_executable(
    executable: str | os.PathLike[str],
    install_root: str | os.PathLike[str] | None = None,
) -> str:
    """Resolve the server executable to an absolute, executable path.

    Absolute paths are checked as given. Relative paths are tried under
    *install_root* first, then looked up on ``PATH``.

    Raises:
        ServerNotFound: If no candidate exists and is executable.
    """
    candidate = Path(executable)
    if candidate.is_absolute():
        if _is_executable(candidate):
            return str(candidate)
    else:
        if install_root is not None:
            rooted = Path(install_root) / candidate
            if _is_executable(rooted):
                return str(rooted.resolve())
        found = shutil.which(str(executable))
        if found is not None:
            return found

    logger.debug("Server executable not resolvable: %s", executable)
    raise ServerNotFound(
        f"Language server executable not found: {executable}",
        details={
            "executable": str(executable),
            "install_root": str(install_root) if install_root is not None else None,
        },
    )


def build_server_options(
    executable: str | os.PathLike[str],
    *,
    args: Iterable[str] = (),
    transport: TransportKind | str = TransportKind.STDIO,
    debug_args: Iterable[str] = (),
    debug_env: Mapping[str, str] | None = None,
    install_root: str | os.PathLike[str] | None = None,
) -> ServerOptions:
    """Resolve the executable once and build the run/debug descriptors."""
    try:
        transport = TransportKind(transport)
    except ValueError:
        raise ValueError(f"Unknown transport kind: {transport!r}") from None

    path = resolve_executable(executable, install_root)
    base_args = tuple(args)
    debug_options = DebugOptions(
        args=tuple(debug_args),
        env=MappingProxyType(dict(debug_env or {})),
    )
    logger.debug("Resolved server %s (transport=%s)", path, transport.value)
    return ServerOptions(
        run=ServerDescriptor(path, base_args, transport),
        debug=ServerDescriptor(path, base_args, transport, debug_options),
    )


DEFAULT_DOCUMENT_SELECTOR = (DocumentFilter(scheme="file", language="wgsl"),)


def build_client_configuration(
    selector: Iterable[DocumentFilter | Mapping[str, str]] | None = None,
    synchronize: Mapping[str, bool] | None = None,
) -> ClientConfiguration:
    """Build the document scope; defaults to WGSL files on disk."""
    if selector is None:
        filters = DEFAULT_DOCUMENT_SELECTOR
    else:
        filters = tuple(
            f if isinstance(f, DocumentFilter)
            else DocumentFilter(scheme=f.get("scheme"), language=f.get("language"))
            for f in selector
        )
    sync = dict(synchronize or {})
    unknown = set(sync) - set(SYNC_FEATURES)
    if unknown:
        raise ValueError(f"Unknown synchronize features: {sorted(unknown)}")
    return ClientConfiguration(filters, MappingProxyType(sync))
