"""Centralized client configuration for gpulse.

Reads from environment variables (optionally seeded from a ``.env`` file)
with sensible defaults.
"""

from __future__ import annotations

import logging
import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

CLIENT_ID = "gpulse"
CLIENT_NAME = "WGSL Language Server"

# Server launch
DEFAULT_SERVER_PATH = "gpulse_exe"
DEFAULT_TRANSPORT = "stdio"

# Timeouts (seconds)
DEFAULT_START_TIMEOUT = 30.0
DEFAULT_STOP_TIMEOUT = 5.0

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Static inputs for building the server and client configuration."""

    server_path: str = DEFAULT_SERVER_PATH
    server_args: tuple[str, ...] = field(default_factory=tuple)
    install_root: Path | None = None
    transport: str = DEFAULT_TRANSPORT
    debug: bool = False
    debug_args: tuple[str, ...] = field(default_factory=tuple)
    start_timeout: float = DEFAULT_START_TIMEOUT
    stop_timeout: float = DEFAULT_STOP_TIMEOUT
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> Settings:
        """Build settings from ``GPULSE_*`` environment variables."""
        if dotenv:
            load_dotenv(find_dotenv(usecwd=True))

        install_root = os.environ.get("GPULSE_INSTALL_ROOT")
        return cls(
            server_path=os.environ.get("GPULSE_SERVER_PATH", DEFAULT_SERVER_PATH),
            server_args=tuple(shlex.split(os.environ.get("GPULSE_SERVER_ARGS", ""))),
            install_root=Path(install_root) if install_root else None,
            transport=os.environ.get("GPULSE_TRANSPORT", DEFAULT_TRANSPORT).lower(),
            debug=os.environ.get("GPULSE_DEBUG", "false").lower() in _TRUTHY,
            debug_args=tuple(shlex.split(os.environ.get("GPULSE_DEBUG_ARGS", ""))),
            start_timeout=float(
                os.environ.get("GPULSE_START_TIMEOUT", str(DEFAULT_START_TIMEOUT))
            ),
            stop_timeout=float(
                os.environ.get("GPULSE_STOP_TIMEOUT", str(DEFAULT_STOP_TIMEOUT))
            ),
            log_level=os.environ.get("GPULSE_LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str | int = "INFO") -> logging.Logger:
    """Attach a stderr handler to the ``gpulse`` logger (once)."""
    logger = logging.getLogger("gpulse")
    logger.setLevel(level)
    if not any(getattr(h, "_gpulse_handler", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("[%(name)s] %(levelname)s %(message)s"))
        handler._gpulse_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    return logger
