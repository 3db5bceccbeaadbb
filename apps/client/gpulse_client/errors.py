"""Standardized error codes for the gpulse language client.

Error code format: GP-[CATEGORY]-[CODE]

Categories:
- LAUNCH: Server resolution errors, detected before any process is spawned
- TRANSPORT: Process/channel errors during start or while running
- CLIENT: JSON-RPC errors on a live connection

Every failure path leaves the lifecycle manager in a well-defined state;
the ``fatal`` flag tells the host whether retrying ``activate`` makes sense.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ErrorDefinition:
    """Definition of a standardized error code."""

    code: str
    message: str
    retryable: bool = False
    fatal: bool = False


class GpulseError(Exception):
    """Standardized gpulse error with code and details."""

    code: str = "GP-INT-001"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        retryable: bool | None = None,
        details: dict[str, Any] | None = None,
    ):
        if code is not None:
            self.code = code
        definition = CLIENT_ERRORS.get(self.code)
        if message is None:
            message = definition.message if definition else "Unknown error"
        super().__init__(message)
        if retryable is None:
            retryable = definition.retryable if definition else False
        self.retryable = retryable
        self.fatal = definition.fatal if definition else False
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert error to a dictionary the host can display or log."""
        return {
            "error": {
                "code": self.code,
                "message": str(self),
                "retryable": self.retryable,
                "fatal": self.fatal,
                "details": self.details,
            }
        }


class ServerNotFound(GpulseError):
    """The server executable does not exist or is not executable."""

    code = "GP-LAUNCH-001"


class TransportStartFailure(GpulseError):
    """Spawning, connecting to or initializing the server failed."""

    code = "GP-TRANSPORT-001"


class ActivationCancelled(TransportStartFailure):
    """An in-flight start was cancelled by ``deactivate``."""

    code = "GP-TRANSPORT-002"


class UnexpectedServerExit(GpulseError):
    """The server process exited while the client was running."""

    code = "GP-TRANSPORT-003"

    def __init__(self, returncode: int | None, message: str | None = None):
        if message is None:
            message = f"Language server exited unexpectedly (returncode={returncode})"
        super().__init__(message, details={"returncode": returncode})
        self.returncode = returncode


class ClientNotRunning(GpulseError):
    """A message was sent without a live transport."""

    code = "GP-CLIENT-001"


class ServerRequestError(GpulseError):
    """The server answered a request with a JSON-RPC error object."""

    code = "GP-CLIENT-002"


# =============================================================================
# Error Definitions
# =============================================================================

CLIENT_ERRORS: dict[str, ErrorDefinition] = {
    # Launch errors
    "GP-LAUNCH-001": ErrorDefinition(
        "GP-LAUNCH-001", "Language server executable not found", fatal=True
    ),

    # Transport errors
    "GP-TRANSPORT-001": ErrorDefinition(
        "GP-TRANSPORT-001", "Failed to start language server transport", retryable=True
    ),
    "GP-TRANSPORT-002": ErrorDefinition(
        "GP-TRANSPORT-002", "Language client start was cancelled", retryable=True
    ),
    "GP-TRANSPORT-003": ErrorDefinition(
        "GP-TRANSPORT-003", "Language server exited unexpectedly"
    ),

    # Client errors
    "GP-CLIENT-001": ErrorDefinition(
        "GP-CLIENT-001", "Language client is not running", retryable=True
    ),
    "GP-CLIENT-002": ErrorDefinition("GP-CLIENT-002", "Language server returned an error"),

    # Internal errors
    "GP-INT-001": ErrorDefinition("GP-INT-001", "Internal client error"),
}
