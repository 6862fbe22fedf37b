"""
Error taxonomy for the remote-session engine.

Every error carries an ErrorContext so that failures can be written to
the JSONL event stream without string parsing.

Error hierarchy:
- SSHError (base)
  - SSHConnectionError (transport failed or not connected)
    - ConnectionTimeout
  - AuthenticationError (credentials rejected or unavailable)
    - KeyLoadError
  - SFTPError (a specific remote operation failed)
    - RemoteNotFoundError
    - CommandFailedError
    - OperationTimeout
    - OperationCancelled
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any


class DisconnectReason(str, Enum):
    """Why a connection left the CONNECTED state."""
    NORMAL = "normal"
    REMOTE_CLOSED = "remote_closed"
    NETWORK_ERROR = "network_error"
    AUTH_FAILURE = "auth_failure"


@dataclass
class ErrorContext:
    """Structured context attached to every SSHError."""
    host: str | None = None
    port: int | None = None
    username: str | None = None
    connection_id: str | None = None
    path: str | None = None
    command: str | None = None
    original_error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.port is not None:
            assert isinstance(self.port, int) and 1 <= self.port <= 65535, (
                f"Port must be between 1 and 65535, got {self.port}"
            )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        result = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            if key == "extra" and isinstance(value, dict):
                field_names = {f.name for f in fields(self)} - {"extra"}
                collisions = field_names & value.keys()
                assert not collisions, (
                    f"Extra keys collision with dataclass field names: "
                    f"{collisions}. Use distinct key names in extra."
                )
                result.update(value)
            else:
                result[key] = value
        return result


class SSHError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, context: ErrorContext | None = None) -> None:
        assert isinstance(message, str) and message.strip(), (
            f"SSHError message must be a non-empty string, got {message!r}"
        )
        super().__init__(message)
        self.context = context or ErrorContext()

    @property
    def error_type(self) -> str:
        """Return the error type name for logging."""
        return self.__class__.__name__

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for JSONL logging."""
        return {
            "error_type": self.error_type,
            "message": str(self),
            **self.context.to_dict(),
        }


# ---------------------------------------------------------------------------
# Connection Errors
# ---------------------------------------------------------------------------

class SSHConnectionError(SSHError):
    """Transport-level failure, or an operation attempted while not connected."""
    pass


class ConnectionTimeout(SSHConnectionError):
    """The handshake did not complete within the connect timeout."""
    pass


# ---------------------------------------------------------------------------
# Authentication Errors
# ---------------------------------------------------------------------------

class AuthenticationError(SSHError):
    """
    Authentication failed or no authentication material was available.

    Raising this from connect() also invalidates any cached credentials
    for the connection.
    """
    pass


class KeyLoadError(AuthenticationError):
    """A private key file could not be read or decrypted."""

    def __init__(
        self,
        message: str,
        key_path: str | None = None,
        reason: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext()
        if key_path:
            context.path = key_path
        if reason:
            context.extra["reason"] = reason
        super().__init__(message, context)
        self.key_path = key_path


# ---------------------------------------------------------------------------
# Remote Operation Errors
# ---------------------------------------------------------------------------

class SFTPError(SSHError):
    """
    A remote file or command operation failed.

    The underlying exception, when there is one, is kept in ``cause``.
    """

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext()
        if cause is not None and context.original_error is None:
            context.original_error = str(cause) or type(cause).__name__
        super().__init__(message, context)
        self.cause = cause


class RemoteNotFoundError(SFTPError):
    """The remote path does not exist."""
    pass


class CommandFailedError(SFTPError):
    """A remote command exited non-zero and wrote to stderr."""

    def __init__(
        self,
        message: str,
        exit_code: int,
        stderr: str,
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext()
        context.extra["exit_code"] = exit_code
        super().__init__(message, context=context)
        self.exit_code = exit_code
        self.stderr = stderr


class OperationTimeout(SFTPError):
    """A remote operation did not finish within the operation timeout."""
    pass


class OperationCancelled(SFTPError):
    """A long-running operation was cancelled by its caller."""
    pass
