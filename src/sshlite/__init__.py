"""sshlite: remote-session engine for browsing, reading and searching files over SSH."""

__version__ = "0.1.0"

from sshlite.auth import (
    AuthOptions,
    CredentialDescriptor,
    CredentialKind,
    CredentialStore,
    MemoryCredentialStore,
    load_private_key,
    resolve_auth,
)
from sshlite.config import EngineSettings, HostConfig, KeepaliveConfig
from sshlite.connection import ConnectionState, SSHConnection, Subscription
from sshlite.context import EngineContext
from sshlite.errors import (
    AuthenticationError,
    CommandFailedError,
    ConnectionTimeout,
    DisconnectReason,
    ErrorContext,
    KeyLoadError,
    OperationCancelled,
    OperationTimeout,
    RemoteNotFoundError,
    SFTPError,
    SSHConnectionError,
    SSHError,
)
from sshlite.events import Event, EventCollector, EventEmitter, EventType
from sshlite.forwarding import ForwardHandle, ForwardIntent, PortForwardRegistry
from sshlite.models import (
    ExecResult,
    RemoteFile,
    SearchOptions,
    SearchResult,
    ServerCapabilities,
    WatchMethod,
)
from sshlite.registry import ConnectionRegistry
from sshlite.scheduler import Priority, QueueStatus, QueueTask, Scheduler
from sshlite.ssh_config import SSHConfig
from sshlite.watch import FileChange, FileChangeEvent, FileWatcher

__all__ = [
    "__version__",
    # Auth
    "AuthOptions",
    "CredentialDescriptor",
    "CredentialKind",
    "CredentialStore",
    "MemoryCredentialStore",
    "load_private_key",
    "resolve_auth",
    # Config
    "EngineSettings",
    "HostConfig",
    "KeepaliveConfig",
    "SSHConfig",
    # Connection
    "ConnectionState",
    "SSHConnection",
    "Subscription",
    "ConnectionRegistry",
    "EngineContext",
    # Errors
    "AuthenticationError",
    "CommandFailedError",
    "ConnectionTimeout",
    "DisconnectReason",
    "ErrorContext",
    "KeyLoadError",
    "OperationCancelled",
    "OperationTimeout",
    "RemoteNotFoundError",
    "SFTPError",
    "SSHConnectionError",
    "SSHError",
    # Events
    "Event",
    "EventCollector",
    "EventEmitter",
    "EventType",
    # Forwarding
    "ForwardHandle",
    "ForwardIntent",
    "PortForwardRegistry",
    # Models
    "ExecResult",
    "RemoteFile",
    "SearchOptions",
    "SearchResult",
    "ServerCapabilities",
    "WatchMethod",
    # Scheduler
    "Priority",
    "QueueStatus",
    "QueueTask",
    "Scheduler",
    # Watching
    "FileChange",
    "FileChangeEvent",
    "FileWatcher",
]
