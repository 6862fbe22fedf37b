"""
A single authenticated SSH session and everything done over it.

SSHConnection owns:
- the asyncssh transport (at most one live transport per instance)
- a lazily created SFTP client, reused until disconnect
- the local port forwards opened through it
- a small state machine with synchronous observers

State transitions:
    DISCONNECTED/ERROR --connect()--> CONNECTING
    CONNECTING --ok--> CONNECTED
    CONNECTING --failure--> ERROR
    CONNECTED --disconnect() or transport closed--> DISCONNECTED

Every remote call is raced against the operation timeout, and every
failure surfaces as SSHConnectionError, AuthenticationError or SFTPError.
Nothing is retried here.
"""
from __future__ import annotations

import asyncio
import logging
import posixpath
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, TypeVar

import asyncssh

from sshlite import commands
from sshlite.auth import (
    AuthOptions,
    CredentialDescriptor,
    CredentialStore,
    MemoryCredentialStore,
    resolve_auth,
)
from sshlite.config import EngineSettings, HostConfig
from sshlite.errors import (
    AuthenticationError,
    CommandFailedError,
    ConnectionTimeout,
    DisconnectReason,
    ErrorContext,
    OperationCancelled,
    OperationTimeout,
    RemoteNotFoundError,
    SFTPError,
    SSHConnectionError,
    SSHError,
)
from sshlite.events import EventEmitter, EventType
from sshlite.forwarding import ForwardIntent, PortForwardRegistry
from sshlite.models import (
    ExecResult,
    RemoteFile,
    SearchOptions,
    SearchResult,
    ServerCapabilities,
    WatchMethod,
    join_remote,
    sort_listing,
)
from sshlite.watch import FileChangeCallback, FileChangeEvent, FileWatcher

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Search results beyond this many unique paths are returned without stat data.
STAT_ENRICH_LIMIT = 100

_AUTH_MARKERS = ("auth", "permission", "publickey")


def _exit_code(result: asyncssh.SSHCompletedProcess) -> int:
    return result.exit_status if result.exit_status is not None else -1


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


StateListener = Callable[[ConnectionState], None]
ProgressCallback = Callable[[int, int], None]


class Subscription:
    """Returned by SSHConnection.subscribe(); cancel() stops delivery."""

    def __init__(self, connection: "SSHConnection", listener: StateListener) -> None:
        self._connection = connection
        self._listener = listener

    def cancel(self) -> None:
        self._connection.unsubscribe(self._listener)


class _SessionClient(asyncssh.SSHClient):
    """
    asyncssh client callbacks for one transport.

    Keyboard-interactive challenges are answered by replaying the
    resolved password for every prompt. Only one keyboard-interactive
    attempt is made per transport; once it is rejected the method is
    declined and asyncssh fails with PermissionDenied. Transport loss
    is reported back to the owning SSHConnection.
    """

    def __init__(self, owner: "SSHConnection", password: str | None) -> None:
        super().__init__()
        self._owner = owner
        self._password = password
        self._kbdint_attempted = False
        self.challenge_count = 0

    def connection_lost(self, exc: Exception | None) -> None:
        self._owner._on_transport_closed(self, exc)

    def kbdint_auth_requested(self) -> str | None:
        if self._password is None or self._kbdint_attempted:
            return None
        self._kbdint_attempted = True
        return ""

    def kbdint_challenge_received(
        self,
        name: str,
        instructions: str,
        lang: str,
        prompts: list[tuple[str, bool]],
    ) -> list[str] | None:
        if self._password is None:
            return None
        # Empty challenges only carry banner text
        if not prompts:
            return []
        self.challenge_count += 1
        return [self._password] * len(prompts)


class SSHConnection:
    """
    One remote host session.

    Usage:
        conn = SSHConnection(HostConfig("example.com", username="me"),
                             settings=EngineSettings(),
                             credential_store=store)
        await conn.connect()
        files = await conn.list_files("~")
        await conn.disconnect()

    Or as an async context manager, which connects and disconnects.
    """

    def __init__(
        self,
        host: HostConfig,
        credential: CredentialDescriptor | None = None,
        *,
        settings: EngineSettings | None = None,
        credential_store: CredentialStore | None = None,
        emitter: EventEmitter | None = None,
    ) -> None:
        self._host = host
        self._credential = credential
        self._settings = settings or EngineSettings()
        self._store: CredentialStore = credential_store or MemoryCredentialStore()
        self._emitter = emitter or EventEmitter()

        self._state = ConnectionState.DISCONNECTED
        self._listeners: list[StateListener] = []
        self._conn: asyncssh.SSHClientConnection | None = None
        self._client: _SessionClient | None = None
        self._sftp: asyncssh.SFTPClient | None = None
        self._capabilities: ServerCapabilities | None = None
        self._forwards = PortForwardRegistry(self.id, self._emitter)
        self._watchers: dict[str, FileWatcher] = {}

        self._connect_lock = asyncio.Lock()
        self._sftp_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Identity and state
    # ------------------------------------------------------------------

    @property
    def id(self) -> str:
        return self._host.connection_id

    @property
    def host(self) -> HostConfig:
        return self._host

    @property
    def credential(self) -> CredentialDescriptor | None:
        return self._credential

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SSHConnection):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    def __repr__(self) -> str:
        return f"SSHConnection({self.id!r}, state={self._state.value})"

    def subscribe(self, listener: StateListener) -> Subscription:
        """Call ``listener(new_state)`` on every state change."""
        self._listeners.append(listener)
        return Subscription(self, listener)

    def unsubscribe(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _set_state(self, state: ConnectionState) -> None:
        previous = self._state
        if previous == state:
            return
        self._state = state
        logger.debug("%s: %s -> %s", self.id, previous.value, state.value)
        self._emitter.emit(
            EventType.STATE_CHANGE,
            connection_id=self.id,
            old_state=previous.value,
            new_state=state.value,
        )
        # Snapshot so listeners may unsubscribe while being notified
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("State listener failed for %s", self.id)

    def _context(self, **kwargs: Any) -> ErrorContext:
        return ErrorContext(
            host=self._host.host,
            port=self._host.port,
            username=self._host.username,
            connection_id=self.id,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> "SSHConnection":
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        """
        Authenticate and open the transport.

        A no-op when already connected.

        Raises:
            ConnectionTimeout: the handshake exceeded connect_timeout.
            AuthenticationError: credentials were rejected or unavailable;
                cached credentials for this connection are invalidated.
            SSHConnectionError: any other transport failure.
        """
        async with self._connect_lock:
            if self._state == ConnectionState.CONNECTED:
                return

            self._set_state(ConnectionState.CONNECTING)
            self._emitter.emit(
                EventType.CONNECT,
                status="initiating",
                connection_id=self.id,
                host=self._host.host,
                port=self._host.port,
                username=self._host.username,
            )
            ctx = self._context()
            auth: AuthOptions | None = None

            try:
                auth = await resolve_auth(
                    self._host, self._credential, self._store, self._settings
                )
                self._emitter.emit(
                    EventType.AUTH,
                    status="resolved",
                    connection_id=self.id,
                    methods=list(auth.methods),
                )
                self._conn = await asyncio.wait_for(
                    self._open_transport(auth),
                    timeout=self._settings.connect_timeout,
                )
            except asyncio.TimeoutError as e:
                error: SSHError = ConnectionTimeout(
                    f"Connection to {self.id} timed out after "
                    f"{self._settings.connect_timeout}s",
                    context=ctx,
                )
                await self._fail_connect(error)
                raise error from e
            except Exception as e:
                error = self._map_connect_error(e, ctx)
                if isinstance(error, AuthenticationError):
                    await self._store.invalidate(self.id)
                    self._emitter.emit(
                        EventType.AUTH,
                        status="failed",
                        connection_id=self.id,
                        error_type=type(e).__name__,
                        error_message=str(e),
                    )
                await self._fail_connect(error)
                raise error from e
            finally:
                if auth is not None:
                    auth.close()

            self._set_state(ConnectionState.CONNECTED)
            self._emitter.emit(EventType.CONNECT, status="connected", connection_id=self.id)
            logger.info("Connected to %s", self.id)

    async def _open_transport(self, auth: AuthOptions) -> asyncssh.SSHClientConnection:
        def client_factory() -> _SessionClient:
            self._client = _SessionClient(self, auth.password)
            return self._client

        return await asyncssh.connect(
            self._host.host,
            port=self._host.port,
            username=self._host.username,
            known_hosts=self._host.known_hosts,
            client_factory=client_factory,
            **self._settings.keepalive.to_asyncssh_options(),
            **auth.to_asyncssh_options(),
        )

    def _map_connect_error(self, exc: Exception, ctx: ErrorContext) -> SSHError:
        if isinstance(exc, SSHError):
            return exc

        ctx.original_error = str(exc) or type(exc).__name__
        message = str(exc).lower()
        if isinstance(exc, asyncssh.PermissionDenied) or any(
            marker in message for marker in _AUTH_MARKERS
        ):
            return AuthenticationError(
                f"Authentication failed for {self.id}: {exc}", context=ctx
            )
        return SSHConnectionError(f"Connection to {self.id} failed: {exc}", context=ctx)

    async def _fail_connect(self, error: SSHError) -> None:
        conn, self._conn = self._conn, None
        self._client = None
        if conn is not None:
            conn.abort()
        self._set_state(ConnectionState.ERROR)
        self._emitter.emit(EventType.ERROR, **{**error.to_dict(), "connection_id": self.id})
        logger.warning("Connection to %s failed: %s", self.id, error)

    def _on_transport_closed(self, client: _SessionClient, exc: Exception | None) -> None:
        """Transport closed without disconnect() being called."""
        if client is not self._client or self._conn is None:
            return

        self._conn = None
        self._client = None
        self._teardown_nowait()
        reason = DisconnectReason.NETWORK_ERROR if exc else DisconnectReason.REMOTE_CLOSED
        logger.info("Connection %s closed by remote (%s)", self.id, exc or "clean close")
        self._set_state(ConnectionState.DISCONNECTED)
        self._emitter.emit(
            EventType.DISCONNECT,
            connection_id=self.id,
            reason=reason.value,
            error=str(exc) if exc else None,
        )

    def _teardown_nowait(self) -> None:
        for watcher in list(self._watchers.values()):
            watcher.stop_nowait()
        self._watchers.clear()

        sftp, self._sftp = self._sftp, None
        if sftp is not None:
            try:
                sftp.exit()
            except Exception as e:
                logger.debug("Error closing SFTP for %s: %s", self.id, e)
        self._forwards.close_all_nowait()
        self._capabilities = None

    async def disconnect(self) -> None:
        """Close watchers, SFTP, forwards and the transport. Safe to call repeatedly."""
        await self.unwatch_all()

        conn, self._conn = self._conn, None
        self._client = None

        sftp, self._sftp = self._sftp, None
        if sftp is not None:
            try:
                sftp.exit()
                await sftp.wait_closed()
            except Exception as e:
                logger.debug("Error closing SFTP for %s: %s", self.id, e)

        await self._forwards.close_all()
        self._capabilities = None

        if conn is not None:
            try:
                conn.close()
                await conn.wait_closed()
            except Exception as e:
                logger.debug("Error closing transport for %s: %s", self.id, e)

        if self._state != ConnectionState.DISCONNECTED:
            self._set_state(ConnectionState.DISCONNECTED)
            self._emitter.emit(
                EventType.DISCONNECT,
                connection_id=self.id,
                reason=DisconnectReason.NORMAL.value,
            )
            logger.info("Disconnected from %s", self.id)

    # ------------------------------------------------------------------
    # Plumbing shared by remote operations
    # ------------------------------------------------------------------

    def _require_connected(self) -> asyncssh.SSHClientConnection:
        if self._state != ConnectionState.CONNECTED or self._conn is None:
            raise SSHConnectionError(
                f"Not connected to {self.id} (state: {self._state.value})",
                context=self._context(),
            )
        return self._conn

    async def _call(
        self,
        op: str,
        awaitable: Awaitable[T],
        *,
        path: str | None = None,
        command: str | None = None,
    ) -> T:
        try:
            return await asyncio.wait_for(awaitable, self._settings.operation_timeout)
        except asyncio.TimeoutError as e:
            raise OperationTimeout(
                f"{op} timed out after {self._settings.operation_timeout}s",
                cause=e,
                context=self._context(path=path, command=command),
            ) from e

    def _map_remote_error(
        self,
        exc: Exception,
        op: str,
        *,
        path: str | None = None,
        command: str | None = None,
    ) -> SSHError:
        if isinstance(exc, SSHError):
            return exc

        ctx = self._context(path=path, command=command)
        target = path or command or ""
        if isinstance(exc, asyncssh.SFTPNoSuchFile):
            return RemoteNotFoundError(f"No such file: {target}", cause=exc, context=ctx)
        if isinstance(exc, asyncssh.SFTPError):
            return SFTPError(f"{op} failed for {target}: {exc.reason}", cause=exc, context=ctx)
        if isinstance(exc, (asyncssh.DisconnectError, BrokenPipeError, ConnectionResetError)):
            ctx.original_error = str(exc)
            return SSHConnectionError(f"Connection to {self.id} lost during {op}", context=ctx)
        return SFTPError(f"{op} failed for {target}: {exc}", cause=exc, context=ctx)

    async def _get_sftp(self) -> asyncssh.SFTPClient:
        conn = self._require_connected()
        async with self._sftp_lock:
            if self._sftp is None:
                self._sftp = await self._call("start_sftp", conn.start_sftp_client())
            return self._sftp

    async def _resolve(self, sftp: asyncssh.SFTPClient, path: str) -> str:
        # SFTP does not expand ~; the server's default directory is home
        if path in ("~", ""):
            return await self._call("realpath", sftp.realpath("."), path=path)
        if path.startswith("~/"):
            home = await self._call("realpath", sftp.realpath("."), path=path)
            return posixpath.join(home, path[2:])
        return path

    async def _sftp_op(
        self,
        op: str,
        path: str,
        func: Callable[[asyncssh.SFTPClient, str], Awaitable[T]],
    ) -> T:
        with self._emitter.timed_event(
            EventType.SFTP, op=op, path=path, connection_id=self.id
        ) as data:
            try:
                sftp = await self._get_sftp()
                resolved = await self._resolve(sftp, path)
                return await self._call(op, func(sftp, resolved), path=path)
            except Exception as e:
                error = self._map_remote_error(e, op, path=path)
                data["error"] = error.error_type
                if error is e:
                    raise
                raise error from e

    # ------------------------------------------------------------------
    # Command execution
    # ------------------------------------------------------------------

    async def _run(self, command: str, **kwargs: Any) -> asyncssh.SSHCompletedProcess:
        conn = self._require_connected()

        with self._emitter.timed_event(
            EventType.EXEC, command=command, connection_id=self.id
        ) as data:
            try:
                result = await self._call(
                    "exec",
                    conn.run(command, check=False, **kwargs),
                    command=command,
                )
            except Exception as e:
                error = self._map_remote_error(e, "exec", command=command)
                data["error"] = error.error_type
                if error is e:
                    raise
                raise error from e

            data["exit_code"] = _exit_code(result)
            data["stdout_len"] = len(result.stdout or "")
            data["stderr_len"] = len(result.stderr or "")

        return result

    def _check_exit(self, command: str, exit_code: int, stderr: str) -> None:
        if exit_code != 0 and stderr:
            raise CommandFailedError(
                f"Command failed with exit code {exit_code}: "
                f"{stderr.strip() or '(no message)'}",
                exit_code=exit_code,
                stderr=stderr,
                context=self._context(command=command),
            )

    async def exec_result(self, command: str) -> ExecResult:
        """Run ``command`` and return stdout, stderr and exit code as-is."""
        result = await self._run(command, errors="replace")
        return ExecResult(
            stdout=str(result.stdout or ""),
            stderr=str(result.stderr or ""),
            exit_code=_exit_code(result),
        )

    async def exec(self, command: str) -> str:
        """
        Run ``command`` through the remote shell and return its stdout.

        A non-zero exit only fails when stderr is non-empty; tools such as
        grep exit 1 for "nothing found" and that is not an error here.

        Raises:
            SSHConnectionError: not connected, or the transport dropped.
            CommandFailedError: non-zero exit with stderr output.
            OperationTimeout: the command exceeded operation_timeout.
        """
        result = await self.exec_result(command)
        self._check_exit(command, result.exit_code, result.stderr)
        return result.stdout

    # ------------------------------------------------------------------
    # SFTP file operations
    # ------------------------------------------------------------------

    async def list_files(self, path: str) -> list[RemoteFile]:
        """List a directory: directories first, then files, each by name."""

        async def op(sftp: asyncssh.SFTPClient, resolved: str) -> list[RemoteFile]:
            entries = await sftp.readdir(resolved)
            return sort_listing(
                RemoteFile.from_attrs(
                    join_remote(resolved, entry.filename),
                    entry.attrs,
                    self.id,
                    longname=entry.longname,
                )
                for entry in entries
                if entry.filename not in (".", "..")
            )

        return await self._sftp_op("list", path, op)

    async def read_file(self, path: str) -> bytes:
        async def op(sftp: asyncssh.SFTPClient, resolved: str) -> bytes:
            async with sftp.open(resolved, "rb") as f:
                return await f.read()

        return await self._sftp_op("read", path, op)

    async def write_file(self, path: str, content: bytes) -> None:
        assert isinstance(content, (bytes, bytearray)), \
            f"content must be bytes, got {type(content)}"

        async def op(sftp: asyncssh.SFTPClient, resolved: str) -> None:
            async with sftp.open(resolved, "wb") as f:
                await f.write(bytes(content))

        await self._sftp_op("write", path, op)

    async def delete_file(self, path: str) -> None:
        """Remove a file, or an empty directory. Never recursive."""

        async def op(sftp: asyncssh.SFTPClient, resolved: str) -> None:
            attrs = await sftp.lstat(resolved)
            if RemoteFile.from_attrs(resolved, attrs, self.id).is_directory:
                await sftp.rmdir(resolved)
            else:
                await sftp.remove(resolved)

        await self._sftp_op("delete", path, op)

    async def mkdir(self, path: str) -> None:
        async def op(sftp: asyncssh.SFTPClient, resolved: str) -> None:
            await sftp.mkdir(resolved)

        await self._sftp_op("mkdir", path, op)

    async def stat(self, path: str) -> RemoteFile:
        """
        Stat a remote path.

        Raises:
            RemoteNotFoundError: the path does not exist.
        """

        async def op(sftp: asyncssh.SFTPClient, resolved: str) -> RemoteFile:
            return RemoteFile.from_attrs(resolved, await sftp.stat(resolved), self.id)

        return await self._sftp_op("stat", path, op)

    async def rename(self, old_path: str, new_path: str) -> None:
        async def op(sftp: asyncssh.SFTPClient, resolved: str) -> None:
            target = await self._resolve(sftp, new_path)
            await sftp.rename(resolved, target)

        await self._sftp_op("rename", old_path, op)

    async def file_exists(self, path: str) -> bool:
        try:
            await self.stat(path)
        except RemoteNotFoundError:
            return False
        return True

    async def read_file_chunked(
        self,
        path: str,
        on_progress: ProgressCallback | None = None,
        cancel: asyncio.Event | None = None,
        chunk_size: int | None = None,
    ) -> bytes:
        """
        Read a file in chunks, reporting ``on_progress(received, total)``.

        Each chunk read gets its own operation timeout, so large files are
        not bounded by a single timeout.

        Raises:
            OperationCancelled: ``cancel`` was set before the read finished.
        """
        chunk_size = chunk_size or self._settings.chunk_size
        assert chunk_size > 0, f"chunk_size must be positive, got {chunk_size}"

        async def op(sftp: asyncssh.SFTPClient, resolved: str) -> bytes:
            attrs = await self._call("stat", sftp.stat(resolved), path=path)
            total = attrs.size or 0
            chunks: list[bytes] = []
            received = 0

            f = await self._call("open", sftp.open(resolved, "rb"), path=path)
            try:
                while True:
                    if cancel is not None and cancel.is_set():
                        raise OperationCancelled(
                            f"Read of {path} cancelled after {received} bytes",
                            context=self._context(path=path),
                        )
                    chunk = await self._call(
                        "read", f.read(chunk_size, received), path=path
                    )
                    if not chunk:
                        break
                    chunks.append(chunk)
                    received += len(chunk)
                    if on_progress is not None:
                        on_progress(received, max(total, received))
            finally:
                await f.close()
            return b"".join(chunks)

        # The per-chunk timeouts above replace the whole-operation timeout
        with self._emitter.timed_event(
            EventType.SFTP, op="read_chunked", path=path, connection_id=self.id
        ) as data:
            try:
                sftp = await self._get_sftp()
                resolved = await self._resolve(sftp, path)
                content = await op(sftp, resolved)
            except Exception as e:
                error = self._map_remote_error(e, "read_chunked", path=path)
                data["error"] = error.error_type
                if error is e:
                    raise
                raise error from e
            data["bytes"] = len(content)
            return content

    # ------------------------------------------------------------------
    # Shell-backed operations
    # ------------------------------------------------------------------

    async def read_file_first_lines(self, path: str, lines: Any) -> str:
        return await self.exec(commands.build_head(path, lines))

    async def read_file_last_lines(self, path: str, lines: Any) -> str:
        return await self.exec(commands.build_tail(path, lines))

    async def read_file_tail(self, path: str, offset: Any) -> bytes:
        """
        Raw bytes from byte ``offset`` to the end, for following growing files.

        Nothing is decoded, so ``offset + len(result)`` is the next offset.
        """
        command = commands.build_tail_bytes(path, offset)
        result = await self._run(command, encoding=None)
        stderr = (result.stderr or b"").decode("utf-8", errors="replace")
        self._check_exit(command, _exit_code(result), stderr)
        return bytes(result.stdout or b"")

    async def list_directories(self, path: str) -> list[str]:
        """Absolute paths of the immediate subdirectories of ``path``, sorted."""
        output = await self.exec(commands.build_list_directories(path))
        return sorted(commands.parse_name_matches(output))

    async def remove_recursive(self, path: str) -> None:
        """``rm -rf`` a single path. Refuses the root and home directories."""
        try:
            command = commands.build_remove_recursive(path)
        except ValueError as e:
            raise SFTPError(str(e), cause=e, context=self._context(path=path)) from e
        await self.exec(command)

    async def search_files(
        self,
        paths: str | Iterable[str],
        pattern: str,
        options: SearchOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> list[SearchResult]:
        """
        Search file contents (grep) or file names (find) under ``paths``.

        All base paths go into a single remote command. Returns [] without
        touching the host when ``cancel`` is already set, and discards the
        output when it is set while the command runs.
        """
        options = options or SearchOptions()
        if cancel is not None and cancel.is_set():
            return []

        base_paths = [paths] if isinstance(paths, str) else list(paths)
        if not base_paths or not pattern:
            return []

        max_results = options.max_results or self._settings.search_max_results
        if options.search_content:
            command = commands.build_content_search(
                base_paths,
                pattern,
                max_results=max_results,
                case_sensitive=options.case_sensitive,
                regex=options.regex,
                file_pattern=options.file_pattern,
                exclude=options.exclude,
            )
        else:
            command = commands.build_name_search(
                base_paths,
                pattern,
                max_results=max_results,
                case_sensitive=options.case_sensitive,
                regex=options.regex,
                exclude=options.exclude,
            )

        output = await self.exec(command)
        if cancel is not None and cancel.is_set():
            return []

        if options.search_content:
            results = [
                SearchResult(path=p, line=line, match=text)
                for p, line, text in commands.parse_content_matches(output)
            ]
        else:
            results = [
                SearchResult(path=p, match=posixpath.basename(p))
                for p in commands.parse_name_matches(output)
            ]

        await self._enrich(results)
        return results

    async def _enrich(self, results: list[SearchResult]) -> None:
        unique = list(dict.fromkeys(r.path for r in results))[:STAT_ENRICH_LIMIT]
        if not unique:
            return
        try:
            sftp = await self._get_sftp()
        except SSHError as e:
            logger.debug("Skipping stat enrichment for %s: %s", self.id, e)
            return

        stats = await asyncio.gather(
            *(self._call("stat", sftp.stat(p), path=p) for p in unique),
            return_exceptions=True,
        )
        found = {
            p: attrs for p, attrs in zip(unique, stats)
            if not isinstance(attrs, BaseException)
        }
        for result in results:
            attrs = found.get(result.path)
            if attrs is not None:
                result.apply_attrs(attrs)

    async def detect_capabilities(self) -> ServerCapabilities:
        """Probe OS, distro and file-watch tools once per session."""
        if self._capabilities is not None:
            return self._capabilities
        try:
            result = await self.exec_result(commands.CAPABILITY_PROBE)
            capabilities = ServerCapabilities.from_probe_output(result.stdout)
        except SFTPError as e:
            logger.debug("Capability probe failed on %s: %s", self.id, e)
            capabilities = ServerCapabilities()
        self._capabilities = capabilities
        return capabilities

    # ------------------------------------------------------------------
    # File watching
    # ------------------------------------------------------------------

    async def watch_file(self, path: str, callback: FileChangeCallback) -> bool:
        """
        Watch a remote file with inotifywait or fswatch.

        ``callback`` receives a FileChangeEvent for each reported change.
        Any existing watch on ``path`` is replaced.

        Returns:
            True once the remote watcher is running. False when not
            connected, when the host only supports polling (use stat()),
            or when the watcher could not start (for example a missing
            file).
        """
        if not self.is_connected:
            return False
        await self.unwatch_file(path)

        capabilities = await self.detect_capabilities()
        method = capabilities.watch_method
        if method == WatchMethod.POLL:
            logger.debug("%s: no native watcher, %s must be polled", self.id, path)
            return False

        conn = self._require_connected()
        command = commands.build_watch(path, method)
        try:
            process = await self._call(
                "watch",
                conn.create_process(command, errors="replace"),
                path=path,
                command=command,
            )
        except (asyncssh.Error, OSError, SSHError) as e:
            logger.debug("%s: could not start watcher for %s: %s", self.id, path, e)
            return False

        def on_change(event: FileChangeEvent) -> None:
            self._emitter.emit(EventType.WATCH, status="change", **event.to_dict())
            callback(event)

        watcher = FileWatcher(self.id, path, method, process, on_change, self._watcher_closed)
        self._watchers[path] = watcher
        watcher.start()

        if not watcher.ready.is_set():
            try:
                await asyncio.wait_for(watcher.ready.wait(), self._settings.operation_timeout)
            except asyncio.TimeoutError:
                logger.debug("%s: watcher for %s never became ready", self.id, path)
                await watcher.stop()
                return False

        if not watcher.active:
            return False

        self._emitter.emit(
            EventType.WATCH,
            status="started",
            connection_id=self.id,
            path=path,
            method=method.value,
        )
        logger.info("%s: watching %s with %s", self.id, path, method.value)
        return True

    def _watcher_closed(self, watcher: FileWatcher) -> None:
        if self._watchers.get(watcher.path) is not watcher:
            return
        del self._watchers[watcher.path]
        self._emitter.emit(
            EventType.WATCH,
            status="stopped",
            connection_id=self.id,
            path=watcher.path,
            changes=watcher.changes,
        )

    async def unwatch_file(self, path: str) -> bool:
        """Stop watching ``path``. Returns False if it was not watched."""
        watcher = self._watchers.get(path)
        if watcher is None:
            return False
        await watcher.stop()
        self._watchers.pop(path, None)
        return True

    async def unwatch_all(self) -> None:
        for watcher in list(self._watchers.values()):
            await watcher.stop()
        self._watchers.clear()

    def is_watching(self, path: str) -> bool:
        return path in self._watchers

    def watched_paths(self) -> list[str]:
        return sorted(self._watchers)

    # ------------------------------------------------------------------
    # Port forwarding
    # ------------------------------------------------------------------

    async def forward_port(
        self,
        local_port: int,
        remote_host: str,
        remote_port: int,
    ) -> int:
        """
        Listen on 127.0.0.1:``local_port`` and tunnel to remote_host:remote_port.

        Returns the bound local port (useful when ``local_port`` is 0).

        Raises:
            SFTPError: the port is already forwarded by this connection.
        """
        conn = self._require_connected()
        handle = await self._forwards.open(
            conn,
            ForwardIntent(
                local_port=local_port,
                remote_host=remote_host,
                remote_port=remote_port,
            ),
        )
        logger.info(
            "%s: forwarding 127.0.0.1:%d -> %s:%d",
            self.id, handle.local_port, remote_host, remote_port,
        )
        return handle.local_port

    async def stop_forward(self, local_port: int) -> bool:
        return await self._forwards.close(local_port)

    def active_forwards(self) -> list[int]:
        return self._forwards.ports()
