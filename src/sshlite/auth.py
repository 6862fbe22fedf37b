"""
Authentication material for a connection.

Provides:
- CredentialDescriptor: an explicit, single credential chosen by the user
- CredentialStore: where secrets come from (protocol) and MemoryCredentialStore
- resolve_auth(): turns a host + optional descriptor into AuthOptions

Two modes:
1. Explicit credential: only that method is offered to the server.
2. Probe: configured and default keys, the agent, and a password are all
   offered, and the server picks.
"""
from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol, Union

import asyncssh

from sshlite.config import EngineSettings, HostConfig
from sshlite.errors import AuthenticationError, ErrorContext, KeyLoadError
from sshlite.platform import expand_path

logger = logging.getLogger(__name__)

PASSWORD_SECRET = "password"


class CredentialKind(str, Enum):
    PASSWORD = "password"
    PRIVATE_KEY = "private_key"


@dataclass(frozen=True)
class CredentialDescriptor:
    """
    A user-selected credential.

    The secret itself never lives here: a password (or key passphrase)
    is fetched from the CredentialStore under ``credential_id``.
    """
    kind: CredentialKind
    credential_id: str
    key_path: str | None = None
    label: str | None = None

    def __post_init__(self) -> None:
        assert isinstance(self.kind, CredentialKind), \
            f"kind must be a CredentialKind, got {self.kind!r}"
        assert self.credential_id, "credential_id must be non-empty"
        if self.kind == CredentialKind.PRIVATE_KEY:
            assert self.key_path, "key_path is required for PRIVATE_KEY credentials"


def passphrase_secret_id(key_path: Path | str) -> str:
    return f"passphrase:{key_path}"


class CredentialStore(Protocol):
    """Source of secrets, keyed by connection id."""

    async def get_secret(self, connection_id: str, credential_id: str) -> str | None:
        ...

    async def get_or_prompt(
        self, connection_id: str, secret_id: str, prompt: str
    ) -> str | None:
        ...

    async def invalidate(self, connection_id: str) -> None:
        ...


PromptCallback = Callable[[str, str, str], Union[str, None, Awaitable[Union[str, None]]]]


class MemoryCredentialStore:
    """
    In-memory CredentialStore.

    ``prompt`` is called as ``prompt(connection_id, secret_id, text)`` for
    secrets that are not cached; it may be sync or async and may return
    None to decline. Answers are cached until invalidate().
    """

    def __init__(self, prompt: PromptCallback | None = None) -> None:
        self._secrets: dict[str, dict[str, str]] = {}
        self._prompt = prompt
        self.prompt_count = 0

    def set_secret(self, connection_id: str, secret_id: str, value: str) -> None:
        self._secrets.setdefault(connection_id, {})[secret_id] = value

    def has_secrets(self, connection_id: str) -> bool:
        return bool(self._secrets.get(connection_id))

    async def get_secret(self, connection_id: str, credential_id: str) -> str | None:
        return self._secrets.get(connection_id, {}).get(credential_id)

    async def get_or_prompt(
        self, connection_id: str, secret_id: str, prompt: str
    ) -> str | None:
        cached = self._secrets.get(connection_id, {}).get(secret_id)
        if cached is not None:
            return cached
        if self._prompt is None:
            return None

        self.prompt_count += 1
        value = self._prompt(connection_id, secret_id, prompt)
        if inspect.isawaitable(value):
            value = await value
        if value:
            self.set_secret(connection_id, secret_id, value)
        return value or None

    async def invalidate(self, connection_id: str) -> None:
        self._secrets.pop(connection_id, None)


@dataclass
class AuthOptions:
    """Resolved authentication material, ready for asyncssh.connect()."""
    password: str | None = None
    client_keys: list[Any] = field(default_factory=list)
    methods: list[str] = field(default_factory=list)
    agent: Any = None

    @property
    def keyboard_interactive(self) -> bool:
        return self.password is not None

    def to_asyncssh_options(self) -> dict[str, Any]:
        """
        Convert to asyncssh.connect() keyword arguments.

        Agent keys are already folded into client_keys, so asyncssh's own
        agent lookup is disabled.
        """
        return {
            "password": self.password,
            "client_keys": list(self.client_keys) or None,
            "agent_path": None,
        }

    def close(self) -> None:
        """Release the agent connection, if one was opened."""
        if self.agent is not None:
            self.agent.close()
            self.agent = None


def load_private_key(
    key_path: Path | str,
    passphrase: str | None = None,
) -> asyncssh.SSHKey:
    """
    Load a private key from file.

    Raises:
        KeyLoadError: file missing/unreadable, bad format, or wrong passphrase.
            ``reason`` in the context is one of file_not_found,
            needs_passphrase, invalid_format, import_error.
    """
    key_path = expand_path(key_path)

    if not key_path.exists():
        raise KeyLoadError(
            f"Private key file not found: {key_path}",
            key_path=str(key_path),
            reason="file_not_found",
        )

    try:
        return asyncssh.read_private_key(str(key_path), passphrase=passphrase)
    except asyncssh.KeyImportError as e:
        error_msg = str(e).lower()
        if "passphrase" in error_msg or "decrypt" in error_msg or "encrypted" in error_msg:
            reason = "needs_passphrase"
        elif "format" in error_msg or "invalid" in error_msg:
            reason = "invalid_format"
        else:
            reason = "import_error"
        raise KeyLoadError(
            f"Failed to load private key {key_path}: {e}",
            key_path=str(key_path),
            reason=reason,
        ) from e
    except OSError as e:
        raise KeyLoadError(
            f"Private key file not readable: {key_path}: {e}",
            key_path=str(key_path),
            reason="permission_denied",
        ) from e


def _is_encrypted(key_path: Path) -> bool:
    try:
        return b"ENCRYPTED" in key_path.read_bytes()
    except OSError:
        return False


async def _probe_key(
    key_path: Path,
    connection_id: str,
    store: CredentialStore,
) -> asyncssh.SSHKey | None:
    """Load a key if possible, asking the store for a passphrase when needed."""
    passphrase = None
    if _is_encrypted(key_path):
        passphrase = await store.get_or_prompt(
            connection_id,
            passphrase_secret_id(key_path),
            f"Passphrase for {key_path}",
        )
        if passphrase is None:
            logger.debug("No passphrase for encrypted key %s; skipping", key_path)
            return None

    try:
        return load_private_key(key_path, passphrase)
    except KeyLoadError as e:
        if passphrase is None and e.context.extra.get("reason") == "needs_passphrase":
            passphrase = await store.get_or_prompt(
                connection_id,
                passphrase_secret_id(key_path),
                f"Passphrase for {key_path}",
            )
            if passphrase is not None:
                try:
                    return load_private_key(key_path, passphrase)
                except KeyLoadError as retry_error:
                    logger.debug("Skipping key %s: %s", key_path, retry_error)
                    return None
        logger.debug("Skipping key %s: %s", key_path, e)
        return None


async def _agent_keys(agent_path: str) -> tuple[Any, list[Any]]:
    """Connect to the agent and list its keys; the agent must outlive auth."""
    agent = await asyncssh.connect_agent(agent_path)
    if agent is None:
        raise OSError(f"No SSH agent listening at {agent_path}")
    try:
        keys = list(await agent.get_keys())
    except Exception:
        agent.close()
        raise
    return agent, keys


async def resolve_auth(
    host: HostConfig,
    credential: CredentialDescriptor | None,
    store: CredentialStore,
    settings: EngineSettings,
) -> AuthOptions:
    """
    Gather the authentication material offered to the server.

    Raises:
        AuthenticationError: when there is nothing to offer, or the
            explicit credential's secret or key is unavailable.
    """
    connection_id = host.connection_id
    ctx = ErrorContext(
        host=host.host,
        port=host.port,
        username=host.username,
        connection_id=connection_id,
    )

    if credential is not None:
        return await _resolve_explicit(credential, connection_id, store, ctx)

    options = AuthOptions()

    candidates: list[Path] = []
    if host.private_key_path:
        candidates.append(expand_path(host.private_key_path))
    candidates.extend(expand_path(p) for p in settings.default_key_paths)

    seen: set[Path] = set()
    for key_path in candidates:
        if key_path in seen or not key_path.exists():
            continue
        seen.add(key_path)
        key = await _probe_key(key_path, connection_id, store)
        if key is not None:
            options.client_keys.append(key)
            options.methods.append(f"publickey:{key_path.name}")

    if settings.agent_path:
        try:
            options.agent, agent_keys = await _agent_keys(settings.agent_path)
        except (OSError, asyncssh.Error) as e:
            logger.debug("SSH agent unavailable at %s: %s", settings.agent_path, e)
        else:
            options.client_keys.extend(agent_keys)
            options.methods.append("agent")

    password = await store.get_or_prompt(
        connection_id,
        PASSWORD_SECRET,
        f"Password for {host.username}@{host.host}",
    )
    # An empty answer is not a password
    if password:
        options.password = password
        options.methods.extend(["password", "keyboard-interactive"])

    if not options.methods:
        raise AuthenticationError(
            f"No authentication method available for {connection_id}",
            context=ctx,
        )
    return options


async def _resolve_explicit(
    credential: CredentialDescriptor,
    connection_id: str,
    store: CredentialStore,
    ctx: ErrorContext,
) -> AuthOptions:
    ctx.extra["credential_kind"] = credential.kind.value

    if credential.kind == CredentialKind.PASSWORD:
        password = await store.get_secret(connection_id, credential.credential_id)
        if password is None:
            raise AuthenticationError(
                f"No password stored for credential {credential.credential_id}",
                context=ctx,
            )
        return AuthOptions(
            password=password,
            methods=["password", "keyboard-interactive"],
        )

    assert credential.key_path is not None
    passphrase = await store.get_secret(connection_id, credential.credential_id)
    key = load_private_key(credential.key_path, passphrase)
    return AuthOptions(client_keys=[key], methods=["publickey"])
