"""
Tests for keyboard-interactive and public key authentication.

Tests cover:
- Servers that only offer keyboard-interactive: the password is replayed
  for every prompt
- Multi-prompt challenges
- Rejected keyboard-interactive responses
- Probe-mode key authentication against a server that only takes keys
"""
from __future__ import annotations

import asyncio
from pathlib import Path

import asyncssh
import pytest

from sshlite.auth import (
    PASSWORD_SECRET,
    CredentialDescriptor,
    CredentialKind,
    MemoryCredentialStore,
)
from sshlite.config import EngineSettings
from sshlite.connection import ConnectionState, SSHConnection
from sshlite.errors import AuthenticationError
from sshlite.testing.mock_server import MockServerConfig, MockSSHServer


class TestKeyboardInteractive:

    @pytest.mark.asyncio
    async def test_single_prompt(self, remote_home: Path, settings: EngineSettings) -> None:
        config = MockServerConfig(home_dir=remote_home, password_auth=False, kbdint_auth=True)
        async with MockSSHServer(config) as server:
            async with SSHConnection(
                server.host_config(),
                settings=settings,
                credential_store=server.credential_store(),
            ) as conn:
                assert await conn.exec("echo ok") == "ok\n"

            auth_events = server.events_of("SERVER_AUTH")
            assert auth_events[-1]["data"]["method"] == "keyboard-interactive"
            assert auth_events[-1]["data"]["success"]

    @pytest.mark.asyncio
    async def test_multiple_prompts_get_password(
        self, remote_home: Path, settings: EngineSettings
    ) -> None:
        """Every prompt in a challenge receives the password."""
        config = MockServerConfig(
            home_dir=remote_home,
            password_auth=False,
            kbdint_auth=True,
            kbdint_prompts=["Password: ", "Confirm: "],
        )
        async with MockSSHServer(config) as server:
            async with SSHConnection(
                server.host_config(),
                settings=settings,
                credential_store=server.credential_store(),
            ) as conn:
                assert conn.is_connected

            assert server.events_of("SERVER_AUTH")[-1]["data"]["responses"] == 2

    @pytest.mark.asyncio
    async def test_explicit_password_credential(
        self, remote_home: Path, settings: EngineSettings
    ) -> None:
        config = MockServerConfig(home_dir=remote_home, password_auth=False, kbdint_auth=True)
        async with MockSSHServer(config) as server:
            host = server.host_config()
            store = MemoryCredentialStore()
            store.set_secret(host.connection_id, "saved", "test")
            credential = CredentialDescriptor(CredentialKind.PASSWORD, "saved")

            async with SSHConnection(
                host, credential, settings=settings, credential_store=store
            ) as conn:
                assert conn.is_connected

    @pytest.mark.asyncio
    async def test_wrong_answer(self, remote_home: Path, settings: EngineSettings) -> None:
        """A rejected answer fails as an auth error after a single attempt."""
        config = MockServerConfig(home_dir=remote_home, password_auth=False, kbdint_auth=True)
        patient = EngineSettings(
            connect_timeout=30.0,
            operation_timeout=settings.operation_timeout,
            agent_path=None,
            default_key_paths=[],
        )
        async with MockSSHServer(config) as server:
            store = server.credential_store(password="wrong")
            conn = SSHConnection(server.host_config(), settings=patient, credential_store=store)

            with pytest.raises(AuthenticationError):
                await asyncio.wait_for(conn.connect(), timeout=10.0)
            assert conn.state == ConnectionState.ERROR
            assert not store.has_secrets(conn.id)

            attempts = [
                e for e in server.events_of("SERVER_AUTH")
                if e["data"]["method"] == "keyboard-interactive"
            ]
            assert len(attempts) == 1
            assert not attempts[0]["data"]["success"]

    @pytest.mark.asyncio
    async def test_wrong_password_with_both_methods(
        self, remote_home: Path, settings: EngineSettings
    ) -> None:
        """Password and keyboard-interactive are each tried once, then the connect fails."""
        config = MockServerConfig(home_dir=remote_home, password_auth=True, kbdint_auth=True)
        async with MockSSHServer(config) as server:
            conn = SSHConnection(
                server.host_config(),
                settings=settings,
                credential_store=server.credential_store(password="wrong"),
            )

            with pytest.raises(AuthenticationError):
                await asyncio.wait_for(conn.connect(), timeout=8.0)
            methods = [e["data"]["method"] for e in server.events_of("SERVER_AUTH")]
            assert methods.count("keyboard-interactive") == 1


class TestPublicKey:

    @pytest.fixture
    def client_key(self, tmp_path: Path) -> tuple[Path, asyncssh.SSHKey]:
        key = asyncssh.generate_private_key("ssh-ed25519")
        path = tmp_path / "id_ed25519"
        key.write_private_key(str(path))
        return path, key

    @pytest.mark.asyncio
    async def test_default_key_probe(
        self, remote_home: Path, client_key: tuple[Path, asyncssh.SSHKey]
    ) -> None:
        """Probe mode finds a default key; no password is needed."""
        path, key = client_key
        config = MockServerConfig(home_dir=remote_home, password_auth=False, authorized_keys=[key])
        settings = EngineSettings(agent_path=None, default_key_paths=[path])

        async with MockSSHServer(config) as server:
            async with SSHConnection(
                server.host_config(),
                settings=settings,
                credential_store=MemoryCredentialStore(),
            ) as conn:
                assert await conn.exec("echo key") == "key\n"
            assert server.events_of("SERVER_AUTH")[-1]["data"]["method"] == "publickey"

    @pytest.mark.asyncio
    async def test_explicit_key_credential(
        self, remote_home: Path, settings: EngineSettings,
        client_key: tuple[Path, asyncssh.SSHKey],
    ) -> None:
        path, key = client_key
        config = MockServerConfig(home_dir=remote_home, password_auth=False, authorized_keys=[key])
        credential = CredentialDescriptor(CredentialKind.PRIVATE_KEY, "key-1", key_path=str(path))

        async with MockSSHServer(config) as server:
            async with SSHConnection(
                server.host_config(),
                credential,
                settings=settings,
                credential_store=MemoryCredentialStore(),
            ) as conn:
                assert conn.is_connected

    @pytest.mark.asyncio
    async def test_key_then_password_fallback(
        self, mock_ssh_server: MockSSHServer, client_key: tuple[Path, asyncssh.SSHKey]
    ) -> None:
        """An unauthorised key does not stop password auth in probe mode."""
        path, _ = client_key
        settings = EngineSettings(agent_path=None, default_key_paths=[path])
        store = MemoryCredentialStore()
        store.set_secret(mock_ssh_server.host_config().connection_id, PASSWORD_SECRET, "test")

        async with SSHConnection(
            mock_ssh_server.host_config(), settings=settings, credential_store=store
        ) as conn:
            assert conn.is_connected
