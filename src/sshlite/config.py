"""
Engine and host configuration.

Provides:
- HostConfig: where to connect, and as whom
- KeepaliveConfig: SSH-level keepalive options
- EngineSettings: timeouts, concurrency ceiling and search limits

Settings can be built from a mapping using either snake_case names in
seconds, or the editor-style camelCase names (``connectionTimeout``,
``keepaliveInterval``) whose values are milliseconds.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

from sshlite.platform import get_agent_path, get_default_key_paths, get_local_username


@dataclass
class HostConfig:
    """
    A remote host entry.

    ``connection_id`` (``host:port:username``) identifies the connection
    everywhere: registry keys, scheduler queues and credential lookups.
    """
    host: str
    port: int = 22
    username: str | None = None
    name: str | None = None
    private_key_path: str | None = None
    known_hosts: str | None = None

    def __post_init__(self) -> None:
        assert isinstance(self.host, str) and self.host.strip(), \
            f"host must be a non-empty string, got {self.host!r}"
        assert isinstance(self.port, int) and 1 <= self.port <= 65535, \
            f"Port must be between 1 and 65535, got {self.port}"
        if self.username is None:
            self.username = get_local_username()
        if self.name is None:
            self.name = self.host

    @property
    def connection_id(self) -> str:
        return f"{self.host}:{self.port}:{self.username}"


@dataclass
class KeepaliveConfig:
    """
    SSH keepalive settings.

    Default: 30s interval, 3 max count = 90s before the transport is
    declared dead and the connection moves to DISCONNECTED.
    """
    interval_sec: float = 30.0
    max_count: int = 3

    def __post_init__(self) -> None:
        assert self.interval_sec > 0, \
            f"interval_sec must be positive, got {self.interval_sec}"
        assert self.max_count > 0, \
            f"max_count must be positive, got {self.max_count}"

    def to_asyncssh_options(self) -> dict[str, Any]:
        return {
            "keepalive_interval": self.interval_sec,
            "keepalive_count_max": self.max_count,
        }


_MS_SETTINGS = {
    "connectionTimeout": "connect_timeout",
    "operationTimeout": "operation_timeout",
}
_CAMEL_SETTINGS = {
    "maxPreloadingConcurrency": "max_concurrency",
    "searchMaxResults": "search_max_results",
    "progressiveChunkSize": "chunk_size",
    "defaultRemotePath": "default_remote_path",
    "sshConfigPath": "ssh_config_path",
}


@dataclass
class EngineSettings:
    """Tunables shared by every connection and the scheduler."""
    connect_timeout: float = 10.0
    operation_timeout: float = 30.0
    keepalive: KeepaliveConfig = field(default_factory=KeepaliveConfig)
    max_concurrency: int = 5
    search_max_results: int = 2000
    chunk_size: int = 64 * 1024
    default_remote_path: str = "~"
    ssh_config_path: str | None = None
    agent_path: str | None = field(default_factory=get_agent_path)
    default_key_paths: list[Path] = field(default_factory=get_default_key_paths)

    def __post_init__(self) -> None:
        assert self.connect_timeout > 0, \
            f"connect_timeout must be positive, got {self.connect_timeout}"
        assert self.operation_timeout > 0, \
            f"operation_timeout must be positive, got {self.operation_timeout}"
        assert isinstance(self.max_concurrency, int) and self.max_concurrency >= 1, \
            f"max_concurrency must be a positive int, got {self.max_concurrency!r}"
        assert self.search_max_results >= 1, \
            f"search_max_results must be positive, got {self.search_max_results}"
        assert self.chunk_size >= 1, \
            f"chunk_size must be positive, got {self.chunk_size}"

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "EngineSettings":
        """
        Build settings from a mapping, ignoring unknown keys.

        Millisecond camelCase keys are converted to seconds;
        ``keepaliveInterval`` (ms) and ``keepalive_interval`` (s) both
        configure the keepalive.
        """
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        keepalive: dict[str, Any] = {}

        for key, value in values.items():
            if value is None or value == "":
                continue
            if key in _MS_SETTINGS:
                kwargs[_MS_SETTINGS[key]] = float(value) / 1000.0
            elif key in _CAMEL_SETTINGS:
                kwargs[_CAMEL_SETTINGS[key]] = value
            elif key == "keepaliveInterval":
                keepalive["interval_sec"] = float(value) / 1000.0
            elif key == "keepalive_interval":
                keepalive["interval_sec"] = float(value)
            elif key in ("keepaliveCountMax", "keepalive_count_max"):
                keepalive["max_count"] = int(value)
            elif key in known and key != "keepalive":
                kwargs[key] = value

        for name in ("max_concurrency", "search_max_results", "chunk_size"):
            if name in kwargs:
                kwargs[name] = int(kwargs[name])
        for name in ("connect_timeout", "operation_timeout"):
            if name in kwargs:
                kwargs[name] = float(kwargs[name])
        if keepalive:
            kwargs["keepalive"] = KeepaliveConfig(**keepalive)

        return cls(**kwargs)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EngineSettings":
        """Read ``SSHLITE_<FIELD>`` variables, e.g. ``SSHLITE_CONNECT_TIMEOUT``."""
        environ = os.environ if environ is None else environ
        prefix = "SSHLITE_"
        values = {
            key[len(prefix):].lower(): value
            for key, value in environ.items()
            if key.startswith(prefix)
        }
        return cls.from_mapping(values)
