"""
Local filesystem helpers: ~ expansion, key locations, agent discovery.
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

DEFAULT_KEY_NAMES = ("id_rsa", "id_ed25519", "id_ecdsa")


def is_windows() -> bool:
    return sys.platform == "win32"


def get_ssh_dir() -> Path:
    """
    Get the platform-appropriate SSH directory.

    Returns:
        ~/.ssh on Unix, %USERPROFILE%\\.ssh on Windows
    """
    if is_windows():
        userprofile = os.environ.get("USERPROFILE")
        if userprofile:
            return Path(userprofile) / ".ssh"
    return Path.home() / ".ssh"


def get_config_path() -> Path:
    return get_ssh_dir() / "config"


def get_default_key_paths() -> list[Path]:
    """The private keys probed when no explicit credential is given."""
    ssh_dir = get_ssh_dir()
    return [ssh_dir / name for name in DEFAULT_KEY_NAMES]


def expand_path(path: str | Path) -> Path:
    """Expand ~ and, on Windows, %VAR% references."""
    path_str = str(path)
    if is_windows():
        path_str = os.path.expandvars(path_str)
    return Path(path_str).expanduser()


def get_agent_path() -> str | None:
    """Return the agent socket from SSH_AUTH_SOCK, if it exists."""
    sock = os.environ.get("SSH_AUTH_SOCK")
    if sock and os.path.exists(sock):
        return sock
    return None


def get_local_username() -> str:
    for var in ("USER", "LOGNAME", "USERNAME"):
        value = os.environ.get(var)
        if value:
            return value
    return "root"
