"""
OpenSSH config reader producing HostConfig entries.

Supports Host blocks with * and ? wildcards and ! negation, first match
wins, and the options relevant to a file-browsing session: HostName,
Port, User and IdentityFile (first value). Match blocks are skipped.
"""
from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass
from pathlib import Path

from sshlite.config import HostConfig
from sshlite.platform import expand_path, get_config_path

logger = logging.getLogger(__name__)

_OPTIONS = frozenset({"hostname", "port", "user", "identityfile"})


@dataclass
class _HostBlock:
    patterns: list[str]
    options: dict[str, str]
    is_match: bool = False


class SSHConfig:
    """
    Parser for an ssh_config file.

    Usage:
        config = SSHConfig()  # ~/.ssh/config
        host = config.lookup("myserver")
        for host in config.hosts():
            ...
    """

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path) if path else get_config_path()
        self._blocks: list[_HostBlock] = []
        self._global: dict[str, str] = {}
        self._load()

    @classmethod
    def from_string(cls, content: str) -> "SSHConfig":
        config = cls.__new__(cls)
        config._path = None
        config._blocks = []
        config._global = {}
        config._parse(content)
        return config

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            content = self._path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.warning("Cannot read ssh config %s: %s", self._path, e)
            return
        self._parse(content)

    def _parse(self, content: str) -> None:
        current: _HostBlock | None = None

        for line in content.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue

            comment_idx = line.find(" #")
            if comment_idx >= 0:
                line = line[:comment_idx].rstrip()

            # "Option Value" and "Option=Value" are both valid
            if "=" in line and " " not in line.split("=", 1)[0]:
                option, value = line.split("=", 1)
            else:
                parts = line.split(None, 1)
                if len(parts) < 2:
                    continue
                option, value = parts

            option = option.strip().lower()
            value = value.strip()
            if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
                value = value[1:-1]

            if option == "host":
                if current:
                    self._blocks.append(current)
                current = _HostBlock(patterns=value.split(), options={})
            elif option == "match":
                if current:
                    self._blocks.append(current)
                current = _HostBlock(patterns=[], options={}, is_match=True)
            elif option in _OPTIONS:
                target = current.options if current is not None else self._global
                target.setdefault(option, value)

        if current:
            self._blocks.append(current)

    @staticmethod
    def _matches(host: str, patterns: list[str]) -> bool:
        matched = False
        for pattern in patterns:
            if pattern.startswith("!"):
                if fnmatch.fnmatch(host.lower(), pattern[1:].lower()):
                    return False
            elif fnmatch.fnmatch(host.lower(), pattern.lower()):
                matched = True
        return matched

    def lookup(self, alias: str) -> HostConfig:
        """Resolve ``alias`` into a HostConfig, first match winning."""
        merged = dict(self._global)
        for block in self._blocks:
            if block.is_match or not self._matches(alias, block.patterns):
                continue
            for key, value in block.options.items():
                merged.setdefault(key, value)

        port = 22
        if "port" in merged:
            try:
                port = int(merged["port"])
            except ValueError:
                logger.warning("Ignoring invalid Port %r for %s", merged["port"], alias)

        key_path = merged.get("identityfile")
        return HostConfig(
            host=merged.get("hostname", alias),
            port=port,
            username=merged.get("user"),
            name=alias,
            private_key_path=str(expand_path(key_path)) if key_path else None,
        )

    def aliases(self) -> list[str]:
        """Explicit host aliases (patterns without wildcards or negation)."""
        names = []
        for block in self._blocks:
            for pattern in block.patterns:
                if "*" not in pattern and "?" not in pattern and not pattern.startswith("!"):
                    names.append(pattern)
        return names

    def hosts(self) -> list[HostConfig]:
        return [self.lookup(alias) for alias in self.aliases()]
