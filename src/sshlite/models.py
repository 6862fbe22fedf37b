"""
Value types returned by connection operations.
"""
from __future__ import annotations

import posixpath
import stat as stat_module
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

UNKNOWN = "unknown"


def format_permissions(mode: int | None) -> str:
    """Render the permission bits of ``mode`` as ``rwxr-xr-x``."""
    if mode is None:
        return "---------"
    bits = "rwxrwxrwx"
    return "".join(
        char if mode & (0o400 >> i) else "-"
        for i, char in enumerate(bits)
    )


def parse_owner_group(longname: str | None) -> tuple[str, str]:
    """
    Pull owner and group out of an ``ls -l`` style long name.

    Returns ("unknown", "unknown") when the line is too short to parse.
    """
    parts = (longname or "").split()
    if len(parts) >= 8:
        return parts[2] or UNKNOWN, parts[3] or UNKNOWN
    return UNKNOWN, UNKNOWN


def join_remote(base: str, name: str) -> str:
    if base in ("", "."):
        return name
    return posixpath.join(base, name)


@dataclass
class RemoteFile:
    """A file or directory on a remote host."""
    name: str
    path: str
    is_directory: bool
    size: int
    modified_time: int
    connection_id: str
    access_time: int | None = None
    owner: str | None = None
    group: str | None = None
    permissions: str | None = None

    @classmethod
    def from_attrs(
        cls,
        path: str,
        attrs: Any,
        connection_id: str,
        longname: str | None = None,
    ) -> "RemoteFile":
        """
        Build from asyncssh SFTPAttrs.

        Owner and group prefer the attribute values, then the long name.
        """
        mode = attrs.permissions
        owner, group = parse_owner_group(longname)
        owner = attrs.owner or owner
        group = attrs.group or group
        name = posixpath.basename(path.rstrip("/")) or path
        return cls(
            name=name,
            path=path,
            is_directory=bool(mode is not None and stat_module.S_ISDIR(mode)),
            size=attrs.size or 0,
            modified_time=int((attrs.mtime or 0) * 1000),
            connection_id=connection_id,
            access_time=int((attrs.atime or 0) * 1000),
            owner=owner,
            group=group,
            permissions=format_permissions(mode),
        )


def sort_listing(files: Iterable[RemoteFile]) -> list[RemoteFile]:
    """Directories first, then by name."""
    return sorted(files, key=lambda f: (not f.is_directory, f.name))


@dataclass
class ExecResult:
    """Raw outcome of a remote command."""
    stdout: str
    stderr: str
    exit_code: int

    def __post_init__(self) -> None:
        assert isinstance(self.exit_code, int), \
            f"exit_code must be int, got {type(self.exit_code)}"

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class SearchOptions:
    """
    Options for Connection.search_files.

    ``exclude`` may be a comma-separated string or a list of globs; each
    fragment excludes matching files and matching directories. When
    ``max_results`` is None the engine setting applies.
    """
    search_content: bool = True
    case_sensitive: bool = False
    regex: bool = False
    file_pattern: str = "*"
    exclude: str | list[str] | None = None
    max_results: int | None = None

    def __post_init__(self) -> None:
        assert isinstance(self.file_pattern, str), \
            f"file_pattern must be a string, got {type(self.file_pattern)}"


@dataclass
class SearchResult:
    path: str
    match: str
    line: int | None = None
    size: int | None = None
    modified_time: int | None = None
    permissions: str | None = None

    def apply_attrs(self, attrs: Any) -> None:
        self.size = attrs.size
        if attrs.mtime is not None:
            self.modified_time = int(attrs.mtime * 1000)
        if attrs.permissions is not None:
            self.permissions = format_permissions(attrs.permissions)


class WatchMethod(str, Enum):
    INOTIFYWAIT = "inotifywait"
    FSWATCH = "fswatch"
    POLL = "poll"


@dataclass
class ServerCapabilities:
    """What the remote host offers for file watching, and what it runs."""
    os: str = UNKNOWN
    distro: str = UNKNOWN
    has_inotifywait: bool = False
    has_fswatch: bool = False
    extra: dict[str, str] = field(default_factory=dict)

    @property
    def watch_method(self) -> WatchMethod:
        if self.has_inotifywait:
            return WatchMethod.INOTIFYWAIT
        if self.has_fswatch:
            return WatchMethod.FSWATCH
        return WatchMethod.POLL

    @classmethod
    def from_probe_output(cls, output: str) -> "ServerCapabilities":
        """Parse the output of commands.CAPABILITY_PROBE."""
        lines = [line.strip() for line in output.splitlines() if line.strip()]
        caps = cls()
        if not lines:
            return caps

        os_name = lines[0].lower()
        if os_name == "linux":
            caps.os = "linux"
        elif os_name == "darwin":
            caps.os = "darwin"
        elif any(tag in os_name for tag in ("mingw", "cygwin", "msys")):
            caps.os = "windows"

        for line in lines[1:]:
            key, _, value = line.partition("=")
            if key == "inotifywait":
                caps.has_inotifywait = value == "yes"
            elif key == "fswatch":
                caps.has_fswatch = value == "yes"
            elif key == "ID":
                caps.distro = value.strip("\"'").lower() or UNKNOWN
            else:
                caps.extra[key] = value
        return caps
