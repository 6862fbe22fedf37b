"""
Tests for value types: RemoteFile, SearchResult, ServerCapabilities.
"""
from __future__ import annotations

import stat
from dataclasses import dataclass

import pytest

from sshlite.models import (
    ExecResult,
    RemoteFile,
    SearchOptions,
    SearchResult,
    ServerCapabilities,
    WatchMethod,
    format_permissions,
    join_remote,
    parse_owner_group,
    sort_listing,
)


@dataclass
class FakeAttrs:
    """Stand-in for asyncssh.SFTPAttrs."""
    permissions: int | None = None
    size: int | None = None
    mtime: float | None = None
    atime: float | None = None
    owner: str | None = None
    group: str | None = None


def make_file(name: str, is_dir: bool) -> RemoteFile:
    return RemoteFile(
        name=name,
        path=f"/x/{name}",
        is_directory=is_dir,
        size=0,
        modified_time=0,
        connection_id="h:22:u",
    )


class TestPermissions:

    def test_format(self) -> None:
        assert format_permissions(0o755) == "rwxr-xr-x"
        assert format_permissions(0o640) == "rw-r-----"
        assert format_permissions(stat.S_IFDIR | 0o700) == "rwx------"

    def test_missing_mode(self) -> None:
        assert format_permissions(None) == "---------"


class TestOwnerGroup:

    def test_parse_longname(self) -> None:
        longname = "-rw-r--r--    1 alice    staff        1234 Jan  1 12:00 notes.txt"
        assert parse_owner_group(longname) == ("alice", "staff")

    def test_short_longname(self) -> None:
        """Too few fields gives unknown/unknown."""
        assert parse_owner_group("-rw-r--r-- 1 alice") == ("unknown", "unknown")
        assert parse_owner_group(None) == ("unknown", "unknown")


class TestRemoteFile:

    def test_from_attrs_file(self) -> None:
        attrs = FakeAttrs(permissions=stat.S_IFREG | 0o644, size=42, mtime=1700000000, atime=1700000001)
        f = RemoteFile.from_attrs("/srv/a.txt", attrs, "h:22:u")

        assert f.name == "a.txt"
        assert f.path == "/srv/a.txt"
        assert not f.is_directory
        assert f.size == 42
        assert f.modified_time == 1700000000000
        assert f.access_time == 1700000001000
        assert f.permissions == "rw-r--r--"
        assert f.connection_id == "h:22:u"

    def test_from_attrs_directory(self) -> None:
        attrs = FakeAttrs(permissions=stat.S_IFDIR | 0o755)
        f = RemoteFile.from_attrs("/srv/logs/", attrs, "h:22:u")
        assert f.is_directory
        assert f.name == "logs"
        assert f.size == 0

    def test_owner_prefers_attrs(self) -> None:
        """Owner from attributes wins over the long name."""
        longname = "-rw-r--r-- 1 alice staff 1 Jan 1 12:00 a"
        attrs = FakeAttrs(permissions=0o644, owner="bob", group=None)
        f = RemoteFile.from_attrs("/a", attrs, "c", longname=longname)
        assert f.owner == "bob"
        assert f.group == "staff"

    def test_sort_directories_first(self) -> None:
        files = [
            make_file("b.txt", False),
            make_file("zdir", True),
            make_file("a.txt", False),
            make_file("adir", True),
            make_file("c.txt", False),
        ]
        assert [f.name for f in sort_listing(files)] == [
            "adir", "zdir", "a.txt", "b.txt", "c.txt",
        ]

    def test_join_remote(self) -> None:
        assert join_remote("/srv", "a") == "/srv/a"
        assert join_remote("/srv/", "a") == "/srv/a"
        assert join_remote(".", "a") == "a"


class TestExecResult:

    def test_ok(self) -> None:
        assert ExecResult("out", "", 0).ok
        assert not ExecResult("", "err", 2).ok

    def test_exit_code_must_be_int(self) -> None:
        with pytest.raises(AssertionError):
            ExecResult("", "", None)  # type: ignore[arg-type]


class TestSearch:

    def test_options_defaults(self) -> None:
        options = SearchOptions()
        assert options.search_content
        assert not options.case_sensitive
        assert not options.regex
        assert options.file_pattern == "*"
        assert options.max_results is None

    def test_apply_attrs(self) -> None:
        result = SearchResult(path="/a", match="x", line=3)
        result.apply_attrs(FakeAttrs(permissions=0o600, size=10, mtime=2.5))
        assert result.size == 10
        assert result.modified_time == 2500
        assert result.permissions == "rw-------"


class TestServerCapabilities:

    def test_linux_with_inotify(self) -> None:
        output = "Linux\ninotifywait=yes\nfswatch=no\nID=ubuntu\n"
        caps = ServerCapabilities.from_probe_output(output)
        assert caps.os == "linux"
        assert caps.distro == "ubuntu"
        assert caps.has_inotifywait
        assert not caps.has_fswatch
        assert caps.watch_method == WatchMethod.INOTIFYWAIT

    def test_darwin_with_fswatch(self) -> None:
        caps = ServerCapabilities.from_probe_output("Darwin\ninotifywait=no\nfswatch=yes\n")
        assert caps.os == "darwin"
        assert caps.distro == "unknown"
        assert caps.watch_method == WatchMethod.FSWATCH

    def test_quoted_distro(self) -> None:
        caps = ServerCapabilities.from_probe_output('Linux\nID="rhel"\n')
        assert caps.distro == "rhel"

    @pytest.mark.parametrize("uname", ["MINGW64_NT-10.0", "CYGWIN_NT-10.0", "MSYS_NT-10.0"])
    def test_windows_shells(self, uname: str) -> None:
        assert ServerCapabilities.from_probe_output(uname).os == "windows"

    def test_unknown_os_falls_back_to_poll(self) -> None:
        caps = ServerCapabilities.from_probe_output("SunOS\n")
        assert caps.os == "unknown"
        assert caps.watch_method == WatchMethod.POLL

    def test_empty_output(self) -> None:
        assert ServerCapabilities.from_probe_output("") == ServerCapabilities()
