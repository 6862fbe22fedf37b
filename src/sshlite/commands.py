"""
Shell command construction for remote exec.

Everything here is pure: functions take already-validated Python values
and return a command string for a POSIX shell (bash or busybox ash).

Rules every builder follows:
- Paths and patterns are single-quoted, with embedded quotes written as
  '\\'' (close quote, escaped quote, reopen quote). Nothing inside the
  quotes is interpreted by the shell.
- A leading ``~`` in a path is rendered as "$HOME" so home-relative
  paths keep working without exposing the rest of the path to expansion.
- Numeric bounds are clamped integers, never quoted strings.
- Commands that can produce large output are capped with ``head -n``.
"""
from __future__ import annotations

import math
import re
from typing import Any, Iterable, Sequence

MAX_LINES = 100_000
MAX_RESULTS = 100_000
MAX_BYTE_OFFSET = 2**53

CAPABILITY_PROBE = (
    "uname -s 2>/dev/null || echo unknown; "
    "command -v inotifywait >/dev/null 2>&1 && echo inotifywait=yes || echo inotifywait=no; "
    "command -v fswatch >/dev/null 2>&1 && echo fswatch=yes || echo fswatch=no; "
    "grep '^ID=' /etc/os-release 2>/dev/null || true"
)

_GREP_LINE = re.compile(r"^(.*?):(\d+):(.*)$")


def shell_quote(value: str) -> str:
    """Wrap a value in single quotes so the shell treats it literally."""
    return "'" + str(value).replace("'", "'\\''") + "'"


def quote_remote_path(path: str) -> str:
    """
    Quote a remote path, keeping a leading ``~`` meaningful.

    >>> quote_remote_path("~/logs/a b.txt")
    '"$HOME"\\'/logs/a b.txt\\''
    """
    if path == "~":
        return '"$HOME"'
    if path.startswith("~/"):
        return '"$HOME"' + shell_quote(path[1:])
    return shell_quote(path)


def clamp_int(value: Any, minimum: int, maximum: int) -> int:
    """
    Coerce ``value`` to an int within [minimum, maximum].

    Anything that does not parse as a finite number (None, NaN,
    infinities, arbitrary strings) becomes ``minimum``.
    """
    assert minimum <= maximum, f"Invalid range [{minimum}, {maximum}]"
    if isinstance(value, bool):
        return minimum
    try:
        number = float(value)
    except (TypeError, ValueError):
        return minimum
    if not math.isfinite(number):
        return minimum
    return max(minimum, min(maximum, int(number)))


def split_patterns(patterns: str | Iterable[str] | None) -> list[str]:
    """Split comma-separated exclude patterns into non-empty fragments."""
    if not patterns:
        return []
    if isinstance(patterns, str):
        patterns = [patterns]
    fragments = []
    for item in patterns:
        for fragment in str(item).split(","):
            fragment = fragment.strip()
            if fragment:
                fragments.append(fragment)
    return fragments


def _find_path(path: str) -> str:
    # find has no "--"; keep a leading dash from being read as a predicate
    if path.startswith("-"):
        path = "./" + path
    return quote_remote_path(path)


def build_content_search(
    paths: Sequence[str],
    pattern: str,
    *,
    max_results: Any,
    case_sensitive: bool = False,
    regex: bool = False,
    file_pattern: str = "*",
    exclude: str | Iterable[str] | None = None,
) -> str:
    """Build a recursive ``grep`` over one or more base paths."""
    assert paths, "At least one search path is required"
    limit = clamp_int(max_results, 1, MAX_RESULTS)

    parts = ["grep", "-rnH"]
    if not case_sensitive:
        parts.append("-i")
    parts.append("-E" if regex else "-F")
    if file_pattern and file_pattern != "*":
        parts.append("--include=" + shell_quote(file_pattern))
    for fragment in split_patterns(exclude):
        parts.append("--exclude=" + shell_quote(fragment))
        parts.append("--exclude-dir=" + shell_quote(fragment))
    parts.extend(["-m", str(limit), "-e", shell_quote(pattern), "--"])
    parts.extend(quote_remote_path(p) for p in paths)

    return " ".join(parts) + f" 2>/dev/null | head -n {limit}"


def build_name_search(
    paths: Sequence[str],
    pattern: str,
    *,
    max_results: Any,
    case_sensitive: bool = False,
    regex: bool = False,
    exclude: str | Iterable[str] | None = None,
) -> str:
    """Build a ``find`` for regular files whose name contains ``pattern``."""
    assert paths, "At least one search path is required"
    limit = clamp_int(max_results, 1, MAX_RESULTS)

    parts = ["find"]
    parts.extend(_find_path(p) for p in paths)
    parts.extend(["-type", "f"])
    if regex:
        parts.extend([
            "-regex" if case_sensitive else "-iregex",
            shell_quote(f".*{pattern}.*"),
        ])
    else:
        parts.extend([
            "-name" if case_sensitive else "-iname",
            shell_quote(f"*{pattern}*"),
        ])
    for fragment in split_patterns(exclude):
        parts.extend(["!", "-name", shell_quote(fragment)])
        parts.extend(["!", "-path", shell_quote(f"*/{fragment}/*")])

    return " ".join(parts) + f" 2>/dev/null | head -n {limit}"


def build_head(path: str, lines: Any) -> str:
    return f"head -n {clamp_int(lines, 1, MAX_LINES)} {quote_remote_path(path)}"


def build_tail(path: str, lines: Any) -> str:
    return f"tail -n {clamp_int(lines, 1, MAX_LINES)} {quote_remote_path(path)}"


def build_tail_bytes(path: str, offset: Any) -> str:
    """Read from a 0-based byte offset to the end (``tail -c`` is 1-based)."""
    start = clamp_int(offset, 0, MAX_BYTE_OFFSET) + 1
    return f"tail -c +{start} {quote_remote_path(path)}"


def build_watch(path: str, method: str) -> str:
    """
    Long-running watcher printing one line per change to ``path``.

    inotifywait's stderr is kept so its "Watches established." notice
    can be waited for.
    """
    quoted = quote_remote_path(path)
    if method == "inotifywait":
        return f"inotifywait -m -e modify,delete_self,move_self {quoted} 2>&1"
    if method == "fswatch":
        return f"fswatch -x --event Updated --event Removed {quoted} 2>/dev/null"
    raise ValueError(f"No watch command for method {method!r}")


def build_list_directories(path: str) -> str:
    return (
        f"find {_find_path(path)} -mindepth 1 -maxdepth 1 -type d 2>/dev/null"
    )


def build_remove_recursive(path: str) -> str:
    """Build ``rm -rf`` for a single path, refusing root and home."""
    stripped = path.strip().rstrip("/")
    if stripped in ("", "~", "$HOME", "."):
        raise ValueError(f"Refusing to recursively remove {path!r}")
    return f"rm -rf -- {quote_remote_path(path)}"


def parse_content_matches(output: str) -> list[tuple[str, int, str]]:
    """
    Parse ``grep -nH`` output into (path, line, text) tuples.

    Lines that do not look like ``path:line:text`` (binary-file notices,
    stray diagnostics) are skipped.
    """
    matches = []
    for raw in output.splitlines():
        found = _GREP_LINE.match(raw)
        if found:
            matches.append((found.group(1), int(found.group(2)), found.group(3)))
    return matches


def parse_name_matches(output: str) -> list[str]:
    return [line for line in (l.strip() for l in output.splitlines()) if line]
