"""
CLI interface for sshlite.

Usage:
    python -m sshlite user@host ls /var/log
    python -m sshlite user@host cat /etc/hostname
    python -m sshlite user@host head /var/log/syslog -n 20
    python -m sshlite user@host tail /var/log/syslog -n 20
    python -m sshlite user@host search /var/log ERROR --exclude '*.gz'
    python -m sshlite user@host exec 'uptime'
    python -m sshlite user@host caps
    python -m sshlite -p 2222 --password user@host ls
    python -m sshlite --events user@host ls
"""
from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import logging
import sys
from dataclasses import asdict

from sshlite.auth import CredentialDescriptor, CredentialKind, MemoryCredentialStore
from sshlite.config import EngineSettings, HostConfig
from sshlite.connection import SSHConnection
from sshlite.errors import SSHError
from sshlite.events import EventEmitter
from sshlite.models import SearchOptions
from sshlite.ssh_config import SSHConfig

CLI_PASSWORD_ID = "cli-password"


def cli_prompt(connection_id: str, secret_id: str, text: str) -> str | None:
    """Ask on the terminal for a secret the store does not have."""
    try:
        return getpass.getpass(f"{text}: ") or None
    except (EOFError, KeyboardInterrupt):
        return None


def parse_target(target: str) -> tuple[str, str | None]:
    """
    Parse user@host target string.

    Returns:
        Tuple of (host, username) where username may be None.
    """
    if "@" in target:
        username, host = target.rsplit("@", 1)
        return host, username
    return target, None


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the sshlite CLI."""
    parser = argparse.ArgumentParser(
        prog="sshlite",
        description="Browse, read and search files on a remote host over SSH",
        epilog="Example: python -m sshlite user@host ls /var/log",
    )

    parser.add_argument(
        "target",
        metavar="[user@]host",
        help="Target host or ssh config alias (optionally with username)",
    )

    parser.add_argument(
        "-p", "--port",
        type=int,
        help="SSH port (default: from ssh config, else 22)",
    )

    parser.add_argument(
        "-l", "--login",
        metavar="USER",
        help="Login username (alternative to user@host)",
    )

    parser.add_argument(
        "-i", "--identity",
        metavar="FILE",
        help="Private key file to try first",
    )

    parser.add_argument(
        "--password",
        action="store_true",
        help="Use only password authentication (prompted once)",
    )

    parser.add_argument(
        "-F", "--config-file",
        metavar="FILE",
        help="ssh config file (default: ~/.ssh/config)",
    )

    parser.add_argument(
        "--known-hosts",
        metavar="FILE",
        help="Verify the server key against this known_hosts file",
    )

    parser.add_argument(
        "--timeout",
        type=float,
        help="Operation timeout in seconds",
    )

    parser.add_argument(
        "--events",
        action="store_true",
        help="Print JSONL events to stderr",
    )

    parser.add_argument(
        "--event-log",
        metavar="FILE",
        help="Append JSONL events to FILE",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Verbose logging (repeat for debug)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Only log errors",
    )

    actions = parser.add_subparsers(dest="action", required=True)

    ls = actions.add_parser("ls", help="List a directory")
    ls.add_argument("path", nargs="?", default="~")

    cat = actions.add_parser("cat", help="Print a file")
    cat.add_argument("path")

    head = actions.add_parser("head", help="Print the first lines of a file")
    head.add_argument("path")
    head.add_argument("-n", "--lines", default="10")

    tail = actions.add_parser("tail", help="Print the last lines of a file")
    tail.add_argument("path")
    tail.add_argument("-n", "--lines", default="10")

    search = actions.add_parser("search", help="Search file contents or names")
    search.add_argument("path", nargs="+", help="Base path(s) followed by the pattern")
    search.add_argument("--names", action="store_true", help="Match file names, not content")
    search.add_argument("--case-sensitive", action="store_true")
    search.add_argument("--regex", action="store_true")
    search.add_argument("--include", default="*", metavar="GLOB")
    search.add_argument("--exclude", metavar="GLOBS", help="Comma-separated globs")
    search.add_argument("--max-results", type=int)

    run = actions.add_parser("exec", help="Run a command")
    run.add_argument("command")

    actions.add_parser("caps", help="Show detected server capabilities")

    return parser


def setup_logging(verbose: int, quiet: bool) -> None:
    if quiet:
        level = logging.ERROR
    elif verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    logging.getLogger("asyncssh").setLevel(logging.DEBUG if verbose >= 3 else logging.WARNING)


def resolve_host(args: argparse.Namespace) -> HostConfig:
    """Combine the ssh config entry for the target with CLI overrides."""
    alias, target_user = parse_target(args.target)
    ssh_config = SSHConfig(args.config_file) if args.config_file else SSHConfig()
    host = ssh_config.lookup(alias)
    return HostConfig(
        host=host.host,
        port=args.port or host.port,
        username=args.login or target_user or host.username,
        name=alias,
        private_key_path=args.identity or host.private_key_path,
        known_hosts=args.known_hosts,
    )


def format_listing_line(file) -> str:
    kind = "d" if file.is_directory else "-"
    suffix = "/" if file.is_directory else ""
    return f"{kind}{file.permissions} {file.owner or '?':<8} {file.size:>10} {file.name}{suffix}"


async def perform(conn: SSHConnection, args: argparse.Namespace) -> int:
    """Run the requested action on a connected session."""
    if args.action == "ls":
        for file in await conn.list_files(args.path):
            print(format_listing_line(file))
    elif args.action == "cat":
        sys.stdout.buffer.write(await conn.read_file(args.path))
        sys.stdout.flush()
    elif args.action == "head":
        print(await conn.read_file_first_lines(args.path, args.lines), end="")
    elif args.action == "tail":
        print(await conn.read_file_last_lines(args.path, args.lines), end="")
    elif args.action == "search":
        if len(args.path) < 2:
            print("search needs at least one path and a pattern", file=sys.stderr)
            return 2
        *paths, pattern = args.path
        options = SearchOptions(
            search_content=not args.names,
            case_sensitive=args.case_sensitive,
            regex=args.regex,
            file_pattern=args.include,
            exclude=args.exclude,
            max_results=args.max_results,
        )
        for result in await conn.search_files(paths, pattern, options):
            if result.line is None:
                print(result.path)
            else:
                print(f"{result.path}:{result.line}:{result.match}")
    elif args.action == "exec":
        result = await conn.exec_result(args.command)
        print(result.stdout, end="")
        if result.stderr:
            print(result.stderr, end="", file=sys.stderr)
        return result.exit_code
    elif args.action == "caps":
        print(json.dumps(asdict(await conn.detect_capabilities()), indent=2))
    return 0


async def run_command(args: argparse.Namespace) -> int:
    """
    Connect, run one action and disconnect.

    Returns:
        Process exit code (the remote exit code for ``exec``, 1 on error)
    """
    setup_logging(args.verbose, args.quiet)

    settings = EngineSettings.from_env()
    if args.timeout:
        settings.operation_timeout = args.timeout

    host = resolve_host(args)
    store = MemoryCredentialStore(prompt=cli_prompt)
    credential = None
    if args.password:
        password = cli_prompt(host.connection_id, CLI_PASSWORD_ID,
                              f"Password for {host.username}@{host.host}")
        if password is None:
            print("Error: no password given", file=sys.stderr)
            return 1
        store.set_secret(host.connection_id, CLI_PASSWORD_ID, password)
        credential = CredentialDescriptor(CredentialKind.PASSWORD, CLI_PASSWORD_ID)

    emitter = EventEmitter(
        jsonl_path=args.event_log,
        stream=sys.stderr if args.events else None,
    )
    exit_code = 0

    try:
        async with SSHConnection(
            host,
            credential,
            settings=settings,
            credential_store=store,
            emitter=emitter,
        ) as conn:
            exit_code = await perform(conn, args)
    except SSHError as e:
        print(f"Error: {e}", file=sys.stderr)
        exit_code = 1
    finally:
        emitter.close()

    return exit_code


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    return asyncio.run(run_command(args))


if __name__ == "__main__":
    sys.exit(main())
