"""
Tests for the ssh_config reader.
"""
from __future__ import annotations

from pathlib import Path

from sshlite.ssh_config import SSHConfig

SAMPLE = """
# Personal hosts
Host web
    HostName web.example.com
    User deploy
    Port 2222
    IdentityFile ~/.ssh/web_key

Host *.internal !bastion.internal
    User ops

Host db db-replica
    HostName=10.0.0.5
    Port "2200"

Match host foo
    User ignored

Host *
    User fallback
    Port 22
"""


class TestSSHConfig:

    def test_lookup_full_entry(self, monkeypatch, tmp_path: Path) -> None:
        monkeypatch.setenv("HOME", str(tmp_path))
        config = SSHConfig.from_string(SAMPLE)
        host = config.lookup("web")

        assert host.host == "web.example.com"
        assert host.port == 2222
        assert host.username == "deploy"
        assert host.name == "web"
        assert host.private_key_path == str(tmp_path / ".ssh" / "web_key")

    def test_first_match_wins(self) -> None:
        """Values from the catch-all block do not override earlier ones."""
        host = SSHConfig.from_string(SAMPLE).lookup("web")
        assert host.username == "deploy"

    def test_wildcard_and_negation(self) -> None:
        config = SSHConfig.from_string(SAMPLE)
        assert config.lookup("app.internal").username == "ops"
        assert config.lookup("bastion.internal").username == "fallback"

    def test_equals_syntax_and_quotes(self) -> None:
        host = SSHConfig.from_string(SAMPLE).lookup("db-replica")
        assert host.host == "10.0.0.5"
        assert host.port == 2200

    def test_match_blocks_skipped(self) -> None:
        assert SSHConfig.from_string(SAMPLE).lookup("foo").username == "fallback"

    def test_unknown_alias_uses_alias_as_host(self) -> None:
        host = SSHConfig.from_string(SAMPLE).lookup("elsewhere")
        assert host.host == "elsewhere"
        assert host.port == 22

    def test_invalid_port_ignored(self) -> None:
        host = SSHConfig.from_string("Host x\n  Port abc\n  User u\n").lookup("x")
        assert host.port == 22

    def test_aliases_and_hosts(self) -> None:
        config = SSHConfig.from_string(SAMPLE)
        assert config.aliases() == ["web", "db", "db-replica"]
        assert [h.name for h in config.hosts()] == ["web", "db", "db-replica"]

    def test_missing_file(self, tmp_path: Path) -> None:
        config = SSHConfig(tmp_path / "nope")
        assert config.aliases() == []

    def test_reads_file(self, tmp_path: Path) -> None:
        path = tmp_path / "config"
        path.write_text("Host box\n  HostName box.lan\n")
        assert SSHConfig(path).lookup("box").host == "box.lan"
