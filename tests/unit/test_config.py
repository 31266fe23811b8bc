"""Tests for connection descriptors and runtime configuration."""

from __future__ import annotations

import json

import pytest

from ssh_mcp.config import ServerConfig, descriptor_from_mapping, load_connection_file, split_patterns
from ssh_mcp.errors import ConfigurationError


def test_mapping_accepts_camel_case_keys():
    descriptor = descriptor_from_mapping(
        {
            "name": "db",
            "host": "db.internal",
            "port": "2201",
            "username": "ops",
            "privateKey": "~/.ssh/id_ed25519",
            "commandWhitelist": ["^psql", "^pg_dump"],
            "commandBlacklist": "drop,truncate",
            "socksProxy": "socks://127.0.0.1:1080",
        }
    )

    assert descriptor.port == 2201
    assert descriptor.private_key == "~/.ssh/id_ed25519"
    assert descriptor.command_whitelist == ("^psql", "^pg_dump")
    assert descriptor.command_blacklist == ("drop", "truncate")
    assert descriptor.socks_proxy == "socks://127.0.0.1:1080"
    assert descriptor.public_info() == {"name": "db", "host": "db.internal", "port": 2201, "username": "ops"}


def test_mapping_defaults():
    descriptor = descriptor_from_mapping({"host": "h", "user": "u", "password": "p"}, fallback_name="server3")
    assert descriptor.name == "server3"
    assert descriptor.port == 22
    assert descriptor.command_whitelist == ()


@pytest.mark.parametrize(
    "data, message",
    [
        ({"username": "u"}, "missing host"),
        ({"host": "h"}, "missing username"),
        ({"host": "h", "username": "u", "port": "ssh"}, "invalid port"),
        ({"host": "h", "username": "u", "port": 70000}, "out-of-range port"),
    ],
)
def test_mapping_rejects_incomplete_entries(data, message):
    with pytest.raises(ConfigurationError, match=message):
        descriptor_from_mapping(data)


def test_split_patterns_drops_blanks():
    assert split_patterns(" ^ls , ,^df ") == ("^ls", "^df")
    assert split_patterns(None) == ()
    with pytest.raises(ConfigurationError):
        split_patterns(42)


def test_load_connection_file_with_default(tmp_path):
    path = tmp_path / "connections.json"
    path.write_text(
        json.dumps(
            {
                "default": "b",
                "connections": [
                    {"name": "a", "host": "10.0.0.1", "username": "u", "password": "p"},
                    {"name": "b", "host": "10.0.0.2", "username": "u", "password": "p"},
                ],
            }
        ),
        encoding="utf-8",
    )

    descriptors, default_name = load_connection_file(str(path))

    assert [d.name for d in descriptors] == ["a", "b"]
    assert default_name == "b"


def test_load_connection_file_accepts_a_bare_list(tmp_path):
    path = tmp_path / "connections.json"
    path.write_text(json.dumps([{"host": "h1", "username": "u"}, {"host": "h2", "username": "u"}]), encoding="utf-8")

    descriptors, default_name = load_connection_file(str(path))

    assert [d.name for d in descriptors] == ["server1", "server2"]
    assert default_name is None


def test_load_connection_file_errors(tmp_path):
    with pytest.raises(ConfigurationError, match="failed to read"):
        load_connection_file(str(tmp_path / "missing.json"))
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="failed to read"):
        load_connection_file(str(broken))


def test_env_builds_single_connection(monkeypatch):
    monkeypatch.setenv("SSH_HOST", "10.1.1.1")
    monkeypatch.setenv("SSH_USER", "root")
    monkeypatch.setenv("SSH_PASSWORD", "pw")
    monkeypatch.setenv("SSH_PORT", "2022")
    monkeypatch.setenv("SSH_WHITELIST", "^uptime,^df")
    monkeypatch.setenv("SSH_VERIFY_HOST_KEY", "false")
    monkeypatch.delenv("SSH_NAME", raising=False)
    monkeypatch.delenv("SSH_MCP_CONFIG", raising=False)

    cfg = ServerConfig()
    cfg.load_from_env()
    descriptors, default_name = cfg.build_descriptors()

    assert len(descriptors) == 1
    assert descriptors[0].name == "default"
    assert descriptors[0].port == 2022
    assert descriptors[0].command_whitelist == ("^uptime", "^df")
    assert cfg.SSH_VERIFY_HOST_KEY is False
    assert default_name is None


def test_single_connection_and_file_must_not_share_names(tmp_path):
    path = tmp_path / "connections.json"
    path.write_text(json.dumps([{"name": "default", "host": "h", "username": "u"}]), encoding="utf-8")

    cfg = ServerConfig()
    cfg.SSH_HOST = "10.1.1.1"
    cfg.SSH_USER = "root"
    cfg.CONFIG_FILE = str(path)

    with pytest.raises(ConfigurationError, match="duplicate connection name: default"):
        cfg.build_descriptors()
