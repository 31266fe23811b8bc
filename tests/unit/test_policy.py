"""Tests for the allow/deny command policy."""

from __future__ import annotations

import pytest

from ssh_mcp.config import ConnectionDescriptor
from ssh_mcp.errors import ConfigurationError
from ssh_mcp.policy import (
    MATCHES_DENY_LIST, NOT_IN_ALLOW_LIST, CommandPolicy, PolicyVerdict, evaluate,
)


def _descriptor(allow=(), deny=()) -> ConnectionDescriptor:
    return ConnectionDescriptor(
        name="web", host="h", port=22, username="u", password="p",
        command_whitelist=tuple(allow), command_blacklist=tuple(deny),
    )


def test_no_lists_allows_everything():
    verdict = evaluate("rm -rf /", _descriptor())
    assert verdict == PolicyVerdict(True, None)


def test_allow_list_miss_is_denied():
    verdict = evaluate("whoami", _descriptor(allow=["^ls", "^df"]))
    assert not verdict.allowed
    assert verdict.reason == NOT_IN_ALLOW_LIST


@pytest.mark.parametrize("deny", [(), ("whoami",), ("nothing-matches",)])
def test_allow_list_miss_wins_regardless_of_deny_list(deny):
    verdict = evaluate("whoami", _descriptor(allow=["^ls"], deny=deny))
    assert verdict.reason == NOT_IN_ALLOW_LIST


def test_deny_list_checked_after_allow_list_passes():
    verdict = evaluate("ls /root && rm -rf /", _descriptor(allow=["^ls"], deny=["rm\\s+-rf"]))
    assert not verdict.allowed
    assert verdict.reason == MATCHES_DENY_LIST


def test_both_lists_pass():
    verdict = evaluate("ls -la /var/log", _descriptor(allow=["^ls"], deny=["rm"]))
    assert verdict.allowed
    assert verdict.reason is None


def test_patterns_are_unanchored_by_default():
    policy = CommandPolicy.from_descriptor(_descriptor(allow=["uptime"]))
    assert policy.evaluate("sudo uptime -p").allowed
    anchored = CommandPolicy.from_descriptor(_descriptor(allow=["^uptime$"]))
    assert not anchored.evaluate("sudo uptime -p").allowed


def test_deny_only_configuration():
    policy = CommandPolicy.from_descriptor(_descriptor(deny=["shutdown", "reboot"]))
    assert policy.evaluate("df -h").allowed
    assert policy.evaluate("sudo reboot").reason == MATCHES_DENY_LIST
    assert not policy.has_allow_list


def test_invalid_pattern_raises_configuration_error():
    with pytest.raises(ConfigurationError, match="allow-list"):
        CommandPolicy.from_descriptor(_descriptor(allow=["[unclosed"]))
    with pytest.raises(ConfigurationError, match="deny-list"):
        CommandPolicy.from_descriptor(_descriptor(deny=["(oops"]))
