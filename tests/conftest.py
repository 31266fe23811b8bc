"""Shared test fixtures."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from ssh_mcp.config import ConnectionDescriptor
from tests.fakes import FakeSSH


@pytest.fixture
def fake_ssh():
    controller = FakeSSH()
    with patch("ssh_mcp.ssh.paramiko.SSHClient", side_effect=controller.new_client), \
            patch("ssh_mcp.ssh.resolve_transport", return_value=MagicMock()) as resolve:
        controller.resolve_transport = resolve
        yield controller


@pytest.fixture
def descriptor() -> ConnectionDescriptor:
    return ConnectionDescriptor(name="web", host="10.0.0.5", port=22, username="deploy", password="secret")


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path
