"""In-memory stand-ins for paramiko clients, channels and SFTP sessions."""

from __future__ import annotations

import io
import threading
import time
from typing import Callable
from unittest.mock import MagicMock


class FakeTransport:
    def __init__(self) -> None:
        self.active = True
        self.keepalive = None

    def is_active(self) -> bool:
        return self.active

    def set_keepalive(self, interval: int) -> None:
        self.keepalive = interval


class FakeChannel:
    def __init__(
        self,
        stdout: bytes = b"",
        stderr: bytes = b"",
        exit_status: int = 0,
        hang: bool = False,
        error: Exception | None = None,
    ) -> None:
        self._stdout = [stdout] if stdout else []
        self._stderr = [stderr] if stderr else []
        self.exit_status = exit_status
        self.hang = hang
        self.error = error
        self.closed = False
        self.transport = FakeTransport()

    def recv_ready(self) -> bool:
        return bool(self._stdout) or self.error is not None

    def recv(self, size: int) -> bytes:
        if self.error is not None:
            raise self.error
        return self._stdout.pop(0)

    def recv_stderr_ready(self) -> bool:
        return bool(self._stderr)

    def recv_stderr(self, size: int) -> bytes:
        return self._stderr.pop(0)

    def exit_status_ready(self) -> bool:
        return not self.hang

    def recv_exit_status(self) -> int:
        return self.exit_status

    def get_transport(self) -> FakeTransport:
        return self.transport

    def close(self) -> None:
        self.closed = True


class FakeRemoteFile(io.BytesIO):
    def __init__(self, store: dict, path: str, data: bytes = b"") -> None:
        super().__init__(data)
        self._store = store
        self._path = path

    def close(self) -> None:
        if not self.closed:
            self._store[self._path] = self.getvalue()
        super().close()


class FakeSFTP:
    def __init__(self, store: dict) -> None:
        self.store = store
        self.closed = False

    def open(self, path: str, mode: str = "r"):
        if "w" in mode:
            return FakeRemoteFile(self.store, path)
        if path not in self.store:
            raise FileNotFoundError(2, "No such file", path)
        return FakeRemoteFile(self.store, path, self.store[path])

    def close(self) -> None:
        self.closed = True


class FakeClient:
    def __init__(self, controller: "FakeSSH") -> None:
        self.controller = controller
        self.transport = FakeTransport()
        self.connect_kwargs: dict = {}
        self.commands: list[str] = []
        self.channels: list[FakeChannel] = []
        self.sftp_sessions: list[FakeSFTP] = []
        self.closed = False

    def load_system_host_keys(self) -> None:
        pass

    def set_missing_host_key_policy(self, policy) -> None:
        pass

    def connect(self, **kwargs) -> None:
        self.connect_kwargs = kwargs
        with self.controller.lock:
            self.controller.connect_calls += 1
        if self.controller.connect_delay:
            time.sleep(self.controller.connect_delay)
        if self.controller.connect_error is not None:
            raise self.controller.connect_error

    def get_transport(self) -> FakeTransport:
        return self.transport

    def exec_command(self, command: str):
        channel = self.controller.channel_factory(command)
        with self.controller.lock:
            self.commands.append(command)
            self.channels.append(channel)
        stdout = MagicMock()
        stdout.channel = channel
        return MagicMock(), stdout, MagicMock()

    def open_sftp(self) -> FakeSFTP:
        sftp = FakeSFTP(self.controller.remote_files)
        self.sftp_sessions.append(sftp)
        return sftp

    def close(self) -> None:
        self.closed = True
        self.transport.active = False


class FakeSSH:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.clients: list[FakeClient] = []
        self.connect_calls = 0
        self.connect_delay = 0.0
        self.connect_error: Exception | None = None
        self.remote_files: dict = {}
        self.channel_factory: Callable[[str], FakeChannel] = lambda command: FakeChannel()

    def new_client(self) -> FakeClient:
        client = FakeClient(self)
        with self.lock:
            self.clients.append(client)
        return client
