import time
from dataclasses import dataclass
from typing import List, Optional

import paramiko

from ssh_mcp.config import BUFFER_SIZE, POLL_INTERVAL
from ssh_mcp.errors import StreamError


@dataclass
class CommandResult:
    command: str
    stdout: str = ""
    stderr: str = ""
    exit_status: Optional[int] = None
    timed_out: bool = False
    started_at: float = 0.0
    finished_at: float = 0.0

    @property
    def output(self) -> str:
        return self.stdout + self.stderr

    @property
    def duration(self) -> float:
        return max(0.0, self.finished_at - self.started_at)


def _close_quietly(stream) -> None:
    try:
        if stream is not None:
            stream.close()
    except Exception:
        pass


def run_on_client(client: paramiko.SSHClient, command: str, timeout: float) -> CommandResult:
    """Run ``command`` on an exec channel and collect its output.

    When ``timeout`` seconds elapse the channel is closed and whatever arrived
    so far is returned with ``timed_out`` set. The remote process is not
    killed and the session itself is left untouched.
    """
    result = CommandResult(command=command, started_at=time.time())
    deadline = (result.started_at + timeout) if timeout and timeout > 0 else None
    stdout_chunks: List[bytes] = []
    stderr_chunks: List[bytes] = []

    try:
        stdin_stream, stdout_stream, stderr_stream = client.exec_command(command)
    except (paramiko.SSHException, OSError, EOFError) as exc:
        raise StreamError(f"Command execution error: {exc}")

    channel = stdout_stream.channel
    try:
        while True:
            has_progress = False

            if channel.recv_ready():
                data = channel.recv(BUFFER_SIZE)
                if data:
                    stdout_chunks.append(data)
                    has_progress = True

            if channel.recv_stderr_ready():
                err_data = channel.recv_stderr(BUFFER_SIZE)
                if err_data:
                    stderr_chunks.append(err_data)
                    has_progress = True

            pending = channel.recv_ready() or channel.recv_stderr_ready()
            if channel.exit_status_ready() and not pending:
                result.exit_status = channel.recv_exit_status()
                break

            if channel.closed and not pending:
                transport = channel.get_transport()
                if transport is None or not transport.is_active():
                    raise StreamError("session closed while the command was running")
                break

            if deadline is not None and time.time() >= deadline:
                result.timed_out = True
                _close_quietly(channel)
                break

            if not has_progress:
                time.sleep(POLL_INTERVAL)
    except (paramiko.SSHException, OSError, EOFError) as exc:
        raise StreamError(f"Stream error: {exc}")
    finally:
        _close_quietly(stdin_stream)
        _close_quietly(stdout_stream)
        _close_quietly(stderr_stream)
        result.finished_at = time.time()

    result.stdout = b"".join(stdout_chunks).decode("utf-8", errors="replace")
    result.stderr = b"".join(stderr_chunks).decode("utf-8", errors="replace")
    return result


def run_checked(client: paramiko.SSHClient, command: str, timeout: float) -> str:
    """Run ``command`` and return its trimmed output, raising unless it exits 0."""
    result = run_on_client(client, command, timeout)
    if result.timed_out:
        raise StreamError(f"Command timed out after {timeout:g}s")
    if result.exit_status != 0:
        raise StreamError(f"Command exited with code {result.exit_status}")
    return result.output.strip()
