import os
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import paramiko

from ssh_mcp.channel import run_checked, run_on_client
from ssh_mcp.config import (
    BUFFER_SIZE, CONNECT_TIMEOUT, DEFAULT_COMMAND_TIMEOUT, HEALTH_CHECK_INTERVAL,
    KEEPALIVE_INTERVAL, MAX_COMMAND_TIMEOUT, STATUS_COMMAND_TIMEOUT, ConnectionDescriptor
)
from ssh_mcp.errors import (
    AuthenticationError, ConfigurationError, SSHMCPError, StreamError, TransferError,
    TransportError, ValidationError
)
from ssh_mcp.policy import CommandPolicy
from ssh_mcp.status import StatusSnapshot, collect_status
from ssh_mcp.transport import resolve_transport
from ssh_mcp.utils import (
    clamp_float, iso_now, json_line, log, log_error, resolve_local_path, safe_name
)

TRANSFER_ERRORS = (OSError, EOFError, paramiko.SSHException)


@dataclass
class ConnectionState:
    descriptor: ConnectionDescriptor
    policy: CommandPolicy
    connected: bool = False
    client: Optional[paramiko.SSHClient] = None
    status: Optional[StatusSnapshot] = None
    generation: int = 0
    epoch: int = 0
    connect_lock: threading.Lock = field(default_factory=threading.Lock)


def _client_is_active(client: Optional[paramiko.SSHClient]) -> bool:
    if client is None:
        return False
    try:
        transport = client.get_transport()
        return bool(transport and transport.is_active())
    except Exception:
        return False


def _close_quietly(resource: Any) -> None:
    try:
        if resource is not None:
            resource.close()
    except Exception:
        pass


def _copy_stream(source, target, read_failure: str, write_failure: str) -> int:
    copied = 0
    while True:
        try:
            chunk = source.read(BUFFER_SIZE)
        except TRANSFER_ERRORS as exc:
            raise TransferError(f"{read_failure}: {exc}")
        if not chunk:
            return copied
        try:
            target.write(chunk)
        except TRANSFER_ERRORS as exc:
            raise TransferError(f"{write_failure}: {exc}")
        copied += len(chunk)


def _transfer(
    open_source: Callable[[], Any],
    open_target: Callable[[], Any],
    read_failure: str,
    write_failure: str,
) -> int:
    try:
        source = open_source()
    except TRANSFER_ERRORS as exc:
        raise TransferError(f"{read_failure}: {exc}")
    try:
        try:
            target = open_target()
        except TRANSFER_ERRORS as exc:
            raise TransferError(f"{write_failure}: {exc}")
        try:
            copied = _copy_stream(source, target, read_failure, write_failure)
        except TransferError:
            _close_quietly(target)
            raise
        try:
            target.close()
        except TRANSFER_ERRORS as exc:
            raise TransferError(f"{write_failure}: {exc}")
        return copied
    finally:
        _close_quietly(source)


class SessionRegistry:
    """Owns one SSH session per logical connection name.

    Sessions are opened lazily by the first operation that needs them and
    reopened after the transport dies. ``lock`` guards every read and write
    of connection state; each name also has a ``connect_lock`` so that at most
    one connect attempt per name is in flight.
    """

    def __init__(
        self,
        descriptors: Optional[Iterable[ConnectionDescriptor]] = None,
        default_name: Optional[str] = None,
        verify_host_key: bool = True,
        cache_dirs: Optional[Dict[str, str]] = None,
        health_check_interval: float = HEALTH_CHECK_INTERVAL,
        status_on_connect: bool = True,
    ):
        self.verify_host_key = verify_host_key
        self.cache_dirs = cache_dirs or {}
        self.health_check_interval = health_check_interval
        self.status_on_connect = status_on_connect

        self.lock = threading.Lock()
        self.states: Dict[str, ConnectionState] = {}
        self.default_name: Optional[str] = None
        self.status_threads: Dict[str, threading.Thread] = {}

        self.health_stop = threading.Event()
        self.health_thread: Optional[threading.Thread] = None

        if descriptors is not None:
            self.configure(descriptors, default_name)

    # ========= Configuration =========
    def configure(self, descriptors: Iterable[ConnectionDescriptor], default_name: Optional[str] = None) -> None:
        states: Dict[str, ConnectionState] = {}
        for descriptor in descriptors:
            if descriptor.name in states:
                raise ConfigurationError(f"duplicate connection name: {descriptor.name}")
            states[descriptor.name] = ConnectionState(
                descriptor=descriptor,
                policy=CommandPolicy.from_descriptor(descriptor),
            )

        if default_name and default_name in states:
            chosen_default = default_name
        elif states:
            chosen_default = next(iter(states))
        else:
            chosen_default = None

        with self.lock:
            previous = self.states
            self.states = states
            self.default_name = chosen_default
        for key, state in previous.items():
            if state.client is not None:
                _close_quietly(state.client)
                self._log_event(key, "closed", reason="reconfigured")

    def names(self) -> List[str]:
        with self.lock:
            return list(self.states.keys())

    def get_descriptor(self, name: Optional[str] = None) -> ConnectionDescriptor:
        return self._get_state(name)[1].descriptor

    def _get_state(self, name: Optional[str]) -> Tuple[str, ConnectionState]:
        with self.lock:
            key = name or self.default_name
            state = self.states.get(key) if key else None
        if state is None:
            raise ConfigurationError(f"SSH configuration for '{key or ''}' not set")
        return key, state

    # ========= Event log =========
    def _log_event(self, key: str, event: str, **payload: Any) -> None:
        sessions_dir = self.cache_dirs.get("sessions_dir")
        if not sessions_dir:
            return
        data = {"ts": iso_now(), "dir": "SYS", "event": event, "connection": key}
        data.update(payload)
        json_line(os.path.join(sessions_dir, f"{safe_name(key)}.log"), data)

    # ========= Connection lifecycle =========
    def connect_all(self) -> Dict[str, str]:
        failures: Dict[str, str] = {}
        for key in self.names():
            try:
                self.connect(key)
            except SSHMCPError as exc:
                failures[key] = str(exc)
                log_error(str(exc))
        return failures

    def connect(self, name: Optional[str] = None) -> None:
        key, state = self._get_state(name)
        with state.connect_lock:
            with self.lock:
                if state.connected and _client_is_active(state.client):
                    return
                stale = state.client
                state.client = None
                state.connected = False
                epoch = state.epoch
            if stale is not None:
                _close_quietly(stale)
                self._log_event(key, "closed", reason="transport inactive")

            try:
                client = self._open_client(state.descriptor)
            except SSHMCPError as exc:
                self._log_event(key, "connect_failed", error=str(exc))
                raise

            with self.lock:
                if self.states.get(key) is not state:
                    abandoned = ConfigurationError(f"SSH connection [{key}] was reconfigured while connecting")
                elif state.epoch != epoch:
                    abandoned = TransportError(f"SSH connection [{key}] was disconnected while connecting")
                else:
                    abandoned = None
                    state.client = client
                    state.connected = True
                    state.generation += 1
                    generation = state.generation
            if abandoned is not None:
                _close_quietly(client)
                self._log_event(key, "closed", reason=str(abandoned))
                raise abandoned

        descriptor = state.descriptor
        log(f"Successfully connected to SSH server [{key}] {descriptor.host}:{descriptor.port}")
        self._log_event(key, "connected", host=descriptor.host, port=descriptor.port)
        self._ensure_health_thread()
        if self.status_on_connect:
            self._start_status_collection(key, state, client, generation)

    def _auth_kwargs(self, descriptor: ConnectionDescriptor) -> Dict[str, Any]:
        if descriptor.private_key:
            key_path = os.path.expanduser(descriptor.private_key)
            # from_path hands the passphrase to cryptography, which wants bytes.
            passphrase = descriptor.passphrase.encode("utf-8") if descriptor.passphrase else None
            try:
                pkey = paramiko.PKey.from_path(key_path, passphrase)
            except (OSError, paramiko.SSHException, TypeError, ValueError) as exc:
                raise AuthenticationError(f"Failed to read private key file for [{descriptor.name}]: {exc}")
            log(f"Using SSH private key authentication for [{descriptor.name}]")
            return {"pkey": pkey}
        if descriptor.password:
            log(f"Using password authentication for [{descriptor.name}]")
            return {"password": descriptor.password}
        raise AuthenticationError(
            f"No valid authentication method provided for [{descriptor.name}] (password or private key)"
        )

    def _open_client(self, descriptor: ConnectionDescriptor) -> paramiko.SSHClient:
        auth_kwargs = self._auth_kwargs(descriptor)
        if descriptor.socks_proxy:
            log(f"Using SOCKS proxy for [{descriptor.name}]")
        sock = resolve_transport(descriptor, timeout=CONNECT_TIMEOUT)

        client = paramiko.SSHClient()
        if self.verify_host_key:
            client.load_system_host_keys()
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        connect_kwargs = {
            "hostname": descriptor.host,
            "port": descriptor.port,
            "username": descriptor.username,
            "sock": sock,
            "timeout": CONNECT_TIMEOUT,
            "banner_timeout": CONNECT_TIMEOUT,
            "auth_timeout": CONNECT_TIMEOUT,
            "allow_agent": False,
            "look_for_keys": False,
        }
        connect_kwargs.update(auth_kwargs)

        try:
            client.connect(**connect_kwargs)
        except paramiko.AuthenticationException as exc:
            _close_quietly(client)
            _close_quietly(sock)
            raise AuthenticationError(f"SSH connection [{descriptor.name}] failed: authentication rejected: {exc}")
        except (paramiko.SSHException, OSError, EOFError) as exc:
            _close_quietly(client)
            _close_quietly(sock)
            raise TransportError(f"SSH connection [{descriptor.name}] failed: {exc}")

        transport = client.get_transport()
        if transport:
            transport.set_keepalive(KEEPALIVE_INTERVAL)
        return client

    def _ensure_connected(self, key: str) -> paramiko.SSHClient:
        _, state = self._get_state(key)
        with self.lock:
            if state.connected and _client_is_active(state.client):
                return state.client
        self.connect(key)
        with self.lock:
            client = state.client
        if client is None:
            raise TransportError(f"SSH client for '{key}' not initialized")
        return client

    def _reconcile(self, key: str, client: paramiko.SSHClient) -> bool:
        """Mark ``key`` disconnected if ``client`` is its handle and has died."""
        if _client_is_active(client):
            return False
        with self.lock:
            state = self.states.get(key)
            if state is None or state.client is not client:
                return False
            state.client = None
            state.connected = False
        _close_quietly(client)
        log(f"SSH connection [{key}] closed")
        self._log_event(key, "closed", reason="transport inactive")
        return True

    def _ensure_health_thread(self) -> None:
        with self.lock:
            if self.health_thread is not None and self.health_thread.is_alive():
                return
            self.health_stop.clear()
            self.health_thread = threading.Thread(target=self._health_loop, name="ssh-health", daemon=True)
            self.health_thread.start()

    def _health_loop(self) -> None:
        while not self.health_stop.wait(self.health_check_interval):
            try:
                with self.lock:
                    live = [
                        (key, state.client)
                        for key, state in self.states.items()
                        if state.connected and state.client is not None
                    ]
                for key, client in live:
                    self._reconcile(key, client)
            except Exception as exc:
                log_error(f"health loop error: {exc}")

    # ========= Status collection =========
    def _start_status_collection(
        self,
        key: str,
        state: ConnectionState,
        client: paramiko.SSHClient,
        generation: int,
    ) -> None:
        thread = threading.Thread(
            target=self._collect_status,
            args=(key, state, client, generation),
            name=f"ssh-status-{safe_name(key)}",
            daemon=True,
        )
        with self.lock:
            self.status_threads[key] = thread
        thread.start()

    def _collect_status(
        self,
        key: str,
        state: ConnectionState,
        client: paramiko.SSHClient,
        generation: int,
    ) -> None:
        def run(command: str) -> str:
            return run_checked(client, command, STATUS_COMMAND_TIMEOUT)

        snapshot = collect_status(run)

        with self.lock:
            if self.states.get(key) is not state or state.generation != generation:
                return
            state.status = snapshot
        log(f"System status collected for [{key}]")
        self._log_event(key, "status_collected", reachable=snapshot.reachable)

    def wait_for_status(self, name: Optional[str] = None, timeout: Optional[float] = None) -> Optional[StatusSnapshot]:
        key, state = self._get_state(name)
        with self.lock:
            thread = self.status_threads.get(key)
        if thread is not None:
            thread.join(timeout)
        with self.lock:
            return state.status

    # ========= Operations =========
    def execute_command(
        self,
        command: str,
        name: Optional[str] = None,
        timeout: Optional[float] = DEFAULT_COMMAND_TIMEOUT,
    ) -> str:
        key, state = self._get_state(name)
        if not command or not command.strip():
            raise ValidationError(f"Command validation failed on [{key}]: command is required")
        verdict = state.policy.evaluate(command)
        if not verdict.allowed:
            raise ValidationError(f"Command validation failed on [{key}]: {verdict.reason}")

        client = self._ensure_connected(key)
        seconds = clamp_float(timeout or DEFAULT_COMMAND_TIMEOUT, DEFAULT_COMMAND_TIMEOUT, 0.1, MAX_COMMAND_TIMEOUT)
        try:
            result = run_on_client(client, command, seconds)
        except StreamError as exc:
            self._reconcile(key, client)
            self._log_event(key, "command_failed", command=command, error=str(exc))
            raise StreamError(f"Command execution failed on [{key}]: {exc}")

        if result.timed_out:
            log(f"Command on [{key}] timed out after {seconds:g}s; returning partial output")
        elif result.exit_status not in (0, None):
            log(f"Command on [{key}] exited with code {result.exit_status}")
        self._log_event(
            key,
            "command",
            command=command,
            exit_status=result.exit_status,
            timed_out=result.timed_out,
            duration=round(result.duration, 3),
        )
        return result.output

    def _open_sftp(self, key: str, client: paramiko.SSHClient) -> paramiko.SFTPClient:
        try:
            return client.open_sftp()
        except TRANSFER_ERRORS as exc:
            self._reconcile(key, client)
            raise TransferError(f"SFTP connection failed for [{key}]: {exc}")

    def upload(self, local_path: str, remote_path: str, name: Optional[str] = None) -> str:
        key, _ = self._get_state(name)
        validated = resolve_local_path(local_path)
        if not remote_path:
            raise TransferError(f"File upload to [{key}] failed: remote path is required")

        client = self._ensure_connected(key)
        sftp = self._open_sftp(key, client)
        try:
            copied = _transfer(
                open_source=lambda: open(validated, "rb"),
                open_target=lambda: sftp.open(remote_path, "wb"),
                read_failure=f"Failed to read local file for [{key}]",
                write_failure=f"File upload to [{key}] failed",
            )
        finally:
            _close_quietly(sftp)
        self._log_event(key, "upload", local_path=validated, remote_path=remote_path, bytes=copied)
        return "File uploaded successfully"

    def download(self, remote_path: str, local_path: str, name: Optional[str] = None) -> str:
        key, _ = self._get_state(name)
        validated = resolve_local_path(local_path)
        if not remote_path:
            raise TransferError(f"File download from [{key}] failed: remote path is required")

        client = self._ensure_connected(key)
        sftp = self._open_sftp(key, client)
        try:
            copied = _transfer(
                open_source=lambda: sftp.open(remote_path, "rb"),
                open_target=lambda: open(validated, "wb"),
                read_failure=f"File download from [{key}] failed",
                write_failure=f"Failed to save file for [{key}]",
            )
        finally:
            _close_quietly(sftp)
        self._log_event(key, "download", remote_path=remote_path, local_path=validated, bytes=copied)
        return "File downloaded successfully"

    def disconnect(self) -> None:
        with self.lock:
            live = []
            for key, state in self.states.items():
                if state.client is not None:
                    live.append((key, state.client))
                state.client = None
                state.connected = False
                state.epoch += 1
        for key, client in live:
            _close_quietly(client)
            log(f"SSH connection [{key}] closed")
            self._log_event(key, "closed", reason="disconnect")

    def shutdown(self) -> None:
        self.health_stop.set()
        self.disconnect()

    def describe_all(self) -> List[Dict[str, Any]]:
        with self.lock:
            rows = []
            for key, state in self.states.items():
                row = state.descriptor.public_info()
                row["name"] = key
                row["connected"] = state.connected
                if state.status is not None:
                    row["status"] = state.status.to_dict()
                rows.append(row)
            return rows
