import os
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from ssh_mcp.errors import ConfigurationError

# ========= Static config =========
CONNECT_TIMEOUT = 10
KEEPALIVE_INTERVAL = 30
BUFFER_SIZE = 32768
HEALTH_CHECK_INTERVAL = 30

DEFAULT_COMMAND_TIMEOUT = 30.0
MAX_COMMAND_TIMEOUT = 3600.0
STATUS_COMMAND_TIMEOUT = 15.0
STATUS_MAX_WORKERS = 8
POLL_INTERVAL = 0.02

DEFAULT_PORT = 22
DEFAULT_CONNECTION_NAME = "default"

SERVER_NAME = "ssh-mcp-server"
SERVER_VERSION = "1.0.0"


# ========= Connection descriptors =========
@dataclass(frozen=True)
class ConnectionDescriptor:
    name: str
    host: str
    port: int
    username: str
    password: Optional[str] = None
    private_key: Optional[str] = None
    passphrase: Optional[str] = None
    command_whitelist: Tuple[str, ...] = ()
    command_blacklist: Tuple[str, ...] = ()
    socks_proxy: Optional[str] = None

    def public_info(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "host": self.host,
            "port": self.port,
            "username": self.username,
        }


# Accepted spellings for connection file keys (camelCase and snake_case).
_KEY_ALIASES = {
    "name": ("name",),
    "host": ("host",),
    "port": ("port",),
    "username": ("username", "user"),
    "password": ("password",),
    "private_key": ("private_key", "privateKey", "key"),
    "passphrase": ("passphrase",),
    "command_whitelist": ("command_whitelist", "commandWhitelist", "whitelist"),
    "command_blacklist": ("command_blacklist", "commandBlacklist", "blacklist"),
    "socks_proxy": ("socks_proxy", "socksProxy"),
}


def split_patterns(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        raise ConfigurationError(f"pattern list must be a string or a list, got {type(value).__name__}")
    return tuple(item.strip() for item in items if item and item.strip())


def _pick(data: Dict[str, Any], field_name: str) -> Any:
    for alias in _KEY_ALIASES[field_name]:
        if alias in data and data[alias] not in (None, ""):
            return data[alias]
    return None


def descriptor_from_mapping(data: Dict[str, Any], fallback_name: str = DEFAULT_CONNECTION_NAME) -> ConnectionDescriptor:
    if not isinstance(data, dict):
        raise ConfigurationError("connection entry must be an object")

    name = str(_pick(data, "name") or fallback_name)
    host = _pick(data, "host")
    username = _pick(data, "username")
    if not host:
        raise ConfigurationError(f"connection [{name}] is missing host")
    if not username:
        raise ConfigurationError(f"connection [{name}] is missing username")

    raw_port = _pick(data, "port")
    try:
        port = int(raw_port) if raw_port is not None else DEFAULT_PORT
    except (TypeError, ValueError):
        raise ConfigurationError(f"connection [{name}] has invalid port: {raw_port!r}")
    if not 0 < port < 65536:
        raise ConfigurationError(f"connection [{name}] has out-of-range port: {port}")

    return ConnectionDescriptor(
        name=name,
        host=str(host),
        port=port,
        username=str(username),
        password=_pick(data, "password"),
        private_key=_pick(data, "private_key"),
        passphrase=_pick(data, "passphrase"),
        command_whitelist=split_patterns(_pick(data, "command_whitelist")),
        command_blacklist=split_patterns(_pick(data, "command_blacklist")),
        socks_proxy=_pick(data, "socks_proxy"),
    )


def load_connection_file(path: str) -> Tuple[List[ConnectionDescriptor], Optional[str]]:
    """Read a JSON connection file.

    Either a list of connection objects or an object of the form
    ``{"default": "<name>", "connections": [...]}``. Returns the descriptors
    and the designated default name, if any.
    """
    try:
        with open(path, "r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"failed to read connection file {path}: {exc}")

    default_name = None
    if isinstance(payload, dict):
        default_name = payload.get("default")
        entries = payload.get("connections", [])
    else:
        entries = payload
    if not isinstance(entries, list):
        raise ConfigurationError(f"connection file {path} must hold a list of connections")

    descriptors = [
        descriptor_from_mapping(entry, fallback_name=f"server{index + 1}")
        for index, entry in enumerate(entries)
    ]
    return descriptors, default_name


# ========= Runtime Configuration =========
class ServerConfig:
    def __init__(self):
        self.SSH_NAME: Optional[str] = None
        self.SSH_HOST: Optional[str] = None
        self.SSH_USER: Optional[str] = None
        self.SSH_PASSWORD: Optional[str] = None
        self.SSH_PORT: int = DEFAULT_PORT
        self.SSH_KEY_PATH: Optional[str] = None
        self.SSH_KEY_PASSPHRASE: Optional[str] = None
        self.SSH_WHITELIST: Tuple[str, ...] = ()
        self.SSH_BLACKLIST: Tuple[str, ...] = ()
        self.SSH_SOCKS_PROXY: Optional[str] = None
        self.SSH_VERIFY_HOST_KEY: bool = True
        self.CONFIG_FILE: Optional[str] = None
        self.DEFAULT_NAME: Optional[str] = None
        self.PRE_CONNECT: bool = False
        self.PROJECT_ROOT: str = ""
        self.PROJECT_TAG: str = ""
        self.CACHE_DIRS: Dict[str, str] = {}

    def load_from_env(self):
        self.SSH_NAME = os.environ.get("SSH_NAME", self.SSH_NAME)
        self.SSH_HOST = os.environ.get("SSH_HOST", self.SSH_HOST)
        self.SSH_USER = os.environ.get("SSH_USER", self.SSH_USER)
        self.SSH_PASSWORD = os.environ.get("SSH_PASSWORD", self.SSH_PASSWORD)
        self.SSH_PORT = int(os.environ.get("SSH_PORT", self.SSH_PORT))
        self.SSH_KEY_PATH = os.environ.get("SSH_KEY_PATH", self.SSH_KEY_PATH)
        self.SSH_KEY_PASSPHRASE = os.environ.get("SSH_KEY_PASSPHRASE", self.SSH_KEY_PASSPHRASE)
        self.SSH_SOCKS_PROXY = os.environ.get("SSH_SOCKS_PROXY", self.SSH_SOCKS_PROXY)
        self.CONFIG_FILE = os.environ.get("SSH_MCP_CONFIG", self.CONFIG_FILE)

        if "SSH_WHITELIST" in os.environ:
            self.SSH_WHITELIST = split_patterns(os.environ["SSH_WHITELIST"])
        if "SSH_BLACKLIST" in os.environ:
            self.SSH_BLACKLIST = split_patterns(os.environ["SSH_BLACKLIST"])

        verify_host_env = os.environ.get("SSH_VERIFY_HOST_KEY")
        if verify_host_env is not None:
            self.SSH_VERIFY_HOST_KEY = verify_host_env.lower() in ("true", "1", "yes")

    def single_connection(self) -> Optional[ConnectionDescriptor]:
        if not self.SSH_HOST:
            return None
        return descriptor_from_mapping(
            {
                "name": self.SSH_NAME,
                "host": self.SSH_HOST,
                "port": self.SSH_PORT,
                "username": self.SSH_USER,
                "password": self.SSH_PASSWORD,
                "private_key": self.SSH_KEY_PATH,
                "passphrase": self.SSH_KEY_PASSPHRASE,
                "command_whitelist": list(self.SSH_WHITELIST),
                "command_blacklist": list(self.SSH_BLACKLIST),
                "socks_proxy": self.SSH_SOCKS_PROXY,
            }
        )

    def build_descriptors(self) -> Tuple[List[ConnectionDescriptor], Optional[str]]:
        descriptors: List[ConnectionDescriptor] = []
        default_name = self.DEFAULT_NAME

        single = self.single_connection()
        if single is not None:
            descriptors.append(single)

        if self.CONFIG_FILE:
            from_file, file_default = load_connection_file(self.CONFIG_FILE)
            descriptors.extend(from_file)
            if default_name is None:
                default_name = file_default

        seen = set()
        for descriptor in descriptors:
            if descriptor.name in seen:
                raise ConfigurationError(f"duplicate connection name: {descriptor.name}")
            seen.add(descriptor.name)
        return descriptors, default_name


# Global instance
config = ServerConfig()
