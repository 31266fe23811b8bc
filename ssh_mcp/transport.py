import socket
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote, urlparse

import socks

from ssh_mcp.config import CONNECT_TIMEOUT, ConnectionDescriptor
from ssh_mcp.errors import TransportError

SOCKS_SCHEMES = ("socks", "socks5", "socks5h")


@dataclass(frozen=True)
class SocksProxy:
    host: str
    port: int
    username: Optional[str] = None
    password: Optional[str] = None


def parse_socks_url(url: str) -> SocksProxy:
    """Parse ``socks://[user:pass@]host:port`` into its parts."""
    try:
        parsed = urlparse(url.strip())
        port = parsed.port
    except (AttributeError, ValueError) as exc:
        raise TransportError(f"Invalid SOCKS proxy URL {url!r}: {exc}")

    if parsed.scheme.lower() not in SOCKS_SCHEMES:
        raise TransportError(f"Invalid SOCKS proxy URL {url!r}: unsupported scheme '{parsed.scheme}'")
    if not parsed.hostname:
        raise TransportError(f"Invalid SOCKS proxy URL {url!r}: missing host")
    if port is None:
        raise TransportError(f"Invalid SOCKS proxy URL {url!r}: missing port")

    return SocksProxy(
        host=parsed.hostname,
        port=port,
        username=unquote(parsed.username) if parsed.username else None,
        password=unquote(parsed.password) if parsed.password else None,
    )


def resolve_transport(descriptor: ConnectionDescriptor, timeout: float = CONNECT_TIMEOUT) -> socket.socket:
    """Return a connected socket to the descriptor's host, tunnelled if needed."""
    target = (descriptor.host, descriptor.port)
    if not descriptor.socks_proxy:
        try:
            return socket.create_connection(target, timeout=timeout)
        except OSError as exc:
            raise TransportError(
                f"SSH connection [{descriptor.name}] failed: cannot reach "
                f"{descriptor.host}:{descriptor.port}: {exc}"
            )

    proxy = parse_socks_url(descriptor.socks_proxy)
    try:
        return socks.create_connection(
            target,
            timeout=timeout,
            proxy_type=socks.SOCKS5,
            proxy_addr=proxy.host,
            proxy_port=proxy.port,
            proxy_rdns=True,
            proxy_username=proxy.username,
            proxy_password=proxy.password,
        )
    except OSError as exc:
        raise TransportError(
            f"Failed to create SOCKS proxy connection for [{descriptor.name}] "
            f"via {proxy.host}:{proxy.port}: {exc}"
        )
