import sys
import io
import json
import argparse
import threading
from typing import List, Optional

from ssh_mcp.config import config, split_patterns
from ssh_mcp.errors import ConfigurationError
from ssh_mcp.utils import log, log_error, resolve_runtime_paths, make_cache_dirs
from ssh_mcp.server import handle_request
from ssh_mcp.ssh import SessionRegistry

UNSAFE_DEFAULT_WARNING = (
    "WARNING: Running without a command whitelist is strongly discouraged. "
    "Please configure a whitelist to restrict the commands that can be executed."
)


def _write_response(stdout, response: dict) -> None:
    try:
        stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
        stdout.flush()
    except Exception as exc:
        log_error(f"response write error: {exc}")
        # Fallback: escape all non-ASCII to guarantee safe output
        try:
            stdout.write(json.dumps(response, ensure_ascii=True) + "\n")
            stdout.flush()
        except Exception as exc2:
            log_error(f"response write fallback error: {exc2}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="SSH MCP Server (named persistent sessions, command whitelist/blacklist, file transfer)"
    )
    parser.add_argument("--name", help="Connection name for the --host connection (overrides SSH_NAME env)")
    parser.add_argument("--host", help="SSH host (overrides SSH_HOST env)")
    parser.add_argument("--port", type=int, help="SSH port (overrides SSH_PORT env)")
    parser.add_argument("--user", "--username", dest="user", help="SSH username (overrides SSH_USER env)")
    parser.add_argument("--password", help="SSH password (overrides SSH_PASSWORD env)")
    parser.add_argument("--key", "--private-key", dest="key", help="Path to SSH private key (overrides SSH_KEY_PATH env)")
    parser.add_argument("--passphrase", help="Passphrase for SSH private key (overrides SSH_KEY_PASSPHRASE env)")
    parser.add_argument("--whitelist", help="Comma separated command whitelist regexes (overrides SSH_WHITELIST env)")
    parser.add_argument("--blacklist", help="Comma separated command blacklist regexes (overrides SSH_BLACKLIST env)")
    parser.add_argument("--socks-proxy", help="SOCKS proxy URL socks://[user:pass@]host:port (overrides SSH_SOCKS_PROXY env)")
    parser.add_argument("--config", help="JSON file with additional connections (overrides SSH_MCP_CONFIG env)")
    parser.add_argument("--default", help="Name of the default connection")
    parser.add_argument("--pre-connect", action="store_true", help="Connect to every configured server at startup")
    parser.add_argument("--no-verify-host", action="store_true", help="Disable SSH host key verification")
    parser.add_argument("--project-root", help="Project root for local state")
    parser.add_argument("--cache-dir", help="Optional cache root override")
    return parser


def apply_args(args: argparse.Namespace) -> None:
    # Apply args over env vars
    if args.name: config.SSH_NAME = args.name
    if args.host: config.SSH_HOST = args.host
    if args.port: config.SSH_PORT = args.port
    if args.user: config.SSH_USER = args.user
    if args.password: config.SSH_PASSWORD = args.password
    if args.key: config.SSH_KEY_PATH = args.key
    if args.passphrase: config.SSH_KEY_PASSPHRASE = args.passphrase
    if args.whitelist is not None: config.SSH_WHITELIST = split_patterns(args.whitelist)
    if args.blacklist is not None: config.SSH_BLACKLIST = split_patterns(args.blacklist)
    if args.socks_proxy: config.SSH_SOCKS_PROXY = args.socks_proxy
    if args.config: config.CONFIG_FILE = args.config
    if args.default: config.DEFAULT_NAME = args.default
    if args.pre_connect: config.PRE_CONNECT = True
    if args.no_verify_host: config.SSH_VERIFY_HOST_KEY = False


def main(argv: Optional[List[str]] = None) -> None:
    # Pre-load from environment
    config.load_from_env()

    parser = build_parser()
    args = parser.parse_args(argv)
    apply_args(args)

    if config.SSH_HOST and not config.SSH_USER:
        parser.error("SSH user is required for --host (via --user or SSH_USER env)")
    try:
        descriptors, default_name = config.build_descriptors()
    except ConfigurationError as exc:
        parser.error(str(exc))
    if not descriptors:
        parser.error("No SSH connection configured (use --host/--user or --config)")
    for descriptor in descriptors:
        if not descriptor.password and not descriptor.private_key:
            parser.error(f"Either password or key must be provided for connection [{descriptor.name}]")

    runtime_paths = resolve_runtime_paths(project_root_arg=args.project_root, cache_dir_arg=args.cache_dir)
    config.PROJECT_ROOT = runtime_paths["project_root"]
    config.PROJECT_TAG = runtime_paths["project_tag"]
    config.CACHE_DIRS = make_cache_dirs(runtime_paths["cache_root"])

    try:
        registry = SessionRegistry(
            descriptors,
            default_name=default_name,
            verify_host_key=config.SSH_VERIFY_HOST_KEY,
            cache_dirs=config.CACHE_DIRS,
        )
    except ConfigurationError as exc:
        parser.error(str(exc))

    if any(not descriptor.command_whitelist for descriptor in descriptors):
        log(UNSAFE_DEFAULT_WARNING)

    log(
        f"SSH MCP started with connections {', '.join(registry.names())} "
        f"(default={registry.default_name}). cache={config.CACHE_DIRS['cache_root']} "
        f"verify_host={config.SSH_VERIFY_HOST_KEY}"
    )

    if config.PRE_CONNECT:
        log("Pre-connecting to all configured SSH servers...")
        failures = registry.connect_all()
        if failures:
            log_error(f"Warning: Some SSH connections failed during pre-connect: {', '.join(failures)}")
        else:
            log("Successfully pre-connected to all SSH servers")

    # Force UTF-8 I/O to avoid charmap encoding errors on Windows
    stdin = io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
    stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", line_buffering=True)

    try:
        serve(stdin, stdout, registry)
    finally:
        log("shutting down...")
        registry.shutdown()


def serve(stdin, stdout, registry: SessionRegistry) -> None:
    write_lock = threading.Lock()
    workers: List[threading.Thread] = []

    def respond(request: dict) -> None:
        try:
            response = handle_request(request, registry)
        except Exception as exc:
            log_error(f"unexpected error: {exc}")
            # Attempt to send an error response back so the client doesn't hang
            response = {
                "jsonrpc": "2.0",
                "id": request.get("id"),
                "error": {"code": -32603, "message": f"Internal error: {exc}"},
            }
        if response is not None:
            with write_lock:
                _write_response(stdout, response)

    for line in stdin:
        line = line.strip()
        if not line:
            continue
        try:
            request = json.loads(line)
        except json.JSONDecodeError as exc:
            log_error(f"invalid json: {exc}")
            continue
        if not isinstance(request, dict):
            log_error("invalid request: expected a JSON object")
            continue
        if request.get("method") != "tools/call":
            respond(request)
            continue
        # Tool calls can block for a whole command timeout.
        workers = [worker for worker in workers if worker.is_alive()]
        worker = threading.Thread(target=respond, args=(request,), name="mcp-tool-call", daemon=True)
        workers.append(worker)
        worker.start()

    for worker in workers:
        worker.join()


if __name__ == "__main__":
    main()
