import json
from typing import Any, Dict, Optional

from ssh_mcp.config import DEFAULT_COMMAND_TIMEOUT, SERVER_NAME, SERVER_VERSION
from ssh_mcp.errors import SSHMCPError
from ssh_mcp.ssh import SessionRegistry
from ssh_mcp.utils import log_error

PROTOCOL_VERSION = "2024-11-05"

CONNECTION_NAME_PARAM = {
    "type": "string",
    "description": "Optional connection name. If omitted, the default connection is used.",
}


def format_tool_result(text: str, is_error: bool = False) -> Dict[str, Any]:
    if not is_error:
        return {"content": [{"type": "text", "text": text}]}
    return {"content": [{"type": "text", "text": text}], "isError": True}


def make_response(req_id: Any, text: str, is_error: bool = False) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": format_tool_result(text, is_error)}


def make_error(req_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}}


def tools_list() -> Dict[str, Any]:
    tools = [
        {
            "name": "execute-command",
            "description": (
                "Execute a command on a remote server over SSH and return its combined "
                "stdout and stderr. Commands are checked against the connection's "
                "whitelist/blacklist first."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "cmdString": {"type": "string", "description": "Command to execute."},
                    "connectionName": CONNECTION_NAME_PARAM,
                    "timeout": {
                        "type": "number",
                        "description": (
                            "Optional timeout in milliseconds (default 30000). On timeout the "
                            "output collected so far is returned."
                        ),
                    },
                },
                "required": ["cmdString"],
            },
        },
        {
            "name": "upload",
            "description": "Upload a local file (inside the working directory) to the remote server.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "localPath": {"type": "string", "description": "Local file path."},
                    "remotePath": {"type": "string", "description": "Remote destination path."},
                    "connectionName": CONNECTION_NAME_PARAM,
                },
                "required": ["localPath", "remotePath"],
            },
        },
        {
            "name": "download",
            "description": "Download a remote file to a local path inside the working directory.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "remotePath": {"type": "string", "description": "Remote file path."},
                    "localPath": {"type": "string", "description": "Local destination path."},
                    "connectionName": CONNECTION_NAME_PARAM,
                },
                "required": ["remotePath", "localPath"],
            },
        },
        {
            "name": "list-servers",
            "description": "List all configured SSH servers with connection state and cached host status.",
            "inputSchema": {"type": "object", "properties": {}},
        },
    ]
    return {"jsonrpc": "2.0", "id": 1, "result": {"tools": tools}}


def timeout_seconds(value: Any) -> float:
    if value is None or value == "":
        return DEFAULT_COMMAND_TIMEOUT
    try:
        millis = float(value)
    except (TypeError, ValueError):
        return DEFAULT_COMMAND_TIMEOUT
    if millis <= 0:
        return DEFAULT_COMMAND_TIMEOUT
    return millis / 1000.0


def execute_dispatch(args: Dict[str, Any], registry: SessionRegistry) -> str:
    return registry.execute_command(
        str(args.get("cmdString", "") or ""),
        name=args.get("connectionName") or None,
        timeout=timeout_seconds(args.get("timeout")),
    )


def upload_dispatch(args: Dict[str, Any], registry: SessionRegistry) -> str:
    return registry.upload(
        str(args.get("localPath", "") or ""),
        str(args.get("remotePath", "") or ""),
        name=args.get("connectionName") or None,
    )


def download_dispatch(args: Dict[str, Any], registry: SessionRegistry) -> str:
    return registry.download(
        str(args.get("remotePath", "") or ""),
        str(args.get("localPath", "") or ""),
        name=args.get("connectionName") or None,
    )


def list_servers_dispatch(args: Dict[str, Any], registry: SessionRegistry) -> str:
    return json.dumps(registry.describe_all(), ensure_ascii=False)


TOOL_DISPATCH = {
    "execute-command": execute_dispatch,
    "upload": upload_dispatch,
    "download": download_dispatch,
    "list-servers": list_servers_dispatch,
}


def handle_request(request: Dict[str, Any], registry: SessionRegistry) -> Optional[Dict[str, Any]]:
    method = request.get("method")
    params = request.get("params", {}) or {}
    req_id = request.get("id", 1)

    if method == "initialize":
        return {
            "jsonrpc": "2.0", "id": req_id,
            "result": {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            },
        }

    if method == "notifications/initialized": return None
    if method == "tools/list":
        response = tools_list()
        response["id"] = req_id
        return response

    if method == "tools/call":
        tool_name = params.get("name")
        args = params.get("arguments", {}) or {}
        dispatch = TOOL_DISPATCH.get(tool_name)
        if dispatch is None:
            return make_error(req_id, -32601, f"Unknown tool: {tool_name}")
        try:
            return make_response(req_id, dispatch(args, registry))
        except SSHMCPError as exc:
            log_error(f"{tool_name} failed: {exc}")
            error = json.dumps({"success": False, "error": str(exc)}, ensure_ascii=False)
            return make_response(req_id, error, is_error=True)
        except Exception as exc:
            log_error(f"tool execution error ({tool_name}): {exc}")
            error = json.dumps({"success": False, "error": f"Internal error: {exc}"}, ensure_ascii=False)
            return make_response(req_id, error, is_error=True)

    return make_error(req_id, -32601, f"Unknown method: {method}")
