import sys
import json
from typing import Any, BinaryIO, Callable, Dict, Iterable, List, Optional

from thop import __version__
from thop.config import MCP_PROTOCOL_VERSION, MCP_SERVER_NAME, Config
from thop.errors import (
    ErrorCode, ThopError, invalid_parameter, missing_parameter, no_active_session, not_implemented,
    session_not_found,
)
from thop.utils import Logger, to_bool

PARSE_ERROR = -32700
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603

JSON_MIME = "application/json"


def text_content(text: str, mime_type: Optional[str] = None) -> Dict[str, Any]:
    block = {"type": "text", "text": text}
    if mime_type:
        block["mimeType"] = mime_type
    return block


def tool_result(content: List[Dict[str, Any]], is_error: bool = False) -> Dict[str, Any]:
    return {"content": content, "isError": is_error}


def tools_list() -> Dict[str, Any]:
    session_param = {"type": "string", "description": "Name of the session"}
    tools = [
        {
            "name": "connect",
            "description": "Connect to an SSH session",
            "inputSchema": {
                "type": "object",
                "properties": {"session": {**session_param, "description": "Name of the session to connect to"}},
                "required": ["session"],
            },
        },
        {
            "name": "switch",
            "description": "Switch to a different session",
            "inputSchema": {
                "type": "object",
                "properties": {"session": {**session_param, "description": "Name of the session to switch to"}},
                "required": ["session"],
            },
        },
        {
            "name": "close",
            "description": "Close an SSH session",
            "inputSchema": {
                "type": "object",
                "properties": {"session": {**session_param, "description": "Name of the session to close"}},
                "required": ["session"],
            },
        },
        {
            "name": "status",
            "description": "Get status of all sessions",
            "inputSchema": {"type": "object", "properties": {}},
        },
        {
            "name": "execute",
            "description": "Execute a command in the active session (optionally in background)",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "command": {"type": "string", "description": "Command to execute"},
                    "session": {
                        "type": "string",
                        "description": "Optional: specific session to execute in (uses active session if not specified)",
                    },
                    "timeout": {
                        "type": "integer",
                        "description": "Optional: command timeout in seconds (ignored if background is true)",
                        "default": 300,
                    },
                    "background": {
                        "type": "boolean",
                        "description": "Optional: run command in background (default: false)",
                        "default": False,
                    },
                },
                "required": ["command"],
            },
        },
    ]
    return {"tools": tools}


def resources_list() -> Dict[str, Any]:
    resources = [
        {
            "uri": "session://active",
            "name": "Active Session",
            "description": "Information about the currently active session",
            "mimeType": JSON_MIME,
        },
        {
            "uri": "session://all",
            "name": "All Sessions",
            "description": "Information about all configured sessions",
            "mimeType": JSON_MIME,
        },
        {
            "uri": "config://thop",
            "name": "Thop Configuration",
            "description": "Current thop configuration",
            "mimeType": JSON_MIME,
        },
        {
            "uri": "state://thop",
            "name": "Thop State",
            "description": "Current thop state including session states",
            "mimeType": JSON_MIME,
        },
    ]
    return {"resources": resources}


def _require_str(args: Dict[str, Any], name: str) -> str:
    value = args.get(name)
    if value is None:
        raise missing_parameter(name)
    if not isinstance(value, str):
        raise invalid_parameter(f"Parameter '{name}' must be a string")
    return value


class MCPServer:
    def __init__(self, config: Config, manager, state=None, logger: Optional[Logger] = None,
                 output: Optional[BinaryIO] = None):
        self.config = config
        self.manager = manager
        self.state = state
        self.logger = logger or Logger.quiet()
        self.output = output if output is not None else sys.stdout.buffer
        self.handlers: Dict[str, Callable[[Any], Optional[Dict[str, Any]]]] = {
            "initialize": self.handle_initialize,
            "initialized": self.handle_initialized,
            "notifications/initialized": self.handle_initialized,
            "tools/list": self.handle_tools_list,
            "tools/call": self.handle_tool_call,
            "resources/list": self.handle_resources_list,
            "resources/read": self.handle_resource_read,
            "ping": self.handle_ping,
            "cancelled": self.handle_cancelled,
            "notifications/cancelled": self.handle_cancelled,
            "progress": self.handle_progress,
            "notifications/progress": self.handle_progress,
        }

    # ========= Wire =========
    def run(self, lines: Optional[Iterable[str]] = None) -> None:
        self.logger.info("starting MCP server")
        if lines is None:
            lines = sys.stdin
        for line in lines:
            line = line.strip()
            if not line:
                continue
            self.handle_line(line)
        self.logger.info("MCP server input closed, shutting down")

    def _write(self, payload: Dict[str, Any]) -> None:
        data = (json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8")
        try:
            self.output.write(data)
            self.output.flush()
        except (OSError, ValueError) as exc:
            self.logger.error(f"response write error: {exc}")

    def send_response(self, req_id: Any, result: Dict[str, Any]) -> None:
        self._write({"jsonrpc": "2.0", "id": req_id, "result": result})

    def send_error(self, req_id: Any, code: int, message: str, data: Optional[str] = None) -> None:
        error: Dict[str, Any] = {"code": code, "message": message}
        if data is not None:
            error["data"] = data
        self._write({"jsonrpc": "2.0", "id": req_id, "error": error})

    def handle_line(self, line: str) -> None:
        try:
            message = json.loads(line)
        except json.JSONDecodeError as exc:
            self.logger.error(f"invalid json: {exc}")
            self.send_error(None, PARSE_ERROR, "Parse error", str(exc))
            return
        if not isinstance(message, dict) or "method" not in message:
            self.logger.debug("ignoring message without method")
            return
        self.handle_message(message)

    def handle_message(self, message: Dict[str, Any]) -> None:
        method = message.get("method")
        params = message.get("params")
        has_id = "id" in message
        req_id = message.get("id")

        handler = self.handlers.get(method)
        if handler is None:
            self.logger.debug(f"unknown method: {method}")
            if has_id:
                self.send_error(req_id, METHOD_NOT_FOUND, "Method not found", f"Unknown method: {method}")
            return

        try:
            result = handler(params)
        except ThopError as exc:
            self.logger.warn(f"{method} failed: {exc.code.value}: {exc}")
            result = exc.to_tool_result()
        except Exception as exc:
            self.logger.error(f"error handling {method}: {exc}")
            if has_id:
                self.send_error(req_id, INTERNAL_ERROR, "Internal error", str(exc))
            return

        if result is not None and has_id:
            self.send_response(req_id, result)

    # ========= Lifecycle =========
    def handle_initialize(self, params: Any) -> Dict[str, Any]:
        params = params if isinstance(params, dict) else {}
        client = params.get("clientInfo") or {}
        self.logger.info(
            f"MCP client connected: {client.get('name', 'unknown')} v{client.get('version', '?')} "
            f"(protocol {params.get('protocolVersion', '?')})"
        )
        return {
            "protocolVersion": MCP_PROTOCOL_VERSION,
            "capabilities": {
                "tools": {"listChanged": False},
                "resources": {"subscribe": False, "listChanged": False},
                "logging": {},
            },
            "serverInfo": {"name": MCP_SERVER_NAME, "version": __version__},
        }

    def handle_initialized(self, params: Any) -> None:
        self.logger.debug("MCP client initialized")
        return None

    def handle_ping(self, params: Any) -> Dict[str, Any]:
        return {"pong": True}

    def handle_cancelled(self, params: Any) -> None:
        self.logger.debug(f"received cancellation notification: {params}")
        return None

    def handle_progress(self, params: Any) -> None:
        if isinstance(params, dict):
            self.logger.debug(
                f"progress update: token={params.get('progressToken')} "
                f"progress={params.get('progress')}/{params.get('total', 0)}"
            )
        return None

    # ========= Tools =========
    def handle_tools_list(self, params: Any) -> Dict[str, Any]:
        return tools_list()

    def handle_tool_call(self, params: Any) -> Dict[str, Any]:
        if not isinstance(params, dict):
            raise missing_parameter("params")
        tool_name = params.get("name")
        if not tool_name:
            raise missing_parameter("name")
        args = params.get("arguments") or {}
        if not isinstance(args, dict):
            raise invalid_parameter("Tool arguments must be an object")

        self.logger.debug(f"tool call: {tool_name}")
        try:
            if tool_name == "connect":
                return self.tool_connect(args)
            elif tool_name == "switch":
                return self.tool_switch(args)
            elif tool_name == "close":
                return self.tool_close(args)
            elif tool_name == "status":
                return self.tool_status(args)
            elif tool_name == "execute":
                return self.tool_execute(args)
            raise invalid_parameter(f"Unknown tool: {tool_name}")
        except ThopError:
            raise
        except Exception as exc:
            self.logger.error(f"tool execution error ({tool_name}): {exc}")
            return ThopError(ErrorCode.OPERATION_FAILED, f"{tool_name} failed: {exc}").to_tool_result()

    def tool_connect(self, args: Dict[str, Any]) -> Dict[str, Any]:
        session = _require_str(args, "session")
        self.manager.connect(session)
        return tool_result([text_content(f"Successfully connected to session '{session}'")])

    def tool_switch(self, args: Dict[str, Any]) -> Dict[str, Any]:
        session = _require_str(args, "session")
        switched = self.manager.switch(session)
        return tool_result([text_content(f"Switched to session '{session}' (cwd: {switched.get_cwd() or 'unknown'})")])

    def tool_close(self, args: Dict[str, Any]) -> Dict[str, Any]:
        session = _require_str(args, "session")
        self.manager.disconnect(session)
        return tool_result([text_content(f"Session '{session}' closed")])

    def tool_status(self, args: Dict[str, Any]) -> Dict[str, Any]:
        sessions = self.manager.list_sessions()
        return tool_result([text_content(json.dumps(sessions, indent=2), JSON_MIME)])

    def tool_execute(self, args: Dict[str, Any]) -> Dict[str, Any]:
        command = _require_str(args, "command")
        session_name = args.get("session")
        if session_name is not None and not isinstance(session_name, str):
            raise invalid_parameter("Parameter 'session' must be a string")
        # Informational only; commands are not interrupted.
        timeout = args.get("timeout", self.config.settings.command_timeout)

        if to_bool(args.get("background"), False):
            raise not_implemented("Background execution")

        target = session_name or self.manager.get_active_session_name()
        if session_name and not self.manager.has_session(session_name):
            raise session_not_found(session_name)

        self.logger.debug(f"execute on '{target}' (timeout {timeout}s): {command}")
        try:
            result = self.manager.execute_on(target, command)
        except ThopError as exc:
            if not exc.session:
                exc.session = target
            raise

        content = []
        if result.stdout:
            content.append(text_content(result.stdout))
        if result.stderr:
            content.append(text_content(f"stderr:\n{result.stderr}"))
        if result.exit_code != 0:
            content.append(text_content(f"Exit code: {result.exit_code}"))
        if not content:
            content.append(text_content("Command executed successfully (no output)"))
        return tool_result(content, is_error=result.exit_code != 0)

    # ========= Resources =========
    def handle_resources_list(self, params: Any) -> Dict[str, Any]:
        return resources_list()

    def handle_resource_read(self, params: Any) -> Dict[str, Any]:
        if not isinstance(params, dict):
            raise missing_parameter("params")
        uri = params.get("uri")
        if not uri:
            raise missing_parameter("uri")

        if uri == "session://active":
            data = self._active_session_resource()
        elif uri == "session://all":
            data = self.manager.list_sessions()
        elif uri == "config://thop":
            data = self.config.to_dict()
        elif uri == "state://thop":
            data = self._state_resource()
        else:
            raise invalid_parameter(f"Unknown resource URI: {uri}")

        return {"contents": [{"uri": uri, "mimeType": JSON_MIME, "text": json.dumps(data, indent=2)}]}

    def _active_session_resource(self) -> Dict[str, Any]:
        session = self.manager.get_session(self.manager.get_active_session_name())
        if session is None:
            raise no_active_session()
        return session.info()

    def _state_resource(self) -> Dict[str, Any]:
        if self.state is None:
            return {"active_session": self.manager.get_active_session_name(), "sessions": {}}
        snapshot = self.state.snapshot()
        return {"active_session": snapshot["active_session"], "sessions": snapshot["sessions"]}
