import json
from typing import Any, Dict, Optional

from shellpilot.config import (
    DEFAULT_COMMAND_TIMEOUT, DEFAULT_HISTORY_ROWS, MAX_COMMAND_TIMEOUT,
    MAX_HISTORY_ROWS, MAX_RESULT_OUTPUT_CHARS,
)
from shellpilot.coordinator import STATE_ABORTED, STATE_BLOCKED, STATE_FAILED
from shellpilot.errors import InvalidRequest, NotFound, ShellPilotError
from shellpilot.keys import deploy_public_key
from shellpilot.models import ExecutionRequest, STATUS_ERROR, STATUS_UNKNOWN
from shellpilot.utils import apply_text_filters, clamp_float, clamp_int, clean_output, log_error, to_bool

SERVER_NAME = "shellpilot"
SERVER_VERSION = "0.1.0"
OUTPUT_NOTIFICATION = "notifications/shellpilot/output"


def format_tool_result(result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    text = json.dumps(result, ensure_ascii=False, separators=(",", ":"), default=str)
    if not is_error:
        return {"content": [{"type": "text", "text": text}]}
    return {"content": [{"type": "text", "text": text}], "isError": True}


def make_response(req_id: Any, result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": format_tool_result(result, is_error)}


def error_result(exc: ShellPilotError) -> Dict[str, Any]:
    result = {"success": False}
    result.update(exc.to_dict())
    return result


def output_notification(event) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "method": OUTPUT_NOTIFICATION, "params": event.to_dict()}


def _truncate(text: str, limit: int = MAX_RESULT_OUTPUT_CHARS) -> Dict[str, Any]:
    text = text or ""
    if len(text) <= limit:
        return {"output": text}
    return {"output": text[-limit:], "truncated": True, "total_chars": len(text)}


def tools_list() -> Dict[str, Any]:
    connection_id_param = {
        "type": "string",
        "description": "Optional connection id. If omitted, the active connection is used.",
    }
    filter_props = {
        "contains": {"type": "string", "description": "Filter: only show output lines containing this string."},
        "regex": {"type": "string", "description": "Filter: only show output lines matching this regex."},
        "tail_lines": {"type": "number", "description": "Filter: only show the last N output lines."},
    }
    tools = [
        {
            "name": "connection_list",
            "description": "List saved connections with their session state (absent|connecting|ready|failed|closed).",
            "inputSchema": {"type": "object", "properties": {}},
        },
        {
            "name": "connection_create",
            "description": "Save a new connection target. No network traffic happens until connect/run.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "name": {"type": "string", "description": "Display name."},
                    "host": {"type": "string", "description": "Hostname or IP."},
                    "username": {"type": "string", "description": "Login user."},
                    "port": {"type": "number", "description": "SSH port. Default 22."},
                },
                "required": ["host", "username"],
            },
        },
        {
            "name": "connection_delete",
            "description": "Disconnect (if needed) and delete a saved connection.",
            "inputSchema": {
                "type": "object",
                "properties": {"connection_id": {"type": "string"}},
                "required": ["connection_id"],
            },
        },
        {
            "name": "connection_test",
            "description": "Open and immediately close a throwaway SSH session to check reachability and credentials.",
            "inputSchema": {"type": "object", "properties": {"connection_id": connection_id_param}},
        },
        {
            "name": "connect",
            "description": "Open (or reuse) the session for a connection and mark it active.",
            "inputSchema": {
                "type": "object",
                "properties": {"connection_id": {"type": "string"}},
                "required": ["connection_id"],
            },
        },
        {
            "name": "disconnect",
            "description": "Tear down the session for a connection. In-flight commands end as aborted.",
            "inputSchema": {"type": "object", "properties": {"connection_id": connection_id_param}},
        },
        {
            "name": "session_list",
            "description": "List live SSH sessions with state, busy flag and queue depth.",
            "inputSchema": {"type": "object", "properties": {}},
        },
        {
            "name": "key_list",
            "description": "List stored public keys (type + SHA256 fingerprint).",
            "inputSchema": {"type": "object", "properties": {}},
        },
        {
            "name": "key_add",
            "description": "Store an OpenSSH public key line.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "public_key": {"type": "string", "description": "e.g. 'ssh-ed25519 AAAA... user@host'."},
                },
                "required": ["name", "public_key"],
            },
        },
        {
            "name": "key_delete",
            "description": "Deactivate a stored public key.",
            "inputSchema": {
                "type": "object",
                "properties": {"key_id": {"type": "string"}},
                "required": ["key_id"],
            },
        },
        {
            "name": "key_deploy",
            "description": (
                "Append a stored public key to ~/.ssh/authorized_keys on the target using password auth. "
                "The password is used once and never stored."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "connection_id": connection_id_param,
                    "key_id": {"type": "string"},
                    "password": {"type": "string"},
                },
                "required": ["key_id", "password"],
            },
        },
        {
            "name": "generate",
            "description": (
                "Translate a plain-English request into a shell command via the configured model. "
                "Stores a pending history row; execute it with run(command_id=...)."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "connection_id": connection_id_param,
                    "text": {"type": "string", "description": "What you want done."},
                    "system_info": {"type": "string", "description": "Optional OS/distro context."},
                },
                "required": ["text"],
            },
        },
        {
            "name": "quick_action",
            "description": "Built-in read-only command templates: system-info, disk-usage, processes, network.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "action": {"type": "string"},
                    "connection_id": connection_id_param,
                    "execute": {"type": "boolean", "description": "Run it immediately. Default false."},
                },
                "required": ["action"],
            },
        },
        {
            "name": "workflow_list",
            "description": (
                "Categorised command workflows (Docker, monitoring, network). Each command lists its <NAME> "
                "placeholders with description, example and validation pattern."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {"category_id": {"type": "string", "description": "Only this category."}},
            },
        },
        {
            "name": "workflow_run",
            "description": (
                "Fill a workflow command's placeholders (values are validated and shell-quoted), store it as a "
                "history row and optionally run it. Commands flagged requires_confirmation only run with confirm=true."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "category_id": {"type": "string"},
                    "section_id": {"type": "string"},
                    "command_id": {"type": "string"},
                    "inputs": {"type": "object", "description": "Placeholder values, e.g. {\"USER\": \"ubuntu\"}."},
                    "connection_id": connection_id_param,
                    "execute": {"type": "boolean", "description": "Run it immediately. Default false."},
                    "confirm": {"type": "boolean", "description": "Confirm a high-risk command. Default false."},
                    **filter_props,
                },
                "required": ["category_id", "section_id", "command_id"],
            },
        },
        {
            "name": "workflow_detect",
            "description": "Run a select input's auto-detect command on the target and return the values found.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "category_id": {"type": "string"},
                    "section_id": {"type": "string"},
                    "command_id": {"type": "string"},
                    "input": {"type": "string", "description": "Placeholder name, e.g. CONTAINER_NAME."},
                    "connection_id": connection_id_param,
                },
                "required": ["category_id", "section_id", "command_id", "input"],
            },
        },
        {
            "name": "command_create",
            "description": "Store a literal command as a pending history row without running it.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "connection_id": connection_id_param,
                    "command": {"type": "string"},
                    "plain_text": {"type": "string"},
                    "risk_level": {"type": "string", "enum": ["low", "medium", "high"]},
                },
                "required": ["command"],
            },
        },
        {
            "name": "run",
            "description": (
                "Execute a command on the target and wait for it. Output is stdout and stderr merged in arrival order. "
                "States: completed, blocked (duplicate action detected; re-run with check_conflicts=false), "
                "failed, aborted (session lost or timeout). Exit status unknown is reported as status='unknown'."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "command": {"type": "string", "description": "Shell command. Optional when command_id is given."},
                    "command_id": {"type": "string", "description": "Run a stored history row."},
                    "connection_id": connection_id_param,
                    "check_conflicts": {"type": "boolean", "description": "Probe for duplicate actions first. Default true."},
                    "timeout": {"type": "number", "description": "Seconds before the session is torn down. 0 disables."},
                    "raw": {"type": "boolean", "description": "Keep ANSI escapes and carriage returns. Default false."},
                    **filter_props,
                },
            },
        },
        {
            "name": "check",
            "description": "Run only the duplicate-action probes for a command, without executing it.",
            "inputSchema": {
                "type": "object",
                "properties": {"command": {"type": "string"}, "connection_id": connection_id_param},
                "required": ["command"],
            },
        },
        {
            "name": "history",
            "description": "Command history for a connection, newest first.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "connection_id": connection_id_param,
                    "limit": {"type": "number", "description": "Max rows."},
                    "include_output": {"type": "boolean", "description": "Include stored output. Default false."},
                },
            },
        },
        {
            "name": "history_clear",
            "description": "Delete the command history of a connection.",
            "inputSchema": {"type": "object", "properties": {"connection_id": connection_id_param}},
        },
        {
            "name": "analyze_error",
            "description": "Ask the configured model to explain a failed command from history.",
            "inputSchema": {
                "type": "object",
                "properties": {"command_id": {"type": "string"}},
                "required": ["command_id"],
            },
        },
    ]
    return {"jsonrpc": "2.0", "id": 1, "result": {"tools": tools}}


def _connection_id(args: Dict[str, Any], app, required: bool = True) -> Optional[str]:
    connection_id = args.get("connection_id")
    if connection_id:
        return str(connection_id)
    active = app.store.active_connection()
    if active is not None:
        return active.id
    if required:
        raise InvalidRequest(
            "connection_id is required",
            hint="No connection is active; pass connection_id or call connect first.",
        )
    return None


def connection_list_dispatch(args: Dict[str, Any], app) -> Dict[str, Any]:
    rows = []
    for connection in app.store.list_connections():
        row = connection.to_dict()
        row["state"] = app.sessions.state(connection.id)
        rows.append(row)
    return {"success": True, "connections": rows}


def connection_create_dispatch(args: Dict[str, Any], app) -> Dict[str, Any]:
    connection = app.store.create_connection(
        name=str(args.get("name") or ""),
        host=str(args.get("host") or ""),
        username=str(args.get("username") or ""),
        port=clamp_int(args.get("port"), 22, 1, 65535),
    )
    return {"success": True, "connection": connection.to_dict()}


def connection_delete_dispatch(args: Dict[str, Any], app) -> Dict[str, Any]:
    connection_id = str(args.get("connection_id") or "")
    app.store.require_connection(connection_id)
    app.coordinator.disconnect(connection_id)
    app.store.delete_connection(connection_id)
    return {"success": True, "message": f"connection {connection_id} deleted"}


def connection_test_dispatch(args: Dict[str, Any], app) -> Dict[str, Any]:
    connection = app.store.require_connection(_connection_id(args, app))
    ok, error = app.sessions.test_connection(connection)
    result = {"success": ok, "connection_id": connection.id}
    if ok:
        result["message"] = "Connection successful"
    else:
        result["error"] = error
    return result


def connect_dispatch(args: Dict[str, Any], app) -> Dict[str, Any]:
    connection_id = str(args.get("connection_id") or "")
    session = app.coordinator.connect(connection_id)
    result = {"success": True, "message": "Connected"}
    result.update(session.info())
    if app.auth.last_strategy:
        result["auth_strategy"] = app.auth.last_strategy
    return result


def disconnect_dispatch(args: Dict[str, Any], app) -> Dict[str, Any]:
    connection_id = _connection_id(args, app)
    app.store.require_connection(connection_id)
    closed = app.coordinator.disconnect(connection_id)
    return {
        "success": True,
        "connection_id": connection_id,
        "message": "Disconnected" if closed else "No open session",
    }


def key_deploy_dispatch(args: Dict[str, Any], app) -> Dict[str, Any]:
    connection = app.store.require_connection(_connection_id(args, app))
    key = app.store.get_key(str(args.get("key_id") or ""))
    if key is None or not key.is_active:
        raise NotFound(f"key {args.get('key_id')} not found")
    password = args.get("password")
    if not password:
        raise InvalidRequest("password is required for key deployment")
    try:
        deployed = deploy_public_key(
            connection,
            key.public_key,
            str(password),
            client_factory=app.client_factory,
            verify_host_key=app.verify_host_key,
        )
    except ValueError as exc:
        raise InvalidRequest(str(exc)) from exc
    if not deployed:
        return {"success": False, "error": "Failed to deploy SSH key", "connection_id": connection.id}
    app.store.touch_key(key.id)
    return {"success": True, "message": "SSH key deployed successfully", "connection_id": connection.id}


def generate_dispatch(args: Dict[str, Any], app) -> Dict[str, Any]:
    text = str(args.get("text") or "").strip()
    if not text:
        raise InvalidRequest("text is required")
    record = app.coordinator.generate(_connection_id(args, app), text, system_info=args.get("system_info"))
    return {
        "success": True,
        "command": record.to_dict(),
        "requires_confirmation": record.requires_confirmation,
    }


def command_create_dispatch(args: Dict[str, Any], app) -> Dict[str, Any]:
    connection_id = _connection_id(args, app)
    app.store.require_connection(connection_id)
    command = str(args.get("command") or "")
    record = app.store.create_command(
        connection_id,
        str(args.get("plain_text") or ""),
        command,
        risk_level=str(args.get("risk_level") or "low"),
    )
    return {"success": True, "command": record.to_dict()}


def _outcome_result(outcome, args: Dict[str, Any]) -> Dict[str, Any]:
    result = outcome.to_dict()
    result["success"] = outcome.state not in {STATE_FAILED, STATE_ABORTED}
    if "output" in result and not to_bool(args.get("raw")):
        result["output"] = clean_output(result["output"])
    wants_filter = any(args.get(name) is not None for name in ("contains", "regex", "tail_lines"))
    if "output" in result and wants_filter:
        filtered = apply_text_filters(
            result["output"],
            contains=args.get("contains"),
            regex=args.get("regex"),
            tail_lines=args.get("tail_lines"),
        )
        if not filtered["success"]:
            return {"success": False, "error": filtered["error"], "command_id": outcome.command_id}
        result["output"] = filtered["output"]
        if filtered["filtered"]:
            result["filtered"] = True
            result["matched_lines"] = filtered["matched_lines"]
    if "output" in result:
        result.update(_truncate(result["output"]))
    if outcome.state == STATE_BLOCKED:
        result["message"] = outcome.verdict.message
    return result


def run_dispatch(args: Dict[str, Any], app) -> Dict[str, Any]:
    command_id = args.get("command_id")
    connection_id = args.get("connection_id")
    if command_id and not connection_id:
        record = app.store.get_command(str(command_id))
        if record is None:
            raise NotFound(f"command {command_id} not found")
        connection_id = record.connection_id
    request = ExecutionRequest(
        connection_id=connection_id or _connection_id(args, app),
        command_text=str(args.get("command") or ""),
        command_id=str(command_id) if command_id else None,
        check_conflicts=to_bool(args.get("check_conflicts"), default=True),
        timeout=clamp_float(args.get("timeout"), DEFAULT_COMMAND_TIMEOUT, 0.0, MAX_COMMAND_TIMEOUT),
    )
    outcome = app.coordinator.execute(request)
    return _outcome_result(outcome, args)


def quick_action_dispatch(args: Dict[str, Any], app) -> Dict[str, Any]:
    action = str(args.get("action") or "")
    execute = to_bool(args.get("execute"))
    connection_id = _connection_id(args, app, required=execute)
    suggestion, record = app.coordinator.quick_action(action, connection_id)
    result = {"success": True, "action": action}
    result.update(suggestion.to_dict())
    if record is not None:
        result["command_id"] = record.id
    if execute:
        outcome = app.coordinator.execute(ExecutionRequest(
            connection_id=connection_id,
            command_text=suggestion.command,
            command_id=record.id if record else None,
        ))
        result["execution"] = _outcome_result(outcome, args)
        result["success"] = result["execution"]["success"]
    return result


def _workflow_ids(args: Dict[str, Any]):
    return tuple(str(args.get(name) or "") for name in ("category_id", "section_id", "command_id"))


def workflow_list_dispatch(args: Dict[str, Any], app) -> Dict[str, Any]:
    category_id = args.get("category_id")
    if category_id:
        categories = [app.coordinator.workflows.category(str(category_id))]
    else:
        categories = app.coordinator.workflows.categories()
    return {"success": True, "categories": [category.to_dict() for category in categories]}


def workflow_run_dispatch(args: Dict[str, Any], app) -> Dict[str, Any]:
    inputs = args.get("inputs") or {}
    if not isinstance(inputs, dict):
        raise InvalidRequest("inputs must be an object of placeholder values")
    template, record = app.coordinator.prepare_workflow(_connection_id(args, app), *_workflow_ids(args), values=inputs)
    result = {
        "success": True,
        "command": record.to_dict(),
        "requires_confirmation": template.requires_confirmation,
        "executed": False,
    }
    if not to_bool(args.get("execute")):
        return result
    if template.requires_confirmation and not to_bool(args.get("confirm")):
        result["message"] = "Confirmation required: re-run with confirm=true to execute this command."
        return result
    outcome = app.coordinator.execute(ExecutionRequest(
        connection_id=record.connection_id,
        command_text=record.generated_command,
        command_id=record.id,
        check_conflicts=True,
    ))
    result["executed"] = True
    result["execution"] = _outcome_result(outcome, args)
    result["success"] = result["execution"]["success"]
    return result


def workflow_detect_dispatch(args: Dict[str, Any], app) -> Dict[str, Any]:
    input_name = str(args.get("input") or "")
    connection_id = _connection_id(args, app)
    options = app.coordinator.detect_options(connection_id, *_workflow_ids(args), input_name=input_name)
    return {"success": True, "input": input_name, "options": options}


def check_dispatch(args: Dict[str, Any], app) -> Dict[str, Any]:
    command = str(args.get("command") or "")
    if not command.strip():
        raise InvalidRequest("command is required")
    verdict = app.coordinator.check(_connection_id(args, app), command)
    result = {"success": True}
    result.update(verdict.to_dict())
    return result


def history_dispatch(args: Dict[str, Any], app) -> Dict[str, Any]:
    connection_id = _connection_id(args, app, required=False)
    limit = clamp_int(args.get("limit"), DEFAULT_HISTORY_ROWS, 1, MAX_HISTORY_ROWS)
    include_output = to_bool(args.get("include_output"))
    rows = []
    for record in app.store.list_commands(connection_id)[:limit]:
        row = record.to_dict()
        if not include_output:
            row.pop("output", None)
        rows.append(row)
    return {"success": True, "connection_id": connection_id, "commands": rows}


def history_clear_dispatch(args: Dict[str, Any], app) -> Dict[str, Any]:
    connection_id = _connection_id(args, app)
    removed = app.store.clear_command_history(connection_id)
    return {"success": True, "connection_id": connection_id, "removed": removed}


def analyze_error_dispatch(args: Dict[str, Any], app) -> Dict[str, Any]:
    command_id = str(args.get("command_id") or "")
    analysis = app.coordinator.analyze_failure(command_id)
    return {"success": True, "command_id": command_id, "analysis": analysis}


def key_add_dispatch(args: Dict[str, Any], app) -> Dict[str, Any]:
    record = app.store.create_key(str(args.get("name") or "key"), str(args.get("public_key") or ""))
    return {"success": True, "key": record.to_dict()}


def key_delete_dispatch(args: Dict[str, Any], app) -> Dict[str, Any]:
    key_id = str(args.get("key_id") or "")
    if not app.store.delete_key(key_id):
        raise NotFound(f"key {key_id} not found")
    return {"success": True, "message": f"key {key_id} deleted"}


DISPATCH = {
    "connection_list": connection_list_dispatch,
    "connection_create": connection_create_dispatch,
    "connection_delete": connection_delete_dispatch,
    "connection_test": connection_test_dispatch,
    "connect": connect_dispatch,
    "disconnect": disconnect_dispatch,
    "session_list": lambda args, app: {"success": True, "sessions": app.sessions.list_sessions()},
    "key_list": lambda args, app: {"success": True, "keys": [key.to_dict() for key in app.store.list_keys()]},
    "key_add": key_add_dispatch,
    "key_delete": key_delete_dispatch,
    "key_deploy": key_deploy_dispatch,
    "generate": generate_dispatch,
    "quick_action": quick_action_dispatch,
    "workflow_list": workflow_list_dispatch,
    "workflow_run": workflow_run_dispatch,
    "workflow_detect": workflow_detect_dispatch,
    "command_create": command_create_dispatch,
    "run": run_dispatch,
    "check": check_dispatch,
    "history": history_dispatch,
    "history_clear": history_clear_dispatch,
    "analyze_error": analyze_error_dispatch,
}


def call_tool(tool_name: str, args: Dict[str, Any], app) -> Optional[Dict[str, Any]]:
    """Run one tool; returns None for unknown tools."""
    try:
        handler = DISPATCH.get(tool_name)
        if handler is None:
            return None
        return handler(args, app)
    except ShellPilotError as exc:
        log_error(f"{tool_name}: {exc.__class__.__name__}: {exc}")
        return error_result(exc)


def handle_request(request: Dict[str, Any], app) -> Optional[Dict[str, Any]]:
    method = request.get("method")
    params = request.get("params", {}) or {}
    req_id = request.get("id", 1)

    if method == "initialize":
        return {
            "jsonrpc": "2.0", "id": req_id,
            "result": {
                "protocolVersion": "2024-11-05",
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
        try:
            result = call_tool(str(tool_name), args, app)
            if result is None:
                return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": f"Unknown tool: {tool_name}"}}
            is_error = not result.get("success", False) or result.get("status") in {STATUS_ERROR, STATUS_UNKNOWN}
            return make_response(req_id, result, is_error=is_error)
        except Exception as exc:
            log_error(f"tool execution error ({tool_name}): {exc}")
            return make_response(req_id, {"success": False, "error": str(exc)}, is_error=True)

    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": f"Unknown method: {method}"}}
