import base64
from typing import Any, Callable, Dict, Optional

from shellwire.channel import Target
from shellwire.config import MAX_FILE_READ_BYTES
from shellwire.errors import ShellwireError, UnknownCapabilityError
from shellwire.executor import CommandResult
from shellwire.fs import FileOperations
from shellwire.providers import ProviderRegistry
from shellwire.session import SessionPool
from shellwire.utils import clamp_int, log_error, to_bool

SERVER_NAME = "shellwire"
SERVER_VERSION = "0.3.0"


class EngineContext:
    """Everything a request handler needs, built once by ``main``."""

    def __init__(self, pool: SessionPool, registry: ProviderRegistry, default_target: Optional[Target] = None):
        self.pool = pool
        self.registry = registry
        self.default_target = default_target or Target.local()

    def target_from(self, params: Dict[str, Any]) -> Target:
        raw = params.get("target")
        if raw:
            return Target.parse(str(raw))
        return self.default_target

    def session_for(self, params: Dict[str, Any]):
        return self.pool.get_or_connect(self.target_from(params))

    def files_for(self, params: Dict[str, Any]) -> FileOperations:
        return FileOperations(self.session_for(params), self.pool.config)


def _require(params: Dict[str, Any], name: str) -> Any:
    value = params.get(name)
    if value is None or value == "":
        raise ValueError(f"{name} is required")
    return value


def error_payload(exc: Exception) -> Dict[str, Any]:
    if isinstance(exc, ShellwireError):
        payload = {"success": False, "error": str(exc), "kind": exc.kind}
        if exc.kind == "timeout":
            payload["still_running"] = True
        if hasattr(exc, "to_dict"):
            payload["detail"] = exc.to_dict()
        return payload
    if isinstance(exc, ValueError):
        return {"success": False, "error": str(exc), "kind": "invalid_argument"}
    return {"success": False, "error": str(exc), "kind": "internal"}


def command_payload(result: CommandResult) -> Dict[str, Any]:
    payload = result.to_dict()
    payload["success"] = result.ok
    if result.timed_out:
        payload["kind"] = "timeout"
        payload["still_running"] = True
        payload["error"] = "command timed out; it may still be running on the remote side"
    elif result.auth_failed:
        payload["kind"] = "authentication"
        payload["error"] = result.auth_error
    elif not result.ok:
        payload["kind"] = "exit_status"
        payload["error"] = f"command exited with status {result.exit_code}"
    return payload


# ---- session methods ----

def session_list(params: Dict[str, Any], ctx: EngineContext) -> Dict[str, Any]:
    return {"success": True, "sessions": ctx.pool.list_sessions()}


def session_open(params: Dict[str, Any], ctx: EngineContext) -> Dict[str, Any]:
    session = ctx.session_for(params)
    return {"success": True, "session": session.info()}


def session_close(params: Dict[str, Any], ctx: EngineContext) -> Dict[str, Any]:
    target = ctx.target_from(params)
    if not ctx.pool.close(target):
        return {"success": False, "error": f"no session for {target}", "kind": "not_found"}
    return {"success": True, "message": f"closed {target}"}


def exec_dispatch(params: Dict[str, Any], ctx: EngineContext) -> Dict[str, Any]:
    command = _require(params, "command")
    env = params.get("env")
    if env is not None and not isinstance(env, dict):
        raise ValueError("env must be an object")
    session = ctx.session_for(params)
    result = session.execute(
        str(command),
        timeout=params.get("timeout"),
        cwd=params.get("cwd") or None,
        env={str(k): str(v) for k, v in env.items()} if env else None,
        quick=to_bool(params.get("quick"), False),
    )
    payload = command_payload(result)
    payload["session_id"] = session.id
    return payload


def write_raw_dispatch(params: Dict[str, Any], ctx: EngineContext) -> Dict[str, Any]:
    text = params.get("text", "")
    if to_bool(params.get("press_enter"), False):
        text += "\n"
    if not text:
        raise ValueError("text is required")
    session = ctx.session_for(params)
    session.write_raw(text)
    return {"success": True, "bytes_sent": len(text.encode("utf-8")), "session_id": session.id}


# ---- file methods ----

def _entries(entries) -> Dict[str, Any]:
    return {"success": True, "files": [e.to_dict() for e in entries]}


def fs_list(params, ctx):
    files = ctx.files_for(params)
    path = _require(params, "path")
    if to_bool(params.get("quick"), False):
        return _entries(files.list_directory_quick(path))
    return _entries(files.list_directory(path))


def fs_mkdir(params, ctx):
    path = ctx.files_for(params).create_directory(_require(params, "parent"), _require(params, "name"))
    return {"success": True, "path": path}


def fs_touch(params, ctx):
    path = ctx.files_for(params).create_file(_require(params, "parent"), _require(params, "name"))
    return {"success": True, "path": path}


def fs_delete(params, ctx):
    ctx.files_for(params).delete(_require(params, "path"))
    return {"success": True}


def fs_rename(params, ctx):
    path = ctx.files_for(params).rename(_require(params, "path"), _require(params, "new_name"))
    return {"success": True, "path": path}


def fs_chmod(params, ctx):
    ctx.files_for(params).chmod(
        _require(params, "path"), str(_require(params, "permissions")), to_bool(params.get("recursive"), False),
    )
    return {"success": True}


def fs_chown(params, ctx):
    ctx.files_for(params).chown(
        _require(params, "path"), _require(params, "owner"), params.get("group") or None,
        to_bool(params.get("recursive"), False),
    )
    return {"success": True}


def fs_copy(params, ctx):
    ctx.files_for(params).copy(_require(params, "source"), _require(params, "destination"))
    return {"success": True}


def fs_move(params, ctx):
    ctx.files_for(params).move(_require(params, "source"), _require(params, "destination"))
    return {"success": True}


def fs_read(params, ctx):
    max_bytes = clamp_int(params.get("max_bytes"), MAX_FILE_READ_BYTES, 1, MAX_FILE_READ_BYTES)
    data = ctx.files_for(params).read(_require(params, "path"), max_bytes)
    if to_bool(params.get("as_base64"), False):
        return {"success": True, "content": base64.b64encode(data).decode("ascii"), "size": len(data)}
    return {"success": True, "content": data.decode("utf-8", errors="replace"), "size": len(data)}


def fs_write(params, ctx):
    content = params.get("content", "")
    if to_bool(params.get("is_base64"), False):
        payload = base64.b64decode(content, validate=True)
    else:
        payload = str(content).encode("utf-8")
    ctx.files_for(params).write(_require(params, "path"), payload)
    return {"success": True, "bytes_written": len(payload)}


def fs_search(params, ctx):
    return _entries(ctx.files_for(params).search(_require(params, "path"), _require(params, "pattern")))


def fs_stat(params, ctx):
    return {"success": True, "info": ctx.files_for(params).stat(_require(params, "path")).to_dict()}


def fs_size(params, ctx):
    return {"success": True, "size": ctx.files_for(params).directory_size(_require(params, "path"))}


def fs_exists(params, ctx):
    return {"success": True, "exists": ctx.files_for(params).exists(_require(params, "path"))}


def fs_users(params, ctx):
    return {"success": True, "users": ctx.files_for(params).system_users()}


def fs_groups(params, ctx):
    return {"success": True, "groups": ctx.files_for(params).system_groups()}


# ---- service methods ----

def _provider(params, ctx):
    return ctx.registry.resolve(str(_require(params, "service")))


def service_status(params, ctx):
    provider = _provider(params, ctx)
    return {"success": True, "status": provider.get_status(ctx.session_for(params)).to_dict()}


def service_version(params, ctx):
    provider = _provider(params, ctx)
    return {"success": True, "version": provider.get_version(ctx.session_for(params))}


def service_config(params, ctx):
    provider = _provider(params, ctx)
    return {"success": True, "content": provider.get_config(ctx.session_for(params))}


def service_list(params, ctx):
    return {"success": True, "services": ctx.registry.keys()}


METHODS: Dict[str, Callable[[Dict[str, Any], EngineContext], Dict[str, Any]]] = {
    "session.list": session_list,
    "session.open": session_open,
    "session.close": session_close,
    "exec": exec_dispatch,
    "write_raw": write_raw_dispatch,
    "fs.list": fs_list,
    "fs.mkdir": fs_mkdir,
    "fs.touch": fs_touch,
    "fs.delete": fs_delete,
    "fs.rename": fs_rename,
    "fs.chmod": fs_chmod,
    "fs.chown": fs_chown,
    "fs.copy": fs_copy,
    "fs.move": fs_move,
    "fs.read": fs_read,
    "fs.write": fs_write,
    "fs.search": fs_search,
    "fs.stat": fs_stat,
    "fs.size": fs_size,
    "fs.exists": fs_exists,
    "fs.users": fs_users,
    "fs.groups": fs_groups,
    "service.list": service_list,
    "service.status": service_status,
    "service.version": service_version,
    "service.config": service_config,
}


def make_response(req_id: Any, result: Dict[str, Any]) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": result}


def handle_request(request: Dict[str, Any], ctx: EngineContext) -> Optional[Dict[str, Any]]:
    method = request.get("method")
    params = request.get("params", {}) or {}
    req_id = request.get("id", 1)

    if method == "initialize":
        return make_response(req_id, {
            "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            "methods": sorted(METHODS),
            "services": ctx.registry.keys(),
        })

    if method == "notifications/initialized":
        return None

    handler = METHODS.get(method)
    if handler is None:
        return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": f"Unknown method: {method}"}}
    if not isinstance(params, dict):
        return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32602, "message": "params must be an object"}}

    try:
        result = handler(params, ctx)
    except UnknownCapabilityError as exc:
        result = {"success": False, "error": exc.args[0] if exc.args else str(exc), "kind": exc.kind}
    except (ShellwireError, ValueError) as exc:
        log_error(f"{method} failed: {exc}")
        result = error_payload(exc)
    return make_response(req_id, result)
