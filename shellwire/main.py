import io
import os
import sys
import json
import argparse
from typing import Optional

from shellwire.channel import Target
from shellwire.config import config
from shellwire.providers import default_registry
from shellwire.server import EngineContext, handle_request
from shellwire.session import SessionPool
from shellwire.utils import log_error, make_cache_dirs

_stdout = None


def _write_response(response: dict) -> None:
    try:
        _stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
        _stdout.flush()
    except (OSError, ValueError) as exc:
        log_error(f"response write error: {exc}")
        try:
            _stdout.write(json.dumps(response, ensure_ascii=True) + "\n")
            _stdout.flush()
        except (OSError, ValueError) as exc2:
            log_error(f"response write fallback error: {exc2}")


def env_secret_provider(variable: str):
    """Look the secret up in the environment each time it is needed."""

    def provide(target: Target) -> Optional[str]:
        return os.environ.get(variable) or None

    return provide


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="shellwire: run framed commands and file operations over a persistent interactive shell"
    )
    parser.add_argument("--host", help="SSH host (overrides SHELLWIRE_SSH_HOST); omit for a local shell")
    parser.add_argument("--user", help="SSH username (overrides SHELLWIRE_SSH_USER)")
    parser.add_argument("--port", type=int, help="SSH port (overrides SHELLWIRE_SSH_PORT)")
    parser.add_argument("--key", help="Path to SSH private key (overrides SHELLWIRE_SSH_KEY_PATH)")
    parser.add_argument("--no-verify-host", action="store_true", help="Disable SSH host key verification")
    parser.add_argument("--path", help="PATH to export in the shell")
    parser.add_argument("--cache-dir", help="Directory for per-session event logs")
    parser.add_argument("--settle-delay", type=float, help="Seconds to wait before answering a password prompt")
    parser.add_argument("--local-shell", help="Shell used for local sessions")
    parser.add_argument(
        "--password-env", default="SHELLWIRE_PASSWORD",
        help="Environment variable holding the password/passphrase (read on demand, never stored)",
    )
    return parser


def main() -> None:
    global _stdout
    # Force UTF-8 I/O regardless of the platform code page
    stdin = io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
    _stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", line_buffering=True)

    config.load_from_env()
    parser = build_parser()
    args = parser.parse_args()

    if args.host: config.SSH_HOST = args.host
    if args.user: config.SSH_USER = args.user
    if args.port: config.SSH_PORT = args.port
    if args.key: config.SSH_KEY_PATH = args.key
    if args.path: config.EXTRA_PATH = args.path
    if args.cache_dir: config.CACHE_DIR = args.cache_dir
    if args.settle_delay is not None: config.SETTLE_DELAY = args.settle_delay
    if args.local_shell: config.LOCAL_SHELL = args.local_shell
    if args.no_verify_host:
        config.SSH_VERIFY_HOST_KEY = False

    if config.SSH_HOST and not config.SSH_USER:
        parser.error("SSH user is required with a host (via --user or SHELLWIRE_SSH_USER)")

    try:
        config.CACHE_DIRS = make_cache_dirs(config.CACHE_DIR)
    except OSError as exc:
        log_error(f"cache dir unavailable, session logs disabled: {exc}")
        config.CACHE_DIRS = {}

    if config.SSH_HOST:
        default_target = Target(host=config.SSH_HOST, user=config.SSH_USER, port=config.SSH_PORT)
    else:
        default_target = Target.local()

    pool = SessionPool(secret_provider=env_secret_provider(args.password_env), config=config)
    ctx = EngineContext(pool, default_registry(), default_target)

    log_error(
        f"shellwire started; default target={default_target} "
        f"cache={config.CACHE_DIRS.get('cache_root', '-')} verify_host={config.SSH_VERIFY_HOST_KEY}"
    )

    try:
        for line in stdin:
            line = line.strip()
            if not line:
                continue
            try:
                request = json.loads(line)
            except json.JSONDecodeError as exc:
                log_error(f"invalid json: {exc}")
                _write_response({"jsonrpc": "2.0", "id": None, "error": {"code": -32700, "message": "Parse error"}})
                continue
            if not isinstance(request, dict):
                _write_response({"jsonrpc": "2.0", "id": None, "error": {"code": -32600, "message": "Invalid request"}})
                continue
            try:
                response = handle_request(request, ctx)
            except Exception as exc:
                # keep serving; the client gets an error instead of hanging
                log_error(f"unexpected error: {exc}")
                response = {
                    "jsonrpc": "2.0",
                    "id": request.get("id"),
                    "error": {"code": -32603, "message": f"Internal error: {exc}"},
                }
            if response is not None:
                _write_response(response)
    finally:
        log_error("shutting down...")
        pool.close_all()


if __name__ == "__main__":
    main()
