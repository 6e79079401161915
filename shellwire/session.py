import os
import codecs
import queue
import threading
from concurrent.futures import Future
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from shellwire.channel import Channel, LocalPtyChannel, SSHChannel, Target
from shellwire.config import (
    DEFAULT_COMMAND_TIMEOUT, QUICK_TIMEOUT, MAX_COMMAND_TIMEOUT, SETUP_TIMEOUT,
    READ_POLL_TIMEOUT, DEFAULT_PATH, EngineConfig, config as default_config,
)
from shellwire.errors import (
    ConnectionLostError, ProtocolError, SessionClosedError, SessionConnectError,
)
from shellwire.executor import ChannelClosed, CommandExecutor, CommandRequest, CommandResult
from shellwire.utils import clamp_float, iso_now, json_line, log_error, safe_name

SecretProvider = Callable[[Target], Optional[str]]
ChannelFactory = Callable[[Target, Optional[str], EngineConfig], Channel]

_STOP = None


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    BUSY = "busy"
    CLOSED = "closed"


def default_channel_factory(target: Target, secret: Optional[str], cfg: EngineConfig) -> Channel:
    if target.is_local:
        return LocalPtyChannel(shell=cfg.LOCAL_SHELL).open()
    return SSHChannel(
        target,
        password=secret,
        key_filename=cfg.SSH_KEY_PATH,
        passphrase=secret if cfg.SSH_KEY_PATH else None,
        verify_host_key=cfg.SSH_VERIFY_HOST_KEY,
    ).open()


def setup_command(extra_path: Optional[str]) -> str:
    path = extra_path if extra_path else DEFAULT_PATH
    return (
        "stty -echo -echoctl 2>/dev/null; "
        "bind 'set enable-bracketed-paste off' 2>/dev/null; "
        "export PS1='' PS2='' PROMPT_COMMAND='' 2>/dev/null; "
        "printf '\\033[?2004l' 2>/dev/null; "
        f"export PATH='{path}':$PATH"
    )


class Session:
    """One interactive shell channel, driven one framed command at a time.

    Callers on any thread may ``execute`` concurrently; requests queue FIFO
    and a single worker thread runs them against the channel. A reader thread
    routes output to whichever request is at the head of the queue and drops
    everything else.
    """

    def __init__(
        self,
        target: Target,
        secret_provider: Optional[SecretProvider] = None,
        config: Optional[EngineConfig] = None,
        channel_factory: Optional[ChannelFactory] = None,
        executor: Optional[CommandExecutor] = None,
        session_id: int = 1,
        name: str = "",
    ):
        self.id = session_id
        self.name = name or str(target)
        self.target = target
        self.config = config or default_config
        self.secret_provider = secret_provider
        self.channel_factory = channel_factory or default_channel_factory
        self.executor = executor or CommandExecutor(
            settle_delay=self.config.SETTLE_DELAY,
            interrupt_on_timeout=self.config.INTERRUPT_ON_TIMEOUT,
        )

        self.state = SessionState.DISCONNECTED
        self.channel: Optional[Channel] = None
        self.created_at = datetime.now()
        self.death_reason = ""
        self.last_command = ""
        self.last_command_time: Optional[datetime] = None
        self.commands_run = 0

        self.lock = threading.Lock()
        self._queue: "queue.Queue[Optional[CommandRequest]]" = queue.Queue()
        self._head: Optional[CommandRequest] = None
        self._stop = threading.Event()
        self._connected = threading.Event()
        self._reader: Optional[threading.Thread] = None
        self._worker: Optional[threading.Thread] = None
        self._request_counter = 0

        self.session_log_path = self._build_session_log_path()

    # ---- logging ----

    def _build_session_log_path(self) -> str:
        sessions_dir = self.config.CACHE_DIRS.get("sessions_dir") if self.config.CACHE_DIRS else None
        if not sessions_dir:
            return ""
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return os.path.join(sessions_dir, f"s{self.id}__{safe_name(str(self.target))}__{stamp}.log")

    def _log(self, direction: str, payload: Dict[str, Any]) -> None:
        if not self.session_log_path:
            return
        data = {"ts": iso_now(), "dir": direction, "session_id": self.id}
        data.update(payload)
        json_line(self.session_log_path, data)

    # ---- lifecycle ----

    def connect(self) -> None:
        """Bring the session to READY.

        A caller arriving while another thread is connecting waits for that
        attempt and shares its outcome.
        """
        with self.lock:
            if self.state is SessionState.CLOSED:
                raise SessionClosedError(f"session {self.id} is closed")
            if self.state is SessionState.CONNECTING:
                in_progress = self._connected
            elif self.state is not SessionState.DISCONNECTED:
                return
            else:
                in_progress = None
                self.state = SessionState.CONNECTING
                self._connected = threading.Event()
                self._queue = queue.Queue()
                self._stop = threading.Event()
                self.death_reason = ""
            done = self._connected

        if in_progress is not None:
            in_progress.wait()
            with self.lock:
                state = self.state
            if state is SessionState.CLOSED:
                raise SessionClosedError(f"session {self.id} is closed")
            if state not in (SessionState.READY, SessionState.BUSY):
                raise SessionConnectError(f"session {self.id} failed to connect to {self.target}")
            return

        try:
            self._open()
        finally:
            done.set()

    def _open(self) -> None:
        try:
            self.channel = self.channel_factory(self.target, self._lookup_secret(), self.config)
        except SessionConnectError as exc:
            self._set_state(SessionState.DISCONNECTED)
            self._log("SYS", {"event": "connect_failed", "error": str(exc)})
            raise
        except Exception as exc:
            self._set_state(SessionState.DISCONNECTED)
            self._log("SYS", {"event": "connect_failed", "error": str(exc)})
            raise SessionConnectError(f"could not open a channel to {self.target}: {exc}") from exc

        self._reader = threading.Thread(target=self._reader_loop, name=f"sw-reader-{self.id}", daemon=True)
        self._worker = threading.Thread(target=self._worker_loop, name=f"sw-worker-{self.id}", daemon=True)
        self._reader.start()
        self._worker.start()

        setup = self._enqueue(CommandRequest(
            command=setup_command(self.config.EXTRA_PATH),
            timeout=SETUP_TIMEOUT,
            watch_auth=False,
        ), allow_connecting=True)
        try:
            result = setup.result()
        except (ConnectionLostError, ProtocolError) as exc:
            self._abort_connect(str(exc))
            raise SessionConnectError(f"shell setup failed on {self.target}: {exc}") from exc
        if result.timed_out or result.exit_code is None:
            self._abort_connect("shell never answered the setup command")
            raise SessionConnectError(f"shell on {self.target} did not become ready")

        self._set_state(SessionState.READY)
        self._log("SYS", {"event": "connected", "target": str(self.target)})

    def _abort_connect(self, reason: str) -> None:
        self._log("SYS", {"event": "connect_failed", "error": reason})
        self._on_channel_lost(reason)

    def close(self) -> None:
        with self.lock:
            if self.state is SessionState.CLOSED:
                return
            self.state = SessionState.CLOSED
            head = self._head
            self._stop.set()
        self._fail_pending(SessionClosedError(f"session {self.id} closed"))
        if head is not None:
            head.chunks.put(ChannelClosed("session closed"))
        self._queue.put(_STOP)
        if self.channel is not None:
            self.channel.close()
        for thread in (self._reader, self._worker):
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=2.0)
        self._log("SYS", {"event": "closed"})

    def _set_state(self, state: SessionState) -> None:
        with self.lock:
            if self.state is not SessionState.CLOSED:
                self.state = state

    def _on_channel_lost(self, reason: str) -> None:
        with self.lock:
            if self.state in (SessionState.CLOSED, SessionState.DISCONNECTED):
                return
            self.state = SessionState.DISCONNECTED
            self.death_reason = reason
            head = self._head
            self._stop.set()
        log_error(f"session {self.id} ({self.target}) lost: {reason}")
        self._log("SYS", {"event": "channel_lost", "reason": reason})
        if head is not None:
            head.chunks.put(ChannelClosed(reason))
        self._fail_pending(ConnectionLostError(reason))
        self._queue.put(_STOP)
        if self.channel is not None:
            self.channel.close()

    def _fail_pending(self, exc: Exception) -> None:
        while True:
            try:
                request = self._queue.get_nowait()
            except queue.Empty:
                return
            if request is not None and not request.future.done():
                request.future.set_exception(exc)

    # ---- command surface ----

    def submit(
        self,
        command: str,
        timeout: Optional[float] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        watch_auth: bool = True,
        quick: bool = False,
    ) -> "Future[CommandResult]":
        default = QUICK_TIMEOUT if quick else DEFAULT_COMMAND_TIMEOUT
        request = CommandRequest(
            command=command,
            timeout=clamp_float(timeout if timeout is not None else default, default, 0.1, MAX_COMMAND_TIMEOUT),
            cwd=cwd,
            env=env,
            watch_auth=watch_auth and not quick,
            quick=quick,
        )
        return self._enqueue(request)

    def execute(
        self,
        command: str,
        timeout: Optional[float] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        watch_auth: bool = True,
        quick: bool = False,
    ) -> CommandResult:
        return self.submit(command, timeout, cwd=cwd, env=env, watch_auth=watch_auth, quick=quick).result()

    def write_raw(self, data: Union[str, bytes]) -> None:
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        with self.lock:
            self._ensure_usable()
        self._log("IN", {"event": "write_raw", "chars": len(data)})
        self._write(data)

    def _ensure_usable(self, allow_connecting: bool = False) -> None:
        if self.state is SessionState.CLOSED:
            raise SessionClosedError(f"session {self.id} is closed")
        if self.state is SessionState.DISCONNECTED:
            if self.death_reason:
                raise ConnectionLostError(f"session {self.id} lost: {self.death_reason}")
            raise SessionConnectError(f"session {self.id} is not connected")
        if self.state is SessionState.CONNECTING and not allow_connecting:
            raise SessionConnectError(f"session {self.id} is still connecting")

    def _enqueue(self, request: CommandRequest, allow_connecting: bool = False) -> Future:
        with self.lock:
            self._ensure_usable(allow_connecting)
            self._request_counter += 1
            request.request_id = self._request_counter
            self._queue.put(request)
        return request.future

    def _write(self, data: str) -> None:
        channel = self.channel
        if channel is None:
            raise ConnectionLostError(f"session {self.id} has no channel")
        channel.send(data)

    def _lookup_secret(self) -> Optional[str]:
        if self.secret_provider is None:
            return None
        return self.secret_provider(self.target)

    # ---- threads ----

    def _worker_loop(self) -> None:
        work_queue = self._queue
        while True:
            request = work_queue.get()
            if request is _STOP:
                return
            if not request.future.set_running_or_notify_cancel():
                continue

            with self.lock:
                dead = self.state in (SessionState.CLOSED, SessionState.DISCONNECTED)
                if not dead:
                    self._head = request
                    if self.state is SessionState.READY:
                        self.state = SessionState.BUSY
            if dead:
                request.future.set_exception(ConnectionLostError(self.death_reason or "session unavailable"))
                continue

            self.last_command = request.command
            self.last_command_time = datetime.now()
            self._log("IN", {"event": "command_start", "request_id": request.request_id,
                             "command": request.command, "quick": request.quick})
            try:
                secret = self._lookup_secret() if request.watch_auth else None
                result = self.executor.run(request, self._write, secret)
                secret = None
            except ConnectionLostError as exc:
                request.future.set_exception(exc)
                self._on_channel_lost(str(exc))
            except ProtocolError as exc:
                request.future.set_exception(exc)
                log_error(f"session {self.id}: {exc}; closing session")
                self._on_channel_lost(str(exc))
            except Exception as exc:
                # keep the worker alive; the caller gets the error from its future
                if not isinstance(exc, ValueError):
                    log_error(f"session {self.id}: request {request.request_id} failed: {exc!r}")
                request.future.set_exception(exc)
            else:
                self.commands_run += 1
                self._log("OUT", {"event": "command_done", "request_id": request.request_id,
                                  "exit_code": result.exit_code, "timed_out": result.timed_out,
                                  "auth": result.auth.value, "elapsed": round(result.elapsed, 3)})
                request.future.set_result(result)
            finally:
                with self.lock:
                    self._head = None
                    if self.state is SessionState.BUSY:
                        self.state = SessionState.READY

    def _reader_loop(self) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        channel = self.channel
        stop = self._stop
        while not stop.is_set():
            try:
                data = channel.recv(READ_POLL_TIMEOUT)
            except ConnectionLostError as exc:
                if not stop.is_set():
                    self._on_channel_lost(str(exc))
                return
            if not data:
                continue
            text = decoder.decode(data)
            if not text:
                continue
            with self.lock:
                head = self._head
            if head is not None:
                head.chunks.put(text)

    def info(self) -> Dict[str, Any]:
        with self.lock:
            state = self.state
            head = self._head
            pending = self._queue.qsize()
        return {
            "id": self.id,
            "name": self.name,
            "target": str(self.target),
            "state": state.value,
            "death_reason": self.death_reason,
            "active_request_id": head.request_id if head else None,
            "queued": pending,
            "commands_run": self.commands_run,
            "last_command": self.last_command,
            "last_command_time": self.last_command_time.isoformat() if self.last_command_time else None,
            "created_at": self.created_at.isoformat(),
            "session_log_path": self.session_log_path,
        }


class SessionPool:
    """Sessions keyed by connection target; handed to callers explicitly."""

    def __init__(
        self,
        secret_provider: Optional[SecretProvider] = None,
        config: Optional[EngineConfig] = None,
        channel_factory: Optional[ChannelFactory] = None,
    ):
        self.secret_provider = secret_provider
        self.config = config or default_config
        self.channel_factory = channel_factory
        self.sessions: Dict[str, Session] = {}
        self.next_session_id = 1
        self.lock = threading.Lock()

    @staticmethod
    def _key(target: Union[Target, str]) -> Target:
        return target if isinstance(target, Target) else Target.parse(target)

    def get(self, target: Union[Target, str]) -> Optional[Session]:
        with self.lock:
            return self.sessions.get(str(self._key(target)))

    def get_or_connect(self, target: Union[Target, str]) -> Session:
        target = self._key(target)
        key = str(target)
        with self.lock:
            session = self.sessions.get(key)
            if session is None or session.state is SessionState.CLOSED:
                session = Session(
                    target,
                    secret_provider=self.secret_provider,
                    config=self.config,
                    channel_factory=self.channel_factory,
                    session_id=self.next_session_id,
                )
                self.next_session_id += 1
                self.sessions[key] = session
        if session.state in (SessionState.DISCONNECTED, SessionState.CONNECTING):
            session.connect()
        return session

    def close(self, target: Union[Target, str]) -> bool:
        with self.lock:
            session = self.sessions.pop(str(self._key(target)), None)
        if session is None:
            return False
        session.close()
        return True

    def list_sessions(self) -> List[Dict[str, Any]]:
        with self.lock:
            sessions = list(self.sessions.values())
        return sorted((s.info() for s in sessions), key=lambda row: row["id"])

    def close_all(self) -> None:
        with self.lock:
            sessions = list(self.sessions.values())
            self.sessions.clear()
        for session in sessions:
            session.close()
