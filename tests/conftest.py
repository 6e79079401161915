import re
import queue
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

import pytest

from shellwire.channel import Channel, Target
from shellwire.config import EngineConfig
from shellwire.errors import ConnectionLostError
from shellwire.session import Session

WIRE = re.compile(r"echo '(SW_BEGIN_[0-9a-f]+)'; (.*?)(?:; |\n)echo '(SW_END_[0-9a-f]+)'\$\?\n", re.S)
SENTINEL = re.compile(r"echo '(SW_OK_[0-9a-f]+)'")
CTRL_C = "\x03"


@dataclass
class Reply:
    output: str = ""
    exit_code: int = 0
    prompt: Optional[str] = None
    secret: Optional[str] = None
    hang: bool = False
    confirm: bool = True


Handler = Union[Reply, Callable[[str], Reply]]


class FakeShell(Channel):
    """A scripted interactive shell that speaks the framed wire form.

    Rules are ``(regex, reply)`` pairs matched against the command body;
    the first match wins. Anything unmatched falls back to a tiny
    interpreter that understands ``echo``, ``true`` and ``false``.
    """

    def __init__(self, echo: bool = True, chunk_size: int = 0):
        self.echo = echo
        self.chunk_size = chunk_size
        self.closed = False
        self.rules: List = []
        self.commands: List[str] = []
        self.sent: List[str] = []
        self.secrets_received: List[str] = []
        self._outbox: "queue.Queue[Optional[bytes]]" = queue.Queue()
        self._buffer = ""
        self._pending = None
        self._lock = threading.Lock()

    # ---- scripting ----

    def on(self, pattern: str, reply: Handler) -> "FakeShell":
        self.rules.append((re.compile(pattern, re.S), reply))
        return self

    def emit(self, text: str) -> None:
        data = text.encode("utf-8")
        if self.chunk_size:
            for i in range(0, len(data), self.chunk_size):
                self._outbox.put(data[i:i + self.chunk_size])
        elif data:
            self._outbox.put(data)

    def die(self) -> None:
        self.closed = True
        self._outbox.put(None)

    def _reply_for(self, body: str) -> Reply:
        if body.startswith("stty -echo"):
            self.echo = False
            return Reply()
        for pattern, reply in self.rules:
            if pattern.search(body):
                return reply(body) if callable(reply) else reply
        if body.startswith("echo "):
            return Reply(body[5:].strip("'\"") + "\n")
        if body == "true":
            return Reply()
        if body == "false":
            return Reply(exit_code=1)
        return Reply(f"sh: {body.split()[0]}: not found\n", 127)

    def _finish(self, reply: Reply, body: str, end: str) -> None:
        output = reply.output
        if reply.exit_code == 0 and reply.confirm:
            sentinel = SENTINEL.search(body)
            if sentinel:
                output += sentinel.group(1) + "\n"
        self.emit(f"{output}{end}{reply.exit_code}\n")

    # ---- Channel ----

    def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionLostError("fake shell is gone")
        with self._lock:
            self.sent.append(data)
            if self.echo and data != CTRL_C:
                self.emit(data.replace("\n", "\r\n"))

            if self._pending is not None:
                self._answer_pending(data)
                return

            self._buffer += data
            while True:
                match = WIRE.search(self._buffer)
                if not match:
                    break
                self._buffer = self._buffer[match.end():]
                begin, body, end = match.groups()
                self._run(begin, body.strip(), end)
                if self._pending is not None:
                    break

    def _run(self, begin: str, body: str, end: str) -> None:
        self.commands.append(body)
        reply = self._reply_for(body)
        self.emit(f"{begin}\n")
        if reply.prompt is not None or reply.hang:
            if reply.prompt:
                self.emit(reply.prompt)
            self._pending = (reply, body, end)
            return
        self._finish(reply, body, end)

    def _answer_pending(self, data: str) -> None:
        reply, body, end = self._pending
        if CTRL_C in data:
            self._pending = None
            self.emit(f"^C\r\n{end}130\n")
            return
        if reply.hang or not data.endswith("\n"):
            return
        entered = data.rstrip("\n")
        self.secrets_received.append(entered)
        if entered == reply.secret:
            self._pending = None
            self.emit("\r\n")
            self._finish(reply, body, end)
        else:
            self.emit(f"\r\nSorry, try again.\r\n{reply.prompt}")

    def recv(self, timeout: float) -> bytes:
        if self.closed and self._outbox.empty():
            raise ConnectionLostError("fake shell is gone")
        try:
            data = self._outbox.get(timeout=timeout)
        except queue.Empty:
            return b""
        if data is None:
            raise ConnectionLostError("fake shell hung up")
        return data

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._outbox.put(None)


@pytest.fixture
def engine_config(tmp_path):
    cfg = EngineConfig()
    cfg.SETTLE_DELAY = 0.0
    cfg.CACHE_DIR = str(tmp_path)
    sessions_dir = tmp_path / "sessions"
    sessions_dir.mkdir()
    cfg.CACHE_DIRS = {"cache_root": str(tmp_path), "sessions_dir": str(sessions_dir)}
    return cfg


@pytest.fixture
def fake_shell():
    return FakeShell()


@pytest.fixture
def make_session(engine_config):
    sessions = []

    def factory(shell: FakeShell, secret: Optional[str] = None, target: Optional[Target] = None) -> Session:
        session = Session(
            target or Target.parse("alice@db1.example.com"),
            secret_provider=lambda t: secret,
            config=engine_config,
            channel_factory=lambda t, s, c: shell,
        )
        sessions.append(session)
        session.connect()
        return session

    yield factory
    for session in sessions:
        session.close()


@pytest.fixture
def session(make_session, fake_shell):
    return make_session(fake_shell)
