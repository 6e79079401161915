"""Delimiter framing on top of an interactive shell.

Each logical command is written as::

    echo '<BEGIN>'; <command>; echo '<END>'$?

The real BEGIN shows up as a line of its own and the real END is followed by
the numeric exit status. A terminal that echoes input shows both delimiters
followed by a quote instead, so echoed input never matches.
"""
import re
import time
import queue
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from shellwire.auth import AuthOutcome, AuthPromptState, CredentialInjector, strip_prompts
from shellwire.config import MAX_OUTPUT_CHARS
from shellwire.errors import ConnectionLostError, ProtocolError
from shellwire.sanitize import DEFAULT_SANITIZER, Sanitizer, StreamSanitizer
from shellwire.utils import shell_quote, short_token

CTRL_C = "\x03"
_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ChannelClosed:
    """Marker put on a request queue when the channel dies under it."""

    def __init__(self, reason: str):
        self.reason = reason


@dataclass
class CommandRequest:
    command: str
    timeout: float
    cwd: Optional[str] = None
    env: Optional[Dict[str, str]] = None
    watch_auth: bool = True
    quick: bool = False
    request_id: int = 0
    future: Future = field(default_factory=Future, repr=False)
    chunks: "queue.Queue" = field(default_factory=queue.Queue, repr=False)


@dataclass(frozen=True)
class CommandResult:
    command: str
    output: str
    exit_code: Optional[int]
    elapsed: float
    timed_out: bool = False
    auth: AuthOutcome = AuthOutcome.NOT_REQUESTED
    truncated: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def auth_failed(self) -> bool:
        return self.auth in (AuthOutcome.REJECTED, AuthOutcome.MISSING)

    @property
    def auth_error(self) -> str:
        if self.auth is AuthOutcome.MISSING:
            return "a credential was requested but none is available"
        if self.auth is AuthOutcome.REJECTED:
            return "credential was rejected"
        return ""

    def to_dict(self) -> Dict:
        return {
            "command": self.command,
            "output": self.output,
            "exit_code": self.exit_code,
            "elapsed": round(self.elapsed, 3),
            "timed_out": self.timed_out,
            "auth": self.auth.value,
            "truncated": self.truncated,
        }


class Framing:
    def __init__(self, token: Optional[str] = None):
        token = token or short_token()
        self.begin = f"SW_BEGIN_{token}"
        self.end = f"SW_END_{token}"
        self._begin_re = re.compile(re.escape(self.begin) + r"[ \t]*\n")
        self._end_re = re.compile(re.escape(self.end) + r"[ \t]*\n?[ \t]*(\d+)[ \t]*\n")

    def wrap(self, command: str, cwd: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> str:
        body = (command or "").strip()
        while body.endswith(";") and not body.endswith(";;"):
            body = body[:-1].rstrip()
        if not body:
            raise ValueError("command is required")

        prefix = []
        if cwd:
            prefix.append(f"cd {shell_quote(cwd)}")
        for key, value in (env or {}).items():
            if not _ENV_NAME.match(key):
                raise ValueError(f"invalid environment variable name: {key!r}")
            prefix.append(f"export {key}={shell_quote(str(value))}")
        if prefix:
            closer = "\n)" if "\n" in body else ")"
            body = "(" + " && ".join(prefix) + " && " + body + closer

        sep = "\n" if ("\n" in body or (body.endswith("&") and not body.endswith("&&"))) else "; "
        return f"echo '{self.begin}'; {body}{sep}echo '{self.end}'$?\n"

    def find_begin(self, text: str, start: int = 0):
        return self._begin_re.search(text, start)

    def find_end(self, text: str, start: int = 0):
        return self._end_re.search(text, start)

    def scrub(self, text: str) -> str:
        lines = text.split("\n")
        return "\n".join(l for l in lines if self.begin not in l and self.end not in l)


class CommandExecutor:
    def __init__(
        self,
        sanitizer: Sanitizer = DEFAULT_SANITIZER,
        settle_delay: float = 0.0,
        interrupt_on_timeout: bool = True,
        max_output_chars: int = MAX_OUTPUT_CHARS,
    ):
        self.sanitizer = sanitizer
        self.settle_delay = settle_delay
        self.interrupt_on_timeout = interrupt_on_timeout
        self.max_output_chars = max_output_chars

    def run(
        self,
        request: CommandRequest,
        write: Callable[[str], None],
        secret: Optional[str] = None,
        framing: Optional[Framing] = None,
    ) -> CommandResult:
        framing = framing or Framing()
        wire = framing.wrap(request.command, request.cwd, request.env)

        injector = None
        if request.watch_auth and not request.quick:
            injector = CredentialInjector(
                write, AuthPromptState(secret), self.settle_delay, notify=lambda: request.chunks.put(""),
            )
        secret = None

        stream = StreamSanitizer(self.sanitizer)
        text = ""
        begin_at: Optional[int] = None
        auth_from = 0
        search_from = 0
        truncated = False
        started = time.monotonic()
        deadline = started + request.timeout

        write(wire)
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    if self.interrupt_on_timeout:
                        write(CTRL_C)
                    return self._partial(request, framing, text, begin_at, started, injector, truncated)
                try:
                    item = request.chunks.get(timeout=remaining)
                except queue.Empty:
                    continue
                if isinstance(item, ChannelClosed):
                    raise ConnectionLostError(item.reason)

                text += stream.feed(item)

                if begin_at is None:
                    match = framing.find_begin(text)
                    if match:
                        begin_at = match.end()
                        auth_from = begin_at
                        search_from = begin_at
                    elif len(text) > self.max_output_chars:
                        # stale output while waiting for BEGIN
                        text = text[-(len(framing.begin) + 64):]

                if begin_at is not None:
                    # keep room for an END delimiter that is still arriving
                    overflow = len(text) - begin_at - self.max_output_chars - len(framing.end) - 64
                    if overflow > 0:
                        text = text[:begin_at] + text[begin_at + overflow:]
                        auth_from = max(begin_at, auth_from - overflow)
                        search_from = max(begin_at, search_from - overflow)
                        truncated = True

                    if injector is not None:
                        injector.observe(text[auth_from:])
                        auth_from = len(text)
                        # rejected or missing: the shell is waiting on a prompt nobody will answer
                        if injector.state.failed:
                            write(CTRL_C)
                            return self._partial(
                                request, framing, text, begin_at, started, injector, truncated, timed_out=False,
                            )

                end = framing.find_end(text, search_from if begin_at is not None else 0)
                if end:
                    if begin_at is None or end.start() < begin_at:
                        raise ProtocolError(f"end delimiter without begin for: {request.command[:60]}")
                    body = framing.scrub(text[begin_at:end.start()])
                    if injector is not None and injector.state.consumed:
                        body = strip_prompts(body)
                    output, truncated = self._cap(self._clean(body), truncated)
                    return CommandResult(
                        command=request.command,
                        output=output,
                        exit_code=int(end.group(1)),
                        elapsed=time.monotonic() - started,
                        auth=injector.state.outcome if injector else AuthOutcome.NOT_REQUESTED,
                        truncated=truncated,
                    )
                # Keep enough overlap for a delimiter split across chunks.
                if begin_at is not None:
                    search_from = max(begin_at, len(text) - len(framing.end) - 32)
        finally:
            if injector is not None:
                injector.close()

    def _clean(self, output: str) -> str:
        return output.strip("\n")

    def _cap(self, output: str, truncated: bool):
        if len(output) > self.max_output_chars:
            return output[-self.max_output_chars:], True
        return output, truncated

    def _partial(self, request, framing, text, begin_at, started, injector, truncated, timed_out=True):
        if begin_at is not None:
            body = framing.scrub(text[begin_at:])
        else:
            # nothing framed yet: only shell chatter such as banners and prompts
            body = self.sanitizer.strip_noise(framing.scrub(text))
        output, truncated = self._cap(self._clean(body), truncated)
        return CommandResult(
            command=request.command,
            output=output,
            exit_code=None,
            elapsed=time.monotonic() - started,
            timed_out=timed_out,
            auth=injector.state.outcome if injector else AuthOutcome.NOT_REQUESTED,
            truncated=truncated,
        )
