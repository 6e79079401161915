import re
import threading
from enum import Enum
from typing import Callable, Optional, Pattern

from shellwire.utils import log_error

# A live prompt is the unterminated last line of output, ending in a colon.
AUTH_PROMPT = re.compile(r"(?:password|passphrase)[^\n:]{0,128}:[ \t]*\Z", re.IGNORECASE)
_TAIL_CHARS = 160


class AuthOutcome(Enum):
    NOT_REQUESTED = "not_requested"
    SUPPLIED = "supplied"
    MISSING = "missing"
    REJECTED = "rejected"


class AuthPromptState:
    """Per-execution credential bookkeeping, built fresh for each command."""

    def __init__(self, secret: Optional[str] = None):
        self.secret = secret
        self.consumed = False
        self.rejected = False
        self.missing = False

    def discard(self) -> None:
        self.secret = None

    @property
    def outcome(self) -> AuthOutcome:
        if self.rejected:
            return AuthOutcome.REJECTED
        if self.consumed:
            return AuthOutcome.SUPPLIED
        if self.missing:
            return AuthOutcome.MISSING
        return AuthOutcome.NOT_REQUESTED

    @property
    def failed(self) -> bool:
        return self.rejected or self.missing

    def __repr__(self) -> str:
        return (
            f"AuthPromptState(consumed={self.consumed}, rejected={self.rejected}, "
            f"missing={self.missing}, armed={self.secret is not None})"
        )


def _timer_schedule(delay: float, fn: Callable[[], None]) -> Optional[threading.Timer]:
    if delay <= 0:
        fn()
        return None
    timer = threading.Timer(delay, fn)
    timer.daemon = True
    timer.start()
    return timer


class CredentialInjector:
    """Answers a password prompt once per command.

    Only the unterminated last line of output can be a prompt. When one shows
    up, the injector waits ``settle_delay`` and checks that the line is still
    an unanswered prompt before acting, so output such as
    ``Last password change : never`` that merely arrives in pieces is left
    alone. ``notify`` is called whenever the outcome turns into a failure.
    """

    def __init__(
        self,
        write: Callable[[str], None],
        state: AuthPromptState,
        settle_delay: float = 0.0,
        prompt: Pattern = AUTH_PROMPT,
        schedule: Callable = _timer_schedule,
        notify: Optional[Callable[[], None]] = None,
    ):
        self.write = write
        self.state = state
        self.settle_delay = settle_delay
        self.prompt = prompt
        self.schedule = schedule
        self.notify = notify
        self.prompts_seen = 0
        self._line = ""
        self._handled = False
        self._settling = False
        self._timer = None
        self._active = True
        self._lock = threading.RLock()

    def observe(self, chunk: str) -> AuthOutcome:
        with self._lock:
            if not chunk:
                return self.state.outcome
            lines = (self._line + chunk).split("\n")
            if len(lines) > 1:
                self._handled = False
            self._line = lines[-1][-_TAIL_CHARS:]
            if not self._handled and not self._settling and self.prompt.search(self._line):
                self._settling = True
                self._timer = self.schedule(self.settle_delay, self._settle)
            return self.state.outcome

    def _settle(self) -> None:
        with self._lock:
            self._settling = False
            if not self._active or self._handled:
                return
            if not self.prompt.search(self._line):
                return
            self._handled = True
            self.prompts_seen += 1
            state = self.state
            if state.consumed:
                state.rejected = True
            elif state.secret is None:
                state.missing = True
            else:
                secret = state.secret
                state.consumed = True
                state.discard()
                try:
                    self.write(secret + "\n")
                except OSError as exc:
                    log_error(f"credential write failed: {type(exc).__name__}")
                return
        if self.notify is not None:
            self.notify()

    def close(self) -> None:
        with self._lock:
            self._active = False
        if self._timer is not None:
            self._timer.cancel()
        self.state.discard()


def strip_prompts(text: str, prompt: Pattern = AUTH_PROMPT) -> str:
    """Drop lines holding an answered credential prompt."""
    return "\n".join(line for line in text.split("\n") if not prompt.search(line))
