"""Terminal output cleanup.

Two stages, each driven by a table of named regexes:

* ``escape`` removes terminal control grammar (CSI, OSC, charset selection,
  two-byte ESC sequences, bare ESC/BEL and other C0 bytes) and normalises
  line endings.
* ``noise`` removes whole lines that are shell chatter rather than command
  output: login banners, echoed ``ls`` invocations and ``user@host`` prompts.

Matching is anchored: escape rules follow the fixed escape grammar and noise
rules only ever match complete lines, so a ``$`` or ``@`` inside ordinary
output is left alone. The noise stage is for text outside command framing and
for plain ``ls`` output; framed command output only goes through ``escape``.
"""
import re
from dataclasses import dataclass
from typing import Pattern, Tuple

_ESCAPE_RULES = (
    ("osc", r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"),
    ("csi", r"(?:\x1b\[|\x9b)[0-?]*[ -/]*[@-~]"),
    ("charset", r"\x1b[()*+][0-9A-Za-z]"),
    ("esc_pair", r"\x1b[@-Z\\^_=>78c]"),
    ("control", r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]"),
)

_NOISE_RULES = (
    ("banner", r"^\s*Welcome to\b.*$"),
    ("last_login", r"^\s*Last login:.*$"),
    ("ls_echo", r"^\s*ls(?:\s+-[\w-]+)+(?:\s+.*)?$"),
    ("prompt", r"^\s*\[?[\w.-]+@[\w.-]+(?::\S*|\s+\S+)?\]?\s*[#$](?:\s.*)?$"),
)

# Tail of a chunk that starts an escape sequence the next chunk will finish.
_PARTIAL_ESCAPE = re.compile(r"(?:\x1b(?:\[[0-?]*[ -/]*|[()*+])?|\x9b[0-?]*[ -/]*)\Z")
_OSC_END = re.compile(r"\x07|\x1b\\")
_MAX_CARRY = 512


def _compile(rules) -> Tuple[Tuple[str, Pattern], ...]:
    return tuple((name, re.compile(pattern)) for name, pattern in rules)


@dataclass(frozen=True)
class SanitizerRules:
    escape: Tuple[Tuple[str, Pattern], ...]
    noise: Tuple[Tuple[str, Pattern], ...]

    @classmethod
    def default(cls) -> "SanitizerRules":
        return cls(escape=_compile(_ESCAPE_RULES), noise=_compile(_NOISE_RULES))

    def with_noise(self, *rules: Tuple[str, str]) -> "SanitizerRules":
        return SanitizerRules(escape=self.escape, noise=self.noise + _compile(rules))

    def without(self, *names: str) -> "SanitizerRules":
        return SanitizerRules(
            escape=tuple(r for r in self.escape if r[0] not in names),
            noise=tuple(r for r in self.noise if r[0] not in names),
        )


class Sanitizer:
    def __init__(self, rules: SanitizerRules = None):
        self.rules = rules or SanitizerRules.default()

    def strip_controls(self, text: str) -> str:
        if not text:
            return ""
        for _, pattern in self.rules.escape:
            text = pattern.sub("", text)
        return text.replace("\r\n", "\n").replace("\r", "\n")

    def is_noise(self, line: str) -> bool:
        return any(pattern.match(line) for _, pattern in self.rules.noise)

    def strip_noise(self, text: str) -> str:
        if not text:
            return ""
        return "\n".join(line for line in text.split("\n") if not self.is_noise(line))

    def sanitize(self, text: str) -> str:
        return self.strip_noise(self.strip_controls(text))


class StreamSanitizer:
    """Applies the escape stage chunk by chunk.

    An escape sequence (or a ``\\r\\n`` pair) split across two reads is held
    back until the rest of it arrives.
    """

    def __init__(self, sanitizer: Sanitizer):
        self.sanitizer = sanitizer
        self._carry = ""

    def feed(self, chunk: str) -> str:
        text = self._carry + chunk
        self._carry = ""
        cut = len(text)
        osc = text.rfind("\x1b]")
        esc = max(text.rfind("\x1b"), text.rfind("\x9b"))
        if osc >= 0 and len(text) - osc <= _MAX_CARRY and not _OSC_END.search(text, osc):
            cut = osc
        elif esc >= 0 and len(text) - esc <= _MAX_CARRY and _PARTIAL_ESCAPE.match(text, esc):
            cut = esc
        elif text.endswith("\r"):
            cut = len(text) - 1
        self._carry = text[cut:]
        return self.sanitizer.strip_controls(text[:cut])

    def flush(self) -> str:
        text, self._carry = self._carry, ""
        return self.sanitizer.strip_controls(text)


DEFAULT_SANITIZER = Sanitizer()


def sanitize(text: str) -> str:
    return DEFAULT_SANITIZER.sanitize(text)
