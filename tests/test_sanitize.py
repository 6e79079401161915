import pytest

from shellwire.sanitize import DEFAULT_SANITIZER, Sanitizer, SanitizerRules, StreamSanitizer, sanitize

SAMPLES = [
    "\x1b[1;32mok\x1b[0m\r\n",
    "\x1b]0;alice@db1: ~\x07alice@db1:~$ ls -la\r\ntotal 0\r\n",
    "plain text with $HOME and user@example.com inside\n",
    "\x1b(B\x1b[?2004hprogress\r50%\r100%\r\n",
    "Welcome to Ubuntu 22.04 LTS\nLast login: Mon Jan  1 00:00:00 2024\nreal output\n",
    "bell\x07 and \x9b31m C1 CSI and stray \x1b",
    "\x9b\x1b[31m",
]


def test_strips_color_and_title_sequences():
    assert sanitize("\x1b[1;32mok\x1b[0m") == "ok"
    assert sanitize("\x1b]0;title\x07body") == "body"
    assert sanitize("\x1b]2;title\x1b\\body") == "body"


def test_line_endings_are_normalised():
    assert DEFAULT_SANITIZER.strip_controls("a\r\nb\rc\n") == "a\nb\nc\n"


@pytest.mark.parametrize("text", SAMPLES)
def test_sanitize_is_idempotent(text):
    once = sanitize(text)
    assert sanitize(once) == once


def test_noise_lines_are_dropped_but_output_survives():
    raw = "Welcome to Ubuntu\nLast login: yesterday\nalice@db1:~$ \nls -1AF /tmp\nreport.txt\n"
    assert sanitize(raw) == "report.txt\n"


def test_dollar_and_at_inside_output_are_kept():
    line = "price is $5 and mail bob@example.com"
    assert sanitize(line) == line


def test_rules_can_be_replaced_per_instance():
    rules = SanitizerRules.default().without("banner").with_noise(("motd", r"^MOTD:.*$"))
    custom = Sanitizer(rules)
    assert custom.sanitize("Welcome to here\nMOTD: hi\nx") == "Welcome to here\nx"
    # the default table is untouched
    assert sanitize("Welcome to here\nMOTD: hi\nx") == "MOTD: hi\nx"


def test_stream_sanitizer_holds_back_split_escape():
    stream = StreamSanitizer(DEFAULT_SANITIZER)
    out = stream.feed("red \x1b[3")
    out += stream.feed("1mtext\x1b[0")
    out += stream.feed("m done\r")
    out += stream.feed("\nnext")
    out += stream.flush()
    assert out == "red text done\nnext"


def test_stream_matches_whole_text_sanitising():
    raw = "".join(SAMPLES)
    stream = StreamSanitizer(DEFAULT_SANITIZER)
    pieces = [raw[i:i + 3] for i in range(0, len(raw), 3)]
    streamed = "".join(stream.feed(p) for p in pieces) + stream.flush()
    assert streamed == DEFAULT_SANITIZER.strip_controls(raw)
