"""Directory listing commands and the parser for their output.

Three dialects are tried in order: GNU ``stat --printf``, BSD ``stat -f`` and a
plain ``ls -1AF``. Each command runs in a subshell so the interactive shell's
working directory never changes.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, List, Optional

from shellwire.errors import ParseError
from shellwire.models import EPOCH, FileEntry, FileInfo, join_path
from shellwire.sanitize import DEFAULT_SANITIZER, Sanitizer
from shellwire.utils import shell_quote


class Dialect(Enum):
    GNU = "gnu"
    BSD = "bsd"
    PLAIN = "plain"


GNU_FORMAT = "%n|%F|%s|%a|%U|%Y"
BSD_FORMAT = "%N|$t|%z|%Mp%Lp|%Su|%m"
STAT_GNU_FORMAT = "%n|%F|%s|%a|%U|%G|%Y|%X"
STAT_BSD_FORMAT = "%N|%HT|%z|%Mp%Lp|%Su|%Sg|%m|%a"

_PLAIN_MARKERS = "/@*|="
_SKIP_NAMES = {"", ".", ".."}


def gnu_listing_command(path: str) -> str:
    return (
        f"(cd {shell_quote(path)} && stat --printf='' . >/dev/null 2>&1 && "
        f"ls -1A | while IFS= read -r f; do "
        f"stat --printf='{GNU_FORMAT}\\n' -- \"$f\" 2>/dev/null || :; done)"
    )


def bsd_listing_command(path: str) -> str:
    return (
        f"(cd {shell_quote(path)} && stat -f '%N' . >/dev/null 2>&1 && "
        f"ls -1A | while IFS= read -r f; do "
        f"if [ -d \"$f\" ]; then t=directory; else t='regular file'; fi; "
        f"stat -f \"{BSD_FORMAT}\" -- \"$f\" 2>/dev/null || :; done)"
    )


def plain_listing_command(path: str) -> str:
    return f"ls -1AF {shell_quote(path)}"


LISTING_COMMANDS = (
    (Dialect.GNU, gnu_listing_command),
    (Dialect.BSD, bsd_listing_command),
    (Dialect.PLAIN, plain_listing_command),
)


def normalize_permissions(raw: str) -> str:
    raw = raw.strip()
    if not raw.isdigit():
        return ""
    if len(raw) == 4 and raw.startswith("0"):
        return raw[1:]
    return raw


def _to_int(raw: str) -> Optional[int]:
    try:
        return int(raw.strip())
    except ValueError:
        return None


def _to_datetime(raw: str) -> datetime:
    seconds = _to_int(raw)
    if seconds is None:
        return EPOCH
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return EPOCH


def _executable(permissions: str) -> bool:
    return bool(permissions) and any(int(d) & 1 for d in permissions[-3:])


def _parse_structured(line: str, base_path: str) -> Optional[FileEntry]:
    parts = line.rsplit("|", 5)
    if len(parts) != 6:
        return None
    name, kind, size, perms, owner, mtime = parts
    size_value = _to_int(size)
    if size_value is None:
        return None
    name = name.rstrip("/")
    if "/" in name:
        name = name.rsplit("/", 1)[1]
    kind = kind.strip().lower()
    permissions = normalize_permissions(perms)
    is_directory = kind == "directory"
    return FileEntry(
        name=name,
        path=join_path(base_path, name),
        is_directory=is_directory,
        size=size_value,
        permissions=permissions,
        owner=owner.strip(),
        modified=_to_datetime(mtime),
        is_symlink=kind == "symbolic link",
        is_executable=not is_directory and _executable(permissions),
    )


def _parse_plain(line: str, base_path: str) -> Optional[FileEntry]:
    name = line
    marker = ""
    if len(name) > 1 and name[-1] in _PLAIN_MARKERS:
        marker = name[-1]
        name = name[:-1]
    if "/" in name:
        return None
    return FileEntry(
        name=name,
        path=join_path(base_path, name),
        is_directory=marker == "/",
        is_symlink=marker == "@",
        is_executable=marker == "*",
    )


def sort_entries(entries: Iterable[FileEntry]) -> List[FileEntry]:
    return sorted(entries, key=lambda e: (not e.is_directory, e.name.lower(), e.name))


def dedup(entries: Iterable[FileEntry]) -> List[FileEntry]:
    seen = set()
    out = []
    for entry in entries:
        if entry.path in seen:
            continue
        seen.add(entry.path)
        out.append(entry)
    return out


def parse(raw: str, base_path: str, dialect: Dialect, sanitizer: Sanitizer = DEFAULT_SANITIZER) -> List[FileEntry]:
    """Turn listing output into sorted entries. Unreadable lines are skipped.

    Banner and prompt lines are only filtered from PLAIN output; structured
    lines are always taken as entries.
    """
    entries = []
    for line in (raw or "").split("\n"):
        line = line.rstrip("\r")
        if not line.strip():
            continue
        if dialect is Dialect.PLAIN:
            if sanitizer.is_noise(line):
                continue
            entry = _parse_plain(line, base_path)
        else:
            entry = _parse_structured(line, base_path)
        if entry is None or entry.name in _SKIP_NAMES:
            continue
        entries.append(entry)
    return sort_entries(dedup(entries))


def stat_command(path: str) -> str:
    quoted = shell_quote(path)
    return (
        f"{{ stat --printf='{STAT_GNU_FORMAT}\\n' -- {quoted} 2>/dev/null || "
        f"stat -f '{STAT_BSD_FORMAT}' -- {quoted}; }}"
    )


def parse_stat_line(line: str) -> FileInfo:
    parts = (line or "").strip("\r\n").rsplit("|", 7)
    if len(parts) != 8:
        raise ParseError(f"unexpected stat output: {line!r}")
    path, kind, size, perms, owner, group, mtime, atime = parts
    size_value = _to_int(size)
    if size_value is None:
        raise ParseError(f"unexpected size in stat output: {size!r}")
    kind = kind.strip().lower()
    permissions = normalize_permissions(perms)
    is_directory = kind == "directory"
    trimmed = path.rstrip("/") or "/"
    entry = FileEntry(
        name=trimmed.rsplit("/", 1)[-1] or "/",
        path=trimmed,
        is_directory=is_directory,
        size=size_value,
        permissions=permissions,
        owner=owner.strip(),
        modified=_to_datetime(mtime),
        is_symlink=kind == "symbolic link",
        is_executable=not is_directory and _executable(permissions),
    )
    return FileInfo(entry=entry, group=group.strip(), accessed=_to_datetime(atime))
