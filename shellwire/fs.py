import re
import base64
import posixpath
from typing import List, Optional, Sequence, Union

from shellwire.config import (
    LIST_TIMEOUT, QUICK_LIST_TIMEOUT, MUTATE_TIMEOUT, TREE_MUTATE_TIMEOUT,
    TRANSFER_TIMEOUT, READ_TIMEOUT, SEARCH_TIMEOUT, QUICK_TIMEOUT,
    MAX_FILE_READ_BYTES, MAX_INLINE_WRITE_BYTES, WRITE_CHUNK_CHARS,
    SEARCH_MAX_DEPTH, SEARCH_MAX_RESULTS, EngineConfig, config as default_config,
)
from shellwire.errors import AuthenticationError, OperationError, ParseError
from shellwire.executor import CommandResult
from shellwire.listing import (
    LISTING_COMMANDS, Dialect, parse, plain_listing_command, parse_stat_line, stat_command,
)
from shellwire.models import FileEntry, FileInfo, join_path
from shellwire.session import Session
from shellwire.utils import log_error, shell_quote, short_token

_PERMISSIONS = re.compile(r"^[0-7]{3,4}$")
_ACCOUNT = re.compile(r"^[A-Za-z0-9._][A-Za-z0-9._-]*$")


def _extract_between_markers(text: str, start_marker: str, end_marker: str) -> Optional[str]:
    start_pos = text.find(start_marker)
    if start_pos < 0:
        return None
    content_start = start_pos + len(start_marker)
    end_pos = text.find(end_marker, content_start)
    if end_pos < 0:
        return None
    return text[content_start:end_pos]


def _child_name(name: str) -> str:
    if not name or "/" in name or name in (".", ".."):
        raise ValueError(f"invalid name: {name!r}")
    return name


def _error_text(body: str, exit_code: Optional[int]) -> str:
    lines = [l for l in body.split("\n") if l.strip()]
    if lines:
        return "\n".join(lines[-5:])
    if exit_code is None:
        return "command did not report an exit status"
    return f"exit status {exit_code}"


class FileOperations:
    """Remote file management expressed as shell commands on one Session."""

    def __init__(self, session: Session, config: Optional[EngineConfig] = None):
        self.session = session
        self.config = config or default_config

    # ---- plumbing ----

    def _execute(self, command: str, timeout: float, quick: bool = False) -> CommandResult:
        return self.session.execute(command, timeout=timeout, quick=quick)

    def _check_auth(self, operation: str, result: CommandResult) -> None:
        if result.auth_failed:
            raise AuthenticationError(f"{operation}: {result.auth_error}", command=operation)

    def _run(
        self,
        operation: str,
        paths: Sequence[str],
        command: str,
        timeout: float,
        quick: bool = False,
    ) -> str:
        marker = f"SW_OK_{short_token()}"
        result = self._execute(f"( {command} ) && echo '{marker}'", timeout, quick=quick)
        self._check_auth(operation, result)
        if result.timed_out:
            raise OperationError(
                operation, paths,
                f"timed out after {timeout:g}s; it may still be running on the remote side",
                timed_out=True,
            )
        lines = result.output.split("\n")
        succeeded = any(line.strip() == marker for line in lines)
        body = "\n".join(l for l in lines if l.strip() != marker).strip("\n")
        if result.exit_code != 0 or not succeeded:
            raise OperationError(operation, paths, _error_text(body, result.exit_code), exit_code=result.exit_code)
        return body

    # ---- listing ----

    def list_directory(self, path: str) -> List[FileEntry]:
        """List ``path`` trying GNU, then BSD, then plain ``ls``.

        The first dialect that exits 0 with entries wins. An empty directory
        yields ``[]`` once a dialect has exited 0.
        """
        last: Optional[CommandResult] = None
        empty_ok = False
        for dialect, build in LISTING_COMMANDS:
            result = self._execute(build(path), LIST_TIMEOUT)
            self._check_auth("list", result)
            if result.timed_out:
                raise OperationError("list", [path], f"timed out after {LIST_TIMEOUT:g}s", timed_out=True)
            last = result
            if result.exit_code != 0:
                continue
            entries = parse(result.output, path, dialect)
            if entries:
                return entries
            empty_ok = True
        if empty_ok:
            return []
        raise OperationError(
            "list", [path],
            _error_text(last.output if last else "", last.exit_code if last else None),
            exit_code=last.exit_code if last else None,
        )

    def list_directory_quick(self, path: str) -> List[FileEntry]:
        result = self._execute(plain_listing_command(path), QUICK_LIST_TIMEOUT, quick=True)
        if result.timed_out:
            raise OperationError("list", [path], f"timed out after {QUICK_LIST_TIMEOUT:g}s", timed_out=True)
        if result.exit_code != 0:
            raise OperationError("list", [path], _error_text(result.output, result.exit_code),
                                 exit_code=result.exit_code)
        return parse(result.output, path, Dialect.PLAIN)

    # ---- mutations ----

    def create_directory(self, parent: str, name: str) -> str:
        full_path = join_path(parent, _child_name(name))
        self._run("mkdir", [full_path], f"mkdir -p -- {shell_quote(full_path)}", MUTATE_TIMEOUT)
        return full_path

    def create_file(self, parent: str, name: str) -> str:
        full_path = join_path(parent, _child_name(name))
        self._run("touch", [full_path], f"touch -- {shell_quote(full_path)}", MUTATE_TIMEOUT)
        return full_path

    def delete(self, path: str) -> None:
        if not path or path.rstrip("/") == "":
            raise ValueError(f"refusing to delete {path!r}")
        self._run("delete", [path], f"rm -rf -- {shell_quote(path)}", TREE_MUTATE_TIMEOUT)

    def rename(self, path: str, new_name: str) -> str:
        parent = posixpath.dirname(path.rstrip("/")) or "/"
        new_path = join_path(parent, _child_name(new_name))
        self._run("rename", [path, new_path], f"mv -- {shell_quote(path)} {shell_quote(new_path)}", MUTATE_TIMEOUT)
        return new_path

    def chmod(self, path: str, permissions: str, recursive: bool = False) -> None:
        if not _PERMISSIONS.match(permissions or ""):
            raise ValueError(f"invalid permissions: {permissions!r}")
        flag = "-R " if recursive else ""
        timeout = TREE_MUTATE_TIMEOUT if recursive else MUTATE_TIMEOUT
        self._run("chmod", [path], f"chmod {flag}{permissions} -- {shell_quote(path)}", timeout)

    def chown(self, path: str, owner: str, group: Optional[str] = None, recursive: bool = False) -> None:
        if not _ACCOUNT.match(owner or ""):
            raise ValueError(f"invalid owner: {owner!r}")
        if group is not None and not _ACCOUNT.match(group):
            raise ValueError(f"invalid group: {group!r}")
        owner_group = f"{owner}:{group}" if group else owner
        flag = "-R " if recursive else ""
        timeout = TREE_MUTATE_TIMEOUT if recursive else MUTATE_TIMEOUT
        self._run("chown", [path], f"chown {flag}{shell_quote(owner_group)} -- {shell_quote(path)}", timeout)

    def copy(self, source: str, destination: str) -> None:
        self._run("copy", [source, destination],
                  f"cp -R -- {shell_quote(source)} {shell_quote(destination)}", TRANSFER_TIMEOUT)

    def move(self, source: str, destination: str) -> None:
        self._run("move", [source, destination],
                  f"mv -- {shell_quote(source)} {shell_quote(destination)}", TRANSFER_TIMEOUT)

    # ---- content ----

    def read(self, path: str, max_bytes: int = MAX_FILE_READ_BYTES) -> bytes:
        """Return up to ``max_bytes`` of the file, byte for byte."""
        token = short_token()
        start, end = f"SW_DATA_{token}", f"SW_DONE_{token}"
        quoted = shell_quote(path)
        command = (
            f"[ -f {quoted} ] && [ -r {quoted} ] && "
            f"{{ echo '{start}'; head -c {int(max_bytes)} -- {quoted} | base64 && echo '{end}'; }}"
        )
        body = self._run("read", [path], command, READ_TIMEOUT)
        payload = _extract_between_markers(body, start, end)
        if payload is None:
            raise OperationError("read", [path], "file payload markers not found")
        try:
            data = base64.b64decode("".join(payload.split()), validate=True)
        except ValueError as exc:
            raise OperationError("read", [path], f"could not decode file payload: {exc}") from exc
        return data[:max_bytes]

    def read_text(self, path: str, max_bytes: int = MAX_FILE_READ_BYTES, encoding: str = "utf-8") -> str:
        return self.read(path, max_bytes).decode(encoding, errors="replace")

    def write(self, path: str, content: Union[str, bytes]) -> None:
        payload = content.encode("utf-8") if isinstance(content, str) else bytes(content)
        encoded = base64.b64encode(payload).decode("ascii")
        quoted = shell_quote(path)

        if len(payload) <= MAX_INLINE_WRITE_BYTES:
            self._run("write", [path], f"printf '%s' '{encoded}' | base64 -d > {quoted}", READ_TIMEOUT)
            return

        tmp_path = f"{path}.sw_b64_{short_token()}"
        tmp_quoted = shell_quote(tmp_path)
        chunks = [encoded[i:i + WRITE_CHUNK_CHARS] for i in range(0, len(encoded), WRITE_CHUNK_CHARS)]
        try:
            for index, chunk in enumerate(chunks):
                redirect = ">" if index == 0 else ">>"
                self._run("write", [path], f"printf '%s\\n' '{chunk}' {redirect} {tmp_quoted}", MUTATE_TIMEOUT)
            self._run(
                "write", [path],
                f"base64 -d {tmp_quoted} > {tmp_quoted}.out && mv -f -- {tmp_quoted}.out {quoted} && rm -f -- {tmp_quoted}",
                TRANSFER_TIMEOUT,
            )
        except OperationError:
            self._discard(tmp_path)
            raise

    def _discard(self, tmp_path: str) -> None:
        quoted = shell_quote(tmp_path)
        try:
            self._run("cleanup", [tmp_path], f"rm -f -- {quoted} {quoted}.out", MUTATE_TIMEOUT)
        except OperationError as exc:
            log_error(f"could not remove temporary file {tmp_path}: {exc}")

    # ---- queries ----

    def search(self, path: str, pattern: str) -> List[FileEntry]:
        glob = shell_quote(f"*{pattern}*")
        command = (
            f"find {shell_quote(path)} -maxdepth {SEARCH_MAX_DEPTH} -name {glob} -type f 2>/dev/null "
            f"| head -{SEARCH_MAX_RESULTS}"
        )
        body = self._run("search", [path], command, SEARCH_TIMEOUT)
        results = []
        for line in body.split("\n"):
            found = line.strip()
            if not found:
                continue
            results.append(FileEntry(name=posixpath.basename(found), path=found))
        return results

    def stat(self, path: str) -> FileInfo:
        quoted = shell_quote(path)
        command = (
            f"{stat_command(path)} && "
            f"echo \"MIME:$(file -b --mime-type -- {quoted} 2>/dev/null)\" && "
            f"echo \"LINK:$(readlink -- {quoted} 2>/dev/null)\""
        )
        body = self._run("stat", [path], command, MUTATE_TIMEOUT)
        stat_line, mime, link = "", "", ""
        for line in body.split("\n"):
            if line.startswith("MIME:"):
                mime = line[5:].strip()
            elif line.startswith("LINK:"):
                link = line[5:].strip()
            elif "|" in line and not stat_line:
                stat_line = line
        try:
            info = parse_stat_line(stat_line)
        except ParseError as exc:
            raise OperationError("stat", [path], str(exc)) from exc
        return FileInfo(
            entry=info.entry,
            group=info.group,
            accessed=info.accessed,
            mime_type=mime,
            link_target=link if info.entry.is_symlink else "",
        )

    def directory_size(self, path: str) -> int:
        quoted = shell_quote(path)
        body = self._run("du", [path], f"du -sb -- {quoted} 2>/dev/null | cut -f1", TRANSFER_TIMEOUT).strip()
        if body.isdigit():
            return int(body)
        # BSD du has no -b
        body = self._run("du", [path], f"du -sk -- {quoted} | cut -f1", TRANSFER_TIMEOUT).strip()
        if body.isdigit():
            return int(body) * 1024
        raise OperationError("du", [path], "unable to calculate size")

    def exists(self, path: str) -> bool:
        marker = f"SW_OK_{short_token()}"
        result = self._execute(f"test -e {shell_quote(path)} && echo '{marker}'", QUICK_TIMEOUT, quick=True)
        if result.timed_out:
            raise OperationError("exists", [path], f"timed out after {QUICK_TIMEOUT:g}s", timed_out=True)
        return result.exit_code == 0 and marker in result.output

    def _names(self, operation: str, source: str) -> List[str]:
        body = self._run(operation, [source], f"cut -d: -f1 {source} | sort", MUTATE_TIMEOUT)
        return [line.strip() for line in body.split("\n") if line.strip()]

    def system_users(self) -> List[str]:
        return self._names("users", "/etc/passwd")

    def system_groups(self) -> List[str]:
        return self._names("groups", "/etc/group")
