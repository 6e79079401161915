import posixpath
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from shellwire.config import MAX_FILE_READ_BYTES
from shellwire.utils import log_error

EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)

IMAGE_EXTENSIONS = frozenset({
    "png", "jpg", "jpeg", "gif", "webp", "heic", "heif", "bmp", "tiff", "svg", "ico",
})
VIDEO_EXTENSIONS = frozenset({"mp4", "mov", "avi", "mkv", "wmv", "m4v", "webm"})
TEXT_EXTENSIONS = frozenset({
    # code
    "php", "js", "ts", "tsx", "jsx", "py", "rb", "go", "rs", "java", "kt", "cpp", "c", "h", "m",
    "cs", "swift", "vue", "svelte",
    # config
    "json", "yaml", "yml", "toml", "xml", "ini", "conf", "cfg", "env", "htaccess", "plist", "properties",
    # documents
    "md", "txt", "rtf", "html", "htm", "css", "scss", "sass", "less",
    # scripts
    "sh", "bash", "zsh", "fish", "ps1", "bat", "cmd",
    "log", "csv", "sql",
})


class FileKind(Enum):
    FILE = "file"
    FOLDER = "folder"
    IMAGE = "image"
    VIDEO = "video"


def join_path(base: str, name: str) -> str:
    """Join a directory and a child name with exactly one separator."""
    base = base.rstrip("/")
    name = name.strip("/")
    if not name:
        return base or "/"
    return f"{base}/{name}"


def file_extension(name: str) -> str:
    # ".htaccess" counts as extension "htaccess"
    _, dot, ext = name.rpartition(".")
    return ext.lower() if dot else ""


def symbolic_permissions(permissions: str, is_directory: bool = False) -> str:
    digits = permissions[-3:] if permissions and permissions.isdigit() else "644"
    out = "d" if is_directory else "-"
    for ch in digits.rjust(3, "0"):
        n = int(ch) & 7
        out += ("r" if n & 4 else "-") + ("w" if n & 2 else "-") + ("x" if n & 1 else "-")
    return out


@dataclass(frozen=True)
class FileEntry:
    name: str
    path: str
    is_directory: bool = False
    size: int = 0
    permissions: str = ""
    owner: str = ""
    modified: datetime = EPOCH
    is_symlink: bool = False
    is_executable: bool = False

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FileEntry):
            return NotImplemented
        return self.path == other.path

    def __hash__(self) -> int:
        return hash(self.path)

    @property
    def extension(self) -> str:
        return "" if self.is_directory else file_extension(self.name)

    @property
    def kind(self) -> FileKind:
        if self.is_directory:
            return FileKind.FOLDER
        ext = self.extension
        if ext in IMAGE_EXTENSIONS:
            return FileKind.IMAGE
        if ext in VIDEO_EXTENSIONS:
            return FileKind.VIDEO
        return FileKind.FILE

    @property
    def symbolic_permissions(self) -> str:
        return symbolic_permissions(self.permissions, self.is_directory)

    @property
    def is_text(self) -> bool:
        return not self.is_directory and self.extension in TEXT_EXTENSIONS

    @property
    def is_editable(self) -> bool:
        return self.is_text and self.size <= MAX_FILE_READ_BYTES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "is_directory": self.is_directory,
            "kind": self.kind.value,
            "size": self.size,
            "permissions": self.permissions,
            "symbolic_permissions": self.symbolic_permissions,
            "owner": self.owner,
            "modified": self.modified.isoformat(),
            "is_symlink": self.is_symlink,
            "is_executable": self.is_executable,
        }


@dataclass(frozen=True)
class FileInfo:
    entry: FileEntry
    group: str = ""
    accessed: datetime = EPOCH
    mime_type: str = ""
    link_target: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = self.entry.to_dict()
        data.update({
            "group": self.group,
            "accessed": self.accessed.isoformat(),
            "mime_type": self.mime_type,
            "link_target": self.link_target,
        })
        return data


Loader = Callable[[str], List[FileEntry]]


@dataclass(eq=False)
class DirectoryTreeNode:
    """A lazily loaded node of a remote directory tree.

    ``children`` stays None until a listing succeeds. Expanding a node with no
    children starts at most one background load at a time.
    """

    entry: FileEntry
    is_expanded: bool = False
    children: Optional[List["DirectoryTreeNode"]] = None
    error: str = ""
    _pending: Optional[Future] = field(default=None, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def pending(self) -> Optional[Future]:
        return self._pending

    @property
    def path(self) -> str:
        return self.entry.path

    def toggle(self, loader: Loader) -> Optional[Future]:
        with self._lock:
            self.is_expanded = not self.is_expanded
            if not self.is_expanded or not self.entry.is_directory:
                return None
            if self.children is not None or self._pending is not None:
                return self._pending
            future: Future = Future()
            self._pending = future

        thread = threading.Thread(
            target=self._load, args=(loader, future), name=f"sw-tree-{posixpath.basename(self.path)}", daemon=True,
        )
        thread.start()
        return future

    def _load(self, loader: Loader, future: Future) -> None:
        future.set_running_or_notify_cancel()
        try:
            entries = loader(self.path)
        except Exception as exc:
            log_error(f"listing {self.path} failed: {exc}")
            with self._lock:
                self.error = str(exc)
                self._pending = None
            future.set_exception(exc)
            return
        children = [DirectoryTreeNode(entry) for entry in entries]
        with self._lock:
            self.children = children
            self.error = ""
            self._pending = None
        future.set_result(children)
