import threading

import pytest

from shellwire.models import DirectoryTreeNode, FileEntry, FileKind, join_path


@pytest.mark.parametrize("base,name,expected", [
    ("/srv", "app", "/srv/app"),
    ("/srv/", "app", "/srv/app"),
    ("/", "etc", "/etc"),
    ("", "etc", "/etc"),
    ("/srv", "/app/", "/srv/app"),
])
def test_join_path_never_doubles_separators(base, name, expected):
    assert join_path(base, name) == expected


def test_entries_compare_by_path_only():
    a = FileEntry("x", "/tmp/x", size=1)
    b = FileEntry("x", "/tmp/x", size=999, owner="root")
    assert a == b
    assert len({a, b}) == 1
    assert a != FileEntry("x", "/var/x")


@pytest.mark.parametrize("name,is_dir,kind", [
    ("photo.JPG", False, FileKind.IMAGE),
    ("clip.webm", False, FileKind.VIDEO),
    ("notes.txt", False, FileKind.FILE),
    ("media.png", True, FileKind.FOLDER),
])
def test_kind_by_extension(name, is_dir, kind):
    assert FileEntry(name, "/" + name, is_directory=is_dir).kind is kind


def test_symbolic_permissions():
    assert FileEntry("d", "/d", is_directory=True, permissions="755").symbolic_permissions == "drwxr-xr-x"
    assert FileEntry("f", "/f", permissions="640").symbolic_permissions == "-rw-r-----"
    assert FileEntry("s", "/s", permissions="4755").symbolic_permissions == "-rwxr-xr-x"


def test_editable_needs_text_extension_and_small_size():
    assert FileEntry("nginx.conf", "/etc/nginx.conf", size=2000).is_editable
    assert FileEntry(".htaccess", "/w/.htaccess").is_text
    assert not FileEntry("big.log", "/big.log", size=1_000_001).is_editable
    assert not FileEntry("image.png", "/image.png", size=10).is_text


def test_to_dict_is_json_friendly():
    data = FileEntry("a.py", "/a.py", permissions="644").to_dict()
    assert data["kind"] == "file"
    assert data["modified"].startswith("1970-01-01")


def folder():
    return DirectoryTreeNode(FileEntry("srv", "/srv", is_directory=True))


def test_toggle_loads_children_once():
    calls = []
    gate = threading.Event()

    def loader(path):
        calls.append(path)
        gate.wait(5)
        return [FileEntry("app", "/srv/app", is_directory=True)]

    node = folder()
    future = node.toggle(loader)
    assert node.is_expanded
    node.toggle(loader)
    again = node.toggle(loader)
    assert again is future
    gate.set()
    children = future.result(5)
    assert calls == ["/srv"]
    assert [c.path for c in children] == ["/srv/app"]
    assert node.children == children
    assert node.pending is None

    node.toggle(loader)
    assert node.toggle(loader) is None
    assert calls == ["/srv"]


def test_failed_load_leaves_children_unset():
    def loader(path):
        raise OSError("permission denied")

    node = folder()
    future = node.toggle(loader)
    with pytest.raises(OSError):
        future.result(5)
    assert node.children is None
    assert "permission denied" in node.error
    assert node.pending is None


def test_collapsing_does_not_load():
    node = folder()
    node.is_expanded = True
    assert node.toggle(lambda p: pytest.fail("should not load")) is None
    assert not node.is_expanded
