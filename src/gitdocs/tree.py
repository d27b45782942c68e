"""Git tree helpers over a dulwich object store.

Trees are handled in two shapes: dulwich ``Tree`` objects addressed by
oid, and flat ``{path: (oid, filemode)}`` maps holding only files.
"""

from __future__ import annotations

import os
import stat
from collections import defaultdict
from typing import Iterator, NamedTuple

from dulwich.objects import Tree as _DTree

GIT_FILEMODE_TREE = 0o040000
GIT_FILEMODE_BLOB = 0o100644
GIT_FILEMODE_BLOB_EXECUTABLE = 0o100755
GIT_FILEMODE_LINK = 0o120000


class FileEntry(NamedTuple):
    """A non-tree entry yielded by :func:`walk_tree`."""

    name: str
    oid: bytes
    mode: int


def is_tree_mode(mode: int) -> bool:
    return stat.S_ISDIR(mode)


def _decode(name: bytes) -> str:
    return name.decode("utf-8", "surrogateescape")


def normalize_path(path: str | os.PathLike[str]) -> str:
    """Canonical slash-separated relative path; the root is ``""``.

    Surrounding slashes are dropped.  Raises ``ValueError`` for empty,
    ``.`` or ``..`` components.
    """
    text = os.fspath(path)
    if os.sep != "/":
        text = text.replace(os.sep, "/")
    text = text.strip("/")
    if not text:
        return ""
    parts = text.split("/")
    for part in parts:
        if part in ("", ".", ".."):
            raise ValueError(f"Invalid component {part!r} in path {text!r}")
    return "/".join(parts)


def entry_at_path(object_store, tree_oid: bytes, path: str) -> tuple[bytes, int] | None:
    """``(oid, filemode)`` of *path* inside tree *tree_oid*, or None.

    ``""`` names the tree itself.
    """
    if not path:
        return (tree_oid, GIT_FILEMODE_TREE)
    oid, mode = tree_oid, GIT_FILEMODE_TREE
    for part in path.split("/"):
        if not is_tree_mode(mode):
            return None
        tree = object_store[oid]
        try:
            mode, oid = tree[part.encode("utf-8", "surrogateescape")]
        except KeyError:
            return None
    return (oid, mode)


def walk_tree(
    object_store,
    tree_oid: bytes,
    prefix: str = "",
) -> Iterator[tuple[str, list[str], list[FileEntry]]]:
    """Top-down walk yielding ``(dirpath, dirnames, files)`` like ``os.walk``."""
    subdirs: list[tuple[str, bytes]] = []
    files: list[FileEntry] = []
    for item in object_store[tree_oid].iteritems():
        name = _decode(item.path)
        if is_tree_mode(item.mode):
            subdirs.append((name, item.sha))
        else:
            files.append(FileEntry(name, item.sha, item.mode))

    yield prefix, [name for name, _ in subdirs], files

    for name, oid in subdirs:
        yield from walk_tree(object_store, oid, f"{prefix}/{name}" if prefix else name)


def flatten_tree(object_store, tree_oid: bytes | None) -> dict[str, tuple[bytes, int]]:
    """Every file below *tree_oid* as ``{path: (oid, mode)}``, in walk order."""
    flat: dict[str, tuple[bytes, int]] = {}
    if tree_oid is None:
        return flat
    for dirpath, _dirnames, files in walk_tree(object_store, tree_oid):
        for f in files:
            flat[f"{dirpath}/{f.name}" if dirpath else f.name] = (f.oid, f.mode)
    return flat


def _split(items) -> tuple[dict[str, object], dict[str, dict]]:
    """Partition path-keyed items into direct children and per-subdirectory groups."""
    here: dict[str, object] = {}
    below: dict[str, dict] = defaultdict(dict)
    for path, value in items:
        head, sep, rest = path.partition("/")
        if sep:
            below[head][rest] = value
        else:
            here[head] = value
    return here, below


def rebuild_tree(
    object_store,
    base_tree_oid: bytes | None,
    writes: dict[str, tuple[bytes, int]],
    removes: set[str],
) -> bytes:
    """Write a new tree: *base_tree_oid* with *writes* and *removes* applied.

    Untouched subtrees keep their oids.  A write over a directory
    replaces the whole directory; a write below a file replaces the
    file.  Directories left empty are dropped.

    Args:
        object_store: The dulwich object store.
        base_tree_oid: The tree to start from, or None for an empty one.
        writes: ``{path: (blob oid, filemode)}`` to store.
        removes: Paths to delete; missing paths are ignored.

    Returns:
        Oid of the new tree.
    """
    entries: dict[bytes, tuple[int, bytes]] = {}
    if base_tree_oid is not None:
        for item in object_store[base_tree_oid].iteritems():
            entries[item.path] = (item.mode, item.sha)

    direct_writes, nested_writes = _split(writes.items())
    direct_removes, nested_removes = _split((p, None) for p in removes)

    # Leaf removes run before leaf writes
    for name in direct_removes:
        entries.pop(name.encode("utf-8", "surrogateescape"), None)
    for name, (oid, mode) in direct_writes.items():
        entries[name.encode("utf-8", "surrogateescape")] = (mode, oid)

    for name in set(nested_writes) | set(nested_removes):
        if name in direct_writes:
            continue
        key = name.encode("utf-8", "surrogateescape")
        current = entries.get(key)
        if current is not None and not is_tree_mode(current[0]):
            if not nested_writes.get(name):
                continue
            current = None
        sub_oid = rebuild_tree(
            object_store,
            current[1] if current is not None else None,
            nested_writes.get(name, {}),
            set(nested_removes.get(name, ())),
        )
        if len(object_store[sub_oid]) == 0:
            entries.pop(key, None)
        else:
            entries[key] = (GIT_FILEMODE_TREE, sub_oid)

    tree = _DTree()
    for key, (mode, oid) in entries.items():
        tree.add(key, mode, oid)
    object_store.add_object(tree)
    return tree.id
