"""Working-tree scanning and checkout.

Compares the on-disk tree of a repository against a flattened git tree
(``scan_working_tree`` / ``compare_files``) and applies the difference
between two trees back to disk (``checkout_changes``).
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import stat
from dataclasses import dataclass, field
from pathlib import Path

from ._ignore import GitIgnoreFilter
from .tree import (
    GIT_FILEMODE_BLOB,
    GIT_FILEMODE_BLOB_EXECUTABLE,
    GIT_FILEMODE_LINK,
)

logger = logging.getLogger(__name__)

CONTROL_DIR = ".git"


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass
class WorkingTreeScan:
    """Files and empty directories found on disk."""
    files: dict[str, tuple[bytes, int]] = field(default_factory=dict)
    empty_dirs: list[str] = field(default_factory=list)


@dataclass
class ChangeSet:
    """Difference between a working tree and a committed tree."""
    add: list[str] = field(default_factory=list)
    update: list[str] = field(default_factory=list)
    delete: list[str] = field(default_factory=list)

    @property
    def in_sync(self) -> bool:
        return not self.add and not self.update and not self.delete

    @property
    def total(self) -> int:
        return len(self.add) + len(self.update) + len(self.delete)

    def paths(self) -> set[str]:
        return set(self.add) | set(self.update) | set(self.delete)


# ---------------------------------------------------------------------------
# Local file helpers
# ---------------------------------------------------------------------------

_HASH_CHUNK_SIZE = 65536


def _blob_hasher(size: int):
    """Return a SHA-1 hasher pre-loaded with the git blob header.

    Git blob OID = SHA-1(``blob <size>\\0`` + content).
    """
    return hashlib.sha1(f"blob {size}\0".encode())


def local_file_mode(full: Path) -> int:
    """Git filemode for a local file, symlink-aware."""
    st = os.lstat(full)
    if stat.S_ISLNK(st.st_mode):
        return GIT_FILEMODE_LINK
    if st.st_mode & 0o111:
        return GIT_FILEMODE_BLOB_EXECUTABLE
    return GIT_FILEMODE_BLOB


def local_file_oid(full: Path) -> bytes:
    """Compute git blob OID for a local file by streaming through SHA-1.

    Symlinks hash their target string.
    """
    if full.is_symlink():
        data = os.readlink(full).encode()
        h = _blob_hasher(len(data))
        h.update(data)
        return h.hexdigest().encode("ascii")
    size = full.stat().st_size
    h = _blob_hasher(size)
    with open(full, "rb") as f:
        while True:
            chunk = f.read(_HASH_CHUNK_SIZE)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest().encode("ascii")


def read_local_file(full: Path) -> bytes:
    """Blob content for a local file: the link target for symlinks."""
    if full.is_symlink():
        return os.readlink(full).encode()
    return full.read_bytes()


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------

def _parent_dirs(paths) -> set[str]:
    dirs: set[str] = set()
    for path in paths:
        parts = path.split("/")
        for i in range(1, len(parts)):
            dirs.add("/".join(parts[:i]))
    return dirs


def scan_working_tree(
    root: str | Path,
    *,
    exclude: frozenset[str] = frozenset(),
    tracked=frozenset(),
) -> WorkingTreeScan:
    """Walk *root* and hash every non-ignored file.

    *exclude* names root-relative paths that never count as content.
    Paths in *tracked* are hashed even when an ignore rule matches them,
    as git does for files already in the index.  Directories with no
    non-ignored entries are reported in ``empty_dirs``; the root itself
    never is.  Symlinked directories are recorded as link entries, not
    descended into.
    """
    base = Path(root)
    ignore = GitIgnoreFilter(base)
    tracked = frozenset(tracked)
    tracked_dirs = _parent_dirs(tracked)
    # Ignored directories entered only for their tracked files
    ignored_dirs: set[str] = set()
    scan = WorkingTreeScan()

    for dirpath, dirnames, filenames in os.walk(base):
        dp = Path(dirpath)
        rel_dir = "" if dp == base else dp.relative_to(base).as_posix()
        ignore.enter_directory(dp, rel_dir)
        inside_ignored = rel_dir in ignored_dirs

        def _skip(rel: str, is_dir: bool = False) -> bool:
            if rel in tracked:
                return False
            return inside_ignored or ignore.is_ignored(rel, is_dir=is_dir)

        kept_dirs: list[str] = []
        kept_files: list[str] = []
        for dname in dirnames:
            if dname == CONTROL_DIR:
                continue
            rel = f"{rel_dir}/{dname}" if rel_dir else dname
            if (dp / dname).is_symlink():
                if not _skip(rel):
                    kept_files.append(dname)
                continue
            if inside_ignored or ignore.is_ignored(rel, is_dir=True):
                if rel not in tracked_dirs:
                    continue
                ignored_dirs.add(rel)
            kept_dirs.append(dname)
        dirnames[:] = kept_dirs

        for fname in filenames:
            rel = f"{rel_dir}/{fname}" if rel_dir else fname
            if rel in exclude or _skip(rel):
                continue
            kept_files.append(fname)

        for fname in kept_files:
            full = dp / fname
            rel = f"{rel_dir}/{fname}" if rel_dir else fname
            try:
                mode = local_file_mode(full)
                if mode != GIT_FILEMODE_LINK and not full.is_file():
                    continue
                scan.files[rel] = (local_file_oid(full), mode)
            except FileNotFoundError:
                # Removed while scanning
                continue

        if rel_dir and not inside_ignored and not kept_dirs and not kept_files:
            scan.empty_dirs.append(rel_dir)

    return scan


def compare_files(
    local: dict[str, tuple[bytes, int]],
    tracked: dict[str, tuple[bytes, int]],
) -> ChangeSet:
    """Compare working-tree entries against committed entries."""
    add = sorted(local.keys() - tracked.keys())
    delete = sorted(tracked.keys() - local.keys())
    update = sorted(
        path for path in local.keys() & tracked.keys()
        if local[path] != tracked[path]
    )
    return ChangeSet(add=add, update=update, delete=delete)


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------

def _write_entry(object_store, out: Path, oid: bytes, mode: int) -> None:
    data = object_store[oid].data
    out.parent.mkdir(parents=True, exist_ok=True)
    if out.exists() or out.is_symlink():
        out.unlink()
    if mode == GIT_FILEMODE_LINK:
        out.symlink_to(data.decode("utf-8", "surrogateescape"))
        return
    out.write_bytes(data)
    if mode == GIT_FILEMODE_BLOB_EXECUTABLE:
        out.chmod(out.stat().st_mode | 0o111)


def _prune_empty_parents(base: Path, rel: str) -> None:
    """Remove directories emptied by a delete, bottom-up, stopping at *base*."""
    parent = (base / rel).parent
    while parent != base:
        try:
            parent.rmdir()  # only succeeds if truly empty
        except OSError:
            return
        parent = parent.parent


def checkout_changes(
    object_store,
    root: str | Path,
    old: dict[str, tuple[bytes, int]],
    new: dict[str, tuple[bytes, int]],
) -> ChangeSet:
    """Make the working tree at *root* go from tree *old* to tree *new*.

    Only paths that differ between the two trees are touched.
    """
    base = Path(root)
    changes = compare_files(new, old)

    # Deletes run first
    for rel in changes.delete:
        out = base / rel
        if out.exists() or out.is_symlink():
            out.unlink()
        _prune_empty_parents(base, rel)

    for rel in changes.add + changes.update:
        out = base / rel
        # A directory where a file goes
        if out.is_dir() and not out.is_symlink():
            shutil.rmtree(out)
        # A file where a parent directory goes
        for parent in out.parents:
            if parent == base:
                break
            if parent.is_symlink() or (parent.exists() and not parent.is_dir()):
                parent.unlink()
                break
        oid, mode = new[rel]
        _write_entry(object_store, out, oid, mode)

    logger.debug(
        "Checked out %d added, %d updated, %d deleted paths in %s",
        len(changes.add), len(changes.update), len(changes.delete), base,
    )
    return changes
