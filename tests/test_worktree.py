"""Tests for working-tree scanning and checkout."""

import os

import pytest
from dulwich.object_store import MemoryObjectStore
from dulwich.objects import Blob

from gitdocs.tree import GIT_FILEMODE_BLOB, GIT_FILEMODE_BLOB_EXECUTABLE, GIT_FILEMODE_LINK
from gitdocs.worktree import (
    ChangeSet,
    checkout_changes,
    compare_files,
    local_file_oid,
    scan_working_tree,
)


def _oid(data):
    return Blob.from_string(data).id


@pytest.fixture
def root(tmp_path):
    r = tmp_path / "work"
    r.mkdir()
    (r / ".git").mkdir()
    return r


class TestLocalFileOid:
    def test_matches_git_blob(self, tmp_path):
        f = tmp_path / "f"
        f.write_bytes(b"hello world\n")
        assert local_file_oid(f) == _oid(b"hello world\n")

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unsupported")
    def test_symlink_hashes_target(self, tmp_path):
        link = tmp_path / "link"
        link.symlink_to("target.txt")
        assert local_file_oid(link) == _oid(b"target.txt")


class TestScan:
    def test_files_and_modes(self, root):
        (root / "a.txt").write_bytes(b"a")
        (root / "sub").mkdir()
        (root / "sub" / "run.sh").write_bytes(b"#!/bin/sh\n")
        os.chmod(root / "sub" / "run.sh", 0o755)
        scan = scan_working_tree(root)
        assert scan.files == {
            "a.txt": (_oid(b"a"), GIT_FILEMODE_BLOB),
            "sub/run.sh": (_oid(b"#!/bin/sh\n"), GIT_FILEMODE_BLOB_EXECUTABLE),
        }
        assert scan.empty_dirs == []

    def test_skips_control_directory(self, root):
        (root / ".git" / "config").write_text("[core]\n")
        assert scan_working_tree(root).files == {}

    def test_empty_directories(self, root):
        (root / "empty").mkdir()
        (root / "outer" / "inner").mkdir(parents=True)
        scan = scan_working_tree(root)
        assert sorted(scan.empty_dirs) == ["empty", "outer/inner"]

    def test_gitignore(self, root):
        (root / ".gitignore").write_text("*.log\nbuild/\n")
        (root / "keep.txt").write_text("k")
        (root / "debug.log").write_text("d")
        (root / "build").mkdir()
        (root / "build" / "out.bin").write_text("o")
        scan = scan_working_tree(root)
        assert sorted(scan.files) == [".gitignore", "keep.txt"]
        assert scan.empty_dirs == []

    def test_nested_gitignore_overrides(self, root):
        (root / ".gitignore").write_text("*.log\n")
        (root / "sub").mkdir()
        (root / "sub" / ".gitignore").write_text("!keep.log\n")
        (root / "sub" / "keep.log").write_text("k")
        (root / "sub" / "drop.log").write_text("d")
        assert sorted(scan_working_tree(root).files) == [".gitignore", "sub/.gitignore", "sub/keep.log"]

    def test_info_exclude(self, root):
        (root / ".git" / "info").mkdir()
        (root / ".git" / "info" / "exclude").write_text("secret\n")
        (root / "secret").write_text("s")
        (root / "public").write_text("p")
        assert sorted(scan_working_tree(root).files) == ["public"]

    def test_directory_of_ignored_files_is_empty(self, root):
        (root / ".gitignore").write_text("*.tmp\n")
        (root / "scratch").mkdir()
        (root / "scratch" / "a.tmp").write_text("t")
        assert scan_working_tree(root).empty_dirs == ["scratch"]

    def test_tracked_paths_ignore_rules(self, root):
        (root / ".gitignore").write_text("*.log\nbuild/\n")
        (root / "notes.log").write_text("n")
        (root / "debug.log").write_text("d")
        (root / "build" / "deep").mkdir(parents=True)
        (root / "build" / "deep" / "keep.bin").write_text("k")
        (root / "build" / "out.bin").write_text("o")
        (root / "build" / "empty").mkdir()
        scan = scan_working_tree(root, tracked={"notes.log", "build/deep/keep.bin"})
        assert sorted(scan.files) == [".gitignore", "build/deep/keep.bin", "notes.log"]
        assert scan.empty_dirs == []

    def test_exclude(self, root):
        (root / ".gitmessage~").write_text("msg")
        (root / "sub").mkdir()
        (root / "sub" / ".gitmessage~").write_text("msg")
        scan = scan_working_tree(root, exclude=frozenset({".gitmessage~"}))
        assert sorted(scan.files) == ["sub/.gitmessage~"]

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unsupported")
    def test_symlinked_directory_is_a_link(self, root, tmp_path):
        target = tmp_path / "elsewhere"
        target.mkdir()
        (target / "inside.txt").write_text("i")
        (root / "link").symlink_to(target)
        scan = scan_working_tree(root)
        assert scan.files == {"link": (_oid(str(target).encode()), GIT_FILEMODE_LINK)}


class TestCompareFiles:
    def test_changes(self):
        a = (_oid(b"a"), GIT_FILEMODE_BLOB)
        b = (_oid(b"b"), GIT_FILEMODE_BLOB)
        changes = compare_files({"new": a, "same": a, "mod": b}, {"same": a, "mod": a, "gone": a})
        assert changes == ChangeSet(add=["new"], update=["mod"], delete=["gone"])
        assert changes.total == 3
        assert changes.paths() == {"new", "mod", "gone"}

    def test_mode_change_is_update(self):
        oid = _oid(b"x")
        changes = compare_files({"f": (oid, GIT_FILEMODE_BLOB_EXECUTABLE)}, {"f": (oid, GIT_FILEMODE_BLOB)})
        assert changes.update == ["f"]

    def test_in_sync(self):
        entry = (_oid(b"a"), GIT_FILEMODE_BLOB)
        assert compare_files({"a": entry}, {"a": entry}).in_sync


class TestCheckout:
    @pytest.fixture
    def store(self):
        return MemoryObjectStore()

    def _entry(self, store, data, mode=GIT_FILEMODE_BLOB):
        blob = Blob.from_string(data)
        store.add_object(blob)
        return (blob.id, mode)

    def test_add_update_delete(self, store, root):
        old = {"keep": self._entry(store, b"k"), "mod": self._entry(store, b"1"), "dir/gone": self._entry(store, b"g")}
        for rel, (oid, _mode) in old.items():
            (root / rel).parent.mkdir(parents=True, exist_ok=True)
            (root / rel).write_bytes(store[oid].data)
        new = {"keep": old["keep"], "mod": self._entry(store, b"2"), "added/x": self._entry(store, b"x")}

        changes = checkout_changes(store, root, old, new)
        assert changes == ChangeSet(add=["added/x"], update=["mod"], delete=["dir/gone"])
        assert (root / "mod").read_bytes() == b"2"
        assert (root / "added" / "x").read_bytes() == b"x"
        assert not (root / "dir").exists()

    def test_executable(self, store, root):
        new = {"run.sh": self._entry(store, b"#!/bin/sh\n", GIT_FILEMODE_BLOB_EXECUTABLE)}
        checkout_changes(store, root, {}, new)
        assert os.stat(root / "run.sh").st_mode & 0o111

    def test_file_becomes_directory(self, store, root):
        old = {"a": self._entry(store, b"file")}
        (root / "a").write_bytes(b"file")
        new = {"a/b": self._entry(store, b"nested")}
        checkout_changes(store, root, old, new)
        assert (root / "a" / "b").read_bytes() == b"nested"

    def test_untouched_paths_left_alone(self, store, root):
        (root / "local-only").write_text("mine")
        checkout_changes(store, root, {}, {"a": self._entry(store, b"a")})
        assert (root / "local-only").read_text() == "mine"
