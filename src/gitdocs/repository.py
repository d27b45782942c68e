"""Repository: a shared working directory and its sync primitives."""

from __future__ import annotations

import enum
import heapq
import logging
import os
import re
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from dulwich.errors import NotGitRepository

from ._backend import Backend, BackendResult, Status
from ._lock import repo_lock
from .exceptions import MergeError
from .merge import apply_merge, plan_merge, short_oid
from .tree import entry_at_path, flatten_tree, is_tree_mode, normalize_path, rebuild_tree
from .worktree import compare_files, read_local_file, scan_working_tree

logger = logging.getLogger(__name__)

DEFAULT_REMOTE = "origin"
DEFAULT_BRANCH = "master"
DEFAULT_TIMEOUT = 120


class InvalidReason(enum.Enum):
    DIRECTORY_MISSING = "directory_missing"
    NO_REPOSITORY = "no_repository"


class SyncStatus(enum.Enum):
    OK = "ok"
    NO_REMOTE = "no_remote"
    NOTHING = "nothing"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class Author:
    name: str
    email: str
    time: datetime


@dataclass(frozen=True)
class CommitRef:
    """A commit in a repository's history."""
    oid: str
    message: str
    author: Author
    parents: tuple[str, ...] = ()

    @property
    def short_oid(self) -> str:
        return short_oid(self.oid)

    @property
    def subject(self) -> str:
        """First line of the message."""
        return self.message.split("\n", 1)[0]

    @classmethod
    def from_commit(cls, commit) -> CommitRef:
        ident = commit.author.decode("utf-8", "replace")
        name, _, email_part = ident.partition(" <")
        tz = timezone(timedelta(minutes=commit.author_timezone // 60))
        return cls(
            oid=commit.id.decode("ascii"),
            message=commit.message.decode("utf-8", "replace").rstrip("\n"),
            author=Author(name, email_part.rstrip(">"), datetime.fromtimestamp(commit.author_time, tz=tz)),
            parents=tuple(p.decode("ascii") for p in commit.parents),
        )


@dataclass(frozen=True)
class BlobContent:
    """Content of a file at some commit."""
    oid: str
    data: bytes

    @property
    def text(self) -> str:
        return self.data.decode("utf-8", "replace")


class Repository:
    """A working directory synchronized through git.

    Built from a path (remote ``origin``, branch ``master``) or from a
    share-like object exposing ``path``, ``remote_name`` and
    ``branch_name``.  An invalid repository answers every query with
    ``None``/``False``/``{}``/``""`` and reports why through
    :attr:`invalid_reason`.
    """

    COMMIT_MESSAGE_FILE = ".gitmessage~"
    DIRECTORY_PLACEHOLDER = ".gitignore"
    DEFAULT_COMMIT_MESSAGE = "Auto-commit from gitdocs"

    def __init__(
        self,
        path_or_share,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        author: str | None = None,
        email: str | None = None,
    ):
        if hasattr(path_or_share, "path"):
            path = path_or_share.path
            self.remote_name = getattr(path_or_share, "remote_name", DEFAULT_REMOTE)
            self.branch_name = getattr(path_or_share, "branch_name", None) or DEFAULT_BRANCH
        else:
            path = path_or_share
            self.remote_name = DEFAULT_REMOTE
            self.branch_name = DEFAULT_BRANCH
        self.timeout = timeout
        self._author = author
        self._email = email
        self._path = os.path.abspath(os.fspath(path))
        self._backend: Backend | None = None
        self._invalid_reason: InvalidReason | None = None

        if not os.path.isdir(self._path):
            self._invalid_reason = InvalidReason.DIRECTORY_MISSING
        else:
            try:
                self._backend = Backend.open(self._path)
            except NotGitRepository:
                self._invalid_reason = InvalidReason.NO_REPOSITORY

    def __repr__(self) -> str:
        return f"Repository({self._path!r})"

    @classmethod
    def clone(cls, path: str | os.PathLike[str], remote_url: str, **kwargs) -> Repository:
        """Clone *remote_url* into *path* and open it.

        Raises :class:`~gitdocs.exceptions.CloneError` when the remote is
        unreachable or not a repository.
        """
        Backend.clone(os.fspath(path), remote_url).close()
        return cls(path, **kwargs)

    def close(self) -> None:
        if self._backend is not None:
            self._backend.close()

    # -- validity ------------------------------------------------------------

    @property
    def valid(self) -> bool:
        return self._invalid_reason is None

    @property
    def invalid_reason(self) -> InvalidReason | None:
        return self._invalid_reason

    @property
    def root(self) -> str | None:
        return self._path if self.valid else None

    @property
    def available_remotes(self) -> list[str] | None:
        if not self.valid:
            return None
        return self._backend.remotes()

    @property
    def available_branches(self) -> list[str] | None:
        if not self.valid:
            return None
        return self._backend.branches()

    @property
    def current_oid(self) -> str | None:
        if not self.valid:
            return None
        head = self._backend.head()
        return head.decode("ascii") if head is not None else None

    def lock(self):
        """Context manager serializing mutations of this working directory."""
        return repo_lock(self._path)

    # -- helpers -------------------------------------------------------------

    @property
    def _tracking_ref(self) -> bytes:
        return f"refs/remotes/{self.remote_name}/{self.branch_name}".encode()

    @property
    def _exclude(self) -> frozenset[str]:
        return frozenset({self.COMMIT_MESSAGE_FILE})

    def _has_remote(self) -> bool:
        return self.remote_name is not None and self.remote_name in self._backend.remotes()

    def _signature(self) -> bytes:
        if self._author is not None and self._email is not None:
            return f"{self._author} <{self._email}>".encode()
        return self._backend.identity()

    def _working_changes(self):
        tracked = flatten_tree(self._backend.object_store, self._backend.tree_of(self._backend.head()))
        scan = scan_working_tree(self._path, exclude=self._exclude, tracked=tracked.keys())
        return scan, compare_files(scan.files, tracked)

    def _describe(self, result: BackendResult, label: str):
        """Map a non-OK backend result to its caller-facing value."""
        if result.status is Status.TIMEOUT:
            return f"{label} timed out for {self._path}"
        if result.status is Status.CONFLICT:
            return SyncStatus.CONFLICT
        return result.text

    # -- working tree --------------------------------------------------------

    @property
    def dirty(self) -> bool:
        """True when the working tree differs from HEAD.

        New empty directories count, even though git would not report
        them.
        """
        if not self.valid:
            return False
        scan, changes = self._working_changes()
        return not changes.in_sync or bool(scan.empty_dirs)

    @property
    def need_sync(self) -> bool:
        """True when HEAD and the remote-tracking ref point at different commits."""
        if not self.valid or not self._has_remote():
            return False
        return self._backend.head() != self._backend.get_ref(self._tracking_ref)

    def write_commit_message(self, text: str | None) -> None:
        """Set the message used by the next :meth:`commit`; empty clears it."""
        if not self.valid:
            return
        sentinel = Path(self._path) / self.COMMIT_MESSAGE_FILE
        with self.lock():
            if not text:
                sentinel.unlink(missing_ok=True)
                return
            with open(sentinel, "w", encoding="utf-8", newline="") as f:
                f.write(text)

    def _pending_message(self) -> str:
        sentinel = Path(self._path) / self.COMMIT_MESSAGE_FILE
        if sentinel.is_file():
            text = sentinel.read_text(encoding="utf-8", errors="replace")
            if text.strip():
                return text
        return self.DEFAULT_COMMIT_MESSAGE

    def commit(self) -> bool | None:
        """Commit every change in the working tree.

        Empty directories get a placeholder file first so they are kept.
        Returns False when there is nothing to commit.
        """
        if not self.valid:
            return None
        backend = self._backend
        root = Path(self._path)
        with self.lock():
            scan, changes = self._working_changes()
            if changes.in_sync and not scan.empty_dirs:
                return False
            if scan.empty_dirs:
                for rel in scan.empty_dirs:
                    (root / rel / self.DIRECTORY_PLACEHOLDER).touch()
                scan, changes = self._working_changes()

            writes = {}
            for rel in changes.add + changes.update:
                _oid, mode = scan.files[rel]
                writes[rel] = (backend.add_blob(read_local_file(root / rel)), mode)
            parent = backend.head()
            tree = rebuild_tree(backend.object_store, backend.tree_of(parent), writes, set(changes.delete))
            sha = backend.create_commit(
                tree,
                [parent] if parent is not None else [],
                self._pending_message(),
                self._signature(),
            )
            backend.set_head(sha)
            (root / self.COMMIT_MESSAGE_FILE).unlink(missing_ok=True)
            backend.refresh_index(tree)
        logger.debug(
            "Committed %s in %s (%d added, %d updated, %d deleted)",
            short_oid(sha), self._path, len(changes.add), len(changes.update), len(changes.delete),
        )
        return True

    # -- remote operations ---------------------------------------------------

    def fetch(self):
        """Update the remote-tracking refs.

        Returns :attr:`SyncStatus.OK`, :attr:`SyncStatus.NO_REMOTE`, a
        timeout message or the backend's error text.
        """
        if not self.valid:
            return None
        if not self._has_remote():
            return SyncStatus.NO_REMOTE
        with self.lock():
            result = self._backend.fetch(self.remote_name, timeout=self.timeout)
        if result.status is Status.OK:
            return SyncStatus.OK
        return self._describe(result, "Fetch")

    def merge(self):
        """Merge the remote-tracking branch into HEAD and the working tree.

        Returns :attr:`SyncStatus.OK` for up-to-date, fast-forward and
        clean merges, or the conflicted paths.  Each conflicted path is
        replaced on disk by ``"<name> (<short> original)"``,
        ``"<name> (<short>)"`` for the local side and
        ``"<name> (<short>)"`` for the remote side; a side without
        content is omitted.
        """
        if not self.valid:
            return None
        if not self._has_remote():
            return SyncStatus.NO_REMOTE
        backend = self._backend
        message = f"Merge remote-tracking branch '{self.remote_name}/{self.branch_name}'"
        with self.lock():
            remote_oid = backend.get_ref(self._tracking_ref)
            author = self._signature()

            def _run() -> BackendResult:
                return BackendResult.ok(plan_merge(backend, remote_oid, message=message, author=author))

            # The worker only adds objects; working tree, HEAD and index change here
            result = backend.run_bounded("merge", _run, self.timeout)
            if result.status is not Status.OK:
                return self._describe(result, "Merge")
            try:
                outcome = apply_merge(backend, result.value, exclude=self._exclude)
            except (MergeError, OSError) as exc:
                logger.warning("merge failed for %s: %s", self._path, exc)
                return str(exc)
        if outcome.conflicts:
            return list(outcome.conflicts)
        return SyncStatus.OK

    def _is_ahead(self, head: bytes | None, tracking: bytes | None) -> bool:
        if head is None or head == tracking:
            return False
        return tracking is None or not self._backend.is_ancestor(head, tracking)

    def push(self):
        """Push HEAD to the remote branch.

        Returns :attr:`SyncStatus.NOTHING` when HEAD is not ahead of the
        remote-tracking ref and :attr:`SyncStatus.CONFLICT` when the
        remote has commits HEAD lacks.
        """
        if not self.valid:
            return None
        if not self._has_remote():
            return SyncStatus.NO_REMOTE
        backend = self._backend
        with self.lock():
            if not self._is_ahead(backend.head(), backend.get_ref(self._tracking_ref)):
                return SyncStatus.NOTHING
            result = backend.push(self.remote_name, self.branch_name, timeout=self.timeout)
        if result.status is Status.OK:
            return SyncStatus.OK
        return self._describe(result, "Push")

    # -- queries -------------------------------------------------------------

    def grep(self, pattern: str, on_match: Callable[[str, str], None] | None = None) -> str:
        """Search tracked files for *pattern*, line by line.

        Returns ``"file:line\\n"`` for each match, or ``""`` on any
        failure.
        """
        if not self.valid:
            return ""
        try:
            regex = re.compile(pattern)
        except re.error:
            return ""
        backend = self._backend
        root = Path(self._path)

        def _run() -> BackendResult:
            matches: list[tuple[str, str]] = []
            tracked = flatten_tree(backend.object_store, backend.tree_of(backend.head()))
            for rel in sorted(tracked):
                full = root / rel
                if full.is_symlink() or not full.is_file():
                    continue
                data = full.read_bytes()
                if b"\0" in data[:8000]:
                    continue
                for line in data.decode("utf-8", "replace").splitlines():
                    if regex.search(line):
                        matches.append((rel, line))
            return BackendResult.ok(matches)

        result = backend.run_bounded("grep", _run, self.timeout)
        if result.status is not Status.OK:
            return ""
        output = []
        for rel, line in result.value:
            if on_match is not None:
                on_match(rel, line)
            output.append(f"{rel}:{line}\n")
        return "".join(output)

    def author_count(self, last_oid: str | None = None) -> dict[str, int]:
        """Commits per ``"Name <email>"`` newer than *last_oid*.

        All of history is counted when *last_oid* is None; an oid that is
        not in history counts nothing.
        """
        if not self.valid:
            return {}
        backend = self._backend
        head = backend.head()
        if head is None:
            return {}
        exclude = []
        if last_oid is not None:
            last = backend.resolve_commit(last_oid)
            if last is None or not backend.is_ancestor(last.id, head):
                return {}
            exclude.append(last.id)
        counts = Counter(
            commit.author.decode("utf-8", "replace") for commit in backend.walk(head, exclude)
        )
        return dict(counts)

    def commits_for(self, path: str, limit: int | None = None) -> list[CommitRef]:
        """Newest-first commits that changed *path*.

        A merge whose content at *path* matches one parent is skipped and
        only that parent is followed, so an edit merged in from another
        participant is credited to its own commit.
        """
        if not self.valid:
            return []
        backend = self._backend
        store = backend.object_store
        path = normalize_path(path)
        head = backend.head()
        if head is None:
            return []
        commits: list[CommitRef] = []
        seen = {head}
        queue = [(-store[head].commit_time, 0, head)]
        order = 1
        while queue and (limit is None or len(commits) < limit):
            _, _, oid = heapq.heappop(queue)
            current = store[oid]
            entry = entry_at_path(store, current.tree, path)
            follow = list(current.parents)
            for parent_oid in current.parents:
                if entry_at_path(store, store[parent_oid].tree, path) == entry:
                    follow = [parent_oid]
                    break
            else:
                if current.parents or entry is not None:
                    commits.append(CommitRef.from_commit(current))
            for parent_oid in follow:
                if parent_oid not in seen:
                    seen.add(parent_oid)
                    heapq.heappush(queue, (-store[parent_oid].commit_time, order, parent_oid))
                    order += 1
        return commits

    def last_commit_for(self, path: str) -> CommitRef | None:
        commits = self.commits_for(path, limit=1)
        return commits[0] if commits else None

    def blob_at(self, path: str, ref: str) -> BlobContent | None:
        """Content of *path* in commit *ref* (full or abbreviated oid)."""
        if not self.valid:
            return None
        backend = self._backend
        commit = backend.resolve_commit(ref)
        if commit is None:
            return None
        try:
            path = normalize_path(path)
        except ValueError:
            return None
        entry = entry_at_path(backend.object_store, commit.tree, path)
        if entry is None or is_tree_mode(entry[1]):
            return None
        sha, _mode = entry
        return BlobContent(sha.decode("ascii"), backend[sha].data)
