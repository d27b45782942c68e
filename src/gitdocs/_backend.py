"""Single dulwich-backed interface to one working-directory repository.

Object reads, ref updates, index refresh and commit creation are plain
method calls.  Network and merge operations go through
:meth:`Backend.run_bounded`, which enforces a timeout and reports the
outcome as a :class:`BackendResult` instead of raising.
"""

from __future__ import annotations

import enum
import logging
import os
import shutil
import threading
import time
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from dulwich.client import get_transport_and_path as _get_transport_and_path
from dulwich.errors import GitProtocolError, NotGitRepository
from dulwich.index import Index, index_entry_from_stat
from dulwich.objects import Blob as _DBlob
from dulwich.objects import Commit as _DCommit
from dulwich.protocol import ZERO_SHA as _ZERO_SHA
from dulwich.repo import Repo as _DRepo

from .exceptions import CloneError, GitDocsError
from .tree import GIT_FILEMODE_LINK, flatten_tree
from .worktree import checkout_changes

logger = logging.getLogger(__name__)

# Errors raised by dulwich, transports and the filesystem that become
# failure results at the bounded-operation seam.
BACKEND_ERRORS = (GitProtocolError, NotGitRepository, GitDocsError, OSError, KeyError, ValueError)

DEFAULT_SIGNATURE = b"gitdocs <gitdocs@localhost>"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class Status(enum.Enum):
    OK = "ok"
    TIMEOUT = "timeout"
    FAILURE = "failure"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class BackendResult:
    """Outcome of a bounded backend operation.

    Attributes:
        status: What happened.
        text: Error text for ``FAILURE``.
        conflicts: Conflicted paths for a ``CONFLICT`` merge.
        value: Operation-specific payload for ``OK``.
    """
    status: Status
    text: str = ""
    conflicts: tuple[str, ...] = ()
    value: object = None

    @classmethod
    def ok(cls, value: object = None) -> BackendResult:
        return cls(Status.OK, value=value)

    @classmethod
    def timed_out(cls) -> BackendResult:
        return cls(Status.TIMEOUT)

    @classmethod
    def failed(cls, text: str) -> BackendResult:
        return cls(Status.FAILURE, text=text)

    @classmethod
    def conflicted(cls, paths=()) -> BackendResult:
        return cls(Status.CONFLICT, conflicts=tuple(paths))


def _error_text(exc: BaseException) -> str:
    text = str(exc)
    if isinstance(exc, KeyError) and exc.args:
        text = str(exc.args[0])
    return text or type(exc).__name__


def _tz_offset() -> int:
    """Local UTC offset in seconds."""
    offset = datetime.now().astimezone().utcoffset()
    return int(offset.total_seconds()) if offset is not None else 0


# ---------------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------------

class Backend:
    """Wraps a non-bare dulwich ``Repo``."""

    def __init__(self, drepo: _DRepo):
        self._drepo = drepo

    def __repr__(self) -> str:
        return f"Backend({self.path!r})"

    @classmethod
    def open(cls, path: str) -> Backend:
        """Open the repository rooted at *path*.

        Raises ``NotGitRepository`` when *path* holds no work-tree
        repository.
        """
        drepo = _DRepo(path)
        if drepo.bare:
            drepo.close()
            raise NotGitRepository(f"{path} is a bare repository")
        return cls(drepo)

    @classmethod
    def clone(cls, path: str, url: str, *, remote: str = "origin") -> Backend:
        """Create a working copy of *url* at *path*.

        Raises :class:`CloneError` when the remote cannot be read; a
        partially created repository is removed.
        """
        created = not os.path.exists(path)
        try:
            drepo = _DRepo.init(path, mkdir=created)
        except OSError as exc:
            raise CloneError(f"Cannot create {path}: {exc}") from exc
        backend = cls(drepo)
        try:
            backend._clone_from(url, remote)
        except BACKEND_ERRORS as exc:
            drepo.close()
            if created:
                shutil.rmtree(path, ignore_errors=True)
            else:
                shutil.rmtree(os.path.join(path, ".git"), ignore_errors=True)
            raise CloneError(f"Unable to clone {url}: {_error_text(exc)}") from exc
        return backend

    def _clone_from(self, url: str, remote: str) -> None:
        config = self._drepo.get_config()
        section = (b"remote", remote.encode())
        config.set(section, b"url", url.encode())
        config.set(section, b"fetch", f"+refs/heads/*:refs/remotes/{remote}/*".encode())
        config.write_to_path()

        result = self._fetch_refs(url, remote)
        symrefs = getattr(result, "symrefs", None) or {}
        head_target = symrefs.get(b"HEAD")
        remote_refs = self.remote_heads(result.refs)
        if head_target is None or head_target not in remote_refs:
            head_target = next(iter(sorted(remote_refs)), b"refs/heads/master")
        self._drepo.refs.set_symbolic_ref(b"HEAD", head_target)

        sha = remote_refs.get(head_target)
        if sha is None:
            logger.debug("Cloned empty repository %s", url)
            return
        self._drepo.refs[head_target] = sha
        tree = self._drepo[sha].tree
        checkout_changes(self.object_store, self.path, {}, flatten_tree(self.object_store, tree))
        self.refresh_index(tree)
        logger.info("Cloned %s into %s", url, self.path)

    def close(self) -> None:
        self._drepo.close()

    # -- objects -------------------------------------------------------------

    @property
    def path(self) -> str:
        return self._drepo.path

    @property
    def object_store(self):
        return self._drepo.object_store

    def __getitem__(self, sha: bytes):
        return self._drepo.object_store[sha]

    def __contains__(self, sha: bytes) -> bool:
        return sha in self._drepo.object_store

    def add_blob(self, data: bytes) -> bytes:
        blob = _DBlob.from_string(data)
        self._drepo.object_store.add_object(blob)
        return blob.id

    def resolve_commit(self, ref: str | bytes) -> _DCommit | None:
        """Look up a commit by full or abbreviated hex oid."""
        ref_bytes = ref.encode() if isinstance(ref, str) else ref
        ref_bytes = ref_bytes.lower()
        store = self._drepo.object_store
        if len(ref_bytes) == 40:
            candidates = [ref_bytes] if ref_bytes in store else []
        elif len(ref_bytes) >= 4:
            # Short hash: prefix scan
            candidates = (sha for sha in store if sha.startswith(ref_bytes))
        else:
            candidates = []
        for sha in candidates:
            obj = store[sha]
            if isinstance(obj, _DCommit):
                return obj
        return None

    def tree_of(self, sha: bytes | None) -> bytes | None:
        if sha is None:
            return None
        return self._drepo[sha].tree

    def walk(self, include: bytes, exclude: list[bytes] | None = None) -> Iterator[_DCommit]:
        """Commits reachable from *include*, newest first."""
        for entry in self._drepo.get_walker(include=[include], exclude=exclude or []):
            yield entry.commit

    def is_ancestor(self, ancestor: bytes, descendant: bytes) -> bool:
        """True if *ancestor* is reachable from *descendant* (or equal)."""
        store = self._drepo.object_store
        if ancestor not in store:
            return False
        seen: set[bytes] = set()
        queue = deque([descendant])
        while queue:
            sha = queue.popleft()
            if sha == ancestor:
                return True
            if sha in seen:
                continue
            seen.add(sha)
            queue.extend(store[sha].parents)
        return False

    # -- refs and config -----------------------------------------------------

    def head(self) -> bytes | None:
        try:
            return self._drepo.refs[b"HEAD"]
        except KeyError:
            return None

    def set_head(self, sha: bytes) -> None:
        # Follows the HEAD symref onto the checked-out branch
        self._drepo.refs[b"HEAD"] = sha

    def get_ref(self, name: bytes) -> bytes | None:
        try:
            return self._drepo.refs[name]
        except KeyError:
            return None

    def set_ref(self, name: bytes, sha: bytes) -> None:
        self._drepo.refs[name] = sha

    def branches(self) -> list[str]:
        return sorted(name.decode() for name in self._drepo.refs.keys(base=b"refs/heads/"))

    def remotes(self) -> list[str]:
        config = self._drepo.get_config()
        names = []
        for section in config.sections():
            if len(section) == 2 and section[0] == b"remote":
                names.append(section[1].decode())
        return names

    def remote_url(self, remote: str) -> str | None:
        config = self._drepo.get_config()
        try:
            return config.get((b"remote", remote.encode()), b"url").decode()
        except KeyError:
            return None

    def identity(self) -> bytes:
        """``Name <email>`` from git config, or the gitdocs default."""
        config = self._drepo.get_config_stack()
        try:
            name = config.get((b"user",), b"name")
            email = config.get((b"user",), b"email")
        except KeyError:
            return DEFAULT_SIGNATURE
        return name + b" <" + email + b">"

    # -- commits and index ---------------------------------------------------

    def create_commit(
        self,
        tree: bytes,
        parents: list[bytes],
        message: str,
        author: bytes,
        committer: bytes | None = None,
    ) -> bytes:
        c = _DCommit()
        c.tree = tree
        c.parents = parents
        c.author = author
        c.committer = committer or author
        c.author_time = c.commit_time = int(time.time())
        c.author_timezone = c.commit_timezone = _tz_offset()
        msg = message.encode() if isinstance(message, str) else message
        if not msg.endswith(b"\n"):
            msg += b"\n"
        c.message = msg
        c.encoding = b"UTF-8"
        self._drepo.object_store.add_object(c)
        return c.id

    def refresh_index(self, tree: bytes | None) -> None:
        """Rewrite the index to match *tree*, stat'ing the working files."""
        index = Index(self._drepo.index_path(), read=False)
        root = Path(self.path)
        for rel, (sha, mode) in flatten_tree(self.object_store, tree).items():
            full = root / rel
            try:
                st = os.lstat(full)
            except FileNotFoundError:
                continue
            if mode != GIT_FILEMODE_LINK and not full.is_file():
                continue
            index[rel.encode("utf-8", "surrogateescape")] = index_entry_from_stat(st, sha, mode=mode)
        index.write()

    # -- bounded operations --------------------------------------------------

    def run_bounded(self, label: str, func: Callable[[], BackendResult], timeout: float) -> BackendResult:
        """Run *func* on a worker thread, giving up after *timeout* seconds.

        Backend errors become ``FAILURE`` results; anything else
        propagates.  A timed-out worker is abandoned, not cancelled.
        """
        outcome: dict[str, object] = {}

        def _target():
            try:
                outcome["result"] = func()
            except Exception as exc:  # re-raised or converted below
                outcome["error"] = exc

        worker = threading.Thread(target=_target, name=f"gitdocs-{label}", daemon=True)
        worker.start()
        worker.join(timeout)
        if worker.is_alive():
            logger.warning("%s timed out after %ss for %s", label, timeout, self.path)
            return BackendResult.timed_out()

        error = outcome.get("error")
        if error is not None:
            if isinstance(error, BACKEND_ERRORS):
                logger.warning("%s failed for %s: %s", label, self.path, error)
                return BackendResult.failed(_error_text(error))
            raise error
        return outcome["result"]

    # -- transport -----------------------------------------------------------

    @staticmethod
    def remote_heads(refs: dict) -> dict[bytes, bytes]:
        return {
            ref: sha
            for ref, sha in refs.items()
            if ref.startswith(b"refs/heads/") and sha is not None and sha != _ZERO_SHA
        }

    def _fetch_refs(self, url: str, remote: str):
        client, path = _get_transport_and_path(url)
        result = client.fetch(path, self._drepo)
        prefix = f"refs/remotes/{remote}/".encode()
        for ref, sha in self.remote_heads(result.refs).items():
            self._drepo.refs[prefix + ref[len(b"refs/heads/"):]] = sha
        return result

    def fetch(self, remote: str, *, timeout: float) -> BackendResult:
        """Fetch *remote*'s branches into ``refs/remotes/<remote>/*``."""
        def _run() -> BackendResult:
            url = self.remote_url(remote)
            if url is None:
                raise KeyError(f"No url configured for remote {remote!r}")
            result = self._fetch_refs(url, remote)
            logger.debug("Fetched %d refs from %s", len(result.refs), url)
            return BackendResult.ok()

        return self.run_bounded("fetch", _run, timeout)

    def push(self, remote: str, branch: str, *, timeout: float) -> BackendResult:
        """Push HEAD to ``refs/heads/<branch>`` on *remote*.

        A remote branch that is not an ancestor of HEAD is left untouched
        and reported as ``CONFLICT``.
        """
        ref = f"refs/heads/{branch}".encode()
        tracking = f"refs/remotes/{remote}/{branch}".encode()

        def _run() -> BackendResult:
            url = self.remote_url(remote)
            if url is None:
                raise KeyError(f"No url configured for remote {remote!r}")
            local = self.head()
            rejected: list[bytes] = []

            def update_refs(remote_refs):
                current = remote_refs.get(ref)
                if current is not None and current != _ZERO_SHA and not self.is_ancestor(current, local):
                    rejected.append(current)
                    return {}
                return {ref: local}

            def gen_pack(have, want, *, ofs_delta=False, progress=None):
                return self._drepo.object_store.generate_pack_data(
                    have, want, ofs_delta=ofs_delta, progress=progress,
                )

            client, path = _get_transport_and_path(url)
            result = client.send_pack(path, update_refs, gen_pack)
            if rejected:
                logger.info("Push to %s rejected: remote has diverged", url)
                return BackendResult.conflicted()
            ref_status = getattr(result, "ref_status", None) or {}
            error = ref_status.get(ref)
            if error:
                if "non-fast-forward" in error or "fetch first" in error:
                    return BackendResult.conflicted()
                return BackendResult.failed(error)
            self._drepo.refs[tracking] = local
            logger.info("Pushed %s to %s", local.decode()[:7], url)
            return BackendResult.ok()

        return self.run_bounded("push", _run, timeout)
