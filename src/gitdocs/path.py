"""RepositoryPath: a versioned handle on one location inside a repository."""

from __future__ import annotations

import logging
import mimetypes
import os
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, NamedTuple

from .exceptions import NoHistoryError
from .tree import normalize_path

if TYPE_CHECKING:
    from .repository import Repository

logger = logging.getLogger(__name__)

_BINARY_MIME_PREFIXES = ("image/", "audio/", "video/", "font/")
_TEXT_MIME_TYPES = {"image/svg+xml"}
_SNIFF_SIZE = 8000


class FileListingItem(NamedTuple):
    name: str
    is_directory: bool


def _ensure_newline(data: bytes) -> bytes:
    return data if data.endswith(b"\n") else data + b"\n"


def _listing_order(names: list[str]) -> list[str]:
    """Visible names sorted, then dot names sorted."""
    visible = sorted(n for n in names if not n.startswith("."))
    hidden = sorted(n for n in names if n.startswith("."))
    return visible + hidden


class RepositoryPath:
    """A file or directory in a repository's working tree, plus its history.

    *relative_path* may start with ``/``; it is stored without one and the
    repository root is ``""``.
    """

    def __init__(self, repository: Repository, relative_path: str | os.PathLike[str] = ""):
        if repository.root is None:
            raise ValueError(f"{repository!r} is not a valid repository")
        self.repository = repository
        self.relative_path = normalize_path(relative_path)
        self._root = Path(repository.root)

    def __repr__(self) -> str:
        return f"RepositoryPath({self.repository.root!r}, {self.relative_path!r})"

    @property
    def relative_dirname(self) -> str:
        """Directory of the path relative to the root; ``""`` at the top level."""
        dirname = os.path.dirname(self.relative_path)
        return "" if dirname == "." else dirname

    def join(self, component: str) -> RepositoryPath:
        joined = f"{self.relative_path}/{component}" if self.relative_path else component
        return RepositoryPath(self.repository, joined)

    @property
    def _full(self) -> Path:
        return self._root / self.relative_path if self.relative_path else self._root

    # -- mutation ------------------------------------------------------------

    def write(self, content: str | bytes) -> None:
        """Replace the file with *content*, newline-terminated."""
        data = content.encode("utf-8") if isinstance(content, str) else content
        full = self._full
        with self.repository.lock():
            full.parent.mkdir(parents=True, exist_ok=True)
            full.write_bytes(_ensure_newline(data))

    def touch(self) -> None:
        full = self._full
        with self.repository.lock():
            full.parent.mkdir(parents=True, exist_ok=True)
            full.touch()

    def mkdir(self) -> None:
        """Create the directory and its parents.

        Raises ``FileExistsError`` when a file is in the way.
        """
        with self.repository.lock():
            self._full.mkdir(parents=True, exist_ok=True)

    def mv(self, source: str | os.PathLike[str]) -> None:
        """Move the file at *source* here, replacing any existing file."""
        full = self._full
        with self.repository.lock():
            full.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(os.fspath(source), full)

    def remove(self) -> None:
        full = self._full
        with self.repository.lock():
            if full.is_dir() and not full.is_symlink():
                shutil.rmtree(full)
            elif full.exists() or full.is_symlink():
                full.unlink()

    def revert(self, ref: str) -> None:
        """Restore the content the file had in commit *ref*.

        Does nothing when the file is absent at *ref*.
        """
        blob = self.repository.blob_at(self.relative_path, ref)
        if blob is None:
            return None
        logger.debug("Reverting %s to %s", self.relative_path, ref)
        return self.write(blob.text)

    # -- queries -------------------------------------------------------------

    def exists(self) -> bool:
        return self._full.exists()

    def is_directory(self) -> bool:
        return self._full.is_dir()

    def is_text(self) -> bool:
        """True for an existing file that is empty or looks like text."""
        full = self._full
        if not full.is_file():
            return False
        if full.stat().st_size == 0:
            return True
        mime, _ = mimetypes.guess_type(full.name)
        if mime is not None and mime.startswith(_BINARY_MIME_PREFIXES) and mime not in _TEXT_MIME_TYPES:
            return False
        with open(full, "rb") as f:
            return b"\0" not in f.read(_SNIFF_SIZE)

    def meta(self) -> dict:
        """Author, size and modification time from the last commit touching the path.

        Size is ``-1`` for zero-byte files and empty directories; a
        directory's size is the sum of the files below it.

        Raises:
            NoHistoryError: The path has never been committed.
        """
        commit = self.repository.last_commit_for(self.relative_path)
        if commit is None:
            raise NoHistoryError(f"File {self.relative_path!r} has no commits")
        size = self._size()
        return {
            "author": commit.author.name,
            "size": size if size > 0 else -1,
            "modified": commit.author.time,
        }

    def _size(self) -> int:
        full = self._full
        if full.is_file():
            return full.stat().st_size
        total = 0
        if full.is_dir():
            for dirpath, dirnames, filenames in os.walk(full):
                dirnames[:] = [d for d in dirnames if d != ".git"]
                for name in filenames:
                    total += os.lstat(os.path.join(dirpath, name)).st_size
        return total

    def absolute_path(self, ref: str | None = None) -> str:
        """Path on disk, or of a temporary file holding the content at *ref*.

        Temporary files are left for the caller to remove.
        """
        if ref is None:
            return str(self._full)
        blob = self.repository.blob_at(self.relative_path, ref)
        data = blob.data if blob is not None else b""
        suffix = Path(self.relative_path).suffix
        fd, tmp_path = tempfile.mkstemp(prefix="gitdocs-", suffix=suffix)
        with os.fdopen(fd, "wb") as f:
            f.write(_ensure_newline(data))
        return tmp_path

    @property
    def readme_path(self) -> str | None:
        """Absolute path of the first ``README*`` file in the directory."""
        full = self._full
        if not full.is_dir():
            return None
        for name in sorted(os.listdir(full)):
            if name.lower().startswith("readme") and (full / name).is_file():
                return str(full / name)
        return None

    def file_listing(self) -> list[FileListingItem] | None:
        """Directory entries, directories first.

        ``.git``, directory placeholders and names ending in ``~`` are
        left out.
        """
        full = self._full
        if not full.is_dir():
            return None
        placeholder = self.repository.DIRECTORY_PLACEHOLDER
        names = [
            name for name in os.listdir(full)
            if name not in (".git", placeholder) and not name.endswith("~")
        ]
        items = [FileListingItem(name, (full / name).is_dir()) for name in _listing_order(names)]
        return [i for i in items if i.is_directory] + [i for i in items if not i.is_directory]

    def content(self) -> str | None:
        full = self._full
        if not full.is_file():
            return None
        with open(full, encoding="utf-8", errors="replace", newline="") as f:
            return f.read()

    def revisions(self) -> list[dict]:
        """Commits touching the path, newest first, as plain dicts."""
        return [
            {
                "commit": commit.short_oid,
                "subject": commit.subject,
                "author": commit.author.name,
                "date": commit.author.time,
            }
            for commit in self.repository.commits_for(self.relative_path)
        ]
