"""Ignore rules for working-tree scans.

Combines ``.git/info/exclude`` with every ``.gitignore`` found while
walking the tree.  Matching itself is ``dulwich.ignore.IgnoreFilter``.
"""

from __future__ import annotations

from pathlib import Path

from dulwich.ignore import IgnoreFilter


def _load_filter(path: Path) -> IgnoreFilter | None:
    """Filter for the patterns in *path*; None when it has none."""
    if not path.is_file():
        return None
    patterns = [
        line for line in (raw.strip() for raw in path.read_bytes().splitlines())
        if line and not line.startswith(b"#")
    ]
    return IgnoreFilter(patterns) if patterns else None


class GitIgnoreFilter:
    """Answers "is this path ignored?" for one working tree.

    Directories must be announced with :meth:`enter_directory`, parents
    before children, as ``os.walk`` does top-down.
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        self._exclude = _load_filter(self._root / ".git" / "info" / "exclude")
        self._per_dir: dict[str, IgnoreFilter | None] = {}

    def enter_directory(self, abs_dir: Path, rel_dir: str) -> None:
        if rel_dir not in self._per_dir:
            self._per_dir[rel_dir] = _load_filter(abs_dir / ".gitignore")

    def is_ignored(self, rel_path: str, *, is_dir: bool = False) -> bool:
        suffix = "/" if is_dir else ""
        if self._exclude is not None and self._exclude.is_ignored(rel_path + suffix):
            return True

        # The deepest .gitignore with a match wins; each one matches
        # paths relative to its own directory.
        parts = rel_path.split("/")
        verdict = False
        for depth in range(len(parts)):
            rules = self._per_dir.get("/".join(parts[:depth]))
            if rules is None:
                continue
            matched = rules.is_ignored("/".join(parts[depth:]) + suffix)
            if matched is not None:
                verdict = matched
        return verdict
