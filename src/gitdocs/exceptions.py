"""Exceptions for gitdocs."""


class GitDocsError(Exception):
    """Base class for gitdocs errors."""


class CloneError(GitDocsError):
    """Raised when :meth:`~gitdocs.Repository.clone` cannot reach or read the remote."""


class NoHistoryError(GitDocsError):
    """Raised by :meth:`~gitdocs.RepositoryPath.meta` for a path with no commits."""


class MergeError(GitDocsError):
    """Raised inside a merge that cannot proceed without losing local changes."""
