from .repository import Repository, CommitRef, Author, BlobContent, InvalidReason, SyncStatus
from .path import RepositoryPath, FileListingItem
from .share import Share
from .sync import synchronize, SyncReport
from .merge import ConflictEntry
from .exceptions import GitDocsError, CloneError, NoHistoryError, MergeError

__all__ = [
    "Repository", "CommitRef", "Author", "BlobContent", "InvalidReason", "SyncStatus",
    "RepositoryPath", "FileListingItem", "Share", "synchronize", "SyncReport", "ConflictEntry",
    "GitDocsError", "CloneError", "NoHistoryError", "MergeError",
]
