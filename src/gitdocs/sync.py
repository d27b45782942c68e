"""One commit, fetch, merge, push pass over a repository."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .repository import Repository, SyncStatus

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    """Result of :func:`synchronize`.

    Each step field holds what the matching :class:`Repository` method
    returned for the last attempt; all are None for an invalid
    repository.

    Attributes:
        committed: Result of ``commit()``.
        fetch: Result of ``fetch()``.
        merge: Result of ``merge()``; the conflicted paths on conflict.
        push: Result of ``push()``.
        conflicts: Every path conflicted during the pass.
    """
    committed: bool | None = None
    fetch: object = None
    merge: object = None
    push: object = None
    conflicts: list[str] = field(default_factory=list)

    @property
    def error(self) -> str | None:
        """Timeout or failure text from the first step that had one."""
        for value in (self.fetch, self.merge, self.push):
            if isinstance(value, str):
                return value
        return None

    @property
    def ok(self) -> bool:
        return self.error is None and self.push is not SyncStatus.CONFLICT and self.committed is not None


def _fetch_and_merge(repository: Repository, report: SyncReport) -> bool:
    report.fetch = repository.fetch()
    if report.fetch is not SyncStatus.OK:
        return False
    report.merge = repository.merge()
    if isinstance(report.merge, list):
        report.conflicts.extend(p for p in report.merge if p not in report.conflicts)
        return True
    return report.merge is SyncStatus.OK


def synchronize(repository: Repository) -> SyncReport:
    """Commit local changes, then bring in and send out remote ones.

    Holds the repository lock for the whole pass.  A push rejected
    because the remote moved triggers one more fetch, merge and push.
    Errors are reported in the returned :class:`SyncReport`.
    """
    report = SyncReport()
    if not repository.valid:
        return report

    with repository.lock():
        report.committed = repository.commit()
        if not _fetch_and_merge(repository, report) and report.fetch is not SyncStatus.NO_REMOTE:
            logger.warning("Sync of %s stopped: %s", repository.root, report.error)
            return report
        report.push = repository.push()
        if report.push is SyncStatus.CONFLICT:
            logger.info("Push of %s rejected, retrying after merge", repository.root)
            if _fetch_and_merge(repository, report):
                report.push = repository.push()

    if report.conflicts:
        logger.info("Sync of %s left conflicts: %s", repository.root, ", ".join(report.conflicts))
    return report
