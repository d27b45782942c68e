"""Share: the identity of one synchronized directory."""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Share:
    """Where a repository lives and what it syncs with.

    Attributes:
        path: Working directory of the repository.
        remote_name: Configured remote to sync with, or None for a
            local-only share.
        branch_name: Branch pushed to and merged from.
    """
    path: str | os.PathLike[str]
    remote_name: str | None = "origin"
    branch_name: str = "master"
