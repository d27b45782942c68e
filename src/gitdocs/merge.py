"""Three-way merge of flattened trees with renamed conflict artifacts.

A path both sides changed differently is dropped from the merged tree
and replaced by up to three siblings named after the short blob oids of
each side::

    notes.txt (3f2a1bc original)    # common ancestor
    notes.txt (a91c0de)             # local
    notes.txt (77be012)             # remote
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from .exceptions import MergeError
from .tree import flatten_tree, rebuild_tree
from .worktree import checkout_changes, compare_files, scan_working_tree

logger = logging.getLogger(__name__)

SHORT_OID_LENGTH = 7

Entry = tuple[bytes, int]


def short_oid(oid: bytes | str) -> str:
    if isinstance(oid, bytes):
        oid = oid.decode("ascii")
    return oid[:SHORT_OID_LENGTH]


@dataclass(frozen=True)
class ConflictEntry:
    """A path changed differently on both sides of a merge."""
    path: str
    ancestor_oid: bytes | None
    local_oid: bytes | None
    remote_oid: bytes | None


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

def iter_commits_and_parents(object_store, oids: Iterable[bytes]) -> Iterator[bytes]:
    """Breadth-first walk of commit oids, first parents first."""
    queue = deque(oids)
    visited: set[bytes] = set()
    while queue:
        oid = queue.popleft()
        if not oid or oid in visited:
            continue
        visited.add(oid)
        yield oid
        parents = object_store[oid].parents
        queue.extendleft(parents[:1])
        queue.extend(parents[1:])


def merge_base(object_store, oid1: bytes, oid2: bytes) -> bytes | None:
    """Nearest commit reachable from both, or None for unrelated histories."""
    ancestors = set(iter_commits_and_parents(object_store, [oid1]))
    for oid in iter_commits_and_parents(object_store, [oid2]):
        if oid in ancestors:
            return oid
    return None


# ---------------------------------------------------------------------------
# Tree merge
# ---------------------------------------------------------------------------

def compare_trees(*trees: dict[str, Entry]) -> Iterator[tuple[str, list[Entry | None]]]:
    entries: dict[str, list[Entry | None]] = defaultdict(lambda: [None] * len(trees))
    for i, tree in enumerate(trees):
        for path, entry in tree.items():
            entries[path][i] = entry
    for path in sorted(entries):
        yield path, entries[path]


def three_way(
    base: dict[str, Entry],
    local: dict[str, Entry],
    remote: dict[str, Entry],
) -> tuple[dict[str, Entry], list[ConflictEntry]]:
    """Merge flattened trees; conflicting paths are left out of the result."""
    merged: dict[str, Entry] = {}
    conflicts: list[ConflictEntry] = []
    for path, (o_base, o_local, o_remote) in compare_trees(base, local, remote):
        if o_local == o_remote:
            chosen = o_local
        elif o_local == o_base:
            chosen = o_remote
        elif o_remote == o_base:
            chosen = o_local
        else:
            conflicts.append(ConflictEntry(
                path,
                o_base[0] if o_base else None,
                o_local[0] if o_local else None,
                o_remote[0] if o_remote else None,
            ))
            continue
        if chosen is not None:
            merged[path] = chosen
    return merged, conflicts


def materialize_conflicts(
    merged: dict[str, Entry],
    conflicts: list[ConflictEntry],
    base: dict[str, Entry],
    local: dict[str, Entry],
    remote: dict[str, Entry],
) -> list[str]:
    """Add the renamed artifacts for *conflicts* to *merged*.

    Returns the conflicted paths in order.
    """
    for conflict in conflicts:
        path = conflict.path
        if conflict.ancestor_oid is not None:
            merged[f"{path} ({short_oid(conflict.ancestor_oid)} original)"] = base[path]
        if conflict.local_oid is not None:
            merged[f"{path} ({short_oid(conflict.local_oid)})"] = local[path]
        if conflict.remote_oid is not None:
            merged[f"{path} ({short_oid(conflict.remote_oid)})"] = remote[path]
    paths = [conflict.path for conflict in conflicts]
    paths.extend(_resolve_prefix_collisions(merged))
    return sorted(set(paths))


def _resolve_prefix_collisions(merged: dict[str, Entry]) -> list[str]:
    """Rename files that one side turned into a directory on the other."""
    dirs: set[str] = set()
    for path in merged:
        parts = path.split("/")
        for i in range(1, len(parts)):
            dirs.add("/".join(parts[:i]))
    renamed = []
    for path in sorted(p for p in merged if p in dirs):
        entry = merged.pop(path)
        merged[f"{path} ({short_oid(entry[0])})"] = entry
        renamed.append(path)
    return renamed


# ---------------------------------------------------------------------------
# Working-tree merge
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MergePlan:
    """A merge written to the object store but not yet to disk or refs.

    Attributes:
        local_oid: HEAD the plan was computed against.
        head: The commit HEAD moves to; equal to *local_oid* when up to date.
        tree: Tree of *head*.
        old: Flattened tree of *local_oid*.
        new: Flattened tree of *head*.
        conflicts: Conflicted relative paths, sorted.
        fast_forward: True when HEAD moves without a merge commit.
    """
    local_oid: bytes | None
    head: bytes | None
    tree: bytes | None = None
    old: dict[str, Entry] = field(default_factory=dict)
    new: dict[str, Entry] = field(default_factory=dict)
    conflicts: tuple[str, ...] = ()
    fast_forward: bool = False

    @property
    def up_to_date(self) -> bool:
        return self.head == self.local_oid


@dataclass(frozen=True)
class MergeOutcome:
    """What :func:`apply_merge` did.

    Attributes:
        head: The new HEAD oid (unchanged when already up to date).
        conflicts: Conflicted relative paths, sorted.
        fast_forward: True when HEAD moved without a merge commit.
    """
    head: bytes | None
    conflicts: tuple[str, ...] = ()
    fast_forward: bool = False


def _check_overwrite(root: str, local: dict[str, Entry], touched: set[str], exclude: frozenset[str]) -> None:
    scan = scan_working_tree(root, exclude=exclude, tracked=local.keys())
    pending = compare_files(scan.files, local).paths() & touched
    if pending:
        raise MergeError(
            "Your local changes to the following files would be overwritten by merge:\n\t"
            + "\n\t".join(sorted(pending))
        )


def plan_merge(backend, remote_oid: bytes | None, *, message: str, author: bytes) -> MergePlan:
    """Compute the merge of commit *remote_oid* into HEAD.

    Only adds objects: trees and, unless fast-forwarding, one merge
    commit with parents ``(HEAD, remote_oid)``, even when conflicts were
    materialized.  Refs, index and working tree are left alone.
    """
    store = backend.object_store
    local_oid = backend.head()
    if remote_oid is None or remote_oid == local_oid:
        return MergePlan(local_oid, local_oid)
    if local_oid is not None and backend.is_ancestor(remote_oid, local_oid):
        return MergePlan(local_oid, local_oid)

    local = flatten_tree(store, backend.tree_of(local_oid))
    remote_tree = backend.tree_of(remote_oid)
    remote = flatten_tree(store, remote_tree)

    if local_oid is None or backend.is_ancestor(local_oid, remote_oid):
        return MergePlan(local_oid, remote_oid, remote_tree, local, remote, fast_forward=True)

    base_oid = merge_base(store, local_oid, remote_oid)
    base = flatten_tree(store, backend.tree_of(base_oid))
    merged, conflicts = three_way(base, local, remote)
    conflicted = materialize_conflicts(merged, conflicts, base, local, remote)

    writes = {path: entry for path, entry in merged.items() if local.get(path) != entry}
    removes = set(local) - set(merged)
    tree = rebuild_tree(store, backend.tree_of(local_oid), writes, removes)
    head = backend.create_commit(tree, [local_oid, remote_oid], message, author)
    return MergePlan(local_oid, head, tree, local, merged, tuple(conflicted))


def apply_merge(backend, plan: MergePlan, *, exclude: frozenset[str] = frozenset()) -> MergeOutcome:
    """Check out *plan* into the working tree, then move HEAD and the index.

    Raises :class:`MergeError`, writing nothing, when HEAD moved since
    the plan was computed or uncommitted changes would be overwritten.
    """
    if plan.up_to_date:
        return MergeOutcome(plan.head)
    if backend.head() != plan.local_oid:
        raise MergeError(f"HEAD of {backend.path} moved while the merge was computed")

    _check_overwrite(backend.path, plan.old, compare_files(plan.new, plan.old).paths(), exclude)
    checkout_changes(backend.object_store, backend.path, plan.old, plan.new)
    backend.set_head(plan.head)
    backend.refresh_index(plan.tree)

    if plan.fast_forward:
        logger.info("Fast-forwarded %s to %s", backend.path, short_oid(plan.head))
    elif plan.conflicts:
        logger.info("Merged %s with %d conflicts: %s", backend.path, len(plan.conflicts), ", ".join(plan.conflicts))
    else:
        logger.info("Merged %s into %s", short_oid(plan.head), backend.path)
    return MergeOutcome(plan.head, plan.conflicts, plan.fast_forward)
