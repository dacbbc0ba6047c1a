"""Branch relationships computed from the commit graph of a git repository."""

from __future__ import annotations

import logging
import os
import subprocess
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import AbstractSet, Callable, Iterable, Mapping, Sequence, TypeVar

from branchstack.topology import MAIN_BRANCHES, is_main_branch, is_shadow_branch

log = logging.getLogger(__name__)

_T = TypeVar("_T")
_R = TypeVar("_R")

_HEADS = "refs/heads/"


class GitError(RuntimeError):
    """Raised when a git command fails."""


class GitBackend:
    """Read-only queries against a git repository, answered by the git command."""

    def __init__(self, path: str | os.PathLike[str] = ".") -> None:
        self.path = Path(path)
        self._run("rev-parse", "--git-dir")

    def _run(self, *args: str) -> str:
        try:
            completed = subprocess.run(
                ["git", *args],
                cwd=self.path,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise GitError(f"git {' '.join(args)}: {exc}") from exc
        if completed.returncode != 0:
            message = completed.stderr.strip() or f"exit status {completed.returncode}"
            raise GitError(f"git {' '.join(args)}: {message}")
        return completed.stdout.strip()

    def get_branches(self) -> list[str]:
        """Names of all local branches, sorted by ref name."""
        output = self._run("for-each-ref", "--format=%(refname)", _HEADS)
        return [line[len(_HEADS):] for line in output.splitlines() if line.startswith(_HEADS)]

    def get_commit_hash(self, ref: str) -> str:
        """Full hash of the commit that ``ref`` points at."""
        return self._run("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}")

    def get_merge_base(self, a: str, b: str) -> str:
        """Best common ancestor of ``a`` and ``b``; GitError when there is none."""
        return self._run("merge-base", a, b)

    def count_commits_between(self, base: str, head: str) -> int:
        """Number of commits reachable from ``head`` but not from ``base``."""
        return int(self._run("rev-list", "--count", f"{base}..{head}"))

    def git_dir(self) -> Path:
        """Absolute path of the repository's git directory."""
        return Path(self._run("rev-parse", "--absolute-git-dir"))


def _parallel_map(func: Callable[[_T], _R], items: Sequence[_T]) -> list[_R]:
    """Apply ``func`` to every item, across threads when there are several items."""
    workers = min(os.cpu_count() or 4, len(items))
    if workers <= 1:
        return [func(item) for item in items]
    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(func, items))


def _head(branch: str) -> str:
    return f"{_HEADS}{branch}"


def build_commit_cache(git: GitBackend, branches: Iterable[str]) -> dict[str, str]:
    """Map every branch to the hash of its tip commit."""
    return {branch: git.get_commit_hash(_head(branch)) for branch in branches}


def find_parent(
    git: GitBackend,
    branch: str,
    all_branches: Sequence[str],
    commits: Mapping[str, str],
    merged: AbstractSet[str],
) -> str | None:
    """The closest branch ``branch`` was built on, falling back to trunk.

    First a strict pass looks for candidates whose tip is the merge base with
    ``branch``; then a relaxed pass accepts candidates sharing non-trunk
    history, which catches parents that have since merged trunk.
    """
    branch_commit = commits[branch]
    best_parent: str | None = None
    min_distance: int | None = None
    merge_bases: list[tuple[str, str]] = []

    for candidate in all_branches:
        if candidate == branch or is_shadow_branch(candidate):
            continue
        if not is_main_branch(candidate) and candidate in merged:
            continue
        candidate_commit = commits[candidate]
        if candidate_commit == branch_commit:
            continue
        try:
            merge_base = git.get_merge_base(branch, candidate)
        except GitError:
            continue
        if merge_base == candidate_commit:
            distance = git.count_commits_between(_head(candidate), _head(branch))
            if min_distance is None or distance < min_distance:
                min_distance = distance
                best_parent = candidate
        merge_bases.append((candidate, merge_base))

    if best_parent is not None:
        return best_parent

    trunk = next((b for b in all_branches if is_main_branch(b) and b != branch), None)
    if trunk is not None:
        try:
            trunk_base = git.get_merge_base(branch, trunk)
        except GitError:
            trunk_base = None
        if trunk_base is not None:
            for candidate, merge_base in merge_bases:
                if is_main_branch(candidate):
                    continue
                if merge_base in (branch_commit, trunk_base):
                    continue
                try:
                    ancestry = git.get_merge_base(trunk_base, merge_base)
                except GitError:
                    continue
                if ancestry != trunk_base:
                    continue
                distance = git.count_commits_between(_head(candidate), _head(branch))
                if min_distance is None or distance < min_distance:
                    min_distance = distance
                    best_parent = candidate

    if best_parent is not None:
        return best_parent

    return next(
        (name for name in MAIN_BRANCHES if name in all_branches and name != branch),
        None,
    )


def find_children(
    git: GitBackend,
    branch: str,
    all_branches: Sequence[str],
    commits: Mapping[str, str],
    merged: AbstractSet[str],
) -> list[str]:
    """Branches whose closest parent is ``branch``; merged and shadow branches excluded."""
    branch_commit = commits[branch]

    candidates: list[str] = []
    for candidate in all_branches:
        if candidate == branch or is_main_branch(candidate) or is_shadow_branch(candidate):
            continue
        if candidate in merged or commits[candidate] == branch_commit:
            continue
        try:
            merge_base = git.get_merge_base(branch, candidate)
        except GitError:
            continue
        if merge_base == branch_commit:
            candidates.append(candidate)

    def descends_from(candidate: str, other: str) -> bool:
        if other == candidate or commits[other] == commits[candidate]:
            return False
        try:
            return git.get_merge_base(candidate, other) == commits[other]
        except GitError:
            return False

    return [
        candidate
        for candidate in candidates
        if not any(descends_from(candidate, other) for other in candidates)
    ]


def build_parent_map(
    git: GitBackend,
    all_branches: Sequence[str],
    commits: Mapping[str, str],
    merged: AbstractSet[str],
) -> dict[str, str | None]:
    """Parent of every trunk and active branch; merged and shadow branches are left out."""
    parent_map: dict[str, str | None] = {b: None for b in all_branches if is_main_branch(b)}
    active = [
        b
        for b in all_branches
        if not is_main_branch(b) and b not in merged and not is_shadow_branch(b)
    ]
    parent_map.update(recompute_parents(git, active, all_branches, commits, merged))
    return parent_map


def compute_merged_set(
    git: GitBackend, all_branches: Sequence[str], commits: Mapping[str, str]
) -> set[str]:
    """Branches whose tip is already contained in the trunk."""
    trunk = next((b for b in all_branches if is_main_branch(b)), None)
    if trunk is None:
        log.debug("compute_merged_set: no trunk branch found, returning empty set")
        return set()

    candidates = [b for b in all_branches if not is_main_branch(b) and b in commits]
    if not candidates:
        return set()

    def is_merged(branch: str) -> bool:
        try:
            return git.get_merge_base(branch, trunk) == commits[branch]
        except GitError:
            return False

    flags = _parallel_map(is_merged, candidates)
    merged = {branch for branch, flag in zip(candidates, flags) if flag}
    log.debug(
        "compute_merged_set: found %d merged branches out of %d candidates",
        len(merged),
        len(candidates),
    )
    if merged:
        log.debug("compute_merged_set: merged branches: %s", sorted(merged))
    return merged


def recompute_parents(
    git: GitBackend,
    branches: Sequence[str],
    all_branches: Sequence[str],
    commits: Mapping[str, str],
    merged: AbstractSet[str],
) -> list[tuple[str, str | None]]:
    """Find the parent of each of ``branches``, in the order given."""
    branches = list(branches)
    log.debug("recompute_parents: recomputing %d branches: %s", len(branches), branches)
    parents = _parallel_map(
        lambda b: find_parent(git, b, all_branches, commits, merged), branches
    )
    result = list(zip(branches, parents))
    for branch, parent in result:
        log.debug("recompute_parents: %s -> %r", branch, parent)
    return result


def get_branches_with_cache(
    git: GitBackend,
) -> tuple[list[str], dict[str, str], set[str]]:
    """All local branches, their tip hashes, and the set merged into trunk."""
    branches = git.get_branches()
    commits = build_commit_cache(git, branches)
    return branches, commits, compute_merged_set(git, branches, commits)