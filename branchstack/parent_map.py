"""Assemble the branch-to-parent map, reusing the on-disk cache where it is still valid."""

from __future__ import annotations

import logging
from typing import MutableMapping, Sequence

from branchstack.cache import StackCache
from branchstack.graph import (
    GitBackend,
    build_commit_cache,
    build_parent_map,
    compute_merged_set,
    recompute_parents,
)
from branchstack.topology import is_main_branch

log = logging.getLogger(__name__)

_DEFAULT_TRUNK = "main"


def apply_pr_overrides(
    parent_map: MutableMapping[str, str | None],
    cache: StackCache,
    all_branches: Sequence[str],
) -> None:
    """Make each cached pull request's base branch the parent of its head branch.

    Only heads already in ``parent_map`` and bases that exist locally are used.
    """
    data = cache.data
    if data is None or not data.pull_requests:
        return
    branch_set = set(all_branches)
    count = 0
    for pr in data.pull_requests.values():
        if pr.head_ref not in parent_map or pr.base_ref not in branch_set:
            continue
        current = parent_map.get(pr.head_ref)
        if current != pr.base_ref:
            log.debug(
                "cache: PR #%d overrides parent of '%s': %r -> '%s'",
                pr.number,
                pr.head_ref,
                current,
                pr.base_ref,
            )
            parent_map[pr.head_ref] = pr.base_ref
            count += 1
    if count:
        log.debug("cache: applied %d PR base_ref overrides", count)


def inject_shadow_entries(
    parent_map: MutableMapping[str, str | None],
    cache: StackCache,
    all_branches: Sequence[str],
) -> None:
    """Add the managed shadow relationships: shadow to first source, consumer to shadow."""
    data = cache.data
    if data is None or not data.shadow_branches:
        return
    branch_set = set(all_branches)
    count = 0
    for shadow_name, shadow in data.shadow_branches.items():
        if shadow_name not in branch_set:
            continue
        if shadow.sources:
            parent_map[shadow_name] = shadow.sources[0]
        if shadow.consumer in branch_set:
            parent_map[shadow.consumer] = shadow_name
        count += 1
    if count:
        log.debug("cache: injected %d shadow branch entries", count)


def _finish(
    parent_map: dict[str, str | None],
    cache: StackCache,
    all_branches: list[str],
    commits: dict[str, str],
    merged: set[str],
    trunk_name: str,
) -> None:
    apply_pr_overrides(parent_map, cache, all_branches)
    inject_shadow_entries(parent_map, cache, all_branches)
    trunk_tip = commits.get(trunk_name, "")
    data = cache.build_cache_data(trunk_name, trunk_tip, parent_map, commits, merged)
    cache.save(data)


def get_branches_and_parent_map(
    git: GitBackend,
) -> tuple[list[str], dict[str, str], set[str], dict[str, str | None]]:
    """Branches, their tips, the merged set and the parent map.

    The cache is used as is when every tip matches; otherwise only the
    changed branches are recomputed, or everything on a cache miss, and the
    cache is rewritten.  Pull request bases and shadow entries are applied
    on top in every case.
    """
    all_branches = git.get_branches()
    commits = build_commit_cache(git, all_branches)
    trunk_name = next((b for b in all_branches if is_main_branch(b)), _DEFAULT_TRUNK)

    cache = StackCache(git.git_dir())
    data = cache.load()
    validation = cache.validate(commits, trunk_name) if data is not None else None

    if data is not None and validation is not None:
        full_hit = not (
            validation.stale
            or validation.new_branches
            or validation.deleted
            or validation.trunk_changed
        )
        if full_hit:
            log.debug("cache: full hit, skipping recompute")
            parent_map = StackCache.to_parent_map(data)
            merged = StackCache.to_merged_set(data)
            apply_pr_overrides(parent_map, cache, all_branches)
            inject_shadow_entries(parent_map, cache, all_branches)
            return all_branches, commits, merged, parent_map

        if validation.trunk_changed:
            log.debug("cache: trunk changed, recomputing merged set")
            merged = compute_merged_set(git, all_branches, commits)
        else:
            merged = set(validation.cached_merged)

        parent_map: dict[str, str | None] = {
            b: None for b in all_branches if is_main_branch(b)
        }
        parent_map.update(
            (name, cached.parent)
            for name, cached in validation.valid.items()
            if name not in merged
        )

        needs_recompute = set(validation.stale) | set(validation.new_branches)
        for name, cached in validation.valid.items():
            parent = cached.parent
            if parent is not None and (
                parent in validation.stale or parent in validation.deleted
            ):
                log.debug(
                    "cache: %s needs recompute (parent %s is stale/deleted)", name, parent
                )
                needs_recompute.add(name)

        to_recompute = sorted(
            b for b in needs_recompute if not is_main_branch(b) and b not in merged
        )
        log.debug("cache: partial hit, recomputing %d branches", len(to_recompute))
        if to_recompute:
            parent_map.update(
                recompute_parents(git, to_recompute, all_branches, commits, merged)
            )

        _finish(parent_map, cache, all_branches, commits, merged, trunk_name)
        return all_branches, commits, merged, parent_map

    log.debug("cache: miss, full recompute (%d branches)", len(all_branches))
    merged = compute_merged_set(git, all_branches, commits)
    parent_map = build_parent_map(git, all_branches, commits, merged)
    _finish(parent_map, cache, all_branches, commits, merged, trunk_name)
    return all_branches, commits, merged, parent_map