"""Stack structure queries over a precomputed branch-to-parent map."""

from __future__ import annotations

from typing import AbstractSet, Mapping

from branchstack.cache import SHADOW_PREFIX

MAIN_BRANCHES: tuple[str, ...] = ("main", "master", "develop")

ParentMap = Mapping[str, "str | None"]


def is_main_branch(name: str) -> bool:
    """Whether ``name`` is one of the trunk branch names."""
    return name in MAIN_BRANCHES


def is_shadow_branch(name: str) -> bool:
    """Whether ``name`` is a shadow branch managed by ``include``."""
    return name.startswith(SHADOW_PREFIX)


def children_from_map(
    branch: str, parent_map: ParentMap, merged: AbstractSet[str]
) -> list[str]:
    """Direct children of ``branch``, sorted; shadow branches resolve to their consumers."""
    children: set[str] = set()
    for candidate, parent in parent_map.items():
        if is_main_branch(candidate) or candidate in merged:
            continue
        if parent != branch:
            continue
        if is_shadow_branch(candidate):
            children.update(
                inner
                for inner, inner_parent in parent_map.items()
                if inner_parent == candidate and not is_shadow_branch(inner)
            )
        else:
            children.add(candidate)
    return sorted(children)


def walk_to_top(start: str, parent_map: ParentMap, merged: AbstractSet[str]) -> str:
    """Follow a linear chain upwards from ``start``; stop at a leaf or a fork."""
    current = start
    while True:
        children = [
            child
            for child in children_from_map(current, parent_map, merged)
            if not is_shadow_branch(child)
        ]
        if len(children) != 1:
            return current
        current = children[0]


def root_children_from_map(
    main_branch: str, parent_map: ParentMap, merged: AbstractSet[str]
) -> list[str]:
    """Branches forming the base of stacks off ``main_branch``, sorted."""
    roots = [
        branch
        for branch, parent in parent_map.items()
        if branch != main_branch
        and not is_main_branch(branch)
        and branch not in merged
        and not is_shadow_branch(branch)
        and parent is not None
        and (parent == main_branch or parent in merged)
    ]
    return sorted(roots)


def is_active_stack(
    root: str,
    top: str,
    open_branches: AbstractSet[str] | None,
    parent_map: ParentMap,
    merged: AbstractSet[str],
) -> bool:
    """Whether a stack should be offered; lone branches without an open PR are hidden."""
    if root != top:
        return True
    if len(children_from_map(root, parent_map, merged)) > 1:
        return True
    if open_branches is not None:
        return root in open_branches
    return True