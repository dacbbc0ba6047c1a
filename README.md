# branchstack

`branchstack` works out how the local branches of a Git repository stack on
top of each other. It finds each branch's parent, detects branches that are
already merged into trunk, and keeps the result in a JSON cache under the
repository's git directory (`<git-dir>/stax/cache.json`). Later runs reuse
cached parents for branches whose tips have not moved.

It runs the `git` executable, which must be on `PATH`. It has no other
runtime dependencies.

## Installing

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Concepts

- **Trunk.** `main`, `master` and `develop` are trunk branches
  (`branchstack.topology.is_main_branch`).
- **Parent.** A branch's parent is the nearest other branch whose tip is the
  merge base with the branch. If none qualifies, a second pass accepts a
  branch that shares history beyond trunk with it (a parent that has since
  merged trunk). Failing both, the trunk branch is the parent.
- **Merged.** A branch is merged when its tip is the merge base of itself and
  trunk, that is, trunk already contains it.
- **Shadow branch.** A branch named `stax/shadow/<consumer>` merges several
  source branches, and the consumer branch is stacked on top of it
  (`branchstack.topology.is_shadow_branch`). Shadow branches are never
  guessed from history; their relationships come from the cache.

## Computing a stack

```python
from branchstack.graph import GitBackend
from branchstack.parent_map import get_branches_and_parent_map

git = GitBackend("path/to/repo")
branches, commits, merged, parent_map = get_branches_and_parent_map(git)

for name, parent in sorted(parent_map.items()):
    print(name, "->", parent)
```

`get_branches_and_parent_map` returns:

- every local branch;
- a mapping from each branch to its tip commit hash;
- the set of merged branches;
- a mapping from each branch to its parent (`None` for trunk).

When every cached tip still matches, the cached parents are used as they
are. Otherwise only stale and new branches, and branches whose cached parent
is stale or deleted, are worked out again; with no usable cache everything
is. In every case the base branch of each cached pull request overrides the
parent of its head branch, and cached shadow branches are added (shadow to
its first source, consumer to shadow). After any recompute the cache is
written back.

## Modules

### `branchstack.graph`

`GitBackend(path)` answers read-only questions by running `git` in `path`;
it raises `GitError` if `path` is not in a repository or a command fails.
Its methods are `get_branches`, `get_commit_hash`, `get_merge_base`,
`count_commits_between` and `git_dir`.

Functions built on it:

- `build_commit_cache` – branch to tip hash;
- `find_parent`, `find_children` – one branch's parent or direct children;
- `build_parent_map` – parents of all trunk and active branches (merged and
  shadow branches are left out);
- `compute_merged_set` – branches already contained in trunk;
- `recompute_parents` – parents of a chosen list of branches;
- `get_branches_with_cache` – branches, tips and merged set together.

Merge-base checks for several branches run in a thread pool.

### `branchstack.topology`

Questions answered from a parent map alone, without calling `git`:

- `children_from_map` – direct children, sorted; a shadow branch is replaced
  by its consumer;
- `root_children_from_map` – branches whose parent is trunk or a merged
  branch;
- `walk_to_top` – follows a single chain of children until a leaf or a fork;
- `is_active_stack` – hides a lone branch with no open pull request when a
  set of open branches is given.

### `branchstack.parent_map`

`get_branches_and_parent_map`, plus the two steps it applies on top of any
map: `apply_pr_overrides` and `inject_shadow_entries`.

### `branchstack.cache`

`StackCache(git_dir)` reads and writes `stax/cache.json` inside the given git
directory. `load` returns `None` when the file is missing or corrupt, or when
its schema version is not the current one. Write failures are logged and
ignored, so the cache is always safe to delete. Besides `load` and `save`
it offers `validate`, `build_cache_data`, `upsert_branch`, `upsert_shadow`,
`remove_shadow`, `get_shadow_for_consumer`, `save_pull_requests`,
`save_current`, and the static helpers `shadow_name_for`, `to_parent_map`
and `to_merged_set`.

It also keeps the state an interrupted operation needs to resume:

- `save_restack_state`, `load_restack_state`, `clear_restack_state`
  (`stax/restack-state.json`);
- `save_shadow_merge_state`, `load_shadow_merge_state`,
  `clear_shadow_merge_state` (`stax/shadow-merge-state.json`).

### `branchstack.records`

Dataclasses for the stored data, with `to_dict` and `from_dict` for JSON:
`CacheFile`, `TrunkInfo`, `CachedBranch`, `ShadowBranch`,
`CachedPullRequest`, `RestackState` and `ShadowMergeState`. `from_dict`
raises `RecordFormatError` on malformed input. `ValidationResult` holds the
outcome of `StackCache.validate`.

## What it does not do

`branchstack` is a library; it has no command-line tool. It only reads the
repository: it does not create, check out, rebase, restack or delete
branches, does not build shadow branches, and does not talk to any code
hosting service. Pull-request data and shadow-branch entries are only read
from the cache or stored into it by the caller, and the restack and
shadow-merge state files are only saved and loaded, not acted on.