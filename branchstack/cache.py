"""On-disk cache of stack structure and transient operation state."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Mapping, TypeVar

from branchstack.records import (
    SCHEMA_VERSION,
    CachedBranch,
    CachedPullRequest,
    CacheFile,
    RecordFormatError,
    RestackState,
    ShadowBranch,
    ShadowMergeState,
    TrunkInfo,
    ValidationResult,
)

log = logging.getLogger(__name__)

_T = TypeVar("_T")

SHADOW_PREFIX = "stax/shadow/"


def _write_json(path: Path, payload: dict[str, Any], label: str) -> bool:
    """Write ``payload`` as pretty JSON; log and swallow any failure."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        log.warning("%s: failed to create directory: %s", label, exc)
        return False
    try:
        text = json.dumps(payload, indent=2)
    except (TypeError, ValueError) as exc:
        log.warning("%s: serialization failed: %s", label, exc)
        return False
    try:
        path.write_text(text, encoding="utf-8")
    except OSError as exc:
        log.warning("%s: save failed: %s", label, exc)
        return False
    log.debug("%s: saved to %s", label, path)
    return True


def _read_json(path: Path, label: str, parse: Callable[[Any], _T]) -> _T | None:
    """Read and parse a JSON record; return None on any failure."""
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        log.debug("%s: file not found", label)
        return None
    except (OSError, ValueError) as exc:
        log.debug("%s: read error: %s", label, exc)
        return None
    try:
        record = parse(json.loads(content))
    except (ValueError, RecordFormatError) as exc:
        log.debug("%s: parse error: %s", label, exc)
        return None
    log.debug("%s: loaded from %s", label, path)
    return record


def _remove(path: Path, label: str) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as exc:
        log.debug("%s: remove failed: %s", label, exc)
        return
    log.debug("%s: cleared %s", label, path)


class StackCache:
    """Handle on the cache files kept under ``<git_dir>/stax``."""

    def __init__(self, git_dir: str | Path) -> None:
        self.cache_path = Path(git_dir) / "stax" / "cache.json"
        self.data: CacheFile | None = None

    @property
    def _restack_state_path(self) -> Path:
        return self.cache_path.parent / "restack-state.json"

    @property
    def _shadow_merge_state_path(self) -> Path:
        return self.cache_path.parent / "shadow-merge-state.json"

    def load(self) -> CacheFile | None:
        """Load the cache from disk; None when missing, corrupt or of another schema."""
        log.debug("cache: loading from %s", self.cache_path)
        data = _read_json(self.cache_path, "cache", CacheFile.from_dict)
        if data is None:
            return None
        if data.schema_version != SCHEMA_VERSION:
            log.debug(
                "cache: schema version mismatch (got %s, expected %s)",
                data.schema_version,
                SCHEMA_VERSION,
            )
            return None
        self.data = data
        return data

    def validate(
        self, live_tips: Mapping[str, str], trunk_name: str
    ) -> ValidationResult | None:
        """Compare the loaded cache with live branch tips; None if nothing is loaded."""
        data = self.data
        if data is None:
            return None

        trunk_changed = (
            data.trunk.name != trunk_name or live_tips.get(trunk_name) != data.trunk.tip
        )
        result = ValidationResult(trunk_changed=trunk_changed)

        for name, tip in live_tips.items():
            if name == trunk_name:
                continue
            cached = data.branches.get(name)
            if cached is None:
                result.new_branches.add(name)
            elif cached.tip == tip:
                result.valid[name] = CachedBranch(
                    tip=cached.tip,
                    parent=cached.parent,
                    merge_sources=list(cached.merge_sources),
                )
            else:
                result.stale.add(name)

        result.deleted = {name for name in data.branches if name not in live_tips}
        if not trunk_changed:
            result.cached_merged = set(data.trunk.merged)

        log.debug(
            "cache: %d valid, %d stale, %d new, %d deleted, trunk_changed=%s",
            len(result.valid),
            len(result.stale),
            len(result.new_branches),
            len(result.deleted),
            trunk_changed,
        )
        for label, names in (
            ("stale", result.stale),
            ("new", result.new_branches),
            ("deleted", result.deleted),
        ):
            if names:
                log.debug("cache: %s branches: %s", label, sorted(names))
        return result

    def upsert_branch(self, branch: str, tip: str, parent: str | None) -> None:
        """Insert or update one branch entry; does nothing without an existing cache."""
        data = self.load()
        if data is None:
            log.debug("cache: upsert_branch skipped - no existing cache")
            return
        log.debug("cache: upsert_branch '%s' tip=%s parent=%r", branch, tip[:8], parent)
        existing = data.branches.get(branch)
        merge_sources = list(existing.merge_sources) if existing else []
        data.branches[branch] = CachedBranch(
            tip=tip, parent=parent, merge_sources=merge_sources
        )
        self.save(data)

    def upsert_shadow(self, shadow_name: str, shadow: ShadowBranch) -> None:
        """Insert or update a shadow branch entry; does nothing without an existing cache."""
        data = self.load()
        if data is None:
            log.debug("cache: upsert_shadow skipped - no existing cache")
            return
        log.debug(
            "cache: upsert_shadow '%s' consumer='%s' sources=%r",
            shadow_name,
            shadow.consumer,
            shadow.sources,
        )
        data.shadow_branches[shadow_name] = shadow
        self.save(data)

    def remove_shadow(self, shadow_name: str) -> None:
        """Remove a shadow branch entry if present."""
        data = self.load()
        if data is None:
            return
        if data.shadow_branches.pop(shadow_name, None) is not None:
            log.debug("cache: removed shadow '%s'", shadow_name)
            self.save(data)

    def get_shadow_for_consumer(self, consumer: str) -> tuple[str, ShadowBranch] | None:
        """Return ``(shadow_name, shadow)`` for the shadow feeding ``consumer``."""
        if self.data is None:
            return None
        return next(
            (
                (name, shadow)
                for name, shadow in self.data.shadow_branches.items()
                if shadow.consumer == consumer
            ),
            None,
        )

    @staticmethod
    def shadow_name_for(consumer: str) -> str:
        """Name of the shadow branch for ``consumer``."""
        return f"{SHADOW_PREFIX}{consumer}"

    def save_current(self) -> None:
        """Write the loaded data back to disk, if any is loaded."""
        if self.data is not None:
            self.save(self.data)

    def save(self, data: CacheFile) -> None:
        """Persist ``data``; failures are logged and swallowed."""
        _write_json(self.cache_path, data.to_dict(), "cache")

    def build_cache_data(
        self,
        trunk_name: str,
        trunk_tip: str,
        parent_map: Mapping[str, str | None],
        commits: Mapping[str, str],
        merged: set[str] | frozenset[str],
    ) -> CacheFile:
        """Build cache contents from fresh results, keeping PRs and shadows still relevant."""
        previous = self.data
        branches: dict[str, CachedBranch] = {}
        for name, parent in parent_map.items():
            tip = commits.get(name)
            if tip is None:
                continue
            old = previous.branches.get(name) if previous else None
            branches[name] = CachedBranch(
                tip=tip,
                parent=parent,
                merge_sources=list(old.merge_sources) if old else [],
            )

        pull_requests: dict[str, CachedPullRequest] = {}
        shadow_branches: dict[str, ShadowBranch] = {}
        if previous is not None:
            pull_requests = {
                head: pr for head, pr in previous.pull_requests.items() if head in branches
            }
            shadow_branches = dict(previous.shadow_branches)

        return CacheFile(
            schema_version=SCHEMA_VERSION,
            trunk=TrunkInfo(name=trunk_name, tip=trunk_tip, merged=sorted(merged)),
            branches=branches,
            pull_requests=pull_requests,
            shadow_branches=shadow_branches,
        )

    def save_pull_requests(self, prs: Mapping[str, CachedPullRequest]) -> None:
        """Replace cached PRs with those whose head branch is cached; needs an existing cache."""
        data = self.load()
        if data is None:
            log.debug("cache: save_pull_requests skipped - no existing cache")
            return
        data.pull_requests = {
            head: pr for head, pr in prs.items() if head in data.branches
        }
        log.debug("cache: saved %d pull requests", len(data.pull_requests))
        self.save(data)

    def save_restack_state(self, state: RestackState) -> None:
        """Persist restack state for a later continue; failures are swallowed."""
        if _write_json(self._restack_state_path, state.to_dict(), "restack-state"):
            log.debug("restack-state: saved %d old_tips", len(state.old_tips))

    def load_restack_state(self) -> RestackState | None:
        """Load persisted restack state, or None on any failure."""
        return _read_json(self._restack_state_path, "restack-state", RestackState.from_dict)

    def clear_restack_state(self) -> None:
        """Delete the restack state file."""
        _remove(self._restack_state_path, "restack-state")

    def save_shadow_merge_state(self, state: ShadowMergeState) -> None:
        """Persist an interrupted shadow merge; failures are swallowed."""
        _write_json(self._shadow_merge_state_path, state.to_dict(), "shadow-merge-state")

    def load_shadow_merge_state(self) -> ShadowMergeState | None:
        """Load persisted shadow merge state, or None on any failure."""
        return _read_json(
            self._shadow_merge_state_path, "shadow-merge-state", ShadowMergeState.from_dict
        )

    def clear_shadow_merge_state(self) -> None:
        """Delete the shadow merge state file."""
        _remove(self._shadow_merge_state_path, "shadow-merge-state")

    @staticmethod
    def to_parent_map(data: CacheFile) -> dict[str, str | None]:
        """Branch-to-parent map from cached data; the trunk maps to None."""
        parent_map: dict[str, str | None] = {data.trunk.name: None}
        parent_map.update({name: cached.parent for name, cached in data.branches.items()})
        return parent_map

    @staticmethod
    def to_merged_set(data: CacheFile) -> set[str]:
        """The set of branches recorded as merged into trunk."""
        return set(data.trunk.merged)