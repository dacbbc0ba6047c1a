"""Records stored in the stack cache and in the transient operation-state files."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

SCHEMA_VERSION = 2


class RecordFormatError(ValueError):
    """Raised when a serialised record does not have the expected shape."""


def _mapping(payload: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise RecordFormatError(f"{what}: expected an object, got {type(payload).__name__}")
    return payload


def _field(payload: Mapping[str, Any], key: str, what: str) -> Any:
    try:
        return payload[key]
    except KeyError:
        raise RecordFormatError(f"{what}: missing field '{key}'") from None


def _string(value: Any, what: str) -> str:
    if not isinstance(value, str):
        raise RecordFormatError(f"{what}: expected a string, got {type(value).__name__}")
    return value


def _string_list(value: Any, what: str) -> list[str]:
    if not isinstance(value, list):
        raise RecordFormatError(f"{what}: expected a list, got {type(value).__name__}")
    return [_string(item, what) for item in value]


def _string_map(value: Any, what: str) -> dict[str, str]:
    return {
        _string(key, what): _string(item, what)
        for key, item in _mapping(value, what).items()
    }


def _unsigned(value: Any, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise RecordFormatError(f"{what}: expected a non-negative integer, got {value!r}")
    return value


def _boolean(value: Any, what: str) -> bool:
    if not isinstance(value, bool):
        raise RecordFormatError(f"{what}: expected a boolean, got {value!r}")
    return value


@dataclass
class TrunkInfo:
    """The trunk branch, its tip, and the branches known to be merged into it."""

    name: str
    tip: str
    merged: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "tip": self.tip, "merged": list(self.merged)}

    @classmethod
    def from_dict(cls, payload: Any) -> TrunkInfo:
        data = _mapping(payload, "trunk")
        return cls(
            name=_string(_field(data, "name", "trunk"), "trunk.name"),
            tip=_string(_field(data, "tip", "trunk"), "trunk.tip"),
            merged=_string_list(data.get("merged", []), "trunk.merged"),
        )


@dataclass
class CachedBranch:
    """A branch tip together with its computed or managed parent."""

    tip: str
    parent: str | None = None
    merge_sources: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"tip": self.tip, "parent": self.parent}
        if self.merge_sources:
            result["merge_sources"] = list(self.merge_sources)
        return result

    @classmethod
    def from_dict(cls, payload: Any) -> CachedBranch:
        data = _mapping(payload, "branch")
        parent = data.get("parent")
        return cls(
            tip=_string(_field(data, "tip", "branch"), "branch.tip"),
            parent=None if parent is None else _string(parent, "branch.parent"),
            merge_sources=_string_list(data.get("merge_sources", []), "branch.merge_sources"),
        )


@dataclass
class ShadowBranch:
    """A synthetic branch merging several sources for one consumer branch."""

    consumer: str
    sources: list[str]
    tip: str

    def to_dict(self) -> dict[str, Any]:
        return {"consumer": self.consumer, "sources": list(self.sources), "tip": self.tip}

    @classmethod
    def from_dict(cls, payload: Any) -> ShadowBranch:
        data = _mapping(payload, "shadow branch")
        return cls(
            consumer=_string(_field(data, "consumer", "shadow branch"), "shadow.consumer"),
            sources=_string_list(_field(data, "sources", "shadow branch"), "shadow.sources"),
            tip=_string(_field(data, "tip", "shadow branch"), "shadow.tip"),
        )


@dataclass
class CachedPullRequest:
    """The parts of a pull request the stack view relies on."""

    number: int
    state: str
    head_ref: str
    base_ref: str
    html_url: str
    draft: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "state": self.state,
            "head_ref": self.head_ref,
            "base_ref": self.base_ref,
            "html_url": self.html_url,
            "draft": self.draft,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> CachedPullRequest:
        data = _mapping(payload, "pull request")
        what = "pull request"
        return cls(
            number=_unsigned(_field(data, "number", what), "pull_request.number"),
            state=_string(_field(data, "state", what), "pull_request.state"),
            head_ref=_string(_field(data, "head_ref", what), "pull_request.head_ref"),
            base_ref=_string(_field(data, "base_ref", what), "pull_request.base_ref"),
            html_url=_string(_field(data, "html_url", what), "pull_request.html_url"),
            draft=_boolean(_field(data, "draft", what), "pull_request.draft"),
        )


@dataclass
class CacheFile:
    """The whole contents of the stack cache file."""

    schema_version: int
    trunk: TrunkInfo
    branches: dict[str, CachedBranch] = field(default_factory=dict)
    pull_requests: dict[str, CachedPullRequest] = field(default_factory=dict)
    shadow_branches: dict[str, ShadowBranch] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "trunk": self.trunk.to_dict(),
            "branches": {name: b.to_dict() for name, b in self.branches.items()},
            "pull_requests": {head: pr.to_dict() for head, pr in self.pull_requests.items()},
            "shadow_branches": {
                name: sb.to_dict() for name, sb in self.shadow_branches.items()
            },
        }

    @classmethod
    def from_dict(cls, payload: Any) -> CacheFile:
        data = _mapping(payload, "cache")
        return cls(
            schema_version=_unsigned(
                _field(data, "schema_version", "cache"), "cache.schema_version"
            ),
            trunk=TrunkInfo.from_dict(_field(data, "trunk", "cache")),
            branches={
                _string(name, "cache.branches"): CachedBranch.from_dict(entry)
                for name, entry in _mapping(data.get("branches", {}), "cache.branches").items()
            },
            pull_requests={
                _string(head, "cache.pull_requests"): CachedPullRequest.from_dict(entry)
                for head, entry in _mapping(
                    data.get("pull_requests", {}), "cache.pull_requests"
                ).items()
            },
            shadow_branches={
                _string(name, "cache.shadow_branches"): ShadowBranch.from_dict(entry)
                for name, entry in _mapping(
                    data.get("shadow_branches", {}), "cache.shadow_branches"
                ).items()
            },
        )


@dataclass
class RestackState:
    """Branch tips captured before a restack, kept for a later continue."""

    old_tips: dict[str, str]
    original_branch: str

    def to_dict(self) -> dict[str, Any]:
        return {"old_tips": dict(self.old_tips), "original_branch": self.original_branch}

    @classmethod
    def from_dict(cls, payload: Any) -> RestackState:
        data = _mapping(payload, "restack state")
        return cls(
            old_tips=_string_map(_field(data, "old_tips", "restack state"), "old_tips"),
            original_branch=_string(
                _field(data, "original_branch", "restack state"), "original_branch"
            ),
        )


@dataclass
class ShadowMergeState:
    """A shadow-branch merge interrupted by a conflict."""

    shadow_name: str
    consumer: str
    all_sources: list[str]
    remaining_sources: list[str]
    original_branch: str
    continue_command: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "shadow_name": self.shadow_name,
            "consumer": self.consumer,
            "all_sources": list(self.all_sources),
            "remaining_sources": list(self.remaining_sources),
            "original_branch": self.original_branch,
            "continue_command": self.continue_command,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> ShadowMergeState:
        data = _mapping(payload, "shadow merge state")
        what = "shadow merge state"
        return cls(
            shadow_name=_string(_field(data, "shadow_name", what), "shadow_name"),
            consumer=_string(_field(data, "consumer", what), "consumer"),
            all_sources=_string_list(_field(data, "all_sources", what), "all_sources"),
            remaining_sources=_string_list(
                _field(data, "remaining_sources", what), "remaining_sources"
            ),
            original_branch=_string(_field(data, "original_branch", what), "original_branch"),
            continue_command=_string(
                _field(data, "continue_command", what), "continue_command"
            ),
        )


@dataclass
class ValidationResult:
    """Outcome of comparing cached branch state with the live branch tips."""

    valid: dict[str, CachedBranch] = field(default_factory=dict)
    stale: set[str] = field(default_factory=set)
    new_branches: set[str] = field(default_factory=set)
    deleted: set[str] = field(default_factory=set)
    trunk_changed: bool = False
    cached_merged: set[str] = field(default_factory=set)