import json

import pytest

from branchstack.cache import StackCache
from branchstack.records import (
    SCHEMA_VERSION,
    CachedBranch,
    CachedPullRequest,
    CacheFile,
    RestackState,
    ShadowBranch,
    ShadowMergeState,
    TrunkInfo,
)


def sample_cache_data():
    return CacheFile(
        schema_version=SCHEMA_VERSION,
        trunk=TrunkInfo(name="main", tip="trunk000", merged=["old-branch"]),
        branches={
            "feature-a": CachedBranch(tip="aaa111", parent="main"),
            "feature-b": CachedBranch(tip="bbb222", parent="feature-a"),
        },
    )


def live_tips_matching(data):
    tips = {data.trunk.name: data.trunk.tip}
    tips.update({name: b.tip for name, b in data.branches.items()})
    return tips


def make_pr(number, head):
    return CachedPullRequest(
        number=number,
        state="open",
        head_ref=head,
        base_ref="main",
        html_url=f"https://example.com/o/r/pull/{number}",
        draft=False,
    )


@pytest.fixture
def saved(tmp_path):
    data = sample_cache_data()
    StackCache(tmp_path).save(data)
    return tmp_path, data


def loaded_cache(path):
    cache = StackCache(path)
    cache.load()
    return cache


def test_load_missing_file(tmp_path):
    assert StackCache(tmp_path).load() is None


def test_load_corrupt_json(tmp_path):
    (tmp_path / "stax").mkdir()
    (tmp_path / "stax" / "cache.json").write_text("not json at all {{{")
    assert StackCache(tmp_path).load() is None


def test_load_wrong_schema_version(tmp_path):
    (tmp_path / "stax").mkdir()
    (tmp_path / "stax" / "cache.json").write_text(
        '{"schema_version":999,"trunk":{"name":"main","tip":"x","merged":[]},"branches":{}}'
    )
    assert StackCache(tmp_path).load() is None


def test_roundtrip(saved):
    path, _ = saved
    loaded = StackCache(path).load()
    assert loaded is not None
    assert loaded.schema_version == SCHEMA_VERSION
    assert loaded.trunk.name == "main"
    assert loaded.trunk.tip == "trunk000"
    assert loaded.trunk.merged == ["old-branch"]
    assert len(loaded.branches) == 2
    assert loaded.branches["feature-a"].tip == "aaa111"
    assert loaded.branches["feature-a"].parent == "main"
    assert loaded.branches["feature-b"].tip == "bbb222"
    assert loaded.branches["feature-b"].parent == "feature-a"


def test_validate_all_valid(saved):
    path, data = saved
    result = loaded_cache(path).validate(live_tips_matching(data), "main")
    assert len(result.valid) == 2
    assert result.stale == set()
    assert result.new_branches == set()
    assert result.deleted == set()
    assert result.trunk_changed is False
    assert "old-branch" in result.cached_merged


def test_validate_stale_branch(saved):
    path, data = saved
    tips = live_tips_matching(data)
    tips["feature-a"] = "changed-tip"
    result = loaded_cache(path).validate(tips, "main")
    assert len(result.valid) == 1
    assert "feature-a" in result.stale
    assert result.new_branches == set()
    assert result.deleted == set()


def test_validate_new_branch(saved):
    path, data = saved
    tips = live_tips_matching(data)
    tips["feature-c"] = "ccc333"
    result = loaded_cache(path).validate(tips, "main")
    assert len(result.valid) == 2
    assert "feature-c" in result.new_branches
    assert result.deleted == set()


def test_validate_deleted_branch(saved):
    path, data = saved
    tips = live_tips_matching(data)
    del tips["feature-b"]
    result = loaded_cache(path).validate(tips, "main")
    assert len(result.valid) == 1
    assert "feature-b" in result.deleted


def test_validate_trunk_changed(saved):
    path, data = saved
    tips = live_tips_matching(data)
    tips["main"] = "new-trunk-tip"
    result = loaded_cache(path).validate(tips, "main")
    assert result.trunk_changed is True
    assert result.cached_merged == set()


def test_validate_trunk_name_changed(saved):
    path, data = saved
    tips = live_tips_matching(data)
    tips["master"] = "trunk000"
    result = loaded_cache(path).validate(tips, "master")
    assert result.trunk_changed is True


def test_validate_no_data_returns_none(tmp_path):
    assert StackCache(tmp_path).validate({}, "main") is None


def test_to_parent_map():
    parent_map = StackCache.to_parent_map(sample_cache_data())
    assert parent_map == {"main": None, "feature-a": "main", "feature-b": "feature-a"}


def test_to_merged_set():
    assert StackCache.to_merged_set(sample_cache_data()) == {"old-branch"}


def test_save_creates_directory(tmp_path):
    stax_dir = tmp_path / "stax"
    assert not stax_dir.exists()
    StackCache(tmp_path).save(sample_cache_data())
    assert stax_dir.is_dir()
    assert (stax_dir / "cache.json").is_file()


def test_save_writes_json_with_expected_keys(saved):
    path, _ = saved
    payload = json.loads((path / "stax" / "cache.json").read_text())
    assert payload["schema_version"] == 2
    assert payload["trunk"] == {"name": "main", "tip": "trunk000", "merged": ["old-branch"]}
    assert "merge_sources" not in payload["branches"]["feature-a"]


def test_save_overwrites(tmp_path):
    cache = StackCache(tmp_path)
    cache.save(sample_cache_data())
    data2 = sample_cache_data()
    data2.trunk.tip = "changed-tip"
    cache.save(data2)
    assert StackCache(tmp_path).load().trunk.tip == "changed-tip"


def test_build_cache_data(tmp_path):
    cache = StackCache(tmp_path)
    data = cache.build_cache_data(
        "main",
        "trunk-tip",
        {"main": None, "feat": "main"},
        {"main": "trunk-tip", "feat": "feat-tip"},
        {"old"},
    )
    assert data.schema_version == SCHEMA_VERSION
    assert data.trunk.name == "main"
    assert data.trunk.tip == "trunk-tip"
    assert "old" in data.trunk.merged
    assert data.branches["feat"].tip == "feat-tip"
    assert data.branches["feat"].parent == "main"
    assert data.pull_requests == {}


def test_build_cache_data_skips_branches_without_commit(tmp_path):
    data = StackCache(tmp_path).build_cache_data(
        "main", "t", {"feat": "main", "ghost": "main"}, {"feat": "f"}, set()
    )
    assert set(data.branches) == {"feat"}


def test_build_cache_data_preserves_prs(tmp_path):
    initial = sample_cache_data()
    initial.pull_requests["feature-a"] = make_pr(42, "feature-a")
    initial.pull_requests["feature-b"] = make_pr(43, "feature-b")
    StackCache(tmp_path).save(initial)

    cache2 = loaded_cache(tmp_path)
    data = cache2.build_cache_data(
        "main", "trunk000", {"feature-a": "main"}, {"feature-a": "aaa111"}, set()
    )
    assert len(data.pull_requests) == 1
    assert data.pull_requests["feature-a"].number == 42


def test_build_cache_data_carries_merge_sources_and_shadows(tmp_path):
    initial = sample_cache_data()
    initial.branches["consumer"] = CachedBranch(
        tip="ccc", parent="stax/shadow/consumer", merge_sources=["feature-a", "feature-b"]
    )
    shadow = ShadowBranch(consumer="consumer", sources=["feature-a", "feature-b"], tip="s")
    initial.shadow_branches["stax/shadow/consumer"] = shadow
    StackCache(tmp_path).save(initial)

    data = loaded_cache(tmp_path).build_cache_data(
        "main",
        "trunk000",
        {"consumer": "stax/shadow/consumer"},
        {"consumer": "ccc2"},
        set(),
    )
    assert data.branches["consumer"].merge_sources == ["feature-a", "feature-b"]
    assert data.branches["consumer"].tip == "ccc2"
    assert data.shadow_branches == {"stax/shadow/consumer": shadow}


def test_save_pull_requests(saved):
    path, _ = saved
    prs = {"feature-a": make_pr(10, "feature-a"), "nonexistent": make_pr(99, "nonexistent")}
    StackCache(path).save_pull_requests(prs)
    loaded = StackCache(path).load()
    assert len(loaded.pull_requests) == 1
    assert loaded.pull_requests["feature-a"].number == 10


def test_save_pull_requests_without_cache_is_noop(tmp_path):
    StackCache(tmp_path).save_pull_requests({"feature-a": make_pr(1, "feature-a")})
    assert not (tmp_path / "stax" / "cache.json").exists()


def test_upsert_branch_existing_cache(saved):
    path, _ = saved
    StackCache(path).upsert_branch("feature-c", "ccc333", "feature-a")
    loaded = StackCache(path).load()
    assert len(loaded.branches) == 3
    assert loaded.branches["feature-c"].tip == "ccc333"
    assert loaded.branches["feature-c"].parent == "feature-a"
    assert loaded.branches["feature-a"].tip == "aaa111"


def test_upsert_branch_updates_existing(saved):
    path, _ = saved
    StackCache(path).upsert_branch("feature-b", "bbb222", "main")
    loaded = StackCache(path).load()
    assert len(loaded.branches) == 2
    assert loaded.branches["feature-b"].parent == "main"


def test_upsert_branch_preserves_merge_sources(tmp_path):
    data = sample_cache_data()
    data.branches["feature-b"].merge_sources = ["x", "y"]
    StackCache(tmp_path).save(data)
    StackCache(tmp_path).upsert_branch("feature-b", "new-tip", "stax/shadow/feature-b")
    loaded = StackCache(tmp_path).load()
    assert loaded.branches["feature-b"].merge_sources == ["x", "y"]
    assert loaded.branches["feature-b"].tip == "new-tip"


def test_upsert_branch_no_cache_is_noop(tmp_path):
    cache_path = tmp_path / "stax" / "cache.json"
    StackCache(tmp_path).upsert_branch("feature-x", "xxx999", "main")
    assert not cache_path.exists()


def test_restack_state_roundtrip(tmp_path):
    cache = StackCache(tmp_path)
    old_tips = {"branch-a": "aaa111", "branch-b": "bbb222", "main": "mmm000"}
    cache.save_restack_state(RestackState(old_tips=dict(old_tips), original_branch="branch-b"))
    loaded = cache.load_restack_state()
    assert loaded.old_tips == old_tips
    assert loaded.original_branch == "branch-b"


def test_restack_state_clear(tmp_path):
    cache = StackCache(tmp_path)
    cache.save_restack_state(RestackState(old_tips={}, original_branch="main"))
    assert cache.load_restack_state() == RestackState(old_tips={}, original_branch="main")
    cache.clear_restack_state()
    assert cache.load_restack_state() is None


def test_restack_state_missing_file(tmp_path):
    assert StackCache(tmp_path).load_restack_state() is None


def test_restack_state_corrupt_file(tmp_path):
    (tmp_path / "stax").mkdir()
    (tmp_path / "stax" / "restack-state.json").write_text("{broken")
    assert StackCache(tmp_path).load_restack_state() is None


def test_shadow_merge_state_roundtrip_and_clear(tmp_path):
    cache = StackCache(tmp_path)
    state = ShadowMergeState(
        shadow_name="stax/shadow/consumer",
        consumer="consumer",
        all_sources=["feat-a", "feat-b", "feat-c"],
        remaining_sources=["feat-b", "feat-c"],
        original_branch="consumer",
        continue_command="stax include --continue",
    )
    cache.save_shadow_merge_state(state)
    assert cache.load_shadow_merge_state() == state
    cache.clear_shadow_merge_state()
    assert cache.load_shadow_merge_state() is None
    cache.clear_shadow_merge_state()
    assert not (tmp_path / "stax" / "shadow-merge-state.json").exists()


def test_shadow_name_for():
    assert StackCache.shadow_name_for("consumer") == "stax/shadow/consumer"


def test_cache_shadow_roundtrip(tmp_path):
    StackCache(tmp_path).save(
        CacheFile(
            schema_version=2,
            trunk=TrunkInfo(name="main", tip="trunk000"),
            branches={"feat-a": CachedBranch(tip="aaa", parent="main")},
        )
    )
    StackCache(tmp_path).upsert_shadow(
        "stax/shadow/consumer",
        ShadowBranch(consumer="consumer", sources=["feat-a", "feat-b"], tip="shadow-tip"),
    )

    cache3 = StackCache(tmp_path)
    loaded = cache3.load()
    assert len(loaded.shadow_branches) == 1
    shadow = loaded.shadow_branches["stax/shadow/consumer"]
    assert shadow.consumer == "consumer"
    assert shadow.sources == ["feat-a", "feat-b"]

    name, found = cache3.get_shadow_for_consumer("consumer")
    assert name == "stax/shadow/consumer"
    assert found.tip == "shadow-tip"
    assert cache3.get_shadow_for_consumer("other") is None

    cache3.remove_shadow("stax/shadow/consumer")
    assert StackCache(tmp_path).load().shadow_branches == {}


def test_upsert_shadow_without_cache_is_noop(tmp_path):
    StackCache(tmp_path).upsert_shadow(
        "stax/shadow/c", ShadowBranch(consumer="c", sources=["a"], tip="t")
    )
    assert not (tmp_path / "stax" / "cache.json").exists()


def test_cache_merge_sources_serialization(tmp_path):
    data = CacheFile(
        schema_version=2,
        trunk=TrunkInfo(name="main", tip="trunk"),
        branches={
            "consumer": CachedBranch(
                tip="ccc",
                parent="stax/shadow/consumer",
                merge_sources=["feat-a", "feat-b"],
            )
        },
    )
    StackCache(tmp_path).save(data)
    loaded = StackCache(tmp_path).load()
    assert loaded.branches["consumer"].merge_sources == ["feat-a", "feat-b"]


def test_save_current_writes_modified_data(saved):
    path, _ = saved
    cache = loaded_cache(path)
    cache.data.branches["feature-z"] = CachedBranch(tip="zzz", parent="feature-b")
    cache.save_current()
    assert StackCache(path).load().branches["feature-z"].parent == "feature-b"


def test_save_current_without_data_writes_nothing(tmp_path):
    StackCache(tmp_path).save_current()
    assert not (tmp_path / "stax").exists()