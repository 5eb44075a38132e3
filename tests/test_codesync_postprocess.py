"""
Tests for config post-processing and cache flush planning.
"""

import json

import pytest

from services.codesync import (
    ConfigPostProcessor,
    EffectExecutor,
    Resource,
    compute_surrogate_key,
    parse_mount_table,
    plan_flush,
)
from services.codesync.postprocess import (
    DeployMountTable,
    MergeContentConfig,
    Purge,
    Reindex,
    RemoveObject,
    WriteObject,
    compute_content_bus_id,
)
from services.codesync.utils import ConfigError

MAIN = "adobe/helix-website/main/"
CONFIG_KEY = "/adobe/helix-website/main/helix-config.json"
DRIVE = "https://drive.google.com/drive/folders/abc"
CONTENT_ID = compute_content_bus_id(DRIVE)
CONFIG_PURGE_KEY = compute_surrogate_key("helix-website--adobe_config.json")


def synced(*paths, status=200, deleted=None):
    return [Resource(resource_path=f"/{p}", status=status, deleted=deleted) for p in paths]


@pytest.fixture
def main_state(make_state):
    return make_state({"branch": "main", "changes": []})


@pytest.fixture
def processor(code_bus, content_bus):
    return ConfigPostProcessor(code_bus, content_bus)


class TestMountTable:
    """Test fstab.yaml parsing."""

    def test_string_mount_point(self):
        fstab = parse_mount_table(f"mountpoints:\n  /: {DRIVE}\n")
        assert fstab["mountpoints"] == {"/": {"url": DRIVE}}

    def test_object_mount_point(self):
        fstab = parse_mount_table(
            "mountpoints:\n"
            "  /:\n"
            f"    url: {DRIVE}\n"
            "    type: google\n"
            "folders:\n"
            "  /products/: /generic-product\n"
        )
        assert fstab["mountpoints"]["/"] == {"url": DRIVE, "type": "google"}
        assert fstab["folders"] == {"/products/": "/generic-product"}

    @pytest.mark.parametrize("text", [
        "mountpoints: [",
        "- a\n- b\n",
        "folders: {}\n",
        "mountpoints:\n  /: ftp://example.com\n",
        "mountpoints:\n  /:\n    type: google\n",
        "mountpoints:\n  docs: https://example.com\n",
    ])
    def test_invalid(self, text):
        with pytest.raises(ConfigError):
            parse_mount_table(text)

    def test_content_bus_id(self):
        assert len(CONTENT_ID) == 59
        int(CONTENT_ID, 16)
        assert compute_content_bus_id(DRIVE) == CONTENT_ID


class TestHead:
    """Test the head.html rebuild."""

    def test_head_changed(self, main_state, processor, code_bus):
        code_bus.put(f"{MAIN}head.html", b"<meta name='x'>")
        main_state.resources = synced("head.html")

        effects = processor.plan(main_state)

        write = effects[0]
        assert isinstance(write, WriteObject)
        assert write.bus == "code"
        assert write.key == CONFIG_KEY
        aggregate = json.loads(write.body)
        assert aggregate["head"]["data"]["html"] == "<meta name='x'>"
        assert aggregate["version"] == 2
        assert "created" in aggregate

        purge = effects[1]
        assert isinstance(purge, Purge)
        assert purge.scope == "config"
        assert purge.keys == [CONFIG_PURGE_KEY, "main--helix-website--adobe_head"]

    def test_unrelated_sections_preserved(self, main_state, processor, code_bus):
        code_bus.put(f"{MAIN}helix-config.json", json.dumps({
            "version": 2,
            "created": "Mon, 01 Jan 2024 00:00:00 GMT",
            "fstab": {"data": {"mountpoints": {"/": {"url": DRIVE}}}},
        }))
        code_bus.put(f"{MAIN}head.html", b"<meta>")
        main_state.resources = synced("head.html")

        aggregate = json.loads(processor.plan(main_state)[0].body)

        assert aggregate["created"] == "Mon, 01 Jan 2024 00:00:00 GMT"
        assert aggregate["fstab"] == {"data": {"mountpoints": {"/": {"url": DRIVE}}}}
        assert aggregate["head"]["data"]["html"] == "<meta>"

    def test_head_deleted(self, main_state, processor, code_bus):
        code_bus.put(f"{MAIN}helix-config.json", json.dumps({"version": 2, "head": {"data": {"html": "x"}}}))
        main_state.resources = synced("head.html", status=204, deleted=True)

        aggregate = json.loads(processor.plan(main_state)[0].body)

        assert "head" not in aggregate

    def test_head_on_feature_branch(self, make_state, processor, code_bus):
        state = make_state({"branch": "feature-x", "changes": []})
        code_bus.put("adobe/helix-website/feature-x/head.html", b"<meta>")
        state.resources = synced("head.html")

        effects = processor.plan(state)

        assert effects[0].key == "/adobe/helix-website/feature-x/helix-config.json"
        assert effects[1].keys == [CONFIG_PURGE_KEY, "feature-x--helix-website--adobe_head"]

    def test_skipped_head_is_ignored(self, main_state, processor, code_bus):
        code_bus.put(f"{MAIN}head.html", b"<meta>")
        main_state.resources = synced("head.html", status=304)

        assert processor.plan(main_state) == []


class TestFstab:
    """Test the fstab.yaml rebuild."""

    def test_fstab_changed(self, main_state, processor, code_bus):
        code_bus.put(f"{MAIN}fstab.yaml", f"mountpoints:\n  /: {DRIVE}\n")
        main_state.resources = synced("fstab.yaml")

        effects = processor.plan(main_state)

        assert [type(e) for e in effects] == [WriteObject, DeployMountTable, MergeContentConfig, Reindex, Purge]
        aggregate = json.loads(effects[0].body)
        assert aggregate["fstab"]["data"]["mountpoints"] == {"/": {"url": DRIVE}}
        assert aggregate["content"] == {"contentBusId": CONTENT_ID}
        assert effects[1].fstab["mountpoints"] == {"/": {"url": DRIVE}}
        assert effects[2].content_bus_id == CONTENT_ID
        assert effects[4].keys == [CONTENT_ID, f"p_{CONTENT_ID}"]

    def test_previous_content_bus_purged(self, main_state, code_bus, content_bus):
        code_bus.put(f"{MAIN}fstab.yaml", f"mountpoints:\n  /: {DRIVE}\n")
        main_state.resources = synced("fstab.yaml")
        processor = ConfigPostProcessor(code_bus, content_bus, content_bus_id="old-id")

        purge = processor.plan(main_state)[-1]

        assert purge.keys == [CONTENT_ID, f"p_{CONTENT_ID}", "old-id", "p_old-id"]

    def test_invalid_fstab_has_no_effects(self, main_state, processor, code_bus):
        code_bus.put(f"{MAIN}helix-config.json", json.dumps({"version": 2}))
        code_bus.put(f"{MAIN}fstab.yaml", "mountpoints: [")
        main_state.resources = synced("fstab.yaml")

        assert processor.plan(main_state) == []

    def test_fstab_on_feature_branch_is_ignored(self, make_state, processor, code_bus):
        state = make_state({"branch": "feature-x", "changes": []})
        code_bus.put("adobe/helix-website/feature-x/fstab.yaml", f"mountpoints:\n  /: {DRIVE}\n")
        state.resources = synced("fstab.yaml")

        assert processor.plan(state) == []

    def test_fstab_deleted(self, main_state, processor, code_bus):
        code_bus.put(f"{MAIN}helix-config.json", json.dumps({"version": 2, "fstab": {}}))
        main_state.resources = synced("fstab.yaml", status=204, deleted=True)

        assert processor.plan(main_state) == [RemoveObject("code", CONFIG_KEY)]

    def test_head_and_fstab_together(self, main_state, processor, code_bus):
        code_bus.put(f"{MAIN}head.html", b"<meta>")
        code_bus.put(f"{MAIN}fstab.yaml", f"mountpoints:\n  /: {DRIVE}\n")
        main_state.resources = synced("fstab.yaml", "head.html")

        effects = processor.plan(main_state)

        writes = [e for e in effects if isinstance(e, WriteObject)]
        assert len(writes) == 1
        aggregate = json.loads(writes[0].body)
        assert "head" in aggregate and "fstab" in aggregate
        assert any(isinstance(e, Purge) and e.scope == "config" for e in effects)


class TestOtherConfig:
    """Test query and sitemap config artifacts."""

    def _setup(self, code_bus, content_bus, original_site="adobe/helix-website"):
        code_bus.put(f"{MAIN}helix-config.json", json.dumps({
            "version": 2,
            "fstab": {"data": {"mountpoints": {"/": {"url": DRIVE}}}},
            "content": {"contentBusId": CONTENT_ID},
        }))
        code_bus.put(f"{MAIN}helix-query.yaml", "indices:\n  default:\n    include: ['/**']\n")
        if original_site:
            content_bus.put(f"{CONTENT_ID}/.hlx.json", json.dumps({"original-site": original_site}))

    def test_query_config_copied(self, main_state, processor, code_bus, content_bus):
        self._setup(code_bus, content_bus)
        main_state.resources = synced("helix-query.yaml")

        effects = processor.plan(main_state)

        assert len(effects) == 1
        write = effects[0]
        assert write.bus == "content"
        assert write.key == f"{CONTENT_ID}/preview/.helix/query.yaml"
        assert write.content_type == "text/yaml"
        assert write.compress is False

    def test_sitemap_config_removed(self, main_state, processor, code_bus, content_bus):
        self._setup(code_bus, content_bus)
        main_state.resources = synced("helix-sitemap.yaml", status=204, deleted=True)

        assert processor.plan(main_state) == [
            RemoveObject("content", f"{CONTENT_ID}/preview/.helix/sitemap.yaml"),
        ]

    def test_forked_repository_is_ignored(self, main_state, processor, code_bus, content_bus):
        self._setup(code_bus, content_bus, original_site="someone/else")
        main_state.resources = synced("helix-query.yaml")

        assert processor.plan(main_state) == []

    def test_unknown_original_site_is_ignored(self, main_state, processor, code_bus, content_bus):
        self._setup(code_bus, content_bus, original_site=None)
        main_state.resources = synced("helix-query.yaml")

        assert processor.plan(main_state) == []

    def test_requires_mount_table(self, main_state, processor, code_bus, content_bus):
        code_bus.put(f"{MAIN}helix-query.yaml", "indices: {}\n")
        content_bus.put(f"{CONTENT_ID}/.hlx.json", json.dumps({"original-site": "adobe/helix-website"}))
        main_state.resources = synced("helix-query.yaml")

        assert processor.plan(main_state) == []

    def test_malformed_yaml_is_skipped(self, main_state, processor, code_bus, content_bus):
        self._setup(code_bus, content_bus)
        code_bus.put(f"{MAIN}helix-query.yaml", "indices: [")
        main_state.resources = synced("helix-query.yaml")

        assert processor.plan(main_state) == []

    def test_only_on_default_branch(self, make_state, processor, code_bus, content_bus):
        self._setup(code_bus, content_bus)
        state = make_state({"branch": "feature-x", "changes": []})
        code_bus.put("adobe/helix-website/feature-x/helix-query.yaml", "indices: {}\n")
        state.resources = synced("helix-query.yaml")

        assert processor.plan(state) == []


class TestConfigPurge:
    """Test config purges without an aggregate rebuild."""

    @pytest.mark.parametrize("path", ["robots.txt", "tools/sidekick/config.json"])
    def test_config_files(self, main_state, processor, path):
        main_state.resources = synced(path)

        assert processor.plan(main_state) == [Purge(keys=[CONFIG_PURGE_KEY], scope="config")]

    def test_robots_on_feature_branch(self, make_state, processor):
        state = make_state({"branch": "feature-x", "changes": []})
        state.resources = synced("robots.txt")

        assert processor.plan(state) == []

    def test_tree_sync_forces_purge(self, main_state, processor):
        main_state.data.tree_sync_reason = "no base ref"
        main_state.resources = synced("index.md")

        assert processor.plan(main_state) == [
            Purge(keys=[CONFIG_PURGE_KEY, "main--helix-website--adobe_head"], scope="config"),
        ]

    def test_delete_tree_has_no_effects(self, make_state, processor):
        state = make_state({"branch": "feature-x", "changes": []})
        state.data.delete_tree = True
        state.resources = synced("*", deleted=True)

        assert processor.plan(state) == []


class TestPlanFlush:
    """Test the cache purge of the flush phase."""

    def test_few_paths(self, main_state):
        main_state.resources = synced("a.md") + synced("b.md", status=204, deleted=True) + synced("c.md", status=304)

        assert plan_flush(main_state) == [Purge(
            keys=[
                compute_surrogate_key("main--helix-website--adobe/a.md"),
                compute_surrogate_key("main--helix-website--adobe/b.md"),
            ],
            paths=["/a.md", "/b.md"],
        )]

    def test_many_paths_use_branch_key(self, main_state):
        main_state.resources = synced(*[f"p{i}.md" for i in range(11)])

        assert plan_flush(main_state) == [Purge(keys=["main--helix-website--adobe_code"])]

    def test_head_and_fstab_keys(self, main_state):
        main_state.resources = synced("head.html", "fstab.yaml")

        keys = plan_flush(main_state)[0].keys

        assert keys[-2:] == ["main--helix-website--adobe_head", "main--helix-website--adobe_404"]
        assert keys.count("main--helix-website--adobe_head") == 1

    def test_nothing_to_purge(self, main_state):
        main_state.resources = synced("a.md", status=304) + synced("b.md", status=404)

        assert plan_flush(main_state) == []

    def test_delete_tree(self, make_state):
        state = make_state({"branch": "feature-x", "changes": [{"path": "*", "type": "deleted"}]})
        state.data.delete_tree = True

        assert plan_flush(state) == [Purge(keys=[
            "feature-x--adobe--helix-website",
            "feature-x--adobe--helix-website_code",
        ])]


class TestEffectExecutor:
    """Test side effect execution."""

    def test_effects_run_in_order(self, main_state, code_bus, content_bus, downstream):
        executor = EffectExecutor(code_bus, content_bus, downstream)
        effects = [
            WriteObject("content", "id/preview/.helix/query.yaml", b"indices: {}", "text/yaml", compress=False),
            DeployMountTable({"mountpoints": {}}),
            MergeContentConfig("id"),
            Reindex(),
            Purge(keys=["k"], paths=["/a.md"]),
        ]

        outcomes = executor.execute(main_state, effects)

        assert all(o.ok for o in outcomes)
        assert content_bus.get("id/preview/.helix/query.yaml") == b"indices: {}"
        assert [name for name, _ in downstream.calls] == [
            "deploy_mount_table", "merge_content_config", "reindex", "purge",
        ]

    def test_failure_is_isolated(self, main_state, code_bus, content_bus, downstream):
        failing = type(downstream)(fail_on=("reindex",))
        executor = EffectExecutor(code_bus, content_bus, failing)

        outcomes = executor.execute(main_state, [Reindex(), Purge(keys=["k"])])

        assert [o.ok for o in outcomes] == [False, True]
        assert outcomes[0].error == "reindex unavailable"
        assert failing.named("purge") == [{"keys": ["k"], "paths": [], "scope": "preview-and-live"}]

    def test_remove_object(self, main_state, code_bus, content_bus, downstream):
        code_bus.put(CONFIG_KEY, b"{}")
        EffectExecutor(code_bus, content_bus, downstream).execute(main_state, [RemoveObject("code", CONFIG_KEY)])
        assert code_bus.head(CONFIG_KEY) is None
