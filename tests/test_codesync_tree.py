"""
Tests for the tree differ.
"""

import httpx
import pytest

from services.codesync import Fatal, GitHubClient, Ok, RateLimited, TreeDiffer, diff_tree, prepare_event
from services.codesync.github_client import GitTreeEntry


def blob(path: str) -> GitTreeEntry:
    return GitTreeEntry(path=path, sha=f"blob-{path}", type="blob", mode="100644")


def folder(path: str) -> GitTreeEntry:
    return GitTreeEntry(path=path, sha=f"tree-{path}", type="tree", mode="040000")


class TestDiffTree:
    """Test structural classification."""

    def test_classification(self):
        tree = [blob("new.md"), blob("both.md"), folder("scripts"), blob("scripts/a.js")]
        stored = ["both.md", "gone.md"]

        changes = diff_tree(tree, "commit-1", stored)

        assert [(c.path, c.type) for c in changes] == [
            ("both.md", "modified"),
            ("gone.md", "deleted"),
            ("new.md", "added"),
            ("scripts/a.js", "added"),
        ]

    @pytest.mark.parametrize("tree_paths,stored", [
        ([], []),
        (["a"], []),
        ([], ["a"]),
        (["a", "b", "c"], ["b", "c", "d", "e"]),
        (["x/y", "x/z"], ["x/y"]),
    ])
    def test_completeness(self, tree_paths, stored):
        """Every path appears once: added, modified or deleted by presence."""
        changes = diff_tree([blob(p) for p in tree_paths], "c", stored)

        assert len(changes) == len(set(tree_paths) | set(stored))
        types = {c.path: c.type for c in changes}
        for path in tree_paths:
            assert types[path] == ("modified" if path in stored else "added")
        for path in set(stored) - set(tree_paths):
            assert types[path] == "deleted"

    def test_commit_reference(self):
        changes = diff_tree([blob("a.md")], "commit-1", ["b.md"])
        commits = {c.path: c.commit for c in changes}
        assert commits == {"a.md": "commit-1", "b.md": None}

    def test_internal_objects_excluded(self):
        changes = diff_tree([blob("a.md")], "c", ["helix-config.json", ".sha", "a.md"])
        assert [c.path for c in changes] == ["a.md"]

    def test_sorted_output(self):
        changes = diff_tree([blob("z.md"), blob("a.md"), blob("m/n.md")], "c", [])
        assert [c.path for c in changes] == ["a.md", "m/n.md", "z.md"]


class TestTreeDiffer:
    """Test the differ against github and storage."""

    def _event(self, project):
        event, _ = prepare_event({"branch": "main", "path": "/*"}, project)
        return event

    def test_compute_changes(self, fake_github, github, code_bus, project):
        fake_github.files = {"index.html": b"<html>", "new.md": b"new"}
        code_bus.put("adobe/helix-website/main/index.html", b"<old>")
        code_bus.put("adobe/helix-website/main/old.md", b"old")
        code_bus.put("adobe/helix-website/main/helix-config.json", b"{}")

        result = TreeDiffer(github, code_bus).compute_changes(self._event(project), "commit-main")

        assert isinstance(result, Ok)
        assert {c.path: c.type for c in result.value} == {
            "index.html": "modified",
            "new.md": "added",
            "old.md": "deleted",
        }
        assert fake_github.requests[-1].url.path == "/repos/adobe/helix-website/git/trees/commit-main"
        assert fake_github.requests[-1].url.params["recursive"] == "1"

    def test_truncated_tree_is_fatal(self, fake_github, github, code_bus, project):
        fake_github.files = {"a.md": b"a"}
        fake_github.truncated = True

        result = TreeDiffer(github, code_bus).compute_changes(self._event(project), "commit-main")

        assert isinstance(result, Fatal)
        assert "truncated" in str(result.error)

    def test_errors_name_the_branch(self, code_bus, project):
        client = GitHubClient(token="t", transport=httpx.MockTransport(lambda r: httpx.Response(500, json={})))
        result = TreeDiffer(client, code_bus).compute_changes(self._event(project), "commit-main")

        assert isinstance(result, Fatal)
        assert result.error.status == 500
        assert "adobe/helix-website/main" in str(result.error)

    def test_rate_limit_passed_on(self, code_bus, project):
        client = GitHubClient(
            token="t",
            transport=httpx.MockTransport(lambda r: httpx.Response(429, headers={"retry-after": "5"})),
        )
        result = TreeDiffer(client, code_bus).compute_changes(self._event(project), "commit-main")

        assert isinstance(result, RateLimited)
