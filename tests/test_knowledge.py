"""Tests for the SQLite knowledge store."""

from __future__ import annotations

from pathlib import Path

import pytest

from taskpilot.core.errors import KnowledgeError
from taskpilot.core.knowledge import KNOWLEDGE_NAMESPACE, KnowledgeStore, namespaced_key


class TestNamespacedKeys:
    def test_join(self):
        assert namespaced_key("task", "build") == "task::build"

    @pytest.mark.parametrize("namespace,key", [("", "k"), ("ns", ""), ("a::b", "k")])
    def test_invalid_parts(self, namespace, key):
        with pytest.raises(KnowledgeError):
            namespaced_key(namespace, key)


class TestKeyValue:
    """get/set/delete/list_entries."""

    def test_set_and_get(self, knowledge: KnowledgeStore):
        knowledge.set("task::build", {"cmd": "make"}, tags=["c"])
        entry = knowledge.get("task::build")
        assert entry.value == {"cmd": "make"}
        assert entry.tags == ["c"]

    def test_last_write_wins(self, knowledge: KnowledgeStore):
        knowledge.set("task::x", 1)
        knowledge.set("task::x", 2)
        assert knowledge.get("task::x").value == 2
        assert len(knowledge.list_entries("task::")) == 1

    def test_missing_key(self, knowledge: KnowledgeStore):
        assert knowledge.get("task::nope") is None
        assert knowledge.delete("task::nope") is False

    def test_delete(self, knowledge: KnowledgeStore):
        knowledge.set("task::x", "v")
        assert knowledge.delete("task::x") is True
        assert knowledge.get("task::x") is None

    def test_rejects_unnamespaced_key(self, knowledge: KnowledgeStore):
        with pytest.raises(KnowledgeError, match="namespaced"):
            knowledge.set("plain", 1)

    def test_rejects_unserializable_value(self, knowledge: KnowledgeStore):
        with pytest.raises(KnowledgeError, match="JSON-serializable"):
            knowledge.set("task::x", {1, 2})

    def test_prefix_is_literal(self, knowledge: KnowledgeStore):
        """LIKE wildcards in a prefix match only themselves."""
        knowledge.set("a_b::k", 1)
        knowledge.set("axb::k", 2)
        assert [e.key for e in knowledge.list_entries("a_b::")] == ["a_b::k"]

    def test_survives_reopen(self, tmp_path: Path):
        db = tmp_path / "k.db"
        KnowledgeStore(db).set("task::x", [1, 2])
        assert KnowledgeStore(db).get("task::x").value == [1, 2]


class TestKnowledgeQuery:
    """append_knowledge / query_knowledge ranking."""

    def test_append_uses_knowledge_namespace(self, knowledge: KnowledgeStore):
        entry = knowledge.append_knowledge("how to install numpy", "pip install numpy")
        assert entry.key.startswith(f"{KNOWLEDGE_NAMESPACE}::")
        assert entry.value["answer"] == "pip install numpy"

    def test_prompt_overlap_ranks_first(self, knowledge: KnowledgeStore):
        knowledge.append_knowledge("configure nginx proxy", "edit the server block")
        knowledge.append_knowledge("install rust toolchain", "use rustup, not nginx")

        results = knowledge.query_knowledge("nginx proxy setup")

        assert [e.value["prompt"] for e in results] == [
            "configure nginx proxy",
            "install rust toolchain",
        ]

    def test_no_overlap_returns_nothing(self, knowledge: KnowledgeStore):
        knowledge.append_knowledge("configure nginx", "edit server block")
        assert knowledge.query_knowledge("compile golang") == []

    def test_stopwords_only_query(self, knowledge: KnowledgeStore):
        knowledge.append_knowledge("what is the answer", "42")
        assert knowledge.query_knowledge("what is the") == []

    def test_limit(self, knowledge: KnowledgeStore):
        for i in range(4):
            knowledge.append_knowledge(f"docker build {i}", "answer")
        assert len(knowledge.query_knowledge("docker build", limit=2)) == 2

    def test_other_namespaces_are_not_searched(self, knowledge: KnowledgeStore):
        knowledge.set("task::docker", {"prompt": "docker build", "answer": "x"})
        assert knowledge.query_knowledge("docker build") == []
