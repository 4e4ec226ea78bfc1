"""
Tests for the knowledge entry and vector mirror repositories.
"""

from conftest import build_entry

from lore_engine.repositories.knowledge_repository import KnowledgeEntryRepository
from lore_engine.repositories.knowledge_vector_repository import KnowledgeVectorRepository
from lore_engine.services.activation.schema import ActivationMode, Position


class TestKnowledgeEntryRepository:

    def test_create_round_trips_rules(self, db):
        repo = KnowledgeEntryRepository(db)
        stored = repo.create(build_entry(
            "moon",
            content="The moon is glass.",
            positioning={"position": "system_bottom", "order": 3},
            timing={"sticky": 2},
            collection_id="sky",
        ))

        loaded = repo.get_by_id("moon")
        assert loaded == stored
        assert loaded.positioning.position == Position.SYSTEM_BOTTOM
        assert loaded.timing.sticky == 2
        assert not loaded.is_vectorized

    def test_list_by_collection_and_tenant(self, db):
        repo = KnowledgeEntryRepository(db)
        repo.create(build_entry("a", collection_id="sky", tenant_id="u1"))
        repo.create(build_entry("b", collection_id="sea", tenant_id="u1"))
        repo.create(build_entry("c", collection_id="sky", tenant_id="u2"))

        assert sorted(e.id for e in repo.list_by_collection("sky")) == ["a", "c"]
        assert sorted(e.id for e in repo.list_all(tenant_id="u1")) == ["a", "b"]
        assert len(repo.list_all()) == 3

    def test_update_keeps_vectorization_status(self, db):
        repo = KnowledgeEntryRepository(db)
        repo.create(build_entry("moon"))
        repo.mark_vectorization("moon", is_vectorized=True, chunk_count=2)

        updated = repo.update(build_entry("moon", content="New text.", mode="hybrid"))

        assert updated.content == "New text."
        assert updated.mode == ActivationMode.HYBRID
        assert updated.is_vectorized
        assert updated.chunk_count == 2

    def test_missing_entries(self, db):
        repo = KnowledgeEntryRepository(db)
        assert repo.get_by_id("nope") is None
        assert repo.update(build_entry("nope")) is None
        assert repo.mark_vectorization("nope", True, 1) is False
        assert repo.delete("nope") is False

    def test_delete(self, db):
        repo = KnowledgeEntryRepository(db)
        repo.create(build_entry("moon"))
        assert repo.exists("moon")
        assert repo.delete("moon")
        assert not repo.exists("moon")


class TestKnowledgeVectorRepository:

    def test_add_list_and_delete(self, db):
        repo = KnowledgeVectorRepository(db)
        for i in (1, 0):
            repo.add(f"v{i}", "moon", i, 2, f"chunk {i}")
        repo.add("other", "sun", 0, 1, "sun chunk")
        db.commit()

        assert repo.ids_by_entry("moon") == ["v0", "v1"]
        assert repo.count_by_entry("moon") == 2

        assert sorted(repo.delete_by_entry("moon")) == ["v0", "v1"]
        assert repo.delete_by_ids(["other", "missing"]) == 1
        db.commit()
        assert repo.list_all() == []
