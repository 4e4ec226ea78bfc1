"""
Tests for the vector sync check and its command-line report.
"""

import json
from datetime import timedelta

import pytest
import yaml
from conftest import build_entry

from lore_engine.models.knowledge import KnowledgeEntryRecord, utc_now
from lore_engine.repositories.knowledge_repository import KnowledgeEntryRepository
from lore_engine.repositories.knowledge_vector_repository import KnowledgeVectorRepository
from lore_engine.services.vector_sync_check import (
    CHUNK_COUNT_MISMATCH,
    MISSING_VECTORS,
    ORPHANED_VECTORS,
    STALE_VECTORS,
    VectorSyncChecker,
)
from lore_engine.services.vectorization_service import VectorizationService
from lore_engine.utils import vector_sync_cli


@pytest.fixture
def vectorizer(db, embedder, vector_index):
    return VectorizationService(db, embedder, vector_index)


@pytest.fixture
def checker(db, vector_index, vectorizer):
    return VectorSyncChecker(db, vector_index, vectorizer)


def add_entry(db, entry_id: str, mode: str = "vector", content: str = "The tide comes in at dusk."):
    return KnowledgeEntryRepository(db).create(build_entry(entry_id, content=content, mode=mode))


class TestVectorSyncCheck:

    def test_clean_store(self, db, checker, vectorizer):
        add_entry(db, "tide")
        add_entry(db, "plain", mode="keyword")
        vectorizer.vectorize_entry("tide")

        report = checker.check()
        assert report.ok
        assert report.summary["entries_that_should_be_vectorized"] == 1
        assert report.summary["total_vector_records"] == report.summary["total_index_vectors"] == 1

    def test_missing_vectors(self, db, checker):
        add_entry(db, "tide")
        issues = checker.check().issues_of(MISSING_VECTORS)
        assert [i.entry_id for i in issues] == ["tide"]

    def test_marked_but_missing(self, db, checker):
        add_entry(db, "plain", mode="keyword")
        KnowledgeEntryRepository(db).mark_vectorization("plain", is_vectorized=True, chunk_count=1)
        assert [i.entry_id for i in checker.check().issues_of(MISSING_VECTORS)] == ["plain"]

    def test_orphan_in_index(self, checker, vector_index):
        vector_index.add_raw("vec_stray", "ghost")
        issues = checker.check().issues_of(ORPHANED_VECTORS)
        assert len(issues) == 1
        assert issues[0].vector_ids == ["vec_stray"]
        assert issues[0].details["source"] == "index"

    def test_orphan_in_mirror(self, db, checker):
        KnowledgeVectorRepository(db).add("vec_lost", "ghost", 0, 1, "lost text")
        db.commit()
        issues = checker.check().issues_of(ORPHANED_VECTORS)
        assert issues[0].details["source"] == "mirror"

    def test_chunk_count_mismatch(self, db, checker, vectorizer):
        add_entry(db, "tide")
        vectorizer.vectorize_entry("tide")
        KnowledgeEntryRepository(db).mark_vectorization("tide", is_vectorized=True, chunk_count=5)

        issues = checker.check().issues_of(CHUNK_COUNT_MISMATCH)
        assert issues[0].details == {"expected_chunks": 5, "actual_chunks": 1, "source": "mirror"}

    def test_index_count_mismatch(self, db, checker, vectorizer, vector_index):
        add_entry(db, "tide")
        vectorizer.vectorize_entry("tide")
        vector_index.add_raw("vec_extra", "tide")

        issues = checker.check().issues_of(CHUNK_COUNT_MISMATCH)
        assert issues[0].details["source"] == "index"

    def test_stale_vectors(self, db, checker, vectorizer):
        add_entry(db, "tide")
        vectorizer.vectorize_entry("tide")

        record = db.get(KnowledgeEntryRecord, "tide")
        record.updated_at = utc_now() + timedelta(minutes=5)
        db.commit()

        assert [i.entry_id for i in checker.check().issues_of(STALE_VECTORS)] == ["tide"]

    def test_repair_is_idempotent(self, db, checker, vector_index):
        add_entry(db, "tide")
        vector_index.add_raw("vec_stray", "ghost")

        first = checker.repair()
        assert first.revectorized == ["tide"]
        assert first.orphans_deleted == 1
        assert checker.check().ok

        second = checker.repair()
        assert second.revectorized == []
        assert second.orphans_deleted == 0

    def test_repair_needs_vectorizer(self, db, vector_index):
        add_entry(db, "tide")
        with pytest.raises(ValueError):
            VectorSyncChecker(db, vector_index).repair()


class TestVectorSyncCli:

    def test_clean_report(self, tmp_path, capsys):
        config_path = tmp_path / "system.yaml"
        config_path.write_text(yaml.safe_dump({
            "database": {"url": f"sqlite:///{tmp_path / 'cli.db'}"},
            "vector_store": {"persist_directory": str(tmp_path / "vectors")},
            "log_level": "WARNING",
        }))

        exit_code = vector_sync_cli.main(["--config", str(config_path)])

        output = json.loads(capsys.readouterr().out)
        assert exit_code == 0
        assert output["check"]["ok"] is True
        assert "repair" not in output
