"""Shared fixtures: fake embedder and vector index, SQLite sessions, entry builder."""

import hashlib
import math
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy.orm import sessionmaker

from lore_engine.db.database import init_db, make_engine
from lore_engine.db.vector_store import VectorHit
from lore_engine.exceptions import EmbeddingUnavailableError
from lore_engine.services.activation.schema import KnowledgeEntry, MessageRole
from lore_engine.services.profiles import ChatMessage


class FakeEmbedder:
    """Deterministic unit vectors seeded from a hash of the text."""

    model_name = "fake-embedder"

    def __init__(self, dims: int = 8):
        self.dims = dims
        self.calls = 0
        self.fail = False

    def _vector(self, text: str) -> List[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        raw = [b / 255 + 0.01 for b in digest[:self.dims]]
        norm = math.sqrt(sum(v * v for v in raw))
        return [v / norm for v in raw]

    def embed(self, text: str, use_cache: bool = True) -> List[float]:
        return self.embed_batch([text], use_cache=use_cache)[0]

    def embed_batch(self, texts: List[str], use_cache: bool = True) -> List[List[float]]:
        self.calls += 1
        if self.fail:
            raise EmbeddingUnavailableError("embedder offline")
        return [self._vector(t) for t in texts]


class FakeVectorIndex:
    """In-memory stand-in for KnowledgeVectorStore."""

    def __init__(self):
        self.records: Dict[str, Dict[str, Any]] = {}
        self.fail_deletes = False
        self.fail_upserts = False

    def upsert(self, ids, embeddings, metadatas, documents=None) -> bool:
        if self.fail_upserts:
            return False
        for i, vector_id in enumerate(ids):
            self.records[vector_id] = {
                "embedding": embeddings[i],
                "metadata": dict(metadatas[i]),
                "document": documents[i] if documents else None,
            }
        return True

    def query(self, tenant_id: Optional[str], query_embedding: List[float], top_k: int = 10) -> List[VectorHit]:
        hits = []
        for vector_id, record in self.records.items():
            if record["metadata"].get("tenant_id", "") != (tenant_id or ""):
                continue
            score = sum(a * b for a, b in zip(record["embedding"], query_embedding))
            hits.append(VectorHit(vector_id, score, record["metadata"], record["document"]))
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:top_k]

    def delete_by_ids(self, ids: List[str]) -> bool:
        if self.fail_deletes:
            return False
        for vector_id in ids:
            self.records.pop(vector_id, None)
        return True

    def get_ids_for_source(self, source_id: str) -> List[str]:
        return [vid for vid, r in self.records.items() if r["metadata"].get("source_id") == str(source_id)]

    def list_source_ids(self) -> Dict[str, List[str]]:
        by_source: Dict[str, List[str]] = {}
        for vector_id, record in self.records.items():
            by_source.setdefault(str(record["metadata"].get("source_id", "")), []).append(vector_id)
        return by_source

    def add_raw(self, vector_id: str, source_id: str, tenant_id: str = ""):
        """Insert a vector directly, bypassing the vectorization service."""
        self.records[vector_id] = {
            "embedding": [1.0] + [0.0] * 7,
            "metadata": {"type": "knowledge", "source_id": source_id, "tenant_id": tenant_id, "chunk_index": 0},
            "document": "stray",
        }


def build_entry(entry_id: str, content: str = "Lore text.", keys=("moon",), mode: str = "keyword", **rules) -> KnowledgeEntry:
    """Knowledge entry with keyword defaults; keyword args override rule groups."""
    data: Dict[str, Any] = {
        "id": entry_id,
        "name": entry_id,
        "content": content,
        "activation": {"mode": mode, "primary_keys": list(keys)},
    }
    for group, values in rules.items():
        if group == "activation":
            data["activation"].update(values)
        else:
            data[group] = values
    return KnowledgeEntry.model_validate(data)


def user(text: str) -> ChatMessage:
    return ChatMessage(role=MessageRole.USER, content=text)


def assistant(text: str, bot_id: Optional[str] = None, name: Optional[str] = None) -> ChatMessage:
    return ChatMessage(role=MessageRole.ASSISTANT, content=text, bot_id=bot_id, name=name)


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def vector_index():
    return FakeVectorIndex()


@pytest.fixture
def db_engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'lore.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()
