"""Vector database wrapper for knowledge chunk embeddings."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Dict, Optional, Any
import logging
import os

# Disable ChromaDB telemetry to avoid noisy warnings
os.environ["ANONYMIZED_TELEMETRY"] = "False"

import chromadb
from chromadb.config import Settings

logger = logging.getLogger(__name__)

KNOWLEDGE_VECTOR_TYPE = "knowledge"


@dataclass
class VectorHit:
    """A single nearest-neighbour result."""
    vector_id: str
    score: float  # Cosine similarity in [0, 1] for normalized embeddings
    metadata: Dict[str, Any] = field(default_factory=dict)
    document: Optional[str] = None


def _clean_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
    """ChromaDB accepts only str/int/float/bool metadata values."""
    return {k: v for k, v in metadata.items() if isinstance(v, (str, int, float, bool))}


class KnowledgeVectorStore:
    """Wrapper for the ChromaDB collection holding knowledge chunk vectors.

    All knowledge vectors live in one cosine-space collection. Tenant
    isolation is enforced with a ``tenant_id`` metadata filter on every
    query.
    """

    def __init__(self, persist_directory: Path, collection_name: str = "knowledge_vectors"):
        """
        Initialize vector store with persistent storage.

        Args:
            persist_directory: Path to store ChromaDB data
            collection_name: Name of the knowledge collection
        """
        self.persist_directory = Path(persist_directory)
        self.persist_directory.mkdir(parents=True, exist_ok=True)
        self.collection_name = collection_name

        self.client = chromadb.PersistentClient(
            path=str(self.persist_directory),
            settings=Settings(anonymized_telemetry=False)
        )
        self._collection = None

        logger.info(f"KnowledgeVectorStore initialized at {persist_directory}")

    @property
    def collection(self) -> Any:
        """Get or create the knowledge collection."""
        if self._collection is None:
            try:
                self._collection = self.client.get_or_create_collection(
                    name=self.collection_name,
                    metadata={"hnsw:space": "cosine"}
                )
                logger.debug(
                    f"Collection '{self.collection_name}' ready (count: {self._collection.count()})"
                )
            except Exception as e:
                logger.error(f"Failed to get/create collection '{self.collection_name}': {e}")
                raise
        return self._collection

    def upsert(
        self,
        ids: List[str],
        embeddings: List[List[float]],
        metadatas: List[Dict[str, Any]],
        documents: Optional[List[str]] = None
    ) -> bool:
        """
        Insert or replace vectors in one batch.

        Returns:
            True if successful
        """
        if not ids:
            return True

        try:
            self.collection.upsert(
                ids=ids,
                embeddings=embeddings,
                metadatas=[_clean_metadata(m) for m in metadatas],
                documents=documents
            )
            logger.debug(f"Upserted {len(ids)} knowledge vectors")
            return True
        except Exception as e:
            logger.error(f"Failed to upsert knowledge vectors: {e}")
            return False

    def query(
        self,
        tenant_id: Optional[str],
        query_embedding: List[float],
        top_k: int = 10
    ) -> List[VectorHit]:
        """
        Nearest-neighbour search restricted to one tenant.

        Args:
            tenant_id: Tenant whose vectors may be returned (None = untenanted vectors)
            query_embedding: Query vector
            top_k: Maximum number of hits

        Returns:
            Hits ordered by descending similarity

        Raises:
            Exception: Propagates index errors so callers can degrade
        """
        where = {"$and": [
            {"type": KNOWLEDGE_VECTOR_TYPE},
            {"tenant_id": tenant_id or ""},
        ]}

        try:
            results = self.collection.query(
                query_embeddings=[query_embedding],
                n_results=top_k,
                where=where
            )
        except Exception as e:
            logger.error(f"Failed to query knowledge vectors: {e}")
            raise

        hits = []
        ids = (results.get('ids') or [[]])[0]
        distances = (results.get('distances') or [[]])[0]
        metadatas = (results.get('metadatas') or [[]])[0]
        documents = (results.get('documents') or [[]])[0]

        for i, vector_id in enumerate(ids):
            distance = distances[i] if i < len(distances) else 1.0
            hits.append(VectorHit(
                vector_id=vector_id,
                score=1.0 - distance,
                metadata=(metadatas[i] if i < len(metadatas) else None) or {},
                document=documents[i] if i < len(documents) else None
            ))

        hits.sort(key=lambda h: h.score, reverse=True)
        return hits

    def delete_by_ids(self, ids: List[str]) -> bool:
        """
        Delete specific vectors.

        Returns:
            True if successful
        """
        if not ids:
            return True

        try:
            self.collection.delete(ids=ids)
            logger.debug(f"Deleted {len(ids)} knowledge vectors")
            return True
        except Exception as e:
            logger.error(f"Failed to delete knowledge vectors: {e}")
            return False

    def get_ids_for_source(self, source_id: str) -> List[str]:
        """Get all vector ids recorded for one knowledge entry."""
        try:
            results = self.collection.get(
                where={"source_id": str(source_id)},
                include=[]
            )
            return list(results.get('ids') or [])
        except Exception as e:
            logger.warning(f"Could not list vectors for entry {source_id}: {e}")
            return []

    def list_source_ids(self) -> Dict[str, List[str]]:
        """
        Map every knowledge entry id present in the index to its vector ids.

        Used by the sync check to find orphans and count drift.
        """
        results = self.collection.get(
            where={"type": KNOWLEDGE_VECTOR_TYPE},
            include=["metadatas"]
        )

        by_source: Dict[str, List[str]] = {}
        for vector_id, metadata in zip(results.get('ids') or [], results.get('metadatas') or []):
            source_id = str((metadata or {}).get("source_id", ""))
            by_source.setdefault(source_id, []).append(vector_id)
        return by_source
