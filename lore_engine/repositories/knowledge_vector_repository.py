"""Repository for the durable vector mirror."""

from typing import List, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session

from lore_engine.models.knowledge import KnowledgeVector


class KnowledgeVectorRepository:
    """Handle database operations for mirrored vector records."""

    def __init__(self, db: Session):
        self.db = db

    def add(
        self,
        vector_id: str,
        entry_id: str,
        chunk_index: int,
        total_chunks: int,
        chunk_text: str,
        tenant_id: Optional[str] = None,
        user_id: Optional[str] = None,
        source_type: str = "knowledge",
        embedding_model: Optional[str] = None,
        embedding_dimensions: Optional[int] = None,
    ) -> KnowledgeVector:
        """
        Stage one mirror row in the current transaction.

        The caller commits once the index upsert has succeeded.
        """
        record = KnowledgeVector(
            vector_id=vector_id,
            entry_id=str(entry_id),
            tenant_id=tenant_id,
            user_id=user_id,
            source_type=source_type,
            chunk_index=chunk_index,
            total_chunks=total_chunks,
            chunk_text=chunk_text,
            embedding_model=embedding_model,
            embedding_dimensions=embedding_dimensions,
        )
        self.db.add(record)
        self.db.flush()
        return record

    def list_by_entry(self, entry_id: str) -> List[KnowledgeVector]:
        """List mirror rows for an entry, in chunk order."""
        return (
            self.db.query(KnowledgeVector)
            .filter(KnowledgeVector.entry_id == str(entry_id))
            .order_by(KnowledgeVector.chunk_index)
            .all()
        )

    def count_by_entry(self, entry_id: str) -> int:
        return (
            self.db.query(func.count(KnowledgeVector.vector_id))
            .filter(KnowledgeVector.entry_id == str(entry_id))
            .scalar()
        ) or 0

    def list_all(self) -> List[KnowledgeVector]:
        return self.db.query(KnowledgeVector).order_by(KnowledgeVector.entry_id, KnowledgeVector.chunk_index).all()

    def ids_by_entry(self, entry_id: str) -> List[str]:
        return [r.vector_id for r in self.list_by_entry(entry_id)]

    def delete_by_entry(self, entry_id: str) -> List[str]:
        """
        Delete all mirror rows for an entry (not committed).

        Returns:
            Deleted vector ids
        """
        records = self.list_by_entry(entry_id)
        ids = [r.vector_id for r in records]
        for record in records:
            self.db.delete(record)
        self.db.flush()
        return ids

    def delete_by_ids(self, vector_ids: List[str]) -> int:
        """Delete mirror rows by vector id (not committed)."""
        if not vector_ids:
            return 0
        deleted = (
            self.db.query(KnowledgeVector)
            .filter(KnowledgeVector.vector_id.in_(vector_ids))
            .delete(synchronize_session=False)
        )
        self.db.flush()
        return deleted
