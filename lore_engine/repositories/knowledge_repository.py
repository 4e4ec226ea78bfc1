"""Repository for knowledge entry operations."""

from typing import List, Optional
from sqlalchemy.orm import Session

from lore_engine.models.knowledge import KnowledgeEntryRecord, utc_now
from lore_engine.services.activation.schema import KnowledgeEntry

_STATUS_FIELDS = {"is_vectorized", "chunk_count"}


def record_to_entry(record: KnowledgeEntryRecord) -> KnowledgeEntry:
    data = dict(record.data or {})
    data.update(
        id=record.id,
        tenant_id=record.tenant_id,
        collection_id=record.collection_id,
        is_vectorized=bool(record.is_vectorized),
        chunk_count=record.chunk_count or 0,
    )
    return KnowledgeEntry.model_validate(data)


class KnowledgeEntryRepository:
    """
    Handle database operations for knowledge entries.

    Stands in for the external knowledge store: the engine reads entries
    and writes back only vectorization status.
    """

    def __init__(self, db: Session):
        self.db = db

    def create(self, entry: KnowledgeEntry) -> KnowledgeEntry:
        """Persist a new entry and return it as stored."""
        record = KnowledgeEntryRecord(
            id=entry.id,
            tenant_id=entry.tenant_id,
            collection_id=entry.collection_id,
            data=entry.model_dump(mode='json', exclude=_STATUS_FIELDS),
            is_vectorized=entry.is_vectorized,
            chunk_count=entry.chunk_count,
        )
        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)
        return record_to_entry(record)

    def update(self, entry: KnowledgeEntry) -> Optional[KnowledgeEntry]:
        """Replace an entry's rules and content. Vectorization status is left untouched."""
        record = self.db.get(KnowledgeEntryRecord, entry.id)
        if record is None:
            return None

        record.tenant_id = entry.tenant_id
        record.collection_id = entry.collection_id
        record.data = entry.model_dump(mode='json', exclude=_STATUS_FIELDS)
        self.db.commit()
        self.db.refresh(record)
        return record_to_entry(record)

    def get_by_id(self, entry_id: str) -> Optional[KnowledgeEntry]:
        """Get entry by ID."""
        record = self.db.get(KnowledgeEntryRecord, str(entry_id))
        return record_to_entry(record) if record else None

    def exists(self, entry_id: str) -> bool:
        return self.db.get(KnowledgeEntryRecord, str(entry_id)) is not None

    def list_by_collection(self, collection_id: str) -> List[KnowledgeEntry]:
        """List entries belonging to a collection."""
        records = (
            self.db.query(KnowledgeEntryRecord)
            .filter(KnowledgeEntryRecord.collection_id == collection_id)
            .order_by(KnowledgeEntryRecord.created_at)
            .all()
        )
        return [record_to_entry(r) for r in records]

    def list_all(self, tenant_id: Optional[str] = None) -> List[KnowledgeEntry]:
        """List all entries, optionally for one tenant."""
        query = self.db.query(KnowledgeEntryRecord)
        if tenant_id is not None:
            query = query.filter(KnowledgeEntryRecord.tenant_id == tenant_id)
        return [record_to_entry(r) for r in query.order_by(KnowledgeEntryRecord.created_at).all()]

    def list_records(self) -> List[KnowledgeEntryRecord]:
        """Raw rows, including timestamps (used by the vector sync check)."""
        return self.db.query(KnowledgeEntryRecord).order_by(KnowledgeEntryRecord.created_at).all()

    def mark_vectorization(self, entry_id: str, is_vectorized: bool, chunk_count: int) -> bool:
        """
        Write back vectorization status.

        Returns:
            True if the entry exists
        """
        record = self.db.get(KnowledgeEntryRecord, str(entry_id))
        if record is None:
            return False

        record.is_vectorized = is_vectorized
        record.chunk_count = chunk_count
        record.vectorized_at = utc_now() if is_vectorized else None
        self.db.commit()
        return True

    def delete(self, entry_id: str) -> bool:
        """Delete an entry. Its vectors are removed by the vectorization service."""
        record = self.db.get(KnowledgeEntryRecord, str(entry_id))
        if record is None:
            return False
        self.db.delete(record)
        self.db.commit()
        return True
