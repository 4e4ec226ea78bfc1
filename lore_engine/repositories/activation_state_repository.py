"""Repository for per-conversation activation state."""

from typing import Dict
from sqlalchemy.orm import Session

from lore_engine.models.knowledge import ActivationStateRecord


class ActivationStateRepository:
    """Handle database operations for activation state rows."""

    def __init__(self, db: Session):
        self.db = db

    def get_for_conversation(self, conversation_id: str) -> Dict[str, ActivationStateRecord]:
        """All state rows for a conversation, keyed by entry id."""
        records = (
            self.db.query(ActivationStateRecord)
            .filter(ActivationStateRecord.conversation_id == conversation_id)
            .all()
        )
        return {r.entry_id: r for r in records}

    def save(self, record: ActivationStateRecord) -> None:
        """Stage a new or modified row (not committed)."""
        self.db.add(record)

    def delete_for_conversation(self, conversation_id: str) -> int:
        """Remove every state row owned by a conversation."""
        deleted = (
            self.db.query(ActivationStateRecord)
            .filter(ActivationStateRecord.conversation_id == conversation_id)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted
