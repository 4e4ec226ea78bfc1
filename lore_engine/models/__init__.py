"""Models package for the lore engine."""

from .knowledge import KnowledgeEntryRecord, KnowledgeVector, ActivationStateRecord

__all__ = [
    "KnowledgeEntryRecord",
    "KnowledgeVector",
    "ActivationStateRecord",
]
