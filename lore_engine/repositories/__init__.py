"""Repository pattern for database operations."""

from .knowledge_repository import KnowledgeEntryRepository
from .knowledge_vector_repository import KnowledgeVectorRepository
from .activation_state_repository import ActivationStateRepository

__all__ = [
    "KnowledgeEntryRepository",
    "KnowledgeVectorRepository",
    "ActivationStateRepository",
]
