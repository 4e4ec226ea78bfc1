"""
Vector Matcher
==============

Embeds the scan window, queries the knowledge index for the requesting
tenant, and maps chunk hits back to entries.

An entry survives when its best chunk scores at or above its own
similarity threshold. Surviving entries are ranked by score; an entry is
kept only while its rank is within its own ``max_vector_results``.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence

from lore_engine.db.vector_store import VectorHit
from lore_engine.services.activation.keyword_matcher import build_scan_window
from lore_engine.services.activation.schema import ActivationSettings, KnowledgeEntry
from lore_engine.services.profiles import ChatMessage

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    def embed(self, text: str, use_cache: bool = True) -> List[float]: ...

    def embed_batch(self, texts: List[str], use_cache: bool = True) -> List[List[float]]: ...


class VectorIndex(Protocol):
    def query(self, tenant_id: Optional[str], query_embedding: List[float], top_k: int = 10) -> List[VectorHit]: ...


@dataclass
class VectorMatch:
    """Best-scoring chunk of one entry."""
    entry_id: str
    similarity: float
    chunk_index: int = 0
    chunk_text: Optional[str] = None

    @property
    def activation_score(self) -> float:
        return self.similarity * 100


def rank_vector_hits(
    hits: Sequence[VectorHit],
    entries: Dict[str, KnowledgeEntry]
) -> Dict[str, VectorMatch]:
    """
    Reduce chunk hits to one match per entry.

    Args:
        hits: Index hits (any order)
        entries: Vector-mode entries eligible this turn, keyed by id

    Returns:
        Surviving matches keyed by entry id
    """
    best: Dict[str, VectorMatch] = {}

    for hit in hits:
        entry_id = str(hit.metadata.get("source_id", ""))
        entry = entries.get(entry_id)
        if entry is None:
            continue

        if hit.score < entry.activation.vector_similarity_threshold:
            continue

        current = best.get(entry_id)
        if current is None or hit.score > current.similarity:
            best[entry_id] = VectorMatch(
                entry_id=entry_id,
                similarity=hit.score,
                chunk_index=int(hit.metadata.get("chunk_index", 0) or 0),
                chunk_text=hit.document,
            )

    ranked = sorted(best.values(), key=lambda m: (-m.similarity, m.entry_id))
    kept = {}
    for rank, match in enumerate(ranked):
        if rank < entries[match.entry_id].activation.max_vector_results:
            kept[match.entry_id] = match
        else:
            logger.debug(f"Entry {match.entry_id} dropped by max_vector_results at rank {rank}")

    return kept


def build_query_text(messages: Sequence[ChatMessage], entries: Sequence[KnowledgeEntry]) -> str:
    """
    Concatenate the widest scan window any vector entry asks for.

    One embedding serves all entries in a turn.
    """
    if not entries:
        return ""

    combined = ActivationSettings(
        scan_depth=max(e.activation.scan_depth for e in entries),
        match_in_user_messages=any(e.activation.match_in_user_messages for e in entries),
        match_in_bot_messages=any(e.activation.match_in_bot_messages for e in entries),
        match_in_system_prompts=any(e.activation.match_in_system_prompts for e in entries),
    )
    return "\n".join(build_scan_window(messages, combined))


class VectorMatcher:
    """Runs one embedding plus one index query per turn."""

    def __init__(self, embedding_service: Embedder, vector_index: VectorIndex, candidate_pool: int = 50):
        """
        Args:
            embedding_service: Embeds the scan window
            vector_index: Tenant-scoped nearest-neighbour index
            candidate_pool: Minimum number of chunk hits requested from the index
        """
        self.embedding_service = embedding_service
        self.vector_index = vector_index
        self.candidate_pool = candidate_pool

    def find_matches(
        self,
        messages: Sequence[ChatMessage],
        entries: Sequence[KnowledgeEntry],
        tenant_id: Optional[str]
    ) -> Dict[str, VectorMatch]:
        """
        Find vector matches for the vector/hybrid entries among `entries`.

        Raises:
            Exception: Embedding or index failures propagate so the engine can degrade
        """
        vector_entries = {e.id: e for e in entries if e.activation.uses_vectors}
        if not vector_entries:
            return {}

        query_text = build_query_text(messages, list(vector_entries.values()))
        if not query_text.strip():
            return {}

        embedding = self.embedding_service.embed(query_text, use_cache=False)

        # Entries may surface several chunks each
        top_k = max(
            self.candidate_pool,
            max(e.activation.max_vector_results for e in vector_entries.values()) * 4
        )
        hits = self.vector_index.query(tenant_id, embedding, top_k=top_k)
        matches = rank_vector_hits(hits, vector_entries)

        logger.debug(f"Vector query: {len(hits)} chunk hits -> {len(matches)} entry matches")
        return matches
