"""
Knowledge Vectorization Service

Chunks entry text, embeds all chunks in one batch, and writes one vector
record per chunk to both the vector index and the durable mirror table.

Re-vectorization deletes every existing record for the entry (index and
mirror) before inserting new ones. The two stores are not updated
atomically; drift left by a crash is found and repaired by the vector sync
check.
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Deque, List, Optional

from sqlalchemy.orm import Session

from lore_engine.db.vector_store import KNOWLEDGE_VECTOR_TYPE, KnowledgeVectorStore
from lore_engine.exceptions import KnowledgeEntryNotFoundError, VectorizationError
from lore_engine.repositories.knowledge_repository import KnowledgeEntryRepository
from lore_engine.repositories.knowledge_vector_repository import KnowledgeVectorRepository
from lore_engine.services.chunking import ChunkingService
from lore_engine.services.embedding_service import EmbeddingService

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 200


def make_vector_id(entry_id: str, chunk_index: int, timestamp_ms: Optional[int] = None, nonce: Optional[str] = None) -> str:
    """
    Build a vector id that is unique across re-vectorizations.

    Format: ``vec_knowledge_{entry_id}_chunk_{index}_{timestamp_ms}_{nonce}``
    """
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    if nonce is None:
        nonce = uuid.uuid4().hex[:8]
    return f"vec_knowledge_{entry_id}_chunk_{chunk_index}_{timestamp_ms}_{nonce}"


@dataclass
class VectorizationResult:
    """Outcome of vectorizing one entry."""
    entry_id: str
    chunk_count: int
    vector_ids: List[str] = field(default_factory=list)
    deleted_count: int = 0


class VectorizationService:
    """Vectorizes knowledge entries into the index and the mirror table."""

    def __init__(
        self,
        db: Session,
        embedding_service: EmbeddingService,
        vector_store: KnowledgeVectorStore,
        chunking_service: Optional[ChunkingService] = None
    ):
        """
        Args:
            db: Database session
            embedding_service: Batch embedder
            vector_store: Knowledge vector index
            chunking_service: Chunker (default profiles when omitted)
        """
        self.db = db
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.chunking_service = chunking_service or ChunkingService()
        self.entry_repo = KnowledgeEntryRepository(db)
        self.vector_repo = KnowledgeVectorRepository(db)

    def vectorize_entry(
        self,
        entry_id: str,
        content_type: str = "lore",
        user_id: Optional[str] = None
    ) -> VectorizationResult:
        """
        (Re-)vectorize one entry.

        Args:
            entry_id: Entry to vectorize
            content_type: Chunk profile key
            user_id: User recorded in vector metadata (defaults to the entry's tenant)

        Returns:
            VectorizationResult with the new vector ids

        Raises:
            KnowledgeEntryNotFoundError: Entry does not exist (nothing is changed)
            VectorizationError: Embedding or index upsert failed; the entry is
                left marked as not vectorized
        """
        entry = self.entry_repo.get_by_id(entry_id)
        if entry is None:
            raise KnowledgeEntryNotFoundError(entry_id)
        entry_id = entry.id

        deleted = self._delete_existing(entry_id)

        chunks = self.chunking_service.chunk_text(entry.content, content_type)
        if not chunks:
            logger.warning(f"Entry {entry_id} has no content to vectorize")
            self.entry_repo.mark_vectorization(entry_id, is_vectorized=False, chunk_count=0)
            return VectorizationResult(entry_id=entry_id, chunk_count=0, deleted_count=deleted)

        try:
            embeddings = self.embedding_service.embed_batch([c.text for c in chunks], use_cache=False)
        except Exception as e:
            self.entry_repo.mark_vectorization(entry_id, is_vectorized=False, chunk_count=0)
            raise VectorizationError(entry_id, f"embedding failed: {e}") from e

        model_name = getattr(self.embedding_service, "model_name", None)
        dimensions = len(embeddings[0]) if embeddings else None
        timestamp_ms = int(time.time() * 1000)
        created_at = datetime.now(timezone.utc).isoformat()

        ids, metadatas, documents = [], [], []
        for chunk in chunks:
            vector_id = make_vector_id(entry_id, chunk.index, timestamp_ms)
            self.vector_repo.add(
                vector_id=vector_id,
                entry_id=entry_id,
                chunk_index=chunk.index,
                total_chunks=chunk.total_chunks,
                chunk_text=chunk.text,
                tenant_id=entry.tenant_id,
                user_id=user_id or entry.tenant_id,
                source_type=KNOWLEDGE_VECTOR_TYPE,
                embedding_model=model_name,
                embedding_dimensions=dimensions,
            )
            ids.append(vector_id)
            documents.append(chunk.text)
            metadatas.append({
                "type": KNOWLEDGE_VECTOR_TYPE,
                "user_id": user_id or entry.tenant_id,
                "tenant_id": entry.tenant_id or "",
                "source_type": KNOWLEDGE_VECTOR_TYPE,
                "source_id": entry_id,
                "chunk_index": chunk.index,
                "total_chunks": chunk.total_chunks,
                "created_at": created_at,
            })

        if not self.vector_store.upsert(ids=ids, embeddings=embeddings, metadatas=metadatas, documents=documents):
            self.db.rollback()
            self.entry_repo.mark_vectorization(entry_id, is_vectorized=False, chunk_count=0)
            raise VectorizationError(entry_id, "vector index upsert failed")

        # Commits the mirror rows together with the status write-back
        self.entry_repo.mark_vectorization(entry_id, is_vectorized=True, chunk_count=len(chunks))

        logger.info(f"Vectorized entry {entry_id}: {len(chunks)} chunks ({deleted} old vectors removed)")
        return VectorizationResult(entry_id=entry_id, chunk_count=len(chunks), vector_ids=ids, deleted_count=deleted)

    def delete_entry_vectors(self, entry_id: str) -> int:
        """
        Remove every vector record for an entry (cascade on entry deletion).

        Returns:
            Number of vector ids removed
        """
        deleted = self._delete_existing(str(entry_id))
        logger.info(f"Deleted {deleted} vectors for entry {entry_id}")
        return deleted

    def _delete_existing(self, entry_id: str) -> int:
        """
        Delete prior records from the mirror and the index.

        An index failure is logged and tolerated; the sync check repairs it.
        """
        mirror_ids = self.vector_repo.delete_by_entry(entry_id)
        self.db.commit()

        index_ids = self.vector_store.get_ids_for_source(entry_id)
        all_ids = sorted(set(mirror_ids) | set(index_ids))

        if all_ids and not self.vector_store.delete_by_ids(all_ids):
            logger.warning(
                f"Could not delete {len(all_ids)} index vectors for entry {entry_id}; "
                f"continuing, run the vector sync check to repair"
            )
        return len(all_ids)


@dataclass
class VectorizationTask:
    """A queued vectorization request."""
    entry_id: str
    content_type: str = "lore"
    user_id: Optional[str] = None


class BackgroundVectorizationManager:
    """
    Vectorizes entries off the request path.

    Entry creation queues a task and returns immediately; failures are
    logged and never roll back the entry.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        embedding_service: EmbeddingService,
        vector_store: KnowledgeVectorStore,
        chunking_service: Optional[ChunkingService] = None,
        history_limit: int = HISTORY_LIMIT
    ):
        """
        Args:
            history_limit: Most recent completed and failed tasks kept for inspection
        """
        self.session_factory = session_factory
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.chunking_service = chunking_service or ChunkingService()
        self.queue: asyncio.Queue = asyncio.Queue()
        self.running = False
        self.completed: Deque[VectorizationResult] = deque(maxlen=history_limit)
        self.failed: Deque[VectorizationTask] = deque(maxlen=history_limit)
        self._worker_task: Optional[asyncio.Task] = None

    async def start(self):
        """Start the background vectorization worker."""
        if self.running:
            logger.warning("Background vectorization manager already running")
            return

        self.running = True
        self._worker_task = asyncio.create_task(self._worker())
        logger.info("Background vectorization manager started")

    async def stop(self):
        """Stop the background vectorization worker."""
        if not self.running:
            return

        self.running = False
        if self._worker_task:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass

        logger.info("Background vectorization manager stopped")

    def queue_vectorization(self, entry_id: str, content_type: str = "lore", user_id: Optional[str] = None) -> bool:
        """
        Queue an entry for vectorization.

        Returns:
            True if vectorization was attempted (queued), False if the worker is not running
        """
        if not self.running:
            logger.warning(f"Vectorization worker not running; entry {entry_id} left unvectorized")
            return False

        self.queue.put_nowait(VectorizationTask(entry_id=str(entry_id), content_type=content_type, user_id=user_id))
        logger.debug(f"Queued vectorization for entry {entry_id}")
        return True

    async def wait_until_idle(self):
        """Block until every queued task has been processed."""
        await self.queue.join()

    async def _worker(self):
        """Process queued tasks until stopped."""
        logger.info("Background vectorization worker started")

        while self.running:
            try:
                task = await asyncio.wait_for(self.queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                logger.info("Background vectorization worker cancelled")
                break

            try:
                loop = asyncio.get_running_loop()
                result = await loop.run_in_executor(None, self._process_task, task)
                self.completed.append(result)
            except asyncio.CancelledError:
                logger.info("Background vectorization worker cancelled")
                raise
            except Exception as e:
                logger.error(f"Vectorization failed for entry {task.entry_id}: {e}", exc_info=True)
                self.failed.append(task)
            finally:
                self.queue.task_done()

        logger.info("Background vectorization worker stopped")

    def _process_task(self, task: VectorizationTask) -> VectorizationResult:
        """Run one task with its own database session."""
        db = self.session_factory()
        try:
            service = VectorizationService(db, self.embedding_service, self.vector_store, self.chunking_service)
            return service.vectorize_entry(task.entry_id, task.content_type, task.user_id)
        finally:
            db.close()
