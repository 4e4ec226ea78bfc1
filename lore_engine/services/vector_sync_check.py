"""
Vector Sync Check

Compares knowledge entries against their vector records (durable mirror
and index) and reports drift:

- missing_vectors: entry should be, or is marked as, vectorized but has no records
- chunk_count_mismatch: stored ``chunk_count`` differs from the record count
- stale_vectors: entry changed more than a minute after its vectors were written
- orphaned_vectors: records whose source entry no longer exists

``repair()`` re-vectorizes drifted entries and deletes orphans. Running it
twice is safe: a repaired store reports no issues.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from lore_engine.db.vector_store import KnowledgeVectorStore
from lore_engine.repositories.knowledge_repository import KnowledgeEntryRepository, record_to_entry
from lore_engine.repositories.knowledge_vector_repository import KnowledgeVectorRepository
from lore_engine.services.activation.schema import ActivationMode
from lore_engine.services.vectorization_service import VectorizationService

logger = logging.getLogger(__name__)

MISSING_VECTORS = "missing_vectors"
ORPHANED_VECTORS = "orphaned_vectors"
CHUNK_COUNT_MISMATCH = "chunk_count_mismatch"
STALE_VECTORS = "stale_vectors"

STALE_GRACE = timedelta(minutes=1)

_REVECTORIZE_TYPES = {MISSING_VECTORS, CHUNK_COUNT_MISMATCH, STALE_VECTORS}


@dataclass
class SyncIssue:
    """One detected drift."""
    type: str
    description: str
    entry_id: Optional[str] = None
    vector_ids: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "entry_id": self.entry_id,
            "vector_ids": self.vector_ids,
            "description": self.description,
            "details": self.details,
        }


@dataclass
class SyncReport:
    """Result of a sync check."""
    issues: List[SyncIssue] = field(default_factory=list)
    summary: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def ok(self) -> bool:
        return not self.issues and not self.errors

    def issues_of(self, issue_type: str) -> List[SyncIssue]:
        return [i for i in self.issues if i.type == issue_type]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "timestamp": self.timestamp,
            "summary": self.summary,
            "issues": [i.to_dict() for i in self.issues],
            "errors": self.errors,
        }


@dataclass
class RepairReport:
    """What a repair pass changed."""
    revectorized: List[str] = field(default_factory=list)
    orphans_deleted: int = 0
    failed: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "revectorized": self.revectorized,
            "orphans_deleted": self.orphans_deleted,
            "failed": self.failed,
        }


class VectorSyncChecker:
    """Detects and repairs drift between entries, the mirror table and the index."""

    def __init__(
        self,
        db: Session,
        vector_store: KnowledgeVectorStore,
        vectorization_service: Optional[VectorizationService] = None
    ):
        """
        Args:
            db: Database session
            vector_store: Knowledge vector index
            vectorization_service: Needed by repair() to re-vectorize entries
        """
        self.db = db
        self.vector_store = vector_store
        self.vectorization_service = vectorization_service
        self.entry_repo = KnowledgeEntryRepository(db)
        self.vector_repo = KnowledgeVectorRepository(db)

    def check(self) -> SyncReport:
        """Run every drift check (read-only)."""
        report = SyncReport()

        records = self.entry_repo.list_records()
        mirror_rows = self.vector_repo.list_all()

        mirror_by_entry: Dict[str, list] = {}
        for row in mirror_rows:
            mirror_by_entry.setdefault(row.entry_id, []).append(row)

        try:
            index_by_entry = self.vector_store.list_source_ids()
        except Exception as e:
            logger.error(f"Could not list index vectors: {e}")
            report.errors.append(f"index listing failed: {e}")
            index_by_entry = {}

        known_ids = set()
        should_count = 0
        marked_count = 0

        for record in records:
            known_ids.add(record.id)
            entry = record_to_entry(record)
            should = entry.mode in (ActivationMode.VECTOR, ActivationMode.HYBRID) and bool(entry.content.strip())
            marked = bool(record.is_vectorized)
            should_count += int(should)
            marked_count += int(marked)

            mirror = mirror_by_entry.get(record.id, [])
            index_ids = index_by_entry.get(record.id, [])
            expected = record.chunk_count or 0

            if (should or marked) and not mirror and not index_ids:
                reason = "is marked as vectorized" if marked else f"has activation mode '{entry.mode.value}'"
                report.issues.append(SyncIssue(
                    type=MISSING_VECTORS,
                    entry_id=record.id,
                    description=f"Knowledge entry {record.id} {reason} but no vector records exist",
                    details={"is_vectorized": marked, "chunk_count": expected},
                ))
                continue

            if mirror and len(mirror) != expected:
                report.issues.append(SyncIssue(
                    type=CHUNK_COUNT_MISMATCH,
                    entry_id=record.id,
                    description=(
                        f"Knowledge entry {record.id} has chunk_count={expected} "
                        f"but {len(mirror)} vector records exist"
                    ),
                    details={"expected_chunks": expected, "actual_chunks": len(mirror), "source": "mirror"},
                ))
            elif len(index_ids) != len(mirror):
                report.issues.append(SyncIssue(
                    type=CHUNK_COUNT_MISMATCH,
                    entry_id=record.id,
                    description=(
                        f"Knowledge entry {record.id} has {len(mirror)} mirrored records "
                        f"but {len(index_ids)} index vectors"
                    ),
                    details={"expected_chunks": expected, "actual_chunks": len(index_ids), "source": "index"},
                ))

            if mirror and record.updated_at:
                oldest = min(row.created_at for row in mirror)
                if record.updated_at > oldest + STALE_GRACE:
                    report.issues.append(SyncIssue(
                        type=STALE_VECTORS,
                        entry_id=record.id,
                        vector_ids=[row.vector_id for row in mirror],
                        description=f"Knowledge entry {record.id} was updated after its vectors were created",
                        details={
                            "entry_updated_at": record.updated_at.isoformat(),
                            "vectors_created_at": oldest.isoformat(),
                        },
                    ))

        for entry_id, rows in mirror_by_entry.items():
            if entry_id not in known_ids:
                report.issues.append(SyncIssue(
                    type=ORPHANED_VECTORS,
                    entry_id=entry_id,
                    vector_ids=[r.vector_id for r in rows],
                    description=f"{len(rows)} vector records reference non-existent knowledge entry {entry_id}",
                    details={"source": "mirror"},
                ))

        for entry_id, ids in index_by_entry.items():
            if entry_id not in known_ids and entry_id not in mirror_by_entry:
                report.issues.append(SyncIssue(
                    type=ORPHANED_VECTORS,
                    entry_id=entry_id or None,
                    vector_ids=list(ids),
                    description=f"{len(ids)} index vectors reference non-existent knowledge entry {entry_id}",
                    details={"source": "index"},
                ))

        report.summary = {
            "total_knowledge_entries": len(records),
            "total_vector_records": len(mirror_rows),
            "total_index_vectors": sum(len(ids) for ids in index_by_entry.values()),
            "entries_that_should_be_vectorized": should_count,
            "entries_marked_as_vectorized": marked_count,
            "issues_found": len(report.issues),
        }

        logger.info(f"Vector sync check: {len(report.issues)} issues across {len(records)} entries")
        return report

    def repair(self, report: Optional[SyncReport] = None) -> RepairReport:
        """
        Fix the issues in a report (a fresh check when omitted).

        Orphans are deleted from both stores; drifted entries are
        re-vectorized. A failure on one entry is recorded and the rest
        continue.
        """
        report = report or self.check()
        result = RepairReport()

        orphan_ids = sorted({vid for issue in report.issues_of(ORPHANED_VECTORS) for vid in issue.vector_ids})
        if orphan_ids:
            self.vector_repo.delete_by_ids(orphan_ids)
            self.db.commit()
            if not self.vector_store.delete_by_ids(orphan_ids):
                logger.warning(f"Could not delete {len(orphan_ids)} orphaned index vectors")
            result.orphans_deleted = len(orphan_ids)

        entry_ids = sorted({i.entry_id for i in report.issues if i.type in _REVECTORIZE_TYPES and i.entry_id})
        if entry_ids and self.vectorization_service is None:
            raise ValueError("repair() needs a vectorization service to re-vectorize entries")

        for entry_id in entry_ids:
            try:
                self.vectorization_service.vectorize_entry(entry_id)
                result.revectorized.append(entry_id)
            except Exception as e:
                logger.error(f"Repair failed for entry {entry_id}: {e}")
                result.failed[entry_id] = str(e)

        logger.info(
            f"Vector sync repair: {len(result.revectorized)} re-vectorized, "
            f"{result.orphans_deleted} orphans deleted, {len(result.failed)} failed"
        )
        return result
