"""
Knowledge vector sync report.

Usage:
  lore-vector-sync
  lore-vector-sync --repair
  lore-vector-sync --config config/system.yaml --repair

Prints a JSON report and exits 0 when entries and vectors are in sync,
2 when drift was found (after --repair, when drift remains).
"""

import argparse
import json
import logging
from pathlib import Path
from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from lore_engine.config.loader import ConfigLoader
from lore_engine.db.database import init_db, make_engine
from lore_engine.db.vector_store import KnowledgeVectorStore
from lore_engine.services.chunking import ChunkingService
from lore_engine.services.embedding_service import EmbeddingService
from lore_engine.services.vector_sync_check import VectorSyncChecker
from lore_engine.services.vectorization_service import VectorizationService


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Check knowledge entries against their vector records.")
    parser.add_argument("--config", type=Path, default=None, help="Path to system.yaml.")
    parser.add_argument("--repair", action="store_true", help="Re-vectorize drifted entries and delete orphans.")
    args = parser.parse_args(argv)

    config = ConfigLoader().load_system_config(args.config)
    logging.basicConfig(level=getattr(logging, config.log_level))

    engine = make_engine(config.database.url, echo=config.database.echo)
    init_db(engine)
    db = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    vector_store = KnowledgeVectorStore(config.vector_store.persist_directory, config.vector_store.collection_name)

    try:
        checker = VectorSyncChecker(db, vector_store)
        report = checker.check()
        output = {"check": report.to_dict()}

        if args.repair and not report.ok:
            # Embedding model is loaded only when something needs re-vectorizing
            embedder = EmbeddingService(
                config.embedding.model_name,
                device=config.embedding.device,
                batch_size=config.embedding.batch_size
            )
            checker.vectorization_service = VectorizationService(
                db, embedder, vector_store, ChunkingService(config.chunking)
            )
            output["repair"] = checker.repair(report).to_dict()
            report = checker.check()
            output["after_repair"] = report.to_dict()

        print(json.dumps(output, indent=2, default=str))
        return 0 if report.ok else 2
    finally:
        db.close()


if __name__ == "__main__":
    raise SystemExit(main())
