#!/usr/bin/env python3
"""Embed every memory that has no vector yet.

Walks memories oldest first with a keyset cursor, so it is safe to re-run:
rows that already carry an embedding are never selected again. Rows whose
embedding fails are marked failed and the run continues.

Usage:
    DATABASE_URL=postgresql://... OPENAI_API_KEY=... \
        python scripts/backfill_embeddings.py [--batch-size N] [--max-items N]
"""

import argparse
import json
import logging
import sys

from core.db import DB, dispose_db, init_db
from core.services.embedding_jobs import InProcessJobDispatcher
from core.services.memory_service import build_memory_service

logger = logging.getLogger("scopemem.backfill")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Backfill missing memory embeddings")
    parser.add_argument("--batch-size", type=int, default=None, help="Rows fetched per batch")
    parser.add_argument("--max-items", type=int, default=None, help="Stop after this many rows")
    args = parser.parse_args(argv)

    init_db()
    # Backfill embeds inline; no job queue is needed.
    service = build_memory_service(DB.engine, DB.SessionLocal, dispatcher=InProcessJobDispatcher(max_workers=1))
    try:
        stats = service.pipeline.backfill(batch_size=args.batch_size, max_items=args.max_items)
    finally:
        service.shutdown()
        dispose_db()

    print(json.dumps(stats, indent=2))
    if stats.get("status") == "skipped":
        logger.warning(f"Backfill skipped: {stats.get('reason')}")
        return 1
    return 0 if not stats.get("failed") else 2


if __name__ == "__main__":
    sys.exit(main())
