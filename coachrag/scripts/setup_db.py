"""
CoachRAG - Knowledge Base Ingestion CLI
========================================
Builds (or refreshes) the fixed-width vector index the RAG pipeline
retrieves from:

    1. Load settings; a missing ``DEPLOYMENT_API_KEY`` stops here.
    2. Build the embedder named by ``EMBEDDING_PROVIDER``.
    3. Open the ``VectorStore`` at ``VECTOR_DIMENSION`` width, dropping the
       table first when asked.
    4. Run the ``IngestionPipeline`` over the source directory.
    5. Print per-file counts and a startup/processing timing table.

Flags:
    --drop            Drop the table, then re-ingest (unchanged files still skipped).
    --purge           Drop the table and forget the hash cache (everything re-embedded).
    --drop-only       Drop the table and stop.
    --source DIR      Ingest from DIR instead of ``DATA_DIR``.
    --table NAME      Write to table NAME instead of ``LANCEDB_TABLE_NAME``.

Usage:
    python -m coachrag.scripts.setup_db
    python -m coachrag.scripts.setup_db --purge --source ./docs/coaching
"""

from __future__ import annotations

import argparse
import sys
import time
from collections.abc import Sequence
from pathlib import Path

_EMPTY_SUMMARY = {"total_files": 0, "files_processed": 0, "files_skipped": 0, "files_failed": 0, "total_chunks": 0}


# ── Arguments ──────────────────────────────────────────────────────────

def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="setup_db", description="CoachRAG — build the vector index from the knowledge-base documents.")
    reset = parser.add_mutually_exclusive_group()
    reset.add_argument("--drop", action="store_true", help="Drop the vector table before ingesting; unchanged files are still skipped.")
    reset.add_argument("--purge", action="store_true", help="Drop the vector table and delete the hash cache so every file is re-embedded.")
    reset.add_argument("--drop-only", action="store_true", help="Drop the vector table and exit without ingesting.")
    parser.add_argument("--source", type=Path, default=None, metavar="DIR", help="Directory of .txt/.md/.mdx/.pdf documents (default: DATA_DIR).")
    parser.add_argument("--table", default=None, metavar="NAME", help="Vector table name (default: LANCEDB_TABLE_NAME).")
    return parser.parse_args(argv)


# ── Orchestration ──────────────────────────────────────────────────────

def main(argv: Sequence[str] | None = None) -> None:
    args = _parse_args(argv)
    t_total = time.perf_counter()
    timings: dict[str, float] = {}

    t_step = time.perf_counter()
    try:
        from coachrag.config.settings import settings
    except Exception as exc:
        print("\n[FATAL] Settings could not be loaded — check the environment / .env file:\n")
        print(f"  {exc}\n")
        sys.exit(1)
    timings["settings"] = (time.perf_counter() - t_step) * 1000

    from coachrag.src.core.errors import ConfigurationError
    from coachrag.src.core.ingestor import IngestionPipeline
    from coachrag.src.core.providers import build_embedder
    from coachrag.src.database.vector_store import VectorStore
    from coachrag.src.utils.logger import get_logger

    logger = get_logger(__name__)
    source_dir = args.source or settings.DATA_DIR
    table_name = args.table or settings.LANCEDB_TABLE_NAME
    hash_cache_path = settings.DATA_PROCESSED_DIR / f"{table_name}_hashes.json"
    _print_header(settings, source_dir, table_name)

    t_step = time.perf_counter()
    try:
        embedder = build_embedder()
    except ConfigurationError as exc:
        logger.error("Cannot build embedder: %s", exc)
        sys.exit(1)
    timings["embedder"] = (time.perf_counter() - t_step) * 1000

    t_step = time.perf_counter()
    store = VectorStore(table_name=table_name)
    timings["vector_store"] = (time.perf_counter() - t_step) * 1000
    logger.info("Vector store ready at %s in %.1fms.", settings.LANCEDB_PATH, timings["vector_store"])

    if args.drop or args.purge or args.drop_only:
        logger.warning("Dropping vector table '%s'.", table_name)
        store.drop_table()
        if args.purge and hash_cache_path.exists():
            hash_cache_path.unlink()
            logger.warning("Hash cache removed: %s", hash_cache_path)
        if args.drop_only:
            _print_summary(_EMPTY_SUMMARY, timings, time.perf_counter() - t_total)
            return
        store = VectorStore(table_name=table_name)

    logger.info("Table '%s' holds %d record(s) before ingestion.", table_name, store.count())
    summary = IngestionPipeline(vector_store=store, embedder=embedder, source_dir=source_dir, hash_cache_path=hash_cache_path).run()
    _print_summary(summary, timings, time.perf_counter() - t_total)
    if summary["files_failed"]:
        sys.exit(2)


# ── Output ─────────────────────────────────────────────────────────────

def _print_header(settings: object, source_dir: Path, table_name: str) -> None:
    rows = [
        ("Environment", settings.ENV),                                                                  # type: ignore[attr-defined]
        ("Embedder", f"{settings.EMBEDDING_PROVIDER}/{settings.EMBEDDING_MODEL}"),                    # type: ignore[attr-defined]
        ("Index width", settings.VECTOR_DIMENSION),                                                    # type: ignore[attr-defined]
        ("Vector table", f"{settings.LANCEDB_PATH} :: {table_name}"),                                  # type: ignore[attr-defined]
        ("Documents", source_dir),
        ("Chunker", f"{settings.CHUNKER_VERSION} ({settings.CHUNK_SIZE} chars, {settings.CHUNK_OVERLAP} overlap)"),  # type: ignore[attr-defined]
    ]
    print("\n" + "=" * 64)
    print("  COACHRAG — knowledge base ingestion")
    print("=" * 64)
    for label, value in rows:
        print(f"  {label:<13}: {value}")
    print("=" * 64 + "\n")


def _print_summary(summary: dict, timings: dict[str, float], elapsed: float) -> None:
    startup_ms = sum(timings.values())
    print("\n" + "=" * 64)
    print("  INGESTION SUMMARY")
    print("-" * 64)
    print(f"  Documents found      : {summary['total_files']}")
    print(f"  Embedded & stored    : {summary['files_processed']}")
    print(f"  Unchanged (skipped)  : {summary['files_skipped']}")
    print(f"  Failed               : {summary['files_failed']}")
    print(f"  Records upserted     : {summary['total_chunks']}")
    print("-" * 64)
    for label, ms in timings.items():
        print(f"  {label.replace('_', ' ').capitalize():<21}: {ms:>9.1f}ms")
    print(f"  {'Startup':<21}: {startup_ms:>9.1f}ms")
    print(f"  {'Ingestion':<21}: {elapsed - startup_ms / 1000:>9.2f}s")
    print(f"  {'Wall clock':<21}: {elapsed:>9.2f}s")
    print("=" * 64 + "\n")


if __name__ == "__main__":
    main()
