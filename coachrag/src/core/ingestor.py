"""
CoachRAG - IngestionPipeline
=============================
Reads source documents, chunks them, embeds the chunks and upserts the
resulting fixed-width vectors into the ``VectorStore``.

Key design decisions:
    • **Dependency Injection** – receives the ``VectorStore`` + embedder.
    • **Sentence chunking** – ``coachrag.src.core.chunker.chunk`` with
      ``CHUNK_SIZE`` / ``CHUNK_OVERLAP``; both, plus ``CHUNKER_VERSION``,
      are stamped into every record so retrieval can re-derive the exact
      chunk boundaries.
    • **Sequential batches** – chunks are embedded in fixed-size batches,
      one request at a time.  Every vector is projected to the index width.
    • **Caching** – ``FileHashCache`` skips files whose bytes and chunking
      parameters are unchanged since the last run.
    • **Isolation** – a failing file is logged and the run continues.

Usage:
    from coachrag.src.core.ingestor import IngestionPipeline
    pipeline = IngestionPipeline(vector_store, embedder)
    summary  = pipeline.run()
"""

from __future__ import annotations

import hashlib
import json
import time
from pathlib import Path
from typing import Any

from coachrag.config.settings import settings
from coachrag.src.core.chunker import chunk
from coachrag.src.core.projection import project
from coachrag.src.core.providers import Embedder
from coachrag.src.database.vector_store import VectorRecord, VectorStore
from coachrag.src.utils.logger import get_logger
from coachrag.src.utils.text_utils import SUPPORTED_EXTENSIONS, load_document_text, make_record_id

logger = get_logger(__name__)


class FileHashCache:
    """
    ``{file name: digest}`` persisted as JSON between ingestion runs.

    The digest covers the file bytes *and* a salt (the chunking
    parameters), so changing ``CHUNK_SIZE`` or ``CHUNKER_VERSION``
    re-ingests every file.
    """

    __slots__ = ("path", "_entries")

    def __init__(self, path: Path) -> None:
        self.path = path
        self._entries: dict[str, str] = self._load()


    @staticmethod
    def digest(filepath: Path, salt: str = "") -> str:
        hasher = hashlib.md5(salt.encode("utf-8"))
        with open(filepath, "rb") as f:
            for block in iter(lambda: f.read(8192), b""):
                hasher.update(block)
        return hasher.hexdigest()


    def is_unchanged(self, name: str, digest: str) -> bool:
        return self._entries.get(name) == digest


    def record(self, name: str, digest: str) -> None:
        self._entries[name] = digest


    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Ignoring unreadable hash cache %s: %s", self.path, exc)
            return {}


    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self._entries, indent=2, sort_keys=True, ensure_ascii=False), encoding="utf-8")
        logger.debug("Hash cache written: %s (%d file(s))", self.path, len(self._entries))


class IngestionPipeline:
    """
    End-to-end document ingestion: read → normalise → chunk → embed → project → upsert.

    Parameters
    ----------
    vector_store
        An initialised ``VectorStore`` (injected).
    embedder
        An embedding model exposing ``embed_documents``.
    source_dir
        Override the source directory.  Defaults to ``settings.DATA_DIR``.
    extra_metadata
        Extra fields merged into every record's metadata.
    hash_cache_path
        Override the MD5 cache file.  Defaults to
        ``settings.DATA_PROCESSED_DIR / "<table>_hashes.json"``.
    """

    def __init__(self, vector_store: VectorStore, embedder: Embedder, source_dir: Path | None = None, extra_metadata: dict[str, Any] | None = None, hash_cache_path: Path | None = None) -> None:
        self._store = vector_store
        self._embedder = embedder
        self._source_dir = Path(source_dir or settings.DATA_DIR)
        self._extra_metadata = extra_metadata or {}
        self._chunk_size = settings.CHUNK_SIZE
        self._chunk_overlap = settings.CHUNK_OVERLAP
        self._chunking_signature = f"{settings.CHUNKER_VERSION}:{self._chunk_size}:{self._chunk_overlap}:{vector_store.dimension}"

        self._hashes = FileHashCache(hash_cache_path or settings.DATA_PROCESSED_DIR / f"{vector_store.index_name}_hashes.json")

    # ══════════════════════════════════════════════════════════════════
    #  PUBLIC ENTRY POINT
    # ══════════════════════════════════════════════════════════════════

    def run(self) -> dict[str, Any]:
        """
        Ingest every supported file in the source directory.

        Returns
        -------
        dict
            Execution summary with keys:
            ``total_files``, ``files_processed``, ``files_skipped``,
            ``files_failed``, ``total_chunks``, ``elapsed_seconds``.
        """
        t_start = time.perf_counter()
        source = self._source_dir

        if not source.exists():
            logger.warning("Source directory does not exist: %s", source)
            return self._summary(0, 0, 0, 0, 0, time.perf_counter() - t_start)

        files = sorted(f for f in source.iterdir() if f.is_file() and f.suffix.lower() in SUPPORTED_EXTENSIONS)
        if not files:
            logger.warning("No supported files found in %s", source)
            return self._summary(0, 0, 0, 0, 0, time.perf_counter() - t_start)

        logger.info("Starting ingestion — %d file(s) found in %s", len(files), source)

        total_chunks = 0
        files_processed = 0
        files_skipped = 0
        files_failed = 0

        for filepath in files:
            try:
                result = self.ingest_file(filepath)
            except Exception:
                logger.exception("Failed to ingest file: %s", filepath.name)
                files_failed += 1
                continue
            if result == -1:
                files_skipped += 1
            else:
                total_chunks += result
                files_processed += 1

        self._hashes.save()

        elapsed = time.perf_counter() - t_start
        logger.info("Ingestion complete — %d file(s) processed, %d skipped, %d failed, %d chunk(s) stored in %.2fs.", files_processed, files_skipped, files_failed, total_chunks, elapsed)
        return self._summary(len(files), files_processed, files_skipped, files_failed, total_chunks, elapsed)

    # ══════════════════════════════════════════════════════════════════
    #  PER-FILE PROCESSING
    # ══════════════════════════════════════════════════════════════════

    def ingest_file(self, filepath: Path) -> int:
        """
        Read, chunk, embed and store a single file.

        Returns
        -------
        int
            Number of records upserted, or ``-1`` if the file was skipped
            (cache hit).
        """
        file_hash = FileHashCache.digest(filepath, salt=self._chunking_signature)
        if self._hashes.is_unchanged(filepath.name, file_hash):
            logger.info("Unchanged since last ingestion, skipping: %s", filepath.name)
            return -1

        t_file = time.perf_counter()
        logger.info("Processing file: %s", filepath.name)

        text = load_document_text(filepath)
        if not text.strip():
            logger.warning("Skipping empty file: %s", filepath.name)
            return 0

        t_chunk = time.perf_counter()
        chunks = chunk(text, self._chunk_size, self._chunk_overlap)
        logger.info("File '%s' → %d chunk(s) in %.1fms.", filepath.name, len(chunks), (time.perf_counter() - t_chunk) * 1000)

        t_embed = time.perf_counter()
        vectors = self.embed_chunks(chunks)
        embed_ms = (time.perf_counter() - t_embed) * 1000

        records = self.build_records(filepath.name, chunks, vectors)
        added = self._store.upsert(records, batch_size=settings.UPSERT_BATCH_SIZE)

        logger.info("File '%s' complete — embed: %.1fms, total: %.1fms.", filepath.name, embed_ms, (time.perf_counter() - t_file) * 1000)

        self._hashes.record(filepath.name, file_hash)
        return added

    # ══════════════════════════════════════════════════════════════════
    #  EMBEDDING & RECORDS
    # ══════════════════════════════════════════════════════════════════

    def embed_chunks(self, chunks: list[str]) -> list[list[float]]:
        """
        Embed *chunks* in sequential batches of ``EMBED_BATCH_SIZE`` and
        project every vector to the store's width.

        A batch item the provider did not return is replaced by a zero
        vector so ids stay aligned with chunk indices.
        """
        dimension = self._store.dimension
        batch_size = settings.EMBED_BATCH_SIZE
        vectors: list[list[float]] = []

        for i in range(0, len(chunks), batch_size):
            batch = chunks[i : i + batch_size]
            try:
                embedded = self._embedder.embed_documents(batch)
            except Exception as exc:
                logger.error("Embedding batch %d–%d failed: %s", i, i + len(batch) - 1, exc)
                raise

            for offset in range(len(batch)):
                raw = embedded[offset] if offset < len(embedded) else None
                if not raw:
                    logger.warning("Missing embedding for chunk %d — using zero vector.", i + offset)
                    vectors.append([0.0] * dimension)
                else:
                    vectors.append(project(raw, dimension))

            logger.debug("Embedded batch %d–%d (%d item(s)).", i, i + len(batch) - 1, len(batch))

        return vectors


    def build_records(self, file_name: str, chunks: list[str], vectors: list[list[float]]) -> list[VectorRecord]:
        """One ``VectorRecord`` per chunk, id ``<stem>-chunk-<i>``."""
        return [
            VectorRecord(
                id=make_record_id(file_name, idx),
                values=vector,
                metadata={
                    **self._extra_metadata,
                    "text": text,
                    "source": file_name,
                    "chunk_index": idx,
                    "chunk_size": self._chunk_size,
                    "chunk_overlap": self._chunk_overlap,
                    "chunker_version": settings.CHUNKER_VERSION,
                },
            )
            for idx, (text, vector) in enumerate(zip(chunks, vectors))
        ]

    @staticmethod
    def _summary(total: int, processed: int, skipped: int, failed: int, chunks: int, elapsed: float) -> dict[str, Any]:
        return {
            "total_files": total,
            "files_processed": processed,
            "files_skipped": skipped,
            "files_failed": failed,
            "total_chunks": chunks,
            "elapsed_seconds": round(elapsed, 2),
        }
