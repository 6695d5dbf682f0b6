"""
CoachRAG - VectorStore
=======================
LanceDB-backed key/value vector index over fixed-width vectors.

  • ``upsert`` — insert-or-replace records by ``id`` in bounded batches.
  • ``query``  — cosine nearest-neighbour search returning
    ``VectorMatch(id, score, metadata)``, highest similarity first.

The table schema pins the vector column to a ``FixedSizeList`` of
``dimension`` floats, and every write and query is checked against that
width before it reaches LanceDB.  Callers reconcile widths with
``coachrag.src.core.projection.project`` first.

Metadata layout: ``text``, ``source``, ``chunk_index``, ``chunk_size`` and
``chunker_version`` are real columns; any other caller-supplied fields
are kept as a JSON object in ``extra`` and merged back on read.

Usage:
    from coachrag.src.database.vector_store import VectorRecord, VectorStore
    store = VectorStore()
    store.upsert([VectorRecord(id="plan-chunk-0", values=vec, metadata={"text": "...", "source": "plan.pdf", "chunk_index": 0})])
    matches = store.query(query_vec, top_k=5)
"""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Sequence
from typing import Any

import lancedb
import pyarrow as pa
from pydantic import BaseModel, Field

from coachrag.config.settings import settings
from coachrag.src.utils.logger import get_logger

logger = get_logger(__name__)

# ── Type Aliases ──────────────────────────────────────────────────────
RecordMetadata = dict[str, Any]

_COLUMN_FIELDS = ("text", "source", "chunk_index", "chunk_size", "chunker_version")

_DB_LOCK = threading.Lock()
_db_connection_cache: dict[str, lancedb.DBConnection] = {}


class VectorRecord(BaseModel):
    id: str
    values: list[float]
    metadata: RecordMetadata = Field(default_factory=dict)


class VectorMatch(BaseModel):
    id: str
    score: float
    metadata: RecordMetadata = Field(default_factory=dict)


def build_schema(dimension: int) -> pa.Schema:
    """PyArrow schema with a ``dimension``-wide float32 vector column."""
    return pa.schema([
        pa.field("id", pa.utf8()),
        pa.field("vector", pa.list_(pa.float32(), dimension)),
        pa.field("text", pa.utf8()),
        pa.field("source", pa.utf8()),
        pa.field("chunk_index", pa.int32()),
        pa.field("chunk_size", pa.int32()),
        pa.field("chunker_version", pa.utf8()),
        pa.field("extra", pa.utf8()),
    ])


def _get_connection(db_path: str) -> lancedb.DBConnection:
    """
    Return a **singleton** ``lancedb.DBConnection`` for *db_path*.

    Re-uses an existing connection for the same path, avoiding file-lock
    contention when several ``VectorStore`` instances share a directory.
    """
    if db_path not in _db_connection_cache:
        with _DB_LOCK:
            if db_path not in _db_connection_cache:
                logger.info("Opening new LanceDB connection: %s", db_path)
                _db_connection_cache[db_path] = lancedb.connect(db_path)
    return _db_connection_cache[db_path]


class VectorStore:
    """
    Fixed-width vector index on a LanceDB table.

    Parameters
    ----------
    dimension
        Vector width.  Defaults to ``settings.VECTOR_DIMENSION``.
    db_path
        Database directory.  Defaults to ``settings.LANCEDB_PATH``.
    table_name
        Table name.  Defaults to ``settings.LANCEDB_TABLE_NAME``.
    """

    __slots__ = ("dimension", "_db_path", "_table_name", "_schema", "db", "table")

    def __init__(self, dimension: int | None = None, db_path: str | None = None, table_name: str | None = None) -> None:
        self.dimension: int = dimension or settings.VECTOR_DIMENSION
        self._db_path: str = str(db_path or settings.LANCEDB_PATH)
        self._table_name: str = table_name or settings.LANCEDB_TABLE_NAME
        self._schema = build_schema(self.dimension)
        self.db: lancedb.DBConnection | None = None
        self.table: Any = None
        self._connect()


    @property
    def index_name(self) -> str:
        return self._table_name


    def _connect(self) -> None:
        """Open (or re-use) the LanceDB connection and initialise the table."""
        try:
            self.db = _get_connection(self._db_path)
            if self._table_name in self.db.table_names():
                self.table = self.db.open_table(self._table_name)
                logger.info("Opened existing table '%s' (%d rows).", self._table_name, self.table.count_rows())
            else:
                self.table = self.db.create_table(self._table_name, schema=self._schema)
                logger.info("Created new table '%s' (dimension=%d).", self._table_name, self.dimension)
        except OSError as exc:
            logger.error("LanceDB filesystem error at %s: %s", self._db_path, exc)
            raise


    def _check_width(self, vector: Sequence[float], what: str) -> None:
        if len(vector) != self.dimension:
            raise ValueError(f"{what} has width {len(vector)}, index '{self._table_name}' expects {self.dimension}.")


    def _to_row(self, record: VectorRecord) -> dict[str, Any]:
        md = record.metadata
        extra = {k: v for k, v in md.items() if k not in _COLUMN_FIELDS}
        return {
            "id": record.id,
            "vector": [float(v) for v in record.values],
            "text": str(md.get("text", "")),
            "source": str(md.get("source", "")),
            "chunk_index": int(md.get("chunk_index", 0)),
            "chunk_size": int(md.get("chunk_size", 0)),
            "chunker_version": str(md.get("chunker_version", "")),
            "extra": json.dumps(extra, ensure_ascii=False, default=str),
        }


    @staticmethod
    def _to_metadata(row: dict[str, Any]) -> RecordMetadata:
        metadata: RecordMetadata = {k: row.get(k) for k in _COLUMN_FIELDS}
        extra = row.get("extra")
        if extra:
            metadata.update(json.loads(extra))
        return metadata


    def upsert(self, records: Sequence[VectorRecord], batch_size: int | None = None) -> int:
        """
        Insert or replace *records* keyed by ``id``.

        Returns
        -------
        int
            Number of records written.

        Raises
        ------
        ValueError
            If any record's vector width differs from ``dimension``.
        RuntimeError
            If the table has not been initialised.
        """
        if self.table is None:
            raise RuntimeError("Vector table is not initialised. Call _connect() first.")
        for record in records:
            self._check_width(record.values, f"Record '{record.id}'")

        batch_size = batch_size or settings.UPSERT_BATCH_SIZE
        written = 0
        for i in range(0, len(records), batch_size):
            batch = records[i : i + batch_size]
            data = pa.Table.from_pylist([self._to_row(r) for r in batch], schema=self._schema)
            self.table.merge_insert("id").when_matched_update_all().when_not_matched_insert_all().execute(data)
            written += len(batch)
            logger.debug("Upserted batch %d–%d into '%s'.", i, i + len(batch) - 1, self._table_name)

        logger.info("Upserted %d record(s). Table '%s' now has %d rows.", written, self._table_name, self.count())
        return written


    def query(self, vector: Sequence[float], top_k: int, include_metadata: bool = True) -> list[VectorMatch]:
        """
        Return the *top_k* nearest records by cosine similarity.

        ``score`` is ``1 - cosine_distance``; higher means more similar.
        """
        if self.table is None:
            raise RuntimeError("Vector table is not initialised. Call _connect() first.")
        self._check_width(vector, "Query vector")

        t_query = time.perf_counter()
        rows = self.table.search([float(v) for v in vector]).distance_type("cosine").limit(top_k).to_list()
        matches = [
            VectorMatch(id=row["id"], score=1.0 - float(row["_distance"]), metadata=self._to_metadata(row) if include_metadata else {})
            for row in rows
        ]
        logger.info("Query returned %d match(es) in %.1fms.", len(matches), (time.perf_counter() - t_query) * 1000)
        return matches


    def count(self) -> int:
        """Return the total number of rows in the table."""
        if self.table is None:
            return 0
        return self.table.count_rows()


    def drop_table(self) -> None:
        """Drop the vector table (re-ingestion / tests)."""
        if self.db is None:
            logger.warning("No database connection; nothing to drop.")
            return
        try:
            self.db.drop_table(self._table_name)
            self.table = None
            logger.info("Dropped table '%s'.", self._table_name)
        except (ValueError, FileNotFoundError):
            logger.warning("Table '%s' does not exist — nothing to drop.", self._table_name)


    def __repr__(self) -> str:
        return f"VectorStore(db='{self._db_path}', table='{self._table_name}', dimension={self.dimension}, rows={self.count()})"
