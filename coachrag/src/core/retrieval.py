"""
CoachRAG - Retrieval Pipeline
==============================
Turns a query into ranked context snippets.

Flow
----
1. ``embed_query``   — embed the full query text, project it to the
   index width, record an ``embedding_create`` span.
2. ``retrieve_top_k`` — nearest-neighbour query against the vector
   store, record a ``vector_query`` span.
3. ``resolve_matches`` — map each match back to its source chunk text.

Failure policy
--------------
Embedding and vector-store failures propagate.  Resolving a single match
never raises: the outcome is a ``ChunkResolution`` carrying either the
text or the reason it could not be produced.

Chunk re-derivation
-------------------
Every record carries the ``chunk_size`` / ``chunk_overlap`` /
``chunker_version`` it was ingested with.  Records stamped with the current
chunker version and an overlap are re-chunked with those parameters,
reproducing the ingested boundaries exactly.  All other records fall back
to fixed slicing (``read_chunk_content``) at the stamped or configured
chunk size.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel
from pypdf.errors import PyPdfError

from coachrag.config.settings import settings
from coachrag.src.core.chunker import chunk
from coachrag.src.core.errors import ProviderError
from coachrag.src.core.projection import l2_norm, project
from coachrag.src.core.providers import Embedder
from coachrag.src.database.vector_store import VectorMatch
from coachrag.src.observability.cost import embedding_cost, estimate_tokens
from coachrag.src.observability.trace import EmbeddingsContent, EmbeddingsRequest, EmbeddingsResponse, RetrievalContent, RetrievalRequest, RetrievalResponse, RetrievedDocument, Trace, record_span
from coachrag.src.utils.logger import get_logger
from coachrag.src.utils.text_utils import load_document_text, parse_record_id

logger = get_logger(__name__)

_FILE_KEYS = ("file", "source", "filename")
_CHUNK_KEYS = ("chunk", "chunk_index", "chunkIndex", "chunk_num")
_READ_ERRORS = (OSError, ValueError, PyPdfError)


class VectorIndex(Protocol):
    """The slice of ``VectorStore`` retrieval depends on."""

    dimension: int

    @property
    def index_name(self) -> str: ...

    def query(self, vector: Sequence[float], top_k: int, include_metadata: bool = True) -> list[VectorMatch]: ...


class ChunkResolution(BaseModel):
    """Result of mapping one match back to its source text."""

    id: str
    file_name: str | None = None
    chunk_index: int | None = None
    text: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _first_present(metadata: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = metadata.get(key)
        if value is not None and value != "":
            return value
    return None


class RetrievalPipeline:
    """
    Embed → project → query → resolve.

    Parameters
    ----------
    embedder
        Any ``Embedder`` (LangChain embeddings or a test double).
    vector_store
        A ``VectorStore`` (or anything satisfying ``VectorIndex``).
    data_dir
        Directory holding the source documents.  Defaults to ``settings.DATA_DIR``.
    chunk_size
        Fallback chunk size for records with no stamped size.
    embedding_model
        Model name recorded on spans and used for pricing.
    """

    __slots__ = ("_embedder", "_store", "_data_dir", "_chunk_size", "_embedding_model")

    def __init__(self, embedder: Embedder, vector_store: VectorIndex, data_dir: Path | None = None, chunk_size: int | None = None, embedding_model: str | None = None) -> None:
        self._embedder = embedder
        self._store = vector_store
        self._data_dir = Path(data_dir or settings.DATA_DIR)
        self._chunk_size = chunk_size or settings.CHUNK_SIZE
        self._embedding_model = embedding_model or settings.EMBEDDING_MODEL


    @property
    def dimension(self) -> int:
        return self._store.dimension

    # ══════════════════════════════════════════════════════════════════
    #  EMBEDDING
    # ══════════════════════════════════════════════════════════════════

    async def embed_query(self, text: str, trace: Trace | None = None, parent_reference_id: str | None = None, prompt_id: str | None = None) -> list[float]:
        """
        Embed *text* and project it to the index width.

        Raises
        ------
        ProviderError
            If the provider returns an empty embedding.
        """
        t_embed = time.perf_counter()
        with record_span(trace, "embedding_create", parent_reference_id=parent_reference_id, prompt_id=prompt_id) as span:
            tokens = estimate_tokens(text)
            span.cost = embedding_cost(self._embedding_model, tokens)
            span.content = EmbeddingsContent(
                model=self._embedding_model,
                input=EmbeddingsRequest(model=self._embedding_model, texts=[text], text_length=len(text), text_word_count=len(text.split()), estimated_tokens=tokens),
            )

            raw = await self._embedder.aembed_query(text)
            if not raw:
                raise ProviderError("No embedding returned for query.", provider=self._embedding_model)

            vector = project(raw, self.dimension)
            span.content.output = EmbeddingsResponse(
                embeddings=[vector],
                dimensions=len(vector),
                original_dimension=len(raw),
                projected_dimension=self.dimension,
                projection_applied=len(raw) != self.dimension,
                embedding_model=self._embedding_model,
                vector_norm=l2_norm(vector),
            )

        logger.info("Query embedded (%d → %d dims, ~%d tokens) in %.1fms.", len(raw), len(vector), tokens, (time.perf_counter() - t_embed) * 1000)
        return vector

    # ══════════════════════════════════════════════════════════════════
    #  QUERY
    # ══════════════════════════════════════════════════════════════════

    async def retrieve_top_k(self, query: str, k: int | None = None, trace: Trace | None = None, parent_reference_id: str | None = None, prompt_id: str | None = None) -> list[VectorMatch]:
        """Top-*k* matches for *query*, highest similarity first."""
        k = k or settings.TOP_K
        vector = await self.embed_query(query, trace, parent_reference_id, prompt_id)

        with record_span(trace, "vector_query", parent_reference_id=parent_reference_id, prompt_id=prompt_id) as span:
            span.content = RetrievalContent(
                input=RetrievalRequest(query=query, top_k=k, query_length=len(query), query_word_count=len(query.split()), index_name=self._store.index_name, vector_dimension=len(vector)),
            )
            matches = self._store.query(vector, k, include_metadata=True)
            documents = [RetrievedDocument(id=m.id, score=m.score, metadata=m.metadata) for m in matches]
            span.content.output = RetrievalResponse.from_documents(documents, requested_top_k=k)

        logger.info("Retrieved %d/%d match(es) from '%s'.", len(matches), k, self._store.index_name)
        return matches

    # ══════════════════════════════════════════════════════════════════
    #  MATCH RESOLUTION
    # ══════════════════════════════════════════════════════════════════

    def parse_match_metadata(self, match: VectorMatch) -> tuple[str | None, int | None]:
        """
        Source file name and chunk index for *match*.

        Explicit metadata wins.  Otherwise the id is parsed as
        ``<base>-chunk-<i>`` and ``base`` is resolved against the files
        in ``data_dir`` (falling back to ``<base>.mdx``).

        Raises ``ValueError`` if the chunk index is not an integer.
        """
        metadata = match.metadata or {}
        file_name = _first_present(metadata, _FILE_KEYS)
        chunk_index = _first_present(metadata, _CHUNK_KEYS)

        if file_name is None or chunk_index is None:
            parsed = parse_record_id(match.id)
            if parsed is not None:
                base, idx = parsed
                if file_name is None:
                    file_name = self._find_source_file(base) or f"{base}.mdx"
                if chunk_index is None:
                    chunk_index = idx

        return (str(file_name) if file_name is not None else None, int(chunk_index) if chunk_index is not None else None)


    def _find_source_file(self, base: str) -> str | None:
        try:
            candidates = sorted(p.name for p in self._data_dir.iterdir() if p.is_file())
        except OSError:
            return None
        exact = next((name for name in candidates if Path(name).stem == base), None)
        return exact or next((name for name in candidates if name.startswith(base)), None)


    def read_chunk_content(self, file_name: str, chunk_index: int, chunk_size: int | None = None) -> str:
        """
        Fixed-slice re-derivation: ``text[i*size : i*size + size]`` of the
        normalised document.  Returns ``""`` if the file cannot be read.
        """
        size = chunk_size or self._chunk_size
        try:
            text = load_document_text(self._data_dir / file_name)
        except _READ_ERRORS as exc:
            logger.warning("Could not read '%s': %s", file_name, exc)
            return ""
        start = chunk_index * size
        return text[start:start + size]


    def resolve_match(self, match: VectorMatch) -> ChunkResolution:
        """
        Resolve one match to its chunk text; never raises.

        Records stamped with the current chunker version *and* their
        overlap are re-chunked; all others are sliced at fixed size.
        """
        try:
            file_name, chunk_index = self.parse_match_metadata(match)
        except (TypeError, ValueError) as exc:
            logger.warning("Malformed chunk reference on match %s: %s", match.id, exc)
            return ChunkResolution(id=match.id, error=f"malformed chunk reference: {exc}")
        if file_name is None or chunk_index is None:
            return ChunkResolution(id=match.id, file_name=file_name, chunk_index=chunk_index, error="no source file or chunk index")
        if chunk_index < 0:
            return ChunkResolution(id=match.id, file_name=file_name, chunk_index=chunk_index, error="negative chunk index")

        metadata = match.metadata or {}
        try:
            chunk_size = int(metadata.get("chunk_size") or self._chunk_size)
            overlap = metadata.get("chunk_overlap")
            overlap = int(overlap) if overlap is not None else None
        except (TypeError, ValueError) as exc:
            logger.warning("Malformed chunking parameters on match %s: %s", match.id, exc)
            return ChunkResolution(id=match.id, file_name=file_name, chunk_index=chunk_index, error=f"malformed chunking parameters: {exc}")

        try:
            if metadata.get("chunker_version") == settings.CHUNKER_VERSION and overlap is not None:
                chunks = chunk(load_document_text(self._data_dir / file_name), chunk_size, overlap)
                text = chunks[chunk_index] if chunk_index < len(chunks) else ""
            else:
                text = self.read_chunk_content(file_name, chunk_index, chunk_size)
        except _READ_ERRORS as exc:
            logger.warning("Unresolvable match %s (%s#%d): %s", match.id, file_name, chunk_index, exc)
            return ChunkResolution(id=match.id, file_name=file_name, chunk_index=chunk_index, error=str(exc))

        if not text.strip():
            return ChunkResolution(id=match.id, file_name=file_name, chunk_index=chunk_index, error="chunk content is empty")
        return ChunkResolution(id=match.id, file_name=file_name, chunk_index=chunk_index, text=text)


    def resolve_matches(self, matches: Sequence[VectorMatch]) -> list[ChunkResolution]:
        resolutions = [self.resolve_match(m) for m in matches]
        failed = sum(1 for r in resolutions if not r.ok)
        if failed:
            logger.warning("%d/%d match(es) could not be resolved to text.", failed, len(resolutions))
        return resolutions
