"""
CoachRAG - Trace / Span Model
==============================
Append-only, hierarchical record of one pipeline execution.

Model
-----
``Trace``
    Root record.  Owns an ordered list of ``Span`` objects (append order
    is *completion* order), trace-level ``attributes`` and ``tags``, and a
    logical clock used to stamp each span with a ``sequence`` number when
    its operation *starts*.
``Span``
    One operation: timing, status, cost, optional token usage and a typed
    ``content`` payload.  Spans link into a shallow tree through
    ``reference_id`` / ``parent_reference_id``.
``SpanContent``
    Tagged union on ``type``: ``Function``, ``Model``, ``Embeddings``,
    ``Retrieval``.  Every variant carries its own input/output shape.

Causal order
------------
``Trace.ordered_spans()`` sorts by ``sequence``, so a parent span that
finishes last still sorts before the children it started first.  The
wire payload is built from this order, never from timestamps.

All models serialise with camelCase aliases (``startedAt``,
``parentReferenceId`` ...) to match the ingestion endpoint.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr
from pydantic.alias_generators import to_camel

from coachrag.config.prompt_templates import TRACE_DEFAULT_ATTRIBUTES, TRACE_DEFAULT_TAGS
from coachrag.config.settings import settings

SpanStatus = Literal["success", "error"]
AttributeValue = Union[str, int, float, bool]


def now_ms() -> int:
    """Current Unix time in milliseconds."""
    return time.time_ns() // 1_000_000


class WireModel(BaseModel):
    """Base for every model that ends up in the submission payload."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ══════════════════════════════════════════════════════════════════════
#  CONTENT PAYLOADS
# ══════════════════════════════════════════════════════════════════════

class TokenUsage(WireModel):
    input: int = 0
    output: int = 0
    total: int = 0


class TextBlock(WireModel):
    modality: Literal["text"] = "text"
    value: str


class ChatMessage(WireModel):
    role: str
    content: list[TextBlock]

    @classmethod
    def text(cls, role: str, value: str) -> "ChatMessage":
        return cls(role=role, content=[TextBlock(value=value)])


class RequestPart(WireModel):
    type: Literal["text"] = "text"
    text: str


class RequestMessage(WireModel):
    role: str
    content: list[RequestPart]

    @classmethod
    def text(cls, role: str, text: str) -> "RequestMessage":
        return cls(role=role, content=[RequestPart(text=text)])


class FunctionContent(WireModel):
    """Generic input/output for non-model operations."""

    type: Literal["Function"] = "Function"
    input: Any = None
    output: Any = None


class ModelRequest(WireModel):
    model: str
    messages: list[RequestMessage]
    temperature: float | None = None
    max_tokens: int | None = Field(default=None, alias="max_tokens")


class ModelResponse(WireModel):
    messages: list[ChatMessage]


class ModelContent(WireModel):
    """A generation-provider call."""

    type: Literal["Model"] = "Model"
    provider: str
    model: str
    input: ModelRequest
    output: ModelResponse | None = None
    variables: dict[str, TextBlock] | None = None


class EmbeddingsRequest(WireModel):
    model: str
    texts: list[str]
    operation: str = "create_query_embedding"
    text_length: int = 0
    text_word_count: int = 0
    estimated_tokens: int = 0


class EmbeddingsResponse(WireModel):
    embeddings: list[list[float]]
    dimensions: int
    original_dimension: int
    projected_dimension: int
    projection_applied: bool
    embedding_model: str
    vector_norm: float


class EmbeddingsContent(WireModel):
    """An embedding-provider call, including the width reconciliation applied."""

    type: Literal["Embeddings"] = "Embeddings"
    model: str
    input: EmbeddingsRequest
    output: EmbeddingsResponse | None = None


class RetrievedDocument(WireModel):
    id: str
    score: float
    metadata: dict[str, Any] = Field(default_factory=dict)


class RetrievalRequest(WireModel):
    query: str
    top_k: int
    operation: str = "vector_similarity_search"
    query_length: int = 0
    query_word_count: int = 0
    index_name: str | None = None
    vector_dimension: int = 0
    include_metadata: bool = True


class RetrievalResponse(WireModel):
    documents: list[RetrievedDocument]
    requested_top_k: int
    retrieved_count: int
    avg_similarity_score: float = 0.0
    max_similarity_score: float = 0.0
    min_similarity_score: float = 0.0
    document_ids: list[str] = Field(default_factory=list)
    has_metadata: bool = True

    @classmethod
    def from_documents(cls, documents: list[RetrievedDocument], requested_top_k: int) -> "RetrievalResponse":
        scores = [d.score for d in documents]
        return cls(
            documents=documents,
            requested_top_k=requested_top_k,
            retrieved_count=len(documents),
            avg_similarity_score=sum(scores) / len(scores) if scores else 0.0,
            max_similarity_score=max(scores) if scores else 0.0,
            min_similarity_score=min(scores) if scores else 0.0,
            document_ids=[d.id for d in documents],
            has_metadata=all(d.metadata for d in documents),
        )


class RetrievalContent(WireModel):
    """A vector-store nearest-neighbour query and its matches."""

    type: Literal["Retrieval"] = "Retrieval"
    input: RetrievalRequest
    output: RetrievalResponse | None = None


SpanContent = Annotated[
    Union[FunctionContent, ModelContent, EmbeddingsContent, RetrievalContent],
    Field(discriminator="type"),
]


# ══════════════════════════════════════════════════════════════════════
#  SPAN & TRACE
# ══════════════════════════════════════════════════════════════════════

class Span(WireModel):
    name: str
    status: SpanStatus = "success"
    started_at: int
    ended_at: int
    content: SpanContent
    sequence: int | None = None
    reference_id: str | None = None
    parent_reference_id: str | None = None
    trace_reference_id: str | None = None
    prompt_id: str | None = None
    deployment_id: str | None = None
    session_id: str | None = None
    run_evaluation: bool | None = None
    attributes: dict[str, AttributeValue] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    cost: float = 0.0
    tokens: TokenUsage | None = None

    @property
    def latency(self) -> int:
        return self.ended_at - self.started_at


class Trace(WireModel):
    name: str
    status: SpanStatus = "success"
    started_at: int = Field(default_factory=now_ms)
    ended_at: int = 0
    reference_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    project_id: str | None = None
    spans: list[Span] = Field(default_factory=list)
    attributes: dict[str, AttributeValue] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)

    _clock: int = PrivateAttr(default=0)

    def reserve_sequence(self) -> int:
        """Take the next value of the trace's logical clock."""
        value = self._clock
        self._clock += 1
        return value

    def add_span(self, span: Span) -> "Trace":
        """
        Append *span*, inheriting trace identity and merging attributes/tags.

        Attribute precedence (lowest → highest): trace defaults, span
        attributes, inferred ``type`` / ``provider`` / ``model``.  Tags keep
        first-seen order: trace tags, span tags, span name, content type.
        """
        content_type = span.content.type
        inferred: dict[str, AttributeValue] = {"type": content_type}
        if isinstance(span.content, ModelContent):
            inferred["provider"] = span.content.provider
            inferred["model"] = span.content.model

        tags = list(dict.fromkeys([*self.tags, *span.tags, span.name, content_type]))
        enriched = span.model_copy(update={
            "sequence": span.sequence if span.sequence is not None else self.reserve_sequence(),
            "trace_reference_id": self.reference_id,
            "session_id": span.session_id or self.session_id,
            "attributes": {**self.attributes, **span.attributes, **inferred},
            "tags": tags,
        })
        self.spans.append(enriched)
        if enriched.status == "error":
            self.status = "error"
        return self

    def ordered_spans(self) -> list[Span]:
        """Spans in causal (start) order."""
        return sorted(self.spans, key=lambda s: s.sequence if s.sequence is not None else 0)

    def finalize(self, ended_at: int | None = None) -> "Trace":
        """
        Stamp ``ended_at`` and fold child span statuses into the trace status.

        The end time is stamped only once; later calls keep it.
        """
        if self.ended_at == 0:
            self.ended_at = ended_at if ended_at is not None else now_ms()
        if any(s.status == "error" for s in self.spans):
            self.status = "error"
        return self

    # ── Rollups ────────────────────────────────────────────────────────

    def total_cost(self) -> float:
        return sum(s.cost for s in self.spans)

    def total_latency(self) -> int:
        return sum(s.latency for s in self.spans)

    def cost_by_span(self) -> dict[str, float]:
        totals: dict[str, float] = {}
        for s in self.spans:
            totals[s.name] = totals.get(s.name, 0.0) + s.cost
        return totals

    def find_span(self, name: str) -> Span | None:
        return next((s for s in self.spans if s.name == name), None)


def create_trace(name: str | None = None, project_id: str | None = None, attributes: dict[str, AttributeValue] | None = None, tags: list[str] | None = None) -> Trace:
    """Start a new trace with the application's default attributes and tags."""
    return Trace(
        name=name or settings.TRACE_NAME,
        project_id=project_id or settings.PROJECT_ID or None,
        attributes={**TRACE_DEFAULT_ATTRIBUTES, "app_name": settings.APP_NAME, "env": settings.ENV, **(attributes or {})},
        tags=list(dict.fromkeys([*TRACE_DEFAULT_TAGS, *(tags or [])])),
    )


def add_span(trace: Trace, span: Span) -> Trace:
    return trace.add_span(span)


# ══════════════════════════════════════════════════════════════════════
#  SPAN RECORDING
# ══════════════════════════════════════════════════════════════════════

class SpanRecorder:
    """
    Mutable handle yielded by ``record_span``.

    Callers set ``content`` (and optionally ``cost``, ``tokens``,
    ``deployment_id``, ``run_evaluation``) while the operation runs.
    """

    def __init__(self, name: str, sequence: int, started_at: int, reference_id: str | None, parent_reference_id: str | None, prompt_id: str | None, deployment_id: str | None) -> None:
        self.name = name
        self.sequence = sequence
        self.started_at = started_at
        self.reference_id = reference_id
        self.parent_reference_id = parent_reference_id
        self.prompt_id = prompt_id
        self.deployment_id = deployment_id
        self.status: SpanStatus = "success"
        self.error: str | None = None
        self.content: FunctionContent | ModelContent | EmbeddingsContent | RetrievalContent | None = None
        self.cost = 0.0
        self.tokens: TokenUsage | None = None
        self.run_evaluation: bool | None = None
        self.attributes: dict[str, AttributeValue] = {}
        self.tags: list[str] = []

    def to_span(self, ended_at: int) -> Span:
        attributes = dict(self.attributes)
        if self.error:
            attributes["error"] = self.error
        return Span(
            name=self.name,
            status=self.status,
            started_at=self.started_at,
            ended_at=ended_at,
            content=self.content or FunctionContent(input={"operation": self.name}),
            sequence=self.sequence,
            reference_id=self.reference_id,
            parent_reference_id=self.parent_reference_id,
            prompt_id=self.prompt_id,
            deployment_id=self.deployment_id,
            run_evaluation=self.run_evaluation,
            attributes=attributes,
            tags=self.tags,
            cost=self.cost,
            tokens=self.tokens,
        )


@contextmanager
def record_span(trace: Trace | None, name: str, *, reference_id: str | None = None, parent_reference_id: str | None = None, prompt_id: str | None = None, deployment_id: str | None = None) -> Iterator[SpanRecorder]:
    """
    Time the enclosed block and append it to *trace* as one span.

    The span's sequence number is reserved on entry.  If the block raises,
    the span is recorded with ``status="error"`` and the exception
    propagates.  With ``trace=None`` nothing is recorded.
    """
    recorder = SpanRecorder(
        name=name,
        sequence=trace.reserve_sequence() if trace is not None else 0,
        started_at=now_ms(),
        reference_id=reference_id,
        parent_reference_id=parent_reference_id,
        prompt_id=prompt_id,
        deployment_id=deployment_id,
    )
    try:
        yield recorder
    except Exception as exc:
        recorder.status = "error"
        recorder.error = str(exc) or type(exc).__name__
        raise
    finally:
        if trace is not None:
            trace.add_span(recorder.to_span(ended_at=now_ms()))
