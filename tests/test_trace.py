"""Tests for the trace / span model and span recording."""

import pytest

from coachrag.config.settings import settings
from coachrag.src.observability.trace import (
    FunctionContent,
    ModelContent,
    ModelRequest,
    RequestMessage,
    RetrievalContent,
    Span,
    Trace,
    add_span,
    create_trace,
    record_span,
)


def _span(name: str, status: str = "success", started_at: int = 1_000, ended_at: int = 1_050, cost: float = 0.0, **kwargs) -> Span:
    return Span(name=name, status=status, started_at=started_at, ended_at=ended_at, content=FunctionContent(input={"op": name}), cost=cost, **kwargs)


# ── create_trace ───────────────────────────────────────────────────────

def test_create_trace_defaults():
    trace = create_trace()
    assert trace.name == settings.TRACE_NAME
    assert trace.status == "success"
    assert trace.ended_at == 0
    assert trace.spans == []
    assert trace.attributes["runtime"] == "python"
    assert trace.attributes["app_name"] == settings.APP_NAME
    assert "running-coach" in trace.tags


def test_create_trace_generates_unique_identity():
    first, second = create_trace(), create_trace()
    assert first.reference_id != second.reference_id
    assert first.session_id != second.session_id


def test_create_trace_merges_custom_attributes_and_tags():
    trace = create_trace(name="nightly", attributes={"runtime": "cron"}, tags=["batch", "rag"])
    assert trace.name == "nightly"
    assert trace.attributes["runtime"] == "cron"
    assert trace.tags.count("rag") == 1
    assert trace.tags[-1] == "batch"


# ── add_span ───────────────────────────────────────────────────────────

def test_add_span_inherits_trace_identity():
    trace = create_trace()
    add_span(trace, _span("step"))
    span = trace.spans[0]
    assert span.trace_reference_id == trace.reference_id
    assert span.session_id == trace.session_id
    assert span.sequence == 0


def test_add_span_merges_attributes_with_inferred_fields_last():
    trace = Trace(name="t", attributes={"env": "dev", "type": "bogus"})
    content = ModelContent(provider="openai", model="gpt-4.1-mini", input=ModelRequest(model="gpt-4.1-mini", messages=[RequestMessage.text("user", "hi")]))
    span = Span(name="llm_call", started_at=1, ended_at=2, content=content, attributes={"env": "override", "custom": 1})
    trace.add_span(span)

    attributes = trace.spans[0].attributes
    assert attributes["env"] == "override"
    assert attributes["custom"] == 1
    assert attributes["type"] == "Model"
    assert attributes["provider"] == "openai"
    assert attributes["model"] == "gpt-4.1-mini"


def test_add_span_builds_deduplicated_tags():
    trace = Trace(name="t", tags=["rag", "pipeline"])
    trace.add_span(_span("step", tags=["pipeline", "extra"]))
    assert trace.spans[0].tags == ["rag", "pipeline", "extra", "step", "Function"]


def test_error_span_marks_trace_error():
    trace = create_trace()
    trace.add_span(_span("ok"))
    trace.add_span(_span("broken", status="error"))
    assert trace.status == "error"


def test_finalize_rolls_up_child_errors():
    trace = Trace(name="t", spans=[_span("a"), _span("b", status="error"), _span("c")])
    assert trace.status == "success"
    trace.finalize(ended_at=5_000)
    assert trace.status == "error"
    assert trace.ended_at == 5_000


def test_finalize_keeps_success_when_all_spans_succeed():
    trace = Trace(name="t", spans=[_span("a"), _span("b")])
    trace.finalize()
    assert trace.status == "success"
    assert trace.ended_at > 0


# ── Rollups ────────────────────────────────────────────────────────────

def test_rollups():
    trace = Trace(name="t")
    trace.add_span(_span("embedding_create", started_at=0, ended_at=40, cost=0.001))
    trace.add_span(_span("llm_call", started_at=40, ended_at=240, cost=0.01))
    trace.add_span(_span("llm_call", started_at=240, ended_at=250, cost=0.002))

    assert trace.total_cost() == pytest.approx(0.013)
    assert trace.total_latency() == 250
    assert trace.cost_by_span() == pytest.approx({"embedding_create": 0.001, "llm_call": 0.012})
    assert trace.find_span("embedding_create").latency == 40
    assert trace.find_span("missing") is None


# ── record_span ────────────────────────────────────────────────────────

def test_record_span_appends_on_success():
    trace = create_trace()
    with record_span(trace, "step", prompt_id="p-1") as span:
        span.cost = 0.5
        span.content = FunctionContent(input="in", output={"n": 1})

    recorded = trace.spans[0]
    assert recorded.name == "step"
    assert recorded.status == "success"
    assert recorded.prompt_id == "p-1"
    assert recorded.cost == 0.5
    assert recorded.ended_at >= recorded.started_at


def test_record_span_records_error_and_reraises():
    trace = create_trace()
    with pytest.raises(RuntimeError, match="boom"):
        with record_span(trace, "step"):
            raise RuntimeError("boom")

    recorded = trace.spans[0]
    assert recorded.status == "error"
    assert recorded.attributes["error"] == "boom"
    assert trace.status == "error"


def test_record_span_defaults_content_to_operation_name():
    trace = create_trace()
    with record_span(trace, "noop"):
        pass
    assert trace.spans[0].content.input == {"operation": "noop"}


def test_record_span_without_trace_is_a_no_op():
    with record_span(None, "step") as span:
        span.cost = 1.0


def test_parent_sorts_before_children_it_started_first():
    trace = create_trace()
    with record_span(trace, "parent", reference_id="p"):
        with record_span(trace, "child_a", parent_reference_id="p"):
            pass
        with record_span(trace, "child_b", parent_reference_id="p"):
            pass
    with record_span(trace, "after"):
        pass

    assert [s.name for s in trace.spans] == ["child_a", "child_b", "parent", "after"]
    assert [s.name for s in trace.ordered_spans()] == ["parent", "child_a", "child_b", "after"]


# ── Serialisation ──────────────────────────────────────────────────────

def test_span_serialises_with_camel_case_aliases():
    dumped = _span("step", parent_reference_id="p").model_dump(by_alias=True)
    assert "startedAt" in dumped
    assert dumped["parentReferenceId"] == "p"


def test_content_union_is_discriminated_on_type():
    span = Span.model_validate({
        "name": "vector_query",
        "startedAt": 1,
        "endedAt": 2,
        "content": {"type": "Retrieval", "input": {"query": "tempo", "topK": 3}},
    })
    assert isinstance(span.content, RetrievalContent)
    assert span.content.input.top_k == 3


def test_finalize_stamps_end_time_once():
    trace = Trace(name="t", spans=[_span("a")])
    trace.finalize(ended_at=5_000)
    trace.add_span(_span("b", status="error"))
    trace.finalize(ended_at=9_000)
    assert trace.ended_at == 5_000
    assert trace.status == "error"
