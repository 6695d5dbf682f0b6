"""Tests for trace payload building and submission."""

import json

import httpx
import pytest

from coachrag.src.observability.submitter import TraceSubmitter, build_content_payload, build_payload, build_span_payload
from coachrag.src.observability.trace import (
    ChatMessage,
    FunctionContent,
    ModelContent,
    ModelRequest,
    ModelResponse,
    RequestMessage,
    Span,
    TextBlock,
    TokenUsage,
    Trace,
    create_trace,
)


def _model_span(**kwargs) -> Span:
    content = ModelContent(
        provider="openai",
        model="gpt-4.1-mini",
        variables={"RUN_BLOCK": TextBlock(value="tempo")},
        input=ModelRequest(model="gpt-4.1-mini", messages=[RequestMessage.text("system", "coach"), RequestMessage.text("user", "plan")], temperature=0.4, max_tokens=512),
        output=ModelResponse(messages=[ChatMessage.text("assistant", "Run easy.")]),
    )
    defaults = {"name": "llm_call", "started_at": 1_000, "ended_at": 1_200, "content": content, "cost": 0.5, "tokens": TokenUsage(input=10, output=20, total=30)}
    return Span(**{**defaults, **kwargs})


def _function_span(**kwargs) -> Span:
    defaults = {"name": "prompt_retrieval", "started_at": 1_000, "ended_at": 1_010, "content": FunctionContent(input={"operation": "x"}, output={"n": 1}), "cost": 0.25}
    return Span(**{**defaults, **kwargs})


# ── Content payload ────────────────────────────────────────────────────

def test_model_content_carries_token_usage_and_top_level_cost():
    content = build_content_payload(_model_span())

    assert content["type"] == "Model"
    assert content["provider"] == "openai"
    assert content["model"] == "gpt-4.1-mini"
    assert content["cost"] == 0.5
    assert content["variables"] == {"RUN_BLOCK": {"modality": "text", "value": "tempo"}}

    output = json.loads(content["output"])
    assert output["tokenUsage"] == {"promptTokens": 10, "completionTokens": 20, "totalTokens": 30}
    assert output["messages"][0]["content"][0]["value"] == "Run easy."

    request = json.loads(content["input"])
    assert request["max_tokens"] == 512
    assert request["messages"][1]["content"][0] == {"type": "text", "text": "plan"}


def test_model_content_without_tokens_omits_token_usage():
    output = json.loads(build_content_payload(_model_span(tokens=None))["output"])
    assert "tokenUsage" not in output


def test_function_content_folds_metrics_into_output():
    content = build_content_payload(_function_span(tokens=TokenUsage(input=1, output=2, total=3)))
    assert content["type"] == "Function"
    assert json.loads(content["input"]) == {"operation": "x"}
    assert json.loads(content["output"]) == {"n": 1, "cost": 0.25, "latency": 10, "tokens": {"input": 1, "output": 2, "total": 3}}


def test_string_input_passes_through_unencoded():
    content = build_content_payload(_function_span(content=FunctionContent(input="raw text")))
    assert content["input"] == "raw text"


def test_missing_output_becomes_metrics_only():
    content = build_content_payload(_function_span(content=FunctionContent(input="x")))
    assert json.loads(content["output"]) == {"cost": 0.25, "latency": 10}


# ── Span / trace payload ───────────────────────────────────────────────

def test_span_payload_enforces_minimum_duration_and_maps_status():
    payload = build_span_payload(_function_span(status="error", started_at=5_000, ended_at=5_000))
    assert payload["endedAt"] == 5_001
    assert payload["status"] == "failure"


def test_span_payload_drops_unset_fields():
    payload = build_span_payload(_function_span())
    assert "parentReferenceId" not in payload
    assert "runEvaluation" not in payload
    assert build_span_payload(_model_span(run_evaluation=True))["runEvaluation"] is True


def test_payload_orders_spans_by_sequence():
    trace = Trace(name="t", project_id="proj")
    trace.add_span(_function_span(name="child", sequence=1))
    trace.add_span(_function_span(name="parent", sequence=0))
    trace.finalize()

    payload = build_payload(trace)
    assert payload["projectId"] == "proj"
    assert [s["name"] for s in payload["spans"]] == ["parent", "child"]
    assert payload["trace"]["referenceId"] == trace.reference_id


def test_unfinalised_trace_gets_minimum_duration():
    trace = Trace(name="t", started_at=100)
    assert build_payload(trace)["trace"]["endedAt"] == 101


# ── Submission ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_submit_posts_payload_with_bearer_credential():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    trace = create_trace()
    trace.add_span(_function_span())
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await TraceSubmitter(http_client=client, url="https://logs.test/trace", api_key="secret").submit(trace)

    assert result.submitted is True
    assert result.status_code == 200
    assert trace.ended_at > 0
    assert seen[0].headers["Authorization"] == "Bearer secret"
    body = json.loads(seen[0].content)
    assert body["spans"][0]["name"] == "prompt_retrieval"


@pytest.mark.asyncio
async def test_submit_reports_non_success_status_without_raising():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="ingestion down")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await TraceSubmitter(http_client=client, api_key="secret").submit(create_trace())

    assert result.submitted is False
    assert result.status_code == 500
    assert result.error == "ingestion down"


@pytest.mark.asyncio
async def test_submit_reports_transport_error_without_raising():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await TraceSubmitter(http_client=client, api_key="secret").submit(create_trace())

    assert result.submitted is False
    assert result.status_code is None
    assert "connection refused" in result.error


@pytest.mark.asyncio
async def test_submit_is_skipped_without_credential():
    result = await TraceSubmitter(api_key="").submit(create_trace())
    assert result.skipped is True
    assert result.submitted is False


@pytest.mark.asyncio
async def test_resubmitting_keeps_the_original_end_time():
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200)

    trace = create_trace()
    trace.add_span(_function_span())
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        submitter = TraceSubmitter(http_client=client, api_key="secret")
        await submitter.submit(trace)
        ended_at = trace.ended_at
        await submitter.submit(trace)

    assert trace.ended_at == ended_at
    assert bodies[0]["trace"]["endedAt"] == bodies[1]["trace"]["endedAt"]
