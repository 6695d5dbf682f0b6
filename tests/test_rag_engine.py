"""End-to-end tests for the RAG orchestrator with in-process fakes."""

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from coachrag.config.prompt_templates import AUGMENTATION_INSTRUCTIONS, CONTEXT_HEADER
from coachrag.config.settings import settings
from coachrag.src.core.deployment import DeploymentCache
from coachrag.src.core.rag_engine import RAGOrchestrator, _message_text, build_augmented_messages, build_retrieval_query
from coachrag.src.core.retrieval import RetrievalPipeline
from coachrag.src.database.vector_store import VectorMatch
from coachrag.src.observability.cost import generation_cost
from coachrag.src.observability.submitter import TraceSubmitter

from conftest import ApiRecorder, FakeChatModel, FakeEmbedder, InMemoryVectorStore, chat_factory, make_deployment_payload

EXPECTED_ORDER = [
    "fetch_deployed_payload",
    "prompt_retrieval",
    "assemble_augmented_prompt",
    "embedding_create",
    "vector_query",
    "prompt_augmentation",
    "llm_call",
]

DOC = "Drink 500 ml two hours before the run. Sip electrolytes when it is hot."
VARIABLES = {"RUN_BLOCK": "10K tempo", "WHAT_TO_COVER": "hydration"}


def _orchestrator(client, data_dir, model=None, matches=None, embedder=None):
    (data_dir / "hydration.txt").write_text(DOC, encoding="utf-8")
    if matches is None:
        metadata = {"source": "hydration.txt", "chunk_index": 0, "chunk_size": settings.CHUNK_SIZE, "chunk_overlap": settings.CHUNK_OVERLAP, "chunker_version": settings.CHUNKER_VERSION}
        matches = [VectorMatch(id="hydration-chunk-0", score=0.92, metadata=metadata), VectorMatch(id="orphan", score=0.40)]
    embedder = embedder or FakeEmbedder(dim=16)
    retrieval = RetrievalPipeline(embedder=embedder, vector_store=InMemoryVectorStore(dimension=8, matches=matches), data_dir=data_dir)
    return RAGOrchestrator(
        deployment=DeploymentCache(http_client=client, api_key="secret"),
        retrieval=retrieval,
        submitter=TraceSubmitter(http_client=client, url="https://logs.test/trace", api_key="secret"),
        chat_model_factory=chat_factory(model or FakeChatModel()),
        top_k=3,
    )


# ── Helpers ────────────────────────────────────────────────────────────

def test_retrieval_query_embeds_full_prompt():
    assert build_retrieval_query("SYSTEM", "USER") == "SYSTEM\n\nUser request:\nUSER"


def test_augmented_messages_number_snippets():
    system, user = build_augmented_messages("You coach.", "Plan it.", ["first", "second"])
    assert system == "You coach." + CONTEXT_HEADER + "--- snippet 1 ---\nfirst\n\n--- snippet 2 ---\nsecond\n\n"
    assert user == "Plan it." + AUGMENTATION_INSTRUCTIONS


def test_augmented_messages_without_snippets_keep_template():
    system, _ = build_augmented_messages("You coach.", "Plan it.", [])
    assert system == "You coach."


def test_message_text_handles_content_parts():
    assert _message_text(AIMessage(content="plain")) == "plain"
    assert _message_text(AIMessage(content=[{"type": "text", "text": "a"}, "b", {"type": "image_url", "image_url": "x"}])) == "ab"


# ── Pipeline ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_run_returns_answer_and_submits_ordered_trace(api: ApiRecorder, data_dir):
    model = FakeChatModel(reply="Run the tempo at threshold.")
    embedder = FakeEmbedder(dim=16)
    async with api.client() as client:
        result = await _orchestrator(client, data_dir, model=model, embedder=embedder).run(VARIABLES)

    assert result.ok
    assert result.text == "Run the tempo at threshold."
    assert result.submission.submitted
    assert result.trace.status == "success"
    assert [s.name for s in result.trace.ordered_spans()] == EXPECTED_ORDER

    # The retrieval query is the full prompt, not the user text alone
    assert embedder.queries == ["You are a running coach.\n\nUser request:\nPlan: 10K tempo. Cover: hydration."]

    system_message, user_message = model.calls[0]
    assert isinstance(system_message, SystemMessage)
    assert isinstance(user_message, HumanMessage)
    assert "--- snippet 1 ---\n" + DOC in system_message.content
    assert "snippet 2" not in system_message.content
    assert user_message.content == "Plan: 10K tempo. Cover: hydration." + AUGMENTATION_INSTRUCTIONS

    body = api.trace_bodies[0]
    assert [s["name"] for s in body["spans"]] == EXPECTED_ORDER
    assert body["projectId"] == "project-789"
    assert body["trace"]["status"] == "success"


@pytest.mark.asyncio
async def test_child_spans_link_to_assembly_parent(api: ApiRecorder, data_dir):
    async with api.client() as client:
        result = await _orchestrator(client, data_dir).run(VARIABLES)

    parent = result.trace.find_span("assemble_augmented_prompt")
    assert parent.reference_id.startswith("assemble_augmented_prompt_")
    for name in ("embedding_create", "vector_query", "prompt_augmentation"):
        assert result.trace.find_span(name).parent_reference_id == parent.reference_id
    assert parent.content.output["snippetsRetrieved"] == 1
    assert parent.content.output["matchesFound"] == 2


@pytest.mark.asyncio
async def test_llm_span_carries_tokens_cost_and_variables(api: ApiRecorder, data_dir):
    async with api.client() as client:
        result = await _orchestrator(client, data_dir).run(VARIABLES)

    span = result.trace.find_span("llm_call")
    assert span.run_evaluation is True
    assert span.deployment_id == "dep-1"
    assert span.tokens.input == 10
    assert span.tokens.output == 20
    assert span.tokens.total == 30
    assert span.cost == pytest.approx(generation_cost("gpt-4.1-mini", 10, 20))
    assert span.content.variables["RUN_BLOCK"].value == "10K tempo"
    assert span.content.input.temperature == 0.4
    assert span.content.input.max_tokens == 512
    assert span.attributes["provider"] == "openai"

    metrics = result.metrics()
    assert metrics["llm_cost"] == span.cost
    assert metrics["span_count"] == len(EXPECTED_ORDER)
    assert metrics["total_cost"] == pytest.approx(result.trace.total_cost())

    wire = next(s for s in api.trace_bodies[0]["spans"] if s["name"] == "llm_call")
    assert wire["runEvaluation"] is True
    assert wire["content"]["cost"] == pytest.approx(span.cost)


@pytest.mark.asyncio
async def test_missing_usage_falls_back_to_estimated_tokens(api: ApiRecorder, data_dir):
    model = FakeChatModel(input_tokens=0, output_tokens=0)
    async with api.client() as client:
        result = await _orchestrator(client, data_dir, model=model).run(VARIABLES)

    span = result.trace.find_span("llm_call")
    assert span.tokens is None
    assert span.cost > 0


@pytest.mark.asyncio
async def test_fixed_temperature_models_are_sent_temperature_one(data_dir):
    api = ApiRecorder(payload=make_deployment_payload(model="gpt-5-mini", temperature=0.2, max_output_tokens=256))
    model = FakeChatModel()
    async with api.client() as client:
        await _orchestrator(client, data_dir, model=model).run(VARIABLES)

    provider, model_name, request = model.requested
    assert (provider, model_name) == ("openai", "gpt-5-mini")
    assert request.temperature == 1
    assert request.max_tokens == 256


@pytest.mark.asyncio
async def test_no_matches_leaves_system_template_untouched(api: ApiRecorder, data_dir):
    model = FakeChatModel()
    async with api.client() as client:
        result = await _orchestrator(client, data_dir, model=model, matches=[]).run(VARIABLES)

    assert result.ok
    assert model.calls[0][0].content == "You are a running coach."


@pytest.mark.asyncio
async def test_default_variables_are_used_when_none_given(api: ApiRecorder, data_dir):
    async with api.client() as client:
        result = await _orchestrator(client, data_dir).run()

    assert result.ok
    assert "Recovery run" in result.trace.find_span("prompt_retrieval").content.output["userQuery"]


# ── Failure paths ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_llm_failure_is_reported_and_trace_still_submitted(api: ApiRecorder, data_dir):
    model = FakeChatModel(error=RuntimeError("provider timeout"))
    async with api.client() as client:
        result = await _orchestrator(client, data_dir, model=model).run(VARIABLES)

    assert not result.ok
    assert result.text is None
    assert result.error == "provider timeout"
    assert result.trace.status == "error"
    assert result.trace.find_span("llm_call").status == "error"
    assert result.submission.submitted

    body = api.trace_bodies[0]
    assert body["trace"]["status"] == "failure"
    assert next(s for s in body["spans"] if s["name"] == "llm_call")["status"] == "failure"


@pytest.mark.asyncio
async def test_deployment_failure_stops_before_retrieval(data_dir):
    api = ApiRecorder(deployment_status=500)
    embedder = FakeEmbedder(dim=16)
    async with api.client() as client:
        result = await _orchestrator(client, data_dir, embedder=embedder).run(VARIABLES)

    assert "Unable to fetch prompt templates" in result.error
    assert [s.name for s in result.trace.ordered_spans()] == ["fetch_deployed_payload"]
    assert embedder.queries == []
    assert api.trace_bodies[0]["trace"]["status"] == "failure"


@pytest.mark.asyncio
async def test_embedding_failure_marks_parent_and_child_spans(api: ApiRecorder, data_dir):
    async with api.client() as client:
        result = await _orchestrator(client, data_dir, embedder=FakeEmbedder(fail=True)).run(VARIABLES)

    assert not result.ok
    assert result.trace.find_span("embedding_create").status == "error"
    assert result.trace.find_span("assemble_augmented_prompt").status == "error"
    assert result.trace.find_span("llm_call") is None
    assert result.submission.submitted


@pytest.mark.asyncio
async def test_submission_failure_does_not_fail_the_request(data_dir):
    api = ApiRecorder(trace_status=502)
    async with api.client() as client:
        result = await _orchestrator(client, data_dir).run(VARIABLES)

    assert result.ok
    assert result.submission.submitted is False
    assert result.submission.status_code == 502
