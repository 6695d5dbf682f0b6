"""
CoachRAG - RAG Engine
======================
Orchestrates one retrieval-augmented generation request and records it
as a single ``Trace``.

Architecture
------------
``RAGOrchestrator``
    Sequences the stages, threading one trace through all of them:
        1. Fetch / cache the deployment → ``fetch_deployed_payload``
        2. Resolve system + user templates → ``prompt_retrieval``
        3. ``assemble_augmented_prompt`` (parent span) wrapping:
             a. ``embedding_create``   — embed the *full* prompt text
             b. ``vector_query``       — top-K nearest chunks
             c. ``prompt_augmentation`` — snippets into the system message
        4. ``llm_call``  — generation provider, ``Model`` span with cost
        5. Log cost / latency rollups
    Any stage failure marks the trace ``error``; the trace is submitted
    in every case.

Span order is carried by the trace's logical clock: each span takes its
sequence number when its stage *starts*, so the parent
``assemble_augmented_prompt`` sorts before its children even though it
is appended after them.

Usage:
    from coachrag.src.core.rag_engine import RAGOrchestrator
    rag = RAGOrchestrator(deployment, retrieval)
    result = await rag.run({"RUN_BLOCK": "45 min tempo"})
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Mapping
from typing import Any

from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel

from coachrag.config.prompt_templates import AUGMENTATION_COMPONENTS, AUGMENTATION_INSTRUCTIONS, CONTEXT_HEADER, DEFAULT_QUERY_VARIABLES, RETRIEVAL_QUERY_TEMPLATE, SNIPPET_TEMPLATE
from coachrag.config.settings import settings
from coachrag.src.core.deployment import DeploymentCache, DeploymentInfo
from coachrag.src.core.providers import RequestSettings, build_chat_model, resolve_request_settings
from coachrag.src.core.retrieval import RetrievalPipeline
from coachrag.src.observability.cost import estimate_tokens, generation_cost
from coachrag.src.observability.submitter import SubmissionResult, TraceSubmitter
from coachrag.src.observability.trace import ChatMessage, FunctionContent, ModelContent, ModelRequest, ModelResponse, RequestMessage, TextBlock, TokenUsage, Trace, create_trace, record_span
from coachrag.src.utils.logger import get_logger

logger = get_logger(__name__)

ChatModelFactory = Callable[[str, str, RequestSettings], Any]


class AugmentedPrompt(BaseModel):
    system_message: str
    user_message: str
    snippets: list[str]
    matches_found: int


class PipelineResult(BaseModel):
    """Either the assistant's text or a terminal error, plus the submitted trace."""

    trace: Trace
    text: str | None = None
    error: str | None = None
    submission: SubmissionResult | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def metrics(self) -> dict[str, float | int]:
        embedding = self.trace.find_span("embedding_create")
        llm = self.trace.find_span("llm_call")
        return {
            "embedding_cost": embedding.cost if embedding else 0.0,
            "llm_cost": llm.cost if llm else 0.0,
            "total_cost": self.trace.total_cost(),
            "total_latency_ms": self.trace.total_latency(),
            "span_count": len(self.trace.spans),
        }


# ══════════════════════════════════════════════════════════════════════
#  PROMPT ASSEMBLY
# ══════════════════════════════════════════════════════════════════════

def build_retrieval_query(system_template: str, user_query: str) -> str:
    return RETRIEVAL_QUERY_TEMPLATE.format(system=system_template, user=user_query)


def build_augmented_messages(system_template: str, user_query: str, snippets: list[str]) -> tuple[str, str]:
    """
    System message: template plus numbered snippets (when any).
    User message: query plus the answering instructions.
    """
    system_message = system_template
    if snippets:
        system_message += CONTEXT_HEADER + "".join(SNIPPET_TEMPLATE.format(index=i, text=s) for i, s in enumerate(snippets, 1))
    return system_message, user_query + AUGMENTATION_INSTRUCTIONS


def _word_count(text: str) -> int:
    return len(text.split())


def _message_text(response: Any) -> str:
    """Plain text of a LangChain message whose ``content`` is a string or a list of parts."""
    content = getattr(response, "content", response)
    if isinstance(content, str):
        return content
    parts: list[str] = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type", "text") == "text":
            parts.append(str(part.get("text", "")))
    return "".join(parts)


# ══════════════════════════════════════════════════════════════════════
#  ORCHESTRATOR
# ══════════════════════════════════════════════════════════════════════

class RAGOrchestrator:
    """
    Runs configuration → retrieval → augmentation → generation.

    Parameters
    ----------
    deployment
        The run's ``DeploymentCache``.
    retrieval
        A ``RetrievalPipeline`` bound to the vector store.
    submitter
        Optional ``TraceSubmitter``; one with default settings otherwise.
    chat_model_factory
        ``(provider_name, model, request_settings) -> chat model``.
        Defaults to ``build_chat_model``.
    top_k
        Matches to retrieve.  Defaults to ``settings.TOP_K``.
    """

    __slots__ = ("_deployment", "_retrieval", "_submitter", "_chat_model_factory", "_top_k")

    def __init__(self, deployment: DeploymentCache, retrieval: RetrievalPipeline, submitter: TraceSubmitter | None = None, chat_model_factory: ChatModelFactory | None = None, top_k: int | None = None) -> None:
        self._deployment = deployment
        self._retrieval = retrieval
        self._submitter = submitter or TraceSubmitter()
        self._chat_model_factory = chat_model_factory or build_chat_model
        self._top_k = top_k or settings.TOP_K


    async def run(self, variables: Mapping[str, Any] | None = None, trace: Trace | None = None) -> PipelineResult:
        """
        Execute the full pipeline.  Never raises for stage failures: the
        error is reported on the result and the trace is still submitted.
        """
        variables = dict(variables if variables is not None else DEFAULT_QUERY_VARIABLES)
        trace = trace if trace is not None else create_trace()
        result = PipelineResult(trace=trace)
        t_start = time.perf_counter()

        try:
            system_template, user_query = await self.get_full_prompt(trace, variables)
            info = await self._deployment.get_deployment_info(trace)
            if not trace.project_id and info.project_id:
                trace.project_id = info.project_id

            augmented = await self.assemble_augmented_prompt(trace, system_template, user_query)
            result.text = await self.call_llm(trace, augmented, info, variables)

            metrics = result.metrics()
            logger.info("[RAG] Pipeline total: %.1fms (embedding=$%.6f, llm=$%.6f, total=$%.6f, spans=%d)", (time.perf_counter() - t_start) * 1000, metrics["embedding_cost"], metrics["llm_cost"], metrics["total_cost"], metrics["span_count"])
        except Exception as exc:
            logger.exception("[RAG] Pipeline failed.")
            trace.status = "error"
            result.error = str(exc) or type(exc).__name__
        finally:
            result.submission = await self._submitter.submit(trace)

        return result

    # ── 1–2. Templates ─────────────────────────────────────────────────

    async def get_full_prompt(self, trace: Trace, variables: Mapping[str, Any]) -> tuple[str, str]:
        """
        ``(system_template, injected_user_query)``.

        The deployment is fetched (and its span recorded) before the
        ``prompt_retrieval`` span starts.
        """
        await self._deployment.get_system_message(trace)

        with record_span(trace, "prompt_retrieval", prompt_id=self._deployment.prompt_id) as span:
            span.content = FunctionContent(input={"operation": "retrieve_and_assemble_prompt", "fetchSystemMessage": True, "fetchUserQuery": True, "variables": sorted(variables)})
            coach_template = await self._deployment.get_system_message()
            user_query = await self._deployment.get_user_query(variables)
            span.content.output = {
                "userQuery": user_query,
                "coachTemplate": coach_template,
                "userQueryLength": len(user_query),
                "coachTemplateLength": len(coach_template),
                "combinedLength": len(user_query) + len(coach_template),
                "userQueryWords": _word_count(user_query),
                "coachTemplateWords": _word_count(coach_template),
            }

        logger.info("[RAG] Templates ready: system=%d chars, user=%d chars", len(coach_template), len(user_query))
        return coach_template, user_query

    # ── 3. Retrieval + augmentation ────────────────────────────────────

    async def assemble_augmented_prompt(self, trace: Trace, system_template: str, user_query: str) -> AugmentedPrompt:
        """Retrieve context for the full prompt and fold it into the messages."""
        prompt_id = self._deployment.prompt_id
        parent_reference_id = f"assemble_augmented_prompt_{uuid.uuid4().hex}"

        with record_span(trace, "assemble_augmented_prompt", reference_id=parent_reference_id, prompt_id=prompt_id) as parent:
            parent.content = FunctionContent(input={"operation": "assemble_augmented_prompt_pipeline", "coachTemplateLength": len(system_template), "userQueryLength": len(user_query), "topK": self._top_k})

            query = build_retrieval_query(system_template, user_query)
            matches = await self._retrieval.retrieve_top_k(query, self._top_k, trace, parent_reference_id, prompt_id)
            snippets = [r.text for r in self._retrieval.resolve_matches(matches) if r.ok]

            with record_span(trace, "prompt_augmentation", parent_reference_id=parent_reference_id, prompt_id=prompt_id) as span:
                system_message, user_message = build_augmented_messages(system_template, user_query, snippets)
                context_block = "\n\n".join(snippets)
                span.content = FunctionContent(
                    input={
                        "operation": "augment_prompt_with_retrieval_context",
                        "snippetsIncluded": len(snippets),
                        "coachTemplateLength": len(system_template),
                        "userQueryLength": len(user_query),
                        "contextSnippetsLengths": [len(s) for s in snippets],
                        "totalContextLength": sum(len(s) for s in snippets),
                    },
                    output={
                        "systemMessageLength": len(system_message),
                        "userMessageLength": len(user_message),
                        "components": AUGMENTATION_COMPONENTS,
                        "componentLengths": {"coachTemplate": len(system_template), "userQuery": len(user_query), "retrievalContext": len(context_block)},
                        "wordCounts": {
                            "coachTemplate": _word_count(system_template),
                            "userQuery": _word_count(user_query),
                            "retrievalContext": _word_count(context_block),
                            "total": _word_count(system_message + "\n" + user_message),
                        },
                        "snippetsProcessed": len(snippets),
                        "estimatedTokens": estimate_tokens(system_message + user_message),
                    },
                )

            parent.content.output = {
                "systemMessageLength": len(system_message),
                "userMessageLength": len(user_message),
                "snippetsRetrieved": len(snippets),
                "matchesFound": len(matches),
                "pipelineSteps": ["embedding_create", "vector_query", "prompt_augmentation"],
            }

        logger.info("[RAG] Augmented prompt assembled: %d snippet(s) from %d match(es), system=%d chars, user=%d chars", len(snippets), len(matches), len(system_message), len(user_message))
        return AugmentedPrompt(system_message=system_message, user_message=user_message, snippets=snippets, matches_found=len(matches))

    # ── 4. Generation ──────────────────────────────────────────────────

    async def call_llm(self, trace: Trace, augmented: AugmentedPrompt, info: DeploymentInfo, variables: Mapping[str, Any]) -> str:
        """
        Call the deployed provider/model and record a ``Model`` span.

        Cost uses provider-reported token counts, or ``ceil(chars/4)``
        estimates where the provider reports none.
        """
        request = resolve_request_settings(info.model, info.settings)
        t_llm = time.perf_counter()

        with record_span(trace, "llm_call", prompt_id=info.prompt_id, deployment_id=info.deployment_id) as span:
            span.run_evaluation = True
            span.content = ModelContent(
                provider=info.provider_name,
                model=info.model,
                variables={name: TextBlock(value=str(value)) for name, value in variables.items()},
                input=ModelRequest(
                    model=info.model,
                    messages=[RequestMessage.text("system", augmented.system_message), RequestMessage.text("user", augmented.user_message)],
                    temperature=request.temperature,
                    max_tokens=request.max_tokens,
                ),
            )

            llm = self._chat_model_factory(info.provider_name, info.model, request)
            response = await llm.ainvoke([SystemMessage(content=augmented.system_message), HumanMessage(content=augmented.user_message)])
            text = _message_text(response)

            usage = getattr(response, "usage_metadata", None) or {}
            input_tokens = int(usage.get("input_tokens", 0) or 0)
            output_tokens = int(usage.get("output_tokens", 0) or 0)
            if input_tokens or output_tokens:
                span.tokens = TokenUsage(input=input_tokens, output=output_tokens, total=input_tokens + output_tokens)

            cost_input = input_tokens or estimate_tokens(augmented.system_message + augmented.user_message)
            cost_output = output_tokens or estimate_tokens(text)
            span.cost = generation_cost(info.model, cost_input, cost_output)
            span.content.output = ModelResponse(messages=[ChatMessage.text("assistant", text)])

        logger.info("[RAG] LLM response (%s/%s): %.1fms, %d chars, $%.6f (%d in + %d out tokens)", info.provider_name, info.model, (time.perf_counter() - t_llm) * 1000, len(text), span.cost, cost_input, cost_output)
        return text
