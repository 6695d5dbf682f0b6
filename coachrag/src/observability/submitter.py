"""
CoachRAG - Trace Submission
============================
Turns a finalised ``Trace`` into the ingestion endpoint's wire payload and
POSTs it once.

Payload rules
-------------
- Spans are emitted in causal order (``Trace.ordered_spans()``).
- ``content.input`` / ``content.output`` are sent as text: strings pass
  through, anything else is JSON-encoded.
- ``Model`` content carries ``provider``, ``model``, ``variables`` and
  ``cost`` at the top level of ``content``; token usage is folded into
  the output as ``tokenUsage``.
- Every other content type folds ``cost``, ``latency`` and ``tokens``
  into its output object.
- ``endedAt`` is forced to at least ``startedAt + 1``.

Submission is best-effort: a single attempt, no retries.  The outcome is
returned as a ``SubmissionResult``; nothing here raises.
"""

from __future__ import annotations

import json
import time
from typing import Any

import httpx
from pydantic import BaseModel

from coachrag.config.settings import settings
from coachrag.src.observability.trace import ModelContent, Span, SpanStatus, Trace
from coachrag.src.utils.logger import get_logger

logger = get_logger(__name__)

_STATUS_MAP: dict[str, str] = {"success": "success", "error": "failure"}


class SubmissionResult(BaseModel):
    """Outcome of one submission attempt."""

    submitted: bool
    status_code: int | None = None
    error: str | None = None
    skipped: bool = False


# ══════════════════════════════════════════════════════════════════════
#  PAYLOAD
# ══════════════════════════════════════════════════════════════════════

def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)


def _ended_at(started_at: int, ended_at: int) -> int:
    return ended_at if ended_at > started_at else started_at + 1


def _map_status(status: SpanStatus) -> str:
    return _STATUS_MAP.get(status, "unknown")


def _span_metrics(span: Span) -> dict[str, Any]:
    metrics: dict[str, Any] = {"cost": span.cost, "latency": span.latency}
    if span.tokens is not None:
        metrics["tokens"] = span.tokens.model_dump()
    return metrics


def _model_content_payload(span: Span, content: ModelContent) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "type": content.type,
        "provider": content.provider,
        "model": content.model,
        "input": _as_text(content.input.model_dump(mode="json", by_alias=True, exclude_none=True)),
        "cost": span.cost,
    }
    if content.variables:
        payload["variables"] = {name: block.model_dump(mode="json", by_alias=True) for name, block in content.variables.items()}
    if content.output is not None:
        output = content.output.model_dump(mode="json", by_alias=True, exclude_none=True)
        if span.tokens is not None:
            output["tokenUsage"] = {
                "promptTokens": span.tokens.input,
                "completionTokens": span.tokens.output,
                "totalTokens": span.tokens.total,
            }
        payload["output"] = _as_text(output)
    return payload


def build_content_payload(span: Span) -> dict[str, Any]:
    """Wire form of ``span.content`` with the span's metrics folded in."""
    if isinstance(span.content, ModelContent):
        return _model_content_payload(span, span.content)

    data = span.content.model_dump(mode="json", by_alias=True, exclude_none=True)
    payload: dict[str, Any] = {"type": data["type"]}
    if "input" in data:
        payload["input"] = _as_text(data["input"])

    output = data.get("output")
    if output is None:
        payload["output"] = _as_text(_span_metrics(span))
    else:
        base = output if isinstance(output, dict) else {"value": output}
        payload["output"] = _as_text({**base, **_span_metrics(span)})
    return payload


def build_span_payload(span: Span) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "startedAt": span.started_at,
        "endedAt": _ended_at(span.started_at, span.ended_at),
        "name": span.name,
        "status": _map_status(span.status),
        "content": build_content_payload(span),
        "referenceId": span.reference_id,
        "parentReferenceId": span.parent_reference_id,
        "promptId": span.prompt_id,
        "deploymentId": span.deployment_id,
        "sessionId": span.session_id,
        "attributes": span.attributes,
        "tags": span.tags,
    }
    if span.run_evaluation is not None:
        payload["runEvaluation"] = span.run_evaluation
    return {k: v for k, v in payload.items() if v is not None}


def build_payload(trace: Trace, project_id: str | None = None) -> dict[str, Any]:
    """
    Build the full submission body ``{projectId, trace, spans}``.

    The trace is expected to be finalised already; ``endedAt`` is still
    normalised to a minimum one-millisecond duration.
    """
    trace_payload = {
        "startedAt": trace.started_at,
        "endedAt": _ended_at(trace.started_at, trace.ended_at),
        "name": trace.name,
        "status": _map_status(trace.status),
        "referenceId": trace.reference_id,
        "sessionId": trace.session_id,
        "attributes": trace.attributes,
        "tags": trace.tags,
    }
    return {
        "projectId": project_id or trace.project_id or settings.PROJECT_ID,
        "trace": trace_payload,
        "spans": [build_span_payload(s) for s in trace.ordered_spans()],
    }


# ══════════════════════════════════════════════════════════════════════
#  SUBMITTER
# ══════════════════════════════════════════════════════════════════════

class TraceSubmitter:
    """
    POSTs traces to the ingestion endpoint with a bearer credential.

    Parameters
    ----------
    http_client
        Optional shared ``httpx.AsyncClient``.  When omitted, a client is
        opened per submission.
    url
        Override the endpoint.  Defaults to ``settings.TRACE_LOGS_URL``.
    api_key
        Override the bearer credential.  Defaults to
        ``settings.DEPLOYMENT_API_KEY``.  An empty key skips submission.
    """

    __slots__ = ("_client", "_url", "_api_key")

    def __init__(self, http_client: httpx.AsyncClient | None = None, url: str | None = None, api_key: str | None = None) -> None:
        self._client = http_client
        self._url = url or settings.TRACE_LOGS_URL
        self._api_key = api_key if api_key is not None else settings.DEPLOYMENT_API_KEY.get_secret_value()


    async def submit(self, trace: Trace) -> SubmissionResult:
        """Finalise *trace*, POST it once, and report what happened."""
        trace.finalize()

        if not self._api_key:
            logger.warning("No API key configured — skipping trace submission.")
            return SubmissionResult(submitted=False, skipped=True)

        t_start = time.perf_counter()
        try:
            payload = build_payload(trace)
            headers = {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}
            if self._client is not None:
                response = await self._client.post(self._url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as client:
                    response = await client.post(self._url, json=payload, headers=headers)
        except Exception as exc:
            logger.exception("Error submitting trace %s.", trace.reference_id)
            return SubmissionResult(submitted=False, error=str(exc) or type(exc).__name__)

        elapsed_ms = (time.perf_counter() - t_start) * 1000
        if response.is_success:
            logger.info("Trace %s submitted (%d spans) in %.1fms.", trace.reference_id, len(trace.spans), elapsed_ms)
            return SubmissionResult(submitted=True, status_code=response.status_code)

        logger.error("Trace submission failed. Status: %d. Body: %s", response.status_code, response.text[:500])
        return SubmissionResult(submitted=False, status_code=response.status_code, error=response.text or response.reason_phrase)


async def submit_trace(trace: Trace, http_client: httpx.AsyncClient | None = None) -> SubmissionResult:
    return await TraceSubmitter(http_client).submit(trace)
