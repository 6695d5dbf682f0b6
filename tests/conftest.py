"""Shared fixtures and test doubles for coachrag tests."""

from __future__ import annotations

import os

# Settings are validated at import time; provide the required credential
# and deployment identity before any coachrag module is imported.
os.environ.setdefault("DEPLOYMENT_API_KEY", "test-deployment-key")
os.environ.setdefault("PROMPT_ID", "prompt-123")
os.environ.setdefault("DEPLOYMENT_ENVIRONMENT_ID", "env-456")
os.environ.setdefault("PROJECT_ID", "project-789")

import json
import math
from collections.abc import Callable, Sequence
from typing import Any

import httpx
import pytest
from langchain_core.messages import AIMessage

from coachrag.src.database.vector_store import VectorMatch, VectorRecord


def make_embedding(seed: int, dim: int = 16) -> list[float]:
    """Deterministic unit-ish vector; the same seed always gives the same vector."""
    raw = [math.sin(seed * 1000 + i) for i in range(dim)]
    norm = math.sqrt(sum(x * x for x in raw))
    if norm == 0:
        return raw
    return [x / norm for x in raw]


def text_seed(text: str) -> int:
    return sum(ord(c) for c in text) % 9973


class FakeEmbedder:
    """Embedder double producing ``dim``-wide sin vectors keyed on the text."""

    def __init__(self, dim: int = 16, fail: bool = False, empty: bool = False) -> None:
        self.dim = dim
        self.fail = fail
        self.empty = empty
        self.queries: list[str] = []
        self.document_batches: list[list[str]] = []

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        if self.fail:
            raise RuntimeError("embedding service unavailable")
        self.document_batches.append(list(texts))
        return [make_embedding(text_seed(t), self.dim) for t in texts]

    def embed_query(self, text: str) -> list[float]:
        if self.fail:
            raise RuntimeError("embedding service unavailable")
        self.queries.append(text)
        return [] if self.empty else make_embedding(text_seed(text), self.dim)

    async def aembed_query(self, text: str) -> list[float]:
        return self.embed_query(text)


class FakeChatModel:
    """Chat-model double returning a fixed ``AIMessage`` with usage metadata."""

    def __init__(self, reply: str = "Easy 60 min at conversational pace.", input_tokens: int = 10, output_tokens: int = 20, error: Exception | None = None) -> None:
        self.reply = reply
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.error = error
        self.calls: list[list[Any]] = []

    async def ainvoke(self, messages: list[Any]) -> AIMessage:
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        usage = {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens, "total_tokens": self.input_tokens + self.output_tokens}
        return AIMessage(content=self.reply, usage_metadata=usage)


class InMemoryVectorStore:
    """Vector-store double returning pre-configured matches."""

    def __init__(self, dimension: int = 8, matches: list[VectorMatch] | None = None, fail: bool = False) -> None:
        self.dimension = dimension
        self.matches = matches or []
        self.fail = fail
        self.queries: list[list[float]] = []
        self.records: list[VectorRecord] = []
        self.batch_sizes: list[int | None] = []

    @property
    def index_name(self) -> str:
        return "test-index"

    def query(self, vector: Sequence[float], top_k: int, include_metadata: bool = True) -> list[VectorMatch]:
        if self.fail:
            raise RuntimeError("vector store unavailable")
        assert len(vector) == self.dimension
        self.queries.append(list(vector))
        return self.matches[:top_k]

    def upsert(self, records: Sequence[VectorRecord], batch_size: int | None = None) -> int:
        for record in records:
            assert len(record.values) == self.dimension
        self.records.extend(records)
        self.batch_sizes.append(batch_size)
        return len(records)


def make_deployment_payload(model: str = "gpt-4.1-mini", provider: str = "openai", **settings: Any) -> dict[str, Any]:
    return {
        "id": "dep-1",
        "promptId": "prompt-123",
        "projectId": "project-789",
        "deploymentEnvironmentId": "env-456",
        "prompt": {
            "config": {"providerName": provider, "model": model, "settings": settings or {"temperature": 0.4, "maxTokens": 512}},
            "messages": [
                {"role": "system", "content": [{"modality": "text", "value": "You are a running coach."}]},
                {"role": "user", "content": [{"modality": "image", "value": "ignored"}, {"modality": "text", "text": "Plan: {{RUN_BLOCK}}. Cover: {{ WHAT_TO_COVER }}."}]},
            ],
            "tools": [],
            "variables": [{"name": "RUN_BLOCK"}, {"name": "WHAT_TO_COVER", "description": "topics to cover"}],
        },
    }


class ApiRecorder:
    """
    ``httpx.MockTransport`` handler serving the deployments endpoint and
    accepting trace submissions.  Every request is kept for assertions.
    """

    def __init__(self, payload: dict[str, Any] | None = None, deployment_status: int = 200, trace_status: int = 200) -> None:
        self.payload = payload if payload is not None else make_deployment_payload()
        self.deployment_status = deployment_status
        self.trace_status = trace_status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET":
            if self.deployment_status != 200:
                return httpx.Response(self.deployment_status, text="unavailable")
            return httpx.Response(200, json=self.payload)
        return httpx.Response(self.trace_status, json={"ok": self.trace_status == 200})

    @property
    def deployment_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "GET"]

    @property
    def trace_bodies(self) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests if r.method == "POST"]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def chat_factory(model: FakeChatModel) -> Callable[..., FakeChatModel]:
    def _factory(provider_name: str, model_name: str, request: Any) -> FakeChatModel:
        model.requested = (provider_name, model_name, request)  # type: ignore[attr-defined]
        return model

    return _factory


@pytest.fixture
def api() -> ApiRecorder:
    return ApiRecorder()


@pytest.fixture
def data_dir(tmp_path):
    path = tmp_path / "data"
    path.mkdir()
    return path
