"""
CoachRAG - Deployment Configuration Cache
==========================================
Fetches the remotely deployed prompt (role-tagged message templates,
declared variables, provider/model settings) once, and serves template
extraction and ``{{PLACEHOLDER}}`` injection from the cached copy.

Lifecycle
---------
``DeploymentCache`` is an explicit object: construct one per run (or per
deployment served) and inject it.  The first access performs a
check-then-fetch-then-set; there is no lock, so two overlapping callers
may both fetch.  Both writes are equivalent, so the duplication is
harmless.  The cache is never invalidated except by ``clear()``.

A second, separate slot caches the extracted system message.

A failed fetch raises ``ConfigurationError``: without templates no
request can be built.
"""

from __future__ import annotations

import re
import time
from collections.abc import Mapping
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from coachrag.config.settings import settings
from coachrag.src.core.errors import ConfigurationError
from coachrag.src.observability.trace import FunctionContent, Trace, record_span
from coachrag.src.utils.logger import get_logger

logger = get_logger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{\{([^}]+)\}\}")


# ══════════════════════════════════════════════════════════════════════
#  PAYLOAD MODELS
# ══════════════════════════════════════════════════════════════════════

class _PayloadModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ContentBlock(_PayloadModel):
    modality: str
    text: str | None = None
    value: str | None = None


class PromptMessage(_PayloadModel):
    role: str
    content: list[ContentBlock] = Field(default_factory=list)


class PromptVariable(_PayloadModel):
    name: str
    description: str | None = None


class PromptConfig(_PayloadModel):
    provider_name: str
    model: str
    settings: dict[str, Any] = Field(default_factory=dict)


class Prompt(_PayloadModel):
    config: PromptConfig
    messages: list[PromptMessage] = Field(default_factory=list)
    tools: list[Any] = Field(default_factory=list)
    variables: list[PromptVariable] = Field(default_factory=list)


class DeployedPrompt(_PayloadModel):
    """Response body of the deployments endpoint."""

    id: str
    prompt_id: str
    project_id: str = ""
    deployment_environment_id: str = ""
    prompt: Prompt


class DeploymentInfo(BaseModel):
    provider_name: str
    model: str
    settings: dict[str, Any]
    tools: list[Any]
    prompt_id: str
    deployment_environment_id: str
    project_id: str
    deployment_id: str


# ══════════════════════════════════════════════════════════════════════
#  PURE HELPERS
# ══════════════════════════════════════════════════════════════════════

def extract_message(deployed: DeployedPrompt, role: str) -> str:
    """
    Text of the first *role* message's first text-modality block.

    Returns ``""`` when the role or a text block is absent; templates may
    omit a role.
    """
    message = next((m for m in deployed.prompt.messages if m.role == role), None)
    if message is None:
        return ""
    block = next((c for c in message.content if c.modality == "text"), None)
    if block is None:
        return ""
    return block.value or block.text or ""


def extract_variables(deployed: DeployedPrompt) -> list[str]:
    return [v.name for v in deployed.prompt.variables]


def inject_variables(template: str, values: Mapping[str, Any]) -> str:
    """
    Replace each ``{{name}}`` with ``str(values[name])``.

    Names are trimmed before lookup.  Placeholders with no supplied value
    are left verbatim.

    >>> inject_variables("Plan: {{X}}.", {"X": "run"})
    'Plan: run.'
    >>> inject_variables("Plan: {{X}}.", {})
    'Plan: {{X}}.'
    """
    def _replace(match: re.Match[str]) -> str:
        name = match.group(1).strip()
        if name in values:
            return str(values[name])
        return match.group(0)

    return _PLACEHOLDER_RE.sub(_replace, template)


# ══════════════════════════════════════════════════════════════════════
#  CACHE
# ══════════════════════════════════════════════════════════════════════

class DeploymentCache:
    """
    Process-lifetime cache of one deployed prompt.

    Parameters
    ----------
    http_client
        Optional shared ``httpx.AsyncClient`` (a client is opened per
        fetch otherwise).
    prompt_id, deployment_environment_id
        Identify the deployment.  Default to the values in ``settings``.
    url, api_key
        Override ``settings.DEPLOYMENTS_URL`` / ``settings.DEPLOYMENT_API_KEY``.
    """

    __slots__ = ("_client", "_url", "_api_key", "_prompt_id", "_environment_id", "_deployed", "_system_message")

    def __init__(self, http_client: httpx.AsyncClient | None = None, prompt_id: str | None = None, deployment_environment_id: str | None = None, url: str | None = None, api_key: str | None = None) -> None:
        self._client = http_client
        self._url = url or settings.DEPLOYMENTS_URL
        self._api_key = api_key if api_key is not None else settings.DEPLOYMENT_API_KEY.get_secret_value()
        self._prompt_id = prompt_id or settings.PROMPT_ID
        self._environment_id = deployment_environment_id or settings.DEPLOYMENT_ENVIRONMENT_ID
        self._deployed: DeployedPrompt | None = None
        self._system_message: str | None = None


    @property
    def prompt_id(self) -> str:
        return self._prompt_id


    @property
    def is_cached(self) -> bool:
        return self._deployed is not None


    def clear(self) -> None:
        self._deployed = None
        self._system_message = None

    # ── Fetch ──────────────────────────────────────────────────────────

    async def fetch(self, trace: Trace | None = None) -> DeployedPrompt:
        """
        GET the latest deployment, cache it, and record a
        ``fetch_deployed_payload`` span on *trace*.

        Raises
        ------
        ConfigurationError
            Network failure, non-success status, or an unparseable body.
        """
        params = {"promptId": self._prompt_id, "deploymentEnvironmentId": self._environment_id, "deploymentId": "latest"}
        headers = {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}

        with record_span(trace, "fetch_deployed_payload", prompt_id=self._prompt_id) as span:
            span.content = FunctionContent(input={"operation": "fetch_deployed_prompt", "url": self._url, "method": "GET", **params})
            http_status = 0
            t_start = time.perf_counter()
            try:
                response = await self._get(params, headers)
                http_status = response.status_code
                response.raise_for_status()
                deployed = DeployedPrompt.model_validate(response.json())
            except (httpx.HTTPError, ValueError) as exc:
                span.content.output = {"httpStatus": http_status, "cached": False, "error": str(exc)}
                logger.error("Failed to fetch deployed prompt (status=%d): %s", http_status, exc)
                raise ConfigurationError(f"Unable to fetch prompt templates: {exc}") from exc

            self._deployed = deployed
            span.deployment_id = deployed.id
            span.content.output = {
                "httpStatus": http_status,
                "projectId": deployed.project_id,
                "promptId": deployed.prompt_id,
                "deploymentId": deployed.id,
                "providerName": deployed.prompt.config.provider_name,
                "model": deployed.prompt.config.model,
                "messageCount": len(deployed.prompt.messages),
                "variableCount": len(deployed.prompt.variables),
                "toolCount": len(deployed.prompt.tools),
                "cached": True,
            }

        logger.info("Deployment %s fetched (%s/%s) in %.1fms.", deployed.id, deployed.prompt.config.provider_name, deployed.prompt.config.model, (time.perf_counter() - t_start) * 1000)
        return deployed


    async def _get(self, params: dict[str, str], headers: dict[str, str]) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(self._url, params=params, headers=headers)
        async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as client:
            return await client.get(self._url, params=params, headers=headers)

    # ── Cached accessors ───────────────────────────────────────────────

    async def get_deployed_prompt(self, trace: Trace | None = None) -> DeployedPrompt:
        """Cached payload; fetches (and records a span) only on first access."""
        if self._deployed is None:
            return await self.fetch(trace)
        return self._deployed


    async def get_system_message(self, trace: Trace | None = None) -> str:
        if self._system_message is None:
            deployed = await self.get_deployed_prompt(trace)
            self._system_message = extract_message(deployed, "system")
        return self._system_message


    async def get_template(self, role: str, trace: Trace | None = None) -> str:
        if role == "system":
            return await self.get_system_message(trace)
        return extract_message(await self.get_deployed_prompt(trace), role)


    async def get_variables(self, trace: Trace | None = None) -> list[str]:
        return extract_variables(await self.get_deployed_prompt(trace))


    async def get_user_query(self, values: Mapping[str, Any], trace: Trace | None = None) -> str:
        """The deployed user template with *values* injected."""
        return inject_variables(await self.get_template("user", trace), values)


    async def get_deployment_info(self, trace: Trace | None = None) -> DeploymentInfo:
        d = await self.get_deployed_prompt(trace)
        return DeploymentInfo(
            provider_name=d.prompt.config.provider_name,
            model=d.prompt.config.model,
            settings=d.prompt.config.settings,
            tools=d.prompt.tools,
            prompt_id=d.prompt_id,
            deployment_environment_id=d.deployment_environment_id,
            project_id=d.project_id,
            deployment_id=d.id,
        )


    def __repr__(self) -> str:
        return f"DeploymentCache(prompt_id='{self._prompt_id}', cached={self.is_cached})"
