"""
CoachRAG - Provider Construction
=================================
Builds LangChain embedding and chat-model clients from a provider name,
so the deployment payload (not the code) decides which provider runs.

Supported providers: ``google`` (Gemini via ``langchain-google-genai``)
and ``openai`` (via ``langchain-openai``).  Credentials come from
``settings``; a missing key raises ``ConfigurationError`` here rather
than failing later inside the provider SDK.
"""

from __future__ import annotations

import re
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel

from coachrag.config.settings import Settings, settings
from coachrag.src.core.errors import ConfigurationError
from coachrag.src.utils.logger import get_logger

logger = get_logger(__name__)

# Models that only accept the default temperature
_FIXED_TEMPERATURE_RE = re.compile(r"gpt-5")
_MAX_TOKEN_KEYS = ("max_output_tokens", "maxTokens", "max_tokens")


# ══════════════════════════════════════════════════════════════════════
#  PROTOCOLS
# ══════════════════════════════════════════════════════════════════════

@runtime_checkable
class Embedder(Protocol):
    """Structural type for any LangChain-compatible embedding model."""

    def embed_documents(self, texts: list[str]) -> list[list[float]]: ...

    async def aembed_query(self, text: str) -> list[float]: ...


# ══════════════════════════════════════════════════════════════════════
#  REQUEST SETTINGS
# ══════════════════════════════════════════════════════════════════════

class RequestSettings(BaseModel):
    temperature: float | None = None
    max_tokens: int | None = None


def resolve_request_settings(model: str, deployment_settings: dict[str, Any]) -> RequestSettings:
    """
    Map deployment settings onto the generation request.

    ``gpt-5`` family models are always sent ``temperature=1``.
    """
    temperature = deployment_settings.get("temperature")
    if _FIXED_TEMPERATURE_RE.search(model):
        temperature = 1
    max_tokens = next((deployment_settings[k] for k in _MAX_TOKEN_KEYS if deployment_settings.get(k)), None)
    return RequestSettings(temperature=temperature, max_tokens=max_tokens)


# ══════════════════════════════════════════════════════════════════════
#  FACTORIES
# ══════════════════════════════════════════════════════════════════════

def _require_key(provider: str, app_settings: Settings) -> str:
    secret = {"google": app_settings.GOOGLE_API_KEY, "openai": app_settings.OPENAI_API_KEY}.get(provider)
    if secret is None or not secret.get_secret_value():
        raise ConfigurationError(f"No API key configured for provider '{provider}'.")
    return secret.get_secret_value()


def build_chat_model(provider_name: str, model: str, request: RequestSettings, app_settings: Settings = settings) -> Any:
    """Return a LangChain chat model for *provider_name*."""
    provider = provider_name.lower()
    if provider in ("google", "gemini", "vertex"):
        from langchain_google_genai import ChatGoogleGenerativeAI

        api_key = _require_key("google", app_settings)
        llm = ChatGoogleGenerativeAI(model=model, temperature=request.temperature, max_output_tokens=request.max_tokens, google_api_key=api_key)
    elif provider in ("openai", "azure-openai"):
        from langchain_openai import ChatOpenAI

        api_key = _require_key("openai", app_settings)
        llm = ChatOpenAI(model=model, temperature=request.temperature, max_tokens=request.max_tokens, api_key=api_key)
    else:
        raise ConfigurationError(f"Unsupported generation provider '{provider_name}'.")

    logger.info("Chat model initialised: %s/%s (temperature=%s)", provider, model, request.temperature)
    return llm


def build_embedder(provider_name: str | None = None, model: str | None = None, app_settings: Settings = settings) -> Embedder:
    """Return a LangChain embeddings client; defaults come from ``settings``."""
    provider = (provider_name or app_settings.EMBEDDING_PROVIDER).lower()
    model = model or app_settings.EMBEDDING_MODEL
    if provider in ("google", "gemini"):
        from langchain_google_genai import GoogleGenerativeAIEmbeddings

        embedder = GoogleGenerativeAIEmbeddings(model=model, google_api_key=_require_key("google", app_settings))
    elif provider == "openai":
        from langchain_openai import OpenAIEmbeddings

        embedder = OpenAIEmbeddings(model=model, api_key=_require_key("openai", app_settings))
    else:
        raise ConfigurationError(f"Unsupported embedding provider '{provider_name}'.")

    logger.info("Embedder initialised: %s/%s", provider, model)
    return embedder
