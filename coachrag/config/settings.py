"""
CoachRAG - Centralized Configuration
=====================================
Uses ``pydantic-settings`` (``BaseSettings``) to load *all* configuration
from environment variables and the project-level ``.env`` file.

Security
--------
- ``DEPLOYMENT_API_KEY`` is typed as ``SecretStr`` and has **no default
  value**.  It is the bearer credential for both the prompt deployment
  service and the trace ingestion endpoint.  If it is missing at startup,
  Pydantic raises a ``ValidationError`` and nothing else runs.
- Provider keys (``GOOGLE_API_KEY``, ``OPENAI_API_KEY``) are optional here
  because only the provider named by the deployment is needed.  They are
  checked when the provider client is built.

Chunking
--------
``CHUNK_SIZE`` and ``CHUNKER_VERSION`` are stamped into every vector's
metadata at ingestion time.  Retrieval re-derives chunk text with the
stamped values, so changing ``CHUNK_SIZE`` never silently misaligns
vectors that were ingested earlier.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings.

    Every field is loaded from environment variables (or ``.env``).
    Fields *without* a default are **required**.

    Attributes
    ----------
    DEPLOYMENT_API_KEY : SecretStr
        Bearer credential for the deployment and trace endpoints.  **Required.**
    PROMPT_ID, DEPLOYMENT_ENVIRONMENT_ID, PROJECT_ID : str
        Identify which deployed prompt to fetch and which project the
        submitted traces belong to.
    VECTOR_DIMENSION : int
        Fixed width of the vector index.  Every stored and queried vector
        is projected to this width.
    CHUNK_SIZE, CHUNK_OVERLAP : int
        Character bounds used by the sentence chunker at ingestion and by
        chunk re-derivation at retrieval.
    """

    # ── Resolved Absolute Paths ────────────────────────────────────────
    BASE_DIR: Path = Path(__file__).resolve().parent.parent
    DATA_DIR: Path = BASE_DIR / "data" / "raw"
    DATA_PROCESSED_DIR: Path = BASE_DIR / "data" / "processed"
    LANCEDB_PATH: Path = BASE_DIR / "data" / "lancedb"

    # ── Environment Mode ───────────────────────────────────────────────
    ENV: Literal["dev", "prod"] = "dev"
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] | None = None

    # ── Credentials ────────────────────────────────────────────────────
    DEPLOYMENT_API_KEY: SecretStr
    GOOGLE_API_KEY: SecretStr | None = None
    OPENAI_API_KEY: SecretStr | None = None

    # ── Deployed Prompt Identity ───────────────────────────────────────
    PROMPT_ID: str = ""
    DEPLOYMENT_ENVIRONMENT_ID: str = ""
    PROJECT_ID: str = ""

    # ── Remote Endpoints ───────────────────────────────────────────────
    DEPLOYMENTS_URL: str = "https://api.adaline.ai/v2/deployments"
    TRACE_LOGS_URL: str = "https://api.adaline.ai/v2/logs/trace"
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # ── Embeddings & Vector Store ──────────────────────────────────────
    EMBEDDING_PROVIDER: str = "google"
    EMBEDDING_MODEL: str = "gemini-embedding-001"
    VECTOR_DIMENSION: int = 1024
    LANCEDB_TABLE_NAME: str = "coach_docs"
    TOP_K: int = 5

    # ── Ingestion Parameters ───────────────────────────────────────────
    CHUNK_SIZE: int = 900
    CHUNK_OVERLAP: int = 150
    CHUNKER_VERSION: str = "sentence-v1"
    EMBED_BATCH_SIZE: int = 100
    UPSERT_BATCH_SIZE: int = 50

    # ── Trace Defaults ─────────────────────────────────────────────────
    APP_NAME: str = "The Running Coach App (RAG)"
    TRACE_NAME: str = "The Running Coach App (RAG)"

    # ── Validators ─────────────────────────────────────────────────────

    @field_validator("VECTOR_DIMENSION", "TOP_K", "EMBED_BATCH_SIZE", "UPSERT_BATCH_SIZE", "CHUNK_SIZE")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"value must be ≥ 1, got {v}")
        return v

    @model_validator(mode="after")
    def _overlap_below_chunk_size(self) -> "Settings":
        if not 0 <= self.CHUNK_OVERLAP < self.CHUNK_SIZE:
            raise ValueError(f"CHUNK_OVERLAP must be in [0, CHUNK_SIZE), got {self.CHUNK_OVERLAP} with CHUNK_SIZE={self.CHUNK_SIZE}")
        return self

    # ── Pydantic Settings Configuration ────────────────────────────────
    model_config = SettingsConfigDict(env_file=Path(__file__).resolve().parent.parent / ".env", env_file_encoding="utf-8", extra="ignore")


# ── Singleton Instance ─────────────────────────────────────────────────
# Import this throughout the project:
#     from coachrag.config.settings import settings
settings = Settings()
