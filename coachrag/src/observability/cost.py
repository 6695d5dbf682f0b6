"""
CoachRAG - Model Pricing & Cost Estimation
===========================================
Static price table (USD per 1M tokens) and the helpers that turn token
counts into span costs.

When a provider does not report usage, token counts are estimated as
``ceil(chars / 4)``.  Unknown models fall back to ``DEFAULT_PRICING``.
"""

from __future__ import annotations

import math

from pydantic import BaseModel

from coachrag.src.utils.logger import get_logger

logger = get_logger(__name__)


class ModelPricing(BaseModel):
    input_per_1m: float
    output_per_1m: float = 0.0


# Last reviewed: 2025-06
MODEL_PRICING: dict[str, ModelPricing] = {
    # Generation
    "gpt-4.1-mini": ModelPricing(input_per_1m=0.30, output_per_1m=1.20),
    "gpt-4.1": ModelPricing(input_per_1m=2.00, output_per_1m=8.00),
    "gpt-4o-mini": ModelPricing(input_per_1m=0.15, output_per_1m=0.60),
    "gpt-4o": ModelPricing(input_per_1m=2.50, output_per_1m=10.00),
    "gpt-5-mini": ModelPricing(input_per_1m=0.25, output_per_1m=2.00),
    "gemini-2.0-flash": ModelPricing(input_per_1m=0.10, output_per_1m=0.40),
    "gemini-2.5-flash": ModelPricing(input_per_1m=0.30, output_per_1m=2.50),
    "gemini-2.5-pro": ModelPricing(input_per_1m=1.25, output_per_1m=10.00),
    # Embeddings
    "text-embedding-3-small": ModelPricing(input_per_1m=0.02),
    "text-embedding-3-large": ModelPricing(input_per_1m=0.13),
    "gemini-embedding-001": ModelPricing(input_per_1m=0.15),
}

# Conservative default for unknown models
DEFAULT_PRICING = ModelPricing(input_per_1m=0.30, output_per_1m=1.20)


def get_pricing(model: str) -> ModelPricing:
    """
    Return pricing for *model*.

    Exact names win; otherwise the longest known name contained in (or
    containing) *model* is used, so ``models/gemini-2.5-flash-001`` and
    deployment aliases still resolve.
    """
    if model in MODEL_PRICING:
        return MODEL_PRICING[model]

    model_lower = model.lower()
    for known in sorted(MODEL_PRICING, key=len, reverse=True):
        if known in model_lower or (model_lower and model_lower in known):
            return MODEL_PRICING[known]

    logger.debug("No pricing for model '%s' — using default.", model)
    return DEFAULT_PRICING


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters, rounded up."""
    return math.ceil(len(text) / 4)


def generation_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    pricing = get_pricing(model)
    return (input_tokens / 1_000_000) * pricing.input_per_1m + (output_tokens / 1_000_000) * pricing.output_per_1m


def embedding_cost(model: str, tokens: int) -> float:
    return (tokens / 1_000_000) * get_pricing(model).input_per_1m
