"""Model catalog with per-1K-token prices and cost calculation."""

import logging

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)


class ModelPricing(BaseModel):
    """Provider and USD price per 1K tokens for one model."""

    model_config = ConfigDict(frozen=True)

    provider: str
    input_per_1k: float
    output_per_1k: float
    max_output: int = 4096


class CostBreakdown(BaseModel):
    """Cost of one generation in USD."""

    input_cost: float
    output_cost: float
    total_cost: float


DEFAULT_PRICING = ModelPricing(provider="unknown", input_per_1k=0.0020, output_per_1k=0.0040)

MODEL_PRICING: dict[str, ModelPricing] = {
    # OpenAI
    "gpt-4o": ModelPricing(provider="openai", input_per_1k=0.0025, output_per_1k=0.0100, max_output=16384),
    "gpt-4o-mini": ModelPricing(provider="openai", input_per_1k=0.00015, output_per_1k=0.00060, max_output=16384),
    "gpt-4.1": ModelPricing(provider="openai", input_per_1k=0.0020, output_per_1k=0.0080, max_output=32768),
    "gpt-4.1-mini": ModelPricing(provider="openai", input_per_1k=0.00040, output_per_1k=0.00160, max_output=32768),
    # OpenRouter (OpenAI-compatible API)
    "openai/gpt-4o": ModelPricing(provider="openrouter", input_per_1k=0.0025, output_per_1k=0.0100, max_output=16384),
    "openai/gpt-4o-mini": ModelPricing(provider="openrouter", input_per_1k=0.00015, output_per_1k=0.00060, max_output=16384),
    "meta-llama/llama-3.1-70b-instruct": ModelPricing(provider="openrouter", input_per_1k=0.00064, output_per_1k=0.00064, max_output=131072),
    "qwen/qwen-2.5-72b-instruct": ModelPricing(provider="openrouter", input_per_1k=0.00036, output_per_1k=0.00036, max_output=131072),
    # Anthropic
    "claude-3-5-sonnet-20241022": ModelPricing(provider="anthropic", input_per_1k=0.003, output_per_1k=0.015, max_output=8192),
    "claude-3-5-haiku-20241022": ModelPricing(provider="anthropic", input_per_1k=0.0008, output_per_1k=0.004, max_output=8192),
    "claude-3-opus-20240229": ModelPricing(provider="anthropic", input_per_1k=0.015, output_per_1k=0.075),
    # Google
    "gemini-1.5-pro": ModelPricing(provider="google", input_per_1k=0.00125, output_per_1k=0.005, max_output=8192),
    "gemini-1.5-flash": ModelPricing(provider="google", input_per_1k=0.000075, output_per_1k=0.0003, max_output=8192),
    # Offline model for tests and local development, free
    "test-model": ModelPricing(provider="test", input_per_1k=0.0, output_per_1k=0.0),
}


def get_pricing(model: str) -> ModelPricing:
    """Get pricing for a model name, falling back to a default."""
    return MODEL_PRICING.get(model, DEFAULT_PRICING)


def is_known_model(model: str) -> bool:
    return model in MODEL_PRICING


def get_provider_for_model(model: str) -> str:
    """Provider id serving ``model``, "unknown" when not in the catalog."""
    return get_pricing(model).provider


def calculate_model_cost(
    provider: str, model: str, input_tokens: int, output_tokens: int
) -> CostBreakdown:
    """Compute the USD cost of a generation.

    Args:
        provider: Provider id reported by the caller
        model: Model id looked up in the price table
        input_tokens: Prompt tokens
        output_tokens: Completion tokens

    Returns:
        CostBreakdown with input, output and total cost
    """
    if not is_known_model(model):
        logger.warning(f"No pricing for {provider}/{model}, using default rates")
    pricing = get_pricing(model)
    input_cost = round(max(0, input_tokens) / 1000.0 * pricing.input_per_1k, 8)
    output_cost = round(max(0, output_tokens) / 1000.0 * pricing.output_per_1k, 8)
    return CostBreakdown(
        input_cost=input_cost,
        output_cost=output_cost,
        total_cost=round(input_cost + output_cost, 8),
    )
