"""
Model selection for turns and LLM-backed tools.

Selection is a pure function of (feature, estimated_tokens, has_session) and
the catalog, so identical inputs always route to the same model.
"""

from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict
from enum import Enum
import math


class ModelTier(str, Enum):
    FAST = "fast"
    STANDARD = "standard"
    PRO = "pro"


class ModelPricing(BaseModel):
    """USD per one million tokens"""
    model_config = ConfigDict(frozen=True)

    input: float
    output: float


class ModelCatalog(BaseModel):
    model_config = ConfigDict(frozen=True)

    fast: str = "gemini-2.5-flash-lite"
    standard: str = "gemini-2.5-flash"
    pro: str = "gemini-2.5-pro"
    pricing: Dict[str, ModelPricing] = {
        "gemini-2.5-flash-lite": ModelPricing(input=0.075, output=0.30),
        "gemini-2.5-flash": ModelPricing(input=0.15, output=0.60),
        "gemini-2.5-pro": ModelPricing(input=1.25, output=5.00),
    }

    def model_for(self, tier: ModelTier) -> str:
        return getattr(self, tier.value)

    def price_of(self, model: str) -> ModelPricing:
        # unknown models are priced like the most expensive tier
        return self.pricing.get(model) or self.pricing.get(self.pro) or ModelPricing(input=1.25, output=5.00)


class ModelChoice(BaseModel):
    model_config = ConfigDict(frozen=True)

    model: str
    tier: ModelTier
    estimated_cost: float
    reason: str


DEFAULT_CATALOG = ModelCatalog()

LONG_CONTEXT_TOKENS = 100_000
OUTPUT_TOKEN_RATIO = 0.8

HIGH_STAKES_FEATURES = frozenset({
    "research", "analysis", "document_analysis", "image_analysis", "lead_research",
})
LATENCY_FEATURES = frozenset({
    "translation", "classification", "voice", "search",
})


def estimate_tokens(text: Optional[str]) -> int:
    """Rough token count, about four characters per token"""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def estimate_cost(model: str, estimated_tokens: int, catalog: ModelCatalog = DEFAULT_CATALOG) -> float:
    """Cost of the input plus an expected output of 0.8x the input"""
    price = catalog.price_of(model)
    output_tokens = estimated_tokens * OUTPUT_TOKEN_RATIO
    return (estimated_tokens / 1_000_000) * price.input + (output_tokens / 1_000_000) * price.output


def cost_of_usage(model: str, input_tokens: int, output_tokens: int, catalog: ModelCatalog = DEFAULT_CATALOG) -> float:
    price = catalog.price_of(model)
    return (input_tokens / 1_000_000) * price.input + (output_tokens / 1_000_000) * price.output


def select_model(
    feature: str,
    estimated_tokens: int,
    has_session: bool,
    catalog: ModelCatalog = DEFAULT_CATALOG,
) -> ModelChoice:
    """Pick a model tier for a feature and context size"""

    feature = (feature or "chat").lower()

    if estimated_tokens >= LONG_CONTEXT_TOKENS:
        tier, reason = ModelTier.PRO, "long context"
    elif feature in HIGH_STAKES_FEATURES:
        tier, reason = ModelTier.PRO, f"high-stakes feature '{feature}'"
    elif feature in LATENCY_FEATURES:
        tier, reason = ModelTier.FAST, f"latency-sensitive feature '{feature}'"
    elif not has_session:
        tier, reason = ModelTier.FAST, "anonymous request"
    else:
        tier, reason = ModelTier.STANDARD, "default chat model"

    model = catalog.model_for(tier)
    return ModelChoice(
        model=model,
        tier=tier,
        estimated_cost=estimate_cost(model, estimated_tokens, catalog),
        reason=reason,
    )
