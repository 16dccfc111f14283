"""
Token Estimation - Pre-flight token estimates for AI operations.

Estimates feed the enforcement gate before a model is called, and stand in
for the recorded amount when a provider doesn't report actual usage.
"""

import math
from dataclasses import dataclass

from app.config import settings
from app.models.api import OperationType


@dataclass(frozen=True)
class ModelConfig:
    """Per-model estimation parameters."""

    name: str
    base_tokens: int
    tokens_per_char: float
    cost_multiplier: float


MODEL_CONFIGS: dict[str, ModelConfig] = {
    "gemini-2.5-flash-lite": ModelConfig(
        name="gemini-2.5-flash-lite",
        base_tokens=50,
        tokens_per_char=0.2,
        cost_multiplier=1.0,
    ),
    "gemini-2.5-flash": ModelConfig(
        name="gemini-2.5-flash",
        base_tokens=100,
        tokens_per_char=0.4,
        cost_multiplier=6.25,
    ),
}

OPERATION_MULTIPLIERS: dict[OperationType, float] = {
    OperationType.CHAT: 1.0,
    OperationType.REFINE: 1.5,
    OperationType.ASSESS: 1.2,
}


def resolve_model(model: str | None) -> ModelConfig:
    """Config for a model name; unknown or missing names fall back to the default model."""
    if model and model in MODEL_CONFIGS:
        return MODEL_CONFIGS[model]
    return MODEL_CONFIGS[settings.default_model]


def estimate_token_usage(
    operation: OperationType | str, text_length: int, model: str | None = None
) -> int:
    """
    Estimate tokens for an operation over text_length characters of input.

    estimate = ceil((base + chars * rate) * operation multiplier)
    """
    if text_length < 0:
        raise ValueError(f"text_length cannot be negative: {text_length}")

    config = resolve_model(model)
    try:
        multiplier = OPERATION_MULTIPLIERS[OperationType(operation)]
    except ValueError:
        multiplier = 1.0

    raw = config.base_tokens + text_length * config.tokens_per_char
    return math.ceil(raw * multiplier)


def calculate_magic_token_cost(tokens: int, model: str | None = None) -> int:
    """User-facing cost of a token amount, weighted by how expensive the model is."""
    return math.ceil(tokens * resolve_model(model).cost_multiplier)
