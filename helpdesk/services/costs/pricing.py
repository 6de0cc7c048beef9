from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
import logging


logger = logging.getLogger(__name__)

# Costs are stored with seven decimal places.
COST_QUANTUM = Decimal("0.0000001")


@dataclass(frozen=True)
class ModelRates:
    # Per-token USD rates for one model family.
    input: Decimal
    cached_input: Decimal
    output: Decimal


MODEL_RATES: dict[str, ModelRates] = {
    "gpt-4o": ModelRates(
        input=Decimal("0.0000025"),
        cached_input=Decimal("0.00000125"),
        output=Decimal("0.000001"),
    ),
    "gpt-4o-mini": ModelRates(
        input=Decimal("0.00000015"),
        cached_input=Decimal("0.000000075"),
        output=Decimal("0.0000006"),
    ),
    "o4-mini": ModelRates(
        input=Decimal("0.0000011"),
        cached_input=Decimal("0.000000275"),
        output=Decimal("0.0000044"),
    ),
    "text-embedding-3-small": ModelRates(
        input=Decimal("0.00000002"),
        cached_input=Decimal("0.00000002"),
        output=Decimal("0"),
    ),
    "accounts/fireworks/models/deepseek-r1": ModelRates(
        input=Decimal("0.000003"),
        cached_input=Decimal("0.000003"),
        output=Decimal("0.000008"),
    ),
}


def rates_for_model(model: str) -> ModelRates | None:
    # Dated snapshots ("o4-mini-2025-04-16") resolve to the longest matching family.
    if model in MODEL_RATES:
        return MODEL_RATES[model]
    matches = [name for name in MODEL_RATES if model.startswith(f"{name}-")]
    if not matches:
        return None
    return MODEL_RATES[max(matches, key=len)]


def calculate_cost(*, model: str, prompt_tokens: int, completion_tokens: int, cached_tokens: int = 0) -> Decimal:
    """Return the USD cost of one call, quantized to seven decimals.

    cached x cached rate + (prompt - cached) x input rate + completion x output rate.
    Unknown models cost zero so usage is still recorded.
    """
    rates = rates_for_model(model)
    if rates is None:
        logger.warning("model_pricing_missing model=%s", model)
        return Decimal("0").quantize(COST_QUANTUM)
    cached = max(0, min(cached_tokens, prompt_tokens))
    cost = (
        Decimal(cached) * rates.cached_input
        + Decimal(prompt_tokens - cached) * rates.input
        + Decimal(completion_tokens) * rates.output
    )
    return cost.quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)
