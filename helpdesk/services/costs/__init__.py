from __future__ import annotations

# Re-export usage metering and pricing for centralized imports.

from helpdesk.services.costs.metering import TokenUsage, count_tokens, is_within_token_limit, record_ai_usage
from helpdesk.services.costs.pricing import COST_QUANTUM, ModelRates, calculate_cost, rates_for_model

__all__ = [
    "TokenUsage",
    "count_tokens",
    "is_within_token_limit",
    "record_ai_usage",
    "COST_QUANTUM",
    "ModelRates",
    "calculate_cost",
    "rates_for_model",
]
