"""Usage extraction from the agent's final result event."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from taskloop.orchestrator.models import TokenUsage


def extract_usage(event: Mapping[str, Any]) -> TokenUsage | None:
    """Build token usage from a ``result`` event; ``None`` when it carries no usage block."""

    usage = event.get("usage")
    if not isinstance(usage, Mapping):
        return None

    input_tokens = _count(usage.get("input_tokens"))
    output_tokens = _count(usage.get("output_tokens"))
    cache_creation = _count(usage.get("cache_creation_input_tokens"))
    cache_read = _count(usage.get("cache_read_input_tokens"))
    return TokenUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cache_creation_tokens=cache_creation,
        cache_read_tokens=cache_read,
        total_tokens=input_tokens + output_tokens + cache_creation + cache_read,
        cost_usd=_cost(event.get("total_cost_usd")),
    )


def _count(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(0, value)
    if isinstance(value, float):
        return max(0, int(value))
    if isinstance(value, str) and value.strip().replace(",", "").isdigit():
        return int(value.strip().replace(",", ""))
    return 0


def _cost(value: object) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return 0.0
    return 0.0
