"""Ledger of vision-model usage with estimated USD cost."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..models import CostEntry, CostSummary

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Pricing:
    input_per_1k: float
    output_per_1k: float
    per_image: float


PRICING: Dict[str, Pricing] = {
    "anthropic": Pricing(input_per_1k=0.003, output_per_1k=0.015, per_image=0.0048),
    "openai": Pricing(input_per_1k=0.005, output_per_1k=0.015, per_image=0.00765),
    "volcengine": Pricing(input_per_1k=0.0008, output_per_1k=0.002, per_image=0.001),
    "doubao": Pricing(input_per_1k=0.0008, output_per_1k=0.002, per_image=0.001),
    # Host agent sessions are already paid for.
    "agent": Pricing(input_per_1k=0.0, output_per_1k=0.0, per_image=0.0),
}

DEFAULT_PRICING = Pricing(input_per_1k=0.003, output_per_1k=0.015, per_image=0.005)


class CostTracker:
    """Append-only record of provider calls. Summaries are always recomputed."""

    def __init__(self) -> None:
        self._entries: List[CostEntry] = []
        self._custom_pricing: Dict[str, Pricing] = {}

    def set_pricing(self, provider: str, pricing: Pricing) -> None:
        self._custom_pricing[provider] = pricing

    def pricing_for(self, provider: str) -> Pricing:
        return self._custom_pricing.get(provider) or PRICING.get(provider) or DEFAULT_PRICING

    def estimate(self, provider: str, input_tokens: int, output_tokens: int, images: int = 1) -> float:
        pricing = self.pricing_for(provider)
        return (
            (input_tokens / 1000.0) * pricing.input_per_1k
            + (output_tokens / 1000.0) * pricing.output_per_1k
            + images * pricing.per_image
        )

    def track(
        self,
        provider: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        operation: str,
        images: int = 1,
    ) -> CostEntry:
        entry = CostEntry(
            provider=provider,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            images=images,
            cost=self.estimate(provider, input_tokens, output_tokens, images),
            operation=operation,
        )
        self._entries.append(entry)
        logger.debug(
            "Tracked %s call provider=%s model=%s tokens=%s/%s cost=%.5f",
            operation,
            provider,
            model,
            input_tokens,
            output_tokens,
            entry.cost,
        )
        return entry

    @property
    def total_cost(self) -> float:
        return sum(entry.cost for entry in self._entries)

    @property
    def call_count(self) -> int:
        return len(self._entries)

    def summary(self) -> CostSummary:
        by_provider: Dict[str, float] = {}
        by_operation: Dict[str, float] = {}
        for entry in self._entries:
            by_provider[entry.provider] = by_provider.get(entry.provider, 0.0) + entry.cost
            by_operation[entry.operation] = by_operation.get(entry.operation, 0.0) + entry.cost
        return CostSummary(
            total_cost=self.total_cost,
            total_calls=len(self._entries),
            by_provider=by_provider,
            by_operation=by_operation,
            entries=list(self._entries),
        )

    def recent_entries(self, count: int = 10) -> List[CostEntry]:
        if count <= 0:
            return []
        return list(self._entries[-count:])

    def reset(self) -> None:
        self._entries = []

    def to_json(self, indent: Optional[int] = 2) -> str:
        return self.summary().model_dump_json(indent=indent)

    def format_summary(self) -> str:
        summary = self.summary()
        lines = [
            "=== VLM Cost Summary ===",
            f"Total Cost: ${summary.total_cost:.4f}",
            f"Total Calls: {summary.total_calls}",
        ]
        if summary.by_provider:
            lines.append("By Provider:")
            lines.extend(f"  {name}: ${cost:.4f}" for name, cost in summary.by_provider.items())
        if summary.by_operation:
            lines.append("By Operation:")
            lines.extend(f"  {name}: ${cost:.4f}" for name, cost in summary.by_operation.items())
        return "\n".join(lines)

    def log_summary(self, level: int = logging.INFO) -> None:
        logger.log(level, "%s", self.format_summary())
