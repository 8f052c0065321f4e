"""
Token usage tracking and cost estimation.

Keeps a per-process ledger of LLM calls:
- cost per call from the provider's pricing (cache hits billed separately)
- running totals and averages for observability
- optional limits per call, per ledger, and in USD

Totals are kept as running sums; only the most recent entries are retained.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Optional

import structlog

from api.llm.providers import TokenPricing, get_provider_pricing
from api.schemas.agent_state import TokenUsage
from libs.common.settings import get_settings

logger = structlog.get_logger(__name__)

MAX_RECENT_ENTRIES = 1000


@dataclass
class TokenUsageEntry:
    timestamp: float
    model: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cached_tokens: int
    cost: float
    label: Optional[str] = None


@dataclass
class TokenLimits:
    max_tokens_per_call: Optional[int] = None
    max_total_tokens: Optional[int] = None
    max_cost_usd: Optional[float] = None


@dataclass
class TokenUsageSummary:
    total_calls: int = 0
    total_prompt_tokens: int = 0
    total_completion_tokens: int = 0
    total_tokens: int = 0
    total_cached_tokens: int = 0
    total_cost: float = 0.0
    average_prompt_tokens: float = 0.0
    average_completion_tokens: float = 0.0
    average_cost: float = 0.0


LimitCallback = Callable[[str, float, float], None]


def _recent_entries() -> Deque[TokenUsageEntry]:
    return deque(maxlen=MAX_RECENT_ENTRIES)


@dataclass
class TokenTracker:
    """
    Records token usage and estimated spend.

    Usage:
        tracker = TokenTracker.for_provider("deepseek")
        tracker.record(usage, model="deepseek-chat", label="chat")
        summary = tracker.summary()
    """

    pricing: TokenPricing = field(default_factory=lambda: get_provider_pricing("deepseek"))
    limits: TokenLimits = field(default_factory=TokenLimits)
    on_limit_exceeded: Optional[LimitCallback] = None
    entries: Deque[TokenUsageEntry] = field(default_factory=_recent_entries)
    _totals: TokenUsageSummary = field(default_factory=TokenUsageSummary, init=False, repr=False)

    @classmethod
    def for_provider(cls, provider: str, limits: Optional[TokenLimits] = None) -> "TokenTracker":
        return cls(pricing=get_provider_pricing(provider), limits=limits or TokenLimits())

    def estimate_cost(self, usage: TokenUsage) -> float:
        uncached = max(usage.prompt_tokens - usage.cached_tokens, 0)
        return (
            uncached / 1_000_000 * self.pricing.input_per_million
            + usage.cached_tokens / 1_000_000 * self.pricing.input_cache_hit_per_million
            + usage.completion_tokens / 1_000_000 * self.pricing.output_per_million
        )

    def record(self, usage: TokenUsage, model: str, label: Optional[str] = None) -> float:
        """Store one call's usage and return its cost in USD."""
        cost = self.estimate_cost(usage)
        entry = TokenUsageEntry(
            timestamp=time.time(),
            model=model,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens or usage.prompt_tokens + usage.completion_tokens,
            cached_tokens=usage.cached_tokens,
            cost=cost,
            label=label,
        )
        self.entries.append(entry)

        totals = self._totals
        totals.total_calls += 1
        totals.total_prompt_tokens += entry.prompt_tokens
        totals.total_completion_tokens += entry.completion_tokens
        totals.total_tokens += entry.total_tokens
        totals.total_cached_tokens += entry.cached_tokens
        totals.total_cost += cost

        self._check_limits(entry)
        return cost

    def _check_limits(self, entry: TokenUsageEntry) -> None:
        checks = [
            ("tokens_per_call", entry.total_tokens, self.limits.max_tokens_per_call),
            ("total_tokens", self._totals.total_tokens, self.limits.max_total_tokens),
            ("cost_usd", self._totals.total_cost, self.limits.max_cost_usd),
        ]
        for limit_type, current, limit in checks:
            if limit is not None and current > limit:
                logger.warning("Token limit exceeded", limit_type=limit_type, current=current, limit=limit)
                if self.on_limit_exceeded is not None:
                    self.on_limit_exceeded(limit_type, current, limit)

    def is_over_limit(self) -> bool:
        if self.limits.max_total_tokens is not None and self._totals.total_tokens > self.limits.max_total_tokens:
            return True
        if self.limits.max_cost_usd is not None and self._totals.total_cost > self.limits.max_cost_usd:
            return True
        return False

    def summary(self) -> TokenUsageSummary:
        totals = self._totals
        calls = totals.total_calls
        if not calls:
            return TokenUsageSummary()
        return TokenUsageSummary(
            total_calls=calls,
            total_prompt_tokens=totals.total_prompt_tokens,
            total_completion_tokens=totals.total_completion_tokens,
            total_tokens=totals.total_tokens,
            total_cached_tokens=totals.total_cached_tokens,
            total_cost=totals.total_cost,
            average_prompt_tokens=totals.total_prompt_tokens / calls,
            average_completion_tokens=totals.total_completion_tokens / calls,
            average_cost=totals.total_cost / calls,
        )

    def reset(self) -> None:
        self.entries.clear()
        self._totals = TokenUsageSummary()


_process_tracker: Optional[TokenTracker] = None


def get_token_tracker() -> TokenTracker:
    """Ledger shared by every agent of this process."""
    global _process_tracker
    if _process_tracker is None:
        _process_tracker = TokenTracker.for_provider(get_settings().ai_provider)
    return _process_tracker
