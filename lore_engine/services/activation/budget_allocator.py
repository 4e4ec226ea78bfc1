"""
Budget Allocator
================

Selects which candidates fit the per-turn knowledge budget.

Available budget is ``min(cap, max_context * percentage / 100) - reserved``,
clamped at zero. Candidates are ranked by:

1. ``ignore_budget`` entries first (always included)
2. ascending ``positioning.order``
3. match confidence: constant, then vector by score, then keyword by score

Budget-constrained candidates are then packed greedily. ``min_activations``
is a floor on the number of budget-constrained inclusions that is honoured
only as far as the available budget allows.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from lore_engine.config.models import BudgetConfig
from lore_engine.services.activation.schema import ExclusionReason, KnowledgeEntry, MatchReason
from lore_engine.services.token_counter import estimate_tokens, truncate_to_tokens

logger = logging.getLogger(__name__)

_CONFIDENCE_RANK = {
    MatchReason.CONSTANT: 0,
    MatchReason.VECTOR: 1,
    MatchReason.KEYWORD: 2,
}


@dataclass
class Candidate:
    """An entry that survived matching, filtering and timing this turn."""
    entry: KnowledgeEntry
    match_reason: MatchReason
    score: float = 0.0
    similarity: Optional[float] = None
    matched_keywords: List[str] = field(default_factory=list)
    forced_by_sticky: bool = False

    # Filled in by the allocator
    content: Optional[str] = None
    token_cost: int = 0
    truncated: bool = False

    @property
    def entry_id(self) -> str:
        return self.entry.id

    @property
    def ignores_budget(self) -> bool:
        return self.entry.budget.ignore_budget


@dataclass
class BudgetAllocation:
    """Outcome of one allocation pass."""
    included: List[Candidate] = field(default_factory=list)
    excluded: List[Tuple[Candidate, ExclusionReason]] = field(default_factory=list)
    available: int = 0
    tokens_used: int = 0  # All included entries, ignore_budget ones too
    budgeted_tokens: int = 0  # Included entries charged against `available`

    @property
    def remaining(self) -> int:
        return max(0, self.available - self.budgeted_tokens)


def calculate_available_budget(config: BudgetConfig) -> int:
    """Tokens available to budget-constrained knowledge this turn."""
    by_percentage = config.max_context_tokens * config.budget_percentage / 100
    ceiling = min(config.budget_cap_tokens, by_percentage)
    return max(0, math.floor(ceiling - config.reserved_for_conversation))


def priority_key(candidate: Candidate):
    """Sort key implementing the allocation priority order."""
    return (
        0 if candidate.ignores_budget else 1,
        candidate.entry.positioning.order,
        _CONFIDENCE_RANK.get(candidate.match_reason, 3),
        -candidate.score,
        candidate.entry_id,
    )


def prepare_content(candidate: Candidate) -> bool:
    """
    Resolve the text to inject and its token cost, applying the entry's
    ``max_tokens`` cap.

    Returns:
        False when nothing usable is left to inject
    """
    text = (candidate.entry.content or "").strip()
    max_tokens = candidate.entry.budget.max_tokens

    truncated = False
    if max_tokens is not None and estimate_tokens(text) > max_tokens:
        text, truncated = truncate_to_tokens(text, max_tokens)
        text = text.strip()

    candidate.content = text
    candidate.token_cost = estimate_tokens(text)
    candidate.truncated = truncated

    if truncated and text:
        logger.warning(
            f"Entry {candidate.entry_id} truncated to {candidate.token_cost} tokens (max_tokens={max_tokens})"
        )
    return bool(text)


def _cheapest_fitting(candidates: List[Candidate], limit: int, available: int) -> List[Candidate]:
    """Largest set (up to `limit` items) of cheapest candidates that fits."""
    chosen = []
    spent = 0
    for candidate in sorted(candidates, key=lambda c: (c.token_cost, priority_key(c))):
        if len(chosen) >= limit or spent + candidate.token_cost > available:
            break
        chosen.append(candidate)
        spent += candidate.token_cost
    return chosen


def allocate(candidates: List[Candidate], config: BudgetConfig) -> BudgetAllocation:
    """
    Choose the candidates to inject this turn.

    Never raises; an empty budget yields only ``ignore_budget`` entries.
    """
    available = calculate_available_budget(config)
    allocation = BudgetAllocation(available=available)

    usable = []
    for candidate in candidates:
        if prepare_content(candidate):
            usable.append(candidate)
        else:
            logger.warning(f"Entry {candidate.entry_id} dropped: no usable content after truncation")
            allocation.excluded.append((candidate, ExclusionReason.CONTENT_UNUSABLE))

    ranked = sorted(usable, key=priority_key)
    unbounded = [c for c in ranked if c.ignores_budget]
    bounded = [c for c in ranked if not c.ignores_budget]

    chosen_ids = set()
    spent = 0

    # Greedy fill, skipping items that do not fit
    for candidate in bounded:
        if spent + candidate.token_cost <= available:
            chosen_ids.add(id(candidate))
            spent += candidate.token_cost

    if len(chosen_ids) < config.min_activations:
        floor_set = _cheapest_fitting(bounded, config.min_activations, available)
        if len(floor_set) > len(chosen_ids):
            logger.debug(
                f"min_activations={config.min_activations}: greedy fit {len(chosen_ids)}, "
                f"cheapest fit {len(floor_set)}"
            )
            chosen_ids = {id(c) for c in floor_set}
            spent = sum(c.token_cost for c in floor_set)
            for candidate in bounded:
                if id(candidate) not in chosen_ids and spent + candidate.token_cost <= available:
                    chosen_ids.add(id(candidate))
                    spent += candidate.token_cost

    allocation.included.extend(unbounded)
    for candidate in bounded:
        if id(candidate) in chosen_ids:
            allocation.included.append(candidate)
        else:
            allocation.excluded.append((candidate, ExclusionReason.BUDGET_EXCEEDED))

    allocation.budgeted_tokens = spent
    allocation.tokens_used = spent + sum(c.token_cost for c in unbounded)

    logger.debug(
        f"Budget: {len(allocation.included)} included, {len(allocation.excluded)} excluded, "
        f"{allocation.budgeted_tokens}/{available} tokens"
    )
    return allocation
