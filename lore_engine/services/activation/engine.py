"""
Activation Engine
=================

Per-turn knowledge activation pipeline:

1. Filter stage (bot/persona allow and deny lists, disabled entries dropped)
2. Keyword matching per entry over its own scan window
3. Vector matching (one embedding, one tenant-scoped query), bounded by a
   timeout; failure or timeout degrades the turn to keyword-only
4. Timing state (sticky, cooldown, delay, probability) under the
   conversation's lock
5. Optional inclusion-group scoring
6. Budget allocation and positioning

State changes are committed before budget allocation: an entry that
triggers but does not fit the budget still starts its sticky/cooldown run.
"""

import asyncio
import logging
import random
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from lore_engine.config.models import ActivationConfig, BudgetConfig
from lore_engine.services.activation.budget_allocator import Candidate, allocate
from lore_engine.services.activation.filter_stage import filter_entries
from lore_engine.services.activation.keyword_matcher import KeywordMatchResult, match_entry
from lore_engine.services.activation.positioner import PositionedFragments, position_entries
from lore_engine.services.activation.schema import (
    ActivationMode,
    ExclusionReason,
    KnowledgeEntry,
    MatchReason,
)
from lore_engine.services.activation.state_store import (
    ActivationStateStore,
    EntryState,
    TimingOutcome,
    advance_state,
    needs_tracking,
)
from lore_engine.services.activation.vector_matcher import VectorMatch, VectorMatcher
from lore_engine.services.profiles import ChatMessage
from lore_engine.utils.activation_log import ActivationLog

logger = logging.getLogger(__name__)

CONSTANT_SCORE = 100.0


@dataclass
class ActivationContext:
    """Everything the engine needs to know about the current turn."""
    conversation_id: str
    turn: int
    messages: List[ChatMessage]
    bot_id: Optional[str] = None
    persona_id: Optional[str] = None
    tenant_id: Optional[str] = None
    budget: Optional[BudgetConfig] = None  # Overrides the configured default


@dataclass
class ExcludedEntry:
    """An entry left out of this turn, with the reason."""
    entry: KnowledgeEntry
    reason: ExclusionReason
    match_reason: Optional[MatchReason] = None
    score: float = 0.0

    @property
    def entry_id(self) -> str:
        return self.entry.id


@dataclass
class ActivationResult:
    """Outcome of one turn's evaluation."""
    activated: List[Candidate] = field(default_factory=list)
    excluded: List[ExcludedEntry] = field(default_factory=list)
    positioned: PositionedFragments = field(default_factory=PositionedFragments)
    tokens_used: int = 0
    available_budget: int = 0
    remaining_budget: int = 0
    vector_degraded: bool = False

    @property
    def activated_count(self) -> int:
        return len(self.activated)

    @property
    def activated_ids(self) -> List[str]:
        return [c.entry_id for c in self.activated]

    @property
    def exclusion_counts(self) -> Dict[str, int]:
        return dict(Counter(e.reason.value for e in self.excluded))

    def reason_for(self, entry_id: str) -> Optional[ExclusionReason]:
        for excluded in self.excluded:
            if excluded.entry_id == entry_id:
                return excluded.reason
        return None


def _forced_reason(entry: KnowledgeEntry) -> MatchReason:
    """Match reason for an entry held active by sticky without a fresh match."""
    if entry.mode == ActivationMode.CONSTANT:
        return MatchReason.CONSTANT
    if entry.mode == ActivationMode.VECTOR:
        return MatchReason.VECTOR
    return MatchReason.KEYWORD


def build_candidate(
    entry: KnowledgeEntry,
    keyword: Optional[KeywordMatchResult],
    vector: Optional[VectorMatch],
    outcome: TimingOutcome,
    hybrid_vector_boost: float
) -> Candidate:
    """Combine keyword and vector evidence into one scored candidate."""
    keyword_hit = keyword is not None and keyword.matched

    if entry.mode == ActivationMode.CONSTANT:
        reason, score = MatchReason.CONSTANT, CONSTANT_SCORE
    elif keyword_hit and vector is not None:
        reason = MatchReason.VECTOR
        score = keyword.score + hybrid_vector_boost * vector.activation_score
    elif vector is not None:
        reason, score = MatchReason.VECTOR, vector.activation_score
    elif keyword_hit:
        reason, score = MatchReason.KEYWORD, float(keyword.score)
    else:
        reason, score = _forced_reason(entry), 0.0

    return Candidate(
        entry=entry,
        match_reason=reason,
        score=score,
        similarity=vector.similarity if vector is not None else None,
        matched_keywords=keyword.matched_keywords if keyword_hit else [],
        forced_by_sticky=outcome.forced_by_sticky,
    )


def apply_group_scoring(candidates: List[Candidate]) -> Tuple[List[Candidate], List[Candidate]]:
    """
    Keep only the best ``score * group_weight`` member of each scored group.

    Ties go to the lower ``order``, then the lower id.

    Returns:
        (kept, lost)
    """
    groups: Dict[str, List[Candidate]] = {}
    for candidate in candidates:
        group = candidate.entry.group
        if group.use_group_scoring and group.group_name:
            groups.setdefault(group.group_name, []).append(candidate)

    losers = set()
    for name, members in groups.items():
        if len(members) < 2:
            continue
        winner = min(
            members,
            key=lambda c: (-c.score * c.entry.group.group_weight, c.entry.positioning.order, c.entry_id)
        )
        for member in members:
            if member is not winner:
                losers.add(id(member))
        logger.debug(f"Group '{name}': {winner.entry_id} wins over {len(members) - 1} entries")

    kept = [c for c in candidates if id(c) not in losers]
    lost = [c for c in candidates if id(c) in losers]
    return kept, lost


class ActivationEngine:
    """Evaluates which knowledge entries join the prompt for a turn."""

    def __init__(
        self,
        state_store: ActivationStateStore,
        vector_matcher: Optional[VectorMatcher] = None,
        config: Optional[ActivationConfig] = None,
        activation_log: Optional[ActivationLog] = None,
        rng: Optional[random.Random] = None
    ):
        """
        Args:
            state_store: Per-conversation timing state
            vector_matcher: Embedding plus index lookup (None = keyword-only)
            config: Activation settings (timeout, hybrid boost, default budget)
            activation_log: Optional JSONL decision log
            rng: Random source for probability gates
        """
        self.state_store = state_store
        self.vector_matcher = vector_matcher
        self.config = config or ActivationConfig()
        self.activation_log = activation_log
        self.rng = rng or random.Random()

    async def evaluate(self, entries: Sequence[KnowledgeEntry], context: ActivationContext) -> ActivationResult:
        """
        Evaluate all of a bot's entries for one turn.

        Args:
            entries: Entries from the bot's collections
            context: Conversation, turn, message history and identities

        Returns:
            ActivationResult with included entries already positioned
        """
        result = ActivationResult()

        eligible, filtered_out = filter_entries(entries, context.bot_id, context.persona_id)
        result.excluded.extend(ExcludedEntry(e, ExclusionReason.FILTER_EXCLUDED) for e in filtered_out)

        keyword_results = {
            e.id: match_entry(e, context.messages)
            for e in eligible if e.activation.uses_keywords
        }
        vector_matches, result.vector_degraded = await self._find_vector_matches(eligible, context)

        candidates = await self._apply_timing(eligible, keyword_results, vector_matches, context, result)

        if self.config.enable_group_scoring:
            candidates, lost = apply_group_scoring(candidates)
            result.excluded.extend(
                ExcludedEntry(c.entry, ExclusionReason.GROUP_SCORING_LOST, c.match_reason, c.score)
                for c in lost
            )

        allocation = allocate(candidates, context.budget or self.config.default_budget)
        result.activated = allocation.included
        result.excluded.extend(
            ExcludedEntry(c.entry, reason, c.match_reason, c.score) for c, reason in allocation.excluded
        )
        result.tokens_used = allocation.tokens_used
        result.available_budget = allocation.available
        result.remaining_budget = allocation.remaining
        result.positioned = position_entries(allocation.included)

        logger.info(
            f"Turn {context.turn} of {context.conversation_id}: {result.activated_count} entries activated, "
            f"{len(result.excluded)} excluded, {result.tokens_used} tokens"
            + (" (vector degraded)" if result.vector_degraded else "")
        )
        self._log_turn(context, result)
        return result

    def end_conversation(self, conversation_id: str) -> int:
        """Drop timing state owned by a finished conversation."""
        return self.state_store.end_conversation(conversation_id)

    async def _find_vector_matches(
        self,
        entries: Sequence[KnowledgeEntry],
        context: ActivationContext
    ) -> Tuple[Dict[str, VectorMatch], bool]:
        """Run the vector matcher off the event loop. Returns (matches, degraded)."""
        vector_entries = [e for e in entries if e.activation.uses_vectors]
        if not vector_entries:
            return {}, False

        if self.vector_matcher is None:
            logger.warning(f"{len(vector_entries)} vector entries but no vector matcher configured")
            return {}, True

        loop = asyncio.get_running_loop()
        try:
            matches = await asyncio.wait_for(
                loop.run_in_executor(
                    None,
                    self.vector_matcher.find_matches,
                    context.messages,
                    vector_entries,
                    context.tenant_id,
                ),
                timeout=self.config.vector_timeout_seconds
            )
            return matches, False
        except asyncio.TimeoutError:
            logger.warning(
                f"Vector matching exceeded {self.config.vector_timeout_seconds}s, continuing keyword-only"
            )
            return {}, True
        except Exception as e:
            logger.warning(f"Vector matching failed, continuing keyword-only: {e}")
            return {}, True

    async def _apply_timing(
        self,
        eligible: Sequence[KnowledgeEntry],
        keyword_results: Dict[str, KeywordMatchResult],
        vector_matches: Dict[str, VectorMatch],
        context: ActivationContext,
        result: ActivationResult
    ) -> List[Candidate]:
        """
        Advance timing state for every eligible entry under the conversation lock.

        Store reads and writes run in the default executor.
        """
        candidates = []
        loop = asyncio.get_running_loop()

        async with self.state_store.conversation_lock(context.conversation_id):
            states = await loop.run_in_executor(
                None, self.state_store.load, context.conversation_id, [e.id for e in eligible]
            )
            touched: Dict[str, EntryState] = {}

            for entry in eligible:
                keyword = keyword_results.get(entry.id)
                vector = vector_matches.get(entry.id)
                constant = entry.mode == ActivationMode.CONSTANT
                matched = (keyword is not None and keyword.matched) or vector is not None

                state = states.get(entry.id)
                if not needs_tracking(state, matched, constant):
                    continue
                if state is None:
                    state = EntryState()

                outcome = advance_state(
                    state,
                    matched,
                    context.turn,
                    entry.timing,
                    constant=constant,
                    probability_gate=self._probability_gate(entry),
                )
                touched[entry.id] = state

                if outcome.active:
                    candidates.append(build_candidate(
                        entry, keyword, vector, outcome, self.config.hybrid_vector_boost
                    ))
                elif outcome.reason is not None:
                    logger.debug(f"Entry {entry.id} blocked: {outcome.reason.value}")
                    result.excluded.append(ExcludedEntry(entry, outcome.reason))

            await loop.run_in_executor(None, self.state_store.save, context.conversation_id, touched)

        return candidates

    def _probability_gate(self, entry: KnowledgeEntry):
        if not entry.activation.use_probability:
            return None
        probability = entry.activation.probability
        return lambda: self.rng.random() * 100 < probability

    def _log_turn(self, context: ActivationContext, result: ActivationResult) -> None:
        if self.activation_log is None:
            return
        self.activation_log.record_turn(context.conversation_id, {
            "turn": context.turn,
            "bot_id": context.bot_id,
            "persona_id": context.persona_id,
            "included": [
                {
                    "id": c.entry_id,
                    "name": c.entry.name,
                    "match_reason": c.match_reason.value,
                    "score": round(c.score, 3),
                    "tokens": c.token_cost,
                    "position": c.entry.positioning.position.value,
                    "truncated": c.truncated,
                    "sticky": c.forced_by_sticky,
                }
                for c in result.activated
            ],
            "excluded": [{"id": e.entry_id, "reason": e.reason.value} for e in result.excluded],
            "available_budget": result.available_budget,
            "tokens_used": result.tokens_used,
            "vector_degraded": result.vector_degraded,
        })


def format_activation_debug(result: ActivationResult) -> str:
    """Render an activation result as a readable block for logs and tooling."""
    lines = [
        f"=== Knowledge activation: {result.activated_count} active, "
        f"{result.tokens_used}/{result.available_budget} tokens ===",
    ]
    if result.vector_degraded:
        lines.append("(vector matching unavailable, keyword-only)")

    for candidate in result.activated:
        entry = candidate.entry
        label = entry.name or entry.id
        detail = f"{candidate.match_reason.value}, score {candidate.score:.1f}"
        if candidate.forced_by_sticky:
            detail += ", sticky"
        lines.append(
            f"+ {label} [{detail}] -> {entry.positioning.position.value} "
            f"(order {entry.positioning.order}, {candidate.token_cost} tokens"
            + (", truncated)" if candidate.truncated else ")")
        )

    for excluded in result.excluded:
        label = excluded.entry.name or excluded.entry_id
        lines.append(f"- {label}: {excluded.reason.value}")

    return "\n".join(lines)
