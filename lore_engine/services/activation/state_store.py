"""
Activation State Store
======================

Per-conversation timing state for knowledge entries.

Each ``(conversation, entry)`` pair moves through
Idle -> Triggered -> Sticky -> Cooldown -> Idle:

- Sticky: forced active every turn, ``sticky_remaining`` counts down
- Cooldown: blocked every turn, ``cooldown_remaining`` counts down
- Idle: a fresh match triggers, subject to delay and the probability draw

State is created lazily the first time an entry is tracked for a
conversation and removed when the conversation ends. Access for one
conversation is serialized through that conversation's ``asyncio.Lock``.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, Optional

from sqlalchemy.orm import Session

from lore_engine.models.knowledge import ActivationStateRecord
from lore_engine.repositories.activation_state_repository import ActivationStateRepository
from lore_engine.services.activation.schema import ExclusionReason, TimingSettings

logger = logging.getLogger(__name__)

# Reasons recorded for active turns
ACTIVE_STICKY = "sticky"
ACTIVE_TRIGGERED = "triggered"


@dataclass
class EntryState:
    """Mutable timing state for one entry in one conversation."""
    sticky_remaining: int = 0
    cooldown_remaining: int = 0
    last_triggered_turn: Optional[int] = None
    last_evaluated_turn: Optional[int] = None
    last_active: bool = False
    last_reason: Optional[str] = None


@dataclass
class TimingOutcome:
    """Result of advancing an entry's state by one turn."""
    active: bool
    reason: Optional[ExclusionReason] = None  # Set when a match was blocked
    forced_by_sticky: bool = False


def _record(state: EntryState, active: bool, reason: Optional[str]) -> TimingOutcome:
    state.last_active = active
    state.last_reason = reason
    if active:
        return TimingOutcome(active=True, forced_by_sticky=reason == ACTIVE_STICKY)
    return TimingOutcome(active=False, reason=ExclusionReason(reason) if reason else None)


def _try_trigger(
    state: EntryState,
    matched: bool,
    turn: int,
    timing: TimingSettings,
    constant: bool,
    probability_gate: Optional[Callable[[], bool]]
) -> TimingOutcome:
    """Idle path: a match triggers unless delay or the probability draw blocks it."""
    if not matched:
        return _record(state, False, None)

    if timing.delay > 0 and turn < timing.delay:
        return _record(state, False, ExclusionReason.DELAY_NOT_MET.value)

    if not constant and probability_gate is not None and not probability_gate():
        return _record(state, False, ExclusionReason.PROBABILITY_FAILED.value)

    state.last_triggered_turn = turn
    if not constant:
        if timing.sticky > 0:
            state.sticky_remaining = timing.sticky
        elif timing.cooldown > 0:
            state.cooldown_remaining = timing.cooldown
    return _record(state, True, ACTIVE_TRIGGERED)


def advance_state(
    state: EntryState,
    matched: bool,
    turn: int,
    timing: TimingSettings,
    constant: bool = False,
    probability_gate: Optional[Callable[[], bool]] = None
) -> TimingOutcome:
    """
    Advance one entry's timing state for a turn.

    Counters move at most once per turn. Evaluating the same turn again
    (another bot responding in the same turn) returns the recorded outcome,
    except that an entry that simply did not match may still trigger.

    Args:
        state: State to mutate
        matched: Whether the keyword/vector rule matched this turn
        turn: Zero-based turn index of the conversation
        timing: Entry's sticky/cooldown/delay rule
        constant: Constant-mode entries are gated by delay only
        probability_gate: Draw for the Idle -> Triggered transition (None = always passes)
    """
    if state.last_evaluated_turn == turn:
        if state.last_active:
            return TimingOutcome(active=True, forced_by_sticky=state.last_reason == ACTIVE_STICKY)
        if state.last_reason is not None:
            return TimingOutcome(active=False, reason=ExclusionReason(state.last_reason))
        return _try_trigger(state, matched or constant, turn, timing, constant, probability_gate)

    state.last_evaluated_turn = turn

    if constant:
        return _try_trigger(state, True, turn, timing, constant, probability_gate)

    if state.sticky_remaining > 0:
        state.sticky_remaining -= 1
        if state.sticky_remaining == 0 and timing.cooldown > 0:
            state.cooldown_remaining = timing.cooldown
        return _record(state, True, ACTIVE_STICKY)

    if state.cooldown_remaining > 0:
        state.cooldown_remaining -= 1
        return _record(state, False, ExclusionReason.COOLDOWN_ACTIVE.value)

    return _try_trigger(state, matched, turn, timing, constant, probability_gate)


def needs_tracking(state: Optional[EntryState], matched: bool, constant: bool) -> bool:
    """State rows are only created once an entry matches (or is constant)."""
    return state is not None or matched or constant


class ActivationStateStore(ABC):
    """Base class for activation state persistence with per-conversation locks."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def conversation_lock(self, conversation_id: str) -> asyncio.Lock:
        """Lock serializing state access for one conversation."""
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    @abstractmethod
    def load(self, conversation_id: str, entry_ids: Iterable[str]) -> Dict[str, EntryState]:
        """Load existing state for the given entries. Untracked entries are absent."""

    @abstractmethod
    def save(self, conversation_id: str, states: Dict[str, EntryState]) -> None:
        """Persist state for the given entries."""

    @abstractmethod
    def _delete_conversation(self, conversation_id: str) -> int:
        """Remove stored state for a conversation, returning the row count."""

    def end_conversation(self, conversation_id: str) -> int:
        """
        Drop all state owned by a conversation.

        Returns:
            Number of entry states removed
        """
        removed = self._delete_conversation(conversation_id)
        self._locks.pop(conversation_id, None)
        logger.info(f"Cleared {removed} activation states for conversation {conversation_id}")
        return removed


class InMemoryActivationStateStore(ActivationStateStore):
    """Process-local state store. Suitable for tests and single-process bots."""

    def __init__(self):
        super().__init__()
        self._states: Dict[str, Dict[str, EntryState]] = {}

    def load(self, conversation_id: str, entry_ids: Iterable[str]) -> Dict[str, EntryState]:
        stored = self._states.get(conversation_id, {})
        # Copies, so a failed turn never leaves half-applied state behind
        return {eid: replace(stored[eid]) for eid in entry_ids if eid in stored}

    def save(self, conversation_id: str, states: Dict[str, EntryState]) -> None:
        bucket = self._states.setdefault(conversation_id, {})
        for entry_id, state in states.items():
            bucket[entry_id] = replace(state)

    def _delete_conversation(self, conversation_id: str) -> int:
        return len(self._states.pop(conversation_id, {}))

    def get(self, conversation_id: str, entry_id: str) -> Optional[EntryState]:
        state = self._states.get(conversation_id, {}).get(entry_id)
        return replace(state) if state else None


class SqlActivationStateStore(ActivationStateStore):
    """State store backed by the ``activation_states`` table."""

    def __init__(self, session_factory: Callable[[], Session]):
        """
        Args:
            session_factory: Callable returning a new Session (e.g. SessionLocal)
        """
        super().__init__()
        self.session_factory = session_factory

    def load(self, conversation_id: str, entry_ids: Iterable[str]) -> Dict[str, EntryState]:
        wanted = set(entry_ids)
        db = self.session_factory()
        try:
            records = ActivationStateRepository(db).get_for_conversation(conversation_id)
            return {
                entry_id: EntryState(
                    sticky_remaining=r.sticky_remaining or 0,
                    cooldown_remaining=r.cooldown_remaining or 0,
                    last_triggered_turn=r.last_triggered_turn,
                    last_evaluated_turn=r.last_evaluated_turn,
                    last_active=bool(r.last_active),
                    last_reason=r.last_reason,
                )
                for entry_id, r in records.items() if entry_id in wanted
            }
        finally:
            db.close()

    def save(self, conversation_id: str, states: Dict[str, EntryState]) -> None:
        if not states:
            return

        db = self.session_factory()
        try:
            repo = ActivationStateRepository(db)
            existing = repo.get_for_conversation(conversation_id)
            for entry_id, state in states.items():
                record = existing.get(entry_id) or ActivationStateRecord(
                    conversation_id=conversation_id,
                    entry_id=entry_id,
                )
                record.sticky_remaining = state.sticky_remaining
                record.cooldown_remaining = state.cooldown_remaining
                record.last_triggered_turn = state.last_triggered_turn
                record.last_evaluated_turn = state.last_evaluated_turn
                record.last_active = state.last_active
                record.last_reason = state.last_reason
                repo.save(record)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _delete_conversation(self, conversation_id: str) -> int:
        db = self.session_factory()
        try:
            return ActivationStateRepository(db).delete_for_conversation(conversation_id)
        finally:
            db.close()
