"""
Tests for activation timing state.

Tests cover:
- Sticky, cooldown and delay transitions
- Probability draw only on Idle -> Triggered
- Same-turn idempotency (several bots in one turn)
- In-memory and SQL state stores
"""

import pytest

from lore_engine.services.activation.schema import ExclusionReason, TimingSettings
from lore_engine.services.activation.state_store import (
    EntryState,
    InMemoryActivationStateStore,
    SqlActivationStateStore,
    advance_state,
    needs_tracking,
)


def run_turns(timing: TimingSettings, matches, start_turn: int = 0, gate=None):
    """Advance one state through consecutive turns, returning the outcomes."""
    state = EntryState()
    outcomes = []
    for offset, matched in enumerate(matches):
        outcomes.append(advance_state(state, matched, start_turn + offset, timing, probability_gate=gate))
    return state, outcomes


class TestAdvanceState:
    """The Idle -> Triggered -> Sticky -> Cooldown -> Idle cycle."""

    def test_plain_match_is_active_only_when_matched(self):
        _, outcomes = run_turns(TimingSettings(), [True, False, True])
        assert [o.active for o in outcomes] == [True, False, True]
        assert outcomes[1].reason is None

    def test_sticky_keeps_entry_active(self):
        state, outcomes = run_turns(TimingSettings(sticky=2), [True, False, False, False])
        assert [o.active for o in outcomes] == [True, True, True, False]
        assert not outcomes[0].forced_by_sticky
        assert outcomes[1].forced_by_sticky and outcomes[2].forced_by_sticky
        assert state.sticky_remaining == 0
        assert state.last_triggered_turn == 0

    def test_cooldown_blocks_fresh_matches(self):
        _, outcomes = run_turns(TimingSettings(cooldown=3), [True, True, True, True, True])
        assert [o.active for o in outcomes] == [True, False, False, False, True]
        assert all(o.reason == ExclusionReason.COOLDOWN_ACTIVE for o in outcomes[1:4])

    def test_sticky_then_cooldown(self):
        _, outcomes = run_turns(TimingSettings(sticky=1, cooldown=2), [True, False, True, True, True])
        assert [o.active for o in outcomes] == [True, True, False, False, True]
        assert outcomes[2].reason == ExclusionReason.COOLDOWN_ACTIVE

    def test_delay(self):
        state = EntryState()
        timing = TimingSettings(delay=3)
        blocked = advance_state(state, True, 2, timing)
        assert not blocked.active
        assert blocked.reason == ExclusionReason.DELAY_NOT_MET
        assert advance_state(state, True, 3, timing).active

    def test_probability_failure(self):
        state = EntryState()
        outcome = advance_state(state, True, 0, TimingSettings(), probability_gate=lambda: False)
        assert not outcome.active
        assert outcome.reason == ExclusionReason.PROBABILITY_FAILED

    def test_probability_drawn_once_per_trigger(self):
        draws = []

        def gate():
            draws.append(1)
            return True

        _, outcomes = run_turns(TimingSettings(sticky=2), [True, True, True], gate=gate)
        assert all(o.active for o in outcomes)
        assert len(draws) == 1

    def test_constant_ignores_probability_but_honours_delay(self):
        state = EntryState()
        timing = TimingSettings(delay=1)
        assert advance_state(state, False, 0, timing, constant=True).reason == ExclusionReason.DELAY_NOT_MET
        assert advance_state(state, False, 1, timing, constant=True, probability_gate=lambda: False).active

    def test_same_turn_does_not_decrement_twice(self):
        state = EntryState()
        timing = TimingSettings(sticky=3)
        advance_state(state, True, 0, timing)
        advance_state(state, False, 1, timing)
        advance_state(state, False, 1, timing)
        assert state.sticky_remaining == 2

    def test_same_turn_repeats_blocked_reason(self):
        state = EntryState()
        timing = TimingSettings(cooldown=2)
        advance_state(state, True, 0, timing)
        first = advance_state(state, True, 1, timing)
        second = advance_state(state, True, 1, timing)
        assert first.reason == second.reason == ExclusionReason.COOLDOWN_ACTIVE
        assert state.cooldown_remaining == 1

    def test_second_bot_can_trigger_in_same_turn(self):
        state = EntryState()
        timing = TimingSettings()
        advance_state(state, True, 0, timing)
        assert not advance_state(state, False, 4, timing).active
        assert advance_state(state, True, 4, timing).active

    def test_needs_tracking(self):
        assert not needs_tracking(None, matched=False, constant=False)
        assert needs_tracking(None, matched=True, constant=False)
        assert needs_tracking(None, matched=False, constant=True)
        assert needs_tracking(EntryState(), matched=False, constant=False)


class TestInMemoryStore:
    """Process-local store."""

    def test_load_returns_copies(self):
        store = InMemoryActivationStateStore()
        store.save("c1", {"e1": EntryState(sticky_remaining=2)})

        loaded = store.load("c1", ["e1", "e2"])
        assert set(loaded) == {"e1"}
        loaded["e1"].sticky_remaining = 0
        assert store.get("c1", "e1").sticky_remaining == 2

    def test_end_conversation(self):
        store = InMemoryActivationStateStore()
        store.save("c1", {"e1": EntryState(), "e2": EntryState()})
        store.conversation_lock("c1")

        assert store.end_conversation("c1") == 2
        assert store.load("c1", ["e1"]) == {}
        assert "c1" not in store._locks

    def test_lock_is_per_conversation(self):
        store = InMemoryActivationStateStore()
        assert store.conversation_lock("c1") is store.conversation_lock("c1")
        assert store.conversation_lock("c1") is not store.conversation_lock("c2")


class TestSqlStore:
    """Store backed by the activation_states table."""

    def test_save_and_load(self, session_factory):
        store = SqlActivationStateStore(session_factory)
        store.save("c1", {
            "e1": EntryState(sticky_remaining=1, last_triggered_turn=3, last_evaluated_turn=3,
                             last_active=True, last_reason="triggered"),
        })

        loaded = store.load("c1", ["e1"])["e1"]
        assert loaded.sticky_remaining == 1
        assert loaded.last_triggered_turn == 3
        assert loaded.last_active is True
        assert loaded.last_reason == "triggered"

    def test_save_updates_existing_row(self, session_factory):
        store = SqlActivationStateStore(session_factory)
        store.save("c1", {"e1": EntryState(cooldown_remaining=3)})
        store.save("c1", {"e1": EntryState(cooldown_remaining=2)})
        assert store.load("c1", ["e1"])["e1"].cooldown_remaining == 2

    def test_conversations_are_isolated(self, session_factory):
        store = SqlActivationStateStore(session_factory)
        store.save("c1", {"e1": EntryState(sticky_remaining=5)})
        assert store.load("c2", ["e1"]) == {}

        assert store.end_conversation("c1") == 1
        assert store.load("c1", ["e1"]) == {}

    @pytest.mark.asyncio
    async def test_advance_through_sql_store(self, session_factory):
        store = SqlActivationStateStore(session_factory)
        timing = TimingSettings(sticky=1)

        for turn, matched in enumerate([True, False, False]):
            async with store.conversation_lock("c1"):
                state = store.load("c1", ["e1"]).get("e1") or EntryState()
                outcome = advance_state(state, matched, turn, timing)
                store.save("c1", {"e1": state})
            assert outcome.active == (turn < 2)
