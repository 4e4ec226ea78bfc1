"""
Tests for the filter stage and the positioner.
"""

from conftest import build_entry

from lore_engine.services.activation.budget_allocator import Candidate
from lore_engine.services.activation.filter_stage import filter_entries, passes_filters
from lore_engine.services.activation.positioner import (
    DepthInsertion,
    format_entry,
    position_entries,
    splice_depth_messages,
)
from lore_engine.services.activation.schema import FilterSettings, MatchReason, MessageRole, Position


class TestFilterStage:

    def test_empty_lists_admit_everyone(self):
        assert passes_filters(FilterSettings(), "bot-1", "persona-1")
        assert passes_filters(FilterSettings(), None, None)

    def test_allow_list(self):
        filtering = FilterSettings(allowed_bot_ids=["bot-1"])
        assert passes_filters(filtering, "bot-1", None)
        assert not passes_filters(filtering, "bot-2", None)

    def test_exclude_beats_allow(self):
        filtering = FilterSettings(allowed_bot_ids=["bot-1"], excluded_bot_ids=["bot-1"])
        assert not passes_filters(filtering, "bot-1", None)

    def test_persona_lists(self):
        filtering = FilterSettings(excluded_persona_ids=["p-2"])
        assert passes_filters(filtering, "bot-1", "p-1")
        assert not passes_filters(filtering, "bot-1", "p-2")

        allow = FilterSettings(allowed_persona_ids=["p-1"])
        assert not passes_filters(allow, "bot-1", None)

    def test_filter_entries_drops_disabled_silently(self):
        entries = [
            build_entry("ok"),
            build_entry("off", mode="disabled"),
            build_entry("other-bot", filtering={"allowed_bot_ids": ["bot-2"]}),
        ]
        eligible, filtered_out = filter_entries(entries, "bot-1")
        assert [e.id for e in eligible] == ["ok"]
        assert [e.id for e in filtered_out] == ["other-bot"]


def included(entry_id: str, position: Position, order: int = 100, **positioning) -> Candidate:
    settings = {"position": position.value, "order": order}
    settings.update(positioning)
    entry = build_entry(entry_id, content=f"{entry_id} text", positioning=settings)
    return Candidate(entry=entry, match_reason=MatchReason.KEYWORD, content=entry.content)


class TestPositioner:

    def test_groups_by_bucket_and_order(self):
        positioned = position_entries([
            included("b", Position.BEFORE_CHARACTER, order=20),
            included("a", Position.BEFORE_CHARACTER, order=10),
            included("z", Position.SYSTEM_BOTTOM),
        ])
        assert positioned.get(Position.BEFORE_CHARACTER) == ["a text", "b text"]
        assert positioned.get(Position.SYSTEM_BOTTOM) == ["z text"]
        assert positioned.get(Position.AFTER_EXAMPLES) == []
        assert positioned.fragment_count == 3

    def test_at_depth_becomes_insertion(self):
        positioned = position_entries([
            included("deep", Position.AT_DEPTH, depth=3, role=MessageRole.USER.value),
        ])
        assert positioned.depth_insertions == [
            DepthInsertion(entry_id="deep", content="deep text", depth=3, role=MessageRole.USER, order=100)
        ]

    def test_format_entry_with_tag(self):
        entry = build_entry("tagged", content="The harbor glows.", tags=["harbor", "night"])
        assert format_entry(entry) == "[harbor]\nThe harbor glows."
        assert format_entry(build_entry("plain", content="Bare.")) == "Bare."

    def test_uses_truncated_content(self):
        entry = build_entry("long", content="full text here")
        candidate = Candidate(entry=entry, match_reason=MatchReason.KEYWORD, content="full")
        assert position_entries([candidate]).get(Position.AFTER_CHARACTER) == ["full"]


class TestSpliceDepthMessages:

    def history(self, n: int):
        return [{"role": "user", "content": f"m{i}"} for i in range(n)]

    def test_depth_counts_from_end(self):
        messages = splice_depth_messages(self.history(5), [
            DepthInsertion("e", "lore", depth=2, role=MessageRole.SYSTEM, order=1)
        ])
        assert [m["content"] for m in messages] == ["m0", "m1", "m2", "lore", "m3", "m4"]
        assert messages[3]["role"] == "system"

    def test_depth_zero_appends(self):
        messages = splice_depth_messages(self.history(2), [
            DepthInsertion("e", "lore", depth=0, role=MessageRole.ASSISTANT, order=1)
        ])
        assert messages[-1] == {"role": "assistant", "content": "lore"}

    def test_depth_beyond_history_clamps_to_start(self):
        messages = splice_depth_messages(self.history(2), [
            DepthInsertion("e", "lore", depth=10, role=MessageRole.SYSTEM, order=1)
        ])
        assert messages[0]["content"] == "lore"

    def test_same_index_keeps_order(self):
        messages = splice_depth_messages(self.history(3), [
            DepthInsertion("b", "second", depth=1, role=MessageRole.SYSTEM, order=20),
            DepthInsertion("a", "first", depth=1, role=MessageRole.SYSTEM, order=10),
        ])
        assert [m["content"] for m in messages] == ["m0", "m1", "first", "second", "m2"]

    def test_input_not_modified(self):
        history = self.history(2)
        splice_depth_messages(history, [DepthInsertion("e", "lore", depth=1, role=MessageRole.SYSTEM, order=1)])
        assert len(history) == 2
