"""
Tests for World Book import and export.

Tests cover:
- Rejection of unusable books with user-facing messages
- Native field mapping and import defaults
- Skipping of disabled, empty and malformed entries
- Character filter resolution
- Export -> import preserving rule groups
"""

import json

import pytest
from conftest import build_entry

from lore_engine.exceptions import InvalidWorldBookError
from lore_engine.services.activation.schema import ActivationMode, KeywordLogic, MessageRole, Position
from lore_engine.services.interchange import (
    export_world_book,
    import_world_book,
    parse_world_book,
    summarize_world_book,
)

SAMPLE_BOOK = {
    "name": "Harbor Town",
    "entries": {
        "0": {
            "uid": 0,
            "key": ["harbor", "docks"],
            "comment": "The Harbor",
            "content": "The harbor freezes in winter.",
            "order": 20,
            "position": 0,
            "displayIndex": 1,
        },
        "1": {
            "uid": 1,
            "key": "lighthouse, beacon",
            "keysecondary": ["night"],
            "selective": True,
            "selectiveLogic": 3,
            "content": "The beacon is never lit on holy days.",
            "position": 4,
            "depth": 3,
            "role": 1,
            "sticky": 2,
            "cooldown": 1,
            "displayIndex": 0,
        },
        "2": {"uid": 2, "key": ["old"], "content": "Forgotten.", "disable": True, "displayIndex": 2},
        "3": {"uid": 3, "key": ["blank"], "content": "   ", "displayIndex": 3},
        "4": {"uid": 4, "key": ["bad"], "content": 42},
        "5": {"uid": 5, "content": "Always true.", "constant": True, "displayIndex": 4},
    },
}


class TestParseWorldBook:

    @pytest.mark.parametrize("raw, message", [
        ("{not json", "could not parse JSON"),
        ("[1, 2]", "expected a JSON object"),
        ('{"name": "x"}', 'missing "entries" object'),
        ('{"entries": {"0": {"content": 5}}}', "no valid entries found"),
    ])
    def test_rejects_unusable_books(self, raw, message):
        with pytest.raises(InvalidWorldBookError) as exc_info:
            parse_world_book(raw)
        assert message in str(exc_info.value)
        assert str(exc_info.value).startswith("Invalid World Book")

    def test_non_string_content_skipped(self):
        book = parse_world_book(json.dumps(SAMPLE_BOOK))
        assert book.skipped == 1
        assert book.name == "Harbor Town"
        assert [e.uid for e in book.entries] == ["0", "1", "2", "3", "5"]

    def test_summary(self):
        summary = summarize_world_book(parse_world_book(SAMPLE_BOOK))

        assert summary["total_entries"] == 5
        assert summary["enabled_entries"] == 4
        assert summary["disabled_entries"] == 1
        assert summary["constant_entries"] == 1
        assert summary["by_mode"] == {"keyword": 3, "disabled": 1, "constant": 1}
        assert [e["uid"] for e in summary["entries"]] == ["1", "0", "2", "3", "5"]
        assert summary["entries"][1]["name"] == "The Harbor"
        assert summary["entries"][0]["name"] == "Entry 1"


class TestImportWorldBook:

    def imported(self, **kwargs):
        result = import_world_book(SAMPLE_BOOK, collection_id="col-1", tenant_id="user-1", **kwargs)
        return result, {e.id: e for e in result.entries}

    def test_skips_disabled_and_empty(self):
        result, entries = self.imported()
        assert sorted(entries) == ["wb_0", "wb_1", "wb_5"]
        assert result.skipped_disabled == 1
        assert result.skipped_empty == 1

    def test_native_fields(self):
        _, entries = self.imported()
        beacon = entries["wb_1"]

        assert beacon.activation.primary_keys == ["lighthouse", "beacon"]
        assert beacon.activation.secondary_keys == ["night"]
        assert beacon.activation.keywords_logic == KeywordLogic.NOT_ANY
        assert beacon.positioning.position == Position.AT_DEPTH
        assert beacon.positioning.depth == 3
        assert beacon.positioning.role == MessageRole.USER
        assert beacon.timing.sticky == 2
        assert beacon.timing.cooldown == 1
        assert beacon.collection_id == "col-1"
        assert beacon.tenant_id == "user-1"

    def test_import_defaults(self):
        _, entries = self.imported()
        harbor = entries["wb_0"]

        assert harbor.name == "The Harbor"
        assert harbor.positioning.position == Position.BEFORE_CHARACTER
        assert harbor.positioning.order == 20
        assert harbor.activation.probability == 100
        assert harbor.activation.scan_depth == 2
        assert harbor.activation.vector_similarity_threshold == 0.4
        assert harbor.budget.max_tokens == 1000
        assert entries["wb_5"].mode == ActivationMode.CONSTANT

    def test_secondary_keys_ignored_when_not_selective(self):
        result = import_world_book({"entries": {"0": {"key": ["a"], "keysecondary": ["b"], "content": "x"}}})
        assert result.entries[0].activation.secondary_keys == []

    def test_character_filter_by_name(self):
        book = {"entries": {"0": {
            "key": ["moon"], "content": "x",
            "characterFilter": {"isExclude": True, "names": ["Nova", "Ghost"]},
        }}}

        result = import_world_book(book, bot_ids_by_name={"Nova": "bot-7"})
        assert result.entries[0].filtering.excluded_bot_ids == ["bot-7"]
        assert any("Ghost" in w for w in result.warnings)

        verbatim = import_world_book(book)
        assert verbatim.entries[0].filtering.excluded_bot_ids == ["Nova", "Ghost"]

    def test_group_weight_scaled(self):
        book = {"entries": {"0": {"key": ["moon"], "content": "x", "group": "sky", "groupWeight": 250}}}
        entry = import_world_book(book).entries[0]
        assert entry.group.group_name == "sky"
        assert entry.group.group_weight == 2.5
        assert entry.group.use_group_scoring


class TestExportWorldBook:

    def test_shape(self):
        book = export_world_book([build_entry("moon", content="The moon is glass.")], name="Sky")

        assert book["name"] == "Sky"
        exported = book["entries"]["0"]
        assert exported["key"] == ["moon"]
        assert exported["content"] == "The moon is glass."
        assert exported["position"] == 1
        assert exported["disable"] is False

    def test_round_trip_preserves_rule_groups(self):
        originals = [
            build_entry(
                "tides",
                content="Tides follow the moon.",
                mode="hybrid",
                activation={"secondary_keys": ["sea"], "keywords_logic": "AND_ALL", "scan_depth": 6},
                positioning={"position": "system_top", "order": 5},
                timing={"sticky": 3, "delay": 1},
                budget={"max_tokens": 120, "ignore_budget": True},
                filtering={"allowed_persona_ids": ["p-1"]},
            ),
            build_entry("moon", content="The moon is glass.", positioning={"position": "at_depth", "depth": 2}),
        ]

        text = json.dumps(export_world_book(originals))
        restored = import_world_book(text, id_prefix="").entries

        assert [e.content for e in restored] == [e.content for e in originals]
        for original, copy in zip(originals, restored):
            for group in ("activation", "positioning", "timing", "filtering", "budget", "group"):
                assert getattr(copy, group).model_dump() == getattr(original, group).model_dump(), group
