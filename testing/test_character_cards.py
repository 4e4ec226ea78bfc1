"""
Tests for SillyTavern character cards: format detection, PNG chunks and
bot/lore field mapping.
"""

import json
from io import BytesIO

import pytest
from conftest import build_entry
from PIL import Image, PngImagePlugin

from lore_engine.exceptions import (
    InterchangeError,
    InvalidContainerError,
    MissingCardDataError,
    UnrecognizedFormatError,
)
from lore_engine.services.activation.schema import MessageRole, Position
from lore_engine.services.interchange import (
    CardFormat,
    CharacterCardExporter,
    CharacterCardImporter,
    PNGMetadataHandler,
    bot_to_card,
    parse_card,
    parse_card_json,
)
from lore_engine.services.interchange.field_mapping import fallback_keys, parse_mes_examples, parse_trait_lines
from lore_engine.services.profiles import BotProfile


def plain_png(text_chunks=None) -> bytes:
    info = PngImagePlugin.PngInfo()
    for key, value in (text_chunks or {}).items():
        info.add_text(key, value)
    output = BytesIO()
    Image.new("RGB", (4, 4), (10, 20, 30)).save(output, format="PNG", pnginfo=info)
    return output.getvalue()


NOVA = BotProfile(
    id="nova",
    name="Nova",
    description="A lighthouse keeper.",
    system_prompt="You keep the light.",
    greeting="Evening, {{user}}.",
    scenario="A storm rolls in.",
    personality_traits=["calm", "curious"],
    tone_traits=["warm"],
    signature_phrases=["Steady now"],
    behavior_settings={"response_length": "short"},
    speech_examples=["The light never sleeps.", "Mind the rocks."],
    gender="female",
    age=40,
    tags=["sea"],
)


def nova_lore():
    return [
        build_entry(
            "beacon",
            content="The beacon burns whale oil.",
            keys=("beacon", "light"),
            activation={"secondary_keys": ["oil"], "scan_depth": 4},
            positioning={"position": Position.AT_DEPTH.value, "depth": 2, "role": MessageRole.USER.value},
            timing={"sticky": 2, "cooldown": 1},
        ),
        build_entry("rules", content="Never leave the tower.", mode="constant", keys=()),
        build_entry("old", content="Retired lore.", mode="disabled"),
    ]


class TestCardDetection:

    def test_v2(self):
        parsed = parse_card_json(json.dumps({"spec": "chara_card_v2", "spec_version": "2.0", "data": {"name": "A"}}))
        assert parsed.format == CardFormat.V2
        assert parsed.data == {"name": "A"}

    def test_v1(self):
        assert parse_card_json('{"name": "Old Timer", "description": "x"}').format == CardFormat.V1

    def test_unrecognized(self):
        with pytest.raises(UnrecognizedFormatError):
            parse_card_json('{"title": "no name"}')

    def test_not_an_object(self):
        with pytest.raises(InterchangeError):
            parse_card_json("[1, 2, 3]")

    def test_invalid_json(self):
        with pytest.raises(InterchangeError) as exc_info:
            parse_card_json("{oops")
        assert "Invalid JSON file" in str(exc_info.value)


class TestPNGMetadataHandler:

    def test_write_then_read(self):
        png = PNGMetadataHandler.write_text_chunk(plain_png(), "chara", '{"name": "Nova"}')
        assert PNGMetadataHandler.read_card_text(png) == '{"name": "Nova"}'

    def test_chunk_written_after_image_data(self):
        png = PNGMetadataHandler.write_text_chunk(plain_png(), "chara", "card")
        assert png.index(b"tEXtchara\x00") > png.index(b"IDAT")

    def test_rewrite_replaces_and_keeps_other_chunks(self):
        png = PNGMetadataHandler.write_text_chunk(plain_png({"author": "me"}), "chara", "first")
        png = PNGMetadataHandler.write_text_chunk(png, "chara", "second")

        assert png.count(b"tEXtchara\x00") == 1
        assert PNGMetadataHandler.read_card_text(png) == "second"
        assert Image.open(BytesIO(png)).text["author"] == "me"

    def test_default_image(self):
        png = PNGMetadataHandler.write_text_chunk(None, "chara", "card")
        assert PNGMetadataHandler.is_png(png)
        assert PNGMetadataHandler.read_card_text(png) == "card"

    def test_not_a_png(self):
        with pytest.raises(InvalidContainerError):
            PNGMetadataHandler.read_card_text(b"GIF89a not a png")

    def test_missing_card(self):
        with pytest.raises(MissingCardDataError):
            PNGMetadataHandler.read_card_text(plain_png())
        assert PNGMetadataHandler.read_text_chunk(plain_png()) is None

    def test_parse_card_picks_png(self):
        png = PNGMetadataHandler.write_text_chunk(None, "chara", '{"name": "Nova"}')
        assert parse_card(png).data["name"] == "Nova"


class TestCardExport:

    def test_card_shape(self):
        card = bot_to_card(NOVA, nova_lore()).model_dump(mode="json")

        assert card["spec"] == "chara_card_v2"
        data = card["data"]
        assert data["first_mes"] == "Evening, {{user}}."
        assert data["personality"] == "Personality: calm, curious\nTone: warm"
        assert data["mes_example"] == "<START>\n{{char}}: The light never sleeps.\n<START>\n{{char}}: Mind the rocks."
        assert data["character_book"]["name"] == "Nova's Lore"

        book_entries = data["character_book"]["entries"]
        assert [e["insertion_order"] for e in book_entries] == [0, 1, 2]
        assert book_entries[0]["selective"] is True
        assert book_entries[1]["constant"] is True
        assert book_entries[2]["enabled"] is False

    def test_no_book_without_lore(self):
        assert bot_to_card(NOVA).data.character_book is None


class TestCardRoundTrip:

    @pytest.mark.parametrize("as_png", [False, True])
    def test_bot_and_lore_survive(self, as_png):
        exporter = CharacterCardExporter()
        payload = exporter.to_png(NOVA, nova_lore()) if as_png else exporter.to_json(NOVA, nova_lore())

        result = CharacterCardImporter().import_card(payload, bot_id="nova")

        bot = result.bot
        assert bot.name == "Nova"
        assert bot.system_prompt == "You keep the light."
        assert bot.greeting == "Evening, {{user}}."
        assert bot.speech_examples == NOVA.speech_examples
        assert bot.personality_traits == ["calm", "curious"]
        assert bot.signature_phrases == ["Steady now"]
        assert bot.behavior_settings == {"response_length": "short"}
        assert bot.age == 40

        # Disabled entry is dropped with a warning
        assert [e.id for e in result.entries] == ["nova_lore_0", "nova_lore_1"]
        assert any("disabled" in w for w in result.warnings)

        beacon, original = result.entries[0], nova_lore()[0]
        for group in ("activation", "positioning", "timing"):
            assert getattr(beacon, group).model_dump() == getattr(original, group).model_dump()

    def test_save_by_extension(self, tmp_path):
        exporter = CharacterCardExporter()
        json_path = exporter.save(NOVA, tmp_path / "nova.json")
        png_path = exporter.save(NOVA, tmp_path / "cards" / "nova.png")

        assert json.loads(json_path.read_text(encoding="utf-8"))["data"]["name"] == "Nova"
        assert CharacterCardImporter().import_file(png_path).bot.id == "nova"


class TestCardImport:

    def test_foreign_lore_entry(self):
        card = {
            "spec": "chara_card_v2",
            "data": {
                "name": "Rex",
                "character_book": {"entries": [
                    {"keys": ["ship"], "content": "The ship is old.", "insertion_order": 7,
                     "position": "before_char", "selective": False, "secondary_keys": ["sea"]},
                    {"keys": ["empty"], "content": ""},
                ]},
            },
        }
        result = CharacterCardImporter().import_card(json.dumps(card))

        assert result.bot.id == "rex"
        assert len(result.entries) == 1
        entry = result.entries[0]
        assert entry.positioning.position == Position.BEFORE_CHARACTER
        assert entry.positioning.order == 7
        assert entry.activation.secondary_keys == []
        assert any("no content" in w for w in result.warnings)

    def test_v2_system_prompt_fallback_and_alternate_greeting(self):
        card = {"spec": "chara_card_v2", "data": {
            "name": "Mira", "description": "A cartographer.", "scenario": "Maps everywhere.",
            "alternate_greetings": ["Lost again?"],
        }}
        bot = CharacterCardImporter().import_card(json.dumps(card)).bot
        assert bot.system_prompt == "A cartographer.\n\nMaps everywhere."
        assert bot.greeting == "Lost again?"

    def test_v1_card(self):
        card = {"name": "Old Timer", "description": "Grumpy.", "personality": "Personality: brave, loud\nTone: dry"}
        result = CharacterCardImporter().import_card(json.dumps(card))

        assert result.format == CardFormat.V1
        assert result.bot.system_prompt == "Grumpy.\n\nPersonality: brave, loud\nTone: dry"
        assert result.bot.personality_traits == ["brave", "loud"]
        assert result.bot.tone_traits == ["dry"]
        assert result.entries == []

    def test_v1_card_without_text(self):
        bot = CharacterCardImporter().import_card('{"name": "Blank"}').bot
        assert bot.system_prompt == "Imported character"

    def test_non_string_fields_fall_back(self):
        card = {"spec": "chara_card_v2", "data": {
            "name": "Mira", "description": "A cartographer.", "system_prompt": 5,
            "personality": 7, "first_mes": ["hi"], "mes_example": {"x": 1}, "scenario": None,
        }}
        bot = CharacterCardImporter().import_card(json.dumps(card)).bot

        assert bot.system_prompt == "A cartographer."
        assert bot.personality_traits == []
        assert bot.greeting == ""
        assert bot.speech_examples == []
        assert bot.scenario == ""

    def test_invalid_extension_field_is_dropped(self):
        card = {"spec": "chara_card_v2", "data": {
            "name": "Mira",
            "extensions": {"lore_engine": {"age": "thirty", "gender": "female", "tags": ["maps"]}},
        }}
        result = CharacterCardImporter().import_card(json.dumps(card))

        assert result.bot.age is None
        assert result.bot.gender == "female"
        assert result.bot.tags == ["maps"]
        assert any("'age'" in w for w in result.warnings)

    def test_bad_lore_entry_fields_keep_other_entries(self):
        card = {"spec": "chara_card_v2", "data": {
            "name": "Rex",
            "character_book": {"name": 9, "entries": [
                {"keys": ["ship"], "content": "The ship is old.", "name": 42},
                {"keys": ["sea"], "content": "The sea is cold.", "insertion_order": "late"},
            ]},
        }}
        result = CharacterCardImporter().import_card(json.dumps(card))

        assert [e.content for e in result.entries] == ["The ship is old.", "The sea is cold."]
        assert result.entries[0].name == ""
        assert result.entries[1].positioning.order == 100
        assert result.book_name is None


class TestFieldHelpers:

    def test_mes_examples(self):
        text = "<START>\n{{char}}: Hello there.\n<START>\n{{user}}: Hi\n{{char}}: Bye"
        assert parse_mes_examples(text) == ["Hello there.", "User: Hi\nBye"]
        assert parse_mes_examples("") == []

    def test_trait_lines(self):
        assert parse_trait_lines("Personality: a, b\nsomething else\nTone: c") == {
            "personality": ["a", "b"], "tone": ["c"]
        }

    def test_fallback_keys(self):
        assert fallback_keys("The old ship sails the cold northern seas at dawn") == [
            "ship", "sails", "cold", "northern", "seas"
        ]
