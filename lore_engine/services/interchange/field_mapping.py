"""
SillyTavern Field Mapping
=========================

Converts between SillyTavern character cards and bot profiles plus their
knowledge entries.

Export writes a ``chara_card_v2`` card whose ``extensions.lore_engine``
block holds the bot fields with no native card slot and, per lorebook
entry, the native rule groups. Import prefers that block when present, so
a round-trip through the card restores enabled entries exactly.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import TypeAdapter, ValidationError

from lore_engine.services.activation.schema import ActivationMode, KnowledgeEntry, Position
from lore_engine.services.interchange.card_parser import CardFormat, ParsedCard
from lore_engine.services.interchange.code_tables import derive_mode
from lore_engine.services.interchange.models import (
    CardData, CharacterBook, CharacterBookEntry, CharacterCardV2
)
from lore_engine.services.interchange.world_book import RULE_GROUPS, VENDOR_KEY, rule_groups_extension
from lore_engine.services.profiles import BotProfile

logger = logging.getLogger(__name__)

EXTENSION_VERSION = 1
BOOK_SCAN_DEPTH = 2
BOOK_TOKEN_BUDGET = 2048
ENTRY_PRIORITY = 10

_START_MARKER = re.compile(r'<START>', re.IGNORECASE)
_CHAR_PREFIX = re.compile(r'\{\{char\}\}:\s*', re.IGNORECASE)
_USER_PREFIX = re.compile(r'\{\{user\}\}:\s*', re.IGNORECASE)
_TRAIT_LINE = re.compile(r'^\s*(Personality|Tone)\s*:\s*(.+)$', re.IGNORECASE | re.MULTILINE)
_WORD = re.compile(r"[A-Za-z0-9][A-Za-z0-9'-]*")

VENDOR_BOT_FIELDS = (
    "personality_traits", "tone_traits", "signature_phrases", "behavior_settings",
    "gender", "age", "tags", "classifications",
)

_BEFORE_CHAR_POSITIONS = (Position.SYSTEM_TOP, Position.BEFORE_CHARACTER, Position.BEFORE_EXAMPLES)


@dataclass
class CardImportResult:
    """Bot profile and lore recovered from a card."""
    bot: BotProfile
    entries: List[KnowledgeEntry] = field(default_factory=list)
    format: CardFormat = CardFormat.V2
    book_name: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


def slugify(name: str) -> str:
    slug = re.sub(r'[^a-z0-9]+', '-', name.lower()).strip('-')
    return slug or "bot"


def parse_mes_examples(mes_example: Optional[str]) -> List[str]:
    """
    Speech examples from ``mes_example``.

    Blocks are split on ``<START>``; ``{{char}}:`` prefixes are removed and
    ``{{user}}:`` becomes ``User: ``.
    """
    if not mes_example or not mes_example.strip():
        return []

    examples = []
    for block in _START_MARKER.split(mes_example):
        text = _USER_PREFIX.sub('User: ', _CHAR_PREFIX.sub('', block)).strip()
        if text:
            examples.append(text)
    return examples


def format_mes_examples(examples: Sequence[str]) -> str:
    return "\n".join(f"<START>\n{{{{char}}}}: {example}" for example in examples if example.strip())


def parse_trait_lines(personality: Optional[str]) -> Dict[str, List[str]]:
    """``Personality: a, b`` and ``Tone: c`` lines as trait lists."""
    traits: Dict[str, List[str]] = {"personality": [], "tone": []}
    for label, values in _TRAIT_LINE.findall(personality or ""):
        traits[label.lower()].extend(v.strip() for v in values.split(',') if v.strip())
    return traits


def format_personality(bot: BotProfile) -> str:
    lines = []
    if bot.personality_traits:
        lines.append(f"Personality: {', '.join(bot.personality_traits)}")
    if bot.tone_traits:
        lines.append(f"Tone: {', '.join(bot.tone_traits)}")
    return "\n".join(lines)


def fallback_keys(content: str, limit: int = 5) -> List[str]:
    """First few longer words of the content, for entries without keys."""
    keys: List[str] = []
    for word in _WORD.findall(content):
        if len(word) > 3 and word.lower() not in (k.lower() for k in keys):
            keys.append(word)
        if len(keys) >= limit:
            break
    return keys


# ===========================
# Export
# ===========================

def entry_to_book_entry(entry: KnowledgeEntry, index: int) -> CharacterBookEntry:
    """One knowledge entry as a card lorebook entry."""
    activation = entry.activation
    return CharacterBookEntry(
        keys=list(activation.primary_keys) or fallback_keys(entry.content),
        content=entry.content,
        enabled=entry.mode != ActivationMode.DISABLED,
        insertion_order=index,
        case_sensitive=activation.case_sensitive,
        name=entry.name or f"Entry {index + 1}",
        priority=ENTRY_PRIORITY,
        id=index,
        selective=bool(activation.secondary_keys),
        secondary_keys=list(activation.secondary_keys),
        constant=entry.mode == ActivationMode.CONSTANT,
        position="before_char" if entry.positioning.position in _BEFORE_CHAR_POSITIONS else "after_char",
        extensions={VENDOR_KEY: rule_groups_extension(entry)},
    )


def bot_extension(bot: BotProfile) -> Dict[str, Any]:
    """Bot fields with no native card slot."""
    return {
        "version": EXTENSION_VERSION,
        "personality_traits": list(bot.personality_traits),
        "tone_traits": list(bot.tone_traits),
        "signature_phrases": list(bot.signature_phrases),
        "behavior_settings": dict(bot.behavior_settings),
        "gender": bot.gender,
        "age": bot.age,
        "tags": list(bot.tags),
        "classifications": list(bot.classifications),
    }


def bot_to_card(bot: BotProfile, entries: Sequence[KnowledgeEntry] = ()) -> CharacterCardV2:
    """
    Build a V2 card for a bot and its knowledge entries.

    Entry ``insertion_order`` is the entry's index in ``entries``.
    """
    book = None
    if entries:
        book = CharacterBook(
            name=f"{bot.name}'s Lore",
            scan_depth=BOOK_SCAN_DEPTH,
            token_budget=BOOK_TOKEN_BUDGET,
            recursive_scanning=False,
            entries=[entry_to_book_entry(entry, i) for i, entry in enumerate(entries)],
        )

    card = CharacterCardV2(
        data=CardData(
            name=bot.name,
            description=bot.description,
            personality=format_personality(bot),
            scenario=bot.scenario,
            first_mes=bot.greeting,
            mes_example=format_mes_examples(bot.speech_examples),
            creator_notes=bot.creator_notes,
            system_prompt=bot.system_prompt,
            character_book=book,
            tags=list(bot.tags),
            creator=bot.creator,
            extensions={VENDOR_KEY: bot_extension(bot)},
        )
    )
    logger.info(f"Built V2 card for bot '{bot.name}' with {len(entries)} lore entries")
    return card


# ===========================
# Import
# ===========================

def _joined_fields(data: Mapping[str, Any]) -> str:
    parts = [data.get(k) for k in ("description", "personality", "scenario")]
    return "\n\n".join(p for p in parts if isinstance(p, str) and p.strip())


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [str(v) for v in value if v is not None and str(v).strip()]


def book_entry_to_knowledge(raw: Mapping[str, Any], entry_id: str) -> KnowledgeEntry:
    """A card lorebook entry as a knowledge entry; vendor rule groups win when present."""
    keys = _str_list(raw.get("keys"))
    selective = bool(raw.get("selective"))

    rules: Dict[str, Any] = {
        "activation": {
            "mode": derive_mode(raw.get("enabled") is False, bool(raw.get("constant")), bool(keys), False),
            "primary_keys": keys,
            "secondary_keys": _str_list(raw.get("secondary_keys")) if selective else [],
            "case_sensitive": bool(raw.get("case_sensitive")),
        },
        "positioning": {
            "position": Position.BEFORE_CHARACTER if raw.get("position") == "before_char" else Position.AFTER_CHARACTER,
            "order": raw.get("insertion_order", 100),
        },
    }

    extensions = raw.get("extensions")
    vendor = extensions.get(VENDOR_KEY) if isinstance(extensions, Mapping) else None
    if isinstance(vendor, Mapping):
        rules.update({k: v for k, v in vendor.items() if k in RULE_GROUPS and isinstance(v, Mapping)})

    return KnowledgeEntry(
        id=entry_id,
        name=_str(raw.get("name")) or _str(raw.get("comment")),
        content=raw["content"],
        **rules,
    )


def _import_book(book: Any, bot_id: str, result: CardImportResult):
    if not isinstance(book, Mapping):
        return
    result.book_name = _str(book.get("name")) or None

    raw_entries = book.get("entries")
    if not isinstance(raw_entries, list):
        result.warnings.append("Character book has no entries list")
        return

    for i, raw in enumerate(raw_entries):
        if not isinstance(raw, Mapping) or not isinstance(raw.get("content"), str) or not raw["content"].strip():
            result.warnings.append(f"Skipped lore entry {i}: no content")
            continue
        if raw.get("enabled") is False:
            result.warnings.append(f"Skipped lore entry {i}: disabled")
            continue
        try:
            result.entries.append(book_entry_to_knowledge(raw, entry_id=f"{bot_id}_lore_{i}"))
        except ValidationError as e:
            logger.warning(f"Skipped lore entry {i}: {e.error_count()} invalid fields")
            result.warnings.append(f"Skipped lore entry {i}: invalid fields")


def card_to_bot(parsed: ParsedCard, bot_id: Optional[str] = None) -> CardImportResult:
    """
    Bot profile and lore entries from a parsed card.

    V2 cards without a ``system_prompt`` get one built from description,
    personality and scenario. V1 cards always do, and carry no lore.

    Args:
        parsed: Classified card
        bot_id: Id for the new bot (slug of the name when omitted)
    """
    data = parsed.data
    name = _str(data.get("name")).strip() or "Unnamed Character"
    bot_id = bot_id or slugify(name)

    extensions = data.get("extensions") if parsed.format == CardFormat.V2 else None
    vendor = extensions.get(VENDOR_KEY) if isinstance(extensions, Mapping) else None
    vendor = vendor if isinstance(vendor, Mapping) else {}

    if parsed.format == CardFormat.V2:
        system_prompt = _str(data.get("system_prompt"))
        if not system_prompt.strip():
            system_prompt = _joined_fields(data)
    else:
        system_prompt = _joined_fields(data) or "Imported character"

    greeting = _str(data.get("first_mes"))
    alternates = _str_list(data.get("alternate_greetings"))
    if not greeting and alternates:
        greeting = alternates[0]

    traits = parse_trait_lines(_str(data.get("personality")))
    profile: Dict[str, Any] = {
        "id": bot_id,
        "name": name,
        "description": _str(data.get("description")),
        "system_prompt": system_prompt,
        "greeting": greeting,
        "scenario": _str(data.get("scenario")),
        "creator": _str(data.get("creator")),
        "creator_notes": _str(data.get("creator_notes")),
        "speech_examples": parse_mes_examples(_str(data.get("mes_example"))),
        "personality_traits": traits["personality"],
        "tone_traits": traits["tone"],
        "tags": _str_list(data.get("tags")),
    }
    warnings: List[str] = []
    for key in VENDOR_BOT_FIELDS:
        if vendor.get(key) is None:
            continue
        try:
            profile[key] = TypeAdapter(BotProfile.model_fields[key].annotation).validate_python(vendor[key])
        except ValidationError:
            logger.warning(f"Ignoring invalid '{key}' in card extension: {vendor[key]!r}")
            warnings.append(f"Ignored invalid extension field '{key}'")

    result = CardImportResult(bot=BotProfile.model_validate(profile), format=parsed.format, warnings=warnings)
    if parsed.format == CardFormat.V2:
        _import_book(data.get("character_book"), bot_id, result)

    logger.info(f"Imported {parsed.format.value} card '{name}' with {len(result.entries)} lore entries")
    return result
