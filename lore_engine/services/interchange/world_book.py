"""
World Book (standalone lorebook) import and export
==================================================

Parses SillyTavern World Book JSON::

    {"entries": {"0": {"key": [...], "content": "...", "position": 1, ...}}}

into knowledge entries, and writes knowledge entries back out in the same
shape. Entries whose ``content`` is not a string are skipped at parse time;
an unusable book as a whole raises InvalidWorldBookError.

Exported entries carry their native rule groups under
``extensions.lore_engine`` so a re-import restores them exactly.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import ConfigDict, Field, field_validator

from lore_engine.exceptions import InvalidWorldBookError
from lore_engine.services.activation.schema import (
    ActivationMode, KnowledgeEntry, LenientModel, coerce_key_list
)
from lore_engine.services.interchange.code_tables import (
    derive_mode, logic_from_code, logic_to_code, position_from_code,
    position_to_code, role_from_code, role_to_code
)

logger = logging.getLogger(__name__)

VENDOR_KEY = "lore_engine"
RULE_GROUPS = ("activation", "positioning", "timing", "filtering", "budget", "group")

IMPORT_MAX_TOKENS = 1000
IMPORT_SCAN_DEPTH = 2


class CharacterFilter(LenientModel):
    """Which characters an entry applies to (by name)."""

    model_config = ConfigDict(extra='ignore', populate_by_name=True)

    is_exclude: bool = Field(default=False, alias='isExclude')
    names: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)

    @field_validator('names', 'tags', mode='before')
    @classmethod
    def normalize_names(cls, v):
        return coerce_key_list(v)


class WorldBookEntry(LenientModel):
    """One World Book entry as stored in the file."""

    model_config = ConfigDict(extra='ignore', populate_by_name=True)

    uid: str = ""
    keys: List[str] = Field(default_factory=list, alias='key')
    secondary_keys: List[str] = Field(default_factory=list, alias='keysecondary')
    comment: str = ""
    content: str = ""

    constant: bool = False
    vectorized: bool = False
    selective: bool = False
    selective_logic: int = Field(default=0, alias='selectiveLogic')
    disable: bool = False

    order: int = 100
    position: int = 1
    depth: int = Field(default=4, ge=0)
    role: Optional[int] = None
    scan_depth: Optional[int] = Field(default=None, alias='scanDepth')
    case_sensitive: Optional[bool] = Field(default=None, alias='caseSensitive')
    match_whole_words: Optional[bool] = Field(default=None, alias='matchWholeWords')

    probability: int = Field(default=100, ge=0, le=100)
    use_probability: bool = Field(default=False, alias='useProbability')
    ignore_budget: bool = Field(default=False, alias='ignoreBudget')

    sticky: int = Field(default=0, ge=0)
    cooldown: int = Field(default=0, ge=0)
    delay: int = Field(default=0, ge=0)

    group: str = ""
    group_weight: float = Field(default=100.0, alias='groupWeight')
    use_group_scoring: Optional[bool] = Field(default=None, alias='useGroupScoring')
    display_index: int = Field(default=0, alias='displayIndex')

    character_filter: CharacterFilter = Field(default_factory=CharacterFilter, alias='characterFilter')
    extensions: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('uid', mode='before')
    @classmethod
    def stringify_uid(cls, v):
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(int(v))
        return v

    @field_validator('keys', 'secondary_keys', mode='before')
    @classmethod
    def normalize_keys(cls, v):
        return coerce_key_list(v)

    @field_validator('group', 'comment', mode='before')
    @classmethod
    def none_to_empty(cls, v):
        return "" if v is None else v

    @property
    def enabled(self) -> bool:
        return not self.disable

    @property
    def mode(self) -> ActivationMode:
        return derive_mode(self.disable, self.constant, bool(self.keys), self.vectorized)

    @property
    def display_name(self) -> str:
        return self.comment or f"Entry {self.uid}"


@dataclass
class WorldBook:
    """A parsed World Book."""
    entries: List[WorldBookEntry] = field(default_factory=list)
    name: Optional[str] = None
    skipped: int = 0  # Entries rejected at parse time


@dataclass
class WorldBookImportResult:
    """Knowledge entries built from a World Book."""
    entries: List[KnowledgeEntry] = field(default_factory=list)
    skipped_disabled: int = 0
    skipped_empty: int = 0
    warnings: List[str] = field(default_factory=list)


def parse_world_book(raw: Union[str, bytes, Mapping[str, Any]]) -> WorldBook:
    """
    Parse World Book JSON (text or an already-decoded object).

    Raises:
        InvalidWorldBookError: Not a JSON object, no ``entries`` object, or
            no entry with string content
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidWorldBookError(f"Invalid World Book: could not parse JSON ({e})") from e

    if not isinstance(raw, Mapping):
        raise InvalidWorldBookError("Invalid World Book: expected a JSON object")

    raw_entries = raw.get("entries")
    if not isinstance(raw_entries, Mapping):
        raise InvalidWorldBookError('Invalid World Book: missing "entries" object')

    book = WorldBook(name=raw.get("name") if isinstance(raw.get("name"), str) else None)

    for key, raw_entry in raw_entries.items():
        if not isinstance(raw_entry, Mapping) or not isinstance(raw_entry.get("content"), str):
            logger.debug(f"Skipping World Book entry {key}: content is not a string")
            book.skipped += 1
            continue

        data = dict(raw_entry)
        if data.get("uid") is None:
            data["uid"] = str(key)
        book.entries.append(WorldBookEntry.model_validate(data))

    if not book.entries:
        raise InvalidWorldBookError("Invalid World Book: no valid entries found")

    logger.info(f"Parsed World Book with {len(book.entries)} entries ({book.skipped} skipped)")
    return book


def summarize_world_book(book: WorldBook) -> Dict[str, Any]:
    """Import preview: counts plus a short listing in display order."""
    entries = sorted(book.entries, key=lambda e: e.display_index)

    by_mode: Dict[str, int] = {}
    for entry in entries:
        by_mode[entry.mode.value] = by_mode.get(entry.mode.value, 0) + 1

    enabled = sum(1 for e in entries if e.enabled)
    return {
        "name": book.name,
        "total_entries": len(entries),
        "enabled_entries": enabled,
        "disabled_entries": len(entries) - enabled,
        "constant_entries": sum(1 for e in entries if e.constant and e.enabled),
        "vectorized_entries": sum(1 for e in entries if e.vectorized and e.enabled),
        "by_mode": by_mode,
        "entries": [
            {
                "uid": e.uid,
                "name": e.display_name,
                "keywords": e.keys[:5],
                "enabled": e.enabled,
                "mode": e.mode.value,
            }
            for e in entries
        ],
    }


def _character_filter_to_ids(
    character_filter: CharacterFilter,
    bot_ids_by_name: Optional[Mapping[str, str]],
    warnings: List[str]
) -> Dict[str, List[str]]:
    """Map character names to bot ids; names are kept verbatim when no map is given."""
    ids = []
    for name in character_filter.names:
        if bot_ids_by_name is None:
            ids.append(name)
        elif name in bot_ids_by_name:
            ids.append(str(bot_ids_by_name[name]))
        else:
            warnings.append(f"Character filter name '{name}' does not match a known bot")

    if not ids:
        return {}
    if character_filter.is_exclude:
        return {"excluded_bot_ids": ids}
    return {"allowed_bot_ids": ids}


def world_book_entry_to_knowledge(
    wb_entry: WorldBookEntry,
    entry_id: str,
    collection_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    bot_ids_by_name: Optional[Mapping[str, str]] = None,
    warnings: Optional[List[str]] = None
) -> KnowledgeEntry:
    """
    Build a knowledge entry from one World Book entry.

    Rule groups found under ``extensions.lore_engine`` take precedence over
    the values derived from the native fields.
    """
    warnings = warnings if warnings is not None else []
    group_name = wb_entry.group.strip() or None
    use_group_scoring = bool(group_name) if wb_entry.use_group_scoring is None else (
        wb_entry.use_group_scoring and bool(group_name)
    )

    rules: Dict[str, Any] = {
        "activation": {
            "mode": wb_entry.mode,
            "primary_keys": wb_entry.keys,
            # Secondary keys only gate when the entry is selective
            "secondary_keys": wb_entry.secondary_keys if wb_entry.selective else [],
            "keywords_logic": logic_from_code(wb_entry.selective_logic),
            "case_sensitive": bool(wb_entry.case_sensitive),
            "match_whole_words": bool(wb_entry.match_whole_words),
            "use_regex": False,
            "vector_similarity_threshold": 0.4,
            "max_vector_results": 5,
            "scan_depth": wb_entry.scan_depth or IMPORT_SCAN_DEPTH,
            "match_in_user_messages": True,
            "match_in_bot_messages": True,
            "match_in_system_prompts": False,
            "use_probability": wb_entry.use_probability,
            "probability": wb_entry.probability,
        },
        "positioning": {
            "position": position_from_code(wb_entry.position),
            "depth": wb_entry.depth,
            "role": role_from_code(wb_entry.role),
            "order": wb_entry.order,
        },
        "timing": {
            "sticky": wb_entry.sticky,
            "cooldown": wb_entry.cooldown,
            "delay": wb_entry.delay,
        },
        "filtering": _character_filter_to_ids(wb_entry.character_filter, bot_ids_by_name, warnings),
        "budget": {
            "ignore_budget": wb_entry.ignore_budget,
            "max_tokens": IMPORT_MAX_TOKENS,
        },
        "group": {
            "group_name": group_name,
            "group_weight": wb_entry.group_weight / 100 if wb_entry.group_weight > 0 else 1.0,
            "use_group_scoring": use_group_scoring,
        },
    }

    vendor = wb_entry.extensions.get(VENDOR_KEY)
    if isinstance(vendor, Mapping):
        rules.update({k: v for k, v in vendor.items() if k in RULE_GROUPS and isinstance(v, Mapping)})

    return KnowledgeEntry(
        id=entry_id,
        name=wb_entry.display_name,
        content=wb_entry.content,
        collection_id=collection_id,
        tenant_id=tenant_id,
        **rules,
    )


def import_world_book(
    raw: Union[str, bytes, Mapping[str, Any], WorldBook],
    collection_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    bot_ids_by_name: Optional[Mapping[str, str]] = None,
    id_prefix: str = "wb_"
) -> WorldBookImportResult:
    """
    Parse a World Book and convert its usable entries.

    Disabled entries and entries with blank content are skipped and counted.

    Args:
        raw: World Book JSON text, decoded object, or a parsed WorldBook
        collection_id: Collection the entries are imported into
        tenant_id: Owner of the entries
        bot_ids_by_name: Resolves ``characterFilter.names`` to bot ids
        id_prefix: Entry ids are ``{id_prefix}{uid}``
    """
    book = raw if isinstance(raw, WorldBook) else parse_world_book(raw)
    result = WorldBookImportResult()

    for wb_entry in book.entries:
        if wb_entry.disable:
            result.skipped_disabled += 1
            continue
        if not wb_entry.content.strip():
            result.skipped_empty += 1
            continue

        result.entries.append(world_book_entry_to_knowledge(
            wb_entry,
            entry_id=f"{id_prefix}{wb_entry.uid}",
            collection_id=collection_id,
            tenant_id=tenant_id,
            bot_ids_by_name=bot_ids_by_name,
            warnings=result.warnings,
        ))

    logger.info(
        f"Imported {len(result.entries)} World Book entries "
        f"({result.skipped_disabled} disabled, {result.skipped_empty} empty skipped)"
    )
    return result


def rule_groups_extension(entry: KnowledgeEntry) -> Dict[str, Any]:
    """Native rule groups as a JSON-safe dict for the vendor extension block."""
    return {name: getattr(entry, name).model_dump(mode='json') for name in RULE_GROUPS}


def knowledge_to_world_book_entry(entry: KnowledgeEntry, uid: int) -> Dict[str, Any]:
    """One knowledge entry in World Book shape."""
    activation = entry.activation
    filtering = entry.filtering
    is_exclude = bool(filtering.excluded_bot_ids)

    return {
        "uid": uid,
        "key": list(activation.primary_keys),
        "keysecondary": list(activation.secondary_keys),
        "comment": entry.name,
        "content": entry.content,
        "constant": entry.mode == ActivationMode.CONSTANT,
        "vectorized": activation.uses_vectors,
        "selective": bool(activation.secondary_keys),
        "selectiveLogic": logic_to_code(activation.keywords_logic),
        "disable": entry.mode == ActivationMode.DISABLED,
        "order": entry.positioning.order,
        "position": position_to_code(entry.positioning.position),
        "depth": entry.positioning.depth,
        "role": role_to_code(entry.positioning.role),
        "scanDepth": activation.scan_depth,
        "caseSensitive": activation.case_sensitive,
        "matchWholeWords": activation.match_whole_words,
        "probability": activation.probability,
        "useProbability": activation.use_probability,
        "ignoreBudget": entry.budget.ignore_budget,
        "sticky": entry.timing.sticky,
        "cooldown": entry.timing.cooldown,
        "delay": entry.timing.delay,
        "group": entry.group.group_name or "",
        "groupWeight": round(entry.group.group_weight * 100),
        "useGroupScoring": entry.group.use_group_scoring,
        "displayIndex": uid,
        "characterFilter": {
            "isExclude": is_exclude,
            "names": list(filtering.excluded_bot_ids if is_exclude else filtering.allowed_bot_ids),
            "tags": [],
        },
        "extensions": {VENDOR_KEY: rule_groups_extension(entry)},
    }


def export_world_book(entries: Sequence[KnowledgeEntry], name: Optional[str] = None) -> Dict[str, Any]:
    """Knowledge entries as a World Book object (``uid`` = position in the list)."""
    book: Dict[str, Any] = {
        "entries": {str(i): knowledge_to_world_book_entry(entry, i) for i, entry in enumerate(entries)}
    }
    if name:
        book["name"] = name
    logger.info(f"Exported {len(entries)} entries to World Book format")
    return book
