"""
Keyword Matcher
===============

Stateless keyword rule evaluation over a scan window.

Primary keys combine by the entry's logic:
- AND_ANY: any primary key present
- AND_ALL: every primary key present
- NOT_ALL: matches unless every primary key is present
- NOT_ANY: matches only when no primary key is present

Secondary keys, when given, are an extra "at least one present" gate on
top of the primary result. Case sensitivity, whole-word matching and
regex keys are independent toggles.
"""

import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional, Sequence

from lore_engine.services.activation.schema import ActivationSettings, KeywordLogic, KnowledgeEntry, MessageRole
from lore_engine.services.profiles import ChatMessage

logger = logging.getLogger(__name__)

_SLASH_REGEX = re.compile(r'^/(.+)/([imsx]*)$', re.DOTALL)
_FLAG_MAP = {'i': re.IGNORECASE, 'm': re.MULTILINE, 's': re.DOTALL, 'x': re.VERBOSE}


@dataclass
class KeywordMatchResult:
    """Outcome of evaluating one entry's keyword rule."""
    matched: bool
    score: int = 0
    primary_matches: List[str] = field(default_factory=list)
    secondary_matches: List[str] = field(default_factory=list)

    @property
    def matched_keywords(self) -> List[str]:
        return self.primary_matches + self.secondary_matches


def build_scan_window(messages: Sequence[ChatMessage], settings: ActivationSettings) -> List[str]:
    """
    Contents of the last ``scan_depth`` messages, keeping only roles the
    entry scans.
    """
    if settings.scan_depth <= 0 or not messages:
        return []

    allowed = set()
    if settings.match_in_user_messages:
        allowed.add(MessageRole.USER)
    if settings.match_in_bot_messages:
        allowed.add(MessageRole.ASSISTANT)
    if settings.match_in_system_prompts:
        allowed.add(MessageRole.SYSTEM)

    recent = list(messages)[-settings.scan_depth:]
    return [m.content for m in recent if m.role in allowed and m.content]


@lru_cache(maxsize=2048)
def _compile_key(key: str, case_sensitive: bool, whole_words: bool, use_regex: bool) -> Optional[re.Pattern]:
    flags = 0 if case_sensitive else re.IGNORECASE

    if use_regex:
        body = key
        slash = _SLASH_REGEX.match(key)
        if slash:
            body = slash.group(1)
            for ch in slash.group(2):
                flags |= _FLAG_MAP[ch]
        try:
            re.compile(body)
        except re.error as e:
            logger.warning(f"Invalid regex key {key!r} ({e}), matching it literally")
            body = re.escape(key)
    else:
        body = re.escape(key)

    if whole_words:
        body = rf'(?<!\w)(?:{body})(?!\w)'

    return re.compile(body, flags)


def key_present(
    key: str,
    text: str,
    case_sensitive: bool = False,
    whole_words: bool = False,
    use_regex: bool = False
) -> bool:
    """Check whether one key occurs in text under the given toggles."""
    if not key or not text:
        return False

    if not use_regex and not whole_words:
        if case_sensitive:
            return key in text
        return key.casefold() in text.casefold()

    return _compile_key(key, case_sensitive, whole_words, use_regex).search(text) is not None


def match_keywords(
    primary_keys: Sequence[str],
    secondary_keys: Sequence[str],
    logic: KeywordLogic,
    text: str,
    case_sensitive: bool = False,
    whole_words: bool = False,
    use_regex: bool = False
) -> KeywordMatchResult:
    """
    Evaluate a keyword rule against scan text.

    Entries without primary keys never match. Score is 2 per present
    primary key plus 1 per present secondary key, at least 1 on a match.
    """
    primary_keys = [k for k in primary_keys if k]
    if not primary_keys:
        return KeywordMatchResult(matched=False)

    present = [k for k in primary_keys if key_present(k, text, case_sensitive, whole_words, use_regex)]

    if logic == KeywordLogic.AND_ALL:
        primary_ok = len(present) == len(primary_keys)
    elif logic == KeywordLogic.NOT_ALL:
        primary_ok = len(present) < len(primary_keys)
    elif logic == KeywordLogic.NOT_ANY:
        primary_ok = not present
    else:
        primary_ok = bool(present)

    if not primary_ok:
        return KeywordMatchResult(matched=False, primary_matches=present)

    secondary_keys = [k for k in secondary_keys if k]
    secondary_present = [k for k in secondary_keys if key_present(k, text, case_sensitive, whole_words, use_regex)]
    if secondary_keys and not secondary_present:
        return KeywordMatchResult(matched=False, primary_matches=present)

    return KeywordMatchResult(
        matched=True,
        score=max(1, len(present) * 2 + len(secondary_present)),
        primary_matches=present,
        secondary_matches=secondary_present,
    )


def match_entry(entry: KnowledgeEntry, messages: Sequence[ChatMessage]) -> KeywordMatchResult:
    """Evaluate an entry's keyword rule against its own scan window."""
    settings = entry.activation
    window = build_scan_window(messages, settings)

    result = match_keywords(
        settings.primary_keys,
        settings.secondary_keys,
        settings.keywords_logic,
        "\n".join(window),
        case_sensitive=settings.case_sensitive,
        whole_words=settings.match_whole_words,
        use_regex=settings.use_regex,
    )
    if result.matched:
        logger.debug(f"Entry {entry.id} keyword match: {result.matched_keywords} (score {result.score})")
    return result
