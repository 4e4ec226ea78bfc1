"""Bot and persona filtering for knowledge entries."""

import logging
from typing import List, Optional, Sequence, Tuple

from lore_engine.services.activation.schema import ActivationMode, FilterSettings, KnowledgeEntry

logger = logging.getLogger(__name__)


def _allowed(current_id: Optional[str], allow: Sequence[str], exclude: Sequence[str]) -> bool:
    if current_id is not None and current_id in exclude:
        return False
    if allow and current_id not in allow:
        return False
    return True


def passes_filters(filtering: FilterSettings, bot_id: Optional[str], persona_id: Optional[str]) -> bool:
    """
    Check an entry's allow/deny lists against the current bot and persona.

    Exclusion beats allowance; an empty allow-list admits everyone.
    """
    return (
        _allowed(bot_id, filtering.allowed_bot_ids, filtering.excluded_bot_ids)
        and _allowed(persona_id, filtering.allowed_persona_ids, filtering.excluded_persona_ids)
    )


def filter_entries(
    entries: Sequence[KnowledgeEntry],
    bot_id: Optional[str],
    persona_id: Optional[str] = None
) -> Tuple[List[KnowledgeEntry], List[KnowledgeEntry]]:
    """
    Split entries into those eligible this turn and those filtered out.

    Disabled entries are dropped silently: they are neither eligible nor
    reported as filtered.

    Returns:
        (eligible, filtered_out)
    """
    eligible = []
    filtered_out = []

    for entry in entries:
        if entry.mode == ActivationMode.DISABLED:
            continue
        if passes_filters(entry.filtering, bot_id, persona_id):
            eligible.append(entry)
        else:
            filtered_out.append(entry)

    if filtered_out:
        logger.debug(f"Filtered out {len(filtered_out)} entries for bot={bot_id} persona={persona_id}")

    return eligible, filtered_out
