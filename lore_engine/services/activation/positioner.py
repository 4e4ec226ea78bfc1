"""
Positioner
==========

Groups included knowledge by placement bucket.

Flat buckets become text fragments for the system prompt, sorted by
``order``. ``at_depth`` entries become messages spliced into conversation
history, counted back from the end.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from lore_engine.services.activation.budget_allocator import Candidate
from lore_engine.services.activation.schema import KnowledgeEntry, MessageRole, Position

logger = logging.getLogger(__name__)

FLAT_POSITIONS = [
    Position.SYSTEM_TOP,
    Position.BEFORE_CHARACTER,
    Position.AFTER_CHARACTER,
    Position.BEFORE_EXAMPLES,
    Position.AFTER_EXAMPLES,
    Position.SYSTEM_BOTTOM,
]


@dataclass
class DepthInsertion:
    """A knowledge message to splice into history."""
    entry_id: str
    content: str
    depth: int
    role: MessageRole
    order: int


@dataclass
class PositionedFragments:
    """Knowledge text grouped by anchor point."""
    fragments: Dict[Position, List[str]] = field(default_factory=lambda: {p: [] for p in FLAT_POSITIONS})
    depth_insertions: List[DepthInsertion] = field(default_factory=list)

    def get(self, position: Position) -> List[str]:
        return self.fragments.get(position, [])

    @property
    def fragment_count(self) -> int:
        return sum(len(v) for v in self.fragments.values()) + len(self.depth_insertions)


def format_entry(entry: KnowledgeEntry, content: str = None) -> str:
    """Render an entry as ``[first tag]\\ncontent``, or bare content without tags."""
    text = entry.content if content is None else content
    if entry.tags:
        return f"[{entry.tags[0]}]\n{text}"
    return text


def position_entries(included: Sequence[Candidate]) -> PositionedFragments:
    """Group included candidates by bucket, each bucket ordered by ``order``."""
    positioned = PositionedFragments()
    ordered = sorted(included, key=lambda c: (c.entry.positioning.order, c.entry_id))

    for candidate in ordered:
        positioning = candidate.entry.positioning
        text = format_entry(candidate.entry, candidate.content)

        if positioning.position == Position.AT_DEPTH:
            positioned.depth_insertions.append(DepthInsertion(
                entry_id=candidate.entry_id,
                content=text,
                depth=positioning.depth,
                role=positioning.role,
                order=positioning.order,
            ))
        else:
            positioned.fragments.setdefault(positioning.position, []).append(text)

    logger.debug(f"Positioned {positioned.fragment_count} knowledge fragments")
    return positioned


def splice_depth_messages(
    messages: List[Dict[str, str]],
    insertions: Sequence[DepthInsertion]
) -> List[Dict[str, str]]:
    """
    Insert at-depth knowledge into a message list.

    Each insertion lands at index ``max(0, len(messages) - depth)`` of the
    original list; insertions sharing an index keep ascending ``order``.

    Returns:
        New message list (input is not modified)
    """
    if not insertions:
        return list(messages)

    by_index: Dict[int, List[DepthInsertion]] = {}
    for insertion in insertions:
        index = max(0, len(messages) - insertion.depth)
        by_index.setdefault(index, []).append(insertion)

    result = []
    for index in range(len(messages) + 1):
        for insertion in sorted(by_index.get(index, []), key=lambda i: i.order):
            result.append({"role": insertion.role.value, "content": insertion.content})
        if index < len(messages):
            result.append(messages[index])

    return result
