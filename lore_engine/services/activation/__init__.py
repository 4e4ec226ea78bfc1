"""Knowledge activation: matching, timing state, filtering, budgeting and positioning."""

from .schema import (
    ActivationMode,
    ActivationSettings,
    BudgetSettings,
    ExclusionReason,
    FilterSettings,
    GroupSettings,
    KeywordLogic,
    KnowledgeEntry,
    MatchReason,
    MessageRole,
    Position,
    PositioningSettings,
    TimingSettings,
)

__all__ = [
    "ActivationMode",
    "ActivationSettings",
    "BudgetSettings",
    "ExclusionReason",
    "FilterSettings",
    "GroupSettings",
    "KeywordLogic",
    "KnowledgeEntry",
    "MatchReason",
    "MessageRole",
    "Position",
    "PositioningSettings",
    "TimingSettings",
]
