"""
Knowledge Entry Schema
======================

Pydantic models for knowledge entries and their four rule groups
(activation, positioning, timing, filtering) plus the per-entry budget.

Parsing is lenient: a malformed field falls back to its documented
default instead of rejecting the entry, and a malformed rule group falls
back to a default rule group.
"""

import logging
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)


class ActivationMode(str, Enum):
    """How an entry decides to activate."""
    KEYWORD = "keyword"
    VECTOR = "vector"
    HYBRID = "hybrid"
    CONSTANT = "constant"
    DISABLED = "disabled"


class KeywordLogic(str, Enum):
    """How primary keys combine."""
    AND_ANY = "AND_ANY"
    AND_ALL = "AND_ALL"
    NOT_ALL = "NOT_ALL"
    NOT_ANY = "NOT_ANY"


class Position(str, Enum):
    """Placement bucket inside the assembled prompt."""
    SYSTEM_TOP = "system_top"
    BEFORE_CHARACTER = "before_character"
    AFTER_CHARACTER = "after_character"
    BEFORE_EXAMPLES = "before_examples"
    AFTER_EXAMPLES = "after_examples"
    AT_DEPTH = "at_depth"
    SYSTEM_BOTTOM = "system_bottom"


class MessageRole(str, Enum):
    """Chat message roles."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class MatchReason(str, Enum):
    """Why an entry became a candidate this turn."""
    KEYWORD = "keyword"
    VECTOR = "vector"
    CONSTANT = "constant"


class ExclusionReason(str, Enum):
    """Why a matched or tracked entry was left out of the prompt."""
    BUDGET_EXCEEDED = "budget_exceeded"
    COOLDOWN_ACTIVE = "cooldown_active"
    DELAY_NOT_MET = "delay_not_met"
    PROBABILITY_FAILED = "probability_failed"
    FILTER_EXCLUDED = "filter_excluded"
    GROUP_SCORING_LOST = "group_scoring_lost"
    CONTENT_UNUSABLE = "content_unusable"


def _default_for(model_cls, field_name: str) -> Any:
    return model_cls.model_fields[field_name].get_default(call_default_factory=True)


class LenientModel(BaseModel):
    """Base model whose fields fall back to their default on invalid input."""

    model_config = ConfigDict(extra='ignore', use_enum_values=False)

    @field_validator('*', mode='wrap')
    @classmethod
    def _default_on_error(cls, value, handler, info):
        try:
            return handler(value)
        except ValidationError:
            default = _default_for(cls, info.field_name)
            logger.debug(f"{cls.__name__}.{info.field_name}: invalid value {value!r}, using default {default!r}")
            return default


def coerce_key_list(value: Any) -> Any:
    """Accept a list of keys or a comma-separated string."""
    if value is None:
        return []
    if isinstance(value, str):
        return [k.strip() for k in value.split(',') if k.strip()]
    if isinstance(value, (list, tuple)):
        return [str(k).strip() for k in value if k is not None and str(k).strip()]
    return value


def _coerce_id_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(v) for v in value if v is not None]
    return value


class ActivationSettings(LenientModel):
    """Keyword, vector and scan rules."""

    mode: ActivationMode = ActivationMode.KEYWORD

    # Keyword sub-rule
    primary_keys: List[str] = Field(default_factory=list)
    secondary_keys: List[str] = Field(default_factory=list)
    keywords_logic: KeywordLogic = KeywordLogic.AND_ANY
    case_sensitive: bool = False
    match_whole_words: bool = False
    use_regex: bool = False

    # Vector sub-rule
    vector_similarity_threshold: float = Field(default=0.4, ge=0.0, le=1.0)
    max_vector_results: int = Field(default=5, ge=1)

    # Scan behavior
    scan_depth: int = Field(default=2, ge=0)
    match_in_user_messages: bool = True
    match_in_bot_messages: bool = True
    match_in_system_prompts: bool = False

    # Probability gate
    use_probability: bool = False
    probability: int = Field(default=100, ge=0, le=100)

    @field_validator('primary_keys', 'secondary_keys', mode='before')
    @classmethod
    def normalize_keys(cls, v):
        return coerce_key_list(v)

    @property
    def uses_keywords(self) -> bool:
        return self.mode in (ActivationMode.KEYWORD, ActivationMode.HYBRID)

    @property
    def uses_vectors(self) -> bool:
        return self.mode in (ActivationMode.VECTOR, ActivationMode.HYBRID)


class PositioningSettings(LenientModel):
    """Where an activated entry is placed."""

    position: Position = Position.AFTER_CHARACTER
    depth: int = Field(default=4, ge=0)  # Only used by at_depth
    role: MessageRole = MessageRole.SYSTEM
    order: int = 100  # Lower = earlier


class TimingSettings(LenientModel):
    """Sticky, cooldown and delay (turn counts)."""

    sticky: int = Field(default=0, ge=0)
    cooldown: int = Field(default=0, ge=0)
    delay: int = Field(default=0, ge=0)


class FilterSettings(LenientModel):
    """Bot and persona allow/deny lists. Empty allow-list means everyone."""

    allowed_bot_ids: List[str] = Field(default_factory=list)
    excluded_bot_ids: List[str] = Field(default_factory=list)
    allowed_persona_ids: List[str] = Field(default_factory=list)
    excluded_persona_ids: List[str] = Field(default_factory=list)

    @field_validator(
        'allowed_bot_ids', 'excluded_bot_ids', 'allowed_persona_ids', 'excluded_persona_ids',
        mode='before'
    )
    @classmethod
    def normalize_ids(cls, v):
        return _coerce_id_list(v)


class BudgetSettings(LenientModel):
    """Per-entry token limits."""

    max_tokens: Optional[int] = Field(default=None, gt=0)
    ignore_budget: bool = False


class GroupSettings(LenientModel):
    """Inclusion group: only the best-scoring member of a group activates."""

    group_name: Optional[str] = None
    group_weight: float = Field(default=1.0, gt=0)
    use_group_scoring: bool = False


class KnowledgeEntry(BaseModel):
    """A lore entry attached to a bot through its collection."""

    model_config = ConfigDict(extra='ignore')

    id: str
    content: str = ""
    name: str = ""
    collection_id: Optional[str] = None
    tenant_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    activation: ActivationSettings = Field(default_factory=ActivationSettings)
    positioning: PositioningSettings = Field(default_factory=PositioningSettings)
    timing: TimingSettings = Field(default_factory=TimingSettings)
    filtering: FilterSettings = Field(default_factory=FilterSettings)
    budget: BudgetSettings = Field(default_factory=BudgetSettings)
    group: GroupSettings = Field(default_factory=GroupSettings)

    # Vectorization status (written back by the vectorization pipeline)
    is_vectorized: bool = False
    chunk_count: int = Field(default=0, ge=0)

    @field_validator('id', 'collection_id', 'tenant_id', mode='before')
    @classmethod
    def stringify_ids(cls, v):
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator('tags', mode='before')
    @classmethod
    def normalize_tags(cls, v):
        return coerce_key_list(v)

    @field_validator('activation', 'positioning', 'timing', 'filtering', 'budget', 'group', mode='wrap')
    @classmethod
    def default_rule_group_on_error(cls, value, handler, info):
        if value is None:
            return _default_for(cls, info.field_name)
        try:
            return handler(value)
        except ValidationError:
            logger.debug(f"KnowledgeEntry.{info.field_name}: malformed rule group, using defaults")
            return _default_for(cls, info.field_name)

    @property
    def mode(self) -> ActivationMode:
        return self.activation.mode
