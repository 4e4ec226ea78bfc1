"""
Character Card Data Models
==========================

Pydantic models for the SillyTavern V2 character card written on export.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class CardSpec(str, Enum):
    """SillyTavern card specification versions."""
    V2 = "chara_card_v2"


class CharacterBookEntry(BaseModel):
    """World info / lorebook entry embedded in a card."""
    keys: List[str] = Field(default_factory=list)
    content: str = ""
    extensions: Dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True
    insertion_order: int = 100
    case_sensitive: Optional[bool] = None
    name: Optional[str] = None
    priority: Optional[int] = None
    id: Optional[int] = None
    comment: Optional[str] = None
    selective: Optional[bool] = None
    secondary_keys: Optional[List[str]] = None
    constant: Optional[bool] = None
    position: Optional[str] = None  # before_char, after_char


class CharacterBook(BaseModel):
    """Character lorebook."""
    name: Optional[str] = None
    description: Optional[str] = None
    scan_depth: Optional[int] = None
    token_budget: Optional[int] = None
    recursive_scanning: Optional[bool] = None
    extensions: Dict[str, Any] = Field(default_factory=dict)
    entries: List[CharacterBookEntry] = Field(default_factory=list)


class CardData(BaseModel):
    """SillyTavern V2 card data structure."""
    name: str
    description: str = ""
    personality: str = ""
    scenario: str = ""
    first_mes: str = ""
    mes_example: str = ""

    creator_notes: str = ""
    system_prompt: str = ""
    post_history_instructions: str = ""
    alternate_greetings: List[str] = Field(default_factory=list)
    character_book: Optional[CharacterBook] = None

    tags: List[str] = Field(default_factory=list)
    creator: str = ""
    character_version: str = "1.0"
    extensions: Dict[str, Any] = Field(default_factory=dict)


class CharacterCardV2(BaseModel):
    """Complete SillyTavern V2 character card."""
    spec: CardSpec = CardSpec.V2
    spec_version: str = "2.0"
    data: CardData
