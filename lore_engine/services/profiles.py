"""Bot, persona and chat message models consumed by the engine."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from lore_engine.services.activation.schema import MessageRole


class BotProfile(BaseModel):
    """The bot identity that knowledge is injected for."""

    model_config = ConfigDict(extra='ignore')

    id: str
    name: str
    description: str = ""
    system_prompt: str = ""
    greeting: str = ""
    scenario: str = ""
    creator: str = ""
    creator_notes: str = ""

    personality_traits: List[str] = Field(default_factory=list)
    tone_traits: List[str] = Field(default_factory=list)
    signature_phrases: List[str] = Field(default_factory=list)
    behavior_settings: Dict[str, Any] = Field(default_factory=dict)
    speech_examples: List[str] = Field(default_factory=list)

    gender: Optional[str] = None
    age: Optional[int] = None
    tags: List[str] = Field(default_factory=list)
    classifications: List[str] = Field(default_factory=list)

    @field_validator('id', mode='before')
    @classmethod
    def stringify_id(cls, v):
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


class PersonaProfile(BaseModel):
    """The user's persona for a conversation."""

    model_config = ConfigDict(extra='ignore')

    id: str
    name: str
    description: str = ""

    @field_validator('id', mode='before')
    @classmethod
    def stringify_id(cls, v):
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


class ChatMessage(BaseModel):
    """One message of conversation history.

    ``bot_id``/``name`` identify which bot wrote an assistant message in
    multi-bot conversations.
    """

    role: MessageRole
    content: str
    name: Optional[str] = None
    bot_id: Optional[str] = None
