"""
Chat Context Builder

Turns a conversation transcript into the message list sent to the language
model for one responding bot:

- runs knowledge activation over the transcript
- builds the system prompt with positioned knowledge
- maps history to chat roles: the bot's own replies stay ``assistant``,
  other bots' replies become ``user`` messages prefixed with ``[Name]: ``
- splices at-depth knowledge into the history
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from lore_engine.config.models import BudgetConfig
from lore_engine.services.activation.engine import ActivationContext, ActivationEngine, ActivationResult
from lore_engine.services.activation.positioner import PositionedFragments
from lore_engine.services.activation.schema import KnowledgeEntry, MessageRole
from lore_engine.services.profiles import BotProfile, ChatMessage, PersonaProfile
from lore_engine.services.prompt_builder import PromptBuilder
from lore_engine.services.token_counter import estimate_message_tokens

logger = logging.getLogger(__name__)

_USER_MACRO = re.compile(r'\{\{user\}\}', re.IGNORECASE)
_CHAR_MACRO = re.compile(r'\{\{char\}\}', re.IGNORECASE)


@dataclass
class ChatContext:
    """Everything needed for one LLM call."""
    messages: List[Dict[str, str]]  # System prompt first
    system_prompt: str
    activated_lore_count: int = 0
    total_tokens_estimate: int = 0
    activation: Optional[ActivationResult] = None
    knowledge_ids: List[str] = field(default_factory=list)


def to_llm_messages(
    transcript: Sequence[ChatMessage],
    bot: BotProfile,
    persona: Optional[PersonaProfile] = None
) -> List[Dict[str, str]]:
    """
    Map transcript messages to chat roles from the responding bot's point of view.

    Empty messages are skipped. System messages in the transcript are kept
    as system messages.
    """
    messages = []
    for msg in transcript:
        if not msg.content:
            continue

        if msg.role == MessageRole.ASSISTANT:
            if msg.bot_id is None or msg.bot_id == bot.id:
                messages.append({"role": "assistant", "content": msg.content})
            else:
                speaker = msg.name or "Other character"
                messages.append({"role": "user", "content": f"[{speaker}]: {msg.content}"})
        elif msg.role == MessageRole.USER:
            message = {"role": "user", "content": msg.content}
            if persona is not None:
                message["name"] = persona.name
            messages.append(message)
        else:
            messages.append({"role": "system", "content": msg.content})

    return messages


def build_greeting(bot: BotProfile, persona: Optional[PersonaProfile] = None) -> str:
    """Bot greeting with ``{{user}}``/``{{char}}`` filled in."""
    if not bot.greeting:
        return f"Hello! I'm {bot.name}. How can I help you today?"

    greeting = _USER_MACRO.sub(persona.name if persona else "friend", bot.greeting)
    return _CHAR_MACRO.sub(bot.name, greeting)


class ChatContextBuilder:
    """Builds LLM message lists with activated knowledge in place."""

    def __init__(
        self,
        engine: ActivationEngine,
        prompt_builder: Optional[PromptBuilder] = None,
        budget: Optional[BudgetConfig] = None
    ):
        """
        Args:
            engine: Knowledge activation engine
            prompt_builder: System prompt assembler
            budget: Budget override for every turn (None = engine default)
        """
        self.engine = engine
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.budget = budget

    async def build(
        self,
        conversation_id: str,
        bot: BotProfile,
        transcript: Sequence[ChatMessage],
        entries: Sequence[KnowledgeEntry],
        persona: Optional[PersonaProfile] = None,
        other_bots: Sequence[BotProfile] = (),
        turn: Optional[int] = None,
        tenant_id: Optional[str] = None
    ) -> ChatContext:
        """
        Build the chat context for one bot's reply.

        Activation only runs once the transcript contains a user message.
        Activation failures are logged and the reply proceeds without
        knowledge.

        Args:
            conversation_id: Conversation owning the activation state
            bot: Responding bot
            transcript: Conversation so far, oldest first
            entries: Knowledge entries attached to the bot
            persona: User persona, if any
            other_bots: Other bots in a group conversation
            turn: Turn index (defaults to the transcript length)
            tenant_id: Owner of the knowledge vectors
        """
        activation = None
        positioned = PositionedFragments()

        if any(m.role == MessageRole.USER for m in transcript):
            context = ActivationContext(
                conversation_id=conversation_id,
                turn=len(transcript) if turn is None else turn,
                messages=list(transcript),
                bot_id=bot.id,
                persona_id=persona.id if persona else None,
                tenant_id=tenant_id,
                budget=self.budget,
            )
            try:
                activation = await self.engine.evaluate(entries, context)
                positioned = activation.positioned
            except Exception as e:
                logger.error(f"Knowledge activation failed for bot {bot.id}: {e}", exc_info=True)

        history = to_llm_messages(transcript, bot, persona)
        activated_count = activation.activated_count if activation else 0

        prompt = self.prompt_builder.build(
            bot,
            positioned,
            history,
            persona=persona,
            activated_count=activated_count,
            other_bots=other_bots,
        )
        messages = prompt.to_llm_messages()

        return ChatContext(
            messages=messages,
            system_prompt=prompt.system_prompt,
            activated_lore_count=activated_count,
            total_tokens_estimate=estimate_message_tokens(m["content"] for m in messages),
            activation=activation,
            knowledge_ids=activation.activated_ids if activation else [],
        )
