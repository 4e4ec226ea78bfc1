"""
Multi-Bot Orchestrator

Coordinates several bots replying to one user message. Bots respond
sequentially, primary bot first, and each bot sees the replies already
produced this turn. Knowledge activation runs once per responding bot;
all bots share the conversation's activation state.
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from lore_engine.services.activation.schema import KnowledgeEntry, MessageRole
from lore_engine.services.context_builder import ChatContextBuilder
from lore_engine.services.profiles import BotProfile, ChatMessage, PersonaProfile

logger = logging.getLogger(__name__)

GenerateFn = Callable[[BotProfile, List[Dict[str, str]]], Awaitable[str]]
EntrySource = Callable[[BotProfile], Sequence[KnowledgeEntry]]


@dataclass
class MultiResponseConfig:
    """How many bots respond and in which order."""
    primary_bot_first: bool = True
    max_bots_to_respond: int = 3  # Keeps token usage bounded


@dataclass
class BotResponse:
    """One bot's reply for the turn."""
    bot_id: str
    bot_name: str
    content: str = ""
    activated_lore_count: int = 0
    knowledge_ids: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def order_bots(bots: Sequence[BotProfile], primary_bot_id: Optional[str], config: MultiResponseConfig) -> List[BotProfile]:
    """Primary bot first (others keep their order), capped at max_bots_to_respond."""
    ordered = list(bots)
    if config.primary_bot_first and primary_bot_id is not None:
        ordered.sort(key=lambda b: 0 if b.id == primary_bot_id else 1)
    return ordered[:config.max_bots_to_respond]


class MultiBotOrchestrator:
    """Runs sequential replies for a group conversation."""

    def __init__(
        self,
        context_builder: ChatContextBuilder,
        generate: GenerateFn,
        entries_for_bot: EntrySource,
        config: Optional[MultiResponseConfig] = None
    ):
        """
        Args:
            context_builder: Builds each bot's LLM messages
            generate: Async callable producing a reply from (bot, messages)
            entries_for_bot: Knowledge entries attached to a bot
            config: Ordering and fan-out limits
        """
        self.context_builder = context_builder
        self.generate = generate
        self.entries_for_bot = entries_for_bot
        self.config = config or MultiResponseConfig()

    async def respond(
        self,
        conversation_id: str,
        bots: Sequence[BotProfile],
        transcript: Sequence[ChatMessage],
        user_message: str,
        persona: Optional[PersonaProfile] = None,
        primary_bot_id: Optional[str] = None,
        tenant_id: Optional[str] = None
    ) -> List[BotResponse]:
        """
        Produce one reply per responding bot.

        A failing bot is reported in its BotResponse and the remaining bots
        still respond. All bots evaluate knowledge for the same turn index.

        Returns:
            Responses in speaking order
        """
        responding = order_bots(bots, primary_bot_id, self.config)
        conversation = list(transcript) + [ChatMessage(role=MessageRole.USER, content=user_message)]
        turn = len(conversation)
        responses: List[BotResponse] = []

        for bot in responding:
            others = [b for b in bots if b.id != bot.id]
            response = BotResponse(bot_id=bot.id, bot_name=bot.name)

            try:
                context = await self.context_builder.build(
                    conversation_id,
                    bot,
                    conversation,
                    self.entries_for_bot(bot),
                    persona=persona,
                    other_bots=others,
                    turn=turn,
                    tenant_id=tenant_id,
                )
                response.activated_lore_count = context.activated_lore_count
                response.knowledge_ids = context.knowledge_ids
                response.content = await self.generate(bot, context.messages)
            except Exception as e:
                logger.error(f"Bot {bot.id} failed to respond: {e}", exc_info=True)
                response.error = str(e)
                responses.append(response)
                continue

            # Later bots see this reply in their scan window and history
            conversation.append(ChatMessage(
                role=MessageRole.ASSISTANT,
                content=response.content,
                name=bot.name,
                bot_id=bot.id,
            ))
            responses.append(response)

        logger.info(
            f"Conversation {conversation_id}: {sum(r.ok for r in responses)}/{len(responses)} bots responded"
        )
        return responses
