"""
Prompt Builder

Assembles the system prompt around positioned knowledge fragments:

    bot system prompt
    system_top
    before_character
    character block (identity, personality, behavior, scenario)
    after_character
    before_examples
    speech examples
    after_examples
    persona context
    group roster (multi-bot conversations)
    system_bottom

At-depth knowledge is spliced into the history messages rather than the
system prompt. Assembly is deterministic for identical input.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from lore_engine.services.activation.positioner import PositionedFragments, splice_depth_messages
from lore_engine.services.activation.schema import Position
from lore_engine.services.profiles import BotProfile, PersonaProfile
from lore_engine.services.token_counter import estimate_message_tokens, estimate_tokens

logger = logging.getLogger(__name__)

SECTION_SEPARATOR = "\n\n"


@dataclass
class BuiltPrompt:
    """A fully assembled prompt."""
    system_prompt: str
    messages: List[Dict[str, str]]
    activated_count: int = 0
    estimated_tokens: int = 0
    token_breakdown: Dict[str, int] = field(default_factory=dict)

    def to_llm_messages(self) -> List[Dict[str, str]]:
        """System prompt followed by history, in chat-completion shape."""
        return [{"role": "system", "content": self.system_prompt}] + list(self.messages)


class PromptBuilder:
    """Builds system prompts for a bot with knowledge fragments in place."""

    def build_character_block(self, bot: BotProfile) -> str:
        """Identity, personality and behavior text for a bot."""
        parts = []

        identity = f"You are {bot.name}."
        if bot.description:
            identity += f" {bot.description.strip()}"
        parts.append(identity)

        if bot.personality_traits:
            parts.append(f"Personality: {', '.join(bot.personality_traits)}")
        if bot.tone_traits:
            parts.append(f"Tone: {', '.join(bot.tone_traits)}")
        if bot.signature_phrases:
            parts.append("Signature phrases: " + "; ".join(f'"{p}"' for p in bot.signature_phrases))
        if bot.behavior_settings:
            behavior = ", ".join(f"{k}: {v}" for k, v in sorted(bot.behavior_settings.items()))
            parts.append(f"Behavior: {behavior}")
        if bot.scenario:
            parts.append(f"Scenario: {bot.scenario.strip()}")
        if bot.greeting:
            parts.append(f"When greeting someone, {bot.name} might say: \"{bot.greeting.strip()}\"")

        return "\n".join(parts)

    def build_examples_block(self, bot: BotProfile) -> str:
        if not bot.speech_examples:
            return ""
        lines = ["Example dialogue:"]
        lines.extend(f"{bot.name}: {example}" for example in bot.speech_examples)
        return "\n".join(lines)

    def build_persona_block(self, persona: Optional[PersonaProfile]) -> str:
        if persona is None:
            return ""
        text = f"The user is {persona.name}."
        if persona.description:
            text += f" {persona.description.strip()}"
        return text

    def build_group_block(self, bot: BotProfile, other_bots: Sequence[BotProfile]) -> str:
        """Roster of the other characters in a group conversation."""
        if not other_bots:
            return ""
        lines = ["This is a group conversation. Other characters present:"]
        for other in other_bots:
            summary = f": {other.description[:100]}" if other.description else ""
            lines.append(f"- {other.name}{summary}")
        lines.append(f"Only speak as {bot.name}. Do not speak for the other characters or the user.")
        return "\n".join(lines)

    def build_system_prompt(
        self,
        bot: BotProfile,
        positioned: PositionedFragments,
        persona: Optional[PersonaProfile] = None,
        other_bots: Sequence[BotProfile] = ()
    ) -> str:
        """Concatenate the system prompt sections in their fixed order."""
        sections = [
            bot.system_prompt.strip(),
            *positioned.get(Position.SYSTEM_TOP),
            *positioned.get(Position.BEFORE_CHARACTER),
            self.build_character_block(bot),
            *positioned.get(Position.AFTER_CHARACTER),
            *positioned.get(Position.BEFORE_EXAMPLES),
            self.build_examples_block(bot),
            *positioned.get(Position.AFTER_EXAMPLES),
            self.build_persona_block(persona),
            self.build_group_block(bot, other_bots),
            *positioned.get(Position.SYSTEM_BOTTOM),
        ]
        return SECTION_SEPARATOR.join(s for s in sections if s and s.strip())

    def build(
        self,
        bot: BotProfile,
        positioned: PositionedFragments,
        history: List[Dict[str, str]],
        persona: Optional[PersonaProfile] = None,
        activated_count: int = 0,
        other_bots: Sequence[BotProfile] = ()
    ) -> BuiltPrompt:
        """
        Build the system prompt and the history with at-depth knowledge spliced in.

        Args:
            bot: Responding bot
            positioned: Knowledge fragments from the positioner
            history: Conversation history as role/content dicts
            persona: User persona, if any
            activated_count: Number of knowledge entries injected
        """
        system_prompt = self.build_system_prompt(bot, positioned, persona, other_bots)
        messages = splice_depth_messages(history, positioned.depth_insertions)

        system_tokens = estimate_tokens(system_prompt)
        message_tokens = estimate_message_tokens(m["content"] for m in messages)

        logger.debug(
            f"Built prompt for {bot.name}: {activated_count} knowledge entries, "
            f"{len(messages)} messages, ~{system_tokens + message_tokens} tokens"
        )

        return BuiltPrompt(
            system_prompt=system_prompt,
            messages=messages,
            activated_count=activated_count,
            estimated_tokens=system_tokens + message_tokens,
            token_breakdown={"system": system_tokens, "messages": message_tokens},
        )
