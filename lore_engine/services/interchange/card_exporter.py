"""
Character Card Exporter
=======================

Writes bots and their lore as SillyTavern V2 cards (PNG or JSON), and
reads cards back into bot profiles.
"""

import json
import logging
from pathlib import Path
from typing import Optional, Sequence, Union

from lore_engine.services.activation.schema import KnowledgeEntry
from lore_engine.services.interchange.card_parser import parse_card
from lore_engine.services.interchange.field_mapping import CardImportResult, bot_to_card, card_to_bot
from lore_engine.services.interchange.metadata_handler import CARD_KEYWORD, PNGMetadataHandler
from lore_engine.services.profiles import BotProfile

logger = logging.getLogger(__name__)


class CharacterCardExporter:
    """Export bots to character cards."""

    def to_json(self, bot: BotProfile, entries: Sequence[KnowledgeEntry] = ()) -> str:
        card = bot_to_card(bot, entries)
        return json.dumps(card.model_dump(mode='json'), ensure_ascii=False, indent=2)

    def to_png(
        self,
        bot: BotProfile,
        entries: Sequence[KnowledgeEntry] = (),
        avatar_png: Optional[bytes] = None
    ) -> bytes:
        """
        Export as a PNG card.

        Args:
            bot: Bot to export
            entries: Knowledge entries for the embedded lorebook
            avatar_png: Image to embed into (a 1x1 image when omitted)

        Returns:
            PNG data with the card in its ``chara`` chunk
        """
        card_json = json.dumps(bot_to_card(bot, entries).model_dump(mode='json'), ensure_ascii=False)
        png = PNGMetadataHandler.write_text_chunk(avatar_png, CARD_KEYWORD, card_json)
        logger.info(f"Exported character card PNG for '{bot.name}' ({len(png)} bytes)")
        return png

    def save(
        self,
        bot: BotProfile,
        output_path: Union[str, Path],
        entries: Sequence[KnowledgeEntry] = (),
        avatar_png: Optional[bytes] = None
    ) -> Path:
        """Write a card to disk, as JSON when the path ends in ``.json`` and PNG otherwise."""
        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.suffix.lower() == ".json":
            path.write_text(self.to_json(bot, entries), encoding='utf-8')
        else:
            path.write_bytes(self.to_png(bot, entries, avatar_png))
        return path


class CharacterCardImporter:
    """Import character cards (PNG or JSON, V1 or V2)."""

    def import_card(self, payload: Union[str, bytes], bot_id: Optional[str] = None) -> CardImportResult:
        """
        Raises:
            InterchangeError: Payload is not a recognizable card
        """
        result = card_to_bot(parse_card(payload), bot_id=bot_id)
        if result.warnings:
            logger.warning(f"Card import for '{result.bot.name}' finished with {len(result.warnings)} warnings")
        return result

    def import_file(self, path: Union[str, Path], bot_id: Optional[str] = None) -> CardImportResult:
        return self.import_card(Path(path).read_bytes(), bot_id=bot_id)
