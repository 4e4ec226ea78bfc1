"""
SillyTavern interchange
=======================

Import and export of SillyTavern World Books and character cards
(V1 flat, V2 wrapped, and PNG with an embedded ``chara`` chunk).
"""

from .card_exporter import CharacterCardExporter, CharacterCardImporter
from .card_parser import CardFormat, ParsedCard, parse_card, parse_card_json, parse_card_png
from .field_mapping import CardImportResult, bot_to_card, card_to_bot
from .metadata_handler import PNGMetadataHandler
from .world_book import (
    WorldBook, WorldBookEntry, WorldBookImportResult, export_world_book,
    import_world_book, parse_world_book, summarize_world_book
)

__all__ = [
    'CharacterCardExporter',
    'CharacterCardImporter',
    'CardFormat',
    'ParsedCard',
    'parse_card',
    'parse_card_json',
    'parse_card_png',
    'CardImportResult',
    'bot_to_card',
    'card_to_bot',
    'PNGMetadataHandler',
    'WorldBook',
    'WorldBookEntry',
    'WorldBookImportResult',
    'export_world_book',
    'import_world_book',
    'parse_world_book',
    'summarize_world_book',
]
