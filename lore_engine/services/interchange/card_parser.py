"""
Card Format Detector
====================

Classifies SillyTavern character card JSON as V1 (flat) or V2 (wrapped),
from raw JSON or from a PNG's ``chara`` chunk.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Union

from lore_engine.exceptions import InterchangeError, UnrecognizedFormatError
from lore_engine.services.interchange.metadata_handler import PNGMetadataHandler

logger = logging.getLogger(__name__)


class CardFormat(Enum):
    """Supported character card formats."""
    V1 = "chara_card_v1"
    V2 = "chara_card_v2"


@dataclass
class ParsedCard:
    """A classified card: ``data`` is the card body (the V2 ``data`` object, or the V1 root)."""
    format: CardFormat
    data: Dict[str, Any]
    raw: Dict[str, Any]


def classify_card(obj: Any) -> ParsedCard:
    """
    Classify a decoded card object.

    Raises:
        InterchangeError: Not an object
        UnrecognizedFormatError: Neither V2 (``spec`` + ``data``) nor V1 (``name``)
    """
    if not isinstance(obj, Mapping):
        raise InterchangeError("Character card data is not a valid object.")

    if obj.get("spec") == CardFormat.V2.value and isinstance(obj.get("data"), Mapping):
        logger.info(f"Detected SillyTavern V2 card v{obj.get('spec_version')}")
        return ParsedCard(format=CardFormat.V2, data=dict(obj["data"]), raw=dict(obj))

    if isinstance(obj.get("name"), str):
        logger.info("Detected SillyTavern V1 card")
        return ParsedCard(format=CardFormat.V1, data=dict(obj), raw=dict(obj))

    raise UnrecognizedFormatError("Unrecognized character card format. Expected SillyTavern V1 or V2 format.")


def parse_card_json(text: Union[str, bytes]) -> ParsedCard:
    """Parse card JSON text."""
    try:
        obj = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InterchangeError("Invalid JSON file. Could not parse character card data.") from e
    return classify_card(obj)


def parse_card_png(png_data: bytes) -> ParsedCard:
    """
    Parse the card embedded in a PNG.

    Raises:
        InvalidContainerError: Not a PNG
        MissingCardDataError: No ``chara`` chunk
        InterchangeError: Embedded data is not valid JSON
    """
    text = PNGMetadataHandler.read_card_text(png_data)
    try:
        obj = json.loads(text)
    except json.JSONDecodeError as e:
        raise InterchangeError("The character data in this PNG appears to be corrupted.") from e
    return classify_card(obj)


def parse_card(payload: Union[str, bytes]) -> ParsedCard:
    """Parse a card from PNG bytes or JSON text, picking by content."""
    if isinstance(payload, bytes) and PNGMetadataHandler.is_png(payload):
        return parse_card_png(payload)
    return parse_card_json(payload)
