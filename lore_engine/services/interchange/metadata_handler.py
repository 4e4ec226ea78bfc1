"""
PNG Metadata Handler
====================

Reads and writes the base64 ``chara`` tEXt chunk that carries SillyTavern
character cards inside PNG images.
"""

import base64
import binascii
import logging
from io import BytesIO
from typing import Optional

from PIL import Image, PngImagePlugin, UnidentifiedImageError

from lore_engine.exceptions import InterchangeError, InvalidContainerError, MissingCardDataError

logger = logging.getLogger(__name__)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
CARD_KEYWORD = "chara"

# 1x1 image used when a card is exported without an avatar
MINIMAL_PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNk+M9QDwADhgGAWjR9awAAAABJRU5ErkJggg=="
)


class PNGMetadataHandler:
    """Handle PNG tEXt chunk operations for character card metadata."""

    @staticmethod
    def is_png(data: bytes) -> bool:
        return len(data) >= len(PNG_SIGNATURE) and data[:len(PNG_SIGNATURE)] == PNG_SIGNATURE

    @classmethod
    def _open(cls, png_data: bytes) -> Image.Image:
        if not cls.is_png(png_data):
            raise InvalidContainerError("Not a valid PNG file.")
        try:
            return Image.open(BytesIO(png_data))
        except (UnidentifiedImageError, OSError) as e:
            raise InvalidContainerError("Not a valid PNG file.") from e

    @classmethod
    def read_text_chunk(cls, png_data: bytes, keyword: str = CARD_KEYWORD) -> Optional[str]:
        """
        Extract and base64-decode the tEXt chunk with the given keyword.

        Args:
            png_data: PNG file data as bytes
            keyword: tEXt chunk keyword (case-insensitive)

        Returns:
            Decoded text, or None when the chunk is absent

        Raises:
            InvalidContainerError: Data is not a PNG
            InterchangeError: Chunk exists but is not valid base64 UTF-8
        """
        image = cls._open(png_data)
        # Reading .text loads the image so chunks after IDAT are seen too
        text = getattr(image, 'text', None) or {}

        for key, value in text.items():
            if key.lower() != keyword.lower():
                continue
            logger.debug(f"Found tEXt chunk with keyword '{key}'")
            try:
                return base64.b64decode(value, validate=False).decode('utf-8')
            except (binascii.Error, UnicodeDecodeError) as e:
                raise InterchangeError("The character data in this PNG appears to be corrupted.") from e

        logger.debug(f"tEXt chunk with keyword '{keyword}' not found")
        return None

    @classmethod
    def read_card_text(cls, png_data: bytes) -> str:
        """
        Card JSON text from the ``chara`` chunk.

        Raises:
            MissingCardDataError: PNG has no ``chara`` chunk
        """
        data = cls.read_text_chunk(png_data, CARD_KEYWORD)
        if data is None:
            raise MissingCardDataError(
                "No character card data found in this PNG file. "
                "Make sure it is a valid SillyTavern character card."
            )
        return data

    @classmethod
    def write_text_chunk(cls, png_data: Optional[bytes], keyword: str, data: str) -> bytes:
        """
        Embed base64-encoded text in a PNG, replacing any chunk with the same keyword.

        The new chunk is written after the image data. Other text chunks are
        preserved.

        Args:
            png_data: Original PNG (a 1x1 image is used when None)
            keyword: tEXt chunk keyword
            data: Text to embed

        Returns:
            Modified PNG data
        """
        image = cls._open(png_data if png_data is not None else MINIMAL_PNG)

        png_info = PngImagePlugin.PngInfo()
        for key, value in (getattr(image, 'text', None) or {}).items():
            if key.lower() != keyword.lower():
                png_info.add_text(key, value)

        encoded = base64.b64encode(data.encode('utf-8'))
        png_info.add(b"tEXt", keyword.encode('latin-1') + b"\0" + encoded, after_idat=True)

        output = BytesIO()
        image.save(output, format='PNG', pnginfo=png_info)
        return output.getvalue()
