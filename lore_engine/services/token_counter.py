"""
Token Estimation

Character-based token estimates used for knowledge budgets and prompt
observability. One token is taken as four characters of English text,
always rounded up so short strings never cost zero.
"""

import math
from typing import Iterable, Tuple

CHARS_PER_TOKEN = 4

# Role label and separator overhead per chat message
MESSAGE_OVERHEAD_TOKENS = 4


def estimate_tokens(text: str) -> int:
    """Estimate tokens in text: ceil(len / 4)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(contents: Iterable[str]) -> int:
    """
    Estimate tokens for a list of chat message contents.

    Each message costs its content estimate plus a fixed formatting overhead.
    """
    return sum(estimate_tokens(c) + MESSAGE_OVERHEAD_TOKENS for c in contents)


def truncate_to_tokens(text: str, max_tokens: int) -> Tuple[str, bool]:
    """
    Truncate text so its estimate fits within max_tokens.

    Cuts at the last whitespace inside the allowance when there is one in
    the final fifth, so words are not split.

    Returns:
        (text, was_truncated)
    """
    if max_tokens <= 0:
        return "", bool(text)

    max_chars = max_tokens * CHARS_PER_TOKEN
    if len(text) <= max_chars:
        return text, False

    cut = text[:max_chars]
    space_pos = cut.rfind(' ', int(max_chars * 0.8))
    if space_pos > 0:
        cut = cut[:space_pos]
    return cut.rstrip(), True

