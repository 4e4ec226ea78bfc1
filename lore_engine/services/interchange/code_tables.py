"""
Lorebook code tables.

SillyTavern lorebooks store position, role and selective logic as small
integers. Unknown or malformed codes map to the documented default
instead of failing.
"""

from typing import Any, Optional

from lore_engine.services.activation.schema import (
    ActivationMode, KeywordLogic, MessageRole, Position
)

POSITION_BY_CODE = {
    0: Position.BEFORE_CHARACTER,
    1: Position.AFTER_CHARACTER,
    2: Position.BEFORE_EXAMPLES,
    3: Position.AFTER_EXAMPLES,
    4: Position.AT_DEPTH,
}

ROLE_BY_CODE = {
    0: MessageRole.SYSTEM,
    1: MessageRole.USER,
    2: MessageRole.ASSISTANT,
}

LOGIC_BY_CODE = {
    0: KeywordLogic.AND_ANY,
    1: KeywordLogic.AND_ALL,
    2: KeywordLogic.NOT_ALL,
    3: KeywordLogic.NOT_ANY,
}

CODE_BY_POSITION = {position: code for code, position in POSITION_BY_CODE.items()}
# No native slot for the system-level buckets; nearest anchor is used
CODE_BY_POSITION[Position.SYSTEM_TOP] = 0
CODE_BY_POSITION[Position.SYSTEM_BOTTOM] = 3

CODE_BY_ROLE = {role: code for code, role in ROLE_BY_CODE.items()}
CODE_BY_LOGIC = {logic: code for code, logic in LOGIC_BY_CODE.items()}


def _as_code(value: Any) -> Optional[int]:
    """Integer code from an int, integral float or numeric string."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip('-').isdigit():
        return int(value.strip())
    return None


def position_from_code(code: Any) -> Position:
    return POSITION_BY_CODE.get(_as_code(code), Position.AFTER_CHARACTER)


def role_from_code(code: Any) -> MessageRole:
    return ROLE_BY_CODE.get(_as_code(code), MessageRole.SYSTEM)


def logic_from_code(code: Any) -> KeywordLogic:
    return LOGIC_BY_CODE.get(_as_code(code), KeywordLogic.AND_ANY)


def position_to_code(position: Position) -> int:
    return CODE_BY_POSITION.get(position, 1)


def role_to_code(role: MessageRole) -> int:
    return CODE_BY_ROLE.get(role, 0)


def logic_to_code(logic: KeywordLogic) -> int:
    return CODE_BY_LOGIC.get(logic, 0)


def derive_mode(disabled: bool, constant: bool, has_keys: bool, vectorized: bool) -> ActivationMode:
    """
    Activation mode for an imported lorebook entry.

    ``disabled`` wins over ``constant``, which wins over the key/vector
    flags. An entry with neither keys nor the vectorized flag is keyword.
    """
    if disabled:
        return ActivationMode.DISABLED
    if constant:
        return ActivationMode.CONSTANT
    if has_keys and vectorized:
        return ActivationMode.HYBRID
    if has_keys:
        return ActivationMode.KEYWORD
    if vectorized:
        return ActivationMode.VECTOR
    return ActivationMode.KEYWORD
