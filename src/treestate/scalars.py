"""
Scalar grammars and attribute-list escaping.

Collections serialized as a single attribute are joined with ``;``. A literal
``;`` or backquote inside an element is escaped by prefixing it with a
backquote, so ``unescape(escape(s)) == s`` for every string.
"""

import re
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, List, Sequence

from treestate.errors import DecodeError
from treestate.tags import Text

SEPARATOR = ';'
ESCAPE = '`'

SCALAR_TYPES = (bool, int, float, Decimal, str)

_INT_PATTERN = re.compile(r'[+-]?\d+')
_TRUE = frozenset({'true', '1', 'yes'})
_FALSE = frozenset({'false', '0', 'no'})


def is_scalar_type(tp: Any) -> bool:
    """True if values of tp are written as text (attribute or text block)."""
    if not isinstance(tp, type):
        return False
    return issubclass(tp, Enum) or tp in SCALAR_TYPES or issubclass(tp, str)


def escape(text: str) -> str:
    return text.replace(ESCAPE, ESCAPE + ESCAPE).replace(SEPARATOR, ESCAPE + SEPARATOR)


def unescape(text: str) -> str:
    out = []
    chars = iter(text)
    for ch in chars:
        if ch == ESCAPE:
            # A trailing lone escape character is kept literally
            out.append(next(chars, ESCAPE))
        else:
            out.append(ch)
    return ''.join(out)


def join_escaped(items: Sequence[str]) -> str:
    return SEPARATOR.join(escape(item) for item in items)


def split_escaped(text: str) -> List[str]:
    """
    Split an attribute list, honouring escapes.

    The empty string is the empty list; a single empty element is therefore
    not representable as an attribute list.
    """
    if text == '':
        return []
    items: List[str] = []
    current: List[str] = []
    chars = iter(text)
    for ch in chars:
        if ch == ESCAPE:
            current.append(next(chars, ESCAPE))
        elif ch == SEPARATOR:
            items.append(''.join(current))
            current = []
        else:
            current.append(ch)
    items.append(''.join(current))
    return items


def format_scalar(value: Any, tp: type) -> str:
    """Write a scalar in its text grammar."""
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, Enum):
        return value.name
    if isinstance(value, float):
        return repr(value)
    return str(value)


def parse_scalar(text: str, tp: type, path: str = "") -> Any:
    """
    Read a scalar from its text grammar.

    Raises:
        DecodeError: if text does not match the grammar of tp
    """
    if tp is bool:
        lowered = text.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise DecodeError(f"'{text}' is not a boolean", path)
    if issubclass(tp, Enum):
        member = tp.__members__.get(text.strip())
        if member is None:
            raise DecodeError(f"'{text}' is not a member of {tp.__name__}", path)
        return member
    if tp is int:
        stripped = text.strip()
        if not _INT_PATTERN.fullmatch(stripped):
            raise DecodeError(f"'{text}' is not an integer", path)
        return int(stripped)
    if tp is float:
        try:
            return float(text)
        except ValueError:
            raise DecodeError(f"'{text}' is not a number", path) from None
    if tp is Decimal:
        try:
            return Decimal(text.strip())
        except InvalidOperation:
            raise DecodeError(f"'{text}' is not a decimal", path) from None
    if tp is Text:
        return Text(text)
    if issubclass(tp, str):
        return text if tp is str else tp(text)
    raise DecodeError(f"no scalar grammar for {tp!r}", path)
