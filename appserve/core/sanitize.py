"""Recursive cleaning of untrusted request values.

``clean`` walks any value (text, numbers, lists, dicts, compiled patterns,
enum members, integers) and returns a copy of the same shape in which every
string has been stripped of disallowed characters. A string that ends up
empty after filtering out non-Latin-1 characters is replaced by ``ABSENT``
at that position; nothing here raises.
"""

import decimal
import enum
import math
import numbers
import re
from collections.abc import Mapping
from typing import Any, Callable, Dict


class _Absent:
    """Marker for a value that was dropped while cleaning."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "ABSENT"

    def __reduce__(self):
        return (_Absent, ())


ABSENT = _Absent()


class Kind(enum.Enum):
    NULL = "null"
    ABSENT = "absent"
    BOOLEAN = "boolean"
    NUMBER = "number"
    INTEGER = "integer"
    TEXT = "text"
    SEQUENCE = "sequence"
    MAPPING = "mapping"
    PATTERN = "pattern"
    SYMBOL = "symbol"
    UNKNOWN = "unknown"


# Typographic characters outside Latin-1 that are still accepted:
# OE/oe ligatures, S/s caron, Y diaeresis, florin, dashes, curly quotes,
# daggers, bullet, ellipsis, per mille, euro and trademark signs.
EXTRA_ALLOWED = frozenset({
    338, 339, 352, 353, 376, 402,
    8211, 8212, 8216, 8217, 8218, 8220, 8221, 8222,
    8224, 8225, 8226, 8230, 8240, 8364, 8482,
})

_LOW_CHARS = re.compile(r'[\x00-\x09\x0b\x0c\x0e-\x1f\x7f]')

_FLAG_LETTERS = (
    ('a', re.ASCII),
    ('i', re.IGNORECASE),
    ('L', re.LOCALE),
    ('m', re.MULTILINE),
    ('s', re.DOTALL),
    ('u', re.UNICODE),
    ('x', re.VERBOSE),
)


def kind_of(value: Any) -> Kind:
    """Classify a value into one of the kinds ``clean`` knows how to handle."""
    if value is None:
        return Kind.NULL
    if value is ABSENT:
        return Kind.ABSENT
    if isinstance(value, bool):
        return Kind.BOOLEAN
    if isinstance(value, enum.Enum):
        return Kind.SYMBOL
    if isinstance(value, int):
        return Kind.INTEGER
    if isinstance(value, (numbers.Real, decimal.Decimal)):
        return Kind.NUMBER
    if isinstance(value, str):
        return Kind.TEXT
    if isinstance(value, (list, tuple)):
        return Kind.SEQUENCE
    if isinstance(value, Mapping):
        return Kind.MAPPING
    if isinstance(value, re.Pattern):
        return Kind.PATTERN
    return Kind.UNKNOWN


def _is_kept(code: int, allow_control_chars: bool) -> bool:
    if code <= 31:
        return allow_control_chars or code in (10, 13)
    return code <= 127 or 160 <= code <= 255 or code in EXTRA_ALLOWED


def clean_text(value: str, allow_control_chars: bool = False) -> Any:
    if not allow_control_chars:
        value = _LOW_CHARS.sub('', value)
    if value.isascii():
        return value
    output = ''.join(ch for ch in value if _is_kept(ord(ch), allow_control_chars))
    if not output:
        return ABSENT
    return output


def _flags_to_text(flags: int) -> str:
    return ''.join(letter for letter, flag in _FLAG_LETTERS if flags & flag)


def _text_to_flags(text: str) -> int:
    letters = dict(_FLAG_LETTERS)
    flags = 0
    for letter in text:
        flags |= letters.get(letter, 0)
    return flags


class _Cleaner:
    def __init__(self, allow_control_chars: bool):
        self.allow_control_chars = allow_control_chars
        self._table: Dict[Kind, Callable[[Any], Any]] = {
            Kind.NULL: lambda value: None,
            Kind.ABSENT: lambda value: ABSENT,
            Kind.BOOLEAN: bool,
            Kind.NUMBER: self._number,
            Kind.INTEGER: self._integer,
            Kind.TEXT: self._text,
            Kind.SEQUENCE: self._sequence,
            Kind.MAPPING: self._mapping,
            Kind.PATTERN: self._pattern,
            Kind.SYMBOL: self._symbol,
            Kind.UNKNOWN: lambda value: ABSENT,
        }

    def __call__(self, value: Any) -> Any:
        return self._table[kind_of(value)](value)

    def _text(self, value: str) -> Any:
        return clean_text(value, self.allow_control_chars)

    def _number(self, value: Any) -> Any:
        try:
            return float(value)
        except (TypeError, ValueError, OverflowError):
            return math.nan

    def _integer(self, value: int) -> Any:
        # the decimal form of an int is only a sign and digits
        return int(value)

    def _sequence(self, value: Any) -> Any:
        items = [self(item) for item in value]
        if isinstance(value, tuple):
            return tuple(items)
        return items

    def _mapping(self, value: Mapping) -> Dict[Any, Any]:
        output: Dict[Any, Any] = {}
        for key in list(value.keys()):
            cleaned_key = self(key)
            try:
                output[cleaned_key] = self(value[key])
            except TypeError:
                # unhashable key after cleaning
                continue
        return output

    def _pattern(self, value: re.Pattern) -> Any:
        if not isinstance(value.pattern, str):
            return ABSENT
        body = self._text(value.pattern)
        if body is ABSENT or body == '':
            return ABSENT
        flags = self._text(_flags_to_text(value.flags))
        try:
            return re.compile(body, _text_to_flags(flags or ''))
        except (re.error, ValueError):
            return ABSENT

    def _symbol(self, value: enum.Enum) -> Any:
        name = self._text(value.name)
        if name is ABSENT or name == '':
            return ABSENT
        try:
            return type(value)[name]
        except KeyError:
            return ABSENT


def clean(value: Any, allow_control_chars: bool = False) -> Any:
    """Return a cleaned copy of ``value``.

    Control characters are removed from strings (newlines are always kept)
    unless ``allow_control_chars`` is true. Non-ASCII strings keep only
    Latin-1 and a short list of typographic characters; if nothing is left
    the string becomes ``ABSENT``. Lists and tuples keep their length. Dicts
    keep their keys, except that keys cleaning to the same value collapse
    (last one wins); keys that clean to nothing all land on ``ABSENT``.
    Unsupported objects become ``ABSENT``.
    """
    return _Cleaner(allow_control_chars)(value)


def compact(value: Any) -> Any:
    """Turn a cleaned structure into plain JSON-compatible data.

    Mapping entries with an ``ABSENT`` key or value are removed and
    ``ABSENT`` sequence entries become ``None``.
    """
    if value is ABSENT:
        return None
    if isinstance(value, Mapping):
        return {
            key: compact(item) for key, item in value.items()
            if key is not ABSENT and item is not ABSENT
        }
    if isinstance(value, list):
        return [compact(item) for item in value]
    if isinstance(value, tuple):
        return tuple(compact(item) for item in value)
    return value
