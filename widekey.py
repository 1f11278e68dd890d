#!/usr/bin/env python3
"""
Widekey Key Primitives

Typed row keys for widetable: key types, the order-preserving key encoder,
Java-style date and decimal conversion masks, and ${VAR} substitution for key
and cache size literals.
"""

import datetime
import decimal
import enum
import os
import re
import struct
from collections import namedtuple
from typing import Any, Callable, Dict, Optional, Union


class KeyType(enum.Enum):
    STRING = "String"
    INTEGER = "Integer"
    UNSIGNED_INTEGER = "UnsignedInteger"
    LONG = "Long"
    UNSIGNED_LONG = "UnsignedLong"
    DATE = "Date"
    UNSIGNED_DATE = "UnsignedDate"
    FLOAT = "Float"
    DOUBLE = "Double"
    BINARY = "Binary"

    @property
    def is_date(self) -> bool:
        return self in (KeyType.DATE, KeyType.UNSIGNED_DATE)

    @property
    def is_numeric(self) -> bool:
        return self in _NUMERIC_KEY_TYPES

    @property
    def is_unsigned(self) -> bool:
        return self in (
            KeyType.UNSIGNED_INTEGER,
            KeyType.UNSIGNED_LONG,
            KeyType.UNSIGNED_DATE,
        )


_NUMERIC_KEY_TYPES = frozenset(
    [
        KeyType.INTEGER,
        KeyType.UNSIGNED_INTEGER,
        KeyType.LONG,
        KeyType.UNSIGNED_LONG,
        KeyType.FLOAT,
        KeyType.DOUBLE,
    ]
)

# Mapping of a table onto typed columns; only the key type matters here
Mapping = namedtuple("Mapping", ["table_name", "mapping_name", "key_name", "key_type"])

_EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)


# ============================================================================
# Key encoding
# ============================================================================


def _flip_sign(data: bytes) -> bytes:
    return bytes([data[0] ^ 0x80]) + data[1:]


def _float_order(bits: bytes) -> bytes:
    # Flip sign bit, or flip all bits if negative
    if bits[0] & 0x80:
        return bytes(b ^ 0xFF for b in bits)
    return _flip_sign(bits)


def date_millis(value: datetime.datetime) -> int:
    """Milliseconds since the epoch; naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    delta = value - _EPOCH
    return (delta.days * 86400 + delta.seconds) * 1000 + delta.microseconds // 1000


def _as_integer(value: Any) -> int:
    if isinstance(value, str):
        return int(value.strip())
    return int(value)


def _as_millis(value: Any) -> int:
    if isinstance(value, datetime.datetime):
        return date_millis(value)
    if isinstance(value, datetime.date):
        return date_millis(datetime.datetime(value.year, value.month, value.day))
    if isinstance(value, str):
        text = value.strip()
        if re.fullmatch(r"-?\d+", text):
            return int(text)
        return date_millis(datetime.datetime.fromisoformat(text))
    return int(value)


def _pack_signed(fmt: str, value: int, key_type: KeyType) -> bytes:
    try:
        data = struct.pack(fmt, value)
    except struct.error as e:
        raise ValueError(f"{value} is out of range for {key_type.value} keys") from e
    if key_type.is_unsigned:
        if value < 0:
            raise ValueError(f"{key_type.value} keys can not be negative: {value}")
        return data
    return _flip_sign(data)


def key_encode(value: Any, key_type: KeyType) -> bytes:
    """Encode a key value to bytes whose lexicographic order is the key order.

    Args:
        value: str, bytes, number or datetime; strings are converted to the
            key type first (hex for BINARY, ISO-8601 or epoch millis for dates)
        key_type: The KeyType of the mapping

    Returns:
        The encoded row key

    Raises:
        ValueError: if the value can not be converted to the key type
    """
    if key_type is KeyType.STRING:
        return str(value).encode("utf-8")
    elif key_type is KeyType.BINARY:
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        return bytes.fromhex(str(value))
    elif key_type in (KeyType.INTEGER, KeyType.UNSIGNED_INTEGER):
        return _pack_signed(">i", _as_integer(value), key_type)
    elif key_type in (KeyType.LONG, KeyType.UNSIGNED_LONG):
        return _pack_signed(">q", _as_integer(value), key_type)
    elif key_type.is_date:
        return _pack_signed(">q", _as_millis(value), key_type)
    elif key_type is KeyType.FLOAT:
        return _float_order(struct.pack(">f", float(value)))
    elif key_type is KeyType.DOUBLE:
        return _float_order(struct.pack(">d", float(value)))
    else:
        raise ValueError(f"Unsupported key type: {key_type}")


# ============================================================================
# Conversion masks
# ============================================================================

# Java date pattern letter runs and their strptime directives. A run of S
# (milliseconds) has no directive; date_parse counts it itself.
_DATE_DIRECTIVES = {
    "yyyy": "%Y",
    "yyy": "%Y",
    "yy": "%y",
    "y": "%Y",
    "MMMM": "%B",
    "MMM": "%b",
    "MM": "%m",
    "M": "%m",
    "dd": "%d",
    "d": "%d",
    "HH": "%H",
    "H": "%H",
    "hh": "%I",
    "h": "%I",
    "mm": "%M",
    "m": "%M",
    "ss": "%S",
    "s": "%S",
    "a": "%p",
    "EEEE": "%A",
    "EEE": "%a",
    "E": "%a",
    "DDD": "%j",
    "D": "%j",
    "Z": "%z",
    "XXX": "%z",
    "XX": "%z",
    "X": "%z",
    "z": "%Z",
}

# Text each directive may span, alternatives ordered like strptime's
_DIRECTIVE_RES = {
    "%Y": r"\d\d\d\d",
    "%y": r"\d\d",
    "%B": r"[^\W\d_]+",
    "%b": r"[^\W\d_]+",
    "%m": r"1[0-2]|0[1-9]|[1-9]",
    "%d": r"3[01]|[12]\d|0[1-9]|[1-9]",
    "%H": r"2[0-3]|[01]\d|\d",
    "%I": r"1[0-2]|0[1-9]|[1-9]",
    "%M": r"[0-5]\d|\d",
    "%S": r"6[01]|[0-5]\d|\d",
    "%p": r"[^\W\d_]+",
    "%A": r"[^\W\d_]+",
    "%a": r"[^\W\d_]+",
    "%j": r"36[0-6]|3[0-5]\d|[12]\d\d|0[1-9]\d|00[1-9]|[1-9]\d|0[1-9]|[1-9]",
    "%z": r"Z|[+-]\d\d:?\d\d(?::?\d\d)?",
    "%Z": r"[^\W\d_]+",
}

_MILLIS = "S"


def _date_tokens(pattern: str):
    """Split a SimpleDateFormat pattern into (is_field, text) tokens.

    Quoted text ('T') is literal and '' is a single quote.
    """
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "'":
            if pattern[i + 1 : i + 2] == "'":
                yield False, "'"
                i += 2
                continue
            i += 1
            literal = []
            while True:
                if i >= len(pattern):
                    raise ValueError(f"Unterminated quote in date mask: {pattern!r}")
                if pattern[i] == "'":
                    if pattern[i + 1 : i + 2] == "'":
                        literal.append("'")
                        i += 2
                        continue
                    i += 1
                    break
                literal.append(pattern[i])
                i += 1
            yield False, "".join(literal)
        elif char.isalpha():
            run = 1
            while i + run < len(pattern) and pattern[i + run] == char:
                run += 1
            yield True, char * run
            i += run
        else:
            yield False, char
            i += 1


def _date_directive(token: str, pattern: str) -> str:
    if token[0] == _MILLIS:
        return _MILLIS
    directive = _DATE_DIRECTIVES.get(token)
    if directive is None and token[0] * 4 in _DATE_DIRECTIVES:
        directive = _DATE_DIRECTIVES[token[0] * 4]
    if directive is None:
        raise ValueError(f"Unsupported date mask letter {token!r} in {pattern!r}")
    return directive


def date_compile(pattern: str):
    """Compile a Java SimpleDateFormat pattern.

    Returns:
        (regex, directives): a regex with one group per pattern field, and the
        strptime directive of each group ("S" for a milliseconds field)

    Raises:
        ValueError: on pattern letters without a strptime equivalent
    """
    parts = []
    directives = []
    for is_field, text in _date_tokens(pattern):
        if not is_field:
            parts.append(re.escape(text))
            continue
        directive = _date_directive(text, pattern)
        directives.append(directive)
        parts.append(r"(\d+)" if directive == _MILLIS else f"({_DIRECTIVE_RES[directive]})")
    return re.compile("".join(parts), re.IGNORECASE), directives


def date_parse(text: str, pattern: str) -> datetime.datetime:
    """Parse text with a Java-style date mask, e.g. "yyyy-MM-dd HH:mm:ss.SSS".

    S counts milliseconds, so ".5" under "ss.S" is 5 ms, not half a second.
    """
    regex, directives = date_compile(pattern)
    match = regex.fullmatch(text)
    if match is None:
        raise ValueError(f"{text!r} does not match date mask {pattern!r}")
    values = []
    formats = []
    millis = 0
    for directive, value in zip(directives, match.groups()):
        if directive == _MILLIS:
            millis += int(value)
        else:
            values.append(value)
            formats.append(directive)
    # Fields are joined on a separator no field can contain
    parsed = datetime.datetime.strptime("|".join(values), "|".join(formats))
    return parsed + datetime.timedelta(milliseconds=millis)


_NUMBER_PATTERN_CHARS = "#0,."
_NUMBER_RES = {
    True: re.compile(r"(?P<int>\d[\d,]*)?(?P<frac>\.\d*)?(?P<exp>E[-+]?\d+)?"),
    False: re.compile(r"(?P<int>\d+)?(?P<frac>\.\d*)?(?P<exp>E[-+]?\d+)?"),
}


def _number_affixes(pattern: str):
    """Split a decimal pattern into (prefix, suffix, multiplier, grouping)."""
    positive = pattern.split(";", 1)[0]
    positions = [i for i, c in enumerate(positive) if c in _NUMBER_PATTERN_CHARS]
    if not positions:
        raise ValueError(f"Decimal mask without digits: {pattern!r}")
    prefix = positive[: positions[0]]
    suffix = positive[positions[-1] + 1 :]
    grouping = "," in positive[positions[0] : positions[-1] + 1]
    multiplier = 1
    if "%" in prefix or "%" in suffix:
        multiplier = 100
    elif "‰" in prefix or "‰" in suffix:
        multiplier = 1000
    prefix, suffix = (affix.replace("'", "") for affix in (prefix, suffix))
    return prefix, suffix, multiplier, grouping


def number_parse(text: str, pattern: str) -> Union[int, float]:
    """Parse text with a Java-style decimal mask, e.g. "#,##0.00" or "0%".

    Grouping separators are only accepted when the mask groups. The whole
    text must match.

    Returns:
        int when the parsed value is integral, float otherwise

    Raises:
        ValueError: when the text is not a number under the mask
    """
    prefix, suffix, multiplier, grouping = _number_affixes(pattern)
    body = text.strip()
    negative = False
    if body.startswith("-" + prefix):
        negative = True
        body = body[len(prefix) + 1 :]
    elif body.startswith(prefix):
        body = body[len(prefix) :]
    else:
        raise ValueError(f"{text!r} does not start with {prefix!r}")
    if suffix:
        if not body.endswith(suffix):
            raise ValueError(f"{text!r} does not end with {suffix!r}")
        body = body[: -len(suffix)]
    match = _NUMBER_RES[grouping].fullmatch(body)
    if match is None or not (match.group("int") or (match.group("frac") or "")[1:]):
        raise ValueError(f"{text!r} is not a number for mask {pattern!r}")
    number = decimal.Decimal(body.replace(",", "")) / multiplier
    if negative:
        number = -number
    if number == number.to_integral_value():
        return int(number)
    return float(number)


# ============================================================================
# Variable substitution
# ============================================================================

_VARIABLE_RE = re.compile(r"\$\{([^}]+)\}|%%([^%]+)%%")


def environment_substitute(
    text: Optional[str], variables: Optional[Dict[str, str]] = None
) -> Optional[str]:
    """Replace ${NAME} and %%NAME%% with variables, then the environment.

    Unknown names are left untouched.
    """
    if not text:
        return text
    variables = variables or {}

    def replace(match):
        name = match.group(1) or match.group(2)
        value = variables.get(name, os.environ.get(name))
        return match.group(0) if value is None else str(value)

    return _VARIABLE_RE.sub(replace, text)


def substitute_new(variables: Optional[Dict[str, str]] = None) -> Callable[[str], str]:
    """Bind a variable mapping into a substitute(text) callable."""
    return lambda text: environment_substitute(text, variables)
